# lockdown_scanner/normalizer.py
"""
Lifts findings from the three detection sources into canonical Vulnerability
records. Every record gets a fresh id; no cross-source deduplication happens
here.
"""
import logging
import re
import uuid
from typing import Optional

from .models import (TYPE_CODE, TYPE_CONFIGURATION, TYPE_DEPENDENCY, CodeFinding, ConfigFinding,
                     PackageQuery, Vulnerability)
from .osv_scanner import osv_ecosystem
from .schemas import OsvVulnerability
from .severity import derive_severity

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 140
DESCRIPTION_MAX_LENGTH = 600
# A sentence cut is only used when it keeps at least this much text
MIN_SENTENCE_CUT = 200

GHSA_ADVISORY_URL = "https://github.com/advisories/{}"

# (label, pattern) checked in order against summary, details and aliases
VULNERABILITY_CATEGORIES = (
    ('Prototype Pollution', re.compile(r'prototype\s+pollution')),
    ('Command Injection', re.compile(r'command\s+injection|exec\(|shell')),
    ('SQL Injection', re.compile(r'sql\s+injection|sqli')),
    ('Cross-Site Scripting (XSS)', re.compile(r'cross[-\s]?site\s+scripting|\bxss\b')),
    ('Cross-Site Request Forgery (CSRF)', re.compile(r'csrf|cross[-\s]?site\s+request\s+forgery')),
    ('Path Traversal', re.compile(r'path\s+traversal|directory\s+traversal')),
    ('ReDoS (Regex DoS)', re.compile(r'redos|regular\s+expression\s+denial')),
    ('Server-Side Request Forgery (SSRF)', re.compile(r'ssrf|server[-\s]side\s+request\s+forgery')),
    ('Insecure Deserialization', re.compile(r'insecure\s+deserialization')),
    ('Authentication Bypass', re.compile(r'authentication\s+bypass|auth\s+bypass')),
    ('Exposed API', re.compile(r'exposed\s+api|public\s+endpoint|unauthenticated\s+access')),
    ('Credential/Secret Exposure', re.compile(r'secret|token|api\s+key|credential')),
    ('Remote Code Execution (RCE)', re.compile(r'remote\s+code\s+execution|\brce\b')),
)
GENERIC_CATEGORY = 'Dependency Vulnerability'


def new_id() -> str:
    return str(uuid.uuid4())


# --- Text presentation ---

def markdown_to_plain(text: str) -> str:
    text = text or ''
    text = re.sub(r'\[([^\]]+)\]\(([^)]+)\)', r'\1', text)
    text = re.sub(r'`{1,3}([^`]+)`{1,3}', r'\1', text)
    text = re.sub(r'\*\*([^*]+)\*\*', r'\1', text)
    text = re.sub(r'\*([^*]+)\*', r'\1', text)
    text = re.sub(r'_([^_]+)_', r'\1', text)
    text = re.sub(r'^\s{0,3}#{1,6}\s+', '', text, flags=re.MULTILINE)
    text = re.sub(r'^\s*[-*+]\s+', '', text, flags=re.MULTILINE)
    text = re.sub(r'<[^>]+>', '', text)
    text = re.sub(r'\r\n|\r', '\n', text)
    text = re.sub(r'\n{3,}', '\n\n', text)
    # Collapse whitespace runs, but keep paragraph breaks for first_paragraph
    text = re.sub(r'[ \t]{2,}', ' ', text)
    return text.strip()


def first_paragraph(text: str) -> str:
    parts = re.split(r'\n\s*\n', text)
    return (parts[0] if parts else text).strip()


def truncate(text: str, max_length: int = DESCRIPTION_MAX_LENGTH) -> str:
    if len(text) <= max_length:
        return text
    cut = text[:max_length]
    last_period = cut.rfind('.')
    if last_period > MIN_SENTENCE_CUT:
        return cut[:last_period + 1]
    return cut.strip() + '…'


def make_title(text: str) -> str:
    return truncate(' '.join(markdown_to_plain(text).split()), TITLE_MAX_LENGTH)


def make_description(text: str) -> str:
    return truncate(' '.join(first_paragraph(markdown_to_plain(text)).split()), DESCRIPTION_MAX_LENGTH)


def classify_vulnerability(text: str, aliases: list[str]) -> Optional[str]:
    alias_text = ' '.join(aliases).lower()
    haystack = f"{(text or '').lower()} {alias_text}"
    for label, pattern in VULNERABILITY_CATEGORIES:
        if pattern.search(haystack):
            return label
    if 'ghsa-' in alias_text:
        return GENERIC_CATEGORY
    return None


# --- Dependency records ---

def cve_id_for(record: OsvVulnerability) -> Optional[str]:
    if record.id.startswith('CVE-'):
        return record.id
    return next((alias for alias in record.aliases if alias.startswith('CVE-')), None)


def references_for(record: OsvVulnerability) -> tuple[str, ...]:
    urls = [ref.url for ref in record.references if ref.url]
    ghsa = next((a for a in [record.id, *record.aliases] if a.startswith('GHSA-')), None)
    if ghsa:
        advisory_url = GHSA_ADVISORY_URL.format(ghsa)
        if advisory_url not in urls:
            urls.append(advisory_url)
    return tuple(dict.fromkeys(urls))


def fixed_version_for(record: OsvVulnerability, query: PackageQuery) -> Optional[str]:
    """First 'fixed' event of the affected entry for the queried package."""
    wanted_ecosystem = osv_ecosystem(query.ecosystem)
    matching = [
        affected for affected in record.affected
        if affected.package is not None
        and (affected.package.name or '').lower() == query.name.lower()
        and (affected.package.ecosystem or wanted_ecosystem) == wanted_ecosystem
    ]
    for affected in matching or record.affected:
        for version_range in affected.ranges:
            for event in version_range.events:
                if event.fixed:
                    return event.fixed
    return None


def normalize_dependency(query: PackageQuery, record: OsvVulnerability) -> Vulnerability:
    severity, cvss_score = derive_severity(record)
    raw_title = record.summary or record.id
    raw_details = record.details or record.summary or record.id
    title = make_title(raw_title)
    category = classify_vulnerability(f"{raw_title} {raw_details}", record.aliases)
    return Vulnerability(
        id=new_id(),
        vulnerability_type=TYPE_DEPENDENCY,
        severity=severity,
        title=f"{category}: {title}" if category else title,
        description=make_description(raw_details),
        cve_id=cve_id_for(record),
        affected_component=query.name,
        affected_version=query.version,
        fixed_version=fixed_version_for(record, query),
        cvss_score=cvss_score,
        references=references_for(record),
        raw_data={
            'source': 'osv',
            'osv_id': record.id,
            'ecosystem': query.ecosystem,
            'record': record.model_dump(exclude_none=True),
        },
    )


# --- Code and configuration findings ---

def normalize_code_finding(finding: CodeFinding) -> Vulnerability:
    return Vulnerability(
        id=new_id(),
        vulnerability_type=TYPE_CODE,
        severity=finding.severity,
        title=finding.title,
        description=finding.description,
        affected_component=finding.file_path,
        references=finding.references,
        raw_data={
            'source': 'static_analysis',
            'rule_id': finding.rule_id,
            'file': finding.file_path,
            'line': finding.line,
            'snippet': finding.snippet,
        },
    )


def normalize_config_finding(finding: ConfigFinding) -> Vulnerability:
    return Vulnerability(
        id=new_id(),
        vulnerability_type=TYPE_CONFIGURATION,
        severity=finding.severity,
        title=finding.title,
        description=finding.description,
        affected_component=finding.file_path,
        raw_data={
            'source': 'config_analysis',
            'issue': finding.rule_id,
            'file': finding.file_path,
            'line': finding.line,
        },
    )


def normalize(dependency_matches: list[tuple[PackageQuery, OsvVulnerability]],
              code_findings: list[CodeFinding],
              config_findings: list[ConfigFinding]) -> list[Vulnerability]:
    """Merges all sources into one list: dependencies, then code, then configuration."""
    vulnerabilities = [normalize_dependency(query, record) for query, record in dependency_matches]
    vulnerabilities.extend(normalize_code_finding(f) for f in code_findings)
    vulnerabilities.extend(normalize_config_finding(f) for f in config_findings)
    logger.debug(f"Normalized {len(dependency_matches)} dependency, {len(code_findings)} code "
                 f"and {len(config_findings)} configuration findings")
    return vulnerabilities
