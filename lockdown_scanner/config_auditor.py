# lockdown_scanner/config_auditor.py
"""
Fixed misconfiguration checks over a handful of well-known config files.

Files are fetched from the repository; a file that does not exist simply
yields nothing. Each rule fires at most once per file.
"""
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

import yaml

from .config import ScannerConfig
from .exceptions import ParseError
from .fetcher import fetch_repository_files
from .github_client import GitHubClient
from .models import CRITICAL, HIGH, MEDIUM, ConfigFinding

logger = logging.getLogger(__name__)

APP_CONFIG_PATHS = ('config/production.js', 'config/production.json')
COMPOSE_PATHS = ('docker-compose.yml', 'docker-compose.yaml', 'compose.yaml')
NGINX_PATHS = ('nginx.conf',)
ENV_PATHS = ('.env', '.env.production')
CONFIG_PATHS = APP_CONFIG_PATHS + COMPOSE_PATHS + NGINX_PATHS + ENV_PATHS

DEBUG_ENABLED = re.compile(r'''\bdebug['"]?\s*:\s*true\b''', re.IGNORECASE)
WILDCARD_CORS = re.compile(r'''\b(cors|origin)['"]?\s*:\s*['"]\*['"]''', re.IGNORECASE)
RATE_LIMIT_DISABLED = re.compile(r'''rateLimit['"]?\s*:\s*\{[^}]*?enabled['"]?\s*:\s*false''', re.IGNORECASE | re.DOTALL)
HTTP_LISTENER = re.compile(r'^[ \t]*listen\s+(\[::\]:)?80\b', re.MULTILINE)
TLS_LISTENER = re.compile(r'^[ \t]*listen\s+[^;]*\bssl\b', re.MULTILINE)
CREDENTIAL_URL = re.compile(
    r'''^[ \t]*(export\s+)?\w*(URL|URI|DSN)\s*=\s*['"]?[a-z][a-z0-9+.-]*://[^:/@\s]+:[^@\s]+@''',
    re.MULTILINE | re.IGNORECASE,
)
ENV_DEBUG = re.compile(r'''^[ \t]*(export\s+)?DEBUG\s*=\s*['"]?(true|1|yes|on)\b''', re.MULTILINE | re.IGNORECASE)
INTERPOLATED = re.compile(r'^\$\{?\w+')


def _line_of(content: str, offset: int) -> int:
    return content.count('\n', 0, offset) + 1


def _regex_check(pattern: re.Pattern) -> Callable[[str], Optional[int]]:
    def check(content: str) -> Optional[int]:
        match = pattern.search(content)
        return _line_of(content, match.start()) if match else None
    return check


def _rate_limit_disabled(content: str) -> Optional[int]:
    match = RATE_LIMIT_DISABLED.search(content)
    if not match:
        return None
    # Report the 'enabled: false' line rather than the block opener
    return _line_of(content, match.end())


def _plaintext_listener(content: str) -> Optional[int]:
    match = HTTP_LISTENER.search(content)
    if not match or TLS_LISTENER.search(content):
        return None
    return _line_of(content, match.start())


def _compose_environment(service: dict) -> dict[str, str]:
    env = service.get('environment')
    if isinstance(env, dict):
        return {str(k): '' if v is None else str(v) for k, v in env.items()}
    if isinstance(env, list):
        pairs = {}
        for item in env:
            if isinstance(item, str) and '=' in item:
                key, value = item.split('=', 1)
                pairs[key.strip()] = value.strip()
        return pairs
    return {}


def _compose_hardcoded_password(content: str) -> Optional[int]:
    """Structural check: a literal *PASSWORD* value in any service environment."""
    try:
        document = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid compose file: {e}") from e
    if not isinstance(document, dict) or not isinstance(document.get('services'), dict):
        return None
    for service in document['services'].values():
        if not isinstance(service, dict):
            continue
        for key, value in _compose_environment(service).items():
            if 'PASSWORD' not in key.upper() or not value or INTERPOLATED.match(value):
                continue
            for i, line in enumerate(content.splitlines(), start=1):
                if key in line:
                    return i
            return 1
    return None


@dataclass(frozen=True)
class ConfigRule:
    rule_id: str
    title: str
    description: str
    severity: str
    paths: tuple[str, ...]
    check: Callable[[str], Optional[int]]


RULES: tuple[ConfigRule, ...] = (
    ConfigRule(
        rule_id='config.debug_enabled',
        title='Debug mode enabled in production config',
        description='Debug logging is enabled in a production configuration which may expose sensitive '
                    'information and stack traces to potential attackers.',
        severity=MEDIUM,
        paths=APP_CONFIG_PATHS,
        check=_regex_check(DEBUG_ENABLED),
    ),
    ConfigRule(
        rule_id='config.permissive_cors',
        title='Overly permissive CORS configuration',
        description='CORS is configured to allow requests from any origin (*) which could expose your API '
                    'to cross-site request forgery attacks and unintended access.',
        severity=HIGH,
        paths=APP_CONFIG_PATHS,
        check=_regex_check(WILDCARD_CORS),
    ),
    ConfigRule(
        rule_id='config.rate_limit_disabled',
        title='Rate limiting disabled',
        description='API rate limiting is disabled which could make the service vulnerable to '
                    'denial-of-service attacks or excessive usage.',
        severity=MEDIUM,
        paths=APP_CONFIG_PATHS,
        check=_rate_limit_disabled,
    ),
    ConfigRule(
        rule_id='config.hardcoded_credentials',
        title='Hardcoded database credentials',
        description='Database credentials are hardcoded in the Docker Compose configuration file. These should '
                    'be externalized using environment variables or secrets management.',
        severity=CRITICAL,
        paths=COMPOSE_PATHS,
        check=_compose_hardcoded_password,
    ),
    ConfigRule(
        rule_id='config.http_no_tls',
        title='Unsecured HTTP connection',
        description='The web server is configured to use HTTP without SSL/TLS encryption, which could expose '
                    'sensitive data in transit.',
        severity=HIGH,
        paths=NGINX_PATHS,
        check=_plaintext_listener,
    ),
    ConfigRule(
        rule_id='config.connection_string_credentials',
        title='Credentials in connection string',
        description='Database credentials are included directly in the connection string in the environment '
                    'configuration file.',
        severity=CRITICAL,
        paths=ENV_PATHS,
        check=_regex_check(CREDENTIAL_URL),
    ),
    ConfigRule(
        rule_id='config.env_debug_enabled',
        title='Debug flag enabled in environment file',
        description='DEBUG is switched on in an environment file, which commonly enables verbose error pages '
                    'and diagnostic endpoints.',
        severity=MEDIUM,
        paths=ENV_PATHS,
        check=_regex_check(ENV_DEBUG),
    ),
)


def audit_files(files: dict[str, str], rules: tuple[ConfigRule, ...] = RULES) -> list[ConfigFinding]:
    """Applies every rule to the files it targets, in rule order."""
    findings = []
    for rule in rules:
        for path in rule.paths:
            content = files.get(path)
            if content is None:
                continue
            try:
                line = rule.check(content)
            except ParseError as e:
                logger.warning(f"Skipping {rule.rule_id} for {path}: {e}")
                continue
            if line is None:
                continue
            findings.append(ConfigFinding(
                rule_id=rule.rule_id,
                title=rule.title,
                description=rule.description,
                severity=rule.severity,
                file_path=path,
                line=line,
            ))
    return findings


class ConfigAuditor:
    def __init__(self, config: ScannerConfig, client: GitHubClient):
        self.config = config
        self.client = client

    def audit(self, owner: str, repo: str, branch: str, cancel_event=None) -> list[ConfigFinding]:
        files = fetch_repository_files(self.client, owner, repo, branch, CONFIG_PATHS, cancel_event)
        logger.info(f"Auditing {len(files)} configuration files in {owner}/{repo}@{branch}")
        findings = audit_files(files)
        logger.info(f"Configuration audit found {len(findings)} issues")
        return findings
