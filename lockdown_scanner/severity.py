# lockdown_scanner/severity.py
"""
Severity mapping for vulnerability database records.

A record's numeric score comes from, in order: the first CVSS-typed entry of
its severity list, a numeric score in its database_specific block, and
finally nothing, in which case the tier is guessed from its text.
"""
import logging
from typing import Optional

from cvss import CVSS2, CVSS3, CVSS4
from cvss.exceptions import CVSSError

from .models import CRITICAL, HIGH, LOW, MEDIUM
from .schemas import OsvVulnerability

logger = logging.getLogger(__name__)

# (minimum score, tier), highest first
SEVERITY_THRESHOLDS = (
    (9.0, CRITICAL),
    (7.0, HIGH),
    (4.0, MEDIUM),
)


def severity_from_score(score: float) -> str:
    """The single numeric-to-tier mapping used across the engine."""
    for minimum, tier in SEVERITY_THRESHOLDS:
        if score >= minimum:
            return tier
    return LOW


def severity_from_text(text: str) -> str:
    # Coarse keyword match; 'high' also hits words like 'highlight'
    lowered = (text or '').lower()
    if 'critical' in lowered:
        return CRITICAL
    if 'high' in lowered:
        return HIGH
    if 'medium' in lowered:
        return MEDIUM
    return LOW


def score_cvss_vector(vector: str) -> Optional[float]:
    """Base score of a CVSS v2/v3/v4 vector, or of a bare numeric score string."""
    vector = (vector or '').strip()
    if not vector:
        return None
    try:
        return float(vector)
    except ValueError:
        pass
    try:
        if vector.startswith('CVSS:4'):
            return float(CVSS4(vector).base_score)
        if vector.startswith('CVSS:3'):
            return float(CVSS3(vector).base_score)
        if vector.startswith('AV:'):
            return float(CVSS2(vector).base_score)
    except (CVSSError, ValueError, KeyError) as e:
        logger.warning(f"Failed CVSS parse for vector '{vector}': {e}")
    return None


def _secondary_score(database_specific: Optional[dict]) -> Optional[float]:
    if not isinstance(database_specific, dict):
        return None
    candidates = [database_specific.get('cvss_score')]
    nested = database_specific.get('cvss')
    if isinstance(nested, dict):
        candidates.append(nested.get('score'))
    elif nested is not None:
        candidates.append(nested)
    for value in candidates:
        if isinstance(value, bool) or value is None:
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return None


def extract_cvss_score(record: OsvVulnerability) -> Optional[float]:
    for entry in record.severity:
        if 'CVSS' not in entry.type.upper():
            continue
        score = score_cvss_vector(entry.score)
        if score is not None:
            return score
    return _secondary_score(record.database_specific)


def derive_severity(record: OsvVulnerability) -> tuple[str, Optional[float]]:
    """Returns (tier, cvss score or None) for one raw vulnerability record."""
    score = extract_cvss_score(record)
    if score is not None:
        return severity_from_score(score), score
    text = f"{record.summary or ''} {record.details or ''}"
    return severity_from_text(text), None
