# lockdown_scanner/scoring.py
from typing import Iterable

from .models import CRITICAL, HIGH, LOW, MEDIUM, Vulnerability, empty_severity_counts

BASE_SCORE = 100
SEVERITY_WEIGHTS = {
    CRITICAL: -25,
    HIGH: -15,
    MEDIUM: -7,
    LOW: -3,
}


def count_severities(vulnerabilities: Iterable[Vulnerability]) -> dict[str, int]:
    counts = empty_severity_counts()
    for vuln in vulnerabilities:
        counts[vuln.severity] = counts.get(vuln.severity, 0) + 1
    return counts


def security_score(severity_counts: dict[str, int]) -> int:
    """100 minus the weighted severity counts, floored at 0."""
    penalty = sum(weight * severity_counts.get(severity, 0) for severity, weight in SEVERITY_WEIGHTS.items())
    return max(0, min(BASE_SCORE, BASE_SCORE + penalty))
