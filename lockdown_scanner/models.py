# lockdown_scanner/models.py
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

# --- Severity tiers ---
CRITICAL = "CRITICAL"
HIGH = "HIGH"
MEDIUM = "MEDIUM"
LOW = "LOW"
SEVERITIES = (CRITICAL, HIGH, MEDIUM, LOW)

# --- Vulnerability sources ---
TYPE_DEPENDENCY = "dependency"
TYPE_CODE = "code"
TYPE_CONFIGURATION = "configuration"

# --- Scan types ---
SCAN_FULL = "full"
SCAN_DEPENDENCIES = "dependencies"
SCAN_QUICK = "quick"
SCAN_TYPES = (SCAN_FULL, SCAN_DEPENDENCIES, SCAN_QUICK)

# --- Scan session states ---
STATUS_PENDING = "pending"
STATUS_SCANNING = "scanning"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


def empty_severity_counts() -> dict[str, int]:
    return {severity: 0 for severity in SEVERITIES}


@dataclass(frozen=True)
class PackageQuery:
    name: str
    ecosystem: str
    # None means unpinned; such queries are never sent to the database
    version: Optional[str] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.ecosystem, self.name, self.version or "*")

    @property
    def is_pinned(self) -> bool:
        return bool(self.version)

    def __str__(self) -> str:
        return f"{self.name}@{self.version}" if self.version else self.name


@dataclass(frozen=True)
class RepoRef:
    host: str
    owner: str
    repo: str
    branch: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def url(self) -> str:
        return f"https://{self.host}/{self.owner}/{self.repo}"


@dataclass(frozen=True)
class CodeFinding:
    rule_id: str
    title: str
    description: str
    severity: str
    file_path: str
    line: int
    snippet: str
    references: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConfigFinding:
    rule_id: str
    title: str
    description: str
    severity: str
    file_path: str
    line: Optional[int] = None


@dataclass(frozen=True)
class Vulnerability:
    id: str
    vulnerability_type: str
    severity: str
    title: str
    description: str
    cve_id: Optional[str] = None
    affected_component: Optional[str] = None
    affected_version: Optional[str] = None
    fixed_version: Optional[str] = None
    cvss_score: Optional[float] = None
    references: tuple[str, ...] = ()
    raw_data: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "cve_id": self.cve_id,
            "vulnerability_type": self.vulnerability_type,
            "severity": self.severity,
            "title": self.title,
            "description": self.description,
            "affected_component": self.affected_component,
            "affected_version": self.affected_version,
            "fixed_version": self.fixed_version,
            "cvss_score": self.cvss_score,
            "references": list(self.references),
            "raw_data": self.raw_data,
        }


@dataclass
class ScanSession:
    id: str
    repository_id: str
    status: str = STATUS_PENDING
    security_score: int = 100
    total_vulnerabilities: int = 0
    severity_counts: dict[str, int] = field(default_factory=empty_severity_counts)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (STATUS_COMPLETED, STATUS_FAILED)


@dataclass
class ScanResult:
    scan_id: str
    repository_id: str
    security_score: int
    severity_counts: dict[str, int]
    vulnerabilities: list[Vulnerability]
    duration_ms: int
    timestamp: datetime
    # Branches that degraded (upstream failure) during this scan
    degraded_sources: list[str] = field(default_factory=list)

    @property
    def total_vulnerabilities(self) -> int:
        return sum(self.severity_counts.values())

    def to_response(self) -> dict[str, Any]:
        """Shape returned to the surrounding service."""
        return {
            "success": True,
            "scanId": self.scan_id,
            "securityScore": self.security_score,
            "totalVulnerabilities": self.total_vulnerabilities,
            "criticalCount": self.severity_counts.get(CRITICAL, 0),
            "highCount": self.severity_counts.get(HIGH, 0),
            "mediumCount": self.severity_counts.get(MEDIUM, 0),
            "lowCount": self.severity_counts.get(LOW, 0),
            "scanDuration": self.duration_ms,
            "scanTimestamp": self.timestamp.isoformat(),
        }
