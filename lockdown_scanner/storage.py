# lockdown_scanner/storage.py
"""
SQLite-backed store for repositories, scan sessions and their findings.

Every sqlite3 error is converted to PersistenceError at this boundary.
"""
import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .exceptions import PersistenceError
from .models import SEVERITIES, STATUS_COMPLETED, STATUS_FAILED, RepoRef, ScanSession, Vulnerability
from .schemas import RepositoryInfo

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS repositories (
    id TEXT PRIMARY KEY,
    github_repo_id INTEGER,
    repo_name TEXT NOT NULL,
    repo_full_name TEXT NOT NULL,
    repo_url TEXT NOT NULL UNIQUE,
    default_branch TEXT DEFAULT 'main',
    language TEXT,
    is_private INTEGER DEFAULT 0,
    last_scan_at TEXT,
    scan_count INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS scan_sessions (
    id TEXT PRIMARY KEY,
    repository_id TEXT NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
    scan_status TEXT DEFAULT 'pending',
    security_score INTEGER DEFAULT 100,
    total_vulnerabilities INTEGER DEFAULT 0,
    critical_count INTEGER DEFAULT 0,
    high_count INTEGER DEFAULT 0,
    medium_count INTEGER DEFAULT 0,
    low_count INTEGER DEFAULT 0,
    scan_started_at TEXT,
    scan_completed_at TEXT,
    scan_duration_ms INTEGER,
    error_message TEXT
);
CREATE TABLE IF NOT EXISTS vulnerabilities (
    id TEXT PRIMARY KEY,
    scan_session_id TEXT NOT NULL REFERENCES scan_sessions(id) ON DELETE CASCADE,
    repository_id TEXT NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    cve_id TEXT,
    vulnerability_type TEXT NOT NULL,
    severity TEXT NOT NULL CHECK (severity IN ('CRITICAL', 'HIGH', 'MEDIUM', 'LOW')),
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    affected_component TEXT,
    affected_version TEXT,
    fixed_version TEXT,
    cvss_score REAL,
    reference_urls TEXT,
    raw_data TEXT
);
CREATE INDEX IF NOT EXISTS idx_sessions_repository ON scan_sessions (repository_id);
CREATE INDEX IF NOT EXISTS idx_vulnerabilities_session ON vulnerabilities (scan_session_id);
"""

# Per-severity count columns on scan_sessions
COUNT_COLUMNS = {severity: f"{severity.lower()}_count" for severity in SEVERITIES}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class ScanStore:
    def __init__(self, path):
        self.path = Path(path)
        try:
            logger.debug(f"Opening scan database at {self.path}")
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not open scan database {self.path}: {e}") from e

    @contextmanager
    def _transaction(self, action: str):
        try:
            with self._conn:
                yield self._conn.cursor()
        except sqlite3.Error as e:
            logger.error(f"Database error while trying to {action}: {e}")
            raise PersistenceError(f"Failed to {action}: {e}") from e

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug("Scan database connection closed.")

    # --- Repositories ---

    def ensure_repository(self, ref: RepoRef, info: Optional[RepositoryInfo] = None) -> str:
        """Returns the id of the repository row for `ref`, creating or refreshing it."""
        now = _now()
        with self._transaction("record repository") as cursor:
            cursor.execute("SELECT id FROM repositories WHERE repo_url = ?", (ref.url,))
            row = cursor.fetchone()
            if row is not None:
                if info is not None:
                    cursor.execute(
                        """UPDATE repositories SET github_repo_id = ?, default_branch = ?, language = ?,
                           is_private = ?, updated_at = ? WHERE id = ?""",
                        (info.id, info.default_branch, info.language, int(info.private), now, row["id"]),
                    )
                return row["id"]
            repository_id = str(uuid.uuid4())
            cursor.execute(
                """INSERT INTO repositories (id, github_repo_id, repo_name, repo_full_name, repo_url,
                   default_branch, language, is_private, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    repository_id,
                    info.id if info else None,
                    ref.repo,
                    info.full_name if info else ref.full_name,
                    ref.url,
                    info.default_branch if info else (ref.branch or "main"),
                    info.language if info else None,
                    int(info.private) if info else 0,
                    now,
                    now,
                ),
            )
            logger.info(f"Registered repository {ref.full_name} as {repository_id}")
            return repository_id

    def touch_repository(self, repository_id: str, scanned_at: Optional[datetime] = None):
        when = _iso(scanned_at) or _now()
        with self._transaction("update repository scan timestamp") as cursor:
            cursor.execute(
                "UPDATE repositories SET last_scan_at = ?, scan_count = scan_count + 1, updated_at = ? WHERE id = ?",
                (when, _now(), repository_id),
            )

    # --- Sessions ---

    def create_session(self, session: ScanSession):
        with self._transaction("create scan session") as cursor:
            cursor.execute(
                "INSERT INTO scan_sessions (id, repository_id, scan_status, scan_started_at) VALUES (?, ?, ?, ?)",
                (session.id, session.repository_id, session.status, _iso(session.started_at)),
            )

    def _write_session(self, cursor, session: ScanSession, status: str):
        counts = [session.severity_counts.get(severity, 0) for severity in SEVERITIES]
        cursor.execute(
            f"""UPDATE scan_sessions SET scan_status = ?, security_score = ?, total_vulnerabilities = ?,
                {', '.join(f'{COUNT_COLUMNS[s]} = ?' for s in SEVERITIES)},
                scan_completed_at = ?, scan_duration_ms = ?, error_message = ?
                WHERE id = ?""",
            (
                status,
                session.security_score,
                session.total_vulnerabilities,
                *counts,
                _iso(session.completed_at),
                session.duration_ms,
                session.error_message,
                session.id,
            ),
        )
        if cursor.rowcount == 0:
            raise sqlite3.OperationalError(f"scan session {session.id} does not exist")

    def complete_session(self, session: ScanSession):
        with self._transaction("complete scan session") as cursor:
            self._write_session(cursor, session, STATUS_COMPLETED)

    def fail_session(self, session: ScanSession):
        with self._transaction("mark scan session failed") as cursor:
            self._write_session(cursor, session, STATUS_FAILED)

    def get_session(self, scan_id: str) -> Optional[ScanSession]:
        with self._transaction("load scan session") as cursor:
            cursor.execute("SELECT * FROM scan_sessions WHERE id = ?", (scan_id,))
            row = cursor.fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self, repo_full_name: str, limit: int = 20) -> list[ScanSession]:
        with self._transaction("list scan sessions") as cursor:
            cursor.execute(
                """SELECT s.* FROM scan_sessions s JOIN repositories r ON r.id = s.repository_id
                   WHERE r.repo_full_name = ? ORDER BY s.scan_started_at DESC LIMIT ?""",
                (repo_full_name, limit),
            )
            rows = cursor.fetchall()
        return [self._session_from_row(row) for row in rows]

    @staticmethod
    def _session_from_row(row) -> ScanSession:
        return ScanSession(
            id=row["id"],
            repository_id=row["repository_id"],
            status=row["scan_status"],
            security_score=row["security_score"],
            total_vulnerabilities=row["total_vulnerabilities"],
            severity_counts={severity: row[COUNT_COLUMNS[severity]] for severity in SEVERITIES},
            started_at=_parse_dt(row["scan_started_at"]),
            completed_at=_parse_dt(row["scan_completed_at"]),
            duration_ms=row["scan_duration_ms"],
            error_message=row["error_message"],
        )

    # --- Vulnerabilities ---

    def save_vulnerabilities(self, session_id: str, repository_id: str, vulnerabilities: list[Vulnerability]):
        rows = [
            (
                vuln.id, session_id, repository_id, position, vuln.cve_id, vuln.vulnerability_type,
                vuln.severity, vuln.title, vuln.description, vuln.affected_component,
                vuln.affected_version, vuln.fixed_version, vuln.cvss_score,
                json.dumps(list(vuln.references)), json.dumps(vuln.raw_data, default=str),
            )
            for position, vuln in enumerate(vulnerabilities)
        ]
        with self._transaction("save vulnerabilities") as cursor:
            cursor.executemany(
                """INSERT INTO vulnerabilities (id, scan_session_id, repository_id, position, cve_id,
                   vulnerability_type, severity, title, description, affected_component, affected_version,
                   fixed_version, cvss_score, reference_urls, raw_data)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )
        logger.debug(f"Saved {len(rows)} vulnerabilities for scan {session_id}")

    def list_vulnerabilities(self, scan_id: str) -> list[Vulnerability]:
        with self._transaction("list vulnerabilities") as cursor:
            cursor.execute(
                "SELECT * FROM vulnerabilities WHERE scan_session_id = ? ORDER BY position", (scan_id,)
            )
            rows = cursor.fetchall()
        return [
            Vulnerability(
                id=row["id"],
                vulnerability_type=row["vulnerability_type"],
                severity=row["severity"],
                title=row["title"],
                description=row["description"],
                cve_id=row["cve_id"],
                affected_component=row["affected_component"],
                affected_version=row["affected_version"],
                fixed_version=row["fixed_version"],
                cvss_score=row["cvss_score"],
                references=tuple(json.loads(row["reference_urls"] or "[]")),
                raw_data=json.loads(row["raw_data"] or "{}"),
            )
            for row in rows
        ]
