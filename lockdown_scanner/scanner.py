# lockdown_scanner/scanner.py
"""
Scan session controller.

Drives one scan through pending -> scanning -> completed|failed. The three
detection branches run in parallel; each degrades to an empty result on an
upstream failure. Only losing the repository identity or the store fails the
session.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .code_scanner import CodeScanner
from .config import ScannerConfig
from .config_auditor import ConfigAuditor, audit_files
from .exceptions import PersistenceError, RepositoryNotFound, ScanCancelled, ScannerError, UpstreamServiceError
from .fetcher import fetch_manifests
from .github_client import GitHubClient
from .models import (CRITICAL, SCAN_DEPENDENCIES, SCAN_FULL, SCAN_QUICK, SCAN_TYPES, STATUS_COMPLETED,
                     STATUS_FAILED, STATUS_PENDING, STATUS_SCANNING, RepoRef, ScanResult, ScanSession)
from .normalizer import new_id, normalize
from .osv_scanner import OsvClient
from .query_builder import build_queries
from .scoring import count_severities, security_score
from .storage import ScanStore

logger = logging.getLogger(__name__)

BRANCH_DEPENDENCIES = "dependencies"
BRANCH_CODE = "code"
BRANCH_CONFIG = "configuration"

# Detection branches enabled per scan type
SCAN_BRANCHES = {
    SCAN_FULL: (BRANCH_DEPENDENCIES, BRANCH_CODE, BRANCH_CONFIG),
    SCAN_DEPENDENCIES: (BRANCH_DEPENDENCIES,),
    SCAN_QUICK: (BRANCH_DEPENDENCIES, BRANCH_CONFIG),
}

TRANSITIONS = {
    STATUS_PENDING: (STATUS_SCANNING, STATUS_FAILED),
    STATUS_SCANNING: (STATUS_COMPLETED, STATUS_FAILED),
}

CANCELLED_MESSAGE = "Scan cancelled"


@dataclass
class BranchOutcome:
    name: str
    items: list = field(default_factory=list)
    # Upstream sources that failed while this branch ran
    degraded: list[str] = field(default_factory=list)


def transition(session: ScanSession, status: str):
    if status not in TRANSITIONS.get(session.status, ()):
        raise ScannerError(f"Illegal scan state change {session.status} -> {status} for {session.id}")
    logger.debug(f"Scan {session.id}: {session.status} -> {status}")
    session.status = status


class ScanController:
    """Runs scans and owns every ScanSession it creates."""

    def __init__(self, config: ScannerConfig, store: ScanStore,
                 github: Optional[GitHubClient] = None,
                 osv: Optional[OsvClient] = None,
                 code_scanner: Optional[CodeScanner] = None,
                 config_auditor: Optional[ConfigAuditor] = None):
        self.config = config
        self.store = store
        self.github = github or GitHubClient(config)
        self.osv = osv or OsvClient(config)
        self.code_scanner = code_scanner or CodeScanner(config, self.github)
        self.config_auditor = config_auditor or ConfigAuditor(config, self.github)

    # --- Detection branches ---

    def _dependency_branch(self, owner, repo, branch, cancel_event) -> BranchOutcome:
        outcome = BranchOutcome(BRANCH_DEPENDENCIES)
        try:
            manifests = fetch_manifests(self.github, owner, repo, branch, cancel_event)
        except UpstreamServiceError as e:
            logger.warning(f"Manifest fetch degraded: {e}")
            outcome.degraded.append("manifests")
            manifests = e.partial or {}

        queries = build_queries(manifests)
        if not queries:
            return outcome
        try:
            matches = self.osv.query_batch(queries)
        except UpstreamServiceError as e:
            logger.warning(f"Vulnerability database unavailable, skipping dependency results: {e}")
            outcome.degraded.append("osv")
            return outcome
        if matches and self.config.fetch_vuln_details:
            matches = self.osv.hydrate(matches, cancel_event)
        outcome.items = matches
        return outcome

    def _code_branch(self, owner, repo, branch, cancel_event) -> BranchOutcome:
        outcome = BranchOutcome(BRANCH_CODE)
        try:
            outcome.items = self.code_scanner.scan(owner, repo, branch, cancel_event)
        except UpstreamServiceError as e:
            logger.warning(f"Static analysis degraded: {e}")
            outcome.degraded.append("code")
        return outcome

    def _config_branch(self, owner, repo, branch, cancel_event) -> BranchOutcome:
        outcome = BranchOutcome(BRANCH_CONFIG)
        try:
            outcome.items = self.config_auditor.audit(owner, repo, branch, cancel_event)
        except UpstreamServiceError as e:
            logger.warning(f"Configuration audit degraded: {e}")
            outcome.degraded.append("configuration")
            outcome.items = audit_files(e.partial or {})
        return outcome

    def _run_branches(self, names, owner, repo, branch, cancel_event) -> dict[str, BranchOutcome]:
        runners = {
            BRANCH_DEPENDENCIES: self._dependency_branch,
            BRANCH_CODE: self._code_branch,
            BRANCH_CONFIG: self._config_branch,
        }
        outcomes = {}
        workers = max(1, min(len(names), self.config.max_workers))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_name = {
                executor.submit(runners[name], owner, repo, branch, cancel_event): name
                for name in names
            }
            for future in as_completed(future_to_name):
                if cancel_event.is_set():
                    executor.shutdown(wait=False, cancel_futures=True)
                    raise ScanCancelled(CANCELLED_MESSAGE)
                outcomes[future_to_name[future]] = future.result()
        if cancel_event.is_set():
            raise ScanCancelled(CANCELLED_MESSAGE)
        return outcomes

    # --- Session lifecycle ---

    def _fail(self, session: ScanSession, message: str, started: float):
        transition(session, STATUS_FAILED)
        session.error_message = message
        session.completed_at = datetime.now(timezone.utc)
        session.duration_ms = int((time.monotonic() - started) * 1000)
        try:
            self.store.fail_session(session)
        except PersistenceError as e:
            logger.error(f"Could not record failure of scan {session.id}: {e}")

    def _resolve_identity(self, ref: RepoRef):
        try:
            info = self.github.get_repository(ref.owner, ref.repo)
        except UpstreamServiceError as e:
            raise RepositoryNotFound(f"Could not reach {ref.host} to resolve {ref.full_name}: {e}") from e
        if info is None:
            raise RepositoryNotFound(f"Repository {ref.full_name} not found or not accessible")
        return info

    def scan(self, ref: RepoRef, scan_type: str = SCAN_FULL,
             cancel_event: Optional[threading.Event] = None) -> ScanResult:
        """
        Scans one repository and returns the result.

        Raises PersistenceError if the initial repository/session rows cannot
        be written, RepositoryNotFound if the repository cannot be resolved,
        and ScanCancelled if `cancel_event` is set mid-scan. In the latter two
        cases the session is recorded as failed.
        """
        if scan_type not in SCAN_TYPES:
            raise ScannerError(f"Unknown scan type '{scan_type}'")
        cancel_event = cancel_event or threading.Event()
        started = time.monotonic()

        repository_id = self.store.ensure_repository(ref)
        session = ScanSession(id=new_id(), repository_id=repository_id,
                              started_at=datetime.now(timezone.utc))
        transition(session, STATUS_SCANNING)
        self.store.create_session(session)
        logger.info(f"Scan {session.id} started for {ref.full_name} ({scan_type})")

        try:
            info = self._resolve_identity(ref)
            self.store.ensure_repository(ref, info)
            branch = ref.branch or info.default_branch
            outcomes = self._run_branches(SCAN_BRANCHES[scan_type], ref.owner, ref.repo, branch, cancel_event)
        except (RepositoryNotFound, PersistenceError, ScanCancelled) as e:
            logger.error(f"Scan {session.id} failed: {e}")
            self._fail(session, str(e), started)
            raise
        except Exception as e:
            logger.exception(f"Scan {session.id} aborted by unexpected error")
            self._fail(session, f"Internal error: {e}", started)
            raise

        empty = BranchOutcome("")
        vulnerabilities = normalize(
            outcomes.get(BRANCH_DEPENDENCIES, empty).items,
            outcomes.get(BRANCH_CODE, empty).items,
            outcomes.get(BRANCH_CONFIG, empty).items,
        )
        if scan_type == SCAN_QUICK:
            vulnerabilities = [v for v in vulnerabilities if v.severity == CRITICAL]
        degraded = [source for outcome in outcomes.values() for source in outcome.degraded]

        counts = count_severities(vulnerabilities)
        session.severity_counts = counts
        session.total_vulnerabilities = sum(counts.values())
        session.security_score = security_score(counts)
        session.completed_at = datetime.now(timezone.utc)
        session.duration_ms = int((time.monotonic() - started) * 1000)

        try:
            self.store.save_vulnerabilities(session.id, repository_id, vulnerabilities)
            self.store.complete_session(session)
        except PersistenceError as e:
            logger.error(f"Scan {session.id} failed while saving results: {e}")
            self._fail(session, str(e), started)
            raise
        transition(session, STATUS_COMPLETED)

        try:
            self.store.touch_repository(repository_id, session.completed_at)
        except PersistenceError as e:
            logger.warning(f"Could not update last scan time for {ref.full_name}: {e}")

        if degraded:
            logger.warning(f"Scan {session.id} completed with degraded sources: {', '.join(degraded)}")
        logger.info(f"Scan {session.id} completed: score {session.security_score}, "
                    f"{session.total_vulnerabilities} vulnerabilities in {session.duration_ms}ms")
        return ScanResult(
            scan_id=session.id,
            repository_id=repository_id,
            security_score=session.security_score,
            severity_counts=counts,
            vulnerabilities=vulnerabilities,
            duration_ms=session.duration_ms,
            timestamp=session.completed_at,
            degraded_sources=degraded,
        )
