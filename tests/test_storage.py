import sys
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

sys.path.append(str(Path(__file__).parent.parent))

from lockdown_scanner.exceptions import PersistenceError
from lockdown_scanner.models import (CRITICAL, HIGH, LOW, MEDIUM, STATUS_COMPLETED, STATUS_FAILED, STATUS_SCANNING,
                                     TYPE_DEPENDENCY, RepoRef, ScanSession, Vulnerability)
from lockdown_scanner.schemas import RepositoryInfo
from lockdown_scanner.storage import ScanStore


class TestScanStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = ScanStore(Path(self.tmp.name) / "scans.sqlite")
        self.ref = RepoRef(host="github.com", owner="acme", repo="shop", branch="main")

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def _session(self, repository_id):
        session = ScanSession(id="scan-1", repository_id=repository_id, status=STATUS_SCANNING,
                              started_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        self.store.create_session(session)
        return session

    def test_ensure_repository_is_idempotent(self):
        first = self.store.ensure_repository(self.ref)
        info = RepositoryInfo(id=42, full_name="acme/shop", default_branch="develop", private=True)
        second = self.store.ensure_repository(self.ref, info)
        self.assertEqual(first, second)

    def test_session_lifecycle_round_trip(self):
        repository_id = self.store.ensure_repository(self.ref)
        session = self._session(repository_id)
        self.assertEqual(self.store.get_session("scan-1").status, STATUS_SCANNING)

        vulns = [
            Vulnerability(id="v1", vulnerability_type=TYPE_DEPENDENCY, severity=CRITICAL, title="t1",
                          description="d1", cve_id="CVE-2020-1", affected_component="lodash",
                          affected_version="4.17.15", fixed_version="4.17.19", cvss_score=9.8,
                          references=("https://example.com/a",), raw_data={"source": "osv"}),
            Vulnerability(id="v2", vulnerability_type="code", severity=LOW, title="t2", description="d2"),
        ]
        self.store.save_vulnerabilities(session.id, repository_id, vulns)
        session.severity_counts = {CRITICAL: 1, HIGH: 0, MEDIUM: 0, LOW: 1}
        session.total_vulnerabilities = 2
        session.security_score = 72
        session.completed_at = datetime(2024, 1, 1, 0, 0, 5, tzinfo=timezone.utc)
        session.duration_ms = 5000
        self.store.complete_session(session)

        loaded = self.store.get_session("scan-1")
        self.assertEqual(loaded.status, STATUS_COMPLETED)
        self.assertEqual(loaded.security_score, 72)
        self.assertEqual(loaded.severity_counts, {CRITICAL: 1, HIGH: 0, MEDIUM: 0, LOW: 1})
        self.assertEqual(loaded.total_vulnerabilities, sum(loaded.severity_counts.values()))
        self.assertEqual(loaded.completed_at, session.completed_at)

        stored = self.store.list_vulnerabilities("scan-1")
        self.assertEqual([v.id for v in stored], ["v1", "v2"])
        self.assertEqual(stored[0], vulns[0])
        self.assertEqual(stored[0].raw_data, {"source": "osv"})

    def test_fail_session_records_message(self):
        repository_id = self.store.ensure_repository(self.ref)
        session = self._session(repository_id)
        session.error_message = "Repository acme/shop not found or not accessible"
        self.store.fail_session(session)

        loaded = self.store.get_session("scan-1")
        self.assertEqual(loaded.status, STATUS_FAILED)
        self.assertEqual(loaded.error_message, session.error_message)

    def test_list_sessions_and_touch(self):
        repository_id = self.store.ensure_repository(self.ref)
        self._session(repository_id)
        self.store.touch_repository(repository_id)
        self.assertEqual([s.id for s in self.store.list_sessions("acme/shop")], ["scan-1"])
        self.assertEqual(self.store.list_sessions("other/repo"), [])
        self.assertIsNone(self.store.get_session("missing"))

    def test_write_errors_become_persistence_errors(self):
        with self.assertRaises(PersistenceError):
            # Unknown repository violates the foreign key
            self.store.create_session(ScanSession(id="x", repository_id="nope"))
        with self.assertRaises(PersistenceError):
            self.store.complete_session(ScanSession(id="does-not-exist", repository_id="nope"))


if __name__ == '__main__':
    unittest.main()
