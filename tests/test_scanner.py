import json
import sys
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

sys.path.append(str(Path(__file__).parent.parent))

from lockdown_scanner.config import ScannerConfig
from lockdown_scanner.exceptions import RepositoryNotFound, ScanCancelled
from lockdown_scanner.models import (CRITICAL, HIGH, STATUS_COMPLETED, STATUS_FAILED, TYPE_CODE,
                                     TYPE_CONFIGURATION, TYPE_DEPENDENCY, RepoRef)
from lockdown_scanner.osv_scanner import OsvClient
from lockdown_scanner.scanner import CANCELLED_MESSAGE, ScanController
from lockdown_scanner.schemas import RepositoryInfo, TreeEntry
from lockdown_scanner.storage import ScanStore

REF = RepoRef(host="github.com", owner="acme", repo="shop", branch="main")

REPO_FILES = {
    "package.json": json.dumps({"name": "shop", "dependencies": {"lodash": "^4.17.15"}}),
    "src/app.js": "const x = eval(userInput);\n",
    "nginx.conf": "server {\n  listen 80;\n}\n",
}


class FakeGitHub:
    """In-memory stand-in for GitHubClient."""

    def __init__(self, files, info=True):
        self.files = files
        self.info = RepositoryInfo(id=1, full_name="acme/shop", default_branch="main") if info else None
        self.tree_calls = 0

    def get_repository(self, owner, repo):
        return self.info

    def get_file(self, owner, repo, branch, path):
        return self.files.get(path)

    def get_tree(self, owner, repo, branch):
        self.tree_calls += 1
        return [TreeEntry(path=path, type="blob") for path in self.files]


def osv_returning(config, status_code=200, payload=None):
    session = mock.MagicMock()
    response = mock.Mock()
    response.ok = 200 <= status_code < 300
    response.status_code = status_code
    response.json.return_value = payload
    session.post.return_value = response
    return OsvClient(config, session=session)


class TestScanController(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = ScanStore(Path(self.tmp.name) / "scans.sqlite")
        self.config = ScannerConfig(max_workers=2, fetch_vuln_details=False)

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def controller(self, github, osv=None):
        osv = osv or osv_returning(self.config, 200, {"results": []})
        return ScanController(self.config, self.store, github=github, osv=osv)

    def only_session(self):
        sessions = self.store.list_sessions("acme/shop")
        self.assertEqual(len(sessions), 1)
        return sessions[0]

    def test_vulnerability_database_outage_degrades(self):
        osv = osv_returning(self.config, 503)
        result = self.controller(FakeGitHub(REPO_FILES), osv).scan(REF)

        self.assertEqual(result.degraded_sources, ["osv"])
        self.assertEqual(result.severity_counts[HIGH], 2)
        self.assertEqual(result.total_vulnerabilities, 2)
        self.assertEqual(result.security_score, 70)
        self.assertEqual([v.vulnerability_type for v in result.vulnerabilities], [TYPE_CODE, TYPE_CONFIGURATION])
        osv.session.post.assert_called_once()

        session = self.only_session()
        self.assertEqual(session.status, STATUS_COMPLETED)
        self.assertEqual(session.security_score, 70)
        self.assertEqual(len(self.store.list_vulnerabilities(result.scan_id)), 2)

    def test_one_vulnerability_per_raw_record(self):
        payload = {"results": [{"vulns": [{"id": "GHSA-aaaa-bbbb-cccc"}, {"id": "GHSA-dddd-eeee-ffff"}]}]}
        result = self.controller(FakeGitHub(REPO_FILES), osv_returning(self.config, 200, payload)).scan(REF)

        dependencies = [v for v in result.vulnerabilities if v.vulnerability_type == TYPE_DEPENDENCY]
        self.assertEqual(len(dependencies), 2)
        self.assertEqual({v.affected_component for v in dependencies}, {"lodash"})
        self.assertEqual(result.degraded_sources, [])
        self.assertEqual(result.total_vulnerabilities, len(result.vulnerabilities))
        self.assertEqual(result.to_response()["totalVulnerabilities"], 4)

    def test_malformed_lockfile_does_not_abort_scan(self):
        files = {"Pipfile.lock": '{"default": ["x"]}', "src/a.js": "eval(x)"}
        result = self.controller(FakeGitHub(files)).scan(REF)

        self.assertEqual([v.vulnerability_type for v in result.vulnerabilities], [TYPE_CODE])
        self.assertEqual(result.degraded_sources, [])
        self.assertEqual(self.only_session().status, STATUS_COMPLETED)

    def test_unknown_repository_fails_session(self):
        with self.assertRaises(RepositoryNotFound):
            self.controller(FakeGitHub(REPO_FILES, info=False)).scan(REF)

        session = self.only_session()
        self.assertEqual(session.status, STATUS_FAILED)
        self.assertIn("not found", session.error_message)
        self.assertIsNotNone(session.completed_at)

    def test_cancellation_fails_session(self):
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(ScanCancelled):
            self.controller(FakeGitHub(REPO_FILES)).scan(REF, cancel_event=cancel)

        session = self.only_session()
        self.assertEqual(session.status, STATUS_FAILED)
        self.assertEqual(session.error_message, CANCELLED_MESSAGE)

    def test_quick_scan_keeps_critical_only(self):
        files = {
            ".env.production": "DATABASE_URL=postgresql://admin:secret@db:5432/app\nDEBUG=true\n",
        }
        github = FakeGitHub(files)
        result = self.controller(github).scan(REF, "quick")

        self.assertEqual([v.severity for v in result.vulnerabilities], [CRITICAL])
        self.assertEqual(result.security_score, 75)
        self.assertEqual(github.tree_calls, 0)

    def test_dependencies_scan_skips_code_and_config(self):
        github = FakeGitHub(REPO_FILES)
        result = self.controller(github, osv_returning(self.config, 503)).scan(REF, "dependencies")

        self.assertEqual(result.vulnerabilities, [])
        self.assertEqual(result.security_score, 100)
        self.assertEqual(github.tree_calls, 0)

    def test_default_branch_used_when_none_given(self):
        github = FakeGitHub(REPO_FILES)
        github.get_file = mock.Mock(return_value=None)
        self.controller(github).scan(RepoRef(host="github.com", owner="acme", repo="shop"), "dependencies")
        branches = {call.args[2] for call in github.get_file.call_args_list}
        self.assertEqual(branches, {"main"})


if __name__ == '__main__':
    unittest.main()
