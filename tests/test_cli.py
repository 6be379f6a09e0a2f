import json
import sys
import tempfile
import unittest
from pathlib import Path

from click.testing import CliRunner

sys.path.append(str(Path(__file__).parent.parent))

from lockdown import cli, render_text_report
from lockdown_scanner.models import HIGH, LOW, STATUS_FAILED, RepoRef, ScanSession, Vulnerability
from lockdown_scanner.storage import ScanStore


class TestCli(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = str(Path(self.tmp.name) / "scans.sqlite")
        self.runner = CliRunner()

    def tearDown(self):
        self.tmp.cleanup()

    def invoke(self, *args):
        return self.runner.invoke(cli, ["--config", str(Path(self.tmp.name) / "none.yaml"), "--db", self.db, *args])

    def test_scan_rejects_bad_url(self):
        result = self.invoke("scan", "https://gitlab.com/acme/shop")
        self.assertEqual(result.exit_code, 2)
        self.assertIn("Unsupported source host", result.output)

    def test_history_and_show(self):
        store = ScanStore(self.db)
        repository_id = store.ensure_repository(RepoRef("github.com", "acme", "shop", "main"))
        store.create_session(ScanSession(id="scan-1", repository_id=repository_id, status="scanning"))
        store.fail_session(ScanSession(id="scan-1", repository_id=repository_id, error_message="Scan cancelled"))
        store.close()

        result = self.invoke("history", "acme/shop")
        self.assertEqual(result.exit_code, 0)
        self.assertIn("scan-1", result.output)
        self.assertIn("Scan cancelled", result.output)

        result = self.invoke("show", "scan-1", "--format", "json")
        self.assertEqual(result.exit_code, 0)
        # log lines may precede the report on a mixed stream
        report = json.loads(result.output[result.output.index("{"):])
        self.assertEqual(report["status"], STATUS_FAILED)
        self.assertEqual(report["vulnerabilities"], [])

    def test_show_unknown_scan(self):
        result = self.invoke("show", "missing")
        self.assertEqual(result.exit_code, 1)


class TestTextReport(unittest.TestCase):
    def test_highest_severity_first(self):
        summary = {"scanId": "s", "securityScore": 82, "criticalCount": 0, "highCount": 1,
                   "mediumCount": 0, "lowCount": 1, "scanDuration": 10}
        vulns = [
            Vulnerability(id="1", vulnerability_type="dependency", severity=LOW, title="low one",
                          description="d", affected_component="lodash", affected_version="4.17.15"),
            Vulnerability(id="2", vulnerability_type="code", severity=HIGH, title="high one", description="d",
                          affected_component="src/app.js", raw_data={"line": 3}),
        ]
        report = render_text_report(summary, vulns)
        self.assertLess(report.index("high one"), report.index("low one"))
        self.assertIn("src/app.js:3", report)
        self.assertIn("lodash==4.17.15", report)
        self.assertIn("Security score: 82/100", report)


if __name__ == '__main__':
    unittest.main()
