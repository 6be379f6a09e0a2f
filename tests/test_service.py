import sys
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

sys.path.append(str(Path(__file__).parent.parent))

from lockdown_scanner.exceptions import InvalidInput, RepositoryNotFound
from lockdown_scanner.models import CRITICAL, HIGH, LOW, MEDIUM, ScanResult
from lockdown_scanner.service import ScanRequest, handle_scan_request, parse_repo_url


class TestParseRepoUrl(unittest.TestCase):
    def test_plain_repository(self):
        ref = parse_repo_url("https://github.com/acme/shop")
        self.assertEqual((ref.host, ref.owner, ref.repo, ref.branch), ("github.com", "acme", "shop", None))

    def test_git_suffix_and_www_host(self):
        ref = parse_repo_url("https://www.github.com/acme/shop.git")
        self.assertEqual((ref.host, ref.repo), ("github.com", "shop"))

    def test_branch_with_slashes(self):
        self.assertEqual(parse_repo_url("https://github.com/acme/shop/tree/feature/login").branch, "feature/login")

    def test_rejected_urls(self):
        for url in ("http://github.com/acme/shop", "https://gitlab.com/acme/shop",
                    "https://github.com/acme", "not a url", "https://github.com/ac me/shop"):
            with self.subTest(url=url):
                with self.assertRaises(InvalidInput):
                    parse_repo_url(url)


class TestScanRequest(unittest.TestCase):
    def test_defaults(self):
        request = ScanRequest.from_payload({"repoUrl": "https://github.com/acme/shop"})
        self.assertEqual(request.scan_type, "full")
        self.assertEqual(request.repo_ref().branch, "main")

    def test_explicit_branch_wins_over_url(self):
        request = ScanRequest.from_payload({"repoUrl": "https://github.com/acme/shop/tree/dev", "branch": "release"})
        self.assertEqual(request.repo_ref().branch, "release")
        request = ScanRequest.from_payload({"repoUrl": "https://github.com/acme/shop/tree/dev"})
        self.assertEqual(request.repo_ref().branch, "dev")

    def test_invalid_payloads(self):
        payloads = [
            None,
            {},
            {"repoUrl": "   "},
            {"repoUrl": "https://github.com/acme/shop", "scanType": "deep"},
            {"repoUrl": "https://github.com/acme/<script>alert(1)</script>"},
            {"repoUrl": "https://github.com/acme/shop", "branch": "javascript:alert(1)"},
            {"repoUrl": "https://github.com/acme/" + "a" * 1000},
        ]
        for payload in payloads:
            with self.subTest(payload=payload):
                with self.assertRaises(InvalidInput):
                    ScanRequest.from_payload(payload)


class TestHandleScanRequest(unittest.TestCase):
    def test_success_response(self):
        controller = mock.Mock()
        controller.scan.return_value = ScanResult(
            scan_id="scan-1",
            repository_id="repo-1",
            security_score=70,
            severity_counts={CRITICAL: 0, HIGH: 2, MEDIUM: 0, LOW: 0},
            vulnerabilities=[],
            duration_ms=1200,
            timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
            degraded_sources=["osv"],
        )

        response = handle_scan_request({"repoUrl": "https://github.com/acme/shop", "scanType": "quick"}, controller)

        self.assertTrue(response["success"])
        self.assertEqual(response["scanId"], "scan-1")
        self.assertEqual(response["securityScore"], 70)
        self.assertEqual(response["totalVulnerabilities"], 2)
        self.assertEqual(response["highCount"], 2)
        self.assertEqual(response["scanDuration"], 1200)
        self.assertEqual(response["scanTimestamp"], "2024-01-01T00:00:00+00:00")
        ref, scan_type = controller.scan.call_args.args
        self.assertEqual((ref.full_name, ref.branch, scan_type), ("acme/shop", "main", "quick"))

    def test_invalid_input_never_reaches_controller(self):
        controller = mock.Mock()
        response = handle_scan_request({"repoUrl": "https://gitlab.com/acme/shop"}, controller)
        self.assertFalse(response["success"])
        self.assertIn("gitlab.com", response["error"])
        controller.scan.assert_not_called()

    def test_hard_failure_is_reported(self):
        controller = mock.Mock()
        controller.scan.side_effect = RepositoryNotFound("Repository acme/shop not found or not accessible")
        response = handle_scan_request({"repoUrl": "https://github.com/acme/shop"}, controller)
        self.assertEqual(response, {"success": False, "error": "Repository acme/shop not found or not accessible"})


if __name__ == '__main__':
    unittest.main()
