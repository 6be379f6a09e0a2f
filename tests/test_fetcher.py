import sys
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

sys.path.append(str(Path(__file__).parent.parent))

from lockdown_scanner.config import ScannerConfig
from lockdown_scanner.exceptions import HostUnreachableError, UpstreamServiceError
from lockdown_scanner.fetcher import CANDIDATE_PATHS, fetch_manifests, fetch_repository_files
from lockdown_scanner.models import RepoRef
from lockdown_scanner.osv_scanner import OsvClient
from lockdown_scanner.scanner import ScanController
from lockdown_scanner.schemas import RepositoryInfo
from lockdown_scanner.storage import ScanStore


def client_with(responses):
    """Mock client whose get_file returns, or raises, the entry for each path."""
    client = mock.Mock()

    def get_file(owner, repo, branch, path):
        value = responses.get(path)
        if isinstance(value, Exception):
            raise value
        return value

    client.get_file.side_effect = get_file
    return client


class TestFetchRepositoryFiles(unittest.TestCase):
    def test_missing_files_are_skipped(self):
        client = client_with({"package.json": "{}"})
        self.assertEqual(fetch_manifests(client, "o", "r", "main"), {"package.json": "{}"})
        requested = [call.args[3] for call in client.get_file.call_args_list]
        self.assertEqual(requested, list(CANDIDATE_PATHS))
        self.assertLess(requested.index("package-lock.json"), requested.index("package.json"))

    def test_one_failing_path_does_not_stop_the_rest(self):
        client = client_with({
            "yarn.lock": UpstreamServiceError("GitHub returned 500", status_code=500),
            "go.mod": "module x\n",
        })
        self.assertEqual(fetch_manifests(client, "o", "r", "main"), {"go.mod": "module x\n"})
        self.assertEqual(client.get_file.call_count, len(CANDIDATE_PATHS))

    def test_unreachable_host_keeps_partial_results(self):
        client = client_with({
            "package-lock.json": "{}",
            "yarn.lock": HostUnreachableError("GitHub unreachable"),
            "go.mod": "module x\n",
        })
        with self.assertRaises(UpstreamServiceError) as ctx:
            fetch_repository_files(client, "o", "r", "main", CANDIDATE_PATHS)
        self.assertEqual(ctx.exception.partial, {"package-lock.json": "{}"})
        # Fetching stops at the unreachable path
        self.assertEqual(client.get_file.call_count, 3)

    def test_cancelled_fetch_returns_early(self):
        cancel = threading.Event()
        cancel.set()
        client = client_with({"package.json": "{}"})
        self.assertEqual(fetch_repository_files(client, "o", "r", "main", CANDIDATE_PATHS, cancel), {})
        client.get_file.assert_not_called()


class TestPartialManifestsInScan(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = ScanStore(Path(self.tmp.name) / "scans.sqlite")

    def tearDown(self):
        self.store.close()
        self.tmp.cleanup()

    def test_manifests_fetched_before_outage_are_queried(self):
        config = ScannerConfig(max_workers=1, fetch_vuln_details=False)
        github = client_with({
            "package-lock.json": '{"packages": {"node_modules/lodash": {"version": "4.17.15"}}}',
            "yarn.lock": HostUnreachableError("GitHub unreachable"),
        })
        github.get_repository.return_value = RepositoryInfo(id=1, full_name="acme/shop")
        session = mock.MagicMock()
        response = mock.Mock(ok=True, status_code=200)
        response.json.return_value = {"results": [{"vulns": [{"id": "GHSA-aaaa-bbbb-cccc"}]}]}
        session.post.return_value = response

        controller = ScanController(config, self.store, github=github, osv=OsvClient(config, session=session))
        result = controller.scan(RepoRef("github.com", "acme", "shop", "main"), "dependencies")

        self.assertEqual(result.degraded_sources, ["manifests"])
        self.assertEqual([v.affected_component for v in result.vulnerabilities], ["lodash"])
        sent = session.post.call_args.kwargs["json"]["queries"]
        self.assertEqual(sent, [{"package": {"name": "lodash", "ecosystem": "npm"}, "version": "4.17.15"}])


if __name__ == '__main__':
    unittest.main()
