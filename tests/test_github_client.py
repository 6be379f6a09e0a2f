import base64
import sys
import unittest
from pathlib import Path
from unittest import mock

import requests

sys.path.append(str(Path(__file__).parent.parent))

from lockdown_scanner.config import ScannerConfig
from lockdown_scanner.exceptions import HostUnreachableError, UpstreamServiceError
from lockdown_scanner.github_client import GitHubClient


def fake_response(status_code=200, payload=None):
    response = mock.Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.json.return_value = payload
    return response


def contents_payload(path, text):
    return {"path": path, "encoding": "base64", "content": base64.b64encode(text.encode()).decode()}


class TestGitHubClient(unittest.TestCase):
    def setUp(self):
        self.session = mock.MagicMock()
        self.client = GitHubClient(ScannerConfig(github_token="t0ken", http_timeout=7), session=self.session)

    def test_get_file_decodes_content(self):
        self.session.get.return_value = fake_response(payload=contents_payload("go.mod", "module x\n"))
        self.assertEqual(self.client.get_file("acme", "shop", "dev", "go.mod"), "module x\n")

        args, kwargs = self.session.get.call_args
        self.assertEqual(args[0], "https://api.github.com/repos/acme/shop/contents/go.mod")
        self.assertEqual(kwargs["params"], {"ref": "dev"})
        self.assertEqual(kwargs["timeout"], 7)
        self.session.headers.__setitem__.assert_called_with("Authorization", "Bearer t0ken")

    def test_missing_file_is_none(self):
        self.session.get.return_value = fake_response(404)
        self.assertIsNone(self.client.get_file("acme", "shop", "main", "yarn.lock"))

    def test_directory_listing_is_none(self):
        self.session.get.return_value = fake_response(payload=[{"path": "config/a.js"}])
        self.assertIsNone(self.client.get_file("acme", "shop", "main", "config"))

    def test_error_status_carries_code(self):
        self.session.get.return_value = fake_response(403)
        with self.assertRaises(UpstreamServiceError) as ctx:
            self.client.get_file("acme", "shop", "main", "package.json")
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertNotIsInstance(ctx.exception, HostUnreachableError)

    def test_timeout_is_upstream_error(self):
        self.session.get.side_effect = requests.exceptions.Timeout("slow")
        with self.assertRaises(UpstreamServiceError) as ctx:
            self.client.get_file("acme", "shop", "main", "package.json")
        self.assertNotIsInstance(ctx.exception, HostUnreachableError)

    def test_connection_error_is_host_unreachable(self):
        self.session.get.side_effect = requests.exceptions.ConnectionError("no route")
        with self.assertRaises(HostUnreachableError):
            self.client.get_tree("acme", "shop", "main")

    def test_get_tree_skips_malformed_entries(self):
        self.session.get.return_value = fake_response(payload={"tree": [
            {"path": "src/app.js", "type": "blob", "size": 20},
            {"type": "blob"},
            {"path": "src", "type": "tree"},
        ]})
        entries = self.client.get_tree("acme", "shop", "main")
        self.assertEqual([(e.path, e.type) for e in entries], [("src/app.js", "blob"), ("src", "tree")])
        self.assertEqual(self.session.get.call_args.kwargs["params"], {"recursive": "1"})

    def test_get_tree_with_null_tree(self):
        self.session.get.return_value = fake_response(payload={"tree": None, "truncated": False})
        self.assertEqual(self.client.get_tree("acme", "shop", "main"), [])

    def test_get_repository(self):
        self.session.get.return_value = fake_response(payload={
            "id": 9, "full_name": "acme/shop", "default_branch": "develop", "private": True, "stars": 3,
        })
        info = self.client.get_repository("acme", "shop")
        self.assertEqual((info.id, info.default_branch, info.private), (9, "develop", True))

        self.session.get.return_value = fake_response(404)
        self.assertIsNone(self.client.get_repository("acme", "gone"))


if __name__ == '__main__':
    unittest.main()
