# lockdown_scanner/github_client.py
import base64
import binascii
import logging
from urllib.parse import quote

import requests
from pydantic import ValidationError

from .config import ScannerConfig
from .exceptions import HostUnreachableError, UpstreamServiceError
from .schemas import GitHubContent, RepositoryInfo, TreeEntry

logger = logging.getLogger(__name__)

GITHUB_ACCEPT_HEADER = "application/vnd.github.v3+json"


class GitHubClient:
    """Read-only access to repository contents on GitHub."""

    def __init__(self, config: ScannerConfig, session: requests.Session | None = None):
        self.config = config
        self.base_url = config.github_api_base.rstrip('/')
        self.timeout = config.http_timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": GITHUB_ACCEPT_HEADER, "User-Agent": config.user_agent})
        if config.github_token:
            self.session.headers["Authorization"] = f"Bearer {config.github_token}"

    def _get(self, url: str, params: dict | None = None) -> requests.Response | None:
        """GET that maps 404 to None and every other failure to UpstreamServiceError."""
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise UpstreamServiceError(f"GitHub request timed out: {url}") from e
        except requests.exceptions.ConnectionError as e:
            raise HostUnreachableError(f"GitHub unreachable: {e}") from e
        except requests.exceptions.RequestException as e:
            raise UpstreamServiceError(f"GitHub request failed: {url}: {e}") from e

        if response.status_code == 404:
            return None
        if not response.ok:
            raise UpstreamServiceError(
                f"GitHub returned {response.status_code} for {url}", status_code=response.status_code
            )
        return response

    def _json(self, response: requests.Response, url: str):
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamServiceError(f"GitHub returned invalid JSON for {url}") from e

    def get_repository(self, owner: str, repo: str) -> RepositoryInfo | None:
        url = f"{self.base_url}/repos/{owner}/{repo}"
        response = self._get(url)
        if response is None:
            return None
        try:
            return RepositoryInfo.model_validate(self._json(response, url))
        except ValidationError as e:
            raise UpstreamServiceError(f"Unexpected repository payload for {owner}/{repo}: {e}") from e

    def get_file(self, owner: str, repo: str, branch: str, path: str) -> str | None:
        """Returns decoded file text, or None when the file does not exist."""
        url = f"{self.base_url}/repos/{owner}/{repo}/contents/{quote(path)}"
        response = self._get(url, params={"ref": branch})
        if response is None:
            return None
        payload = self._json(response, url)
        if isinstance(payload, list):
            # A directory listing, not a file
            return None
        try:
            content = GitHubContent.model_validate(payload)
        except ValidationError as e:
            raise UpstreamServiceError(f"Unexpected contents payload for {path}: {e}") from e
        if content.content is None or content.encoding != "base64":
            logger.debug(f"No inline base64 content for {path} (encoding={content.encoding})")
            return None
        try:
            raw = base64.b64decode(content.content.replace("\n", ""))
        except (binascii.Error, ValueError) as e:
            raise UpstreamServiceError(f"Could not decode contents of {path}") from e
        return raw.decode('utf-8', errors='replace')

    def get_tree(self, owner: str, repo: str, branch: str) -> list[TreeEntry]:
        url = f"{self.base_url}/repos/{owner}/{repo}/git/trees/{quote(branch, safe='')}"
        response = self._get(url, params={"recursive": "1"})
        if response is None:
            return []
        payload = self._json(response, url)
        entries = []
        skipped = 0
        for node in (payload.get("tree") or []) if isinstance(payload, dict) else []:
            try:
                entries.append(TreeEntry.model_validate(node))
            except ValidationError:
                skipped += 1
        if skipped:
            logger.warning(f"Skipped {skipped} malformed tree entries for {owner}/{repo}@{branch}")
        if isinstance(payload, dict) and payload.get("truncated"):
            logger.warning(f"Tree listing for {owner}/{repo}@{branch} was truncated by GitHub")
        return entries
