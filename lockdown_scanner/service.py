# lockdown_scanner/service.py
"""Request/response surface consumed by the surrounding service and the CLI."""
import logging
import re
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .exceptions import InvalidInput, ScannerError
from .models import SCAN_FULL, SCAN_TYPES, RepoRef

logger = logging.getLogger(__name__)

MAX_INPUT_LENGTH = 1000
FORBIDDEN_MARKERS = ('<script>', 'javascript:')
SUPPORTED_HOSTS = ('github.com', 'www.github.com')
DEFAULT_BRANCH = "main"

NAME_PATTERN = re.compile(r'^[A-Za-z0-9_.-]+$')


def _check_text(value: str, field_name: str) -> str:
    if len(value) > MAX_INPUT_LENGTH:
        raise ValueError(f"{field_name} exceeds {MAX_INPUT_LENGTH} characters")
    lowered = value.lower()
    if any(marker in lowered for marker in FORBIDDEN_MARKERS):
        raise ValueError(f"{field_name} contains forbidden content")
    return value


class ScanRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    repo_url: str
    branch: Optional[str] = None
    scan_type: str = SCAN_FULL

    @field_validator('repo_url')
    @classmethod
    def _validate_repo_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("repoUrl is required")
        return _check_text(value, "repoUrl")

    @field_validator('branch')
    @classmethod
    def _validate_branch(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return _check_text(value.strip(), "branch")

    @field_validator('scan_type')
    @classmethod
    def _validate_scan_type(cls, value: str) -> str:
        if value not in SCAN_TYPES:
            raise ValueError(f"scanType must be one of {', '.join(SCAN_TYPES)}")
        return value

    @classmethod
    def from_payload(cls, payload: Any) -> "ScanRequest":
        """Validates a camelCase request body; raises InvalidInput."""
        if not isinstance(payload, dict):
            raise InvalidInput("Scan request must be a JSON object")
        try:
            return cls(
                repo_url=payload.get('repoUrl'),
                branch=payload.get('branch'),
                scan_type=payload.get('scanType') or SCAN_FULL,
            )
        except ValidationError as e:
            messages = '; '.join(err['msg'] for err in e.errors())
            raise InvalidInput(f"Invalid scan request: {messages}") from e

    def repo_ref(self) -> RepoRef:
        """Target repository; an explicit branch wins over one embedded in the URL."""
        ref = parse_repo_url(self.repo_url)
        return RepoRef(ref.host, ref.owner, ref.repo, self.branch or ref.branch or DEFAULT_BRANCH)


def parse_repo_url(url: str) -> RepoRef:
    """
    Parses https://<host>/<owner>/<repo>[/tree/<branch>].
    The returned branch is None when the URL carries none.
    """
    parsed = urlparse((url or '').strip())
    if parsed.scheme != 'https' or not parsed.hostname:
        raise InvalidInput(f"Repository URL must be an https URL: {url!r}")
    host = parsed.hostname.lower()
    if host not in SUPPORTED_HOSTS:
        raise InvalidInput(f"Unsupported source host '{host}'")

    parts = [part for part in parsed.path.split('/') if part]
    if len(parts) < 2:
        raise InvalidInput(f"Repository URL must name an owner and a repository: {url!r}")
    owner, repo = parts[0], parts[1]
    if repo.endswith('.git'):
        repo = repo[:-len('.git')]
    if not NAME_PATTERN.match(owner) or not NAME_PATTERN.match(repo):
        raise InvalidInput(f"Invalid owner or repository name in {url!r}")

    branch = None
    if len(parts) > 3 and parts[2] == 'tree':
        # Branch names may contain slashes
        branch = '/'.join(parts[3:])
    return RepoRef(host='github.com', owner=owner, repo=repo, branch=branch)


def error_response(message: str) -> dict[str, Any]:
    return {"success": False, "error": message}


def handle_scan_request(payload: Any, controller, cancel_event=None) -> dict[str, Any]:
    """
    Runs one scan for a request body and always returns a response dict.
    Degraded scans still report success; only invalid input and hard
    failures produce success: false.
    """
    try:
        request = ScanRequest.from_payload(payload)
        ref = request.repo_ref()
    except InvalidInput as e:
        logger.warning(f"Rejected scan request: {e}")
        return error_response(str(e))

    try:
        result = controller.scan(ref, request.scan_type, cancel_event=cancel_event)
    except ScannerError as e:
        logger.error(f"Scan of {ref.full_name} failed: {e}")
        return error_response(str(e))
    return result.to_response()
