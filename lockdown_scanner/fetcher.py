# lockdown_scanner/fetcher.py
import logging

from .exceptions import HostUnreachableError, UpstreamServiceError
from .github_client import GitHubClient

logger = logging.getLogger(__name__)

# Lockfiles first: their pinned versions take precedence over manifest ranges
LOCKFILE_CANDIDATES = (
    'package-lock.json',
    'npm-shrinkwrap.json',
    'yarn.lock',
    'pnpm-lock.yaml',
    'Pipfile.lock',
    'poetry.lock',
)
MANIFEST_CANDIDATES = (
    'package.json',
    'requirements.txt',
    'go.mod',
)
CANDIDATE_PATHS = LOCKFILE_CANDIDATES + MANIFEST_CANDIDATES


def fetch_repository_files(client: GitHubClient, owner: str, repo: str, branch: str,
                           paths: tuple[str, ...], cancel_event=None) -> dict[str, str]:
    """
    Retrieves each of `paths` from the repository, in order.

    Missing files are skipped silently and a failure on one path does not stop
    the others. If the host becomes unreachable, an UpstreamServiceError is
    raised whose `partial` holds the files fetched so far.
    """
    found: dict[str, str] = {}
    for path in paths:
        if cancel_event is not None and cancel_event.is_set():
            break
        try:
            content = client.get_file(owner, repo, branch, path)
        except HostUnreachableError as e:
            raise UpstreamServiceError(str(e), partial=dict(found)) from e
        except UpstreamServiceError as e:
            logger.warning(f"Could not fetch {path} from {owner}/{repo}@{branch}: {e}")
            continue
        if content is None:
            logger.debug(f"{path} not present in {owner}/{repo}@{branch}")
            continue
        found[path] = content
    return found


def fetch_manifests(client: GitHubClient, owner: str, repo: str, branch: str,
                    cancel_event=None) -> dict[str, str]:
    """Returns {path: content} for every dependency manifest/lockfile present."""
    manifests = fetch_repository_files(client, owner, repo, branch, CANDIDATE_PATHS, cancel_event)
    logger.info(f"Found {len(manifests)} dependency files in {owner}/{repo}@{branch}: {', '.join(manifests) or 'none'}")
    return manifests
