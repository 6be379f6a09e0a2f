# lockdown_scanner/query_builder.py
import logging

from .models import PackageQuery
from .parser import LOCKFILE, manifest_kind, parse_manifest

logger = logging.getLogger(__name__)


def _ordered_paths(manifests: dict[str, str]) -> list[str]:
    """Lockfiles first, then manifests; insertion order kept within each group."""
    lockfiles = [p for p in manifests if manifest_kind(p) == LOCKFILE]
    others = [p for p in manifests if manifest_kind(p) != LOCKFILE]
    return lockfiles + others


def build_queries(manifests: dict[str, str]) -> list[PackageQuery]:
    """
    Parses every fetched manifest and deduplicates the resulting queries.

    Lockfile-derived versions are processed first. A manifest entry for a
    package that some lockfile already pinned is dropped, so a declared range
    never adds a second query next to the resolved version.
    """
    queries: dict[tuple[str, str, str], PackageQuery] = {}
    locked_names: set[tuple[str, str]] = set()

    for path in _ordered_paths(manifests):
        from_lockfile = manifest_kind(path) == LOCKFILE
        for query in parse_manifest(path, manifests[path]):
            if not from_lockfile and (query.ecosystem, query.name) in locked_names:
                continue
            if query.key in queries:
                continue
            queries[query.key] = query
            if from_lockfile:
                locked_names.add((query.ecosystem, query.name))

    result = list(queries.values())
    pinned = sum(1 for q in result if q.is_pinned)
    logger.info(f"Built {len(result)} package queries ({pinned} pinned, {len(result) - pinned} unpinned)")
    return result
