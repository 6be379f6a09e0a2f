# lockdown_scanner/osv_scanner.py
import logging

import requests
from pydantic import ValidationError

from .config import ScannerConfig
from .exceptions import UpstreamServiceError
from .models import PackageQuery
from .schemas import OsvBatchRequest, OsvBatchResponse, OsvPackage, OsvQuery, OsvVulnerability

logger = logging.getLogger(__name__)

# Mapping parser ecosystem names to OSV ecosystem names
# OSV ecosystems list: https://osv.dev/docs/#tag/ecosystems
ECOSYSTEM_MAP = {
    "python": "PyPI",
    "pypi": "PyPI",
    "node.js": "npm",
    "npm": "npm",
    "go": "Go",
    "maven": "Maven",
}


def osv_ecosystem(ecosystem: str) -> str:
    return ECOSYSTEM_MAP.get(ecosystem.lower(), ecosystem)


class OsvClient:
    """Batched lookups against the OSV.dev vulnerability database."""

    def __init__(self, config: ScannerConfig, session: requests.Session | None = None):
        self.config = config
        self.timeout = config.http_timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": config.user_agent})

    def build_request(self, queries: list[PackageQuery]) -> OsvBatchRequest:
        return OsvBatchRequest(queries=[
            OsvQuery(package=OsvPackage(name=q.name, ecosystem=osv_ecosystem(q.ecosystem)), version=q.version)
            for q in queries
        ])

    def query_batch(self, queries: list[PackageQuery]) -> list[tuple[PackageQuery, OsvVulnerability]]:
        """
        Sends one batch request for every pinned query.

        Returns one (query, record) pair per raw record, positionally matched
        to the request. Raises UpstreamServiceError on transport failure or a
        non-2xx status; malformed result entries are skipped individually.
        """
        pinned = [q for q in queries if q.is_pinned]
        skipped = len(queries) - len(pinned)
        if skipped:
            logger.info(f"Skipping {skipped} unpinned packages for OSV lookup")
        if not pinned:
            return []

        logger.info(f"Querying OSV API for {len(pinned)} packages...")
        body = self.build_request(pinned).model_dump()
        try:
            response = self.session.post(self.config.osv_batch_url, json=body, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise UpstreamServiceError(f"Error querying OSV API: {e}") from e
        if not response.ok:
            raise UpstreamServiceError(f"OSV API failed: {response.status_code}", status_code=response.status_code)
        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamServiceError("Error decoding OSV API response") from e

        try:
            results = OsvBatchResponse.model_validate(payload).results
        except ValidationError as e:
            raise UpstreamServiceError(f"OSV API response has no 'results' list: {e}") from e
        if len(results) != len(pinned):
            logger.warning(f"OSV returned {len(results)} result entries for {len(pinned)} queries")

        matches: list[tuple[PackageQuery, OsvVulnerability]] = []
        malformed = 0
        for query, entry in zip(pinned, results):
            if not isinstance(entry, dict):
                malformed += 1
                continue
            vulns = entry.get('vulns') or []
            if not isinstance(vulns, list):
                malformed += 1
                continue
            for raw in vulns:
                try:
                    matches.append((query, OsvVulnerability.model_validate(raw)))
                except ValidationError:
                    malformed += 1
        if malformed:
            logger.warning(f"Skipped {malformed} malformed OSV result entries")
        logger.info(f"OSV batch query successful ({response.status_code}); {len(matches)} vulnerability records.")
        return matches

    def get_vuln_details(self, vuln_id: str) -> OsvVulnerability | None:
        """Fetches the full record for one OSV id; None on any failure."""
        if not vuln_id:
            return None
        details_url = self.config.osv_vuln_url + vuln_id
        try:
            response = self.session.get(details_url, timeout=self.timeout)
            response.raise_for_status()
            return OsvVulnerability.model_validate(response.json())
        except requests.exceptions.RequestException as e:
            logger.warning(f"Error fetching OSV details for {vuln_id}: {e}")
        except ValueError as e:
            # json decode errors and pydantic ValidationError are both ValueErrors
            logger.warning(f"Error decoding OSV details for {vuln_id}: {e}")
        return None

    def hydrate(self, matches: list[tuple[PackageQuery, OsvVulnerability]],
                cancel_event=None) -> list[tuple[PackageQuery, OsvVulnerability]]:
        """
        Replaces batch stubs (id/modified only) with full records.
        Each unique id is fetched once; a failed fetch keeps the stub.
        """
        details_cache: dict[str, OsvVulnerability] = {}
        fetch_errors = 0
        for vuln_id in dict.fromkeys(record.id for _, record in matches):
            if cancel_event is not None and cancel_event.is_set():
                break
            details = self.get_vuln_details(vuln_id)
            if details is not None:
                details_cache[vuln_id] = details
            else:
                fetch_errors += 1
        if fetch_errors:
            logger.warning(f"Failed detail fetch for {fetch_errors} OSV IDs.")
        return [(query, details_cache.get(record.id, record)) for query, record in matches]
