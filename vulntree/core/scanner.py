import httpx
import logging
import math
from typing import Any, Callable, Dict, Iterable, List, Optional

from vulntree.config import Settings
from vulntree.core.cache import ScanCache
from vulntree.core.issues import CacheEntry, entries_from_response
from vulntree.core.model import RootNode
from vulntree.exceptions import RemoteScanError

COMPONENTS_ENDPOINT = "/summary/component"
GRAPH_ENDPOINT = "/scan/graph"

ProgressCallback = Callable[[int, int], None]
CancelCheck = Callable[[], None]


class ScanClient:
    """Async client of the vulnerability scan service."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 45.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "ScanClient":
        return cls(settings.SCAN_URL, settings.SCAN_TOKEN, settings.SCAN_TIMEOUT, transport)

    async def __aenter__(self) -> "ScanClient":
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=100)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            limits=limits,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def scan_components(self, component_ids: List[str]) -> Dict[str, Any]:
        payload = {"component_details": [{"component_id": cid} for cid in component_ids]}
        return await self._post(COMPONENTS_ENDPOINT, payload)

    async def scan_dependency_graph(self, graph_request: Dict[str, Any]) -> Dict[str, Any]:
        return await self._post(GRAPH_ENDPOINT, graph_request)

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self._client is None:
            raise RuntimeError("ScanClient must be used as an async context manager")
        try:
            response = await self._client.post(endpoint, json=payload)
        except httpx.HTTPError as e:
            logging.error(f"Scan request to {endpoint} failed: {e}")
            raise RemoteScanError(f"Scan service unreachable: {e}") from e

        if response.status_code != 200:
            logging.error(f"Scan API Error {response.status_code}: {response.text}")
            raise RemoteScanError(
                f"Scan service answered {response.status_code} on {endpoint}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise RemoteScanError(f"Scan service returned invalid JSON: {e}") from e


def build_graph_request(root: RootNode) -> Dict[str, Any]:
    """
    {component_id, nodes} request of one project. Every dependency is listed
    once at the first level; empty node lists are omitted.
    """
    request: Dict[str, Any] = {"component_id": root.general_info.artifact_id}
    nodes = [{"component_id": cid} for cid in root.project_details.request_ids()]
    if nodes:
        request["nodes"] = nodes
    return request


class ScanScheduler:
    """Decides which components need a remote scan and sends them page by page."""

    def __init__(self, client: ScanClient, cache: ScanCache, page_size: int = 100):
        self.client = client
        self.cache = cache
        self.page_size = page_size

    def select(self, component_ids: Iterable[str], quick_scan: bool) -> List[str]:
        selected: Dict[str, None] = {}
        for cid in component_ids:
            if cid in selected:
                continue
            if quick_scan and self.cache.is_valid(cid):
                logging.debug(f"Cache hit: {cid}")
                continue
            selected[cid] = None
        return list(selected)

    async def scan_components(self, component_ids: Iterable[str], quick_scan: bool = True,
                              check_cancelled: Optional[CancelCheck] = None,
                              on_progress: Optional[ProgressCallback] = None) -> Dict[str, CacheEntry]:
        to_scan = self.select(component_ids, quick_scan)
        if not to_scan:
            logging.info("All components are cached. Nothing to scan.")
            return {}

        logging.info(f"Scanning {len(to_scan)} components...")
        results: Dict[str, CacheEntry] = {}
        total_pages = math.ceil(len(to_scan) / self.page_size)

        for page in range(total_pages):
            if check_cancelled:
                check_cancelled()

            start = page * self.page_size
            batch = to_scan[start:start + self.page_size]
            response = await self.client.scan_components(batch)

            entries = entries_from_response(response, batch)
            for cid, entry in entries.items():
                self.cache.put(cid, entry)
            results.update(entries)

            if on_progress:
                on_progress(page + 1, total_pages)

        return results

    async def scan_graph(self, root: RootNode) -> Dict[str, CacheEntry]:
        request = build_graph_request(root)
        if "nodes" not in request:
            return {}

        logging.info(f"Scanning dependency graph of {root.full_path} ({len(request['nodes'])} nodes)")
        response = await self.client.scan_dependency_graph(request)
        entries = entries_from_response(response, root.project_details.request_ids())
        for cid, entry in entries.items():
            self.cache.put(cid, entry)
        return entries
