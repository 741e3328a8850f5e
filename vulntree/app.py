import asyncio
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from vulntree.config import Settings, settings as default_settings
from vulntree.core.cache import ScanCache
from vulntree.core.factory import create_dependency_trees
from vulntree.core.impact import (
    DependencyIssues,
    ImpactedPath,
    ImpactGraph,
    apply_scan_results,
    create_impacted_paths,
    populate_dependency_issues,
)
from vulntree.core.issues import CacheEntry, to_graph_response
from vulntree.core.model import DependencyTreeNode, GeneralInfo, PackageType, RootNode, short_component_id
from vulntree.core.scanner import ScanClient, ScanScheduler
from vulntree.exceptions import RemoteScanError, ScanCancelledError, ScanInProgressError
from vulntree.managers import BuildContext, locate_descriptors

NotifyCallback = Callable[[str, str], None]
ProgressCallback = Callable[[int, int], None]


def log_notice(message: str, severity: str = "information") -> None:
    level = {"warning": logging.WARNING, "error": logging.ERROR}.get(severity, logging.INFO)
    logging.log(level, message)


@dataclass
class ScanReport:
    quick_scan: bool
    roots: int = 0
    scanned: int = 0
    cached: int = 0
    missing: int = 0
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    dependencies: Dict[RootNode, List[DependencyIssues]] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return bool(self.errors)

    def add_results(self, results: Dict[str, CacheEntry]) -> None:
        self.scanned += len(results)
        self.missing += sum(1 for entry in results.values() if entry.is_missing)


class Workspace:
    """
    Dependency trees of one workspace directory, rebuilt on every refresh.

    The current tree is replaced only once a scan completes; a cancelled scan
    leaves the previous tree in place.
    """

    def __init__(self, path: str, settings: Optional[Settings] = None, cache: Optional[ScanCache] = None,
                 client: Optional[ScanClient] = None, notify: Optional[NotifyCallback] = None,
                 on_progress: Optional[ProgressCallback] = None):
        self.path = os.path.abspath(path)
        self.settings = settings or default_settings
        self.cache = cache if cache is not None else ScanCache(self.settings.cache_path, self.settings.CACHE_TTL_SECONDS)
        self._client = client
        self._notify = notify or log_notice
        self._on_progress = on_progress
        self._tree: Optional[DependencyTreeNode] = None
        self._impacts: Dict[Tuple[str, str], List[ImpactGraph]] = {}
        self._scanning = False
        self._cancel_event = threading.Event()
        self.last_report: Optional[ScanReport] = None

    # --- ACCESSORS ---

    @property
    def scan_in_progress(self) -> bool:
        return self._scanning

    @property
    def tree(self) -> Optional[DependencyTreeNode]:
        return self._tree

    def get_tree(self) -> List[RootNode]:
        if self._tree is None:
            return []
        return [child for child in self._tree.children if isinstance(child, RootNode)]

    def get_impact_graphs(self, issue_id: str, component_id: str) -> List[ImpactGraph]:
        return list(self._impacts.get((issue_id, short_component_id(component_id)), []))

    def get_impacted_paths(self, issue_id: str, component_id: str) -> List[ImpactedPath]:
        return [path for graph in self.get_impact_graphs(issue_id, component_id) for path in graph.paths]

    def remove_node(self, node: DependencyTreeNode) -> None:
        """Detaches node from its parent. The scan cache is left untouched."""
        parent = node.parent
        if parent is None:
            parent = self._tree
        if parent is None or not parent.remove_child(node):
            logging.debug(f"{node} is not attached to the tree")
        # Nested project roots are also referenced from the top level
        if self._tree is not None and parent is not self._tree:
            self._tree.children = [child for child in self._tree.children if child is not node]

    # --- SCAN ---

    def start_scan(self) -> None:
        if self._scanning:
            raise ScanInProgressError("A scan is already in progress")
        self._scanning = True
        self._cancel_event.clear()

    def cancel(self) -> None:
        if self._scanning:
            logging.info("Cancellation requested")
            self._cancel_event.set()

    def check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise ScanCancelledError("Scan cancelled")

    async def refresh(self, quick_scan: bool = True) -> Optional[ScanReport]:
        try:
            self.start_scan()
        except ScanInProgressError as e:
            logging.warning(str(e))
            self._notify(f"{e}. Please wait for it to finish.", "warning")
            return None

        try:
            tree, impacts, report = await self._scan(quick_scan)
        except ScanCancelledError:
            logging.info("Scan cancelled. Keeping the previous tree.")
            return None
        finally:
            self._scanning = False

        self._tree, self._impacts, self.last_report = tree, impacts, report

        for warning in report.warnings:
            self._notify(warning, "warning")
        if report.partial:
            self._notify(f"Scan completed with errors: {'; '.join(report.errors)}", "error")
        else:
            self._notify(f"Scan completed: {report.roots} projects, {report.scanned} components scanned.", "information")
        return report

    def _make_client(self) -> ScanClient:
        return self._client or ScanClient.from_settings(self.settings)

    async def _scan(self, quick_scan: bool) -> Tuple[DependencyTreeNode, Dict[Tuple[str, str], List[ImpactGraph]], ScanReport]:
        logging.info(f"Scan started ({'quick' if quick_scan else 'full'}): {self.path}")
        report = ScanReport(quick_scan=quick_scan)
        context = BuildContext(settings=self.settings, cancel_event=self._cancel_event)
        tree = DependencyTreeNode(GeneralInfo(os.path.basename(self.path) or self.path, "", [], "", PackageType.UNKNOWN))

        descriptors = await asyncio.to_thread(locate_descriptors, self.path, self.settings.EXCLUDE_DIRS)
        self.check_cancelled()
        roots = await create_dependency_trees(descriptors, tree, context)
        report.warnings.extend(context.warnings)
        report.roots = len(roots)
        self.check_cancelled()

        try:
            await self._scan_components(roots, quick_scan, report)
        except RemoteScanError as e:
            logging.error(f"Remote scan failed, merging cached results only: {e}")
            report.errors.append(str(e))

        impacts: Dict[Tuple[str, str], List[ImpactGraph]] = {}
        for root in roots:
            entries = {cid: self.cache.get(cid) for cid in root.project_details.component_ids()}
            apply_scan_results(root, entries)
            response = to_graph_response(entries)
            graphs = create_impacted_paths(root, response, self.settings.IMPACT_PATHS_LIMIT)
            for key, graph in graphs.items():
                impacts.setdefault(key, []).append(graph)
            report.dependencies[root] = populate_dependency_issues(root, response, graphs)

        tree.process_tree_issues()
        await asyncio.to_thread(self.cache.save)
        logging.info(f"Scan finished: {report.roots} roots, {report.scanned} scanned, {report.cached} cached")
        return tree, impacts, report

    async def _scan_components(self, roots: List[RootNode], quick_scan: bool, report: ScanReport) -> None:
        unique_ids = list(dict.fromkeys(cid for root in roots for cid in root.project_details.request_ids()))
        if not unique_ids:
            return

        async with self._make_client() as client:
            scheduler = ScanScheduler(client, self.cache, self.settings.PAGE_SIZE)
            if self.settings.SCAN_MODE == "graph":
                for root in roots:
                    self.check_cancelled()
                    request_ids = root.project_details.request_ids()
                    if quick_scan and all(self.cache.is_valid(cid) for cid in request_ids):
                        report.cached += len(request_ids)
                        continue
                    report.add_results(await scheduler.scan_graph(root))
            else:
                report.cached = len(unique_ids) - len(scheduler.select(unique_ids, quick_scan))
                report.add_results(await scheduler.scan_components(
                    unique_ids, quick_scan, self.check_cancelled, self._on_progress
                ))
