"""
Maps a flat list of scan issues back onto a dependency tree.

For every (issue, affected component) pair the tree is searched depth-first for
the nodes carrying that component. The chain from the project root down to each
match is an impacted path; its first-level node is the direct dependency that
pulls the vulnerable component into the project.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from vulntree.core.issues import CacheEntry, IssueRecord, issue_record, merge_issue, split_component_key
from vulntree.core.model import DependencyTreeNode, IssueKey, PackageType, RootNode, Severity


@dataclass(frozen=True)
class ImpactedPath:
    nodes: Tuple[DependencyTreeNode, ...]

    @property
    def component_ids(self) -> List[str]:
        return [root_graph_name(self.nodes[0])] + [n.component_id for n in self.nodes[1:]]

    @property
    def direct_dependency(self) -> Optional[DependencyTreeNode]:
        return self.nodes[1] if len(self.nodes) > 1 else None

    @property
    def affected(self) -> DependencyTreeNode:
        return self.nodes[-1]


@dataclass
class ImpactGraph:
    issue_id: str
    component_id: str
    root: RootNode
    paths: List[ImpactedPath] = field(default_factory=list)
    paths_count: int = 0
    paths_limit: int = RootNode.IMPACT_PATHS_LIMIT

    @property
    def name(self) -> str:
        return root_graph_name(self.root)

    @property
    def truncated(self) -> bool:
        return self.paths_count > len(self.paths)

    def to_tree(self) -> Dict[str, Any]:
        """Recorded paths merged into nested {'name', 'children'} dicts."""
        tree: Dict[str, Any] = {"name": self.name, "children": []}
        for path in self.paths:
            level = tree
            for node in path.nodes[1:]:
                for child in level["children"]:
                    if child["name"] == node.component_id:
                        level = child
                        break
                else:
                    new_level = {"name": node.component_id, "children": []}
                    level["children"].append(new_level)
                    level = new_level
        tree["paths_count"] = self.paths_count
        tree["paths_limit"] = self.paths_limit
        return tree


@dataclass
class DependencyIssues:
    """Everything the scan reported about one dependency of a project."""

    component_id: str
    name: str
    version: str
    pkg_type: PackageType
    indirect: bool
    issues: List[IssueRecord] = field(default_factory=list)
    licenses: List[str] = field(default_factory=list)
    top_severity: Severity = Severity.NORMAL
    impact_graphs: Dict[str, ImpactGraph] = field(default_factory=dict)


def root_graph_name(root: DependencyTreeNode) -> str:
    name = root.component_id
    return name[:-1] if name.endswith(":") else name


def iter_issues(response: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    for kind in ("violations", "vulnerabilities"):
        for issue in response.get(kind) or []:
            if issue.get("issue_id"):
                yield issue


def affected_component_id(component_key: str, component: Optional[Dict[str, Any]]) -> str:
    component = component or {}
    name, version = component.get("package_name"), component.get("package_version")
    if name and version:
        return f"{name}:{version}"
    name, version = split_component_key(component_key)
    return f"{name}:{version}"


def find_impacted_paths(root: RootNode, component_id: str, limit: int) -> Tuple[List[ImpactedPath], int]:
    """
    Depth-first search for component_id below root. Returns the first `limit`
    paths found together with the total number of occurrences.
    """
    paths: List[ImpactedPath] = []
    count = 0

    def visit(node: DependencyTreeNode, chain: Tuple[DependencyTreeNode, ...]) -> None:
        nonlocal count
        for child in node.children:
            if isinstance(child, RootNode):
                continue
            current = chain + (child,)
            if child.component_id == component_id:
                count += 1
                if len(paths) < limit:
                    paths.append(ImpactedPath(current))
                continue
            visit(child, current)

    visit(root, (root,))
    return paths, count


def create_impacted_paths(root: RootNode, response: Dict[str, Any],
                          paths_limit: int = RootNode.IMPACT_PATHS_LIMIT) -> Dict[Tuple[str, str], ImpactGraph]:
    graphs: Dict[Tuple[str, str], ImpactGraph] = {}
    searched: Dict[str, Tuple[List[ImpactedPath], int]] = {}

    for issue in iter_issues(response):
        for component_key, component in (issue.get("components") or {}).items():
            component_id = affected_component_id(component_key, component)
            key = (issue["issue_id"], component_id)
            if key in graphs:
                continue
            if component_id not in searched:
                searched[component_id] = find_impacted_paths(root, component_id, paths_limit)
            paths, count = searched[component_id]
            if not count:
                continue
            graphs[key] = ImpactGraph(issue["issue_id"], component_id, root, list(paths), count, paths_limit)

    return graphs


def get_direct_components(graphs: Iterable[ImpactGraph]) -> Set[str]:
    direct = set()
    for graph in graphs:
        for path in graph.paths:
            if path.direct_dependency is not None:
                direct.add(path.direct_dependency.component_id)
    return direct


def populate_dependency_issues(root: RootNode, response: Dict[str, Any],
                               graphs: Dict[Tuple[str, str], ImpactGraph]) -> List[DependencyIssues]:
    direct = get_direct_components(graphs.values())
    dependencies: Dict[str, DependencyIssues] = {}

    for issue in iter_issues(response):
        for component_key, component in (issue.get("components") or {}).items():
            component_id = affected_component_id(component_key, component)
            graph = graphs.get((issue["issue_id"], component_id))
            if graph is None:
                continue

            dependency = dependencies.get(component_id)
            if dependency is None:
                name, version = split_component_key(component_id)
                dependency = DependencyIssues(
                    component_id=component_id,
                    name=name,
                    version=version,
                    pkg_type=root.pkg_type,
                    indirect=component_id not in direct,
                )
                dependencies[component_id] = dependency

            record = merge_issue(dependency.issues, issue_record(issue, component))
            if record.severity > dependency.top_severity:
                dependency.top_severity = record.severity
            dependency.impact_graphs.setdefault(issue["issue_id"], graph)

    for license_info in response.get("licenses") or []:
        name = license_info.get("license_name") or license_info.get("license_key")
        for component_key, component in (license_info.get("components") or {}).items():
            dependency = dependencies.get(affected_component_id(component_key, component))
            if dependency is not None and name and name not in dependency.licenses:
                dependency.licenses.append(name)

    return sorted(dependencies.values(), key=lambda d: -d.top_severity)


def apply_scan_results(root: RootNode, entries: Dict[str, Optional[CacheEntry]]) -> None:
    """Annotate every dependency node of root with its own scan result."""
    for node in root.iter_dependencies():
        node.issues = {}
        node.licenses = set()
        entry = entries.get(node.component_id)
        if entry is None:
            node.top_severity = Severity.PENDING
            continue
        node.top_severity = Severity.NORMAL
        for record in entry.issues:
            node.add_issue(IssueKey(record.issue_id, record.severity, node.component_id))
        node.licenses.update(entry.licenses)
