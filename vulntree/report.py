from typing import List, Optional, Tuple

from rich.console import Console
from rich.markup import escape
from rich.tree import Tree

from vulntree.core.filters import TreeFilter
from vulntree.core.model import DependencyTreeNode, RootNode, Severity

SEVERITY_STYLES = {
    Severity.CRITICAL: "bold magenta",
    Severity.HIGH: "bold red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "cyan",
    Severity.INFORMATION: "blue",
    Severity.UNKNOWN: "dim yellow",
    Severity.PENDING: "dim",
    Severity.NORMAL: "green",
}


def node_label(node: DependencyTreeNode) -> str:
    safe_name = escape(node.label)
    safe_ver = escape(node.description)
    style = SEVERITY_STYLES[node.top_severity]

    # Logic for Child Count Indicator
    child_count = len(node.children)
    count_suffix = f" [dim]↳[/] {child_count}" if child_count > 0 else ""

    if isinstance(node, RootNode):
        return f"[bold {style}]📂 {safe_name}[/]{count_suffix}"
    if node.issues:
        summary = escape(f"{len(node.issues)} issues, {node.top_severity.label}")
        return f"[{style}](!) {safe_name}[/] [dim]{safe_ver}[/] [{style}]({summary})[/]{count_suffix}"
    return f"[{style}](•) {safe_name} [dim]{safe_ver}[/]{count_suffix}"


def render_forest(roots: List[RootNode], title: str, tree_filter: Optional[TreeFilter] = None) -> Tree:
    forest = Tree(f"[b]{escape(title)}[/]")

    def add_nodes(tree_node: Tree, data_node: DependencyTreeNode) -> None:
        for child in data_node.children:
            if isinstance(child, RootNode):
                continue
            add_nodes(tree_node.add(node_label(child)), child)

    for root in roots:
        if tree_filter is not None and tree_filter.active:
            root = tree_filter.apply(root)
        add_nodes(forest.add(node_label(root)), root)
    return forest


def count_components(roots: List[RootNode]) -> Tuple[int, int]:
    total, vulnerable = set(), set()
    for root in roots:
        for node in root.iter_dependencies():
            total.add(node.component_id)
            # Ancestors also hold the issues of their descendants
            if any(issue.component == node.component_id for issue in node.issues.values()):
                vulnerable.add(node.component_id)
    return len(total), len(vulnerable)


def print_report(console: Console, roots: List[RootNode], title: str,
                 tree_filter: Optional[TreeFilter] = None) -> None:
    console.print(render_forest(roots, title, tree_filter))
    total, vulnerable = count_components(roots)
    console.print(
        f"[b]Projects:[/b] [cyan]{len(roots)}[/]  "
        f"[b]Total:[/b] [blue]{total}[/]  "
        f"[b]Vuln:[/b] [red]{vulnerable}[/]  "
        f"[b]Safe:[/b] [green]{total - vulnerable}[/]"
    )
