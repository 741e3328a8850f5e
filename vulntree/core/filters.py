from typing import Iterable, Optional, Set

from vulntree.core.model import DependencyTreeNode, Severity


class TreeFilter:
    """
    Keeps the nodes matching every active criterion, plus their ancestors.
    A criterion left as None is not applied.
    """

    def __init__(self, severities: Optional[Iterable[Severity]] = None,
                 licenses: Optional[Iterable[str]] = None,
                 scopes: Optional[Iterable[str]] = None):
        self.severities: Optional[Set[Severity]] = set(severities) if severities is not None else None
        self.licenses: Optional[Set[str]] = set(licenses) if licenses is not None else None
        self.scopes: Optional[Set[str]] = set(scopes) if scopes is not None else None

    @property
    def active(self) -> bool:
        return any(c is not None for c in (self.severities, self.licenses, self.scopes))

    def matches(self, node: DependencyTreeNode) -> bool:
        if self.severities is not None and node.top_severity not in self.severities:
            return False
        if self.licenses is not None and not self.licenses.intersection(node.licenses):
            return False
        if self.scopes is not None:
            # Unscoped dependencies match any scope selection
            scopes = node.general_info.scopes
            if scopes and not self.scopes.intersection(scopes):
                return False
        return True

    def apply(self, root: DependencyTreeNode) -> DependencyTreeNode:
        """Returns a filtered copy of root. The copy shares issue and license data with the original."""
        clone = root.shallow_clone()
        for child in root.children:
            filtered = self._filter(child)
            if filtered is not None:
                clone.add_child(filtered)
        return clone

    def _filter(self, node: DependencyTreeNode) -> Optional[DependencyTreeNode]:
        kept_children = [c for c in (self._filter(child) for child in node.children) if c is not None]
        if not kept_children and not self.matches(node):
            return None
        clone = node.shallow_clone()
        for child in kept_children:
            clone.add_child(child)
        return clone


def with_issues() -> TreeFilter:
    return TreeFilter(severities=[s for s in Severity if s > Severity.PENDING])
