import os
import weakref
from dataclasses import dataclass, field, fields
from enum import Enum, IntEnum
from typing import Dict, Iterator, List, Optional, Set


class PackageType(str, Enum):
    GO = "go"
    MAVEN = "maven"
    NPM = "npm"
    YARN = "yarn"
    PNPM = "pnpm"
    NUGET = "nuget"
    PYTHON = "python"
    UNKNOWN = "unknown"

    @property
    def component_prefix(self) -> str:
        return COMPONENT_PREFIXES.get(self, "")


COMPONENT_PREFIXES: Dict[PackageType, str] = {
    PackageType.GO: "go://",
    PackageType.MAVEN: "gav://",
    PackageType.NPM: "npm://",
    PackageType.YARN: "npm://",
    PackageType.PNPM: "npm://",
    PackageType.NUGET: "nuget://",
    PackageType.PYTHON: "pypi://",
}

PREFIX_TO_TYPE: Dict[str, PackageType] = {
    "go://": PackageType.GO,
    "gav://": PackageType.MAVEN,
    "npm://": PackageType.NPM,
    "nuget://": PackageType.NUGET,
    "pypi://": PackageType.PYTHON,
}


def short_component_id(component_id: str) -> str:
    """'npm://left-pad:1.3.0' -> 'left-pad:1.3.0'"""
    if "://" in component_id:
        return component_id.split("://", 1)[1]
    return component_id


def package_type_of(component_id: str) -> PackageType:
    if "://" not in component_id:
        return PackageType.UNKNOWN
    prefix = component_id.split("://", 1)[0] + "://"
    return PREFIX_TO_TYPE.get(prefix, PackageType.UNKNOWN)


class Severity(IntEnum):
    """Ordered so that max() always picks the worst level."""

    NORMAL = 0
    PENDING = 1
    UNKNOWN = 2
    INFORMATION = 3
    LOW = 4
    MEDIUM = 5
    HIGH = 6
    CRITICAL = 7

    @classmethod
    def from_string(cls, value: Optional[str]) -> "Severity":
        if not value:
            return cls.UNKNOWN
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            return cls.UNKNOWN

    @property
    def label(self) -> str:
        return self.name.title()


class BuildError(str, Enum):
    NOT_INSTALLED = "Not installed"
    NOT_SUPPORTED = "Not supported"
    PARSE_ERROR = "Parse error"


@dataclass(frozen=True)
class ComponentIdentity:
    name: str
    version: str

    @property
    def component_id(self) -> str:
        return f"{self.name}:{self.version}"


@dataclass
class GeneralInfo:
    artifact_id: str
    version: str = ""
    scopes: List[str] = field(default_factory=list)
    path: str = ""
    pkg_type: PackageType = PackageType.UNKNOWN

    @property
    def name(self) -> str:
        return self.artifact_id

    @property
    def component_id(self) -> str:
        return f"{self.name}:{self.version}"

    @property
    def identity(self) -> ComponentIdentity:
        return ComponentIdentity(self.name, self.version)

    def update(self, other: "GeneralInfo") -> None:
        """Copy every non-empty field of other onto this info."""
        for f in fields(other):
            if not hasattr(self, f.name):
                continue
            value = getattr(other, f.name)
            if not value or value is PackageType.UNKNOWN:
                continue
            setattr(self, f.name, list(value) if isinstance(value, list) else value)


@dataclass
class GavGeneralInfo(GeneralInfo):
    group_id: str = ""

    @property
    def name(self) -> str:
        return f"{self.group_id}:{self.artifact_id}" if self.group_id else self.artifact_id


@dataclass
class IssueKey:
    issue_id: str
    severity: Severity = Severity.UNKNOWN
    # Component id of the node that raised the issue, stamped during aggregation
    component: str = ""


class DependencyTreeNode:
    def __init__(self, general_info: GeneralInfo, parent: Optional["DependencyTreeNode"] = None,
                 label: Optional[str] = None):
        self.general_info = general_info
        self.label = label if label is not None else general_info.name
        self.children: List["DependencyTreeNode"] = []
        self.issues: Dict[str, IssueKey] = {}
        self.licenses: Set[str] = set()
        self.top_severity = Severity.NORMAL
        self._parent: Optional[weakref.ref] = None
        if parent is not None:
            parent.add_child(self)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.component_id}>"

    @property
    def parent(self) -> Optional["DependencyTreeNode"]:
        return self._parent() if self._parent is not None else None

    @property
    def component_id(self) -> str:
        return self.general_info.component_id

    @property
    def description(self) -> str:
        return self.general_info.version

    @property
    def is_dependencies_tree_root(self) -> bool:
        return bool(self.general_info.path)

    def add_child(self, child: "DependencyTreeNode") -> "DependencyTreeNode":
        child._parent = weakref.ref(self)
        self.children.append(child)
        return child

    def remove_child(self, child: "DependencyTreeNode") -> bool:
        for index, candidate in enumerate(self.children):
            if candidate is child:
                del self.children[index]
                if child.parent is self:
                    child._parent = None
                return True
        return False

    def ancestors(self) -> Iterator["DependencyTreeNode"]:
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    def is_in_chain(self, component_id: str) -> bool:
        """True if this node or one of its ancestors carries component_id."""
        if self.component_id == component_id:
            return True
        return any(a.component_id == component_id for a in self.ancestors())

    def walk(self) -> Iterator["DependencyTreeNode"]:
        yield self
        for child in self.children:
            yield from child.walk()

    def add_issue(self, issue: IssueKey) -> None:
        self.issues.setdefault(issue.issue_id, issue)
        if issue.severity > self.top_severity:
            self.top_severity = issue.severity

    def process_tree_issues(self) -> Dict[str, IssueKey]:
        """
        Merge the issues of all descendants into this node and recompute the top severity.
        Children are re-sorted so the most severe, most structurally significant come first.
        """
        for issue in self.issues.values():
            if not issue.component:
                issue.component = self.component_id

        for child in self.children:
            for issue_id, issue in child.process_tree_issues().items():
                self.issues.setdefault(issue_id, issue)
            if child.top_severity > self.top_severity:
                self.top_severity = child.top_severity

        for issue in self.issues.values():
            if issue.severity > self.top_severity:
                self.top_severity = issue.severity

        self.sort_children()
        return self.issues

    def sort_children(self) -> None:
        self.children.sort(key=lambda c: (-c.top_severity, -len(c.children), len(c.issues)))

    def shallow_clone(self) -> "DependencyTreeNode":
        clone = DependencyTreeNode(self.general_info, label=self.label)
        clone.issues = self.issues
        clone.licenses = self.licenses
        clone.top_severity = self.top_severity
        return clone


class ProjectDetails:
    """Every component discovered under one project root, deduplicated."""

    def __init__(self, path: str, pkg_type: PackageType):
        self.path = path
        self.pkg_type = pkg_type
        self._components: Dict[ComponentIdentity, None] = {}

    def __len__(self) -> int:
        return len(self._components)

    def __contains__(self, identity: ComponentIdentity) -> bool:
        return identity in self._components

    def add(self, identity: ComponentIdentity) -> None:
        self._components[identity] = None

    def clear(self) -> None:
        self._components.clear()

    @property
    def components(self) -> List[ComponentIdentity]:
        return list(self._components)

    def component_ids(self) -> List[str]:
        return [c.component_id for c in self._components]

    def request_ids(self) -> List[str]:
        prefix = self.pkg_type.component_prefix
        return [prefix + c.component_id for c in self._components]


class RootNode(DependencyTreeNode):
    """A discovered project, identified by the descriptor it was built from."""

    IMPACT_PATHS_LIMIT = 20

    def __init__(self, full_path: str, pkg_type: PackageType, general_info: Optional[GeneralInfo] = None,
                 label: Optional[str] = None, parent: Optional[DependencyTreeNode] = None):
        self.full_path = full_path
        workspace = os.path.dirname(full_path)
        if general_info is None:
            general_info = GeneralInfo(os.path.basename(workspace) or full_path, "", [], full_path, pkg_type)
        if not general_info.path:
            general_info.path = full_path
        super().__init__(general_info, parent, label)
        self.project_details = ProjectDetails(workspace, pkg_type)
        self.build_error: Optional[BuildError] = None
        self.partial = False

    @property
    def workspace(self) -> str:
        return self.project_details.path

    @property
    def pkg_type(self) -> PackageType:
        return self.project_details.pkg_type

    def mark_failed(self, error: BuildError) -> None:
        self.build_error = error
        self.top_severity = Severity.UNKNOWN
        suffix = f" [{error.value}]"
        if not self.label.endswith(suffix):
            self.label += suffix

    def iter_dependencies(self) -> Iterator[DependencyTreeNode]:
        """Nodes owned by this project, not descending into nested project roots."""
        stack = list(reversed(self.children))
        while stack:
            node = stack.pop()
            if isinstance(node, RootNode):
                continue
            yield node
            stack.extend(reversed(node.children))

    def collect_components(self) -> None:
        for root in [self] + self.flatten_sub_roots():
            root.project_details.clear()
            for node in root.iter_dependencies():
                root.project_details.add(node.general_info.identity)

    def flatten_sub_roots(self) -> List["RootNode"]:
        """All project roots nested anywhere below this one."""
        sub_roots = []
        for child in self.children:
            if isinstance(child, RootNode):
                sub_roots.append(child)
                sub_roots.extend(child.flatten_sub_roots())
        return sub_roots

    def shallow_clone(self) -> "RootNode":
        clone = RootNode(self.full_path, self.pkg_type, self.general_info, self.label)
        clone.issues = self.issues
        clone.licenses = self.licenses
        clone.top_severity = self.top_severity
        clone.build_error = self.build_error
        clone.partial = self.partial
        clone.project_details = self.project_details
        return clone
