import logging
import os
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from vulntree.core.model import DependencyTreeNode, GavGeneralInfo, PackageType, RootNode
from vulntree.exceptions import CommandError
from vulntree.managers.base import BuildContext, PackageManager, RawOutput, log_command_error

MAVEN_TREE_COMMAND = ["mvn", "dependency:tree", "-B"]
RE_LOG_LEVEL = re.compile(r"^\[(INFO|WARNING|WARN|ERROR|DEBUG)\] ?")
RE_PLUGIN_HEADER = re.compile(r"(?:maven-dependency-plugin|\bdependency):\S+:tree\b.*@ \S+")
RE_TREE_LINE = re.compile(r"^[|\s]*[+\\]- \S")
RE_PROPERTY = re.compile(r"\$\{([^}]+)\}")
PROJECT_VERSION_PROPERTIES = ("project.version", "pom.version", "project.parent.version", "parent.version")


@dataclass
class PomTree:
    """Skeleton of a multi-module project: one node per pom.xml, keyed by its GAV."""

    pom_gav: str
    pom_path: str = ""
    parent_gav: str = ""
    children: List["PomTree"] = field(default_factory=list)
    raw_dependencies: List[str] = field(default_factory=list)

    def add_child(self, child: "PomTree") -> None:
        self.children.append(child)

    def deep_search(self, pom_gav: str) -> Optional["PomTree"]:
        if self.pom_gav == pom_gav:
            return self
        for child in self.children:
            found = child.deep_search(pom_gav)
            if found is not None:
                return found
        return None

    def walk(self) -> Iterator["PomTree"]:
        yield self
        for child in self.children:
            yield from child.walk()


def dependencies_level(raw_line: str) -> int:
    """
    Position of the first word character. Comparing the levels of two consecutive
    lines tells whether the second is a child (greater) or a sibling (equal):

        +- org.springframework:spring-aop:jar:2.5.6:compile
        |  \\- aopalliance:aopalliance:jar:1.0:compile
    """
    match = re.search(r"\w", raw_line or "")
    return match.start() if match else -1


def get_dependency_info(raw_line: str) -> Tuple[str, str, str, str]:
    """'|  +- javax.mail:mail:jar:1.4:compile' -> ('javax.mail', 'mail', '1.4', 'compile')"""
    parts = raw_line.split(":")
    if len(parts) < 4:
        raise ValueError(f"Unexpected dependency line: {raw_line!r}")
    start = dependencies_level(parts[0])
    scope = parts[-1].split()
    return parts[0][start:], parts[1], parts[-2], scope[0] if scope else ""


def get_project_info(raw_line: str) -> Tuple[str, str, str]:
    """'org.jfrog.test:multi1:jar:3.7-SNAPSHOT' -> ('org.jfrog.test', 'multi1', '3.7-SNAPSHOT')"""
    group, artifact, version, _ = get_dependency_info(re.sub(r"\s", "", raw_line) + ":dummyScope")
    return group, artifact, version


def filter_parent_dependencies(child_lines: List[str], parent_lines: Optional[List[str]]) -> List[str]:
    """mvn dependency:tree repeats the parent's dependencies in every child module."""
    if parent_lines is None:
        return child_lines
    raw_parent = " ".join(parent_lines)
    return [line for line in child_lines if line[dependencies_level(line):] not in raw_parent]


def parse_dependency_tree_output(output: str) -> Dict[str, List[str]]:
    """Splits mvn dependency:tree output into raw dependency lines per module GAV."""
    sections: Dict[str, List[str]] = {}
    current: Optional[List[str]] = None
    expect_header = False

    for line in output.splitlines():
        line = RE_LOG_LEVEL.sub("", line.rstrip())
        if RE_PLUGIN_HEADER.search(line):
            expect_header = True
            current = None
            continue
        if expect_header:
            if not line.strip():
                continue
            group, artifact, version = get_project_info(line)
            current = sections.setdefault(f"{group}:{artifact}:{version}", [])
            expect_header = False
            continue
        if current is not None:
            if RE_TREE_LINE.match(line):
                current.append(line)
            else:
                current = None
    return sections


def read_pom_details(pom_path: str, cache: Dict[str, Tuple[str, str]]) -> Tuple[str, str]:
    """Returns (gav, parent gav) of a pom.xml. groupId and version fall back to the parent's."""
    if pom_path in cache:
        return cache[pom_path]

    project = ET.parse(pom_path).getroot()
    ns = project.tag[:project.tag.index("}") + 1] if project.tag.startswith("{") else ""

    def text(element: Optional[ET.Element], tag: str) -> str:
        if element is None:
            return ""
        child = element.find(f"{ns}{tag}")
        return child.text.strip() if child is not None and child.text else ""

    parent = project.find(f"{ns}parent")
    parent_group, parent_artifact, parent_version = (text(parent, t) for t in ("groupId", "artifactId", "version"))

    properties = {}
    properties_element = project.find(f"{ns}properties")
    if properties_element is not None:
        for prop in properties_element:
            properties[prop.tag[len(ns):]] = (prop.text or "").strip()

    def resolve(value: str) -> str:
        def replace(match: "re.Match") -> str:
            key = match.group(1)
            if key in properties:
                return properties[key]
            if key in PROJECT_VERSION_PROPERTIES:
                return parent_version
            return match.group(0)
        return RE_PROPERTY.sub(replace, value)

    group = resolve(text(project, "groupId") or parent_group)
    artifact = resolve(text(project, "artifactId"))
    version = resolve(text(project, "version") or parent_version)

    pom_gav = f"{group}:{artifact}:{version}" if artifact else ""
    parent_gav = f"{parent_group}:{parent_artifact}:{parent_version}" if parent_artifact else ""
    cache[pom_path] = (pom_gav, parent_gav)
    return cache[pom_path]


def add_prototype_node(forest: List[PomTree], node: PomTree) -> None:
    """Hangs node under its parent, creating a placeholder parent when none is known yet."""
    if not node.parent_gav:
        forest.append(node)
        return
    for tree in forest:
        parent = tree.deep_search(node.parent_gav)
        if parent is not None:
            parent.add_child(node)
            return
    placeholder = PomTree(node.parent_gav)
    placeholder.add_child(node)
    forest.append(placeholder)


def build_prototype_pom_tree(pom_paths: List[str], context: BuildContext) -> List[PomTree]:
    forest: List[PomTree] = []
    pom_cache = context.cache.setdefault("pom_details", {})

    for pom_path in sorted(pom_paths, key=len):
        try:
            pom_gav, parent_gav = read_pom_details(pom_path, pom_cache)
        except (OSError, ET.ParseError) as e:
            logging.error(f"Could not parse pom.xml GAV of {pom_path}: {e}")
            continue
        if not pom_gav:
            logging.warning(f"{pom_path} has no artifactId. Skipping.")
            continue

        index = next((i for i, tree in enumerate(forest) if tree.pom_gav == pom_gav), -1)
        node = forest.pop(index) if index > -1 else PomTree(pom_gav)
        node.pom_path = os.path.dirname(pom_path)
        node.parent_gav = parent_gav
        add_prototype_node(forest, node)

    # Parents outside the workspace only held their modules together
    prototype: List[PomTree] = []
    for tree in forest:
        if tree.pom_path:
            prototype.append(tree)
        else:
            prototype.extend(tree.children)
    return prototype


class MavenManager(PackageManager):
    @property
    def name(self) -> str:
        return "Maven"

    @property
    def pkg_type(self) -> PackageType:
        return PackageType.MAVEN

    @property
    def descriptor_files(self) -> List[str]:
        return ["pom.xml"]

    @property
    def version_command(self) -> List[str]:
        return ["mvn", "-version"]

    def build_all(self, descriptors: List[str], context: BuildContext) -> List[RootNode]:
        if not descriptors:
            return []
        if not self.verify_installed(context):
            return []

        logging.info("Generating Maven Dependency Tree")
        roots = []
        for pom in build_prototype_pom_tree(descriptors, context):
            context.check_cancelled()
            logging.info(f"Analyzing pom.xml at {pom.pom_path}")
            pom_file = os.path.join(pom.pom_path, "pom.xml")
            roots.append(self.build_with(pom_file, context, lambda raw, pom=pom: self.parse_project(pom, raw)))
        return roots

    def run(self, descriptor: str, context: BuildContext) -> RawOutput:
        cwd = os.path.dirname(descriptor) or "."
        try:
            return RawOutput({"": self.execute(MAVEN_TREE_COMMAND, cwd, context)})
        except CommandError as e:
            # A failing module stops the reactor, the modules before it are still printed
            try:
                usable = bool(parse_dependency_tree_output(e.stdout))
            except ValueError:
                usable = False
            if not usable:
                raise
            log_command_error(e, descriptor)
            return RawOutput({"": e.stdout}, partial=True)

    def parse(self, descriptor: str, raw: RawOutput) -> RootNode:
        pom_gav, parent_gav = read_pom_details(descriptor, {})
        if not pom_gav:
            raise ValueError(f"{descriptor} has no artifactId")
        pom = PomTree(pom_gav, os.path.dirname(descriptor), parent_gav)
        return self.parse_project(pom, raw)

    def parse_project(self, pom: PomTree, raw: RawOutput) -> RootNode:
        sections = parse_dependency_tree_output(raw.outputs.get("", ""))
        for tree in pom.walk():
            tree.raw_dependencies = sections.get(tree.pom_gav, [])
        return self._build_module(pom, None, None)

    def _build_module(self, pom: PomTree, parent_lines: Optional[List[str]],
                      parent: Optional[RootNode]) -> RootNode:
        group, artifact, version = pom.pom_gav.split(":", 2)
        pom_file = os.path.join(pom.pom_path, "pom.xml")
        info = GavGeneralInfo(artifact, version, [], pom_file, PackageType.MAVEN, group_id=group)
        root = RootNode(pom_file, PackageType.MAVEN, info, label=f"{group}:{artifact}", parent=parent)

        lines = pom.raw_dependencies
        if lines:
            lines = filter_parent_dependencies(lines, parent_lines)
            self.populate_tree(root, lines)

        for child_pom in pom.children:
            module = self._build_module(child_pom, lines, root)
            if not module.children:
                root.remove_child(module)
        return root

    def populate_tree(self, parent: DependencyTreeNode, lines: List[str]) -> None:
        if lines:
            self._populate(parent, lines, 0)

    def _populate(self, parent: DependencyTreeNode, lines: List[str], index: int) -> int:
        """
        Adds lines[index] and its following siblings under parent, recursing into
        deeper lines. Returns the index of the last line consumed.
        """
        while index < len(lines):
            line = lines[index]
            group, artifact, version, scope = get_dependency_info(line)
            info = GavGeneralInfo(artifact, version, [scope] if scope else [], "", PackageType.MAVEN, group_id=group)
            # A looping dependency still owns its lines; they go to a detached node
            child = self.add_dependency(parent, info, label=f"{group}:{artifact}") or DependencyTreeNode(info)

            level = dependencies_level(line)
            while index + 1 < len(lines) and dependencies_level(lines[index + 1]) > level:
                index = self._populate(child, lines, index + 1)
            if index + 1 >= len(lines) or dependencies_level(lines[index + 1]) != level:
                return index
            index += 1
        return index
