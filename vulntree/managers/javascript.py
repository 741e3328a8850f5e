import json
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

from vulntree.core.model import BuildError, DependencyTreeNode, GeneralInfo, PackageType, RootNode
from vulntree.exceptions import CommandError
from vulntree.managers.base import BuildContext, PackageManager, RawOutput, log_command_error, read_json_file

NPM_LS_COMMANDS = (
    ("prod", ["npm", "ls", "--json", "--all", "--only=prod"]),
    ("dev", ["npm", "ls", "--json", "--all", "--only=dev"]),
)
YARN_LIST_COMMAND = ["yarn", "list", "--json", "--no-progress"]
PNPM_LS_COMMAND = ["pnpm", "ls", "--depth", "Infinity", "--json", "--long"]
NOT_INSTALLED_SUFFIX = " [Not installed]"


def split_package(text: str) -> Tuple[str, str]:
    """'@scope/name@1.0.0' -> ('@scope/name', '1.0.0')"""
    index = text.rfind("@")
    if index <= 0:
        return text, ""
    return text[:index], text[index + 1:]


def npm_scope(name: str) -> Optional[str]:
    """'@types/node' -> 'types'"""
    if name.startswith("@") and "/" in name:
        return name[1:name.index("/")]
    return None


def project_info(descriptor: str) -> Tuple[str, str]:
    """Name and version from the package.json next to descriptor."""
    directory = os.path.dirname(descriptor)
    package_json = read_json_file(os.path.join(directory, "package.json"))
    name = package_json.get("name") or os.path.basename(directory) or descriptor
    return name, package_json.get("version", "")


class JavaScriptManager(PackageManager):
    """Shared plumbing of the npm, Yarn and pnpm builders."""

    def execute_tolerant(self, command: List[str], cwd: str, context: BuildContext,
                         descriptor: str) -> Tuple[str, bool]:
        """
        Runs command and returns (stdout, partial). These tools exit non-zero on
        missing or extraneous packages while still printing a usable tree.
        """
        try:
            return self.execute(command, cwd, context), False
        except CommandError as e:
            if not e.stdout.strip():
                raise
            log_command_error(e, descriptor)
            return e.stdout, True

    def new_root(self, descriptor: str, name: str, version: str) -> RootNode:
        return RootNode(descriptor, self.pkg_type, GeneralInfo(name, version, [], descriptor, self.pkg_type))


class NpmManager(JavaScriptManager):
    @property
    def name(self) -> str:
        return "npm"

    @property
    def pkg_type(self) -> PackageType:
        return PackageType.NPM

    @property
    def descriptor_files(self) -> List[str]:
        return ["package.json"]

    @property
    def version_command(self) -> List[str]:
        return ["npm", "--version"]

    def run(self, descriptor: str, context: BuildContext) -> RawOutput:
        cwd = os.path.dirname(descriptor) or "."
        raw = RawOutput()
        for scope, command in NPM_LS_COMMANDS:
            stdout, partial = self.execute_tolerant(command, cwd, context, descriptor)
            raw.outputs[scope] = stdout
            raw.partial = raw.partial or partial
        return raw

    def parse(self, descriptor: str, raw: RawOutput) -> RootNode:
        root: Optional[RootNode] = None
        for scope, output in raw.outputs.items():
            npm_list = json.loads(output) if output.strip() else {}
            if root is None:
                name = npm_list.get("name") or project_info(descriptor)[0]
                root = self.new_root(descriptor, name, npm_list.get("version", ""))
            self._populate(root, npm_list.get("dependencies") or {}, scope)

        if root is None:
            root = self.new_root(descriptor, *project_info(descriptor))
        if raw.partial:
            root.label += NOT_INSTALLED_SUFFIX
        return root

    def _populate(self, parent: DependencyTreeNode, dependencies: Dict[str, Any], global_scope: str) -> None:
        for name, dependency in dependencies.items():
            version = (dependency or {}).get("version")
            if not version:
                logging.debug(f"Skipping {name}: no installed version")
                continue
            scopes = [global_scope] if global_scope else []
            scope = npm_scope(name)
            if scope:
                scopes.append(scope)
            node = self.add_dependency(parent, GeneralInfo(name, version, scopes, "", PackageType.NPM))
            if node is not None:
                self._populate(node, dependency.get("dependencies") or {}, global_scope)


class YarnManager(JavaScriptManager):
    @property
    def name(self) -> str:
        return "Yarn"

    @property
    def pkg_type(self) -> PackageType:
        return PackageType.YARN

    @property
    def descriptor_files(self) -> List[str]:
        return ["yarn.lock"]

    @property
    def version_command(self) -> List[str]:
        return ["yarn", "--version"]

    def build(self, descriptor: str, context: BuildContext) -> RootNode:
        cwd = os.path.dirname(descriptor) or "."
        try:
            version = self.execute(self.version_command, cwd, context).strip()
        except CommandError as e:
            log_command_error(e, descriptor)
            return self.failed_root(descriptor, BuildError.NOT_INSTALLED)

        if self._major_version(version) >= 2:
            context.warn(f"{descriptor}: Yarn {version} is not supported, only Yarn 1 projects can be scanned.")
            return self.failed_root(descriptor, BuildError.NOT_SUPPORTED)
        return super().build(descriptor, context)

    def run(self, descriptor: str, context: BuildContext) -> RawOutput:
        cwd = os.path.dirname(descriptor) or "."
        stdout, partial = self.execute_tolerant(YARN_LIST_COMMAND, cwd, context, descriptor)
        return RawOutput({"": stdout}, partial)

    def parse(self, descriptor: str, raw: RawOutput) -> RootNode:
        root = self.new_root(descriptor, *project_info(descriptor))
        trees = self._read_trees(raw.outputs.get("", ""))
        self._populate(root, trees)
        logging.debug(f"Yarn tree built. {len(root.children)} top-level packages.")
        return root

    @staticmethod
    def _read_trees(output: str) -> List[Dict[str, Any]]:
        # yarn prints one JSON document per line: warnings, info and finally the tree
        for line in output.splitlines():
            if not line.strip():
                continue
            message = json.loads(line)
            if message.get("type") == "tree":
                return message.get("data", {}).get("trees") or []
        raise ValueError("yarn list produced no dependency tree")

    def _populate(self, parent: DependencyTreeNode, trees: List[Dict[str, Any]]) -> None:
        for tree in trees:
            # Shadow entries point at hoisted packages and carry no exact version
            if tree.get("shadow"):
                continue
            name, version = split_package(tree.get("name", ""))
            if not name or not version:
                continue
            node = self.add_dependency(parent, GeneralInfo(name, version, [], "", PackageType.YARN))
            if node is not None:
                self._populate(node, tree.get("children") or [])

    @staticmethod
    def _major_version(version: str) -> int:
        try:
            return int(version.split(".", 1)[0])
        except ValueError:
            return 0


class PnpmManager(JavaScriptManager):
    @property
    def name(self) -> str:
        return "pnpm"

    @property
    def pkg_type(self) -> PackageType:
        return PackageType.PNPM

    @property
    def descriptor_files(self) -> List[str]:
        return ["pnpm-lock.yaml"]

    @property
    def version_command(self) -> List[str]:
        return ["pnpm", "--version"]

    def run(self, descriptor: str, context: BuildContext) -> RawOutput:
        cwd = os.path.dirname(descriptor) or "."
        stdout, partial = self.execute_tolerant(PNPM_LS_COMMAND, cwd, context, descriptor)
        return RawOutput({"": stdout}, partial)

    def parse(self, descriptor: str, raw: RawOutput) -> RootNode:
        projects = json.loads(raw.outputs.get("", "") or "[]")
        if isinstance(projects, dict):
            projects = [projects]

        name, version = project_info(descriptor)
        if projects and not os.path.exists(os.path.join(os.path.dirname(descriptor), "package.json")):
            name = projects[0].get("name") or name
            version = projects[0].get("version") or version
        root = self.new_root(descriptor, name, version)

        for project in projects:
            self._populate(root, project.get("dependencies") or {}, "prod")
            self._populate(root, project.get("devDependencies") or {}, "dev")
        return root

    def _populate(self, parent: DependencyTreeNode, dependencies: Dict[str, Any], scope: str) -> None:
        for key, dependency in dependencies.items():
            version = (dependency or {}).get("version", "")
            # Workspace and local packages are not published components
            if not version or version.startswith(("link:", "file:")):
                continue
            name = dependency.get("from") or key
            node = self.add_dependency(parent, GeneralInfo(name, version, [scope], "", PackageType.PNPM))
            if node is not None:
                self._populate(node, dependency.get("dependencies") or {}, scope)
