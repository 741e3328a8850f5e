import json
import logging
import os
import re
import sys
from typing import Any, Dict, List

from vulntree.core.model import DependencyTreeNode, GeneralInfo, PackageType, RootNode
from vulntree.exceptions import CommandError
from vulntree.managers.base import BuildContext, PackageManager, RawOutput, log_command_error

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

# Matches: package==1.0, package[extra]>=1.0, package
RE_REQ = re.compile(r"^([a-zA-Z0-9\-_.]+)(?:\[[^\]]*\])?\s*(([<>=!~]+)\s*([^;,\s]+))?")
PINNED_OPERATORS = ("==", "===")
DESCRIPTOR_PRIORITY = ("setup.py", "pyproject.toml", "poetry.lock")
STATIC_SCOPE = "static"


def is_requirements_file(filename: str) -> bool:
    return "requirements" in filename and filename.endswith(".txt")


class PythonManager(PackageManager):
    @property
    def name(self) -> str:
        return "PyPI (Pip)"

    @property
    def pkg_type(self) -> PackageType:
        return PackageType.PYTHON

    @property
    def descriptor_files(self) -> List[str]:
        return list(DESCRIPTOR_PRIORITY)

    def detect(self, files: List[str]) -> List[str]:
        found = super().detect(files)
        found.extend(sorted(f for f in files if is_requirements_file(f)))
        return found

    def verify_installed(self, context: BuildContext) -> bool:
        try:
            self.execute([context.settings.PYTHON_PATH, "--version"], os.getcwd(), context)
        except CommandError as e:
            logging.debug(f"Version probe failed: {e}")
            context.warn(f"Could not scan Python projects, because '{context.settings.PYTHON_PATH}' was not found.")
            return False
        return True

    def build_all(self, descriptors: List[str], context: BuildContext) -> List[RootNode]:
        # One project per directory, built from its most descriptive file
        by_directory: Dict[str, List[str]] = {}
        for descriptor in descriptors:
            by_directory.setdefault(os.path.dirname(descriptor), []).append(descriptor)
        primary = [min(files, key=self._priority) for files in by_directory.values()]
        return super().build_all(primary, context)

    @staticmethod
    def _priority(descriptor: str) -> int:
        filename = os.path.basename(descriptor)
        if filename in DESCRIPTOR_PRIORITY:
            return DESCRIPTOR_PRIORITY.index(filename)
        return len(DESCRIPTOR_PRIORITY)

    def run(self, descriptor: str, context: BuildContext) -> RawOutput:
        cwd = os.path.dirname(descriptor) or "."
        command = [context.settings.PYTHON_PATH, "-m", "pipdeptree", "--json-tree"]
        try:
            return RawOutput({"": self.execute(command, cwd, context)})
        except CommandError as e:
            versions = self.read_static_versions(cwd)
            if not versions:
                raise
            log_command_error(e, descriptor)
            logging.warning(f"pipdeptree unavailable for {cwd}, falling back to pinned versions")
            return RawOutput({STATIC_SCOPE: json.dumps(versions)}, partial=True)

    def parse(self, descriptor: str, raw: RawOutput) -> RootNode:
        project_name = os.path.basename(os.path.dirname(os.path.abspath(descriptor)))
        root = RootNode(descriptor, PackageType.PYTHON,
                        GeneralInfo(project_name, "", [], descriptor, PackageType.PYTHON))

        if STATIC_SCOPE in raw.outputs:
            for name, version in json.loads(raw.outputs[STATIC_SCOPE]).items():
                self.add_dependency(root, GeneralInfo(name, version, [], "", PackageType.PYTHON))
            return root

        self._populate(root, json.loads(raw.outputs.get("", "") or "[]"))
        return root

    def _populate(self, parent: DependencyTreeNode, packages: List[Dict[str, Any]]) -> None:
        for package in packages:
            version = package.get("installed_version")
            if not version:
                continue
            name = package.get("key") or package["package_name"]
            node = self.add_dependency(parent, GeneralInfo(name, version, [], "", PackageType.PYTHON))
            if node is not None:
                self._populate(node, package.get("dependencies") or [])

    # Static fallbacks, used when pipdeptree cannot run

    def read_static_versions(self, directory: str) -> Dict[str, str]:
        poetry_lock = os.path.join(directory, "poetry.lock")
        if os.path.exists(poetry_lock):
            return self._parse_poetry(poetry_lock)

        req_files = [os.path.join(directory, f) for f in sorted(os.listdir(directory)) if is_requirements_file(f)]
        if req_files:
            return self._parse_requirements(req_files)

        pyproject = os.path.join(directory, "pyproject.toml")
        if os.path.exists(pyproject):
            return self._parse_pyproject(pyproject)
        return {}

    def _parse_poetry(self, path: str) -> Dict[str, str]:
        logging.debug(f"Parsing {path}...")
        with open(path, "rb") as f:
            data = tomllib.load(f)

        versions = {}
        for pkg in data.get("package", []):
            name = pkg.get("name")
            version = pkg.get("version")
            if name and version:
                versions[name] = version
        return versions

    def _parse_requirements(self, filenames: List[str]) -> Dict[str, str]:
        logging.debug(f"Parsing requirements files: {filenames}")
        versions = {}

        for filename in filenames:
            try:
                with open(filename, "r", encoding="utf-8") as f:
                    for line in f:
                        line = line.strip()
                        if not line or line.startswith(("#", "-")):
                            continue
                        self._add_pinned(versions, line)
            except OSError as e:
                logging.warning(f"Error reading {filename}: {e}")

        return versions

    def _parse_pyproject(self, path: str) -> Dict[str, str]:
        logging.debug(f"Parsing {path} (PEP 621)...")
        with open(path, "rb") as f:
            data = tomllib.load(f)

        versions: Dict[str, str] = {}

        # PEP 621
        for dep_str in data.get("project", {}).get("dependencies", []):
            self._add_pinned(versions, dep_str)

        # Poetry (Legacy): a bare version string is an exact pin
        poetry_deps = data.get("tool", {}).get("poetry", {}).get("dependencies", {})
        for name, constraint in poetry_deps.items():
            if name == "python":
                continue
            if isinstance(constraint, str) and constraint[:1].isdigit():
                versions[name] = constraint

        return versions

    @staticmethod
    def _add_pinned(versions: Dict[str, str], requirement: str) -> None:
        match = RE_REQ.match(requirement)
        if not match:
            return
        name, operator, version = match.group(1), match.group(3), match.group(4)
        if operator in PINNED_OPERATORS and version:
            versions[name] = version
        else:
            logging.debug(f"Skipping unpinned requirement: {requirement}")
