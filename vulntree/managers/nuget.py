import json
import logging
import os
import shlex
from typing import Any, Dict, List

from vulntree.core.model import DependencyTreeNode, GeneralInfo, PackageType, RootNode
from vulntree.managers.base import BuildContext, PackageManager, RawOutput


class NugetManager(PackageManager):
    """
    Builds one root per solution file, holding a nested root per project.
    The dependency tree comes from a CLI printing
    {"projects": [{"name", "dependencies": [{"id", "version", "dependencies"}]}]}.
    """

    @property
    def name(self) -> str:
        return "NuGet"

    @property
    def pkg_type(self) -> PackageType:
        return PackageType.NUGET

    @property
    def descriptor_files(self) -> List[str]:
        return []

    @property
    def version_command(self) -> List[str]:
        return ["dotnet", "--version"]

    def detect(self, files: List[str]) -> List[str]:
        return sorted(f for f in files if f.endswith(".sln"))

    def run(self, descriptor: str, context: BuildContext) -> RawOutput:
        cwd = os.path.dirname(descriptor) or "."
        command = shlex.split(context.settings.NUGET_COMMAND)
        return RawOutput({"": self.execute(command, cwd, context)})

    def parse(self, descriptor: str, raw: RawOutput) -> RootNode:
        tree = json.loads(raw.outputs.get("", "") or "{}")
        solution_name = os.path.splitext(os.path.basename(descriptor))[0]
        solution = RootNode(descriptor, PackageType.NUGET,
                            GeneralInfo(solution_name, "", [], descriptor, PackageType.NUGET))

        for project in tree.get("projects") or []:
            project_root = RootNode(
                descriptor,
                PackageType.NUGET,
                GeneralInfo(project["name"], "", [], descriptor, PackageType.NUGET),
                parent=solution,
            )
            self._populate(project_root, project.get("dependencies") or [])
            logging.debug(f"NuGet project {project['name']}: {len(project_root.children)} direct dependencies")

        return solution

    def _populate(self, parent: DependencyTreeNode, dependencies: List[Dict[str, Any]]) -> None:
        for dependency in dependencies:
            dependency_id = dependency.get("id")
            version = dependency.get("version")
            children = dependency.get("dependencies")
            if not dependency_id or not version or children is None:
                continue
            node = self.add_dependency(parent, GeneralInfo(dependency_id, version, [], "", PackageType.NUGET))
            if node is not None:
                self._populate(node, children)
