import logging
import os
import re
from typing import Dict, List, Tuple

from vulntree.core.model import GeneralInfo, PackageType, RootNode, DependencyTreeNode
from vulntree.managers.base import BuildContext, PackageManager, RawOutput

RE_MODULE = re.compile(r"^\s*module\s+(\S+)", re.MULTILINE)
# Entries go mod graph emits for the toolchain itself rather than for modules
TOOLCHAIN_MODULES = ("go", "toolchain")


class GoManager(PackageManager):
    @property
    def name(self) -> str:
        return "Go Modules"

    @property
    def pkg_type(self) -> PackageType:
        return PackageType.GO

    @property
    def descriptor_files(self) -> List[str]:
        return ["go.mod"]

    @property
    def version_command(self) -> List[str]:
        return ["go", "version"]

    def run(self, descriptor: str, context: BuildContext) -> RawOutput:
        cwd = os.path.dirname(descriptor) or "."
        graph_out = self.execute(["go", "mod", "graph"], cwd, context)
        logging.debug(f"Graph obtained. Processing {len(graph_out)} bytes...")
        return RawOutput({"": graph_out})

    def parse(self, descriptor: str, raw: RawOutput) -> RootNode:
        direct: List[str] = []
        adjacency: Dict[str, List[str]] = {}
        main_module = ""

        for line in raw.outputs.get("", "").splitlines():
            parts = line.split()
            if len(parts) != 2:
                continue
            parent, child = parts
            if self._split_ver(child)[0] in TOOLCHAIN_MODULES:
                continue
            if "@" not in parent:
                main_module = main_module or parent
                direct.append(child)
            else:
                adjacency.setdefault(parent, []).append(child)

        module_name = main_module or self._read_module_name(descriptor)
        root = RootNode(descriptor, PackageType.GO,
                        GeneralInfo(module_name, "", [], descriptor, PackageType.GO))

        logging.debug("Start building the tree ...")
        for child in direct:
            self._populate(root, child, adjacency)
        logging.debug(f"Go tree built. {len(direct)} direct modules.")
        return root

    def _populate(self, parent: DependencyTreeNode, module: str, adjacency: Dict[str, List[str]]) -> None:
        name, version = self._split_ver(module)
        node = self.add_dependency(parent, GeneralInfo(name, version, [], "", PackageType.GO))
        if node is None:
            return
        for child in adjacency.get(module, []):
            self._populate(node, child, adjacency)

    @staticmethod
    def _read_module_name(descriptor: str) -> str:
        try:
            with open(descriptor, "r", encoding="utf-8") as f:
                match = RE_MODULE.search(f.read())
        except OSError as e:
            logging.warning(f"Could not read {descriptor}: {e}")
            match = None
        if match:
            return match.group(1)
        return os.path.basename(os.path.dirname(descriptor)) or descriptor

    @staticmethod
    def _split_ver(txt: str) -> Tuple[str, str]:
        if "@" not in txt:
            return txt, ""
        name, _, version = txt.rpartition("@")
        if version.startswith("v"):
            version = version[1:]
        return name, version
