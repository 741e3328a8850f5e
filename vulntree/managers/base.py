import json
import logging
import os
import subprocess
import threading
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from vulntree.config import Settings, settings as default_settings
from vulntree.core.model import BuildError, DependencyTreeNode, GeneralInfo, PackageType, RootNode
from vulntree.exceptions import CommandError, ScanCancelledError

# Errors a builder turns into a marker on its root instead of letting them escape
PARSE_ERRORS = (ValueError, KeyError, TypeError, AttributeError, ET.ParseError)


def execute(command: List[str], cwd: str, timeout: Optional[float] = None) -> str:
    """Run a build tool and return its stdout. Raises CommandError on any failure."""
    logging.debug(f"Running '{' '.join(command)}' in {cwd}")
    try:
        return subprocess.check_output(
            command,
            cwd=cwd,
            text=True,
            timeout=timeout,
            stderr=subprocess.PIPE,
        )
    except subprocess.CalledProcessError as e:
        raise CommandError(command, cwd, e.returncode, e.output, e.stderr) from e
    except subprocess.TimeoutExpired as e:
        stdout = e.output.decode() if isinstance(e.output, bytes) else (e.output or "")
        raise CommandError(command, cwd, -1, stdout, f"timed out after {timeout}s") from e
    except OSError as e:
        raise CommandError(command, cwd, 127, "", str(e)) from e


def log_command_error(error: CommandError, descriptor: str) -> None:
    logging.error(
        f"{error} (descriptor: {descriptor})\n"
        f"stdout: {error.stdout.strip()}\n"
        f"stderr: {error.stderr.strip()}"
    )


@dataclass
class RawOutput:
    """Tool output of one descriptor, keyed by the scope it was produced for ('' when unscoped)."""

    outputs: Dict[str, str] = field(default_factory=dict)
    partial: bool = False


@dataclass
class BuildContext:
    """State shared by the builders of one workspace scan. Discarded when the scan ends."""

    settings: Settings = field(default_factory=lambda: default_settings)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    warnings: List[str] = field(default_factory=list)
    cache: Dict[str, Any] = field(default_factory=dict)

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise ScanCancelledError("Scan cancelled")

    def warn(self, message: str) -> None:
        logging.warning(message)
        self.warnings.append(message)


class PackageManager(ABC):
    """Base class inherited by all ecosystem tree builders."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Friendly ecosystem name (e.g., Go, Maven, npm)."""
        pass

    @property
    @abstractmethod
    def pkg_type(self) -> PackageType:
        pass

    @property
    @abstractmethod
    def descriptor_files(self) -> List[str]:
        """Exact descriptor file names this manager builds from."""
        pass

    @property
    def version_command(self) -> Optional[List[str]]:
        return None

    def detect(self, files: List[str]) -> List[str]:
        """Returns the descriptor files among `files` this manager supports."""
        return [f for f in self.descriptor_files if f in files]

    def execute(self, command: List[str], cwd: str, context: BuildContext) -> str:
        return execute(command, cwd, timeout=context.settings.COMMAND_TIMEOUT)

    def verify_installed(self, context: BuildContext) -> bool:
        command = self.version_command
        if not command:
            return True
        try:
            self.execute(command, os.getcwd(), context)
        except CommandError as e:
            logging.debug(f"Version probe failed: {e}")
            context.warn(f"Could not scan {self.name} projects, because '{command[0]}' is not in the PATH.")
            return False
        return True

    def build_all(self, descriptors: List[str], context: BuildContext) -> List[RootNode]:
        if not descriptors:
            return []
        if not self.verify_installed(context):
            return []

        roots = []
        for descriptor in descriptors:
            context.check_cancelled()
            logging.info(f"Analyzing {descriptor} ({self.name})")
            roots.append(self.build(descriptor, context))
        return roots

    def build(self, descriptor: str, context: BuildContext) -> RootNode:
        """Builds the tree of one descriptor. Failures end up as markers on the returned root."""
        return self.build_with(descriptor, context, lambda raw: self.parse(descriptor, raw))

    def build_with(self, descriptor: str, context: BuildContext, parse: Callable[[RawOutput], RootNode]) -> RootNode:
        try:
            raw = self.run(descriptor, context)
        except CommandError as e:
            log_command_error(e, descriptor)
            return self.failed_root(descriptor, BuildError.NOT_INSTALLED)

        try:
            root = parse(raw)
        except PARSE_ERRORS as e:
            logging.exception(f"Could not parse {self.name} output of {descriptor}: {e}")
            return self.failed_root(descriptor, BuildError.PARSE_ERROR)

        if raw.partial:
            root.partial = True
            logging.warning(f"{descriptor}: {self.name} reported errors, the dependency tree may be incomplete")
        root.collect_components()
        return root

    @abstractmethod
    def run(self, descriptor: str, context: BuildContext) -> RawOutput:
        """Invokes the ecosystem tool for descriptor."""
        pass

    @abstractmethod
    def parse(self, descriptor: str, raw: RawOutput) -> RootNode:
        """Turns raw tool output into a dependency tree."""
        pass

    def failed_root(self, descriptor: str, error: BuildError) -> RootNode:
        root = RootNode(descriptor, self.pkg_type)
        root.mark_failed(error)
        return root

    def add_dependency(self, parent: DependencyTreeNode, general_info: GeneralInfo,
                       label: Optional[str] = None) -> Optional[DependencyTreeNode]:
        """Adds a child to parent unless it already appears in the parent's ancestor chain."""
        if parent.is_in_chain(general_info.component_id):
            logging.debug(f"Loop detected: {general_info.component_id} under {parent.component_id}. Skipping.")
            return None
        return DependencyTreeNode(general_info, parent, label)


def read_json_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logging.warning(f"Could not read {path}: {e}")
        return {}
