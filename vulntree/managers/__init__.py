import logging
import os
from typing import Dict, Iterable, List

from vulntree.core.model import PackageType
from .base import BuildContext, PackageManager, RawOutput
from .go import GoManager
from .javascript import NpmManager, PnpmManager, YarnManager
from .maven import MavenManager
from .nuget import NugetManager
from .python import PythonManager

MANAGERS: Dict[PackageType, PackageManager] = {
    PackageType.GO: GoManager(),
    PackageType.MAVEN: MavenManager(),
    PackageType.NPM: NpmManager(),
    PackageType.YARN: YarnManager(),
    PackageType.PNPM: PnpmManager(),
    PackageType.NUGET: NugetManager(),
    PackageType.PYTHON: PythonManager(),
}

# A package.json next to one of these lock files belongs to that package manager
JS_LOCK_FILES = {"yarn.lock", "pnpm-lock.yaml"}


def locate_descriptors(workspace: str, exclude_dirs: Iterable[str] = ()) -> Dict[PackageType, List[str]]:
    """Walks the workspace and groups the descriptor files found by package type."""
    excluded = set(exclude_dirs)
    descriptors: Dict[PackageType, List[str]] = {}

    for dirpath, dirnames, filenames in os.walk(workspace):
        dirnames[:] = sorted(d for d in dirnames if d not in excluded)
        files = sorted(filenames)

        for pkg_type, manager in MANAGERS.items():
            found = manager.detect(files)
            if pkg_type == PackageType.NPM and JS_LOCK_FILES.intersection(files):
                continue
            for filename in found:
                descriptors.setdefault(pkg_type, []).append(os.path.join(dirpath, filename))

    for pkg_type, paths in descriptors.items():
        logging.debug(f"{pkg_type.value} descriptors: {paths}")
    return descriptors


__all__ = ["MANAGERS", "BuildContext", "PackageManager", "RawOutput", "locate_descriptors"]
