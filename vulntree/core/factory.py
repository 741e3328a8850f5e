import asyncio
import logging
from typing import List, Mapping, Optional

from vulntree.core.model import DependencyTreeNode, PackageType, RootNode
from vulntree.managers import MANAGERS, BuildContext, PackageManager


async def create_dependency_trees(descriptors: Mapping[PackageType, List[str]], parent: DependencyTreeNode,
                                  context: BuildContext,
                                  managers: Optional[Mapping[PackageType, PackageManager]] = None) -> List[RootNode]:
    """
    Builds the trees of every descriptor under parent. Each ecosystem runs in its
    own worker thread; all of them finish before the project roots are returned.
    """
    managers = MANAGERS if managers is None else managers

    async def build(pkg_type: PackageType, paths: List[str]) -> List[RootNode]:
        manager = managers.get(pkg_type)
        if manager is None:
            logging.warning(f"No tree builder for {pkg_type.value} ({len(paths)} descriptors skipped)")
            return []
        return await asyncio.to_thread(manager.build_all, paths, context)

    results = await asyncio.gather(*(build(t, paths) for t, paths in descriptors.items()))
    for roots in results:
        for root in roots:
            parent.add_child(root)

    flatten_sub_roots(parent)
    return [child for child in parent.children if isinstance(child, RootNode)]


def flatten_sub_roots(parent: DependencyTreeNode) -> None:
    """
    Adds every nested project root as a direct child of parent too. Sub-roots
    stay where they are; parent.children only gains references to them.
    """
    for child in list(parent.children):
        if not isinstance(child, RootNode):
            continue
        for sub_root in child.flatten_sub_roots():
            if not any(existing is sub_root for existing in parent.children):
                parent.children.append(sub_root)
