import gc
import unittest

from vulntree.core.model import (
    BuildError,
    DependencyTreeNode,
    GavGeneralInfo,
    GeneralInfo,
    IssueKey,
    PackageType,
    RootNode,
    Severity,
    package_type_of,
    short_component_id,
)


def node(name: str, version: str = "1.0.0", parent=None) -> DependencyTreeNode:
    return DependencyTreeNode(GeneralInfo(name, version, [], "", PackageType.NPM), parent)


class TestSeverity(unittest.TestCase):

    def test_ordering(self):
        ordered = [Severity.NORMAL, Severity.PENDING, Severity.UNKNOWN, Severity.INFORMATION,
                   Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]
        self.assertEqual(sorted(Severity), ordered)

    def test_from_string(self):
        self.assertEqual(Severity.from_string("High"), Severity.HIGH)
        self.assertEqual(Severity.from_string(" critical "), Severity.CRITICAL)
        self.assertEqual(Severity.from_string("Catastrophic"), Severity.UNKNOWN)
        self.assertEqual(Severity.from_string(None), Severity.UNKNOWN)
        self.assertEqual(Severity.MEDIUM.label, "Medium")


class TestComponentIds(unittest.TestCase):

    def test_prefixes(self):
        self.assertEqual(short_component_id("npm://left-pad:1.3.0"), "left-pad:1.3.0")
        self.assertEqual(short_component_id("left-pad:1.3.0"), "left-pad:1.3.0")
        self.assertEqual(package_type_of("gav://junit:junit:4.13"), PackageType.MAVEN)
        self.assertEqual(package_type_of("left-pad:1.3.0"), PackageType.UNKNOWN)
        self.assertEqual(PackageType.YARN.component_prefix, "npm://")

    def test_gav_name(self):
        info = GavGeneralInfo("junit", "4.13", [], "", PackageType.MAVEN, group_id="junit")
        self.assertEqual(info.name, "junit:junit")
        self.assertEqual(info.component_id, "junit:junit:4.13")

    def test_general_info_update_skips_empty_fields(self):
        info = GeneralInfo("app", "1.0.0", ["prod"], "/work/app/package.json", PackageType.NPM)
        info.update(GeneralInfo("app", "", [], "", PackageType.UNKNOWN))
        self.assertEqual(info, GeneralInfo("app", "1.0.0", ["prod"], "/work/app/package.json", PackageType.NPM))

        info.update(GeneralInfo("app", "1.1.0", ["dev"]))
        self.assertEqual(info.version, "1.1.0")
        self.assertEqual(info.scopes, ["dev"])


class TestDependencyTreeNode(unittest.TestCase):

    def setUp(self):
        self.root = RootNode("/work/app/package.json", PackageType.NPM)
        self.a = node("a", parent=self.root)
        self.b = node("b", parent=self.a)
        self.c = node("c", parent=self.root)

    def test_parent_links(self):
        self.assertIs(self.b.parent, self.a)
        self.assertEqual(list(self.b.ancestors()), [self.a, self.root])
        self.assertTrue(self.b.is_in_chain("a:1.0.0"))
        self.assertFalse(self.b.is_in_chain("c:1.0.0"))

    def test_parent_link_is_weak(self):
        parent = node("parent")
        child = node("child", parent=parent)
        del parent
        gc.collect()
        self.assertIsNone(child.parent)

    def test_issues_bubble_up(self):
        self.b.add_issue(IssueKey("XRAY-1", Severity.HIGH))
        self.c.add_issue(IssueKey("XRAY-2", Severity.LOW))

        self.root.process_tree_issues()

        self.assertEqual(self.root.top_severity, Severity.HIGH)
        self.assertEqual(set(self.root.issues), {"XRAY-1", "XRAY-2"})
        self.assertEqual(self.a.top_severity, Severity.HIGH)
        self.assertEqual(self.root.issues["XRAY-1"].component, "b:1.0.0")
        self.assertEqual(self.root.children, [self.a, self.c])

    def test_aggregation_is_idempotent(self):
        self.b.add_issue(IssueKey("XRAY-1", Severity.MEDIUM))
        self.c.add_issue(IssueKey("XRAY-2", Severity.CRITICAL))

        self.root.process_tree_issues()
        first = (self.root.top_severity, dict(self.root.issues), [c.component_id for c in self.root.children])
        self.root.process_tree_issues()
        second = (self.root.top_severity, dict(self.root.issues), [c.component_id for c in self.root.children])

        self.assertEqual(first, second)

    def test_parent_is_never_less_severe(self):
        self.b.add_issue(IssueKey("XRAY-1", Severity.CRITICAL))
        self.root.process_tree_issues()

        for parent in self.root.walk():
            for child in parent.children:
                self.assertGreaterEqual(parent.top_severity, child.top_severity)

    def test_sort_order(self):
        root = node("root")
        plain = node("plain", parent=root)
        wide = node("wide", parent=root)
        node("w1", parent=wide)
        node("w2", parent=wide)
        severe = node("severe", parent=root)
        severe.add_issue(IssueKey("XRAY-3", Severity.HIGH))

        root.process_tree_issues()

        self.assertEqual(root.children, [severe, wide, plain])

    def test_remove_child_by_identity(self):
        twin = node("a")
        self.assertFalse(self.root.remove_child(twin))
        self.assertTrue(self.root.remove_child(self.a))
        self.assertIsNone(self.a.parent)
        self.assertEqual(self.root.children, [self.c])


class TestRootNode(unittest.TestCase):

    def test_defaults_from_descriptor(self):
        root = RootNode("/work/shop/package.json", PackageType.NPM)
        self.assertEqual(root.label, "shop")
        self.assertEqual(root.workspace, "/work/shop")
        self.assertTrue(root.is_dependencies_tree_root)
        self.assertFalse(node("x").is_dependencies_tree_root)

    def test_components_stop_at_nested_roots(self):
        solution = RootNode("/work/shop/Shop.sln", PackageType.NUGET)
        shared = DependencyTreeNode(GeneralInfo("Shared", "1.0.0"), solution)
        project = RootNode("/work/shop/Shop.sln", PackageType.NUGET, GeneralInfo("Api"), parent=solution)
        DependencyTreeNode(GeneralInfo("Serilog", "3.0.1"), project)
        DependencyTreeNode(GeneralInfo("Shared", "1.0.0"), project)

        solution.collect_components()

        self.assertEqual(solution.project_details.component_ids(), [shared.component_id])
        self.assertEqual(project.project_details.component_ids(), ["Serilog:3.0.1", "Shared:1.0.0"])
        self.assertEqual(solution.flatten_sub_roots(), [project])

    def test_mark_failed(self):
        root = RootNode("/work/app/go.mod", PackageType.GO)
        root.mark_failed(BuildError.NOT_INSTALLED)
        root.mark_failed(BuildError.NOT_INSTALLED)

        self.assertEqual(root.label, "app [Not installed]")
        self.assertEqual(root.top_severity, Severity.UNKNOWN)


if __name__ == "__main__":
    unittest.main()
