import unittest

from vulntree.core.impact import (
    apply_scan_results,
    create_impacted_paths,
    find_impacted_paths,
    populate_dependency_issues,
)
from vulntree.core.issues import CacheEntry, IssueRecord, to_graph_response
from vulntree.core.model import DependencyTreeNode, GeneralInfo, PackageType, RootNode, Severity


def add(parent, name, version):
    return DependencyTreeNode(GeneralInfo(name, version, [], "", PackageType.NPM), parent)


def component(name, version):
    return {"package_name": name, "package_version": version, "fixed_versions": []}


class TestImpactedPaths(unittest.TestCase):
    """
    root
    ├── A:1.0.0
    ├── B:1.0.0
    │   └── A:1.0.1
    ├── C:2.0.0
    │   ├── D:3.0.0
    │   └── A:1.0.0
    └── E:1.2.3
        └── F:3.2.1
    """

    def setUp(self):
        self.root = RootNode("/work/root/package.json", PackageType.NPM,
                             GeneralInfo("root", "", [], "", PackageType.NPM))
        self.a = add(self.root, "A", "1.0.0")
        self.b = add(self.root, "B", "1.0.0")
        add(self.b, "A", "1.0.1")
        self.c = add(self.root, "C", "2.0.0")
        add(self.c, "D", "3.0.0")
        add(self.c, "A", "1.0.0")
        self.e = add(self.root, "E", "1.2.3")
        add(self.e, "F", "3.2.1")

        self.response = {
            "violations": [
                {"issue_id": "XRAY-1", "severity": "High", "watch_name": "watch1",
                 "components": {"npm://A:1.0.0": component("A", "1.0.0")}},
                {"issue_id": "XRAY-1", "severity": "High", "watch_name": "watch2",
                 "components": {"npm://A:1.0.0": component("A", "1.0.0")}},
            ],
            "vulnerabilities": [
                {"issue_id": "XRAY-2", "severity": "Medium",
                 "components": {"npm://D:3.0.0": component("D", "3.0.0"),
                                "npm://A:1.0.1": component("A", "1.0.1")}},
                {"issue_id": "XRAY-3", "severity": "Low",
                 "components": {"npm://Z:9.9.9": component("Z", "9.9.9")}},
            ],
            "licenses": [
                {"license_key": "MIT", "license_name": "MIT",
                 "components": {"npm://A:1.0.0": component("A", "1.0.0")}},
            ],
        }

    def test_every_occurrence_is_found(self):
        paths, count = find_impacted_paths(self.root, "A:1.0.0", 20)

        self.assertEqual(count, 2)
        self.assertEqual([p.component_ids for p in paths], [["root", "A:1.0.0"], ["root", "C:2.0.0", "A:1.0.0"]])
        self.assertIs(paths[1].direct_dependency, self.c)

    def test_paths_limit(self):
        paths, count = find_impacted_paths(self.root, "A:1.0.0", 1)

        self.assertEqual(len(paths), 1)
        self.assertEqual(count, 2)

    def test_graphs_per_issue_and_component(self):
        graphs = create_impacted_paths(self.root, self.response, 1)

        self.assertEqual(set(graphs), {("XRAY-1", "A:1.0.0"), ("XRAY-2", "D:3.0.0"), ("XRAY-2", "A:1.0.1")})
        graph = graphs[("XRAY-1", "A:1.0.0")]
        self.assertTrue(graph.truncated)
        self.assertEqual(graph.to_tree(), {
            "name": "root",
            "children": [{"name": "A:1.0.0", "children": []}],
            "paths_count": 2,
            "paths_limit": 1,
        })

    def test_direct_and_indirect_dependencies(self):
        graphs = create_impacted_paths(self.root, self.response)

        dependencies = {d.component_id: d for d in populate_dependency_issues(self.root, self.response, graphs)}

        self.assertEqual(set(dependencies), {"A:1.0.0", "D:3.0.0", "A:1.0.1"})
        self.assertFalse(dependencies["A:1.0.0"].indirect)
        self.assertTrue(dependencies["D:3.0.0"].indirect)
        self.assertTrue(dependencies["A:1.0.1"].indirect)

        a = dependencies["A:1.0.0"]
        self.assertEqual(len(a.issues), 1)
        self.assertEqual(a.issues[0].watch_names, ["watch1", "watch2"])
        self.assertEqual(a.licenses, ["MIT"])
        self.assertEqual(a.top_severity, Severity.HIGH)
        self.assertEqual(list(a.impact_graphs), ["XRAY-1"])

    def test_sorted_by_severity(self):
        graphs = create_impacted_paths(self.root, self.response)

        severities = [d.top_severity for d in populate_dependency_issues(self.root, self.response, graphs)]

        self.assertEqual(severities, sorted(severities, reverse=True))

    def test_single_chain(self):
        root = RootNode("/work/app/package.json", PackageType.NPM, GeneralInfo("app"))
        b = add(add(root, "A", "1.0.0"), "B", "1.0.0")
        response = {"vulnerabilities": [{"issue_id": "XRAY-9", "severity": "Critical",
                                         "components": {"npm://B:1.0.0": component("B", "1.0.0")}}]}

        graphs = create_impacted_paths(root, response)
        (dependency,) = populate_dependency_issues(root, response, graphs)

        self.assertTrue(dependency.indirect)
        path = graphs[("XRAY-9", "B:1.0.0")].paths[0]
        self.assertEqual(path.component_ids, ["app", "A:1.0.0", "B:1.0.0"])
        self.assertIs(path.affected, b)

    def test_search_does_not_enter_nested_roots(self):
        nested = RootNode("/work/root/sub/package.json", PackageType.NPM, GeneralInfo("sub"), parent=self.root)
        add(nested, "A", "1.0.0")

        _, count = find_impacted_paths(self.root, "A:1.0.0", 20)

        self.assertEqual(count, 2)


class TestApplyScanResults(unittest.TestCase):

    def test_nodes_take_their_own_results(self):
        root = RootNode("/work/app/package.json", PackageType.NPM, GeneralInfo("app"))
        vulnerable = add(root, "lodash", "4.17.20")
        pending = add(vulnerable, "unknown-yet", "0.1.0")

        entry = CacheEntry(pkg_type=PackageType.NPM)
        entry.add_issue(IssueRecord("XRAY-7", Severity.CRITICAL))
        entry.add_license("MIT")

        apply_scan_results(root, {"lodash:4.17.20": entry, "unknown-yet:0.1.0": None})
        root.process_tree_issues()

        self.assertEqual(vulnerable.top_severity, Severity.CRITICAL)
        self.assertEqual(vulnerable.licenses, {"MIT"})
        self.assertEqual(pending.top_severity, Severity.PENDING)
        self.assertEqual(root.top_severity, Severity.CRITICAL)
        self.assertEqual(root.issues["XRAY-7"].component, "lodash:4.17.20")

    def test_cached_entries_rebuild_a_response(self):
        entry = CacheEntry(pkg_type=PackageType.MAVEN)
        entry.add_issue(IssueRecord("XRAY-1", Severity.HIGH, watch_names=["watch1", "watch2"]))
        entry.add_issue(IssueRecord("XRAY-2", Severity.LOW))
        entry.add_license("Apache-2.0")

        response = to_graph_response({"org.foo:bar:1.0": entry, "org.foo:baz:2.0": None})

        self.assertEqual(len(response["violations"]), 2)
        self.assertEqual([v["issue_id"] for v in response["vulnerabilities"]], ["XRAY-2"])
        self.assertEqual(response["vulnerabilities"][0]["components"]["org.foo:bar:1.0"]["package_name"], "org.foo:bar")
        self.assertEqual(response["licenses"][0]["license_name"], "Apache-2.0")


if __name__ == "__main__":
    unittest.main()
