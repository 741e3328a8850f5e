import os
import subprocess
import tempfile
import unittest
from unittest.mock import patch

from vulntree.core.model import BuildError, PackageType, RootNode
from vulntree.managers.base import BuildContext, RawOutput
from vulntree.managers.maven import (
    MavenManager,
    build_prototype_pom_tree,
    dependencies_level,
    filter_parent_dependencies,
    get_dependency_info,
    parse_dependency_tree_output,
)

MULTI_MODULE_OUTPUT = """[INFO] Scanning for projects...
[INFO] ------------------------------------------------------------------------
[INFO] Reactor Build Order:
[INFO]
[INFO] multi                                                              [pom]
[INFO] multi1                                                             [jar]
[INFO]
[INFO] -------------------------< org.jfrog.test:multi >-------------------------
[INFO] Building multi 3.7-SNAPSHOT                                         [1/2]
[INFO] --------------------------------[ pom ]---------------------------------
[INFO]
[INFO] --- maven-dependency-plugin:2.8:tree (default-cli) @ multi ---
[INFO] org.jfrog.test:multi:pom:3.7-SNAPSHOT
[INFO] \\- junit:junit:jar:3.8.1:test
[INFO]
[INFO] ------------------------< org.jfrog.test:multi1 >-------------------------
[INFO] Building multi1 3.7-SNAPSHOT                                        [2/2]
[INFO] --------------------------------[ jar ]---------------------------------
[INFO]
[INFO] --- maven-dependency-plugin:2.8:tree (default-cli) @ multi1 ---
[INFO] org.jfrog.test:multi1:jar:3.7-SNAPSHOT
[INFO] +- org.apache.commons:commons-email:jar:1.1:compile
[INFO] |  +- javax.mail:mail:jar:1.4:compile
[INFO] |  \\- javax.activation:activation:jar:1.1:compile
[INFO] +- org.testng:testng:jar:jdk15:5.9:test
[INFO] \\- junit:junit:jar:3.8.1:test
[INFO] ------------------------------------------------------------------------
[INFO] BUILD SUCCESS
"""

PARENT_POM = """<?xml version="1.0" encoding="UTF-8"?>
<project xmlns="http://maven.apache.org/POM/4.0.0">
    <modelVersion>4.0.0</modelVersion>
    <groupId>org.jfrog.test</groupId>
    <artifactId>multi</artifactId>
    <version>3.7-SNAPSHOT</version>
    <packaging>pom</packaging>
    <modules>
        <module>multi1</module>
    </modules>
</project>
"""

MODULE_POM = """<?xml version="1.0" encoding="UTF-8"?>
<project xmlns="http://maven.apache.org/POM/4.0.0">
    <modelVersion>4.0.0</modelVersion>
    <parent>
        <groupId>org.jfrog.test</groupId>
        <artifactId>multi</artifactId>
        <version>3.7-SNAPSHOT</version>
    </parent>
    <artifactId>multi1</artifactId>
</project>
"""

BOOT_POM = """<?xml version="1.0" encoding="UTF-8"?>
<project>
    <parent>
        <groupId>org.springframework.boot</groupId>
        <artifactId>spring-boot-starter-parent</artifactId>
        <version>3.1.0</version>
    </parent>
    <groupId>com.example</groupId>
    <artifactId>{name}</artifactId>
    <version>${{revision}}</version>
    <properties>
        <revision>1.2.0</revision>
    </properties>
</project>
"""


def write_file(path: str, content: str) -> str:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    return path


class TestMavenParsing(unittest.TestCase):

    def test_dependency_line_helpers(self):
        line = "|  +- javax.mail:mail:jar:1.4:compile"
        self.assertEqual(dependencies_level(line), 6)
        self.assertEqual(get_dependency_info(line), ("javax.mail", "mail", "1.4", "compile"))
        self.assertEqual(get_dependency_info("+- org.testng:testng:jar:jdk15:5.9:test"),
                         ("org.testng", "testng", "5.9", "test"))
        with self.assertRaises(ValueError):
            get_dependency_info("+- broken:line")

    def test_sections_per_module(self):
        sections = parse_dependency_tree_output(MULTI_MODULE_OUTPUT)

        self.assertEqual(list(sections), ["org.jfrog.test:multi:3.7-SNAPSHOT", "org.jfrog.test:multi1:3.7-SNAPSHOT"])
        self.assertEqual(sections["org.jfrog.test:multi:3.7-SNAPSHOT"], ["\\- junit:junit:jar:3.8.1:test"])
        self.assertEqual(len(sections["org.jfrog.test:multi1:3.7-SNAPSHOT"]), 5)

    def test_short_plugin_header(self):
        output = (
            "[INFO] --- dependency:3.6.0:tree (default-cli) @ app ---\n"
            "[INFO] com.example:app:jar:1.0\n"
            "[INFO] \\- org.slf4j:slf4j-api:jar:2.0.7:compile\n"
        )
        self.assertEqual(parse_dependency_tree_output(output),
                         {"com.example:app:1.0": ["\\- org.slf4j:slf4j-api:jar:2.0.7:compile"]})

    def test_parent_dependencies_are_filtered(self):
        parent = ["\\- junit:junit:jar:3.8.1:test"]
        child = ["+- org.testng:testng:jar:jdk15:5.9:test", "\\- junit:junit:jar:3.8.1:test"]

        self.assertEqual(filter_parent_dependencies(child, parent), ["+- org.testng:testng:jar:jdk15:5.9:test"])
        self.assertEqual(filter_parent_dependencies(child, None), child)

    def test_levels_become_nesting(self):
        lines = [
            "a:child0:jar:1.0:compile",
            " b:child1:jar:1.0:compile",
            " c:child2:jar:1.0:compile",
            "  d:child3:jar:1.0:compile",
            " e:child4:jar:1.0:compile",
        ]
        root = RootNode("/work/app/pom.xml", PackageType.MAVEN)

        MavenManager().populate_tree(root, lines)

        self.assertEqual([c.label for c in root.children], ["a:child0"])
        child0 = root.children[0]
        self.assertEqual([c.label for c in child0.children], ["b:child1", "c:child2", "e:child4"])
        self.assertEqual([c.label for c in child0.children[1].children], ["d:child3"])
        self.assertEqual(child0.children[1].component_id, "c:child2:1.0")
        self.assertEqual(child0.general_info.scopes, ["compile"])


class TestPomTree(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    def test_external_parent_is_dropped(self):
        first = write_file(os.path.join(self.tmp.name, "svc-a", "pom.xml"), BOOT_POM.format(name="svc-a"))
        second = write_file(os.path.join(self.tmp.name, "svc-b", "pom.xml"), BOOT_POM.format(name="svc-b"))

        forest = build_prototype_pom_tree([first, second], BuildContext())

        self.assertEqual([p.pom_gav for p in forest], ["com.example:svc-a:1.2.0", "com.example:svc-b:1.2.0"])
        self.assertEqual(forest[0].pom_path, os.path.join(self.tmp.name, "svc-a"))

    def test_modules_hang_under_parent(self):
        module = write_file(os.path.join(self.tmp.name, "multi1", "pom.xml"), MODULE_POM)
        parent = write_file(os.path.join(self.tmp.name, "pom.xml"), PARENT_POM)

        forest = build_prototype_pom_tree([module, parent], BuildContext())

        self.assertEqual(len(forest), 1)
        self.assertEqual(forest[0].pom_gav, "org.jfrog.test:multi:3.7-SNAPSHOT")
        self.assertEqual([c.pom_gav for c in forest[0].children], ["org.jfrog.test:multi1:3.7-SNAPSHOT"])


class TestMavenManager(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.parent_pom = write_file(os.path.join(self.tmp.name, "pom.xml"), PARENT_POM)
        self.module_pom = write_file(os.path.join(self.tmp.name, "multi1", "pom.xml"), MODULE_POM)
        self.manager = MavenManager()
        self.context = BuildContext()

    def tearDown(self):
        self.tmp.cleanup()

    @patch("subprocess.check_output")
    def test_multi_module_tree(self, mock_subprocess):
        def side_effect(cmd, **kwargs):
            if "dependency:tree" in cmd:
                return MULTI_MODULE_OUTPUT
            return "Apache Maven 3.9.4"

        mock_subprocess.side_effect = side_effect

        roots = self.manager.build_all([self.parent_pom, self.module_pom], self.context)

        self.assertEqual(len(roots), 1)
        root = roots[0]
        self.assertEqual(root.label, "org.jfrog.test:multi")
        self.assertEqual(root.project_details.request_ids(), ["gav://junit:junit:3.8.1"])

        junit, module = root.children
        self.assertEqual(junit.component_id, "junit:junit:3.8.1")
        self.assertIsInstance(module, RootNode)
        self.assertEqual(module.label, "org.jfrog.test:multi1")
        self.assertEqual([c.label for c in module.children], ["org.apache.commons:commons-email", "org.testng:testng"])
        self.assertEqual(len(module.children[0].children), 2)
        self.assertEqual(len(module.project_details), 4)

    @patch("subprocess.check_output")
    def test_failed_reactor_keeps_printed_modules(self, mock_subprocess):
        partial_output = MULTI_MODULE_OUTPUT.split("[INFO] ------------------------< org.jfrog.test:multi1")[0]

        def side_effect(cmd, **kwargs):
            if "dependency:tree" in cmd:
                raise subprocess.CalledProcessError(1, cmd, output=partial_output, stderr="BUILD FAILURE")
            return "Apache Maven 3.9.4"

        mock_subprocess.side_effect = side_effect

        root = self.manager.build_all([self.parent_pom, self.module_pom], self.context)[0]

        self.assertTrue(root.partial)
        self.assertEqual([c.label for c in root.children], ["junit:junit"])

    @patch("subprocess.check_output")
    def test_failed_reactor_without_output(self, mock_subprocess):
        def side_effect(cmd, **kwargs):
            if "dependency:tree" in cmd:
                raise subprocess.CalledProcessError(1, cmd, output="[ERROR] Non-resolvable parent POM", stderr="")
            return "Apache Maven 3.9.4"

        mock_subprocess.side_effect = side_effect

        root = self.manager.build_all([self.parent_pom], self.context)[0]

        self.assertEqual(root.build_error, BuildError.NOT_INSTALLED)
        self.assertEqual(root.children, [])

    def test_single_pom_parse(self):
        parsed = self.manager.parse(self.module_pom, RawOutput({"": MULTI_MODULE_OUTPUT}))

        self.assertEqual(parsed.general_info.component_id, "org.jfrog.test:multi1:3.7-SNAPSHOT")
        self.assertEqual(len(parsed.children), 3)


if __name__ == "__main__":
    unittest.main()
