from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from vulntree.core.model import PackageType, Severity, package_type_of, short_component_id

MISSING_COMPONENT_ISSUE_ID = "MISSING_COMPONENT"
MISSING_COMPONENT_SUMMARY = "Component is unknown to the scan service"
UNKNOWN_LICENSE = "Unknown"


@dataclass
class IssueRecord:
    issue_id: str
    severity: Severity = Severity.UNKNOWN
    summary: str = ""
    issue_type: str = "security"
    fixed_versions: List[str] = field(default_factory=list)
    cves: List[str] = field(default_factory=list)
    watch_names: List[str] = field(default_factory=list)
    license_key: str = ""

    def merge_watch_names(self, names: Iterable[str]) -> None:
        for name in names:
            if name and name not in self.watch_names:
                self.watch_names.append(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue_id": self.issue_id,
            "severity": self.severity.label,
            "summary": self.summary,
            "issue_type": self.issue_type,
            "fixed_versions": list(self.fixed_versions),
            "cves": list(self.cves),
            "watch_names": list(self.watch_names),
            "license_key": self.license_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IssueRecord":
        return cls(
            issue_id=data["issue_id"],
            severity=Severity.from_string(data.get("severity")),
            summary=data.get("summary", ""),
            issue_type=data.get("issue_type", "security"),
            fixed_versions=list(data.get("fixed_versions") or []),
            cves=list(data.get("cves") or []),
            watch_names=list(data.get("watch_names") or []),
            license_key=data.get("license_key", ""),
        )


def merge_issue(records: List[IssueRecord], record: IssueRecord) -> IssueRecord:
    """
    Add record to records unless an issue with the same id is already there.
    A repeated issue only contributes its watch names to the existing record.
    """
    for existing in records:
        if existing.issue_id == record.issue_id:
            existing.merge_watch_names(record.watch_names)
            return existing
    records.append(record)
    return record


@dataclass
class CacheEntry:
    """Scan result of a single component."""

    top_severity: Severity = Severity.NORMAL
    issues: List[IssueRecord] = field(default_factory=list)
    licenses: List[str] = field(default_factory=list)
    pkg_type: PackageType = PackageType.UNKNOWN
    timestamp: float = 0.0

    def add_issue(self, record: IssueRecord) -> None:
        merge_issue(self.issues, record)
        if record.severity > self.top_severity:
            self.top_severity = record.severity

    def add_license(self, name: str) -> None:
        if name and name not in self.licenses:
            self.licenses.append(name)

    @property
    def is_missing(self) -> bool:
        return any(i.issue_id == MISSING_COMPONENT_ISSUE_ID for i in self.issues)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "top_severity": self.top_severity.label,
            "issues": [i.to_dict() for i in self.issues],
            "licenses": list(self.licenses),
            "pkg_type": self.pkg_type.value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        try:
            pkg_type = PackageType(data.get("pkg_type", "unknown"))
        except ValueError:
            pkg_type = PackageType.UNKNOWN
        return cls(
            top_severity=Severity.from_string(data.get("top_severity")),
            issues=[IssueRecord.from_dict(i) for i in data.get("issues", [])],
            licenses=list(data.get("licenses") or []),
            pkg_type=pkg_type,
            timestamp=float(data.get("timestamp", 0.0)),
        )


def missing_component_entry(pkg_type: PackageType = PackageType.UNKNOWN) -> CacheEntry:
    entry = CacheEntry(pkg_type=pkg_type)
    entry.add_issue(IssueRecord(
        issue_id=MISSING_COMPONENT_ISSUE_ID,
        severity=Severity.UNKNOWN,
        summary=MISSING_COMPONENT_SUMMARY,
    ))
    entry.add_license(UNKNOWN_LICENSE)
    return entry


def split_component_key(component_id: str) -> Tuple[str, str]:
    """'org.foo:bar:1.0' -> ('org.foo:bar', '1.0')"""
    short = short_component_id(component_id)
    if ":" not in short:
        return short, ""
    name, version = short.rsplit(":", 1)
    return name, version


def issue_record(issue: Dict[str, Any], component: Dict[str, Any]) -> IssueRecord:
    license_key = issue.get("license_key") or ""
    watch_name = issue.get("watch_name")
    return IssueRecord(
        issue_id=issue["issue_id"],
        severity=Severity.from_string(issue.get("severity")),
        summary=issue.get("summary", ""),
        issue_type="license" if license_key else issue.get("type", "security"),
        fixed_versions=list((component or {}).get("fixed_versions") or []),
        cves=[c["cve"] for c in issue.get("cves") or [] if c.get("cve")],
        watch_names=[watch_name] if watch_name else [],
        license_key=license_key,
    )


def entries_from_response(response: Dict[str, Any], requested_ids: Iterable[str]) -> Dict[str, CacheEntry]:
    """
    Translate a scan service response into one cache entry per component.

    Keys are short component ids. Every requested id ends up in the result;
    the ones the service did not report are synthesized as missing components.
    """
    entries: Dict[str, CacheEntry] = {}

    def entry_for(component_key: str) -> CacheEntry:
        short = short_component_id(component_key)
        if short not in entries:
            entries[short] = CacheEntry(pkg_type=package_type_of(component_key))
        return entries[short]

    for kind in ("vulnerabilities", "violations"):
        for issue in response.get(kind) or []:
            if not issue.get("issue_id"):
                continue
            for component_key, component in (issue.get("components") or {}).items():
                entry = entry_for(component_key)
                entry.add_issue(issue_record(issue, component))
                if issue.get("license_key"):
                    entry.add_license(issue.get("license_name") or issue["license_key"])

    for license_info in response.get("licenses") or []:
        name = license_info.get("license_name") or license_info.get("license_key")
        for component_key in license_info.get("components") or {}:
            entry_for(component_key).add_license(name)

    # Components the service recognized but found nothing wrong with
    for component_key in response.get("components") or []:
        entry_for(component_key)

    for requested in requested_ids:
        short = short_component_id(requested)
        if short not in entries:
            entries[short] = missing_component_entry(package_type_of(requested))

    return entries


def to_graph_response(entries: Dict[str, Optional[CacheEntry]]) -> Dict[str, List[Dict[str, Any]]]:
    """Rebuild a scan response from cached per-component results."""
    vulnerabilities: Dict[str, Dict[str, Any]] = {}
    violations: Dict[Tuple[str, str], Dict[str, Any]] = {}
    licenses: Dict[str, Dict[str, Any]] = {}

    for component_id, entry in entries.items():
        if entry is None:
            continue
        name, version = split_component_key(component_id)
        for record in entry.issues:
            component = {
                "package_name": name,
                "package_version": version,
                "fixed_versions": list(record.fixed_versions),
            }
            base = {
                "issue_id": record.issue_id,
                "severity": record.severity.label,
                "summary": record.summary,
                "type": record.issue_type,
                "cves": [{"cve": cve} for cve in record.cves],
                "license_key": record.license_key,
            }
            if record.watch_names:
                for watch_name in record.watch_names:
                    violation = violations.setdefault(
                        (record.issue_id, watch_name), dict(base, watch_name=watch_name, components={})
                    )
                    violation["components"][component_id] = component
            else:
                vulnerability = vulnerabilities.setdefault(record.issue_id, dict(base, components={}))
                vulnerability["components"][component_id] = component

        for license_name in entry.licenses:
            license_info = licenses.setdefault(
                license_name, {"license_key": license_name, "license_name": license_name, "components": {}}
            )
            license_info["components"][component_id] = {"package_name": name, "package_version": version}

    return {
        "vulnerabilities": list(vulnerabilities.values()),
        "violations": list(violations.values()),
        "licenses": list(licenses.values()),
    }
