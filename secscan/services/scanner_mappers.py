"""Map scanner-specific JSON output (Trivy, Semgrep) to VulnerabilityCreate / SbomComponentCreate."""

import json
from pathlib import Path
from typing import Any

from secscan.schemas.scan import SbomComponentCreate, VulnerabilityCreate
from secscan.services.normalize import (
    as_list,
    canonical_ecosystem,
    find_cve_reference,
    int_or_none,
    join_values,
    map_static_severity,
    normalize_severity,
    str_or_none,
)
from secscan.services.snippets import DEFAULT_CONTEXT_LINES, extract_code_snippet

_UNKNOWN = "unknown"
_UNKNOWN_TITLE = "Unknown Vulnerability"
HARDCODED_CREDENTIALS_CWE = "CWE-798"


class NormalizationError(Exception):
    """Raised when scanner output is not JSON or not in the shape the mapper expects."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


def load_json(output: str | None) -> Any | None:
    """Parse scanner stdout. Empty output returns None; anything unparsable raises NormalizationError."""
    if output is None or not output.strip():
        return None
    try:
        return json.loads(output)
    except json.JSONDecodeError as e:
        raise NormalizationError(f"Scanner output is not valid JSON: {e!s}", cause=e) from e


def _trivy_results(output: str | None) -> list[dict[str, Any]]:
    """Return the Results groups of a Trivy report (non-dict groups are skipped)."""
    data = load_json(output)
    if data is None:
        return []
    if not isinstance(data, dict):
        raise NormalizationError("Trivy report must be a JSON object")
    results = data.get("Results")
    if results is None:
        return []
    if not isinstance(results, list):
        raise NormalizationError("Trivy report 'Results' must be a list")
    return [r for r in results if isinstance(r, dict)]


def _items(group: dict[str, Any], key: str) -> list[dict[str, Any]]:
    return [item for item in as_list(group.get(key)) if isinstance(item, dict)]


def map_trivy_packages(output: str | None, scan_id: int) -> list[SbomComponentCreate]:
    """One component per package in every Trivy result group."""
    components: list[SbomComponentCreate] = []
    for group in _trivy_results(output):
        ecosystem = canonical_ecosystem(group.get("Type"))
        for pkg in _items(group, "Packages"):
            components.append(
                SbomComponentCreate(
                    scan_id=scan_id,
                    name=str_or_none(pkg.get("Name")) or str_or_none(pkg.get("PkgName")) or _UNKNOWN,
                    version=str_or_none(pkg.get("Version")) or _UNKNOWN,
                    license=join_values(pkg.get("Licenses")) or _UNKNOWN,
                    # Trivy's package listing does not tell direct from transitive here.
                    type="direct",
                    ecosystem=ecosystem,
                    risk_level="low",
                )
            )
    return components


def _cvss_score(vuln: dict[str, Any]) -> str | None:
    """NVD v3 score, else Red Hat v3 score, as text."""
    cvss = vuln.get("CVSS")
    if not isinstance(cvss, dict):
        return None
    for vendor in ("nvd", "redhat"):
        entry = cvss.get(vendor)
        if isinstance(entry, dict) and entry.get("V3Score") is not None:
            return str_or_none(entry.get("V3Score"))
    return None


def map_trivy_vulnerabilities(output: str | None, scan_id: int) -> list[VulnerabilityCreate]:
    """SCA findings from every Trivy result group's Vulnerabilities list."""
    findings: list[VulnerabilityCreate] = []
    for group in _trivy_results(output):
        target = str_or_none(group.get("Target"))
        for vuln in _items(group, "Vulnerabilities"):
            vuln_id = str_or_none(vuln.get("VulnerabilityID"))
            findings.append(
                VulnerabilityCreate(
                    scan_id=scan_id,
                    type="sca",
                    severity=normalize_severity(vuln.get("Severity")),
                    title=str_or_none(vuln.get("Title")) or vuln_id or _UNKNOWN_TITLE,
                    description=str_or_none(vuln.get("Description")),
                    component=str_or_none(vuln.get("PkgName")),
                    version=str_or_none(vuln.get("InstalledVersion")),
                    cve=vuln_id,
                    cvss_score=_cvss_score(vuln),
                    file_path=target,
                    cwe=join_values(vuln.get("CweIDs")),
                    fix_available=bool(str_or_none(vuln.get("FixedVersion"))),
                )
            )
    return findings


def map_trivy_secrets(output: str | None, scan_id: int) -> list[VulnerabilityCreate]:
    """Hard-coded credential findings from every Trivy result group's Secrets list."""
    findings: list[VulnerabilityCreate] = []
    for group in _trivy_results(output):
        target = str_or_none(group.get("Target"))
        for secret in _items(group, "Secrets"):
            rule_id = str_or_none(secret.get("RuleID")) or _UNKNOWN
            rule_title = str_or_none(secret.get("Title")) or str_or_none(secret.get("Category"))
            match = str_or_none(secret.get("Match"))
            start_line = int_or_none(secret.get("StartLine"))
            findings.append(
                VulnerabilityCreate(
                    scan_id=scan_id,
                    type="sast",
                    severity="high",
                    title=f"{rule_id}: {rule_title}" if rule_title else rule_id,
                    description=f"Secret detected: {match}" if match else "Secret detected",
                    file_path=target,
                    line_number=start_line,
                    end_line_number=int_or_none(secret.get("EndLine")) or start_line,
                    cwe=HARDCODED_CREDENTIALS_CWE,
                    fix_available=False,
                )
            )
    return findings


def _relative_path(path: str | None, root: Path | None) -> str | None:
    """Report paths relative to the extracted tree when the scanner gave an absolute one."""
    if path is None or root is None:
        return path
    candidate = Path(path)
    if not candidate.is_absolute():
        return path
    try:
        return candidate.resolve().relative_to(root.resolve()).as_posix()
    except ValueError:
        return path


def _static_description(message: str | None, metadata: dict[str, Any]) -> str | None:
    reference = str_or_none(metadata.get("source"))
    if reference is None:
        references = [r for r in (str_or_none(r) for r in as_list(metadata.get("references"))) if r]
        reference = references[0] if references else None
    if reference is None:
        return message
    if message is None:
        return f"Reference: {reference}"
    return f"{message}\n\nReference: {reference}"


def map_semgrep_findings(
    output: str | None,
    scan_id: int,
    root: Path | None = None,
    context_lines: int = DEFAULT_CONTEXT_LINES,
) -> list[VulnerabilityCreate]:
    """
    SAST findings from a Semgrep JSON report.

    Severity collapses error/warning/info to high/medium/low. When a start line
    is reported, the flagged lines (plus context) are read from `root`.
    """
    data = load_json(output)
    if data is None:
        return []
    if not isinstance(data, dict):
        raise NormalizationError("Semgrep report must be a JSON object")
    results = data.get("results")
    if results is None:
        return []
    if not isinstance(results, list):
        raise NormalizationError("Semgrep report 'results' must be a list")

    findings: list[VulnerabilityCreate] = []
    for item in results:
        if not isinstance(item, dict):
            continue
        extra = item.get("extra") if isinstance(item.get("extra"), dict) else {}
        metadata = extra.get("metadata") if isinstance(extra.get("metadata"), dict) else {}
        start = item.get("start") if isinstance(item.get("start"), dict) else {}
        end = item.get("end") if isinstance(item.get("end"), dict) else {}

        raw_path = str_or_none(item.get("path"))
        start_line = int_or_none(start.get("line"))
        end_line = int_or_none(end.get("line"))
        message = str_or_none(extra.get("message"))
        rule_id = str_or_none(item.get("check_id"))

        findings.append(
            VulnerabilityCreate(
                scan_id=scan_id,
                type="sast",
                severity=map_static_severity(extra.get("severity")),
                title=message or rule_id or _UNKNOWN_TITLE,
                description=_static_description(message, metadata),
                cve=find_cve_reference(as_list(metadata.get("references"))),
                file_path=_relative_path(raw_path, root),
                line_number=start_line,
                end_line_number=end_line,
                cwe=join_values(metadata.get("cwe")),
                fix_available=False,
                code_snippet=extract_code_snippet(
                    root, raw_path, start_line, end_line, context=context_lines
                ),
            )
        )
    return findings
