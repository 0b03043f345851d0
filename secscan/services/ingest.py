"""
Normalizer boundary: turn one scanner's raw output into store records.

Malformed output never fails a scan. The offending stage is logged and
contributes no records.
"""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

from pydantic import ValidationError

from secscan.core.store import ScanStore
from secscan.schemas.scan import SbomComponentCreate, Vulnerability, VulnerabilityCreate
from secscan.services.normalize import highest_severity
from secscan.services.scanner_mappers import (
    NormalizationError,
    map_semgrep_findings,
    map_trivy_packages,
    map_trivy_secrets,
    map_trivy_vulnerabilities,
)
from secscan.services.snippets import DEFAULT_CONTEXT_LINES

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _collect(stage: str, scan_id: int, mapper: Callable[[], list[T]]) -> list[T]:
    try:
        return mapper()
    except (NormalizationError, ValidationError) as e:
        logger.warning(
            "Discarding malformed scanner output",
            extra={"scan_id": scan_id, "stage": stage, "error": str(e)},
        )
        return []


def collect_sbom_components(output: str | None, scan_id: int) -> list[SbomComponentCreate]:
    return _collect("sbom", scan_id, lambda: map_trivy_packages(output, scan_id))


def collect_vulnerabilities(output: str | None, scan_id: int) -> list[VulnerabilityCreate]:
    return _collect("vulnerability", scan_id, lambda: map_trivy_vulnerabilities(output, scan_id))


def collect_secrets(output: str | None, scan_id: int) -> list[VulnerabilityCreate]:
    return _collect("secret", scan_id, lambda: map_trivy_secrets(output, scan_id))


def collect_static_findings(
    output: str | None,
    scan_id: int,
    root: Path | None = None,
    context_lines: int = DEFAULT_CONTEXT_LINES,
) -> list[VulnerabilityCreate]:
    return _collect(
        "static-analysis",
        scan_id,
        lambda: map_semgrep_findings(output, scan_id, root=root, context_lines=context_lines),
    )


def apply_risk_levels(
    components: list[SbomComponentCreate],
    vulnerabilities: list[Vulnerability],
) -> list[SbomComponentCreate]:
    """
    Set each component's risk level to the worst SCA finding against the same
    name and version. Components without findings stay "low".
    """
    by_package: dict[tuple[str, str], list[str]] = {}
    for v in vulnerabilities:
        if v.type != "sca" or not v.component:
            continue
        by_package.setdefault((v.component, v.version or ""), []).append(v.severity)
    return [
        c.model_copy(update={"risk_level": highest_severity(by_package.get((c.name, c.version), []))})
        for c in components
    ]


def store_components(store: ScanStore, components: list[SbomComponentCreate]) -> int:
    for component in components:
        store.create_sbom_component(component)
    return len(components)


def store_vulnerabilities(store: ScanStore, findings: list[VulnerabilityCreate]) -> int:
    for finding in findings:
        store.create_vulnerability(finding)
    return len(findings)


def ingest_sbom(store: ScanStore, scan_id: int, output: str | None) -> int:
    """Create one SbomComponent per reported package; returns how many were created."""
    return store_components(store, collect_sbom_components(output, scan_id))


def ingest_vulnerabilities(store: ScanStore, scan_id: int, output: str | None) -> int:
    """Create SCA findings and secret findings from one Trivy report."""
    created = store_vulnerabilities(store, collect_vulnerabilities(output, scan_id))
    created += store_vulnerabilities(store, collect_secrets(output, scan_id))
    return created


def ingest_static_findings(
    store: ScanStore,
    scan_id: int,
    output: str | None,
    root: Path | None = None,
    context_lines: int = DEFAULT_CONTEXT_LINES,
) -> int:
    """Create SAST findings (with code snippets where resolvable) from one Semgrep report."""
    return store_vulnerabilities(
        store, collect_static_findings(output, scan_id, root=root, context_lines=context_lines)
    )
