"""In-memory scan store: scans, vulnerabilities and SBOM components keyed by id."""

import itertools
import logging
import threading
from collections.abc import Iterable
from datetime import UTC, datetime

from secscan.schemas.scan import (
    SEVERITY_VALUES,
    SbomComponent,
    SbomComponentCreate,
    Scan,
    ScanResults,
    ScanStatus,
    ScanSummary,
    Vulnerability,
    VulnerabilityCreate,
)

logger = logging.getLogger(__name__)

# Lifecycle graph: uploading -> scanning -> completed | failed. Terminal states have no exits.
_ALLOWED_TRANSITIONS: dict[ScanStatus, frozenset[ScanStatus]] = {
    "uploading": frozenset({"scanning"}),
    "scanning": frozenset({"scanning", "completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when a status update would leave the scan lifecycle or move progress backwards."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ScanStore:
    """
    Owns every Scan, Vulnerability and SbomComponent record.

    Ids are allocated from per-kind counters that never repeat. Reads hand out
    copies, so callers can only change state through the store's operations.
    Safe for concurrent writers.
    """

    def __init__(self) -> None:
        self._scans: dict[int, Scan] = {}
        self._vulnerabilities: dict[int, Vulnerability] = {}
        self._sbom_components: dict[int, SbomComponent] = {}
        self._scan_ids = itertools.count(1)
        self._vulnerability_ids = itertools.count(1)
        self._sbom_ids = itertools.count(1)
        self._lock = threading.Lock()

    # Scans

    def create_scan(self, filename: str) -> Scan:
        with self._lock:
            scan = Scan(
                id=next(self._scan_ids),
                filename=filename,
                status="uploading",
                progress=0,
                created_at=datetime.now(UTC),
            )
            self._scans[scan.id] = scan
            return scan.model_copy()

    def get_scan(self, scan_id: int) -> Scan | None:
        with self._lock:
            scan = self._scans.get(scan_id)
            return scan.model_copy() if scan else None

    def update_scan_status(
        self,
        scan_id: int,
        status: ScanStatus,
        progress: int | None = None,
    ) -> Scan | None:
        """
        Move a scan to `status`, optionally setting progress.

        Entering `failed` resets progress to 0. Completion goes through
        complete_scan so progress and completed_at are set together.
        Returns None if the scan does not exist.
        """
        if status == "completed":
            raise InvalidTransitionError("Use complete_scan to mark a scan completed")
        with self._lock:
            scan = self._scans.get(scan_id)
            if scan is None:
                logger.warning("Status update for unknown scan", extra={"scan_id": scan_id})
                return None
            self._check_transition(scan, status)
            if status == "failed":
                scan.progress = 0
            elif progress is not None:
                if not 0 <= progress <= 99:
                    raise InvalidTransitionError(
                        f"progress must be between 0 and 99 before completion, got {progress}"
                    )
                if status == scan.status and progress < scan.progress:
                    raise InvalidTransitionError(
                        f"progress cannot decrease while {status} ({scan.progress} -> {progress})"
                    )
                scan.progress = progress
            scan.status = status
            return scan.model_copy()

    def complete_scan(self, scan_id: int) -> Scan | None:
        with self._lock:
            scan = self._scans.get(scan_id)
            if scan is None:
                logger.warning("Completion for unknown scan", extra={"scan_id": scan_id})
                return None
            self._check_transition(scan, "completed")
            scan.status = "completed"
            scan.progress = 100
            scan.completed_at = datetime.now(UTC)
            return scan.model_copy()

    @staticmethod
    def _check_transition(scan: Scan, status: ScanStatus) -> None:
        if status not in _ALLOWED_TRANSITIONS[scan.status]:
            raise InvalidTransitionError(
                f"scan {scan.id} cannot move from {scan.status} to {status}"
            )

    # Vulnerabilities

    def create_vulnerability(self, data: VulnerabilityCreate) -> Vulnerability:
        with self._lock:
            vulnerability = Vulnerability(id=next(self._vulnerability_ids), **data.model_dump())
            self._vulnerabilities[vulnerability.id] = vulnerability
            return vulnerability.model_copy()

    def get_vulnerabilities_by_scan(self, scan_id: int) -> list[Vulnerability]:
        with self._lock:
            return _copies(v for v in self._vulnerabilities.values() if v.scan_id == scan_id)

    # SBOM components

    def create_sbom_component(self, data: SbomComponentCreate) -> SbomComponent:
        with self._lock:
            component = SbomComponent(id=next(self._sbom_ids), **data.model_dump())
            self._sbom_components[component.id] = component
            return component.model_copy()

    def get_sbom_components_by_scan(self, scan_id: int) -> list[SbomComponent]:
        with self._lock:
            return _copies(c for c in self._sbom_components.values() if c.scan_id == scan_id)

    # Combined results

    def get_scan_results(self, scan_id: int) -> ScanResults | None:
        """Return the scan with its findings and a freshly computed summary, or None if unknown."""
        scan = self.get_scan(scan_id)
        if scan is None:
            return None
        vulnerabilities = self.get_vulnerabilities_by_scan(scan_id)
        sbom_components = self.get_sbom_components_by_scan(scan_id)
        return ScanResults(
            scan=scan,
            summary=summarize(vulnerabilities, sbom_components),
            vulnerabilities=vulnerabilities,
            sbom_components=sbom_components,
        )


def summarize(
    vulnerabilities: list[Vulnerability],
    sbom_components: list[SbomComponent],
) -> ScanSummary:
    """Count findings per severity plus the number of components."""
    counts = {severity: 0 for severity in SEVERITY_VALUES}
    for v in vulnerabilities:
        counts[v.severity] += 1
    return ScanSummary(**counts, dependencies=len(sbom_components))


def _copies(items: Iterable[Vulnerability] | Iterable[SbomComponent]) -> list:
    return sorted((item.model_copy() for item in items), key=lambda item: item.id)
