"""Pydantic request/response schemas."""

from secscan.schemas.health import HealthResponse
from secscan.schemas.scan import (
    SEVERITY_VALUES,
    SbomComponent,
    SbomComponentCreate,
    Scan,
    ScanExportReport,
    ScanResults,
    ScanStartedResponse,
    ScanStatus,
    ScanStatusResponse,
    ScanSummary,
    SeverityLevel,
    Vulnerability,
    VulnerabilityCreate,
)

__all__ = [
    "HealthResponse",
    "SEVERITY_VALUES",
    "SbomComponent",
    "SbomComponentCreate",
    "Scan",
    "ScanExportReport",
    "ScanResults",
    "ScanStartedResponse",
    "ScanStatus",
    "ScanStatusResponse",
    "ScanSummary",
    "SeverityLevel",
    "Vulnerability",
    "VulnerabilityCreate",
]
