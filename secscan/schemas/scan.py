"""Pydantic schemas for scans, vulnerabilities, SBOM components and the combined results view."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ScanStatus = Literal["uploading", "scanning", "completed", "failed"]
SeverityLevel = Literal["critical", "high", "medium", "low"]
VulnerabilityType = Literal["sca", "sast"]
ComponentType = Literal["direct", "transitive"]

SEVERITY_VALUES: tuple[SeverityLevel, ...] = ("critical", "high", "medium", "low")


class CamelModel(BaseModel):
    """Base for API-facing models: snake_case attributes, camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Scan(CamelModel):
    """One scan per uploaded archive."""

    id: int
    filename: str
    status: ScanStatus = "uploading"
    progress: int = Field(default=0, ge=0, le=100)
    created_at: datetime
    completed_at: datetime | None = None


class VulnerabilityCreate(CamelModel):
    """Normalizer output for one finding; the store assigns the id."""

    scan_id: int
    type: VulnerabilityType
    severity: SeverityLevel
    title: str = Field(..., min_length=1)
    description: str | None = None
    component: str | None = None
    version: str | None = None
    cve: str | None = None
    # Text, so scores keep whatever precision the source reported.
    cvss_score: str | None = None
    file_path: str | None = None
    line_number: int | None = None
    end_line_number: int | None = None
    cwe: str | None = None
    fix_available: bool = False
    code_snippet: str | None = None


class Vulnerability(VulnerabilityCreate):
    """Stored finding from the vulnerability, secret or static-analysis stage."""

    id: int


class SbomComponentCreate(CamelModel):
    """Normalizer output for one package; the store assigns the id."""

    scan_id: int
    name: str
    version: str
    license: str | None = None
    type: ComponentType = "direct"
    ecosystem: str | None = None
    risk_level: SeverityLevel = "low"


class SbomComponent(SbomComponentCreate):
    """Stored package reported by the SBOM stage."""

    id: int


class ScanSummary(CamelModel):
    """Severity counts and dependency total; computed on every results query."""

    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    dependencies: int = 0


class ScanResults(CamelModel):
    """A scan with everything found for it."""

    scan: Scan
    summary: ScanSummary
    vulnerabilities: list[Vulnerability] = Field(default_factory=list)
    sbom_components: list[SbomComponent] = Field(default_factory=list)


class ScanStatusResponse(CamelModel):
    """Polling payload for a running or finished scan."""

    id: int
    status: ScanStatus
    progress: int
    filename: str


class ScanStartedResponse(CamelModel):
    """Response after an archive was accepted and its scan scheduled."""

    scan_id: int


class ScanExportReport(ScanResults):
    """Downloadable report: the results view stamped with its generation time."""

    generated_at: datetime
