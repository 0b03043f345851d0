"""Scan endpoints: upload an archive, poll status, read and export results."""

import asyncio
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, BinaryIO
from uuid import uuid4

from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile

from secscan.core.config import get_settings
from secscan.schemas.scan import (
    ScanExportReport,
    ScanResults,
    ScanStartedResponse,
    ScanStatusResponse,
)
from secscan.services.extractor import SUPPORTED_SUFFIXES, is_supported_archive
from secscan.services.orchestrator import ScanOrchestrator, get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()

UPLOAD_CHUNK_BYTES = 1024 * 1024


def _archive_suffix(filename: str) -> str:
    """Longest supported suffix of filename, so `.tar.gz` wins over `.gz`."""
    lower = filename.lower()
    return max((s for s in SUPPORTED_SUFFIXES if lower.endswith(s)), key=len)


def _write_limited(src: BinaryIO, dest: Path, max_bytes: int) -> int:
    """Copy src to dest in chunks; stops once more than max_bytes have been read. Returns bytes read."""
    written = 0
    with open(dest, "wb") as out:
        while chunk := src.read(UPLOAD_CHUNK_BYTES):
            written += len(chunk)
            if written > max_bytes:
                break
            out.write(chunk)
    return written


async def _save_upload(upload: UploadFile, upload_dir: Path, max_bytes: int) -> Path:
    """Stream the upload to disk under a random name in a worker thread; enforces the size limit."""
    upload_dir.mkdir(parents=True, exist_ok=True)
    dest = upload_dir / f"{uuid4().hex}{_archive_suffix(upload.filename or '')}"
    written = await asyncio.to_thread(_write_limited, upload.file, dest, max_bytes)
    if written > max_bytes:
        dest.unlink(missing_ok=True)
        raise HTTPException(
            status_code=413,
            detail=f"File size must not exceed {max_bytes // (1024 * 1024)} MB.",
        )
    return dest


@router.post("/upload", response_model=ScanStartedResponse)
async def upload_repository(
    orchestrator: Annotated[ScanOrchestrator, Depends(get_orchestrator)],
    repository: Annotated[UploadFile | None, File()] = None,
) -> ScanStartedResponse:
    """
    Accept a repository archive and start scanning it in the background.

    Send `multipart/form-data` with a field named `repository` holding a `.zip`
    (or `.tar`, `.tar.gz`, `.tgz`) archive. Returns the scan id to poll.
    """
    if repository is None:
        raise HTTPException(status_code=400, detail="No file uploaded")
    filename = repository.filename or ""
    if not is_supported_archive(filename):
        raise HTTPException(status_code=400, detail="Only ZIP or tar archives are allowed")

    settings = get_settings()
    archive_path = await _save_upload(repository, Path(settings.UPLOAD_DIR), settings.MAX_UPLOAD_BYTES)
    scan_id = orchestrator.start_scan(archive_path, filename)
    return ScanStartedResponse(scan_id=scan_id)


@router.get("/{scan_id}/status", response_model=ScanStatusResponse)
def get_scan_status(
    scan_id: int,
    orchestrator: Annotated[ScanOrchestrator, Depends(get_orchestrator)],
) -> ScanStatusResponse:
    """Return status, progress (0-100) and filename of a scan."""
    status = orchestrator.get_status(scan_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Scan not found")
    return status


def _completed_results(orchestrator: ScanOrchestrator, scan_id: int) -> ScanResults:
    results = orchestrator.get_results(scan_id)
    if results is None:
        raise HTTPException(status_code=404, detail="Scan results not found")
    if results.scan.status != "completed":
        raise HTTPException(status_code=409, detail="Scan not completed yet")
    return results


@router.get("/{scan_id}/results", response_model=ScanResults)
def get_scan_results(
    scan_id: int,
    orchestrator: Annotated[ScanOrchestrator, Depends(get_orchestrator)],
) -> ScanResults:
    """
    Return the scan, its severity summary, vulnerabilities and SBOM components.

    Only completed scans have results; failed or running scans return 409.
    """
    return _completed_results(orchestrator, scan_id)


@router.get("/{scan_id}/export", response_model=ScanExportReport)
def export_scan_results(
    scan_id: int,
    response: Response,
    orchestrator: Annotated[ScanOrchestrator, Depends(get_orchestrator)],
) -> ScanExportReport:
    """Download whatever the store holds for a scan as a JSON report, stamped with its generation time."""
    results = orchestrator.get_results(scan_id)
    if results is None:
        raise HTTPException(status_code=404, detail="Scan results not found")
    response.headers["Content-Disposition"] = f'attachment; filename="scan_{scan_id}_report.json"'
    return ScanExportReport(**results.model_dump(), generated_at=datetime.now(UTC))
