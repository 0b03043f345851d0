"""
Scan orchestration: extract the archive, run the three scanner stages
concurrently, record progress, and clean up.

Progress seen by pollers: 0 on creation, 10 when scanning starts, 25 after
extraction, 90 once every stage has finished, 100 on completion. Any
extraction or scanner failure marks the scan failed (progress 0) and cancels
the stages still running.
"""

import asyncio
import logging
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from fastapi import Request

from secscan.core.store import InvalidTransitionError, ScanStore
from secscan.schemas.scan import SbomComponentCreate, ScanResults, ScanStatusResponse
from secscan.services.extractor import extract_archive, remove_path
from secscan.services.ingest import (
    apply_risk_levels,
    collect_sbom_components,
    collect_static_findings,
    ingest_vulnerabilities,
    store_components,
    store_vulnerabilities,
)
from secscan.services.tools import (
    SBOM_TOOL,
    STATIC_ANALYSIS_TOOL,
    VULNERABILITY_TOOL,
    SubprocessToolRunner,
    ToolRunner,
    build_tool_specs,
    run_tool,
)

if TYPE_CHECKING:
    from secscan.core.config import Settings

logger = logging.getLogger(__name__)

PROGRESS_SCANNING = 10
PROGRESS_EXTRACTED = 25
PROGRESS_STAGES_DONE = 90


class ScanOrchestrator:
    """Runs scans against an injected store; one asyncio task per scan."""

    def __init__(
        self,
        store: ScanStore,
        settings: "Settings",
        runner: ToolRunner | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.runner = runner or SubprocessToolRunner()
        self.specs = build_tool_specs(settings)
        self._tasks: set[asyncio.Task[None]] = set()

    def start_scan(self, archive_path: Path, filename: str) -> int:
        """
        Create the scan record and schedule its orchestration on the running loop.

        Returns the new scan id without waiting for the scan to finish.
        """
        scan = self.store.create_scan(filename)
        task = asyncio.get_running_loop().create_task(
            self.run_scan(scan.id, Path(archive_path)),
            name=f"scan-{scan.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Scan scheduled", extra={"scan_id": scan.id, "upload_name": filename})
        return scan.id

    async def run_scan(self, scan_id: int, archive_path: Path) -> None:
        """Drive one scan to completed or failed. Never raises for scan-level failures."""
        extract_dir: Path | None = None
        try:
            if self.store.update_scan_status(scan_id, "scanning", PROGRESS_SCANNING) is None:
                raise LookupError(f"scan {scan_id} does not exist")
            extract_dir = self._make_extract_dir(scan_id)
            await asyncio.to_thread(extract_archive, archive_path, extract_dir)
            self.store.update_scan_status(scan_id, "scanning", PROGRESS_EXTRACTED)

            await self._run_stages(scan_id, extract_dir)

            self.store.update_scan_status(scan_id, "scanning", PROGRESS_STAGES_DONE)
            self.store.complete_scan(scan_id)
            logger.info("Scan completed", extra={"scan_id": scan_id})
        except asyncio.CancelledError:
            self._mark_failed(scan_id)
            raise
        except Exception as e:
            logger.exception("Scan failed: %s", e, extra={"scan_id": scan_id})
            self._mark_failed(scan_id)
        finally:
            await self._cleanup(scan_id, extract_dir, archive_path)

    async def _run_stages(self, scan_id: int, root: Path) -> None:
        """Run the three stages together; the first failure cancels the rest and is re-raised."""
        correlate = self.settings.CORRELATE_SBOM_RISK
        sbom_task = asyncio.create_task(self._sbom_stage(scan_id, root, defer=correlate))
        tasks = [
            sbom_task,
            asyncio.create_task(self._vulnerability_stage(scan_id, root)),
            asyncio.create_task(self._static_analysis_stage(scan_id, root)),
        ]
        try:
            await _wait_all_or_first_failure(tasks)
        finally:
            pending = [t for t in tasks if not t.done()]
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if correlate:
            components = apply_risk_levels(
                sbom_task.result(), self.store.get_vulnerabilities_by_scan(scan_id)
            )
            store_components(self.store, components)

    async def _scan_output(self, tool: str, root: Path) -> str:
        return await run_tool(
            self.specs[tool], root, self.runner, timeout=self.settings.TOOL_TIMEOUT_SEC
        )

    async def _sbom_stage(self, scan_id: int, root: Path, defer: bool) -> list[SbomComponentCreate]:
        output = await self._scan_output(SBOM_TOOL, root)
        components = collect_sbom_components(output, scan_id)
        if not defer:
            store_components(self.store, components)
        logger.info("SBOM stage finished", extra={"scan_id": scan_id, "components": len(components)})
        return components

    async def _vulnerability_stage(self, scan_id: int, root: Path) -> None:
        output = await self._scan_output(VULNERABILITY_TOOL, root)
        created = ingest_vulnerabilities(self.store, scan_id, output)
        logger.info("Vulnerability stage finished", extra={"scan_id": scan_id, "findings": created})

    async def _static_analysis_stage(self, scan_id: int, root: Path) -> None:
        output = await self._scan_output(STATIC_ANALYSIS_TOOL, root)
        # Snippet extraction reads files; keep it off the event loop. Records are
        # written back on the loop so a cancelled stage leaves nothing behind.
        findings = await asyncio.to_thread(
            collect_static_findings,
            output,
            scan_id,
            root,
            self.settings.SNIPPET_CONTEXT_LINES,
        )
        created = store_vulnerabilities(self.store, findings)
        logger.info("Static analysis stage finished", extra={"scan_id": scan_id, "findings": created})

    def _make_extract_dir(self, scan_id: int) -> Path:
        """Fresh, empty directory under WORK_DIR; never shared with another run."""
        work_dir = Path(self.settings.WORK_DIR).resolve()
        work_dir.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"scan_{scan_id}_", dir=work_dir))

    def _mark_failed(self, scan_id: int) -> None:
        try:
            self.store.update_scan_status(scan_id, "failed")
        except InvalidTransitionError as e:
            logger.error("Could not mark scan failed: %s", e.message, extra={"scan_id": scan_id})

    async def _cleanup(self, scan_id: int, extract_dir: Path | None, archive_path: Path) -> None:
        """Remove the extracted tree and the uploaded archive; failures are only logged."""
        for path in (extract_dir, archive_path):
            if path is None:
                continue
            try:
                await asyncio.to_thread(remove_path, path)
            except OSError:
                logger.warning(
                    "Cleanup failed for %s", path, exc_info=True, extra={"scan_id": scan_id}
                )

    # Queries

    def get_status(self, scan_id: int) -> ScanStatusResponse | None:
        scan = self.store.get_scan(scan_id)
        if scan is None:
            return None
        return ScanStatusResponse(
            id=scan.id, status=scan.status, progress=scan.progress, filename=scan.filename
        )

    def get_results(self, scan_id: int) -> ScanResults | None:
        return self.store.get_scan_results(scan_id)

    async def wait_idle(self) -> None:
        """Wait for every scheduled scan to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel running scans; each is marked failed and cleaned up."""
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()


async def _wait_all_or_first_failure(tasks: list[asyncio.Task]) -> None:
    done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    for task in tasks:
        if task in done and not task.cancelled() and task.exception() is not None:
            raise task.exception()


def get_orchestrator(request: Request) -> ScanOrchestrator:
    """Dependency that returns the orchestrator constructed at application startup."""
    return request.app.state.orchestrator

