"""Tests for secscan.services.orchestrator: lifecycle, concurrent stages, failure handling and cleanup."""

import asyncio
import json
import tempfile
import unittest
import zipfile
from collections.abc import Sequence
from pathlib import Path

from secscan.core.config import Settings
from secscan.core.store import ScanStore
from secscan.services.orchestrator import ScanOrchestrator
from secscan.services.tools import (
    SBOM_TOOL,
    STATIC_ANALYSIS_TOOL,
    VULNERABILITY_TOOL,
    ToolExecutionError,
    ToolResult,
)

SBOM_OUTPUT = json.dumps(
    {
        "Results": [
            {
                "Target": "package-lock.json",
                "Type": "npm",
                "Packages": [{"Name": "left-pad", "Version": "1.0.0"}],
            }
        ]
    }
)
VULN_OUTPUT = json.dumps(
    {
        "Results": [
            {
                "Target": "package-lock.json",
                "Type": "npm",
                "Vulnerabilities": [
                    {
                        "VulnerabilityID": "CVE-2021-1234",
                        "PkgName": "left-pad",
                        "InstalledVersion": "1.0.0",
                        "Severity": "HIGH",
                    }
                ],
            }
        ]
    }
)
EMPTY_SEMGREP = json.dumps({"results": [], "errors": []})


class FakeRunner:
    """ToolRunner double: canned result (or exception) per tool, optional delay, records calls."""

    def __init__(
        self,
        results: dict[str, ToolResult | Exception],
        delays: dict[str, float] | None = None,
    ) -> None:
        self.results = results
        self.delays = delays or {}
        self.calls: list[tuple[str, list[str]]] = []
        self.cancelled: list[str] = []

    async def run(self, tool: str, args: Sequence[str], timeout: float | None = None) -> ToolResult:
        self.calls.append((tool, list(args)))
        try:
            await asyncio.sleep(self.delays.get(tool, 0))
        except asyncio.CancelledError:
            self.cancelled.append(tool)
            raise
        result = self.results[tool]
        if isinstance(result, Exception):
            raise result
        return result


class RecordingStore(ScanStore):
    """ScanStore that remembers every (status, progress) it was moved to."""

    def __init__(self) -> None:
        super().__init__()
        self.history: list[tuple[str, int]] = []

    def update_scan_status(self, scan_id, status, progress=None):
        scan = super().update_scan_status(scan_id, status, progress)
        if scan is not None:
            self.history.append((scan.status, scan.progress))
        return scan

    def complete_scan(self, scan_id):
        scan = super().complete_scan(scan_id)
        if scan is not None:
            self.history.append((scan.status, scan.progress))
        return scan


class TreeListingRunner(FakeRunner):
    """FakeRunner that also records the files present in the scanned root at call time."""

    def __init__(self, results: dict[str, ToolResult | Exception], **kwargs: object) -> None:
        super().__init__(results, **kwargs)
        self.seen_files: dict[str, list[str]] = {}

    async def run(self, tool: str, args: Sequence[str], timeout: float | None = None) -> ToolResult:
        root = Path(args[-1])
        self.seen_files[tool] = sorted(
            p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file()
        )
        return await super().run(tool, args, timeout)


def _ok(stdout: str) -> ToolResult:
    return ToolResult(exit_code=0, stdout=stdout.encode("utf-8"))


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.work_dir = self.tmp / "work"
        self.store = RecordingStore()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _settings(self, **kwargs: object) -> Settings:
        return Settings(_env_file=None, WORK_DIR=self.work_dir, **kwargs)

    def _archive(self) -> Path:
        path = self.tmp / "upload.zip"
        source = "\n".join(f"const line{n} = {n};" for n in range(1, 61)) + "\n"
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("package.json", '{"name": "demo"}')
            zf.writestr("src/index.js", source)
        return path

    def _scan(self, runner: FakeRunner, archive: Path | None = None, **settings: object) -> int:
        archive = archive or self._archive()
        orchestrator = ScanOrchestrator(self.store, self._settings(**settings), runner=runner)
        scan_id = self.store.create_scan("upload.zip").id
        asyncio.run(orchestrator.run_scan(scan_id, archive))
        return scan_id


class TestSuccessfulScan(OrchestratorTestCase):
    def test_left_pad_scenario(self) -> None:
        runner = FakeRunner(
            {
                SBOM_TOOL: _ok(SBOM_OUTPUT),
                VULNERABILITY_TOOL: _ok(VULN_OUTPUT),
                STATIC_ANALYSIS_TOOL: _ok(EMPTY_SEMGREP),
            }
        )
        scan_id = self._scan(runner)
        results = self.store.get_scan_results(scan_id)

        self.assertEqual(results.scan.status, "completed")
        self.assertEqual(results.scan.progress, 100)
        self.assertIsNotNone(results.scan.completed_at)

        [component] = results.sbom_components
        self.assertEqual(component.ecosystem, "npm")
        self.assertEqual(component.risk_level, "low")
        [vuln] = results.vulnerabilities
        self.assertEqual(vuln.severity, "high")
        self.assertFalse(vuln.fix_available)
        self.assertEqual(results.summary.high, 1)
        self.assertEqual(results.summary.dependencies, 1)

    def test_progress_sequence(self) -> None:
        runner = FakeRunner(
            {
                SBOM_TOOL: _ok(SBOM_OUTPUT),
                VULNERABILITY_TOOL: _ok(VULN_OUTPUT),
                STATIC_ANALYSIS_TOOL: _ok(EMPTY_SEMGREP),
            }
        )
        self._scan(runner)
        self.assertEqual(
            self.store.history,
            [("scanning", 10), ("scanning", 25), ("scanning", 90), ("completed", 100)],
        )

    def test_all_tools_run_against_extracted_tree(self) -> None:
        runner = FakeRunner(
            {
                SBOM_TOOL: _ok(""),
                VULNERABILITY_TOOL: _ok(""),
                STATIC_ANALYSIS_TOOL: _ok(""),
            }
        )
        scan_id = self._scan(runner)
        self.assertEqual(sorted(tool for tool, _ in runner.calls), sorted([SBOM_TOOL, VULNERABILITY_TOOL, STATIC_ANALYSIS_TOOL]))
        roots = {Path(args[-1]) for _, args in runner.calls}
        self.assertEqual(len(roots), 1)
        [root] = roots
        self.assertEqual(root.parent, self.work_dir.resolve())
        self.assertTrue(root.name.startswith(f"scan_{scan_id}_"))

    def test_static_analysis_exit_code_1_still_completes(self) -> None:
        semgrep = json.dumps(
            {
                "results": [
                    {
                        "check_id": "javascript.eval",
                        "path": "src/index.js",
                        "start": {"line": 10},
                        "end": {"line": 10},
                        "extra": {"message": "Avoid eval", "severity": "WARNING"},
                    }
                ]
            }
        )
        runner = FakeRunner(
            {
                SBOM_TOOL: _ok(""),
                VULNERABILITY_TOOL: _ok(""),
                STATIC_ANALYSIS_TOOL: ToolResult(exit_code=1, stdout=semgrep.encode()),
            }
        )
        scan_id = self._scan(runner)
        results = self.store.get_scan_results(scan_id)
        self.assertEqual(results.scan.status, "completed")
        [finding] = results.vulnerabilities
        self.assertEqual(finding.severity, "medium")
        self.assertIn("> 10 | const line10 = 10;", finding.code_snippet)

    def test_missing_snippet_file_does_not_abort(self) -> None:
        semgrep = json.dumps(
            {
                "results": [
                    {
                        "check_id": "rule",
                        "path": "src/deleted.js",
                        "start": {"line": 50},
                        "extra": {"message": "m", "severity": "ERROR"},
                    }
                ]
            }
        )
        runner = FakeRunner(
            {
                SBOM_TOOL: _ok(""),
                VULNERABILITY_TOOL: _ok(""),
                STATIC_ANALYSIS_TOOL: _ok(semgrep),
            }
        )
        scan_id = self._scan(runner)
        results = self.store.get_scan_results(scan_id)
        self.assertEqual(results.scan.status, "completed")
        [finding] = results.vulnerabilities
        self.assertEqual(finding.line_number, 50)
        self.assertIsNone(finding.code_snippet)

    def test_malformed_output_degrades_to_no_findings(self) -> None:
        runner = FakeRunner(
            {
                SBOM_TOOL: _ok("not json at all"),
                VULNERABILITY_TOOL: _ok(VULN_OUTPUT),
                STATIC_ANALYSIS_TOOL: _ok("[]"),
            }
        )
        scan_id = self._scan(runner)
        results = self.store.get_scan_results(scan_id)
        self.assertEqual(results.scan.status, "completed")
        self.assertEqual(results.sbom_components, [])
        self.assertEqual(len(results.vulnerabilities), 1)

    def test_correlated_risk_levels(self) -> None:
        runner = FakeRunner(
            {
                SBOM_TOOL: _ok(SBOM_OUTPUT),
                VULNERABILITY_TOOL: _ok(VULN_OUTPUT),
                STATIC_ANALYSIS_TOOL: _ok(EMPTY_SEMGREP),
            },
            delays={VULNERABILITY_TOOL: 0.05},
        )
        scan_id = self._scan(runner, CORRELATE_SBOM_RISK=True)
        [component] = self.store.get_sbom_components_by_scan(scan_id)
        self.assertEqual(component.risk_level, "high")


class TestFailedScan(OrchestratorTestCase):
    def test_vulnerability_exit_code_3_fails_scan(self) -> None:
        runner = FakeRunner(
            {
                SBOM_TOOL: _ok(SBOM_OUTPUT),
                VULNERABILITY_TOOL: ToolResult(exit_code=3, stderr=b"boom"),
                STATIC_ANALYSIS_TOOL: _ok(EMPTY_SEMGREP),
            }
        )
        scan_id = self._scan(runner)
        scan = self.store.get_scan(scan_id)
        self.assertEqual(scan.status, "failed")
        self.assertEqual(scan.progress, 0)
        self.assertIsNone(scan.completed_at)

    def test_first_failure_cancels_running_stages(self) -> None:
        runner = FakeRunner(
            {
                SBOM_TOOL: _ok(SBOM_OUTPUT),
                VULNERABILITY_TOOL: ToolExecutionError(VULNERABILITY_TOOL, "trivy missing"),
                STATIC_ANALYSIS_TOOL: _ok(EMPTY_SEMGREP),
            },
            delays={SBOM_TOOL: 30, STATIC_ANALYSIS_TOOL: 30},
        )
        scan_id = self._scan(runner)
        self.assertEqual(self.store.get_scan(scan_id).status, "failed")
        self.assertEqual(sorted(runner.cancelled), sorted([SBOM_TOOL, STATIC_ANALYSIS_TOOL]))
        self.assertEqual(self.store.get_sbom_components_by_scan(scan_id), [])

    def test_corrupt_archive_fails_without_running_tools(self) -> None:
        archive = self.tmp / "upload.zip"
        archive.write_bytes(b"garbage")
        runner = FakeRunner({})
        scan_id = self._scan(runner, archive=archive)
        scan = self.store.get_scan(scan_id)
        self.assertEqual(scan.status, "failed")
        self.assertEqual(scan.progress, 0)
        self.assertEqual(runner.calls, [])
        self.assertEqual(self.store.history, [("scanning", 10), ("failed", 0)])


class TestCleanup(OrchestratorTestCase):
    def _assert_cleaned(self, scan_id: int, archive: Path) -> None:
        self.assertEqual(list(self.work_dir.glob(f"scan_{scan_id}_*")), [])
        self.assertFalse(archive.exists())

    def test_cleanup_after_completion(self) -> None:
        archive = self._archive()
        runner = FakeRunner(
            {SBOM_TOOL: _ok(""), VULNERABILITY_TOOL: _ok(""), STATIC_ANALYSIS_TOOL: _ok("")}
        )
        scan_id = self._scan(runner, archive=archive)
        self._assert_cleaned(scan_id, archive)

    def test_cleanup_after_failure(self) -> None:
        archive = self._archive()
        runner = FakeRunner(
            {
                SBOM_TOOL: _ok(""),
                VULNERABILITY_TOOL: _ok(""),
                STATIC_ANALYSIS_TOOL: ToolResult(exit_code=127),
            }
        )
        scan_id = self._scan(runner, archive=archive)
        self.assertEqual(self.store.get_scan(scan_id).status, "failed")
        self._assert_cleaned(scan_id, archive)


class TestExtractionWorkspace(OrchestratorTestCase):
    """Each run extracts into its own directory, whatever else lives under WORK_DIR."""

    def _index_only_archive(self, name: str, file_name: str = "index.js") -> Path:
        path = self.tmp / name
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr(file_name, "console.log(1);\n")
        return path

    def _empty_results(self) -> dict[str, ToolResult]:
        return {SBOM_TOOL: _ok(""), VULNERABILITY_TOOL: _ok(""), STATIC_ANALYSIS_TOOL: _ok("")}

    def test_leftover_tree_from_earlier_process_is_not_scanned(self) -> None:
        stale = self.work_dir / "scan_1"
        stale.mkdir(parents=True)
        (stale / "old_upload_secret.py").write_text("API_KEY = 'abc'\n")

        runner = TreeListingRunner(self._empty_results())
        scan_id = self._scan(runner, archive=self._index_only_archive("upload.zip"))

        self.assertEqual(scan_id, 1)
        self.assertEqual(self.store.get_scan(scan_id).status, "completed")
        for tool in (SBOM_TOOL, VULNERABILITY_TOOL, STATIC_ANALYSIS_TOOL):
            self.assertEqual(runner.seen_files[tool], ["index.js"])
        self.assertTrue((stale / "old_upload_secret.py").exists())

    def test_concurrent_runs_with_same_scan_id_stay_isolated(self) -> None:
        first_runner = TreeListingRunner(self._empty_results(), delays={SBOM_TOOL: 0.05})
        second_runner = TreeListingRunner(self._empty_results())
        first_store, second_store = ScanStore(), ScanStore()
        first = ScanOrchestrator(first_store, self._settings(), runner=first_runner)
        second = ScanOrchestrator(second_store, self._settings(), runner=second_runner)
        first_id = first_store.create_scan("a.zip").id
        second_id = second_store.create_scan("b.zip").id
        self.assertEqual(first_id, second_id)

        async def scenario() -> None:
            await asyncio.gather(
                first.run_scan(first_id, self._index_only_archive("a.zip", "a.js")),
                second.run_scan(second_id, self._index_only_archive("b.zip", "b.js")),
            )

        asyncio.run(scenario())
        self.assertEqual(first_store.get_scan(first_id).status, "completed")
        self.assertEqual(second_store.get_scan(second_id).status, "completed")
        self.assertEqual(first_runner.seen_files[SBOM_TOOL], ["a.js"])
        self.assertEqual(second_runner.seen_files[SBOM_TOOL], ["b.js"])
        self.assertEqual(list(self.work_dir.iterdir()), [])


class TestStartScan(OrchestratorTestCase):
    def test_returns_immediately_and_runs_in_background(self) -> None:
        runner = FakeRunner(
            {
                SBOM_TOOL: _ok(SBOM_OUTPUT),
                VULNERABILITY_TOOL: _ok(VULN_OUTPUT),
                STATIC_ANALYSIS_TOOL: _ok(EMPTY_SEMGREP),
            },
            delays={SBOM_TOOL: 0.05},
        )
        orchestrator = ScanOrchestrator(self.store, self._settings(), runner=runner)
        archive = self._archive()

        async def scenario() -> tuple[str, str]:
            scan_id = orchestrator.start_scan(archive, "upload.zip")
            initial = orchestrator.get_status(scan_id)
            await orchestrator.wait_idle()
            final = orchestrator.get_status(scan_id)
            return initial.status, final.status

        initial, final = asyncio.run(scenario())
        self.assertEqual(initial, "uploading")
        self.assertEqual(final, "completed")

    def test_get_status_unknown(self) -> None:
        orchestrator = ScanOrchestrator(self.store, self._settings(), runner=FakeRunner({}))
        self.assertIsNone(orchestrator.get_status(99))
        self.assertIsNone(orchestrator.get_results(99))


if __name__ == "__main__":
    unittest.main()
