"""
External scanner invocation.

Each scanner is described by a ToolSpec (binary, fixed arguments, accepted exit
codes); a ToolRunner executes it. The three adapters differ only in their ToolSpec:

- SBOM: `trivy fs --format json --list-all-pkgs <root>`
- Vulnerabilities and secrets: `trivy fs --format json --scanners vuln,secret <root>`
- Static analysis: `semgrep scan --config <cfg> --json <root>`; exit codes 1 and 2
  mean "findings present" rather than a failed run.
"""

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from secscan.core.config import Settings

logger = logging.getLogger(__name__)

SBOM_TOOL = "sbom"
VULNERABILITY_TOOL = "vulnerability"
STATIC_ANALYSIS_TOOL = "static-analysis"


class ToolExecutionError(Exception):
    """
    Raised when a scanner cannot be run, times out, or exits outside its accepted codes.

    exit_code is None when no exit status exists (binary missing or timeout).
    """

    def __init__(
        self,
        tool: str,
        message: str,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        self.tool = tool
        self.message = message
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)


@dataclass(frozen=True)
class ToolResult:
    """Exit status and captured output of one scanner process."""

    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""


@dataclass(frozen=True)
class ToolSpec:
    """How to invoke one scanner: binary, fixed arguments, and which exit codes count as success."""

    name: str
    binary: str
    args: tuple[str, ...]
    accepted_exit_codes: frozenset[int] = field(default_factory=lambda: frozenset({0}))

    def command(self, root: Path) -> list[str]:
        """Full argv with the directory to analyze as the final argument."""
        return [self.binary, *self.args, str(root)]


class ToolRunner(Protocol):
    """Capability to run a command and report its exit code and output."""

    async def run(self, tool: str, args: Sequence[str], timeout: float | None = None) -> ToolResult:
        ...


class SubprocessToolRunner:
    """Run scanners as child processes; kills the child on timeout or cancellation."""

    async def run(self, tool: str, args: Sequence[str], timeout: float | None = None) -> ToolResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ToolExecutionError(
                tool,
                f"{tool} scanner could not be started ({args[0]}): {e.strerror or e!s}",
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError as e:
            await _kill(proc)
            raise ToolExecutionError(
                tool, f"{tool} scanner timed out after {timeout:g}s"
            ) from e
        except asyncio.CancelledError:
            await _kill(proc)
            raise
        return ToolResult(exit_code=proc.returncode, stdout=stdout, stderr=stderr)


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()


def build_tool_specs(settings: "Settings") -> dict[str, ToolSpec]:
    """Return the three scanner specs keyed by tool name."""
    return {
        SBOM_TOOL: ToolSpec(
            name=SBOM_TOOL,
            binary=settings.TRIVY_BINARY,
            args=("fs", "--quiet", "--format", "json", "--list-all-pkgs"),
        ),
        VULNERABILITY_TOOL: ToolSpec(
            name=VULNERABILITY_TOOL,
            binary=settings.TRIVY_BINARY,
            args=("fs", "--quiet", "--format", "json", "--scanners", "vuln,secret"),
        ),
        STATIC_ANALYSIS_TOOL: ToolSpec(
            name=STATIC_ANALYSIS_TOOL,
            binary=settings.SEMGREP_BINARY,
            args=("scan", "--config", settings.SEMGREP_CONFIG, "--json", "--quiet", "--metrics", "off"),
            accepted_exit_codes=frozenset({0, 1, 2}),
        ),
    }


async def run_tool(
    spec: ToolSpec,
    root: Path,
    runner: ToolRunner,
    timeout: float | None = None,
) -> str:
    """
    Run one scanner over `root` and return its stdout as text.

    Raises ToolExecutionError if the process cannot start, times out, or exits
    with a code outside spec.accepted_exit_codes.
    """
    start = time.perf_counter()
    result = await runner.run(spec.name, spec.command(root), timeout=timeout)
    elapsed = time.perf_counter() - start
    stderr = result.stderr.decode("utf-8", errors="replace")

    if result.exit_code not in spec.accepted_exit_codes:
        logger.info(
            "Scanner run rejected",
            extra={
                "tool": spec.name,
                "exit_code": result.exit_code,
                "duration_seconds": elapsed,
                "status": "error",
            },
        )
        raise ToolExecutionError(
            spec.name,
            f"{spec.name} scanner failed with exit code {result.exit_code}",
            exit_code=result.exit_code,
            stderr=stderr,
        )

    logger.info(
        "Scanner run completed",
        extra={
            "tool": spec.name,
            "exit_code": result.exit_code,
            "duration_seconds": elapsed,
            "stdout_bytes": len(result.stdout),
        },
    )
    return result.stdout.decode("utf-8", errors="replace")
