"""
CLI entrypoint: scan one archive in the foreground and print the results as JSON.

  python -m secscan.scan path/to/repo.zip

The archive is deleted by cleanup once the scan ends; pass --keep-archive to
scan a temporary copy instead.
"""

import argparse
import asyncio
import logging
import shutil
import sys
import tempfile
from pathlib import Path

from secscan.core.config import get_settings
from secscan.core.store import ScanStore
from secscan.services.orchestrator import ScanOrchestrator

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="secscan",
        description="Run SBOM, vulnerability/secret and static-analysis scanners over a repository archive.",
    )
    parser.add_argument("archive", help="Path to a .zip or tar archive of the repository")
    parser.add_argument(
        "--keep-archive",
        action="store_true",
        help="Scan a copy so the original archive is not removed",
    )
    return parser


async def run(archive: Path, keep_archive: bool) -> int:
    """Scan `archive` with a fresh store; returns 0 when the scan completed, else 1."""
    settings = get_settings()
    store = ScanStore()
    orchestrator = ScanOrchestrator(store, settings)

    with tempfile.TemporaryDirectory() as tmp:
        target = archive
        if keep_archive:
            target = Path(tmp) / archive.name
            shutil.copy2(archive, target)
        scan = store.create_scan(archive.name)
        await orchestrator.run_scan(scan.id, target)

    results = store.get_scan_results(scan.id)
    print(results.model_dump_json(by_alias=True, indent=2))
    if results.scan.status != "completed":
        logger.error("Scan %s ended with status %s", scan.id, results.scan.status)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and run one scan."""
    args = build_parser().parse_args(argv)
    archive = Path(args.archive).expanduser().resolve()
    if not archive.is_file():
        logger.error("Archive not found: %s", archive)
        return 2
    try:
        return asyncio.run(run(archive, args.keep_archive))
    except Exception as e:
        logger.exception("Scan job failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
