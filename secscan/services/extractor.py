"""Extract an uploaded archive (zip or tar) into a working directory, refusing paths that escape it."""

import logging
import os
import shutil
import tarfile
import zipfile
from pathlib import Path

logger = logging.getLogger(__name__)

# Archive suffixes accepted by the upload layer and the extractor.
ZIP_SUFFIXES = (".zip",)
TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tar.xz")
SUPPORTED_SUFFIXES = ZIP_SUFFIXES + TAR_SUFFIXES


class ExtractionError(Exception):
    """Raised when an archive is missing, malformed, or contains unsafe member paths."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


def is_supported_archive(filename: str) -> bool:
    """True if the filename carries one of the archive suffixes we can extract."""
    return filename.lower().endswith(SUPPORTED_SUFFIXES)


def _should_skip_member(member_name: str) -> bool:
    """Skip macOS resource forks and Finder metadata."""
    parts = [p for p in member_name.replace("\\", "/").split("/") if p]
    if not parts:
        return True
    return parts[0] == "__MACOSX" or parts[-1] == ".DS_Store"


def _normalized_name(name: str) -> str:
    # Windows-built zips may use backslashes; leading slashes would make the path absolute.
    return name.replace("\\", "/").lstrip("/")


def _is_within_directory(base_dir: Path, target: Path) -> bool:
    try:
        target.resolve().relative_to(base_dir.resolve())
        return True
    except ValueError:
        return False


def _extract_zip(archive_path: Path, dest: Path) -> int:
    with zipfile.ZipFile(archive_path, "r") as zf:
        members = [m for m in zf.infolist() if not _should_skip_member(m.filename)]

        # Validate every member before writing anything.
        for member in members:
            if not _is_within_directory(dest, dest / _normalized_name(member.filename)):
                raise ExtractionError(f"Archive member escapes destination: {member.filename}")

        for member in members:
            norm = _normalized_name(member.filename)
            out_path = dest / norm
            if member.is_dir() or norm.endswith("/"):
                out_path.mkdir(parents=True, exist_ok=True)
                continue
            out_path.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(member, "r") as src, open(out_path, "wb") as dst:
                shutil.copyfileobj(src, dst)
            mode = (member.external_attr >> 16) & 0o777
            if mode:
                os.chmod(out_path, mode | 0o600)
        return len(members)


def _extract_tar(archive_path: Path, dest: Path) -> int:
    with tarfile.open(archive_path, "r:*") as tf:
        members = [m for m in tf.getmembers() if not _should_skip_member(m.name)]
        for member in members:
            if not _is_within_directory(dest, dest / _normalized_name(member.name)):
                raise ExtractionError(f"Archive member escapes destination: {member.name}")
        tf.extractall(dest, members=members, filter="data")
        return len(members)


def extract_archive(archive_path: Path, dest: Path) -> Path:
    """
    Populate `dest` (created if absent, and required to be empty) with the
    archive's full contents, preserving relative paths.

    The archive format is detected from its content, not its name. Raises
    ExtractionError when the archive is missing, corrupt, or unsafe.
    Returns the resolved destination directory.
    """
    archive_path = Path(archive_path)
    if not archive_path.is_file():
        raise ExtractionError(f"Archive not found: {archive_path}")

    dest = Path(dest).resolve()
    dest.mkdir(parents=True, exist_ok=True)
    if any(dest.iterdir()):
        raise ExtractionError(f"Destination is not empty: {dest}")

    try:
        if zipfile.is_zipfile(archive_path):
            count = _extract_zip(archive_path, dest)
        elif tarfile.is_tarfile(archive_path):
            count = _extract_tar(archive_path, dest)
        else:
            raise ExtractionError(f"Unsupported or corrupt archive: {archive_path.name}")
    except ExtractionError:
        raise
    except (zipfile.BadZipFile, tarfile.TarError, OSError, EOFError, ValueError) as e:
        raise ExtractionError(f"Failed to extract {archive_path.name}: {e!s}", cause=e) from e

    logger.info(
        "Archive extracted",
        extra={"archive": archive_path.name, "members": count, "destination": str(dest)},
    )
    return dest


def remove_path(path: Path) -> None:
    """Delete a file or directory tree if it exists. Errors propagate to the caller."""
    path = Path(path)
    if path.is_dir():
        shutil.rmtree(path)
    elif path.exists():
        path.unlink()
