"""Best-effort source excerpts around a flagged line range."""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_LINES = 2
FLAGGED_MARKER = ">"
CONTEXT_MARKER = " "


def resolve_in_root(root: Path, file_path: str) -> Path | None:
    """
    Map a scanner-reported path onto the extracted tree.

    Absolute paths are accepted only when they already point inside `root`;
    relative paths are joined onto it. Anything escaping `root` yields None.
    """
    root = root.resolve()
    candidate = Path(file_path)
    if not candidate.is_absolute():
        candidate = root / candidate
    candidate = candidate.resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        return None
    return candidate


def extract_code_snippet(
    root: Path | None,
    file_path: str | None,
    start_line: int | None,
    end_line: int | None = None,
    context: int = DEFAULT_CONTEXT_LINES,
) -> str | None:
    """
    Return lines start_line..end_line (1-indexed) with `context` lines either side.

    Each line is rendered as "<marker> <number> | <text>", where the marker is ">"
    inside the flagged range and a space on context lines. Returns None instead of
    raising when the start line, the root or the file is unavailable.
    """
    if start_line is None or start_line < 1 or root is None or not file_path:
        return None

    path = resolve_in_root(root, file_path)
    if path is None:
        return None
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        logger.debug("Snippet source unreadable", extra={"path": str(path)})
        return None
    if start_line > len(lines):
        return None

    last_flagged = max(end_line or start_line, start_line)
    first = max(1, start_line - context)
    last = min(len(lines), last_flagged + context)
    width = len(str(last))

    rendered = []
    for number in range(first, last + 1):
        marker = FLAGGED_MARKER if start_line <= number <= last_flagged else CONTEXT_MARKER
        rendered.append(f"{marker} {number:>{width}} | {lines[number - 1]}")
    return "\n".join(rendered)
