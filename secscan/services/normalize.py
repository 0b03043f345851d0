"""Shared normalization rules: severity levels, ecosystem names, CVE references and text coercion."""

import re
from collections.abc import Iterable
from typing import Any

from secscan.schemas.scan import SEVERITY_VALUES, SeverityLevel

_DEFAULT_SEVERITY: SeverityLevel = "low"
_DEFAULT_STATIC_SEVERITY: SeverityLevel = "medium"
_UNKNOWN = "unknown"

# Static-analysis levels collapse onto three of our four severities.
_STATIC_SEVERITY_MAP: dict[str, SeverityLevel] = {
    "error": "high",
    "warning": "medium",
    "info": "low",
}

# Package-manager / lockfile type -> registry identity.
ECOSYSTEM_ALIASES: dict[str, str] = {
    "npm": "npm",
    "yarn": "npm",
    "pnpm": "npm",
    "bun": "npm",
    "node-pkg": "npm",
    "pip": "pypi",
    "pipenv": "pypi",
    "poetry": "pypi",
    "uv": "pypi",
    "python-pkg": "pypi",
    "conda-pkg": "conda",
    "maven": "maven",
    "gradle": "maven",
    "sbt": "maven",
    "jar": "maven",
    "pom": "maven",
    "go": "go",
    "gomod": "go",
    "gobinary": "go",
    "composer": "packagist",
    "composer-vendor": "packagist",
    "cargo": "crates.io",
    "rust-binary": "crates.io",
    "nuget": "nuget",
    "dotnet-core": "nuget",
    "packages-props": "nuget",
    "gem": "rubygems",
    "bundler": "rubygems",
    "gemspec": "rubygems",
    "cocoapods": "cocoapods",
    "swift": "swift",
    "pub": "pub",
    "hex": "hex",
    "mix-lock": "hex",
}

_CVE_PATTERN = re.compile(r"CVE-\d{4}-\d{4,}", re.IGNORECASE)

_SEVERITY_RANK: dict[str, int] = {
    severity: rank for rank, severity in enumerate(reversed(SEVERITY_VALUES))
}


def normalize_severity(raw_severity: Any) -> SeverityLevel:
    """
    Lower-case a scanner severity. Missing values and levels outside
    critical/high/medium/low (e.g. UNKNOWN) become "low".
    """
    value = str_or_none(raw_severity)
    if value is None:
        return _DEFAULT_SEVERITY
    normalized = value.lower()
    if normalized in SEVERITY_VALUES:
        return normalized  # type: ignore[return-value]
    return _DEFAULT_SEVERITY


def map_static_severity(raw_severity: Any) -> SeverityLevel:
    """error -> high, warning -> medium, info -> low; anything else (or nothing) -> medium."""
    value = str_or_none(raw_severity)
    if value is None:
        return _DEFAULT_STATIC_SEVERITY
    return _STATIC_SEVERITY_MAP.get(value.lower(), _DEFAULT_STATIC_SEVERITY)


def canonical_ecosystem(raw_type: Any) -> str:
    """Collapse package-manager names to their registry; unknown names pass through unchanged."""
    value = str_or_none(raw_type)
    if value is None:
        return _UNKNOWN
    return ECOSYSTEM_ALIASES.get(value.lower(), value)


def highest_severity(severities: Iterable[str], default: SeverityLevel = "low") -> SeverityLevel:
    """Return the most severe level in `severities`, or `default` when there are none."""
    best: SeverityLevel = default
    for severity in severities:
        if _SEVERITY_RANK.get(severity, -1) > _SEVERITY_RANK[best]:
            best = severity  # type: ignore[assignment]
    return best


def find_cve_reference(references: Iterable[Any]) -> str | None:
    """
    Return the CVE id from the first reference mentioning "CVE".

    When that reference contains no well-formed id (e.g. a bare advisory URL),
    the reference itself is returned.
    """
    for ref in references:
        text = str_or_none(ref)
        if text is None or "CVE" not in text:
            continue
        match = _CVE_PATTERN.search(text)
        return match.group(0).upper() if match else text
    return None


def join_values(values: Any, sep: str = ", ") -> str | None:
    """Join a list of scalars into one display string; a plain string passes through."""
    if values is None:
        return None
    if isinstance(values, str):
        return str_or_none(values)
    if isinstance(values, (list, tuple)):
        parts = [s for s in (str_or_none(v) for v in values) if s]
        return sep.join(parts) or None
    return str_or_none(values)


def as_list(value: Any) -> list[Any]:
    """Wrap a scalar in a list; None becomes empty."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def str_or_none(value: Any) -> str | None:
    """Return string or None; coerce non-str to str if sensible."""
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    return str(value).strip() or None


def int_or_none(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
