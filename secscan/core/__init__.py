"""Core app configuration and scan store."""

from secscan.core.config import get_settings, settings
from secscan.core.store import ScanStore

__all__ = ["ScanStore", "get_settings", "settings"]
