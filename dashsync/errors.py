"""Error taxonomy for the sync layer.

None of these escape the coordinator: sources fall back to mock, malformed
resources are skipped, enrichment falls back to generated events.
"""

from __future__ import annotations

from typing import Any, Optional


class DashSyncError(Exception):
    """Base class. Carries a short machine code and optional detail."""

    code = "DASHSYNC_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, detail: Any = None):
        self.message = message
        if code is not None:
            self.code = code
        self.detail = detail
        super().__init__(message)


class SourceUnavailableError(DashSyncError):
    """Connectivity probe or query against a source failed."""

    code = "SOURCE_UNAVAILABLE"


class MalformedResourceError(DashSyncError):
    """A resource payload could not be adapted at all."""

    code = "MALFORMED_RESOURCE"


class EnrichmentError(DashSyncError):
    """The timeline generator raised or timed out."""

    code = "ENRICHMENT_FAILED"


class ConfigError(DashSyncError):
    code = "CONFIG_ERROR"
