"""
Exception taxonomy for trace diagnostics.

Fatal errors abort a run before any report is produced. Rule-level anomalies
are not represented here: the rule engine logs them and moves on.
"""

from typing import Optional


class TraceDiagnosticsError(Exception):
    """Base class for every error raised by the diagnostics engine."""


class MalformedTraceError(TraceDiagnosticsError):
    """A trace record (or the trace container itself) cannot be parsed."""

    def __init__(self, message: str, source_index: Optional[int] = None, field: Optional[str] = None):
        super().__init__(message)
        self.source_index = source_index
        self.field = field


class TraceUnusableError(MalformedTraceError):
    """Too many records were skipped for the trace to be analyzed."""

    def __init__(self, skipped: int, total: int, max_skip_fraction: float):
        super().__init__(
            f"Trace unusable: {skipped} of {total} entries skipped "
            f"(limit {max_skip_fraction:.0%})"
        )
        self.skipped = skipped
        self.total = total
        self.max_skip_fraction = max_skip_fraction


class ConfigurationError(TraceDiagnosticsError, ValueError):
    """Invalid engine configuration or rule registry, detected at construction."""


class AnalysisCancelledError(TraceDiagnosticsError):
    """The caller cancelled the run; partial results were discarded."""

    def __init__(self, stage: str):
        super().__init__(f"Analysis cancelled before stage '{stage}'")
        self.stage = stage
