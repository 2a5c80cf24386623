"""Exception hierarchy for the filter benchmark."""

from __future__ import annotations


class FilterBenchError(Exception):
    """Base class for all errors raised by the filter benchmark."""


class ConfigLoadError(FilterBenchError):
    """Raised when the preset source is unreachable or malformed."""


class UnknownPresetError(FilterBenchError, KeyError):
    """Raised when a preset key is not present in the catalog."""

    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f'Preset "{self.key}" not found'


class BackendError(FilterBenchError):
    """Base class for compute backend failures."""


class BackendInitError(BackendError):
    """Raised when the native module cannot be loaded or linked."""


class BackendNotReadyError(BackendError):
    """Raised when ``process`` is called before a successful ``init``."""


class ForeignAllocationError(BackendError):
    """Raised when the native module cannot allocate a foreign buffer."""


class NativeInvocationError(BackendError):
    """Raised when the exported native routine traps or fails."""


class PersistenceError(FilterBenchError):
    """Raised when durable history storage cannot be read or written."""


class EmptyHistoryError(FilterBenchError):
    """Raised when an export is requested for a history with no entries."""
