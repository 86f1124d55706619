"""Error taxonomy shared by the metrics and cache components.

Absence is never an error: lookups return ``None`` and range queries return
an empty summary.
"""


class OpsCacheError(Exception):
    """Base class for every error raised by opscache."""


class StoreUnavailable(OpsCacheError):
    """The shared store could not be reached, timed out or rejected a command."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Store unavailable during {operation}{detail}")


class CorruptionError(OpsCacheError):
    """A stored payload could not be parsed into its expected shape."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Corrupt payload at {key!r}: {reason}")


class ValidationError(OpsCacheError):
    """The caller passed a malformed key, tag, dimension, family or range."""
