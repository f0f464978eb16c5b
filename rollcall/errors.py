from __future__ import annotations

from typing import List, Optional


class RollcallError(Exception):
    pass


class ConfigError(RollcallError):
    pass


class ValidationError(RollcallError):
    pass


class SchemaError(RollcallError):
    """Roster is missing required columns. Nothing was imported."""

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(f"Missing columns: {', '.join(self.missing)}")


class EmptyImportError(RollcallError):
    def __init__(self, message: str = "Roster has no valid rows"):
        super().__init__(message)


class ConnectivityError(RollcallError):
    """Pre-import probe failed; zero rows were written."""


class CommitError(RollcallError):
    """A single roster row could not be written. Counted, never raised to callers."""

    def __init__(self, prn: str, cause: BaseException):
        self.prn = prn
        self.cause = cause
        super().__init__(f"Failed to commit {prn}: {type(cause).__name__}: {cause}")


class NoEventSelectedError(RollcallError):
    def __init__(self, message: str = "Please select an event first"):
        super().__init__(message)


class EventNotFoundError(RollcallError):
    pass


class StoreTimeout(RollcallError, TimeoutError):
    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:g}s" if timeout is not None else "Timed out")
