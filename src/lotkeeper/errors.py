"""Exception types raised by the reconciliation engine."""

from typing import Any, Optional


class LotkeeperError(Exception):
    """Base class for engine errors."""

    pass


class ValidationFailure(LotkeeperError, ValueError):
    """Raised when a caller passes invalid input. No state has changed."""

    pass


class RemoteFailure(LotkeeperError):
    """Raised when the server of record rejects a call or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageCorruption(LotkeeperError):
    """Raised when a persisted blob cannot be decoded."""

    pass


class PartialBatchFailure(LotkeeperError):
    """Raised when some mutations of one operation committed and others rolled back."""

    def __init__(self, batch_id: str, failures: list[Any]) -> None:
        described = ", ".join(f"{f.kind} {f.entity_id}" for f in failures)
        super().__init__(f"Batch {batch_id} partially failed: {described}")
        self.batch_id = batch_id
        self.failures = failures
