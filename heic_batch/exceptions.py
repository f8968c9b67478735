"""
Error taxonomy for the batch conversion pipeline.

Contention (VersionMismatch) is retried locally and never leaves the
optimistic updater. Everything else is surfaced to the caller, which decides
between acknowledging the event and handing it back to the queue.
"""

from typing import Optional


class HeicBatchError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(HeicBatchError):
    """Raised when the Lambda environment is missing or malformed."""


class BatchNotFound(HeicBatchError):
    """The batch record does not exist (never created, or expired by TTL)."""

    def __init__(self, request_id: str):
        super().__init__(f"Request {request_id} does not exist")
        self.request_id = request_id


class BatchAlreadyExists(HeicBatchError):
    def __init__(self, request_id: str):
        super().__init__(f"Request {request_id} already exists")
        self.request_id = request_id


class VersionMismatch(HeicBatchError):
    """A conditional update lost the race against another writer."""

    def __init__(self, request_id: str, expected_version: int, current_version: Optional[int] = None):
        super().__init__(
            f"Version mismatch on {request_id}: expected {expected_version}, found {current_version}"
        )
        self.request_id = request_id
        self.expected_version = expected_version
        self.current_version = current_version


class RetriesExhausted(HeicBatchError):
    """The CAS retry budget ran out. Retryable by the outer delivery mechanism."""

    def __init__(self, request_id: str, attempts: int):
        super().__init__(f"Gave up updating {request_id} after {attempts} attempts")
        self.request_id = request_id
        self.attempts = attempts


class BusinessRuleViolation(HeicBatchError):
    """The requested change is not allowed. Never retried."""


class CounterOverflow(BusinessRuleViolation):
    def __init__(self, request_id: str, counter: str, nb_files: int):
        super().__init__(f"{counter} of {request_id} would exceed nbFiles={nb_files}")
        self.request_id = request_id
        self.counter = counter
        self.nb_files = nb_files


class BatchTerminated(BusinessRuleViolation):
    def __init__(self, request_id: str, state: str):
        super().__init__(f"Request {request_id} is already {state}")
        self.request_id = request_id
        self.state = state


class IllegalTransition(BusinessRuleViolation):
    def __init__(self, state: str, event: str):
        super().__init__(f"No transition from {state} on {event}")
        self.state = state
        self.event = event


class ConversionFailed(HeicBatchError):
    """The image could not be decoded or encoded."""


class ArchiveFailed(HeicBatchError):
    """Producing or storing the archive failed; the batch has been marked FAILED."""

    def __init__(self, request_id: str, reason: str):
        super().__init__(f"Archiving {request_id} failed: {reason}")
        self.request_id = request_id
        self.reason = reason
