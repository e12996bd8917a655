"""Custom exception hierarchy for the Ferry pipeline.

Every class carries a ``kind`` naming the error category recorded on a
failed job (``Job.error_kind``).  Errors below the job boundary are either
recovered locally or folded into that record by the processor.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """Error categories surfaced through ``Job.error``."""

    ARCHIVE_CORRUPT = "ArchiveCorrupt"
    POLICY_VIOLATION = "PolicyViolation"
    UNRECOGNIZED = "Unrecognized"
    UNSUPPORTED_LANGUAGE = "UnsupportedLanguage"
    PARSE_ERROR = "ParseError"
    QUOTA_EXCEEDED = "QuotaExceeded"
    EMBEDDING_UNAVAILABLE = "EmbeddingUnavailable"
    IO_ERROR = "IoError"
    DEADLINE_EXCEEDED = "DeadlineExceeded"
    CONCURRENT_CLAIM = "ConcurrentClaim"
    GENERATION_FAILED = "GenerationFailed"
    INTERNAL = "Internal"


class FerryError(Exception):
    """Base exception for all Ferry errors."""

    kind: ErrorKind = ErrorKind.INTERNAL


class ArchiveCorruptError(FerryError):
    """Raised when archive headers cannot be read."""

    kind = ErrorKind.ARCHIVE_CORRUPT


class PolicyViolationError(FerryError):
    """Raised when an archive breaks an extraction policy (caps, traversal)."""

    kind = ErrorKind.POLICY_VIOLATION

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class UnrecognizedError(FerryError):
    """Raised when neither extension nor content identifies a language."""

    kind = ErrorKind.UNRECOGNIZED


class UnsupportedLanguageError(FerryError):
    """Raised when file content is binary or not valid UTF-8."""

    kind = ErrorKind.UNSUPPORTED_LANGUAGE


class ChunkParseError(FerryError):
    """Raised when a source file fails to parse.

    *byte_offset* is the position of the first syntax error, when known.
    """

    kind = ErrorKind.PARSE_ERROR

    def __init__(self, message: str, byte_offset: int = 0) -> None:
        super().__init__(message)
        self.byte_offset = byte_offset


class QuotaExceededError(FerryError):
    """Raised when a provider signals quota or rate-limit exhaustion."""

    kind = ErrorKind.QUOTA_EXCEEDED


class EmbeddingUnavailableError(FerryError):
    """Raised when an embedding cannot be produced and fallback is not allowed."""

    kind = ErrorKind.EMBEDDING_UNAVAILABLE


class StorageIOError(FerryError):
    """Raised on filesystem, blob download, or database I/O failures."""

    kind = ErrorKind.IO_ERROR


class DeadlineExceededError(FerryError):
    """Raised when an external call outlives its deadline.  Retryable."""

    kind = ErrorKind.DEADLINE_EXCEEDED


class ConcurrentClaimError(FerryError):
    """Raised when a job is held by another processor."""

    kind = ErrorKind.CONCURRENT_CLAIM


class GenerationFailedError(FerryError):
    """Raised when the generation model fails or returns an unusable reply."""

    kind = ErrorKind.GENERATION_FAILED


class JobNotFoundError(FerryError):
    """Raised when a job id or session id does not exist."""


class InvalidTransitionError(FerryError):
    """Raised on a job mutation the state machine does not permit."""


class JobCancelledError(FerryError):
    """Raised inside a running job when it was deleted or its claim was lost."""
