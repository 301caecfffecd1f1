"""Error taxonomy surfaced by the object writer.

Every failure that leaves :class:`~s3stream.app.services.object_writer.MultipartObjectWriter`
is one of the classes below. Storage-client exceptions never escape raw; they
are attached as ``cause`` (and ``__cause__``) of the wrapping error.
"""

from __future__ import annotations


class ObjectWriterError(Exception):
    """Base class for every error raised by the object writer."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class RecoverableIOError(ObjectWriterError):
    """Transient or ambiguous backend failure.

    ``retriable`` tells the caller whether re-running the whole write/commit
    sequence is expected to help.
    """

    retriable: bool = True


class RetriableIOError(RecoverableIOError):
    """Backend overload, internal fault or transport failure."""

    retriable = True


class NonRetriableIOError(RecoverableIOError):
    """Client-class backend rejection (malformed request, auth failure)."""

    retriable = False


class TargetExistsError(ObjectWriterError):
    """The conditional write lost: the target object already exists."""

    def __init__(
        self,
        message: str,
        *,
        bucket: str,
        object_key: str,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.bucket = bucket
        self.object_key = object_key


class ConsistencyFaultError(ObjectWriterError):
    """The backend rejected the precondition but the object is absent."""


class ConfigurationError(ObjectWriterError, ValueError):
    """Writer configuration is invalid or self-contradictory."""


class WriterStateError(ObjectWriterError, RuntimeError):
    """Operation is not allowed in the writer's current state."""
