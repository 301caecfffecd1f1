"""Buffered multipart writer for a single object.

Bytes written to :class:`MultipartObjectWriter` accumulate in a part buffer.
The first time the buffer fills, a multipart upload session is initiated and
every full buffer is uploaded as the next numbered part. ``commit()`` uploads
the remaining bytes and completes the session, optionally with an
``If-None-Match: *`` precondition. Objects that never fill one part are sent
with a single ``PutObject``.
"""

from __future__ import annotations

import logging
import zlib
from dataclasses import dataclass, field
from enum import Enum
from types import TracebackType
from typing import Any, NoReturn

from s3stream.common.config import Settings, get_settings
from s3stream.domain import MAX_PART_NUMBER, MAX_PART_SIZE_BYTES, MIN_PART_SIZE_BYTES
from s3stream.domain.classification import (
    OutcomeKind,
    classify_failure,
    needs_existence_probe,
)
from s3stream.domain.conditional import ConditionalWritePolicy
from s3stream.domain.encryption import EncryptionSpec, encryption_from_settings
from s3stream.domain.errors import (
    ConfigurationError,
    ConsistencyFaultError,
    NonRetriableIOError,
    ObjectWriterError,
    RecoverableIOError,
    RetriableIOError,
    TargetExistsError,
    WriterStateError,
)
from s3stream.infra.observability import metrics
from s3stream.infra.storage.client import CompletedPart, StorageClient, StorageError
from s3stream.infra.storage.s3_client import S3StorageClient

logger = logging.getLogger("s3stream.writer")

MODE_MULTIPART = "multipart"
MODE_SINGLE_PUT = "single_put"


class WriterState(str, Enum):
    EMPTY = "empty"
    BUFFERING = "buffering"
    MULTIPART_ACTIVE = "multipart_active"
    COMMITTED = "committed"
    FAILED = "failed"


_TRANSITIONS: dict[WriterState, frozenset[WriterState]] = {
    WriterState.EMPTY: frozenset(
        {
            WriterState.BUFFERING,
            WriterState.MULTIPART_ACTIVE,
            WriterState.COMMITTED,
            WriterState.FAILED,
        }
    ),
    WriterState.BUFFERING: frozenset(
        {WriterState.MULTIPART_ACTIVE, WriterState.COMMITTED, WriterState.FAILED}
    ),
    WriterState.MULTIPART_ACTIVE: frozenset(
        {WriterState.COMMITTED, WriterState.FAILED}
    ),
    WriterState.COMMITTED: frozenset(),
    WriterState.FAILED: frozenset(),
}

_TERMINAL_STATES = frozenset({WriterState.COMMITTED, WriterState.FAILED})


@dataclass
class UploadSession:
    """One in-flight multipart upload for ``object_key``."""

    object_key: str
    upload_id: str | None = None
    completed_parts: list[CompletedPart] = field(default_factory=list)
    closed: bool = False

    def bind(self, upload_id: str) -> None:
        if self.upload_id is not None:
            raise WriterStateError(
                f"Upload session for {self.object_key} already has an upload id"
            )
        if not upload_id:
            raise WriterStateError("Backend returned an empty upload id")
        self.upload_id = upload_id

    @property
    def next_part_number(self) -> int:
        return len(self.completed_parts) + 1

    def record(self, part: CompletedPart) -> None:
        expected = self.next_part_number
        if part.part_number != expected:
            raise WriterStateError(
                f"Part {part.part_number} acknowledged out of order, expected {expected}"
            )
        self.completed_parts.append(part)


class MultipartObjectWriter:
    """Streams bytes into one object with multipart upload and SSE.

    The writer is single-owner: ``write``, ``commit`` and ``abort`` must be
    called sequentially by one producer.
    """

    def __init__(
        self,
        object_key: str,
        *,
        storage_client: StorageClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Resolve configuration and prepare an empty part buffer.

        Args:
            object_key: Target key inside ``S3_BUCKET``.
            storage_client: Backend to upload to; an :class:`S3StorageClient`
                is built from ``settings`` when omitted.
            settings: Writer configuration; defaults to :func:`get_settings`.

        Raises:
            ConfigurationError: If the configuration is inconsistent.
        """
        self._settings = settings or get_settings()
        if not object_key:
            raise ConfigurationError("object_key must not be empty")
        if not self._settings.S3_BUCKET:
            raise ConfigurationError("S3_BUCKET is required")

        self._encryption = encryption_from_settings(self._settings)
        self._storage = storage_client or S3StorageClient(settings=self._settings)
        self._object_key = object_key
        self._bucket = self._settings.S3_BUCKET
        self._buffer = bytearray()
        self._session: UploadSession | None = None
        self._state = WriterState.EMPTY
        self._bytes_written = 0
        self._compressor: Any = None
        self._part_size = self._validate_part_size(
            self._settings.S3_PART_SIZE_BYTES, self._storage
        )
        self._conditional = ConditionalWritePolicy.from_settings(self._settings)
        if self._conditional.active and not getattr(
            self._storage, "supports_conditional_writes", False
        ):
            raise ConfigurationError(
                "Conditional writes are enabled but the storage client cannot "
                "express If-None-Match"
            )
        if self._conditional.enabled and not self._conditional.rotation_scheduled:
            logger.warning(
                "conditional writes requested without a rotation schedule, "
                "objects may be overwritten [event=conditional_writes_inactive] (key=%s)",
                object_key,
                extra={"extra": self._log_context()},
            )

        if self._settings.S3_COMPRESSION_TYPE == "gzip":
            self._compressor = zlib.compressobj(
                self._settings.S3_COMPRESSION_LEVEL, zlib.DEFLATED, 16 + zlib.MAX_WBITS
            )

    @staticmethod
    def _validate_part_size(part_size: int, storage: StorageClient) -> int:
        minimum = int(getattr(storage, "min_part_size_bytes", MIN_PART_SIZE_BYTES))
        if part_size < minimum:
            raise ConfigurationError(
                f"S3_PART_SIZE_BYTES must be at least {minimum} bytes, got {part_size}"
            )
        if part_size > MAX_PART_SIZE_BYTES:
            raise ConfigurationError(
                f"S3_PART_SIZE_BYTES must not exceed {MAX_PART_SIZE_BYTES} bytes"
            )
        return part_size

    @property
    def object_key(self) -> str:
        return self._object_key

    @property
    def state(self) -> WriterState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state in _TERMINAL_STATES

    @property
    def bytes_written(self) -> int:
        return self._bytes_written

    @property
    def upload_id(self) -> str | None:
        return self._session.upload_id if self._session else None

    @property
    def completed_parts(self) -> tuple[CompletedPart, ...]:
        if self._session is None:
            return ()
        return tuple(self._session.completed_parts)

    @property
    def encryption(self) -> EncryptionSpec:
        return self._encryption

    @property
    def conditional_policy(self) -> ConditionalWritePolicy:
        return self._conditional

    def writable(self) -> bool:
        return not self.closed

    def write(self, data: bytes | bytearray | memoryview) -> int:
        """Buffer ``data``, uploading a part each time the buffer fills.

        Returns:
            Number of bytes accepted.

        Raises:
            WriterStateError: If the writer is committed or failed.
            RecoverableIOError: If initiating or uploading a part fails.
        """
        self._ensure_open("write")
        payload = bytes(data)
        if not payload:
            return 0
        if self._state is WriterState.EMPTY:
            self._transition(WriterState.BUFFERING)

        accepted = len(payload)
        if self._compressor is not None:
            payload = self._compressor.compress(payload)
        self._append(payload)
        self._bytes_written += accepted
        return accepted

    def start_multipart_upload(self) -> str:
        """Initiate the multipart session if it does not exist yet.

        Returns:
            The backend upload id.
        """
        self._ensure_open("start a multipart upload")
        if self._session is not None and self._session.upload_id:
            return self._session.upload_id

        try:
            upload = self._storage.init_multipart_upload(
                bucket=self._bucket,
                object_key=self._object_key,
                encryption=self._encryption,
                content_type=self._settings.S3_CONTENT_TYPE,
                acl=self._settings.S3_CANNED_ACL,
            )
        except StorageError as exc:
            self._fail(
                self._recoverable("Failed to initiate multipart upload", exc), exc
            )

        session = UploadSession(object_key=self._object_key)
        session.bind(upload.upload_id)
        self._session = session
        self._transition(WriterState.MULTIPART_ACTIVE)
        logger.info(
            "multipart upload initiated [event=multipart_initiated] (key=%s upload_id=%s)",
            self._object_key,
            upload.upload_id,
            extra={"extra": self._log_context()},
        )
        return upload.upload_id

    def commit(self) -> None:
        """Upload everything buffered and make the object visible.

        Raises:
            WriterStateError: If called more than once.
            TargetExistsError: If a conditional write lost to an existing object.
            ConsistencyFaultError: If the backend rejected the precondition but
                the object does not exist.
            RecoverableIOError: For every other backend failure.
        """
        self._ensure_open("commit")
        self._finish_compression()

        if self._session is None:
            self._put_whole_object()
        else:
            if self._buffer or not self._session.completed_parts:
                self._flush_part()
            self._complete_upload()

        self._transition(WriterState.COMMITTED)

    def abort(self) -> None:
        """Discard buffered bytes and release any multipart session.

        A no-op once the writer is committed. Abort failures are logged and
        never raised.
        """
        if self._state is WriterState.COMMITTED:
            logger.debug(
                "abort ignored for committed object [event=abort_after_commit] (key=%s)",
                self._object_key,
            )
            return
        self._abort_session()
        self._buffer.clear()
        self._compressor = None
        if self._state is not WriterState.FAILED:
            self._transition(WriterState.FAILED)

    def close(self) -> None:
        if self._state is not WriterState.COMMITTED:
            self.abort()

    def __enter__(self) -> "MultipartObjectWriter":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _log_context(self) -> dict[str, Any]:
        return {
            "bucket": self._bucket,
            "object_key": self._object_key,
            "upload_id": self.upload_id,
            "state": self._state.value,
        }

    def _ensure_open(self, action: str) -> None:
        if self._state in _TERMINAL_STATES:
            raise WriterStateError(
                f"Cannot {action}: writer for {self._object_key} is {self._state.value}"
            )

    def _transition(self, target: WriterState) -> None:
        if target is self._state:
            return
        if target not in _TRANSITIONS[self._state]:
            raise WriterStateError(
                f"Illegal writer transition {self._state.value} -> {target.value}"
            )
        self._state = target

    def _append(self, payload: bytes) -> None:
        view = memoryview(payload)
        while view:
            room = self._part_size - len(self._buffer)
            self._buffer += view[:room]
            view = view[room:]
            if len(self._buffer) >= self._part_size:
                self._flush_part()

    def _finish_compression(self) -> None:
        if self._compressor is None:
            return
        tail = self._compressor.flush()
        self._compressor = None
        if tail:
            self._append(tail)

    def _flush_part(self) -> None:
        self.start_multipart_upload()
        session = self._session
        assert session is not None and session.upload_id is not None

        part_number = session.next_part_number
        if part_number > MAX_PART_NUMBER:
            self._fail(
                NonRetriableIOError(
                    f"{self._object_key} needs more than {MAX_PART_NUMBER} parts; "
                    "increase S3_PART_SIZE_BYTES"
                )
            )

        body = bytes(self._buffer)
        try:
            part = self._storage.upload_part(
                bucket=self._bucket,
                object_key=self._object_key,
                upload_id=session.upload_id,
                part_number=part_number,
                body=body,
                encryption=self._encryption,
            )
        except StorageError as exc:
            self._fail(self._recoverable(f"Failed to upload part {part_number}", exc), exc)

        session.record(part)
        self._buffer.clear()
        if self._settings.ENABLE_METRICS:
            metrics.PARTS_UPLOADED.inc()
            metrics.BYTES_UPLOADED.inc(len(body))
        logger.debug(
            "part uploaded [event=part_uploaded] (key=%s part=%s size=%s)",
            self._object_key,
            part_number,
            len(body),
            extra={"extra": {**self._log_context(), "part_number": part_number}},
        )

    def _put_whole_object(self) -> None:
        body = bytes(self._buffer)
        try:
            self._storage.put_object(
                bucket=self._bucket,
                object_key=self._object_key,
                body=body,
                encryption=self._encryption,
                content_type=self._settings.S3_CONTENT_TYPE,
                acl=self._settings.S3_CANNED_ACL,
                if_none_match=self._conditional.if_none_match,
            )
        except StorageError as exc:
            self._fail_commit(MODE_SINGLE_PUT, "Failed to put object", exc)

        self._buffer.clear()
        self._record_commit(MODE_SINGLE_PUT, "committed")
        if self._settings.ENABLE_METRICS:
            metrics.BYTES_UPLOADED.inc(len(body))
        logger.info(
            "object committed with single put [event=object_committed] (key=%s size=%s)",
            self._object_key,
            len(body),
            extra={"extra": {**self._log_context(), "mode": MODE_SINGLE_PUT}},
        )

    def _complete_upload(self) -> None:
        session = self._session
        assert session is not None and session.upload_id is not None
        try:
            self._storage.complete_multipart_upload(
                bucket=self._bucket,
                object_key=self._object_key,
                upload_id=session.upload_id,
                parts=list(session.completed_parts),
                if_none_match=self._conditional.if_none_match,
            )
        except StorageError as exc:
            self._fail_commit(MODE_MULTIPART, "Failed to complete multipart upload", exc)

        session.closed = True
        self._record_commit(MODE_MULTIPART, "committed")
        logger.info(
            "multipart upload completed [event=object_committed] (key=%s parts=%s)",
            self._object_key,
            len(session.completed_parts),
            extra={
                "extra": {
                    **self._log_context(),
                    "mode": MODE_MULTIPART,
                    "parts": len(session.completed_parts),
                }
            },
        )

    def _fail_commit(self, mode: str, message: str, exc: StorageError) -> NoReturn:
        conditional = self._conditional.active
        exists: bool | None = None
        if needs_existence_probe(
            status_code=exc.status_code,
            error_code=exc.error_code,
            conditional_writes=conditional,
        ):
            exists = self._probe_existence()

        kind = classify_failure(
            status_code=exc.status_code,
            error_code=exc.error_code,
            origin=exc.origin,
            conditional_writes=conditional,
            object_exists=exists,
        )
        self._record_commit(mode, kind.value)

        error: ObjectWriterError
        location = f"s3://{self._bucket}/{self._object_key}"
        if kind is OutcomeKind.TARGET_EXISTS:
            error = TargetExistsError(
                f"{location} already exists",
                bucket=self._bucket,
                object_key=self._object_key,
                cause=exc,
            )
        elif kind is OutcomeKind.CONSISTENCY_FAULT:
            error = ConsistencyFaultError(
                f"Backend rejected the If-None-Match precondition for {location} "
                f"(status={exc.status_code}, code={exc.error_code}) but the object "
                "does not exist; check backend conditional-write support",
                cause=exc,
            )
        else:
            error = self._error_for_kind(kind, message, exc)
        self._fail(error, exc)

    def _probe_existence(self) -> bool | None:
        try:
            return self._storage.object_exists(
                bucket=self._bucket,
                object_key=self._object_key,
                encryption=self._encryption,
            )
        except StorageError as exc:
            logger.warning(
                "existence probe failed [event=existence_probe_failed] (key=%s error=%s)",
                self._object_key,
                exc,
                extra={"extra": self._log_context()},
            )
            return None

    def _recoverable(self, message: str, exc: StorageError) -> RecoverableIOError:
        kind = classify_failure(
            status_code=exc.status_code,
            error_code=exc.error_code,
            origin=exc.origin,
            conditional_writes=False,
        )
        return self._error_for_kind(kind, message, exc)

    def _error_for_kind(
        self, kind: OutcomeKind, message: str, exc: StorageError
    ) -> RecoverableIOError:
        error_cls = (
            NonRetriableIOError if kind is OutcomeKind.NON_RETRIABLE else RetriableIOError
        )
        return error_cls(
            f"{message} for s3://{self._bucket}/{self._object_key}: {exc}", cause=exc
        )

    def _fail(
        self, error: ObjectWriterError, cause: BaseException | None = None
    ) -> NoReturn:
        logger.error(
            "object write failed [event=object_write_failed] (key=%s error=%s)",
            self._object_key,
            error,
            extra={
                "extra": {**self._log_context(), "error_type": type(error).__name__}
            },
        )
        self._abort_session()
        self._buffer.clear()
        self._compressor = None
        if self._state is not WriterState.FAILED:
            self._transition(WriterState.FAILED)
        if cause is None:
            raise error
        raise error from cause

    def _abort_session(self) -> None:
        session = self._session
        if session is None or session.upload_id is None or session.closed:
            return
        session.closed = True
        try:
            self._storage.abort_multipart_upload(
                bucket=self._bucket,
                object_key=self._object_key,
                upload_id=session.upload_id,
            )
        except StorageError as exc:
            if self._settings.ENABLE_METRICS:
                metrics.ABORTS.labels(result="failed").inc()
            logger.warning(
                "failed to abort multipart upload [event=multipart_abort_failed] "
                "(key=%s upload_id=%s)",
                self._object_key,
                session.upload_id,
                exc_info=exc,
                extra={"extra": self._log_context()},
            )
            return
        if self._settings.ENABLE_METRICS:
            metrics.ABORTS.labels(result="aborted").inc()
        logger.info(
            "multipart upload aborted [event=multipart_aborted] (key=%s upload_id=%s)",
            self._object_key,
            session.upload_id,
            extra={"extra": self._log_context()},
        )

    def _record_commit(self, mode: str, outcome: str) -> None:
        if self._settings.ENABLE_METRICS:
            metrics.COMMITS.labels(mode=mode, outcome=outcome).inc()
