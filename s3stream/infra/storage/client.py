"""Storage client protocol and data types.

This module defines the interface the object writer needs from an object
storage backend: multipart upload lifecycle, single-shot puts and an
existence probe.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, Sequence

from s3stream.domain.classification import ErrorOrigin, origin_for_status

if TYPE_CHECKING:
    from s3stream.domain.encryption import EncryptionSpec


class StorageError(RuntimeError):
    """Raised when object storage operations fail.

    Attributes:
        status_code: HTTP status of the backend response, ``None`` when the
            request never produced one (connection reset, timeout).
        error_code: Backend error code such as ``PreconditionFailed``.
        origin: ``"client"`` for requests the backend rejected as invalid,
            ``"service"`` for backend-side faults, ``None`` for transport
            failures.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
        origin: ErrorOrigin | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.origin = origin if origin is not None else origin_for_status(status_code)


@dataclass(frozen=True, slots=True)
class CompletedPart:
    """Represents a completed part in a multipart upload."""

    part_number: int
    etag: str


@dataclass(frozen=True, slots=True)
class MultipartUpload:
    """Result of initiating a multipart upload."""

    upload_id: str
    bucket: str
    object_key: str


class StorageClient(Protocol):
    """Protocol defining the interface for object storage backends.

    Implementations must provide all methods defined here.
    Currently supports S3-compatible storage services.
    """

    supports_conditional_writes: bool
    min_part_size_bytes: int

    def init_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        encryption: "EncryptionSpec",
        content_type: str | None = None,
        acl: str | None = None,
    ) -> MultipartUpload:
        """Initialize a multipart upload session.

        Args:
            bucket: Target bucket name.
            object_key: Object key (path) in the bucket.
            encryption: Server-side encryption mode for the object.
            content_type: MIME type of the object.
            acl: Canned ACL applied to the object.

        Returns:
            MultipartUpload containing the upload_id for subsequent operations.

        Raises:
            StorageError: If the operation fails.
        """
        ...

    def upload_part(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        part_number: int,
        body: bytes,
        encryption: "EncryptionSpec",
    ) -> CompletedPart:
        """Upload one part of a multipart upload.

        Args:
            bucket: Target bucket name.
            object_key: Object key (path) in the bucket.
            upload_id: Multipart upload ID from init_multipart_upload.
            part_number: Part number (1-based, max 10000).
            body: Part content.
            encryption: Encryption mode; only customer keys are sent per part.

        Returns:
            CompletedPart with the ETag issued by the backend.

        Raises:
            StorageError: If the operation fails.
        """
        ...

    def complete_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        parts: Sequence[CompletedPart],
        if_none_match: str | None = None,
    ) -> None:
        """Complete a multipart upload by combining all parts.

        Args:
            bucket: Target bucket name.
            object_key: Object key (path) in the bucket.
            upload_id: Multipart upload ID.
            parts: List of completed parts with their ETags.
            if_none_match: ``"*"`` to complete only if the key is absent.

        Raises:
            StorageError: If the operation fails.
        """
        ...

    def put_object(
        self,
        *,
        bucket: str,
        object_key: str,
        body: bytes,
        encryption: "EncryptionSpec",
        content_type: str | None = None,
        acl: str | None = None,
        if_none_match: str | None = None,
    ) -> None:
        """Upload a whole object in a single request.

        Raises:
            StorageError: If the operation fails.
        """
        ...

    def abort_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
    ) -> None:
        """Abort a multipart upload and clean up uploaded parts.

        Args:
            bucket: Target bucket name.
            object_key: Object key (path) in the bucket.
            upload_id: Multipart upload ID to abort.

        Raises:
            StorageError: If the operation fails.
        """
        ...

    def object_exists(
        self,
        *,
        bucket: str,
        object_key: str,
        encryption: "EncryptionSpec | None" = None,
    ) -> bool:
        """Check whether an object exists.

        Args:
            bucket: Target bucket name.
            object_key: Object key (path) in the bucket.
            encryption: Encryption of the object; SSE-C objects can only be
                inspected when the same customer key is presented.

        Returns:
            True if the object exists, False if the backend reports it missing.

        Raises:
            StorageError: If the backend cannot answer.
        """
        ...
