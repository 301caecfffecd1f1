"""S3-compatible storage client implementation.

This module provides an S3-compatible storage client that works with
AWS S3, MinIO, and other S3-compatible object storage services.

Dependencies:
    - boto3
    - botocore
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, Sequence

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from s3stream.domain import MIN_PART_SIZE_BYTES
from s3stream.domain.classification import (
    PRECONDITION_FAILED_CODE,
    PRECONDITION_FAILED_STATUS,
)
from s3stream.infra.observability import metrics
from s3stream.infra.storage.client import (
    CompletedPart,
    MultipartUpload,
    StorageError,
)

if TYPE_CHECKING:
    from s3stream.common.config import Settings
    from s3stream.domain.encryption import EncryptionSpec

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def _storage_error(message: str, exc: Exception) -> StorageError:
    """Translate a boto3/botocore exception into a StorageError."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error") or {}
        metadata = exc.response.get("ResponseMetadata") or {}
        status = metadata.get("HTTPStatusCode")
        return StorageError(
            f"{message}: {exc}",
            status_code=int(status) if status is not None else None,
            error_code=error.get("Code"),
        )
    # BotoCoreError and anything else raised below boto3 carries no status.
    return StorageError(f"{message}: {exc}")


class S3StorageClient:
    """S3-compatible object storage client.

    Supports AWS S3, MinIO, and other S3-compatible services.
    Uses boto3 for all storage operations.
    """

    min_part_size_bytes = MIN_PART_SIZE_BYTES

    def __init__(
        self,
        *,
        settings: "Settings",
        supports_conditional_writes: bool = True,
    ) -> None:
        """Initialize the S3 client with configuration from settings.

        Args:
            settings: Application settings containing S3 configuration.
            supports_conditional_writes: Whether the endpoint honours
                ``If-None-Match`` on completion and put requests.
        """
        self._settings = settings
        self._client = self._build_client(settings)
        self.supports_conditional_writes = supports_conditional_writes

    @staticmethod
    def _build_client(settings: "Settings") -> Any:
        """Create a boto3 S3 client from settings."""
        addressing_style = (settings.S3_ADDRESSING_STYLE or "auto").strip().lower()
        config = Config(
            s3={"addressing_style": addressing_style},
            connect_timeout=settings.S3_CONNECT_TIMEOUT,
            read_timeout=settings.S3_READ_TIMEOUT,
        )

        return boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            region_name=settings.S3_REGION,
            aws_access_key_id=settings.S3_ACCESS_KEY_ID,
            aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY,
            use_ssl=bool(settings.S3_USE_SSL),
            config=config,
        )

    def _call(self, operation: str, **params: Any) -> Any:
        started = time.perf_counter()
        try:
            return getattr(self._client, operation)(**params)
        finally:
            if self._settings.ENABLE_METRICS:
                metrics.LATENCY.labels(operation=operation).observe(
                    time.perf_counter() - started
                )

    def init_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        encryption: "EncryptionSpec",
        content_type: str | None = None,
        acl: str | None = None,
    ) -> MultipartUpload:
        """Initialize a multipart upload session."""
        params: dict[str, Any] = {"Bucket": bucket, "Key": object_key}
        if content_type:
            params["ContentType"] = content_type
        if acl:
            params["ACL"] = acl
        params.update(encryption.object_params())

        try:
            response = self._call("create_multipart_upload", **params)
        except Exception as exc:
            raise _storage_error("Failed to create multipart upload", exc) from exc

        upload_id = response.get("UploadId")
        if not upload_id:
            raise StorageError("S3 response missing UploadId", origin="service")

        return MultipartUpload(
            upload_id=str(upload_id),
            bucket=bucket,
            object_key=object_key,
        )

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
        """Upload one part and return its ETag."""
        params: dict[str, Any] = {
            "Bucket": bucket,
            "Key": object_key,
            "UploadId": upload_id,
            "PartNumber": int(part_number),
            "Body": body,
            "ContentLength": len(body),
        }
        params.update(encryption.part_params())

        try:
            response = self._call("upload_part", **params)
        except Exception as exc:
            raise _storage_error(f"Failed to upload part {part_number}", exc) from exc

        etag = response.get("ETag")
        if not etag:
            raise StorageError(
                f"S3 response missing ETag for part {part_number}", origin="service"
            )
        return CompletedPart(part_number=int(part_number), etag=str(etag))

    def complete_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        parts: Sequence[CompletedPart],
        if_none_match: str | None = None,
    ) -> None:
        """Complete a multipart upload by combining all parts."""
        multipart_payload = {
            "Parts": [
                {"ETag": part.etag, "PartNumber": int(part.part_number)}
                for part in sorted(parts, key=lambda p: p.part_number)
            ]
        }
        params: dict[str, Any] = {
            "Bucket": bucket,
            "Key": object_key,
            "UploadId": upload_id,
            "MultipartUpload": multipart_payload,
        }
        if if_none_match:
            params["IfNoneMatch"] = if_none_match

        try:
            response = self._call("complete_multipart_upload", **params)
        except ClientError as exc:
            error = _storage_error("Failed to complete multipart upload", exc)
            # botocore re-labels a 200 response with an embedded <Error> as a
            # 500 so it gets retried; restore the original status for a
            # rejected precondition.
            if (
                error.error_code == PRECONDITION_FAILED_CODE
                and error.status_code != PRECONDITION_FAILED_STATUS
            ):
                error = StorageError(
                    str(error), status_code=200, error_code=error.error_code
                )
            raise error from exc
        except Exception as exc:
            raise _storage_error("Failed to complete multipart upload", exc) from exc

        embedded = (response or {}).get("Error")
        if embedded:
            raise StorageError(
                f"Failed to complete multipart upload: {embedded.get('Message', '')}",
                status_code=200,
                error_code=embedded.get("Code"),
            )

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
        """Upload a whole object in a single request."""
        params: dict[str, Any] = {
            "Bucket": bucket,
            "Key": object_key,
            "Body": body,
            "ContentLength": len(body),
        }
        if content_type:
            params["ContentType"] = content_type
        if acl:
            params["ACL"] = acl
        if if_none_match:
            params["IfNoneMatch"] = if_none_match
        params.update(encryption.object_params())

        try:
            self._call("put_object", **params)
        except Exception as exc:
            raise _storage_error("Failed to put object", exc) from exc

    def abort_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
    ) -> None:
        """Abort a multipart upload and clean up uploaded parts."""
        try:
            self._call(
                "abort_multipart_upload",
                Bucket=bucket,
                Key=object_key,
                UploadId=upload_id,
            )
        except Exception as exc:
            raise _storage_error("Failed to abort multipart upload", exc) from exc

    def object_exists(
        self,
        *,
        bucket: str,
        object_key: str,
        encryption: EncryptionSpec | None = None,
    ) -> bool:
        """Check object existence with a HEAD request."""
        params: dict[str, Any] = {"Bucket": bucket, "Key": object_key}
        if encryption is not None:
            params.update(encryption.part_params())
        try:
            self._call("head_object", **params)
        except ClientError as exc:
            error = _storage_error("Failed to get object metadata", exc)
            if error.status_code == 404 or error.error_code in _NOT_FOUND_CODES:
                return False
            raise error from exc
        except Exception as exc:
            raise _storage_error("Failed to get object metadata", exc) from exc
        return True
