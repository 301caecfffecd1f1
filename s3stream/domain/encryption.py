"""Server-side encryption modes and the request parameters they imply.

Exactly one :data:`EncryptionSpec` variant is active per writer. The variant is
resolved once from :class:`~s3stream.common.config.Settings` and then attached
to every initiate, part and put request.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping, Union

from s3stream.domain.errors import ConfigurationError

if TYPE_CHECKING:
    from s3stream.common.config import Settings

AES256 = "AES256"
AWS_KMS = "aws:kms"

_KMS_ALIASES = {"aws:kms", "kms"}
_CUSTOMER_KEY_BYTES = 32


@dataclass(frozen=True, slots=True)
class NoEncryption:
    """Bucket default applies; no SSE parameters are sent."""

    def object_params(self) -> dict[str, Any]:
        return {}

    def part_params(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True, slots=True)
class ServerManagedAES256:
    """SSE-S3: the backend manages AES256 keys."""

    def object_params(self) -> dict[str, Any]:
        return {"ServerSideEncryption": AES256}

    def part_params(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True, slots=True)
class KmsEncryption:
    """SSE-KMS with an explicit key id and optional encryption context."""

    key_id: str
    context: Mapping[str, str] | None = field(default=None, compare=False)

    def object_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "ServerSideEncryption": AWS_KMS,
            "SSEKMSKeyId": self.key_id,
        }
        if self.context:
            encoded = json.dumps(dict(self.context), sort_keys=True).encode("utf-8")
            params["SSEKMSEncryptionContext"] = base64.b64encode(encoded).decode("ascii")
        return params

    def part_params(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True, slots=True)
class CustomerProvidedKey:
    """SSE-C: the caller supplies the key with every request."""

    key: str = field(repr=False)
    key_md5: str = field(repr=False)

    @classmethod
    def from_base64(cls, key: str) -> "CustomerProvidedKey":
        try:
            raw = base64.b64decode(key, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ConfigurationError(
                "S3_SSE_CUSTOMER_KEY must be base64 encoded", cause=exc
            ) from exc
        if len(raw) != _CUSTOMER_KEY_BYTES:
            raise ConfigurationError(
                f"S3_SSE_CUSTOMER_KEY must decode to {_CUSTOMER_KEY_BYTES} bytes, "
                f"got {len(raw)}"
            )
        digest = base64.b64encode(hashlib.md5(raw).digest()).decode("ascii")
        return cls(key=key, key_md5=digest)

    def object_params(self) -> dict[str, Any]:
        return {
            "SSECustomerAlgorithm": AES256,
            "SSECustomerKey": self.key,
            "SSECustomerKeyMD5": self.key_md5,
        }

    def part_params(self) -> dict[str, Any]:
        # SSE-C is the only mode UploadPart accepts headers for.
        return self.object_params()


EncryptionSpec = Union[
    NoEncryption, ServerManagedAES256, KmsEncryption, CustomerProvidedKey
]


def _parse_kms_context(raw: str | None) -> dict[str, str] | None:
    if not raw:
        return None
    try:
        context = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(
            "S3_SSE_KMS_ENCRYPTION_CONTEXT must be a JSON object", cause=exc
        ) from exc
    if not isinstance(context, dict):
        raise ConfigurationError("S3_SSE_KMS_ENCRYPTION_CONTEXT must be a JSON object")
    return {str(key): str(value) for key, value in context.items()}


def resolve_encryption(
    *,
    algorithm: str | None,
    kms_key_id: str | None = None,
    kms_context: str | None = None,
    customer_key: str | None = None,
) -> EncryptionSpec:
    """Pick the single encryption mode implied by the configured options.

    Raises:
        ConfigurationError: If the options contradict each other.
    """
    name = (algorithm or "").strip()
    lowered = name.lower()
    is_kms = lowered in _KMS_ALIASES

    if customer_key:
        if is_kms:
            raise ConfigurationError(
                "S3_SSE_CUSTOMER_KEY cannot be combined with KMS encryption"
            )
        if name and lowered != AES256.lower():
            raise ConfigurationError(
                f"S3_SSE_CUSTOMER_KEY requires algorithm {AES256}, got {name!r}"
            )
        return CustomerProvidedKey.from_base64(customer_key)

    if is_kms:
        if not kms_key_id:
            raise ConfigurationError("S3_SSE_KMS_KEY_ID is required for KMS encryption")
        return KmsEncryption(key_id=kms_key_id, context=_parse_kms_context(kms_context))

    if kms_key_id:
        raise ConfigurationError(
            f"S3_SSE_KMS_KEY_ID is set but S3_SSEA_NAME is {name or 'empty'!r}"
        )

    if lowered == AES256.lower():
        return ServerManagedAES256()
    if not name:
        return NoEncryption()
    raise ConfigurationError(f"Unsupported server-side encryption algorithm: {name!r}")


def encryption_from_settings(settings: "Settings") -> EncryptionSpec:
    return resolve_encryption(
        algorithm=settings.S3_SSEA_NAME,
        kms_key_id=settings.S3_SSE_KMS_KEY_ID,
        kms_context=settings.S3_SSE_KMS_ENCRYPTION_CONTEXT,
        customer_key=settings.S3_SSE_CUSTOMER_KEY,
    )
