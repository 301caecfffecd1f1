from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

ENV_FILE = Path(".env")

MIB = 1024 * 1024
DEFAULT_PART_SIZE_BYTES = 25 * MIB

COMPRESSION_TYPES: tuple[str, ...] = ("none", "gzip")


def _load_env_file() -> None:
    if not ENV_FILE.exists():
        return
    for raw_line in ENV_FILE.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y", "on"}


def _as_int(value: str | None, default: int | None) -> int | None:
    if value is None or not value.strip():
        return default
    return int(value.strip())


def _as_optional_str(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass
class Settings:
    S3_BUCKET: str = ""
    S3_REGION: str | None = None
    S3_ENDPOINT_URL: str | None = None
    S3_ACCESS_KEY_ID: str | None = None
    S3_SECRET_ACCESS_KEY: str | None = None
    S3_USE_SSL: bool = True
    S3_ADDRESSING_STYLE: str = "auto"
    S3_CONNECT_TIMEOUT: int = 10
    S3_READ_TIMEOUT: int = 60
    S3_PART_SIZE_BYTES: int = DEFAULT_PART_SIZE_BYTES
    S3_SSEA_NAME: str = ""
    S3_SSE_KMS_KEY_ID: str | None = None
    S3_SSE_KMS_ENCRYPTION_CONTEXT: str | None = None
    S3_SSE_CUSTOMER_KEY: str | None = None
    S3_ENABLE_CONDITIONAL_WRITES: bool = False
    ROTATE_SCHEDULE_INTERVAL_MS: int | None = None
    S3_CANNED_ACL: str | None = None
    S3_CONTENT_TYPE: str = "application/octet-stream"
    S3_COMPRESSION_TYPE: str = "none"
    S3_COMPRESSION_LEVEL: int = -1
    ENABLE_METRICS: bool = True
    LOG_LEVEL: str = "INFO"

    def __post_init__(self) -> None:
        if self.S3_PART_SIZE_BYTES <= 0:
            raise ValueError("S3_PART_SIZE_BYTES must be a positive number of bytes.")
        self.S3_COMPRESSION_TYPE = (self.S3_COMPRESSION_TYPE or "none").strip().lower()
        if self.S3_COMPRESSION_TYPE not in COMPRESSION_TYPES:
            raise ValueError(
                f"S3_COMPRESSION_TYPE must be one of {', '.join(COMPRESSION_TYPES)}."
            )
        if not -1 <= self.S3_COMPRESSION_LEVEL <= 9:
            raise ValueError("S3_COMPRESSION_LEVEL must be between -1 and 9.")
        if (
            self.ROTATE_SCHEDULE_INTERVAL_MS is not None
            and self.ROTATE_SCHEDULE_INTERVAL_MS < 0
        ):
            raise ValueError("ROTATE_SCHEDULE_INTERVAL_MS must not be negative.")

    @classmethod
    def from_environment(cls) -> "Settings":
        _load_env_file()
        return cls(
            S3_BUCKET=os.environ.get("S3_BUCKET", cls.S3_BUCKET).strip(),
            S3_REGION=_as_optional_str(os.environ.get("S3_REGION")),
            S3_ENDPOINT_URL=_as_optional_str(os.environ.get("S3_ENDPOINT_URL")),
            S3_ACCESS_KEY_ID=_as_optional_str(os.environ.get("S3_ACCESS_KEY_ID")),
            S3_SECRET_ACCESS_KEY=_as_optional_str(
                os.environ.get("S3_SECRET_ACCESS_KEY")
            ),
            S3_USE_SSL=_as_bool(os.environ.get("S3_USE_SSL"), cls.S3_USE_SSL),
            S3_ADDRESSING_STYLE=os.environ.get(
                "S3_ADDRESSING_STYLE", cls.S3_ADDRESSING_STYLE
            ),
            S3_CONNECT_TIMEOUT=_as_int(
                os.environ.get("S3_CONNECT_TIMEOUT"), cls.S3_CONNECT_TIMEOUT
            ),
            S3_READ_TIMEOUT=_as_int(
                os.environ.get("S3_READ_TIMEOUT"), cls.S3_READ_TIMEOUT
            ),
            S3_PART_SIZE_BYTES=_as_int(
                os.environ.get("S3_PART_SIZE_BYTES"), cls.S3_PART_SIZE_BYTES
            ),
            S3_SSEA_NAME=os.environ.get("S3_SSEA_NAME", cls.S3_SSEA_NAME).strip(),
            S3_SSE_KMS_KEY_ID=_as_optional_str(os.environ.get("S3_SSE_KMS_KEY_ID")),
            S3_SSE_KMS_ENCRYPTION_CONTEXT=_as_optional_str(
                os.environ.get("S3_SSE_KMS_ENCRYPTION_CONTEXT")
            ),
            S3_SSE_CUSTOMER_KEY=_as_optional_str(
                os.environ.get("S3_SSE_CUSTOMER_KEY")
            ),
            S3_ENABLE_CONDITIONAL_WRITES=_as_bool(
                os.environ.get("S3_ENABLE_CONDITIONAL_WRITES"),
                cls.S3_ENABLE_CONDITIONAL_WRITES,
            ),
            ROTATE_SCHEDULE_INTERVAL_MS=_as_int(
                os.environ.get("ROTATE_SCHEDULE_INTERVAL_MS"),
                cls.ROTATE_SCHEDULE_INTERVAL_MS,
            ),
            S3_CANNED_ACL=_as_optional_str(os.environ.get("S3_CANNED_ACL")),
            S3_CONTENT_TYPE=os.environ.get("S3_CONTENT_TYPE", cls.S3_CONTENT_TYPE),
            S3_COMPRESSION_TYPE=os.environ.get(
                "S3_COMPRESSION_TYPE", cls.S3_COMPRESSION_TYPE
            ),
            S3_COMPRESSION_LEVEL=_as_int(
                os.environ.get("S3_COMPRESSION_LEVEL"), cls.S3_COMPRESSION_LEVEL
            ),
            ENABLE_METRICS=_as_bool(
                os.environ.get("ENABLE_METRICS"), cls.ENABLE_METRICS
            ),
            LOG_LEVEL=os.environ.get("LOG_LEVEL", cls.LOG_LEVEL).strip().upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_environment()
