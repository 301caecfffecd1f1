from __future__ import annotations

import base64

import pytest

from s3stream.common.config import Settings, get_settings
from tests.services.mock_storage import MockStorageClient

PART_SIZE = 8
CUSTOMER_KEY = base64.b64encode(b"k" * 32).decode("ascii")


@pytest.fixture(autouse=True)
def clear_settings_cache(monkeypatch, tmp_path):
    # Keep a developer's .env out of the tests.
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()  # type: ignore[attr-defined]
    yield
    get_settings.cache_clear()  # type: ignore[attr-defined]


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        S3_BUCKET="test-bucket",
        S3_PART_SIZE_BYTES=PART_SIZE,
        ENABLE_METRICS=False,
    )


@pytest.fixture()
def mock_storage() -> MockStorageClient:
    return MockStorageClient()
