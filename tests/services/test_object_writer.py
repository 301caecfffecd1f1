"""Tests for MultipartObjectWriter."""

from __future__ import annotations

import gzip
from dataclasses import replace

import pytest

from s3stream.app.services.object_writer import (
    MultipartObjectWriter,
    UploadSession,
    WriterState,
)
from s3stream.domain.encryption import (
    CustomerProvidedKey,
    KmsEncryption,
    NoEncryption,
    ServerManagedAES256,
)
from s3stream.domain.errors import (
    ConfigurationError,
    ConsistencyFaultError,
    NonRetriableIOError,
    RecoverableIOError,
    RetriableIOError,
    TargetExistsError,
    WriterStateError,
)
from s3stream.infra.storage.client import CompletedPart, StorageError
from tests.conftest import CUSTOMER_KEY, PART_SIZE

ONE_PART = b"a" * PART_SIZE


@pytest.fixture()
def conditional_settings(settings):
    return replace(
        settings,
        S3_ENABLE_CONDITIONAL_WRITES=True,
        ROTATE_SCHEDULE_INTERVAL_MS=100,
    )


def make_writer(settings, storage, key="key"):
    return MultipartObjectWriter(key, storage_client=storage, settings=settings)


def commit_multipart(writer):
    writer.write(ONE_PART + b"tail")
    writer.commit()


class TestConstruction:
    def test_starts_empty(self, settings, mock_storage):
        writer = make_writer(settings, mock_storage)

        assert writer.state is WriterState.EMPTY
        assert writer.upload_id is None
        assert writer.completed_parts == ()
        assert mock_storage.calls == []

    def test_requires_bucket(self, settings, mock_storage):
        with pytest.raises(ConfigurationError, match="S3_BUCKET"):
            make_writer(replace(settings, S3_BUCKET=""), mock_storage)

    def test_requires_object_key(self, settings, mock_storage):
        with pytest.raises(ConfigurationError, match="object_key"):
            make_writer(settings, mock_storage, key="")

    def test_rejects_part_size_below_backend_minimum(self, settings, mock_storage):
        mock_storage.min_part_size_bytes = 5 * 1024 * 1024

        with pytest.raises(ConfigurationError, match="at least"):
            make_writer(settings, mock_storage)

    def test_conditional_writes_need_backend_support(
        self, conditional_settings, mock_storage
    ):
        mock_storage.supports_conditional_writes = False

        with pytest.raises(ConfigurationError, match="If-None-Match"):
            make_writer(conditional_settings, mock_storage)

    def test_conditional_writes_without_rotation_are_inactive(
        self, settings, mock_storage
    ):
        writer = make_writer(
            replace(settings, S3_ENABLE_CONDITIONAL_WRITES=True), mock_storage
        )

        assert writer.conditional_policy.enabled is True
        assert writer.conditional_policy.active is False

    def test_inconsistent_encryption_fails_fast(self, settings, mock_storage):
        with pytest.raises(ConfigurationError):
            make_writer(replace(settings, S3_SSEA_NAME="aws:kms"), mock_storage)
        assert mock_storage.calls == []


class TestBuffering:
    def test_small_object_uses_single_put(self, settings, mock_storage):
        writer = make_writer(settings, mock_storage)
        writer.write(b"hello")

        assert writer.state is WriterState.BUFFERING
        writer.commit()

        assert mock_storage.operations == ["put_object"]
        put = mock_storage.calls_to("put_object")[0]
        assert put["body"] == b"hello"
        assert put["bucket"] == "test-bucket"
        assert put["object_key"] == "key"
        assert put["if_none_match"] is None
        assert writer.state is WriterState.COMMITTED

    def test_empty_object_uses_single_put(self, settings, mock_storage):
        writer = make_writer(settings, mock_storage)
        writer.commit()

        assert mock_storage.operations == ["put_object"]
        assert mock_storage.calls_to("put_object")[0]["body"] == b""

    def test_full_buffer_initiates_and_uploads_part(self, settings, mock_storage):
        writer = make_writer(settings, mock_storage)

        assert writer.write(ONE_PART) == PART_SIZE

        assert mock_storage.operations == ["init_multipart_upload", "upload_part"]
        assert writer.state is WriterState.MULTIPART_ACTIVE
        assert writer.upload_id == "mock-upload-1"
        assert writer.completed_parts == (CompletedPart(1, "etag-1"),)

    def test_initiates_only_once(self, settings, mock_storage):
        writer = make_writer(settings, mock_storage)
        for _ in range(3):
            writer.write(ONE_PART)

        assert len(mock_storage.calls_to("init_multipart_upload")) == 1
        assert [p["part_number"] for p in mock_storage.calls_to("upload_part")] == [
            1,
            2,
            3,
        ]

    def test_large_write_is_split_into_parts(self, settings, mock_storage):
        writer = make_writer(settings, mock_storage)
        data = bytes(range(PART_SIZE * 2 + 3))

        writer.write(data)
        writer.commit()

        bodies = [p["body"] for p in mock_storage.calls_to("upload_part")]
        assert [len(body) for body in bodies] == [PART_SIZE, PART_SIZE, 3]
        assert mock_storage.objects["test-bucket/key"] == data

    def test_commit_completes_parts_in_order(self, settings, mock_storage):
        writer = make_writer(settings, mock_storage)
        writer.write(ONE_PART)
        writer.write(ONE_PART)
        writer.write(b"xyz")
        writer.commit()

        assert mock_storage.operations == [
            "init_multipart_upload",
            "upload_part",
            "upload_part",
            "upload_part",
            "complete_multipart_upload",
        ]
        complete = mock_storage.calls_to("complete_multipart_upload")[0]
        assert [p.part_number for p in complete["parts"]] == [1, 2, 3]
        assert complete["upload_id"] == "mock-upload-1"
        assert writer.state is WriterState.COMMITTED

    def test_exact_multiple_of_part_size_has_no_empty_tail(
        self, settings, mock_storage
    ):
        writer = make_writer(settings, mock_storage)
        writer.write(ONE_PART * 2)
        writer.commit()

        assert len(mock_storage.calls_to("upload_part")) == 2

    def test_explicit_start_uploads_at_least_one_part(self, settings, mock_storage):
        writer = make_writer(settings, mock_storage)
        writer.start_multipart_upload()
        writer.commit()

        parts = mock_storage.calls_to("upload_part")
        assert len(parts) == 1
        assert parts[0]["body"] == b""

    def test_accepts_bytearray_and_memoryview(self, settings, mock_storage):
        writer = make_writer(settings, mock_storage)

        assert writer.write(bytearray(b"ab")) == 2
        assert writer.write(memoryview(b"cd")) == 2
        assert writer.write(b"") == 0
        writer.commit()

        assert mock_storage.calls_to("put_object")[0]["body"] == b"abcd"
        assert writer.bytes_written == 4

    def test_content_type_and_acl_forwarded(self, settings, mock_storage):
        writer = make_writer(
            replace(settings, S3_CONTENT_TYPE="application/json", S3_CANNED_ACL="private"),
            mock_storage,
        )
        commit_multipart(writer)

        init = mock_storage.calls_to("init_multipart_upload")[0]
        assert init["content_type"] == "application/json"
        assert init["acl"] == "private"

    def test_gzip_compresses_stream(self, settings, mock_storage):
        writer = make_writer(replace(settings, S3_COMPRESSION_TYPE="gzip"), mock_storage)
        payload = b"record\n" * 50

        writer.write(payload)
        writer.commit()

        stored = mock_storage.objects["test-bucket/key"]
        assert gzip.decompress(stored) == payload
        assert writer.bytes_written == len(payload)


class TestInitiationErrors:
    def test_client_error_is_not_retriable(self, settings, mock_storage):
        mock_storage.failures["init_multipart_upload"] = StorageError(
            "access denied", status_code=403, error_code="AccessDenied"
        )
        writer = make_writer(settings, mock_storage)

        with pytest.raises(NonRetriableIOError) as excinfo:
            writer.write(ONE_PART)
            writer.commit()

        assert isinstance(excinfo.value, RecoverableIOError)
        assert excinfo.value.retriable is False
        assert mock_storage.calls_to("upload_part") == []
        assert writer.state is WriterState.FAILED

    def test_service_error_is_retriable(self, settings, mock_storage):
        mock_storage.failures["init_multipart_upload"] = StorageError(
            "slow down", status_code=503, error_code="SlowDown"
        )
        writer = make_writer(settings, mock_storage)

        with pytest.raises(RetriableIOError) as excinfo:
            writer.write(ONE_PART)
            writer.commit()

        assert excinfo.value.retriable is True
        assert mock_storage.calls_to("upload_part") == []

    @pytest.mark.parametrize(
        ("status", "code"), [(429, "TooManyRequests"), (400, "RequestTimeout")]
    )
    def test_throttled_client_status_is_retriable(
        self, settings, mock_storage, status, code
    ):
        mock_storage.failures["init_multipart_upload"] = StorageError(
            "busy", status_code=status, error_code=code
        )
        writer = make_writer(settings, mock_storage)

        with pytest.raises(RetriableIOError) as excinfo:
            writer.write(ONE_PART)
            writer.commit()

        assert excinfo.value.retriable is True
        assert writer.state is WriterState.FAILED

    def test_transport_error_is_retriable(self, settings, mock_storage):
        mock_storage.failures["init_multipart_upload"] = StorageError(
            "connection reset"
        )
        writer = make_writer(settings, mock_storage)

        with pytest.raises(RetriableIOError) as excinfo:
            writer.write(ONE_PART)
            writer.commit()

        assert isinstance(excinfo.value.__cause__, StorageError)
        assert excinfo.value.cause is excinfo.value.__cause__

    def test_part_failure_aborts_session(self, settings, mock_storage):
        mock_storage.failures["upload_part"] = StorageError(
            "internal", status_code=500, error_code="InternalError"
        )
        writer = make_writer(settings, mock_storage)

        with pytest.raises(RetriableIOError):
            writer.write(ONE_PART)

        aborts = mock_storage.calls_to("abort_multipart_upload")
        assert [a["upload_id"] for a in aborts] == ["mock-upload-1"]
        assert writer.state is WriterState.FAILED

    def test_failed_write_does_not_count_bytes(self, settings, mock_storage):
        writer = make_writer(settings, mock_storage)
        writer.write(b"abc")
        mock_storage.failures["upload_part"] = StorageError(
            "internal", status_code=500, error_code="InternalError"
        )

        with pytest.raises(RetriableIOError):
            writer.write(ONE_PART)

        assert writer.bytes_written == 3


class TestEncryption:
    def _init_request(self, settings, mock_storage):
        writer = make_writer(settings, mock_storage)
        writer.start_multipart_upload()
        return mock_storage.calls_to("init_multipart_upload")[0]

    def test_aes256(self, settings, mock_storage):
        init = self._init_request(replace(settings, S3_SSEA_NAME="AES256"), mock_storage)

        encryption = init["encryption"]
        assert isinstance(encryption, ServerManagedAES256)
        assert encryption.object_params() == {"ServerSideEncryption": "AES256"}

    def test_kms(self, settings, mock_storage):
        init = self._init_request(
            replace(settings, S3_SSEA_NAME="aws:kms", S3_SSE_KMS_KEY_ID="key1"),
            mock_storage,
        )

        encryption = init["encryption"]
        assert encryption == KmsEncryption(key_id="key1")
        params = encryption.object_params()
        assert params["SSEKMSKeyId"] == "key1"
        assert "SSECustomerKey" not in params

    def test_customer_key(self, settings, mock_storage):
        init = self._init_request(
            replace(settings, S3_SSEA_NAME="AES256", S3_SSE_CUSTOMER_KEY=CUSTOMER_KEY),
            mock_storage,
        )

        encryption = init["encryption"]
        assert isinstance(encryption, CustomerProvidedKey)
        params = encryption.object_params()
        assert "ServerSideEncryption" not in params
        assert "SSEKMSKeyId" not in params
        assert params["SSECustomerKey"] == CUSTOMER_KEY

    def test_default_is_no_encryption(self, settings, mock_storage):
        init = self._init_request(settings, mock_storage)

        assert isinstance(init["encryption"], NoEncryption)
        assert init["encryption"].object_params() == {}

    def test_encryption_attached_to_parts_and_put(self, settings, mock_storage):
        sse_settings = replace(settings, S3_SSE_CUSTOMER_KEY=CUSTOMER_KEY)
        commit_multipart(make_writer(sse_settings, mock_storage))
        make_writer(sse_settings, mock_storage, key="small").commit()

        for part in mock_storage.calls_to("upload_part"):
            assert isinstance(part["encryption"], CustomerProvidedKey)
        assert isinstance(
            mock_storage.calls_to("put_object")[0]["encryption"], CustomerProvidedKey
        )


class TestConditionalWrites:
    def test_completion_carries_if_none_match(self, conditional_settings, mock_storage):
        commit_multipart(make_writer(conditional_settings, mock_storage))

        complete = mock_storage.calls_to("complete_multipart_upload")[0]
        assert complete["if_none_match"] == "*"

    def test_disabled_completion_has_no_precondition(self, settings, mock_storage):
        commit_multipart(
            make_writer(
                replace(
                    settings,
                    S3_ENABLE_CONDITIONAL_WRITES=False,
                    ROTATE_SCHEDULE_INTERVAL_MS=100,
                ),
                mock_storage,
            )
        )

        complete = mock_storage.calls_to("complete_multipart_upload")[0]
        assert complete["if_none_match"] is None

    def test_single_put_carries_if_none_match(self, conditional_settings, mock_storage):
        make_writer(conditional_settings, mock_storage).commit()

        assert mock_storage.calls_to("put_object")[0]["if_none_match"] == "*"

    def test_412_with_existing_object_raises_target_exists(
        self, conditional_settings, mock_storage
    ):
        mock_storage.failures["complete_multipart_upload"] = StorageError(
            "file exists", status_code=412, error_code="PreconditionFailed"
        )
        mock_storage.exists = True
        writer = make_writer(conditional_settings, mock_storage)

        with pytest.raises(TargetExistsError) as excinfo:
            commit_multipart(writer)

        assert excinfo.value.object_key == "key"
        assert excinfo.value.bucket == "test-bucket"
        probe = mock_storage.calls_to("object_exists")
        assert len(probe) == 1
        assert probe[0]["bucket"] == "test-bucket"
        assert probe[0]["object_key"] == "key"
        assert probe[0]["encryption"] is writer.encryption
        assert writer.state is WriterState.FAILED

    def test_200_with_precondition_failed_raises_target_exists(
        self, conditional_settings, mock_storage
    ):
        mock_storage.failures["complete_multipart_upload"] = StorageError(
            "file exists", status_code=200, error_code="PreconditionFailed"
        )
        mock_storage.exists = True

        with pytest.raises(TargetExistsError):
            commit_multipart(make_writer(conditional_settings, mock_storage))

    def test_412_without_object_is_consistency_fault(
        self, conditional_settings, mock_storage
    ):
        mock_storage.failures["complete_multipart_upload"] = StorageError(
            "file exists", status_code=412
        )
        mock_storage.exists = False

        with pytest.raises(ConsistencyFaultError) as excinfo:
            commit_multipart(make_writer(conditional_settings, mock_storage))

        assert not isinstance(excinfo.value, TargetExistsError)

    def test_other_status_is_recoverable(self, conditional_settings, mock_storage):
        mock_storage.failures["complete_multipart_upload"] = StorageError(
            "file conflict", status_code=422
        )
        mock_storage.exists = True

        with pytest.raises(RecoverableIOError):
            commit_multipart(make_writer(conditional_settings, mock_storage))

        assert mock_storage.calls_to("object_exists") == []

    def test_probe_failure_surfaces_original_error(
        self, conditional_settings, mock_storage
    ):
        mock_storage.failures["complete_multipart_upload"] = StorageError(
            "file exists", status_code=412
        )
        mock_storage.exists = StorageError("timeout")

        with pytest.raises(RetriableIOError) as excinfo:
            commit_multipart(make_writer(conditional_settings, mock_storage))

        assert excinfo.value.cause is mock_storage.failures["complete_multipart_upload"]

    def test_412_without_conditional_writes_is_not_probed(self, settings, mock_storage):
        mock_storage.failures["complete_multipart_upload"] = StorageError(
            "precondition", status_code=412
        )

        with pytest.raises(NonRetriableIOError):
            commit_multipart(make_writer(settings, mock_storage))

        assert mock_storage.calls_to("object_exists") == []

    def test_single_put_conflict_raises_target_exists(
        self, conditional_settings, mock_storage
    ):
        mock_storage.failures["put_object"] = StorageError(
            "exists", status_code=412, error_code="PreconditionFailed"
        )
        mock_storage.exists = True
        writer = make_writer(conditional_settings, mock_storage)
        writer.write(b"small")

        with pytest.raises(TargetExistsError):
            writer.commit()

        assert mock_storage.calls_to("abort_multipart_upload") == []

    def test_existence_check_presents_customer_key(
        self, conditional_settings, mock_storage
    ):
        mock_storage.failures["complete_multipart_upload"] = StorageError(
            "exists", status_code=412
        )
        mock_storage.exists = True
        writer = make_writer(
            replace(conditional_settings, S3_SSE_CUSTOMER_KEY=CUSTOMER_KEY), mock_storage
        )

        with pytest.raises(TargetExistsError):
            commit_multipart(writer)

        encryption = mock_storage.calls_to("object_exists")[0]["encryption"]
        assert isinstance(encryption, CustomerProvidedKey)
        assert encryption.part_params()["SSECustomerKey"] == CUSTOMER_KEY

    def test_failed_completion_aborts_session(self, conditional_settings, mock_storage):
        mock_storage.failures["complete_multipart_upload"] = StorageError(
            "exists", status_code=412
        )
        mock_storage.exists = True

        with pytest.raises(TargetExistsError):
            commit_multipart(make_writer(conditional_settings, mock_storage))

        assert mock_storage.uploads["mock-upload-1"]["aborted"] is True


class TestLifecycle:
    def test_abort_after_commit_is_noop(self, settings, mock_storage):
        writer = make_writer(settings, mock_storage)
        commit_multipart(writer)
        calls_before = list(mock_storage.calls)

        writer.abort()

        assert mock_storage.calls == calls_before
        assert writer.state is WriterState.COMMITTED
        assert mock_storage.uploads["mock-upload-1"]["aborted"] is False

    def test_abort_releases_active_session(self, settings, mock_storage):
        writer = make_writer(settings, mock_storage)
        writer.write(ONE_PART)

        writer.abort()
        writer.abort()

        assert len(mock_storage.calls_to("abort_multipart_upload")) == 1
        assert writer.state is WriterState.FAILED

    def test_abort_without_session_discards_buffer(self, settings, mock_storage):
        writer = make_writer(settings, mock_storage)
        writer.write(b"abc")

        writer.abort()

        assert mock_storage.calls == []
        assert writer.state is WriterState.FAILED

    def test_abort_failure_does_not_mask_original_error(self, settings, mock_storage):
        original = StorageError("boom", status_code=500)
        mock_storage.failures["complete_multipart_upload"] = original
        mock_storage.failures["abort_multipart_upload"] = StorageError("abort failed")

        with pytest.raises(RetriableIOError) as excinfo:
            commit_multipart(make_writer(settings, mock_storage))

        assert excinfo.value.cause is original

    def test_abort_failure_is_swallowed(self, settings, mock_storage):
        mock_storage.failures["abort_multipart_upload"] = StorageError("abort failed")
        writer = make_writer(settings, mock_storage)
        writer.write(ONE_PART)

        writer.abort()

        assert writer.state is WriterState.FAILED

    def test_write_after_commit_rejected(self, settings, mock_storage):
        writer = make_writer(settings, mock_storage)
        writer.commit()

        with pytest.raises(WriterStateError):
            writer.write(b"more")
        with pytest.raises(WriterStateError):
            writer.commit()

    def test_write_after_failure_rejected(self, settings, mock_storage):
        mock_storage.failures["init_multipart_upload"] = StorageError("down")
        writer = make_writer(settings, mock_storage)
        with pytest.raises(RetriableIOError):
            writer.write(ONE_PART)

        with pytest.raises(WriterStateError):
            writer.write(b"x")

    def test_context_manager_aborts_uncommitted(self, settings, mock_storage):
        with make_writer(settings, mock_storage) as writer:
            writer.write(ONE_PART)

        assert writer.closed
        assert len(mock_storage.calls_to("abort_multipart_upload")) == 1

    def test_context_manager_keeps_committed(self, settings, mock_storage):
        with make_writer(settings, mock_storage) as writer:
            commit_multipart(writer)

        assert mock_storage.calls_to("abort_multipart_upload") == []
        assert writer.state is WriterState.COMMITTED


class TestUploadSession:
    def test_upload_id_is_set_once(self):
        session = UploadSession(object_key="key")
        session.bind("id-1")

        with pytest.raises(WriterStateError):
            session.bind("id-2")

    def test_parts_must_be_contiguous(self):
        session = UploadSession(object_key="key", upload_id="id-1")
        session.record(CompletedPart(1, "e1"))

        with pytest.raises(WriterStateError, match="out of order"):
            session.record(CompletedPart(3, "e3"))
        assert session.next_part_number == 2
