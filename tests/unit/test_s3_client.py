"""Tests for the S3 + CloudFront video backend with a mocked boto3 client."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from video_submission.core.errors import ErrorKind, ServiceError
from video_submission.core.models import Principal, RemoteState
from video_submission.core.uploads import UploadSessionTracker
from video_submission.infrastructure.storage.s3 import S3Config, S3VideoClient, build_object_key


def client_error(code: str, status: int, operation: str = "HeadObject") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class StubSigner:
    def sign(self, key, ttl_seconds):
        return f"https://cdn.test/{key}?Expires={ttl_seconds}"


@pytest.fixture
def s3():
    mock = MagicMock()
    mock.generate_presigned_post.return_value = {
        "url": "https://bucket.s3.amazonaws.com/",
        "fields": {"key": "k", "policy": "p"},
    }
    mock.head_object.return_value = {"ContentLength": 4096, "ContentType": "video/mp4"}
    return mock


@pytest.fixture
def s3_client(s3):
    config = S3Config(access_key_id="id", secret_access_key="secret", bucket_name="videos-bucket")
    return S3VideoClient(config, StubSigner(), s3_client=s3)


class TestObjectKeys:

    def test_key_layout(self):
        key = build_object_key("7/42", "video/quicktime")
        assert key.startswith("videos/7/42/")
        assert key.endswith(".mov")

    def test_unknown_mime_defaults_to_mp4(self):
        assert build_object_key(None, "video/unknown").endswith(".mp4")


class TestUploadSession:

    async def test_presigned_post_policy(self, s3_client, s3):
        session = await s3_client.create_upload_session(1800, 1000, mime_type="video/webm", key_hint="7/42")

        kwargs = s3.generate_presigned_post.call_args.kwargs
        assert kwargs["Bucket"] == "videos-bucket"
        assert kwargs["Key"] == session.remote_key
        assert session.remote_key.startswith("videos/7/42/")
        assert session.remote_key.endswith(".webm")
        assert kwargs["Conditions"] == [{"Content-Type": "video/webm"}, ["content-length-range", 1, 1000]]
        assert kwargs["ExpiresIn"] == 3600
        assert session.upload_target == "https://bucket.s3.amazonaws.com/"
        assert session.form_fields == {"key": "k", "policy": "p"}

    async def test_rejects_non_video_types(self, s3_client):
        with pytest.raises(ServiceError) as exc_info:
            await s3_client.create_upload_session(1800, 1000, mime_type="text/plain")
        assert exc_info.value.code == "invalid_mime_type"

    async def test_rejects_zero_size(self, s3_client):
        with pytest.raises(ServiceError) as exc_info:
            await s3_client.create_upload_session(1800, 0)
        assert exc_info.value.code == "invalid_max_size"

    async def test_no_resumable_uploads(self, s3_client, records, submissions, rate_limiter, retry, audit):
        tracker = UploadSessionTracker(s3_client, records, submissions, rate_limiter, retry, audit)
        with pytest.raises(ServiceError) as exc_info:
            await tracker.request_resumable_session(Principal(user_id=100), 7, 1000, "a.mp4", submission_id=42)
        assert exc_info.value.code == "resumable_not_supported"


class TestObjects:

    async def test_existing_object_is_ready(self, s3_client):
        metadata = await s3_client.get_object_metadata("videos/7/42/a.mp4")
        assert metadata.state == RemoteState.READY
        assert metadata.size == 4096
        assert metadata.content_type == "video/mp4"

    async def test_delete_checks_existence_first(self, s3_client, s3):
        assert await s3_client.delete_object("videos/7/42/a.mp4") is True
        s3.head_object.assert_called_once_with(Bucket="videos-bucket", Key="videos/7/42/a.mp4")
        s3.delete_object.assert_called_once_with(Bucket="videos-bucket", Key="videos/7/42/a.mp4")

    async def test_delete_of_missing_object(self, s3_client, s3):
        s3.head_object.side_effect = client_error("404", 404)
        with pytest.raises(ServiceError) as exc_info:
            await s3_client.delete_object("videos/7/42/a.mp4")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND
        s3.delete_object.assert_not_called()

    async def test_playback_is_signed_url(self, s3_client):
        credential = await s3_client.generate_playback_credential("videos/7/42/a.mp4", 600)
        assert credential.kind == "signed_url"
        assert credential.credential == "https://cdn.test/videos/7/42/a.mp4?Expires=600"

    async def test_rejects_traversal_keys(self, s3_client):
        with pytest.raises(ServiceError) as exc_info:
            await s3_client.get_object_metadata("videos/../secret")
        assert exc_info.value.code == "invalid_s3_key"


class TestErrorMapping:

    @pytest.mark.parametrize("error,kind", [
        (client_error("NoSuchKey", 404), ErrorKind.NOT_FOUND),
        (client_error("AccessDenied", 403), ErrorKind.AUTH),
        (client_error("SlowDown", 503), ErrorKind.THROTTLED),
        (client_error("InternalError", 500), ErrorKind.REMOTE),
        (NoCredentialsError(), ErrorKind.CONFIG),
        (EndpointConnectionError(endpoint_url="https://s3.test"), ErrorKind.TRANSIENT_NETWORK),
    ])
    async def test_boto_errors(self, s3_client, s3, error, kind):
        s3.head_object.side_effect = error
        with pytest.raises(ServiceError) as exc_info:
            await s3_client.get_object_metadata("videos/a.mp4")
        assert exc_info.value.kind == kind

    async def test_internal_errors_are_transient(self, s3_client, s3):
        s3.head_object.side_effect = client_error("InternalError", 500)
        with pytest.raises(ServiceError) as exc_info:
            await s3_client.get_object_metadata("videos/a.mp4")
        assert exc_info.value.is_transient
