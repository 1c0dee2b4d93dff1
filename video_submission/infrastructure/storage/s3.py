"""
S3 video backend with CloudFront playback.

Uploads go straight from the browser to S3 with a presigned POST whose
policy pins the key, the content type and a content-length-range.
Playback goes through CloudFront with a canned-policy signed URL.

boto3 is synchronous, so each call runs in a worker thread to keep the
event loop free while S3 answers.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
    NoCredentialsError,
)

from ...core.errors import ErrorKind, ServiceError
from ...core.models import PlaybackCredential, RemoteObjectMetadata, RemoteState, UploadSession
from ...core.validation import validate_credential_ttl, validate_mime_type, validate_object_key
from ..signing import CloudFrontUrlSigner

logger = logging.getLogger(__name__)

# Extension used in object keys for each accepted MIME type
MIME_EXTENSIONS = {
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "video/x-msvideo": "avi",
    "video/x-matroska": "mkv",
    "video/webm": "webm",
    "video/mpeg": "mpeg",
    "video/ogg": "ogv",
    "video/3gpp": "3gp",
    "video/x-flv": "flv",
}

_NOT_FOUND_CODES = {"404", "NotFound", "NoSuchKey"}
_AUTH_CODES = {"403", "AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch", "ExpiredToken"}
_THROTTLE_CODES = {"SlowDown", "Throttling", "ThrottlingException", "RequestLimitExceeded", "503"}


@dataclass
class S3Config:
    """
    Configuration for the S3 bucket holding submitted videos.

    endpoint_url is only set for S3-compatible stores (MinIO, R2) in
    development.
    """
    access_key_id: str
    secret_access_key: str
    bucket_name: str
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    presigned_post_expiry_seconds: int = 3600
    timeout_seconds: float = 30.0


def build_object_key(key_hint: Optional[str], mime_type: str) -> str:
    """videos/{assignment}/{submission}/{uuid}.{ext}"""
    prefix = f"videos/{key_hint.strip('/')}" if key_hint else "videos"
    return f"{prefix}/{uuid.uuid4()}.{MIME_EXTENSIONS.get(mime_type, 'mp4')}"


class S3VideoClient:
    """
    Video backend on S3 + CloudFront.

    Remote keys are S3 object keys. S3 has no processing step, so an
    object that exists is reported as ready.
    """

    backend_name = "s3"

    def __init__(
        self,
        config: S3Config,
        url_signer: CloudFrontUrlSigner,
        s3_client: Optional[Any] = None,
    ) -> None:
        """
        Initialize the S3 client with boto3.

        We import boto3 here (not at module level) because:
        - Mock mode doesn't need it
        - Tests pass their own s3_client
        """
        self._config = config
        self._signer = url_signer

        if s3_client is None:
            try:
                import boto3
                from botocore.config import Config
            except ImportError:
                raise ImportError(
                    "boto3 is required for S3 storage. Install with: pip install boto3"
                )

            boto_config = Config(
                signature_version="s3v4",
                connect_timeout=config.timeout_seconds,
                read_timeout=config.timeout_seconds,
                retries={"max_attempts": 1},
            )
            s3_client = boto3.client(
                "s3",
                endpoint_url=config.endpoint_url,
                aws_access_key_id=config.access_key_id,
                aws_secret_access_key=config.secret_access_key,
                region_name=config.region,
                config=boto_config,
            )
        self._s3_client = s3_client

        logger.info(
            "Initialized S3 video client",
            extra={"bucket": config.bucket_name, "region": config.region},
        )

    def validate_remote_key(self, remote_key: str) -> str:
        return validate_object_key(remote_key)

    async def create_upload_session(
        self,
        max_duration_seconds: int,
        max_file_size: int,
        mime_type: Optional[str] = None,
        key_hint: Optional[str] = None,
    ) -> UploadSession:
        """
        Presigned POST for one object.

        S3 cannot enforce a duration, only a size; the duration is checked
        when the upload is confirmed.
        """
        mime_type = validate_mime_type(mime_type or "video/mp4")
        if max_file_size <= 0:
            raise ServiceError(ErrorKind.VALIDATION, "Max size must be greater than 0", code="invalid_max_size")
        expiry = validate_credential_ttl(self._config.presigned_post_expiry_seconds)
        key = build_object_key(key_hint, mime_type)

        post = await self._call(
            "generate_presigned_post",
            key,
            Bucket=self._config.bucket_name,
            Key=key,
            Fields={"Content-Type": mime_type},
            Conditions=[
                {"Content-Type": mime_type},
                ["content-length-range", 1, max_file_size],
            ],
            ExpiresIn=expiry,
        )
        return UploadSession(upload_target=post["url"], remote_key=key, form_fields=dict(post["fields"]))

    async def get_object_metadata(self, remote_key: str) -> RemoteObjectMetadata:
        key = validate_object_key(remote_key)
        head = await self._call("head_object", key, Bucket=self._config.bucket_name, Key=key)
        return RemoteObjectMetadata(
            remote_key=key,
            size=head.get("ContentLength"),
            content_type=head.get("ContentType"),
            state=RemoteState.READY,
        )

    async def delete_object(self, remote_key: str) -> bool:
        """S3 deletes are silent on missing keys, so existence is checked first."""
        key = validate_object_key(remote_key)
        await self._call("head_object", key, Bucket=self._config.bucket_name, Key=key)
        await self._call("delete_object", key, Bucket=self._config.bucket_name, Key=key)
        logger.info("Deleted video from S3", extra={"key": key})
        return True

    async def generate_playback_credential(self, remote_key: str, ttl_seconds: int) -> PlaybackCredential:
        key = validate_object_key(remote_key)
        ttl_seconds = validate_credential_ttl(ttl_seconds)
        url = self._signer.sign(key, ttl_seconds)
        return PlaybackCredential(credential=url, expires_in_seconds=ttl_seconds, kind="signed_url")

    async def _call(self, method: str, key: str, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(getattr(self._s3_client, method), **kwargs)
        except ClientError as e:
            raise _classify_client_error(e, method, key) from e
        except NoCredentialsError as e:
            raise ServiceError(ErrorKind.CONFIG, f"AWS credentials missing: {e}", code="config_missing") from e
        except (BotoConnectionError, HTTPClientError) as e:
            raise ServiceError(
                ErrorKind.TRANSIENT_NETWORK,
                f"Network error calling S3 {method}: {e}",
                code="network_error",
                context={"key": key},
            ) from e
        except BotoCoreError as e:
            raise ServiceError(ErrorKind.REMOTE, f"S3 {method} failed: {e}", context={"key": key}) from e


def _classify_client_error(error: ClientError, method: str, key: str) -> ServiceError:
    err = error.response.get("Error", {})
    code = str(err.get("Code", ""))
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    message = f"S3 {method} failed for {key}: {err.get('Message') or code}"
    context = {"key": key, "aws_code": code}

    if code in _NOT_FOUND_CODES or status == 404:
        return ServiceError(ErrorKind.NOT_FOUND, f"Object not found: {key}", http_status=404, context=context)
    if code in _THROTTLE_CODES or status in (429, 503):
        return ServiceError(ErrorKind.THROTTLED, message, http_status=status, context=context)
    if code in _AUTH_CODES or status in (401, 403):
        return ServiceError(ErrorKind.AUTH, message, http_status=status, context=context)
    return ServiceError(ErrorKind.REMOTE, message, http_status=status, context=context)
