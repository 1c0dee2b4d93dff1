"""
Video backend selection and the in-memory backend.

The RemoteStorageClient protocol lives in core.ports; this module
provides the mock implementation and the factory that picks a backend
from settings.

Mock mode keeps video metadata in a dictionary so the full upload and
playback flow works without Cloudflare or AWS credentials.
"""

import logging
import uuid
from collections import defaultdict, deque
from typing import Optional

from ...core.errors import config_error, not_found
from ...core.models import (
    PlaybackCredential,
    RemoteObjectMetadata,
    RemoteState,
    UploadSession,
)
from ...core.ports import RemoteStorageClient
from ...core.validation import validate_credential_ttl, validate_duration, validate_video_uid

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Mock Storage for Local Development
# ---------------------------------------------------------------------------

class MockStorageClient:
    """
    In-memory video backend.

    Upload sessions register the video immediately. By default it is
    reported as ready on the next metadata fetch; set_object() changes
    what the backend reports, and fail_next() queues errors for a named
    operation so retry and cleanup paths can be exercised.

    Not suitable for production, but perfect for development and testing.
    """

    backend_name = "mock"

    def __init__(self, initial_state: RemoteState = RemoteState.READY) -> None:
        self._objects: dict[str, RemoteObjectMetadata] = {}
        self._failures: dict[str, deque[BaseException]] = defaultdict(deque)
        self._initial_state = initial_state
        self.calls: list[tuple[str, str]] = []
        logger.info("Initialized mock storage client (in-memory)")

    # Test helpers

    def set_object(
        self,
        remote_key: str,
        state: RemoteState = RemoteState.READY,
        size: Optional[int] = None,
        duration_seconds: Optional[int] = None,
        content_type: Optional[str] = None,
    ) -> None:
        self._objects[remote_key] = RemoteObjectMetadata(
            remote_key=remote_key,
            size=size,
            duration_seconds=duration_seconds,
            content_type=content_type,
            state=state,
        )

    def remove_object(self, remote_key: str) -> None:
        self._objects.pop(remote_key, None)

    def has_object(self, remote_key: str) -> bool:
        return remote_key in self._objects

    def fail_next(self, operation: str, *errors: BaseException) -> None:
        """Queue errors raised by the next calls to `operation`, in order."""
        self._failures[operation].extend(errors)

    def _maybe_fail(self, operation: str, remote_key: str) -> None:
        self.calls.append((operation, remote_key))
        queue = self._failures.get(operation)
        if queue:
            raise queue.popleft()

    # RemoteStorageClient

    def validate_remote_key(self, remote_key: str) -> str:
        return validate_video_uid(remote_key)

    async def create_upload_session(
        self,
        max_duration_seconds: int,
        max_file_size: int,
        mime_type: Optional[str] = None,
        key_hint: Optional[str] = None,
    ) -> UploadSession:
        validate_duration(max_duration_seconds)
        remote_key = uuid.uuid4().hex
        self._maybe_fail("create_upload_session", remote_key)
        self.set_object(remote_key, state=self._initial_state)
        logger.debug("Created mock upload session", extra={"remote_key": remote_key})
        return UploadSession(upload_target=f"mock://upload/{remote_key}", remote_key=remote_key)

    async def create_resumable_upload(
        self,
        file_size: int,
        filename: str,
        max_duration_seconds: int = 1800,
    ) -> UploadSession:
        validate_duration(max_duration_seconds)
        remote_key = uuid.uuid4().hex
        self._maybe_fail("create_resumable_upload", remote_key)
        self.set_object(remote_key, state=self._initial_state, size=file_size)
        return UploadSession(upload_target=f"mock://tus/{remote_key}", remote_key=remote_key)

    async def get_object_metadata(self, remote_key: str) -> RemoteObjectMetadata:
        self._maybe_fail("get_object_metadata", remote_key)
        if remote_key not in self._objects:
            raise not_found(f"Video not found: {remote_key}", remote_key=remote_key)
        return self._objects[remote_key]

    async def delete_object(self, remote_key: str) -> bool:
        self._maybe_fail("delete_object", remote_key)
        if remote_key not in self._objects:
            raise not_found(f"Video not found: {remote_key}", remote_key=remote_key)
        del self._objects[remote_key]
        return True

    async def generate_playback_credential(self, remote_key: str, ttl_seconds: int) -> PlaybackCredential:
        ttl_seconds = validate_credential_ttl(ttl_seconds)
        self._maybe_fail("generate_playback_credential", remote_key)
        return PlaybackCredential(
            credential=f"mock-token-{remote_key}-{ttl_seconds}",
            expires_in_seconds=ttl_seconds,
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_storage_client(settings, mock_mode: Optional[bool] = None) -> RemoteStorageClient:
    """
    Create the video backend selected by settings.

    Factory function pattern because:
    - Centralizes client creation logic
    - Makes mock vs real decision explicit
    - Simplifies dependency injection in FastAPI

    Raises:
        ServiceError(CONFIG) if the selected backend is missing credentials
    """
    if mock_mode is None:
        mock_mode = settings.storage_mock_mode
    if mock_mode:
        return MockStorageClient()

    missing = settings.validate_required_fields()
    backend_missing = [
        name for name in missing
        if name.startswith(("CLOUDFLARE_", "AWS_", "S3_", "CLOUDFRONT_"))
    ]
    if backend_missing:
        raise config_error(
            f"{settings.storage_backend} backend is not configured",
            backend_missing,
        )

    if settings.storage_backend == "cloudflare":
        from ..signing import StreamTokenSigner
        from .cloudflare import CloudflareConfig, CloudflareStreamClient

        signer = None
        if settings.cloudflare_signing_key_id and settings.cloudflare_signing_key_pem:
            signer = StreamTokenSigner(settings.cloudflare_signing_key_id, settings.cloudflare_signing_key_pem)

        return CloudflareStreamClient(
            CloudflareConfig(
                api_token=settings.cloudflare_api_token,
                account_id=settings.cloudflare_account_id,
                base_url=settings.cloudflare_api_base_url,
                timeout_seconds=settings.http_timeout_seconds,
                customer_subdomain=settings.cloudflare_customer_subdomain,
            ),
            token_signer=signer,
        )

    from ..signing import CloudFrontUrlSigner
    from .s3 import S3Config, S3VideoClient

    return S3VideoClient(
        S3Config(
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
            bucket_name=settings.s3_bucket_name,
            region=settings.aws_region,
            presigned_post_expiry_seconds=settings.s3_presigned_post_expiry_seconds,
            timeout_seconds=settings.http_timeout_seconds,
        ),
        CloudFrontUrlSigner(
            settings.cloudfront_domain,
            settings.cloudfront_key_pair_id,
            settings.cloudfront_private_key_pem,
        ),
    )
