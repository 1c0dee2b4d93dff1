"""
Cloudflare Stream client.

Wraps the Stream REST API (https://api.cloudflare.com/client/v4) with an
httpx AsyncClient. Every call is a single request; the retry engine in
the core decides whether to repeat it.

Response handling:
- 401/403 -> AUTH, 404 -> NOT_FOUND, 429 -> THROTTLED, other >= 400 -> REMOTE
- timeouts and connection errors -> TRANSIENT_NETWORK
- bodies that are not JSON -> INVALID_RESPONSE
- success=false in a 2xx body -> REMOTE
- an empty 200 body on DELETE is a success
"""

import base64
import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlparse

import httpx

from ...core.errors import ErrorKind, ServiceError
from ...core.models import (
    Clock,
    PlaybackCredential,
    RemoteObjectMetadata,
    RemoteState,
    UploadSession,
    utc_now,
)
from ...core.validation import (
    validate_credential_ttl,
    validate_duration,
    validate_file_size,
    validate_video_uid,
)
from ..signing import StreamTokenSigner

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.cloudflare.com/client/v4"


@dataclass
class CloudflareConfig:
    """Credentials and endpoints for Cloudflare Stream."""
    api_token: str
    account_id: str
    base_url: str = DEFAULT_BASE_URL
    timeout_seconds: float = 30.0
    customer_subdomain: Optional[str] = None


def _first_error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        errors = body.get("errors") or []
        if errors and isinstance(errors[0], dict) and errors[0].get("message"):
            return str(errors[0]["message"])
    return default


def _status_error(status: int, message: str, endpoint: str) -> ServiceError:
    context = {"endpoint": endpoint, "status": status}
    if status in (401, 403):
        return ServiceError(ErrorKind.AUTH, f"HTTP {status}: {message}", http_status=status, context=context)
    if status == 404:
        return ServiceError(ErrorKind.NOT_FOUND, f"HTTP {status}: {message}", http_status=status, context=context)
    if status == 429:
        return ServiceError(ErrorKind.THROTTLED, f"HTTP {status}: {message}", http_status=status, context=context)
    return ServiceError(ErrorKind.REMOTE, f"HTTP {status}: {message}", http_status=status, context=context)


def extract_uid_from_tus_url(url: str) -> str:
    """Pull the video UID out of a TUS Location URL (the segment after 'media')."""
    segments = [s for s in urlparse(url).path.split("/") if s]
    try:
        uid = segments[segments.index("media") + 1]
    except (ValueError, IndexError):
        raise ServiceError(
            ErrorKind.INVALID_RESPONSE,
            f"Cannot find media segment in TUS URL: {url}",
            code="tus_invalid_url",
        )
    uid = uid.rstrip("_")
    if not uid.isalnum():
        raise ServiceError(
            ErrorKind.INVALID_RESPONSE,
            f"Extracted invalid UID from TUS URL: {uid}",
            code="tus_invalid_uid",
        )
    return uid


class CloudflareStreamClient:
    """
    Video backend on Cloudflare Stream.

    Remote keys are Stream video UIDs. Playback credentials are signed
    tokens: signed locally when a StreamTokenSigner is given, otherwise
    requested from the /token endpoint.
    """

    backend_name = "cloudflare"

    def __init__(
        self,
        config: CloudflareConfig,
        token_signer: Optional[StreamTokenSigner] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._config = config
        self._token_signer = token_signer
        self._clock = clock
        self._http = http_client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout_seconds),
        )
        self._headers = {
            "Authorization": f"Bearer {config.api_token}",
            "Content-Type": "application/json",
        }

        logger.info(
            "Initialized Cloudflare Stream client",
            extra={"account_id": config.account_id, "local_signing": token_signer is not None},
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def validate_remote_key(self, remote_key: str) -> str:
        return validate_video_uid(remote_key)

    # -------------------------------------------------------------------------
    # Storage operations
    # -------------------------------------------------------------------------

    async def create_upload_session(
        self,
        max_duration_seconds: int,
        max_file_size: int,
        mime_type: Optional[str] = None,
        key_hint: Optional[str] = None,
    ) -> UploadSession:
        """Request a one-time direct upload URL (basic POST upload, up to 200 MB)."""
        duration = validate_duration(max_duration_seconds)
        body = await self._request(
            "POST",
            self._stream_path("direct_upload"),
            json={"maxDurationSeconds": duration, "requireSignedURLs": True},
        )
        result = self._require_result(body, "uploadURL", "uid")
        uid = validate_video_uid(result["uid"])
        return UploadSession(upload_target=result["uploadURL"], remote_key=uid)

    async def create_resumable_upload(
        self,
        file_size: int,
        filename: str,
        max_duration_seconds: int = 1800,
    ) -> UploadSession:
        """
        Open a TUS upload for large files.

        The upload URL comes from the Location header and the UID from
        stream-media-id, falling back to the URL path when that header is
        missing.
        """
        validate_duration(max_duration_seconds)
        file_size = validate_file_size(file_size)
        metadata = ",".join([
            f"name {base64.b64encode(filename.encode('utf-8')).decode('ascii')}",
            f"maxDurationSeconds {base64.b64encode(str(max_duration_seconds).encode()).decode('ascii')}",
            "requiresignedurls",
        ])
        endpoint = self._stream_path()
        response = await self._send(
            "POST",
            endpoint,
            headers={
                "Authorization": f"Bearer {self._config.api_token}",
                "Tus-Resumable": "1.0.0",
                "Upload-Length": str(file_size),
                "Upload-Metadata": metadata,
            },
        )
        if response.status_code >= 400:
            raise _status_error(response.status_code, "TUS upload creation failed", endpoint)

        upload_url = response.headers.get("location")
        if not upload_url:
            raise ServiceError(
                ErrorKind.INVALID_RESPONSE,
                "TUS response missing Location header",
                code="tus_no_location",
            )

        uid = response.headers.get("stream-media-id")
        if uid:
            if not uid.isalnum():
                raise ServiceError(
                    ErrorKind.INVALID_RESPONSE,
                    f"Invalid UID from stream-media-id header: {uid}",
                    code="tus_invalid_uid",
                )
        else:
            logger.warning("stream-media-id header missing, parsing UID from URL", extra={"url": upload_url})
            uid = extract_uid_from_tus_url(upload_url)

        return UploadSession(upload_target=upload_url, remote_key=uid)

    async def get_object_metadata(self, remote_key: str) -> RemoteObjectMetadata:
        uid = validate_video_uid(remote_key)
        body = await self._request("GET", self._stream_path(uid))
        result = self._require_result(body)

        status = result.get("status") or {}
        duration = result.get("duration")
        size = result.get("size")
        return RemoteObjectMetadata(
            remote_key=uid,
            size=int(size) if size is not None else None,
            # Stream reports -1 until the duration is known
            duration_seconds=int(duration) if duration is not None and duration >= 0 else None,
            content_type=None,
            state=RemoteState.parse(status.get("state") if isinstance(status, dict) else None),
        )

    async def delete_object(self, remote_key: str) -> bool:
        uid = validate_video_uid(remote_key)
        await self._request("DELETE", self._stream_path(uid))
        logger.info("Deleted video from Cloudflare Stream", extra={"video_uid": uid})
        return True

    async def generate_playback_credential(self, remote_key: str, ttl_seconds: int) -> PlaybackCredential:
        uid = validate_video_uid(remote_key)
        ttl_seconds = validate_credential_ttl(ttl_seconds)

        if self._token_signer is not None:
            token = self._token_signer.sign(uid, ttl_seconds)
        else:
            exp = int(self._clock().timestamp()) + ttl_seconds
            body = await self._request("POST", self._stream_path(uid, "token"), json={"exp": exp})
            token = self._require_result(body, "token")["token"]

        return PlaybackCredential(credential=token, expires_in_seconds=ttl_seconds, kind="token")

    def playback_url(self, token: str) -> Optional[str]:
        """HLS manifest URL for a signed token, if the customer subdomain is known."""
        if not self._config.customer_subdomain:
            return None
        return f"https://{self._config.customer_subdomain}/{token}/manifest/video.m3u8"

    # -------------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------------

    def _stream_path(self, *parts: str) -> str:
        return "/".join([f"/accounts/{self._config.account_id}/stream", *parts])

    async def _send(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._http.request(method, endpoint, **kwargs)
        except httpx.TimeoutException as e:
            raise ServiceError(
                ErrorKind.TRANSIENT_NETWORK,
                f"Timeout calling Cloudflare: {e}",
                code="network_error",
                context={"endpoint": endpoint},
            ) from e
        except httpx.TransportError as e:
            raise ServiceError(
                ErrorKind.TRANSIENT_NETWORK,
                f"Network error calling Cloudflare: {e}",
                code="network_error",
                context={"endpoint": endpoint},
            ) from e

    async def _request(self, method: str, endpoint: str, json: Optional[dict] = None) -> Optional[dict]:
        response = await self._send(method, endpoint, json=json, headers=self._headers)

        if method == "DELETE" and response.status_code == 200 and not response.content.strip():
            return None

        try:
            body = response.json()
        except ValueError:
            if response.status_code >= 400:
                raise _status_error(response.status_code, "Unknown error", endpoint)
            raise ServiceError(
                ErrorKind.INVALID_RESPONSE,
                f"Failed to decode JSON response from {endpoint}",
                code="invalid_response",
                http_status=response.status_code,
                context={"endpoint": endpoint},
            )

        if response.status_code >= 400:
            message = _first_error_message(body, "Unknown error")
            logger.warning(
                "Cloudflare API error",
                extra={"endpoint": endpoint, "method": method, "status": response.status_code, "error": message},
            )
            raise _status_error(response.status_code, message, endpoint)

        if not isinstance(body, dict) or body.get("success") is not True:
            raise ServiceError(
                ErrorKind.REMOTE,
                _first_error_message(body, "API returned success=false"),
                http_status=response.status_code,
                context={"endpoint": endpoint},
            )
        return body

    @staticmethod
    def _require_result(body: Optional[dict], *fields: str) -> dict:
        result = body.get("result") if body else None
        if not isinstance(result, dict):
            raise ServiceError(ErrorKind.INVALID_RESPONSE, "Response has no result object", code="invalid_response")
        missing = [f for f in fields if not result.get(f)]
        if missing:
            raise ServiceError(
                ErrorKind.INVALID_RESPONSE,
                f"Response is missing fields: {', '.join(missing)}",
                code="invalid_response",
            )
        return result
