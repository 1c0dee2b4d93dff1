"""
FastAPI dependency injection.

Dependencies provide instances of services, clients, and configuration
to route handlers. Using dependency injection means:
- Routes don't instantiate their own dependencies (easier to test)
- Dependencies can be overridden in tests
- Configuration is centralized
- Resource lifecycle (connections, clients) is managed properly

Process-wide objects (the storage client, the rate-limit window cache and,
in mock mode, the in-memory record store) are created once and shared.
Snowflake connections are opened per request and closed afterwards.
"""

import logging
from dataclasses import dataclass
from typing import Annotated, Any, Generator, Optional

from fastapi import Depends, Header, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from ..config.settings import Settings, get_settings
from ..core.audit import AuditLogger, PrivacyService
from ..core.cleanup import CleanupScheduler
from ..core.errors import ErrorKind, ServiceError
from ..core.models import Principal
from ..core.playback import PlaybackService
from ..core.ports import (
    AuditLogRepository,
    RemoteStorageClient,
    SubmissionDirectory,
    UploadRecordRepository,
    WindowCache,
)
from ..core.rate_limit import SlidingWindowRateLimiter
from ..core.retry import RetryEngine, RetryPolicy
from ..core.uploads import UploadSessionTracker
from ..core.validation import validate_positive_id
from ..infrastructure.cache import create_window_cache
from ..infrastructure.records import (
    InMemoryAuditLogRepository,
    InMemorySubmissionDirectory,
    InMemoryUploadRecordRepository,
)
from ..infrastructure.snowflake import (
    SnowflakeAuditLogRepository,
    SnowflakeConfig,
    SnowflakeSubmissionDirectory,
    SnowflakeUploadRecordRepository,
    get_snowflake_connection,
)
from ..infrastructure.storage import create_storage_client

logger = logging.getLogger(__name__)

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Shared instances (created on first use, reused across requests)
_storage_client: Optional[RemoteStorageClient] = None
_window_cache: Optional[WindowCache] = None
_mock_repositories: Optional["Repositories"] = None


@dataclass
class Repositories:
    """The three stores one request works against, sharing a connection."""
    records: UploadRecordRepository
    audit_log: AuditLogRepository
    submissions: SubmissionDirectory


def reset_shared_instances() -> None:
    """Forget the shared clients and stores. Used by tests and on shutdown."""
    global _storage_client, _window_cache, _mock_repositories
    _storage_client = None
    _window_cache = None
    _mock_repositories = None


async def close_shared_instances() -> None:
    shared = (_storage_client, _window_cache)
    reset_shared_instances()
    for instance in shared:
        aclose = getattr(instance, "aclose", None)
        if aclose is not None:
            await aclose()


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

async def verify_api_key(
    settings: Annotated[Settings, Depends(get_settings)],
    api_key: str = Security(api_key_header),
) -> str:
    """
    Validate the host application's API key.

    The host authenticates its users itself and calls this service on
    their behalf; the key proves the call comes from the host.

    Raises 403 if key is invalid or missing.
    """
    if not api_key:
        logger.warning("Request missing API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="API key required. Provide X-API-Key header.",
        )

    if api_key not in settings.api_keys_list:
        logger.warning(
            "Invalid API key attempt",
            extra={"key_prefix": api_key[:8] if api_key else ""}
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key


def get_principal(
    request: Request,
    _api_key: Annotated[str, Depends(verify_api_key)],
    x_user_id: Annotated[Optional[str], Header()] = None,
    x_user_is_admin: Annotated[Optional[str], Header()] = None,
    x_user_capabilities: Annotated[Optional[str], Header()] = None,
) -> Principal:
    """
    Build the caller from headers set by the host application.

    X-User-Id is required. X-User-Is-Admin ("true"/"1") marks a site
    admin and X-User-Capabilities is a comma-separated list such as
    "grade,bypass_rate_limit".
    """
    if not x_user_id:
        raise ServiceError(ErrorKind.VALIDATION, "X-User-Id header is required", code="missing_user")
    user_id = validate_positive_id(x_user_id, "user_id")

    capabilities = frozenset(
        c.strip().lower() for c in (x_user_capabilities or "").split(",") if c.strip()
    )
    principal = Principal(
        user_id=user_id,
        is_site_admin=(x_user_is_admin or "").strip().lower() in ("1", "true", "yes"),
        capabilities=capabilities,
    )
    request.state.user_id = user_id
    return principal


def require_admin(principal: Annotated[Principal, Depends(get_principal)]) -> Principal:
    if not principal.is_site_admin:
        logger.warning("Admin endpoint denied", extra={"user_id": principal.user_id})
        raise ServiceError(
            ErrorKind.PERMISSION,
            "This action requires site administrator rights",
            code="permission_error",
        )
    return principal


# ---------------------------------------------------------------------------
# Stores and Clients
# ---------------------------------------------------------------------------

def get_repositories(
    settings: Annotated[Settings, Depends(get_settings)],
) -> Generator[Repositories, None, None]:
    """
    Provide the record store for one request.

    This is a generator function (yields instead of returns) because the
    Snowflake connection has to be closed after the request.

    In mock mode, the same in-memory stores are reused across requests
    so that data persists during the testing session.
    """
    global _mock_repositories

    if settings.snowflake_mock_mode:
        if _mock_repositories is None:
            _mock_repositories = Repositories(
                records=InMemoryUploadRecordRepository(),
                audit_log=InMemoryAuditLogRepository(),
                submissions=InMemorySubmissionDirectory(),
            )
            logger.info("Created shared in-memory record store")
        yield _mock_repositories
    else:
        with get_snowflake_connection(SnowflakeConfig.from_settings(settings)) as conn:
            logger.debug("Created Snowflake repositories")
            yield Repositories(
                records=SnowflakeUploadRecordRepository(conn),
                audit_log=SnowflakeAuditLogRepository(conn),
                submissions=SnowflakeSubmissionDirectory(conn),
            )


def get_storage_client(
    settings: Annotated[Settings, Depends(get_settings)],
) -> RemoteStorageClient:
    """
    Provide the video backend client.

    The client is shared so its HTTP connection pool is reused; it is
    closed in the application lifespan.
    """
    global _storage_client

    if _storage_client is None:
        _storage_client = create_storage_client(settings)
        logger.info("Created storage client", extra={"backend": _storage_client.backend_name})
    return _storage_client


def get_window_cache(
    settings: Annotated[Settings, Depends(get_settings)],
) -> WindowCache:
    global _window_cache

    if _window_cache is None:
        _window_cache = create_window_cache(settings.redis_url)
    return _window_cache


# ---------------------------------------------------------------------------
# Service Dependencies
# ---------------------------------------------------------------------------

def get_audit_logger(
    request: Request,
    repositories: Annotated[Repositories, Depends(get_repositories)],
) -> Generator[AuditLogger, None, None]:
    """
    Provide the audit logger and record failed requests as api_error entries.

    The entry is written while the request's connection is still open.
    """
    audit = AuditLogger(repositories.audit_log)
    try:
        yield audit
    except ServiceError as e:
        audit.log_api_error(
            request.url.path,
            request.method,
            e.status_code,
            e,
            user_id=getattr(request.state, "user_id", None),
        )
        raise


def get_rate_limiter(
    settings: Annotated[Settings, Depends(get_settings)],
    cache: Annotated[WindowCache, Depends(get_window_cache)],
) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(
        cache,
        upload_limit=settings.upload_rate_limit,
        playback_limit=settings.playback_rate_limit,
        window_seconds=settings.rate_limit_window_seconds,
        bypass_user_ids=settings.rate_limit_bypass_user_ids_set,
        per_resource_playback=settings.rate_limit_per_video_playback,
    )


def get_retry_engine(
    settings: Annotated[Settings, Depends(get_settings)],
    audit: Annotated[AuditLogger, Depends(get_audit_logger)],
) -> RetryEngine:
    policy = RetryPolicy.from_milliseconds(
        settings.retry_max_attempts,
        settings.retry_base_delay_ms,
        settings.retry_max_delay_ms,
    )
    return RetryEngine(policy, audit=audit)


def get_upload_tracker(
    settings: Annotated[Settings, Depends(get_settings)],
    storage: Annotated[RemoteStorageClient, Depends(get_storage_client)],
    repositories: Annotated[Repositories, Depends(get_repositories)],
    rate_limiter: Annotated[SlidingWindowRateLimiter, Depends(get_rate_limiter)],
    retry: Annotated[RetryEngine, Depends(get_retry_engine)],
    audit: Annotated[AuditLogger, Depends(get_audit_logger)],
) -> UploadSessionTracker:
    return UploadSessionTracker(
        storage,
        repositories.records,
        repositories.submissions,
        rate_limiter,
        retry,
        audit,
        max_file_size=settings.max_file_size_bytes,
        max_duration_seconds=settings.max_duration_seconds,
        default_upload_duration_seconds=settings.default_upload_duration_seconds,
        treat_unknown_as_ready=settings.treat_unknown_remote_state_as_ready,
    )


def get_playback_service(
    settings: Annotated[Settings, Depends(get_settings)],
    storage: Annotated[RemoteStorageClient, Depends(get_storage_client)],
    repositories: Annotated[Repositories, Depends(get_repositories)],
    rate_limiter: Annotated[SlidingWindowRateLimiter, Depends(get_rate_limiter)],
    retry: Annotated[RetryEngine, Depends(get_retry_engine)],
    audit: Annotated[AuditLogger, Depends(get_audit_logger)],
) -> PlaybackService:
    return PlaybackService(
        storage,
        repositories.records,
        repositories.submissions,
        rate_limiter,
        retry,
        audit,
        expiry_seconds=settings.playback_expiry_seconds,
    )


def get_cleanup_scheduler(
    settings: Annotated[Settings, Depends(get_settings)],
    storage: Annotated[RemoteStorageClient, Depends(get_storage_client)],
    repositories: Annotated[Repositories, Depends(get_repositories)],
    retry: Annotated[RetryEngine, Depends(get_retry_engine)],
    audit: Annotated[AuditLogger, Depends(get_audit_logger)],
) -> CleanupScheduler:
    return CleanupScheduler(
        storage,
        repositories.records,
        audit,
        retry,
        retention_days=settings.retention_days,
        stuck_upload_seconds=settings.stuck_upload_seconds,
    )


def get_privacy_service(
    storage: Annotated[RemoteStorageClient, Depends(get_storage_client)],
    repositories: Annotated[Repositories, Depends(get_repositories)],
) -> PrivacyService:
    return PrivacyService(repositories.records, repositories.audit_log, storage)


def describe_backend(settings: Settings) -> dict[str, Any]:
    return {
        "storage_backend": settings.storage_backend,
        "mock_mode": {
            "snowflake": settings.snowflake_mock_mode,
            "storage": settings.storage_mock_mode,
        },
    }


# ---------------------------------------------------------------------------
# Convenience Type Aliases
# ---------------------------------------------------------------------------

# These type aliases make route signatures cleaner
SettingsDep = Annotated[Settings, Depends(get_settings)]
PrincipalDep = Annotated[Principal, Depends(get_principal)]
AdminDep = Annotated[Principal, Depends(require_admin)]
RepositoriesDep = Annotated[Repositories, Depends(get_repositories)]
StorageClientDep = Annotated[RemoteStorageClient, Depends(get_storage_client)]
RateLimiterDep = Annotated[SlidingWindowRateLimiter, Depends(get_rate_limiter)]
AuditLoggerDep = Annotated[AuditLogger, Depends(get_audit_logger)]
UploadTrackerDep = Annotated[UploadSessionTracker, Depends(get_upload_tracker)]
PlaybackServiceDep = Annotated[PlaybackService, Depends(get_playback_service)]
CleanupSchedulerDep = Annotated[CleanupScheduler, Depends(get_cleanup_scheduler)]
PrivacyServiceDep = Annotated[PrivacyService, Depends(get_privacy_service)]
