"""
Application configuration using Pydantic settings.

Configuration is loaded from environment variables with sensible defaults.
Using Pydantic's BaseSettings means we get:
- Type validation at startup (fail fast if config is wrong)
- Documentation of what's required vs optional
- Easy testing with different configurations

Mock modes enable local development without external services.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    For lists (like api_keys), use comma-separated values in env.
    """

    # API Configuration
    api_title: str = "Video Submission API"
    api_version: str = "v1"
    api_keys: str = Field(
        default="dev-key-1,dev-key-2",
        description="Comma-separated API keys the host application uses to call us."
    )

    # Backend selection
    storage_backend: Literal["cloudflare", "s3"] = Field(
        default="cloudflare",
        description="Video backend: Cloudflare Stream or S3 with CloudFront playback"
    )
    storage_mock_mode: bool = Field(
        default=False,
        description="Use in-memory mock instead of a real video backend."
    )

    # Cloudflare Stream
    cloudflare_api_token: str = Field(default="", description="Stream API token")
    cloudflare_account_id: str = Field(default="", description="Cloudflare account ID")
    cloudflare_api_base_url: str = Field(
        default="https://api.cloudflare.com/client/v4",
        description="Cloudflare REST API base URL"
    )
    cloudflare_signing_key_id: Optional[str] = Field(
        default=None,
        description="Stream signing key ID. With the PEM set, tokens are signed locally instead of via the API."
    )
    cloudflare_signing_key_pem: Optional[str] = Field(
        default=None,
        description="Stream signing key (PEM, or base64 of the PEM as Cloudflare hands it out)"
    )
    cloudflare_customer_subdomain: Optional[str] = Field(
        default=None,
        description="customer-<code>.cloudflarestream.com host used to build playback URLs"
    )

    # AWS S3 + CloudFront
    aws_access_key_id: str = Field(default="", description="AWS access key ID")
    aws_secret_access_key: str = Field(default="", description="AWS secret access key")
    aws_region: str = Field(default="us-east-1", description="AWS region of the bucket")
    s3_bucket_name: str = Field(default="", description="S3 bucket for submitted videos")
    s3_presigned_post_expiry_seconds: int = Field(
        default=3600,
        description="How long a presigned POST stays valid"
    )
    cloudfront_domain: str = Field(default="", description="CloudFront distribution domain")
    cloudfront_key_pair_id: str = Field(default="", description="CloudFront public key / key pair ID")
    cloudfront_private_key_pem: str = Field(
        default="",
        description="RSA private key (PEM) matching the CloudFront key pair"
    )

    # Snowflake Configuration
    snowflake_account: str = Field(
        default="",
        description="Snowflake account identifier"
    )
    snowflake_user: str = Field(
        default="",
        description="Snowflake service account username"
    )
    snowflake_password: str = Field(
        default="",
        description="Snowflake service account password"
    )
    snowflake_private_key_path: Optional[str] = Field(
        default=None,
        description="Path to RSA private key file for key-pair authentication"
    )
    snowflake_private_key_base64: Optional[str] = Field(
        default=None,
        description="Base64-encoded private key (for deployment, alternative to file path)"
    )
    snowflake_database: str = Field(
        default="VIDEO_SUBMISSIONS",
        description="Snowflake database name"
    )
    snowflake_schema: str = Field(
        default="PUBLIC",
        description="Snowflake schema name"
    )
    snowflake_warehouse: str = Field(
        default="COMPUTE_WH",
        description="Snowflake warehouse for query execution"
    )
    snowflake_role: Optional[str] = Field(
        default=None,
        description="Snowflake role to use (optional)"
    )
    snowflake_mock_mode: bool = Field(
        default=False,
        description="Use the in-memory record store instead of Snowflake. Enables local dev without DB."
    )

    # Rate limiting
    upload_rate_limit: int = Field(default=10, description="Upload sessions per user and assignment per window")
    playback_rate_limit: int = Field(default=100, description="Playback credentials per user per window")
    rate_limit_window_seconds: int = Field(default=3600, description="Sliding window length")
    rate_limit_per_video_playback: bool = Field(
        default=False,
        description="Count playback per (user, video) instead of per user"
    )
    redis_url: Optional[str] = Field(
        default=None,
        description="Shared cache for rate-limit windows. In-process cache if unset (single worker only)."
    )
    rate_limit_bypass_user_ids: str = Field(
        default="",
        description="Comma-separated user IDs that bypass rate limiting."
    )

    # Retry
    retry_max_attempts: int = Field(default=3, description="Retries after the first attempt")
    retry_base_delay_ms: int = Field(default=1000, description="Delay before the first retry")
    retry_max_delay_ms: int = Field(default=30000, description="Upper bound for any single delay")

    # Lifecycle
    retention_days: int = Field(default=90, description="Days a video is kept before the cleanup sweep deletes it")
    stuck_upload_seconds: int = Field(default=1800, description="Age after which a pending upload is abandoned")
    max_file_size_bytes: int = Field(default=5 * 1024 * 1024 * 1024, description="Largest accepted upload")
    max_duration_seconds: int = Field(default=21600, description="Longest accepted video")
    default_upload_duration_seconds: int = Field(
        default=1800,
        description="maxDurationSeconds sent when the client does not ask for one"
    )
    playback_expiry_seconds: int = Field(default=86400, description="Playback credential lifetime")
    http_timeout_seconds: float = Field(default=30.0, description="Timeout for each backend HTTP call")
    treat_unknown_remote_state_as_ready: bool = Field(
        default=True,
        description="Confirm uploads whose remote state is unrecognized as ready instead of uploading"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins. Use * for development only."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def api_keys_list(self) -> list[str]:
        """Parse comma-separated API keys into a list."""
        return [key.strip() for key in self.api_keys.split(",") if key.strip()]

    @property
    def rate_limit_bypass_user_ids_set(self) -> frozenset[int]:
        """Parse comma-separated bypass user IDs."""
        return frozenset(
            int(value.strip()) for value in self.rate_limit_bypass_user_ids.split(",") if value.strip()
        )

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def validate_required_fields(self) -> list[str]:
        """
        Validate that required fields are set based on backend and mock mode settings.

        Returns list of missing required fields.
        This is separate from Pydantic validation because requirements
        depend on which backend is selected and whether we're in mock mode.
        """
        missing = []

        if not self.storage_mock_mode:
            if self.storage_backend == "cloudflare":
                if not self.cloudflare_api_token:
                    missing.append("CLOUDFLARE_API_TOKEN")
                if not self.cloudflare_account_id:
                    missing.append("CLOUDFLARE_ACCOUNT_ID")
                if self.cloudflare_signing_key_pem and not self.cloudflare_signing_key_id:
                    missing.append("CLOUDFLARE_SIGNING_KEY_ID")
            else:
                if not self.aws_access_key_id:
                    missing.append("AWS_ACCESS_KEY_ID")
                if not self.aws_secret_access_key:
                    missing.append("AWS_SECRET_ACCESS_KEY")
                if not self.s3_bucket_name:
                    missing.append("S3_BUCKET_NAME")
                if not self.cloudfront_domain:
                    missing.append("CLOUDFRONT_DOMAIN")
                if not self.cloudfront_key_pair_id:
                    missing.append("CLOUDFRONT_KEY_PAIR_ID")
                if not self.cloudfront_private_key_pem:
                    missing.append("CLOUDFRONT_PRIVATE_KEY_PEM")

        # Snowflake only required if not in mock mode
        if not self.snowflake_mock_mode:
            if not self.snowflake_account:
                missing.append("SNOWFLAKE_ACCOUNT")
            if not self.snowflake_user:
                missing.append("SNOWFLAKE_USER")
            # Need either password or private key
            if (
                not self.snowflake_password
                and not self.snowflake_private_key_path
                and not self.snowflake_private_key_base64
            ):
                missing.append("SNOWFLAKE_PASSWORD or SNOWFLAKE_PRIVATE_KEY_PATH")

        return missing


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Using lru_cache means we only load settings once per process.
    This is safe because settings don't change during runtime.
    For tests, you can call get_settings.cache_clear() to reset.
    """
    return Settings()
