"""
Infrastructure layer - external service integrations.

Each subdirectory wraps an external dependency:
- storage: Video backends (Cloudflare Stream over httpx, S3 over boto3)
- signing: Playback credential signing (CloudFront policies, Stream JWTs)
- snowflake: Durable record store
- records: In-memory record store for local development and tests
- cache: Rate-limit window cache (Redis or in-process)

These wrappers translate between external formats and our domain models.
"""
