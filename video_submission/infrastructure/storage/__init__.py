"""
Video backends.

Supports Cloudflare Stream (httpx) and S3 with CloudFront playback
(boto3). Includes mock mode for local development without credentials.
"""

from ...core.ports import RemoteStorageClient
from .client import MockStorageClient, create_storage_client

__all__ = ["RemoteStorageClient", "MockStorageClient", "create_storage_client"]
