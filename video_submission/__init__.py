"""
Video Submission Service - upload and playback of assignment videos.

This package contains the complete application:
- core: Framework-agnostic upload lifecycle, retry, rate limiting and access rules
- infrastructure: Video backends (Cloudflare Stream, S3 + CloudFront), record store, cache
- api: FastAPI routes and dependencies
- config: Application configuration
"""

__version__ = "0.1.0"
