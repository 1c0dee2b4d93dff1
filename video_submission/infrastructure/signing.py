"""
Local signing of playback credentials.

CloudFrontUrlSigner builds canned-policy signed URLs for S3 objects served
through CloudFront, using botocore's CloudFrontSigner. StreamTokenSigner
builds RS256 tokens for Cloudflare Stream signing keys, which saves a
round-trip to the token endpoint.

Both sign with the caller's RSA key via `cryptography`; neither touches
the network.
"""

import base64
import binascii
import logging
from datetime import timedelta
from typing import Optional
from urllib.parse import quote

import jwt
from botocore.signers import CloudFrontSigner
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from ..core.errors import ErrorKind, ServiceError, config_error
from ..core.models import Clock, utc_now
from ..core.validation import validate_credential_ttl

logger = logging.getLogger(__name__)


def load_rsa_private_key(pem: str, name: str) -> rsa.RSAPrivateKey:
    """
    Load an RSA private key from PEM text.

    Cloudflare hands out signing keys as base64 of the PEM, so a value
    without a PEM header is base64-decoded first.
    """
    if not pem:
        raise config_error(f"{name} is not configured", [name])

    data = pem.strip()
    if "-----BEGIN" not in data:
        try:
            data = base64.b64decode(data).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise config_error(f"{name} is neither PEM nor base64-encoded PEM: {e}", [name])

    try:
        key = serialization.load_pem_private_key(data.encode("utf-8"), password=None)
    except ValueError as e:
        raise config_error(f"{name} could not be loaded: {e}", [name])

    if not isinstance(key, rsa.RSAPrivateKey):
        raise config_error(f"{name} must be an RSA key", [name])
    return key


# ---------------------------------------------------------------------------
# CloudFront
# ---------------------------------------------------------------------------

class CloudFrontUrlSigner:
    """
    Signs CloudFront URLs with a canned policy.

    botocore builds the policy and the query string; the policy is signed
    with RSA-SHA1 as CloudFront requires.
    """

    def __init__(
        self,
        domain: str,
        key_pair_id: str,
        private_key_pem: str,
        clock: Clock = utc_now,
    ) -> None:
        if not domain:
            raise config_error("CloudFront domain is not configured", ["CLOUDFRONT_DOMAIN"])
        if not key_pair_id:
            raise config_error("CloudFront key pair ID is not configured", ["CLOUDFRONT_KEY_PAIR_ID"])
        self._domain = domain.rstrip("/").removeprefix("https://")
        self._private_key = load_rsa_private_key(private_key_pem, "CLOUDFRONT_PRIVATE_KEY_PEM")
        self._signer = CloudFrontSigner(key_pair_id, self._rsa_sign)
        self._clock = clock

    def resource_url(self, object_key: str) -> str:
        return f"https://{self._domain}/{quote(object_key.lstrip('/'), safe='/')}"

    def _rsa_sign(self, message: bytes) -> bytes:
        return self._private_key.sign(message, padding.PKCS1v15(), hashes.SHA1())

    def sign(self, object_key: str, ttl_seconds: int) -> str:
        """
        Return a signed URL for `object_key` valid for `ttl_seconds`.

        Raises:
            ServiceError(VALIDATION) if the key is empty or the TTL is
            outside (0, 7 days]
        """
        if not object_key:
            raise ServiceError(ErrorKind.VALIDATION, "Object key cannot be empty", code="invalid_object_key")
        ttl_seconds = validate_credential_ttl(ttl_seconds)

        expires_at = self._clock() + timedelta(seconds=ttl_seconds)
        return self._signer.generate_presigned_url(self.resource_url(object_key), date_less_than=expires_at)


# ---------------------------------------------------------------------------
# Cloudflare Stream
# ---------------------------------------------------------------------------

class StreamTokenSigner:
    """
    Self-signed Cloudflare Stream playback tokens.

    The token is an RS256 JWT with the signing key ID in the header and
    claims sub (video UID), kid, exp and nbf.
    """

    def __init__(self, key_id: str, private_key_pem: str, clock: Clock = utc_now) -> None:
        if not key_id:
            raise config_error("Stream signing key ID is not configured", ["CLOUDFLARE_SIGNING_KEY_ID"])
        self._key_id = key_id
        self._private_key = load_rsa_private_key(private_key_pem, "CLOUDFLARE_SIGNING_KEY_PEM")
        self._clock = clock

    def sign(self, video_uid: str, ttl_seconds: int, downloadable: Optional[bool] = None) -> str:
        ttl_seconds = validate_credential_ttl(ttl_seconds)
        now = self._clock()
        claims = {
            "sub": video_uid,
            "kid": self._key_id,
            "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
            "nbf": int(now.timestamp()),
        }
        if downloadable is not None:
            claims["downloadable"] = downloadable

        token = jwt.encode(claims, self._private_key, algorithm="RS256", headers={"kid": self._key_id})
        logger.debug("Signed stream token locally", extra={"video_uid": video_uid, "ttl": ttl_seconds})
        return token
