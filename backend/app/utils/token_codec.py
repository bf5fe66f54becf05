"""
HMAC-SHA256 signed bearer credentials.

Tokens have the compact JWS shape (header.payload.signature, unpadded
base64url) but are built directly on hmac/hashlib so the format stays
under our control. They are self-contained: verification never touches
storage, so a leaked token stays valid until it expires.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from functools import lru_cache
from typing import Any, Optional

from app.config import MIN_SECRET_LENGTH, get_settings
from app.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

TOKEN_ISSUER = "cyclecare-app"
TOKEN_AUDIENCE = "cyclecare-users"
TOKEN_LIFETIME_SECONDS = 7 * 24 * 60 * 60

_HEADER = {"alg": "HS256", "typ": "JWT"}
_RESERVED_CLAIMS = ("iss", "aud", "iat", "exp")


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _json_segment(value: dict[str, Any]) -> str:
    return b64url_encode(json.dumps(value, separators=(",", ":")).encode("utf-8"))


class TokenCodec:
    def __init__(
        self,
        secret: Optional[str],
        issuer: str = TOKEN_ISSUER,
        audience: str = TOKEN_AUDIENCE,
        lifetime_seconds: int = TOKEN_LIFETIME_SECONDS,
    ):
        if not secret or len(secret) < MIN_SECRET_LENGTH:
            raise ConfigurationError(
                f"SESSION_SECRET must be set and at least {MIN_SECRET_LENGTH} characters long"
            )
        self._key = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.lifetime_seconds = lifetime_seconds

    def _signature(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode("utf-8"), hashlib.sha256).digest()
        return b64url_encode(digest)

    def sign(self, claims: dict[str, Any], now: Optional[int] = None) -> str:
        issued_at = int(time.time()) if now is None else now
        payload = {k: v for k, v in claims.items() if k not in _RESERVED_CLAIMS}
        payload.update(
            iss=self.issuer,
            aud=self.audience,
            iat=issued_at,
            exp=issued_at + self.lifetime_seconds,
        )
        signing_input = f"{_json_segment(_HEADER)}.{_json_segment(payload)}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str, now: Optional[int] = None) -> Optional[dict[str, Any]]:
        """Return the claims of a valid token, otherwise None."""
        parts = token.split(".")
        if len(parts) != 3:
            return None

        encoded_header, encoded_payload, signature = parts
        expected = self._signature(f"{encoded_header}.{encoded_payload}")
        if not hmac.compare_digest(expected.encode("ascii"), signature.encode("ascii", "replace")):
            logger.debug("Rejected token: bad signature")
            return None

        try:
            payload = json.loads(b64url_decode(encoded_payload))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            logger.debug("Rejected token: undecodable payload")
            return None
        if not isinstance(payload, dict):
            return None

        current = int(time.time()) if now is None else now
        expires_at = payload.get("exp")
        if not isinstance(expires_at, (int, float)) or current > expires_at:
            logger.debug("Rejected token: expired")
            return None

        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            logger.debug("Rejected token: issuer or audience mismatch")
            return None

        return payload


@lru_cache
def get_token_codec() -> TokenCodec:
    return TokenCodec(get_settings().session_secret)
