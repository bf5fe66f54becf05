import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from jose import JWTError, jwt
from jose.exceptions import JOSEError

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)

FIREBASE_JWKS_URL = (
    "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com"
)
FIREBASE_ISSUER_PREFIX = "https://securetoken.google.com/"
CUSTOM_TOKEN_AUDIENCE = (
    "https://identitytoolkit.googleapis.com/google.identity.identitytoolkit.v1.IdentityToolkit"
)
CUSTOM_TOKEN_LIFETIME = 3600
JWKS_CACHE_TTL = 3600

_jwks_cache: dict[str, Any] = {}
_jwks_cache_time: float = 0.0


class IdentityProviderError(Exception):
    """The external identity provider could not complete a request."""


@dataclass(frozen=True)
class ExternalIdentity:
    uid: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    is_admin_claim: bool = False


async def _fetch_jwks(transport: Optional[httpx.AsyncBaseTransport] = None) -> dict:
    global _jwks_cache_time

    now = time.time()
    if _jwks_cache and (now - _jwks_cache_time) < JWKS_CACHE_TTL:
        return _jwks_cache

    async with httpx.AsyncClient(timeout=10, transport=transport) as client:
        resp = await client.get(FIREBASE_JWKS_URL)
        resp.raise_for_status()
        jwks = resp.json()

    _jwks_cache.clear()
    _jwks_cache.update(jwks)
    _jwks_cache_time = now
    return _jwks_cache


class FirebaseTokenVerifier:
    """
    Delegated-trust verification of Firebase ID tokens.

    Signatures are checked against Google's published secure-token keys;
    the project id pins audience and issuer. Minting custom tokens needs
    the service-account key as well.
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.project_id = settings.firebase_project_id
        self.client_email = settings.firebase_client_email
        private_key = settings.firebase_private_key
        # Keys pasted into env files usually carry literal "\n" sequences
        self.private_key = private_key.replace("\\n", "\n") if private_key else None
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.project_id)

    @property
    def can_mint(self) -> bool:
        return bool(self.project_id and self.client_email and self.private_key)

    async def verify(self, id_token: str) -> Optional[ExternalIdentity]:
        """Return the token's identity, or None when it cannot be trusted."""
        if not self.enabled:
            return None

        try:
            jwks = await _fetch_jwks(self.transport)
        except httpx.HTTPError as e:
            logger.warning("Failed to fetch Firebase signing keys: %s", e)
            return None

        try:
            claims = jwt.decode(
                id_token,
                jwks,
                algorithms=["RS256"],
                audience=self.project_id,
                issuer=f"{FIREBASE_ISSUER_PREFIX}{self.project_id}",
                options={"verify_exp": True, "verify_at_hash": False},
            )
        except JWTError as e:
            logger.debug("Firebase token rejected: %s", e)
            return None

        uid = claims.get("user_id") or claims.get("sub")
        if not uid:
            return None

        return ExternalIdentity(
            uid=uid,
            email=claims.get("email"),
            phone_number=claims.get("phone_number"),
            is_admin_claim=claims.get("admin") is True,
        )

    def create_custom_token(self, uid: str, claims: Optional[dict[str, Any]] = None) -> str:
        if not self.can_mint:
            raise IdentityProviderError("Firebase service account is not configured")

        now = int(time.time())
        payload: dict[str, Any] = {
            "iss": self.client_email,
            "sub": self.client_email,
            "aud": CUSTOM_TOKEN_AUDIENCE,
            "iat": now,
            "exp": now + CUSTOM_TOKEN_LIFETIME,
            "uid": uid,
        }
        if claims:
            payload["claims"] = claims

        try:
            return jwt.encode(payload, self.private_key, algorithm="RS256")
        except JOSEError as e:
            raise IdentityProviderError(f"Failed to sign custom token: {e}") from e


def get_firebase_verifier() -> FirebaseTokenVerifier:
    return FirebaseTokenVerifier(get_settings())
