import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

import httpx
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from app.utils.token_codec import b64url_encode

logger = logging.getLogger(__name__)

_discovery_cache: dict[str, dict[str, Any]] = {}
_discovery_cache_times: dict[str, float] = {}
DISCOVERY_CACHE_TTL = 3600
OAUTH_STATE_TTL = 10 * 60
OAUTH_STATE_SALT = "cyclecare-oauth-state"


class OAuthError(Exception):
    """Raised for any failure in the authorization-code round trip."""

    def __init__(self, reason: str, message: str | None = None):
        super().__init__(message or reason)
        self.reason = reason


@dataclass(frozen=True)
class OAuthState:
    code_verifier: str
    redirect_to: str
    state_id: str


@dataclass(frozen=True)
class OAuthProfile:
    subject_id: str
    email: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    avatar_url: Optional[str]


def _state_serializer(secret: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret, salt=OAUTH_STATE_SALT)


def sign_state(payload: dict[str, Any], secret: str) -> str:
    return _state_serializer(secret).dumps(payload)


def verify_state(
    state: Optional[str], secret: str, max_age: int = OAUTH_STATE_TTL
) -> Optional[OAuthState]:
    """Return the decoded state, or None when it is forged, stale or malformed."""
    if not state:
        return None
    try:
        payload = _state_serializer(secret).loads(state, max_age=max_age)
        return OAuthState(
            code_verifier=payload["code_verifier"],
            redirect_to=payload.get("redirect_to") or "/",
            state_id=payload["state_id"],
        )
    except (BadSignature, SignatureExpired, KeyError, TypeError, AttributeError):
        return None


def pkce_challenge(code_verifier: str) -> str:
    return b64url_encode(hashlib.sha256(code_verifier.encode("ascii")).digest())


class OAuthClient:
    """
    Authorization-code flow against an OpenID Connect provider.

    The provider's endpoints come from its discovery document. State is a
    signed, timestamped blob carrying the PKCE verifier and the post-login
    redirect, so nothing has to be stored between start and callback.
    """

    def __init__(
        self,
        issuer_url: str,
        client_id: str,
        client_secret: Optional[str],
        redirect_uri: str,
        state_secret: str,
        scope: str = "openid email profile",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.issuer_url = issuer_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.state_secret = state_secret
        self.scope = scope
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=10, transport=self.transport)

    async def discover(self) -> dict[str, Any]:
        now = time.time()
        cached = _discovery_cache.get(self.issuer_url)
        if cached and (now - _discovery_cache_times.get(self.issuer_url, 0)) < DISCOVERY_CACHE_TTL:
            return cached

        try:
            async with self._client() as client:
                resp = await client.get(f"{self.issuer_url}/.well-known/openid-configuration")
                resp.raise_for_status()
                config = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Failed to fetch OIDC discovery from %s: %s", self.issuer_url, e)
            raise OAuthError("discovery_failed", str(e)) from None
        if not isinstance(config, dict):
            raise OAuthError("discovery_failed", "Discovery document is not an object")

        _discovery_cache[self.issuer_url] = config
        _discovery_cache_times[self.issuer_url] = now
        return config

    async def build_authorization_url(self, redirect_to: str = "/") -> str:
        config = await self.discover()
        code_verifier = secrets.token_urlsafe(32)
        state = sign_state(
            {
                "code_verifier": code_verifier,
                "redirect_to": redirect_to,
                "state_id": secrets.token_hex(8),
            },
            self.state_secret,
        )
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "state": state,
            "code_challenge": pkce_challenge(code_verifier),
            "code_challenge_method": "S256",
            "nonce": secrets.token_urlsafe(16),
            "prompt": "select_account",
        }
        endpoint = config.get("authorization_endpoint")
        if not endpoint:
            raise OAuthError("discovery_failed", "Discovery document has no authorization_endpoint")
        return f"{endpoint}?{urlencode(params)}"

    async def exchange_code(self, code: str, state: str) -> tuple[OAuthProfile, OAuthState]:
        state_data = verify_state(state, self.state_secret)
        if state_data is None:
            raise OAuthError("invalid_state")
        if not code:
            raise OAuthError("no_code")

        config = await self.discover()
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": state_data.code_verifier,
        }
        if self.client_secret:
            form["client_secret"] = self.client_secret

        try:
            async with self._client() as client:
                token_resp = await client.post(config["token_endpoint"], data=form)
                token_resp.raise_for_status()
                access_token = token_resp.json().get("access_token")
                if not access_token:
                    raise OAuthError("token_exchange_failed", "No access_token in token response")

                profile_resp = await client.get(
                    config["userinfo_endpoint"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                profile_resp.raise_for_status()
                claims = profile_resp.json()
        except (httpx.HTTPError, ValueError, KeyError, AttributeError) as e:
            # ValueError: non-JSON body. KeyError: endpoint missing from discovery.
            logger.error("OAuth code exchange with %s failed: %s", self.issuer_url, e)
            raise OAuthError("callback_failed", str(e)) from None

        if not isinstance(claims, dict):
            raise OAuthError("callback_failed", "Profile response is not an object")
        subject = claims.get("sub")
        if not subject:
            raise OAuthError("callback_failed", "Profile response has no subject")

        profile = OAuthProfile(
            subject_id=str(subject),
            email=claims.get("email"),
            first_name=claims.get("given_name") or claims.get("first_name"),
            last_name=claims.get("family_name") or claims.get("last_name"),
            avatar_url=claims.get("picture") or claims.get("profile_image_url"),
        )
        return profile, state_data
