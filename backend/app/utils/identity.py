"""
Request identity resolution.

A bearer value is first classified by shape alone into exactly one
credential variant, then resolved into a Principal. Precedence is fixed:

    no bearer              -> no principal
    "session_" prefix      -> durable phone session (storage lookup)
    "phone_" prefix        -> legacy phone token (no storage lookup)
    anything else          -> Firebase ID token, then self-signed token

Resolution never raises. A credential that fails every check is treated
as absent and the route's gate decides what that means.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.services.phone_session_service import PHONE_SESSION_PREFIX, PhoneSessionService
from app.utils.firebase import FirebaseTokenVerifier
from app.utils.phone import phone_digits
from app.utils.token_codec import TokenCodec

logger = logging.getLogger(__name__)

LEGACY_PHONE_PREFIX = "phone_"


class SourceKind(str, enum.Enum):
    external_token = "external_token"
    phone_session = "phone_session"
    legacy_phone_token = "legacy_phone_token"
    cookie_session = "cookie_session"


class Principal(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject_id: str
    display_email: Optional[str] = None
    display_phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_admin: bool = False
    source_kind: SourceKind


@dataclass(frozen=True)
class NoCredential:
    pass


@dataclass(frozen=True)
class PhoneSessionCredential:
    token: str


@dataclass(frozen=True)
class LegacyPhoneCredential:
    token: str
    digits: str


@dataclass(frozen=True)
class BearerCredential:
    token: str


Credential = Union[NoCredential, PhoneSessionCredential, LegacyPhoneCredential, BearerCredential]


def classify(token: Optional[str]) -> Credential:
    if not token:
        return NoCredential()
    if token.startswith(PHONE_SESSION_PREFIX):
        return PhoneSessionCredential(token=token)
    if token.startswith(LEGACY_PHONE_PREFIX):
        return LegacyPhoneCredential(token=token, digits=phone_digits(token[len(LEGACY_PHONE_PREFIX):]))
    return BearerCredential(token=token)


class IdentityResolver:
    def __init__(
        self,
        settings: Settings,
        codec: TokenCodec,
        firebase: FirebaseTokenVerifier,
    ):
        self.settings = settings
        self.codec = codec
        self.firebase = firebase

    async def resolve(self, credential: Credential, db: AsyncSession) -> Optional[Principal]:
        if isinstance(credential, NoCredential):
            return None
        if isinstance(credential, PhoneSessionCredential):
            return await self._resolve_phone_session(credential, db)
        if isinstance(credential, LegacyPhoneCredential):
            return self._resolve_legacy_phone(credential)
        if isinstance(credential, BearerCredential):
            return await self._resolve_bearer(credential)
        raise TypeError(f"Unknown credential variant: {type(credential).__name__}")

    async def _resolve_phone_session(
        self, credential: PhoneSessionCredential, db: AsyncSession
    ) -> Optional[Principal]:
        try:
            session = await PhoneSessionService(db).get(credential.token)
        except Exception:
            logger.exception("Phone session lookup failed")
            return None
        if session is None:
            return None

        is_admin = self.settings.is_admin_phone(session.phone_number)
        logger.debug("Phone session user %s, admin=%s", session.user_id, is_admin)
        return Principal(
            subject_id=session.user_id,
            display_phone=session.phone_number,
            is_admin=is_admin,
            source_kind=SourceKind.phone_session,
        )

    def _resolve_legacy_phone(self, credential: LegacyPhoneCredential) -> Optional[Principal]:
        if not credential.digits:
            return None
        return Principal(
            subject_id=credential.token,
            display_phone=f"+{credential.digits}",
            is_admin=self.settings.is_admin_phone(credential.digits),
            source_kind=SourceKind.legacy_phone_token,
        )

    async def _resolve_bearer(self, credential: BearerCredential) -> Optional[Principal]:
        try:
            identity = await self.firebase.verify(credential.token)
        except Exception:
            logger.exception("Firebase verification raised, trying self-signed token")
            identity = None

        if identity is not None:
            return Principal(
                subject_id=identity.uid,
                display_email=identity.email,
                display_phone=identity.phone_number,
                is_admin=self.settings.is_admin_email(identity.email) or identity.is_admin_claim,
                source_kind=SourceKind.external_token,
            )

        claims = self.codec.verify(credential.token)
        if claims is None or not claims.get("sub"):
            return None

        email = claims.get("email")
        return Principal(
            subject_id=str(claims["sub"]),
            display_email=email,
            first_name=claims.get("firstName"),
            last_name=claims.get("lastName"),
            avatar_url=claims.get("profileImageUrl"),
            is_admin=claims.get("isAdmin") is True or self.settings.is_admin_email(email),
            source_kind=SourceKind.external_token,
        )
