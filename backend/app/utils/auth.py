import logging
import time
from typing import Annotated, Any, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.database import get_db
from app.services.user_service import UserService
from app.utils.errors import ForbiddenError, UnauthenticatedError
from app.utils.firebase import get_firebase_verifier
from app.utils.identity import IdentityResolver, Principal, SourceKind, classify
from app.utils.token_codec import get_token_codec

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme
bearer_scheme = HTTPBearer(auto_error=False)

# Key under which the legacy login stores its claims in the session cookie
SESSION_USER_KEY = "user"


def get_identity_resolver() -> IdentityResolver:
    return IdentityResolver(get_settings(), get_token_codec(), get_firebase_verifier())


def store_cookie_session(request: Request, claims: dict[str, Any], max_age: int) -> None:
    request.session[SESSION_USER_KEY] = {
        "sub": claims["sub"],
        "email": claims.get("email"),
        "first_name": claims.get("first_name"),
        "last_name": claims.get("last_name"),
        "profile_image_url": claims.get("profile_image_url"),
        "expires_at": int(time.time()) + max_age,
    }


def clear_cookie_session(request: Request) -> bool:
    if "session" not in request.scope:
        return False
    had_session = bool(request.session)
    request.session.clear()
    return had_session


def get_cookie_principal(request: Request, settings: Settings) -> Optional[Principal]:
    """Principal for the legacy cookie-session login, if one is active."""
    # Without SessionMiddleware there is no cookie session to read
    if "session" not in request.scope:
        return None

    data = request.session.get(SESSION_USER_KEY)
    if not isinstance(data, dict) or not data.get("sub"):
        return None

    if int(data.get("expires_at") or 0) < int(time.time()):
        logger.info("Legacy cookie session for %s expired", data["sub"])
        request.session.pop(SESSION_USER_KEY, None)
        return None

    return Principal(
        subject_id=str(data["sub"]),
        display_email=data.get("email"),
        first_name=data.get("first_name"),
        last_name=data.get("last_name"),
        avatar_url=data.get("profile_image_url"),
        is_admin=settings.is_admin_email(data.get("email")),
        source_kind=SourceKind.cookie_session,
    )


async def resolve_principal(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)],
    db: Annotated[AsyncSession, Depends(get_db)],
    resolver: Annotated[IdentityResolver, Depends(get_identity_resolver)],
) -> Optional[Principal]:
    """
    Resolve the caller's identity once per request.

    A bearer credential wins over the legacy cookie session. Returns None
    when nothing usable was presented; never raises for bad credentials.
    """
    token = credentials.credentials if credentials else None
    principal = await resolver.resolve(classify(token), db)
    if principal is None:
        principal = get_cookie_principal(request, resolver.settings)
    if principal is not None:
        logger.debug("Resolved %s principal %s", principal.source_kind.value, principal.subject_id)
    return principal


async def require_authenticated(
    principal: Annotated[Optional[Principal], Depends(resolve_principal)],
) -> Principal:
    if principal is None:
        raise UnauthenticatedError()
    return principal


async def require_admin(
    principal: Annotated[Principal, Depends(require_authenticated)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Principal:
    """
    Admin when the stored user row carries the admin flag, or when the
    allow-list (or a provider admin claim) granted it at resolution time.

    Legacy phone tokens are never looked up in the user store: their
    subject is not guaranteed to have a row.
    """
    settings = get_settings()

    if principal.source_kind != SourceKind.legacy_phone_token:
        user = await UserService(db).get_by_id(principal.subject_id)
        if user is not None and user.is_admin:
            return principal

    if principal.is_admin or settings.is_admin_email(principal.display_email):
        return principal

    logger.info("Admin access denied for %s", principal.subject_id)
    raise ForbiddenError()


# Type aliases for dependency injection
CurrentPrincipal = Annotated[Optional[Principal], Depends(resolve_principal)]
AuthenticatedPrincipal = Annotated[Principal, Depends(require_authenticated)]
AdminPrincipal = Annotated[Principal, Depends(require_admin)]
