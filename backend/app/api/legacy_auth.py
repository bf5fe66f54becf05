"""
Legacy cookie-session login.

Older web clients sign in through a second OIDC issuer and are tracked by
the signed session cookie rather than a bearer token. The gate treats an
active cookie session as a principal of kind cookie_session.
"""

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.auth import error_redirect, safe_redirect_target
from app.config import get_settings
from app.database import get_db
from app.schemas.auth import LogoutResponse
from app.schemas.user import UserUpsert
from app.services.user_service import UserService
from app.utils.auth import clear_cookie_session, store_cookie_session
from app.utils.oidc import OAuthClient, OAuthError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Legacy Authentication"])
settings = get_settings()


def get_legacy_oauth_client() -> Optional[OAuthClient]:
    if not settings.legacy_oidc_enabled():
        return None
    return OAuthClient(
        issuer_url=settings.legacy_oidc_issuer_url,
        client_id=settings.legacy_oidc_client_id,
        client_secret=settings.legacy_oidc_client_secret,
        redirect_uri=f"{settings.oauth_redirect_base_url.rstrip('/')}/api/callback",
        state_secret=settings.session_secret,
    )


@router.get("/login")
async def legacy_login(
    oauth: Annotated[Optional[OAuthClient], Depends(get_legacy_oauth_client)],
    redirect_to: Annotated[Optional[str], Query(alias="redirectTo")] = None,
) -> RedirectResponse:
    if oauth is None:
        return error_redirect("login_unavailable")

    try:
        url = await oauth.build_authorization_url(safe_redirect_target(redirect_to))
    except OAuthError as e:
        logger.error("Legacy login start failed: %s", e)
        return error_redirect("login_failed")
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.get("/callback")
async def legacy_callback(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    oauth: Annotated[Optional[OAuthClient], Depends(get_legacy_oauth_client)],
    code: Optional[str] = None,
    state: Optional[str] = None,
) -> RedirectResponse:
    if oauth is None:
        return error_redirect("login_unavailable")

    try:
        profile, state_data = await oauth.exchange_code(code or "", state or "")
    except OAuthError as e:
        logger.warning("Legacy login callback rejected: %s", e.reason)
        return error_redirect("auth_failed")

    is_admin = settings.is_admin_email(profile.email)
    await UserService(db).upsert(
        UserUpsert(
            id=profile.subject_id,
            email=profile.email,
            first_name=profile.first_name,
            last_name=profile.last_name,
            profile_image_url=profile.avatar_url,
            is_admin=True if is_admin else None,
        )
    )
    await db.commit()

    store_cookie_session(
        request,
        {
            "sub": profile.subject_id,
            "email": profile.email,
            "first_name": profile.first_name,
            "last_name": profile.last_name,
            "profile_image_url": profile.avatar_url,
        },
        max_age=settings.session_max_age,
    )
    logger.info("Legacy session established for %s", profile.subject_id)
    return RedirectResponse(
        safe_redirect_target(state_data.redirect_to), status_code=status.HTTP_302_FOUND
    )


@router.post("/logout", response_model=LogoutResponse)
async def legacy_logout(request: Request) -> LogoutResponse:
    clear_cookie_session(request)
    return LogoutResponse()
