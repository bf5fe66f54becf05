import logging
from typing import Annotated, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import get_db
from app.schemas.auth import (
    AuthStatusResponse,
    LogoutResponse,
    SendCodeRequest,
    SendCodeResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from app.schemas.user import CurrentUserResponse, UserUpsert
from app.services.otp_service import OtpService, get_otp_service
from app.services.phone_session_service import PhoneSessionService
from app.services.sms_service import SmsGateway, get_sms_gateway
from app.services.user_service import UserService
from app.utils.auth import AuthenticatedPrincipal, clear_cookie_session
from app.utils.errors import NotFoundError
from app.utils.firebase import FirebaseTokenVerifier, IdentityProviderError, get_firebase_verifier
from app.utils.oidc import OAuthClient, OAuthError
from app.utils.phone import phone_user_id
from app.utils.token_codec import TokenCodec, get_token_codec

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])
settings = get_settings()

CLIENT_CALLBACK_PATH = "/auth/callback"
CLIENT_ERROR_PATH = "/auth"


def safe_redirect_target(target: Optional[str]) -> str:
    """Only same-origin relative paths may be used as post-login targets."""
    if not target or not target.startswith("/") or target.startswith("//") or "\\" in target:
        return "/"
    return target


def error_redirect(reason: str) -> RedirectResponse:
    return RedirectResponse(
        f"{CLIENT_ERROR_PATH}?{urlencode({'error': reason})}",
        status_code=status.HTTP_302_FOUND,
    )


def get_google_oauth_client() -> Optional[OAuthClient]:
    if not settings.google_oauth_enabled():
        return None
    return OAuthClient(
        issuer_url=settings.google_issuer_url,
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        redirect_uri=f"{settings.oauth_redirect_base_url.rstrip('/')}/api/auth/oauth/callback",
        state_secret=settings.session_secret,
    )


@router.get("/status", response_model=AuthStatusResponse)
async def auth_status() -> AuthStatusResponse:
    return AuthStatusResponse(
        configured=True,
        modes=settings.get_auth_modes(),
        sms_delivery=settings.sms_enabled(),
    )


@router.post("/send-code", response_model=SendCodeResponse)
async def send_code(
    body: SendCodeRequest,
    otp_service: Annotated[OtpService, Depends(get_otp_service)],
    sms: Annotated[SmsGateway, Depends(get_sms_gateway)],
) -> SendCodeResponse:
    challenge = await otp_service.create_session(body.phone_number)

    if challenge.admin_bypass:
        logger.info("Admin phone detected, skipping SMS for session %s", challenge.session_id)
        return SendCodeResponse(session_id=challenge.session_id)

    result = await sms.send(body.phone_number, f"Your Cycle Care OTP: {challenge.code}")
    if not result.success:
        # Delivery problems are not reported to the client; the user can request a new code
        logger.warning("OTP delivery failed for session %s: %s", challenge.session_id, result.error)

    return SendCodeResponse(session_id=challenge.session_id)


@router.post("/verify-code", response_model=VerifyCodeResponse)
async def verify_code(
    body: VerifyCodeRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    otp_service: Annotated[OtpService, Depends(get_otp_service)],
    firebase: Annotated[FirebaseTokenVerifier, Depends(get_firebase_verifier)],
) -> VerifyCodeResponse:
    phone_number = await otp_service.verify_session(body.session_id, body.code)
    user_id = phone_user_id(phone_number)

    if firebase.can_mint:
        try:
            custom_token = firebase.create_custom_token(user_id)
        except IdentityProviderError as e:
            logger.warning("Firebase custom token failed, using phone session: %s", e)
        else:
            return VerifyCodeResponse(
                credential=custom_token,
                subject_id=user_id,
                phone_number=phone_number,
                uses_fallback_credential=False,
            )

    try:
        session = await PhoneSessionService(db).create(user_id, phone_number)
        await db.commit()
    except Exception:
        # The code was consumed but no credential was issued; let the user retry it
        await db.rollback()
        await otp_service.release(body.session_id)
        raise
    logger.info("Phone session created for %s", user_id)

    return VerifyCodeResponse(
        credential=session.token,
        subject_id=user_id,
        phone_number=phone_number,
        uses_fallback_credential=True,
    )


@router.get("/oauth/start")
async def oauth_start(
    oauth: Annotated[Optional[OAuthClient], Depends(get_google_oauth_client)],
    redirect_target: Annotated[Optional[str], Query(alias="redirectTarget")] = None,
) -> RedirectResponse:
    if oauth is None:
        logger.error("Google OAuth requested but not configured")
        return error_redirect("google_auth_failed")

    try:
        url = await oauth.build_authorization_url(safe_redirect_target(redirect_target))
    except OAuthError as e:
        logger.error("Google OAuth start failed: %s", e)
        return error_redirect("google_auth_failed")

    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.get("/oauth/callback")
async def oauth_callback(
    db: Annotated[AsyncSession, Depends(get_db)],
    oauth: Annotated[Optional[OAuthClient], Depends(get_google_oauth_client)],
    codec: Annotated[TokenCodec, Depends(get_token_codec)],
    code: Optional[str] = None,
    state: Optional[str] = None,
) -> RedirectResponse:
    if oauth is None:
        return error_redirect("google_auth_failed")

    try:
        profile, state_data = await oauth.exchange_code(code or "", state or "")
    except OAuthError as e:
        logger.warning("Google OAuth callback rejected: %s", e.reason)
        return error_redirect(e.reason)

    is_admin = settings.is_admin_email(profile.email)
    user_id = f"google_{profile.subject_id}"

    user_service = UserService(db)
    await user_service.upsert(
        UserUpsert(
            id=user_id,
            email=profile.email,
            first_name=profile.first_name,
            last_name=profile.last_name,
            profile_image_url=profile.avatar_url,
            # Only ever grants: an allow-list miss must not clear a flag set by an admin
            is_admin=True if is_admin else None,
        )
    )
    await db.commit()

    token = codec.sign(
        {
            "sub": user_id,
            "email": profile.email,
            "firstName": profile.first_name,
            "lastName": profile.last_name,
            "profileImageUrl": profile.avatar_url,
            "isAdmin": is_admin,
        }
    )
    logger.info("Google sign-in complete for %s", user_id)

    query = urlencode({"token": token, "redirectTo": safe_redirect_target(state_data.redirect_to)})
    return RedirectResponse(f"{CLIENT_CALLBACK_PATH}?{query}", status_code=status.HTTP_302_FOUND)


@router.post("/logout", response_model=LogoutResponse)
async def logout(request: Request) -> LogoutResponse:
    # Bearer credentials are stateless; the client discards them
    if clear_cookie_session(request):
        logger.info("Legacy cookie session cleared")
    return LogoutResponse()


@router.get("/user", response_model=CurrentUserResponse)
async def current_user(
    principal: AuthenticatedPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> CurrentUserResponse:
    user = await UserService(db).get_by_id(principal.subject_id)

    if user is not None:
        return CurrentUserResponse(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            profile_image_url=user.profile_image_url,
            phone_number=user.phone_number or principal.display_phone,
            is_admin=bool(user.is_admin) or principal.is_admin,
            auth_source=principal.source_kind.value,
        )

    # Phone sign-ins may not have completed a profile yet
    if principal.display_phone:
        return CurrentUserResponse(
            id=principal.subject_id,
            phone_number=principal.display_phone,
            is_admin=principal.is_admin,
            auth_source=principal.source_kind.value,
        )

    raise NotFoundError()
