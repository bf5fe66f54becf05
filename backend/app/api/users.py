from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas.user import ProfileResponse, ProfileUpdate, UserUpsert
from app.services.user_service import UserService
from app.utils.auth import AuthenticatedPrincipal

router = APIRouter(prefix="/users/me", tags=["Users"])


@router.get("/profile", response_model=ProfileResponse)
async def get_profile(
    principal: AuthenticatedPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ProfileResponse:
    user = await UserService(db).get_by_id(principal.subject_id)
    if user is None:
        return ProfileResponse(phone=principal.display_phone)

    return ProfileResponse(
        first_name=user.first_name,
        last_name=user.last_name,
        email=user.email,
        phone=user.phone_number or principal.display_phone,
    )


@router.post("/profile", response_model=ProfileResponse)
async def update_profile(
    data: ProfileUpdate,
    principal: AuthenticatedPrincipal,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ProfileResponse:
    user_service = UserService(db)
    existing = await user_service.get_by_id(principal.subject_id)

    email = data.email
    if existing is None and not email:
        # Phone-only accounts still need a unique contact address on the row
        email = principal.display_email or f"{principal.subject_id}@phone.user"

    user, _ = await user_service.upsert(
        UserUpsert(
            id=principal.subject_id,
            first_name=data.first_name,
            last_name=data.last_name,
            email=email,
            phone_number=principal.display_phone,
            # Allow-listed users are recorded as admins when their row is first created
            is_admin=True if existing is None and principal.is_admin else None,
        )
    )
    await db.commit()

    return ProfileResponse(
        first_name=user.first_name,
        last_name=user.last_name,
        email=user.email,
        phone=user.phone_number,
    )
