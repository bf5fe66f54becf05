import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas.user import AdminFlagUpdate, UserResponse
from app.services.phone_session_service import PhoneSessionService
from app.services.user_service import UserService
from app.utils.auth import require_admin
from app.utils.errors import NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


class SweepResponse(BaseModel):
    deleted: int


@router.get("/users", response_model=list[UserResponse])
async def list_users(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> list[UserResponse]:
    users = await UserService(db).list_all()
    return [UserResponse.model_validate(u) for u in users]


@router.patch("/users/{user_id}/admin", response_model=UserResponse)
async def update_user_admin(
    user_id: str,
    data: AdminFlagUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> UserResponse:
    user = await UserService(db).set_admin(user_id, data.is_admin)
    if user is None:
        raise NotFoundError()
    await db.commit()
    logger.info("Admin flag for %s set to %s", user_id, data.is_admin)
    return UserResponse.model_validate(user)


@router.post("/phone-sessions/sweep", response_model=SweepResponse)
async def sweep_phone_sessions(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> SweepResponse:
    deleted = await PhoneSessionService(db).delete_expired()
    await db.commit()
    logger.info("Swept %d expired phone sessions", deleted)
    return SweepResponse(deleted=deleted)
