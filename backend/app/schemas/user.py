from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserUpsert(BaseModel):
    id: str = Field(..., min_length=1, max_length=255)
    email: str | None = None
    first_name: str | None = Field(None, max_length=100)
    last_name: str | None = Field(None, max_length=100)
    profile_image_url: str | None = None
    phone_number: str | None = None
    is_admin: bool | None = None


class UserResponse(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    profile_image_url: str | None = None
    phone_number: str | None = None
    is_admin: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CurrentUserResponse(CamelModel):
    id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    profile_image_url: str | None = None
    phone_number: str | None = None
    is_admin: bool
    auth_source: str


class ProfileResponse(CamelModel):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None


class ProfileUpdate(CamelModel):
    first_name: str | None = Field(None, max_length=100)
    last_name: str | None = Field(None, max_length=100)
    email: str | None = Field(None, max_length=255)


class AdminFlagUpdate(CamelModel):
    is_admin: bool
