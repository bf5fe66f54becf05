from pydantic import Field

from app.schemas.user import CamelModel


class SendCodeRequest(CamelModel):
    phone_number: str = Field(..., min_length=4, max_length=32)


class SendCodeResponse(CamelModel):
    session_id: str
    message: str = "OTP sent to your phone"


class VerifyCodeRequest(CamelModel):
    session_id: str = Field(..., min_length=1, max_length=128)
    code: str = Field(..., max_length=16)


class VerifyCodeResponse(CamelModel):
    credential: str
    subject_id: str
    phone_number: str
    uses_fallback_credential: bool


class AuthStatusResponse(CamelModel):
    configured: bool
    modes: list[str]
    sms_delivery: bool


class LogoutResponse(CamelModel):
    success: bool = True
    message: str = "Logged out successfully"
