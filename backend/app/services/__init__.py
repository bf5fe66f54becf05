"""Service layer for business logic."""

from app.services.otp_service import OtpService, get_otp_service
from app.services.phone_session_service import PhoneSessionService
from app.services.sms_service import SmsGateway, get_sms_gateway
from app.services.user_service import UserService

__all__ = [
    "OtpService",
    "get_otp_service",
    "PhoneSessionService",
    "SmsGateway",
    "get_sms_gateway",
    "UserService",
]
