"""Error taxonomy and localized error bodies."""

import enum
from typing import Optional

from fastapi import Request, status


class ErrorCode(str, enum.Enum):
    INVALID_CREDENTIAL = "INVALID_CREDENTIAL"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    CODE_FORMAT_INVALID = "CODE_FORMAT_INVALID"
    CODE_MISMATCH = "CODE_MISMATCH"
    CODE_EXPIRED = "CODE_EXPIRED"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    SERVER_ERROR = "SERVER_ERROR"


ERROR_MESSAGES: dict[str, dict[ErrorCode, str]] = {
    "en": {
        ErrorCode.INVALID_CREDENTIAL: "The supplied credential is not valid.",
        ErrorCode.SESSION_NOT_FOUND: "Invalid or expired session.",
        ErrorCode.CODE_FORMAT_INVALID: "The code must be exactly 6 digits.",
        ErrorCode.CODE_MISMATCH: "The code you entered is incorrect.",
        ErrorCode.CODE_EXPIRED: "The code has expired. Please request a new one.",
        ErrorCode.UNAUTHENTICATED: "You need to sign in to continue.",
        ErrorCode.FORBIDDEN: "You are not authorized to perform this action.",
        ErrorCode.CONFIGURATION_ERROR: "The service is not configured correctly.",
        ErrorCode.VALIDATION_ERROR: "Please check the highlighted fields.",
        ErrorCode.NOT_FOUND: "The requested resource was not found.",
        ErrorCode.SERVER_ERROR: "Something went wrong. Please try again.",
    },
    "ar": {
        ErrorCode.INVALID_CREDENTIAL: "بيانات الاعتماد غير صالحة.",
        ErrorCode.SESSION_NOT_FOUND: "الجلسة غير صالحة أو منتهية.",
        ErrorCode.CODE_FORMAT_INVALID: "يجب أن يتكون الرمز من 6 أرقام.",
        ErrorCode.CODE_MISMATCH: "الرمز المدخل غير صحيح.",
        ErrorCode.CODE_EXPIRED: "انتهت صلاحية الرمز، يرجى طلب رمز جديد.",
        ErrorCode.UNAUTHENTICATED: "يجب تسجيل الدخول للمتابعة.",
        ErrorCode.FORBIDDEN: "غير مصرح لك بتنفيذ هذا الإجراء.",
        ErrorCode.CONFIGURATION_ERROR: "الخدمة غير مهيأة بشكل صحيح.",
        ErrorCode.VALIDATION_ERROR: "الرجاء التحقق من الحقول المحددة.",
        ErrorCode.NOT_FOUND: "المورد المطلوب غير موجود.",
        ErrorCode.SERVER_ERROR: "حدث خطأ، يرجى المحاولة مرة أخرى.",
    },
}

DEFAULT_LANGUAGE = "ar"


class AppError(Exception):
    """Base class for errors rendered as {"code", "message"} bodies."""

    code: ErrorCode = ErrorCode.SERVER_ERROR
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    headers: Optional[dict[str, str]] = None

    def __init__(
        self,
        message: Optional[str] = None,
        errors: Optional[list[dict[str, str]]] = None,
    ):
        super().__init__(message or self.code.value)
        self.errors = errors


class UnauthenticatedError(AppError):
    code = ErrorCode.UNAUTHENTICATED
    status_code = status.HTTP_401_UNAUTHORIZED
    headers = {"WWW-Authenticate": "Bearer"}


class ForbiddenError(AppError):
    code = ErrorCode.FORBIDDEN
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(AppError):
    code = ErrorCode.NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND


class OtpError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST


class SessionNotFoundError(OtpError):
    code = ErrorCode.SESSION_NOT_FOUND


class CodeFormatError(OtpError):
    code = ErrorCode.CODE_FORMAT_INVALID


class CodeMismatchError(OtpError):
    code = ErrorCode.CODE_MISMATCH


class CodeExpiredError(OtpError):
    code = ErrorCode.CODE_EXPIRED


class ConfigurationError(RuntimeError):
    """Fatal misconfiguration. Raised at startup, never handled."""

    code = ErrorCode.CONFIGURATION_ERROR


def get_request_language(request: Optional[Request]) -> str:
    if request is None:
        return DEFAULT_LANGUAGE
    header = request.headers.get("x-lang") or request.headers.get("accept-language") or ""
    header = header.lower()
    if header.startswith("en"):
        return "en"
    if header.startswith("ar"):
        return "ar"
    return DEFAULT_LANGUAGE


def error_body(
    code: ErrorCode,
    language: str,
    errors: Optional[list[dict[str, str]]] = None,
) -> dict:
    messages = ERROR_MESSAGES.get(language, ERROR_MESSAGES[DEFAULT_LANGUAGE])
    body: dict = {"code": code.value, "message": messages[code]}
    if errors:
        body["errors"] = errors
    return body
