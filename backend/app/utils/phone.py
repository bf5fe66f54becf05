import re

SAUDI_COUNTRY_CODE = "966"
CANONICAL_LENGTH = 9

_NON_DIGITS = re.compile(r"\D")


def phone_digits(phone: str | None) -> str:
    """Strip everything but digits."""
    if not phone:
        return ""
    return _NON_DIGITS.sub("", phone)


def normalize_phone(phone: str | None) -> str:
    """
    Canonicalize a phone number for comparison.

    Drops the country code and a trunk-prefix zero, then keeps the last 9
    digits, so "+966512345678", "966512345678" and "0512345678" all become
    "512345678".
    """
    digits = phone_digits(phone)
    if digits.startswith(SAUDI_COUNTRY_CODE):
        digits = digits[len(SAUDI_COUNTRY_CODE):]
    if digits.startswith("0"):
        digits = digits[1:]
    return digits[-CANONICAL_LENGTH:]


def phone_user_id(phone: str) -> str:
    return f"phone_{phone_digits(phone)}"
