import re

from app.core.exceptions import ValidationError

REFERRAL_CODE_PREFIX = "MT"
REFERRAL_CODE_PATTERN = re.compile(r"^MT[A-Z0-9]{8}$")


def generate_referral_code(user_id: str) -> str:
    """Referral code for a user: MT followed by the last 8 characters of the id."""
    if not user_id or len(user_id) < 8:
        raise ValidationError("Invalid user ID", details={"user_id": user_id})
    return f"{REFERRAL_CODE_PREFIX}{user_id[-8:].upper()}"


def is_valid_referral_code_format(referral_code: str) -> bool:
    if not referral_code or not isinstance(referral_code, str):
        return False
    return bool(REFERRAL_CODE_PATTERN.match(referral_code))
