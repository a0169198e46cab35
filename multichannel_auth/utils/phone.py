"""
Phone number validation and masking utilities
"""
import re

# E.164: leading +, first digit 1-9, 2 to 15 digits in total
E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


def is_valid_e164(phone: str) -> bool:
    """
    Check a phone number against the E.164 shape.

    Args:
        phone: Phone number string

    Returns:
        True if the number is in E.164 format
    """
    if not isinstance(phone, str):
        return False
    return bool(E164_PATTERN.fullmatch(phone))


def get_phone_last4(phone: str) -> str:
    """
    Get last 4 digits of phone number for safe logging.

    Args:
        phone: Phone number (can be in any format)

    Returns:
        Last 4 digits as string, or all digits if less than 4
    """
    digits = ''.join(filter(str.isdigit, phone or ''))

    if len(digits) >= 4:
        return digits[-4:]
    return digits


def mask_phone(phone: str) -> str:
    """Mask a phone number for logs, keeping only the trailing 4 digits."""
    if not phone:
        return "****"
    return f"***{get_phone_last4(phone)}"
