"""
Email validation and masking utilities
"""
import re

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(email: str) -> bool:
    if not isinstance(email, str) or not email:
        return False
    return bool(EMAIL_PATTERN.fullmatch(email))


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _mask_segment(segment: str, keep: int = 2) -> str:
    if not segment:
        return segment
    if len(segment) <= keep:
        return segment[0] + "*" * (len(segment) - 1)
    return segment[:keep] + "*" * (len(segment) - keep)


def mask_email(email: str) -> str:
    """
    Mask an email address for logs.

    Keeps a short prefix of the local part and of each domain label, e.g.
    ``jane.doe@example.com`` becomes ``ja******@ex*****.co*``.
    """
    if not email or "@" not in email:
        return "***"
    local, _, domain = email.partition("@")
    masked_domain = ".".join(_mask_segment(label) for label in domain.split("."))
    return f"{_mask_segment(local)}@{masked_domain}"
