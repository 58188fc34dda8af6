"""
Utility helpers for vouchers, phone numbers and RouterOS value formats
"""

import re
import secrets
import string

from django.conf import settings

VOUCHER_CODE_PREFIX = "BIL"
VOUCHER_CODE_ALPHABET = string.ascii_uppercase + string.digits
PASSWORD_ALPHABET = string.ascii_letters + string.digits

_UPTIME_PART = re.compile(r"(\d+)([wdhms])")
_UPTIME_CLOCK = re.compile(r"^((?:\d+[wd])*)\s*(\d+):(\d+):(\d+)$")
_UPTIME_SECONDS = {"w": 604800, "d": 86400, "h": 3600, "m": 60, "s": 1}


def normalize_phone_number(phone_number, country_code=None):
    """
    Normalize a phone number to E.164 (+<country><subscriber>)

    Handles formats like:
    - +256712345678 -> +256712345678
    - 256712345678 -> +256712345678
    - 0712345678 -> +256712345678
    - 712345678 -> +256712345678

    Raises:
        ValueError: If phone number is invalid
    """
    if not phone_number:
        raise ValueError("Phone number cannot be empty")

    country_code = country_code or getattr(settings, "DEFAULT_COUNTRY_CODE", "256")
    raw = str(phone_number).strip()
    digits = "".join(c for c in raw if c.isdigit())

    if raw.startswith("+"):
        phone = digits
    elif digits.startswith("00"):
        phone = digits[2:]
    elif digits.startswith(country_code):
        phone = digits
    elif digits.startswith("0"):
        phone = country_code + digits[1:]
    elif len(digits) == 9:
        phone = country_code + digits
    else:
        phone = digits

    # E.164 allows at most 15 digits
    if not 10 <= len(phone) <= 15:
        raise ValueError(f"Invalid phone number format: {phone_number}")

    return "+" + phone


def generate_voucher_code():
    """Generate a candidate code in the form BIL-XXXX-XXXX (uniqueness checked by caller)."""
    parts = [
        "".join(secrets.choice(VOUCHER_CODE_ALPHABET) for _ in range(4))
        for _ in range(2)
    ]
    return f"{VOUCHER_CODE_PREFIX}-{parts[0]}-{parts[1]}"


def generate_password(length=8):
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def parse_uptime(value):
    """
    Convert a RouterOS uptime string such as '1w2d3h4m5s' to seconds.
    Returns 0 for empty or unparseable values.
    """
    if not value:
        return 0
    value = str(value)
    if value.isdigit():
        return int(value)
    # Some firmware reports "1w3d 04:05:06"
    clock = _UPTIME_CLOCK.match(value.strip())
    if clock:
        prefix, h, m, s = clock.groups()
        return parse_uptime(prefix) + int(h) * 3600 + int(m) * 60 + int(s)
    return sum(
        int(amount) * _UPTIME_SECONDS[unit]
        for amount, unit in _UPTIME_PART.findall(value)
    )


def format_limit_uptime(hours):
    """Render validity hours in RouterOS limit-uptime form, e.g. 24 -> '24:00:00'."""
    return f"{int(hours)}:00:00"


def megabytes_to_bytes(mb):
    return int(mb) * 1024 * 1024


def format_bytes(num_bytes):
    size = float(num_bytes or 0)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} TB"


def to_int(value, default=0):
    """RouterOS returns every value as a string."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
