"""Field format checks shared by parsing and record validation."""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

GENDERS = ("MALE", "FEMALE")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^\+?[1-9]\d{6,14}$")
_PHONE_SEPARATORS_RE = re.compile(r"[\s\-().]")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def is_valid_email(value: str) -> bool:
    return bool(value) and bool(_EMAIL_RE.match(value))


def is_valid_phone(value: str) -> bool:
    """7-15 digits with an optional leading +; common separators are ignored."""
    if not value:
        return False
    return bool(_PHONE_RE.match(_PHONE_SEPARATORS_RE.sub("", value)))


def parse_iso_date(value: str) -> date | None:
    """Return the calendar date for a strict YYYY-MM-DD string, else None."""
    if not value or not _ISO_DATE_RE.match(value):
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return None


def is_valid_date(value: str) -> bool:
    return parse_iso_date(value) is not None


def normalize_gender(value: Any) -> str | None:
    if is_blank(value):
        return None
    return str(value).strip().upper()
