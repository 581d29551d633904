from __future__ import annotations

import re
import unicodedata
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_NAME_LENGTH = 128
MAX_USERNAME_LENGTH = 64


def normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip characters usable for visual spoofing."""
    # U+200B..U+200D and U+FEFF
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    # Bidi overrides U+202A-U+202E, U+2066-U+2069
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


def normalize_email(value: str) -> str:
    return normalize_unicode(value.strip().lower())


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_email(value)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def validate_username(value: str) -> str:
    """Alphanumeric plus ``_``, ``.`` and ``-``; compared case-sensitively."""
    if not isinstance(value, str):
        raise ValueError("username must be a string")
    if len(value) < 1:
        raise ValueError("username must be at least 1 character")
    if len(value) > MAX_USERNAME_LENGTH:
        raise ValueError(f"username must be at most {MAX_USERNAME_LENGTH} characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must contain only alphanumeric characters, dots, underscores, and hyphens"
        )
    return value


def validate_name(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("name must be a string")
    normalized = normalize_unicode(value).strip()
    if not normalized:
        raise ValueError("name must not be empty")
    if len(normalized) > MAX_NAME_LENGTH:
        raise ValueError(f"name must be at most {MAX_NAME_LENGTH} characters")
    return normalized


def validate_date_of_birth(value: Optional[date]) -> Optional[date]:
    if value is not None and value > date.today():
        raise ValueError("date of birth cannot be in the future")
    return value


class AccountFields(BaseModel):
    """Structural rules for the editable part of an account."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., max_length=MAX_NAME_LENGTH)
    username: str
    email: str
    date_of_birth: Optional[date] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return validate_name(value)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("date_of_birth")
    @classmethod
    def _check_dob(cls, value: Optional[date]) -> Optional[date]:
        return validate_date_of_birth(value)


def describe_errors(exc) -> list[dict]:
    """Flatten a pydantic ValidationError into ``{"field", "message"}`` pairs."""
    details = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        message = str(err.get("msg", "invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        details.append({"field": loc or None, "message": message})
    return details
