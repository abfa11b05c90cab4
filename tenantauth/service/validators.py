"""Credential and redirect policy applied before the auth flows touch storage."""

from __future__ import annotations

import re
import unicodedata
from typing import Iterable, Optional
from urllib.parse import urlsplit

from tenantauth.service.errors import ConflictError, ForbiddenError, ValidationError

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50
PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 128
REDIRECT_URI_MAX_LENGTH = 256

RESERVED_USERNAMES = frozenset(
    {
        "admin",
        "root",
        "system",
        "superuser",
        "administrator",
        "god",
        "null",
        "undefined",
        "test",
        "demo",
    }
)

_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_MARKUP_FRAGMENTS = ("<", ">", "javascript:")
_REDIRECT_FORBIDDEN_CHARS = frozenset("<>\"'")


def _has_markup(value: str) -> bool:
    lowered = value.lower()
    return any(fragment in lowered for fragment in _MARKUP_FRAGMENTS)


def validate_username(username: str) -> str:
    """Return the trimmed username or raise.

    Reserved names are a Conflict rather than a validation failure so the
    caller sees the same class as for a taken username.
    """
    value = (username or "").strip()
    if not value:
        raise ValidationError.for_field("username", "Username cannot be empty")
    if len(value) < USERNAME_MIN_LENGTH:
        raise ValidationError.for_field("username", "Username too short")
    if len(value) > USERNAME_MAX_LENGTH:
        raise ValidationError.for_field("username", "Username too long")
    if _has_markup(value) or not _USERNAME_PATTERN.match(value):
        raise ValidationError.for_field("username", "Invalid characters")
    if value.lower() in RESERVED_USERNAMES:
        raise ConflictError("Reserved Username", detail={"field": "username"})
    return value


def normalize_email(email: str) -> str:
    return unicodedata.normalize("NFKC", (email or "").strip()).lower()


def validate_email(email: str) -> str:
    """Return the normalized (trimmed, lowercased) email or raise."""
    value = normalize_email(email)
    at = value.find("@")
    last_dot = value.rfind(".")
    if at <= 0 or last_dot == -1 or at > last_dot or _has_markup(value):
        raise ValidationError.for_field("email", "Invalid email format")
    return value


def validate_password(password: str, field_name: str = "password") -> str:
    value = password or ""
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValidationError.for_field(field_name, "Password too weak")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValidationError.for_field(field_name, "Password too long")
    return value


def _origin(url: str) -> Optional[str]:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


def validate_redirect_uri(redirect_uri: str, allowed_origins: Iterable[str]) -> str:
    """Accept ``redirect_uri`` only when its origin is exactly an allowed origin."""
    if len(redirect_uri) > REDIRECT_URI_MAX_LENGTH or any(
        ch in _REDIRECT_FORBIDDEN_CHARS for ch in redirect_uri
    ):
        raise ValidationError.for_field("redirect_uri", "Invalid redirect_uri")
    origin = _origin(redirect_uri)
    allowed = {_origin(item) for item in allowed_origins}
    allowed.discard(None)
    if origin is None or origin not in allowed:
        raise ForbiddenError("Redirect URI not allowed")
    return redirect_uri
