from __future__ import annotations

from urllib.parse import urlparse

from .config import get_config
from .errors import ValidationError


def validate_id(value: str) -> bool:
    if not isinstance(value, str):
        return False
    return bool(get_config().constants.id_pattern.fullmatch(value))


def sanitize_id(value: str) -> str:
    """Trim an id taken from a form and reject it unless it is a valid id.

    Nothing is rewritten besides surrounding whitespace, so a stored id is always
    exactly what the user typed.
    """
    cleaned = str(value or "").strip()
    if not validate_id(cleaned):
        raise ValidationError(
            "ID must be lowercase letters, digits and dots, joined by single hyphens"
        )
    return cleaned


def validate_url(value: str) -> bool:
    text = str(value or "").strip()
    if not text:
        return False
    try:
        parsed = urlparse(text)
    except ValueError:
        return False
    return bool(parsed.scheme and parsed.netloc)
