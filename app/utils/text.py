"""Input normalisation shared by the request and message stores."""

from typing import Optional

from app.errors import ValidationError


def clean_text(value: Optional[str], field_name: str, max_length: int) -> str:
    """Trim ``value`` and enforce 1..max_length characters."""
    message = f"{field_name.capitalize()} must be 1-{max_length} characters."
    if value is not None and not isinstance(value, str):
        raise ValidationError(field_name, message)
    value = (value or "").strip()
    if not value or len(value) > max_length:
        raise ValidationError(field_name, message)
    return value
