"""
Input validation for the messaging API.

Each validator trims, checks and HTML-escapes one field; ``validate_fields``
collects per-field messages so a route can answer 422 with all of them.
"""
import html
import re
from typing import Any, Callable, Dict, Tuple


class ValidationError(Exception):
    """Raised when input validation fails."""
    pass


def _require_text(value: Any, field: str) -> str:
    if value is None:
        raise ValidationError(f"{field} is required")
    if not isinstance(value, (str, int)):
        raise ValidationError(f"{field} must be a string")
    text = str(value).strip()
    if not text:
        raise ValidationError(f"{field} cannot be empty")
    return text


def validate_number(number: Any) -> str:
    """Phone numbers are digits only, country code included."""
    number = _require_text(number, "Number")
    if not re.match(r"^\d+$", number):
        raise ValidationError("Number should contain digits only")
    if len(number) > 20:
        raise ValidationError("Number too long (max 20 digits)")
    return number


def validate_message(message: Any) -> str:
    """Message text is required and stored HTML-escaped."""
    message = _require_text(message, "Message")
    if len(message) > 65536:
        raise ValidationError("Message too long (max 64KB)")
    return html.escape(message)


def validate_group_id(group_id: Any) -> str:
    """Group ids or names are required; control characters are dropped."""
    group_id = _require_text(group_id, "groupId")
    group_id = re.sub(r"[\x00-\x1f\x7f-\x9f]", "", group_id)
    if len(group_id) > 200:
        raise ValidationError("groupId too long (max 200 characters)")
    return html.escape(group_id)


def validate_fields(
    data: Dict[str, Any], validators: Dict[str, Callable[[Any], Any]]
) -> Tuple[Dict[str, Any], Dict[str, str]]:
    """
    Run one validator per field.

    Returns:
        (cleaned values, error message per failing field)
    """
    cleaned: Dict[str, Any] = {}
    errors: Dict[str, str] = {}
    for field, validator in validators.items():
        try:
            cleaned[field] = validator(data.get(field))
        except ValidationError as e:
            errors[field] = str(e)
    return cleaned, errors
