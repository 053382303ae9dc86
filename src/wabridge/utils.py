"""
Utility helpers for wabridge.

Phone number normalisation and masking for chat ids and logs, QR rendering
for the live dashboard, and JSON shaping of client results for API responses.
"""

import json
import re
from dataclasses import asdict, is_dataclass
from enum import Enum
from json import JSONEncoder
from pathlib import Path
from typing import Any

import segno

CONTACT_SUFFIX = "@c.us"


def format_phone_number(number: str) -> str:
    """
    Turn a digits-only phone number into a chat id.

    Brazilian numbers (country code 55) with area code up to 30 get the mobile
    "9" prefix inserted before the last eight digits; those above 30 are sent
    without it.
    """
    ddi = number[:2]
    ddd = number[2:4]
    user = number[-8:]

    if ddi != "55":
        return f"{number}{CONTACT_SUFFIX}"
    if int(ddd or 0) <= 30:
        return f"55{ddd}9{user}{CONTACT_SUFFIX}"
    return f"55{ddd}{user}{CONTACT_SUFFIX}"


def mask_number(number: Any) -> Any:
    """Mask the middle digits of a phone number for logging."""
    if not number:
        return number
    digits = re.sub(r"\D", "", str(number))
    if len(digits) <= 4:
        return "*" * len(digits)
    middle = digits[4:-2]
    return f"{digits[:2]}{digits[2:4]}{'*' * len(middle)}{digits[-2:]}"


def trunc(text: str, max_length: int = 60) -> str:
    """Shorten ``text`` to ``max_length`` characters with an ellipsis."""
    if not text:
        return ""
    return f"{text[:max_length]}…" if len(text) > max_length else text


class CustomJsonEncoder(JSONEncoder):
    """Encoder for dataclasses, enums, paths and exceptions."""

    def default(self, o: Any) -> Any:
        if is_dataclass(o) and not isinstance(o, type):
            return asdict(o)
        if isinstance(o, Enum):
            return o.value
        if isinstance(o, Path):
            return str(o)
        if isinstance(o, Exception):
            return {"error_type": type(o).__name__, "message": str(o)}
        if hasattr(o, "__dict__"):
            return {k: v for k, v in o.__dict__.items() if not k.startswith("_")}
        return super().default(o)


def to_serializable(obj: Any) -> Any:
    """Recursively convert ``obj`` to JSON-compatible data."""
    return json.loads(json.dumps(obj, cls=CustomJsonEncoder))


def render_qr(payload: str, scale: int = 4) -> str:
    """Render a login QR payload as a ``data:image/png;base64,...`` URL."""
    return segno.make_qr(payload).png_data_uri(scale=scale)
