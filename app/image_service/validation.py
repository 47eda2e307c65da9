import re
import uuid
from typing import List, Optional, Union

from app.image_service.models import Orientation

MAX_TAG_LENGTH = 50

_DISALLOWED_TAG_CHARS = re.compile(r"[^\w\s-]", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")
_MOBILE_UA = re.compile(r"Mobile|Android|iPhone|iPad|iPod|BlackBerry|IEMobile|Opera Mini", re.IGNORECASE)


def sanitize_tag_name(name: str) -> str:
    """Trims, lowercases and strips everything but word characters, spaces and dashes."""
    name = _DISALLOWED_TAG_CHARS.sub("", (name or "").strip().lower())
    return _WHITESPACE.sub(" ", name).strip()[:MAX_TAG_LENGTH]

def parse_tags(value: Optional[Union[str, List[str]]]) -> List[str]:
    """Parses a comma separated (or already split) tag list, sanitized and de-duplicated."""
    if not value:
        return []
    parts = value.split(",") if isinstance(value, str) else value
    tags = [sanitize_tag_name(p) for p in parts if isinstance(p, str)]
    return list(dict.fromkeys(t for t in tags if t))

def is_valid_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except (ValueError, TypeError, AttributeError):
        return False
    return True

def parse_number(value: Optional[str], default: int, minimum: int = 1, maximum: Optional[int] = None) -> int:
    """Parses a positive integer query value, falling back to default and clamping."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = default
    number = max(number, minimum)
    if maximum is not None:
        number = min(number, maximum)
    return number

def validate_orientation(value: Optional[str]) -> Optional[str]:
    if value in (Orientation.landscape.value, Orientation.portrait.value):
        return value
    return None

def is_mobile_device(user_agent: Optional[str]) -> bool:
    return bool(user_agent and _MOBILE_UA.search(user_agent))

def get_best_format(accept: Optional[str]) -> str:
    accept = accept or ""
    if "image/avif" in accept:
        return "avif"
    if "image/webp" in accept:
        return "webp"
    return "original"
