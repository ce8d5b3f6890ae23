"""
Input validation and sanitization functions.

This module checks path and query parameters before they reach the PokeAPI
client or the file system: species slugs, move/ability ids, container
sources, PC box ids, daycare regions and reported sprite URLs.
"""

from typing import Optional, Tuple
from urllib.parse import unquote, urlparse

from utils.constants import (
    ALL_REGIONS,
    DAYCARE_REGION_IDS,
    DEFAULT_STATE_SOURCE,
    FORM_KEY_PATTERN,
    MAX_SLUG_LENGTH,
    SLUG_PATTERN,
    STATE_SOURCES,
)


def sanitize_input(text: str) -> str:
    """
    Normalize a path parameter.

    Percent-escapes are decoded, surrounding whitespace is removed and the
    result is lower-cased, since PokeAPI slugs are lower-case.
    """
    if not text:
        return ""
    return unquote(text).strip().lower()


def validate_slug(slug: str) -> Tuple[bool, Optional[str]]:
    """
    Validate a species lookup key (numeric id, PokeAPI slug or form key).

    Returns:
        Tuple containing (is_valid, error_message).
    """
    if not slug:
        return False, "Species identifier cannot be empty."

    if len(slug) > MAX_SLUG_LENGTH:
        return False, f"Species identifier is too long (max {MAX_SLUG_LENGTH} characters)."

    if FORM_KEY_PATTERN.match(slug) or SLUG_PATTERN.match(slug):
        return True, None

    return False, "Species identifier may only contain letters, digits and hyphens."


def validate_resource_id(resource_id: str) -> Tuple[bool, Optional[str]]:
    """
    Validate a move or ability identifier.

    Both numeric ids and PokeAPI slugs are accepted, like upstream does.
    """
    if not resource_id:
        return False, "Identifier cannot be empty."

    if len(resource_id) > MAX_SLUG_LENGTH:
        return False, f"Identifier is too long (max {MAX_SLUG_LENGTH} characters)."

    if not SLUG_PATTERN.match(resource_id):
        return False, "Identifier may only contain letters, digits and hyphens."

    return True, None


def normalize_source(source: Optional[str]) -> Tuple[str, bool]:
    """
    Map a requested container source onto a readable one.

    Unknown or missing sources fall back to the party.

    Returns:
        Tuple containing (source, fell_back).
    """
    if source in STATE_SOURCES:
        return source, False  # type: ignore
    return DEFAULT_STATE_SOURCE, bool(source)


def validate_box_id(box_id: Optional[str]) -> Tuple[bool, Optional[str]]:
    """Validate a PC box id such as 'box_3', 'account_box' or 'extra_box_1'."""
    if not box_id:
        return False, "Box id cannot be empty."

    if len(box_id) > MAX_SLUG_LENGTH:
        return False, "Box id is too long."

    if not all(c.isalnum() or c == "_" for c in box_id):
        return False, "Box id may only contain letters, digits and underscores."

    return True, None


def validate_region(region: Optional[str]) -> Tuple[bool, Optional[str]]:
    """Validate a daycare region filter: a known region id or 'all'."""
    if region == ALL_REGIONS or region in DAYCARE_REGION_IDS:
        return True, None
    return False, f"Region must be one of: {ALL_REGIONS}, {', '.join(DAYCARE_REGION_IDS)}."


def validate_sprite_url(url) -> Tuple[bool, Optional[str]]:
    """Only absolute http(s) URLs can be reported as broken sprites."""
    if not isinstance(url, str) or not url:
        return False, "A sprite url is required."

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False, "Sprite url must be an absolute http(s) url."

    return True, None
