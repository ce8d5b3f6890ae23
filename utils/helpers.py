"""
Helper functions for lookup keys, naming and URL formatting.

This module contains utility functions to:
- Resolve the stable lookup key (species slug) for a captured Pokemon.
- Parse alternate-form keys and PokeAPI resource URLs.
- Format names for display.
- Build deterministic sprite and cry URLs.
"""

import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

from config.settings import CRY_BASE_URL, SPRITE_BASE_URL
from utils.constants import (
    ANIMATED_SPRITE_PATH,
    FORM_KEY_PATTERN,
    LAST_ANIMATED_SPECIES_ID,
)


def resolve_key(record: Mapping[str, Any]) -> str:
    """
    Derive the species lookup key for a captured Pokemon.

    Precedence:
    1. An explicit `pokeapi_override` slug, trimmed.
    2. `id-<species>-form-<form>` when a non-zero form id is present.
    3. The species id as a string.

    Args:
        record: A raw captured Pokemon record.

    Returns:
        The ResourceKey for the species cache.
    """
    override = record.get("pokeapi_override")
    if override:
        return str(override).strip()

    identity = record.get("identity") or {}
    species_id = identity.get("species_id")
    form_id = identity.get("form_id")

    if form_id and form_id > 0:
        return f"id-{species_id}-form-{form_id}"
    return str(species_id)


def parse_form_key(key: str) -> Optional[Tuple[int, int]]:
    """
    Split an `id-<species>-form-<n>` key.

    Returns:
        (species_id, form_index) or None if the key is not a form key.
    """
    match = FORM_KEY_PATTERN.match(key)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def id_from_resource_url(url: Optional[str]) -> Optional[int]:
    """
    Extract the trailing numeric id from a PokeAPI resource URL.

    'https://pokeapi.co/api/v2/ability/65/' -> 65
    """
    if not url:
        return None
    parts = [p for p in url.split("/") if p]
    if not parts:
        return None
    try:
        return int(parts[-1])
    except ValueError:
        return None


def to_title_case(name: Optional[str]) -> str:
    """
    Title-case a PokeAPI slug for display.

    Word starts after whitespace, '-' or '_' are capitalized and separators
    become spaces: 'mr-mime' -> 'Mr Mime'.
    """
    text = name or ""
    text = re.sub(r"(^|\s|[-_])\w", lambda m: m.group(0).upper(), text)
    return re.sub(r"[-_]", " ", text)


def format_dex_number(species_id: int) -> str:
    """Format a species id as a national dex number: 25 -> '#025'."""
    return f"#{species_id:03d}"


def get_sprite_url(species_id: int, shiny: bool = False) -> str:
    """
    Build the deterministic fallback sprite URL for a species.

    Species up to #649 have Gen V animated GIFs; later species only have
    static PNGs.
    """
    shiny_path = "shiny/" if shiny else ""
    if species_id <= LAST_ANIMATED_SPECIES_ID:
        return f"{SPRITE_BASE_URL}/{ANIMATED_SPRITE_PATH}/{shiny_path}{species_id}.gif"
    return f"{SPRITE_BASE_URL}/{shiny_path}{species_id}.png"


def get_cry_url(species_id: int) -> str:
    return f"{CRY_BASE_URL}/{species_id}.ogg"


def english_flavor_text(entries: Optional[List[Dict[str, Any]]]) -> Optional[str]:
    """
    Return the first English flavor text with newlines flattened.

    Args:
        entries: PokeAPI `flavor_text_entries` list.

    Returns:
        The description or None if there is no English entry.
    """
    for entry in entries or []:
        if (entry.get("language") or {}).get("name") == "en":
            text = entry.get("flavor_text")
            if text is None:
                return None
            return text.replace("\n", " ")
    return None


def unique_keys(values) -> List[str]:
    """
    Stringify, drop empty values and deduplicate while keeping order.
    """
    seen: Dict[str, None] = {}
    for value in values:
        if value is None or value == "":
            continue
        seen.setdefault(str(value), None)
    return list(seen)
