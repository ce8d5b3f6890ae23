"""
Type definitions for API responses and enrichment payloads to ensure strict
typing and reduce runtime errors.
"""

from typing import Any, Dict, List, Optional, TypedDict


class SpriteSet(TypedDict):
    """
    Sprite URLs for a species.

    Attributes:
        front_default: Static front sprite.
        front_shiny: Static shiny front sprite.
        animated: Gen V animated GIF, only present for species <= 649.
        animated_shiny: Shiny Gen V animated GIF.
    """

    front_default: Optional[str]
    front_shiny: Optional[str]
    animated: Optional[str]
    animated_shiny: Optional[str]


class NamedResource(TypedDict):
    name: str
    url: str


class SpeciesAbilitySlot(TypedDict):
    """An ability reference as listed on a PokeAPI pokemon resource."""

    ability: NamedResource
    is_hidden: bool
    slot: int


class SpeciesData(TypedDict, total=False):
    """
    Flattened species data returned by the /api/pokemon proxy.

    Only the fields the dashboard needs are kept. `stats` maps PokeAPI stat
    names (e.g. 'special-attack') to base values. `gender_rate` is -1 for
    genderless species, otherwise the female ratio in eighths.
    """

    id: int
    name: str
    sprites: SpriteSet
    stats: Dict[str, int]
    types: List[str]
    abilities: List[SpeciesAbilitySlot]
    gender_rate: int
    growth_rate: Optional[str]


class MoveData(TypedDict):
    """
    Flattened move data returned by the /api/move proxy.
    """

    id: int
    name: str
    type: Optional[str]
    power: Optional[int]
    accuracy: Optional[int]
    pp: Optional[int]
    damage_class: Optional[str]
    description: Optional[str]


class AbilityData(TypedDict):
    """
    Flattened ability data returned by the /api/ability proxy.
    """

    id: int
    name: str
    description: Optional[str]


class CacheEntry(TypedDict):
    """
    A memoized upstream lookup.

    Attributes:
        data: The cached payload (SpeciesData, MoveData or AbilityData).
        timestamp: Unix time (seconds) at which the payload was fetched.
    """

    data: Any
    timestamp: float


class EnrichedMove(MoveData):
    """Cached move detail merged with the PP left on the captured Pokemon."""

    pp_left: Optional[int]


class ActiveAbility(TypedDict, total=False):
    name: str
    is_hidden: bool
    slot: int
    id: Optional[int]
    description: Optional[str]


class SpeciesSummary(TypedDict):
    name: str
    display_name: str
    sprite: Optional[str]
    sprites: SpriteSet
    types: List[str]
    base_stats: Dict[str, int]
    gender_rate: int
    growth_rate: Optional[str]
    abilities: List[Dict[str, Any]]


class ComputedFields(TypedDict):
    """
    Display-ready values derived from a captured record and its species.

    Attributes:
        gender: 'male', 'female' or 'genderless'.
        calculated_stats: In-game stat values keyed by stat key.
        preferred_sprite: First non-broken entry of `sprite_fallbacks`.
        hp_color: 'green', 'yellow' or 'red'.
        xp_percent: Progress towards the next level, None without XP data.
    """

    gender: str
    calculated_stats: Dict[str, int]
    display_name: str
    has_nickname: bool
    species_name: str
    show_species_name: bool
    dex_num: str
    animated_url: Optional[str]
    static_url: str
    preferred_sprite: str
    sprite_fallbacks: List[str]
    cry_url: str
    perfect_iv_count: int
    total_iv_sum: int
    total_ev_sum: int
    current_hp: int
    max_hp: int
    hp_percent: int
    hp_color: str
    xp_percent: Optional[float]


class CacheStats(TypedDict):
    """
    Represents resource cache statistics.

    Attributes:
        kind: Resource kind ('species', 'move' or 'ability').
        size: Current number of entries in the cache.
        in_flight: Number of keys currently being fetched.
        hits: Number of successful cache lookups.
        misses: Number of lookups that had to go upstream.
        hit_rate: Percentage string (e.g., '85.5%').
    """

    kind: str
    size: int
    in_flight: int
    hits: int
    misses: int
    hit_rate: str


class DeduplicationStats(TypedDict):
    """
    Represents request deduplication statistics.

    Attributes:
        pending_requests: Number of API requests currently in flight (deduplicated).
        active_locks: Number of locks currently held for request coordination.
    """

    pending_requests: int
    active_locks: int


class ValidationIssue(TypedDict):
    """A single field-level violation reported by the ingest endpoint."""

    path: str
    message: str
    type: str


