"""
Merges raw captured records with cached PokeAPI data.

`enrich_pokemon` is a pure function: given a raw record and whatever species,
move and ability data is cached, it returns a new display-ready record. The
raw record is never modified. `Enricher` wires it to the resource caches and
batch fetchers for a whole list of records.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from utils.api_models import ActiveAbility, ComputedFields, EnrichedMove, SpeciesSummary
from utils.batch_fetcher import BatchFetcher, BatchResult
from utils.constants import (
    HP_GREEN_THRESHOLD,
    HP_YELLOW_THRESHOLD,
    MAX_IV,
    PLACEHOLDER_NICKNAME_PATTERN,
    PLACEHOLDER_SPRITE_URL,
    POKEAPI_STAT_NAMES,
    RESOURCE_ABILITY,
    RESOURCE_KINDS,
    RESOURCE_MOVE,
    RESOURCE_SPECIES,
)
from utils.helpers import (
    format_dex_number,
    get_cry_url,
    get_sprite_url,
    id_from_resource_url,
    resolve_key,
    to_title_case,
    unique_keys,
)
from utils.resource_cache import ResourceCaches
from utils.stats import calculate_gender, calculate_stats, get_level_progress

logger = logging.getLogger("pokemmo_link.enrichment")


class BrokenSpriteRegistry:
    """
    Sprite URLs that failed to load during this session.

    Broken URLs are skipped when building sprite fallback chains and are
    never retried until the process restarts.
    """

    def __init__(self):
        self._urls: Set[str] = set()

    def report(self, url: str) -> bool:
        """Mark a URL as broken. Returns True if it was not known yet."""
        if url in self._urls:
            return False
        self._urls.add(url)
        logger.info(f"Sprite marked broken: {url}")
        return True

    def is_broken(self, url: Optional[str]) -> bool:
        return bool(url) and url in self._urls

    def __contains__(self, url) -> bool:
        return url in self._urls

    def __len__(self) -> int:
        return len(self._urls)

    def clear(self) -> None:
        self._urls.clear()


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _lookup(cache: Optional[Mapping[Any, Any]], key: Any) -> Optional[Any]:
    """Cache maps are keyed by string ids; raw records carry ints."""
    if not cache or key is None:
        return None
    found = cache.get(str(key))
    if found is None:
        found = cache.get(key)
    return found


def build_sprite_chain(
    animated_url: Optional[str],
    static_url: str,
    broken_sprites: Optional[Iterable[str]] = None,
) -> List[str]:
    """
    Ordered sprite candidates: animated, static, generic placeholder.

    Broken URLs are skipped; the placeholder is always the last resort.
    """
    broken = broken_sprites if broken_sprites is not None else ()
    chain: List[str] = []
    for url in (animated_url, static_url):
        if url and url not in broken and url not in chain:
            chain.append(url)
    chain.append(PLACEHOLDER_SPRITE_URL)
    return chain


def _resolve_ability(
    record: Mapping[str, Any],
    species_abilities: List[Mapping[str, Any]],
    ability_cache: Optional[Mapping[Any, Any]],
) -> Optional[ActiveAbility]:
    ability = record.get("ability") or {}
    ability_id = ability.get("id")
    ability_slot = ability.get("slot")

    if ability_id:
        for entry in species_abilities:
            ref = entry.get("ability") or {}
            if id_from_resource_url(ref.get("url")) == ability_id:
                cached = _lookup(ability_cache, ability_id) or {}
                return {
                    "name": ref.get("name"),
                    "is_hidden": bool(entry.get("is_hidden")),
                    "slot": entry.get("slot"),
                    "id": ability_id,
                    "description": cached.get("description"),
                }

    # Hidden abilities sometimes arrive without an id; the slot still matches.
    if ability_slot:
        for entry in species_abilities:
            if entry.get("slot") == ability_slot:
                ref = entry.get("ability") or {}
                found_id = id_from_resource_url(ref.get("url"))
                cached = _lookup(ability_cache, found_id) or {}
                return {
                    "name": ref.get("name"),
                    "is_hidden": bool(entry.get("is_hidden")),
                    "slot": entry.get("slot"),
                    "id": found_id or None,
                    "description": cached.get("description"),
                }

    return None


def _hp_color(hp_percent: int) -> str:
    if hp_percent > HP_GREEN_THRESHOLD:
        return "green"
    if hp_percent >= HP_YELLOW_THRESHOLD:
        return "yellow"
    return "red"


def enrich_pokemon(
    record: Mapping[str, Any],
    species_data: Optional[Mapping[str, Any]] = None,
    move_cache: Optional[Mapping[Any, Any]] = None,
    ability_cache: Optional[Mapping[Any, Any]] = None,
    broken_sprites: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """
    Build an EnrichedRecord from a raw record and cached upstream data.

    Without species data the result is a plain copy of the record: callers
    read a missing `species`/`computed` as "not enriched yet".

    Args:
        record: Raw captured Pokemon.
        species_data: Flattened SpeciesData for the record's lookup key.
        move_cache: MoveData by move id. Moves without an entry are omitted.
        ability_cache: AbilityData by ability id, used for descriptions.
        broken_sprites: Sprite URLs known not to load.

    Returns:
        A new dict; `record` is left untouched.
    """
    if not species_data:
        return dict(record)

    identity = record.get("identity") or {}
    state = record.get("state") or {}
    raw_stats = record.get("stats") or {}
    ivs = raw_stats.get("ivs") or {}
    evs = raw_stats.get("evs") or {}

    species_id = identity.get("species_id")
    level = state.get("level") or 1
    is_shiny = bool(identity.get("is_shiny"))

    upstream_stats = species_data.get("stats") or {}
    base_stats = {
        key: upstream_stats.get(api_name) or 0
        for api_name, key in POKEAPI_STAT_NAMES.items()
    }
    calculated_stats = calculate_stats(base_stats, ivs, evs, level, state.get("nature"))

    gender_rate = species_data.get("gender_rate", -1)
    gender = calculate_gender(identity.get("personality_value") or 0, gender_rate)

    # Sprites: the shiny flag picks the set, animated beats static.
    sprites = species_data.get("sprites") or {}
    base_static_url = sprites.get("front_default") or get_sprite_url(species_id, False)
    shiny_static_url = sprites.get("front_shiny") or get_sprite_url(species_id, True)
    static_url = shiny_static_url if is_shiny else base_static_url
    animated_url = sprites.get("animated_shiny") if is_shiny else sprites.get("animated")
    sprite_fallbacks = build_sprite_chain(animated_url, static_url, broken_sprites)
    preferred_sprite = sprite_fallbacks[0]

    moves_data: List[EnrichedMove] = []
    for move in record.get("moves") or []:
        cached = _lookup(move_cache, move.get("move_id"))
        if cached:
            moves_data.append({**cached, "pp_left": move.get("pp")})

    species_abilities = species_data.get("abilities") or []
    active_ability = _resolve_ability(record, species_abilities, ability_cache)

    nickname = (identity.get("nickname") or "").strip()
    has_nickname = bool(nickname) and not PLACEHOLDER_NICKNAME_PATTERN.match(nickname)
    species_name = to_title_case(species_data.get("name"))
    display_name = nickname if has_nickname else (species_name or f"Species {species_id}")

    max_hp = calculated_stats["hp"]
    current_hp = state.get("current_hp")
    if current_hp is None:
        current_hp = max_hp
    hp_percent = _round_half_up(current_hp / max_hp * 100) if max_hp > 0 else 0

    xp = state.get("xp")
    growth_rate = species_data.get("growth_rate")
    xp_percent = (
        round(get_level_progress(xp, level, growth_rate), 1) if xp is not None else None
    )

    species: SpeciesSummary = {
        "name": species_data.get("name"),
        "display_name": species_name,
        "sprite": animated_url or static_url,
        "sprites": {
            "front_default": base_static_url,
            "front_shiny": shiny_static_url,
            "animated": sprites.get("animated"),
            "animated_shiny": sprites.get("animated_shiny"),
        },
        "types": list(species_data.get("types") or []),
        "base_stats": base_stats,
        "gender_rate": gender_rate,
        "growth_rate": growth_rate,
        "abilities": [
            {
                "name": (entry.get("ability") or {}).get("name"),
                "is_hidden": bool(entry.get("is_hidden")),
                "slot": entry.get("slot"),
            }
            for entry in species_abilities
        ],
    }

    computed: ComputedFields = {
        "gender": gender,
        "calculated_stats": calculated_stats,
        "display_name": display_name,
        "has_nickname": has_nickname,
        "species_name": species_name,
        "show_species_name": has_nickname and species_name != display_name,
        "dex_num": format_dex_number(species_id),
        "animated_url": animated_url,
        "static_url": static_url,
        "preferred_sprite": preferred_sprite,
        "sprite_fallbacks": sprite_fallbacks,
        "cry_url": get_cry_url(species_id),
        "perfect_iv_count": sum(1 for iv in ivs.values() if iv == MAX_IV),
        "total_iv_sum": sum(ivs.values()),
        "total_ev_sum": sum(evs.values()),
        "current_hp": current_hp,
        "max_hp": max_hp,
        "hp_percent": hp_percent,
        "hp_color": _hp_color(hp_percent),
        "xp_percent": xp_percent,
    }

    return {
        **record,
        "species": species,
        "computed": computed,
        "moves_data": moves_data,
        "active_ability": active_ability,
    }


@dataclass
class EnrichmentResult:
    """
    Records merged after one enrichment pass.

    `errors` maps a resource kind to a human readable problem; records are
    still returned, enriched as far as the cache allows.
    """

    records: List[Dict[str, Any]]
    errors: Dict[str, str] = field(default_factory=dict)
    batches: Dict[str, BatchResult] = field(default_factory=dict)


class Enricher:
    """
    Runs batch lookups for a record list and merges the results.

    Args:
        caches: The shared ResourceCaches service.
        fetchers: One BatchFetcher per resource kind.
        broken_sprites: Session registry of sprite URLs that failed to load.
    """

    def __init__(
        self,
        caches: ResourceCaches,
        fetchers: Dict[str, BatchFetcher],
        broken_sprites: Optional[BrokenSpriteRegistry] = None,
    ):
        self.caches = caches
        self.fetchers = fetchers
        self.broken_sprites = broken_sprites if broken_sprites is not None else BrokenSpriteRegistry()

    @staticmethod
    def collect_keys(records: Iterable[Mapping[str, Any]]) -> Dict[str, List[str]]:
        """Unique species keys, move ids and ability ids needed by `records`."""
        species: List[Any] = []
        moves: List[Any] = []
        abilities: List[Any] = []

        for record in records:
            species.append(resolve_key(record))
            for move in record.get("moves") or []:
                if move.get("move_id"):
                    moves.append(move["move_id"])
            ability_id = (record.get("ability") or {}).get("id")
            if ability_id:
                abilities.append(ability_id)

        return {
            RESOURCE_SPECIES: unique_keys(species),
            RESOURCE_MOVE: unique_keys(moves),
            RESOURCE_ABILITY: unique_keys(abilities),
        }

    def merge(self, records: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        """Enrich every record from what is cached right now. Never fetches."""
        records = list(records)
        keys = self.collect_keys(records)
        species_map = self.caches.species.data_map(keys[RESOURCE_SPECIES])
        move_map = self.caches.moves.data_map(keys[RESOURCE_MOVE])
        ability_map = self.caches.abilities.data_map(keys[RESOURCE_ABILITY])

        return [
            enrich_pokemon(
                record,
                species_map.get(resolve_key(record)),
                move_map,
                ability_map,
                self.broken_sprites,
            )
            for record in records
        ]

    async def run(self, records: Iterable[Mapping[str, Any]]) -> EnrichmentResult:
        """
        Fetch what is missing for `records`, then merge.

        The three resource kinds are fetched concurrently. A kind that fails
        is reported in `errors`; the other kinds still enrich the records.
        """
        records = list(records)
        keys = self.collect_keys(records)
        kinds = [kind for kind in RESOURCE_KINDS if keys[kind]]

        outcomes = await asyncio.gather(
            *(self.fetchers[kind].fetch_missing(keys[kind]) for kind in kinds),
            return_exceptions=True,
        )

        errors: Dict[str, str] = {}
        batches: Dict[str, BatchResult] = {}
        for kind, outcome in zip(kinds, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error(
                    f"Enrichment fetch for {kind} failed: {outcome}",
                    exc_info=outcome,
                )
                errors[kind] = str(outcome) or outcome.__class__.__name__
                continue

            batches[kind] = outcome
            if outcome.failed:
                errors[kind] = (
                    f"{len(outcome.failed)} {kind} lookup(s) unavailable: "
                    f"{', '.join(outcome.failed)}"
                )

        return EnrichmentResult(records=self.merge(records), errors=errors, batches=batches)
