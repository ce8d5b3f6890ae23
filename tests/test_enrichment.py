import copy

import pytest

from conftest import PIKACHU, POKEAPI_DATA, SHEDINJA, make_record
from utils.api_clients import flatten_ability, flatten_move, flatten_species
from utils.batch_fetcher import BatchFetcher
from utils.constants import PLACEHOLDER_SPRITE_URL
from utils.enrichment import BrokenSpriteRegistry, Enricher, build_sprite_chain, enrich_pokemon
from utils.resource_cache import ResourceCaches
from utils.storage import MemoryStore

PIKACHU_DATA = flatten_species(PIKACHU, gender_rate=4, growth_rate="medium")
MOVES = {"85": flatten_move(POKEAPI_DATA["move/85"]), "98": flatten_move(POKEAPI_DATA["move/98"])}
ABILITIES = {"9": flatten_ability(POKEAPI_DATA["ability/9"]), "31": flatten_ability(POKEAPI_DATA["ability/31"])}


class TestEnrichPokemon:
    def test_raw_record_is_not_mutated(self):
        record = make_record()
        before = copy.deepcopy(record)

        enriched = enrich_pokemon(record, PIKACHU_DATA, MOVES, ABILITIES)

        assert record == before
        assert enriched is not record
        assert "computed" not in record

    def test_without_species_data_returns_plain_copy(self):
        record = make_record()
        enriched = enrich_pokemon(record, None, MOVES, ABILITIES)
        assert enriched == record
        assert enriched is not record

    def test_stats_and_gender(self):
        enriched = enrich_pokemon(make_record(level=50, nature="Adamant"), PIKACHU_DATA)
        stats = enriched["computed"]["calculated_stats"]
        assert stats["hp"] == 110
        assert stats["atk"] == 82
        # personality byte 200 >= 127
        assert enriched["computed"]["gender"] == "male"
        assert enriched["species"]["base_stats"]["spe"] == 90

    def test_shedinja_hp(self):
        data = flatten_species(SHEDINJA)
        enriched = enrich_pokemon(make_record(species_id=292, level=100), data)
        assert enriched["computed"]["max_hp"] == 1
        assert enriched["computed"]["gender"] == "genderless"

    def test_placeholder_nickname_uses_species_name(self):
        enriched = enrich_pokemon(make_record(nickname="Species 25"), PIKACHU_DATA)
        computed = enriched["computed"]
        assert computed["display_name"] == "Pikachu"
        assert computed["has_nickname"] is False
        assert computed["show_species_name"] is False

    def test_real_nickname(self):
        computed = enrich_pokemon(make_record(nickname="Sparky"), PIKACHU_DATA)["computed"]
        assert computed["display_name"] == "Sparky"
        assert computed["has_nickname"] is True
        assert computed["show_species_name"] is True
        assert computed["species_name"] == "Pikachu"

    def test_moves_only_from_cache_with_pp_left(self):
        record = make_record(move_ids=(85, 98, 999))
        moves = enrich_pokemon(record, PIKACHU_DATA, MOVES)["moves_data"]
        assert [m["name"] for m in moves] == ["thunderbolt", "quick-attack"]
        assert moves[0]["pp_left"] == 10
        assert moves[0]["description"] == "A strong electric blast."

    def test_ability_by_id(self):
        ability = enrich_pokemon(make_record(ability_id=31, ability_slot=3), PIKACHU_DATA, {}, ABILITIES)[
            "active_ability"
        ]
        assert ability["name"] == "lightning-rod"
        assert ability["is_hidden"] is True
        assert ability["description"] == "Draws in electricity."

    def test_ability_slot_fallback(self):
        ability = enrich_pokemon(make_record(ability_id=None, ability_slot=3), PIKACHU_DATA, {}, ABILITIES)[
            "active_ability"
        ]
        assert ability["name"] == "lightning-rod"
        assert ability["id"] == 31

    def test_no_ability_match(self):
        record = make_record(ability_id=None, ability_slot=None)
        assert enrich_pokemon(record, PIKACHU_DATA)["active_ability"] is None

    @pytest.mark.parametrize(
        "current_hp,percent,color",
        [(110, 100, "green"), (56, 51, "green"), (55, 50, "yellow"), (22, 20, "yellow"), (21, 19, "red"), (0, 0, "red")],
    )
    def test_hp_tiers(self, current_hp, percent, color):
        computed = enrich_pokemon(make_record(current_hp=current_hp), PIKACHU_DATA)["computed"]
        assert computed["max_hp"] == 110
        assert computed["hp_percent"] == percent
        assert computed["hp_color"] == color

    def test_missing_current_hp_is_full(self):
        computed = enrich_pokemon(make_record(current_hp=None), PIKACHU_DATA)["computed"]
        assert computed["current_hp"] == computed["max_hp"]
        assert computed["hp_percent"] == 100

    def test_iv_ev_aggregates_and_dex(self):
        computed = enrich_pokemon(make_record(), PIKACHU_DATA)["computed"]
        assert computed["perfect_iv_count"] == 6
        assert computed["total_iv_sum"] == 186
        assert computed["total_ev_sum"] == 0
        assert computed["dex_num"] == "#025"
        assert computed["cry_url"].endswith("/25.ogg")

    def test_sprite_precedence(self):
        computed = enrich_pokemon(make_record(), PIKACHU_DATA)["computed"]
        assert computed["preferred_sprite"] == PIKACHU_DATA["sprites"]["animated"]
        assert computed["sprite_fallbacks"] == [
            PIKACHU_DATA["sprites"]["animated"],
            PIKACHU_DATA["sprites"]["front_default"],
            PLACEHOLDER_SPRITE_URL,
        ]

    def test_shiny_sprites(self):
        record = make_record()
        record["identity"]["is_shiny"] = True
        computed = enrich_pokemon(record, PIKACHU_DATA)["computed"]
        assert computed["animated_url"] == PIKACHU_DATA["sprites"]["animated_shiny"]
        assert computed["static_url"] == PIKACHU_DATA["sprites"]["front_shiny"]

    def test_broken_animated_sprite_falls_back_to_static(self):
        broken = BrokenSpriteRegistry()
        broken.report(PIKACHU_DATA["sprites"]["animated"])
        computed = enrich_pokemon(make_record(), PIKACHU_DATA, broken_sprites=broken)["computed"]
        assert computed["preferred_sprite"] == PIKACHU_DATA["sprites"]["front_default"]

    def test_static_sprite_templated_when_missing(self):
        data = dict(PIKACHU_DATA, sprites={"front_default": None, "front_shiny": None, "animated": None, "animated_shiny": None})
        computed = enrich_pokemon(make_record(), data)["computed"]
        assert computed["static_url"].endswith("animated/25.gif")
        assert computed["preferred_sprite"] == computed["static_url"]


def test_sprite_chain_always_ends_with_placeholder():
    chain = build_sprite_chain("a.gif", "b.png", {"a.gif", "b.png"})
    assert chain == [PLACEHOLDER_SPRITE_URL]


def test_broken_sprite_registry():
    registry = BrokenSpriteRegistry()
    assert registry.report("x") is True
    assert registry.report("x") is False
    assert registry.is_broken("x")
    assert not registry.is_broken(None)
    assert len(registry) == 1


def _enricher(species=None, moves=None, abilities=None, fail_kind=None):
    caches = ResourceCaches(MemoryStore())

    def lookup(table, kind):
        async def fetch(key):
            if kind == fail_kind:
                raise ConnectionError(f"{kind} upstream down")
            return table.get(key)

        return fetch

    fetchers = {
        "species": BatchFetcher(caches.species, lookup(species or {}, "species")),
        "move": BatchFetcher(caches.moves, lookup(moves or {}, "move")),
        "ability": BatchFetcher(caches.abilities, lookup(abilities or {}, "ability")),
    }
    return Enricher(caches, fetchers)


@pytest.mark.asyncio
class TestEnricher:
    async def test_collect_keys(self):
        records = [
            make_record(species_id=25, move_ids=(85, 98), ability_id=9),
            make_record(species_id=479, form_id=1, move_ids=(85,), ability_id=None),
        ]
        keys = Enricher.collect_keys(records)
        assert keys == {"species": ["25", "id-479-form-1"], "move": ["85", "98"], "ability": ["9"]}

    async def test_run_enriches_records(self):
        enricher = _enricher({"25": PIKACHU_DATA}, MOVES, ABILITIES)

        result = await enricher.run([make_record()])

        assert result.errors == {}
        record = result.records[0]
        assert record["computed"]["display_name"] == "Pikachu"
        assert record["moves_data"][0]["name"] == "thunderbolt"
        assert record["active_ability"]["description"] == "May paralyze on contact."

    async def test_failed_kind_keeps_other_enrichment(self):
        enricher = _enricher({"25": PIKACHU_DATA}, MOVES, ABILITIES, fail_kind="move")

        result = await enricher.run([make_record()])

        assert "move" in result.errors
        assert "species" not in result.errors
        record = result.records[0]
        assert record["computed"]["display_name"] == "Pikachu"
        assert record["moves_data"] == []

    async def test_unknown_species_stays_raw(self):
        enricher = _enricher({}, MOVES, ABILITIES)
        result = await enricher.run([make_record(species_id=9999)])
        assert "species" in result.errors
        assert "computed" not in result.records[0]

    async def test_merge_uses_cache_only(self):
        enricher = _enricher({"25": PIKACHU_DATA})
        assert "computed" not in enricher.merge([make_record()])[0]

        await enricher.caches.species.put("25", PIKACHU_DATA)
        assert enricher.merge([make_record()])[0]["computed"]["display_name"] == "Pikachu"
