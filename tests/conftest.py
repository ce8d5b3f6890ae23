import asyncio
import os
import sys
from collections import Counter
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

# Add project root to python path so we can import modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from server import create_app  # noqa: E402

SPRITES = "https://raw.githubusercontent.com/PokeAPI/sprites/master/sprites/pokemon"


def make_record(
    species_id=25,
    slot=0,
    nickname=None,
    level=50,
    nature="Hardy",
    form_id=0,
    move_ids=(85,),
    ability_id=9,
    ability_slot=1,
    current_hp=None,
    **extra,
):
    """A raw captured Pokemon the way the capture agent sends it."""
    record = {
        "slot": slot,
        "identity": {
            "uuid": 1000 + slot,
            "species_id": species_id,
            "form_id": form_id,
            "nickname": nickname if nickname is not None else f"Species {species_id}",
            "ot_name": "Ash",
            "personality_value": 200,
            "is_shiny": False,
            "is_gift": False,
            "is_alpha": False,
        },
        "state": {
            "level": level,
            "nature": nature,
            "current_hp": current_hp,
            "xp": None,
            "happiness": 70,
        },
        "stats": {
            "evs": {"hp": 0, "atk": 0, "def": 0, "spa": 0, "spd": 0, "spe": 0},
            "ivs": {"hp": 31, "atk": 31, "def": 31, "spa": 31, "spd": 31, "spe": 31},
        },
        "moves": [{"move_id": move_id, "pp": 10} for move_id in move_ids],
        "ability": {"id": ability_id, "slot": ability_slot},
    }
    record.update(extra)
    return record


def make_envelope(container_type="party", pokemon=None, captured_at_ms=1700000000000):
    return {
        "schema_version": 1,
        "captured_at_ms": captured_at_ms,
        "source": {
            "packet_class": "PartyPacket",
            "container_id": 1,
            "container_type": container_type,
        },
        "pokemon": pokemon if pokemon is not None else [make_record()],
    }


def _pokemon(pid, name, species_id, base_stats, types, abilities):
    stat_names = ("hp", "attack", "defense", "special-attack", "special-defense", "speed")
    return {
        "id": pid,
        "name": name,
        "species": {
            "name": name,
            "url": f"https://pokeapi.co/api/v2/pokemon-species/{species_id}/",
        },
        "sprites": {
            "front_default": f"{SPRITES}/{pid}.png",
            "front_shiny": f"{SPRITES}/shiny/{pid}.png",
            "versions": {
                "generation-v": {
                    "black-white": {
                        "animated": {
                            "front_default": f"{SPRITES}/animated/{pid}.gif",
                            "front_shiny": f"{SPRITES}/animated/shiny/{pid}.gif",
                        }
                    }
                }
            },
        },
        "stats": [
            {"base_stat": base, "stat": {"name": stat}}
            for stat, base in zip(stat_names, base_stats)
        ],
        "types": [{"slot": i + 1, "type": {"name": t}} for i, t in enumerate(types)],
        "abilities": [
            {
                "ability": {"name": a_name, "url": f"https://pokeapi.co/api/v2/ability/{a_id}/"},
                "is_hidden": hidden,
                "slot": a_slot,
            }
            for a_name, a_id, hidden, a_slot in abilities
        ],
    }


def _flavor(text):
    return [
        {"flavor_text": "texte", "language": {"name": "fr"}},
        {"flavor_text": text, "language": {"name": "en"}},
    ]


PIKACHU = _pokemon(
    25,
    "pikachu",
    25,
    (35, 55, 40, 50, 50, 90),
    ("electric",),
    [("static", 9, False, 1), ("lightning-rod", 31, True, 3)],
)
ROTOM = _pokemon(479, "rotom", 479, (50, 50, 77, 95, 77, 91), ("electric", "ghost"), [("levitate", 26, False, 1)])
ROTOM_HEAT = _pokemon(
    10008, "rotom-heat", 479, (50, 65, 107, 105, 107, 86), ("electric", "fire"), [("levitate", 26, False, 1)]
)
SHEDINJA = _pokemon(292, "shedinja", 292, (1, 90, 45, 30, 30, 40), ("bug", "ghost"), [("wonder-guard", 25, False, 1)])

POKEAPI_DATA = {
    "pokemon/25": PIKACHU,
    "pokemon/pikachu": PIKACHU,
    "pokemon/479": ROTOM,
    "pokemon/rotom": ROTOM,
    "pokemon/rotom-heat": ROTOM_HEAT,
    "pokemon/292": SHEDINJA,
    "pokemon-species/25": {
        "id": 25,
        "gender_rate": 4,
        "growth_rate": {"name": "medium"},
        "varieties": [{"is_default": True, "pokemon": {"name": "pikachu"}}],
    },
    "pokemon-species/479": {
        "id": 479,
        "gender_rate": -1,
        "growth_rate": {"name": "medium"},
        "varieties": [
            {"is_default": True, "pokemon": {"name": "rotom"}},
            {"is_default": False, "pokemon": {"name": "rotom-heat"}},
        ],
    },
    "pokemon-species/292": {
        "id": 292,
        "gender_rate": -1,
        "growth_rate": {"name": "erratic"},
        "varieties": [{"is_default": True, "pokemon": {"name": "shedinja"}}],
    },
    "move/85": {
        "id": 85,
        "name": "thunderbolt",
        "type": {"name": "electric"},
        "power": 90,
        "accuracy": 100,
        "pp": 15,
        "damage_class": {"name": "special"},
        "flavor_text_entries": _flavor("A strong electric\nblast."),
    },
    "move/98": {
        "id": 98,
        "name": "quick-attack",
        "type": {"name": "normal"},
        "power": 40,
        "accuracy": 100,
        "pp": 30,
        "damage_class": {"name": "physical"},
        "flavor_text_entries": _flavor("An extremely fast\nattack."),
    },
    "ability/9": {"id": 9, "name": "static", "flavor_text_entries": _flavor("May paralyze\non contact.")},
    "ability/31": {"id": 31, "name": "lightning-rod", "flavor_text_entries": _flavor("Draws in\nelectricity.")},
}


class FakePokeAPI:
    """In-process stand-in for PokeAPI with per-path hit counters."""

    def __init__(self):
        self.data = dict(POKEAPI_DATA)
        self.hits = Counter()
        self.failing = set()
        self.delay = 0.0

    async def handle(self, request: web.Request) -> web.Response:
        path = f"{request.match_info['resource']}/{request.match_info['key']}"
        self.hits[path] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if path in self.failing:
            return web.json_response({"detail": "boom"}, status=500)
        if path not in self.data:
            return web.Response(status=404, text="Not Found")
        return web.json_response(self.data[path])

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/{resource}/{key}", self.handle)
        return app


@pytest.fixture
def mock_db(mocker):
    """Mock the database to prevent file creation."""
    mock_db_instance = MagicMock()
    mock_db_instance.get_proxy_entry = AsyncMock(return_value=None)
    mock_db_instance.put_proxy_entry = AsyncMock(return_value=True)
    mock_db_instance.clear_proxy_cache = AsyncMock(return_value=True)
    mock_db_instance.proxy_cache_stats = AsyncMock(
        return_value={"size": 0, "by_kind": {}, "total_accesses": 0}
    )
    return mock_db_instance


@pytest_asyncio.fixture
async def fake_pokeapi():
    fake = FakePokeAPI()
    server = TestServer(fake.make_app())
    await server.start_server()
    fake.base_url = str(server.make_url("/")).rstrip("/")
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def app_client(fake_pokeapi, tmp_path):
    app = create_app(
        data_dir=tmp_path / "data",
        cache_backend="memory",
        db_connection_string=None,
        pokeapi_url=fake_pokeapi.base_url,
        poll_interval=0.05,
        validate_upstream=False,
        max_retries=1,
        retry_base_delay=0,
        cache_dir=tmp_path / "cache",
    )
    client = TestClient(TestServer(app))
    await client.start_server()
    yield client
    await client.close()
