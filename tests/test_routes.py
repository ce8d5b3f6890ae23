import json

import pytest

from conftest import make_envelope, make_record
from utils.constants import (
    ERROR_INVALID_ABILITY_ID,
    ERROR_INVALID_MOVE_ID,
    ERROR_INVALID_SLUG,
    ERROR_NOT_FOUND,
    ERROR_VALIDATION,
)


@pytest.mark.asyncio
class TestIngestAndState:
    async def test_party_round_trip(self, app_client):
        envelope = make_envelope()

        resp = await app_client.post("/api/ingest", json=envelope)
        assert resp.status == 200
        body = await resp.json()
        assert body == {"success": True, "message": "Data ingested for party"}

        resp = await app_client.get("/api/state", params={"source": "party"})
        assert resp.status == 200
        assert await resp.json() == envelope

    async def test_ingest_overwrites(self, app_client):
        await app_client.post("/api/ingest", json=make_envelope(pokemon=[]))
        await app_client.post("/api/ingest", json=make_envelope(pokemon=[make_record(), make_record(slot=1)]))

        state = await (await app_client.get("/api/state")).json()
        assert len(state["pokemon"]) == 2

    async def test_empty_state(self, app_client):
        resp = await app_client.get("/api/state", params={"source": "daycare"})
        assert resp.status == 200
        body = await resp.json()
        assert body["pokemon"] == []
        assert body["schema_version"] == 1
        assert body["source"] == {"packet_class": "unknown", "container_id": 0, "container_type": "daycare"}
        assert isinstance(body["captured_at_ms"], int)

    async def test_unknown_source_falls_back_to_party(self, app_client):
        body = await (await app_client.get("/api/state", params={"source": "bank"})).json()
        assert body["source"]["container_type"] == "party"

    async def test_validation_issues(self, app_client):
        resp = await app_client.post(
            "/api/ingest", json=make_envelope(pokemon=[make_record(nature="Grumpy")])
        )
        assert resp.status == 400
        body = await resp.json()
        assert body["success"] is False
        assert body["error"] == ERROR_VALIDATION
        assert body["issues"][0]["path"] == "pokemon.0.state.nature"

    async def test_malformed_json(self, app_client):
        resp = await app_client.post(
            "/api/ingest", data="{not json", headers={"Content-Type": "application/json"}
        )
        assert resp.status == 400
        body = await resp.json()
        assert body["error"] == ERROR_VALIDATION
        assert body["issues"][0]["type"] == "json_invalid"

    async def test_body_that_is_not_utf8(self, app_client):
        resp = await app_client.post(
            "/api/ingest",
            data=b'{"pokemon": "\xff\xfe"}',
            headers={"Content-Type": "application/json; charset=utf-8"},
        )
        assert resp.status == 400
        body = await resp.json()
        assert body["error"] == ERROR_VALIDATION
        assert body["issues"][0]["type"] == "json_invalid"

    async def test_pc_boxes_ingest(self, app_client):
        payload = {
            "source": {"container_type": "pc_boxes"},
            "boxes": {"box_1": make_envelope("pc_box", [make_record(box_id="box_1", box_slot=0)])},
        }
        resp = await app_client.post("/api/ingest", json=payload)
        assert resp.status == 200

        state = await (await app_client.get("/api/state", params={"source": "pc_boxes"})).json()
        assert state == payload


@pytest.mark.asyncio
class TestProxy:
    async def test_species(self, app_client):
        resp = await app_client.get("/api/pokemon/Pikachu")
        assert resp.status == 200
        body = await resp.json()
        assert body["id"] == 25
        assert body["gender_rate"] == 4

    async def test_form_key(self, app_client):
        body = await (await app_client.get("/api/pokemon/id-479-form-1")).json()
        assert body["name"] == "rotom-heat"

    async def test_species_not_found(self, app_client):
        resp = await app_client.get("/api/pokemon/99999")
        assert resp.status == 404
        assert await resp.json() == {"error": ERROR_NOT_FOUND}

    async def test_upstream_failure_is_not_found(self, app_client, fake_pokeapi):
        fake_pokeapi.failing.add("move/98")
        resp = await app_client.get("/api/move/98")
        assert resp.status == 404

    async def test_invalid_slug(self, app_client):
        resp = await app_client.get("/api/pokemon/pika_chu")
        assert resp.status == 400
        assert (await resp.json())["error"] == ERROR_INVALID_SLUG

    async def test_invalid_move_and_ability_ids(self, app_client):
        move = await app_client.get("/api/move/thunder_bolt")
        ability = await app_client.get("/api/ability/static_")
        assert move.status == 400
        assert ability.status == 400
        assert (await move.json())["error"] == ERROR_INVALID_MOVE_ID
        assert (await ability.json())["error"] == ERROR_INVALID_ABILITY_ID

    async def test_move_and_ability(self, app_client):
        move = await (await app_client.get("/api/move/85")).json()
        ability = await (await app_client.get("/api/ability/31")).json()
        assert move["name"] == "thunderbolt"
        assert move["type"] == "electric"
        assert ability["name"] == "lightning-rod"


@pytest.mark.asyncio
class TestDashboard:
    async def test_party_dashboard_is_enriched(self, app_client):
        await app_client.post("/api/ingest", json=make_envelope())

        resp = await app_client.get("/api/dashboard/party")
        assert resp.status == 200
        body = await resp.json()
        assert body["state"] == "ready"
        mon = body["pokemon"][0]
        assert mon["computed"]["display_name"] == "Pikachu"
        assert mon["moves_data"][0]["name"] == "thunderbolt"
        assert mon["active_ability"]["name"] == "static"

    async def test_empty_container_dashboard(self, app_client):
        body = await (await app_client.get("/api/dashboard/daycare")).json()
        assert body["state"] == "ready"
        assert body["pokemon"] == []

    async def test_pc_box_selection(self, app_client):
        payload = {
            "source": {"container_type": "pc_boxes"},
            "boxes": {
                "box_1": make_envelope("pc_box", [make_record(box_id="box_1", box_slot=0, nickname="One")]),
                "box_2": make_envelope("pc_box", [make_record(box_id="box_2", box_slot=0, nickname="Two")]),
            },
        }
        await app_client.post("/api/ingest", json=payload)

        body = await (await app_client.get("/api/dashboard/pc_boxes", params={"box": "box_2"})).json()

        assert body["active_box_id"] == "box_2"
        assert [b["id"] for b in body["available_boxes"]] == ["box_1", "box_2"]
        assert [m["computed"]["display_name"] for m in body["pokemon"]] == ["Two"]

    async def test_daycare_region_filter(self, app_client):
        records = [make_record(slot=s, nickname=f"Slot {s}") for s in (9, 10, 19, 20)]
        await app_client.post("/api/ingest", json=make_envelope("daycare", records))

        body = await (await app_client.get("/api/dashboard/daycare", params={"region": "sinnoh"})).json()
        assert body["active_region"] == "sinnoh"
        assert [m["computed"]["display_name"] for m in body["pokemon"]] == ["Slot 10", "Slot 19"]
        assert body["total_count"] == 4

        body = await (await app_client.get("/api/dashboard/daycare", params={"region": "johto"})).json()
        assert body["active_region"] == "sinnoh"

        body = await (await app_client.get("/api/dashboard/daycare", params={"region": "all"})).json()
        assert len(body["pokemon"]) == 4

    async def test_unknown_source(self, app_client):
        resp = await app_client.get("/api/dashboard/bank")
        assert resp.status == 404

    async def test_refresh(self, app_client):
        resp = await app_client.post("/api/dashboard/party/refresh")
        assert resp.status == 200
        assert (await resp.json())["source"] == "party"


@pytest.mark.asyncio
class TestAdmin:
    async def test_health(self, app_client):
        body = await (await app_client.get("/api/health")).json()
        assert body["status"] == "ok"
        assert body["database"]["enabled"] is False
        assert body["circuit_breakers"]["pokeapi"]["state"] == "closed"

    async def test_cache_stats_and_clear(self, app_client):
        await app_client.post("/api/ingest", json=make_envelope())
        await app_client.get("/api/dashboard/party")

        stats = await (await app_client.get("/api/cache/stats")).json()
        assert stats["resources"]["species"]["size"] == 1
        assert stats["resources"]["move"]["size"] == 1
        assert stats["proxy"]["enabled"] is False

        resp = await app_client.delete("/api/cache")
        assert resp.status == 200
        assert (await resp.json())["success"] is True

        stats = await (await app_client.get("/api/cache/stats")).json()
        assert stats["resources"]["species"]["size"] == 0

    async def test_broken_sprite_report(self, app_client):
        url = "https://example.com/sprites/25.gif"
        first = await (await app_client.post("/api/sprites/broken", json={"url": url})).json()
        second = await (await app_client.post("/api/sprites/broken", json={"url": url})).json()

        assert first["added"] is True
        assert second["added"] is False
        assert second["broken_count"] == 1

        resp = await app_client.post("/api/sprites/broken", data=json.dumps({"url": "nope"}))
        assert resp.status == 400
