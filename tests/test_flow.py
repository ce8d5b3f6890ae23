import asyncio

import pytest

from conftest import make_envelope, make_record
from test_enrichment import ABILITIES, MOVES, PIKACHU_DATA, _enricher
from utils.flow import FlowManager, FlowState, PokemonFlow

BOXES_ENVELOPE = {
    "source": {"container_type": "pc_boxes"},
    "boxes": {
        "box_2": make_envelope("pc_box", [make_record(slot=0, nickname="Two")], captured_at_ms=2000),
        "box_1": make_envelope("pc_box", [make_record(slot=0, nickname="One")], captured_at_ms=1000),
        "account_box": make_envelope("account_box", [], captured_at_ms=500),
    },
}


class FakeSource:
    """fetch_state stand-in returning queued envelopes (or raising)."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0
        self.gate = None

    async def __call__(self, source):
        self.calls += 1
        response = self.responses[0] if len(self.responses) == 1 else self.responses.pop(0)
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(response, Exception):
            raise response
        return response


def pikachu_enricher(**kwargs):
    return _enricher({"25": PIKACHU_DATA}, MOVES, ABILITIES, **kwargs)


def flaky_species_enricher():
    """Enricher whose first species lookup fails; returns it with the call log."""
    enricher = pikachu_enricher()
    calls = []

    async def flaky_species(key):
        calls.append(key)
        if len(calls) == 1:
            raise ConnectionError("species upstream down")
        return PIKACHU_DATA

    enricher.fetchers["species"].fetch_one = flaky_species
    return enricher, calls


@pytest.mark.asyncio
class TestPokemonFlow:
    async def test_reaches_ready_with_enriched_records(self):
        flow = PokemonFlow("party", FakeSource(make_envelope()), pikachu_enricher(), poll_interval=10)
        states = []
        flow.subscribe(lambda snap: states.append(snap.state))

        assert flow.state == FlowState.LOADING
        flow.start()
        snapshot = await flow.wait_settled(2)
        await flow.stop()

        assert snapshot.state == FlowState.READY
        assert snapshot.pokemon[0]["computed"]["display_name"] == "Pikachu"
        assert snapshot.total_count == 1
        assert snapshot.last_updated == 1700000000000
        assert states[-2:] == [FlowState.ENRICHING, FlowState.READY]

    async def test_raw_error_then_refresh_recovers(self):
        source = FakeSource(ConnectionError("file unreadable"), make_envelope())
        flow = PokemonFlow("party", source, pikachu_enricher(), poll_interval=10)

        flow.start()
        snapshot = await flow.wait_settled(2)
        assert snapshot.state == FlowState.ERROR
        assert snapshot.error == "file unreadable"

        states = []
        flow.subscribe(lambda snap: states.append(snap.state))
        await flow.refresh()
        snapshot = await flow.wait_settled(2)
        await flow.stop()

        assert states[0] == FlowState.LOADING
        assert snapshot.state == FlowState.READY
        assert snapshot.error is None

    async def test_superseded_fetch_is_discarded(self):
        first = make_envelope(pokemon=[make_record(nickname="Old")])
        second = make_envelope(pokemon=[make_record(nickname="New")])
        source = FakeSource(first, second)
        source.gate = asyncio.Event()
        flow = PokemonFlow("party", source, pikachu_enricher(), poll_interval=10)

        stale = flow.refresh()
        await asyncio.sleep(0)
        fresh = flow.refresh()
        source.gate.set()
        await asyncio.gather(stale, fresh, return_exceptions=True)
        snapshot = await flow.wait_settled(2)

        assert stale.cancelled()
        assert snapshot.pokemon[0]["identity"]["nickname"] == "New"

    async def test_enrichment_reruns_only_when_visible_records_change(self, mocker):
        enricher = pikachu_enricher()
        run_spy = mocker.spy(enricher, "run")
        flow = PokemonFlow("party", FakeSource(make_envelope()), enricher)

        flow.on_raw_data_changed(make_envelope())
        await flow.wait_settled(2)
        flow.on_raw_data_changed(make_envelope(captured_at_ms=1800000000000))
        await flow.wait_settled(2)
        assert run_spy.call_count == 1
        assert flow.snapshot().last_updated == 1800000000000

        flow.on_raw_data_changed(make_envelope(pokemon=[make_record(level=51)]))
        await flow.wait_settled(2)
        assert run_spy.call_count == 2

    async def test_failed_lookups_are_reported_not_fatal(self):
        flow = PokemonFlow("party", FakeSource(make_envelope()), pikachu_enricher(fail_kind="move"))

        flow.on_raw_data_changed(make_envelope())
        snapshot = await flow.wait_settled(2)

        assert snapshot.state == FlowState.READY
        assert "move" in snapshot.enrichment_errors
        assert snapshot.pokemon[0]["computed"]["display_name"] == "Pikachu"

    async def test_enricher_crash_is_an_error_state(self, mocker):
        enricher = pikachu_enricher()
        mocker.patch.object(enricher, "run", side_effect=RuntimeError("enricher broke"))
        flow = PokemonFlow("party", FakeSource(make_envelope()), enricher)

        flow.on_raw_data_changed(make_envelope())
        snapshot = await flow.wait_settled(2)

        assert snapshot.state == FlowState.ERROR
        assert snapshot.error == "enricher broke"
        assert len(snapshot.pokemon) == 1

    async def test_empty_container_is_ready_without_enrichment(self, mocker):
        enricher = pikachu_enricher()
        run_spy = mocker.spy(enricher, "run")
        flow = PokemonFlow("daycare", FakeSource(make_envelope("daycare", [])), enricher)

        flow.on_raw_data_changed(make_envelope("daycare", []))

        assert flow.state == FlowState.READY
        assert run_spy.call_count == 0

    async def test_pc_boxes_show_only_the_active_box(self):
        flow = PokemonFlow("pc_boxes", FakeSource(BOXES_ENVELOPE), pikachu_enricher(), initial_box="box_1")

        flow.on_raw_data_changed(BOXES_ENVELOPE)
        snapshot = await flow.wait_settled(2)

        assert snapshot.available_boxes == ["box_1", "box_2"]
        assert [p["identity"]["nickname"] for p in snapshot.pokemon] == ["One"]
        assert snapshot.total_count == 2
        assert snapshot.last_updated == 2000

        flow.set_active_box("box_2")
        assert flow.state == FlowState.ENRICHING
        snapshot = await flow.wait_settled(2)
        assert [p["identity"]["nickname"] for p in snapshot.pokemon] == ["Two"]

    async def test_box_switch_before_raw_data_is_pending(self):
        flow = PokemonFlow("pc_boxes", FakeSource(BOXES_ENVELOPE), pikachu_enricher(), initial_box="box_1")

        flow.set_active_box("box_2")
        snapshot = flow.snapshot()
        assert snapshot.is_stale
        assert snapshot.active_box_id == "box_1"
        assert snapshot.pending_box_id == "box_2"
        assert snapshot.to_dict()["stale"] is True

        flow.on_raw_data_changed(BOXES_ENVELOPE)
        snapshot = await flow.wait_settled(2)
        assert snapshot.active_box_id == "box_2"
        assert not snapshot.is_stale
        assert snapshot.pokemon[0]["identity"]["nickname"] == "Two"

    async def test_to_dict_names_boxes(self):
        flow = PokemonFlow("pc_boxes", FakeSource(BOXES_ENVELOPE), pikachu_enricher(), initial_box="box_1")
        flow.on_raw_data_changed(BOXES_ENVELOPE)
        data = (await flow.wait_settled(2)).to_dict()

        assert data["state"] == "ready"
        assert data["available_boxes"][0] == {"id": "box_1", "name": "Box 1"}

    async def test_unsubscribe_and_failing_listener(self):
        flow = PokemonFlow("party", FakeSource(make_envelope()), pikachu_enricher())
        seen = []

        def broken(snapshot):
            raise ValueError("listener bug")

        flow.subscribe(broken)
        unsubscribe = flow.subscribe(seen.append)
        flow.on_raw_data_changed(make_envelope("party", []))
        assert len(seen) == 1

        unsubscribe()
        flow.on_raw_data_changed(make_envelope("party", [make_record()]))
        assert len(seen) == 1
        await flow.stop()

    async def test_wait_settled_times_out_with_current_snapshot(self):
        source = FakeSource(make_envelope())
        source.gate = asyncio.Event()
        flow = PokemonFlow("party", source, pikachu_enricher(), poll_interval=10)

        flow.start()
        snapshot = await flow.wait_settled(0.05)
        await flow.stop()

        assert snapshot.state == FlowState.LOADING


    async def test_failed_lookup_is_retried_on_a_later_poll(self):
        enricher, calls = flaky_species_enricher()
        flow = PokemonFlow(
            "party", FakeSource(make_envelope()), enricher, poll_interval=0.01, retry_interval=0
        )

        flow.start()
        try:
            async with asyncio.timeout(2):
                while "computed" not in (flow.snapshot().pokemon or [{}])[0]:
                    await asyncio.sleep(0.01)
        finally:
            await flow.stop()

        assert calls == ["25", "25"]
        assert flow.snapshot().enrichment_errors == {}

    async def test_failed_lookup_retry_waits_for_retry_interval(self):
        enricher, calls = flaky_species_enricher()
        now = [100.0]
        flow = PokemonFlow(
            "party", FakeSource(make_envelope()), enricher, retry_interval=30, clock=lambda: now[0]
        )

        flow.on_raw_data_changed(make_envelope())
        snapshot = await flow.wait_settled(2)
        assert "species" in snapshot.enrichment_errors

        now[0] += 10
        flow.on_raw_data_changed(make_envelope())
        assert flow.state == FlowState.READY
        assert len(calls) == 1

        now[0] += 30
        flow.on_raw_data_changed(make_envelope())
        snapshot = await flow.wait_settled(2)
        assert len(calls) == 2
        assert snapshot.enrichment_errors == {}
        assert snapshot.pokemon[0]["computed"]["display_name"] == "Pikachu"

    async def test_daycare_region_narrows_visible_records(self, mocker):
        envelope = make_envelope(
            "daycare",
            [
                make_record(slot=3, nickname="Kanto"),
                make_record(slot=4, nickname="Hoenn"),
                make_record(slot=25, nickname="Unova"),
            ],
        )
        enricher = pikachu_enricher()
        run_spy = mocker.spy(enricher, "run")
        flow = PokemonFlow("daycare", FakeSource(envelope), enricher)

        flow.set_active_region("hoenn")
        flow.on_raw_data_changed(envelope)
        snapshot = await flow.wait_settled(2)

        assert [p["identity"]["nickname"] for p in snapshot.pokemon] == ["Hoenn"]
        assert snapshot.total_count == 3
        assert run_spy.call_args.args[0] == [envelope["pokemon"][1]]

        flow.set_active_region("all")
        assert flow.state == FlowState.ENRICHING
        data = (await flow.wait_settled(2)).to_dict()
        assert [p["identity"]["nickname"] for p in data["pokemon"]] == ["Kanto", "Hoenn", "Unova"]
        assert data["active_region"] == "all"
        assert data["available_regions"][0] == {"id": "kanto", "name": "Kanto"}

    async def test_region_filter_is_daycare_only(self):
        flow = PokemonFlow("party", FakeSource(make_envelope()), pikachu_enricher())
        flow.set_active_region("kanto")
        assert flow.active_region is None
        assert flow.snapshot().available_regions == []


@pytest.mark.asyncio
async def test_flow_manager_starts_each_source_once():
    manager = FlowManager(FakeSource(make_envelope()), pikachu_enricher(), poll_interval=10)

    party = manager.get_or_start("party")
    assert manager.get_or_start("party") is party
    assert manager.get("daycare") is None
    assert party.is_running

    await party.wait_settled(2)
    assert manager.get_stats() == {"party": "ready"}

    await manager.stop_all()
    assert not party.is_running
