"""
Per-container orchestration of raw data polling and enrichment.

A `PokemonFlow` owns the lifecycle of one container view (party, daycare or
PC boxes): it polls the raw container state, narrows it to the visible
records (the active box for the PC, the active region for the daycare),
enriches those and exposes the result as an explicit state machine:

    loading   -> raw data outstanding
    enriching -> raw data present, enrichment of the visible records outstanding
    ready     -> both done
    error     -> the raw fetch (or the enrichment run as a whole) failed

Observers subscribe to be told about every transition. `FlowManager` keeps
one flow per container and starts them lazily.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from config.settings import DEFAULT_PC_BOX, ENRICHMENT_RETRY_INTERVAL, POLL_INTERVAL
from utils.boxes import (
    box_display_name,
    flatten_pc_envelope,
    group_by_box,
    region_display_name,
    region_for_slot,
    sorted_box_ids,
)
from utils.constants import ALL_REGIONS, DAYCARE_REGION_IDS, DAYCARE_SOURCE, PC_BOXES_SOURCE
from utils.enrichment import Enricher, EnrichmentResult

logger = logging.getLogger("pokemmo_link.flow")

FetchState = Callable[[str], Awaitable[Mapping[str, Any]]]


class FlowState(Enum):
    LOADING = "loading"
    ENRICHING = "enriching"
    READY = "ready"
    ERROR = "error"


SETTLED_STATES = (FlowState.READY, FlowState.ERROR)


@dataclass
class FlowSnapshot:
    """What a dashboard needs to render one container."""

    source: str
    state: FlowState
    pokemon: List[Dict[str, Any]]
    total_count: int
    last_updated: Optional[int]
    active_box_id: Optional[str] = None
    pending_box_id: Optional[str] = None
    available_boxes: List[str] = field(default_factory=list)
    active_region: Optional[str] = None
    available_regions: List[str] = field(default_factory=list)
    error: Optional[str] = None
    enrichment_errors: Dict[str, str] = field(default_factory=dict)

    @property
    def is_stale(self) -> bool:
        return self.pending_box_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "state": self.state.value,
            "pokemon": self.pokemon,
            "total_count": self.total_count,
            "last_updated": self.last_updated,
            "active_box_id": self.active_box_id,
            "pending_box_id": self.pending_box_id,
            "stale": self.is_stale,
            "available_boxes": [
                {"id": box_id, "name": box_display_name(box_id)}
                for box_id in self.available_boxes
            ],
            "active_region": self.active_region or ALL_REGIONS,
            "available_regions": [
                {"id": region_id, "name": region_display_name(region_id)}
                for region_id in self.available_regions
            ],
            "error": self.error,
            "enrichment_errors": self.enrichment_errors,
        }


Listener = Callable[[FlowSnapshot], None]


def _captured_at(envelope: Mapping[str, Any]) -> Optional[int]:
    if envelope.get("captured_at_ms") is not None:
        return envelope["captured_at_ms"]
    stamps = [
        box.get("captured_at_ms")
        for box in (envelope.get("boxes") or {}).values()
        if isinstance(box, Mapping) and box.get("captured_at_ms") is not None
    ]
    return max(stamps) if stamps else None


class PokemonFlow:
    """
    State machine for one container view.

    Args:
        source: Container source ('party', 'daycare' or 'pc_boxes').
        fetch_state: Coroutine function returning the current raw envelope.
        enricher: Shared Enricher.
        poll_interval: Seconds between raw fetches while running.
        initial_box: Active PC box before the user picks one.
        retry_interval: Minimum seconds between polls that retry lookups
            which failed during the last enrichment.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        source: str,
        fetch_state: FetchState,
        enricher: Enricher,
        poll_interval: float = POLL_INTERVAL,
        initial_box: str = DEFAULT_PC_BOX,
        retry_interval: float = ENRICHMENT_RETRY_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.is_pc = source == PC_BOXES_SOURCE
        self.is_daycare = source == DAYCARE_SOURCE
        self.poll_interval = poll_interval
        self.retry_interval = retry_interval
        self._clock = clock
        self._fetch_state = fetch_state
        self._enricher = enricher

        self._state = FlowState.LOADING
        self._listeners: List[Listener] = []
        self._settled = asyncio.Event()

        # Raw stage
        self._envelope: Optional[Mapping[str, Any]] = None
        self._records: List[Dict[str, Any]] = []
        self._raw_pending = True
        self._raw_error: Optional[str] = None
        self._generation = 0

        # Visible subset and enrichment stage
        self._active_box_id: Optional[str] = initial_box if self.is_pc else None
        self._pending_box_id: Optional[str] = None
        self._available_boxes: List[str] = []
        self._active_region: Optional[str] = None
        self._visible_raw: Optional[List[Dict[str, Any]]] = None
        self._visible: List[Dict[str, Any]] = []
        self._enrich_pending = False
        self._enrich_error: Optional[str] = None
        self._enrichment_errors: Dict[str, str] = {}
        self._enrich_generation = 0
        self._force_enrichment = False
        self._last_enrichment_at: Optional[float] = None

        self._poll_task: Optional[asyncio.Task] = None
        self._raw_task: Optional[asyncio.Task] = None
        self._enrich_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> FlowState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def active_box_id(self) -> Optional[str]:
        return self._active_box_id

    @property
    def active_region(self) -> Optional[str]:
        return self._active_region

    # ==================== LIFECYCLE ====================

    def start(self) -> None:
        """Begin polling. No-op when already running."""
        if self.is_running:
            return
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(
            f"Started {self.source} flow",
            extra={"source": self.source, "poll_interval": self.poll_interval},
        )

    async def stop(self) -> None:
        """Stop polling and cancel outstanding work."""
        tasks = [t for t in (self._poll_task, self._raw_task, self._enrich_task) if t and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_task = None
        logger.info(f"Stopped {self.source} flow", extra={"source": self.source})

    async def _poll_loop(self) -> None:
        while True:
            task = self._launch_raw_fetch()
            await asyncio.wait({task})
            await asyncio.sleep(self.poll_interval)

    def refresh(self) -> asyncio.Task:
        """
        Re-trigger the raw fetch.

        An outstanding raw fetch is cancelled and its result, should it still
        arrive, is discarded. From `error` (or before any data arrived) the
        flow goes back to `loading`. Lookups that failed during the last
        enrichment are retried.
        """
        if self._enrichment_errors or self._enrich_error:
            self._force_enrichment = True

        if self._state == FlowState.ERROR or self._envelope is None:
            self._raw_pending = True
            self._raw_error = None
            self._enrich_error = None
            self._transition()

        return self._launch_raw_fetch()

    def _launch_raw_fetch(self) -> asyncio.Task:
        if self._raw_task is not None and not self._raw_task.done():
            self._raw_task.cancel()

        self._generation += 1
        self._raw_task = asyncio.create_task(self._fetch_raw(self._generation))
        return self._raw_task

    async def _fetch_raw(self, generation: int) -> None:
        try:
            envelope = await self._fetch_state(self.source)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if generation != self._generation:
                return
            logger.error(f"Raw {self.source} fetch failed: {e}", exc_info=True)
            self.on_raw_error(e)
            return

        if generation != self._generation:
            logger.debug(f"Discarding superseded {self.source} fetch")
            return
        self.on_raw_data_changed(envelope)

    # ==================== TRANSITIONS ====================

    def on_raw_data_changed(self, envelope: Mapping[str, Any]) -> None:
        """New raw envelope arrived."""
        self._envelope = envelope
        self._records = flatten_pc_envelope(envelope)
        self._raw_pending = False
        self._raw_error = None

        if self.is_pc:
            self._available_boxes = sorted_box_ids(group_by_box(self._records).keys())
            if self._pending_box_id is not None:
                self._active_box_id = self._pending_box_id
                self._pending_box_id = None

        if self._should_retry_failed():
            logger.info(
                f"Retrying failed {self.source} lookups",
                extra={"source": self.source, "kinds": sorted(self._enrichment_errors)},
            )
            self._force_enrichment = True

        self._update_visible()
        self._transition()

    def _should_retry_failed(self) -> bool:
        if not self._enrichment_errors or self._enrich_pending:
            return False
        if self._last_enrichment_at is None:
            return True
        return self._clock() - self._last_enrichment_at >= self.retry_interval

    def on_raw_error(self, error: BaseException) -> None:
        """The raw fetch failed. Previously shown records stay visible."""
        self._raw_pending = False
        self._raw_error = str(error) or error.__class__.__name__
        self._transition()

    def on_enrichment_changed(
        self,
        result: Optional[EnrichmentResult] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        """An enrichment run for the current visible set finished."""
        self._enrich_pending = False
        if error is not None:
            self._enrich_error = str(error) or error.__class__.__name__
            self._visible = self._enricher.merge(self._visible_raw or [])
        else:
            self._enrich_error = None
            self._enrichment_errors = dict(result.errors) if result else {}
            self._visible = result.records if result else []
        self._transition()

    def set_active_box(self, box_id: str) -> None:
        """
        Switch the visible PC box.

        Until raw data is available the previously visible records stay on
        display (stale). Once it is, the grid is reset to the new box and
        its enrichment starts.
        """
        if not self.is_pc:
            logger.debug(f"Ignoring box switch on non-PC flow {self.source}")
            return
        if box_id == self._active_box_id and self._pending_box_id is None:
            return

        if self._envelope is None or self._raw_pending:
            self._pending_box_id = box_id
            self._transition()
            return

        self._active_box_id = box_id
        self._pending_box_id = None
        self._update_visible()
        self._transition()

    def set_active_region(self, region: Optional[str]) -> None:
        """
        Narrow the daycare view to one region (None or 'all' shows every slot).

        Filtering works on the raw records already held, so the grid switches
        at once and enrichment covers only the records left visible.
        """
        if not self.is_daycare:
            logger.debug(f"Ignoring region filter on non-daycare flow {self.source}")
            return

        region = None if region in (None, ALL_REGIONS) else region
        if region == self._active_region:
            return

        self._active_region = region
        if self._envelope is not None:
            self._update_visible()
        self._transition()

    def _update_visible(self) -> None:
        if self.is_pc:
            visible = [r for r in self._records if r.get("box_id") == self._active_box_id]
        elif self.is_daycare and self._active_region is not None:
            visible = [
                r for r in self._records if region_for_slot(r.get("slot")) == self._active_region
            ]
        else:
            visible = list(self._records)

        if visible == self._visible_raw and not self._force_enrichment:
            return

        self._force_enrichment = False
        self._visible_raw = visible
        # Reset the grid with whatever is cached while the enrichment runs.
        self._visible = self._enricher.merge(visible)
        self._start_enrichment(visible)

    def _start_enrichment(self, records: List[Dict[str, Any]]) -> None:
        if self._enrich_task is not None and not self._enrich_task.done():
            self._enrich_task.cancel()

        self._enrich_generation += 1
        self._last_enrichment_at = self._clock()
        self._enrichment_errors = {}
        self._enrich_error = None

        if not records:
            self._enrich_pending = False
            return

        self._enrich_pending = True
        self._enrich_task = asyncio.create_task(
            self._run_enrichment(self._enrich_generation, records)
        )

    async def _run_enrichment(self, generation: int, records: List[Dict[str, Any]]) -> None:
        try:
            result = await self._enricher.run(records)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if generation == self._enrich_generation:
                logger.error(f"Enrichment of {self.source} failed: {e}", exc_info=True)
                self.on_enrichment_changed(error=e)
            return

        if generation == self._enrich_generation:
            self.on_enrichment_changed(result=result)

    def _transition(self) -> None:
        if self._raw_error or self._enrich_error:
            new_state = FlowState.ERROR
        elif self._raw_pending:
            new_state = FlowState.LOADING
        elif self._enrich_pending:
            new_state = FlowState.ENRICHING
        else:
            new_state = FlowState.READY

        if new_state != self._state:
            logger.debug(
                f"{self.source} flow {self._state.value} -> {new_state.value}",
                extra={"source": self.source},
            )
        self._state = new_state

        if new_state in SETTLED_STATES:
            self._settled.set()
        else:
            self._settled.clear()

        self._notify()

    # ==================== OBSERVERS ====================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener called with a FlowSnapshot after every transition.

        Returns:
            A function that unsubscribes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Flow listener failed: {e}", exc_info=True)

    def snapshot(self) -> FlowSnapshot:
        return FlowSnapshot(
            source=self.source,
            state=self._state,
            pokemon=list(self._visible),
            total_count=len(self._records),
            last_updated=_captured_at(self._envelope) if self._envelope else None,
            active_box_id=self._active_box_id,
            pending_box_id=self._pending_box_id,
            available_boxes=list(self._available_boxes),
            active_region=self._active_region,
            available_regions=list(DAYCARE_REGION_IDS) if self.is_daycare else [],
            error=self._raw_error or self._enrich_error,
            enrichment_errors=dict(self._enrichment_errors),
        )

    async def wait_settled(self, timeout: float) -> FlowSnapshot:
        """Wait up to `timeout` seconds for `ready` or `error`, then snapshot."""
        try:
            async with asyncio.timeout(timeout):
                await self._settled.wait()
        except TimeoutError:
            logger.debug(f"{self.source} flow still {self._state.value} after {timeout}s")
        return self.snapshot()


class FlowManager:
    """
    One PokemonFlow per container source, started on first use.

    Args:
        fetch_state: Coroutine function returning the raw envelope for a source.
        enricher: Shared Enricher.
        poll_interval: Polling interval handed to every flow.
        retry_interval: Failed-lookup retry interval handed to every flow.
    """

    def __init__(
        self,
        fetch_state: FetchState,
        enricher: Enricher,
        poll_interval: float = POLL_INTERVAL,
        initial_box: str = DEFAULT_PC_BOX,
        retry_interval: float = ENRICHMENT_RETRY_INTERVAL,
    ):
        self._fetch_state = fetch_state
        self._enricher = enricher
        self.poll_interval = poll_interval
        self.initial_box = initial_box
        self.retry_interval = retry_interval
        self._flows: Dict[str, PokemonFlow] = {}

    def get(self, source: str) -> Optional[PokemonFlow]:
        return self._flows.get(source)

    def get_or_start(self, source: str) -> PokemonFlow:
        flow = self._flows.get(source)
        if flow is None:
            flow = PokemonFlow(
                source,
                self._fetch_state,
                self._enricher,
                poll_interval=self.poll_interval,
                initial_box=self.initial_box,
                retry_interval=self.retry_interval,
            )
            self._flows[source] = flow
        flow.start()
        return flow

    def get_stats(self) -> Dict[str, str]:
        return {source: flow.state.value for source, flow in self._flows.items()}

    async def stop_all(self) -> None:
        for flow in self._flows.values():
            await flow.stop()
