"""Sync coordinator.

One load cycle: fetch -> normalize -> analytics -> enrichment -> assemble
snapshot -> swap -> notify. The cached snapshot is only ever replaced
wholesale, so subscribers see a complete snapshot or the previous one.

Concurrency model (single event loop):
- at most one in-flight cycle; concurrent refresh() calls await it
- at most one periodic task; re-arming cancels the previous one
- destroy() bumps a generation counter; older cycles discard their results
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple, Union

from .analytics import AnalyticsEngine
from .config import SyncSettings
from .dashboard import build_snapshot
from .errors import EnrichmentError, MalformedResourceError
from .fhir_adapter import (
    normalize_diagnostic_report,
    normalize_encounter,
    normalize_many,
    normalize_observations_to_vitals,
    normalize_patient,
    parse_datetime,
)
from .fhir_client import RemoteSourceClient, SourceClient
from .generators import MockDataGenerator
from .mock_client import MockSourceClient
from .models import (
    DashboardSnapshot,
    EncounterRecord,
    EnrichmentInsight,
    PatientSummary,
    TimelineEvent,
    utc_now,
)
from .timeline import TimelineEnricher, TimelineGeneration, TimelineGenerator

logger = logging.getLogger(__name__)

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"
MOCK_ONLY = "mock-only"
DEGRADED = "degraded"

Callback = Callable[[DashboardSnapshot], Any]


@dataclass(frozen=True)
class Subscription:
    """Handle returned by subscribe(); compare by handle id, not by callback."""

    handle: int
    coordinator: "SyncCoordinator"

    def unsubscribe(self) -> bool:
        return self.coordinator.unsubscribe(self)


class _CycleResult(NamedTuple):
    snapshot: DashboardSnapshot
    enrichment: Dict[str, List[TimelineEvent]]
    insights: Dict[str, EnrichmentInsight]


def _latest_by_patient(encounters: List[EncounterRecord]) -> Dict[str, EncounterRecord]:
    latest: Dict[str, EncounterRecord] = {}
    for e in encounters:
        if not e.patient_id:
            continue
        current = latest.get(e.patient_id)
        if current is None:
            latest[e.patient_id] = e
        elif e.start_time is not None and (current.start_time is None or e.start_time > current.start_time):
            latest[e.patient_id] = e
    return latest


def _as_generation(result: Any) -> TimelineGeneration:
    if isinstance(result, TimelineGeneration):
        return result
    if isinstance(result, dict):
        return TimelineGeneration(
            timeline_events=list(result.get("timelineEvents") or result.get("timeline_events") or []),
            insights=list(result.get("insights") or []),
            recommendations=list(result.get("recommendations") or []),
            confidence=result.get("confidence"),
            generated_at=result.get("generatedAt") or result.get("generated_at"),
        )
    raise EnrichmentError(f"Unexpected timeline generator result: {type(result).__name__}")


class SyncCoordinator:
    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        *,
        remote_client: Optional[SourceClient] = None,
        mock_client: Optional[SourceClient] = None,
        enrichment: Optional[TimelineGenerator] = None,
        generator: Optional[MockDataGenerator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or SyncSettings()
        self.clock = clock or utc_now
        self.generator = generator or MockDataGenerator(self.settings.seed)
        self.remote_client = remote_client or RemoteSourceClient.from_settings(self.settings)
        self.mock_client = mock_client or MockSourceClient(self.settings.fixtures_dir, clock=self.clock)
        self.enrichment = enrichment
        self.analytics = AnalyticsEngine(self.settings, self.generator)

        self._status = DISCONNECTED
        self._use_remote = False
        self._client: Optional[SourceClient] = None
        self._snapshot = DashboardSnapshot.empty(self.analytics.default_snapshot())
        self._last_sync_time: Optional[datetime] = None
        self._last_error: Optional[str] = None

        self._subscribers: Dict[int, Callback] = {}
        self._handles = itertools.count(1)
        self._enrichment_events: Dict[str, List[TimelineEvent]] = {}
        self._insights: Dict[str, EnrichmentInsight] = {}

        self._periodic_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._cycle_generation = 0
        self._generation = 0

    # ---------- read-only state ----------

    @property
    def snapshot(self) -> DashboardSnapshot:
        return self._snapshot

    @property
    def status(self) -> str:
        return self._status

    @property
    def last_sync_time(self) -> Optional[datetime]:
        return self._last_sync_time

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def active_client(self) -> Optional[SourceClient]:
        return self._client

    # ---------- lifecycle ----------

    async def initialize(self, use_remote: bool = True) -> DashboardSnapshot:
        """Pick a source, run one cycle, and start periodic sync on the remote source."""
        self._use_remote = use_remote
        if use_remote:
            self._status = CONNECTING
            if await self.remote_client.test_connection():
                self._client = self.remote_client
                self._status = CONNECTED
                self._last_error = None
                logger.info("Connected to %s", getattr(self.remote_client, "base_url", self.remote_client.name))
            else:
                self._client = self.mock_client
                self._status = DEGRADED
                self._last_error = "Remote source unreachable; serving mock data"
                logger.warning(self._last_error)
        else:
            self._client = self.mock_client
            self._status = MOCK_ONLY
            logger.info("Using mock data source at %s", getattr(self.mock_client, "fixtures_dir", "?"))

        snapshot = await self.refresh()
        # Remote stays the active client while degraded, so the timer runs then too.
        if self._client is self.remote_client:
            self.start_periodic_sync()
        return snapshot

    def destroy(self) -> None:
        """Stop syncing and forget subscribers and enrichment. Safe to call any number of times."""
        torn_down = (self.periodic_sync_running or bool(self._subscribers)
                     or bool(self._enrichment_events) or self._status != DISCONNECTED)
        self._generation += 1
        self.stop_periodic_sync()
        self._subscribers.clear()
        self._enrichment_events.clear()
        self._insights.clear()
        self._status = DISCONNECTED
        if torn_down:
            logger.info("Sync coordinator destroyed")

    # ---------- observers ----------

    def subscribe(self, callback: Callback) -> Subscription:
        handle = next(self._handles)
        self._subscribers[handle] = callback
        return Subscription(handle, self)

    def unsubscribe(self, subscription: Union[Subscription, int]) -> bool:
        handle = subscription.handle if isinstance(subscription, Subscription) else subscription
        return self._subscribers.pop(handle, None) is not None

    async def _notify(self, snapshot: DashboardSnapshot) -> None:
        for handle, callback in list(self._subscribers.items()):
            try:
                result = callback(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Subscriber %s raised; continuing with the rest", handle)

    # ---------- periodic sync ----------

    def start_periodic_sync(self, interval: Optional[float] = None) -> None:
        self.stop_periodic_sync()
        seconds = interval if interval is not None else self.settings.sync_interval_seconds
        self._periodic_task = asyncio.get_running_loop().create_task(
            self._periodic_loop(seconds, self._generation)
        )
        logger.debug("Periodic sync every %ss", seconds)

    def stop_periodic_sync(self) -> None:
        task, self._periodic_task = self._periodic_task, None
        if task is not None and not task.done():
            task.cancel()

    @property
    def periodic_sync_running(self) -> bool:
        return self._periodic_task is not None and not self._periodic_task.done()

    async def _periodic_loop(self, seconds: float, generation: int) -> None:
        while generation == self._generation:
            await asyncio.sleep(seconds)
            if generation != self._generation:
                return
            await self.refresh()

    # ---------- cycles ----------

    async def refresh(self) -> DashboardSnapshot:
        """Run a cycle now, or join the one already running."""
        task = self._cycle_task
        if task is None or task.done() or self._cycle_generation != self._generation:
            task = asyncio.get_running_loop().create_task(self._run_cycle(self._generation))
            self._cycle_task = task
            self._cycle_generation = self._generation
        return await asyncio.shield(task)

    async def _run_cycle(self, generation: int) -> DashboardSnapshot:
        try:
            result = await self._load_cycle()
        except Exception as e:
            logger.exception("Load cycle failed; keeping previous snapshot")
            if generation == self._generation:
                self._last_error = str(e)
                if self._use_remote:
                    self._status = DEGRADED
            return self._snapshot

        if generation != self._generation:
            logger.info("Discarding results of a cycle started before destroy()")
            return self._snapshot

        self._enrichment_events = result.enrichment
        self._insights = result.insights
        self._snapshot = result.snapshot
        self._last_sync_time = result.snapshot.generated_at
        await self._notify(result.snapshot)
        return result.snapshot

    async def _fetch_patients(self, client: SourceClient) -> Tuple[List[Dict[str, Any]], SourceClient]:
        """Patient entries plus the client that produced them (mock on remote outage)."""
        pages = self.settings.page_sizes
        entries = await client.search("Patient", {"_count": pages.patients})
        if client is not self.remote_client:
            return entries, client

        if entries:
            if self._status != CONNECTED:
                logger.info("Remote source recovered")
            self._status = CONNECTED
            self._last_error = None
            return entries, client

        logger.warning("Remote returned no patients; re-probing")
        if await client.test_connection():
            return entries, client
        self._status = DEGRADED
        self._last_error = "Remote source unreachable; serving mock data for this cycle"
        logger.warning(self._last_error)
        return await self.mock_client.search("Patient", {"_count": pages.patients}), self.mock_client

    async def _load_cycle(self) -> _CycleResult:
        pages = self.settings.page_sizes
        client = self._client or self.mock_client
        patient_entries, client = await self._fetch_patients(client)

        encounter_entries = await client.search("Encounter", {"_count": pages.encounters})
        observation_entries = await client.search("Observation", {"category": "vital-signs", "_count": pages.observations})
        report_entries = await client.search("DiagnosticReport", {"_count": pages.diagnostic_reports})

        now = self.clock()
        encounters = normalize_many(encounter_entries, normalize_encounter)
        diagnostics = normalize_many(report_entries, normalize_diagnostic_report)
        latest = _latest_by_patient(encounters)

        def to_patient(res: Dict[str, Any]) -> PatientSummary:
            pid = res.get("id")
            if not pid:
                raise MalformedResourceError("Patient resource has no id")
            return normalize_patient(
                res,
                encounter=latest.get(str(pid)),
                vitals=normalize_observations_to_vitals(observation_entries, str(pid)),
                now=now,
                default_wait=self.generator.wait_time_minutes(),
            )

        patients = normalize_many(patient_entries, to_patient)
        analytics = self.analytics.compute_analytics(encounters, diagnostics, now)

        # Cached entries survive only for patients this cycle still reports.
        current = {p.id for p in patients}
        enrichment = {pid: ev for pid, ev in self._enrichment_events.items() if pid in current}
        insights = {pid: ins for pid, ins in self._insights.items() if pid in current}
        if self.enrichment is not None:
            for patient in patients:
                events, insight = await self._enrich(patient, now)
                enrichment[patient.id] = events
                if insight is not None:
                    insights[patient.id] = insight

        snapshot = build_snapshot(
            patients,
            encounters,
            analytics,
            total_beds=self.settings.total_beds,
            insights=insights,
            source=client.name,
            now=now,
        )
        logger.info("Sync cycle (%s): %d patients, %d encounters, journey %s",
                    client.name, len(snapshot.patients), len(encounters), analytics.journey_status)
        return _CycleResult(snapshot, enrichment, insights)

    # ---------- enrichment ----------

    async def _enrich(self, patient: PatientSummary,
                      now: datetime) -> Tuple[List[TimelineEvent], Optional[EnrichmentInsight]]:
        """(events, insight) for one patient; generated fallback on failure or timeout."""
        try:
            try:
                raw = await asyncio.wait_for(
                    self.enrichment.generate_timeline(patient),
                    timeout=self.settings.enrichment_timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                raise EnrichmentError(f"Timeline generation timed out for {patient.id}") from e
            except EnrichmentError:
                raise
            except Exception as e:
                raise EnrichmentError(f"Timeline generation failed for {patient.id}: {e}") from e
            generation = _as_generation(raw)
        except EnrichmentError as e:
            logger.warning("%s; using generated timeline", e)
            fallback = self.generator.timeline_events(patient.id, now)
            return TimelineEnricher.coerce_events(fallback, patient.id), None

        generated_at = generation.generated_at
        if not isinstance(generated_at, datetime):
            generated_at = parse_datetime(generated_at)
        insight = EnrichmentInsight(
            insights=tuple(str(i) for i in generation.insights),
            recommendations=tuple(str(r) for r in generation.recommendations),
            confidence=generation.confidence,
            generated_at=generated_at or now,
        )
        return TimelineEnricher.coerce_events(generation.timeline_events, patient.id), insight

    async def update_enrichment(self, patient_id: str, events: List[Any],
                                insight: Optional[EnrichmentInsight] = None) -> DashboardSnapshot:
        """Replace cached enrichment for one patient and publish a new snapshot."""
        self._enrichment_events[patient_id] = TimelineEnricher.coerce_events(events, patient_id)
        insights = dict(self._snapshot.insights)
        if insight is not None:
            self._insights[patient_id] = insight
            insights[patient_id] = insight
        snapshot = replace(self._snapshot, insights=insights, generated_at=self.clock())
        self._snapshot = snapshot
        await self._notify(snapshot)
        return snapshot

    def enrichment_for(self, patient_id: str) -> List[TimelineEvent]:
        return list(self._enrichment_events.get(patient_id, []))

    # ---------- per-patient timeline ----------

    async def get_patient_timeline(self, patient_id: str) -> List[TimelineEvent]:
        """Clinical events from the active source merged with cached enrichment. Never raises."""
        client = self._client or self.mock_client
        try:
            entries = await client.search("Encounter", {"patient": patient_id, "_count": self.settings.page_sizes.timeline})
        except Exception as e:
            logger.warning("Timeline fetch for %s failed: %s", patient_id, e)
            return []
        clinical: List[TimelineEvent] = []
        for encounter in normalize_many(entries, normalize_encounter):
            clinical.extend(encounter.events)
        clinical.sort(key=lambda e: e.timestamp, reverse=True)
        return TimelineEnricher.merge(clinical, self._enrichment_events.get(patient_id, []))
