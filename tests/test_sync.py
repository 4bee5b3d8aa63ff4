"""
SyncCoordinator lifecycle: source selection and fallback, cycle
serialization, destroy semantics, subscribers, enrichment and timelines.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from conftest import NOW, CountingClient, ExplodingClient
from dashsync.models import PATIENT_PRIORITIES, PATIENT_STATUSES, EnrichmentInsight, TimelineEvent
from dashsync.sync import CONNECTED, DEGRADED, DISCONNECTED, MOCK_ONLY, SyncCoordinator
from dashsync.timeline import TimelineGeneration, TimelineGenerator


class SlowGenerator(TimelineGenerator):
    async def generate_timeline(self, patient):
        await asyncio.sleep(5)
        return TimelineGeneration()


class BrokenGenerator(TimelineGenerator):
    async def generate_timeline(self, patient):
        raise ValueError("model offline")


class FixedGenerator(TimelineGenerator):
    """Returns a plain dict, the way an HTTP-backed generator would."""

    async def generate_timeline(self, patient):
        return {
            "timelineEvents": [
                {"timestamp": (NOW - timedelta(minutes=5)).isoformat(), "type": "assessment",
                 "description": f"Reassess {patient.id}", "confidence": 0.9},
            ],
            "insights": ["Stable"],
            "recommendations": ["Continue observation"],
            "confidence": 0.8,
        }


class ExtraEntriesClient(CountingClient):
    """Appends hand-written entries to the wrapped client's search results."""

    def __init__(self, inner, extra):
        super().__init__(inner, name="mock")
        self.extra = extra

    async def search(self, resource_type, params=None):
        entries = await super().search(resource_type, params)
        return list(entries) + self.extra.get(resource_type, [])


@pytest.fixture
def mock(mock_source):
    return CountingClient(mock_source, name="mock")


@pytest.fixture
def remote(mock_source):
    return CountingClient(mock_source, name="remote")


@pytest.fixture
def make(settings, remote, mock, clock):
    def factory(**kwargs):
        kwargs.setdefault("remote_client", remote)
        kwargs.setdefault("mock_client", mock)
        return SyncCoordinator(settings, clock=clock, **kwargs)
    return factory


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestInitialize:
    def test_mock_only_end_to_end(self, make, run):
        coord = make()

        async def go():
            try:
                snap = await coord.initialize(use_remote=False)
                return snap, coord.status, coord.periodic_sync_running
            finally:
                coord.destroy()

        snap, status, periodic = run(go())
        assert status == MOCK_ONLY
        assert periodic is False
        assert snap.source == "mock"

        body = snap.to_dict()
        by_id = {p["id"]: p for p in body["patients"]}
        assert list(by_id) == ["P001", "P002", "P003"]
        assert by_id["P001"]["vitals"]["hr"] == 120
        assert by_id["P001"]["vitals"]["bp"] == "150/95"
        assert by_id["P001"]["waitTime"] == 15
        assert by_id["P002"]["vitals"]["hr"] == "N/A"
        assert by_id["P002"]["status"] == "waiting"
        assert by_id["P002"]["waitTime"] == 35
        assert by_id["P003"]["department"] == "Cardiology"
        assert body["kpis"]["totalPatients"] == 3
        assert body["kpis"]["waitingPatients"] == 1
        assert body["kpis"]["criticalAlerts"] == 2
        assert body["analytics"]["turnaround"]["Imaging Request to Reported"] == 70
        assert snap.generated_at == NOW
        assert all(p.status in PATIENT_STATUSES for p in snap.patients)
        assert all(p.priority in PATIENT_PRIORITIES for p in snap.patients)

    def test_remote_connected_starts_periodic(self, make, remote, run):
        coord = make()

        async def go():
            try:
                snap = await coord.initialize(use_remote=True)
                return snap, coord.status, coord.periodic_sync_running, coord.active_client
            finally:
                coord.destroy()

        snap, status, periodic, client = run(go())
        assert status == CONNECTED
        assert periodic is True
        assert client is remote
        assert snap.source == "remote"

    def test_probe_failure_falls_back_to_mock(self, make, remote, mock, run):
        remote.online = False
        coord = make()

        async def go():
            try:
                snap = await coord.initialize(use_remote=True)
                return snap, coord.status, coord.periodic_sync_running
            finally:
                coord.destroy()

        snap, status, periodic = run(go())
        assert status == DEGRADED
        assert periodic is False
        assert snap.source == "mock"
        assert len(snap.patients) == 3
        assert "Patient" not in remote.counts
        assert coord.last_error

    def test_wrongly_shaped_source_entries_are_skipped(self, make, mock_source, run):
        source = ExtraEntriesClient(mock_source, {
            "Encounter": [
                {"resource": {"resourceType": "Encounter", "id": "bad", "period": "2026-10-18"}},
                {"resource": {"resourceType": "Encounter", "id": "worse", "status": ["x"],
                              "subject": {"reference": "Patient/P001"}}},
            ],
            "Observation": [
                {"resource": {"resourceType": "Observation", "code": "8867-4", "valueQuantity": 99,
                              "subject": {"reference": "Patient/P001"}}},
            ],
        })
        coord = make(mock_client=source)

        async def go():
            try:
                snap = await coord.initialize(use_remote=False)
                return snap, coord.status, coord.last_error
            finally:
                coord.destroy()

        snap, status, error = run(go())
        assert status == MOCK_ONLY
        assert error is None
        assert [p.id for p in snap.patients] == ["P001", "P002", "P003"]
        assert snap.patients[0].vitals.heart_rate == 120


class TestRemoteOutage:
    def test_empty_remote_reprobe_then_recover(self, make, remote, run):
        remote.online = False
        remote.probe_results = [True, False]
        coord = make()

        async def go():
            try:
                first = await coord.initialize(use_remote=True)
                first_status = coord.status
                coord.stop_periodic_sync()
                remote.online = True
                second = await coord.refresh()
                return first, first_status, second, coord.status
            finally:
                coord.destroy()

        first, first_status, second, status = run(go())
        assert first_status == DEGRADED
        assert first.source == "mock"
        assert len(first.patients) == 3
        assert status == CONNECTED
        assert second.source == "remote"
        assert coord.last_error is None

    def test_empty_remote_that_answers_probe_stays_connected(self, make, remote, run):
        remote.online = False
        remote.probe_results = [True, True]
        coord = make()

        async def go():
            try:
                snap = await coord.initialize(use_remote=True)
                return snap, coord.status
            finally:
                coord.destroy()

        snap, status = run(go())
        assert status == CONNECTED
        assert snap.patients == ()
        assert snap.source == "remote"

    def test_cycle_failure_keeps_previous_snapshot(self, make, mock, run):
        coord = make()

        async def go():
            try:
                good = await coord.initialize(use_remote=False)
                mock.inner = ExplodingClient()
                after = await coord.refresh()
                return good, after, coord.status, coord.last_error
            finally:
                coord.destroy()

        good, after, status, error = run(go())
        assert after is good
        assert len(after.patients) == 3
        assert status == MOCK_ONLY
        assert "exploded" in error


class TestCycles:
    def test_concurrent_refresh_shares_one_cycle(self, make, mock, run):
        coord = make()

        async def go():
            mock.gate = asyncio.Event()
            try:
                t1 = asyncio.ensure_future(coord.refresh())
                t2 = asyncio.ensure_future(coord.refresh())
                await settle()
                in_flight = mock.counts.get("Patient", 0)
                mock.gate.set()
                s1, s2 = await asyncio.gather(t1, t2)
                return in_flight, s1, s2
            finally:
                coord.destroy()

        in_flight, s1, s2 = run(go())
        assert in_flight == 1
        assert mock.counts["Patient"] == 1
        assert s1 is s2
        assert len(s1.patients) == 3

    def test_destroy_mid_cycle_discards_results(self, make, mock, run):
        coord = make()
        received = []
        coord.subscribe(received.append)

        async def go():
            mock.gate = asyncio.Event()
            task = asyncio.ensure_future(coord.refresh())
            await settle()
            coord.destroy()
            mock.gate.set()
            return await task

        result = run(go())
        assert received == []
        assert result.patients == ()
        assert coord.snapshot.patients == ()
        assert coord.last_sync_time is None
        assert coord.status == DISCONNECTED

    def test_refresh_after_destroy_starts_new_cycle(self, make, mock, run):
        coord = make()

        async def go():
            mock.gate = asyncio.Event()
            stale = asyncio.ensure_future(coord.refresh())
            await settle()
            coord.destroy()
            fresh = asyncio.ensure_future(coord.refresh())
            await settle()
            mock.gate.set()
            await stale
            return await fresh

        snap = run(go())
        assert mock.counts["Patient"] == 2
        assert len(snap.patients) == 3
        assert coord.snapshot is snap

    def test_periodic_sync_single_task(self, make, mock, run):
        coord = make()

        async def go():
            try:
                coord.start_periodic_sync(0.01)
                first = coord._periodic_task
                coord.start_periodic_sync(0.01)
                second = coord._periodic_task
                await asyncio.sleep(0.1)
                running = coord.periodic_sync_running
                coord.stop_periodic_sync()
                await settle()
                return first, second, running, coord.periodic_sync_running
            finally:
                coord.destroy()

        first, second, running, after_stop = run(go())
        assert first is not second
        assert first.cancelled()
        assert running is True
        assert after_stop is False
        assert mock.counts["Patient"] >= 1


class TestSubscribers:
    def test_failing_subscriber_does_not_block_others(self, make, run):
        coord = make()
        seen = []
        async_seen = []

        def broken(snapshot):
            raise RuntimeError("render failed")

        async def async_cb(snapshot):
            async_seen.append(snapshot)

        coord.subscribe(broken)
        coord.subscribe(seen.append)
        coord.subscribe(async_cb)

        async def go():
            try:
                return await coord.refresh()
            finally:
                coord.destroy()

        snap = run(go())
        assert seen == [snap]
        assert async_seen == [snap]

    def test_unsubscribe(self, make, run):
        coord = make()
        seen = []
        sub = coord.subscribe(seen.append)
        assert sub.unsubscribe() is True
        assert sub.unsubscribe() is False

        async def go():
            try:
                await coord.refresh()
            finally:
                coord.destroy()

        run(go())
        assert seen == []

    def test_destroy_is_idempotent_and_clears_subscribers(self, make, run):
        coord = make()
        seen = []
        coord.subscribe(seen.append)
        coord.destroy()
        coord.destroy()
        assert coord.status == DISCONNECTED
        assert coord.periodic_sync_running is False

        run(coord.refresh())
        assert seen == []

    def test_destroy_after_rearming_tears_down_again(self, make, run):
        coord = make()
        seen = []

        async def go():
            coord.destroy()
            coord.subscribe(seen.append)
            coord.start_periodic_sync(0.01)
            running = coord.periodic_sync_running
            coord.destroy()
            await coord.refresh()
            return running, coord.periodic_sync_running

        running_before, running_after = run(go())
        assert running_before is True
        assert running_after is False
        assert coord._subscribers == {}
        assert seen == []


class TestEnrichment:
    def test_generator_result_cached_with_insight(self, make, run):
        coord = make(enrichment=FixedGenerator())
        # destroy() clears the cache, so capture it first
        coord_events = {}

        async def go_capture():
            try:
                snap = await coord.initialize(use_remote=False)
                coord_events.update({pid: coord.enrichment_for(pid) for pid in ("P001", "P002")})
                return snap
            finally:
                coord.destroy()

        snap = run(go_capture())
        assert snap.insights["P001"].insights == ("Stable",)
        assert snap.insights["P001"].confidence == 0.8
        assert snap.insights["P001"].generated_at == NOW
        events = coord_events["P001"]
        assert len(events) == 1
        assert events[0].description == "Reassess P001"
        assert events[0].kind == "enrichment"

    @pytest.mark.parametrize("generator", [SlowGenerator(), BrokenGenerator()])
    def test_failure_or_timeout_uses_generated_events(self, make, settings, run, generator):
        settings.enrichment_timeout_seconds = 0.01
        coord = make(enrichment=generator)

        async def go():
            try:
                snap = await coord.initialize(use_remote=False)
                return snap, coord.enrichment_for("P001")
            finally:
                coord.destroy()

        snap, events = run(go())
        assert len(snap.patients) == 3
        assert "P001" not in snap.insights
        assert 3 <= len(events) <= 7
        assert all(e.id.startswith("ai_P001_") for e in events)

    def test_no_generator_means_no_enrichment(self, make, run):
        coord = make()

        async def go():
            try:
                snap = await coord.initialize(use_remote=False)
                return snap, coord.enrichment_for("P001")
            finally:
                coord.destroy()

        snap, events = run(go())
        assert events == []
        assert snap.insights == {}

    def test_update_enrichment_publishes(self, make, run):
        coord = make()
        seen = []

        async def go():
            try:
                base = await coord.initialize(use_remote=False)
                coord.subscribe(seen.append)
                updated = await coord.update_enrichment(
                    "P001",
                    [{"timestamp": NOW.isoformat(), "description": "CT head"}],
                    EnrichmentInsight(insights=("Possible stroke",)),
                )
                return base, updated, coord.enrichment_for("P001")
            finally:
                coord.destroy()

        base, updated, events = run(go())
        assert seen == [updated]
        assert updated is not base
        assert updated.patients == base.patients
        assert updated.insights["P001"].insights == ("Possible stroke",)
        assert [e.description for e in events] == ["CT head"]

    def test_cache_dropped_for_patients_no_longer_reported(self, make, run):
        coord = make()

        async def go():
            try:
                await coord.initialize(use_remote=False)
                await coord.update_enrichment(
                    "P999",
                    [{"timestamp": NOW.isoformat(), "description": "Discharged earlier"}],
                    EnrichmentInsight(insights=("Gone",)),
                )
                cached = coord.enrichment_for("P999")
                snap = await coord.refresh()
                return cached, snap, coord.enrichment_for("P999"), coord.enrichment_for("P001")
            finally:
                coord.destroy()

        cached, snap, after, kept = run(go())
        assert [e.description for e in cached] == ["Discharged earlier"]
        assert after == []
        assert "P999" not in snap.insights
        assert kept == []

    def test_naive_timeline_event_merges_with_clinical_events(self, make, run):
        coord = make()
        naive = TimelineEvent(
            id="note-1",
            patient_id="P003",
            timestamp=datetime(2026, 10, 18, 9, 30),
            description="Family at bedside",
        )

        async def go():
            try:
                await coord.initialize(use_remote=False)
                await coord.update_enrichment("P003", [naive])
                return await coord.get_patient_timeline("P003")
            finally:
                coord.destroy()

        timeline = run(go())
        note = next(e for e in timeline if e.id == "note-1")
        assert note.timestamp == NOW - timedelta(minutes=30)
        assert note.kind == "enrichment"
        assert [e.timestamp for e in timeline] == sorted((e.timestamp for e in timeline), reverse=True)


class TestPatientTimeline:
    def test_clinical_and_enrichment_merged(self, make, run):
        coord = make(enrichment=FixedGenerator())

        async def go():
            try:
                await coord.initialize(use_remote=False)
                return await coord.get_patient_timeline("P003")
            finally:
                coord.destroy()

        timeline = run(go())
        kinds = {e.kind for e in timeline}
        assert kinds == {"clinical", "enrichment"}
        assert [e.timestamp for e in timeline] == sorted((e.timestamp for e in timeline), reverse=True)
        assert "Waiting for CCU bed" in [e.description for e in timeline]
        assert "Reassess P003" in [e.description for e in timeline]

    def test_source_error_yields_empty_timeline(self, make, run):
        coord = make(mock_client=ExplodingClient())
        assert run(coord.get_patient_timeline("P001")) == []
