"""
TimelineEnricher ordering and payload coercion, and the seeded fallback generator.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from dashsync.generators import ED_EVENT_CATALOGUE, MockDataGenerator
from dashsync.models import PatientSummary, TimelineEvent
from dashsync.timeline import SimpleTimelineGenerator, TimelineEnricher, TimelineGeneration


NOW = datetime(2026, 10, 18, 10, 0, tzinfo=timezone.utc)


def event(eid, minutes_ago, kind="clinical"):
    return TimelineEvent(id=eid, patient_id="P1", timestamp=NOW - timedelta(minutes=minutes_ago), kind=kind)


class TestMerge:
    def test_descending(self):
        merged = TimelineEnricher.merge([event("c1", 30), event("c2", 5)], [event("e1", 10, "enrichment")])
        assert [e.id for e in merged] == ["c2", "e1", "c1"]

    def test_clinical_before_enrichment_on_ties(self):
        merged = TimelineEnricher.merge([event("c1", 10)], [event("e1", 10, "enrichment")])
        assert [e.id for e in merged] == ["c1", "e1"]
        merged = TimelineEnricher.merge([event("c1", 10), event("c2", 10)], [event("e1", 10, "enrichment"), event("e2", 10, "enrichment")])
        assert [e.id for e in merged] == ["c1", "c2", "e1", "e2"]

    def test_empty_inputs(self):
        assert TimelineEnricher.merge([], []) == []


class TestCoerce:
    def test_payload_fields(self):
        e = TimelineEnricher.coerce_event({
            "timestamp": "2026-10-18T09:30:00Z",
            "type": "imaging",
            "description": "CT scheduled",
            "priority": "high",
            "confidence": 1.7,
            "status": "pending",
        }, "P1", 4)
        assert e.id == "ai_P1_4"
        assert e.kind == "enrichment"
        assert e.timestamp == NOW - timedelta(minutes=30)
        assert e.confidence == 1.0
        assert e.status == "pending"
        assert e.event_type == "imaging"

    def test_datetime_timestamp_accepted(self):
        assert TimelineEnricher.coerce_event({"timestamp": NOW}, "P1").timestamp == NOW

    def test_naive_timeline_event_read_as_utc(self):
        naive = TimelineEvent(id="n1", patient_id="P1", timestamp=datetime(2026, 10, 18, 9, 50))
        coerced = TimelineEnricher.coerce_event(naive, "P1")
        assert coerced.timestamp == NOW - timedelta(minutes=10)
        assert coerced.kind == "enrichment"

        merged = TimelineEnricher.merge([event("c1", 5), event("c2", 20)], [coerced])
        assert [e.id for e in merged] == ["c1", "n1", "c2"]

    def test_unparseable_payloads_dropped(self):
        payloads = [{"timestamp": "soon"}, {"description": "no time"}, "junk", {"time": "2026-10-18T09:00:00Z"}]
        events = TimelineEnricher.coerce_events(payloads, "P1")
        assert len(events) == 1
        assert events[0].id == "ai_P1_3"

    def test_coerced_events_sorted(self):
        events = TimelineEnricher.coerce_events(
            [{"timestamp": "2026-10-18T08:00:00Z"}, {"timestamp": "2026-10-18T09:00:00Z"}], "P1"
        )
        assert events[0].timestamp > events[1].timestamp


class TestSimpleTimelineGenerator:
    def test_catalogue_events(self):
        gen = SimpleTimelineGenerator(MockDataGenerator(5), clock=lambda: NOW)
        result = asyncio.run(gen.generate_timeline(PatientSummary(id="P1", priority="urgent")))

        assert isinstance(result, TimelineGeneration)
        assert 3 <= len(result.timeline_events) <= 7
        catalogue = {t for t, _, _ in ED_EVENT_CATALOGUE}
        for payload in result.timeline_events:
            assert payload["type"] in catalogue
            assert 0.7 <= payload["confidence"] <= 1.0
            assert payload["status"] in ("pending", "completed")
        assert result.insights

    def test_same_seed_same_events(self):
        a = MockDataGenerator(9).timeline_events("P1", NOW)
        b = MockDataGenerator(9).timeline_events("P1", NOW)
        assert a == b

    def test_events_go_back_from_now(self):
        for payload in MockDataGenerator(1).timeline_events("P1", NOW):
            ts = datetime.fromisoformat(payload["timestamp"])
            assert ts <= NOW
            assert NOW - ts <= timedelta(minutes=6 * 15 + 30)
