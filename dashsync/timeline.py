"""Timeline merging and the enrichment collaborator contract.

Clinical events come from encounters; enrichment events come from a
TimelineGenerator (a narrative/AI service in production, the seeded
SimpleTimelineGenerator otherwise). Payloads from a generator are opaque
dicts until coerce_event shapes them.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional

from .fhir_adapter import parse_datetime
from .generators import MockDataGenerator
from .models import (
    EVENT_COMPLETED,
    EVENT_PENDING,
    KIND_ENRICHMENT,
    PRIORITY_URGENT,
    STATUS_WAITING,
    PatientSummary,
    TimelineEvent,
    utc_now,
)

logger = logging.getLogger(__name__)


# ----------------
# Collaborator contract
# ----------------

@dataclass
class TimelineGeneration:
    timeline_events: List[Any] = field(default_factory=list)
    insights: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    confidence: Optional[float] = None
    generated_at: Optional[datetime] = None


class TimelineGenerator(ABC):
    @abstractmethod
    async def generate_timeline(self, patient: PatientSummary) -> TimelineGeneration:
        ...


class SimpleTimelineGenerator(TimelineGenerator):
    """Catalogue-driven events plus a couple of rule-of-thumb insights."""

    def __init__(self, generator: Optional[MockDataGenerator] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.generator = generator or MockDataGenerator()
        self.clock = clock or utc_now

    async def generate_timeline(self, patient: PatientSummary) -> TimelineGeneration:
        now = self.clock()
        insights, recommendations = [], []
        if patient.priority == PRIORITY_URGENT:
            insights.append("High-acuity patient; expect frequent reassessment")
            recommendations.append("Review vitals every 15 minutes")
        if patient.status == STATUS_WAITING and patient.wait_time_minutes > 30:
            insights.append(f"Waiting {patient.wait_time_minutes} minutes since arrival")
            recommendations.append("Escalate to triage lead")
        return TimelineGeneration(
            timeline_events=self.generator.timeline_events(patient.id, now),
            insights=insights,
            recommendations=recommendations,
            confidence=0.75,
            generated_at=now,
        )


# ----------------
# Enricher
# ----------------

def _confidence(value: Any) -> Optional[float]:
    try:
        c = float(value)
    except (TypeError, ValueError):
        return None
    return min(1.0, max(0.0, c))


class TimelineEnricher:
    @staticmethod
    def coerce_event(payload: Any, patient_id: str, index: int = 0) -> Optional[TimelineEvent]:
        """Shape one collaborator payload; None when it has no usable timestamp."""
        if isinstance(payload, TimelineEvent):
            ts = payload.timestamp
            ts = parse_datetime(ts.isoformat()) if isinstance(ts, datetime) else None
            if ts is None:
                return None
            return replace(payload, kind=KIND_ENRICHMENT, timestamp=ts)
        if not isinstance(payload, dict):
            return None
        raw_ts = payload.get("timestamp") or payload.get("time")
        if isinstance(raw_ts, datetime):
            ts = parse_datetime(raw_ts.isoformat())
        else:
            ts = parse_datetime(raw_ts)
        if ts is None:
            return None
        status = payload.get("status")
        return TimelineEvent(
            id=str(payload.get("id") or f"ai_{patient_id}_{index}"),
            patient_id=str(payload.get("patientId") or patient_id),
            timestamp=ts,
            kind=KIND_ENRICHMENT,
            description=str(payload.get("description") or payload.get("event") or ""),
            priority=str(payload.get("priority") or "medium"),
            confidence=_confidence(payload.get("confidence")),
            status=status if status in (EVENT_PENDING, EVENT_COMPLETED) else EVENT_COMPLETED,
            event_type=str(payload.get("type") or ""),
            source=str(payload.get("source") or "enrichment"),
        )

    @classmethod
    def coerce_events(cls, payloads: Iterable[Any], patient_id: str) -> List[TimelineEvent]:
        out = []
        for i, payload in enumerate(payloads or []):
            event = cls.coerce_event(payload, patient_id, i)
            if event is None:
                logger.debug("Dropping enrichment payload without timestamp for %s", patient_id)
                continue
            out.append(event)
        return sorted(out, key=lambda e: e.timestamp, reverse=True)

    @staticmethod
    def merge(clinical: Iterable[TimelineEvent], enrichment: Iterable[TimelineEvent]) -> List[TimelineEvent]:
        """Newest first. Equal timestamps: clinical before enrichment, otherwise input order."""
        combined = list(clinical) + list(enrichment)
        # sorted() keeps equal keys in input order even with reverse=True
        return sorted(combined, key=lambda e: e.timestamp, reverse=True)
