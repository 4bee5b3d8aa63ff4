from __future__ import annotations

import logging
import statistics
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .config import SyncSettings
from .fhir_adapter import INPATIENT_CLASSES
from .generators import MockDataGenerator
from .models import (
    CATEGORY_IMAGING,
    CATEGORY_LAB,
    JOURNEY_AT_RISK,
    JOURNEY_OFF_TARGET,
    JOURNEY_ON_TARGET,
    WORKFLOW_STEPS,
    AdmittedPatient,
    AnalyticsSnapshot,
    DiagnosticEvent,
    EncounterRecord,
    LengthOfStay,
    minutes_between,
    utc_now,
)

logger = logging.getLogger(__name__)

CATEGORY_STEPS = {
    CATEGORY_LAB: "Pathology Request to Result",
    CATEGORY_IMAGING: "Imaging Request to Reported",
}
ADMISSION_STEP = "Admission Request to Bed"


def _mean_minutes(samples: List[int]) -> int:
    return max(1, int(round(statistics.mean(samples))))


class AnalyticsEngine:
    """Workflow metrics from normalized encounters and diagnostic reports.

    Randomness (bed waits the record doesn't carry) comes from the injected
    generator so results are reproducible under a seed.
    """

    def __init__(self, settings: Optional[SyncSettings] = None, generator: Optional[MockDataGenerator] = None):
        self.settings = settings or SyncSettings()
        self.generator = generator or MockDataGenerator(self.settings.seed)

    # ---------- journey ----------

    def classify_journey(self, minutes: float) -> str:
        if minutes <= self.settings.journey_target_minutes:
            return JOURNEY_ON_TARGET
        if minutes <= self.settings.journey_at_risk_minutes:
            return JOURNEY_AT_RISK
        return JOURNEY_OFF_TARGET

    # ---------- pieces ----------

    def length_of_stay(self, encounters: Iterable[EncounterRecord], now: datetime) -> LengthOfStay:
        durations = [d for d in (e.duration_minutes(now) for e in encounters) if d is not None]
        if not durations:
            return LengthOfStay(self.settings.los_default_average, self.settings.los_default_median)
        return LengthOfStay(
            average=round(statistics.mean(durations) / 60.0, 1),
            median=round(statistics.median_high(durations) / 60.0, 1),
        )

    def _admissions(self, encounters: Iterable[EncounterRecord]) -> List[Tuple[AdmittedPatient, bool]]:
        """(admitted patient, bed wait came from the record) pairs."""
        out = []
        for e in encounters:
            if e.status != "finished" and e.encounter_class not in INPATIENT_CLASSES:
                continue
            if e.start_time is not None and e.bed_assigned_at is not None:
                wait = max(0, minutes_between(e.start_time, e.bed_assigned_at))
                derived = True
            else:
                wait = self.generator.bed_wait_minutes()
                derived = False
            out.append((AdmittedPatient(
                id=e.id,
                patient_id=e.patient_id,
                bed_wait_minutes=wait,
                department=e.department or "Emergency",
            ), derived))
        return out

    def turnaround(self, diagnostic_events: Iterable[DiagnosticEvent],
                   derived_bed_waits: Optional[List[int]] = None) -> Dict[str, int]:
        values = {step: int(self.settings.turnaround_defaults.get(step, 0)) for step in WORKFLOW_STEPS}
        by_category: Dict[str, List[int]] = {}
        for d in diagnostic_events:
            minutes = d.turnaround_minutes
            if minutes is not None:
                by_category.setdefault(d.category, []).append(minutes)
        for category, step in CATEGORY_STEPS.items():
            samples = by_category.get(category)
            if samples:
                values[step] = _mean_minutes(samples)
        if derived_bed_waits:
            values[ADMISSION_STEP] = _mean_minutes(derived_bed_waits)
        return values

    # ---------- entrypoint ----------

    def compute_analytics(
        self,
        encounters: Iterable[EncounterRecord],
        diagnostic_events: Iterable[DiagnosticEvent],
        now: Optional[datetime] = None,
    ) -> AnalyticsSnapshot:
        now = now or utc_now()
        encounters = list(encounters)
        diagnostic_events = list(diagnostic_events)

        admissions = self._admissions(encounters)
        admitted = [a for a, _ in admissions]
        derived_waits = [a.bed_wait_minutes for a, derived in admissions if derived]
        turnaround = self.turnaround(diagnostic_events, derived_waits)
        journey = sum(turnaround.values())
        status = self.classify_journey(journey)
        logger.debug("Analytics: %d encounters, %d diagnostics, journey=%d min (%s)",
                     len(encounters), len(diagnostic_events), journey, status)
        return AnalyticsSnapshot(
            turnaround=turnaround,
            length_of_stay=self.length_of_stay(encounters, now),
            admitted_patients=tuple(admitted),
            journey_minutes=journey,
            journey_status=status,
        )

    def default_snapshot(self) -> AnalyticsSnapshot:
        """Analytics with no data: configured defaults only."""
        turnaround = {step: int(self.settings.turnaround_defaults.get(step, 0)) for step in WORKFLOW_STEPS}
        journey = sum(turnaround.values())
        return AnalyticsSnapshot(
            turnaround=turnaround,
            length_of_stay=LengthOfStay(self.settings.los_default_average, self.settings.los_default_median),
            journey_minutes=journey,
            journey_status=self.classify_journey(journey),
        )
