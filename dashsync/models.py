"""Internal dashboard schema.

Everything downstream of the adapter works on these records; raw FHIR dicts
never travel past fhir_adapter.py.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Union

NOT_AVAILABLE = "N/A"

# PatientSummary.status
STATUS_WAITING = "waiting"
STATUS_IN_TREATMENT = "in-treatment"
STATUS_ADMITTED = "admitted"
STATUS_COMPLETED = "completed"
PATIENT_STATUSES = frozenset({STATUS_WAITING, STATUS_IN_TREATMENT, STATUS_ADMITTED, STATUS_COMPLETED})

# PatientSummary.priority
PRIORITY_URGENT = "urgent"
PRIORITY_NORMAL = "normal"
PRIORITY_LOW = "low"
PATIENT_PRIORITIES = frozenset({PRIORITY_URGENT, PRIORITY_NORMAL, PRIORITY_LOW})

# DiagnosticEvent.category
CATEGORY_LAB = "lab"
CATEGORY_IMAGING = "imaging"
CATEGORY_OTHER = "other"

# TimelineEvent.kind / status
KIND_CLINICAL = "clinical"
KIND_ENRICHMENT = "enrichment"
EVENT_PENDING = "pending"
EVENT_COMPLETED = "completed"

# FHIR Encounter.status values we care about
ENCOUNTER_STATUSES = frozenset({
    "planned", "arrived", "triaged", "in-progress", "onleave",
    "finished", "cancelled", "entered-in-error", "unknown",
})

# Fixed, ordered journey steps. AnalyticsSnapshot.turnaround always has exactly these keys.
WORKFLOW_STEPS: Tuple[str, ...] = (
    "Triage to Nurse",
    "Triage to Doctor",
    "Pathology Request to Result",
    "Imaging Request to Reported",
    "Doctor to Senior Doctor",
    "Admission Request to Bed",
    "Bed Allocation to Departure",
)

JOURNEY_ON_TARGET = "on target"
JOURNEY_AT_RISK = "at risk"
JOURNEY_OFF_TARGET = "off target"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def minutes_between(start: datetime, end: datetime) -> int:
    return int(round((end - start).total_seconds() / 60.0))


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


# ----------------
# Patient / vitals
# ----------------

@dataclass(frozen=True)
class BloodPressure:
    systolic: int
    diastolic: int

    def __str__(self) -> str:
        return f"{self.systolic}/{self.diastolic}"


@dataclass(frozen=True)
class VitalsSnapshot:
    """Each field holds a parsed value or NOT_AVAILABLE, never both and never None."""

    heart_rate: Union[int, str] = NOT_AVAILABLE
    blood_pressure: Union[BloodPressure, str] = NOT_AVAILABLE
    temperature_c: Union[float, str] = NOT_AVAILABLE
    respiratory_rate: Union[int, str] = NOT_AVAILABLE
    spo2_percent: Union[int, str] = NOT_AVAILABLE

    @classmethod
    def unavailable(cls) -> "VitalsSnapshot":
        return cls()

    def has_any(self) -> bool:
        return any(v != NOT_AVAILABLE for v in (
            self.heart_rate, self.blood_pressure, self.temperature_c,
            self.respiratory_rate, self.spo2_percent,
        ))

    def to_dict(self) -> Dict[str, Any]:
        bp = self.blood_pressure
        return {
            "hr": self.heart_rate,
            "bp": str(bp) if isinstance(bp, BloodPressure) else bp,
            "temp": self.temperature_c,
            "rr": self.respiratory_rate,
            "spo2": self.spo2_percent,
        }


@dataclass
class PatientSummary:
    id: str
    name: str = "Unknown Patient"
    age: int = 0
    gender: str = "unknown"
    status: str = STATUS_IN_TREATMENT
    priority: str = PRIORITY_NORMAL
    department: str = "Emergency"
    wait_time_minutes: int = 0
    vitals: Optional[VitalsSnapshot] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "age": self.age,
            "gender": self.gender,
            "status": self.status,
            "priority": self.priority,
            "department": self.department,
            "waitTime": self.wait_time_minutes,
            "vitals": self.vitals.to_dict() if self.vitals else None,
        }


# ----------------------
# Encounters / timeline
# ----------------------

@dataclass(frozen=True)
class TimelineEvent:
    id: str
    patient_id: str
    timestamp: datetime
    kind: str = KIND_CLINICAL
    description: str = ""
    priority: str = "medium"
    confidence: Optional[float] = None
    status: str = EVENT_COMPLETED
    event_type: str = ""
    source: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patientId": self.patient_id,
            "timestamp": _iso(self.timestamp),
            "kind": self.kind,
            "type": self.event_type,
            "description": self.description,
            "priority": self.priority,
            "confidence": self.confidence,
            "status": self.status,
            "source": self.source,
        }


@dataclass(frozen=True)
class EncounterRecord:
    id: str
    patient_id: Optional[str]
    start_time: Optional[datetime]
    end_time: Optional[datetime] = None
    status: str = "unknown"
    encounter_class: str = ""
    priority: Optional[str] = None
    department: Optional[str] = None
    bed_assigned_at: Optional[datetime] = None
    wait_minutes: Optional[int] = None  # closed arrived/triaged periods, if recorded
    events: Tuple[TimelineEvent, ...] = ()

    @property
    def is_ongoing(self) -> bool:
        return self.end_time is None

    def duration_minutes(self, now: Optional[datetime] = None) -> Optional[int]:
        """Length of stay so far; ongoing encounters run until `now`. Floored at zero."""
        if self.start_time is None:
            return None
        end = self.end_time or now or utc_now()
        return max(0, minutes_between(self.start_time, end))


@dataclass(frozen=True)
class DiagnosticEvent:
    id: str
    encounter_id: Optional[str]
    category: str
    requested_at: Optional[datetime]
    reported_at: Optional[datetime] = None

    @property
    def turnaround_minutes(self) -> Optional[int]:
        """None unless both timestamps are present and ordered."""
        if self.requested_at is None or self.reported_at is None:
            return None
        if self.reported_at < self.requested_at:
            return None
        return minutes_between(self.requested_at, self.reported_at)


# ----------
# Analytics
# ----------

@dataclass(frozen=True)
class AdmittedPatient:
    id: str
    patient_id: Optional[str]
    bed_wait_minutes: int
    department: str = "Emergency"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patientId": self.patient_id,
            "name": f"Patient {self.patient_id or self.id}",
            "department": self.department,
            "bedWaitTime": self.bed_wait_minutes,
        }


@dataclass(frozen=True)
class LengthOfStay:
    average: float
    median: float


@dataclass(frozen=True)
class AnalyticsSnapshot:
    turnaround: Dict[str, int]
    length_of_stay: LengthOfStay
    admitted_patients: Tuple[AdmittedPatient, ...] = ()
    journey_minutes: int = 0
    journey_status: str = JOURNEY_ON_TARGET

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turnaround": {step: self.turnaround[step] for step in WORKFLOW_STEPS},
            "losStats": {"average": self.length_of_stay.average, "median": self.length_of_stay.median},
            "admittedPatients": [a.to_dict() for a in self.admitted_patients],
            "journeyMinutes": self.journey_minutes,
            "journeyStatus": self.journey_status,
        }


# ---------------------
# Enrichment / snapshot
# ---------------------

@dataclass(frozen=True)
class EnrichmentInsight:
    insights: Tuple[str, ...] = ()
    recommendations: Tuple[str, ...] = ()
    confidence: Optional[float] = None
    generated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "insights": list(self.insights),
            "recommendations": list(self.recommendations),
            "confidence": self.confidence,
            "generatedAt": _iso(self.generated_at),
        }


@dataclass(frozen=True)
class DashboardSnapshot:
    """One complete load cycle. Replaced wholesale, never patched."""

    kpis: Dict[str, Any]
    patients: Tuple[PatientSummary, ...]
    departments: Tuple[Dict[str, Any], ...]
    alerts: Tuple[Dict[str, Any], ...]
    analytics: AnalyticsSnapshot
    insights: Dict[str, EnrichmentInsight] = field(default_factory=dict)
    source: str = "none"
    generated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def empty(cls, analytics: AnalyticsSnapshot) -> "DashboardSnapshot":
        return cls(
            kpis={"totalPatients": 0, "waitingPatients": 0, "averageWaitTime": 0, "bedOccupancy": 0, "criticalAlerts": 0},
            patients=(),
            departments=(),
            alerts=(),
            analytics=analytics,
        )

    def patient(self, patient_id: str) -> Optional[PatientSummary]:
        for p in self.patients:
            if p.id == patient_id:
                return p
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kpis": dict(self.kpis),
            "patients": [p.to_dict() for p in self.patients],
            "departments": [dict(d) for d in self.departments],
            "alerts": [dict(a) for a in self.alerts],
            "analytics": self.analytics.to_dict(),
            "insights": {pid: ins.to_dict() for pid, ins in self.insights.items()},
            "source": self.source,
            "generatedAt": _iso(self.generated_at),
        }
