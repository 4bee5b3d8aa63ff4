"""FHIR R4 resources -> dashboard records.

Pure functions; no I/O. Every function accepts either a bare resource or a
search-bundle entry ({"resource": {...}}). Missing or odd fields degrade to
documented defaults, and nested elements of the wrong shape read as empty.
A payload that is not a mapping at all raises MalformedResourceError;
normalize_many and the vitals reader skip any resource that fails to adapt.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from .errors import MalformedResourceError
from .models import (
    CATEGORY_IMAGING,
    CATEGORY_LAB,
    CATEGORY_OTHER,
    ENCOUNTER_STATUSES,
    EVENT_COMPLETED,
    EVENT_PENDING,
    KIND_CLINICAL,
    NOT_AVAILABLE,
    PRIORITY_LOW,
    PRIORITY_NORMAL,
    PRIORITY_URGENT,
    STATUS_ADMITTED,
    STATUS_COMPLETED,
    STATUS_IN_TREATMENT,
    STATUS_WAITING,
    BloodPressure,
    DiagnosticEvent,
    EncounterRecord,
    PatientSummary,
    TimelineEvent,
    VitalsSnapshot,
    minutes_between,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------- code tables ----------

LOINC_HEART_RATE = {"8867-4"}
LOINC_SYSTOLIC = {"8480-6"}
LOINC_DIASTOLIC = {"8462-4"}
LOINC_BP_PANEL = {"85354-9", "55284-4"}
LOINC_TEMPERATURE = {"8310-5", "8331-1"}
LOINC_SPO2 = {"2708-6", "59408-5"}
LOINC_RESP_RATE = {"9279-1"}

INPATIENT_CLASSES = {"IMP", "ACUTE", "NONAC"}

PRIORITY_CODES: Dict[str, str] = {
    "EM": PRIORITY_URGENT, "UR": PRIORITY_URGENT, "S": PRIORITY_URGENT,
    "CS": PRIORITY_URGENT, "A": PRIORITY_URGENT,
    "R": PRIORITY_NORMAL, "RR": PRIORITY_NORMAL,
    "EL": PRIORITY_LOW, "PRN": PRIORITY_LOW,
}

FAHRENHEIT_UNITS = {"[degf]", "degf", "°f", "f"}

# statusHistory entries may carry a human label for the timeline
EXT_EVENT_LABEL = "urn:dashsync:timeline-event-label"
EXT_EVENT_DESCRIPTION = "urn:dashsync:timeline-event-description"
EXT_EVENT_STATE = "urn:dashsync:timeline-event-state"

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


# ----------------
# Primitive parsing
# ----------------

def parse_datetime(value: Any) -> Optional[datetime]:
    """FHIR date / dateTime / instant -> aware UTC datetime.

    Date-only values become midnight UTC; values without a zone are treated
    as UTC. Returns None if not parseable.
    """
    if not value or not isinstance(value, str):
        return None
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        if len(s) == 4 and s.isdigit():
            dt = datetime(int(s), 1, 1)
        elif len(s) == 7 and s[4] == "-":
            dt = datetime(int(s[:4]), int(s[5:7]), 1)
        else:
            dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_birth_date(value: Any) -> Optional[date]:
    dt = parse_datetime(value)
    return dt.date() if dt else None


def calculate_age(birth: Optional[date], today: Optional[date] = None) -> int:
    """Calendar age: whole years, minus one if this year's birthday hasn't happened."""
    if birth is None:
        return 0
    today = today or utc_now().date()
    years = today.year - birth.year
    if (today.month, today.day) < (birth.month, birth.day):
        years -= 1
    return max(0, years)


def _mapping(value: Any) -> Dict[str, Any]:
    """Nested FHIR element as a dict; anything else reads as empty."""
    return value if isinstance(value, dict) else {}


def _safe_float(s: Any) -> Optional[float]:
    if isinstance(s, bool):
        return None
    try:
        return float(s)
    except (TypeError, ValueError):
        return None


def _first_code(concept: Any) -> Optional[str]:
    """First coding code of a CodeableConcept (or a bare Coding)."""
    if not isinstance(concept, dict):
        return None
    if concept.get("code"):
        return str(concept["code"])
    for c in concept.get("coding") or []:
        if isinstance(c, dict) and c.get("code"):
            return str(c["code"])
    return None


def _concept_text(concept: Any) -> str:
    if not isinstance(concept, dict):
        return ""
    if concept.get("text"):
        return str(concept["text"])
    for c in concept.get("coding") or []:
        if isinstance(c, dict) and c.get("display"):
            return str(c["display"])
    return ""


def _loinc_codes(obs: Dict[str, Any]) -> List[str]:
    codes = []
    for c in _mapping(obs.get("code")).get("coding") or []:
        if not isinstance(c, dict):
            continue
        system = (c.get("system") or "").lower()
        # Some servers drop the system on vitals; accept bare codes too.
        if not system or "loinc" in system or "2.16.840.1.113883.6.1" in system:
            if c.get("code"):
                codes.append(str(c["code"]))
    return codes


def _reference_id(ref: Any, resource_type: str) -> Optional[str]:
    """'Patient/123' or 'https://x/Patient/123' -> '123'."""
    if not isinstance(ref, dict):
        return None
    value = ref.get("reference")
    if not isinstance(value, str):
        return None
    marker = f"{resource_type}/"
    if marker not in value:
        return None
    return value.rsplit(marker, 1)[1].split("/", 1)[0] or None


def _extension_value(item: Dict[str, Any], url: str) -> Optional[str]:
    for ext in item.get("extension") or []:
        if isinstance(ext, dict) and ext.get("url") == url:
            return ext.get("valueString")
    return None


# ----------------
# Envelopes
# ----------------

def unwrap(envelope: Any) -> Dict[str, Any]:
    """Bundle entry or bare resource -> resource dict."""
    if isinstance(envelope, dict):
        inner = envelope.get("resource")
        if isinstance(inner, dict):
            return inner
        return envelope
    raise MalformedResourceError(
        f"Expected a resource mapping, got {type(envelope).__name__}",
        detail={"payload_type": type(envelope).__name__},
    )


RESOURCE_FAULTS = (MalformedResourceError, AttributeError, TypeError, ValueError)


def normalize_many(envelopes: Iterable[Any], fn: Callable[[Dict[str, Any]], T]) -> List[T]:
    """Apply `fn` to each resource; a resource that fails is logged and skipped."""
    out: List[T] = []
    for env in envelopes or []:
        try:
            out.append(fn(unwrap(env)))
        except RESOURCE_FAULTS as e:
            logger.warning("Skipping malformed resource: %s", e)
    return out


# ----------------
# Patient
# ----------------

def _patient_name(raw: Dict[str, Any]) -> str:
    names = raw.get("name") or []
    if not names or not isinstance(names[0], dict):
        return "Unknown Patient"
    first = names[0]
    given = first.get("given") or []
    if isinstance(given, str):
        given = [given]
    given = " ".join(str(g) for g in given if g)
    family = first.get("family") or ""
    full = f"{given} {family}".strip()
    if full:
        return full
    return first.get("text") or "Unknown Patient"


def derive_status(encounter: Optional[EncounterRecord]) -> str:
    if encounter is None:
        return STATUS_IN_TREATMENT
    status = encounter.status
    if status in ("planned", "arrived", "triaged"):
        return STATUS_WAITING
    if status == "in-progress" and encounter.encounter_class in INPATIENT_CLASSES:
        return STATUS_ADMITTED
    if status in ("in-progress", "onleave"):
        return STATUS_IN_TREATMENT
    if status == "finished":
        return STATUS_COMPLETED
    return STATUS_IN_TREATMENT


def normalize_patient(
    raw: Any,
    *,
    encounter: Optional[EncounterRecord] = None,
    vitals: Optional[VitalsSnapshot] = None,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
    default_wait: int = 0,
) -> PatientSummary:
    res = unwrap(raw)
    pid = res.get("id")
    if not pid:
        raise MalformedResourceError("Patient resource has no id", detail={"resource": res.get("resourceType")})

    now = now or utc_now()
    status = derive_status(encounter)

    wait = default_wait
    if encounter is not None:
        if status == STATUS_WAITING and encounter.start_time is not None:
            wait = minutes_between(encounter.start_time, now)
        elif encounter.wait_minutes is not None:
            wait = encounter.wait_minutes

    return PatientSummary(
        id=str(pid),
        name=_patient_name(res),
        age=calculate_age(parse_birth_date(res.get("birthDate")), today or now.date()),
        gender=res.get("gender") or "unknown",
        status=status,
        priority=(encounter.priority if encounter and encounter.priority else PRIORITY_NORMAL),
        department=(encounter.department if encounter and encounter.department else "Emergency"),
        wait_time_minutes=max(0, int(wait)),
        vitals=vitals,
    )


# ----------------
# Encounter
# ----------------

def _encounter_class(raw: Dict[str, Any]) -> str:
    cls = raw.get("class")
    # R4: a single Coding; R5 and some servers: a list of CodeableConcepts
    if isinstance(cls, list):
        cls = cls[0] if cls else None
    return _first_code(cls) or ""


def _encounter_department(raw: Dict[str, Any]) -> Optional[str]:
    service = raw.get("serviceType")
    if isinstance(service, list):
        service = service[0] if service else None
    text = _concept_text(service)
    if text:
        return text
    for loc in raw.get("location") or []:
        display = _mapping(_mapping(loc).get("location")).get("display")
        if display:
            return str(display)
    return None


def _bed_assigned_at(raw: Dict[str, Any]) -> Optional[datetime]:
    for loc in raw.get("location") or []:
        start = parse_datetime(_mapping(_mapping(loc).get("period")).get("start"))
        if start:
            return start
    return None


def _queue_minutes(raw: Dict[str, Any]) -> Optional[int]:
    """Time spent in arrived/triaged states, from closed statusHistory periods."""
    total = None
    for item in raw.get("statusHistory") or []:
        if not isinstance(item, dict) or item.get("status") not in ("arrived", "triaged"):
            continue
        period = _mapping(item.get("period"))
        start, end = parse_datetime(period.get("start")), parse_datetime(period.get("end"))
        if start and end and end >= start:
            total = (total or 0) + minutes_between(start, end)
    return total


def normalize_encounter(raw: Any) -> EncounterRecord:
    res = unwrap(raw)
    eid = res.get("id")
    if not eid:
        raise MalformedResourceError("Encounter resource has no id", detail={"resource": res.get("resourceType")})
    period = _mapping(res.get("period"))
    return EncounterRecord(
        id=str(eid),
        patient_id=_reference_id(res.get("subject"), "Patient"),
        start_time=parse_datetime(period.get("start")),
        end_time=parse_datetime(period.get("end")),
        status=res.get("status") if res.get("status") in ENCOUNTER_STATUSES else "unknown",
        encounter_class=_encounter_class(res),
        priority=PRIORITY_CODES.get((_first_code(res.get("priority")) or "").upper()),
        department=_encounter_department(res),
        bed_assigned_at=_bed_assigned_at(res),
        wait_minutes=_queue_minutes(res),
        events=tuple(encounter_timeline_events(res)),
    )


def encounter_timeline_events(raw: Any) -> List[TimelineEvent]:
    """Clinical events for one encounter: start, statusHistory entries, end. Newest first."""
    res = unwrap(raw)
    eid = res.get("id") or "unknown"
    pid = _reference_id(res.get("subject"), "Patient") or ""
    period = _mapping(res.get("period"))
    events: List[TimelineEvent] = []

    start = parse_datetime(period.get("start"))
    if start:
        events.append(TimelineEvent(
            id=f"encounter_{eid}_start",
            patient_id=pid,
            timestamp=start,
            kind=KIND_CLINICAL,
            description=f"Encounter started ({res.get('status') or 'unknown'})",
            priority="high",
            event_type="encounter_start",
            source="fhir",
        ))

    for i, item in enumerate(res.get("statusHistory") or []):
        if not isinstance(item, dict):
            continue
        ts = parse_datetime(_mapping(item.get("period")).get("start"))
        if ts is None:
            continue
        label = _extension_value(item, EXT_EVENT_LABEL)
        description = _extension_value(item, EXT_EVENT_DESCRIPTION)
        state = _extension_value(item, EXT_EVENT_STATE)
        events.append(TimelineEvent(
            id=f"encounter_{eid}_status_{i}",
            patient_id=pid,
            timestamp=ts,
            kind=KIND_CLINICAL,
            description=description or label or f"Status changed to {item.get('status') or 'unknown'}",
            priority="medium",
            status=EVENT_PENDING if state == EVENT_PENDING else EVENT_COMPLETED,
            event_type=label or "status_change",
            source="fhir",
        ))

    end = parse_datetime(period.get("end"))
    if end:
        events.append(TimelineEvent(
            id=f"encounter_{eid}_end",
            patient_id=pid,
            timestamp=end,
            kind=KIND_CLINICAL,
            description="Encounter ended",
            priority="medium",
            event_type="encounter_end",
            source="fhir",
        ))

    return sorted(events, key=lambda e: e.timestamp, reverse=True)


# ----------------
# Observations -> vitals
# ----------------

def _quantity(obs_or_component: Dict[str, Any]) -> Tuple[Optional[float], str]:
    q = _mapping(obs_or_component.get("valueQuantity"))
    unit = str(q.get("code") or q.get("unit") or "")
    return _safe_float(q.get("value")), unit


def _to_celsius(value: float, unit: str) -> float:
    if unit.strip().lower() in FAHRENHEIT_UNITS:
        return (value - 32.0) * 5.0 / 9.0
    return value


def _read_vital(obs: Dict[str, Any], offer: Callable[[str, datetime, Any], None]) -> None:
    """Offer the first tabled vital found on one observation."""
    ts = parse_datetime(obs.get("effectiveDateTime")) or parse_datetime(obs.get("issued")) or _OLDEST

    for code in _loinc_codes(obs):
        if code in LOINC_BP_PANEL:
            for comp in obs.get("component") or []:
                if not isinstance(comp, dict):
                    continue
                comp_codes = _loinc_codes(comp)
                value, _ = _quantity(comp)
                if value is None:
                    continue
                if LOINC_SYSTOLIC.intersection(comp_codes):
                    offer("systolic", ts, int(round(value)))
                elif LOINC_DIASTOLIC.intersection(comp_codes):
                    offer("diastolic", ts, int(round(value)))
            return

        value, unit = _quantity(obs)
        if value is None:
            continue
        if code in LOINC_HEART_RATE:
            offer("heart_rate", ts, int(round(value)))
        elif code in LOINC_SYSTOLIC:
            offer("systolic", ts, int(round(value)))
        elif code in LOINC_DIASTOLIC:
            offer("diastolic", ts, int(round(value)))
        elif code in LOINC_TEMPERATURE:
            offer("temperature_c", ts, round(_to_celsius(value, unit), 1))
        elif code in LOINC_SPO2:
            offer("spo2_percent", ts, int(round(value)))
        elif code in LOINC_RESP_RATE:
            offer("respiratory_rate", ts, int(round(value)))
        else:
            continue
        return


def normalize_observations_to_vitals(raw_list: Iterable[Any], patient_id: str) -> VitalsSnapshot:
    """Latest observation per vital sign for one patient.

    Only observations referencing Patient/{patient_id} count. Codes outside
    the table are ignored. Unparseable values are ignored. BP needs both halves.
    """
    latest: Dict[str, Tuple[datetime, Any]] = {}

    def offer(field_name: str, ts: datetime, value: Any) -> None:
        current = latest.get(field_name)
        if current is None or ts > current[0]:
            latest[field_name] = (ts, value)

    for env in raw_list or []:
        try:
            obs = unwrap(env)
            if _reference_id(obs.get("subject"), "Patient") != str(patient_id):
                continue
            _read_vital(obs, offer)
        except RESOURCE_FAULTS as e:
            logger.warning("Skipping malformed observation: %s", e)

    def pick(name: str) -> Any:
        return latest[name][1] if name in latest else NOT_AVAILABLE

    bp: Any = NOT_AVAILABLE
    if "systolic" in latest and "diastolic" in latest:
        bp = BloodPressure(latest["systolic"][1], latest["diastolic"][1])

    return VitalsSnapshot(
        heart_rate=pick("heart_rate"),
        blood_pressure=bp,
        temperature_c=pick("temperature_c"),
        respiratory_rate=pick("respiratory_rate"),
        spo2_percent=pick("spo2_percent"),
    )


# ----------------
# DiagnosticReport
# ----------------

def diagnostic_category(raw: Dict[str, Any]) -> str:
    categories = raw.get("category") or []
    if isinstance(categories, dict):
        categories = [categories]
    codes, texts = set(), []
    for concept in categories:
        if not isinstance(concept, dict):
            continue
        texts.append(_concept_text(concept).lower())
        for c in concept.get("coding") or []:
            if isinstance(c, dict) and c.get("code"):
                codes.add(str(c["code"]).upper())
    texts.append(_concept_text(raw.get("code")).lower())

    if "RAD" in codes or any("imaging" in t or "radiology" in t for t in texts):
        return CATEGORY_IMAGING
    if "LAB" in codes or any("lab" in t for t in texts):
        return CATEGORY_LAB
    return CATEGORY_OTHER


def normalize_diagnostic_report(raw: Any) -> DiagnosticEvent:
    res = unwrap(raw)
    rid = res.get("id")
    if not rid:
        raise MalformedResourceError("DiagnosticReport has no id", detail={"resource": res.get("resourceType")})
    requested = parse_datetime(res.get("effectiveDateTime"))
    if requested is None:
        requested = parse_datetime(_mapping(res.get("effectivePeriod")).get("start"))
    return DiagnosticEvent(
        id=str(rid),
        encounter_id=_reference_id(res.get("encounter"), "Encounter"),
        category=diagnostic_category(res),
        requested_at=requested,
        reported_at=parse_datetime(res.get("issued")),
    )
