"""Static fixture source.

Fixtures are dashboard-shaped JSON (what a demo or a test wants to state);
this client reshapes them into the same FHIR bundle entries the remote
server returns, so both sources go through one adapter path.

Files under fixtures_dir:
- ed-summary.json            {"patients": [{id, name, birthDate|age, gender, status, priority,
                               department, waitTime, vitals: {hr, bp, temp, rr, spo2}}]}
- department-analytics.json  {"diagnostics": [...], "admissions": [...]}
- encounter-NNN.json         {encounterId, patientId, status, class, department, timeline: [...]}
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import SyncSettings
from .fhir_adapter import (
    EXT_EVENT_DESCRIPTION,
    EXT_EVENT_LABEL,
    EXT_EVENT_STATE,
    parse_datetime,
)
from .fhir_client import SourceClient
from .models import utc_now

logger = logging.getLogger(__name__)

SUMMARY_FILE = "ed-summary.json"
ANALYTICS_FILE = "department-analytics.json"

LOINC = "http://loinc.org"
V3_ACT_CODE = "http://terminology.hl7.org/CodeSystem/v3-ActCode"
V3_ACT_PRIORITY = "http://terminology.hl7.org/CodeSystem/v3-ActPriority"
V2_DIAG_SERVICE = "http://terminology.hl7.org/CodeSystem/v2-0074"

# dashboard status -> (Encounter.status, Encounter.class)
STATUS_TO_ENCOUNTER = {
    "waiting": ("arrived", "EMER"),
    "in-treatment": ("in-progress", "EMER"),
    "admitted": ("in-progress", "IMP"),
    "completed": ("finished", "EMER"),
}
PRIORITY_TO_CODE = {"urgent": "EM", "normal": "R", "low": "EL"}


def encounter_key(patient_id: str) -> Optional[str]:
    """'P001' -> '001', 'P7' -> '007'. None when the id has no numeric suffix."""
    m = re.search(r"(\d+)$", str(patient_id))
    if not m:
        return None
    return f"{int(m.group(1)):03d}"


def _ref(resource_type: str, rid: Any) -> Dict[str, str]:
    return {"reference": f"{resource_type}/{rid}"}


def _split_name(name: str) -> Dict[str, Any]:
    parts = (name or "").split()
    if not parts:
        return {"text": "Unknown Patient"}
    if len(parts) == 1:
        return {"given": parts, "text": name}
    return {"given": parts[:-1], "family": parts[-1], "text": name}


def _int_or_none(v: Any) -> Optional[int]:
    if v is None or isinstance(v, bool):
        return None
    try:
        return int(round(float(v)))
    except (TypeError, ValueError):
        return None


# ----------------
# Fixture -> FHIR reshaping
# ----------------

def build_patient(p: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    birth = p.get("birthDate")
    age = _int_or_none(p.get("age"))
    if not birth and age is not None:
        birth = f"{now.year - age}-01-01"
    res: Dict[str, Any] = {
        "resourceType": "Patient",
        "id": p["id"],
        "name": [_split_name(p.get("name") or "")],
        "gender": str(p.get("gender") or "unknown").lower(),
    }
    if birth:
        res["birthDate"] = birth
    return res


def _timeline_history(doc: Dict[str, Any]) -> List[Dict[str, Any]]:
    history = []
    for item in doc.get("timeline") or []:
        if not isinstance(item, dict) or not item.get("time"):
            continue
        ext = [{"url": EXT_EVENT_LABEL, "valueString": str(item.get("event") or "")}]
        if item.get("description"):
            ext.append({"url": EXT_EVENT_DESCRIPTION, "valueString": str(item["description"])})
        if item.get("status"):
            ext.append({"url": EXT_EVENT_STATE, "valueString": str(item["status"])})
        history.append({
            "status": item.get("encounterStatus") or "in-progress",
            "period": {"start": item["time"]},
            "extension": ext,
        })
    return history


def build_encounter(p: Dict[str, Any], doc: Optional[Dict[str, Any]], now: datetime) -> Dict[str, Any]:
    status, klass = STATUS_TO_ENCOUNTER.get(p.get("status") or "", ("in-progress", "EMER"))
    if doc and doc.get("class") and p.get("status") != "admitted":
        klass = str(doc["class"])
    wait = max(0, _int_or_none(p.get("waitTime")) or 0)

    times = sorted(
        t for t in (parse_datetime((i or {}).get("time")) for i in (doc or {}).get("timeline") or []) if t
    )
    if status == "arrived" or not times:
        start = now - timedelta(minutes=wait + (0 if status == "arrived" else 60))
    else:
        start = times[0]

    history: List[Dict[str, Any]] = []
    if status != "arrived":
        history.append({
            "status": "arrived",
            "period": {"start": start.isoformat(), "end": (start + timedelta(minutes=wait)).isoformat()},
        })
    history.extend(_timeline_history(doc or {}))

    period: Dict[str, str] = {"start": start.isoformat()}
    if status == "finished":
        period["end"] = (times[-1] if times else now).isoformat()

    department = (doc or {}).get("department") or p.get("department") or "Emergency"
    return {
        "resourceType": "Encounter",
        "id": (doc or {}).get("encounterId") or f"enc-{p['id']}",
        "status": status,
        "class": {"system": V3_ACT_CODE, "code": klass},
        "priority": {"coding": [{"system": V3_ACT_PRIORITY, "code": PRIORITY_TO_CODE.get(p.get("priority") or "", "R")}]},
        "serviceType": {"text": department},
        "subject": _ref("Patient", p["id"]),
        "period": period,
        "statusHistory": history,
    }


def build_admission(a: Dict[str, Any]) -> Dict[str, Any]:
    res: Dict[str, Any] = {
        "resourceType": "Encounter",
        "id": a["encounterId"],
        "status": "finished" if a.get("end") else "in-progress",
        "class": {"system": V3_ACT_CODE, "code": "IMP"},
        "subject": _ref("Patient", a.get("patientId")),
        "period": {k: a[src] for k, src in (("start", "start"), ("end", "end")) if a.get(src)},
    }
    if a.get("department"):
        res["serviceType"] = {"text": a["department"]}
    if a.get("bedAssigned"):
        res["location"] = [{
            "location": {"display": a.get("department") or "Ward"},
            "period": {"start": a["bedAssigned"]},
        }]
    return res


def _observation(pid: str, enc_id: str, key: str, code: str, display: str, when: str, **value: Any) -> Dict[str, Any]:
    return {
        "resourceType": "Observation",
        "id": f"obs-{pid}-{key}",
        "status": "final",
        "category": [{"coding": [{"code": "vital-signs"}]}],
        "code": {"coding": [{"system": LOINC, "code": code, "display": display}]},
        "subject": _ref("Patient", pid),
        "encounter": _ref("Encounter", enc_id),
        "effectiveDateTime": when,
        **value,
    }


def build_observations(p: Dict[str, Any], enc_id: str, now: datetime) -> List[Dict[str, Any]]:
    vitals = p.get("vitals") or {}
    pid, when = p["id"], now.isoformat()
    out: List[Dict[str, Any]] = []

    simple = (
        ("hr", "8867-4", "Heart rate", "/min"),
        ("rr", "9279-1", "Respiratory rate", "/min"),
        ("spo2", "2708-6", "Oxygen saturation", "%"),
    )
    for key, code, display, unit in simple:
        v = _int_or_none(vitals.get(key))
        if v is not None:
            out.append(_observation(pid, enc_id, key, code, display, when,
                                    valueQuantity={"value": v, "unit": unit, "code": unit}))

    try:
        temp = float(vitals.get("temp"))
    except (TypeError, ValueError):
        temp = None
    if temp is not None:
        out.append(_observation(pid, enc_id, "temp", "8310-5", "Body temperature", when,
                                valueQuantity={"value": temp, "unit": "Cel", "code": "Cel"}))

    bp = str(vitals.get("bp") or "")
    if "/" in bp:
        sys_v, dia_v = (_int_or_none(x) for x in bp.split("/", 1))
        if sys_v is not None and dia_v is not None:
            out.append(_observation(pid, enc_id, "bp", "85354-9", "Blood pressure panel", when, component=[
                {"code": {"coding": [{"system": LOINC, "code": "8480-6"}]},
                 "valueQuantity": {"value": sys_v, "unit": "mm[Hg]"}},
                {"code": {"coding": [{"system": LOINC, "code": "8462-4"}]},
                 "valueQuantity": {"value": dia_v, "unit": "mm[Hg]"}},
            ]))
    return out


def build_diagnostic_report(d: Dict[str, Any]) -> Dict[str, Any]:
    category = str(d.get("category") or "").upper()
    res: Dict[str, Any] = {
        "resourceType": "DiagnosticReport",
        "id": d["id"],
        "status": "final",
        "category": [{"coding": [{"system": V2_DIAG_SERVICE, "code": category}]}],
        "code": {"text": d.get("name") or ("Imaging study" if category == "RAD" else "Laboratory panel")},
        "subject": _ref("Patient", d.get("patientId")),
    }
    if d.get("encounterId"):
        res["encounter"] = _ref("Encounter", d["encounterId"])
    if d.get("requestedAt"):
        res["effectiveDateTime"] = d["requestedAt"]
    if d.get("reportedAt"):
        res["issued"] = d["reportedAt"]
    return res


# ----------------
# Filters
# ----------------

def _ref_matches(ref: Any, value: Any) -> bool:
    wanted = str(value).rsplit("/", 1)[-1]
    return isinstance(ref, dict) and str(ref.get("reference") or "").rsplit("/", 1)[-1] == wanted


def _matches(res: Dict[str, Any], params: Dict[str, Any]) -> bool:
    rtype = res.get("resourceType")
    for key, value in params.items():
        if value is None or (key.startswith("_") and key != "_id"):
            continue
        if key == "_id":
            if str(res.get("id")) != str(value):
                return False
        elif key in ("patient", "subject"):
            target = res if rtype == "Patient" else None
            if target is not None:
                if str(res.get("id")) != str(value).rsplit("/", 1)[-1]:
                    return False
            elif not _ref_matches(res.get("subject"), value):
                return False
        elif key == "encounter":
            if not _ref_matches(res.get("encounter"), value):
                return False
        elif key == "category":
            codes = {str(c.get("code") or "").lower()
                     for cat in res.get("category") or [] for c in (cat.get("coding") or [])}
            if str(value).lower() not in codes:
                return False
        elif key == "class":
            if str((res.get("class") or {}).get("code") or "").upper() != str(value).upper():
                return False
        elif key == "status":
            if str(res.get("status")) not in str(value).split(","):
                return False
        elif key == "code":
            codes = {str(c.get("code")) for c in (res.get("code") or {}).get("coding") or []}
            if not codes.intersection(str(value).split(",")):
                return False
    return True


# ----------------
# Client
# ----------------

class MockSourceClient(SourceClient):
    name = "mock"

    def __init__(self, fixtures_dir: Optional[str | Path] = None, clock: Optional[Callable[[], datetime]] = None):
        self.fixtures_dir = Path(fixtures_dir) if fixtures_dir else SyncSettings().fixtures_dir
        self.clock = clock or utc_now

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "MockSourceClient":
        return cls(fixtures_dir=settings.fixtures_dir)

    # ---------- blocking fixture access ----------

    def _read_json(self, name: str) -> Optional[Any]:
        p = self.fixtures_dir / name
        if not p.exists():
            return None
        try:
            return json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Cannot read mock fixture %s: %s", p, e)
            return None

    def _build_resources(self) -> Dict[str, List[Dict[str, Any]]]:
        now = self.clock()
        out: Dict[str, List[Dict[str, Any]]] = {t: [] for t in ("Patient", "Encounter", "Observation", "DiagnosticReport")}

        summary = self._read_json(SUMMARY_FILE)
        patients = summary.get("patients") if isinstance(summary, dict) else None
        for p in patients or []:
            if not isinstance(p, dict) or not p.get("id"):
                logger.warning("Skipping mock patient without id: %r", p)
                continue
            key = encounter_key(p["id"])
            doc = self._read_json(f"encounter-{key}.json") if key else None
            if doc is not None and not isinstance(doc, dict):
                doc = None
            try:
                enc = build_encounter(p, doc, now)
                patient = build_patient(p, now)
                observations = build_observations(p, enc["id"], now)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping mock patient %s: %s", p.get("id"), e)
                continue
            out["Patient"].append(patient)
            out["Encounter"].append(enc)
            out["Observation"].extend(observations)

        analytics = self._read_json(ANALYTICS_FILE)
        if isinstance(analytics, dict):
            for a in analytics.get("admissions") or []:
                if isinstance(a, dict) and a.get("encounterId"):
                    out["Encounter"].append(build_admission(a))
            for d in analytics.get("diagnostics") or []:
                if isinstance(d, dict) and d.get("id"):
                    out["DiagnosticReport"].append(build_diagnostic_report(d))
        return out

    # ---------- async surface ----------

    async def test_connection(self) -> bool:
        summary = await asyncio.to_thread(self._read_json, SUMMARY_FILE)
        return isinstance(summary, dict)

    async def search(self, resource_type: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        params = dict(params or {})
        resources = await asyncio.to_thread(self._build_resources)
        matched = [r for r in resources.get(resource_type, []) if _matches(r, params)]
        count = _int_or_none(params.get("_count"))
        if count is not None:
            matched = matched[: max(0, count)]
        return [{"resource": r} for r in matched]

    async def get_resource(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        resources = await asyncio.to_thread(self._build_resources)
        for r in resources.get(resource_type, []):
            if str(r.get("id")) == str(resource_id):
                return r
        return None
