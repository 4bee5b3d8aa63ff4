from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .models import (
    PRIORITY_URGENT,
    STATUS_WAITING,
    AnalyticsSnapshot,
    DashboardSnapshot,
    EncounterRecord,
    EnrichmentInsight,
    PatientSummary,
    utc_now,
)

logger = logging.getLogger(__name__)


def dedup_patients(patients: Iterable[PatientSummary]) -> List[PatientSummary]:
    """First occurrence of each id wins; order preserved."""
    seen = set()
    out = []
    for p in patients:
        if p.id in seen:
            logger.debug("Dropping duplicate patient id %s", p.id)
            continue
        seen.add(p.id)
        out.append(p)
    return out


def _average_wait(patients: List[PatientSummary]) -> int:
    if not patients:
        return 0
    return int(round(sum(p.wait_time_minutes for p in patients) / len(patients)))


def _occupancy(active: int, total_beds: int) -> int:
    if total_beds <= 0:
        return 0
    return int(round(active / total_beds * 100))


def compute_kpis(patients: List[PatientSummary], encounters: List[EncounterRecord], total_beds: int) -> Dict[str, int]:
    active = sum(1 for e in encounters if e.status == "in-progress")
    return {
        "totalPatients": len(patients),
        "waitingPatients": sum(1 for p in patients if p.status == STATUS_WAITING),
        "averageWaitTime": _average_wait(patients),
        "bedOccupancy": _occupancy(active, total_beds),
        "criticalAlerts": sum(1 for p in patients if p.priority == PRIORITY_URGENT),
    }


def build_departments(patients: List[PatientSummary], encounters: List[EncounterRecord],
                      total_beds: int) -> List[Dict[str, Any]]:
    by_dept: Dict[str, List[PatientSummary]] = {}
    for p in patients:
        by_dept.setdefault(p.department, []).append(p)

    active_by_dept: Dict[str, int] = {}
    for e in encounters:
        if e.status == "in-progress":
            dept = e.department or "Emergency"
            active_by_dept[dept] = active_by_dept.get(dept, 0) + 1

    return [
        {
            "name": name,
            "status": "operational",
            "patients": len(members),
            "waitTime": _average_wait(members),
            "occupancy": _occupancy(active_by_dept.get(name, 0), total_beds),
        }
        for name, members in by_dept.items()
    ]


def build_alerts(patients: List[PatientSummary], now: datetime) -> List[Dict[str, Any]]:
    return [
        {
            "id": f"alert-{p.id}",
            "title": "Critical Patient Alert",
            "description": f"Patient {p.name} requires immediate attention",
            "severity": "critical",
            "patient": p.name,
            "patientId": p.id,
            "timestamp": now.isoformat(),
        }
        for p in patients
        if p.priority == PRIORITY_URGENT
    ]


def build_snapshot(
    patients: Iterable[PatientSummary],
    encounters: Iterable[EncounterRecord],
    analytics: AnalyticsSnapshot,
    *,
    total_beds: int = 20,
    insights: Optional[Dict[str, EnrichmentInsight]] = None,
    source: str = "none",
    now: Optional[datetime] = None,
) -> DashboardSnapshot:
    now = now or utc_now()
    unique = dedup_patients(patients)
    encounters = list(encounters)
    return DashboardSnapshot(
        kpis=compute_kpis(unique, encounters, total_beds),
        patients=tuple(unique),
        departments=tuple(build_departments(unique, encounters, total_beds)),
        alerts=tuple(build_alerts(unique, now)),
        analytics=analytics,
        insights=dict(insights or {}),
        source=source,
        generated_at=now,
    )
