"""Seeded synthetic values.

Everything random in the sync layer goes through a MockDataGenerator so a
seed makes runs (and tests) reproducible:
- fallback wait times and bed waits when the record does not carry them
- the simple fallback timeline used when enrichment is unavailable
- full mock fixture sets for scripts/generate_fixtures.py
"""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from faker import Faker

# (type, description, priority)
ED_EVENT_CATALOGUE: List[Tuple[str, str, str]] = [
    ("admission", "Patient admitted to emergency department", "high"),
    ("vital_check", "Vital signs checked", "medium"),
    ("lab_order", "Laboratory tests ordered", "medium"),
    ("imaging", "Diagnostic imaging scheduled", "high"),
    ("consultation", "Specialist consultation requested", "high"),
    ("medication", "Medication administered", "medium"),
    ("discharge_plan", "Discharge planning initiated", "low"),
]

DEPARTMENT_POOL = ["Emergency", "Cardiology", "Orthopedics", "Pediatrics", "Neurology"]

STATUS_POOL = ["waiting", "in-treatment", "admitted", "completed"]
PRIORITY_POOL = ["urgent", "normal", "normal", "low"]

# Timeline steps for a per-patient encounter document: (event, description, minutes after arrival)
ENCOUNTER_STEPS: List[Tuple[str, str, int]] = [
    ("Arrival", "Patient arrived at triage desk", 0),
    ("Triage", "Triage assessment completed", 8),
    ("Nurse Assessment", "Initial nursing assessment", 20),
    ("Doctor Review", "Reviewed by emergency physician", 45),
    ("Pathology Request", "Blood panel requested", 60),
    ("Imaging Request", "Chest X-ray requested", 70),
    ("Disposition", "Disposition decision recorded", 150),
]


class MockDataGenerator:
    """Injectable source of randomness. Same seed, same sequence."""

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed
        self.random = random.Random(seed)
        self.fake = Faker()
        if seed is not None:
            self.fake.seed_instance(seed)

    # ---------- values used by the sync layer ----------

    def wait_time_minutes(self) -> int:
        return self.random.randint(10, 69)

    def bed_wait_minutes(self) -> int:
        return self.random.randint(60, 179)

    def timeline_events(self, patient_id: str, now: datetime) -> List[Dict[str, Any]]:
        """3-7 catalogue events spaced ~15 minutes apart going back from `now`.

        Returns collaborator-shaped payloads (see timeline.TimelineEnricher.coerce_event).
        """
        count = self.random.randint(3, 7)
        picked = self.random.sample(ED_EVENT_CATALOGUE, count)
        events: List[Dict[str, Any]] = []
        for index, (etype, description, priority) in enumerate(picked):
            offset = index * 15 + self.random.random() * 30
            events.append({
                "id": f"ai_{patient_id}_{index}",
                "timestamp": (now - timedelta(minutes=offset)).isoformat(),
                "type": etype,
                "description": description,
                "priority": priority,
                "source": "generated",
                "confidence": round(self.random.random() * 0.3 + 0.7, 3),
                "status": "completed" if self.random.random() > 0.2 else "pending",
            })
        return events

    # ---------- fixture generation ----------

    def gen_summary_patient(self, index: int) -> Dict[str, Any]:
        sex = self.random.choice(["Male", "Female"])
        name = self.fake.name_female() if sex == "Female" else self.fake.name_male()
        parts = name.split()
        dob = self.fake.date_of_birth(minimum_age=18, maximum_age=90)
        patient: Dict[str, Any] = {
            "id": f"P{index:03d}",
            "name": f"{parts[0]} {parts[-1]}",
            "birthDate": dob.strftime("%Y-%m-%d"),
            "gender": sex,
            "status": self.random.choice(STATUS_POOL),
            "priority": self.random.choice(PRIORITY_POOL),
            "department": self.random.choice(DEPARTMENT_POOL),
            "waitTime": self.wait_time_minutes(),
        }
        # Roughly one in five patients has no vitals recorded yet.
        if self.random.random() > 0.2:
            patient["vitals"] = {
                "hr": self.random.randint(55, 130),
                "bp": f"{self.random.randint(95, 170)}/{self.random.randint(55, 100)}",
                "temp": round(self.random.uniform(36.0, 39.5), 1),
                "rr": self.random.randint(12, 26),
                "spo2": self.random.randint(88, 100),
            }
        return patient

    def gen_encounter_document(self, patient: Dict[str, Any], arrival: datetime) -> Dict[str, Any]:
        finished = patient.get("status") == "completed"
        steps = ENCOUNTER_STEPS if finished else ENCOUNTER_STEPS[: self.random.randint(3, len(ENCOUNTER_STEPS))]
        timeline = []
        for event, description, minutes in steps:
            jitter = self.random.randint(0, 5)
            timeline.append({
                "time": (arrival + timedelta(minutes=minutes + jitter)).isoformat(),
                "event": event,
                "description": description,
                "status": "completed",
            })
        if not finished and timeline:
            timeline[-1]["status"] = "pending"
        return {
            "encounterId": f"E{patient['id'][1:]}",
            "patientId": patient["id"],
            "status": "finished" if finished else "in-progress",
            "class": "EMER",
            "department": patient.get("department", "Emergency"),
            "timeline": timeline,
        }

    def gen_diagnostic(self, index: int, encounter_id: str, patient_id: str, base: datetime) -> Dict[str, Any]:
        category = self.random.choice(["LAB", "LAB", "RAD"])
        requested = base + timedelta(minutes=self.random.randint(10, 90))
        low, high = (20, 90) if category == "LAB" else (40, 150)
        reported = requested + timedelta(minutes=self.random.randint(low, high))
        return {
            "id": f"DR{index:03d}",
            "encounterId": encounter_id,
            "patientId": patient_id,
            "category": category,
            "requestedAt": requested.isoformat(),
            "reportedAt": reported.isoformat(),
        }

    def gen_admission(self, index: int, patient_id: str, base: datetime) -> Dict[str, Any]:
        start = base - timedelta(hours=self.random.randint(2, 12))
        bed = start + timedelta(minutes=self.bed_wait_minutes())
        end = bed + timedelta(minutes=self.random.randint(10, 45))
        return {
            "encounterId": f"ADM{index:03d}",
            "patientId": patient_id,
            "department": self.random.choice(DEPARTMENT_POOL),
            "start": start.isoformat(),
            "bedAssigned": bed.isoformat(),
            "end": end.isoformat(),
        }

    def gen_fixture_set(self, n_patients: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """ed-summary + department-analytics + per-patient encounter documents."""
        now = now or datetime.now(timezone.utc).replace(microsecond=0)
        patients = [self.gen_summary_patient(i) for i in range(1, n_patients + 1)]

        encounters: Dict[str, Dict[str, Any]] = {}
        diagnostics: List[Dict[str, Any]] = []
        admissions: List[Dict[str, Any]] = []
        for p in patients:
            arrival = now - timedelta(minutes=int(p["waitTime"]) + self.random.randint(30, 240))
            doc = self.gen_encounter_document(p, arrival)
            encounters[p["id"][-3:]] = doc
            for _ in range(self.random.randint(0, 2)):
                diagnostics.append(self.gen_diagnostic(len(diagnostics) + 1, doc["encounterId"], p["id"], arrival))
            if p["status"] in ("admitted", "completed"):
                admissions.append(self.gen_admission(len(admissions) + 1, p["id"], now))

        return {
            "ed-summary": {"generatedAt": now.isoformat(), "patients": patients},
            "department-analytics": {"diagnostics": diagnostics, "admissions": admissions},
            "encounters": encounters,
        }
