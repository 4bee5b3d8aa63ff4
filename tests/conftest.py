"""
Shared fixtures for all tests.

A small three-patient fixture set on disk plus test-double source clients
that count fetches and can be held mid-cycle.
"""

import asyncio
import json
from datetime import datetime, timezone

import pytest

from dashsync.config import SyncSettings
from dashsync.fhir_client import SourceClient
from dashsync.mock_client import MockSourceClient


NOW = datetime(2026, 10, 18, 10, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fixture data
# ---------------------------------------------------------------------------

ED_SUMMARY = {
    "patients": [
        {
            "id": "P001",
            "name": "John Smith",
            "birthDate": "1979-03-14",
            "gender": "Male",
            "status": "in-treatment",
            "priority": "urgent",
            "department": "Emergency",
            "waitTime": 15,
            "vitals": {"hr": 120, "bp": "150/95", "temp": 38.5, "rr": 22, "spo2": 92},
        },
        {
            "id": "P002",
            "name": "Sarah Johnson",
            "birthDate": "1992-11-02",
            "gender": "Female",
            "status": "waiting",
            "priority": "normal",
            "department": "Emergency",
            "waitTime": 35,
        },
        {
            "id": "P003",
            "name": "Michael Brown",
            "birthDate": "1956-07-21",
            "gender": "Male",
            "status": "admitted",
            "priority": "urgent",
            "department": "Cardiology",
            "waitTime": 22,
            "vitals": {"hr": 88, "bp": "135/85", "temp": 37.1, "rr": 18, "spo2": 96},
        },
    ]
}

DEPARTMENT_ANALYTICS = {
    "diagnostics": [
        {"id": "DR1", "encounterId": "E003", "patientId": "P003", "category": "LAB",
         "requestedAt": "2026-10-18T06:40:00+00:00", "reportedAt": "2026-10-18T07:20:00+00:00"},
        {"id": "DR2", "encounterId": "E003", "patientId": "P003", "category": "LAB",
         "requestedAt": "2026-10-18T06:50:00+00:00", "reportedAt": "2026-10-18T07:40:00+00:00"},
        {"id": "DR3", "encounterId": "E003", "patientId": "P003", "category": "RAD",
         "requestedAt": "2026-10-18T06:55:00+00:00", "reportedAt": "2026-10-18T08:05:00+00:00"},
    ],
    "admissions": [
        {"encounterId": "ADM1", "patientId": "P009", "department": "Neurology",
         "start": "2026-10-17T18:00:00+00:00", "bedAssigned": "2026-10-17T19:40:00+00:00",
         "end": "2026-10-17T20:00:00+00:00"},
    ],
}

ENCOUNTER_003 = {
    "encounterId": "E003",
    "patientId": "P003",
    "status": "in-progress",
    "class": "IMP",
    "department": "Cardiology",
    "timeline": [
        {"time": "2026-10-18T06:20:00+00:00", "event": "Arrival", "description": "Palpitations", "status": "completed"},
        {"time": "2026-10-18T06:30:00+00:00", "event": "Triage", "description": "Triage category 2", "status": "completed"},
        {"time": "2026-10-18T09:40:00+00:00", "event": "Bed Allocation", "description": "Waiting for CCU bed", "status": "pending"},
    ],
}


def write_fixtures(directory, summary=ED_SUMMARY, analytics=DEPARTMENT_ANALYTICS, encounters=None):
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "ed-summary.json").write_text(json.dumps(summary), encoding="utf-8")
    (directory / "department-analytics.json").write_text(json.dumps(analytics), encoding="utf-8")
    for key, doc in (encounters if encounters is not None else {"003": ENCOUNTER_003}).items():
        (directory / f"encounter-{key}.json").write_text(json.dumps(doc), encoding="utf-8")
    return directory


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class CountingClient(SourceClient):
    """Wraps another client; counts searches and can hold Patient searches on a gate."""

    def __init__(self, inner, name="mock", online=True):
        self.inner = inner
        self.name = name
        self.online = online
        self.probe_results = []
        self.counts = {}
        self.gate = None

    async def test_connection(self):
        if self.probe_results:
            return self.probe_results.pop(0)
        return self.online

    async def search(self, resource_type, params=None):
        self.counts[resource_type] = self.counts.get(resource_type, 0) + 1
        if resource_type == "Patient" and self.gate is not None:
            await self.gate.wait()
        if not self.online:
            return []
        return await self.inner.search(resource_type, params)

    async def get_resource(self, resource_type, resource_id):
        if not self.online:
            return None
        return await self.inner.get_resource(resource_type, resource_id)


class ExplodingClient(SourceClient):
    name = "mock"

    async def test_connection(self):
        return True

    async def search(self, resource_type, params=None):
        raise RuntimeError("fixture store exploded")

    async def get_resource(self, resource_type, resource_id):
        raise RuntimeError("fixture store exploded")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def fixtures_dir(tmp_path):
    return write_fixtures(tmp_path / "mock")


@pytest.fixture
def settings(fixtures_dir):
    return SyncSettings(fixtures_dir=fixtures_dir, seed=7, sync_interval_seconds=0.01)


@pytest.fixture
def mock_source(fixtures_dir, clock):
    return MockSourceClient(fixtures_dir, clock=clock)


@pytest.fixture
def run():
    """Drive a coroutine to completion on a fresh event loop."""
    return asyncio.run
