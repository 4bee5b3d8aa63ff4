"""Settings loader.

Order of precedence for the settings file:
1) explicit path argument
2) DASHSYNC_CONFIG env var
3) data/settings.yaml shipped next to this module

Individual DASHSYNC_* env vars then override single keys.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError
from .models import WORKFLOW_STEPS

logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).resolve().parent / "data"
DEFAULT_SETTINGS_PATH = DATA_DIR / "settings.yaml"

DEFAULT_TURNAROUND: Dict[str, int] = {
    "Triage to Nurse": 8,
    "Triage to Doctor": 25,
    "Pathology Request to Result": 45,
    "Imaging Request to Reported": 75,
    "Doctor to Senior Doctor": 15,
    "Admission Request to Bed": 90,
    "Bed Allocation to Departure": 20,
}


@dataclass
class PageSizes:
    patients: int = 20
    encounters: int = 50
    observations: int = 100
    diagnostic_reports: int = 100
    timeline: int = 10


@dataclass
class SyncSettings:
    base_url: str = "https://hapi.fhir.org/baseR4"
    timeout_seconds: float = 15.0
    page_sizes: PageSizes = field(default_factory=PageSizes)
    sync_interval_seconds: float = 30.0
    enrichment_timeout_seconds: float = 10.0
    fixtures_dir: Path = DATA_DIR / "mock"
    seed: Optional[int] = None
    total_beds: int = 20
    journey_target_minutes: int = 240
    journey_at_risk_minutes: int = 300
    los_default_average: float = 4.5
    los_default_median: float = 3.2
    turnaround_defaults: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TURNAROUND))


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read settings file {path}: {e}", detail={"path": str(path)}) from e
    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {path} must contain a mapping", detail={"path": str(path)})
    return data


def _resolve_settings_path(path: Optional[str | Path]) -> Path:
    if path:
        return Path(path).expanduser()
    env_path = os.getenv("DASHSYNC_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_SETTINGS_PATH


def _turnaround_defaults(raw: Dict[str, Any]) -> Dict[str, int]:
    out = dict(DEFAULT_TURNAROUND)
    for step, minutes in (raw or {}).items():
        if step not in WORKFLOW_STEPS:
            logger.warning("Ignoring unknown workflow step in settings: %r", step)
            continue
        out[step] = int(minutes)
    return out


def settings_from_dict(data: Dict[str, Any], base_dir: Optional[Path] = None) -> SyncSettings:
    """Build settings from an already-parsed mapping (same shape as settings.yaml)."""
    base_dir = base_dir or DATA_DIR
    fhir = data.get("fhir") or {}
    sync = data.get("sync") or {}
    mock = data.get("mock") or {}
    analytics = data.get("analytics") or {}
    pages = fhir.get("page_sizes") or {}
    los = analytics.get("los_defaults") or {}

    fixtures_dir = Path(mock.get("fixtures_dir") or "mock")
    if not fixtures_dir.is_absolute():
        fixtures_dir = (base_dir / fixtures_dir).resolve()

    seed = mock.get("seed")
    return SyncSettings(
        base_url=str(fhir.get("base_url") or SyncSettings.base_url).rstrip("/"),
        timeout_seconds=float(fhir.get("timeout_seconds", 15)),
        page_sizes=PageSizes(**{k: int(v) for k, v in pages.items() if k in PageSizes.__dataclass_fields__}),
        sync_interval_seconds=float(sync.get("interval_seconds", 30)),
        enrichment_timeout_seconds=float(sync.get("enrichment_timeout_seconds", 10)),
        fixtures_dir=fixtures_dir,
        seed=int(seed) if seed is not None else None,
        total_beds=int(analytics.get("total_beds", 20)),
        journey_target_minutes=int(analytics.get("journey_target_minutes", 240)),
        journey_at_risk_minutes=int(analytics.get("journey_at_risk_minutes", 300)),
        los_default_average=float(los.get("average", 4.5)),
        los_default_median=float(los.get("median", 3.2)),
        turnaround_defaults=_turnaround_defaults(analytics.get("turnaround_defaults") or {}),
    )


def _apply_env_overrides(settings: SyncSettings) -> SyncSettings:
    base = os.getenv("DASHSYNC_FHIR_BASE")
    if base:
        settings.base_url = base.rstrip("/")
    timeout = os.getenv("DASHSYNC_TIMEOUT")
    if timeout:
        settings.timeout_seconds = float(timeout)
    interval = os.getenv("DASHSYNC_SYNC_INTERVAL")
    if interval:
        settings.sync_interval_seconds = float(interval)
    fixtures = os.getenv("DASHSYNC_FIXTURES_DIR")
    if fixtures:
        settings.fixtures_dir = Path(fixtures).expanduser().resolve()
    seed = os.getenv("DASHSYNC_SEED")
    if seed:
        settings.seed = int(seed)
    return settings


def load_settings(path: Optional[str | Path] = None) -> SyncSettings:
    p = _resolve_settings_path(path)
    data = _load_yaml(p)
    settings = settings_from_dict(data, base_dir=p.resolve().parent)
    logger.debug("Loaded settings from %s (base_url=%s)", p, settings.base_url)
    return _apply_env_overrides(settings)
