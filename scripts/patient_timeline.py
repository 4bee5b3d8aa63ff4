"""Print one patient's merged timeline (clinical + enrichment), newest first.

Run:
  python -m scripts.patient_timeline P001
  python -m scripts.patient_timeline P001 --remote --enrich --out out/P001_timeline.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from dashsync.config import load_settings
from dashsync.sync import SyncCoordinator
from dashsync.timeline import SimpleTimelineGenerator


async def fetch_timeline(patient_id: str, *, use_remote: bool, config: Optional[str],
                         seed: Optional[int], enrich: bool) -> List[Dict[str, Any]]:
    settings = load_settings(config)
    if seed is not None:
        settings.seed = seed
    coordinator = SyncCoordinator(settings)
    if enrich:
        coordinator.enrichment = SimpleTimelineGenerator(coordinator.generator, clock=coordinator.clock)
    try:
        await coordinator.initialize(use_remote=use_remote)
        coordinator.stop_periodic_sync()
        events = await coordinator.get_patient_timeline(patient_id)
        return [e.to_dict() for e in events]
    finally:
        coordinator.destroy()


def _parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Show a patient's merged timeline.")
    ap.add_argument("patient_id", help="Patient id, e.g. P001")
    ap.add_argument("--remote", action="store_true", help="Use the remote FHIR server (falls back to mock)")
    ap.add_argument("--config", default=None, help="Settings YAML")
    ap.add_argument("--seed", type=int, default=None, help="Seed for deterministic generated values")
    ap.add_argument("--enrich", action="store_true", help="Merge generated enrichment events")
    ap.add_argument("--out", default=None, help="Write the timeline JSON here instead of printing it")
    return ap.parse_args()


def main() -> None:
    args = _parse_args()
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    events = asyncio.run(fetch_timeline(
        args.patient_id,
        use_remote=bool(args.remote),
        config=args.config,
        seed=args.seed,
        enrich=bool(args.enrich),
    ))

    if args.out:
        out = Path(args.out)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(events, indent=2), encoding="utf-8")
    else:
        for e in events:
            marker = "*" if e["kind"] == "enrichment" else " "
            print(f"{e['timestamp']} {marker} [{e['status']:<9}] {e['description']}")

    print("[OK]", {"patient_id": args.patient_id, "events": len(events), "out": args.out})


if __name__ == "__main__":
    main()
