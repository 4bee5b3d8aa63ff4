"""CLI entrypoint for one or more sync cycles.

Run:
  python -m scripts.run_sync                      # mock fixtures
  python -m scripts.run_sync --remote --watch 3   # live server, 3 extra cycles
  python -m scripts.run_sync --out out/snapshot.json --history out/snapshots.ndjson
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from dashsync.config import load_settings
from dashsync.models import DashboardSnapshot
from dashsync.sync import SyncCoordinator
from dashsync.timeline import SimpleTimelineGenerator


def summarize(snapshot: DashboardSnapshot, status: str) -> Dict[str, Any]:
    return {
        "status": status,
        "source": snapshot.source,
        "patients": len(snapshot.patients),
        "kpis": dict(snapshot.kpis),
        "journey": f"{snapshot.analytics.journey_minutes} min ({snapshot.analytics.journey_status})",
        "los_hours": [snapshot.analytics.length_of_stay.average, snapshot.analytics.length_of_stay.median],
    }


def append_ndjson(snapshot: DashboardSnapshot, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(snapshot.to_dict()))
        f.write("\n")


async def run(
    *,
    use_remote: bool,
    config: Optional[str],
    base_url: Optional[str],
    seed: Optional[int],
    watch: int,
    interval: Optional[float],
    enrich: bool,
    out: Optional[str],
    history: Optional[str],
) -> Dict[str, Any]:
    settings = load_settings(config)
    if base_url:
        settings.base_url = base_url.rstrip("/")
    if seed is not None:
        settings.seed = seed

    coordinator = SyncCoordinator(settings)
    if enrich:
        coordinator.enrichment = SimpleTimelineGenerator(coordinator.generator, clock=coordinator.clock)

    history_path = Path(history) if history else None
    if history_path is not None:
        coordinator.subscribe(lambda snap: append_ndjson(snap, history_path))

    try:
        snapshot = await coordinator.initialize(use_remote=use_remote)
        print("[OK]", summarize(snapshot, coordinator.status))

        # Drive extra cycles by hand so --watch behaves the same for mock and remote.
        coordinator.stop_periodic_sync()
        pause = interval if interval is not None else settings.sync_interval_seconds
        for _ in range(max(0, watch)):
            await asyncio.sleep(pause)
            snapshot = await coordinator.refresh()
            print("[OK]", summarize(snapshot, coordinator.status))

        if out:
            out_path = Path(out)
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_text(json.dumps(snapshot.to_dict(), indent=2), encoding="utf-8")
        return {"status": coordinator.status, "cycles": 1 + max(0, watch), "out": out, "history": history}
    finally:
        coordinator.destroy()


def _parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Sync the dashboard snapshot from a FHIR server or mock fixtures.")
    ap.add_argument("--remote", action="store_true", help="Use the remote FHIR server (falls back to mock)")
    ap.add_argument("--config", default=None, help="Settings YAML (default: DASHSYNC_CONFIG or packaged settings)")
    ap.add_argument("--base-url", default=None, help="Override fhir.base_url")
    ap.add_argument("--seed", type=int, default=None, help="Seed for deterministic generated values")
    ap.add_argument("--watch", type=int, default=0, help="Extra cycles to run after the first")
    ap.add_argument("--interval", type=float, default=None, help="Seconds between --watch cycles (default: sync.interval_seconds)")
    ap.add_argument("--enrich", action="store_true", help="Attach generated timeline enrichment")
    ap.add_argument("--out", default=None, help="Write the final snapshot JSON here")
    ap.add_argument("--history", default=None, help="Append every published snapshot to this NDJSON file")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return ap.parse_args()


def main() -> None:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    res = asyncio.run(run(
        use_remote=bool(args.remote),
        config=args.config,
        base_url=args.base_url,
        seed=args.seed,
        watch=int(args.watch),
        interval=args.interval,
        enrich=bool(args.enrich),
        out=args.out,
        history=args.history,
    ))
    print("[DONE]", res)


if __name__ == "__main__":
    main()
