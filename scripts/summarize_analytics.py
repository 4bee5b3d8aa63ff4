from __future__ import annotations

import argparse
import csv
import json
from pathlib import Path
from typing import Any, Dict, List

from dashsync.models import WORKFLOW_STEPS


def read_snapshots(path: Path) -> List[Dict[str, Any]]:
    """NDJSON history (one snapshot per line) or a single snapshot JSON file."""
    text = path.read_text(encoding="utf-8").strip()
    if not text:
        return []
    if text.startswith("{") and "\n{" not in text:
        return [json.loads(text)]
    rows: List[Dict[str, Any]] = []
    for line in text.splitlines():
        line = line.strip()
        if line:
            rows.append(json.loads(line))
    return rows


def safe_int(v: Any, default: int = 0) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def safe_float(v: Any, default: float = 0.0) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return default


def admitted_stats(admitted: Any) -> Dict[str, Any]:
    if not isinstance(admitted, list) or not admitted:
        return {"admitted_count": 0, "bed_wait_avg": 0.0, "bed_wait_max": 0}
    waits = [safe_int(a.get("bedWaitTime")) for a in admitted if isinstance(a, dict)]
    if not waits:
        return {"admitted_count": 0, "bed_wait_avg": 0.0, "bed_wait_max": 0}
    return {
        "admitted_count": len(waits),
        "bed_wait_avg": round(sum(waits) / len(waits), 1),
        "bed_wait_max": max(waits),
    }


def summarize_snapshots(snapshots: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """One flat row per snapshot: KPIs, turnaround steps, LOS, journey."""
    summary: List[Dict[str, Any]] = []

    for s in snapshots:
        kpis = s.get("kpis") or {}
        analytics = s.get("analytics") or {}
        turnaround = analytics.get("turnaround") or {}
        los = analytics.get("losStats") or {}

        row: Dict[str, Any] = {
            "generated_at": s.get("generatedAt"),
            "source": s.get("source"),
            "totalPatients": safe_int(kpis.get("totalPatients")),
            "waitingPatients": safe_int(kpis.get("waitingPatients")),
            "averageWaitTime": safe_int(kpis.get("averageWaitTime")),
            "bedOccupancy": safe_int(kpis.get("bedOccupancy")),
            "criticalAlerts": safe_int(kpis.get("criticalAlerts")),
        }
        for step in WORKFLOW_STEPS:
            row[step] = safe_int(turnaround.get(step))
        row.update({
            "los_average_hours": safe_float(los.get("average")),
            "los_median_hours": safe_float(los.get("median")),
            "journeyMinutes": safe_int(analytics.get("journeyMinutes")),
            "journeyStatus": analytics.get("journeyStatus"),
        })
        row.update(admitted_stats(analytics.get("admittedPatients")))
        summary.append(row)

    return summary


def write_ndjson(rows: List[Dict[str, Any]], out_path: Path) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", encoding="utf-8") as f:
        for r in rows:
            f.write(json.dumps(r))
            f.write("\n")


def write_csv(rows: List[Dict[str, Any]], out_path: Path) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    if not rows:
        out_path.write_text("", encoding="utf-8")
        return

    fieldnames = list(rows[0].keys())
    with out_path.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(f, fieldnames=fieldnames)
        w.writeheader()
        w.writerows(rows)


def parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Summarize dashboard snapshots into one analytics row per cycle.")
    ap.add_argument("--in", dest="inp", default="out/snapshots.ndjson", help="Snapshot NDJSON history or a single snapshot JSON")
    ap.add_argument("--out-ndjson", default="out/analytics_summary.ndjson", help="Output summary NDJSON")
    ap.add_argument("--out-csv", default="out/analytics_summary.csv", help="Output summary CSV")
    return ap.parse_args()


def main() -> None:
    args = parse_args()

    inp = Path(args.inp)
    if not inp.exists():
        raise SystemExit(f"Input not found: {inp}")

    snapshots = read_snapshots(inp)
    summary = summarize_snapshots(snapshots)

    write_ndjson(summary, Path(args.out_ndjson))
    write_csv(summary, Path(args.out_csv))

    print(
        "[OK]",
        {
            "input_rows": len(snapshots),
            "summary_rows": len(summary),
            "out_ndjson": args.out_ndjson,
            "out_csv": args.out_csv,
        },
    )


if __name__ == "__main__":
    main()
