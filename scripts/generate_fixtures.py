"""Write a synthetic mock fixture set.

This is the script you run (or use scripts_generate_fixtures.py at the repo root).
"""

from __future__ import annotations

import argparse
import json
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from dashsync.generators import MockDataGenerator
from dashsync.mock_client import ANALYTICS_FILE, SUMMARY_FILE


def _write_json(path: str, data: Any) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.write("\n")


def generate_fixtures(*, n_patients: int, seed: int | None, out_dir: str,
                      now: Optional[datetime] = None) -> Dict[str, Any]:
    gen = MockDataGenerator(seed)
    os.makedirs(out_dir, exist_ok=True)

    fixtures = gen.gen_fixture_set(n_patients, now)
    written_files: List[str] = []

    summary_path = os.path.join(out_dir, SUMMARY_FILE)
    _write_json(summary_path, fixtures["ed-summary"])
    written_files.append(summary_path)

    analytics_path = os.path.join(out_dir, ANALYTICS_FILE)
    _write_json(analytics_path, fixtures["department-analytics"])
    written_files.append(analytics_path)

    for key, doc in fixtures["encounters"].items():
        path = os.path.join(out_dir, f"encounter-{key}.json")
        _write_json(path, doc)
        written_files.append(path)

    counts = {
        "patients": len(fixtures["ed-summary"]["patients"]),
        "encounters": len(fixtures["encounters"]),
        "diagnostics": len(fixtures["department-analytics"]["diagnostics"]),
        "admissions": len(fixtures["department-analytics"]["admissions"]),
    }
    return {"out_dir": out_dir, "counts": counts, "written_files": written_files}


def _parse_args():
    ap = argparse.ArgumentParser(description="Generate synthetic ED mock fixtures (summary, analytics, encounters).")
    ap.add_argument("--n", type=int, default=10, help="Number of patients")
    ap.add_argument("--seed", type=int, default=None, help="Seed for deterministic runs")
    ap.add_argument("--out", type=str, default="out/mock", help="Output folder")
    return ap.parse_args()


if __name__ == "__main__":
    args = _parse_args()
    res = generate_fixtures(n_patients=int(args.n), seed=args.seed, out_dir=args.out)
    print("[OK]", {"out_dir": res["out_dir"], "counts": res["counts"], "written_files": len(res["written_files"])})
