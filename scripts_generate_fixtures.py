#!/usr/bin/env python3
"""Top-level runner.

Run:
  python scripts_generate_fixtures.py --n 10 --seed 42 --out out/mock

Point the sync layer at the result with DASHSYNC_FIXTURES_DIR=out/mock.
"""

from __future__ import annotations

import argparse
import os
import sys

# Ensure repo root is on sys.path so `scripts` and `dashsync` are importable
ROOT = os.path.dirname(os.path.abspath(__file__))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from scripts.generate_fixtures import generate_fixtures

def _parse_args():
    ap = argparse.ArgumentParser(description="Generate synthetic ED mock fixtures for the dashboard sync layer.")
    ap.add_argument("--n", type=int, default=10, help="Number of patients")
    ap.add_argument("--seed", type=int, default=None, help="Seed for deterministic runs")
    ap.add_argument("--out", type=str, default="out/mock", help="Output folder")
    return ap.parse_args()

if __name__ == "__main__":
    args = _parse_args()
    res = generate_fixtures(n_patients=int(args.n), seed=args.seed, out_dir=args.out)
    print("[DONE]", {"out_dir": res["out_dir"], "counts": res["counts"], "written_files": len(res["written_files"])})
