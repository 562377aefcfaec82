#!/usr/bin/env python3
"""
Import reviewed arbitration results into the site store.

The file is the JSON list written by arbitrate_ambiguous.py (a
{"results": [...]} object is accepted too). Sites already verified are left
alone.

Usage:
  python3 scripts/apply_review_results.py data/arbitration_results.json
"""

import argparse
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

from logging_config import get_logger, setup_logging
from data_sources.site_store import SiteStore
from matching.arbitration import apply_review_results

logger = get_logger("scripts.apply_review_results")


def main() -> int:
    ap = argparse.ArgumentParser(description="Apply reviewed arbitration results")
    ap.add_argument("results", type=Path, help="JSON file of arbitration results.")
    args = ap.parse_args()

    load_dotenv()
    setup_logging()

    try:
        with args.results.open("r", encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Cannot read {args.results}: {e}")
        return 1
    results = payload.get("results", []) if isinstance(payload, dict) else payload
    print(f"Loaded {len(results)} results from {args.results}")

    store = SiteStore.from_env()
    try:
        summary = apply_review_results(store, results)
    finally:
        store.close()

    summary.log()
    for status, count in sorted(summary.outcomes.items()):
        print(f"  {status}: {count}")
    print(f"Updated {summary.succeeded} sites ({summary.skipped} skipped, {summary.failed} failed)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
