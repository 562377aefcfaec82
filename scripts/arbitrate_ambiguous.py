#!/usr/bin/env python3
"""
Ask a language model to choose between the current match and nearby
alternatives for every ambiguous site.

By default decisions are only exported for review. With --apply, decisions
that clear the confidence thresholds are written to the store and the rest
are queued for manual review.

Usage:
  python3 scripts/arbitrate_ambiguous.py --limit 20
  python3 scripts/arbitrate_ambiguous.py --apply --output data/arbitration_results.json
"""

import argparse
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

from logging_config import get_logger, setup_logging
from data_sources.arbitration_api import AnthropicArbitrator
from data_sources.error_handling import APIError
from data_sources.overpass_api import fetch_candidates_around
from data_sources.site_store import SiteStore
from matching.arbitration import ArbitrationThresholds, arbitrate_sites

logger = get_logger("scripts.arbitrate_ambiguous")


def main() -> int:
    ap = argparse.ArgumentParser(description="Arbitrate ambiguous site matches")
    ap.add_argument("--apply", action="store_true", help="Apply decisions that clear the thresholds.")
    ap.add_argument("--include-imported", action="store_true", help="Also arbitrate sites imported from OSM.")
    ap.add_argument("--limit", type=int, default=0, help="Max sites to arbitrate (0 = no limit).")
    ap.add_argument("--delay", type=float, default=2.0, help="Seconds between sites.")
    ap.add_argument("--output", type=Path, default=Path("data/arbitration_results.json"),
                    help="Where to write the decisions.")
    args = ap.parse_args()

    load_dotenv()
    setup_logging()

    try:
        arbitrator = AnthropicArbitrator()
    except APIError as e:
        print(f"Cannot arbitrate: {e}")
        return 2

    thresholds = ArbitrationThresholds.from_env()
    store = SiteStore.from_env()
    try:
        summary, results = arbitrate_sites(
            store, arbitrator, fetch_candidates_around,
            thresholds=thresholds,
            auto_apply=args.apply,
            include_imported=args.include_imported,
            limit=args.limit if args.limit > 0 else None,
            delay_s=args.delay,
        )
    finally:
        store.close()

    args.output.parent.mkdir(parents=True, exist_ok=True)
    with args.output.open("w", encoding="utf-8") as f:
        json.dump(results, f, indent=2)
    print(f"Wrote {len(results)} decisions to {args.output}")

    summary.log()
    for recommendation, count in sorted(summary.outcomes.items()):
        print(f"  {recommendation}: {count}")
    if args.apply:
        applied = sum(1 for r in results if r["outcome"] in ("confirmed", "alternative_applied", "rejected"))
        print(f"Applied {applied}, queued {sum(1 for r in results if r['outcome'] == 'queued')}")
    else:
        print("Review the file, then run scripts/apply_review_results.py to import it.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
