#!/usr/bin/env python3
"""
Fetch park boundaries from Overpass and match them to unresolved sites.

Usage:
  python3 scripts/fetch_boundaries.py
  python3 scripts/fetch_boundaries.py --region Camden --region Islington
  python3 scripts/fetch_boundaries.py --refresh --statuses unresolved ambiguous

The full-area result is cached verbatim under PARKTRACK_CACHE_DIR so a rerun
does not hit Overpass again unless --refresh is given.
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

from logging_config import get_logger, setup_logging
from data_sources.cache import default_cache_dir
from data_sources.error_handling import APIError
from data_sources.overpass_api import fetch_candidates_in_bbox, fetch_region_candidates
from data_sources.region_config import load_region_config
from data_sources.site_store import SiteStore
from matching.models import UNRESOLVED
from matching.ranker import DEFAULT_RADIUS_M, resolve_sites

logger = get_logger("scripts.fetch_boundaries")


def main() -> int:
    ap = argparse.ArgumentParser(description="Match sites to OSM park boundaries")
    ap.add_argument("--region", action="append", default=[],
                    help="Scan only this region (repeatable). Default: the whole configured area.")
    ap.add_argument("--radius", type=float, default=DEFAULT_RADIUS_M, help="Search radius in meters.")
    ap.add_argument("--statuses", nargs="+", default=[UNRESOLVED], help="Site statuses to (re)resolve.")
    ap.add_argument("--refresh", action="store_true", help="Ignore the cached Overpass result.")
    ap.add_argument("--delay", type=float, default=10.0, help="Seconds between region queries.")
    args = ap.parse_args()

    load_dotenv()
    setup_logging()

    config = load_region_config()
    try:
        if args.region:
            by_region = fetch_region_candidates(config.select(args.region), delay_s=args.delay)
            candidates = [c for region_candidates in by_region.values() for c in region_candidates]
        else:
            if config.default_bbox is None:
                print(f"No default_bbox configured for {config.name}; pass --region")
                return 2
            cache_path = default_cache_dir() / f"boundaries_{config.name.lower().replace(' ', '_')}.json"
            candidates = fetch_candidates_in_bbox(config.default_bbox, cache_path=cache_path, refresh=args.refresh)
    except APIError as e:
        logger.error(f"Boundary fetch failed: {e}", extra={"api_name": e.api_name})
        return 1

    print(f"Fetched {len(candidates)} boundary candidates")

    store = SiteStore.from_env()
    try:
        summary = resolve_sites(store, candidates, radius_m=args.radius, statuses=args.statuses)
    finally:
        store.close()

    summary.log()
    for status, count in sorted(summary.outcomes.items()):
        print(f"  {status}: {count}")
    print(f"Resolved {summary.succeeded}/{summary.total} sites ({summary.failed} failed, {summary.skipped} skipped)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
