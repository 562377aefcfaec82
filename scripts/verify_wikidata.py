#!/usr/bin/env python3
"""
Cross-check sites against Wikidata park items.

Usage:
  python3 scripts/verify_wikidata.py
  python3 scripts/verify_wikidata.py --area Q84
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

from logging_config import get_logger, setup_logging
from data_sources.error_handling import APIError
from data_sources.region_config import load_region_config
from data_sources.site_store import SiteStore
from data_sources.wikidata_api import fetch_wikidata_parks
from matching.evidence import verify_sites

logger = get_logger("scripts.verify_wikidata")


def main() -> int:
    ap = argparse.ArgumentParser(description="Corroborate site matches with Wikidata")
    ap.add_argument("--area", help="Wikidata item of the containing area (default: from regions.json).")
    args = ap.parse_args()

    load_dotenv()
    setup_logging()

    area = args.area or load_region_config().wikidata_area
    if not area:
        print("No Wikidata area configured; pass --area")
        return 2

    try:
        items = fetch_wikidata_parks(area)
    except APIError as e:
        logger.error(f"Wikidata query failed: {e}", extra={"api_name": e.api_name})
        return 1
    print(f"Found {len(items)} Wikidata parks with coordinates")

    store = SiteStore.from_env()
    try:
        summary = verify_sites(store, items)
    finally:
        store.close()

    summary.log()
    print(f"Verified: {summary.outcomes.get('verified', 0)}")
    print(f"Strengthened ambiguous matches: {summary.outcomes.get('strengthened', 0)}")
    print(f"No evidence: {summary.outcomes.get('no_evidence', 0)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
