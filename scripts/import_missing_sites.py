#!/usr/bin/env python3
"""
Import sizeable named parks from OSM that have no site yet.

Each configured region is scanned in turn. A candidate already represented
by a site (same OSM id, overlapping polygon, or a nearby site with a similar
name) is skipped. New sites start ambiguous so they go through review.

Usage:
  python3 scripts/import_missing_sites.py --dry-run
  python3 scripts/import_missing_sites.py --region Hackney
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

from logging_config import get_logger, setup_logging
from data_sources.overpass_api import IMPORT_FILTER, fetch_region_candidates
from data_sources.region_config import load_region_config
from data_sources.site_store import SiteStore
from matching.ranker import find_missing_candidates, site_from_candidate

logger = get_logger("scripts.import_missing_sites")


def main() -> int:
    ap = argparse.ArgumentParser(description="Import OSM parks missing from the site list")
    ap.add_argument("--region", action="append", default=[], help="Region to scan (repeatable). Default: all.")
    ap.add_argument("--delay", type=float, default=10.0, help="Seconds between region queries.")
    ap.add_argument("--dry-run", action="store_true", help="Report what would be imported without writing.")
    args = ap.parse_args()

    load_dotenv()
    setup_logging()

    regions = load_region_config().select(args.region)
    by_region = fetch_region_candidates(regions, IMPORT_FILTER, delay_s=args.delay)

    store = SiteStore.from_env()
    try:
        existing = store.list()
        print(f"Checking against {len(existing)} existing sites")

        imported = 0
        for region, candidates in by_region.items():
            missing = find_missing_candidates(candidates, existing)
            print(f"{region}: {len(missing)} of {len(candidates)} candidates are missing")
            new_sites = [site_from_candidate(c, borough=region) for c in missing]
            for candidate in missing[:5]:
                print(f"  + {candidate.name} ({candidate.area / 10000:.1f} ha)")
            if not args.dry_run:
                new_sites = store.add_many(new_sites)
                logger.info(f"Imported {len(new_sites)} sites for {region}", extra={"operation": "import_missing"})
            # Later regions must not re-import what this one added
            existing.extend(new_sites)
            imported += len(new_sites)
    finally:
        store.close()

    verb = "Would import" if args.dry_run else "Imported"
    print(f"{verb} {imported} sites from {len(by_region)}/{len(regions)} regions")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
