"""
Region configuration
Bounding boxes of the administrative areas scanned for boundary candidates,
loaded from data/regions.json (override with PARKTRACK_REGIONS_PATH).
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_REGIONS_PATH = Path(__file__).resolve().parent.parent / "data" / "regions.json"

BBox = Tuple[float, float, float, float]


@dataclass(frozen=True)
class RegionConfig:
    """Named bounding boxes as (min_lat, min_lon, max_lat, max_lon)."""
    name: str
    wikidata_area: Optional[str]
    default_bbox: Optional[BBox]
    regions: Dict[str, BBox] = field(default_factory=dict)

    def bbox_for(self, region: str) -> BBox:
        try:
            return self.regions[region]
        except KeyError:
            raise KeyError(f"Unknown region {region!r}; known: {', '.join(sorted(self.regions))}")

    def select(self, names: Optional[List[str]] = None) -> Dict[str, BBox]:
        if not names:
            return dict(self.regions)
        return {name: self.bbox_for(name) for name in names}


def _regions_path() -> Path:
    env = os.getenv("PARKTRACK_REGIONS_PATH")
    return Path(env).resolve() if env else DEFAULT_REGIONS_PATH


def _as_bbox(raw, label: str) -> BBox:
    if not isinstance(raw, (list, tuple)) or len(raw) != 4:
        raise ValueError(f"{label}: bounding box must be [min_lat, min_lon, max_lat, max_lon]")
    min_lat, min_lon, max_lat, max_lon = (float(v) for v in raw)
    if min_lat > max_lat or min_lon > max_lon:
        raise ValueError(f"{label}: minimums exceed maximums")
    return min_lat, min_lon, max_lat, max_lon


def parse_region_config(data: dict) -> RegionConfig:
    regions = {name: _as_bbox(bbox, name) for name, bbox in (data.get("regions") or {}).items()}
    default_bbox = data.get("default_bbox")
    return RegionConfig(
        name=data.get("name", "default"),
        wikidata_area=data.get("wikidata_area"),
        default_bbox=_as_bbox(default_bbox, "default_bbox") if default_bbox else None,
        regions=regions,
    )


@lru_cache(maxsize=4)
def load_region_config(path: Optional[str] = None) -> RegionConfig:
    """
    Load and validate a region file.

    Args:
        path: Optional explicit path; defaults to PARKTRACK_REGIONS_PATH or data/regions.json

    Raises:
        FileNotFoundError, ValueError
    """
    p = Path(path) if path else _regions_path()
    with p.open("r", encoding="utf-8") as fh:
        data = json.load(fh)
    config = parse_region_config(data)
    logger.debug(f"Loaded {len(config.regions)} regions from {p}")
    return config
