"""
Centralized Retry Configuration for ParkTrack
Retry profiles for the external services the matching pipeline talks to.
"""

from dataclasses import dataclass
from typing import Optional, Dict
from enum import Enum
from logging_config import get_logger

logger = get_logger(__name__)


class RetryProfile(Enum):
    """Retry behavior profiles for different query types."""
    BOUNDARY_SCAN = "boundary_scan"   # Large bbox scans - gateway timeouts are common
    RADIUS = "radius"                 # Small around() queries
    SPARQL = "sparql"                 # Wikidata query service
    ARBITRATION = "arbitration"       # Language model calls
    STRAVA = "strava"                 # Strava REST API


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_wait: float = 10.0
    max_wait: float = 30.0
    exponential_backoff: bool = False
    retry_on_timeout: bool = True
    retry_on_504: bool = True

    def __post_init__(self):
        """Validate configuration."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_wait < 0:
            raise ValueError("base_wait must be >= 0")
        if self.max_wait < self.base_wait:
            raise ValueError("max_wait must be >= base_wait")

    def wait_for(self, attempt: int) -> float:
        """Seconds to wait after the given zero-based failed attempt."""
        if self.exponential_backoff:
            return min(self.base_wait * (2 ** attempt), self.max_wait)
        return min(self.base_wait, self.max_wait)


# One initial attempt plus two retries for every Overpass profile
RETRY_PROFILES: Dict[RetryProfile, RetryConfig] = {
    RetryProfile.BOUNDARY_SCAN: RetryConfig(
        max_attempts=3,
        base_wait=15.0,
        max_wait=15.0,
        exponential_backoff=False,
    ),
    RetryProfile.RADIUS: RetryConfig(
        max_attempts=3,
        base_wait=10.0,
        max_wait=10.0,
        exponential_backoff=False,
    ),
    RetryProfile.SPARQL: RetryConfig(
        max_attempts=2,
        base_wait=5.0,
        max_wait=10.0,
        exponential_backoff=True,
    ),
    RetryProfile.ARBITRATION: RetryConfig(
        max_attempts=2,
        base_wait=2.0,
        max_wait=10.0,
        exponential_backoff=True,
        retry_on_504=False,
    ),
    RetryProfile.STRAVA: RetryConfig(
        max_attempts=2,
        base_wait=1.0,
        max_wait=5.0,
        exponential_backoff=True,
    ),
}


QUERY_TYPE_PROFILES: Dict[str, RetryProfile] = {
    "overpass": RetryProfile.BOUNDARY_SCAN,
    "boundary_scan": RetryProfile.BOUNDARY_SCAN,
    "region_scan": RetryProfile.BOUNDARY_SCAN,
    "radius": RetryProfile.RADIUS,
    "wikidata": RetryProfile.SPARQL,
    "arbitration": RetryProfile.ARBITRATION,
    "strava": RetryProfile.STRAVA,
}


def get_retry_config(query_type: str, profile: Optional[RetryProfile] = None) -> RetryConfig:
    """
    Get retry configuration for a query type.

    Args:
        query_type: Type of query (e.g., "overpass", "radius", "wikidata")
        profile: Optional override profile (if None, uses query_type mapping)

    Returns:
        RetryConfig for the query type
    """
    if profile is not None:
        return RETRY_PROFILES[profile]

    profile = QUERY_TYPE_PROFILES.get(query_type)
    if profile is None:
        logger.debug(f"No retry profile for '{query_type}', using boundary_scan")
        profile = RetryProfile.BOUNDARY_SCAN
    return RETRY_PROFILES[profile]
