"""
Error handling for ParkTrack
Exception taxonomy for matching runs and external API calls, plus retry helpers
"""

import os
import time
from typing import Dict, Callable, Optional
from functools import wraps

from logging_config import get_logger

logger = get_logger(__name__)


class ParkTrackError(Exception):
    """Base exception for ParkTrack errors."""
    pass


class APIError(ParkTrackError):
    """Exception for API-related errors."""
    def __init__(self, message: str, api_name: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.api_name = api_name
        self.status_code = status_code


class TransientNetworkError(APIError):
    """Gateway timeout or connection timeout. Safe to retry a bounded number of times."""
    pass


class MalformedGeometryError(ParkTrackError):
    """A ring with fewer than 3 points, or coordinates that cannot be parsed."""
    pass


class ArbitrationParseError(ParkTrackError):
    """The arbitrator's response could not be parsed into a decision."""
    pass


class ThresholdNotMet(ParkTrackError):
    """An arbitration decision fell below the confidence needed to apply it."""
    def __init__(self, recommendation: str, confidence: float, required: float):
        super().__init__(
            f"{recommendation} at confidence {confidence:.0f} is below the required {required:.0f}"
        )
        self.recommendation = recommendation
        self.confidence = confidence
        self.required = required


def check_api_credentials() -> Dict[str, bool]:
    """
    Check which API credentials are available.

    Returns:
        Dict mapping API names to availability status
    """
    credentials = {
        "overpass": True,   # Overpass doesn't require credentials
        "wikidata": True,   # Wikidata SPARQL doesn't require credentials
        "anthropic": bool(os.getenv("ANTHROPIC_API_KEY")),
        "strava": bool(os.getenv("STRAVA_CLIENT_ID") and os.getenv("STRAVA_CLIENT_SECRET")),
    }

    return credentials


def with_retry(config=None, sleep: Callable[[float], None] = time.sleep):
    """
    Decorator to retry calls that fail with TransientNetworkError.

    Any other exception propagates immediately. The loop is bounded by
    config.max_attempts.

    Args:
        config: RetryConfig (defaults to the overpass profile)
        sleep: Sleep function, injectable for tests
    """
    from .retry_config import get_retry_config

    retry_config = config or get_retry_config("overpass")

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(retry_config.max_attempts):
                try:
                    return func(*args, **kwargs)
                except TransientNetworkError as e:
                    last_exception = e
                    if attempt < retry_config.max_attempts - 1:
                        wait_time = retry_config.wait_for(attempt)
                        logger.warning(
                            f"Attempt {attempt + 1} failed for {func.__name__}: {e}. "
                            f"Retrying in {wait_time:.0f}s..."
                        )
                        sleep(wait_time)
                    else:
                        logger.error(f"All {retry_config.max_attempts} attempts failed for {func.__name__}")

            raise last_exception
        return wrapper
    return decorator
