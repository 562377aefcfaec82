"""
Logging configuration for ParkTrack
Structured logging for batch matching runs and the route sync API
"""

import logging
import json
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Extra record attributes copied into the JSON payload when present
_EXTRA_FIELDS = (
    "request_id",
    "site_id",
    "site_name",
    "osm_id",
    "api_name",
    "endpoint",
    "error_type",
    "status",
    "score",
    "duration",
    "operation",
)


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in _EXTRA_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: Optional[str] = None, json_format: Optional[bool] = None) -> None:
    """
    Set up logging configuration for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
            Defaults to LOG_LEVEL from the environment, then INFO.
        json_format: Whether to use JSON formatting for structured logs.
            Defaults to LOG_JSON from the environment, then True.
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    if json_format is None:
        json_format = os.getenv("LOG_JSON", "true").lower() not in ("0", "false", "no")

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Noisy third-party loggers
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)

    logging.getLogger("parktrack").setLevel(numeric_level)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(f"parktrack.{name}")


def _structured(fields: Dict[str, Any], **extra) -> Dict[str, Any]:
    """Merge fixed fields with caller extras, dropping unset values."""
    merged = {**fields, **extra}
    return {k: v for k, v in merged.items() if v is not None}


def log_api_call(logger: logging.Logger, api_name: str, endpoint: str, **kwargs):
    """
    Log an outbound request to an external service.

    Args:
        logger: Logger instance
        api_name: Service name ("overpass", "wikidata", "anthropic", "strava")
        endpoint: URL or method being called
        **kwargs: Additional fields, e.g. request_id
    """
    logger.info(f"API call to {api_name}: {endpoint}",
                extra=_structured({"api_name": api_name, "endpoint": endpoint}, **kwargs))


def log_match_result(logger: logging.Logger, site_id: int, site_name: str,
                     status: str, score: float = None, osm_id: str = None, **kwargs):
    """
    Log the outcome of resolving one site against boundary candidates.

    Args:
        logger: Logger instance
        site_id: Site identifier
        site_name: Display name of the site
        status: Resulting match status
        score: Name score of the chosen candidate, if any
        osm_id: External id of the chosen candidate, if any
    """
    extra = _structured({"site_id": site_id, "site_name": site_name, "status": status,
                         "score": score, "osm_id": osm_id}, **kwargs)
    suffix = f" -> {osm_id} ({score:.2f})" if osm_id and score is not None else ""
    logger.info(f"Site {site_name!r} {status}{suffix}", extra=extra)


def log_error(logger: logging.Logger, error_type: str, message: str, **kwargs):
    """Log an error tagged with its type ("api_error", "malformed_geometry", ...)."""
    logger.error(message, extra=_structured({"error_type": error_type}, **kwargs))


def log_performance(logger: logging.Logger, operation: str, duration: float, **kwargs):
    logger.info(f"Performance: {operation} took {duration:.2f}s",
                extra=_structured({"operation": operation, "duration": duration}, **kwargs))
