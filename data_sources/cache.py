"""
Caching for ParkTrack API calls
Redis (when REDIS_URL is set) or in-memory caching for Overpass and Wikidata
queries, plus verbatim JSON files for raw boundary scans.
"""

import time
import hashlib
import os
import json
from pathlib import Path
from typing import Any, Optional, Dict, Tuple
from functools import wraps

import redis

from logging_config import get_logger

logger = get_logger(__name__)

CACHE_TTL = {
    'overpass_queries': 6 * 3600,      # radius lookups for arbitration
    'wikidata': 24 * 3600,             # park items change rarely
}

# key -> (stored_at, value); used alongside Redis and on its own without it
_memory: Dict[str, Tuple[float, Any]] = {}

_redis_client = None


def _connect() -> Optional["redis.Redis"]:
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    try:
        client = redis.from_url(url, decode_responses=True, socket_connect_timeout=1, socket_timeout=1)
        client.ping()
        return client
    except redis.RedisError as e:
        logger.warning(f"Redis not available, using in-memory cache: {e}")
        return None


def _get_redis_client():
    """Live Redis client or None. A dropped connection is retried once."""
    global _redis_client
    if _redis_client is None:
        return None
    try:
        _redis_client.ping()
    except redis.RedisError:
        _redis_client = _connect()
        if _redis_client is not None:
            logger.info("Redis reconnected")
    return _redis_client


_redis_client = _connect()
if _redis_client is not None:
    logger.info("Redis connected for distributed caching")


def _cache_key(func_name: str, args: tuple, kwargs: dict) -> str:
    digest = hashlib.md5((repr(args) + repr(sorted(kwargs.items()))).encode()).hexdigest()
    return f"{func_name}:{digest}"


def _read(key: str) -> Optional[Tuple[float, Any]]:
    client = _get_redis_client()
    if client:
        try:
            raw = client.get(key)
            if raw:
                data = json.loads(raw)
                return data['timestamp'], data['value']
        except (redis.RedisError, ValueError, KeyError) as e:
            logger.warning(f"Redis read error, falling back to in-memory: {e}")
    return _memory.get(key)


def _write(key: str, value: Any, ttl_seconds: int, now: float) -> None:
    client = _get_redis_client()
    if client:
        try:
            client.setex(key, ttl_seconds, json.dumps({'value': value, 'timestamp': now}))
        except (redis.RedisError, TypeError) as e:
            logger.warning(f"Redis write error: {e}")
    _memory[key] = (now, value)


def cached(ttl_seconds: int = 3600):
    """
    Cache a function's results in Redis or memory.

    A None result is never stored. When the call returns None and an expired
    entry exists, the stale entry is returned instead.

    Args:
        ttl_seconds: Time to live for cached results in seconds
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            key = _cache_key(func.__name__, args, kwargs)
            now = time.time()

            entry = _read(key)
            if entry is not None and now - entry[0] < ttl_seconds:
                logger.debug(f"Cache hit for {func.__name__}")
                return entry[1]

            if len(_memory) >= 100 and len(_memory) % 100 == 0:
                _cleanup_expired_cache()

            result = func(*args, **kwargs)
            if result is not None:
                _write(key, result, ttl_seconds, now)
                return result

            if entry is not None:
                age_hours = (now - entry[0]) / 3600
                logger.warning(f"Upstream returned nothing, using stale cache ({age_hours:.1f}h old) "
                               f"for {func.__name__}")
                return entry[1]
            return None

        return wrapper
    return decorator


def clear_cache(cache_type: Optional[str] = None):
    """
    Clear cache entries in Redis and memory.

    Args:
        cache_type: If provided, only clear entries of this function name
            (e.g. "fetch_wikidata_parks")
    """
    prefix = None if cache_type is None else f"{cache_type}:"

    client = _get_redis_client()
    if client:
        try:
            keys = client.keys("*" if prefix is None else f"{prefix}*")
            if keys:
                client.delete(*keys)
        except redis.RedisError as e:
            logger.warning(f"Error clearing Redis cache: {e}")

    if prefix is None:
        removed = len(_memory)
        _memory.clear()
    else:
        stale = [key for key in _memory if key.startswith(prefix)]
        for key in stale:
            del _memory[key]
        removed = len(stale)
    logger.info(f"Cleared {removed} {cache_type or 'cached'} entries")


def _cleanup_expired_cache():
    """Drop in-memory entries older than the longest configured TTL."""
    cutoff = time.time() - max(CACHE_TTL.values())
    expired = [key for key, (stored_at, _) in _memory.items() if stored_at < cutoff]
    for key in expired:
        del _memory[key]
    if expired:
        logger.debug(f"Cleaned up {len(expired)} expired cache entries")


def get_cache_stats() -> Dict[str, Any]:
    _cleanup_expired_cache()

    client = _get_redis_client()
    stats = {
        "total_entries": len(_memory),
        "cache_size_mb": sum(len(str(value)) for _, value in _memory.values()) / (1024 * 1024),
        "redis_available": client is not None
    }

    if client:
        try:
            stats["redis_keys"] = len(client.keys("*"))
            stats["redis_memory_mb"] = client.info("memory").get("used_memory", 0) / (1024 * 1024)
        except redis.RedisError as e:
            stats["redis_error"] = str(e)

    return stats


def default_cache_dir() -> Path:
    env = os.getenv("PARKTRACK_CACHE_DIR")
    return Path(env).resolve() if env else Path(__file__).resolve().parent.parent / "data_cache"


def load_raw_cache(path: Path) -> Optional[Any]:
    """
    Load a verbatim JSON result file written by save_raw_cache.

    Returns:
        The stored payload, or None if the file is missing or unreadable
    """
    path = Path(path)
    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8") as fh:
            payload = json.load(fh)
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable raw cache {path}: {e}")
        return None
    logger.info(f"Loaded raw cache from {path}")
    return payload


def save_raw_cache(path: Path, payload: Any) -> None:
    """Write payload as JSON, replacing any previous file atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh)
    os.replace(str(tmp_path), str(path))
    logger.info(f"Saved raw cache to {path}")
