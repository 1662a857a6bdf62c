"""
On-disk pickle cache for expensive dataset loads and simulations.

Entries live in a flat directory as `<md5 of call>.pkl` and expire by
file age. The directory, the on/off switch and the expiry are read from
the environment at import time and can be changed on CacheConfig.
"""

import functools
import hashlib
import json
import logging
import os
import pickle
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Tuple, Union

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 3600


class CacheConfig:
    CACHE_DIR = os.environ.get("SCVIGNETTES_CACHE_DIR", ".cache")
    CACHE_ENABLED = os.environ.get("SCVIGNETTES_CACHE_ENABLED", "1") == "1"
    CACHE_EXPIRY_DAYS = int(os.environ.get("SCVIGNETTES_CACHE_EXPIRY_DAYS", "30"))


def _directory(cache_dir: Optional[Union[str, Path]]) -> Path:
    return Path(cache_dir or CacheConfig.CACHE_DIR)


def _entries(directory: Path) -> Iterator[Tuple[Path, float, int]]:
    """(path, age in days, size in bytes) of every cache entry"""
    now = time.time()
    for path in directory.glob("*.pkl"):
        stat = path.stat()
        yield path, (now - stat.st_mtime) / SECONDS_PER_DAY, stat.st_size


def _call_key(func: Callable, args: tuple, kwargs: Dict[str, Any]) -> str:
    """md5 of the function's qualified name and the str() of its arguments"""
    call = json.dumps([func.__qualname__, [str(a) for a in args], {k: str(v) for k, v in kwargs.items()}],
                      sort_keys=True)
    return hashlib.md5(call.encode()).hexdigest()


def _read(path: Path, expiry_days: float) -> Tuple[bool, Any]:
    if not path.exists() or (time.time() - path.stat().st_mtime) / SECONDS_PER_DAY >= expiry_days:
        return False, None
    try:
        with open(path, "rb") as f:
            return True, pickle.load(f)
    except (OSError, pickle.UnpicklingError, EOFError) as e:
        logger.warning(f"Ignoring unreadable cache entry {path}: {e}")
        return False, None


def _write(path: Path, value: Any) -> None:
    try:
        with open(path, "wb") as f:
            pickle.dump(value, f)
    except (OSError, pickle.PicklingError, TypeError) as e:
        logger.warning(f"Could not cache result in {path}: {e}")
        path.unlink(missing_ok=True)


def cached_computation(func: Optional[Callable] = None, *, cache_dir: Optional[Union[str, Path]] = None,
                       expiry_days: Optional[int] = None, enabled: bool = True):
    """
    Cache a function's return value on disk, keyed by its arguments.

    Usable bare (`@cached_computation`) or with options. Arguments are
    keyed by their str(), so they should have a faithful one (numbers,
    strings, paths). Results must be picklable; ones that are not are
    returned uncached with a warning.

    Args:
        func: The function to decorate
        cache_dir: Cache directory, CacheConfig.CACHE_DIR by default
        expiry_days: Maximum age of a reused entry, CacheConfig.CACHE_EXPIRY_DAYS by default
        enabled: Turn caching off for this function only
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            if not (enabled and CacheConfig.CACHE_ENABLED):
                return func(*args, **kwargs)

            directory = _directory(cache_dir)
            directory.mkdir(parents=True, exist_ok=True)
            path = directory / f"{_call_key(func, args, kwargs)}.pkl"

            hit, value = _read(path, expiry_days or CacheConfig.CACHE_EXPIRY_DAYS)
            if hit:
                logger.debug(f"{func.__qualname__}: cache hit {path.name}")
                return value

            value = func(*args, **kwargs)
            _write(path, value)
            return value

        return wrapper

    return decorator if func is None else decorator(func)


def clear_cache(cache_dir: Optional[Union[str, Path]] = None, older_than_days: Optional[float] = None) -> int:
    """Delete cache entries, only those older than `older_than_days` if given; returns how many"""
    directory = _directory(cache_dir)
    if not directory.exists():
        logger.info(f"Cache directory {directory} does not exist")
        return 0

    removed = [
        (path, size)
        for path, age, size in list(_entries(directory))
        if older_than_days is None or age >= older_than_days
    ]
    for path, _ in removed:
        path.unlink()
    logger.info(f"Cleared {len(removed)} cache entries ({sum(s for _, s in removed) / 1e6:.2f} MB) from {directory}")
    return len(removed)


def get_cache_stats(cache_dir: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    directory = _directory(cache_dir)
    entries = list(_entries(directory)) if directory.exists() else []
    ages = [age for _, age, _ in entries]
    total = sum(size for _, _, size in entries)
    return {
        "directory": str(directory),
        "exists": directory.exists(),
        "file_count": len(entries),
        "total_size_bytes": total,
        "total_size_mb": total / (1024 * 1024),
        "oldest_file_age_days": max(ages, default=0),
        "newest_file_age_days": min(ages, default=0),
    }
