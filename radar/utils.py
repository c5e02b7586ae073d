import functools
import hashlib
import inspect
import time
from datetime import datetime, timezone

from loguru import logger


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def epoch(value: datetime) -> float:
    return to_utc(value).timestamp()


def stable_hash(*parts: str, length: int = 12) -> str:
    """Short deterministic id from string parts."""
    key_str = "\x1f".join(parts)
    return hashlib.md5(key_str.encode()).hexdigest()[:length]


def timed_stage(func):
    """
    A decorator that logs pipeline stage entry, exit, and duration.

    Exceptions are logged and re-raised; the caller decides how to degrade.
    Works for both sync and async callables.
    """
    stage = func.__name__.lstrip("_")

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start = time.perf_counter()
            logger.debug(f"[stage] {stage} started")
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.warning(f"[stage] {stage} failed: {type(e).__name__}: {e}")
                raise
            logger.debug(f"[stage] {stage} done in {time.perf_counter() - start:.3f}s")
            return result

        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start = time.perf_counter()
        logger.debug(f"[stage] {stage} started")
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.warning(f"[stage] {stage} failed: {type(e).__name__}: {e}")
            raise
        logger.debug(f"[stage] {stage} done in {time.perf_counter() - start:.3f}s")
        return result

    return wrapper
