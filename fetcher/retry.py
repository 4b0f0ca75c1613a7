import functools
import logging
import random
import sqlite3
import time

_DEFAULT_ATTEMPTS = 5
_DEFAULT_BASE_DELAY = 0.1
_DEFAULT_FACTOR = 2.0
_DEFAULT_JITTER = 0.1


def is_sqlite_busy(exc):
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def backoff_delay(attempt, *, base_delay=_DEFAULT_BASE_DELAY, factor=_DEFAULT_FACTOR, jitter=_DEFAULT_JITTER):
    """Delay before retry number ``attempt`` (1-based), with +/- jitter."""
    delay = base_delay * (factor ** (attempt - 1))
    if jitter:
        delay *= random.uniform(1.0 - jitter, 1.0 + jitter)
    return max(0.0, delay)


def call_with_retry(
    func,
    *args,
    is_retryable,
    attempts=_DEFAULT_ATTEMPTS,
    base_delay=_DEFAULT_BASE_DELAY,
    factor=_DEFAULT_FACTOR,
    jitter=_DEFAULT_JITTER,
    sleep=time.sleep,
    **kwargs,
):
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        try:
            return func(*args, **kwargs)
        except Exception as exc:
            if not is_retryable(exc) or attempt >= attempts:
                raise
            delay = backoff_delay(attempt, base_delay=base_delay, factor=factor, jitter=jitter)
            logging.warning(
                "Retryable error in %s (attempt %s/%s): %s; retrying in %.3fs",
                getattr(func, "__name__", "call"),
                attempt,
                attempts,
                exc,
                delay,
            )
            sleep(delay)


def retry_on(
    is_retryable,
    *,
    attempts=_DEFAULT_ATTEMPTS,
    base_delay=_DEFAULT_BASE_DELAY,
    factor=_DEFAULT_FACTOR,
    jitter=_DEFAULT_JITTER,
    sleep=time.sleep,
):
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            return call_with_retry(
                func,
                *args,
                is_retryable=is_retryable,
                attempts=attempts,
                base_delay=base_delay,
                factor=factor,
                jitter=jitter,
                sleep=sleep,
                **kwargs,
            )

        return wrapper

    return decorator
