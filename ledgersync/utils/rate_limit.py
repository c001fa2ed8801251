from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional


log = logging.getLogger(__name__)


def mask_secret(value: str | None) -> str:
    s = (value or "").strip()
    if not s:
        return "****"
    return "****" + s[-4:]


_GLOBAL_LOCK = threading.Lock()
_KEY_LOCKS: dict[str, threading.Lock] = {}
# (api_key, action) -> monotonic time of the last call
_LAST_CALL_AT: dict[tuple[str, str], float] = {}


def _lock_for_key(api_key: str) -> threading.Lock:
    with _GLOBAL_LOCK:
        lock = _KEY_LOCKS.get(api_key)
        if lock is None:
            lock = _KEY_LOCKS[api_key] = threading.Lock()
        return lock


@contextmanager
def key_serial_lock(api_key: str) -> Iterator[None]:
    """
    One export job at a time per API key within this process: the job list is shared,
    so creation and polling for the same key must not interleave.
    """
    with _lock_for_key(api_key):
        yield


def rate_limit_sleep(
    *,
    api_key: str,
    action: str,
    min_interval_s: float,
    sleep_fn: Optional[Callable[[float], None]] = None,
) -> float:
    """
    Space calls of `action` for `api_key` at least `min_interval_s` apart.

    Returns the seconds slept (0.0 when the interval had already passed).
    """
    slot = (api_key, action)
    with _GLOBAL_LOCK:
        last = _LAST_CALL_AT.get(slot)
    wait = 0.0
    if last is not None:
        wait = max(0.0, last + float(min_interval_s) - time.monotonic())
    if wait > 0:
        log.debug("Export API rate limit: sleeping %.2fs before %s (key %s)", wait, action, mask_secret(api_key))
        (sleep_fn or time.sleep)(wait)
    with _GLOBAL_LOCK:
        _LAST_CALL_AT[slot] = time.monotonic()
    return wait
