"""
Per-identifier locks serialising reconciliation of one gateway payment.

Redis-backed (shared by every worker process) when REDIS_URL is set and
reachable; falls back to process-local locks otherwise. Either way the
optimistic version columns on Order/Payment still catch cross-process races.
"""

import logging
import threading
from contextlib import contextmanager

import redis

from . import config
from .errors import ConcurrentModification

logger = logging.getLogger(__name__)

KEY_PREFIX = "lock:payment:"

_redis = None
_redis_checked = False
_local_locks: dict[str, list] = {}      # key -> [lock, holders + waiters]
_local_guard = threading.Lock()


def _get_redis():
    global _redis, _redis_checked
    if _redis_checked:
        return _redis
    _redis_checked = True
    if not config.REDIS_URL:
        return None
    try:
        client = redis.from_url(config.REDIS_URL, decode_responses=True)
        client.ping()
        _redis = client
    except redis.RedisError as exc:
        logger.warning("Redis unavailable (%s); using process-local payment locks", exc)
        _redis = None
    return _redis


def _checkout_local(key: str) -> threading.Lock:
    with _local_guard:
        entry = _local_locks.get(key)
        if entry is None:
            entry = _local_locks[key] = [threading.Lock(), 0]
        entry[1] += 1
        return entry[0]


def _return_local(key: str) -> None:
    with _local_guard:
        entry = _local_locks[key]
        entry[1] -= 1
        if entry[1] == 0:
            del _local_locks[key]


@contextmanager
def payment_lock(key: str, timeout: float | None = None):
    """Hold the lock for ``key`` (a gateway payment id) for the duration of the block."""
    timeout = config.LOCK_TIMEOUT_SECONDS if timeout is None else timeout
    client = _get_redis()

    if client is not None:
        lock = client.lock(KEY_PREFIX + key, timeout=timeout, blocking_timeout=timeout)
        if not lock.acquire():
            raise ConcurrentModification(f"Timed out waiting for lock on {key}")
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                logger.warning("Lock on %s expired before release", key)
        return

    lock = _checkout_local(key)
    try:
        if not lock.acquire(timeout=timeout):
            raise ConcurrentModification(f"Timed out waiting for lock on {key}")
        try:
            yield
        finally:
            lock.release()
    finally:
        _return_local(key)


def reset():
    """Forget the Redis connection and local locks (tests, config reloads)."""
    global _redis, _redis_checked
    _redis = None
    _redis_checked = False
    with _local_guard:
        _local_locks.clear()
