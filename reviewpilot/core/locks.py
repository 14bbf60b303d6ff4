"""
Per-key distributed locks backed by Redis

Serializes work on a single key (one owner phone, one account) across API
processes and Celery workers without ever taking a global lock.
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import redis

from reviewpilot.core.config import get_settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


class LockNotAcquired(Exception):
    """Raised when a per-key lock could not be taken in time"""
    pass


def get_redis_client() -> redis.Redis:
    """Get the shared Redis client"""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            get_settings().redis_url,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
    return _redis_client


def set_redis_client(client: Optional[redis.Redis]) -> None:
    """Swap the shared client (tests use fakeredis here)"""
    global _redis_client
    _redis_client = client


@contextmanager
def key_lock(name: str, blocking: bool = True, blocking_timeout: float = 10.0,
             timeout: Optional[int] = None) -> Iterator[None]:
    """
    Hold a Redis lock for the duration of the block.

    Args:
        name: Lock key
        blocking: Wait for the lock instead of failing immediately
        blocking_timeout: Maximum seconds to wait when blocking
        timeout: Lock TTL in seconds, so a crashed holder cannot wedge the key

    Raises:
        LockNotAcquired: If the lock is held elsewhere
    """
    lock = get_redis_client().lock(
        name,
        timeout=timeout or get_settings().lock_timeout_seconds,
        blocking=blocking,
        blocking_timeout=blocking_timeout,
    )
    if not lock.acquire():
        raise LockNotAcquired(f"Lock {name} is held by another worker")

    try:
        yield
    finally:
        try:
            lock.release()
        except redis.exceptions.LockError as e:
            # TTL expired before release; the next holder already owns it
            logger.warning(f"Lock {name} expired before release: {e}")


def conversation_lock(phone: str):
    """Single-writer lock for one owner's conversation state"""
    return key_lock(f"reviewpilot:conversation:{phone}", blocking=True, blocking_timeout=15.0)


def account_poll_lock(account_id: int):
    """Non-blocking lock preventing overlapping poll cycles for an account"""
    return key_lock(f"reviewpilot:poll:{account_id}", blocking=False)


def notification_retry_lock():
    """Non-blocking lock so only one retry run works the due queue at a time"""
    return key_lock("reviewpilot:notification-retry", blocking=False,
                    timeout=get_settings().notification_retry_lock_seconds)
