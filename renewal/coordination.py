"""
Cluster-wide coordination state kept in Redis.

Two independent per-domain entries, never sharing a key:

  acme:d:lock:op:<domain>    operation lease, mutual exclusion for one
                             issuance attempt, auto-expires after the lease
                             TTL even if the holder dies
  acme:d:lock:safe:<domain>  cooldown flag, set after a failed issuance,
                             expires on its own; presence alone blocks
                             further attempts
"""
from __future__ import annotations

import logging

import redis
from redis.exceptions import LockError
from redis.lock import Lock

from renewal.errors import LeaseTimeout

logger = logging.getLogger(__name__)

NAMESPACE = "acme"


def lease_key(domain: str) -> str:
    return f"{NAMESPACE}:d:lock:op:{domain}"


def cooldown_key(domain: str) -> str:
    return f"{NAMESPACE}:d:lock:safe:{domain}"


class RedisLeaseLock:
    """Bounded-wait, bounded-lifetime lock built on redis-py's Lock."""

    def __init__(self, client: redis.Redis, sleep: float = 0.1) -> None:
        self._client = client
        self._sleep = sleep

    def acquire(self, key: str, lease_ttl: float, max_wait: float) -> Lock:
        """
        Block up to *max_wait* seconds for *key*; the lease expires after
        *lease_ttl* seconds.  Returns the lock token; raises LeaseTimeout.
        """
        lock = self._client.lock(
            key,
            timeout=lease_ttl,
            sleep=self._sleep,
            blocking=True,
            blocking_timeout=max_wait,
        )
        if not lock.acquire():
            raise LeaseTimeout(f"Timed out after {max_wait}s waiting for lease {key}")
        return lock

    def release(self, token: Lock) -> None:
        try:
            token.release()
        except LockError as exc:
            # Lease already expired or was taken over; nothing left to free.
            logger.warning("Lease %s was not held at release: %s", token.name, exc)


class CooldownGate:
    """Self-expiring per-domain flag blocking issuance after a failure."""

    def __init__(self, client: redis.Redis, ttl: int) -> None:
        self._client = client
        self.ttl = ttl

    def is_blocked(self, domain: str) -> bool:
        return bool(self._client.exists(cooldown_key(domain)))

    def block(self, domain: str) -> None:
        self._client.set(cooldown_key(domain), 1, ex=self.ttl)
