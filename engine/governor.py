"""Named permit pools and retry-with-backoff for every external call.

Each pool is an independent bounded semaphore, so saturating disk-bound work
never blocks database writes or uploads. Pool sizes derive from the CPU count
visible to this process (cgroup quota aware) unless explicitly overridden.
"""

from __future__ import annotations

import logging
import math
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

RESOURCE_DISK = "disk"
RESOURCE_NETWORK = "network"
RESOURCE_OBJECT_STORAGE = "object-storage"
RESOURCE_DATABASE_WRITE = "database-write"

_CGROUP_V2_CPU_MAX = "/sys/fs/cgroup/cpu.max"
_CGROUP_V1_QUOTA = "/sys/fs/cgroup/cpu/cpu.cfs_quota_us"
_CGROUP_V1_PERIOD = "/sys/fs/cgroup/cpu/cpu.cfs_period_us"


def _read_text(path):
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read().strip()
    except OSError:
        return None


def _cgroup_cpu_limit(cpu_max_path=_CGROUP_V2_CPU_MAX, quota_path=_CGROUP_V1_QUOTA, period_path=_CGROUP_V1_PERIOD):
    raw = _read_text(cpu_max_path)
    if raw:
        parts = raw.split()
        if len(parts) == 2 and parts[0] != "max":
            try:
                quota, period = int(parts[0]), int(parts[1])
            except ValueError:
                quota, period = 0, 0
            if quota > 0 and period > 0:
                return max(1, math.floor(quota / period))
    quota_raw = _read_text(quota_path)
    period_raw = _read_text(period_path)
    if quota_raw and period_raw:
        try:
            quota, period = int(quota_raw), int(period_raw)
        except ValueError:
            return None
        if quota > 0 and period > 0:
            return max(1, math.floor(quota / period))
    return None


def detect_cpu_count(**cgroup_paths) -> int:
    """Usable CPU cores: the cgroup quota when present, capped by the host count."""
    host = os.cpu_count() or 1
    if hasattr(os, "sched_getaffinity"):
        try:
            host = len(os.sched_getaffinity(0)) or host
        except OSError:
            pass
    limit = _cgroup_cpu_limit(**cgroup_paths)
    if limit is not None:
        return max(1, min(host, limit))
    return max(1, host)


def default_pool_sizes(cpu_count: int) -> dict[str, int]:
    cpus = max(1, int(cpu_count))
    io = max(4, cpus * 2)
    return {
        RESOURCE_DISK: max(1, cpus),
        RESOURCE_NETWORK: io,
        RESOURCE_OBJECT_STORAGE: io,
        RESOURCE_DATABASE_WRITE: max(2, cpus),
    }


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    is_retryable: Callable[[BaseException], bool] | None = None

    @classmethod
    def from_settings(cls, settings, is_retryable=None):
        return cls(
            max_attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay,
            multiplier=settings.retry_multiplier,
            is_retryable=is_retryable,
        )


NO_RETRY = RetryPolicy(max_attempts=1)


def backoff_delay(attempt: int, base_delay: float, multiplier: float) -> float:
    """Delay to sleep after failed attempt number ``attempt`` (1-based)."""
    return float(base_delay) * (float(multiplier) ** max(0, attempt - 1))


def retry_with_backoff(
    operation,
    *,
    max_attempts=3,
    base_delay=0.5,
    multiplier=2.0,
    is_retryable=None,
    label=None,
    sleep=time.sleep,
):
    """Call ``operation()`` until it succeeds or attempts run out.

    Errors for which ``is_retryable`` returns False propagate immediately. After
    the last attempt the final error is re-raised unchanged.
    """
    attempts = max(1, int(max_attempts))
    name = label or getattr(operation, "__name__", "operation")
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except Exception as exc:
            if is_retryable is not None and not is_retryable(exc):
                raise
            if attempt >= attempts:
                logger.error("%s failed after %s attempt(s): %s", name, attempt, exc)
                raise
            delay = backoff_delay(attempt, base_delay, multiplier)
            logger.warning(
                "%s attempt %s/%s failed: %s; retrying in %.2fs", name, attempt, attempts, exc, delay
            )
            sleep(delay)
    raise AssertionError("unreachable")


@dataclass(frozen=True)
class PermitToken:
    resource: str
    serial: int


class _Pool:
    def __init__(self, name, limit):
        self.name = name
        self.limit = limit
        self.semaphore = threading.BoundedSemaphore(limit)
        self.acquired = 0
        self.released = 0
        self.failures = 0


class ResourceGovernor:
    def __init__(self, pool_sizes=None, *, cpu_count=None, sleep=time.sleep):
        self.cpu_count = int(cpu_count) if cpu_count else detect_cpu_count()
        sizes = default_pool_sizes(self.cpu_count)
        for name, value in (pool_sizes or {}).items():
            if value and int(value) > 0:
                sizes[name] = int(value)
        self._pools = {name: _Pool(name, limit) for name, limit in sizes.items()}
        self._lock = threading.Lock()
        self._serial = 0
        self._outstanding = set()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings, *, cpu_count=None):
        return cls(dict(settings.concurrency_overrides or {}), cpu_count=cpu_count)

    def limit(self, resource):
        return self._pool(resource).limit

    def _pool(self, resource):
        try:
            return self._pools[resource]
        except KeyError:
            raise KeyError(f"Unknown resource pool: {resource}") from None

    def acquire(self, resource) -> PermitToken:
        pool = self._pool(resource)
        pool.semaphore.acquire()
        with self._lock:
            self._serial += 1
            token = PermitToken(resource=resource, serial=self._serial)
            self._outstanding.add(token)
            pool.acquired += 1
        return token

    def release(self, token: PermitToken) -> None:
        with self._lock:
            if token not in self._outstanding:
                raise ValueError(f"Permit already released or unknown: {token}")
            self._outstanding.discard(token)
            pool = self._pools[token.resource]
            pool.released += 1
        pool.semaphore.release()

    @contextmanager
    def permit(self, resource):
        token = self.acquire(resource)
        try:
            yield token
        finally:
            self.release(token)

    def run(self, resource, fn, *args, **kwargs):
        """Run ``fn`` while holding one permit of ``resource``."""
        with self.permit(resource):
            try:
                return fn(*args, **kwargs)
            except Exception:
                with self._lock:
                    self._pools[resource].failures += 1
                raise

    def call(self, resource, fn, *, policy=None, label=None):
        """Permit plus retry; each attempt takes its own permit."""
        policy = policy or RetryPolicy()
        return retry_with_backoff(
            lambda: self.run(resource, fn),
            max_attempts=policy.max_attempts,
            base_delay=policy.base_delay,
            multiplier=policy.multiplier,
            is_retryable=policy.is_retryable,
            label=label or getattr(fn, "__name__", resource),
            sleep=self._sleep,
        )

    def snapshot(self):
        with self._lock:
            return {
                name: {
                    "limit": pool.limit,
                    "acquired": pool.acquired,
                    "released": pool.released,
                    "failures": pool.failures,
                    "in_flight": pool.acquired - pool.released,
                }
                for name, pool in self._pools.items()
            }
