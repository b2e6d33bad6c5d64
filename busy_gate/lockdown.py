"""Storage circuit breaker.

Lock and quota state is only as trustworthy as the store it lives in. When
SQLite becomes slow or starts failing (WAL contention, a full disk, a locked
file), the gate stops answering instead of handing out busy/free answers it
cannot persist. Every store operation runs through `DbCircuitBreaker`; once
tripped, operations raise `StorageLockdownError` until the lockdown window
passes.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("busy_gate.lockdown")


class StorageLockdownError(RuntimeError):
    """Raised while the store is in lockdown after repeated failures."""


@dataclass
class CircuitBreakerConfig:
    """Configuration for DbCircuitBreaker.

    Environment variables:
    - BUSY_DB_LATENCY_THRESHOLD_MS: an operation slower than this trips the breaker.
    - BUSY_DB_FAILURE_THRESHOLD: consecutive failures required to trip.
    - BUSY_DB_LOCKDOWN_SECONDS: how long the lockdown lasts.
    - BUSY_DB_CONNECT_TIMEOUT_SECONDS: sqlite busy wait per connection.
    - BUSY_DB_ERROR_STRICT: '1' treats any OperationalError as a failure,
      '0' only lock/busy errors.
    """

    latency_threshold_ms: int = 2000
    failure_threshold: int = 3
    lockdown_seconds: int = 15
    connect_timeout_seconds: float = 5.0
    error_strict: bool = False

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        def _get_int(name: str, default: int) -> int:
            try:
                return int(os.getenv(name, str(default)).strip())
            except ValueError:
                return default

        def _get_float(name: str, default: float) -> float:
            try:
                return float(os.getenv(name, str(default)).strip())
            except ValueError:
                return default

        latency = _get_int("BUSY_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms)
        failures = _get_int("BUSY_DB_FAILURE_THRESHOLD", cls.failure_threshold)
        lockdown = _get_int("BUSY_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds)
        timeout = _get_float("BUSY_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds)
        strict = os.getenv("BUSY_DB_ERROR_STRICT", "0").strip().lower() in ("1", "true", "yes")

        if latency <= 0:
            latency = cls.latency_threshold_ms
        return cls(
            latency_threshold_ms=latency,
            failure_threshold=max(1, failures),
            lockdown_seconds=max(1, lockdown),
            connect_timeout_seconds=timeout if timeout > 0 else 0.01,
            error_strict=strict,
        )


class DbCircuitBreaker:
    """Counts storage failures and holds a lockdown deadline."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig.from_env()
        self._failure_count = 0
        self._lockdown_until_monotonic: float = 0.0

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def is_lockdown_active(self) -> bool:
        return time.monotonic() < self._lockdown_until_monotonic

    def raise_if_lockdown(self) -> None:
        if self.is_lockdown_active():
            raise StorageLockdownError("LOCKDOWN_ACTIVE")

    def _trip(self, reason: str) -> None:
        self._lockdown_until_monotonic = time.monotonic() + float(self.config.lockdown_seconds)
        self._failure_count = self.config.failure_threshold
        logger.warning("store lockdown for %ss (%s)", self.config.lockdown_seconds, reason)

    def record_success(self) -> None:
        if self._failure_count > 0:
            self._failure_count -= 1

    def record_latency(self, elapsed_ms: float) -> None:
        if elapsed_ms >= float(self.config.latency_threshold_ms):
            self._failure_count += 1
            self._trip(f"slow operation {elapsed_ms:.0f}ms")

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        self._failure_count += 1
        if self._failure_count >= self.config.failure_threshold:
            self._trip(f"{type(exc).__name__}: {exc}" if exc is not None else "failure threshold")

    def counts_as_failure(self, message: str) -> bool:
        if self.config.error_strict:
            return True
        msg = (message or "").lower()
        return "locked" in msg or "busy" in msg or "disk" in msg or "unable to open" in msg
