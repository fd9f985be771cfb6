"""Per-subsystem circuit breakers for the scan and print pipeline.

Four subsystems report here: ``scanner`` (discovery cycles), ``printer``
(render plus ``lpr``), ``store`` (record flushes) and ``api``. After
``failure_threshold`` consecutive failures a subsystem is suppressed for
``cooldown_seconds``. The scanner skips ticks while it is suppressed, and the
reconciler holds back new print jobs while the printer is suppressed. Those
devices stay unrecorded and are picked up again by a later scan.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from .config import Config
from .metrics import record_subsystem_failure, record_subsystem_status

SUBSYSTEMS: Tuple[str, ...] = ("scanner", "printer", "store", "api")


@dataclass
class BackoffPolicy:
    """Retry delay after discovery socket errors."""

    base: float
    factor: float
    maximum: float

    def delay(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        base = max(0.0, self.base)
        return min(self.maximum, base * (self.factor ** (failures - 1)))


@dataclass
class Circuit:
    """Breaker state of one subsystem."""

    status: str = "ok"
    failures: int = 0
    suppressions: int = 0
    reopens_at: Optional[float] = None
    last_error: Optional[str] = None
    last_success: Optional[float] = None
    last_failure: Optional[float] = None

    def succeed(self, now: float) -> None:
        self.status = "ok"
        self.failures = 0
        self.reopens_at = None
        self.last_error = None
        self.last_success = now

    def fail(self, now: float, error: Optional[BaseException], threshold: int, cooldown: float) -> bool:
        """Count a failure; return ``True`` when it trips the breaker."""

        self.failures += 1
        self.last_failure = now
        if error is not None:
            self.last_error = str(error)
        if self.failures < threshold:
            self.status = "degraded"
            return False
        self.status = "suppressed"
        self.suppressions += 1
        self.reopens_at = now + cooldown
        return True

    def remaining(self, now: float) -> float:
        if self.reopens_at is None:
            return 0.0
        return max(0.0, self.reopens_at - now)

    def as_dict(self, now: float) -> Dict[str, Any]:
        return {
            "status": self.status,
            "failures": self.failures,
            "suppressions": self.suppressions,
            "suppressed_for": self.remaining(now) if self.reopens_at is not None else None,
            "last_error": self.last_error,
            "last_success": self.last_success,
            "last_failure": self.last_failure,
        }


class HealthMonitor:
    """Circuit breakers for the label service subsystems."""

    def __init__(
        self,
        subsystems: Iterable[str] = SUBSYSTEMS,
        failure_threshold: int = 5,
        cooldown_seconds: float = 15.0,
    ) -> None:
        self._circuits: Dict[str, Circuit] = {name: Circuit() for name in subsystems}
        self._threshold = max(1, failure_threshold)
        self._cooldown = max(0.0, cooldown_seconds)
        self._lock = asyncio.Lock()
        for name in self._circuits:
            record_subsystem_status(name, "ok")

    @classmethod
    def from_config(cls, config: Config, subsystems: Iterable[str] = SUBSYSTEMS) -> "HealthMonitor":
        return cls(
            subsystems,
            failure_threshold=config.subsystem_failure_threshold,
            cooldown_seconds=config.subsystem_failure_cooldown,
        )

    def _circuit(self, subsystem: str) -> Circuit:
        # Subsystems not named up front are tracked from their first report.
        return self._circuits.setdefault(subsystem, Circuit())

    async def record_success(self, subsystem: str) -> None:
        async with self._lock:
            self._circuit(subsystem).succeed(time.monotonic())
            record_subsystem_status(subsystem, "ok")

    async def record_failure(self, subsystem: str, error: Optional[BaseException] = None) -> None:
        async with self._lock:
            circuit = self._circuit(subsystem)
            if circuit.fail(time.monotonic(), error, self._threshold, self._cooldown):
                record_subsystem_failure(subsystem)
            record_subsystem_status(subsystem, circuit.status)

    async def allow_attempt(self, subsystem: str) -> Tuple[bool, float]:
        """Return whether ``subsystem`` may be used now, and the cooldown left.

        Once the cooldown has passed a suppressed subsystem moves to
        ``recovering``; its next success closes the breaker and its next
        failure trips it again.
        """

        async with self._lock:
            circuit = self._circuit(subsystem)
            remaining = circuit.remaining(time.monotonic())
            if remaining > 0:
                return False, remaining
            if circuit.status == "suppressed":
                circuit.status = "recovering"
                record_subsystem_status(subsystem, circuit.status)
        return True, 0.0

    async def snapshot(self) -> Mapping[str, Dict[str, Any]]:
        async with self._lock:
            now = time.monotonic()
            return {name: circuit.as_dict(now) for name, circuit in self._circuits.items()}
