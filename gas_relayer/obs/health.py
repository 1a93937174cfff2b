"""Health aggregation over named probes.

A probe is a callable (sync or async) returning a ComponentHealth or a bool.
Probes run concurrently, each under its own timeout, and the overall status is
the worst component status.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Union

from gas_relayer.obs.logger import log_event


DetailValue = Union[str, int, float, bool]

DEFAULT_PROBE_TIMEOUT_SECONDS = 2.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 2,
}


def worst_of(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """Overall status: the least healthy of the given statuses (healthy if none)."""
    overall = HealthStatus.HEALTHY
    for status in statuses:
        if _SEVERITY[status] > _SEVERITY[overall]:
            overall = status
    return overall


@dataclass
class ComponentHealth:
    status: HealthStatus
    message: str = ""
    last_checked: datetime = field(default_factory=utc_now)
    response_time_ms: Optional[float] = None
    details: Dict[str, DetailValue] = field(default_factory=dict)
    # Free-form payload for data that does not fit the typed details map
    extra: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        for key, value in self.details.items():
            self._check_detail(key, value)

    @staticmethod
    def _check_detail(key: str, value: Any) -> None:
        if not isinstance(key, str):
            raise TypeError(f"Detail keys must be strings, got {type(key).__name__}")
        if not isinstance(value, (str, int, float, bool)):
            raise TypeError(
                f"Detail {key!r} must be str, int, float or bool, got {type(value).__name__}"
            )

    @classmethod
    def healthy(cls, message: str = "") -> "ComponentHealth":
        return cls(status=HealthStatus.HEALTHY, message=message)

    @classmethod
    def degraded(cls, message: str = "") -> "ComponentHealth":
        return cls(status=HealthStatus.DEGRADED, message=message)

    @classmethod
    def unhealthy(cls, message: str = "") -> "ComponentHealth":
        return cls(status=HealthStatus.UNHEALTHY, message=message)

    def with_response_time(self, response_time_ms: float) -> "ComponentHealth":
        self.response_time_ms = response_time_ms
        return self

    def with_detail(self, key: str, value: DetailValue) -> "ComponentHealth":
        self._check_detail(key, value)
        self.details[key] = value
        return self

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "status": self.status.value,
            "message": self.message,
            "last_checked": self.last_checked.isoformat(),
            "response_time_ms": self.response_time_ms,
            "details": dict(self.details),
        }
        if self.extra is not None:
            payload["extra"] = self.extra
        return payload


@dataclass
class SystemHealth:
    components: Dict[str, ComponentHealth]
    timestamp: datetime
    uptime_seconds: float

    @property
    def overall_status(self) -> HealthStatus:
        return worst_of(c.status for c in self.components.values())

    @property
    def healthy(self) -> bool:
        return self.overall_status == HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.overall_status.value,
            "components": {name: c.to_dict() for name, c in self.components.items()},
            "timestamp": self.timestamp.isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 3),
        }


ProbeFunc = Callable[[], Any]


@dataclass(frozen=True)
class HealthProbe:
    name: str
    func: ProbeFunc
    timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS


class HealthAggregator:
    def __init__(
        self,
        timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
        started_at: Optional[float] = None,
    ):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.timeout_seconds = timeout_seconds
        # Monotonic process-start reference for uptime
        self.started_at = time.monotonic() if started_at is None else started_at
        self.checks: Dict[str, HealthProbe] = {}

    def register_check(self, name: str, check_func: ProbeFunc, timeout_seconds: Optional[float] = None) -> None:
        if name in self.checks:
            raise ValueError(f"Health check already registered: {name}")
        if timeout_seconds is None:
            timeout_seconds = self.timeout_seconds
        elif timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.checks[name] = HealthProbe(name=name, func=check_func, timeout_seconds=timeout_seconds)

    def uptime_seconds(self) -> float:
        return max(0.0, time.monotonic() - self.started_at)

    async def check(self, probes: Optional[Iterable[HealthProbe]] = None) -> SystemHealth:
        selected = list(self.checks.values()) if probes is None else list(probes)
        results = await asyncio.gather(*(self._run_single_check(p) for p in selected))
        system = SystemHealth(
            components=dict(results),
            timestamp=utc_now(),
            uptime_seconds=self.uptime_seconds(),
        )
        if system.overall_status != HealthStatus.HEALTHY:
            log_event(
                "health_check",
                level="WARNING",
                status=system.overall_status.value,
                failing=[n for n, c in system.components.items() if c.status != HealthStatus.HEALTHY],
            )
        return system

    async def _run_single_check(self, probe: HealthProbe) -> tuple:
        start = time.monotonic()
        # A probe that cancels itself is a failed probe; cancelling check() still propagates
        task = asyncio.ensure_future(self._invoke(probe.func))
        try:
            done, _ = await asyncio.wait({task}, timeout=probe.timeout_seconds)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            task.cancel()
            health = ComponentHealth.unhealthy(
                f"Health check timed out after {probe.timeout_seconds:g}s"
            )
        elif task.cancelled():
            health = ComponentHealth.unhealthy("Health check was cancelled")
        elif task.exception() is not None:
            health = ComponentHealth.unhealthy(f"Health check failed: {task.exception()}")
        else:
            try:
                health = self._coerce(task.result())
            except TypeError as e:
                health = ComponentHealth.unhealthy(f"Health check failed: {e}")
        if health.response_time_ms is None:
            health.response_time_ms = round((time.monotonic() - start) * 1000.0, 3)
        return probe.name, health

    @staticmethod
    async def _invoke(check_func: ProbeFunc) -> Any:
        if inspect.iscoroutinefunction(check_func):
            return await check_func()
        # Sync probes run in a worker thread so the timeout still applies
        result = await asyncio.to_thread(check_func)
        if inspect.isawaitable(result):
            result = await result
        return result

    @staticmethod
    def _coerce(result: Any) -> ComponentHealth:
        if isinstance(result, ComponentHealth):
            return result
        if isinstance(result, bool):
            if result:
                return ComponentHealth.healthy("OK")
            return ComponentHealth.unhealthy("Check returned false")
        raise TypeError(f"Health check returned unsupported type {type(result).__name__}")
