"""
Health Aggregation

Each service exposes ``health_check() -> ComponentHealth``. The aggregator
polls them concurrently under a time budget and folds the results into one
status: the worst of the components that are switched on.
"""

import asyncio
import datetime
import enum
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from hybrid_srs.common.logger import app_logger

logger = app_logger.getChild("health")


class HealthStatus(enum.Enum):
    """Component and overall health states, ordered by severity."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    DISABLED = "disabled"

    @property
    def severity(self) -> int:
        return {
            HealthStatus.DISABLED: -1,
            HealthStatus.HEALTHY: 0,
            HealthStatus.DEGRADED: 1,
            HealthStatus.UNHEALTHY: 2
        }[self]


@dataclass
class ComponentHealth:
    """Result of one component's health check."""

    name: str
    status: HealthStatus
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self, detailed: bool = False) -> Dict[str, Any]:
        data = {
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2)
        }
        if self.message:
            data["message"] = self.message
        if detailed and self.details:
            data["details"] = dict(self.details)
        return data


@dataclass
class HealthReport:
    """Composite health of the engine."""

    status: HealthStatus
    components: Dict[str, ComponentHealth]
    version: str = ""
    checked_at: datetime.datetime = field(default_factory=lambda: datetime.datetime.now(datetime.timezone.utc))

    @property
    def http_status(self) -> int:
        return 503 if self.status == HealthStatus.UNHEALTHY else 200

    def to_dict(self, detailed: bool = False) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "timestamp": self.checked_at.isoformat(),
            "components": {
                name: component.to_dict(detailed)
                for name, component in self.components.items()
            }
        }


HealthCheck = Callable[[], Awaitable[ComponentHealth]]


def overall_status(statuses: List[HealthStatus]) -> HealthStatus:
    """
    Fold component statuses into one.

    Disabled components are ignored unless every component is disabled.
    """
    active = [status for status in statuses if status != HealthStatus.DISABLED]
    if not active:
        return HealthStatus.DISABLED if statuses else HealthStatus.HEALTHY
    return max(active, key=lambda status: status.severity)


class HealthAggregator:
    """Polls registered component checks and builds a HealthReport."""

    def __init__(self, timeout_seconds: float = 1.0, version: str = ""):
        self.timeout_seconds = timeout_seconds
        self.version = version
        self._checks: Dict[str, HealthCheck] = {}

    def register(self, name: str, check: HealthCheck) -> None:
        if name in self._checks:
            logger.warning(f"Health check '{name}' already registered, overwriting")
        self._checks[name] = check

    @property
    def components(self) -> List[str]:
        return list(self._checks)

    async def _run_check(self, name: str, check: HealthCheck) -> ComponentHealth:
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(check(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Health check '{name}' timed out after {self.timeout_seconds}s")
            return ComponentHealth(
                name=name,
                status=HealthStatus.UNHEALTHY,
                latency_ms=(time.perf_counter() - start) * 1000,
                message="health check timed out"
            )
        except Exception as e:
            logger.error(f"Health check '{name}' failed: {e}")
            return ComponentHealth(
                name=name,
                status=HealthStatus.UNHEALTHY,
                latency_ms=(time.perf_counter() - start) * 1000,
                message=str(e)
            )
        if not result.latency_ms:
            result.latency_ms = (time.perf_counter() - start) * 1000
        result.name = name
        return result

    async def check(self) -> HealthReport:
        """
        Run every registered check concurrently.

        The report always carries component details; ``HealthReport.to_dict``
        decides whether to render them.
        """
        names = list(self._checks)
        results = await asyncio.gather(
            *(self._run_check(name, self._checks[name]) for name in names)
        )
        components = dict(zip(names, results))
        status = overall_status([component.status for component in results])
        if status != HealthStatus.HEALTHY:
            logger.info(f"Health status {status.value}: " + ", ".join(
                f"{name}={component.status.value}" for name, component in components.items()
            ))
        return HealthReport(status=status, components=components, version=self.version)
