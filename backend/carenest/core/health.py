"""
Health check aggregation — deep health probe for the core's collaborators.

Checks:
    • Entity store connectivity (memory or SQL)
    • SMS gateway configuration
    • Change-stream backlog (events not yet delivered)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from backend.carenest.core.config import settings

logger = logging.getLogger(__name__)

# Undelivered events above this mean the handlers are falling behind
STREAM_BACKLOG_WARN = 100


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


def check_store(store) -> ComponentHealth:
    """Round-trip the entity store."""
    comp = ComponentHealth(name="store", details={"backend": store.backend_name})
    start = time.monotonic()
    if store.ping():
        comp.message = "Store reachable"
    else:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Store ping failed"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_sms_gateway(gateway) -> ComponentHealth:
    comp = ComponentHealth(name="sms_gateway", details={"provider": gateway.provider})
    if gateway.provider == "simulation":
        comp.status = HealthStatus.DEGRADED
        comp.message = "Simulation mode: messages are logged, not sent"
    else:
        comp.message = "Provider configured"
    return comp


def check_change_stream(stream) -> ComponentHealth:
    comp = ComponentHealth(name="change_stream")
    backlog = stream.pending()
    comp.details = {"pending_events": backlog}
    if backlog > STREAM_BACKLOG_WARN:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"{backlog} undelivered events"
    else:
        comp.message = "Handlers keeping up"
    return comp


def run_health_check(store, gateway, stream) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    report.components = [
        check_store(store),
        check_sms_gateway(gateway),
        check_change_stream(stream),
    ]

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    if report.status != HealthStatus.HEALTHY:
        logger.debug("Health check: %s", report.status.value)
    return report
