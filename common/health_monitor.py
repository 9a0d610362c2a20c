"""
Health reporting for the calendar bridge.

Components report their own ComponentHealth; the overall status is the worst
component status. Served by the /health endpoint in main.py.
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional
from dataclasses import dataclass, field
from enum import Enum


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.UNKNOWN: 1,
    HealthStatus.DEGRADED: 2,
    HealthStatus.UNHEALTHY: 3,
}


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus
    message: str
    details: Optional[Dict] = None


@dataclass
class SystemHealthReport:
    components: List[ComponentHealth]
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    extra: Dict = field(default_factory=dict)

    @property
    def overall_status(self) -> HealthStatus:
        if not self.components:
            return HealthStatus.UNKNOWN
        return max((c.status for c in self.components), key=lambda s: _SEVERITY[s])

    def to_dict(self):
        result = {
            "status": self.overall_status.value,
            "timestamp": self.timestamp,
            "components": [
                {"name": c.name, "status": c.status.value, "message": c.message, "details": c.details}
                for c in self.components
            ],
        }
        result.update(self.extra)
        return result
