"""Database health snapshot with derived status and issues.

Status and issues are computed from the raw indicators on every access, so
they can never disagree with the values they summarize. Each available
indicator is rated against ``HealthThresholds`` and the worst rating wins.
Indicators the engine does not expose are ``None`` and are skipped; a
snapshot with no rated indicator at all is ``UNKNOWN``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from ..config.models import HealthThresholds
from .models import PlatformType


class HealthStatus(Enum):
    """Discrete health rating."""

    HEALTHY = "Healthy"
    WARNING = "Warning"
    CRITICAL = "Critical"
    UNKNOWN = "Unknown"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def __str__(self) -> str:
        return self.value


_STATUS_RANK = {
    HealthStatus.UNKNOWN: 0,
    HealthStatus.HEALTHY: 1,
    HealthStatus.WARNING: 2,
    HealthStatus.CRITICAL: 3,
}


@dataclass(frozen=True)
class HealthIssue:
    """A single problem found in a health snapshot."""
    category: str
    description: str
    severity: HealthStatus
    recommendation: str


def rate(value: Optional[float], warning: float, critical: float) -> Optional[HealthStatus]:
    """Rate one indicator. Returns None when the value is unavailable."""
    if value is None:
        return None
    if value >= critical:
        return HealthStatus.CRITICAL
    if value >= warning:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


@dataclass(frozen=True)
class DatabaseHealth:
    """Point-in-time health of the configured database."""
    database_name: str
    platform: PlatformType
    platform_version: str = ""
    checked_at: Optional[datetime] = None
    uptime_hours: Optional[float] = None
    cpu_usage_percent: Optional[float] = None
    memory_usage_percent: Optional[float] = None
    disk_usage_percent: Optional[float] = None
    active_connections: Optional[int] = None
    max_connections: Optional[int] = None
    average_query_time_ms: Optional[float] = None
    total_queries: Optional[int] = None
    slow_queries: Optional[int] = None
    thresholds: HealthThresholds = field(default_factory=HealthThresholds)

    def __post_init__(self) -> None:
        # Rated against the thresholds in force when the snapshot was taken
        object.__setattr__(self, "thresholds", self.thresholds.model_copy())

    @property
    def connection_usage_percent(self) -> Optional[float]:
        if self.active_connections is None or not self.max_connections:
            return None
        return self.active_connections / self.max_connections * 100.0

    def _ratings(self) -> List[Tuple[str, Optional[HealthStatus], str, str]]:
        t = self.thresholds
        usage = self.connection_usage_percent
        return [
            (
                "Connections",
                rate(usage, t.connection_warning_percent, t.connection_critical_percent),
                f"Connection usage is high: {usage or 0.0:.1f}%",
                "Consider raising the connection limit or investigating connection leaks",
            ),
            (
                "Performance",
                rate(self.slow_queries, t.slow_query_warning, t.slow_query_critical),
                f"High number of slow queries: {self.slow_queries}",
                "Review slow queries and consider optimization or indexing",
            ),
            (
                "CPU",
                rate(self.cpu_usage_percent, t.cpu_warning_percent, t.cpu_critical_percent),
                f"CPU usage is high: {self.cpu_usage_percent or 0.0:.1f}%",
                "Look for expensive queries or scale up compute",
            ),
            (
                "Memory",
                rate(self.memory_usage_percent, t.memory_warning_percent, t.memory_critical_percent),
                f"Memory usage is high: {self.memory_usage_percent or 0.0:.1f}%",
                "Review cache sizing and memory-hungry sessions",
            ),
            (
                "Disk",
                rate(self.disk_usage_percent, t.disk_warning_percent, t.disk_critical_percent),
                f"Disk usage is high: {self.disk_usage_percent or 0.0:.1f}%",
                "Free space or plan for storage growth",
            ),
        ]

    @property
    def status(self) -> HealthStatus:
        ratings = [rating for _, rating, _, _ in self._ratings() if rating is not None]
        if not ratings:
            return HealthStatus.UNKNOWN
        return max(ratings, key=lambda rating: rating.rank)

    @property
    def issues(self) -> Tuple[HealthIssue, ...]:
        """Issues for every indicator rated warning or worse, in fixed category order."""
        return tuple(
            HealthIssue(
                category=category,
                description=description,
                severity=rating,
                recommendation=recommendation,
            )
            for category, rating, description, recommendation in self._ratings()
            if rating in (HealthStatus.WARNING, HealthStatus.CRITICAL)
        )
