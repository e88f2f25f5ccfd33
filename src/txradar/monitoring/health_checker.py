"""
Health Checker for component health monitoring.

Monitors the prevout cache, node RPC, event feed staleness, resolver load,
mempool sync state and (when configured) the history database.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional

if TYPE_CHECKING:
    from txradar.core.pipeline import PipelineOrchestrator
    from txradar.resolver.cache import PrevoutCache
    from txradar.resolver.resolver import PrevoutResolver
    from txradar.resolver.rpc import BitcoinRpcClient
    from txradar.storage import Database

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Health status levels."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    WARNING = "warning"
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    """Health check result for a single component."""

    component: str
    status: HealthStatus
    message: str
    latency_ms: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "component": self.component,
            "status": self.status.value,
            "message": self.message,
            "latency_ms": round(self.latency_ms, 2) if self.latency_ms is not None else None,
        }


@dataclass
class AggregateHealth:
    """Overall system health."""

    status: HealthStatus
    components: List[ComponentHealth] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "components": [c.to_dict() for c in self.components],
            "checked_at": self.checked_at.isoformat(),
        }


class HealthChecker:
    """
    Checks health of radar components.

    Usage:
        checker = HealthChecker(cache=cache, rpc=rpc, pipeline=pipeline,
                                resolver=resolver)

        # Check single component
        health = await checker.check_rpc()

        # Check all components
        overall = await checker.check_all()
    """

    def __init__(
        self,
        cache: Optional["PrevoutCache"] = None,
        rpc: Optional["BitcoinRpcClient"] = None,
        pipeline: Optional["PipelineOrchestrator"] = None,
        resolver: Optional["PrevoutResolver"] = None,
        db: Optional["Database"] = None,
        feed_staleness_threshold: float = 120.0,
        resolver_load_warning: float = 0.8,
    ) -> None:
        """
        Args:
            feed_staleness_threshold: Seconds without events to consider the feed stale
            resolver_load_warning: Fraction of max queue depth that counts as degraded
        """
        self._cache = cache
        self._rpc = rpc
        self._pipeline = pipeline
        self._resolver = resolver
        self.db = db
        self._feed_staleness_threshold = feed_staleness_threshold
        self._resolver_load_warning = resolver_load_warning

    async def check_cache(self) -> ComponentHealth:
        if self._cache is None:
            return ComponentHealth("cache", HealthStatus.UNHEALTHY, "No prevout cache configured")

        start_time = time.time()
        ok = await asyncio.to_thread(self._cache.ping)
        latency_ms = (time.time() - start_time) * 1000
        if not ok:
            return ComponentHealth(
                "cache", HealthStatus.UNHEALTHY, "Prevout cache is not readable", latency_ms
            )
        return ComponentHealth(
            "cache",
            HealthStatus.HEALTHY,
            f"Prevout cache ok (hits={self._cache.hits}, misses={self._cache.misses})",
            latency_ms,
        )

    async def check_rpc(self) -> ComponentHealth:
        if self._rpc is None:
            return ComponentHealth("rpc", HealthStatus.WARNING, "No RPC client configured")

        start_time = time.time()
        try:
            height = await self._rpc.get_block_count()
        except Exception as e:
            latency_ms = (time.time() - start_time) * 1000
            logger.error(f"RPC health check failed: {e}")
            return ComponentHealth(
                "rpc", HealthStatus.UNHEALTHY, f"RPC error: {str(e)}", latency_ms
            )

        latency_ms = (time.time() - start_time) * 1000
        return ComponentHealth(
            "rpc", HealthStatus.HEALTHY, f"Node reachable at height {height}", latency_ms
        )

    async def check_feed(self) -> ComponentHealth:
        if self._pipeline is None:
            return ComponentHealth("feed", HealthStatus.WARNING, "No pipeline configured")

        last_event_at = self._pipeline.last_event_at
        if last_event_at is None:
            return ComponentHealth("feed", HealthStatus.WARNING, "No events received yet")

        age_seconds = (datetime.now(timezone.utc) - last_event_at).total_seconds()
        if age_seconds > self._feed_staleness_threshold:
            return ComponentHealth(
                "feed",
                HealthStatus.DEGRADED,
                f"Event feed is stale ({age_seconds:.0f}s since last event)",
            )
        return ComponentHealth("feed", HealthStatus.HEALTHY, "Event feed is live")

    async def check_resolver(self) -> ComponentHealth:
        if self._resolver is None:
            return ComponentHealth("resolver", HealthStatus.WARNING, "No resolver configured")

        depth = self._resolver.queue_depth
        limit = self._resolver.max_queue_depth
        message = (
            f"{depth}/{limit} lookups in flight, "
            f"{self._resolver.retry_backlog} awaiting retry"
        )
        if depth >= limit:
            return ComponentHealth("resolver", HealthStatus.DEGRADED, f"Saturated: {message}")
        if depth >= limit * self._resolver_load_warning:
            return ComponentHealth("resolver", HealthStatus.WARNING, f"High load: {message}")
        return ComponentHealth("resolver", HealthStatus.HEALTHY, message)

    async def check_sync(self) -> ComponentHealth:
        if self._pipeline is None:
            return ComponentHealth("sync", HealthStatus.WARNING, "No pipeline configured")

        if self._pipeline.resync_required:
            return ComponentHealth(
                "sync",
                HealthStatus.DEGRADED,
                "Mempool view untrusted until resync succeeds",
            )
        state = self._pipeline.state
        if state.invariant_violations:
            return ComponentHealth(
                "sync",
                HealthStatus.WARNING,
                f"{state.invariant_violations} invariant violations dropped",
            )
        return ComponentHealth(
            "sync", HealthStatus.HEALTHY, f"{state.pending_count()} pending transactions"
        )

    async def check_database(self) -> ComponentHealth:
        if self.db is None:
            return ComponentHealth(
                "database", HealthStatus.UNHEALTHY, "No database configured"
            )

        start_time = time.time()

        try:
            await self.db.execute("SELECT 1")
            latency_ms = (time.time() - start_time) * 1000
            return ComponentHealth(
                "database", HealthStatus.HEALTHY, "Database is accessible", latency_ms
            )
        except Exception as e:
            latency_ms = (time.time() - start_time) * 1000
            logger.error(f"Database health check failed: {e}")
            return ComponentHealth(
                "database", HealthStatus.UNHEALTHY, f"Database error: {str(e)}", latency_ms
            )

    async def check_all(self, timeout: float = 5.0) -> AggregateHealth:
        """
        Check all components, each bounded by its share of the timeout.

        The database check only runs when a database is configured.
        """
        checks: list[tuple[str, Callable[[], Awaitable[ComponentHealth]]]] = [
            ("cache", self.check_cache),
            ("rpc", self.check_rpc),
            ("feed", self.check_feed),
            ("resolver", self.check_resolver),
            ("sync", self.check_sync),
        ]
        if self.db is not None:
            checks.append(("database", self.check_database))

        components = []
        for name, check_func in checks:
            try:
                result = await asyncio.wait_for(check_func(), timeout=timeout / len(checks))
                components.append(result)
            except asyncio.TimeoutError:
                components.append(ComponentHealth(
                    component=name,
                    status=HealthStatus.UNHEALTHY,
                    message=f"{name} check timed out",
                ))
            except Exception as e:
                components.append(ComponentHealth(
                    component=name,
                    status=HealthStatus.UNHEALTHY,
                    message=f"{name} check failed: {str(e)}",
                ))

        return AggregateHealth(
            status=self._calculate_overall_status(components),
            components=components,
        )

    def _calculate_overall_status(
        self,
        components: List[ComponentHealth],
    ) -> HealthStatus:
        """Calculate overall status from component statuses."""
        statuses = [c.status for c in components]

        # Any UNHEALTHY -> overall UNHEALTHY
        if HealthStatus.UNHEALTHY in statuses:
            return HealthStatus.UNHEALTHY

        # Any DEGRADED or WARNING -> overall DEGRADED
        if HealthStatus.DEGRADED in statuses or HealthStatus.WARNING in statuses:
            return HealthStatus.DEGRADED

        return HealthStatus.HEALTHY
