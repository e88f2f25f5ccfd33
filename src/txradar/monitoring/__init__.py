"""
Monitoring Layer - Health checks and the publication surface.

This module provides:
    - HealthChecker: Cache, RPC, feed, resolver, sync and database checks
    - HealthStatus / ComponentHealth / AggregateHealth: Check results
    - create_dashboard_app: FastAPI JSON + WebSocket endpoints
    - run_dashboard: Serve the app with uvicorn
    - AlertManager: Notifications for high-scoring transactions
"""

from .health_checker import AggregateHealth, ComponentHealth, HealthChecker, HealthStatus
from .alerting import AlertManager
from .dashboard import create_dashboard_app, run_dashboard

__all__ = [
    "AggregateHealth",
    "AlertManager",
    "ComponentHealth",
    "HealthChecker",
    "HealthStatus",
    "create_dashboard_app",
    "run_dashboard",
]
