"""
FastAPI publication surface.

Provides:
    - REST endpoints for health, mempool stats and per-transaction state
    - Signal history queries (when a database is configured)
    - WebSocket endpoint streaming every published message as JSON
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .health_checker import HealthStatus

if TYPE_CHECKING:
    from txradar.core.pipeline import PipelineOrchestrator
    from txradar.core.publisher import EventPublisher
    from txradar.storage import SignalRepository

    from .health_checker import HealthChecker

logger = logging.getLogger(__name__)


def create_dashboard_app(
    pipeline: "PipelineOrchestrator",
    publisher: "EventPublisher",
    health_checker: Optional["HealthChecker"] = None,
    signal_repo: Optional["SignalRepository"] = None,
    subscriber_queue_size: int = 1000,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        pipeline: Running orchestrator (owns the state machine and scores)
        publisher: Channel the WebSocket clients subscribe to
        health_checker: Component health aggregation for /health
        signal_repo: History repository; /api/signals/* answer 503 without it
        subscriber_queue_size: Per-client buffer before oldest messages drop

    Returns:
        FastAPI application instance
    """
    app = FastAPI(
        title="txradar",
        description="Mempool transaction radar: lifecycle, scores and stats",
        version="1.0.0",
    )
    state = pipeline.state

    @app.get("/health")
    async def health_check():
        """
        Health check endpoint for Docker/Kubernetes.

        Returns 200 unless a component is unhealthy, then 503.
        """
        if health_checker is None:
            return {"status": HealthStatus.HEALTHY.value, "components": []}

        health = await health_checker.check_all()
        status_code = 503 if health.status is HealthStatus.UNHEALTHY else 200
        return JSONResponse(content=health.to_dict(), status_code=status_code)

    @app.get("/api/stats")
    async def get_stats():
        """Current mempool aggregates plus pipeline counters."""
        snapshot = state.snapshot_stats(datetime.now(timezone.utc))
        return {
            "mempool": snapshot.to_dict(),
            "pipeline": pipeline.stats.to_dict(),
            "tracked_entries": len(state),
            "invariant_violations": state.invariant_violations,
            "resync_required": pipeline.resync_required,
            "sequence": {
                "last": pipeline.sequence.last,
                "gaps_detected": pipeline.sequence.gaps_detected,
                "duplicates": pipeline.sequence.duplicates,
            },
            "subscribers": publisher.subscriber_count,
        }

    @app.get("/api/tx/{txid}")
    async def get_transaction(txid: str, head: bool = False):
        """
        Lifecycle entry and latest score of a transaction.

        With head=true, follows replacements to the current head first.
        """
        target = txid
        if head:
            target = state.resolve_head(txid)
            if target is None:
                raise HTTPException(status_code=404, detail=f"Unknown transaction {txid}")

        entry = state.get(target)
        if entry is None:
            raise HTTPException(status_code=404, detail=f"Unknown transaction {target}")

        scored = pipeline.latest_score(target)
        return {
            "requested": txid,
            "txid": target,
            "entry": entry.to_dict(),
            "score": scored.to_dict() if scored else None,
        }

    @app.get("/api/signals/recent")
    async def get_recent_signals(
        limit: int = Query(50, ge=1, le=1000),
        min_score: Optional[float] = Query(None, ge=0, le=100),
    ):
        """Persisted signals, newest first (or highest first with min_score)."""
        if signal_repo is None:
            raise HTTPException(status_code=503, detail="Signal history is not configured")

        if min_score is None:
            records = await signal_repo.get_recent(limit)
        else:
            records = await signal_repo.get_above_score(min_score, limit)
        return {
            "signals": [r.model_dump(mode="json") for r in records],
            "count": len(records),
        }

    @app.websocket("/ws/live")
    async def websocket_live(websocket: WebSocket):
        """Stream every published ScoredTx, transition and stats snapshot."""
        subscription = publisher.subscribe(maxsize=subscriber_queue_size)
        try:
            await websocket.accept()
            logger.info(f"Live WebSocket connected (total: {publisher.subscriber_count})")

            async for message in subscription:
                await websocket.send_json(message.to_dict())
        except WebSocketDisconnect:
            logger.info("Live WebSocket disconnected")
        except Exception as e:
            logger.error(f"Live WebSocket error: {e}")
        finally:
            subscription.close()
            if subscription.dropped:
                logger.warning(f"Live WebSocket client dropped {subscription.dropped} messages")

    return app


async def run_dashboard(app: FastAPI, host: str = "127.0.0.1", port: int = 9050) -> None:
    """
    Serve the app until cancelled.

    Args:
        app: Application from create_dashboard_app
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    config = uvicorn.Config(app, host=host, port=port, log_level="info")
    server = uvicorn.Server(config)
    await server.serve()
