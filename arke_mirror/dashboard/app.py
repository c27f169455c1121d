"""FastAPI status application."""

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI

from ..config import Config
from ..errors import MirrorError
from ..store import ReplicaLog, StateStore
from ..sync import replica_stats

logger = logging.getLogger(__name__)


def create_app(
    config: Config,
    state_store: StateStore | None = None,
    replica_log: ReplicaLog | None = None,
) -> FastAPI:
    """Create the FastAPI status application.

    Every request reads the state file and log from disk, so the API can
    run in a separate process from the polling loop.

    Args:
        config: Application configuration.
        state_store: Optional store for the replica state.
        replica_log: Optional replica log.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="Arke Mirror",
        description="Status of the local Arke replica",
        version="0.1.0",
    )

    # Store references for route handlers
    app.state.config = config
    app.state.state_store = state_store
    app.state.replica_log = replica_log

    @app.get("/api/stats")
    async def api_stats() -> dict[str, Any]:
        """Get replica statistics."""
        if not state_store or not replica_log:
            return {"error": "No replica store available"}

        try:
            state = state_store.load()
        except MirrorError as e:
            logger.error(f"Failed to load state: {e}")
            return {"error": str(e)}

        stats = replica_stats(state, replica_log)
        stats["remote_url"] = config.remote.base_url
        stats["timestamp"] = datetime.now(timezone.utc).isoformat()
        return stats

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint for monitoring.

        Always returns 200 OK even if components are unavailable.
        """
        health: dict[str, Any] = {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "remote_url": config.remote.base_url,
            "components": {
                "state_store": state_store is not None,
                "replica_log": replica_log is not None,
            },
        }

        if state_store:
            try:
                state = state_store.load()
                health["phase"] = state.phase.value
                health["connected"] = state.connected
            except MirrorError as e:
                health["status"] = "degraded"
                health["components"]["state_error"] = str(e)

        return health

    @app.get("/api/log")
    async def api_log(limit: int = 50, kind: str | None = None) -> dict[str, Any]:
        """Get the most recent replica log records."""
        if not replica_log:
            return {"error": "No replica log available", "records": []}

        if kind not in (None, "snapshot", "event"):
            return {"error": f"Unknown record kind: {kind}", "records": []}

        try:
            records = replica_log.tail(limit=limit, kind=kind)
        except MirrorError as e:
            return {"error": str(e), "records": []}

        return {
            "kind": kind,
            "count": len(records),
            "records": [r.to_dict() for r in records],
        }

    return app
