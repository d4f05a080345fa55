from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .types import Instance, RunState

LOGGER = logging.getLogger("Multi.Status")


def _describe(instance: Instance) -> Dict[str, Any]:
    return {
        "endpoint": str(instance.endpoint),
        "resolver_address": instance.candidate.resolver_address,
        "provider_name": instance.candidate.provider_name,
        "pid": instance.pid,
        "state": instance.state.value,
        "alive": instance.alive,
        "latency": instance.candidate.latency,
        "started_at": instance.started_at,
    }


def create_app(state: RunState) -> FastAPI:
    app = FastAPI(title="dnscrypt-proxy-multi", version="0.1.0")

    @app.get("/live")
    async def live() -> Dict[str, str]:
        return {"status": "alive"}

    @app.get("/ready")
    async def ready() -> JSONResponse:
        instances = state.instances
        alive = [str(instance.endpoint) for instance in instances if instance.alive]
        content = {
            "status": "ready" if alive else "degraded",
            "phase": state.phase.value,
            "alive_instances": alive,
            "total_instances": len(instances),
            "max_instances": state.max_instances,
        }
        if not alive:
            LOGGER.warning("Readiness failing: no running instances.")
        return JSONResponse(status_code=200 if alive else 503, content=content)

    @app.get("/instances")
    async def instances() -> List[Dict[str, Any]]:
        return [_describe(instance) for instance in state.instances]

    return app


class StatusServer:
    """Serve the status app from a daemon thread next to the blocking run."""

    def __init__(self, state: RunState, *, host: str, port: int) -> None:
        config = uvicorn.Config(create_app(state), host=host, port=port, log_level="warning")
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._server.run, name="StatusServer", daemon=True
        )
        self.host = host
        self.port = port

    def start(self) -> None:
        LOGGER.info("Serving status on http://%s:%s.", self.host, self.port)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._server.should_exit = True
        if self._thread.is_alive():
            self._thread.join(timeout=timeout)
