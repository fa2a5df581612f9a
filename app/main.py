from __future__ import annotations

import logging
import threading
from typing import Mapping

import uvicorn
from fastapi import FastAPI

from app.api import router
from models.records import Counters

logger = logging.getLogger(__name__)


def create_app(counters: Mapping[str, Counters]) -> FastAPI:
    app = FastAPI(
        title="Telemetry Soak",
        description="Live counters of a telemetry producer or consumer process.",
        version="0.1.0",
    )
    app.state.counters = dict(counters)
    app.include_router(router)
    return app


class StatusServer:
    """Runs the status API with uvicorn on a daemon thread."""

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 8080) -> None:
        config = uvicorn.Config(app, host=host, port=port, log_config=None, access_log=False)
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(target=self._server.run, name="status-api", daemon=True)
        self.port = port

    def start(self) -> None:
        self._thread.start()
        logger.info("Status API listening on port %d", self.port)

    def stop(self, timeout: float = 5.0) -> None:
        self._server.should_exit = True
        if self._thread.is_alive():
            self._thread.join(timeout)
