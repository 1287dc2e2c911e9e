"""
Runs the control API next to the talk loop.

uvicorn serves on a daemon thread; the turn controller keeps the main
thread. stop() asks uvicorn to exit and waits briefly for the thread.
"""

from __future__ import annotations

import threading
from typing import Optional

import uvicorn
from fastapi import FastAPI

from logging_setup import get_logger, Component

logger = get_logger(Component.CONTROL_PLANE)


class ControlServer:
    def __init__(self, app: FastAPI, host: str = "127.0.0.1", port: int = 8350, log_level: str = "warning"):
        self.host = host
        self.port = port
        self._server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level=log_level))
        # Signal handling stays with the talk loop on the main thread
        self._server.install_signal_handlers = lambda: None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "ControlServer":
        self._thread = threading.Thread(target=self._server.run, name="control-api", daemon=True)
        self._thread.start()
        logger.info("Control API listening", host=self.host, port=self.port)
        return self

    def stop(self, timeout: float = 2.0) -> None:
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Control API stopped")
