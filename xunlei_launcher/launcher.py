"""
Top-level orchestration: backend supervisor plus panel server.

The supervisor runs on the main thread because Python only delivers
signals there. The panel's uvicorn server runs on its own thread and is
asked to exit once the backend has been stopped.
"""

import logging
import threading
from typing import Optional

import uvicorn

from .app import create_app
from .auth import SessionStore
from .config import BackendEnvironment, Settings
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

PANEL_JOIN_TIMEOUT_SECONDS = 10


class Launcher:
    """Runs the backend and the panel until a termination signal arrives."""

    def __init__(self, settings: Settings, supervisor: Optional[ProcessSupervisor] = None):
        self.settings = settings
        self.environment = BackendEnvironment.from_settings(settings)
        self.supervisor = supervisor or ProcessSupervisor(settings, self.environment)
        self.store = SessionStore(settings.session_ttl)
        self.server = uvicorn.Server(self._server_config())
        self._panel_thread: Optional[threading.Thread] = None

    def _server_config(self) -> uvicorn.Config:
        app = create_app(self.settings, store=self.store, environment=self.environment)
        return uvicorn.Config(
            app,
            host=self.settings.host,
            port=self.settings.port,
            limit_concurrency=self.settings.max_connections,
            access_log=self.settings.debug,
            log_config=None,
        )

    def _serve_panel(self) -> None:
        try:
            self.server.run()
        except Exception as e:
            logger.error("Panel server error: %s", e)

    def start_panel(self) -> None:
        self._panel_thread = threading.Thread(
            target=self._serve_panel, name="panel", daemon=True,
        )
        self._panel_thread.start()

    def stop_panel(self) -> None:
        self.server.should_exit = True
        if self._panel_thread is not None:
            self._panel_thread.join(timeout=PANEL_JOIN_TIMEOUT_SECONDS)
            if self._panel_thread.is_alive():
                logger.warning("Panel server did not stop in time")

    def run(self) -> None:
        """Start both services; returns after the backend has been stopped."""
        self.start_panel()
        try:
            self.supervisor.run()
        finally:
            self.stop_panel()
        logger.info("All services have been complete")
