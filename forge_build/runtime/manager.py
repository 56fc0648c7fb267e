"""Manager: runs controllers, leader election and the probe server."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from forge_build.runtime.controller import Controller
from forge_build.runtime.leader import LeaderElector

if TYPE_CHECKING:
    import uvicorn

    from forge_build.store.client import ObjectStore

logger = logging.getLogger(__name__)


def parse_bind_address(address: str) -> tuple[str, int] | None:
    """Split a bind address like ":8080" or "127.0.0.1:9090".

    Returns:
        (host, port), or None when serving is disabled ("0" or "").

    Raises:
        ValueError: If the port is not a number.
    """
    if address in ("", "0"):
        return None
    host, _, port = address.rpartition(":")
    return host or "0.0.0.0", int(port)


class Manager:
    """Owns the controllers of one process.

    Controllers start only once leadership is acquired (when an elector
    is configured) and stop when ``stop`` is called or leadership is lost.

    Args:
        store: Object store shared by all controllers.
        elector: Optional leader elector.
    """

    def __init__(self, store: ObjectStore, elector: LeaderElector | None = None) -> None:
        self.store = store
        self.elector = elector
        self.controllers: list[Controller] = []
        self._stop = threading.Event()
        self._started = threading.Event()
        self._on_stop: list[Callable[[], None]] = []
        self._server: uvicorn.Server | None = None
        self._server_thread: threading.Thread | None = None

    def add(self, controller: Controller) -> None:
        self.controllers.append(controller)

    def on_stop(self, callback: Callable[[], None]) -> None:
        """Register teardown to run after the controllers stop."""
        self._on_stop.append(callback)

    @property
    def started(self) -> bool:
        return self._started.is_set()

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    def serve_probes(self, bind_address: str) -> None:
        """Serve the HTTP probe/inspection API in a background thread."""
        address = parse_bind_address(bind_address)
        if address is None:
            logger.info("Probe server disabled")
            return

        import uvicorn

        from web.app import create_app

        host, port = address
        app = create_app(store=self.store, manager=self)
        config = uvicorn.Config(app, host=host, port=port, log_config=None)
        self._server = uvicorn.Server(config)
        self._server_thread = threading.Thread(
            target=self._server.run, name="probe-server", daemon=True
        )
        self._server_thread.start()
        logger.info("Serving probes on %s:%d", host, port)

    def start(self) -> None:
        """Run until stopped. Blocks the calling thread."""
        renew_thread = None
        if self.elector is not None:
            if not self.elector.acquire(self._stop):
                self._shutdown()
                return
            renew_thread = threading.Thread(
                target=self._renew, name="leader-renew", daemon=True
            )
            renew_thread.start()

        for controller in self.controllers:
            controller.start()
        self._started.set()
        logger.info("Manager started %d controllers", len(self.controllers))

        self._stop.wait()
        self._shutdown()
        if renew_thread is not None:
            renew_thread.join(timeout=1.0)

    def _renew(self) -> None:
        assert self.elector is not None
        self.elector.renew_until_lost(self._stop)
        if not self._stop.is_set():
            logger.error("Leadership lost, stopping manager")
            self._stop.set()

    def stop(self) -> None:
        self._stop.set()

    def _shutdown(self) -> None:
        for controller in self.controllers:
            controller.stop()
        for callback in self._on_stop:
            callback()
        if self.elector is not None:
            self.elector.release()
        if self._server is not None:
            self._server.should_exit = True
            if self._server_thread is not None:
                self._server_thread.join(timeout=5.0)
        self._started.clear()
        logger.info("Manager stopped")


__all__ = ["Manager", "parse_bind_address"]
