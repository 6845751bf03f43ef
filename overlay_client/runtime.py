"""Runs the overlay controller on a background asyncio loop and bridges it to Qt."""
from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any, Optional

from PyQt6.QtCore import QObject, pyqtSignal

from overlay_controller.overlay_controller import OverlayController
from overlay_controller.services import HostBridge, HostCommandService, HostEventClient
from overlay_controller.session import OverlayView

_LOGGER = logging.getLogger("AskOllama.Overlay.Client.Runtime")

INTENTS = frozenset(
    {
        "close",
        "set_draft_prompt",
        "send_prompt",
        "save_settings",
        "load_settings",
        "enable_autostart",
        "disable_autostart",
    }
)


class ControllerRuntime(QObject):
    """Owns the controller thread; views arrive on the Qt thread via signals."""

    view_changed = pyqtSignal(object)
    status_changed = pyqtSignal(str)

    def __init__(
        self,
        port_file: Path,
        *,
        connect_timeout: float = 1.5,
        host: Optional[HostCommandService] = None,
        events: Optional[HostEventClient] = None,
    ) -> None:
        super().__init__()
        self._port_file = port_file
        self._connect_timeout = connect_timeout
        self._host = host
        self._events = events
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._controller: Optional[OverlayController] = None
        self._ready_event = threading.Event()
        self._startup_reported = False

    @property
    def controller(self) -> Optional[OverlayController]:
        return self._controller

    def start(self, *, wait: float = 5.0) -> bool:
        if self._thread and self._thread.is_alive():
            return True
        self._ready_event.clear()
        self._startup_reported = False
        self._thread = threading.Thread(target=self._thread_main, name="AskOllamaOverlay-Controller", daemon=True)
        self._thread.start()
        return self._ready_event.wait(timeout=wait)

    def stop(self) -> None:
        loop = self._loop
        controller = self._controller
        if loop is not None and controller is not None and loop.is_running():
            try:
                loop.call_soon_threadsafe(controller.stop)
            except RuntimeError as exc:
                _LOGGER.debug("Controller loop already closed: %s", exc)
        if self._thread:
            self._thread.join(timeout=5.0)
            if self._thread.is_alive():
                _LOGGER.warning("Controller thread did not exit cleanly within 5.0s")
        self._thread = None
        self._loop = None
        self._controller = None

    def submit(self, intent: str, *args: Any) -> bool:
        """Forward a user intent to the controller thread."""
        if intent not in INTENTS:
            raise ValueError(f"Unknown overlay intent: {intent}")
        loop = self._loop
        controller = self._controller
        if loop is None or controller is None:
            _LOGGER.debug("Dropped %s intent; controller not running", intent)
            return False
        try:
            loop.call_soon_threadsafe(getattr(controller, intent), *args)
        except RuntimeError as exc:
            _LOGGER.warning("Failed to forward %s intent: %s", intent, exc)
            return False
        return True

    # Background thread ----------------------------------------------------

    def _thread_main(self) -> None:
        loop = asyncio.new_event_loop()
        self._loop = loop
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self._run())
        except Exception:
            _LOGGER.exception("Controller loop crashed")
        finally:
            self._ready_event.set()
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()

    async def _run(self) -> None:
        host = self._host or HostBridge(port_path=self._port_file, connect_timeout=self._connect_timeout)
        events = self._events or HostEventClient(port_path=self._port_file, connect_timeout=self._connect_timeout)
        controller = OverlayController(host)
        controller.add_listener(self._on_view)
        self._controller = controller
        self.status_changed.emit(f"Connecting to host ({self._port_file})…")
        self._ready_event.set()
        await controller.run(events)

    def _on_view(self, view: OverlayView) -> None:
        if not self._startup_reported and self._controller is not None:
            self._startup_reported = True
            issues = self._controller.startup_issues
            if issues:
                self.status_changed.emit("Host events unavailable: " + "; ".join(issues))
            else:
                self.status_changed.emit("Running in background. Take a screenshot to see results.")
        self.view_changed.emit(view)
