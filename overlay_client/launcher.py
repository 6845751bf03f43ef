from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from PyQt6.QtWidgets import QApplication

from overlay_client.client_config import CLIENT_DIR, load_client_settings, resolve_port_file
from overlay_client.debug_config import DEBUG_CONFIG_ENABLED, DEV_MODE_ENV_VAR
from overlay_client.logging_utils import configure_logging
from overlay_client.overlay_window import OverlayWindow
from overlay_client.runtime import ControllerRuntime

_CLIENT_LOGGER = logging.getLogger("AskOllama.Overlay.Client")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Screenshot assistant overlay")
    parser.add_argument("--port-file", help="Path to port.json published by the host process")
    parser.add_argument("--settings", help="Path to overlay_settings.json")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.settings:
        settings_path = Path(args.settings).expanduser().resolve()
    else:
        settings_path = (CLIENT_DIR.parent / "overlay_settings.json").resolve()
    settings = load_client_settings(settings_path)
    configure_logging(debug_enabled=DEBUG_CONFIG_ENABLED, retention=settings.log_retention)
    port_file = resolve_port_file(args.port_file, settings)

    _CLIENT_LOGGER.info("Starting overlay client (pid=%s)", os.getpid())
    if not DEBUG_CONFIG_ENABLED:
        _CLIENT_LOGGER.debug("Release mode. Export %s=1 for debug logging.", DEV_MODE_ENV_VAR)
    _CLIENT_LOGGER.debug(
        "Loaded settings from %s: port_file=%s connect_timeout=%.1f retention=%d",
        settings_path,
        port_file,
        settings.connect_timeout,
        settings.log_retention,
    )

    app = QApplication(sys.argv if argv is None else [sys.argv[0], *argv])
    app.setQuitOnLastWindowClosed(False)
    runtime = ControllerRuntime(port_file, connect_timeout=settings.connect_timeout)
    window = OverlayWindow(runtime.submit)
    runtime.view_changed.connect(window.render_view)
    runtime.status_changed.connect(lambda message: _CLIENT_LOGGER.info("Status: %s", message))
    if settings.show_status:
        runtime.status_changed.connect(window.set_status_text)

    if not runtime.start():
        _CLIENT_LOGGER.warning("Controller loop did not report ready in time")
    try:
        exit_code = app.exec()
    finally:
        runtime.stop()
    _CLIENT_LOGGER.info("Overlay client exiting with code %s", exit_code)
    return int(exit_code)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
