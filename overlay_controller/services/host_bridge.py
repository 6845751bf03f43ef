"""JSON-over-TCP client for the host command service."""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol, Tuple

from overlay_controller.commands import CommandError, CommandKind

JsonDict = Dict[str, Any]
OpenConnectionFn = Callable[..., Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]

HOST_ADDRESS = "127.0.0.1"
# OCR dumps and model replies can run far past asyncio's 64 KiB default.
STREAM_LIMIT = 16 * 1024 * 1024

_LOGGER = logging.getLogger("AskOllama.Overlay.HostBridge")


class HostCommandService(Protocol):
    async def explain_with_prompt(self, ocr_text: str, prompt: str) -> str: ...

    async def save_settings(self) -> None: ...

    async def load_settings(self) -> Mapping[str, Any]: ...

    async def enable_autostart(self) -> str: ...

    async def disable_autostart(self) -> None: ...


def read_port(port_path: Path) -> Optional[int]:
    try:
        data = json.loads(port_path.read_text(encoding="utf-8"))
    except (FileNotFoundError, json.JSONDecodeError, OSError):
        return None
    if not isinstance(data, dict):
        return None
    port = data.get("port")
    if not isinstance(port, int) or isinstance(port, bool) or port <= 0:
        return None
    return port


def encode_line(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(payload, ensure_ascii=False).encode("utf-8") + b"\n"


async def read_line(reader: asyncio.StreamReader, logger: logging.Logger) -> Optional[bytes]:
    """Read one line; returns ``b""`` at EOF and ``None`` for a line over the stream limit."""
    try:
        return await reader.readline()
    except ValueError as exc:
        # readline discards the oversized chunk, so the next read starts fresh.
        logger.warning("Dropped oversized line from host: %s", exc)
        return None


def decode_line(line: bytes, logger: logging.Logger) -> Optional[JsonDict]:
    try:
        payload = json.loads(line.decode("utf-8"))
    except UnicodeDecodeError as exc:
        logger.warning("Failed to decode payload bytes from host: %s", exc)
        return None
    except json.JSONDecodeError as exc:
        logger.debug("Dropped invalid JSON payload from host: %s", exc)
        return None
    if not isinstance(payload, dict):
        logger.debug("Dropped non-object payload from host: %r", payload)
        return None
    return payload


async def close_writer(writer: asyncio.StreamWriter, logger: logging.Logger) -> None:
    try:
        writer.close()
        await writer.wait_closed()
    except (ConnectionError, OSError) as exc:
        logger.debug("Error closing host connection: %s", exc)


class HostBridge:
    """Sends one request per connection to the host and waits for its reply.

    The host publishes its port in ``port_path``. Replies carry a ``status`` of
    ``ok`` or ``error``; errors surface as :class:`CommandError`. Only the
    connection attempt is bounded by ``connect_timeout``; a reply may take as
    long as the host needs.
    """

    def __init__(
        self,
        *,
        port_path: Path,
        connect: Optional[OpenConnectionFn] = None,
        connect_timeout: float = 1.5,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._port_path = port_path
        self._connect = connect or asyncio.open_connection
        self._connect_timeout = connect_timeout
        self._logger = logger or _LOGGER

    @property
    def port_path(self) -> Path:
        return self._port_path

    async def request(self, payload: Mapping[str, Any]) -> JsonDict:
        port = read_port(self._port_path)
        if port is None:
            raise CommandError(f"host port unavailable ({self._port_path})")
        try:
            reader, writer = await asyncio.wait_for(
                self._connect(HOST_ADDRESS, port, limit=STREAM_LIMIT),
                timeout=self._connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise CommandError(f"host unreachable on {HOST_ADDRESS}:{port}: {exc}") from exc

        command = payload.get("cli")
        try:
            writer.write(encode_line(payload))
            await writer.drain()
            while True:
                line = await read_line(reader, self._logger)
                if line is None:
                    continue
                if not line:
                    raise CommandError("host closed the connection without replying")
                response = decode_line(line, self._logger)
                if response is None:
                    continue
                status = response.get("status")
                if status == "ok":
                    self._logger.debug("Host accepted %s", command)
                    return response
                if status == "error":
                    message = str(response.get("error") or "host reported an error")
                    self._logger.debug("Host rejected %s: %s", command, message)
                    raise CommandError(message)
        except (ConnectionError, OSError) as exc:
            raise CommandError(f"connection to host failed: {exc}") from exc
        finally:
            await close_writer(writer, self._logger)

    async def explain_with_prompt(self, ocr_text: str, prompt: str) -> str:
        response = await self.request(
            {"cli": CommandKind.EXPLAIN_WITH_PROMPT.value, "ocr_text": ocr_text, "prompt": prompt}
        )
        reply = response.get("reply")
        if not isinstance(reply, str):
            raise CommandError("host reply did not include text")
        return reply

    async def save_settings(self) -> None:
        await self.request({"cli": CommandKind.SAVE_SETTINGS.value})

    async def load_settings(self) -> JsonDict:
        response = await self.request({"cli": CommandKind.LOAD_SETTINGS.value})
        settings = response.get("settings")
        if not isinstance(settings, dict):
            raise CommandError("host reply did not include settings")
        return settings

    async def enable_autostart(self) -> str:
        response = await self.request({"cli": CommandKind.ENABLE_AUTOSTART.value})
        return str(response.get("path") or "")

    async def disable_autostart(self) -> None:
        await self.request({"cli": CommandKind.DISABLE_AUTOSTART.value})
