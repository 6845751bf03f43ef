"""Durable per-channel event subscriptions to the host process."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Set, Tuple

from overlay_controller.commands import SubscriptionError
from overlay_controller.services.host_bridge import (
    HOST_ADDRESS,
    STREAM_LIMIT,
    OpenConnectionFn,
    close_writer,
    decode_line,
    encode_line,
    read_line,
    read_port,
)

OCR_CHANNEL = "screenshot:ocr"
EXPLANATION_CHANNEL = "screenshot:explanation"

EventHandler = Callable[[str], None]

_LOGGER = logging.getLogger("AskOllama.Overlay.Events")

MAX_RETRY_DELAY = 10.0


class SubscriptionHandle:
    """Live subscription to a single channel."""

    def __init__(self, channel: str, handler: EventHandler) -> None:
        self.channel = channel
        self._handler = handler
        self._active = True
        self._task: Optional[asyncio.Task[None]] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    @property
    def active(self) -> bool:
        return self._active

    def deliver(self, payload: str) -> bool:
        if not self._active:
            return False
        self._handler(payload)
        return True

    def __repr__(self) -> str:
        state = "active" if self._active else "closed"
        return f"<SubscriptionHandle {self.channel} {state}>"


class HostEventClient:
    """Opens one connection per channel and pumps its events to a handler.

    Each connection carries a single channel, so events on a channel arrive in
    the order the host wrote them. Nothing orders events across channels.

    A subscription outlives its connection: when the host drops it, the pump
    re-reads ``port.json`` and subscribes again with a growing delay (starting
    at ``retry_delay``) until it succeeds or :meth:`unsubscribe` is called.
    Events published while no connection is open are not replayed.
    """

    def __init__(
        self,
        *,
        port_path: Path,
        connect: Optional[OpenConnectionFn] = None,
        connect_timeout: float = 1.5,
        retry_delay: float = 1.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._port_path = port_path
        self._connect = connect or asyncio.open_connection
        self._connect_timeout = connect_timeout
        self._retry_delay = retry_delay
        self._logger = logger or _LOGGER
        self._handles: Set[SubscriptionHandle] = set()

    @property
    def handles(self) -> Set[SubscriptionHandle]:
        return set(self._handles)

    async def subscribe(self, channel: str, handler: EventHandler) -> SubscriptionHandle:
        reader, writer, port = await self._open(channel)
        handle = SubscriptionHandle(channel, handler)
        handle._writer = writer
        handle._task = asyncio.create_task(self._pump(handle, reader), name=f"subscription:{channel}")
        self._handles.add(handle)
        self._logger.info("Subscribed to %s on %s:%s", channel, HOST_ADDRESS, port)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        if not handle._active:
            return
        handle._active = False
        self._handles.discard(handle)
        task = handle._task
        handle._task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                self._logger.exception("Subscription pump for %s had failed", handle.channel)
        writer = handle._writer
        handle._writer = None
        if writer is not None:
            await close_writer(writer, self._logger)
        self._logger.debug("Unsubscribed from %s", handle.channel)

    @asynccontextmanager
    async def subscribed(self, channel: str, handler: EventHandler) -> AsyncIterator[SubscriptionHandle]:
        handle = await self.subscribe(channel, handler)
        try:
            yield handle
        finally:
            await self.unsubscribe(handle)

    async def close(self) -> None:
        for handle in list(self._handles):
            await self.unsubscribe(handle)

    async def _open(self, channel: str) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter, int]:
        port = read_port(self._port_path)
        if port is None:
            raise SubscriptionError(channel, f"host port unavailable ({self._port_path})")
        try:
            reader, writer = await asyncio.wait_for(
                self._connect(HOST_ADDRESS, port, limit=STREAM_LIMIT),
                timeout=self._connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise SubscriptionError(channel, f"host unreachable on {HOST_ADDRESS}:{port}: {exc}") from exc

        try:
            writer.write(encode_line({"cli": "subscribe", "channel": channel}))
            await writer.drain()
            await self._await_ack(channel, reader)
        except BaseException:
            await close_writer(writer, self._logger)
            raise
        return reader, writer, port

    async def _await_ack(self, channel: str, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                line = await read_line(reader, self._logger)
                if line is None:
                    continue
                if not line:
                    raise SubscriptionError(channel, "host closed the connection")
                response = decode_line(line, self._logger)
                if response is None:
                    continue
                status = response.get("status")
                if status == "ok":
                    return
                if status == "error":
                    raise SubscriptionError(channel, str(response.get("error") or "subscription refused"))
        except (ConnectionError, OSError) as exc:
            raise SubscriptionError(channel, f"connection failed: {exc}") from exc

    async def _pump(self, handle: SubscriptionHandle, reader: asyncio.StreamReader) -> None:
        channel = handle.channel
        backoff = self._retry_delay
        while handle.active:
            await self._read_events(handle, reader)
            if not handle.active:
                break
            writer = handle._writer
            handle._writer = None
            if writer is not None:
                await close_writer(writer, self._logger)
            while handle.active:
                await asyncio.sleep(backoff)
                backoff = min(backoff * 1.5, MAX_RETRY_DELAY)
                try:
                    reader, writer, port = await self._open(channel)
                except SubscriptionError as exc:
                    self._logger.warning("Resubscribe to %s failed: %s", channel, exc.reason)
                    continue
                handle._writer = writer
                backoff = self._retry_delay
                self._logger.info("Resubscribed to %s on %s:%s", channel, HOST_ADDRESS, port)
                break

    async def _read_events(self, handle: SubscriptionHandle, reader: asyncio.StreamReader) -> None:
        channel = handle.channel
        try:
            while handle.active:
                line = await read_line(reader, self._logger)
                if line is None:
                    continue
                if not line:
                    self._logger.warning("Host closed the %s subscription", channel)
                    return
                message = decode_line(line, self._logger)
                if message is None:
                    continue
                if message.get("event") != channel:
                    self._logger.debug("Ignored %r on %s subscription", message.get("event"), channel)
                    continue
                payload = message.get("payload")
                if payload is None:
                    payload = ""
                try:
                    handle.deliver(str(payload))
                except Exception:
                    self._logger.exception("Handler for %s failed", channel)
        except asyncio.CancelledError:
            raise
        except (ConnectionError, asyncio.IncompleteReadError, OSError) as exc:
            self._logger.warning("Lost %s subscription: %s", channel, exc)
