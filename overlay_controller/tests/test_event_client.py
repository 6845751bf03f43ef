import asyncio
import json
from pathlib import Path
from typing import Optional, Union

import pytest

from overlay_controller.commands import SubscriptionError
from overlay_controller.services.event_client import EXPLANATION_CHANNEL, OCR_CHANNEL, HostEventClient
from overlay_controller.services.host_bridge import STREAM_LIMIT


class QueueReader:
    """Stream reader stub fed line by line from the test."""

    def __init__(self, lines: Optional[list[bytes]] = None) -> None:
        self._lines: asyncio.Queue[Union[bytes, Exception]] = asyncio.Queue()
        for line in lines or []:
            self._lines.put_nowait(line)

    def feed(self, line: Union[bytes, Exception]) -> None:
        self._lines.put_nowait(line)

    async def readline(self) -> bytes:
        line = await self._lines.get()
        if isinstance(line, Exception):
            raise line
        return line


class FakeWriter:
    def __init__(self, log: list[object]) -> None:
        self.log = log

    def write(self, data: bytes) -> None:
        self.log.append(("write", data))

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.log.append("closed")

    async def wait_closed(self) -> None:
        return None


def _event(channel: str, payload: object) -> bytes:
    return (json.dumps({"event": channel, "payload": payload}) + "\n").encode("utf-8")


def _client(
    tmp_path: Path, log: list[object], readers: list[QueueReader], retry_delay: float = 0.01
) -> HostEventClient:
    (tmp_path / "port.json").write_text('{"port": 5678}', encoding="utf-8")

    async def fake_connect(host, port, **kwargs):
        log.append(("connect", host, port, kwargs.get("limit")))
        return readers.pop(0), FakeWriter(log)

    return HostEventClient(port_path=tmp_path / "port.json", connect=fake_connect, retry_delay=retry_delay)


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


def test_events_are_delivered_in_order_for_the_channel(tmp_path: Path) -> None:
    log: list[object] = []
    received: list[str] = []

    async def scenario() -> None:
        reader = QueueReader([b'{"status": "ok"}\n'])
        client = _client(tmp_path, log, [reader])
        handle = await client.subscribe(OCR_CHANNEL, received.append)
        reader.feed(_event(OCR_CHANNEL, "first"))
        reader.feed(b"garbage\n")
        reader.feed(_event(EXPLANATION_CHANNEL, "wrong channel"))
        reader.feed(_event(OCR_CHANNEL, None))
        reader.feed(_event(OCR_CHANNEL, "third"))
        await _settle()
        await client.unsubscribe(handle)

    asyncio.run(scenario())

    assert received == ["first", "", "third"]
    subscribe_payload = json.loads(log[1][1])
    assert subscribe_payload == {"cli": "subscribe", "channel": OCR_CHANNEL}
    assert log[-1] == "closed"


def test_unsubscribe_is_idempotent_and_stops_delivery(tmp_path: Path) -> None:
    received: list[str] = []

    async def scenario() -> None:
        reader = QueueReader([b'{"status": "ok"}\n'])
        client = _client(tmp_path, [], [reader])
        handle = await client.subscribe(EXPLANATION_CHANNEL, received.append)
        await client.unsubscribe(handle)
        await client.unsubscribe(handle)
        reader.feed(_event(EXPLANATION_CHANNEL, "late"))
        await _settle()
        assert handle.active is False
        assert handle.deliver("direct") is False
        assert client.handles == set()

    asyncio.run(scenario())
    assert received == []


def test_scoped_subscription_releases_on_error(tmp_path: Path) -> None:
    log: list[object] = []

    async def scenario() -> None:
        client = _client(tmp_path, log, [QueueReader([b'{"status": "ok"}\n'])])
        with pytest.raises(RuntimeError):
            async with client.subscribed(OCR_CHANNEL, lambda _payload: None) as handle:
                assert handle.active is True
                raise RuntimeError("teardown path")
        assert handle.active is False
        assert client.handles == set()

    asyncio.run(scenario())
    assert "closed" in log


def test_refused_subscription_raises(tmp_path: Path) -> None:
    log: list[object] = []

    async def scenario() -> None:
        client = _client(tmp_path, log, [QueueReader([b'{"status": "error", "error": "unknown channel"}\n'])])
        with pytest.raises(SubscriptionError, match="unknown channel"):
            await client.subscribe("screenshot:other", lambda _payload: None)

    asyncio.run(scenario())
    assert "closed" in log


def test_unreachable_host_raises_subscription_error(tmp_path: Path) -> None:
    (tmp_path / "port.json").write_text('{"port": 5678}', encoding="utf-8")

    async def failing_connect(*_args, **_kwargs):
        raise ConnectionRefusedError("refused")

    client = HostEventClient(port_path=tmp_path / "port.json", connect=failing_connect)

    with pytest.raises(SubscriptionError) as excinfo:
        asyncio.run(client.subscribe(OCR_CHANNEL, lambda _payload: None))
    assert excinfo.value.channel == OCR_CHANNEL


def test_missing_port_file_raises_subscription_error(tmp_path: Path) -> None:
    client = HostEventClient(port_path=tmp_path / "port.json")

    with pytest.raises(SubscriptionError, match="host port unavailable"):
        asyncio.run(client.subscribe(OCR_CHANNEL, lambda _payload: None))


def _connects(log: list[object]) -> int:
    return sum(1 for entry in log if isinstance(entry, tuple) and entry[0] == "connect")


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def test_connect_uses_large_stream_limit(tmp_path: Path) -> None:
    log: list[object] = []

    async def scenario() -> None:
        client = _client(tmp_path, log, [QueueReader([b'{"status": "ok"}\n'])])
        await client.subscribe(OCR_CHANNEL, lambda _payload: None)
        await client.close()

    asyncio.run(scenario())
    assert log[0] == ("connect", "127.0.0.1", 5678, STREAM_LIMIT)
    assert STREAM_LIMIT > 64 * 1024


def test_oversized_line_is_skipped_and_delivery_continues(tmp_path: Path) -> None:
    received: list[str] = []

    async def scenario() -> None:
        reader = QueueReader([b'{"status": "ok"}\n'])
        client = _client(tmp_path, [], [reader])
        handle = await client.subscribe(OCR_CHANNEL, received.append)
        reader.feed(ValueError("Separator is not found, and chunk exceed the limit"))
        reader.feed(_event(OCR_CHANNEL, "small follow-up"))
        await _settle()
        assert handle.active is True
        await client.unsubscribe(handle)

    asyncio.run(scenario())
    assert received == ["small follow-up"]


def test_failing_handler_does_not_end_subscription(tmp_path: Path) -> None:
    received: list[str] = []

    def handler(payload: str) -> None:
        if payload == "boom":
            raise RuntimeError("handler failure")
        received.append(payload)

    async def scenario() -> None:
        reader = QueueReader([b'{"status": "ok"}\n'])
        client = _client(tmp_path, [], [reader])
        await client.subscribe(OCR_CHANNEL, handler)
        reader.feed(_event(OCR_CHANNEL, "boom"))
        reader.feed(_event(OCR_CHANNEL, "after"))
        await _settle()
        await client.close()

    asyncio.run(scenario())
    assert received == ["after"]


def test_unsubscribe_tolerates_a_failed_pump(tmp_path: Path) -> None:
    async def scenario() -> None:
        client = _client(tmp_path, [], [QueueReader([b'{"status": "ok"}\n'])])
        handle = await client.subscribe(OCR_CHANNEL, lambda _payload: None)
        handle._task.cancel()

        async def broken() -> None:
            raise RuntimeError("pump crashed")

        handle._task = asyncio.create_task(broken())
        await _settle()
        await client.unsubscribe(handle)
        assert handle.active is False

    asyncio.run(scenario())


def test_dropped_connection_resubscribes(tmp_path: Path) -> None:
    log: list[object] = []
    received: list[str] = []

    async def scenario() -> None:
        first = QueueReader([b'{"status": "ok"}\n', _event(OCR_CHANNEL, "first"), b""])
        second = QueueReader([b'{"status": "ok"}\n'])
        client = _client(tmp_path, log, [first, second])
        await client.subscribe(OCR_CHANNEL, received.append)
        await _wait_until(lambda: _connects(log) == 2)
        second.feed(_event(OCR_CHANNEL, "second"))
        await _wait_until(lambda: received == ["first", "second"])
        assert len(client.handles) == 1
        await client.close()
        assert client.handles == set()

    asyncio.run(scenario())
    assert received == ["first", "second"]
    subscribes = [json.loads(entry[1]) for entry in log if isinstance(entry, tuple) and entry[0] == "write"]
    assert subscribes == [{"cli": "subscribe", "channel": OCR_CHANNEL}] * 2
    assert log.count("closed") == 2


def test_resubscribe_retries_until_host_returns(tmp_path: Path) -> None:
    received: list[str] = []
    attempts: list[int] = []
    port_file = tmp_path / "port.json"
    port_file.write_text('{"port": 5678}', encoding="utf-8")
    readers: list[QueueReader] = []

    async def flaky_connect(host, port, **_kwargs):
        attempts.append(port)
        if len(attempts) == 1:
            return QueueReader([b'{"status": "ok"}\n', b""]), FakeWriter([])
        if len(attempts) < 4:
            raise ConnectionRefusedError("host restarting")
        return readers[0], FakeWriter([])

    async def scenario() -> None:
        readers.append(QueueReader([b'{"status": "ok"}\n']))
        client = HostEventClient(port_path=port_file, connect=flaky_connect, retry_delay=0.01)
        await client.subscribe(EXPLANATION_CHANNEL, received.append)
        await _wait_until(lambda: len(attempts) == 4)
        readers[0].feed(_event(EXPLANATION_CHANNEL, "back again"))
        await _wait_until(lambda: received == ["back again"])
        await client.close()

    asyncio.run(scenario())
    assert received == ["back again"]


def test_unsubscribe_stops_reconnect_attempts(tmp_path: Path) -> None:
    log: list[object] = []

    async def scenario() -> None:
        reader = QueueReader([b'{"status": "ok"}\n', b""])
        client = _client(tmp_path, log, [reader], retry_delay=5.0)
        handle = await client.subscribe(OCR_CHANNEL, lambda _payload: None)
        await _settle()
        await client.unsubscribe(handle)
        await asyncio.sleep(0.05)

    asyncio.run(scenario())
    assert _connects(log) == 1
