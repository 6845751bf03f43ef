"""State machine that drives the screenshot assistant overlay."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Union

from overlay_controller.commands import CommandCompletion, CommandKind, CommandResult, SubscriptionError
from overlay_controller.services.event_client import EXPLANATION_CHANNEL, OCR_CHANNEL, HostEventClient
from overlay_controller.services.host_bridge import HostCommandService
from overlay_controller.session import OverlaySession, OverlayView

ViewListener = Callable[[OverlayView], None]

_LOGGER = logging.getLogger("AskOllama.Overlay.Controller")

SETTINGS_SAVED_NOTE = "Settings saved."
AUTOSTART_DISABLED_NOTE = "Autostart disabled."


@dataclass(frozen=True)
class InboundEvent:
    channel: str
    payload: str


class _Stop:
    pass


_STOP = _Stop()
QueueItem = Union[InboundEvent, CommandCompletion, _Stop]


def format_settings(settings: Mapping[str, Any]) -> str:
    body = json.dumps(dict(settings), indent=2, sort_keys=True, ensure_ascii=False, default=str)
    return f"Settings:\n{body}"


def autostart_enabled_note(path: Optional[str]) -> str:
    if path:
        return f"Autostart enabled: {path}"
    return "Autostart enabled."


class OverlayController:
    """Owns an :class:`OverlaySession` and serialises every change to it.

    Host events and command completions are queued and applied one at a time
    by :meth:`run` (or :meth:`drain`). User intents are plain methods that must
    be called on the loop thread; command intents return ``False`` when another
    command is still in flight.
    """

    def __init__(
        self,
        host: HostCommandService,
        *,
        session: Optional[OverlaySession] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._host = host
        self._session = session if session is not None else OverlaySession()
        self._logger = logger or _LOGGER
        self._queue: "asyncio.Queue[QueueItem]" = asyncio.Queue()
        self._listeners: List[ViewListener] = []
        self._command_task: Optional[asyncio.Task[None]] = None
        # Bumped on every non-empty OCR event; used to spot replies for older screenshots.
        self._generation = 0
        self.startup_issues: List[str] = []

    @property
    def session(self) -> OverlaySession:
        return self._session

    def view(self) -> OverlayView:
        return self._session.view()

    def add_listener(self, listener: ViewListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ViewListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    # Inbound events -------------------------------------------------------

    def post_event(self, channel: str, payload: str) -> None:
        self._queue.put_nowait(InboundEvent(channel, payload))

    def post_ocr(self, payload: str) -> None:
        self.post_event(OCR_CHANNEL, payload)

    def post_explanation(self, payload: str) -> None:
        self.post_event(EXPLANATION_CHANNEL, payload)

    # User intents ---------------------------------------------------------

    def close(self) -> bool:
        if not self._session.visible:
            return False
        self._session.visible = False
        self._logger.debug("Overlay closed by user")
        self._notify()
        return True

    def set_draft_prompt(self, text: str) -> None:
        self._session.draft_prompt = text
        self._notify()

    def send_prompt(self) -> bool:
        ocr_text = self._session.extracted_text or ""
        prompt = self._session.draft_prompt
        return self._dispatch(
            CommandKind.EXPLAIN_WITH_PROMPT,
            lambda: self._host.explain_with_prompt(ocr_text, prompt),
            prompt=prompt,
        )

    def save_settings(self) -> bool:
        return self._dispatch(CommandKind.SAVE_SETTINGS, self._host.save_settings)

    def load_settings(self) -> bool:
        return self._dispatch(CommandKind.LOAD_SETTINGS, self._host.load_settings)

    def enable_autostart(self) -> bool:
        return self._dispatch(CommandKind.ENABLE_AUTOSTART, self._host.enable_autostart)

    def disable_autostart(self) -> bool:
        return self._dispatch(CommandKind.DISABLE_AUTOSTART, self._host.disable_autostart)

    # Loop -----------------------------------------------------------------

    async def run(self, events: Optional[HostEventClient] = None) -> None:
        """Apply queued items until :meth:`stop` is called.

        Subscriptions opened here are released on every exit path.
        """
        async with AsyncExitStack() as stack:
            if events is not None:
                await self._open_subscriptions(stack, events)
            self._notify()
            while True:
                item = await self._queue.get()
                if isinstance(item, _Stop):
                    break
                self.apply(item)
        self._logger.debug("Controller loop finished")

    def stop(self) -> None:
        self._queue.put_nowait(_STOP)

    def drain(self) -> int:
        """Apply everything already queued without waiting. Returns the item count."""
        applied = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return applied
            if isinstance(item, _Stop):
                self._queue.put_nowait(item)
                return applied
            self.apply(item)
            applied += 1

    async def wait_for_command(self) -> None:
        """Wait for the in-flight command (if any) and apply what it queued."""
        task = self._command_task
        if task is not None:
            await task
        self.drain()

    def apply(self, item: QueueItem) -> None:
        if isinstance(item, InboundEvent):
            self._apply_event(item)
        elif isinstance(item, CommandCompletion):
            self._apply_completion(item)
        else:
            return
        self._notify()

    # Internals ------------------------------------------------------------

    async def _open_subscriptions(self, stack: AsyncExitStack, events: HostEventClient) -> None:
        for channel, handler in ((OCR_CHANNEL, self.post_ocr), (EXPLANATION_CHANNEL, self.post_explanation)):
            try:
                await stack.enter_async_context(events.subscribed(channel, handler))
            except SubscriptionError as exc:
                self.startup_issues.append(str(exc))
                self._logger.warning("Continuing without %s events: %s", channel, exc.reason)

    def _apply_event(self, event: InboundEvent) -> None:
        session = self._session
        if event.channel == OCR_CHANNEL:
            session.extracted_text = event.payload
            if not event.payload:
                self._logger.debug("Empty OCR payload received; overlay left as is")
                return
            self._generation += 1
            session.explanation = None
            session.visible = True
            session.last_error = None
            self._logger.debug("OCR text received (%d chars)", len(event.payload))
        elif event.channel == EXPLANATION_CHANNEL:
            session.explanation = event.payload
            if not session.visible:
                self._logger.debug("Explanation recorded while overlay hidden")
        else:
            self._logger.debug("Ignored event on unknown channel %s", event.channel)

    def _dispatch(self, kind: CommandKind, call: Callable[[], Awaitable[Any]], *, prompt: str = "") -> bool:
        session = self._session
        if session.pending_command is not None:
            self._logger.info(
                "Rejected %s while %s is pending", kind.value, session.pending_command.value
            )
            return False
        loop = asyncio.get_running_loop()
        session.pending_command = kind
        session.last_error = None
        generation = self._generation
        self._command_task = loop.create_task(
            self._execute(kind, call, prompt, generation),
            name=f"command:{kind.value}",
        )
        self._logger.debug("Dispatched %s", kind.value)
        self._notify()
        return True

    async def _execute(
        self,
        kind: CommandKind,
        call: Callable[[], Awaitable[Any]],
        prompt: str,
        generation: int,
    ) -> None:
        result: CommandResult[Any] = await CommandResult.capture(call)
        self._queue.put_nowait(CommandCompletion(kind, result, prompt=prompt, generation=generation))

    def _apply_completion(self, completion: CommandCompletion) -> None:
        session = self._session
        kind = completion.kind
        if session.pending_command is not kind:
            self._logger.warning("Dropped %s completion; pending command is %s", kind.value, session.pending_command)
            return
        session.pending_command = None
        result = completion.result
        if not result.ok:
            session.last_error = f"{kind.failure_prefix}{result.error}"
            self._logger.warning("%s failed: %s", kind.value, result.error)
            return

        session.last_error = None
        if kind is CommandKind.EXPLAIN_WITH_PROMPT:
            if completion.generation != self._generation:
                self._logger.info("Accepted prompt reply for a superseded screenshot")
            session.explanation = str(result.value)
            if session.draft_prompt == completion.prompt:
                session.draft_prompt = ""
        elif kind is CommandKind.SAVE_SETTINGS:
            session.append_note(SETTINGS_SAVED_NOTE)
        elif kind is CommandKind.LOAD_SETTINGS:
            session.explanation = format_settings(result.value or {})
        elif kind is CommandKind.ENABLE_AUTOSTART:
            session.append_note(autostart_enabled_note(result.value))
        elif kind is CommandKind.DISABLE_AUTOSTART:
            session.append_note(AUTOSTART_DISABLED_NOTE)
        self._logger.debug("%s completed", kind.value)

    def _notify(self) -> None:
        if not self._listeners:
            return
        view = self._session.view()
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:
                self._logger.exception("View listener failed")
