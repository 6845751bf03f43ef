"""Command kinds, tagged command results and the overlay error taxonomy."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class OverlayError(Exception):
    """Base class for overlay controller failures."""


class SubscriptionError(OverlayError):
    """Raised when an event channel cannot be opened."""

    def __init__(self, channel: str, reason: str) -> None:
        super().__init__(f"{channel}: {reason}")
        self.channel = channel
        self.reason = reason


class CommandError(OverlayError):
    """Raised by the host bridge when a command is rejected or cannot be delivered."""


class CommandKind(enum.Enum):
    EXPLAIN_WITH_PROMPT = "explain_with_prompt"
    SAVE_SETTINGS = "save_settings"
    LOAD_SETTINGS = "load_settings"
    ENABLE_AUTOSTART = "enable_autostart"
    DISABLE_AUTOSTART = "disable_autostart"

    @property
    def failure_prefix(self) -> str:
        return _FAILURE_PREFIXES[self]


_FAILURE_PREFIXES = {
    CommandKind.EXPLAIN_WITH_PROMPT: "Error sending prompt: ",
    CommandKind.SAVE_SETTINGS: "Failed to save settings: ",
    CommandKind.LOAD_SETTINGS: "Failed to load settings: ",
    CommandKind.ENABLE_AUTOSTART: "Failed to enable autostart: ",
    CommandKind.DISABLE_AUTOSTART: "Failed to disable autostart: ",
}


@dataclass(frozen=True)
class CommandResult(Generic[T]):
    """Success/failure value returned by a host command call.

    Exactly one of ``value`` (when ``ok``) or ``error`` (when not ``ok``) is
    meaningful. ``error`` is always a human-readable string.
    """

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "CommandResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: Any) -> "CommandResult[T]":
        return cls(ok=False, error=describe_error(error))

    @classmethod
    async def capture(cls, call: Callable[[], Awaitable[T]]) -> "CommandResult[T]":
        """Run a host call and fold any exception into a failure result."""
        try:
            value = await call()
        except Exception as exc:
            return cls.failure(exc)
        return cls.success(value)


def describe_error(error: Any) -> str:
    if isinstance(error, BaseException):
        text = str(error).strip()
        return text or type(error).__name__
    if error is None:
        return "unknown error"
    return str(error)


@dataclass(frozen=True)
class CommandCompletion:
    """Queued outcome of a dispatched command."""

    kind: CommandKind
    result: CommandResult[Any]
    # Draft text and OCR generation captured at dispatch time.
    prompt: str = ""
    generation: int = 0
