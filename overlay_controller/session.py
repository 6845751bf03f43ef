"""Overlay session state and the view snapshot handed to the presentation layer."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from overlay_controller.commands import CommandKind


class OverlayState(enum.Enum):
    HIDDEN = "hidden"
    AWAITING_EXPLANATION = "awaiting_explanation"
    READY = "ready"


@dataclass(frozen=True)
class OverlayView:
    """Snapshot handed to the presentation layer.

    Text fields are blanked while the overlay is hidden; the session keeps them.
    """

    state: OverlayState
    extracted_text: Optional[str]
    explanation: Optional[str]
    draft_prompt: str
    last_error: Optional[str]
    pending_command: Optional[CommandKind]

    @property
    def visible(self) -> bool:
        return self.state is not OverlayState.HIDDEN

    @property
    def busy(self) -> bool:
        return self.pending_command is not None


@dataclass
class OverlaySession:
    """Live overlay state owned by a single controller."""

    visible: bool = False
    extracted_text: Optional[str] = None
    explanation: Optional[str] = None
    draft_prompt: str = ""
    last_error: Optional[str] = None
    pending_command: Optional[CommandKind] = None

    @property
    def state(self) -> OverlayState:
        if not self.visible:
            return OverlayState.HIDDEN
        if self.explanation is None:
            return OverlayState.AWAITING_EXPLANATION
        return OverlayState.READY

    def append_note(self, note: str) -> None:
        if self.explanation:
            self.explanation = f"{self.explanation}\n\n{note}"
        else:
            self.explanation = note

    def view(self) -> OverlayView:
        shown = self.visible
        return OverlayView(
            state=self.state,
            extracted_text=self.extracted_text if shown else None,
            explanation=self.explanation if shown else None,
            draft_prompt=self.draft_prompt,
            last_error=self.last_error,
            pending_command=self.pending_command,
        )
