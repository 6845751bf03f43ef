"""PyQt6 panel that renders overlay views and turns clicks into intents."""
from __future__ import annotations

from typing import Any, Callable, Optional

from PyQt6.QtCore import Qt
from PyQt6.QtWidgets import (
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QPlainTextEdit,
    QPushButton,
    QVBoxLayout,
    QWidget,
)

from overlay_controller.session import OverlayView

SubmitFn = Callable[..., Any]

WAITING_TEXT = "Waiting for explanation..."
PROMPT_PLACEHOLDER = "Add a custom prompt (e.g. convert time to GST)"


class OverlayWindow(QWidget):
    """Screenshot assistant panel.

    Reads :class:`OverlayView` snapshots only; every user action goes through
    ``submit(intent, *args)``.
    """

    def __init__(self, submit: SubmitFn, parent: Optional[QWidget] = None) -> None:
        super().__init__(parent)
        self._submit = submit
        self._last_draft = ""
        self.setWindowTitle("Screenshot assistant")
        self.setWindowFlags(Qt.WindowType.Tool | Qt.WindowType.WindowStaysOnTopHint)

        self.title_label = QLabel("Screenshot assistant")
        self.close_button = QPushButton("×")
        self.close_button.clicked.connect(lambda: self._submit("close"))
        header = QHBoxLayout()
        header.addWidget(self.title_label)
        header.addStretch(1)
        header.addWidget(self.close_button)

        self.ocr_view = QPlainTextEdit()
        self.ocr_view.setReadOnly(True)
        self.reply_view = QPlainTextEdit()
        self.reply_view.setReadOnly(True)
        self.error_label = QLabel()
        self.error_label.setStyleSheet("color: #d9534f;")
        self.error_label.setWordWrap(True)
        self.error_label.hide()

        self.prompt_input = QLineEdit()
        self.prompt_input.setPlaceholderText(PROMPT_PLACEHOLDER)
        self.prompt_input.textEdited.connect(self._on_prompt_edited)
        self.prompt_input.returnPressed.connect(lambda: self._submit("send_prompt"))

        self.send_button = QPushButton("Send")
        self.send_button.clicked.connect(lambda: self._submit("send_prompt"))
        self.save_button = QPushButton("Save settings")
        self.save_button.clicked.connect(lambda: self._submit("save_settings"))
        self.load_button = QPushButton("Load settings")
        self.load_button.clicked.connect(lambda: self._submit("load_settings"))
        self.autostart_on_button = QPushButton("Enable autostart")
        self.autostart_on_button.clicked.connect(lambda: self._submit("enable_autostart"))
        self.autostart_off_button = QPushButton("Disable autostart")
        self.autostart_off_button.clicked.connect(lambda: self._submit("disable_autostart"))
        self._command_buttons = (
            self.send_button,
            self.save_button,
            self.load_button,
            self.autostart_on_button,
            self.autostart_off_button,
        )
        actions = QHBoxLayout()
        for button in self._command_buttons:
            actions.addWidget(button)

        layout = QVBoxLayout(self)
        layout.addLayout(header)
        layout.addWidget(QLabel("Extracted text"))
        layout.addWidget(self.ocr_view)
        layout.addWidget(QLabel("Assistant"))
        layout.addWidget(self.reply_view)
        layout.addWidget(self.error_label)
        layout.addWidget(self.prompt_input)
        layout.addLayout(actions)
        self.status_label = QLabel()
        self.status_label.setStyleSheet("color: #888888;")
        self.status_label.hide()
        layout.addWidget(self.status_label)
        self.resize(480, 420)

    def set_status_text(self, status: str) -> None:
        self.status_label.setText(status)
        self.status_label.setVisible(bool(status))

    def render_view(self, view: OverlayView) -> None:
        if not view.visible:
            self.ocr_view.clear()
            self.reply_view.clear()
            self.hide()
            return

        self.ocr_view.setPlainText(view.extracted_text or "")
        self.reply_view.setPlainText(view.explanation if view.explanation is not None else WAITING_TEXT)
        if view.last_error:
            self.error_label.setText(view.last_error)
            self.error_label.show()
        else:
            self.error_label.clear()
            self.error_label.hide()
        # Only a sent-and-answered prompt clears the field; typing stays local.
        if self._last_draft and not view.draft_prompt and self.prompt_input.text():
            self.prompt_input.clear()
        self._last_draft = view.draft_prompt
        for button in self._command_buttons:
            button.setEnabled(not view.busy)
        if not self.isVisible():
            self.show()
            self.raise_()

    def _on_prompt_edited(self, text: str) -> None:
        self._submit("set_draft_prompt", text)
