"""Chat channel used for operator notifications and inline action buttons.

This module defines the outbound interface the workflow talks to and a
logging implementation used when no chat platform is wired in.
"""

from __future__ import annotations

import itertools
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Sequence

from loguru import logger

from .constants import CALLBACK_DATA_MAX_BYTES


@dataclass(frozen=True)
class InlineButton:
    """A button whose press sends ``callback_data`` back through the webhook."""

    text: str
    callback_data: str

    def __post_init__(self) -> None:
        try:
            encoded = self.callback_data.encode("ascii")
        except UnicodeEncodeError as exc:
            raise ValueError(f"Callback data must be ASCII: {self.callback_data!r}") from exc
        if len(encoded) > CALLBACK_DATA_MAX_BYTES:
            raise ValueError(
                f"Callback data exceeds {CALLBACK_DATA_MAX_BYTES} bytes: {self.callback_data!r}"
            )


ButtonRows = Sequence[Sequence[InlineButton]]


class ChatChannel(ABC):
    """Outbound chat operations."""

    @abstractmethod
    def send_message(self, text: str, buttons: Optional[ButtonRows] = None) -> int:
        """Send a message and return its id."""
        raise NotImplementedError

    @abstractmethod
    def edit_message(self, message_id: int, text: str, buttons: Optional[ButtonRows] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def answer_callback(self, callback_id: str, text: str) -> None:
        """Acknowledge a button press; the platform shows ``text`` as a toast."""
        raise NotImplementedError


@dataclass
class SentMessage:
    message_id: int
    text: str
    buttons: list[list[InlineButton]] = field(default_factory=list)


class LoggingChannel(ChatChannel):
    """Channel that logs every outbound call and keeps the latest state in memory."""

    def __init__(self) -> None:
        self.messages: dict[int, SentMessage] = {}
        self.answers: list[tuple[str, str]] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def send_message(self, text: str, buttons: Optional[ButtonRows] = None) -> int:
        with self._lock:
            message_id = next(self._ids)
            self.messages[message_id] = SentMessage(message_id, text, [list(row) for row in buttons or []])
        logger.info("[chat] message {}: {}", message_id, text)
        return message_id

    def edit_message(self, message_id: int, text: str, buttons: Optional[ButtonRows] = None) -> None:
        with self._lock:
            self.messages[message_id] = SentMessage(message_id, text, [list(row) for row in buttons or []])
        logger.info("[chat] edit {}: {}", message_id, text)

    def answer_callback(self, callback_id: str, text: str) -> None:
        with self._lock:
            self.answers.append((callback_id, text))
        logger.info("[chat] answer {}: {}", callback_id, text)


def undo_button(callback_data: str, remaining_seconds: int) -> list[list[InlineButton]]:
    minutes = max(1, (remaining_seconds + 59) // 60)
    return [[InlineButton(f"↩️ Undo ({minutes}m)", callback_data)]]
