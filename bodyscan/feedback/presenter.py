from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
import logging
import threading
import time
from typing import Deque, Optional, Protocol, Sequence

from ..analysis.models import LandmarkPoint


logger = logging.getLogger(__name__)


class Correctness(str, Enum):
    NEUTRAL = "NEUTRAL"
    CORRECT = "CORRECT"
    ADJUSTMENT_NEEDED = "ADJUSTMENT_NEEDED"


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class FeedbackPresenter(Protocol):
    def announce(self, text: str) -> None: ...

    def show_overlay(self, landmarks: Sequence[LandmarkPoint], hint: Correctness) -> None: ...

    def toast(self, title: str, message: str, severity: Severity = Severity.INFO) -> None: ...

    def cancel_speech(self) -> None: ...


class Speaker(Protocol):
    def say(self, text: str) -> None: ...

    def cancel_pending(self) -> None: ...


@dataclass(frozen=True)
class OverlayState:
    landmarks: tuple[LandmarkPoint, ...]
    hint: Correctness


@dataclass(frozen=True)
class Toast:
    title: str
    message: str
    severity: Severity
    created_at: float


class LivePresenter:
    """Keeps the latest overlay/toasts for the render loop and forwards speech."""

    def __init__(self, speaker: Optional[Speaker] = None, toast_seconds: float = 4.0, max_toasts: int = 3) -> None:
        self.speaker = speaker
        self.toast_seconds = toast_seconds
        self._lock = threading.Lock()
        self._overlay = OverlayState(landmarks=(), hint=Correctness.NEUTRAL)
        self._toasts: Deque[Toast] = deque(maxlen=max_toasts)
        self._last_announcement = ""

    def announce(self, text: str) -> None:
        with self._lock:
            self._last_announcement = text
        logger.info("event=announce text=%r", text)
        if self.speaker is not None:
            self.speaker.say(text)

    def show_overlay(self, landmarks: Sequence[LandmarkPoint], hint: Correctness) -> None:
        with self._lock:
            self._overlay = OverlayState(landmarks=tuple(landmarks), hint=hint)

    def toast(self, title: str, message: str, severity: Severity = Severity.INFO) -> None:
        level = logging.WARNING if severity in (Severity.WARNING, Severity.ERROR) else logging.INFO
        logger.log(level, "event=toast severity=%s title=%r message=%r", severity.value, title, message)
        with self._lock:
            self._toasts.append(Toast(title=title, message=message, severity=severity, created_at=time.time()))

    def cancel_speech(self) -> None:
        if self.speaker is not None:
            self.speaker.cancel_pending()

    def overlay(self) -> OverlayState:
        with self._lock:
            return self._overlay

    def last_announcement(self) -> str:
        with self._lock:
            return self._last_announcement

    def active_toasts(self, now: Optional[float] = None) -> list[Toast]:
        now = time.time() if now is None else now
        with self._lock:
            return [t for t in self._toasts if now - t.created_at < self.toast_seconds]
