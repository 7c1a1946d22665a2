"""Live video sources.

The capture controller only needs frame dimensions and the latest pixels on
demand; the display loop drives `read()` to pull frames from the device.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
import threading
import time
from typing import Optional, Protocol, Tuple, Union

import cv2
import numpy as np


logger = logging.getLogger(__name__)


class MediaSource(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...

    def frame_size(self) -> Optional[Tuple[int, int]]: ...

    def current_frame(self) -> Optional[np.ndarray]: ...


class CameraAccessError(RuntimeError):
    pass


@dataclass
class CameraSource:
    # Either an integer index (0, 1, 2, ...) or a Linux device path such as /dev/video2.
    device: Union[int, str] = 0
    width: int = 1280
    height: int = 720
    fps: int = 30
    mirror: bool = True

    # On Linux, forcing CAP_V4L2 often avoids backend auto-selection issues.
    backend: int = cv2.CAP_V4L2

    _cap: Optional[cv2.VideoCapture] = field(default=None, init=False, repr=False)
    _latest: Optional[np.ndarray] = field(default=None, init=False, repr=False)
    _latest_ts: Optional[float] = field(default=None, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def running(self) -> bool:
        return self._cap is not None

    def start(self) -> None:
        if self._cap is not None:
            return
        cap = self._open()
        if cap is None:
            raise CameraAccessError(
                f"OpenCV could not open camera {self.device!r}. Check camera permission, "
                "that no other app is using it, or pick another device."
            )
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, float(self.width))
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, float(self.height))
        cap.set(cv2.CAP_PROP_FPS, float(self.fps))
        self._cap = cap
        logger.info("event=camera_started device=%r", self.device)

    def _open(self) -> Optional[cv2.VideoCapture]:
        candidates: list[Union[int, str]] = [self.device]
        if isinstance(self.device, str) and self.device.startswith("/dev/video"):
            suffix = self.device.replace("/dev/video", "")
            if suffix.isdigit():
                candidates.insert(0, int(suffix))
        elif isinstance(self.device, int):
            candidates.append(f"/dev/video{self.device}")
        allow_cap_any = os.environ.get("BODYSCAN_V4L2_CAP_ANY_FALLBACK", "").strip() == "1"
        for dev in candidates:
            cap = cv2.VideoCapture(dev, self.backend)
            if cap.isOpened():
                return cap
            cap.release()
            if allow_cap_any:
                cap = cv2.VideoCapture(dev)
                if cap.isOpened():
                    return cap
                cap.release()
        return None

    def read(self) -> Optional[np.ndarray]:
        """Pull the next frame from the device; it becomes the current frame."""
        if self._cap is None:
            return None
        ok, frame = self._cap.read()
        if not ok or frame is None or frame.size == 0:
            return None
        if self.mirror:
            frame = cv2.flip(frame, 1)
        with self._lock:
            self._latest = frame
            self._latest_ts = time.time()
        return frame

    def frame_size(self) -> Optional[Tuple[int, int]]:
        with self._lock:
            frame = self._latest
        if frame is None:
            return None
        h, w = frame.shape[:2]
        if w <= 0 or h <= 0:
            return None
        return int(w), int(h)

    def current_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            return None if self._latest is None else self._latest.copy()

    def stop(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            logger.info("event=camera_stopped device=%r", self.device)
        with self._lock:
            self._latest = None
            self._latest_ts = None
