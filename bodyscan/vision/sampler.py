from __future__ import annotations

from dataclasses import dataclass
import time

import cv2

from .source import MediaSource


class SourceNotReady(RuntimeError):
    pass


@dataclass(frozen=True)
class CapturedFrame:
    jpeg: bytes
    width: int
    height: int
    timestamp: float


class FrameSampler:
    """Grabs the frame currently visible on a source as a JPEG still."""

    def __init__(self, jpeg_quality: int = 85) -> None:
        self.jpeg_quality = int(jpeg_quality)

    def capture(self, video_source: MediaSource) -> CapturedFrame:
        size = video_source.frame_size()
        if not size or size[0] <= 0 or size[1] <= 0:
            raise SourceNotReady("Video source has not reported frame dimensions yet.")
        frame = video_source.current_frame()
        if frame is None or frame.size == 0:
            raise SourceNotReady("Video source has no frame available.")
        ok, buf = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality])
        if not ok:
            raise SourceNotReady("Frame could not be encoded.")
        h, w = frame.shape[:2]
        return CapturedFrame(jpeg=buf.tobytes(), width=int(w), height=int(h), timestamp=time.time())
