from __future__ import annotations

from typing import Dict, Iterable, Optional, Sequence, Tuple

import cv2
import numpy as np

from ..analysis.models import LandmarkPoint
from ..feedback.presenter import Correctness


LINKS = [
    ("left_shoulder", "right_shoulder"),
    ("left_shoulder", "left_elbow"),
    ("left_elbow", "left_wrist"),
    ("right_shoulder", "right_elbow"),
    ("right_elbow", "right_wrist"),
    ("left_hip", "right_hip"),
    ("left_shoulder", "left_hip"),
    ("right_shoulder", "right_hip"),
    ("left_hip", "left_knee"),
    ("left_knee", "left_ankle"),
    ("right_hip", "right_knee"),
    ("right_knee", "right_ankle"),
]

# BGR
HINT_COLOURS: Dict[Correctness, Tuple[int, int, int]] = {
    Correctness.NEUTRAL: (235, 235, 235),
    Correctness.CORRECT: (0, 200, 0),
    Correctness.ADJUSTMENT_NEEDED: (0, 0, 255),
}
ADVISORY_COLOUR = (0, 255, 255)

_TEXT_FONT = cv2.FONT_HERSHEY_TRIPLEX
_TEXT_COLOUR = (235, 235, 235)
_TEXT_BG = (8, 8, 10)


def _px(pt: LandmarkPoint, w: int, h: int) -> Tuple[int, int]:
    return (int(pt.x * w), int(pt.y * h))


def _by_name(landmarks: Iterable[LandmarkPoint]) -> Dict[str, LandmarkPoint]:
    out: Dict[str, LandmarkPoint] = {}
    for lm in landmarks:
        key = lm.name.strip().lower().replace(" ", "_")
        if key:
            out[key] = lm
    return out


def draw_landmark_overlay(
    frame: np.ndarray,
    landmarks: Sequence[LandmarkPoint],
    hint: Correctness,
    alpha: float = 1.0,
    colour: Optional[Tuple[int, int, int]] = None,
) -> np.ndarray:
    out = frame.copy()
    if not landmarks:
        return out
    overlay = out.copy()
    h, w = out.shape[:2]
    col = colour or HINT_COLOURS.get(hint, _TEXT_COLOUR)
    named = _by_name(landmarks)

    for a, b in LINKS:
        if a in named and b in named:
            cv2.line(overlay, _px(named[a], w, h), _px(named[b], w, h), col, 3)
    for pt in landmarks:
        cv2.circle(overlay, _px(pt, w, h), 6, col, -1)

    if alpha >= 1.0:
        return overlay
    cv2.addWeighted(overlay, alpha, out, 1 - alpha, 0, out)
    return out


def draw_advisory_skeleton(frame: np.ndarray, landmarks: Sequence[LandmarkPoint]) -> np.ndarray:
    return draw_landmark_overlay(frame, landmarks, Correctness.NEUTRAL, alpha=0.35, colour=ADVISORY_COLOUR)


def draw_flash(frame: np.ndarray, strength: float = 0.6) -> np.ndarray:
    white = np.full_like(frame, 255)
    return cv2.addWeighted(white, strength, frame, 1 - strength, 0)


def put_text(
    img: np.ndarray,
    text: str,
    y: int,
    scale: float = 0.6,
    colour: Tuple[int, int, int] = _TEXT_COLOUR,
    x: int = 12,
    thickness: int = 1,
) -> None:
    (tw, th), _ = cv2.getTextSize(text, _TEXT_FONT, scale, thickness)
    pad = 6
    y0 = max(0, y - th - pad)
    x1 = min(img.shape[1] - 1, x + tw + pad)
    y1 = min(img.shape[0] - 1, y + pad)
    bg = img.copy()
    cv2.rectangle(bg, (max(0, x - pad), y0), (x1, y1), _TEXT_BG, -1)
    cv2.addWeighted(bg, 0.55, img, 0.45, 0, img)
    cv2.putText(img, text, (x, y), _TEXT_FONT, scale, colour, thickness, cv2.LINE_AA)
