from __future__ import annotations

import logging
from typing import Any, Optional

import numpy as np

from ..analysis.models import LandmarkPoint


logger = logging.getLogger(__name__)

_KEYPOINTS = (
    "nose",
    "left_shoulder",
    "right_shoulder",
    "left_elbow",
    "right_elbow",
    "left_wrist",
    "right_wrist",
    "left_hip",
    "right_hip",
    "left_knee",
    "right_knee",
    "left_ankle",
    "right_ankle",
)


class AdvisoryPoseEstimator:
    """Mediapipe skeleton for on-screen hints only; never decides pose correctness."""

    def __init__(self, model_complexity: int = 1) -> None:
        self.model_complexity = model_complexity
        self._mp: Any = None
        self._pose: Any = None

    @property
    def loaded(self) -> bool:
        return self._pose is not None

    def load(self) -> None:
        if self._pose is not None:
            return
        # Lazy import so the package works without mediapipe installed.
        import mediapipe as mp

        # The Solutions API was dropped in mediapipe>=0.10.30.
        if not hasattr(mp, "solutions"):
            raise RuntimeError(
                "Installed mediapipe has no Solutions API (mp.solutions.*). "
                "Install a compatible version: pip install 'mediapipe<0.10.30'"
            )
        self._mp = mp
        self._pose = mp.solutions.pose.Pose(
            static_image_mode=False,
            model_complexity=self.model_complexity,
            enable_segmentation=False,
            min_detection_confidence=0.5,
            min_tracking_confidence=0.5,
        )
        logger.info("event=estimator_loaded complexity=%d", self.model_complexity)

    def estimate(self, frame_bgr: np.ndarray) -> tuple[LandmarkPoint, ...]:
        if self._pose is None:
            return ()
        res = self._pose.process(np.ascontiguousarray(frame_bgr[:, :, ::-1]))
        if res.pose_landmarks is None:
            return ()
        idx = self._mp.solutions.pose.PoseLandmark
        out: list[LandmarkPoint] = []
        for name in _KEYPOINTS:
            p = res.pose_landmarks.landmark[getattr(idx, name.upper())]
            out.append(LandmarkPoint(name=name, x=min(1.0, max(0.0, float(p.x))), y=min(1.0, max(0.0, float(p.y)))))
        return tuple(out)

    def close(self) -> None:
        pose: Optional[Any] = self._pose
        self._pose = None
        if pose is not None:
            pose.close()
