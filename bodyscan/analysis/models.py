from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable, Optional

from pydantic import BaseModel, Field
from pydantic.config import ConfigDict


@dataclass(frozen=True)
class LandmarkPoint:
    name: str
    x: float  # 0..1, left to right
    y: float  # 0..1, top to bottom


@dataclass(frozen=True)
class AnalysisResult:
    feedback: str
    is_correct_pose: bool
    landmarks: tuple[LandmarkPoint, ...] = field(default_factory=tuple)


class PoseAnalysisRequest(BaseModel):
    """Body of one remote pose check, serialised with the service's camelCase names."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)
    image: str  # data URI of the encoded still
    current_pose_label: str = Field(alias="currentPoseLabel")
    desired_pose_description: str = Field(alias="desiredPoseDescription")


class WireLandmark(BaseModel):
    name: str = ""
    x: float
    y: float


class PoseAnalysisResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    feedback: str = ""
    is_correct_pose: bool = Field(alias="isCorrectPose")
    detected_landmarks: Optional[list[WireLandmark]] = Field(default=None, alias="detectedLandmarks")


_DEFAULT_FEEDBACK = {
    True: "Pose looks correct. Hold still.",
    False: "Adjust your pose to match the instructions.",
}


def _clamp01(v: float) -> float:
    return min(1.0, max(0.0, float(v)))


def normalize_landmarks(items: Optional[Iterable[WireLandmark]]) -> tuple[LandmarkPoint, ...]:
    if not items:
        return ()
    out: list[LandmarkPoint] = []
    for item in items:
        if not (math.isfinite(item.x) and math.isfinite(item.y)):
            continue
        out.append(LandmarkPoint(name=item.name, x=_clamp01(item.x), y=_clamp01(item.y)))
    return tuple(out)


def to_analysis_result(response: PoseAnalysisResponse) -> AnalysisResult:
    feedback = " ".join((response.feedback or "").split())
    if not feedback:
        feedback = _DEFAULT_FEEDBACK[bool(response.is_correct_pose)]
    return AnalysisResult(
        feedback=feedback,
        is_correct_pose=bool(response.is_correct_pose),
        landmarks=normalize_landmarks(response.detected_landmarks),
    )
