from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional, Sequence


@dataclass(frozen=True)
class PoseSpec:
    id: str
    name: str
    # Sent verbatim to the analysis service as the desired pose.
    description: str
    short_instruction: str
    order: int


class PoseCatalog:
    """Ordered, validated list of the poses a capture session walks through."""

    def __init__(self, poses: Sequence[PoseSpec]) -> None:
        ordered = sorted(poses, key=lambda p: p.order)
        if not ordered:
            raise ValueError("Pose catalog must contain at least one pose.")
        ids = [p.id for p in ordered]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Pose ids must be unique: {ids}")
        orders = [p.order for p in ordered]
        if orders != list(range(len(ordered))):
            raise ValueError(f"Pose order must run 0..{len(ordered) - 1} without gaps: {orders}")
        self._poses: tuple[PoseSpec, ...] = tuple(ordered)

    def __len__(self) -> int:
        return len(self._poses)

    def __iter__(self) -> Iterator[PoseSpec]:
        return iter(self._poses)

    def __getitem__(self, index: int) -> PoseSpec:
        return self._poses[index]

    @property
    def ids(self) -> list[str]:
        return [p.id for p in self._poses]

    def get(self, pose_id: str) -> Optional[PoseSpec]:
        for pose in self._poses:
            if pose.id == pose_id:
                return pose
        return None

    def index_of(self, pose_id: str) -> int:
        for idx, pose in enumerate(self._poses):
            if pose.id == pose_id:
                return idx
        raise KeyError(pose_id)


DEFAULT_POSES: tuple[PoseSpec, ...] = (
    PoseSpec(
        id="front_t_pose",
        name="T-Pose (Front View)",
        description=(
            "Stand facing the camera squarely, maintaining an upright posture. Extend both arms straight out "
            "to your sides, ensuring they are perfectly horizontal and form a 90-degree angle with your torso "
            "(parallel to the ground). Palms must face directly forward, with all fingers kept straight, "
            "extended, and held tightly together. Your thumbs should also be extended and aligned with your "
            "fingers. Feet should be positioned shoulder-width apart, with toes pointing directly forward "
            "towards the camera. Your head should be level, looking straight at the camera lens with a neutral "
            "facial expression (mouth closed, relaxed). Ensure your entire body, from head to toes including "
            "fingertips and heels, is fully visible within the camera frame and not cut off. Wear form-fitting "
            "clothing if possible to avoid obscuring body contours; avoid baggy or loose garments."
        ),
        short_instruction="Front T-Pose. Arms horizontal, palms forward, fingers straight. Feet shoulder-width. Look at camera.",
        order=0,
    ),
    PoseSpec(
        id="side_left_a_pose",
        name="A-Pose (Left Side View)",
        description=(
            "Stand with your left side directly facing the camera, maintaining an upright posture. Allow arms "
            "to hang naturally, then move them slightly away from your body to form a 30-45 degree angle from "
            "your torso (an \"A\" shape). Keep fingers straight, extended, and held together, with palms facing "
            "towards your body (inwards). Feet should be together or no more than hip-width apart, with toes "
            "pointing forward (relative to your body, perpendicular to the camera). Your head should be level, "
            "looking straight ahead (perpendicular to the camera) with a neutral facial expression. Ensure your "
            "entire body, from head to toes, is fully visible. Wear form-fitting clothing if possible."
        ),
        short_instruction="Left A-Pose. Left side to camera. Arms slightly out, palms in. Feet together. Look ahead.",
        order=1,
    ),
    PoseSpec(
        id="side_right_a_pose",
        name="A-Pose (Right Side View)",
        description=(
            "Stand with your right side directly facing the camera, maintaining an upright posture. Allow arms "
            "to hang naturally, then move them slightly away from your body to form a 30-45 degree angle from "
            "your torso (an \"A\" shape). Keep fingers straight, extended, and held together, with palms facing "
            "towards your body (inwards). Feet should be together or no more than hip-width apart, with toes "
            "pointing forward (relative to your body, perpendicular to the camera). Your head should be level, "
            "looking straight ahead (perpendicular to the camera) with a neutral facial expression. Ensure your "
            "entire body, from head to toes, is fully visible. Wear form-fitting clothing if possible."
        ),
        short_instruction="Right A-Pose. Right side to camera. Arms slightly out, palms in. Feet together. Look ahead.",
        order=2,
    ),
    PoseSpec(
        id="back_t_pose",
        name="T-Pose (Back View)",
        description=(
            "Stand with your back squarely facing the camera, maintaining an upright posture. Extend both arms "
            "straight out to your sides, ensuring they are perfectly horizontal and form a 90-degree angle with "
            "your torso (parallel to the ground). Palms must face directly backward (away from the camera), "
            "with all fingers kept straight, extended, and held tightly together. Your thumbs should also be "
            "extended and aligned with your fingers. Feet should be positioned shoulder-width apart, with toes "
            "pointing directly forward (away from the camera). Your head should be level, looking straight "
            "ahead (away from the camera) with a neutral facial expression. Ensure your entire body, from head "
            "to toes including fingertips and heels, is fully visible. Wear form-fitting clothing if possible."
        ),
        short_instruction="Back T-Pose. Arms horizontal, palms back, fingers straight. Feet shoulder-width. Look straight ahead.",
        order=3,
    ),
)


def default_catalog() -> PoseCatalog:
    return PoseCatalog(DEFAULT_POSES)
