from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Callable, Optional, Protocol

from ..analysis.client import PoseAnalysisClient
from ..analysis.openai_transport import ServiceSetupError
from ..profile import UserProfile, missing_required_fields
from ..vision.estimator import AdvisoryPoseEstimator
from ..vision.source import MediaSource
from .state import Phase


logger = logging.getLogger(__name__)

ClientFactory = Callable[[], PoseAnalysisClient]

_FIELD_LABELS = {"height_cm": "height", "weight_kg": "weight", "age": "age"}


class ProfileProvider(Protocol):
    def get_profile(self) -> Optional[UserProfile]: ...


class PrerequisiteError(Exception):
    def __init__(self, phase: Phase, reason: str, details: str = "") -> None:
        super().__init__(reason)
        self.phase = phase
        self.reason = reason
        self.details = details


def camera_error_message(exc: BaseException) -> str:
    lower = str(exc).lower()
    if "permission" in lower or "denied" in lower:
        return "Camera access denied. Grant camera access and press Retry."
    if "could not open" in lower:
        return "Could not open the selected camera. Close other apps using it or pick another device, then press Retry."
    return "No camera detected or camera connection failed. Check the connection and press Retry."


def check_profile(provider: ProfileProvider) -> None:
    missing = missing_required_fields(provider.get_profile())
    if missing:
        names = ", ".join(_FIELD_LABELS.get(k, k) for k in missing)
        raise PrerequisiteError(
            Phase.PREREQUISITES_UNMET,
            f"Complete your profile ({names}) before capturing photos, then press Retry.",
        )


def build_client(client_factory: ClientFactory) -> PoseAnalysisClient:
    try:
        return client_factory()
    except ServiceSetupError as exc:
        raise PrerequisiteError(Phase.ERROR_SERVICE_SETUP, str(exc)) from exc
    except Exception as exc:
        raise PrerequisiteError(
            Phase.ERROR_SERVICE_SETUP,
            "Pose analysis service could not be initialised. Check the configuration and press Retry.",
            details=traceback.format_exc(),
        ) from exc


def start_camera(video_source: MediaSource) -> None:
    try:
        video_source.start()
    except Exception as exc:
        raise PrerequisiteError(Phase.ERROR_CAMERA, camera_error_message(exc), details=traceback.format_exc()) from exc


async def load_estimator(estimator: AdvisoryPoseEstimator) -> None:
    try:
        # Model loading blocks; keep the event loop responsive.
        await asyncio.to_thread(estimator.load)
    except Exception as exc:
        raise PrerequisiteError(
            Phase.ERROR_SERVICE_SETUP,
            "Pose overlay model could not be loaded. Install the estimator extra or disable it, then press Retry.",
            details=traceback.format_exc(),
        ) from exc


async def check_prerequisites(
    profile_provider: ProfileProvider,
    client_factory: ClientFactory,
    video_source: MediaSource,
    estimator: Optional[AdvisoryPoseEstimator] = None,
) -> PoseAnalysisClient:
    """Run every check in order; the first failure raises PrerequisiteError.

    The camera is stopped again if a later check fails, so a failed attempt
    leaves no device open.
    """
    check_profile(profile_provider)
    client = build_client(client_factory)
    start_camera(video_source)
    if estimator is not None:
        try:
            await load_estimator(estimator)
        except BaseException:
            video_source.stop()
            raise
    logger.info("event=prerequisites_ok estimator=%s", estimator is not None)
    return client
