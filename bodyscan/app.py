from __future__ import annotations

import asyncio
import logging
from typing import Optional

import cv2
import numpy as np

from .analysis.client import PoseAnalysisClient
from .analysis.openai_transport import OpenAIPoseTransport
from .capture.controller import GuidedCaptureController
from .capture.state import BLOCKED_PHASES, CaptureSession, Phase
from .config import CaptureConfig
from .feedback.presenter import Correctness, LivePresenter, Severity
from .poses.catalog import PoseCatalog, default_catalog
from .profile import ProfileStore, StoredProfileProvider
from .storage.photo_store import JsonPhotoSetStore
from .storage.session_paths import SessionPaths
from .vision.estimator import AdvisoryPoseEstimator
from .vision.overlay import draw_advisory_skeleton, draw_flash, draw_landmark_overlay, put_text
from .vision.sampler import FrameSampler
from .vision.source import CameraSource, MediaSource
from .voice.tts import SpeechAnnouncer


logger = logging.getLogger(__name__)

WINDOW_NAME = "BodyScan - guided capture"

_LOST_FRAME_LIMIT = 20
_ESTIMATE_EVERY = 3
_STREAMING_PHASES = frozenset(
    {
        Phase.READY,
        Phase.INITIALIZING_POSE,
        Phase.GUIDING,
        Phase.ANALYZING,
        Phase.CAPTURING,
        Phase.CONFIRMED,
        Phase.PAUSED,
    }
)

_PHASE_LABELS = {
    Phase.IDLE: "Starting...",
    Phase.PREREQUISITES_UNMET: "Profile incomplete",
    Phase.READY: "Ready - press Enter to begin",
    Phase.INITIALIZING_POSE: "Get into position",
    Phase.GUIDING: "Hold the pose",
    Phase.ANALYZING: "Checking your pose...",
    Phase.CAPTURING: "Capturing",
    Phase.CONFIRMED: "Captured",
    Phase.PAUSED: "Paused - press P to resume",
    Phase.COMPLETE: "All poses captured",
    Phase.ERROR_CAMERA: "Camera error - press R to retry",
    Phase.ERROR_SERVICE_SETUP: "Analysis unavailable - press R to retry",
}

_SEVERITY_COLOURS = {
    Severity.INFO: (235, 235, 235),
    Severity.SUCCESS: (0, 200, 0),
    Severity.WARNING: (0, 200, 255),
    Severity.ERROR: (0, 0, 255),
}


def make_client_factory(config: CaptureConfig):
    def factory() -> PoseAnalysisClient:
        transport = OpenAIPoseTransport(config.service)
        return PoseAnalysisClient(
            transport,
            max_attempts=config.retry.max_attempts,
            backoff_base_s=config.retry.backoff_base_s,
        )

    return factory


def build_controller(
    config: CaptureConfig,
    profile_name: str,
    presenter: LivePresenter,
    video_source: MediaSource,
    catalog: Optional[PoseCatalog] = None,
    sessions: Optional[SessionPaths] = None,
    profiles: Optional[ProfileStore] = None,
    estimator: Optional[AdvisoryPoseEstimator] = None,
) -> GuidedCaptureController:
    sessions = sessions or SessionPaths.default()
    profiles = profiles or ProfileStore.default()
    return GuidedCaptureController(
        catalog=catalog or default_catalog(),
        sampler=FrameSampler(jpeg_quality=config.service.jpeg_quality),
        client_factory=make_client_factory(config),
        presenter=presenter,
        store=JsonPhotoSetStore(sessions.photo_set_dir(profile_name)),
        video_source=video_source,
        profile_provider=StoredProfileProvider(profiles, profile_name),
        timings=config.timings,
        estimator=estimator,
    )


def render_frame(
    frame: np.ndarray,
    session: CaptureSession,
    controller: GuidedCaptureController,
    presenter: LivePresenter,
    advisory: tuple = (),
) -> np.ndarray:
    out = frame
    if advisory:
        out = draw_advisory_skeleton(out, advisory)
    overlay = presenter.overlay()
    if overlay.landmarks:
        out = draw_landmark_overlay(out, overlay.landmarks, overlay.hint)
    if session.phase == Phase.CAPTURING:
        out = draw_flash(out)
    else:
        out = out.copy()

    y = 30
    put_text(out, _PHASE_LABELS.get(session.phase, session.phase.value), y, scale=0.8, colour=(0, 230, 255))
    y += 32
    catalog = controller.catalog
    if session.phase in _STREAMING_PHASES and session.phase != Phase.READY:
        pose = catalog[session.current_pose_index]
        put_text(out, f"Pose {session.current_pose_index + 1}/{len(catalog)}: {pose.name}", y)
        y += 26
        put_text(out, pose.short_instruction, y, scale=0.5)
        y += 26
    if session.feedback:
        colour = (0, 0, 255) if session.correctness == Correctness.ADJUSTMENT_NEEDED else (235, 235, 235)
        put_text(out, session.feedback[:110], y, scale=0.5, colour=colour)
        y += 26
    if session.blocking_reason:
        put_text(out, session.blocking_reason[:110], y, scale=0.5, colour=(0, 0, 255))
        y += 26
    put_text(out, f"Captured {session.confirmed_count}/{len(catalog)}", y, scale=0.5)

    h = out.shape[0]
    for i, toast in enumerate(reversed(presenter.active_toasts())):
        put_text(
            out,
            f"{toast.title}: {toast.message}"[:110],
            h - 20 - 28 * i,
            scale=0.5,
            colour=_SEVERITY_COLOURS.get(toast.severity, (235, 235, 235)),
        )
    put_text(out, "Enter: begin  P: pause/resume  R: retry  Q: quit", h - 20 - 28 * 3, scale=0.45)
    return out


async def _handle_key(key: int, controller: GuidedCaptureController) -> bool:
    """Apply one key press; returns False when the user asked to quit."""
    phase = controller.phase
    if key in (ord("q"), ord("Q"), 27):
        return False
    if key in (13, 10, ord(" ")):
        if phase == Phase.READY:
            controller.begin()
        elif phase == Phase.COMPLETE:
            await controller.retry_prerequisites()
            controller.begin()
    elif key in (ord("p"), ord("P")):
        if phase == Phase.PAUSED:
            controller.resume()
        else:
            controller.pause()
    elif key in (ord("r"), ord("R")):
        if phase in BLOCKED_PHASES and phase != Phase.COMPLETE:
            await controller.retry_prerequisites()
        else:
            controller.retry_current_pose()
    return True


async def run_capture(profile_name: str, config: CaptureConfig) -> int:
    source = CameraSource(
        device=config.camera.device,
        width=config.camera.width,
        height=config.camera.height,
        fps=config.camera.fps,
        mirror=config.camera.mirror,
    )
    speaker: Optional[SpeechAnnouncer] = None
    if config.coach_voice and config.tts_backend != "none":
        speaker = SpeechAnnouncer(backend=config.tts_backend)
        try:
            speaker.start()
        except RuntimeError as e:
            print(f"[bodyscan] Voice disabled: {e}")
            speaker = None

    presenter = LivePresenter(speaker=speaker)
    estimator = AdvisoryPoseEstimator() if config.use_estimator else None
    controller = build_controller(config, profile_name, presenter, source, estimator=estimator)
    logger.info(
        "event=capture_session_open profile=%s camera=%r voice=%s estimator=%s",
        profile_name,
        config.camera.device,
        speaker.active_backend if speaker is not None else "off",
        estimator is not None,
    )

    cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_NORMAL)
    blank = np.zeros((config.camera.height, config.camera.width, 3), dtype=np.uint8)
    empty_frames = 0
    frame_index = 0
    advisory: tuple = ()
    try:
        await controller.start()
        while True:
            session = controller.state
            frame: Optional[np.ndarray] = None
            if source.running:
                # Frame reads block; keep timers and analysis running meanwhile.
                frame = await asyncio.to_thread(source.read)
                if frame is None and session.phase in _STREAMING_PHASES:
                    empty_frames += 1
                    if empty_frames >= _LOST_FRAME_LIMIT:
                        controller.report_camera_lost(details=f"No frame for {empty_frames} reads.")
                        empty_frames = 0
                else:
                    empty_frames = 0

            if frame is not None and estimator is not None and estimator.loaded:
                frame_index += 1
                if frame_index % _ESTIMATE_EVERY == 0:
                    advisory = estimator.estimate(frame)

            view = render_frame(frame if frame is not None else blank, controller.state, controller, presenter, advisory)
            cv2.imshow(WINDOW_NAME, view)
            key = cv2.waitKey(1) & 0xFF
            if key != 255 and not await _handle_key(key, controller):
                break
            await asyncio.sleep(0)
    finally:
        await controller.teardown()
        if speaker is not None:
            speaker.stop()
        cv2.destroyWindow(WINDOW_NAME)

    final = controller.state
    print(f"[bodyscan] Session ended in {final.phase.value}: {final.confirmed_count}/{len(controller.catalog)} poses captured.")
    return 0 if final.phase == Phase.COMPLETE else 1
