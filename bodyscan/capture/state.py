"""Capture session state and its pure transition function.

`CaptureStateMachine.transition(session, event)` returns the next session and
the side-effect commands the controller must run. It never performs I/O, so
every phase change can be tested without a camera, a network or a clock.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Union

from ..analysis.models import AnalysisResult, LandmarkPoint
from ..config import CaptureTimings
from ..feedback.presenter import Correctness, Severity
from ..poses.catalog import PoseCatalog, PoseSpec
from ..storage.photo_store import PhotoRecord
from ..vision.sampler import CapturedFrame


CONFIRMATION_TEXT = "Pose captured successfully."
ANALYSIS_RETRY_TEXT = "Could not check your pose right now. Hold the pose, trying again shortly."
PHOTO_SAVE_RETRY_TEXT = "Photo could not be saved. Hold the pose to try again."


class Phase(str, Enum):
    IDLE = "IDLE"
    PREREQUISITES_UNMET = "PREREQUISITES_UNMET"
    READY = "READY"
    INITIALIZING_POSE = "INITIALIZING_POSE"
    GUIDING = "GUIDING"
    ANALYZING = "ANALYZING"
    CAPTURING = "CAPTURING"
    CONFIRMED = "CONFIRMED"
    PAUSED = "PAUSED"
    COMPLETE = "COMPLETE"
    ERROR_CAMERA = "ERROR_CAMERA"
    ERROR_SERVICE_SETUP = "ERROR_SERVICE_SETUP"


TERMINAL_PHASES = frozenset({Phase.COMPLETE, Phase.ERROR_CAMERA, Phase.ERROR_SERVICE_SETUP})
BLOCKED_PHASES = TERMINAL_PHASES | {Phase.PREREQUISITES_UNMET}
ERROR_PHASES = frozenset({Phase.ERROR_CAMERA, Phase.ERROR_SERVICE_SETUP})
# Phases in which a pose is active and can be restarted.
POSE_PHASES = frozenset(
    {
        Phase.INITIALIZING_POSE,
        Phase.GUIDING,
        Phase.ANALYZING,
        Phase.CAPTURING,
        Phase.CONFIRMED,
        Phase.PAUSED,
    }
)


@dataclass(frozen=True)
class CaptureSession:
    phase: Phase = Phase.IDLE
    current_pose_index: int = 0
    photos: tuple[PhotoRecord, ...] = ()
    correctness: Correctness = Correctness.NEUTRAL
    feedback: str = ""
    # Bumped on every pose (re)entry; events carrying an older token are stale.
    pose_token: int = 0
    analysis_in_flight: bool = False
    pending_frame: Optional[bytes] = None
    blocking_reason: Optional[str] = None

    @property
    def all_confirmed(self) -> bool:
        return bool(self.photos) and all(p.is_correct is True for p in self.photos)

    @property
    def confirmed_count(self) -> int:
        return sum(1 for p in self.photos if p.is_correct is True)


# Events


@dataclass(frozen=True)
class PrerequisitesPassed:
    pass


@dataclass(frozen=True)
class PrerequisitesFailed:
    phase: Phase
    reason: str


@dataclass(frozen=True)
class BeginRequested:
    pass


@dataclass(frozen=True)
class PoseReady:
    token: int


@dataclass(frozen=True)
class Tick:
    pass


@dataclass(frozen=True)
class FrameSampled:
    token: int
    frame: CapturedFrame


@dataclass(frozen=True)
class AnalysisCompleted:
    token: int
    result: AnalysisResult


@dataclass(frozen=True)
class AnalysisErrored:
    token: int
    kind: str


@dataclass(frozen=True)
class CaptureDwellElapsed:
    token: int


@dataclass(frozen=True)
class ConfirmDwellElapsed:
    token: int


@dataclass(frozen=True)
class PauseRequested:
    pass


@dataclass(frozen=True)
class ResumeRequested:
    pass


@dataclass(frozen=True)
class RetryPoseRequested:
    pass


@dataclass(frozen=True)
class FatalError:
    phase: Phase
    reason: str
    title: str = ""


@dataclass(frozen=True)
class PhotoPersisted:
    token: int
    error: Optional[str] = None


@dataclass(frozen=True)
class ResetRequested:
    pass


Event = Union[
    PrerequisitesPassed,
    PrerequisitesFailed,
    BeginRequested,
    PoseReady,
    Tick,
    FrameSampled,
    AnalysisCompleted,
    AnalysisErrored,
    CaptureDwellElapsed,
    ConfirmDwellElapsed,
    PauseRequested,
    ResumeRequested,
    RetryPoseRequested,
    PhotoPersisted,
    FatalError,
    ResetRequested,
]


# Commands


@dataclass(frozen=True)
class Announce:
    text: str


@dataclass(frozen=True)
class CancelSpeech:
    pass


@dataclass(frozen=True)
class ShowOverlay:
    landmarks: tuple[LandmarkPoint, ...]
    hint: Correctness


@dataclass(frozen=True)
class ShowToast:
    title: str
    message: str
    severity: Severity = Severity.INFO


@dataclass(frozen=True)
class StartTicking:
    interval_s: float


@dataclass(frozen=True)
class StopTicking:
    pass


@dataclass(frozen=True)
class ScheduleDelay:
    seconds: float
    event: Event


@dataclass(frozen=True)
class CancelDelays:
    pass


@dataclass(frozen=True)
class SampleFrame:
    token: int


@dataclass(frozen=True)
class RequestAnalysis:
    token: int
    image: bytes = field(repr=False)
    label: str
    pose: PoseSpec


@dataclass(frozen=True)
class CancelAnalysis:
    pass


@dataclass(frozen=True)
class PersistPhoto:
    record: PhotoRecord
    # The outcome comes back as PhotoPersisted carrying this token.
    token: int


@dataclass(frozen=True)
class ResetPhotoStore:
    pass


Command = Union[
    Announce,
    CancelSpeech,
    ShowOverlay,
    ShowToast,
    StartTicking,
    StopTicking,
    ScheduleDelay,
    CancelDelays,
    SampleFrame,
    RequestAnalysis,
    CancelAnalysis,
    PersistPhoto,
    ResetPhotoStore,
]

Transition = tuple[CaptureSession, list[Command]]

_CLEAR_OVERLAY = ShowOverlay(landmarks=(), hint=Correctness.NEUTRAL)

_BLOCKED_TITLES = {
    Phase.PREREQUISITES_UNMET: "Profile incomplete",
    Phase.ERROR_CAMERA: "Camera unavailable",
    Phase.ERROR_SERVICE_SETUP: "Pose analysis unavailable",
}


def attempt_label(pose: PoseSpec) -> str:
    return f"user attempting {pose.name}"


class CaptureStateMachine:
    def __init__(self, catalog: PoseCatalog, timings: Optional[CaptureTimings] = None) -> None:
        self.catalog = catalog
        self.timings = timings or CaptureTimings()

    def new_session(self, token: int = 0) -> CaptureSession:
        return CaptureSession(
            photos=tuple(PhotoRecord.empty(p.id) for p in self.catalog),
            pose_token=token,
        )

    def current_pose(self, session: CaptureSession) -> PoseSpec:
        return self.catalog[session.current_pose_index]

    def transition(self, session: CaptureSession, event: Event) -> Transition:
        handler = getattr(self, f"_on_{type(event).__name__}", None)
        if handler is None:
            return session, []
        return handler(session, event)

    # Helpers

    def _teardown_commands(self, session: CaptureSession) -> list[Command]:
        cmds: list[Command] = [StopTicking(), CancelDelays()]
        if session.analysis_in_flight:
            cmds.append(CancelAnalysis())
        return cmds

    def _enter_pose(self, session: CaptureSession, index: int, photos: Optional[tuple[PhotoRecord, ...]] = None) -> Transition:
        pose = self.catalog[index]
        token = session.pose_token + 1
        nxt = replace(
            session,
            phase=Phase.INITIALIZING_POSE,
            current_pose_index=index,
            photos=session.photos if photos is None else photos,
            correctness=Correctness.NEUTRAL,
            feedback="",
            pose_token=token,
            analysis_in_flight=False,
            pending_frame=None,
        )
        cmds = self._teardown_commands(session)
        cmds += [
            CancelSpeech(),
            _CLEAR_OVERLAY,
            Announce(f"Pose {index + 1} of {len(self.catalog)}: {pose.name}. {pose.short_instruction}"),
            ScheduleDelay(self.timings.pose_prep_delay_s, PoseReady(token)),
        ]
        return nxt, cmds

    # Prerequisites

    def _on_PrerequisitesPassed(self, s: CaptureSession, _e: PrerequisitesPassed) -> Transition:
        if s.phase != Phase.IDLE:
            return s, []
        return replace(s, phase=Phase.READY, blocking_reason=None), [
            ShowToast("Ready", "Camera and profile ready. Start when you are in position.", Severity.SUCCESS)
        ]

    def _on_PrerequisitesFailed(self, s: CaptureSession, e: PrerequisitesFailed) -> Transition:
        if s.phase != Phase.IDLE or e.phase not in BLOCKED_PHASES - {Phase.COMPLETE}:
            return s, []
        return replace(s, phase=e.phase, blocking_reason=e.reason), [
            ShowToast(_BLOCKED_TITLES[e.phase], e.reason, Severity.ERROR)
        ]

    def _on_BeginRequested(self, s: CaptureSession, _e: BeginRequested) -> Transition:
        if s.phase != Phase.READY:
            return s, []
        fresh = tuple(PhotoRecord.empty(p.id) for p in self.catalog)
        nxt, cmds = self._enter_pose(s, 0, photos=fresh)
        return nxt, [ResetPhotoStore()] + cmds

    # Pose loop

    def _on_PoseReady(self, s: CaptureSession, e: PoseReady) -> Transition:
        if s.phase != Phase.INITIALIZING_POSE or e.token != s.pose_token:
            return s, []
        return replace(s, phase=Phase.GUIDING), [StartTicking(self.timings.sample_interval_s)]

    def _on_Tick(self, s: CaptureSession, _e: Tick) -> Transition:
        # At most one analysis in flight: ticks during ANALYZING are no-ops.
        if s.phase != Phase.GUIDING or s.analysis_in_flight:
            return s, []
        return s, [SampleFrame(s.pose_token)]

    def _on_FrameSampled(self, s: CaptureSession, e: FrameSampled) -> Transition:
        if s.phase != Phase.GUIDING or s.analysis_in_flight or e.token != s.pose_token:
            return s, []
        pose = self.current_pose(s)
        nxt = replace(s, phase=Phase.ANALYZING, analysis_in_flight=True, pending_frame=e.frame.jpeg)
        return nxt, [RequestAnalysis(token=s.pose_token, image=e.frame.jpeg, label=attempt_label(pose), pose=pose)]

    def _on_AnalysisCompleted(self, s: CaptureSession, e: AnalysisCompleted) -> Transition:
        if s.phase != Phase.ANALYZING or e.token != s.pose_token:
            return s, []
        result = e.result
        if result.is_correct_pose:
            nxt = replace(
                s,
                phase=Phase.CAPTURING,
                analysis_in_flight=False,
                correctness=Correctness.CORRECT,
                feedback=result.feedback,
            )
            return nxt, [
                StopTicking(),
                ShowOverlay(result.landmarks, Correctness.CORRECT),
                Announce("Perfect. Hold still."),
                ScheduleDelay(self.timings.capture_dwell_s, CaptureDwellElapsed(s.pose_token)),
            ]
        nxt = replace(
            s,
            phase=Phase.GUIDING,
            analysis_in_flight=False,
            correctness=Correctness.ADJUSTMENT_NEEDED,
            feedback=result.feedback,
            pending_frame=None,
        )
        return nxt, [ShowOverlay(result.landmarks, Correctness.ADJUSTMENT_NEEDED), Announce(result.feedback)]

    def _on_AnalysisErrored(self, s: CaptureSession, e: AnalysisErrored) -> Transition:
        if s.phase != Phase.ANALYZING or e.token != s.pose_token:
            return s, []
        nxt = replace(
            s,
            phase=Phase.GUIDING,
            analysis_in_flight=False,
            correctness=Correctness.NEUTRAL,
            feedback=ANALYSIS_RETRY_TEXT,
            pending_frame=None,
        )
        return nxt, [_CLEAR_OVERLAY, ShowToast("Analysis unavailable", ANALYSIS_RETRY_TEXT, Severity.WARNING)]

    def _on_CaptureDwellElapsed(self, s: CaptureSession, e: CaptureDwellElapsed) -> Transition:
        if s.phase != Phase.CAPTURING or e.token != s.pose_token:
            return s, []
        pose = self.current_pose(s)
        record = PhotoRecord(pose_id=pose.id, image_data=s.pending_frame, is_correct=True, feedback=CONFIRMATION_TEXT)
        photos = list(s.photos)
        photos[s.current_pose_index] = record
        nxt = replace(s, phase=Phase.CONFIRMED, photos=tuple(photos), pending_frame=None)
        # Confirmation waits for the store to acknowledge the write.
        return nxt, [PersistPhoto(record, s.pose_token)]

    def _on_PhotoPersisted(self, s: CaptureSession, e: PhotoPersisted) -> Transition:
        if s.phase != Phase.CONFIRMED or e.token != s.pose_token:
            return s, []
        pose = self.current_pose(s)
        if e.error is None:
            return s, [
                ShowToast("Pose captured", f"{pose.name} captured.", Severity.SUCCESS),
                ScheduleDelay(self.timings.confirm_dwell_s, ConfirmDwellElapsed(s.pose_token)),
            ]
        photos = list(s.photos)
        photos[s.current_pose_index] = PhotoRecord.empty(pose.id)
        nxt = replace(
            s,
            phase=Phase.GUIDING,
            photos=tuple(photos),
            correctness=Correctness.NEUTRAL,
            feedback=PHOTO_SAVE_RETRY_TEXT,
            pending_frame=None,
        )
        return nxt, [
            _CLEAR_OVERLAY,
            ShowToast("Photo not saved", e.error, Severity.ERROR),
            StartTicking(self.timings.sample_interval_s),
        ]

    def _on_ConfirmDwellElapsed(self, s: CaptureSession, e: ConfirmDwellElapsed) -> Transition:
        if s.phase != Phase.CONFIRMED or e.token != s.pose_token:
            return s, []
        nxt_index = s.current_pose_index + 1
        if nxt_index < len(self.catalog):
            return self._enter_pose(s, nxt_index)
        if not s.all_confirmed:
            # Unreachable through this machine; hold position rather than report a partial set.
            return s, []
        done = replace(s, phase=Phase.COMPLETE, correctness=Correctness.NEUTRAL, feedback="")
        return done, [
            StopTicking(),
            CancelDelays(),
            _CLEAR_OVERLAY,
            Announce("All poses captured. Great work."),
            ShowToast("Photo set complete", f"All {len(self.catalog)} poses captured.", Severity.SUCCESS),
        ]

    # User controls

    def _on_PauseRequested(self, s: CaptureSession, _e: PauseRequested) -> Transition:
        if s.phase not in (Phase.GUIDING, Phase.ANALYZING):
            return s, []
        nxt = replace(
            s,
            phase=Phase.PAUSED,
            pose_token=s.pose_token + 1,
            analysis_in_flight=False,
            pending_frame=None,
            correctness=Correctness.NEUTRAL,
        )
        return nxt, self._teardown_commands(s) + [CancelSpeech(), _CLEAR_OVERLAY, Announce("Paused.")]

    def _on_ResumeRequested(self, s: CaptureSession, _e: ResumeRequested) -> Transition:
        if s.phase != Phase.PAUSED:
            return s, []
        return self._enter_pose(s, s.current_pose_index)

    def _on_RetryPoseRequested(self, s: CaptureSession, _e: RetryPoseRequested) -> Transition:
        if s.phase == Phase.READY:
            # Nothing to redo yet; retrying starts the first pose.
            return self._on_BeginRequested(s, BeginRequested())
        if s.phase not in POSE_PHASES:
            return s, []
        pose = self.current_pose(s)
        empty = PhotoRecord.empty(pose.id)
        photos = list(s.photos)
        photos[s.current_pose_index] = empty
        nxt, cmds = self._enter_pose(s, s.current_pose_index, photos=tuple(photos))
        return nxt, [PersistPhoto(empty, nxt.pose_token)] + cmds

    # Failures and reset

    def _on_FatalError(self, s: CaptureSession, e: FatalError) -> Transition:
        if s.phase in TERMINAL_PHASES or e.phase not in ERROR_PHASES:
            return s, []
        nxt = replace(
            s,
            phase=e.phase,
            blocking_reason=e.reason,
            pose_token=s.pose_token + 1,
            analysis_in_flight=False,
            pending_frame=None,
            correctness=Correctness.NEUTRAL,
        )
        return nxt, self._teardown_commands(s) + [
            CancelSpeech(),
            _CLEAR_OVERLAY,
            ShowToast(e.title or _BLOCKED_TITLES[e.phase], e.reason, Severity.ERROR),
        ]

    def _on_ResetRequested(self, s: CaptureSession, _e: ResetRequested) -> Transition:
        return self.new_session(token=s.pose_token + 1), self._teardown_commands(s) + [CancelSpeech(), _CLEAR_OVERLAY]
