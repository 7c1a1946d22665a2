"""Guided capture controller.

Feeds user actions, timers and analysis results through `CaptureStateMachine`
and executes the commands it returns against the real collaborators (camera,
sampler, analysis client, presenter, photo store and scheduler).
"""

from __future__ import annotations

import asyncio
from collections import deque
import logging
from typing import Any, Callable, Deque, Optional

from ..analysis.client import AnalysisFailedError, PoseAnalysisClient
from ..config import CaptureTimings
from ..feedback.presenter import FeedbackPresenter
from ..poses.catalog import PoseCatalog
from ..storage.photo_store import PhotoSetStore
from ..vision.estimator import AdvisoryPoseEstimator
from ..vision.sampler import FrameSampler, SourceNotReady
from ..vision.source import MediaSource
from .prerequisites import ClientFactory, PrerequisiteError, ProfileProvider, check_prerequisites
from .scheduler import AsyncioScheduler, CaptureScheduler
from .state import (
    AnalysisCompleted,
    AnalysisErrored,
    Announce,
    BeginRequested,
    CancelAnalysis,
    CancelDelays,
    CancelSpeech,
    CaptureSession,
    CaptureStateMachine,
    Command,
    Event,
    FatalError,
    FrameSampled,
    PauseRequested,
    PersistPhoto,
    Phase,
    PhotoPersisted,
    PrerequisitesFailed,
    PrerequisitesPassed,
    RequestAnalysis,
    ResetPhotoStore,
    ResetRequested,
    ResumeRequested,
    RetryPoseRequested,
    SampleFrame,
    ScheduleDelay,
    ShowOverlay,
    ShowToast,
    StartTicking,
    StopTicking,
    Tick,
)


logger = logging.getLogger(__name__)

SessionSubscriber = Callable[[CaptureSession], None]

CAMERA_LOST_MESSAGE = "Camera disconnected. Reconnect it and press Retry."
STORE_UNWRITABLE_MESSAGE = "Photo storage is not writable. Check the sessions folder and press Retry."


class GuidedCaptureController:
    def __init__(
        self,
        catalog: PoseCatalog,
        sampler: FrameSampler,
        client_factory: ClientFactory,
        presenter: FeedbackPresenter,
        store: PhotoSetStore,
        video_source: MediaSource,
        profile_provider: ProfileProvider,
        scheduler: Optional[CaptureScheduler] = None,
        timings: Optional[CaptureTimings] = None,
        estimator: Optional[AdvisoryPoseEstimator] = None,
    ) -> None:
        self.catalog = catalog
        self.sampler = sampler
        self.client_factory = client_factory
        self.presenter = presenter
        self.store = store
        self.video_source = video_source
        self.profile_provider = profile_provider
        self.scheduler: CaptureScheduler = scheduler or AsyncioScheduler()
        self.estimator = estimator
        self.machine = CaptureStateMachine(catalog, timings)

        self._session = self.machine.new_session()
        self._client: Optional[PoseAnalysisClient] = None
        self._analysis_task: Optional[asyncio.Task[None]] = None
        self._events: Deque[Event] = deque()
        self._dispatching = False
        self._closed = False
        self._subscribers: dict[int, SessionSubscriber] = {}
        self._next_subscriber_id = 1

    # Read-only views

    @property
    def state(self) -> CaptureSession:
        return self._session

    @property
    def phase(self) -> Phase:
        return self._session.phase

    @property
    def pending_analysis(self) -> Optional[asyncio.Task[None]]:
        task = self._analysis_task
        if task is None or task.done():
            return None
        return task

    def subscribe(self, callback: SessionSubscriber, emit_initial: bool = True) -> int:
        token = self._next_subscriber_id
        self._next_subscriber_id += 1
        self._subscribers[token] = callback
        if emit_initial:
            callback(self._session)
        return token

    def unsubscribe(self, token: int) -> None:
        self._subscribers.pop(token, None)

    def _emit(self) -> None:
        snapshot = self._session
        for callback in list(self._subscribers.values()):
            try:
                callback(snapshot)
            except Exception as exc:
                logger.warning("event=subscriber_failed error=%s", exc)

    # Public operations

    async def start(self) -> CaptureSession:
        if self._closed:
            raise RuntimeError("Controller has been torn down.")
        if self._session.phase != Phase.IDLE:
            return self._session
        try:
            self._client = await check_prerequisites(
                self.profile_provider,
                self.client_factory,
                self.video_source,
                self.estimator,
            )
        except PrerequisiteError as exc:
            logger.error("event=prerequisite_failed phase=%s reason=%s", exc.phase.value, exc.reason)
            if exc.details:
                logger.error(exc.details.strip())
            return self.dispatch(PrerequisitesFailed(exc.phase, exc.reason))
        return self.dispatch(PrerequisitesPassed())

    def begin(self) -> CaptureSession:
        return self.dispatch(BeginRequested())

    def pause(self) -> CaptureSession:
        return self.dispatch(PauseRequested())

    def resume(self) -> CaptureSession:
        return self.dispatch(ResumeRequested())

    def retry_current_pose(self) -> CaptureSession:
        before = self._session
        session = self.dispatch(RetryPoseRequested())
        if session is before:
            logger.info("event=retry_ignored phase=%s", session.phase.value)
        return session

    def report_camera_lost(self, reason: str = CAMERA_LOST_MESSAGE, details: str = "") -> CaptureSession:
        logger.error("event=camera_lost phase=%s reason=%s", self._session.phase.value, reason)
        if details:
            logger.error(details.strip())
        self._stop_camera()
        return self.dispatch(FatalError(Phase.ERROR_CAMERA, reason))

    def reset_session(self) -> CaptureSession:
        logger.info("event=session_reset phase=%s", self._session.phase.value)
        session = self.dispatch(ResetRequested())
        self.scheduler.cancel_all()
        self._cancel_analysis()
        self._stop_camera()
        self._client = None
        return session

    async def retry_prerequisites(self) -> CaptureSession:
        self.reset_session()
        return await self.start()

    async def teardown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._events.clear()
        self.scheduler.cancel_all()
        task = self._analysis_task
        self._cancel_analysis()
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._present("cancel_speech")
        self._stop_camera()
        if self.estimator is not None:
            try:
                self.estimator.close()
            except Exception as exc:
                logger.warning("event=estimator_close_failed error=%s", exc)
        self._subscribers.clear()
        logger.info("event=teardown phase=%s confirmed=%d", self._session.phase.value, self._session.confirmed_count)

    async def __aenter__(self) -> "GuidedCaptureController":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.teardown()

    # Event loop

    def dispatch(self, event: Event) -> CaptureSession:
        if self._closed:
            return self._session
        self._events.append(event)
        # Events raised while executing commands are queued and run after them.
        if self._dispatching:
            return self._session
        self._dispatching = True
        try:
            while self._events:
                self._step(self._events.popleft())
        finally:
            self._events.clear()
            self._dispatching = False
        return self._session

    def _step(self, event: Event) -> None:
        prev = self._session
        session, commands = self.machine.transition(prev, event)
        self._session = session
        if session.phase != prev.phase:
            logger.info(
                "event=phase_change from=%s to=%s pose=%s",
                prev.phase.value,
                session.phase.value,
                self.catalog[session.current_pose_index].id,
            )
        for command in commands:
            self._execute(command)
        if session is not prev:
            self._emit()

    def _execute(self, command: Command) -> None:
        if isinstance(command, Announce):
            self._present("announce", command.text)
        elif isinstance(command, CancelSpeech):
            self._present("cancel_speech")
        elif isinstance(command, ShowOverlay):
            self._present("show_overlay", command.landmarks, command.hint)
        elif isinstance(command, ShowToast):
            self._present("toast", command.title, command.message, command.severity)
        elif isinstance(command, StartTicking):
            self.scheduler.schedule_tick(command.interval_s, self._on_tick)
        elif isinstance(command, StopTicking):
            self.scheduler.cancel_tick()
        elif isinstance(command, ScheduleDelay):
            event = command.event
            self.scheduler.schedule_delay(command.seconds, lambda: self.dispatch(event))
        elif isinstance(command, CancelDelays):
            self.scheduler.cancel_delays()
        elif isinstance(command, SampleFrame):
            self._sample(command.token)
        elif isinstance(command, RequestAnalysis):
            self._start_analysis(command)
        elif isinstance(command, CancelAnalysis):
            self._cancel_analysis()
        elif isinstance(command, PersistPhoto):
            self._persist(command)
        elif isinstance(command, ResetPhotoStore):
            self._reset_store()
        else:
            raise TypeError(f"Unknown command: {command!r}")

    # Command helpers

    def _present(self, method: str, *args: Any) -> None:
        try:
            getattr(self.presenter, method)(*args)
        except Exception as exc:
            logger.warning("event=presenter_failed method=%s error=%s", method, exc)

    def _on_tick(self) -> None:
        if self.pending_analysis is not None:
            logger.debug("event=tick_skipped reason=analysis_in_flight")
            return
        self.dispatch(Tick())

    def _sample(self, token: int) -> None:
        try:
            frame = self.sampler.capture(self.video_source)
        except SourceNotReady as exc:
            logger.debug("event=sample_skipped reason=%s", exc)
            return
        self.dispatch(FrameSampled(token, frame))

    def _start_analysis(self, command: RequestAnalysis) -> None:
        self._cancel_analysis()
        self._analysis_task = asyncio.get_running_loop().create_task(self._run_analysis(command))

    async def _run_analysis(self, command: RequestAnalysis) -> None:
        event: Event
        try:
            if self._client is None:
                raise RuntimeError("Analysis client is not initialised.")
            result = await self._client.analyze(command.image, command.label, command.pose)
            event = AnalysisCompleted(command.token, result)
        except AnalysisFailedError as exc:
            event = AnalysisErrored(command.token, exc.kind)
        except Exception:
            logger.exception("event=analysis_failed kind=unexpected pose=%s", command.pose.id)
            event = AnalysisErrored(command.token, "unexpected")
        finally:
            if self._analysis_task is asyncio.current_task():
                self._analysis_task = None
        self.dispatch(event)

    def _cancel_analysis(self) -> None:
        task = self._analysis_task
        self._analysis_task = None
        if task is not None and not task.done():
            task.cancel()
            logger.debug("event=analysis_cancelled")

    def _persist(self, command: PersistPhoto) -> None:
        record = command.record
        try:
            self.store.write(record.pose_id, record)
        except OSError as exc:
            logger.error("event=photo_write_failed pose=%s error=%s", record.pose_id, exc)
            self.dispatch(PhotoPersisted(command.token, f"Could not save {record.pose_id}: {exc}"))
            return
        self.dispatch(PhotoPersisted(command.token))

    def _reset_store(self) -> None:
        try:
            self.store.reset_all()
        except OSError as exc:
            logger.error("event=photo_reset_failed error=%s", exc)
            self.dispatch(FatalError(Phase.ERROR_SERVICE_SETUP, STORE_UNWRITABLE_MESSAGE, title="Photo storage unavailable"))

    def _stop_camera(self) -> None:
        try:
            self.video_source.stop()
        except Exception as exc:
            logger.warning("event=camera_stop_failed error=%s", exc)
