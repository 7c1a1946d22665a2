from __future__ import annotations

import asyncio
from dataclasses import replace
import unittest
from typing import Optional

from bodyscan.analysis.client import AnalysisFailedError, TransientServiceError
from bodyscan.analysis.models import AnalysisResult, LandmarkPoint
from bodyscan.analysis.openai_transport import ServiceSetupError
from bodyscan.capture.controller import GuidedCaptureController
from bodyscan.capture.state import CONFIRMATION_TEXT, Phase
from bodyscan.config import CaptureTimings
from bodyscan.feedback.presenter import Correctness
from bodyscan.poses.catalog import DEFAULT_POSES, PoseCatalog
from bodyscan.profile import UserProfile
from bodyscan.storage.photo_store import MemoryPhotoSetStore, PhotoRecord
from bodyscan.vision.sampler import CapturedFrame, SourceNotReady


FRONT = replace(DEFAULT_POSES[0], order=0)
BACK = replace(DEFAULT_POSES[3], order=1)

CORRECT = AnalysisResult(
    feedback="Looks great.",
    is_correct_pose=True,
    landmarks=(LandmarkPoint("left_shoulder", 0.4, 0.3), LandmarkPoint("right_shoulder", 0.6, 0.3)),
)
ADJUST = AnalysisResult(feedback="Raise your arms to shoulder height.", is_correct_pose=False)


class _ManualScheduler:
    def __init__(self) -> None:
        self.tick = None
        self.interval: Optional[float] = None
        self.delays: list = []

    @property
    def tick_active(self) -> bool:
        return self.tick is not None

    def schedule_tick(self, interval_s, callback) -> None:
        self.interval = interval_s
        self.tick = callback

    def cancel_tick(self) -> None:
        self.tick = None

    def schedule_delay(self, seconds, callback) -> None:
        self.delays.append((seconds, callback))

    def cancel_delays(self) -> None:
        self.delays.clear()

    def cancel_all(self) -> None:
        self.cancel_tick()
        self.cancel_delays()

    def fire_tick(self) -> None:
        assert self.tick is not None, "no tick armed"
        self.tick()

    def run_delays(self) -> list[float]:
        pending, self.delays = self.delays, []
        for _seconds, callback in pending:
            callback()
        return [s for s, _ in pending]


class _FakeSource:
    def __init__(self, start_error: Optional[Exception] = None) -> None:
        self.start_error = start_error
        self.started = 0
        self.stopped = 0

    def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started += 1

    def stop(self) -> None:
        self.stopped += 1

    def frame_size(self):
        return (640, 480)

    def current_frame(self):
        return None


class _FakeSampler:
    def __init__(self) -> None:
        self.ready = True
        self.count = 0

    def capture(self, _source) -> CapturedFrame:
        if not self.ready:
            raise SourceNotReady("no frame yet")
        self.count += 1
        return CapturedFrame(jpeg=f"frame-{self.count}".encode(), width=640, height=480, timestamp=float(self.count))


class _ScriptedClient:
    def __init__(self, outcomes: list) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[bytes, str, str]] = []
        self.gate: Optional[asyncio.Event] = None

    async def analyze(self, image, current_pose_label, target_pose):
        self.calls.append((image, current_pose_label, target_pose.id))
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class _RecordingPresenter:
    def __init__(self) -> None:
        self.announcements: list[str] = []
        self.overlays: list = []
        self.toasts: list = []
        self.speech_cancels = 0

    def announce(self, text: str) -> None:
        self.announcements.append(text)

    def show_overlay(self, landmarks, hint) -> None:
        self.overlays.append((tuple(landmarks), hint))

    def toast(self, title, message, severity=None) -> None:
        self.toasts.append((title, message, severity))

    def cancel_speech(self) -> None:
        self.speech_cancels += 1


class _BrokenPresenter(_RecordingPresenter):
    def announce(self, text: str) -> None:
        raise RuntimeError("speaker unplugged")


class _ReadOnlyStore(MemoryPhotoSetStore):
    def reset_all(self) -> None:
        raise PermissionError("read-only file system")


class _FullDiskStore(MemoryPhotoSetStore):
    def __init__(self) -> None:
        super().__init__()
        self.attempts = 0

    def write(self, pose_id: str, record: PhotoRecord) -> None:
        if record.is_empty:
            super().write(pose_id, record)
            return
        self.attempts += 1
        raise OSError(28, "No space left on device")


class _Profiles:
    def __init__(self, profile: Optional[UserProfile]) -> None:
        self.profile = profile

    def get_profile(self) -> Optional[UserProfile]:
        return self.profile


def _complete_profile() -> UserProfile:
    return UserProfile(name="alex", height_cm=180, weight_kg=80, age=30)


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


class GuidedCaptureControllerTests(unittest.IsolatedAsyncioTestCase):
    def _make(
        self,
        outcomes: Optional[list] = None,
        profile: Optional[UserProfile] = None,
        source: Optional[_FakeSource] = None,
        client_factory=None,
        presenter: Optional[_RecordingPresenter] = None,
        store: Optional[MemoryPhotoSetStore] = None,
    ) -> GuidedCaptureController:
        self.scheduler = _ManualScheduler()
        self.sampler = _FakeSampler()
        self.client = _ScriptedClient(outcomes or [])
        self.presenter = presenter or _RecordingPresenter()
        self.store = store or MemoryPhotoSetStore()
        self.source = source or _FakeSource()
        return GuidedCaptureController(
            catalog=PoseCatalog([FRONT, BACK]),
            sampler=self.sampler,
            client_factory=client_factory or (lambda: self.client),
            presenter=self.presenter,
            store=self.store,
            video_source=self.source,
            profile_provider=_Profiles(profile if profile is not None else _complete_profile()),
            scheduler=self.scheduler,
            timings=CaptureTimings(),
        )

    async def _to_guiding(self, controller: GuidedCaptureController) -> None:
        await controller.start()
        controller.begin()
        self.scheduler.run_delays()
        self.assertEqual(controller.phase, Phase.GUIDING)

    async def test_two_pose_session_reaches_complete(self) -> None:
        controller = self._make([ADJUST, CORRECT, CORRECT])
        self.store.write("front_t_pose", PhotoRecord("front_t_pose", b"stale", True, "old"))

        self.assertEqual((await controller.start()).phase, Phase.READY)
        self.assertEqual(controller.begin().phase, Phase.INITIALIZING_POSE)
        self.assertTrue(self.store.read("front_t_pose").is_empty)
        self.assertIn(FRONT.short_instruction, self.presenter.announcements[-1])

        self.assertEqual(self.scheduler.run_delays(), [3.0])
        self.assertEqual(controller.phase, Phase.GUIDING)
        self.assertEqual(self.scheduler.interval, 3.2)

        self.scheduler.fire_tick()
        self.assertEqual(controller.phase, Phase.ANALYZING)
        await _settle()
        self.assertEqual(controller.phase, Phase.GUIDING)
        self.assertEqual(controller.state.correctness, Correctness.ADJUSTMENT_NEEDED)
        self.assertEqual(self.presenter.announcements[-1], ADJUST.feedback)

        self.scheduler.fire_tick()
        await _settle()
        self.assertEqual(controller.phase, Phase.CAPTURING)
        self.assertEqual(controller.state.correctness, Correctness.CORRECT)
        self.assertFalse(self.scheduler.tick_active)
        self.assertEqual(self.presenter.overlays[-1], (CORRECT.landmarks, Correctness.CORRECT))

        self.assertEqual(self.scheduler.run_delays(), [0.6])
        self.assertEqual(controller.phase, Phase.CONFIRMED)
        front = self.store.read("front_t_pose")
        self.assertEqual(front.image_data, b"frame-2")
        self.assertTrue(front.is_correct)
        self.assertEqual(front.feedback, CONFIRMATION_TEXT)

        self.assertEqual(self.scheduler.run_delays(), [1.5])
        self.assertEqual(controller.phase, Phase.INITIALIZING_POSE)
        self.assertEqual(controller.state.current_pose_index, 1)

        self.scheduler.run_delays()
        self.scheduler.fire_tick()
        await _settle()
        self.scheduler.run_delays()
        self.scheduler.run_delays()

        self.assertEqual(controller.phase, Phase.COMPLETE)
        self.assertTrue(controller.state.all_confirmed)
        self.assertFalse(self.scheduler.tick_active)
        self.assertEqual(self.scheduler.delays, [])
        labels = [label for _img, label, _pid in self.client.calls]
        self.assertEqual(labels[0], f"user attempting {FRONT.name}")
        self.assertEqual(labels[-1], f"user attempting {BACK.name}")
        self.assertTrue(self.store.read("back_t_pose").is_correct)
        await controller.teardown()

    async def test_tick_while_analysis_pending_is_noop(self) -> None:
        controller = self._make([ADJUST])
        self.client.gate = asyncio.Event()
        await self._to_guiding(controller)

        self.scheduler.fire_tick()
        await _settle()
        self.assertIsNotNone(controller.pending_analysis)
        self.scheduler.fire_tick()
        self.scheduler.fire_tick()
        await _settle()
        self.assertEqual(len(self.client.calls), 1)
        self.assertEqual(self.sampler.count, 1)

        self.client.gate.set()
        await _settle()
        self.assertEqual(controller.phase, Phase.GUIDING)
        self.assertIsNone(controller.pending_analysis)
        await controller.teardown()

    async def test_source_not_ready_skips_tick_silently(self) -> None:
        controller = self._make([CORRECT])
        await self._to_guiding(controller)
        self.sampler.ready = False
        announced = len(self.presenter.announcements)

        self.scheduler.fire_tick()
        await _settle()
        self.assertEqual(controller.phase, Phase.GUIDING)
        self.assertEqual(self.client.calls, [])
        self.assertEqual(len(self.presenter.announcements), announced)
        self.assertEqual(self.presenter.toasts[-1][0], "Ready")
        self.assertTrue(self.scheduler.tick_active)
        await controller.teardown()

    async def test_analysis_failure_returns_to_guiding_with_neutral_hint(self) -> None:
        failure = AnalysisFailedError("down", cause=TransientServiceError("503"), attempts=3, exhausted=True)
        controller = self._make([failure])
        await self._to_guiding(controller)

        self.scheduler.fire_tick()
        await _settle()
        session = controller.state
        self.assertEqual(session.phase, Phase.GUIDING)
        self.assertEqual(session.correctness, Correctness.NEUTRAL)
        self.assertTrue(session.feedback)
        self.assertEqual(self.presenter.overlays[-1], ((), Correctness.NEUTRAL))
        self.assertEqual(self.presenter.toasts[-1][0], "Analysis unavailable")
        self.assertTrue(self.store.read("front_t_pose").is_empty)
        await controller.teardown()

    async def test_retry_after_confirm_resets_record_and_keeps_index(self) -> None:
        controller = self._make([CORRECT])
        await self._to_guiding(controller)
        self.scheduler.fire_tick()
        await _settle()
        self.scheduler.run_delays()
        self.assertEqual(controller.phase, Phase.CONFIRMED)
        self.assertTrue(self.store.read("front_t_pose").is_correct)

        session = controller.retry_current_pose()
        self.assertEqual(session.phase, Phase.INITIALIZING_POSE)
        self.assertEqual(session.current_pose_index, 0)
        self.assertTrue(session.photos[0].is_empty)
        self.assertTrue(self.store.read("front_t_pose").is_empty)
        self.assertEqual(self.scheduler.run_delays(), [3.0])

        # Second retry in a row gives the same state.
        token = controller.state.pose_token
        controller.retry_current_pose()
        self.assertEqual(controller.phase, Phase.INITIALIZING_POSE)
        self.assertEqual(controller.state.current_pose_index, 0)
        self.assertGreater(controller.state.pose_token, token)
        await controller.teardown()

    async def test_retry_cancels_in_flight_analysis_and_ignores_late_result(self) -> None:
        controller = self._make([CORRECT])
        self.client.gate = asyncio.Event()
        await self._to_guiding(controller)
        self.scheduler.fire_tick()
        await _settle()
        task = controller.pending_analysis
        self.assertIsNotNone(task)

        controller.retry_current_pose()
        await _settle()
        self.assertTrue(task.cancelled())
        self.assertEqual(controller.phase, Phase.INITIALIZING_POSE)
        self.assertFalse(self.scheduler.tick_active)

    async def test_retry_before_begin_starts_the_first_pose(self) -> None:
        controller = self._make()
        await controller.start()
        self.store.write("front_t_pose", PhotoRecord("front_t_pose", b"stale", True, "old"))

        session = controller.retry_current_pose()
        self.assertEqual(session.phase, Phase.INITIALIZING_POSE)
        self.assertEqual(session.current_pose_index, 0)
        self.assertTrue(self.store.read("front_t_pose").is_empty)
        self.assertEqual(self.scheduler.run_delays(), [3.0])
        self.assertEqual(controller.phase, Phase.GUIDING)
        await controller.teardown()

    async def test_retry_in_blocked_phase_is_logged_and_ignored(self) -> None:
        controller = self._make(profile=UserProfile(name="alex"))
        await controller.start()
        before = controller.state
        with self.assertLogs("bodyscan.capture.controller", level="INFO") as logs:
            session = controller.retry_current_pose()
        self.assertIs(session, before)
        self.assertTrue(any("event=retry_ignored phase=PREREQUISITES_UNMET" in line for line in logs.output))
        await controller.teardown()

    async def test_unwritable_store_on_begin_blocks_instead_of_raising(self) -> None:
        controller = self._make(store=_ReadOnlyStore())
        await controller.start()

        session = controller.begin()
        self.assertEqual(session.phase, Phase.ERROR_SERVICE_SETUP)
        self.assertIn("press Retry", session.blocking_reason)
        self.assertEqual(self.scheduler.delays, [])
        self.assertFalse(self.scheduler.tick_active)
        self.assertEqual(self.presenter.toasts[-1][0], "Photo storage unavailable")
        self.assertEqual(controller.begin().phase, Phase.ERROR_SERVICE_SETUP)
        await controller.teardown()

    async def test_failed_photo_write_leaves_pose_unconfirmed(self) -> None:
        store = _FullDiskStore()
        controller = self._make([CORRECT, CORRECT], store=store)
        await self._to_guiding(controller)

        self.scheduler.fire_tick()
        await _settle()
        self.assertEqual(controller.phase, Phase.CAPTURING)
        self.scheduler.run_delays()
        self.assertEqual(store.attempts, 1)
        self.assertEqual(controller.phase, Phase.GUIDING)
        self.assertEqual(controller.state.current_pose_index, 0)
        self.assertEqual(controller.state.confirmed_count, 0)
        self.assertTrue(controller.state.photos[0].is_empty)
        self.assertEqual(self.presenter.toasts[-1][0], "Photo not saved")
        self.assertEqual(self.scheduler.delays, [])
        self.assertTrue(self.scheduler.tick_active)

        # The next correct frame tries the write again and still cannot confirm.
        self.scheduler.fire_tick()
        await _settle()
        self.scheduler.run_delays()
        self.assertEqual(store.attempts, 2)
        self.assertEqual(controller.phase, Phase.GUIDING)
        self.assertNotEqual(controller.phase, Phase.COMPLETE)
        await controller.teardown()

    async def test_pose_index_never_decreases(self) -> None:
        controller = self._make([CORRECT, CORRECT])
        seen: list[int] = []
        controller.subscribe(lambda s: seen.append(s.current_pose_index))
        await self._to_guiding(controller)
        self.scheduler.fire_tick()
        await _settle()
        self.scheduler.run_delays()
        self.scheduler.run_delays()
        controller.retry_current_pose()
        self.scheduler.run_delays()
        self.scheduler.fire_tick()
        await _settle()
        self.scheduler.run_delays()
        self.scheduler.run_delays()
        self.assertEqual(controller.phase, Phase.COMPLETE)
        self.assertEqual(seen, sorted(seen))
        await controller.teardown()

    async def test_pause_and_resume(self) -> None:
        controller = self._make([CORRECT])
        await self._to_guiding(controller)
        self.assertEqual(controller.pause().phase, Phase.PAUSED)
        self.assertFalse(self.scheduler.tick_active)
        self.assertGreater(self.presenter.speech_cancels, 0)

        self.assertEqual(controller.resume().phase, Phase.INITIALIZING_POSE)
        self.scheduler.run_delays()
        self.assertEqual(controller.phase, Phase.GUIDING)
        self.assertTrue(self.scheduler.tick_active)
        await controller.teardown()

    async def test_incomplete_profile_blocks_start(self) -> None:
        controller = self._make(profile=UserProfile(name="alex", height_cm=180, weight_kg=0, age=30))
        session = await controller.start()
        self.assertEqual(session.phase, Phase.PREREQUISITES_UNMET)
        self.assertIn("weight", session.blocking_reason)
        self.assertEqual(self.source.started, 0)

        self.assertEqual(controller.begin().phase, Phase.PREREQUISITES_UNMET)

        controller.profile_provider = _Profiles(_complete_profile())
        self.assertEqual((await controller.retry_prerequisites()).phase, Phase.READY)
        await controller.teardown()

    async def test_missing_service_configuration(self) -> None:
        def factory():
            raise ServiceSetupError("Set OPENAI_API_KEY and press Retry.")

        controller = self._make(client_factory=factory)
        session = await controller.start()
        self.assertEqual(session.phase, Phase.ERROR_SERVICE_SETUP)
        self.assertIn("OPENAI_API_KEY", session.blocking_reason)
        self.assertEqual(self.source.started, 0)

    async def test_camera_failure_maps_to_camera_error(self) -> None:
        controller = self._make(source=_FakeSource(start_error=RuntimeError("permission denied")))
        session = await controller.start()
        self.assertEqual(session.phase, Phase.ERROR_CAMERA)
        self.assertIn("Camera access denied", session.blocking_reason)

    async def test_camera_lost_while_guiding(self) -> None:
        controller = self._make([CORRECT])
        await self._to_guiding(controller)
        session = controller.report_camera_lost()
        self.assertEqual(session.phase, Phase.ERROR_CAMERA)
        self.assertFalse(self.scheduler.tick_active)
        self.assertEqual(self.source.stopped, 1)
        self.assertEqual(self.client.calls, [])
        self.assertEqual(controller.retry_current_pose().phase, Phase.ERROR_CAMERA)

    async def test_teardown_releases_everything(self) -> None:
        controller = self._make([CORRECT])
        self.client.gate = asyncio.Event()
        await self._to_guiding(controller)
        self.scheduler.fire_tick()
        await _settle()
        task = controller.pending_analysis

        await controller.teardown()
        self.assertTrue(task.cancelled())
        self.assertFalse(self.scheduler.tick_active)
        self.assertEqual(self.scheduler.delays, [])
        self.assertGreaterEqual(self.source.stopped, 1)
        self.assertGreater(self.presenter.speech_cancels, 0)
        # Late calls after teardown change nothing.
        self.assertIs(controller.begin(), controller.state)
        self.assertTrue(self.store.read("front_t_pose").is_empty)

    async def test_async_context_manager_starts_and_tears_down(self) -> None:
        controller = self._make()
        async with controller as ctl:
            self.assertEqual(ctl.phase, Phase.READY)
            self.assertEqual(self.source.started, 1)
        self.assertEqual(self.source.stopped, 1)

    async def test_presenter_failures_do_not_stop_session(self) -> None:
        controller = self._make([CORRECT], presenter=_BrokenPresenter())
        with self.assertLogs("bodyscan.capture.controller", level="WARNING") as logs:
            await self._to_guiding(controller)
        self.assertTrue(any("presenter_failed" in line for line in logs.output))
        self.scheduler.fire_tick()
        await _settle()
        self.assertEqual(controller.phase, Phase.CAPTURING)
        await controller.teardown()

    async def test_subscribers_receive_snapshots(self) -> None:
        controller = self._make()
        phases: list[Phase] = []
        token = controller.subscribe(lambda s: phases.append(s.phase))
        await controller.start()
        controller.begin()
        controller.unsubscribe(token)
        self.scheduler.run_delays()
        self.assertEqual(phases, [Phase.IDLE, Phase.READY, Phase.INITIALIZING_POSE])
        await controller.teardown()


if __name__ == "__main__":
    unittest.main()
