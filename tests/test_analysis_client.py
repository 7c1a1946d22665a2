from __future__ import annotations

import unittest

from bodyscan.analysis.client import (
    AnalysisFailedError,
    AnalysisServiceError,
    PoseAnalysisClient,
    TransientServiceError,
    encode_data_uri,
)
from bodyscan.analysis.models import PoseAnalysisRequest
from bodyscan.poses.catalog import default_catalog


POSE = default_catalog()[0]
OK_REPLY = {
    "feedback": "Great, hold it.",
    "isCorrectPose": True,
    "detectedLandmarks": [{"name": "nose", "x": 0.5, "y": 0.1}],
}


class _ScriptedTransport:
    def __init__(self, outcomes: list) -> None:
        self.outcomes = list(outcomes)
        self.payloads: list[PoseAnalysisRequest] = []

    async def request(self, payload: PoseAnalysisRequest) -> dict:
        self.payloads.append(payload)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class PoseAnalysisClientTests(unittest.IsolatedAsyncioTestCase):
    def _client(self, outcomes: list) -> tuple[PoseAnalysisClient, _ScriptedTransport, _RecordingSleep]:
        transport = _ScriptedTransport(outcomes)
        sleep = _RecordingSleep()
        return PoseAnalysisClient(transport, max_attempts=3, backoff_base_s=2.0, sleep=sleep), transport, sleep

    async def test_request_uses_wire_names_and_data_uri(self) -> None:
        client, transport, _ = self._client([OK_REPLY])
        await client.analyze(b"\xff\xd8jpeg", "user attempting T-Pose (Front View)", POSE)
        body = transport.payloads[0].model_dump(by_alias=True)
        self.assertEqual(set(body), {"image", "currentPoseLabel", "desiredPoseDescription"})
        self.assertTrue(body["image"].startswith("data:image/jpeg;base64,"))
        self.assertEqual(body["desiredPoseDescription"], POSE.description)
        self.assertEqual(body["currentPoseLabel"], "user attempting T-Pose (Front View)")

    async def test_transient_errors_are_retried_with_backoff(self) -> None:
        client, transport, sleep = self._client(
            [TransientServiceError("503"), TransientServiceError("503"), OK_REPLY]
        )
        result = await client.analyze(b"img", "label", POSE)
        self.assertTrue(result.is_correct_pose)
        self.assertEqual(len(transport.payloads), 3)
        self.assertEqual(sleep.delays, [1.0, 2.0])

    async def test_transient_exhaustion_reports_kind(self) -> None:
        client, transport, sleep = self._client([TransientServiceError("503")] * 3)
        with self.assertRaises(AnalysisFailedError) as ctx:
            await client.analyze(b"img", "label", POSE)
        self.assertTrue(ctx.exception.exhausted)
        self.assertEqual(ctx.exception.kind, "transient_exhausted")
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertEqual(len(transport.payloads), 3)
        # No wait after the final attempt.
        self.assertEqual(sleep.delays, [1.0, 2.0])

    async def test_non_transient_error_is_not_retried(self) -> None:
        client, transport, sleep = self._client([AnalysisServiceError("HTTP 400"), OK_REPLY])
        with self.assertRaises(AnalysisFailedError) as ctx:
            await client.analyze(b"img", "label", POSE)
        self.assertEqual(ctx.exception.kind, "non_transient")
        self.assertEqual(len(transport.payloads), 1)
        self.assertEqual(sleep.delays, [])

    async def test_malformed_reply_is_non_transient(self) -> None:
        client, transport, _ = self._client([{"feedback": "missing flag"}])
        with self.assertRaises(AnalysisFailedError) as ctx:
            await client.analyze(b"img", "label", POSE)
        self.assertFalse(ctx.exception.exhausted)
        self.assertEqual(len(transport.payloads), 1)

    async def test_missing_landmarks_default_to_empty(self) -> None:
        client, _, _ = self._client([{"feedback": "Turn left.", "isCorrectPose": False}])
        result = await client.analyze(b"img", "label", POSE)
        self.assertEqual(result.landmarks, ())
        self.assertEqual(result.feedback, "Turn left.")

    async def test_landmarks_are_clamped_and_non_finite_dropped(self) -> None:
        reply = {
            "feedback": "",
            "isCorrectPose": False,
            "detectedLandmarks": [
                {"name": "left_wrist", "x": -0.2, "y": 1.4},
                {"name": "right_wrist", "x": float("nan"), "y": 0.5},
            ],
        }
        client, _, _ = self._client([reply])
        result = await client.analyze(b"img", "label", POSE)
        self.assertEqual(len(result.landmarks), 1)
        self.assertEqual((result.landmarks[0].x, result.landmarks[0].y), (0.0, 1.0))
        self.assertTrue(result.feedback)

    async def test_empty_image_is_rejected(self) -> None:
        client, transport, _ = self._client([OK_REPLY])
        with self.assertRaises(ValueError):
            await client.analyze(b"", "label", POSE)
        self.assertEqual(transport.payloads, [])

    def test_encode_data_uri(self) -> None:
        self.assertEqual(encode_data_uri(b"abc"), "data:image/jpeg;base64,YWJj")

    def test_max_attempts_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            PoseAnalysisClient(_ScriptedTransport([]), max_attempts=0)


if __name__ == "__main__":
    unittest.main()
