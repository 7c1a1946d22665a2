from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol

from pydantic import ValidationError

from ..poses.catalog import PoseSpec
from .models import AnalysisResult, PoseAnalysisRequest, PoseAnalysisResponse, to_analysis_result


logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[Any]]


class AnalysisError(Exception):
    pass


class TransientServiceError(AnalysisError):
    """The service reported it is temporarily unavailable (HTTP 503)."""


class AnalysisServiceError(AnalysisError):
    """Any other failure: rejected request, unreachable network, malformed reply."""


class AnalysisFailedError(AnalysisError):
    def __init__(self, message: str, cause: BaseException, attempts: int, exhausted: bool) -> None:
        super().__init__(message)
        self.cause = cause
        self.attempts = attempts
        # True when transient retries ran out, False for an immediate non-transient failure.
        self.exhausted = exhausted

    @property
    def kind(self) -> str:
        return "transient_exhausted" if self.exhausted else "non_transient"


class AnalysisTransport(Protocol):
    async def request(self, payload: PoseAnalysisRequest) -> dict: ...


def encode_data_uri(image: bytes, mime: str = "image/jpeg") -> str:
    return f"data:{mime};base64,{base64.b64encode(image).decode('ascii')}"


class PoseAnalysisClient:
    """Scores one still image against one target pose, owning the retry policy.

    Holds no session state; the caller is responsible for keeping a single call
    in flight.
    """

    def __init__(
        self,
        transport: AnalysisTransport,
        max_attempts: int = 3,
        backoff_base_s: float = 2.0,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.transport = transport
        self.max_attempts = int(max_attempts)
        self.backoff_base_s = float(backoff_base_s)
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        # attempt is the 1-based number of the call that just failed: 1s, 2s, 4s...
        return self.backoff_base_s ** (attempt - 1)

    async def analyze(self, image: bytes, current_pose_label: str, target_pose: PoseSpec) -> AnalysisResult:
        if not image:
            raise ValueError("image must be a non-empty encoded frame")
        payload = PoseAnalysisRequest(
            image=encode_data_uri(image),
            current_pose_label=current_pose_label,
            desired_pose_description=target_pose.description,
        )

        last_exc: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                raw = await self.transport.request(payload)
                response = PoseAnalysisResponse.model_validate(raw)
            except TransientServiceError as exc:
                last_exc = exc
                logger.warning(
                    "event=analysis_transient pose=%s attempt=%d/%d error=%s",
                    target_pose.id,
                    attempt,
                    self.max_attempts,
                    exc,
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.backoff_delay(attempt))
                continue
            except (AnalysisServiceError, ValidationError) as exc:
                logger.error("event=analysis_failed kind=non_transient pose=%s attempt=%d error=%s", target_pose.id, attempt, exc)
                raise AnalysisFailedError(
                    f"Pose analysis rejected for {target_pose.id}: {exc}",
                    cause=exc,
                    attempts=attempt,
                    exhausted=False,
                ) from exc

            result = to_analysis_result(response)
            logger.info(
                "event=analysis_ok pose=%s attempt=%d correct=%s landmarks=%d",
                target_pose.id,
                attempt,
                result.is_correct_pose,
                len(result.landmarks),
            )
            return result

        assert last_exc is not None
        logger.error(
            "event=analysis_failed kind=transient_exhausted pose=%s attempts=%d error=%s",
            target_pose.id,
            self.max_attempts,
            last_exc,
        )
        raise AnalysisFailedError(
            f"Pose analysis unavailable after {self.max_attempts} attempts: {last_exc}",
            cause=last_exc,
            attempts=self.max_attempts,
            exhausted=True,
        ) from last_exc
