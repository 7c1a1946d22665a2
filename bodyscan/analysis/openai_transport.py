from __future__ import annotations

import json
import logging
import os
from typing import Optional

from openai import APIConnectionError, APIStatusError, AsyncOpenAI

from ..config import AnalysisServiceSettings
from .client import AnalysisServiceError, TransientServiceError
from .models import PoseAnalysisRequest


logger = logging.getLogger(__name__)

SERVICE_UNAVAILABLE = 503

_SYSTEM_PROMPT = (
    "You are an assistant that helps users capture accurate photos for body analysis. "
    "The user takes photos of themselves and you check whether their pose matches the desired pose. "
    "Reply with a JSON object with the keys: "
    '"feedback" (string, concise and specific instructions on how to adjust the pose, '
    "or a short confirmation when it is already correct), "
    '"isCorrectPose" (boolean, true only when the pose matches the desired pose), and '
    '"detectedLandmarks" (array of {"name", "x", "y"} body keypoints, x and y normalised to 0..1 '
    "from the top-left corner of the image; use an empty array if unsure)."
)


class ServiceSetupError(RuntimeError):
    pass


class OpenAIPoseTransport:
    def __init__(self, settings: AnalysisServiceSettings, client: Optional[AsyncOpenAI] = None) -> None:
        self.settings = settings
        if client is None:
            api_key = os.environ.get(settings.api_key_env, "").strip()
            if not api_key:
                raise ServiceSetupError(
                    f"Pose analysis service is not configured. Set {settings.api_key_env} and press Retry."
                )
            # Retries are owned by PoseAnalysisClient.
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=settings.base_url,
                timeout=settings.timeout_s,
                max_retries=0,
            )
        self._client = client

    def _messages(self, payload: PoseAnalysisRequest) -> list[dict]:
        text = (
            f"Current pose: {payload.current_pose_label}\n"
            f"Desired pose: {payload.desired_pose_description}\n"
            "Based on the photo, say how the user should adjust to match the desired pose "
            "and whether the pose is correct."
        )
        return [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": text},
                    {"type": "image_url", "image_url": {"url": payload.image}},
                ],
            },
        ]

    async def request(self, payload: PoseAnalysisRequest) -> dict:
        try:
            completion = await self._client.chat.completions.create(
                model=self.settings.model,
                messages=self._messages(payload),
                response_format={"type": "json_object"},
                temperature=0,
            )
        except APIStatusError as exc:
            if exc.status_code == SERVICE_UNAVAILABLE:
                raise TransientServiceError(f"Service temporarily unavailable: {exc}") from exc
            raise AnalysisServiceError(f"Service rejected request (HTTP {exc.status_code}): {exc}") from exc
        except APIConnectionError as exc:
            raise AnalysisServiceError(f"Service unreachable: {exc}") from exc

        if not completion.choices:
            raise AnalysisServiceError("Service returned no choices.")
        content = completion.choices[0].message.content or ""
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise AnalysisServiceError(f"Service reply is not JSON: {content[:120]!r}") from exc
        if not isinstance(data, dict):
            raise AnalysisServiceError("Service reply is not a JSON object.")
        logger.debug("event=analysis_reply model=%s keys=%s", self.settings.model, sorted(data))
        return data
