from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError


logger = logging.getLogger(__name__)

TTSBackend = Literal["piper_bin", "espeak", "auto", "none"]


class CaptureTimings(BaseModel):
    sample_interval_s: float = Field(default=3.2, gt=0)
    pose_prep_delay_s: float = Field(default=3.0, ge=0)
    # White flash while the confirmed frame is stored.
    capture_dwell_s: float = Field(default=0.6, ge=0)
    confirm_dwell_s: float = Field(default=1.5, ge=0)


class RetrySettings(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_s: float = Field(default=2.0, gt=0)


class AnalysisServiceSettings(BaseModel):
    model: str = "gpt-4o-mini"
    base_url: Optional[str] = None
    api_key_env: str = "OPENAI_API_KEY"
    timeout_s: float = Field(default=30.0, gt=0)
    jpeg_quality: int = Field(default=85, ge=10, le=100)


class CameraSettings(BaseModel):
    device: Union[int, str] = 0
    width: int = 1280
    height: int = 720
    fps: int = 30
    mirror: bool = True


class CaptureConfig(BaseModel):
    timings: CaptureTimings = Field(default_factory=CaptureTimings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    service: AnalysisServiceSettings = Field(default_factory=AnalysisServiceSettings)
    camera: CameraSettings = Field(default_factory=CameraSettings)
    coach_voice: bool = True
    tts_backend: TTSBackend = "auto"
    use_estimator: bool = False


def default_config_path() -> Path:
    return Path(__file__).resolve().parent.parent / "config" / "capture.yaml"


# env var -> (section, key); section None means top level.
_ENV_OVERRIDES: Dict[str, tuple[Optional[str], str]] = {
    "BODYSCAN_MODEL": ("service", "model"),
    "BODYSCAN_BASE_URL": ("service", "base_url"),
    "BODYSCAN_SAMPLE_INTERVAL": ("timings", "sample_interval_s"),
    "BODYSCAN_CAMERA": ("camera", "device"),
    "BODYSCAN_TTS_BACKEND": (None, "tts_backend"),
    "BODYSCAN_COACH_VOICE": (None, "coach_voice"),
    "BODYSCAN_USE_ESTIMATOR": (None, "use_estimator"),
}

_TRUTHY = {"1", "true", "yes", "on"}


def _coerce_env(key: str, raw: str) -> Any:
    text = raw.strip()
    if key in ("coach_voice", "use_estimator"):
        return text.lower() in _TRUTHY
    if key == "device" and text.isdigit():
        return int(text)
    return text


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("event=config_unreadable path=%s error=%s", path, exc)
        return {}
    if not isinstance(data, dict):
        return {}
    return data


def _apply(
    current: Dict[str, Any], section: Optional[str], key: str, value: Any
) -> Optional[Dict[str, Any]]:
    candidate = dict(current)
    if section is None:
        candidate[key] = value
    else:
        candidate[section] = {**candidate[section], key: value}
    try:
        return CaptureConfig.model_validate(candidate).model_dump()
    except ValidationError as exc:
        logger.debug("event=config_value_invalid key=%s error=%s", key, exc)
        return None


def load_capture_config(
    path: Optional[Path] = None,
    environ: Optional[Dict[str, str]] = None,
) -> CaptureConfig:
    """Load YAML then env overrides, one value at a time.

    A value that fails validation is logged and skipped; everything else
    that was valid is kept.
    """
    cfg_path = path or default_config_path()
    current = CaptureConfig().model_dump()

    for name, value in _read_yaml(cfg_path).items():
        nested = isinstance(current.get(name), dict)
        if nested and isinstance(value, dict):
            items = [(name, k, v) for k, v in value.items()]
        else:
            items = [(None, name, value)]
        for section, key, item in items:
            applied = _apply(current, section, key, item)
            if applied is None:
                logger.warning(
                    "event=config_key_rejected path=%s key=%s value=%r",
                    cfg_path,
                    key if section is None else f"{section}.{key}",
                    item,
                )
                continue
            current = applied

    env = os.environ if environ is None else environ
    for var, (section, key) in _ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or not str(raw).strip():
            continue
        applied = _apply(current, section, key, _coerce_env(key, str(raw)))
        if applied is None:
            logger.warning("event=config_override_rejected var=%s value=%r", var, raw)
            continue
        current = applied

    return CaptureConfig.model_validate(current)
