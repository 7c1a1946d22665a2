from __future__ import annotations

from pathlib import Path
import tempfile
import unittest

from bodyscan.config import CaptureConfig, default_config_path, load_capture_config


class CaptureConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        cfg = CaptureConfig()
        self.assertEqual(cfg.timings.sample_interval_s, 3.2)
        self.assertEqual(cfg.retry.max_attempts, 3)
        self.assertEqual(cfg.retry.backoff_base_s, 2.0)
        self.assertFalse(cfg.use_estimator)

    def test_shipped_yaml_matches_defaults(self) -> None:
        cfg = load_capture_config(default_config_path(), environ={})
        self.assertEqual(cfg, CaptureConfig())

    def test_missing_file_falls_back_to_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            cfg = load_capture_config(Path(tmpdir) / "nope.yaml", environ={})
            self.assertEqual(cfg, CaptureConfig())

    def test_yaml_values_and_env_overrides(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "capture.yaml"
            path.write_text(
                "timings:\n  sample_interval_s: 5\n  confirm_dwell_s: 0.5\nservice:\n  model: from-yaml\n",
                encoding="utf-8",
            )
            cfg = load_capture_config(
                path,
                environ={
                    "BODYSCAN_MODEL": "from-env",
                    "BODYSCAN_CAMERA": "/dev/video2",
                    "BODYSCAN_USE_ESTIMATOR": "yes",
                    "BODYSCAN_COACH_VOICE": "0",
                },
            )
            self.assertEqual(cfg.timings.sample_interval_s, 5.0)
            self.assertEqual(cfg.timings.confirm_dwell_s, 0.5)
            self.assertEqual(cfg.service.model, "from-env")
            self.assertEqual(cfg.camera.device, "/dev/video2")
            self.assertTrue(cfg.use_estimator)
            self.assertFalse(cfg.coach_voice)

    def test_numeric_camera_override_is_an_index(self) -> None:
        cfg = load_capture_config(Path("/nonexistent/capture.yaml"), environ={"BODYSCAN_CAMERA": "2"})
        self.assertEqual(cfg.camera.device, 2)

    def test_invalid_value_falls_back_without_discarding_the_rest(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "capture.yaml"
            path.write_text(
                "retry:\n  max_attempts: 0\n  backoff_base_s: 1.5\nservice:\n  model: from-yaml\ntts_backend: shouting\n",
                encoding="utf-8",
            )
            with self.assertLogs("bodyscan.config", level="WARNING") as logs:
                cfg = load_capture_config(path, environ={})
            self.assertEqual(cfg.retry.max_attempts, 3)
            self.assertEqual(cfg.retry.backoff_base_s, 1.5)
            self.assertEqual(cfg.service.model, "from-yaml")
            self.assertEqual(cfg.tts_backend, "auto")
            rejected = [line for line in logs.output if "event=config_key_rejected" in line]
            self.assertEqual(len(rejected), 2)
            self.assertTrue(any("key=retry.max_attempts" in line for line in rejected))

    def test_bad_env_override_keeps_yaml_values(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "capture.yaml"
            path.write_text("timings:\n  sample_interval_s: 5\nservice:\n  model: from-yaml\n", encoding="utf-8")
            with self.assertLogs("bodyscan.config", level="WARNING") as logs:
                cfg = load_capture_config(
                    path,
                    environ={"BODYSCAN_SAMPLE_INTERVAL": "abc", "BODYSCAN_CAMERA": "3"},
                )
            self.assertEqual(cfg.timings.sample_interval_s, 5.0)
            self.assertEqual(cfg.service.model, "from-yaml")
            self.assertEqual(cfg.camera.device, 3)
            self.assertTrue(any("var=BODYSCAN_SAMPLE_INTERVAL" in line for line in logs.output))

    def test_non_mapping_yaml_is_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "capture.yaml"
            path.write_text("- just\n- a list\n", encoding="utf-8")
            self.assertEqual(load_capture_config(path, environ={}), CaptureConfig())


if __name__ == "__main__":
    unittest.main()
