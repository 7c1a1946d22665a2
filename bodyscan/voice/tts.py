from __future__ import annotations

import logging
import os
import queue
import shutil
import subprocess
import tempfile
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional


logger = logging.getLogger(__name__)


class SpeechAnnouncer:
    """Speaks coaching lines on a worker thread so callers never block.

    Backends: a vendored piper binary + voice model, or espeak/espeak-ng from PATH.
    """

    def __init__(self, backend: str = "auto", debounce_seconds: float = 4.0, root: Optional[Path] = None) -> None:
        self.backend = backend
        self.debounce_seconds = debounce_seconds
        self.root = root or Path(__file__).resolve().parents[2]
        self._backend: Optional[str] = None
        self._piper_bin: Optional[Path] = None
        self._model_onnx: Optional[Path] = None
        self._espeak_bin: Optional[str] = None
        self._player_cmd: Optional[List[str]] = None
        self._wav_path = Path(tempfile.gettempdir()) / "bodyscan_tts.wav"
        self._thread: Optional[threading.Thread] = None
        self._running = threading.Event()
        self._q: "queue.Queue[Optional[str]]" = queue.Queue()
        self._recent: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen] = None

    @property
    def active_backend(self) -> Optional[str]:
        return self._backend

    def start(self) -> None:
        if self._thread is not None:
            return
        self._backend = self._resolve_backend(self.backend)
        if self._backend is None:
            raise RuntimeError(f"No speech backend available for '{self.backend}'.")
        self._running.set()
        self._thread = threading.Thread(target=self._run, name="bodyscan-tts", daemon=True)
        self._thread.start()
        logger.info("event=tts_started backend=%s", self._backend)

    def stop(self) -> None:
        self._running.clear()
        self.cancel_pending()
        if self._thread is not None:
            self._q.put_nowait(None)
            self._thread.join(timeout=1.0)
            self._thread = None

    def say(self, text: str) -> None:
        line = self._normalize_text(text)
        if not line or self._thread is None:
            return
        now = time.time()
        with self._lock:
            last = self._recent.get(line, 0.0)
            if now - last < self.debounce_seconds:
                return
            self._recent[line] = now
            if len(self._recent) > 64:
                cutoff = now - (self.debounce_seconds * 2.0)
                self._recent = {k: v for k, v in self._recent.items() if v >= cutoff}
        self._q.put_nowait(line)

    def cancel_pending(self) -> None:
        while True:
            try:
                self._q.get_nowait()
            except queue.Empty:
                break
        with self._lock:
            proc = self._proc
        if proc is not None and proc.poll() is None:
            proc.terminate()

    @staticmethod
    def _normalize_text(text: str) -> str:
        if not text:
            return ""
        return " ".join(text.strip().split())

    def _run(self) -> None:
        while self._running.is_set():
            try:
                item = self._q.get(timeout=0.2)
            except queue.Empty:
                continue
            if not item:
                continue
            self._speak(item)

    def _speak(self, text: str) -> None:
        try:
            if self._backend == "piper_bin":
                if not self._piper_bin or not self._model_onnx:
                    logger.warning("event=tts_skipped backend=piper_bin reason=binary_or_model_missing")
                    return
                subprocess.run(
                    [str(self._piper_bin), "-m", str(self._model_onnx), "-f", str(self._wav_path)],
                    input=text,
                    text=True,
                    check=False,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    cwd=str(self._piper_bin.parent),
                )
                if self._player_cmd:
                    self._play(self._player_cmd + [str(self._wav_path)])
            elif self._backend == "espeak":
                if not self._espeak_bin:
                    logger.warning("event=tts_skipped backend=espeak reason=binary_missing")
                    return
                self._play([self._espeak_bin, text])
        except OSError as exc:
            logger.warning("event=tts_failed backend=%s error=%s", self._backend, exc)

    def _play(self, cmd: List[str]) -> None:
        proc = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        with self._lock:
            self._proc = proc
        try:
            proc.wait()
        finally:
            with self._lock:
                self._proc = None

    def _resolve_backend(self, backend: str) -> Optional[str]:
        pref = (backend or "auto").lower()
        if pref not in ("auto", "piper_bin", "espeak"):
            raise RuntimeError(f"Unknown TTS backend '{backend}'. Use piper_bin, espeak or auto.")
        if pref in ("auto", "piper_bin"):
            ok, warn = self._setup_piper()
            if ok:
                return "piper_bin"
            if pref == "piper_bin":
                logger.warning("event=tts_unavailable backend=piper_bin reason=%s", warn)
                return None
        espeak = shutil.which("espeak-ng") or shutil.which("espeak")
        if espeak:
            self._espeak_bin = espeak
            return "espeak"
        logger.warning("event=tts_unavailable backend=%s reason=no espeak on PATH", pref)
        return None

    def _setup_piper(self) -> tuple[bool, Optional[str]]:
        piper_bin = self.root / "vendor" / "piper" / "linux_x86_64" / "piper"
        model_dir = self.root / "data" / "tts"
        model_onnx = model_dir / "voice.onnx"
        missing = [str(p) for p in (piper_bin, model_onnx) if not p.exists()]
        if missing:
            return False, "Missing piper assets: " + ", ".join(missing)
        if not os.access(piper_bin, os.X_OK):
            return False, f"Piper not executable: {piper_bin}"
        player = shutil.which("paplay") or shutil.which("aplay")
        if not player:
            return False, "Audio player missing (paplay/aplay)."
        self._piper_bin = piper_bin
        self._model_onnx = model_onnx
        self._player_cmd = [player]
        return True, None
