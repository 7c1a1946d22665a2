from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import json
import logging
from pathlib import Path
import threading
from typing import Dict, Iterable, Optional, Protocol


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhotoRecord:
    pose_id: str
    image_data: Optional[bytes] = None  # JPEG bytes
    is_correct: Optional[bool] = None
    feedback: Optional[str] = None

    @staticmethod
    def empty(pose_id: str) -> "PhotoRecord":
        return PhotoRecord(pose_id=pose_id)

    @property
    def is_empty(self) -> bool:
        return self.image_data is None and self.is_correct is None and self.feedback is None


class PhotoSetStore(Protocol):
    def read(self, pose_id: str) -> PhotoRecord: ...

    def write(self, pose_id: str, record: PhotoRecord) -> None: ...

    def reset_all(self) -> None: ...


class MemoryPhotoSetStore:
    def __init__(self) -> None:
        self._records: Dict[str, PhotoRecord] = {}
        self._lock = threading.Lock()

    def read(self, pose_id: str) -> PhotoRecord:
        with self._lock:
            return self._records.get(pose_id, PhotoRecord.empty(pose_id))

    def write(self, pose_id: str, record: PhotoRecord) -> None:
        if record.pose_id != pose_id:
            raise ValueError(f"Record for {record.pose_id!r} written under {pose_id!r}")
        with self._lock:
            self._records[pose_id] = record

    def reset_all(self) -> None:
        with self._lock:
            self._records.clear()


@dataclass
class JsonPhotoSetStore:
    """Photo set on disk: one JPEG per pose plus an index in records.json."""

    root: Path
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    @property
    def index_path(self) -> Path:
        return self.root / "records.json"

    def image_path(self, pose_id: str) -> Path:
        safe = "".join(ch for ch in pose_id if ch.isalnum() or ch in ("-", "_"))
        if not safe:
            raise ValueError(f"Invalid pose_id: {pose_id!r}")
        return self.root / f"{safe}.jpg"

    def _load_index(self) -> Dict[str, dict]:
        if not self.index_path.exists():
            return {}
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("event=photo_index_unreadable path=%s error=%s", self.index_path, exc)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, dict)}

    def _save_index(self, index: Dict[str, dict]) -> None:
        tmp = self.index_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(index, indent=2), encoding="utf-8")
        tmp.replace(self.index_path)

    def read(self, pose_id: str) -> PhotoRecord:
        with self._lock:
            entry = self._load_index().get(pose_id)
            if not entry:
                return PhotoRecord.empty(pose_id)
            image: Optional[bytes] = None
            if entry.get("image"):
                path = self.root / str(entry["image"])
                if path.exists():
                    image = path.read_bytes()
            is_correct = entry.get("is_correct")
            return PhotoRecord(
                pose_id=pose_id,
                image_data=image,
                is_correct=None if is_correct is None else bool(is_correct),
                feedback=entry.get("feedback"),
            )

    def write(self, pose_id: str, record: PhotoRecord) -> None:
        if record.pose_id != pose_id:
            raise ValueError(f"Record for {record.pose_id!r} written under {pose_id!r}")
        with self._lock:
            index = self._load_index()
            img_path = self.image_path(pose_id)
            if record.image_data is not None:
                img_path.write_bytes(record.image_data)
            else:
                img_path.unlink(missing_ok=True)
            index[pose_id] = {
                "image": img_path.name if record.image_data is not None else None,
                "is_correct": record.is_correct,
                "feedback": record.feedback,
                "updated_at": datetime.now().isoformat(timespec="seconds"),
            }
            self._save_index(index)

    def reset_all(self) -> None:
        with self._lock:
            for path in self.root.glob("*.jpg"):
                path.unlink(missing_ok=True)
            self.index_path.unlink(missing_ok=True)
        logger.info("event=photo_set_reset root=%s", self.root)

    def records(self, pose_ids: Iterable[str]) -> list[PhotoRecord]:
        return [self.read(pid) for pid in pose_ids]
