from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


def safe_name(name: str) -> str:
    safe = "".join(c for c in str(name).lower() if c.isalnum() or c in "-_ ").strip().replace(" ", "_")
    if not safe:
        raise ValueError(f"Invalid name: {name!r}")
    return safe


@dataclass(frozen=True)
class SessionPaths:
    root: Path  # sessions root

    @staticmethod
    def default() -> "SessionPaths":
        root = Path(__file__).resolve().parent.parent.parent / "sessions"
        root.mkdir(parents=True, exist_ok=True)
        return SessionPaths(root=root)

    def profile_dir(self, user: str) -> Path:
        out = self.root / safe_name(user)
        out.mkdir(parents=True, exist_ok=True)
        return out

    def photo_set_dir(self, user: str) -> Path:
        out = self.profile_dir(user) / "photo_set"
        out.mkdir(parents=True, exist_ok=True)
        return out

    def log_path(self) -> Path:
        return self.root / "logs" / "bodyscan.log"
