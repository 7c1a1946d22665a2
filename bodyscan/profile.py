from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError
from pydantic.config import ConfigDict

from .storage.session_paths import safe_name


logger = logging.getLogger(__name__)

Sex = Literal["male", "female", "other", ""]
Ethnicity = Literal["asian", "black", "caucasian", "hispanic", "other", ""]

REQUIRED_FIELDS = ("height_cm", "weight_kg", "age")


class UserProfile(BaseModel):
    # Keep "schema" in the saved JSON for forward compatibility, but avoid
    # shadowing BaseModel.schema (Pydantic warning).
    model_config = ConfigDict(populate_by_name=True)
    schema_version: int = Field(default=1, alias="schema")
    name: str
    height_cm: Optional[float] = None
    weight_kg: Optional[float] = None
    age: Optional[int] = None
    sex: Sex = ""
    ethnicity: Ethnicity = ""


def missing_required_fields(profile: Optional[UserProfile]) -> list[str]:
    if profile is None:
        return list(REQUIRED_FIELDS)
    missing: list[str] = []
    for key in REQUIRED_FIELDS:
        value = getattr(profile, key)
        if value is None:
            missing.append(key)
            continue
        try:
            if float(value) <= 0:
                missing.append(key)
        except (TypeError, ValueError):
            missing.append(key)
    return missing


@dataclass
class ProfileStore:
    root: Path

    @staticmethod
    def default() -> "ProfileStore":
        root = Path(__file__).resolve().parent.parent / "config" / "profiles"
        root.mkdir(parents=True, exist_ok=True)
        return ProfileStore(root=root)

    def path_for(self, name: str) -> Path:
        return self.root / f"{safe_name(name)}.json"

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def create(self, name: str) -> UserProfile:
        p = self.path_for(name)
        if p.exists():
            raise FileExistsError(f"Profile already exists: {p}")
        prof = UserProfile(name=name)
        self.save(prof)
        return prof

    def load(self, name: str) -> UserProfile:
        p = self.path_for(name)
        if not p.exists():
            raise FileNotFoundError(f"Profile not found: {name}")
        data = json.loads(p.read_text(encoding="utf-8"))
        return UserProfile.model_validate(data)

    def save(self, profile: UserProfile) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        p = self.path_for(profile.name)
        p.write_text(profile.model_dump_json(indent=2, by_alias=True), encoding="utf-8")

    def update(self, name: str, **fields: object) -> UserProfile:
        prof = self.load(name) if self.exists(name) else UserProfile(name=name)
        data = prof.model_dump()
        data.update({k: v for k, v in fields.items() if v is not None})
        updated = UserProfile.model_validate(data)
        self.save(updated)
        return updated


@dataclass
class StoredProfileProvider:
    """Profile collaborator for the capture controller, backed by ProfileStore."""

    store: ProfileStore
    name: str

    def get_profile(self) -> Optional[UserProfile]:
        try:
            return self.store.load(self.name)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning("event=profile_unreadable name=%s error=%s", self.name, exc)
            return None
