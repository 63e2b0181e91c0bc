"""Candidate models available for rendering preset examples.

The catalog is read once at process start by the entry point and handed to
the allocator. It is immutable afterwards, so worker threads and request
handlers read it without locking.
"""

import enum
import json
from pathlib import Path
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import CatalogError

class Gender(str, enum.Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"

class ModelRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    gender: Gender
    image_url: str = Field(min_length=1)
    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.id

class _FileEntry(BaseModel):
    id: str = Field(min_length=1)
    gender: str | None = None
    s3Url: str = Field(min_length=1)
    name: str | None = None

class _ModelsFile(BaseModel):
    male: list[_FileEntry] = Field(default_factory=list)
    female: list[_FileEntry] = Field(default_factory=list)

class ModelCatalog:
    def __init__(self, records: Iterable[ModelRecord]):
        by_gender: dict[Gender, list[ModelRecord]] = {g: [] for g in Gender}
        seen: dict[Gender, set[str]] = {g: set() for g in Gender}
        for rec in records:
            if rec.id in seen[rec.gender]:
                raise CatalogError(f"duplicate model id {rec.id!r} in {rec.gender.value} partition")
            seen[rec.gender].add(rec.id)
            by_gender[rec.gender].append(rec)
        self._by_gender = {g: tuple(recs) for g, recs in by_gender.items()}

    def by_gender(self, gender: Gender) -> tuple[ModelRecord, ...]:
        return self._by_gender[gender]

    def __len__(self) -> int:
        return sum(len(v) for v in self._by_gender.values())

    def __iter__(self):
        for g in Gender:
            yield from self._by_gender[g]

    @classmethod
    def from_dict(cls, data: dict) -> "ModelCatalog":
        try:
            parsed = _ModelsFile.model_validate(data)
        except ValidationError as e:
            raise CatalogError(f"invalid models file: {e}") from e

        records = []
        for gender, entries in ((Gender.MALE, parsed.male), (Gender.FEMALE, parsed.female)):
            for entry in entries:
                if entry.gender and entry.gender.upper() != gender.value:
                    raise CatalogError(
                        f"model {entry.id!r} is tagged {entry.gender!r} but listed under {gender.value.lower()}"
                    )
                records.append(
                    ModelRecord(id=entry.id, gender=gender, image_url=entry.s3Url, name=entry.name or entry.id)
                )
        return cls(records)

    @classmethod
    def load(cls, path: str | Path) -> "ModelCatalog":
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise CatalogError(f"models file not found: {path}") from e
        except json.JSONDecodeError as e:
            raise CatalogError(f"models file is not valid json: {path}") from e
        return cls.from_dict(data)
