from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .catalog import Gender

# ids end up in sink paths: no separators, no leading dot
SAFE_ID = r"^[A-Za-z0-9][A-Za-z0-9_.-]*$"

class JobPayload(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    preset_id: str = Field(min_length=1, max_length=64, pattern=SAFE_ID)
    prompt: str = Field(min_length=1, max_length=10_000)
    model_id: str = Field(min_length=1, max_length=128, pattern=SAFE_ID)
    model_name: str = Field(min_length=1, max_length=255)
    model_image_url: str = Field(min_length=1, max_length=2048, pattern=r"^https?://")
    model_gender: Gender
    provider: str = Field(min_length=1, max_length=64)

class JobOut(BaseModel):
    id: str
    state: str
    progress: int
    payload: JobPayload
    result: dict[str, Any] | None = None
    attempts: int
    max_attempts: int
    started_at: datetime | None = None
    finished_at: datetime | None = None
    failure_reason: str | None = None

class ExamplesCreate(BaseModel):
    count: int = Field(ge=2, le=200)
    prompt: str | None = Field(default=None, min_length=1, max_length=10_000)
    provider: str | None = None

class QueuedExample(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    job_id: str
    model_id: str
    gender: Gender

class ExamplesOut(BaseModel):
    preset_id: str
    jobs: list[QueuedExample]

class AllocationCreate(BaseModel):
    count: int = Field(ge=2, le=200)

class ModelOut(BaseModel):
    id: str
    name: str
    image_url: str
    gender: Gender

class AllocationOut(BaseModel):
    preset_id: str
    models: list[ModelOut]

class UsageOut(BaseModel):
    preset_id: str
    model_ids: list[str]
