"""Pydantic models shared across API, pipeline, providers, and storage.

Beginner terms used in this file:
- Alias: the camelCase name a field uses on the wire (JSON), e.g. `aspect_ratio` -> `aspectRatio`.
- Literal: restricts a field to a fixed set of allowed string values.
- Snapshot: a full copy of a record, returned so callers never mutate stored state.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Task lifecycle states used by storage + API responses.
TaskStatus = Literal[
    "pending",
    "running",
    "running_fallback",
    "succeeded",
    "failed",
    "cancelled",
]

ProviderName = Literal["primary", "fallback", "mock"]

ACTIVE_STATUSES: frozenset[str] = frozenset({"pending", "running", "running_fallback"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"succeeded", "failed", "cancelled"})

DEFAULT_OWNER = "anonymous"


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys; accepts either naming on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenerationParams(CamelModel):
    """Request parameters copied onto the task and every image it produces."""

    prompt: str
    aspect_ratio: str = "auto"
    image_size: str = "1K"
    reference_urls: list[str] = Field(default_factory=list)


class ImageRecord(CamelModel):
    """One downloaded image in the gallery log."""

    id: str
    owner: str = DEFAULT_OWNER
    prompt: str
    aspect_ratio: str = "auto"
    image_size: str = "1K"
    reference_urls: list[str] = Field(default_factory=list)
    provider: ProviderName | None = None
    filename: str
    # Local file path of the stored bytes.
    path: str
    # Public URL served by the static mount.
    url: str
    remote_url: str
    created_at: datetime

    @property
    def file_path(self) -> Path:
        return Path(self.path)


class Task(CamelModel):
    """Canonical task record shape returned by API/storage."""

    id: str
    owner: str = DEFAULT_OWNER
    prompt: str
    aspect_ratio: str = "auto"
    image_size: str = "1K"
    reference_urls: list[str] = Field(default_factory=list)
    status: TaskStatus = "pending"
    progress: int = Field(default=0, ge=0, le=100)
    error: str | None = None
    provider: ProviderName | None = None
    result: list[ImageRecord] | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def params(self) -> GenerationParams:
        return GenerationParams(
            prompt=self.prompt,
            aspect_ratio=self.aspect_ratio,
            image_size=self.image_size,
            reference_urls=list(self.reference_urls),
        )


class GenerateRequest(CamelModel):
    """Request body for POST /generate."""

    prompt: str = Field(min_length=1)
    aspect_ratio: str = "auto"
    image_size: str = "1K"
    # Reference images arrive as `urls`, matching the existing web client.
    urls: list[str] = Field(default_factory=list)

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt must not be blank")
        return value

    def to_params(self) -> GenerationParams:
        return GenerationParams(
            prompt=self.prompt,
            aspect_ratio=self.aspect_ratio or "auto",
            image_size=self.image_size or "1K",
            reference_urls=[url for url in self.urls if url],
        )


class GenerateResponse(CamelModel):
    task_id: str
    task: Task


class TaskListResponse(CamelModel):
    tasks: list[Task] = Field(default_factory=list)


class CancelTaskResponse(CamelModel):
    task_id: str
    status: TaskStatus


class DeleteTaskResponse(CamelModel):
    task_id: str
    deleted: bool


class ImageListResponse(CamelModel):
    images: list[ImageRecord] = Field(default_factory=list)
    total: int


class DeleteImageResponse(CamelModel):
    image_id: str
    deleted: bool
