"""Container-facing models."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ContainerConfig(BaseModel):
    """Desired playground container, as supplied by the caller of create."""

    model_config = ConfigDict(frozen=True)

    playground_id: str = Field(
        min_length=1,
        max_length=63,
        pattern=r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$",
    )
    template: str = "empty"
    language: str = "plaintext"
    # None = configured default port set
    ports: list[int] | None = None


class FileEntry(BaseModel):
    """One entry of a workspace listing."""

    id: str
    name: str
    path: str
    type: Literal["file", "folder"]
    # None for folders
    language: str | None = None
