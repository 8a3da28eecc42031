"""Request models of the operational API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ImportRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    attraction_id: str = Field(min_length=1, max_length=64)
    name_hint: str | None = Field(default=None, max_length=512)
    priority: int | None = Field(default=None, ge=1, le=5)
    is_admin_import: bool = False
    force_refresh: bool = False


class RequeueRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_ids: list[int] | None = Field(default=None, max_length=1000)


__all__ = ["ImportRequest", "RequeueRequest"]
