"""Pydantic request/response schemas for the Jurymatch API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class ConfigUpdate(BaseModel):
    region_weight: float | None = None
    vertical_weight: float | None = None
    stage_weight: float | None = None
    thesis_weight: float | None = None
    load_penalty_weight: float | None = None
    target_jurors_per_startup: int | None = None
    top_k_per_juror: int | None = None
    use_ai_enhancement: bool | None = None
    deterministic_seed: int | None = None


class ProposalRequest(BaseModel):
    use_ai_enhancement: bool | None = None


class ToggleRequest(BaseModel):
    startup_id: str
    juror_id: str


class ReplaceRequest(BaseModel):
    startup_id: str
    old_juror_id: str
    new_juror_id: str


class ReplaceStartupRequest(BaseModel):
    juror_id: str
    old_startup_id: str
    new_startup_id: str


class AcceptRequest(BaseModel):
    # None accepts every non-empty row
    startup_id: str | None = None

    @field_validator("startup_id")
    @classmethod
    def _strip(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        return v or None


class ReviewCreated(BaseModel):
    review_id: str
    review: dict[str, Any]


class ToggleOut(BaseModel):
    selected: bool
    selection: list[str]


class AcceptOut(BaseModel):
    state: str
    accepted: int


class CancelOut(BaseModel):
    state: str
    released: int


class WhyNotOut(BaseModel):
    startup_id: str
    juror_id: str
    explanation: str


class CommitOut(BaseModel):
    round_name: str
    inserted: int
    committed_at: str
    assignments: list[dict[str, Any]] = Field(default_factory=list)
