"""Engine tunables.

Per-round weights live in the database (see ``ConfigStore``); the constants
here are the heuristic coefficients of the scoring model and the AI fan-out.
They are read from ``JURYMATCH_*`` environment variables, optionally
overridden by a YAML file named in ``JURYMATCH_SETTINGS_FILE``.
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

ENV_PREFIX = "JURYMATCH_"


class EngineSettings(BaseModel):
    # Blend ratio between rule-based and AI compatibility
    ai_rule_weight: float = Field(0.3, ge=0.0, le=1.0)
    ai_model_weight: float = Field(0.7, ge=0.0, le=1.0)
    ai_timeout_seconds: float = Field(20.0, gt=0.0)
    ai_batch_size: int = Field(5, ge=1)
    ai_max_parallel: int = Field(4, ge=1)

    interest_bonus: float = Field(1.5, ge=0.0)
    overflow_penalty: float = Field(5.0, gt=0.0)
    thesis_match_threshold: float = Field(85.0, ge=0.0, le=100.0)

    # Open review sessions are dropped after this long, oldest first past the cap
    review_ttl_seconds: float = Field(4 * 3600.0, gt=0.0)
    max_open_reviews: int = Field(200, ge=1)

    log_level: str = "INFO"

    @model_validator(mode="after")
    def _blend_sums_to_one(self) -> EngineSettings:
        if abs(self.ai_rule_weight + self.ai_model_weight - 1.0) > 1e-6:
            raise ValueError(
                f"ai_rule_weight + ai_model_weight must equal 1.0 "
                f"(got {self.ai_rule_weight} + {self.ai_model_weight})"
            )
        return self

    @property
    def max_positive_credit(self) -> float:
        """Upper bound of all positive credit a pair can earn (0-10 scale + bonus)."""
        return 10.0 + self.interest_bonus


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return data


def _env_overrides() -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in EngineSettings.model_fields:
        raw = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None and raw.strip():
            out[name] = raw.strip()
    return out


def load_settings(path: str | Path | None = None) -> EngineSettings:
    """Build settings from an optional YAML file, then environment variables."""
    values: dict[str, Any] = {}
    if path is None:
        path = os.environ.get(f"{ENV_PREFIX}SETTINGS_FILE") or None
    if path:
        values.update(_load_yaml(Path(path).expanduser()))
    values.update(_env_overrides())
    return EngineSettings.model_validate(values)


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    return load_settings()
