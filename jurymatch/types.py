from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

WEIGHT_FIELDS = (
    "vertical_weight", "stage_weight", "region_weight", "thesis_weight", "load_penalty_weight",
)
WEIGHT_TOTAL = 100.0
WEIGHT_TOLERANCE = 0.01


class StartupProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    stage: str = ""
    verticals: list[str] = Field(default_factory=list)
    regions: list[str] = Field(default_factory=list)
    description: str = ""
    rounds: list[str] = Field(default_factory=list)


class JurorProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str = ""
    company: str = ""
    job_title: str = ""
    preferred_regions: list[str] = Field(default_factory=list)
    target_verticals: list[str] = Field(default_factory=list)
    preferred_stages: list[str] = Field(default_factory=list)
    thesis_keywords: list[str] = Field(default_factory=list)
    evaluation_limit: int | None = Field(None, ge=0)

    @property
    def preference_count(self) -> int:
        """How specialised the juror is: number of declared preference values."""
        return (
            len(self.preferred_regions) + len(self.target_verticals)
            + len(self.preferred_stages) + len(self.thesis_keywords)
        )


class AssignmentRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    startup_id: str
    juror_id: str
    round_name: str

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.startup_id, self.juror_id, self.round_name)


class ConflictRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    juror_id: str
    startup_id: str
    conflict_type: str = "conflict_of_interest"


class RoundConfig(BaseModel):
    """Per-round matching weights. The five weights must sum to 100."""
    model_config = ConfigDict(frozen=True)

    vertical_weight: float = Field(40.0, ge=0.0)
    stage_weight: float = Field(20.0, ge=0.0)
    region_weight: float = Field(20.0, ge=0.0)
    thesis_weight: float = Field(10.0, ge=0.0)
    load_penalty_weight: float = Field(10.0, ge=0.0)
    target_jurors_per_startup: int = Field(3, ge=1)
    top_k_per_juror: int = Field(3, ge=0)
    use_ai_enhancement: bool = False
    deterministic_seed: int | None = None

    @model_validator(mode="after")
    def _weights_sum_to_100(self) -> RoundConfig:
        total = sum(getattr(self, f) for f in WEIGHT_FIELDS)
        if abs(total - WEIGHT_TOTAL) > WEIGHT_TOLERANCE:
            raise ValueError(f"Weights must sum to 100 (got {total:g})")
        return self

    @property
    def weight_total(self) -> float:
        return sum(getattr(self, f) for f in WEIGHT_FIELDS)


class AIScore(BaseModel):
    """One juror's entry in an AI scoring provider response."""
    juror_id: str
    compatibility_score: float = Field(ge=0.0, le=10.0)
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    reasoning: str = ""
    recommendation: str = ""
