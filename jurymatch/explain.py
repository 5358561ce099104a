"""Explanations attached to proposals: why each juror was or wasn't picked."""
from __future__ import annotations

from dataclasses import dataclass, field

from jurymatch.scorer import ScoreBreakdown

SELECTED = "selected"
LOWER_SCORE = "lower_score"
WORKLOAD_EXCEEDED = "workload_exceeded"
CONFLICT_OF_INTEREST = "conflict_of_interest"
ALREADY_ASSIGNED = "already_assigned"
WITHDRAWN = "withdrawn"

HARD_EXCLUSIONS = frozenset({CONFLICT_OF_INTEREST, ALREADY_ASSIGNED, WITHDRAWN})

_REASON_TEXT = {
    SELECTED: "Selected",
    LOWER_SCORE: "Ranked below the selected jurors",
    WORKLOAD_EXCEEDED: "At or above evaluation limit",
    CONFLICT_OF_INTEREST: "Conflict of interest",
    ALREADY_ASSIGNED: "Already assigned in this round",
    WITHDRAWN: "Assignment was withdrawn in this round",
}


@dataclass(frozen=True)
class CandidateExplanation:
    juror_id: str
    juror_name: str
    reason_code: str
    rank: int | None = None  # None for hard-excluded jurors
    breakdown: ScoreBreakdown | None = None

    @property
    def selected(self) -> bool:
        return self.reason_code == SELECTED

    @property
    def excluded(self) -> bool:
        return self.reason_code in HARD_EXCLUSIONS

    @property
    def summary(self) -> str:
        text = _REASON_TEXT.get(self.reason_code, self.reason_code)
        if self.breakdown is None:
            return text
        return f"{text}: {self.breakdown.reasoning} (score {self.breakdown.total:g})"

    def to_dict(self) -> dict:
        return {
            "juror_id": self.juror_id,
            "juror_name": self.juror_name,
            "reason_code": self.reason_code,
            "rank": self.rank,
            "summary": self.summary,
            "breakdown": self.breakdown.to_dict() if self.breakdown else None,
        }


@dataclass
class ExplainabilityRecorder:
    """Collects one explanation per juror considered for a single startup."""
    startup_id: str
    _entries: dict[str, CandidateExplanation] = field(default_factory=dict)

    def record_exclusion(self, juror_id: str, juror_name: str, reason_code: str) -> None:
        if reason_code not in HARD_EXCLUSIONS:
            raise ValueError(f"Not a hard exclusion: {reason_code!r}")
        self._entries[juror_id] = CandidateExplanation(juror_id, juror_name, reason_code)

    def record_ranked(
        self,
        ranked: list[tuple[str, str, ScoreBreakdown, bool]],
        selected_ids: set[str],
    ) -> None:
        """Record every ranked candidate.

        ``ranked`` holds ``(juror_id, juror_name, breakdown, at_or_over_limit)``
        in final rank order.
        """
        for rank, (jid, name, breakdown, over_limit) in enumerate(ranked, 1):
            if jid in selected_ids:
                code = SELECTED
            elif over_limit:
                code = WORKLOAD_EXCEEDED
            else:
                code = LOWER_SCORE
            self._entries[jid] = CandidateExplanation(jid, name, code, rank=rank, breakdown=breakdown)

    def build(self) -> dict[str, CandidateExplanation]:
        ranked = sorted(
            (e for e in self._entries.values() if e.rank is not None), key=lambda e: e.rank,
        )
        excluded = sorted(
            (e for e in self._entries.values() if e.rank is None), key=lambda e: e.juror_id,
        )
        return {e.juror_id: e for e in [*ranked, *excluded]}


def why_not(explanations: dict[str, CandidateExplanation], juror_id: str) -> str:
    """Human-readable answer to "why wasn't this juror assigned here"."""
    entry = explanations.get(juror_id)
    if entry is None:
        return "Juror was not considered for this startup"
    if entry.selected:
        return f"Juror was proposed (rank {entry.rank}): {entry.breakdown.reasoning}"
    return entry.summary
