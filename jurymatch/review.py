"""Human-in-the-loop review of generated proposals.

A session starts in ``draft`` with every proposal's top candidates
pre-selected (and already reserved in the run's workload tracker). Every
selection change reserves or releases in the same tracker, so the workload
view always matches what is on screen. Nothing here touches persistence;
``AssignmentCommitter`` does that from the ``approved`` state.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from jurymatch.explain import HARD_EXCLUSIONS, CandidateExplanation
from jurymatch.generator import GenerationResult, Proposal
from jurymatch.scorer import ScoreBreakdown, ScoreModel, rank_key
from jurymatch.types import AssignmentRecord, JurorProfile, StartupProfile
from jurymatch.workload import WorkloadEntry

log = logging.getLogger(__name__)


class ReviewState(str, enum.Enum):
    DRAFT = "draft"
    EDITED = "edited"
    APPROVED = "approved"
    COMMITTED = "committed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({ReviewState.COMMITTED, ReviewState.CANCELLED})


class ReviewError(ValueError):
    """An edit that is invalid for the current selection."""


class InvalidTransitionError(ReviewError):
    """The operation is not allowed in the session's current state."""


@dataclass(frozen=True)
class SearchHit:
    juror: JurorProfile | None
    startup: StartupProfile | None
    breakdown: ScoreBreakdown
    workload: WorkloadEntry

    def to_dict(self) -> dict:
        return {
            "juror_id": self.breakdown.juror_id,
            "juror_name": self.juror.name if self.juror else None,
            "startup_id": self.breakdown.startup_id,
            "startup_name": self.startup.name if self.startup else None,
            "score": self.breakdown.total,
            "reasoning": self.breakdown.reasoning,
            "workload": self.workload.to_dict(),
        }


@dataclass(frozen=True)
class JurorSuggestion:
    startup_id: str
    startup_name: str
    explanation: CandidateExplanation
    selected: bool

    @property
    def score(self) -> float:
        return self.explanation.breakdown.total

    def to_dict(self) -> dict:
        return {
            "startup_id": self.startup_id,
            "startup_name": self.startup_name,
            "score": self.score,
            "reasoning": self.explanation.breakdown.reasoning,
            "reason_code": self.explanation.reason_code,
            "rank": self.explanation.rank,
            "selected": self.selected,
        }


@dataclass(frozen=True)
class JurorSuggestions:
    """One juror's best-scoring startups plus why-not text for the rest."""
    juror: JurorProfile
    workload: WorkloadEntry
    suggestions: list[JurorSuggestion]
    why_not: dict[str, str]

    def to_dict(self) -> dict:
        return {
            "juror_id": self.juror.id,
            "juror_name": self.juror.name,
            "workload": self.workload.to_dict(),
            "suggestions": [s.to_dict() for s in self.suggestions],
            "why_not": dict(self.why_not),
        }


class ReviewSession:
    def __init__(self, generation: GenerationResult, model: ScoreModel | None = None):
        self.round_name = generation.round_name
        self.tracker = generation.tracker
        self.warnings = list(generation.warnings)
        self.config = generation.config
        self.model = model or ScoreModel(generation.config)
        self.state = ReviewState.DRAFT

        self._jurors = {j.id: j for j in generation.jurors}
        self._startups = {s.id: s for s in generation.startups}
        self._proposals: dict[str, Proposal] = {p.startup_id: p for p in generation.proposals}
        self._selection: dict[str, list[str]] = {
            p.startup_id: list(p.candidate_ids) for p in generation.proposals
        }
        self._approved: dict[str, tuple[str, ...]] = {}
        self._existing_pairs = {(a.startup_id, a.juror_id) for a in generation.existing_assignments}
        self._conflicts = {(c.startup_id, c.juror_id) for c in generation.conflicts}
        self._withdrawn_pairs = {(a.startup_id, a.juror_id) for a in generation.withdrawn_assignments}
        self._baseline = self.tracker.snapshot()

    # -- read side ---------------------------------------------------------

    @property
    def proposals(self) -> list[Proposal]:
        return list(self._proposals.values())

    def proposal(self, startup_id: str) -> Proposal:
        try:
            return self._proposals[startup_id]
        except KeyError:
            raise ReviewError(f"No proposal for startup {startup_id!r}") from None

    def selected(self, startup_id: str) -> list[str]:
        self.proposal(startup_id)
        return list(self._selection.get(startup_id, []))

    def is_approved(self, startup_id: str) -> bool:
        return startup_id in self._approved

    def workload(self) -> list[WorkloadEntry]:
        return self.tracker.snapshot()

    def workload_deltas(self) -> dict[str, int]:
        """Projected load change per juror since the proposals were generated."""
        return self.tracker.deltas(self._baseline)

    def approved_assignments(self) -> list[AssignmentRecord]:
        return [
            AssignmentRecord(startup_id=sid, juror_id=jid, round_name=self.round_name)
            for sid, jurors in self._approved.items()
            for jid in jurors
        ]

    def why_not(self, startup_id: str, juror_id: str) -> str:
        return self.proposal(startup_id).why_not(juror_id)

    def juror_suggestions(self, juror_id: str, limit: int | None = None) -> JurorSuggestions:
        """Top startups for one juror, ranked by the scores recorded at generation.

        ``limit`` defaults to the round's ``top_k_per_juror``. Startups where
        the juror is not currently selected get a why-not entry.
        """
        juror = self._require_juror(juror_id)
        limit = self.config.top_k_per_juror if limit is None else limit
        ranked: list[JurorSuggestion] = []
        reasons: dict[str, str] = {}
        for sid, proposal in self._proposals.items():
            explanation = proposal.explanations.get(juror_id)
            if explanation is None:
                continue
            selected = juror_id in self._selection.get(sid, [])
            if not selected:
                reasons[sid] = proposal.why_not(juror_id)
            if explanation.breakdown is not None:
                ranked.append(JurorSuggestion(sid, proposal.startup_name, explanation, selected))
        ranked.sort(key=lambda s: (-s.score, s.startup_id))
        return JurorSuggestions(juror, self.tracker.entry(juror_id), ranked[:limit], reasons)

    # -- guards ------------------------------------------------------------

    def _require_open(self) -> None:
        if self.state in TERMINAL_STATES:
            raise InvalidTransitionError(f"Review session is {self.state.value}")

    def _require_editable(self, startup_id: str) -> list[str]:
        self._require_open()
        self.proposal(startup_id)
        if startup_id in self._approved:
            raise ReviewError(f"Startup {startup_id!r} is already approved")
        return self._selection.setdefault(startup_id, [])

    def _require_juror(self, juror_id: str) -> JurorProfile:
        try:
            return self._jurors[juror_id]
        except KeyError:
            raise ReviewError(f"Unknown juror {juror_id!r}") from None

    def _is_paired(self, startup_id: str, juror_id: str) -> bool:
        return (
            (startup_id, juror_id) in self._existing_pairs
            or (startup_id, juror_id) in self._withdrawn_pairs
            or juror_id in self._selection.get(startup_id, [])
        )

    def _check_assignable(self, startup_id: str, juror_id: str) -> None:
        self._require_juror(juror_id)
        if (startup_id, juror_id) in self._existing_pairs:
            raise ReviewError(f"Juror {juror_id!r} is already assigned to {startup_id!r} in this round")
        if (startup_id, juror_id) in self._conflicts:
            raise ReviewError(f"Juror {juror_id!r} has a conflict of interest with {startup_id!r}")
        if (startup_id, juror_id) in self._withdrawn_pairs:
            raise ReviewError(f"Juror {juror_id!r} was withdrawn from {startup_id!r} in this round")
        explanation = self._proposals[startup_id].explanations.get(juror_id)
        if explanation is not None and explanation.reason_code in HARD_EXCLUSIONS:
            raise ReviewError(f"Juror {juror_id!r} is excluded: {explanation.reason_code}")

    def _mark_edited(self) -> None:
        self.state = ReviewState.EDITED

    # -- edits -------------------------------------------------------------

    def toggle_candidate(self, startup_id: str, juror_id: str) -> bool:
        """Flip one juror's selection for one startup. Returns the new state."""
        selection = self._require_editable(startup_id)
        if juror_id in selection:
            self.tracker.release(juror_id)
            selection.remove(juror_id)
            now_selected = False
        else:
            self._check_assignable(startup_id, juror_id)
            self.tracker.reserve(juror_id)
            selection.append(juror_id)
            now_selected = True
        self._mark_edited()
        log.debug("Toggled %s for %s -> %s", juror_id, startup_id, now_selected)
        return now_selected

    def replace_candidate(self, startup_id: str, old_juror_id: str, new_juror_id: str) -> None:
        """Swap one selected juror for another (release, then reserve)."""
        selection = self._require_editable(startup_id)
        if old_juror_id not in selection:
            raise ReviewError(f"Juror {old_juror_id!r} is not selected for {startup_id!r}")
        if new_juror_id == old_juror_id:
            return
        if new_juror_id in selection:
            raise ReviewError(f"Juror {new_juror_id!r} is already selected for {startup_id!r}")
        self._check_assignable(startup_id, new_juror_id)

        self.tracker.release(old_juror_id)
        self.tracker.reserve(new_juror_id)
        selection[selection.index(old_juror_id)] = new_juror_id
        self._mark_edited()

    def replace_startup(self, juror_id: str, old_startup_id: str, new_startup_id: str) -> None:
        """Move a juror from one startup row to another; the juror's load is unchanged."""
        old_selection = self._require_editable(old_startup_id)
        if juror_id not in old_selection:
            raise ReviewError(f"Juror {juror_id!r} is not selected for {old_startup_id!r}")
        if new_startup_id == old_startup_id:
            return
        new_selection = self._require_editable(new_startup_id)
        if juror_id in new_selection:
            raise ReviewError(f"Juror {juror_id!r} is already selected for {new_startup_id!r}")
        self._check_assignable(new_startup_id, juror_id)

        old_selection.remove(juror_id)
        new_selection.append(juror_id)
        self._mark_edited()

    # -- search ------------------------------------------------------------

    def search_jurors(self, startup_id: str, query: str = "", limit: int = 10) -> list[SearchHit]:
        """Replacement candidates for a startup, best live score first."""
        self.proposal(startup_id)
        startup = self._startups.get(startup_id)
        if startup is None:
            return []
        q = query.strip().casefold()
        snapshot = self.tracker.snapshot_map()
        hits: list[tuple[tuple, SearchHit]] = []
        for juror in self._jurors.values():
            if self._is_paired(startup_id, juror.id) or (startup_id, juror.id) in self._conflicts:
                continue
            if q and not any(q in field.casefold() for field in (juror.name, juror.company, juror.id)):
                continue
            breakdown = self.model.score(juror, startup, snapshot[juror.id])
            hits.append((rank_key(breakdown, juror), SearchHit(juror, startup, breakdown, snapshot[juror.id])))
        hits.sort(key=lambda h: h[0])
        return [h for _, h in hits[:limit]]

    def search_startups(self, juror_id: str, query: str = "", limit: int = 10) -> list[SearchHit]:
        """Startups (with a proposal row) this juror could move to."""
        juror = self._require_juror(juror_id)
        q = query.strip().casefold()
        entry = self.tracker.entry(juror_id)
        hits: list[tuple[tuple, SearchHit]] = []
        for sid in self._proposals:
            startup = self._startups.get(sid)
            if startup is None or sid in self._approved:
                continue
            if self._is_paired(sid, juror_id) or (sid, juror_id) in self._conflicts:
                continue
            if q and q not in startup.name.casefold() and q not in sid.casefold():
                continue
            breakdown = self.model.score(juror, startup, entry)
            hits.append(((-breakdown.total, sid), SearchHit(juror, startup, breakdown, entry)))
        hits.sort(key=lambda h: h[0])
        return [h for _, h in hits[:limit]]

    # -- approval ----------------------------------------------------------

    def accept_row(self, startup_id: str) -> list[str]:
        selection = self._require_editable(startup_id)
        if not selection:
            raise ReviewError(f"No jurors selected for {startup_id!r}")
        self._approved[startup_id] = tuple(selection)
        self.state = ReviewState.APPROVED
        return list(selection)

    def accept_all(self) -> int:
        """Approve every non-empty, not yet approved row. Returns the number approved."""
        self._require_open()
        count = 0
        for sid in self._proposals:
            if sid in self._approved:
                continue
            selection = self._selection.get(sid, [])
            if selection:
                self._approved[sid] = tuple(selection)
                count += 1
        if self._approved:
            self.state = ReviewState.APPROVED
        return count

    def cancel(self) -> int:
        """Drop every tentative reservation and close the session."""
        self._require_open()
        dropped = self.tracker.release_all()
        for sid in self._selection:
            self._selection[sid] = []
        self._approved.clear()
        self.state = ReviewState.CANCELLED
        log.info("Review session for round %s cancelled (%d reservations released)",
                 self.round_name, dropped)
        return dropped

    def mark_committed(self) -> None:
        if self.state is not ReviewState.APPROVED:
            raise InvalidTransitionError(f"Cannot commit a {self.state.value} session")
        self.state = ReviewState.COMMITTED

    # -- serialization -----------------------------------------------------

    def to_dict(self) -> dict:
        rows = []
        for sid, p in self._proposals.items():
            row = p.to_dict()
            row["selected"] = list(self._selection.get(sid, []))
            row["approved"] = sid in self._approved
            rows.append(row)
        return {
            "round_name": self.round_name,
            "state": self.state.value,
            "warnings": list(self.warnings),
            "proposals": rows,
            "workload": [e.to_dict() for e in self.workload()],
            "workload_deltas": self.workload_deltas(),
            "approved_count": len(self.approved_assignments()),
        }
