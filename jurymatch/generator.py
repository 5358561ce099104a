"""Greedy, explainable proposal generation.

Startups are processed one at a time in ascending id order. Each startup is
scored against the workload left behind by the previous ones, so the outer
loop must stay sequential. Within one startup the optional AI calls fan out
concurrently and are all joined before ranking; rule-based scoring only reads
a frozen workload snapshot.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable

from jurymatch.config import EngineSettings, get_settings
from jurymatch.explain import (
    ALREADY_ASSIGNED, CONFLICT_OF_INTEREST, WITHDRAWN, CandidateExplanation, ExplainabilityRecorder,
    why_not,
)
from jurymatch.repositories import InterestSignalProvider
from jurymatch.scorer import AIScoringProvider, ScoreBreakdown, ScoreModel, TextMatcher, rank_key
from jurymatch.types import (
    AIScore, AssignmentRecord, ConflictRecord, JurorProfile, RoundConfig, StartupProfile,
)
from jurymatch.workload import WorkloadEntry, WorkloadTracker

log = logging.getLogger(__name__)


@dataclass
class Proposal:
    startup_id: str
    startup_name: str
    needed: int
    candidates: list[ScoreBreakdown]
    alternates: list[ScoreBreakdown]
    explanations: dict[str, CandidateExplanation]

    @property
    def candidate_ids(self) -> list[str]:
        return [c.juror_id for c in self.candidates]

    def why_not(self, juror_id: str) -> str:
        return why_not(self.explanations, juror_id)

    def to_dict(self) -> dict:
        return {
            "startup_id": self.startup_id,
            "startup_name": self.startup_name,
            "needed": self.needed,
            "candidates": [c.to_dict() for c in self.candidates],
            "alternates": [a.to_dict() for a in self.alternates],
            "explanations": [e.to_dict() for e in self.explanations.values()],
        }


@dataclass
class GenerationResult:
    round_name: str
    config: RoundConfig
    proposals: list[Proposal]
    tracker: WorkloadTracker
    startups: list[StartupProfile]
    jurors: list[JurorProfile]
    existing_assignments: list[AssignmentRecord]
    conflicts: list[ConflictRecord] = field(default_factory=list)
    withdrawn_assignments: list[AssignmentRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def workload(self) -> list[WorkloadEntry]:
        return self.tracker.snapshot()


def _unique_by_id(items: Iterable) -> list:
    seen: dict[str, object] = {}
    for item in items:
        seen.setdefault(item.id, item)
    return list(seen.values())


class ProposalGenerator:
    def __init__(
        self,
        *,
        settings: EngineSettings | None = None,
        interest_provider: InterestSignalProvider | None = None,
        ai_provider: AIScoringProvider | None = None,
        thesis_matcher: TextMatcher | None = None,
    ):
        self.settings = settings or get_settings()
        self.interest_provider = interest_provider
        self.ai_provider = ai_provider
        self.thesis_matcher = thesis_matcher

    def _interested(self, juror_id: str, startup_id: str, round_name: str) -> bool:
        if self.interest_provider is None:
            return False
        try:
            return bool(self.interest_provider.has_explicit_interest(juror_id, startup_id, round_name))
        except Exception as exc:
            log.warning("Interest lookup failed for %s/%s: %s", juror_id, startup_id, exc)
            return False

    async def _ai_scores(
        self,
        startup: StartupProfile,
        jurors: list[JurorProfile],
        config: RoundConfig,
        round_name: str,
    ) -> dict[str, AIScore]:
        """Fetch AI scores in parallel batches; failed batches are simply absent."""
        if not jurors or self.ai_provider is None:
            return {}
        size = self.settings.ai_batch_size
        batches = [jurors[i:i + size] for i in range(0, len(jurors), size)]
        gate = asyncio.Semaphore(self.settings.ai_max_parallel)

        async def run(batch: list[JurorProfile]) -> list[AIScore]:
            async with gate:
                return await asyncio.wait_for(
                    self.ai_provider.score_batch(
                        startup, batch, round_name=round_name, seed=config.deterministic_seed,
                    ),
                    timeout=self.settings.ai_timeout_seconds,
                )

        results = await asyncio.gather(*(run(b) for b in batches), return_exceptions=True)

        scores: dict[str, AIScore] = {}
        for batch, result in zip(batches, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                log.warning(
                    "AI scoring failed for startup %s (%d jurors), falling back to rules: %s",
                    startup.id, len(batch), str(result) or type(result).__name__,
                )
                continue
            batch_ids = {j.id for j in batch}
            for s in result or []:
                if isinstance(s, AIScore) and s.juror_id in batch_ids:
                    scores.setdefault(s.juror_id, s)
        return scores

    async def generate(
        self,
        startups: Iterable[StartupProfile],
        jurors: Iterable[JurorProfile],
        existing_assignments: Iterable[AssignmentRecord],
        config: RoundConfig,
        *,
        round_name: str,
        conflicts: Iterable[ConflictRecord] = (),
        withdrawn: Iterable[AssignmentRecord] = (),
    ) -> GenerationResult:
        """Propose jurors for every startup short of its target.

        ``withdrawn`` pairings neither count toward workload nor coverage,
        but they are never proposed again in the same round.
        """
        startup_list = sorted(_unique_by_id(startups), key=lambda s: s.id)
        juror_list = _unique_by_id(jurors)
        existing = [a for a in existing_assignments if a.round_name == round_name]
        withdrawn_list = [a for a in withdrawn if a.round_name == round_name]
        conflict_list = list(conflicts)
        warnings: list[str] = []

        per_startup = Counter(a.startup_id for a in existing)
        needing = [
            (s, config.target_jurors_per_startup - per_startup[s.id])
            for s in startup_list
            if per_startup[s.id] < config.target_jurors_per_startup
        ]
        total_required = len(existing) + sum(n for _, n in needing)
        tracker = WorkloadTracker(juror_list, existing, total_required)

        result = GenerationResult(
            round_name=round_name, config=config, proposals=[], tracker=tracker,
            startups=startup_list, jurors=juror_list, existing_assignments=existing,
            conflicts=conflict_list, withdrawn_assignments=withdrawn_list, warnings=warnings,
        )

        if not juror_list:
            msg = "No jurors available; no proposals were generated"
            log.warning("%s (round %s)", msg, round_name)
            warnings.append(msg)
            return result
        if not needing:
            warnings.append(
                f"All {len(startup_list)} startup(s) already have "
                f"{config.target_jurors_per_startup} juror(s)"
            )
            return result

        use_ai = config.use_ai_enhancement and self.ai_provider is not None
        if config.use_ai_enhancement and self.ai_provider is None:
            log.warning("AI enhancement enabled for round %s but no provider configured", round_name)

        model = ScoreModel(config, self.settings, self.thesis_matcher)
        assigned_pairs = {(a.startup_id, a.juror_id) for a in existing}
        conflict_pairs = {(c.juror_id, c.startup_id) for c in conflict_list}
        withdrawn_pairs = {(a.startup_id, a.juror_id) for a in withdrawn_list}

        log.info("Generating proposals for %d startup(s) and %d juror(s) in round %s (target %d)",
                 len(needing), len(juror_list), round_name, tracker.target)

        for startup, needed in needing:
            recorder = ExplainabilityRecorder(startup.id)
            eligible: list[JurorProfile] = []
            for juror in juror_list:
                if (startup.id, juror.id) in assigned_pairs:
                    recorder.record_exclusion(juror.id, juror.name, ALREADY_ASSIGNED)
                elif (startup.id, juror.id) in withdrawn_pairs:
                    recorder.record_exclusion(juror.id, juror.name, WITHDRAWN)
                elif (juror.id, startup.id) in conflict_pairs:
                    recorder.record_exclusion(juror.id, juror.name, CONFLICT_OF_INTEREST)
                else:
                    eligible.append(juror)

            ai_scores = await self._ai_scores(startup, eligible, config, round_name) if use_ai else {}

            snapshot = tracker.snapshot_map()
            scored = [
                (juror, model.score(
                    juror, startup, snapshot[juror.id],
                    interested=self._interested(juror.id, startup.id, round_name),
                    ai=ai_scores.get(juror.id),
                ))
                for juror in eligible
            ]
            scored.sort(key=lambda pair: rank_key(pair[1], pair[0]))

            take = min(needed, len(scored))
            selected = scored[:take]
            for juror, _ in selected:
                tracker.reserve(juror.id)

            recorder.record_ranked(
                [(j.id, j.name, b, snapshot[j.id].at_or_over_limit) for j, b in scored],
                {j.id for j, _ in selected},
            )
            if take < needed:
                warnings.append(
                    f"Startup {startup.name} needs {needed} juror(s) but only {take} are eligible"
                )

            result.proposals.append(Proposal(
                startup_id=startup.id,
                startup_name=startup.name,
                needed=needed,
                candidates=[b for _, b in selected],
                alternates=[b for _, b in scored[take:take + config.top_k_per_juror]],
                explanations=recorder.build(),
            ))

        return result
