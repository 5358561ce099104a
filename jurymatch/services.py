"""Shared business logic for the HTTP API and scripts."""
from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy.orm import Session

from jurymatch.committer import AssignmentCommitter, CommitResult
from jurymatch.config import EngineSettings, get_settings
from jurymatch.generator import GenerationResult, ProposalGenerator
from jurymatch.repositories import (
    SqlAssignmentRepository, SqlConfigStore, SqlConflictRepository, SqlInterestSignalProvider,
    SqlJurorRepository, SqlStartupRepository,
)
from jurymatch.review import ReviewSession
from jurymatch.scorer import AIScoringProvider, LLMScoringProvider, ScoreModel
from jurymatch.types import AssignmentRecord, JurorProfile, RoundConfig, StartupProfile
from jurymatch.utils import normalize_regions, normalize_stage, normalize_stages, normalize_verticals

log = logging.getLogger(__name__)

SUMMARY_LIMIT = 5
FALLBACK_DYNAMIC_LIMIT = 4


# ---------------------------------------------------------------------------
# Proposal runs
# ---------------------------------------------------------------------------


async def generate_proposals(
    session: Session,
    round_name: str,
    *,
    config: RoundConfig | None = None,
    ai_provider: AIScoringProvider | None = None,
    settings: EngineSettings | None = None,
) -> ReviewSession:
    """Load everything for a round from the database and open a review session.

    The round's stored config is validated before any scoring happens; an
    invalid one raises pydantic ``ValidationError``.
    """
    settings = settings or get_settings()
    if config is None:
        config = SqlConfigStore(session).get_round_config(round_name)
    if config.use_ai_enhancement and ai_provider is None:
        log.info("AI enhancement enabled for round %s, using the LLM scoring provider", round_name)
        ai_provider = LLMScoringProvider()

    generator = ProposalGenerator(
        settings=settings,
        interest_provider=SqlInterestSignalProvider(session),
        ai_provider=ai_provider,
    )
    generation: GenerationResult = await generator.generate(
        SqlStartupRepository(session).list_startups(round_name),
        SqlJurorRepository(session).list_jurors(),
        SqlAssignmentRepository(session).list_assignments(round_name),
        config,
        round_name=round_name,
        conflicts=SqlConflictRepository(session).list_conflicts(),
        withdrawn=SqlAssignmentRepository(session).list_withdrawn(round_name),
    )
    return ReviewSession(generation, ScoreModel(config, settings))


def commit_review(session: Session, review: ReviewSession) -> CommitResult:
    return AssignmentCommitter(SqlAssignmentRepository(session)).commit(review)


class ReviewRegistry:
    """In-memory store of open review sessions, keyed by a random id.

    Sessions expire ``ttl_seconds`` after creation. When more than
    ``max_sessions`` are open the oldest are dropped.
    """

    def __init__(
        self,
        ttl_seconds: float | None = None,
        max_sessions: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings() if ttl_seconds is None or max_sessions is None else None
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.review_ttl_seconds
        self.max_sessions = max_sessions if max_sessions is not None else settings.max_open_reviews
        self._clock = clock
        self._lock = threading.Lock()
        # insertion order is creation order
        self._sessions: dict[str, tuple[float, ReviewSession]] = {}

    def _evict(self, now: float) -> None:
        expired = [rid for rid, (created, _) in self._sessions.items() if now - created >= self.ttl_seconds]
        for rid in expired:
            del self._sessions[rid]
        overflow = len(self._sessions) - self.max_sessions
        oldest = list(self._sessions)[:max(overflow, 0)]
        for rid in oldest:
            del self._sessions[rid]
        if expired or oldest:
            log.info("Dropped %d expired and %d excess review session(s)", len(expired), len(oldest))

    def add(self, review: ReviewSession) -> str:
        review_id = uuid.uuid4().hex
        with self._lock:
            now = self._clock()
            self._sessions[review_id] = (now, review)
            self._evict(now)
        return review_id

    def get(self, review_id: str) -> ReviewSession | None:
        with self._lock:
            self._evict(self._clock())
            entry = self._sessions.get(review_id)
        return entry[1] if entry else None

    def discard(self, review_id: str) -> None:
        with self._lock:
            self._sessions.pop(review_id, None)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


# ---------------------------------------------------------------------------
# Coverage and workload validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StartupCoverage:
    startup_id: str
    startup_name: str
    assigned_count: int
    required: int

    @property
    def is_under_assigned(self) -> bool:
        return self.assigned_count < self.required

    @property
    def severity(self) -> str:
        if self.assigned_count == 0:
            return "critical"
        return "warning" if self.is_under_assigned else "none"

    def to_dict(self) -> dict:
        return {
            "startup_id": self.startup_id, "startup_name": self.startup_name,
            "assigned_count": self.assigned_count, "required": self.required,
            "is_under_assigned": self.is_under_assigned, "severity": self.severity,
        }


@dataclass(frozen=True)
class JurorLoad:
    juror_id: str
    juror_name: str
    current_assignments: int
    limit: int
    is_custom_limit: bool

    @property
    def is_over_limit(self) -> bool:
        return self.current_assignments > self.limit

    @property
    def is_at_limit(self) -> bool:
        return self.current_assignments == self.limit

    def to_dict(self) -> dict:
        return {
            "juror_id": self.juror_id, "juror_name": self.juror_name,
            "current_assignments": self.current_assignments, "limit": self.limit,
            "is_custom_limit": self.is_custom_limit,
            "is_over_limit": self.is_over_limit, "is_at_limit": self.is_at_limit,
        }


def dynamic_limit(total_startups: int, total_jurors: int, per_startup: int) -> int:
    if total_jurors == 0:
        return FALLBACK_DYNAMIC_LIMIT
    return math.ceil(total_startups * per_startup / total_jurors)


def validate_startup_coverage(
    startups: list[StartupProfile], assignments: list[AssignmentRecord], required: int,
) -> list[StartupCoverage]:
    counts = Counter(a.startup_id for a in assignments)
    return [StartupCoverage(s.id, s.name, counts.get(s.id, 0), required) for s in startups]


def validate_juror_workloads(
    jurors: list[JurorProfile], assignments: list[AssignmentRecord], total_startups: int, per_startup: int,
) -> list[JurorLoad]:
    counts = Counter(a.juror_id for a in assignments)
    fallback = dynamic_limit(total_startups, len(jurors), per_startup)
    return [
        JurorLoad(
            juror_id=j.id, juror_name=j.name,
            current_assignments=counts.get(j.id, 0),
            limit=j.evaluation_limit if j.evaluation_limit is not None else fallback,
            is_custom_limit=j.evaluation_limit is not None,
        )
        for j in jurors
    ]


def _summary(items: list[str], noun: str, tail: str) -> str:
    if not items:
        return ""
    shown = ", ".join(items[:SUMMARY_LIMIT])
    more = f" and {len(items) - SUMMARY_LIMIT} more" if len(items) > SUMMARY_LIMIT else ""
    return f"{len(items)} {noun} {tail}: {shown}{more}"


def under_assigned_summary(coverage: list[StartupCoverage]) -> str:
    return _summary(
        [f"{c.startup_name} ({c.assigned_count}/{c.required})" for c in coverage if c.is_under_assigned],
        "startup(s)", "below minimum",
    )


def over_limit_summary(loads: list[JurorLoad]) -> str:
    return _summary(
        [f"{w.juror_name} ({w.current_assignments}/{w.limit})" for w in loads if w.is_over_limit],
        "juror(s)", "over limit",
    )


# ---------------------------------------------------------------------------
# Data consistency
# ---------------------------------------------------------------------------


@dataclass
class DataInconsistency:
    type: str  # vertical_mismatch | stage_mismatch | region_mismatch | missing_data
    severity: str  # high | medium | low
    message: str
    items: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"type": self.type, "severity": self.severity, "message": self.message, "items": self.items}


def detect_data_inconsistencies(
    startups: list[StartupProfile], jurors: list[JurorProfile],
) -> list[DataInconsistency]:
    """Flag startups no juror preference can ever match, and missing profile data."""
    juror_verticals = {v for j in jurors for v in normalize_verticals(j.target_verticals)}
    juror_stages = {s for j in jurors for s in normalize_stages(j.preferred_stages)}
    juror_regions = {r for j in jurors for r in normalize_regions(j.preferred_regions)}
    global_region = "Global" in juror_regions

    out: list[DataInconsistency] = []

    no_vertical = [
        s.name for s in startups
        if s.verticals and not set(normalize_verticals(s.verticals)) & juror_verticals
    ]
    if no_vertical:
        out.append(DataInconsistency(
            "vertical_mismatch", "high",
            f"{len(no_vertical)} startup(s) have verticals with no matching juror preferences", no_vertical,
        ))

    no_stage = [s.name for s in startups if s.stage and normalize_stage(s.stage) not in juror_stages]
    if no_stage:
        out.append(DataInconsistency(
            "stage_mismatch", "medium",
            f"{len(no_stage)} startup(s) have stages with no matching juror preferences", no_stage,
        ))

    no_region = [] if global_region else [
        s.name for s in startups
        if s.regions and not set(normalize_regions(s.regions)) & juror_regions
    ]
    if no_region:
        out.append(DataInconsistency(
            "region_mismatch", "low",
            f"{len(no_region)} startup(s) have regions with no matching juror preferences", no_region,
        ))

    startups_missing = [s.name for s in startups if not s.verticals]
    if startups_missing:
        out.append(DataInconsistency(
            "missing_data", "high",
            f"{len(startups_missing)} startup(s) have no verticals defined", startups_missing,
        ))

    jurors_missing = [j.name for j in jurors if not j.target_verticals]
    if jurors_missing:
        out.append(DataInconsistency(
            "missing_data", "high",
            f"{len(jurors_missing)} juror(s) have no target verticals defined", jurors_missing,
        ))
    return out


def round_report(session: Session, round_name: str) -> dict:
    """Coverage, workload and data-consistency report for one round."""
    config = SqlConfigStore(session).get_round_config(round_name)
    startups = SqlStartupRepository(session).list_startups(round_name)
    jurors = SqlJurorRepository(session).list_jurors()
    assignments = SqlAssignmentRepository(session).list_assignments(round_name)

    coverage = validate_startup_coverage(startups, assignments, config.target_jurors_per_startup)
    loads = validate_juror_workloads(jurors, assignments, len(startups), config.target_jurors_per_startup)
    return {
        "round_name": round_name,
        "coverage": [c.to_dict() for c in coverage],
        "workloads": [w.to_dict() for w in loads],
        "under_assigned_summary": under_assigned_summary(coverage),
        "over_limit_summary": over_limit_summary(loads),
        "inconsistencies": [i.to_dict() for i in detect_data_inconsistencies(startups, jurors)],
    }
