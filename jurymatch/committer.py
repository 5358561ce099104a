"""Turns an approved review session into persisted assignments, all or nothing."""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime

from jurymatch.repositories import AssignmentRepository, DuplicateAssignmentError
from jurymatch.review import InvalidTransitionError, ReviewSession, ReviewState
from jurymatch.types import AssignmentRecord

log = logging.getLogger(__name__)


class CommitConflictError(Exception):
    """At least one pairing already exists (or is repeated) for the round."""
    def __init__(self, message: str, conflicts: list[AssignmentRecord] | None = None):
        super().__init__(message)
        self.conflicts = conflicts or []


class CommitFailedError(Exception):
    """The persistence collaborator failed; nothing is guaranteed to be written."""


@dataclass
class CommitResult:
    round_name: str
    assignments: list[AssignmentRecord]
    committed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def inserted(self) -> int:
        return len(self.assignments)

    def to_dict(self) -> dict:
        return {
            "round_name": self.round_name,
            "inserted": self.inserted,
            "committed_at": self.committed_at.isoformat(),
            "assignments": [a.model_dump() for a in self.assignments],
        }


def _describe(pairs: list[AssignmentRecord]) -> str:
    shown = ", ".join(f"{a.startup_id}/{a.juror_id}" for a in pairs[:5])
    more = f" and {len(pairs) - 5} more" if len(pairs) > 5 else ""
    return f"{shown}{more}"


class AssignmentCommitter:
    def __init__(self, repository: AssignmentRepository):
        self.repository = repository

    def commit_records(self, round_name: str, records: list[AssignmentRecord]) -> CommitResult:
        """Validate and persist a batch of pairings for one round."""
        wrong_round = [r for r in records if r.round_name != round_name]
        if wrong_round:
            raise ValueError(f"Assignments for another round in a {round_name!r} commit: {_describe(wrong_round)}")

        counts = Counter(r.key for r in records)
        repeated = [r for r in records if counts[r.key] > 1]
        if repeated:
            raise CommitConflictError(f"Duplicate pairings in commit: {_describe(repeated)}", repeated)

        existing = {a.key for a in self.repository.list_assignments(round_name)}
        clashing = [r for r in records if r.key in existing]
        if clashing:
            raise CommitConflictError(
                f"{len(clashing)} pairing(s) already exist in round {round_name}: {_describe(clashing)}",
                clashing,
            )
        withdrawn = {a.key for a in self.repository.list_withdrawn(round_name)}
        reused = [r for r in records if r.key in withdrawn]
        if reused:
            raise CommitConflictError(
                f"{len(reused)} pairing(s) were withdrawn in round {round_name}: {_describe(reused)}",
                reused,
            )

        try:
            self.repository.insert_assignments(records)
        except DuplicateAssignmentError as exc:
            raise CommitConflictError(f"Store rejected duplicate pairing: {exc}") from exc
        except Exception as exc:
            log.error("Commit of %d assignment(s) for round %s failed: %s", len(records), round_name, exc)
            raise CommitFailedError(f"Persisting assignments failed: {exc}") from exc

        log.info("Committed %d assignment(s) for round %s", len(records), round_name)
        return CommitResult(round_name=round_name, assignments=list(records))

    def commit(self, review: ReviewSession) -> CommitResult:
        if review.state is not ReviewState.APPROVED:
            raise InvalidTransitionError(f"Cannot commit a {review.state.value} session")
        records = review.approved_assignments()
        if not records:
            raise InvalidTransitionError("Nothing approved to commit")
        result = self.commit_records(review.round_name, records)
        review.mark_committed()
        return result
