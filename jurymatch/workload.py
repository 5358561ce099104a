"""Per-juror workload ledger for one assignment run.

``current`` counts confirmed assignments loaded from the round; the tracker
adds tentative reservations on top of it. ``proposed`` is the projected load
(confirmed + tentative), which is what limits and targets are compared with.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Iterable

from jurymatch.types import AssignmentRecord, JurorProfile

log = logging.getLogger(__name__)


class WorkloadUnderflowError(RuntimeError):
    """A release was issued for a juror with no tentative reservation left."""


@dataclass(frozen=True)
class WorkloadEntry:
    juror_id: str
    juror_name: str
    current_assignments: int
    proposed_assignments: int
    target_assignments: int
    effective_limit: int
    is_custom_limit: bool

    @property
    def tentative_assignments(self) -> int:
        return self.proposed_assignments - self.current_assignments

    @property
    def is_overloaded(self) -> bool:
        return self.proposed_assignments > self.target_assignments + 1

    @property
    def exceeds_limit(self) -> bool:
        return self.proposed_assignments > self.effective_limit

    @property
    def at_or_over_limit(self) -> bool:
        return self.proposed_assignments >= self.effective_limit

    def to_dict(self) -> dict:
        return {
            "juror_id": self.juror_id,
            "juror_name": self.juror_name,
            "current_assignments": self.current_assignments,
            "proposed_assignments": self.proposed_assignments,
            "target_assignments": self.target_assignments,
            "effective_limit": self.effective_limit,
            "is_custom_limit": self.is_custom_limit,
            "is_overloaded": self.is_overloaded,
            "exceeds_limit": self.exceeds_limit,
        }


def compute_target(total_required: int, juror_count: int) -> int:
    """Shared soft target: ``floor(total_required / juror_count)``."""
    if juror_count <= 0:
        return 0
    return total_required // juror_count


class WorkloadTracker:
    """Mutable ledger; single writer (the generator loop or a review session)."""

    def __init__(
        self,
        jurors: Iterable[JurorProfile],
        existing_assignments: Iterable[AssignmentRecord],
        total_required: int,
    ):
        self._jurors: dict[str, JurorProfile] = {}
        for j in jurors:
            self._jurors.setdefault(j.id, j)
        counts = Counter(a.juror_id for a in existing_assignments)
        self._current: dict[str, int] = {jid: counts.get(jid, 0) for jid in self._jurors}
        self._tentative: dict[str, int] = {jid: 0 for jid in self._jurors}
        self.total_required = total_required
        self.target = compute_target(total_required, len(self._jurors))

    def __contains__(self, juror_id: str) -> bool:
        return juror_id in self._jurors

    def _require(self, juror_id: str) -> JurorProfile:
        try:
            return self._jurors[juror_id]
        except KeyError:
            raise KeyError(f"Juror {juror_id!r} is not tracked in this run") from None

    def effective_limit(self, juror_id: str) -> int:
        juror = self._require(juror_id)
        return juror.evaluation_limit if juror.evaluation_limit is not None else self.target

    def load(self, juror_id: str) -> int:
        self._require(juror_id)
        return self._current[juror_id] + self._tentative[juror_id]

    def reserve(self, juror_id: str) -> None:
        """Add one tentative assignment. Limits are not enforced here."""
        self._require(juror_id)
        self._tentative[juror_id] += 1
        if self.load(juror_id) > self.effective_limit(juror_id):
            log.debug("Juror %s reserved above limit (%d > %d)",
                      juror_id, self.load(juror_id), self.effective_limit(juror_id))

    def release(self, juror_id: str) -> None:
        """Drop one tentative assignment; underflow is a caller bug."""
        self._require(juror_id)
        if self._tentative[juror_id] <= 0:
            raise WorkloadUnderflowError(
                f"Release for juror {juror_id!r} without a matching reservation"
            )
        self._tentative[juror_id] -= 1

    def entry(self, juror_id: str) -> WorkloadEntry:
        juror = self._require(juror_id)
        return WorkloadEntry(
            juror_id=juror_id,
            juror_name=juror.name,
            current_assignments=self._current[juror_id],
            proposed_assignments=self._current[juror_id] + self._tentative[juror_id],
            target_assignments=self.target,
            effective_limit=self.effective_limit(juror_id),
            is_custom_limit=juror.evaluation_limit is not None,
        )

    def snapshot(self) -> list[WorkloadEntry]:
        return [self.entry(jid) for jid in self._jurors]

    def snapshot_map(self) -> dict[str, WorkloadEntry]:
        return {jid: self.entry(jid) for jid in self._jurors}

    def deltas(self, baseline: Iterable[WorkloadEntry]) -> dict[str, int]:
        """Projected-load change per juror relative to an earlier snapshot."""
        before = {e.juror_id: e.proposed_assignments for e in baseline}
        return {jid: self.load(jid) - before.get(jid, self._current[jid]) for jid in self._jurors}

    def release_all(self) -> int:
        """Discard every tentative reservation. Returns how many were dropped."""
        dropped = sum(self._tentative.values())
        for jid in self._tentative:
            self._tentative[jid] = 0
        return dropped
