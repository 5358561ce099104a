"""Collaborator interfaces consumed by the engine, with SQLAlchemy implementations.

The engine only depends on the Protocols; the ``Sql*`` classes adapt the
ORM tables in ``jurymatch.models`` to them. None of them commit except
``SqlAssignmentRepository.insert_assignments`` and ``SqlConfigStore.save_round_config``.
"""
from __future__ import annotations

import json
import logging
from typing import Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from jurymatch.models import Assignment, InterestSignal, Juror, JurorConflict, MatchmakingConfig, Startup
from jurymatch.types import (
    WEIGHT_FIELDS, AssignmentRecord, ConflictRecord, JurorProfile, RoundConfig, StartupProfile,
)
from jurymatch.utils import json_list

log = logging.getLogger(__name__)


class DuplicateAssignmentError(Exception):
    """The store refused a write because a pairing already exists."""


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class StartupRepository(Protocol):
    def list_startups(self, round_filter: str | None = None) -> list[StartupProfile]: ...


class JurorRepository(Protocol):
    def list_jurors(self) -> list[JurorProfile]: ...


class AssignmentRepository(Protocol):
    def list_assignments(self, round_name: str) -> list[AssignmentRecord]: ...

    def list_withdrawn(self, round_name: str) -> list[AssignmentRecord]: ...

    def insert_assignments(self, assignments: list[AssignmentRecord]) -> None: ...


class InterestSignalProvider(Protocol):
    def has_explicit_interest(self, juror_id: str, startup_id: str, round_name: str) -> bool: ...


class ConflictRepository(Protocol):
    def list_conflicts(self) -> list[ConflictRecord]: ...


class ConfigStore(Protocol):
    def get_round_config(self, round_name: str) -> RoundConfig: ...


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def startup_profile(row: Startup) -> StartupProfile:
    return StartupProfile(
        id=row.id, name=row.name, stage=row.stage or "",
        verticals=json_list(row.verticals_json),
        regions=json_list(row.regions_json),
        description=row.description or "",
        rounds=json_list(row.rounds_json),
    )


def juror_profile(row: Juror) -> JurorProfile:
    return JurorProfile(
        id=row.id, name=row.name, email=row.email or "",
        company=row.company or "", job_title=row.job_title or "",
        preferred_regions=json_list(row.preferred_regions_json),
        target_verticals=json_list(row.target_verticals_json),
        preferred_stages=json_list(row.preferred_stages_json),
        thesis_keywords=json_list(row.thesis_keywords_json),
        evaluation_limit=row.evaluation_limit,
    )


# ---------------------------------------------------------------------------
# SQLAlchemy implementations
# ---------------------------------------------------------------------------


class SqlStartupRepository:
    def __init__(self, session: Session):
        self.session = session

    def list_startups(self, round_filter: str | None = None) -> list[StartupProfile]:
        rows = self.session.execute(select(Startup).order_by(Startup.id)).scalars().all()
        profiles = [startup_profile(r) for r in rows]
        if round_filter:
            # an empty rounds list means eligible for every round
            profiles = [p for p in profiles if not p.rounds or round_filter in p.rounds]
        return profiles


class SqlJurorRepository:
    def __init__(self, session: Session):
        self.session = session

    def list_jurors(self) -> list[JurorProfile]:
        rows = self.session.execute(select(Juror).order_by(Juror.id)).scalars().all()
        return [juror_profile(r) for r in rows]


class SqlAssignmentRepository:
    def __init__(self, session: Session):
        self.session = session

    def list_assignments(self, round_name: str) -> list[AssignmentRecord]:
        rows = self.session.execute(
            select(Assignment.startup_id, Assignment.juror_id)
            .where(Assignment.round_name == round_name, Assignment.status != "withdrawn")
            .order_by(Assignment.id)
        ).all()
        return [AssignmentRecord(startup_id=s, juror_id=j, round_name=round_name) for s, j in rows]

    def list_withdrawn(self, round_name: str) -> list[AssignmentRecord]:
        """Withdrawn pairings still hold their unique key, so they cannot be re-proposed."""
        rows = self.session.execute(
            select(Assignment.startup_id, Assignment.juror_id)
            .where(Assignment.round_name == round_name, Assignment.status == "withdrawn")
            .order_by(Assignment.id)
        ).all()
        return [AssignmentRecord(startup_id=s, juror_id=j, round_name=round_name) for s, j in rows]

    def insert_assignments(self, assignments: list[AssignmentRecord]) -> None:
        """Insert all rows in one transaction; nothing is written on failure."""
        try:
            for a in assignments:
                self.session.add(Assignment(
                    startup_id=a.startup_id, juror_id=a.juror_id, round_name=a.round_name,
                ))
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateAssignmentError(str(exc.orig)) from exc
        except Exception:
            self.session.rollback()
            raise


class SqlInterestSignalProvider:
    """Reads submitted interest flags; caches one round at a time."""

    def __init__(self, session: Session):
        self.session = session
        self._round: str | None = None
        self._pairs: set[tuple[str, str]] = set()

    def _load(self, round_name: str) -> None:
        rows = self.session.execute(
            select(InterestSignal.juror_id, InterestSignal.startup_id).where(
                InterestSignal.round_name == round_name,
                InterestSignal.status == "submitted",
                InterestSignal.wants_pitch_session.is_(True),
            )
        ).all()
        self._pairs = {(j, s) for j, s in rows}
        self._round = round_name

    def has_explicit_interest(self, juror_id: str, startup_id: str, round_name: str) -> bool:
        if self._round != round_name:
            self._load(round_name)
        return (juror_id, startup_id) in self._pairs


class SqlConflictRepository:
    def __init__(self, session: Session):
        self.session = session

    def list_conflicts(self) -> list[ConflictRecord]:
        rows = self.session.execute(select(JurorConflict).order_by(JurorConflict.id)).scalars().all()
        return [
            ConflictRecord(juror_id=r.juror_id, startup_id=r.startup_id, conflict_type=r.conflict_type)
            for r in rows
        ]


class SqlConfigStore:
    def __init__(self, session: Session):
        self.session = session

    def get_round_config(self, round_name: str) -> RoundConfig:
        """Return the stored config, or the defaults when the round has none.

        Raises pydantic ``ValidationError`` if the stored weights are invalid.
        """
        row = self.session.get(MatchmakingConfig, round_name)
        if row is None:
            log.info("No matchmaking config for round %s, using defaults", round_name)
            return RoundConfig()
        return RoundConfig(
            **{f: getattr(row, f) for f in WEIGHT_FIELDS},
            target_jurors_per_startup=row.target_jurors_per_startup,
            top_k_per_juror=row.top_k_per_juror,
            use_ai_enhancement=row.use_ai_enhancement,
            deterministic_seed=row.deterministic_seed,
        )

    def save_round_config(self, round_name: str, config: RoundConfig) -> RoundConfig:
        row = self.session.get(MatchmakingConfig, round_name)
        if row is None:
            row = MatchmakingConfig(round_name=round_name)
            self.session.add(row)
        for name, value in config.model_dump().items():
            setattr(row, name, value)
        self.session.commit()
        return config


def dump_list(values: Iterable[str]) -> str:
    """Serialize a list for a ``*_json`` column."""
    return json.dumps([v for v in values if v])
