"""Tests for all-or-nothing assignment commits."""
from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from jurymatch.committer import AssignmentCommitter, CommitConflictError, CommitFailedError
from jurymatch.config import EngineSettings
from jurymatch.generator import ProposalGenerator
from jurymatch.models import Assignment, Base, Juror, Startup
from jurymatch.repositories import SqlAssignmentRepository
from jurymatch.review import InvalidTransitionError, ReviewSession, ReviewState
from jurymatch.types import AssignmentRecord, JurorProfile, RoundConfig, StartupProfile

ROUND = "screening"


@pytest.fixture()
def db_session():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        for sid in ("S1", "S2"):
            session.add(Startup(id=sid, name=f"Startup {sid}"))
        for jid in ("J1", "J2", "J3"):
            session.add(Juror(id=jid, name=f"Juror {jid}"))
        session.commit()
        yield session


def _count(session: Session) -> int:
    return session.execute(select(func.count(Assignment.id))).scalar_one()


def _record(sid: str, jid: str, round_name: str = ROUND) -> AssignmentRecord:
    return AssignmentRecord(startup_id=sid, juror_id=jid, round_name=round_name)


def _review(accept: bool = True) -> ReviewSession:
    generation = asyncio.run(ProposalGenerator(settings=EngineSettings()).generate(
        [StartupProfile(id="S1", name="Startup S1"), StartupProfile(id="S2", name="Startup S2")],
        [JurorProfile(id=j, name=f"Juror {j}") for j in ("J1", "J2", "J3")],
        [], RoundConfig(target_jurors_per_startup=1), round_name=ROUND,
    ))
    review = ReviewSession(generation)
    if accept:
        review.accept_all()
    return review


class TestCommitRecords:
    def test_inserts_all(self, db_session):
        committer = AssignmentCommitter(SqlAssignmentRepository(db_session))
        result = committer.commit_records(ROUND, [_record("S1", "J1"), _record("S2", "J2")])
        assert result.inserted == 2
        assert _count(db_session) == 2
        assert result.to_dict()["round_name"] == ROUND

    def test_existing_pairing_aborts_whole_batch(self, db_session):
        repo = SqlAssignmentRepository(db_session)
        repo.insert_assignments([_record("S1", "J1")])
        committer = AssignmentCommitter(repo)
        with pytest.raises(CommitConflictError) as exc_info:
            committer.commit_records(ROUND, [_record("S2", "J2"), _record("S1", "J1")])
        assert [c.key for c in exc_info.value.conflicts] == [("S1", "J1", ROUND)]
        assert _count(db_session) == 1

    def test_same_pair_in_other_round_is_fine(self, db_session):
        repo = SqlAssignmentRepository(db_session)
        repo.insert_assignments([_record("S1", "J1", "finals")])
        AssignmentCommitter(repo).commit_records(ROUND, [_record("S1", "J1")])
        assert _count(db_session) == 2

    def test_repeated_pair_in_batch(self, db_session):
        committer = AssignmentCommitter(SqlAssignmentRepository(db_session))
        with pytest.raises(CommitConflictError, match="Duplicate pairings"):
            committer.commit_records(ROUND, [_record("S1", "J1"), _record("S1", "J1")])
        assert _count(db_session) == 0

    def test_wrong_round_rejected(self, db_session):
        committer = AssignmentCommitter(SqlAssignmentRepository(db_session))
        with pytest.raises(ValueError):
            committer.commit_records(ROUND, [_record("S1", "J1", "finals")])

    def test_withdrawn_pairing_is_a_conflict(self, db_session):
        db_session.add(Assignment(startup_id="S1", juror_id="J1", round_name=ROUND, status="withdrawn"))
        db_session.commit()
        committer = AssignmentCommitter(SqlAssignmentRepository(db_session))
        with pytest.raises(CommitConflictError, match="1 pairing\\(s\\) were withdrawn") as info:
            committer.commit_records(ROUND, [_record("S2", "J2"), _record("S1", "J1")])
        assert info.value.conflicts == [_record("S1", "J1")]
        assert _count(db_session) == 1

    def test_store_level_duplicate_maps_to_conflict(self, db_session):
        repo = SqlAssignmentRepository(db_session)
        stale = MagicMock(wraps=repo)
        stale.list_assignments.return_value = []
        repo.insert_assignments([_record("S1", "J1")])
        with pytest.raises(CommitConflictError):
            AssignmentCommitter(stale).commit_records(ROUND, [_record("S2", "J2"), _record("S1", "J1")])
        assert _count(db_session) == 1

    def test_persistence_failure(self):
        repo = MagicMock()
        repo.list_assignments.return_value = []
        repo.list_withdrawn.return_value = []
        repo.insert_assignments.side_effect = RuntimeError("disk full")
        with pytest.raises(CommitFailedError, match="disk full"):
            AssignmentCommitter(repo).commit_records(ROUND, [_record("S1", "J1")])
        repo.insert_assignments.assert_called_once()


class TestCommitReview:
    def test_commits_approved_rows(self, db_session):
        review = _review()
        result = AssignmentCommitter(SqlAssignmentRepository(db_session)).commit(review)
        assert result.inserted == 2
        assert review.state is ReviewState.COMMITTED
        assert _count(db_session) == 2

    def test_rejects_unapproved_session(self, db_session):
        review = _review(accept=False)
        with pytest.raises(InvalidTransitionError):
            AssignmentCommitter(SqlAssignmentRepository(db_session)).commit(review)
        assert _count(db_session) == 0

    def test_conflict_leaves_session_approved(self, db_session):
        review = _review()
        SqlAssignmentRepository(db_session).insert_assignments(review.approved_assignments()[:1])
        with pytest.raises(CommitConflictError):
            AssignmentCommitter(SqlAssignmentRepository(db_session)).commit(review)
        assert review.state is ReviewState.APPROVED
        assert _count(db_session) == 1
