"""Tests for run wiring, coverage/workload validation and data-consistency checks."""
from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from jurymatch import services
from jurymatch.config import EngineSettings, get_settings
from jurymatch.models import Assignment, Base, InterestSignal, Juror, JurorConflict, Startup
from jurymatch.repositories import SqlConfigStore, dump_list
from jurymatch.review import ReviewState
from jurymatch.types import AssignmentRecord, JurorProfile, RoundConfig, StartupProfile

ROUND = "screening"


@pytest.fixture()
def db_session():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        session.add_all([
            Startup(id="S1", name="PayFlow", stage="Seed", verticals_json=dump_list(["Fintech"]),
                    regions_json=dump_list(["Europe"])),
            Startup(id="S2", name="CareLoop", stage="Series A", verticals_json=dump_list(["HealthTech"]),
                    regions_json=dump_list(["US"])),
            Juror(id="J1", name="Ada", target_verticals_json=dump_list(["Fintech"]),
                  preferred_stages_json=dump_list(["Seed"]), preferred_regions_json=dump_list(["Europe"])),
            Juror(id="J2", name="Bo", target_verticals_json=dump_list(["HealthTech"])),
            Juror(id="J3", name="Cy"),
        ])
        session.commit()
        SqlConfigStore(session).save_round_config(ROUND, RoundConfig(target_jurors_per_startup=2))
        yield session


class TestGenerateProposals:
    @pytest.mark.asyncio
    async def test_opens_review_from_database(self, db_session):
        review = await services.generate_proposals(db_session, ROUND, settings=EngineSettings())
        assert review.state is ReviewState.DRAFT
        assert review.selected("S1") == ["J1", "J3"]
        assert review.selected("S2") == ["J2", "J3"]

    @pytest.mark.asyncio
    async def test_uses_conflicts_assignments_and_interest(self, db_session):
        db_session.add_all([
            JurorConflict(juror_id="J1", startup_id="S1"),
            Assignment(startup_id="S2", juror_id="J2", round_name=ROUND),
            InterestSignal(juror_id="J2", startup_id="S1", round_name=ROUND, wants_pitch_session=True),
        ])
        db_session.commit()
        review = await services.generate_proposals(db_session, ROUND, settings=EngineSettings())
        s1 = review.proposal("S1")
        assert "J1" not in s1.candidate_ids
        assert set(s1.candidate_ids) == {"J2", "J3"}
        j2 = next(c for c in s1.candidates if c.juror_id == "J2")
        assert j2.interest == 1.5
        assert review.proposal("S2").needed == 1

    @pytest.mark.asyncio
    async def test_withdrawn_pairing_not_reproposed(self, db_session):
        db_session.add(Assignment(startup_id="S1", juror_id="J1", round_name=ROUND, status="withdrawn"))
        db_session.commit()
        review = await services.generate_proposals(db_session, ROUND, settings=EngineSettings())
        assert "J1" not in review.selected("S1")
        assert review.proposal("S1").explanations["J1"].reason_code == "withdrawn"
        review.accept_all()
        assert services.commit_review(db_session, review).inserted == 4

    @pytest.mark.asyncio
    async def test_explicit_config_overrides_store(self, db_session):
        review = await services.generate_proposals(
            db_session, ROUND, config=RoundConfig(target_jurors_per_startup=1), settings=EngineSettings(),
        )
        assert review.selected("S1") == ["J1"]

    @pytest.mark.asyncio
    async def test_commit_review(self, db_session):
        review = await services.generate_proposals(db_session, ROUND, settings=EngineSettings())
        review.accept_all()
        result = services.commit_review(db_session, review)
        assert result.inserted == 4
        report = services.round_report(db_session, ROUND)
        assert report["under_assigned_summary"] == ""


class TestRegistry:
    def test_add_get_discard(self):
        registry = services.ReviewRegistry()
        marker = object()
        review_id = registry.add(marker)
        assert registry.get(review_id) is marker
        registry.discard(review_id)
        assert registry.get(review_id) is None

    def test_sessions_expire(self):
        now = [1000.0]
        registry = services.ReviewRegistry(ttl_seconds=60, max_sessions=10, clock=lambda: now[0])
        old = registry.add(object())
        now[0] += 30
        fresh = registry.add(object())
        now[0] += 30
        assert registry.get(old) is None
        assert registry.get(fresh) is not None
        assert len(registry) == 1

    def test_oldest_dropped_past_cap(self):
        now = [0.0]

        def clock():
            now[0] += 1
            return now[0]

        registry = services.ReviewRegistry(ttl_seconds=3600, max_sessions=2, clock=clock)
        ids = [registry.add(object()) for _ in range(3)]
        assert registry.get(ids[0]) is None
        assert all(registry.get(rid) is not None for rid in ids[1:])
        assert len(registry) == 2

    def test_defaults_from_settings(self):
        registry = services.ReviewRegistry()
        defaults = get_settings()
        assert registry.ttl_seconds == defaults.review_ttl_seconds
        assert registry.max_sessions == defaults.max_open_reviews


STARTUPS = [StartupProfile(id="S1", name="PayFlow"), StartupProfile(id="S2", name="CareLoop")]
JURORS = [JurorProfile(id="J1", name="Ada"), JurorProfile(id="J2", name="Bo", evaluation_limit=1)]


def _a(sid: str, jid: str) -> AssignmentRecord:
    return AssignmentRecord(startup_id=sid, juror_id=jid, round_name=ROUND)


class TestCoverage:
    def test_severity(self):
        coverage = services.validate_startup_coverage(STARTUPS, [_a("S1", "J1")], 3)
        assert [(c.assigned_count, c.severity) for c in coverage] == [(1, "warning"), (0, "critical")]
        assert services.under_assigned_summary(coverage) == (
            "2 startup(s) below minimum: PayFlow (1/3), CareLoop (0/3)"
        )

    def test_fully_covered(self):
        coverage = services.validate_startup_coverage(STARTUPS[:1], [_a("S1", "J1")], 1)
        assert coverage[0].severity == "none"
        assert services.under_assigned_summary(coverage) == ""

    def test_summary_capped(self):
        startups = [StartupProfile(id=f"S{i}", name=f"N{i}") for i in range(7)]
        summary = services.under_assigned_summary(services.validate_startup_coverage(startups, [], 1))
        assert summary.startswith("7 startup(s) below minimum: N0 (0/1)")
        assert summary.endswith("N4 (0/1) and 2 more")


class TestWorkloadValidation:
    def test_dynamic_and_custom_limits(self):
        loads = services.validate_juror_workloads(
            JURORS, [_a("S1", "J2"), _a("S2", "J2"), _a("S1", "J1")], total_startups=2, per_startup=3,
        )
        j1, j2 = loads
        assert (j1.limit, j1.is_custom_limit, j1.is_over_limit) == (3, False, False)
        assert (j2.limit, j2.is_custom_limit, j2.is_over_limit) == (1, True, True)
        assert services.over_limit_summary(loads) == "1 juror(s) over limit: Bo (2/1)"

    def test_at_limit(self):
        [load] = services.validate_juror_workloads(JURORS[1:], [_a("S1", "J2")], 2, 1)
        assert load.is_at_limit and not load.is_over_limit

    def test_fallback_without_jurors(self):
        assert services.dynamic_limit(5, 0, 3) == services.FALLBACK_DYNAMIC_LIMIT


class TestInconsistencies:
    def test_mismatches_and_missing_data(self):
        startups = [
            StartupProfile(id="S1", name="PayFlow", stage="Seed", verticals=["Payments"], regions=["EU"]),
            StartupProfile(id="S2", name="SpaceCo", stage="Series B", verticals=["SpaceTech"],
                           regions=["Asia"]),
            StartupProfile(id="S3", name="Blank"),
        ]
        jurors = [
            JurorProfile(id="J1", name="Ada", target_verticals=["Fintech"], preferred_stages=["Seed"],
                         preferred_regions=["Europe"]),
            JurorProfile(id="J2", name="Bo"),
        ]
        found = {(i.type, i.severity): i.items for i in services.detect_data_inconsistencies(startups, jurors)}
        assert found[("vertical_mismatch", "high")] == ["SpaceCo"]
        assert found[("stage_mismatch", "medium")] == ["SpaceCo"]
        assert found[("region_mismatch", "low")] == ["SpaceCo"]
        missing = [i for i in services.detect_data_inconsistencies(startups, jurors) if i.type == "missing_data"]
        assert [m.items for m in missing] == [["Blank"], ["Bo"]]

    def test_global_juror_covers_every_region(self):
        startups = [StartupProfile(id="S1", name="A", verticals=["Fintech"], regions=["Asia"])]
        jurors = [JurorProfile(id="J1", name="Ada", target_verticals=["Fintech"], preferred_regions=["Global"])]
        assert services.detect_data_inconsistencies(startups, jurors) == []

    def test_round_report(self, db_session):
        report = services.round_report(db_session, ROUND)
        assert report["under_assigned_summary"].startswith("2 startup(s) below minimum")
        assert [w["limit"] for w in report["workloads"]] == [2, 2, 2]
        assert [i["type"] for i in report["inconsistencies"]] == [
            "stage_mismatch", "region_mismatch", "missing_data",
        ]
