"""
Tests for worker eligibility and ranking.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from atelier.services import worker_assignment_service as was
from atelier.services.exceptions import StageNotFound, ValidationError, WorkerNotFound
from atelier.utils.config import reset_config


def _candidate(worker_id, primary=False, efficiency=1.0, priority=1, last=None, **extra):
    return SimpleNamespace(
        worker_id=worker_id,
        is_primary_assignment=primary,
        efficiency_rating=efficiency,
        priority_level=priority,
        experience_months=extra.get("experience_months", 0),
        skill_level=extra.get("skill_level", "intermediate"),
        last_assigned_at=last,
    )


class TestRankCandidates:
    """rank_candidates() is a pure ordering."""

    def test_primary_assignment_wins(self):
        ranked = was.rank_candidates(
            [_candidate(1, efficiency=1.8), _candidate(2, primary=True, efficiency=0.9)]
        )

        assert [c.worker_id for c in ranked] == [2, 1]

    def test_efficiency_then_priority(self):
        ranked = was.rank_candidates(
            [
                _candidate(1, efficiency=1.0, priority=5),
                _candidate(2, efficiency=1.2, priority=1),
                _candidate(3, efficiency=1.0, priority=2),
            ]
        )

        assert [c.worker_id for c in ranked] == [2, 1, 3]

    def test_never_assigned_before_least_recent(self):
        now = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)
        ranked = was.rank_candidates(
            [
                _candidate(1, last=now),
                _candidate(2, last=now - timedelta(hours=3)),
                _candidate(3),
            ]
        )

        assert [c.worker_id for c in ranked] == [3, 2, 1]

    def test_naive_timestamps_compare_as_utc(self):
        aware = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)
        naive = datetime(2026, 5, 1, 8, 0)

        ranked = was.rank_candidates([_candidate(1, last=aware), _candidate(2, last=naive)])

        assert [c.worker_id for c in ranked] == [2, 1]

    def test_worker_id_breaks_full_ties(self):
        ranked = was.rank_candidates([_candidate(9), _candidate(4), _candidate(6)])

        assert [c.worker_id for c in ranked] == [4, 6, 9]

    def test_explicit_ranking_overrides_default(self):
        ranked = was.rank_candidates(
            [
                _candidate(1, primary=True, skill_level="beginner"),
                _candidate(2, skill_level="expert"),
            ],
            ranking=["skill_level"],
        )

        assert [c.worker_id for c in ranked] == [2, 1]

    def test_ranking_from_environment(self, monkeypatch):
        monkeypatch.setenv("ATELIER_ASSIGNMENT_RANKING", "experience_months, bogus")
        reset_config()
        try:
            ranked = was.rank_candidates(
                [
                    _candidate(1, primary=True, experience_months=3),
                    _candidate(2, experience_months=40),
                ]
            )
        finally:
            reset_config()

        assert [c.worker_id for c in ranked] == [2, 1]


class TestEligibility:
    """find_eligible_workers() filters before ranking."""

    def test_role_must_match_stage(self, pipeline):
        # Qualified on paper, but a presser cannot take a tailoring stage
        was.add_stage_assignment(pipeline["workers"]["press"], pipeline["stages"]["sew"])

        eligible = was.find_eligible_workers(pipeline["stages"]["sew"])

        assert [w["worker_name"] for w in eligible] == ["Mona"]

    def test_unavailable_workers_excluded(self, pipeline):
        was.set_availability(pipeline["workers"]["sew"], "sick_leave")

        assert was.find_eligible_workers(pipeline["stages"]["sew"]) == []

    def test_inactive_assignment_excluded(self, pipeline):
        backup = was.create_worker("Huda", "tailor", "5.50")
        was.add_stage_assignment(backup["id"], pipeline["stages"]["sew"], is_active=False)

        eligible = was.find_eligible_workers(pipeline["stages"]["sew"])

        assert [w["worker_id"] for w in eligible] == [pipeline["workers"]["sew"]]

    def test_worker_at_capacity_excluded(self, make_order, pipeline):
        make_order()

        assert was.find_eligible_workers(pipeline["stages"]["cut"]) == []

    def test_higher_capacity_keeps_worker_eligible(self, pipeline, make_order):
        was.set_availability(pipeline["workers"]["cut"], "vacation")
        senior = was.create_worker("Yusuf", "cutter", "7.00")
        was.add_stage_assignment(
            senior["id"], pipeline["stages"]["cut"], max_concurrent_tasks=2, is_primary_assignment=True
        )
        make_order()

        eligible = was.find_eligible_workers(pipeline["stages"]["cut"])

        assert [w["worker_id"] for w in eligible] == [senior["id"]]

    def test_exclusion_list(self, pipeline):
        eligible = was.find_eligible_workers(
            pipeline["stages"]["sew"], exclude_worker_ids=[pipeline["workers"]["sew"]]
        )

        assert eligible == []

    def test_ranked_output_is_one_based(self, pipeline):
        backup = was.create_worker("Huda", "tailor", "5.50")
        was.add_stage_assignment(backup["id"], pipeline["stages"]["sew"], efficiency_rating=1.4)

        eligible = was.find_eligible_workers(pipeline["stages"]["sew"])

        assert [(w["rank"], w["worker_name"]) for w in eligible] == [(1, "Huda"), (2, "Mona")]

    def test_unknown_stage(self, test_db):
        with pytest.raises(StageNotFound):
            was.find_eligible_workers(42)


class TestMaintenance:
    """Worker and qualification maintenance."""

    def test_create_worker_validation(self, test_db):
        with pytest.raises(ValidationError) as exc_info:
            was.create_worker(" ", "", hourly_rate=-1)

        assert len(exc_info.value.errors) == 3

    def test_duplicate_assignment_rejected(self, pipeline):
        with pytest.raises(ValidationError, match="already assigned"):
            was.add_stage_assignment(pipeline["workers"]["cut"], pipeline["stages"]["cut"])

    def test_assignment_field_validation(self, pipeline):
        with pytest.raises(ValidationError) as exc_info:
            was.add_stage_assignment(
                pipeline["workers"]["cut"],
                pipeline["stages"]["press"],
                skill_level="grandmaster",
                efficiency_rating=3.0,
                favourite_colour="blue",
            )

        assert len(exc_info.value.errors) == 3

    def test_assignment_unknown_references(self, pipeline):
        with pytest.raises(WorkerNotFound):
            was.add_stage_assignment(999, pipeline["stages"]["cut"])
        with pytest.raises(StageNotFound):
            was.add_stage_assignment(pipeline["workers"]["cut"], 999)

    def test_set_availability_for_one_stage(self, pipeline):
        was.add_stage_assignment(pipeline["workers"]["sew"], pipeline["stages"]["cut"])

        updated = was.set_availability(
            pipeline["workers"]["sew"], "training", stage_id=pipeline["stages"]["sew"]
        )

        assert updated == 1
        assert was.find_eligible_workers(pipeline["stages"]["sew"]) == []

    def test_set_availability_rejects_unknown_status(self, pipeline):
        with pytest.raises(ValidationError):
            was.set_availability(pipeline["workers"]["sew"], "asleep")
