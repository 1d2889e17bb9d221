"""
Unit tests for store resolution, degraded writes and read-side reconciliation.
"""

import pytest
from dataclasses import dataclass
from datetime import datetime, timedelta

from studybuddy.models.models import StudyActivity
from studybuddy.services.session_resolver import (
    DegradationLog,
    StoreKind,
    degradation_log,
    normalize_score,
    persist,
    reconcile_list,
    report_degraded,
    resolve_store,
    round_half_up,
)
from studybuddy.utils.guest_store import GuestStore, LRUStore


@dataclass
class Record:
    id: str
    at: datetime
    source: str = "db"
    owner_id: str = None


class TestResolveStore:

    @pytest.mark.unit
    def test_guest_is_ephemeral(self):
        assert resolve_store(None) == StoreKind.EPHEMERAL

    @pytest.mark.unit
    def test_user_is_persistent(self, test_user):
        assert resolve_store(test_user) == StoreKind.PERSISTENT


class TestScores:

    @pytest.mark.unit
    @pytest.mark.parametrize("score,expected", [
        (85, 85),
        ({"correct": 3, "total": 4, "percentage": 75}, 75),
        (62.5, 63),
        (150, 100),
        (-3, 0),
        ("90", 90),
        ("n/a", 0),
        (None, 0),
        (True, 0),
        ({}, 0),
        (float("inf"), 0),
    ])
    def test_normalize_score(self, score, expected):
        assert normalize_score(score) == expected

    @pytest.mark.unit
    def test_round_half_up(self):
        assert round_half_up(12.5) == 13
        assert round_half_up(12.49) == 12
        assert round_half_up(0.5) == 1


class TestReconcile:

    @pytest.mark.unit
    def test_union_sorted_most_recent_first(self):
        now = datetime(2024, 1, 1)
        stored = [Record("a", now), Record("b", now + timedelta(hours=2))]
        memory = [Record("c", now + timedelta(hours=1), "memory")]

        merged = reconcile_list(stored, memory, sort_key=lambda r: r.at)
        assert [r.id for r in merged] == ["b", "c", "a"]

    @pytest.mark.unit
    def test_memory_wins_on_collision(self):
        now = datetime(2024, 1, 1)
        merged = reconcile_list(
            [Record("a", now)],
            [Record("a", now + timedelta(minutes=5), "memory")],
            sort_key=lambda r: r.at
        )
        assert len(merged) == 1
        assert merged[0].source == "memory"


class TestPersist:

    @pytest.mark.unit
    def test_success_returns_none(self, db, test_user):
        activity = StudyActivity(user_id=test_user.id, activity_type="study_session", points=0)
        assert persist(db, activity) is None
        assert db.query(StudyActivity).count() == 1

    @pytest.mark.unit
    def test_failure_rolls_back_and_returns_error(self, db, test_user, failing_commit):
        activity = StudyActivity(user_id=test_user.id, activity_type="study_session", points=0)

        error = persist(db, activity)
        assert "database is locked" in error
        assert db.query(StudyActivity).count() == 0

    @pytest.mark.unit
    def test_report_degraded_is_counted(self):
        event = report_degraded("quiz", "q-1", "user-1", "disk full")

        assert degradation_log.count == 1
        assert degradation_log.events() == [event]
        assert event.to_dict()["resourceKind"] == "quiz"

    @pytest.mark.unit
    def test_log_is_bounded_but_count_is_not(self):
        log = DegradationLog(maxlen=3)
        for i in range(5):
            log.record(report_degraded("quiz", f"q-{i}", None, "err"))

        assert log.count == 5
        assert [e.record_id for e in log.events()] == ["q-2", "q-3", "q-4"]


class TestGuestStore:

    @pytest.mark.unit
    def test_lru_eviction(self):
        store = LRUStore("test", maxsize=2)
        store.set("a", 1)
        store.set("b", 2)
        store.get("a")
        store.set("c", 3)

        assert "a" in store
        assert "b" not in store
        assert len(store) == 2

    @pytest.mark.unit
    def test_owned_by(self):
        store = GuestStore()
        now = datetime.utcnow()
        store.quizzes.set("g", Record("g", now, owner_id=None))
        store.quizzes.set("u", Record("u", now, owner_id="user-1"))

        assert [r.id for r in store.quizzes.owned_by(None)] == ["g"]
        assert [r.id for r in store.quizzes.owned_by("user-1")] == ["u"]

    @pytest.mark.unit
    def test_resource_kinds_are_separate(self):
        store = GuestStore(maxsize=1)
        store.conversations.set("x", "conversation")
        store.quizzes.set("y", "quiz")

        assert "x" in store.conversations
        assert "y" in store.quizzes
        store.clear()
        assert len(store.conversations) == 0
