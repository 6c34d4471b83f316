"""
Unit Tests for the Task & Goal Model

Test coverage for:
- Progress transitions (completion clears stuck, staleness anchor)
- Status derivation including abandoned
- Stored-JSON normalization
- Pillar refresh and task queries
"""

from datetime import timedelta

import pytest

from antidip.task_model import (
    AppSnapshot,
    Pillar,
    Sprint,
    SprintDay,
    Task,
    TaskStatus,
    apply_progress_update,
    create_task,
    format_timestamp,
    get_completion_stats,
    get_tasks_needing_attention,
    parse_timestamp,
    refresh_pillar,
    refresh_stuck_state,
    sort_tasks_by_priority,
)

from tests.conftest import NOW, days_ago, make_pillar, make_task


# -----------------------------------------------------------------------------
# Test 1: Validation
# -----------------------------------------------------------------------------
class TestTaskValidation:
    """Tasks validate their fields on creation."""

    def test_progress_out_of_range(self):
        with pytest.raises(ValueError):
            make_task(progress=101)
        with pytest.raises(ValueError):
            make_task(progress=-1)

    def test_invalid_enum_values(self):
        with pytest.raises(ValueError):
            make_task(type="sprint")
        with pytest.raises(ValueError):
            make_task(status="paused")

    def test_completed_progress_requires_done(self):
        with pytest.raises(ValueError):
            Task(id=1, name="Ship", progress=100, status="active")
        with pytest.raises(ValueError):
            Task(id=1, name="Ship", progress=100, status="abandoned")

    def test_done_requires_full_progress(self):
        with pytest.raises(ValueError):
            make_task(progress=40, status="done")

    def test_stuck_only_inside_band(self):
        assert make_task(progress=90, status="stuck").status == "stuck"
        assert make_task(progress=99, status="stuck").status == "stuck"
        with pytest.raises(ValueError):
            make_task(progress=50, status="stuck")

    def test_abandoned_allowed_below_full_progress(self):
        assert make_task(progress=30, status="abandoned").status == "abandoned"

    def test_create_task_defaults(self):
        task = create_task("Write docs", now=NOW, task_id=42)
        assert task.progress == 0
        assert task.status == "active"
        assert task.created_at == task.last_progress_update == format_timestamp(NOW)


# -----------------------------------------------------------------------------
# Test 2: Progress transitions
# -----------------------------------------------------------------------------
class TestProgressTransitions:
    """apply_progress_update keeps derived fields consistent."""

    @pytest.mark.parametrize("prior_status,prior_progress,stuck", [
        ("stuck", 95, True),
        ("active", 40, False),
        ("abandoned", 70, False),
        ("active", 0, False),
    ])
    def test_completion_clears_stuck(self, prior_status, prior_progress, stuck):
        task = make_task(progress=prior_progress, updated_days_ago=10, status=prior_status, stuck_at_ninety=stuck)
        done = apply_progress_update(task, 100, NOW)
        assert done.stuck_at_ninety is False
        assert done.status == "done"
        assert done.completed_at == format_timestamp(NOW)

    def test_completed_at_set_once(self):
        task = make_task(progress=100, updated_days_ago=2, completed_at=days_ago(2))
        reopened = apply_progress_update(task, 90, NOW)
        redone = apply_progress_update(reopened, 100, NOW + timedelta(days=1))
        assert redone.completed_at == days_ago(2)

    def test_unchanged_progress_keeps_anchor(self):
        task = make_task(progress=95, updated_days_ago=5)
        same = apply_progress_update(task, 95, NOW)
        assert same.last_progress_update == task.last_progress_update
        assert same.stuck_at_ninety is True
        assert same.status == "stuck"

    def test_changed_progress_moves_anchor(self):
        task = make_task(progress=90, updated_days_ago=5, status="stuck", stuck_at_ninety=True)
        moved = apply_progress_update(task, 95, NOW)
        assert moved.last_progress_update == format_timestamp(NOW)
        assert moved.stuck_at_ninety is False
        assert moved.status == "active"

    def test_progress_is_clamped(self):
        task = make_task(progress=50)
        assert apply_progress_update(task, 150, NOW).progress == 100
        assert apply_progress_update(task, -20, NOW).progress == 0

    def test_abandoned_stays_abandoned_below_100(self):
        task = make_task(progress=30, status="abandoned")
        assert apply_progress_update(task, 60, NOW).status == "abandoned"

    def test_refresh_stuck_state_never_touches_progress(self):
        task = make_task(progress=93, updated_days_ago=6)
        refreshed = refresh_stuck_state(task, NOW)
        assert refreshed.progress == 93
        assert refreshed.status == TaskStatus.STUCK.value
        assert refreshed.stuck_at_ninety is True


# -----------------------------------------------------------------------------
# Test 3: Stored JSON
# -----------------------------------------------------------------------------
class TestSerialization:
    """from_dict normalizes stored data; to_dict uses host field names."""

    def test_from_dict_normalizes(self):
        task = Task.from_dict({
            "id": "t1",
            "name": "Ship",
            "type": "weird",
            "priority": "urgent",
            "progress": 99.6,
            "lastProgressUpdate": "2026-03-01T10:00:00.000Z",
        })
        assert task.type == "build"
        assert task.priority == "medium"
        assert task.progress == 100
        assert task.status == "done"

    @pytest.mark.parametrize("progress,stored,expected", [
        (40, "done", "active"),
        (100, "active", "done"),
        (100, "abandoned", "done"),
        (50, "stuck", "active"),
        (95, "stuck", "stuck"),
        (60, "abandoned", "abandoned"),
    ])
    def test_from_dict_reconciles_status(self, progress, stored, expected):
        task = Task.from_dict({"id": 1, "progress": progress, "status": stored})
        assert task.status == expected

    def test_from_dict_clears_stuck_flag_when_complete(self):
        task = Task.from_dict({"id": 1, "progress": 100, "status": "stuck", "stuckAtNinety": True})
        assert task.status == "done"
        assert task.stuck_at_ninety is False

    def test_from_dict_rejects_missing_id(self):
        with pytest.raises(ValueError):
            Task.from_dict({"progress": 10})

    def test_from_dict_rejects_non_numeric_progress(self):
        with pytest.raises(ValueError):
            Task.from_dict({"id": 1, "progress": "lots"})

    def test_to_dict_camel_case(self):
        data = make_task(progress=10, updated_days_ago=1).to_dict()
        assert "lastProgressUpdate" in data
        assert "stuckAtNinety" in data

    def test_parse_timestamp_z_suffix(self):
        parsed = parse_timestamp("2026-03-10T12:00:00.000Z")
        assert parsed == NOW
        assert parse_timestamp("garbage") is None
        assert parse_timestamp(None) is None


# -----------------------------------------------------------------------------
# Test 4: Pillars and queries
# -----------------------------------------------------------------------------
class TestPillarsAndQueries:
    """Goal-level recomputation and task helpers."""

    def test_refresh_pillar_completion_and_alert(self):
        tasks = [make_task(i, progress=100) for i in range(9)] + [make_task(9, progress=95, updated_days_ago=5)]
        pillar = make_pillar(tasks=tasks, last_activity_date=days_ago(5))
        refreshed = refresh_pillar(pillar, NOW)
        assert refreshed.completion == 90
        assert refreshed.days_stuck == 5
        assert refreshed.ninety_percent_alert is True
        assert refreshed.tasks[-1].stuck_at_ninety is True

    def test_refresh_pillar_without_activity_date(self):
        pillar = make_pillar(tasks=[make_task(1, progress=100)], days_stuck=2)
        refreshed = refresh_pillar(pillar, NOW)
        assert refreshed.completion == 100
        assert refreshed.days_stuck == 2
        assert refreshed.ninety_percent_alert is False

    def test_sort_by_priority(self):
        tasks = [
            make_task(1, priority="low"),
            make_task(2, priority="critical"),
            make_task(3, priority="medium"),
        ]
        assert [t.id for t in sort_tasks_by_priority(tasks)] == [2, 3, 1]

    def test_needing_attention_and_stats(self):
        tasks = [
            make_task(1, progress=85),
            make_task(2, progress=10),
            make_task(3, progress=100),
            make_task(4, progress=20, due_date=days_ago(1)),
        ]
        assert [t.id for t in get_tasks_needing_attention(tasks, NOW)] == [1, 4]
        stats = get_completion_stats(tasks)
        assert stats["total"] == 4
        assert stats["completed"] == 1
        assert stats["average_progress"] == 54

    def test_snapshot_condition_context(self):
        snapshot = AppSnapshot(
            pillars=(make_pillar(completion=92, days_stuck=4),),
            sprint=Sprint(progress=(SprintDay("mon", True), SprintDay("tue"))),
        )
        context = snapshot.condition_context()
        assert context["pillars"][0]["days_stuck"] == 4
        assert context["sprint"]["progress"][1] == {"day": "tue", "checked": False}
        assert isinstance(snapshot.pillars[0], Pillar)
