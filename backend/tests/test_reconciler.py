"""Tests for TaskStatusReconciler merging, hash skipping and the refresh loop."""

import asyncio

import pytest

from genorch.config import ReconcilerConfig
from genorch.orchestrator.reconciler import TaskStatusReconciler
from genorch.schemas.generation import ActiveGeneration, GenerationRequest, TaskStatus


@pytest.fixture
def reconciler(clock, sleep):
    return TaskStatusReconciler(ReconcilerConfig(), clock=clock, sleep=sleep)


def active_entry(clock, id, offset_ms=0, status="processing", progress=40.0):
    request = GenerationRequest(
        id=id, config_id="cfg-1", prompt=f"prompt {id}", submitted_at_ms=clock() + offset_ms
    )
    return ActiveGeneration(request=request, status=status, progress=progress, message="Working")


def history_entry(clock, id, offset_ms=0, status="completed"):
    return TaskStatus(
        id=id,
        type="image",
        status=status,
        progress=100 if status == "completed" else 0,
        config_id="cfg-1",
        created_at_ms=clock() + offset_ms,
    )


def test_merge_is_newest_first_with_unique_ids(reconciler, clock):
    active = {
        "a1": active_entry(clock, "a1", offset_ms=-1000),
        "a2": active_entry(clock, "a2", offset_ms=-10, status="pending", progress=0),
    }
    history = [history_entry(clock, "h1", offset_ms=-500), history_entry(clock, "h2", offset_ms=-2000)]

    view = reconciler.reconcile(active, history)

    assert [t.id for t in view] == ["a2", "h1", "a1", "h2"]
    assert len({t.id for t in view}) == len(view)
    assert view[2].progress == 40.0
    assert view[2].message == "Working"


def test_history_entry_wins_over_active_duplicate(reconciler, clock):
    active = {"x": active_entry(clock, "x")}
    history = [history_entry(clock, "x", status="failed")]

    view = reconciler.reconcile(active, history)

    assert len(view) == 1
    assert view[0].status == "failed"


def test_history_older_than_window_is_dropped(reconciler, clock):
    history = [
        history_entry(clock, "recent", offset_ms=-299_000),
        history_entry(clock, "old", offset_ms=-301_000),
    ]

    view = reconciler.reconcile({}, history)

    assert [t.id for t in view] == ["recent"]


def test_window_is_measured_from_finish_time(reconciler, clock):
    slow = history_entry(clock, "slow", offset_ms=-600_000)
    slow.finished_at_ms = clock() - 60_000
    stale = history_entry(clock, "stale", offset_ms=-900_000)
    stale.finished_at_ms = clock() - 400_000

    view = reconciler.reconcile({}, [slow, stale])

    assert [t.id for t in view] == ["slow"]


def test_unchanged_hash_returns_cached_view(reconciler, clock):
    active = {"a1": active_entry(clock, "a1", progress=10)}
    first = reconciler.reconcile(active, [])

    active["a1"].progress = 70
    cached = reconciler.reconcile(active, [])
    forced = reconciler.reconcile(active, [], force=True)

    assert first[0].progress == 10
    assert cached[0].progress == 10
    assert forced[0].progress == 70


def test_hash_covers_only_leading_history_and_config_ids(reconciler, clock):
    history = [history_entry(clock, f"h{i}", offset_ms=-i) for i in range(12)]
    configs = [f"c{i}" for i in range(7)]

    base = reconciler.data_hash({}, history, configs)
    tail_changed = reconciler.data_hash(
        {}, history[:10] + [history_entry(clock, "other")], configs[:5] + ["zzz"]
    )
    head_changed = reconciler.data_hash({}, [history_entry(clock, "new")] + history, configs)

    assert base == tail_changed
    assert base != head_changed


def test_active_key_order_does_not_change_hash(reconciler, clock):
    a = {"b": active_entry(clock, "b"), "a": active_entry(clock, "a")}
    b = {"a": active_entry(clock, "a"), "b": active_entry(clock, "b")}

    assert reconciler.data_hash(a, []) == reconciler.data_hash(b, [])


@pytest.mark.asyncio
async def test_timer_emits_changes_and_stops_when_idle(reconciler, clock, sleep):
    active = {"a1": active_entry(clock, "a1")}
    history = []
    views = []

    reconciler.start(lambda: (active, history, []), views.append)
    assert reconciler.running
    for _ in range(5):
        await asyncio.sleep(0)

    assert len(views) == 1
    assert 2.0 in sleep.calls

    history.insert(0, history_entry(clock, "a1"))
    active.clear()
    for _ in range(5):
        await asyncio.sleep(0)

    assert not reconciler.running


@pytest.mark.asyncio
async def test_timer_does_not_start_twice_and_stop_cancels(reconciler, clock):
    active = {"a1": active_entry(clock, "a1")}

    reconciler.start(lambda: (active, [], []), lambda view: None)
    first = reconciler._task
    reconciler.start(lambda: (active, [], []), lambda view: None)

    assert reconciler._task is first
    reconciler.stop()
    assert not reconciler.running
