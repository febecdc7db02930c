"""
Unit tests for infrastructure/broadcaster.py - LiveBroadcaster

Tests:
- Webhook -> live event mapping
- Fan-out to every observer, with failing observers dropped
- Snapshot tracking of the latest task and PR state
"""
import asyncio
import json

import pytest

from core.ontology import TaskStage
from core.schemas import CIUpdate, PRUpdate, TaskUpdate, to_builtins
from infrastructure.broadcaster import LiveBroadcaster, event_from_webhook
from infrastructure.event_bus import EventBus, EventType, RunEvent


class FakeObserver:
    def __init__(self, fail=False):
        self.fail = fail
        self.messages = []

    async def send_text(self, text):
        if self.fail:
            raise ConnectionError("socket closed")
        self.messages.append(json.loads(text))


CHECK_RUN = {
    "action": "completed",
    "repository": {"name": "demo"},
    "check_run": {"head_sha": "abc123", "status": "completed", "conclusion": "success"},
}

PULL_REQUEST = {
    "action": "closed",
    "repository": {"name": "demo"},
    "pull_request": {"number": 7, "state": "closed", "merged": True, "head": {"sha": "def456"}},
}


# =============================================================================
# WEBHOOK MAPPING
# =============================================================================

def test_check_run_maps_to_ci_update():
    event = event_from_webhook("check_run", CHECK_RUN)

    assert event == CIUpdate(repo="demo", sha="abc123", status="completed", conclusion="success")
    assert to_builtins(event)["type"] == "ci_update"


def test_pull_request_maps_to_pr_update():
    event = event_from_webhook("pull_request", PULL_REQUEST)

    assert event == PRUpdate(repo="demo", pr_number=7, sha="def456", state="closed", merged=True)


def test_in_progress_check_has_no_conclusion():
    payload = {"check_run": {"head_sha": "a", "status": "in_progress", "conclusion": None}}

    event = event_from_webhook("check_run", payload)

    assert event.conclusion is None
    assert event.repo is None


@pytest.mark.parametrize("name", ["push", "issues", None])
def test_other_events_are_ignored(name):
    assert event_from_webhook(name, {"repository": {"name": "demo"}}) is None


# =============================================================================
# FAN-OUT
# =============================================================================

@pytest.mark.asyncio
async def test_broadcast_reaches_every_observer():
    broadcaster = LiveBroadcaster()
    first, second = FakeObserver(), FakeObserver()
    broadcaster.register(first)
    broadcaster.register(second)

    delivered = await broadcaster.handle_webhook("check_run", CHECK_RUN)

    assert isinstance(delivered, CIUpdate)
    assert first.messages == second.messages
    assert first.messages[0]["type"] == "ci_update"
    assert first.messages[0]["sha"] == "abc123"


@pytest.mark.asyncio
async def test_failing_observer_is_dropped_without_affecting_others():
    broadcaster = LiveBroadcaster()
    healthy, broken = FakeObserver(), FakeObserver(fail=True)
    broadcaster.register(healthy)
    broadcaster.register(broken)

    delivered = await broadcaster.broadcast(CIUpdate(repo="demo"))

    assert delivered == 1
    assert broadcaster.observer_count == 1
    assert len(healthy.messages) == 1


@pytest.mark.asyncio
async def test_ignored_webhook_broadcasts_nothing():
    broadcaster = LiveBroadcaster()
    observer = FakeObserver()
    broadcaster.register(observer)

    assert await broadcaster.handle_webhook("push", {}) is None
    assert observer.messages == []


def test_unregister():
    broadcaster = LiveBroadcaster()
    observer = FakeObserver()
    broadcaster.register(observer)

    broadcaster.unregister(observer)
    broadcaster.unregister(observer)

    assert broadcaster.observer_count == 0


# =============================================================================
# SNAPSHOT
# =============================================================================

@pytest.mark.asyncio
async def test_snapshot_tracks_latest_pr_state():
    broadcaster = LiveBroadcaster()
    opened = dict(PULL_REQUEST, pull_request={**PULL_REQUEST["pull_request"], "state": "open", "merged": False})

    await broadcaster.handle_webhook("pull_request", opened)
    await broadcaster.handle_webhook("pull_request", PULL_REQUEST)

    snapshot = broadcaster.register(FakeObserver())
    assert len(snapshot.prs) == 1
    assert snapshot.prs[0].merged is True
    assert to_builtins(snapshot)["type"] == "snapshot"


@pytest.mark.asyncio
async def test_task_updates_are_recorded_and_broadcast():
    broadcaster = LiveBroadcaster()
    observer = FakeObserver()
    broadcaster.register(observer)
    update = TaskUpdate(run_id="r1", task_id="task-a", stage=TaskStage.PR_OPENED, pr_number=3)

    await broadcaster.on_task_update(RunEvent(type=EventType.TASK_UPDATE, payload=to_builtins(update)))

    assert observer.messages[0]["stage"] == "pr_opened"
    assert observer.messages[0]["pr_number"] == 3
    assert broadcaster.snapshot().tasks[0].task_id == "task-a"


@pytest.mark.asyncio
async def test_malformed_task_update_is_ignored():
    broadcaster = LiveBroadcaster()
    observer = FakeObserver()
    broadcaster.register(observer)

    await broadcaster.on_task_update(RunEvent(type=EventType.TASK_UPDATE, payload={"stage": "nope"}))

    assert observer.messages == []


def test_tracked_state_is_bounded():
    broadcaster = LiveBroadcaster(max_tracked=3)
    for i in range(5):
        broadcaster.record_task(TaskUpdate(run_id="r1", task_id=f"t{i}", stage=TaskStage.PLANNED))

    assert [t.task_id for t in broadcaster.snapshot().tasks] == ["t2", "t3", "t4"]


@pytest.mark.asyncio
async def test_attach_routes_bus_events_to_observers():
    bus = EventBus()
    broadcaster = LiveBroadcaster()
    observer = FakeObserver()
    broadcaster.register(observer)
    broadcaster.attach(bus)

    update = TaskUpdate(run_id="r1", task_id="task-b", stage=TaskStage.VERIFIED)
    bus.publish(RunEvent(type=EventType.TASK_UPDATE, payload=to_builtins(update)))
    for _ in range(10):
        if observer.messages:
            break
        await asyncio.sleep(0.01)

    assert observer.messages[0]["task_id"] == "task-b"

    broadcaster.detach(bus)
    assert bus.subscriber_count(EventType.TASK_UPDATE) == 0
