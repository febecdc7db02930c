"""
FOREMAN BROADCASTER - The Event Broadcaster

Fans live events out to every connected observer (WebSocket):

- ci_update    <- GitHub `check_run` webhooks
- pr_update    <- GitHub `pull_request` webhooks
- task_update  <- the run coordinator, via the event bus
- snapshot     -> sent once to each newly connected observer

Delivery is best-effort: a send that fails drops that observer only and
never affects the other observers or the run that produced the event.

The observer set and the latest task/PR state are shared by every run and
every connection, so both live behind one lock.
"""
import logging
import threading
from collections import OrderedDict
from typing import Any, Dict, Optional, Set, Tuple

import msgspec

from core.schemas import (
    CIUpdate,
    LiveEvent,
    PRUpdate,
    Snapshot,
    TaskUpdate,
    encode_json,
)
from infrastructure.event_bus import EventBus, EventType, RunEvent

logger = logging.getLogger("foreman.broadcaster")

MAX_TRACKED = 500


# =============================================================================
# WEBHOOK MAPPING
# =============================================================================

def event_from_webhook(event_name: Optional[str], payload: Dict[str, Any]) -> Optional[LiveEvent]:
    """
    Map a GitHub webhook delivery onto a live event.

    Returns None for event kinds that are not broadcast.
    """
    payload = payload or {}
    repo = (payload.get("repository") or {}).get("name")

    if event_name == "check_run":
        check = payload.get("check_run") or {}
        return CIUpdate(
            repo=repo,
            sha=check.get("head_sha"),
            status=check.get("status"),
            conclusion=check.get("conclusion") or None,
        )

    if event_name == "pull_request":
        pr = payload.get("pull_request") or {}
        return PRUpdate(
            repo=repo,
            pr_number=pr.get("number"),
            sha=(pr.get("head") or {}).get("sha"),
            state=pr.get("state"),
            merged=bool(pr.get("merged")),
        )

    return None


# =============================================================================
# BROADCASTER
# =============================================================================

class LiveBroadcaster:
    """
    Lock-guarded observer registry plus latest-state tracking.

    Observers are anything with an async `send_text(str)` method.
    """

    def __init__(self, max_tracked: int = MAX_TRACKED):
        self._observers: Set[Any] = set()
        self._tasks: "OrderedDict[Tuple[str, str], TaskUpdate]" = OrderedDict()
        self._prs: "OrderedDict[Tuple[Optional[str], int], PRUpdate]" = OrderedDict()
        self._max_tracked = max_tracked
        self._lock = threading.Lock()

    # =========================================================================
    # OBSERVERS
    # =========================================================================

    def register(self, observer: Any) -> Snapshot:
        """Add an observer and return the snapshot it should be sent first."""
        with self._lock:
            self._observers.add(observer)
            count = len(self._observers)
        logger.info(f"Observer connected ({count} total)")
        return self.snapshot()

    def unregister(self, observer: Any) -> None:
        with self._lock:
            self._observers.discard(observer)
            count = len(self._observers)
        logger.info(f"Observer disconnected ({count} total)")

    @property
    def observer_count(self) -> int:
        with self._lock:
            return len(self._observers)

    # =========================================================================
    # STATE
    # =========================================================================

    def _remember(self, store: OrderedDict, key: Tuple, value: Any) -> None:
        store[key] = value
        store.move_to_end(key)
        while len(store) > self._max_tracked:
            store.popitem(last=False)

    def record_task(self, update: TaskUpdate) -> None:
        with self._lock:
            self._remember(self._tasks, (update.run_id, update.task_id), update)

    def record_pr(self, update: PRUpdate) -> None:
        if update.pr_number is None:
            return
        with self._lock:
            self._remember(self._prs, (update.repo, update.pr_number), update)

    def snapshot(self) -> Snapshot:
        with self._lock:
            return Snapshot(tasks=list(self._tasks.values()), prs=list(self._prs.values()))

    # =========================================================================
    # FAN-OUT
    # =========================================================================

    async def broadcast(self, event: LiveEvent) -> int:
        """
        Send an event to every observer.

        Returns:
            Number of observers the event was delivered to
        """
        message = encode_json(event).decode("utf-8")
        with self._lock:
            observers = list(self._observers)

        delivered = 0
        dead = []
        for observer in observers:
            try:
                await observer.send_text(message)
                delivered += 1
            except Exception as e:
                logger.debug(f"Dropping observer after failed send: {e}")
                dead.append(observer)

        if dead:
            with self._lock:
                self._observers.difference_update(dead)
        return delivered

    async def handle_webhook(self, event_name: Optional[str], payload: Dict[str, Any]) -> Optional[LiveEvent]:
        """Map, record and broadcast one webhook delivery. Unknown kinds are ignored."""
        event = event_from_webhook(event_name, payload)
        if event is None:
            logger.debug(f"Ignoring webhook event {event_name!r}")
            return None

        if isinstance(event, PRUpdate):
            self.record_pr(event)
        await self.broadcast(event)
        return event

    async def on_task_update(self, event: RunEvent) -> None:
        """Event bus handler: record and broadcast a coordinator task update."""
        try:
            update = msgspec.convert(event.payload, TaskUpdate)
        except msgspec.ValidationError as e:
            logger.warning(f"Malformed task_update payload: {e}")
            return
        self.record_task(update)
        await self.broadcast(update)

    def attach(self, bus: EventBus) -> None:
        bus.subscribe_async(EventType.TASK_UPDATE, self.on_task_update)

    def detach(self, bus: EventBus) -> None:
        bus.unsubscribe(EventType.TASK_UPDATE, self.on_task_update)

