"""
Lightweight event bus for decoupled run notifications.

Follows publisher-subscriber pattern for real-time updates without coupling.

Design Principles:
- Publisher-subscriber pattern (decoupled)
- Supports both sync and async handlers
- Thread-aware: runs execute in worker threads, async handlers run on the
  server's event loop (bound with bind_loop)
- Singleton for global access
- Type-safe events via msgspec

Architecture:
    Run Coordinator (worker thread) -> EventBus -> [LiveBroadcaster, Logger]

Usage:
    # Publisher (in agents/orchestrator.py)
    from infrastructure.event_bus import publish_task_update

    publish_task_update(TaskUpdate(run_id=..., task_id="task-a", stage=TaskStage.VERIFIED))

    # Subscriber (in infrastructure/broadcaster.py)
    async def on_task_update(event: RunEvent):
        await broadcaster.broadcast_json(event.payload)

    bus = get_event_bus()
    bus.bind_loop(asyncio.get_running_loop())
    bus.subscribe_async(EventType.TASK_UPDATE, on_task_update)
"""
from typing import Callable, List, Dict, Any, Optional
from enum import Enum
import msgspec
import asyncio
import threading
import time
from collections import defaultdict
import logging

from core.schemas import TaskUpdate, to_builtins


logger = logging.getLogger("foreman.event_bus")


class EventType(str, Enum):
    """Types of events published during a run."""
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    TASK_UPDATE = "task_update"


class RunEvent(msgspec.Struct, kw_only=True):
    """
    Event emitted while a run progresses.

    Attributes:
        type: Type of event (TASK_UPDATE, RUN_STARTED, etc.)
        payload: Event-specific data (run_id, task_id, stage, ...)
        timestamp: Unix timestamp when event occurred
        source: Source of event ("orchestrator", "api")
    """
    type: EventType
    payload: Dict[str, Any]
    timestamp: float = msgspec.field(default_factory=time.time)
    source: str = "unknown"


class EventBus:
    """
    Event bus for run notifications.

    Thread Safety:
        Subscriber lists are guarded by a lock, so publish may be called
        from worker threads. Async handlers are scheduled on the running
        loop when publish is called from the loop thread, and handed to the
        bound loop with run_coroutine_threadsafe otherwise.
    """

    def __init__(self):
        self._subscribers: Dict[EventType, List[Callable]] = defaultdict(list)
        self._async_subscribers: Dict[EventType, List[Callable]] = defaultdict(list)
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop]):
        """Set the loop that async handlers run on when publishing from other threads."""
        self._loop = loop

    def subscribe(self, event_type: EventType, handler: Callable[[RunEvent], None]):
        """Subscribe to events with a synchronous handler."""
        with self._lock:
            if handler not in self._subscribers[event_type]:
                self._subscribers[event_type].append(handler)
                logger.debug(f"Subscribed sync handler to {event_type.value}")

    def subscribe_async(self, event_type: EventType, handler: Callable[[RunEvent], Any]):
        """
        Subscribe to events with an async handler.

        Example:
            async def on_task_update(event: RunEvent):
                await broadcast_to_websocket(event.payload)

            event_bus.subscribe_async(EventType.TASK_UPDATE, on_task_update)
        """
        with self._lock:
            if handler not in self._async_subscribers[event_type]:
                self._async_subscribers[event_type].append(handler)
                logger.debug(f"Subscribed async handler to {event_type.value}")

    def publish(self, event: RunEvent):
        """
        Publish an event to all subscribers.

        Note:
            - Sync handlers run immediately in the publishing thread
            - Async handlers are scheduled and run in the background
            - Exceptions in handlers are logged but don't propagate
        """
        logger.debug(
            f"Publishing {event.type.value} from {event.source} "
            f"(payload keys: {list(event.payload.keys())})"
        )

        with self._lock:
            sync_handlers = list(self._subscribers[event.type])
            async_handlers = list(self._async_subscribers[event.type])

        for handler in sync_handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"Error in sync handler for {event.type.value}: {e}",
                    exc_info=True
                )

        for handler in async_handlers:
            try:
                self._schedule(handler(event))
            except Exception as e:
                logger.error(
                    f"Error scheduling async handler for {event.type.value}: {e}",
                    exc_info=True
                )

    def _schedule(self, coro):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            loop.create_task(coro)
        elif self._loop is not None and self._loop.is_running():
            asyncio.run_coroutine_threadsafe(coro, self._loop)
        else:
            coro.close()
            logger.warning("Cannot schedule async handler: no event loop running")

    def unsubscribe(self, event_type: EventType, handler: Callable):
        """Unsubscribe a handler (must be the same instance) from an event type."""
        with self._lock:
            if handler in self._subscribers[event_type]:
                self._subscribers[event_type].remove(handler)
                logger.debug(f"Unsubscribed sync handler from {event_type.value}")

            if handler in self._async_subscribers[event_type]:
                self._async_subscribers[event_type].remove(handler)
                logger.debug(f"Unsubscribed async handler from {event_type.value}")

    def clear_subscribers(self, event_type: EventType = None):
        """
        Clear all subscribers for an event type (or all types).

        Warning:
            This is primarily for testing. Use with caution in production.
        """
        with self._lock:
            if event_type is None:
                self._subscribers.clear()
                self._async_subscribers.clear()
                logger.info("Cleared all event subscribers")
            else:
                self._subscribers[event_type].clear()
                self._async_subscribers[event_type].clear()
                logger.info(f"Cleared subscribers for {event_type.value}")

    def subscriber_count(self, event_type: EventType = None) -> int:
        """Total number of subscribers (sync + async) for one type, or all types."""
        with self._lock:
            if event_type is None:
                total = sum(len(handlers) for handlers in self._subscribers.values())
                total += sum(len(handlers) for handlers in self._async_subscribers.values())
                return total
            return (
                len(self._subscribers[event_type]) +
                len(self._async_subscribers[event_type])
            )


# =============================================================================
# SINGLETON INSTANCE
# =============================================================================

_event_bus: EventBus = None


def get_event_bus() -> EventBus:
    """Get the global event bus instance (singleton)."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
        logger.info("Initialized global event bus")
    return _event_bus


def reset_event_bus():
    """Drop the global instance (tests)."""
    global _event_bus
    _event_bus = None


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def publish_task_update(update: TaskUpdate, source: str = "orchestrator"):
    """Publish a TASK_UPDATE event carrying the wire form of `update`."""
    get_event_bus().publish(RunEvent(
        type=EventType.TASK_UPDATE,
        payload=to_builtins(update),
        source=source,
    ))


def publish_run_event(event_type: EventType, run_id: str, source: str = "orchestrator", **details):
    """Publish a run lifecycle event (started / completed / failed)."""
    get_event_bus().publish(RunEvent(
        type=event_type,
        payload={"run_id": run_id, **details},
        source=source,
    ))
