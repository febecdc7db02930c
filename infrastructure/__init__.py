"""
FOREMAN INFRASTRUCTURE - System-Level Modules

This package contains infrastructure components:
- config: TOML + environment settings
- github_client: GitHub REST request helper
- execution: Idempotent source-control operations and CI gating
- scaffold: Repository bootstrap templates
- event_bus: In-process pub/sub between runs and the event loop
- broadcaster: WebSocket fan-out of live events
"""

from infrastructure.config import ConfigurationError, Settings, load_settings
from infrastructure.github_client import GitHubAPIError, GitHubClient
from infrastructure.execution import ExecutionAdapter, ExecutionError
from infrastructure.event_bus import EventBus, EventType, RunEvent, get_event_bus
from infrastructure.broadcaster import LiveBroadcaster

__all__ = [
    "ConfigurationError",
    "Settings",
    "load_settings",
    "GitHubAPIError",
    "GitHubClient",
    "ExecutionAdapter",
    "ExecutionError",
    "EventBus",
    "EventType",
    "RunEvent",
    "get_event_bus",
    "LiveBroadcaster",
]
