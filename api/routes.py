"""
FOREMAN API ROUTES - The HTTP Interface

Starlette application exposing the run coordinator and the live event stream.

Endpoints:
- GET  /health                  - Health check
- POST /multi-agent-run         - Plan, schedule, verify, gate and open PRs for an objective
- POST /generate-repo-with-prs  - Open one PR per supplied task (no planner, no policy)
- POST /webhook                 - GitHub webhook receiver (check_run, pull_request)
- WS   /                        - Live events: snapshot, ci_update, pr_update, task_update

Design:
- Starlette routes for ASGI compatibility with Granian
- msgspec for fast JSON serialization
- Runs use blocking `requests` I/O, so they execute in the threadpool;
  task updates reach the event loop through the event bus
- Errors are returned as {"error": message}: 400 for bad input, 500 for
  anything that aborts a run
"""
from contextlib import asynccontextmanager
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route, WebSocketRoute
from starlette.requests import Request
from starlette.websockets import WebSocket, WebSocketDisconnect
from typing import Optional, Dict, Any, List
import msgspec
import asyncio
import logging

from core.schemas import ExecutionOptions, Task, encode_json
from agents.orchestrator import RunCoordinator
from infrastructure.broadcaster import LiveBroadcaster
from infrastructure.config import Settings, load_settings
from infrastructure.event_bus import EventBus, get_event_bus


# =============================================================================
# LOGGING
# =============================================================================

logger = logging.getLogger("foreman.api")

SERVICE_NAME = "foreman"
VERSION = "0.1.0"
HEARTBEAT_SECONDS = 30.0


# =============================================================================
# RESPONSE HELPERS
# =============================================================================

def json_response(data: Any, status_code: int = 200) -> Response:
    """Create JSON response using msgspec for speed."""
    return Response(
        content=encode_json(data),
        status_code=status_code,
        media_type="application/json"
    )


def error_response(message: str, status_code: int = 400) -> JSONResponse:
    """Create error response."""
    return JSONResponse(
        {"error": message},
        status_code=status_code
    )


async def _read_json_object(request: Request) -> Optional[Dict[str, Any]]:
    """Parse the request body; None when it is not a JSON object."""
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _parse_execution(raw: Any, default: ExecutionOptions) -> ExecutionOptions:
    if raw is None:
        return default
    if isinstance(raw, dict):
        # An explicit null means "use the default", e.g. ci_conclusion -> "success"
        raw = {key: value for key, value in raw.items() if value is not None}
    return msgspec.convert(raw, ExecutionOptions, strict=False)


def _parse_direct_tasks(raw_tasks: List[Any]) -> List[Task]:
    tasks = []
    for item in raw_tasks:
        if not isinstance(item, dict):
            continue
        deps = item.get("dependencies") or []
        tasks.append(Task(
            id=str(item.get("id") or ""),
            description=str(item.get("description") or ""),
            dependencies=[str(dep) for dep in deps] if isinstance(deps, list) else [],
        ))
    return tasks


# =============================================================================
# HEALTH
# =============================================================================

async def health(request: Request) -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse({
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": VERSION,
        "observers": request.app.state.broadcaster.observer_count,
    })


# =============================================================================
# RUNS
# =============================================================================

async def multi_agent_run(request: Request) -> Response:
    """
    Run the full plan -> code -> verify -> policy -> PR flow for an objective.

    Body: {objective, constraints?, execution?}
    """
    body = await _read_json_object(request)
    if body is None:
        return error_response("Request body must be a JSON object", 400)

    objective = body.get("objective")
    if not objective:
        return error_response("objective required", 400)

    constraints = body.get("constraints") or {}
    if not isinstance(constraints, dict):
        return error_response("constraints must be an object", 400)

    try:
        execution = _parse_execution(body.get("execution"), ExecutionOptions())
    except msgspec.ValidationError as e:
        return error_response(f"Invalid execution options: {e}", 400)

    coordinator: RunCoordinator = request.app.state.coordinator
    try:
        result = await run_in_threadpool(coordinator.run, str(objective), constraints, execution)
    except Exception as e:
        logger.error(f"Run failed for objective {objective!r}: {e}", exc_info=True)
        return error_response(str(e), 500)

    return json_response(result)


async def generate_repo_with_prs(request: Request) -> Response:
    """
    Open one PR per supplied task, bypassing planning and policy.

    Body: {objective, tasks: [{id, description, dependencies?}], execution?}
    """
    body = await _read_json_object(request)
    if body is None:
        return error_response("Request body must be a JSON object", 400)

    objective = body.get("objective")
    raw_tasks = body.get("tasks")
    if not objective or not isinstance(raw_tasks, list) or not raw_tasks:
        return error_response("objective + tasks[] required", 400)

    cap = request.app.state.settings.execution.max_direct_tasks
    if len(raw_tasks) > cap:
        return error_response(f"Too many tasks (cap {cap} in this endpoint).", 400)

    try:
        execution = _parse_execution(body.get("execution"), ExecutionOptions(enable_pages=True))
    except msgspec.ValidationError as e:
        return error_response(f"Invalid execution options: {e}", 400)

    coordinator: RunCoordinator = request.app.state.coordinator
    try:
        result = await run_in_threadpool(
            coordinator.generate_repo_with_prs,
            str(objective),
            _parse_direct_tasks(raw_tasks),
            execution,
        )
    except Exception as e:
        logger.error(f"Direct PR generation failed for {objective!r}: {e}", exc_info=True)
        return error_response(str(e), 500)

    return json_response(result)


# =============================================================================
# WEBHOOK
# =============================================================================

async def webhook(request: Request) -> Response:
    """GitHub webhook receiver. Always answers 200."""
    event_name = request.headers.get("x-github-event")
    payload = await _read_json_object(request) or {}

    try:
        await request.app.state.broadcaster.handle_webhook(event_name, payload)
    except Exception as e:
        logger.error(f"Failed to broadcast webhook {event_name!r}: {e}", exc_info=True)

    return PlainTextResponse("OK", status_code=200)


# =============================================================================
# WEBSOCKET
# =============================================================================

async def live_websocket(websocket: WebSocket) -> None:
    """
    Live event stream.

    Protocol:
    1. Client connects
    2. Server sends a snapshot of known task and PR state
    3. Server pushes ci_update / pr_update / task_update events
    4. Client may send {"type": "ping"}; server answers {"type": "pong"}
    """
    broadcaster: LiveBroadcaster = websocket.app.state.broadcaster
    await websocket.accept()
    snapshot = broadcaster.register(websocket)

    try:
        await websocket.send_text(encode_json(snapshot).decode("utf-8"))

        while True:
            try:
                data = await asyncio.wait_for(
                    websocket.receive_json(),
                    timeout=HEARTBEAT_SECONDS
                )
                if isinstance(data, dict) and data.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})
            except asyncio.TimeoutError:
                await websocket.send_json({"type": "heartbeat"})
            except ValueError:
                # Not JSON; ignore the frame
                continue

    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.unregister(websocket)


# =============================================================================
# APPLICATION
# =============================================================================

def create_routes() -> List:
    return [
        Route("/health", health, methods=["GET"]),
        Route("/multi-agent-run", multi_agent_run, methods=["POST"]),
        Route("/generate-repo-with-prs", generate_repo_with_prs, methods=["POST"]),
        Route("/webhook", webhook, methods=["POST"]),
        WebSocketRoute("/", live_websocket),
    ]


def create_app(
    settings: Optional[Settings] = None,
    coordinator: Optional[RunCoordinator] = None,
    broadcaster: Optional[LiveBroadcaster] = None,
    event_bus: Optional[EventBus] = None,
) -> Starlette:
    """
    Create the Starlette application.

    Raises:
        ConfigurationError: If GITHUB_TOKEN or GITHUB_OWNER is missing
    """
    settings = settings or load_settings()
    settings.require_github()

    coordinator = coordinator or RunCoordinator.from_settings(settings)
    broadcaster = broadcaster or LiveBroadcaster()
    bus = event_bus or get_event_bus()

    @asynccontextmanager
    async def lifespan(app: Starlette):
        # Task updates are published from threadpool workers
        bus.bind_loop(asyncio.get_running_loop())
        broadcaster.attach(bus)
        logger.info("Subscribed broadcaster to task updates")
        try:
            yield
        finally:
            broadcaster.detach(bus)
            bus.bind_loop(None)

    # CORS middleware for dashboard access
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=list(settings.server.cors_origins),
            allow_methods=["*"],
            allow_headers=["*"],
        )
    ]

    app = Starlette(
        routes=create_routes(),
        middleware=middleware,
        lifespan=lifespan,
        debug=False,
    )
    app.state.settings = settings
    app.state.coordinator = coordinator
    app.state.broadcaster = broadcaster
    return app
