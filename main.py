"""
FOREMAN MAIN - Entry Point and CLI

Commands:
    serve    - Start the API server (HTTP + live WebSocket)
    run      - Execute one multi-agent run from the command line
    schedule - Print the execution order (and waves) of a task plan file

Usage:
    # Start API server (development, auto-reload)
    python main.py serve

    # Production server
    python main.py serve --prod --workers 4

    # One-off run against GitHub (needs GITHUB_TOKEN / GITHUB_OWNER)
    python main.py run "add health endpoint" --constraints '{"features": ["route", "tests"]}'

    # Check a plan offline: no host calls
    python main.py schedule plan.json

Plan File Format (schedule):
    {"tasks": [{"id": "task-a", "description": "...", "dependencies": []}, ...]}
    or the planner's {"task_graph": {"tasks": [...]}} form.
"""
import sys
import json
import logging
from pathlib import Path

# Add foreman to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from infrastructure.config import ConfigurationError, load_settings

logger = logging.getLogger("foreman")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run_dev_server(host: str = "127.0.0.1", port: int = 8080):
    """Run development server with Granian."""
    from granian import Granian
    from granian.constants import Interfaces

    logger.info(f"Starting Foreman API server on {host}:{port}")

    granian = Granian(
        target="api.routes:create_app",
        factory=True,
        address=host,
        port=port,
        interface=Interfaces.ASGI,
        workers=1,
        reload=True,
    )

    granian.serve()


def run_prod_server(host: str = "0.0.0.0", port: int = 8080, workers: int = 4):
    """Run production server with Granian."""
    from granian import Granian
    from granian.constants import Interfaces

    logger.info(f"Starting Foreman API server on {host}:{port} with {workers} workers")

    granian = Granian(
        target="api.routes:create_app",
        factory=True,
        address=host,
        port=port,
        interface=Interfaces.ASGI,
        workers=workers,
        reload=False,
    )

    granian.serve()


def cmd_serve(args, settings):
    """Handle serve command."""
    # Fail before spawning workers when credentials are missing
    settings.require_github()

    host = args.host or settings.server.host
    port = args.port or settings.server.port
    if args.prod:
        run_prod_server(host, port, args.workers)
    else:
        run_dev_server(host, port)


def cmd_run(args, settings):
    """Handle run command - one multi-agent run, result printed as JSON."""
    from agents.orchestrator import RunCoordinator
    from core.schemas import ExecutionOptions, encode_json

    settings.require_github()
    constraints = json.loads(args.constraints) if args.constraints else {}
    execution = ExecutionOptions(
        auto_merge=args.auto_merge,
        enable_pages=args.enable_pages,
        ci_conclusion=args.ci_conclusion,
    )

    coordinator = RunCoordinator.from_settings(settings)
    result = coordinator.run(args.objective, constraints, execution)
    print(encode_json(result).decode("utf-8"))
    return 0


def cmd_schedule(args, settings):
    """Handle schedule command - topological order of a plan file."""
    from agents.pipeline import normalize_plan
    from core.task_graph import CycleError, TaskGraph

    with open(args.plan_file, "r") as f:
        raw = json.load(f)

    _, tasks = normalize_plan(raw)
    graph = TaskGraph.from_tasks(tasks)
    for task_id, dep_id in graph.missing_dependencies():
        print(f"warning: {task_id} depends on unknown task {dep_id} (ignored)")

    try:
        ordered = graph.schedule()
    except CycleError as e:
        print(f"error: {e}")
        return 1

    print("Order:")
    for position, task in enumerate(ordered, start=1):
        print(f"  {position:>3}. {task.id}  {task.description}")

    if args.waves:
        print("Waves:")
        for depth, wave in enumerate(graph.waves()):
            print(f"  {depth}: {', '.join(task.id for task in wave)}")
    return 0


def main():
    """Main entry point with subcommands."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Foreman - Task-Graph Orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to foreman.toml")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start API server")
    serve_parser.add_argument("--host", default=None, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    serve_parser.add_argument("--workers", type=int, default=4, help="Number of workers (prod)")
    serve_parser.add_argument("--prod", action="store_true", help="Run in production mode")
    serve_parser.set_defaults(func=cmd_serve)

    # run command
    run_parser = subparsers.add_parser("run", help="Execute one multi-agent run")
    run_parser.add_argument("objective", help="Natural-language objective")
    run_parser.add_argument("--constraints", default=None, help="Constraints as a JSON object")
    run_parser.add_argument("--auto-merge", action="store_true", help="Squash-merge PRs once CI is green")
    run_parser.add_argument("--enable-pages", action="store_true", help="Enable GitHub Pages after the run")
    run_parser.add_argument("--ci-conclusion", default="success", help="CI conclusion fed to the policy gate")
    run_parser.set_defaults(func=cmd_run)

    # schedule command
    schedule_parser = subparsers.add_parser("schedule", help="Print the execution order of a plan file")
    schedule_parser.add_argument("plan_file", help="Path to a JSON plan")
    schedule_parser.add_argument("--waves", action="store_true", help="Also print parallel waves")
    schedule_parser.set_defaults(func=cmd_schedule)

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        return 1

    try:
        settings = load_settings(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    configure_logging(settings.server.log_level)

    try:
        return args.func(args, settings) or 0
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
