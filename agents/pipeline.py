"""
FOREMAN PIPELINE - The Agent Pipeline Adapter

Drives the planner -> coder -> verifier capabilities and normalizes their
output. No business logic lives here beyond shape validation:

- plan(): accepts {"task_graph": {"tasks": [...]}} or {"tasks": [...]};
  every task needs an id and a description
- run_pipeline(): coder first, then verifier with {task, patch}
  - a Patch must carry at least one commit holding at least one file
  - an empty branch name becomes feature/<task id>
  - a verdict status other than pass/fail is coerced to fail

There are no retries at this layer. Exceptions raised by a capability
propagate unchanged and abort the run.
"""
import logging
from typing import Any, Dict, List, Tuple, Union

import msgspec

from core.ontology import VerdictStatus
from core.schemas import Patch, Task, Verdict, task_to_branch
from agents.capabilities import Capabilities

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base exception for malformed capability output."""
    pass


class PlanValidationError(PipelineError):
    """The planner's output is not a usable task list."""
    pass


class PatchValidationError(PipelineError):
    """The coder's output is not a usable patch."""
    def __init__(self, task_id: str, message: str):
        self.task_id = task_id
        super().__init__(f"Invalid patch for {task_id}: {message}")


# =============================================================================
# NORMALIZATION
# =============================================================================

def _extract_tasks(plan: Any) -> List[Any]:
    if not isinstance(plan, dict):
        raise PlanValidationError(f"Planner output must be an object, got {type(plan).__name__}")
    graph = plan.get("task_graph")
    if isinstance(graph, dict) and "tasks" in graph:
        tasks = graph["tasks"]
    else:
        tasks = plan.get("tasks", [])
    if not isinstance(tasks, list):
        raise PlanValidationError("Planner tasks must be a list")
    return tasks


def normalize_plan(plan: Any) -> Tuple[Dict[str, Any], List[Task]]:
    """
    Validate planner output.

    Returns:
        (plan as {"task_graph": {"tasks": [...]}}, [Task]) with tasks in
        planner emission order
    """
    raw_tasks = [
        {**item, "dependencies": item.get("dependencies") or []} if isinstance(item, dict) else item
        for item in _extract_tasks(plan)
    ]
    try:
        tasks = msgspec.convert(raw_tasks, List[Task], strict=False)
    except msgspec.ValidationError as e:
        raise PlanValidationError(f"Planner produced an invalid task: {e}") from e

    for task in tasks:
        if not task.id or not task.description:
            raise PlanValidationError("Every planned task needs an id and a description")

    normalized = {"task_graph": {"tasks": [msgspec.to_builtins(task) for task in tasks]}}
    return normalized, tasks


def normalize_patch(task: Task, raw: Union[Patch, Dict[str, Any]]) -> Patch:
    """Convert coder output to a Patch, filling in the branch name."""
    if isinstance(raw, Patch):
        patch = raw
    else:
        try:
            patch = msgspec.convert(raw, Patch, strict=False)
        except msgspec.ValidationError as e:
            raise PatchValidationError(task.id, str(e)) from e

    if not patch.commits or not any(commit.files for commit in patch.commits):
        raise PatchValidationError(task.id, "patch needs at least one commit with at least one file")

    if not patch.branch.strip():
        patch.branch = task_to_branch(task.id)
    return patch


def normalize_verdict(task: Task, raw: Union[Verdict, Dict[str, Any]]) -> Verdict:
    """Convert verifier output to a Verdict; unknown statuses become fail."""
    if isinstance(raw, Verdict):
        return raw

    raw = dict(raw or {})
    status = raw.get("status")
    if status not in (VerdictStatus.PASS.value, VerdictStatus.FAIL.value):
        logger.warning(f"Verifier returned status {status!r} for {task.id}; treating as fail")
        raw["status"] = VerdictStatus.FAIL.value
    try:
        return msgspec.convert(raw, Verdict, strict=False)
    except msgspec.ValidationError as e:
        logger.warning(f"Verifier output for {task.id} is malformed ({e}); treating as fail")
        return Verdict(status=VerdictStatus.FAIL, notes=f"malformed verdict: {e}")


# =============================================================================
# PIPELINE
# =============================================================================

class AgentPipeline:
    """
    Wraps one set of capabilities.

    Usage:
        pipeline = AgentPipeline(build_capabilities("template"))
        plan, tasks = pipeline.plan(objective, constraints)
        patch, verdict = pipeline.run_pipeline(objective, tasks[0])
    """

    def __init__(self, capabilities: Capabilities):
        self.capabilities = capabilities

    def plan(self, objective: str, constraints: Dict[str, Any]) -> Tuple[Dict[str, Any], List[Task]]:
        raw = self.capabilities.planner.plan(objective, constraints or {})
        plan, tasks = normalize_plan(raw)
        logger.info(f"Planned {len(tasks)} task(s) for objective {objective!r}")
        return plan, tasks

    def run_pipeline(self, objective: str, task: Task) -> Tuple[Patch, Verdict]:
        patch = normalize_patch(task, self.capabilities.coder.code(objective, task))
        verdict = normalize_verdict(task, self.capabilities.verifier.verify(task, patch))
        logger.info(
            f"Task {task.id}: {len(patch.touched_paths())} file(s) on {patch.branch}, "
            f"verifier={verdict.status.value}"
        )
        return patch, verdict
