"""
FOREMAN CAPABILITIES - Planner, Coder, Verifier

The three pluggable capabilities driven by the agent pipeline:

    Planner.plan(objective, constraints)  -> {"tasks": [{id, description, dependencies}]}
    Coder.code(objective, task)           -> Patch (or its dict form)
    Verifier.verify(task, patch)          -> Verdict (or its dict form)

Two families ship with Foreman:

- TEMPLATE (default): deterministic, no network. The planner turns
  `constraints.features` into a chain of tasks, the coder writes a task
  document plus a README link, the verifier checks file hygiene.
- LLM: StructuredLLM with PlanOutput / PatchOutput / VerdictOutput schemas.

Anything with matching methods can be passed to the pipeline instead.
"""
import logging
import posixpath
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Union

from core.llm import StructuredLLM, get_llm
from core.ontology import CapabilityMode, VerdictStatus
from core.schemas import (
    Commit,
    FileChange,
    Patch,
    PullRequestSpec,
    Task,
    Verdict,
    task_to_branch,
    to_builtins,
)
from agents.prompts import (
    build_coder_prompt,
    build_planner_prompt,
    build_verifier_prompt,
    get_agent_system_prompt,
)
from agents.schemas import PatchOutput, PlanOutput, VerdictOutput
from infrastructure import scaffold

logger = logging.getLogger(__name__)


class CapabilityError(Exception):
    """A capability could not produce its output. Fatal to the run."""
    pass


# =============================================================================
# INTERFACES
# =============================================================================

class Planner(Protocol):
    def plan(self, objective: str, constraints: Dict[str, Any]) -> Dict[str, Any]: ...


class Coder(Protocol):
    def code(self, objective: str, task: Task) -> Union[Patch, Dict[str, Any]]: ...


class Verifier(Protocol):
    def verify(self, task: Task, patch: Patch) -> Union[Verdict, Dict[str, Any]]: ...


@dataclass
class Capabilities:
    planner: Planner
    coder: Coder
    verifier: Verifier


# =============================================================================
# TEMPLATE CAPABILITIES
# =============================================================================

class TemplatePlanner:
    """One task per `constraints.features` entry, each depending on the previous one."""

    def plan(self, objective: str, constraints: Dict[str, Any]) -> Dict[str, Any]:
        features = [str(f).strip() for f in (constraints or {}).get("features") or [] if str(f).strip()]
        if not features:
            return {"tasks": [{"id": "task-1", "description": objective, "dependencies": []}]}

        tasks: List[Dict[str, Any]] = []
        for position, feature in enumerate(features, start=1):
            tasks.append({
                "id": f"task-{position}",
                "description": feature,
                "dependencies": [f"task-{position - 1}"] if position > 1 else [],
            })
        return {"tasks": tasks}


class TemplateCoder:
    """Writes `tasks/<id>.md` and asks for the task link to be appended to README.md."""

    def code(self, objective: str, task: Task) -> Patch:
        branch = task_to_branch(task.id)
        return Patch(
            branch=branch,
            commits=[
                Commit(
                    message=f"Add {task.id} task doc",
                    files=[
                        FileChange(path=scaffold.task_doc_path(task), content=scaffold.render_task_doc(objective, task)),
                    ],
                ),
            ],
            readme_append=scaffold.readme_link(task),
            pr=PullRequestSpec(
                title=f"{task.id}: {task.description}"[:250],
                body=(
                    f"Automated PR for task **{task.id}**.\n\n"
                    f"- Branch: `{branch}`\n"
                    f"- Objective: {objective}\n"
                ),
            ),
        )


def _path_problem(path: str) -> Optional[str]:
    if not path or not path.strip():
        return "empty path"
    if path.startswith("/") or "\\" in path:
        return f"{path}: not a relative POSIX path"
    normalized = posixpath.normpath(path)
    if normalized == ".." or normalized.startswith("../"):
        return f"{path}: escapes the repository"
    if normalized.split("/")[0] == ".git":
        return f"{path}: writes into .git"
    return None


class TemplateVerifier:
    """Rejects empty files and unsafe paths; emits a checklist artifact on pass."""

    def verify(self, task: Task, patch: Patch) -> Verdict:
        problems: List[str] = []
        checked: List[str] = []
        for commit in patch.commits:
            for change in commit.files:
                problem = _path_problem(change.path)
                if problem:
                    problems.append(problem)
                    continue
                if not change.content.strip():
                    problems.append(f"{change.path}: empty content")
                    continue
                checked.append(change.path)

        if problems:
            return Verdict(status=VerdictStatus.FAIL, notes="; ".join(problems))

        checklist = "\n".join(f"- [x] {path}" for path in checked)
        return Verdict(
            status=VerdictStatus.PASS,
            test_files=[
                FileChange(
                    path=f"tests/{task.id}.test.md",
                    content=f"# Verification for {task.id}\n\n{task.description}\n\n{checklist}\n",
                ),
            ],
            notes=f"{len(checked)} file(s) checked",
        )


# =============================================================================
# LLM CAPABILITIES
# =============================================================================

class LLMPlanner:
    def __init__(self, llm: Optional[StructuredLLM] = None):
        self.llm = llm

    def plan(self, objective: str, constraints: Dict[str, Any]) -> Dict[str, Any]:
        llm = self.llm or get_llm()
        output = llm.generate(
            system_prompt=get_agent_system_prompt("planner"),
            user_prompt=build_planner_prompt(objective, constraints),
            schema=PlanOutput,
        )
        if not output.tasks:
            raise CapabilityError("Planner returned no tasks")
        logger.info(f"Planner proposed {len(output.tasks)} task(s)")
        return {"tasks": [to_builtins(task) for task in output.tasks]}


class LLMCoder:
    def __init__(self, llm: Optional[StructuredLLM] = None):
        self.llm = llm

    def code(self, objective: str, task: Task) -> Patch:
        llm = self.llm or get_llm()
        output = llm.generate(
            system_prompt=get_agent_system_prompt("coder"),
            user_prompt=build_coder_prompt(objective, task),
            schema=PatchOutput,
        )
        return Patch(
            branch=output.branch, commits=output.commits, pr=output.pr, readme_append=output.readme_append
        )


class LLMVerifier:
    def __init__(self, llm: Optional[StructuredLLM] = None):
        self.llm = llm

    def verify(self, task: Task, patch: Patch) -> Dict[str, Any]:
        llm = self.llm or get_llm()
        output = llm.generate(
            system_prompt=get_agent_system_prompt("verifier"),
            user_prompt=build_verifier_prompt(task, patch),
            schema=VerdictOutput,
        )
        # Raw status string; the pipeline coerces unknown values to fail
        return to_builtins(output)


def build_capabilities(mode: CapabilityMode = "template", llm: Optional[StructuredLLM] = None) -> Capabilities:
    if mode == "template":
        return Capabilities(planner=TemplatePlanner(), coder=TemplateCoder(), verifier=TemplateVerifier())
    if mode == "llm":
        return Capabilities(planner=LLMPlanner(llm), coder=LLMCoder(llm), verifier=LLMVerifier(llm))
    raise ValueError(f"Unknown capability mode: {mode}")
