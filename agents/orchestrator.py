"""
FOREMAN ORCHESTRATOR - The Run Coordinator

Drives one objective from plan to pull requests.

Run flow (host effects in this order):
    plan -> schedule (no host calls yet) -> ensure repository
         -> bootstrap (landing page, CI workflow) -> protect main
         -> per task (topological order) -> optional Pages

Per-task state machine (LangGraph StateGraph):

    PIPELINE --(verifier fail)--> END [blocked]
        |
        v
    POLICY ---(denied)----------> END [blocked_by_policy]
        |
        v
    EXECUTE (branch, files, artifacts, PR)
        |
        v
    MERGE (auto_merge ? merge_if_green : "auto_merge disabled") -> END [pr_opened]

Stages planned -> verified | failed_verification -> approved | blocked_by_policy
-> pr_opened -> merged | merge_skipped are published as task_update events.

No task is retried; re-running the whole objective is safe because every
host operation is idempotent. By default tasks run strictly one at a time.
With max_parallel > 1 each topological wave runs on a ThreadPoolExecutor,
so a task never starts before all of its in-graph dependencies finished.
"""
from typing import Any, Dict, List, Optional, TypedDict
from concurrent.futures import ThreadPoolExecutor
import logging

from langgraph.graph import StateGraph, END

from core.ontology import TaskStage, can_transition
from core.schemas import (
    BlockedResult,
    CIStatus,
    DiffSummary,
    DirectPRResult,
    ExecutionOptions,
    GenerateResult,
    MergeResult,
    Patch,
    PolicyBlockedResult,
    PolicyDecision,
    PullRequestResult,
    RunResult,
    Task,
    TaskResult,
    TaskUpdate,
    Verdict,
    generate_id,
    slugify_repo_name,
    task_to_branch,
)
from core.llm import get_llm
from core.task_graph import TaskGraph
from agents.capabilities import Capabilities, build_capabilities
from agents.pipeline import AgentPipeline
from agents.policy_gate import PolicyConfig, PolicyGate
from infrastructure.config import Settings
from infrastructure.event_bus import EventType, publish_run_event, publish_task_update
from infrastructure.execution import ExecutionAdapter
from infrastructure.github_client import GitHubAPIError
from infrastructure import scaffold

logger = logging.getLogger(__name__)


class OrchestrationError(Exception):
    """A task tried to move through the state machine illegally."""
    pass


# =============================================================================
# STAGE TRACKING
# =============================================================================

class TaskProgress:
    """Current stage of one task; publishes every transition."""

    def __init__(self, run_id: str, repo: str, task_id: str):
        self.run_id = run_id
        self.repo = repo
        self.task_id = task_id
        self.stage = TaskStage.PLANNED
        self._publish()

    def advance(self, stage: TaskStage, pr_number: Optional[int] = None, sha: Optional[str] = None):
        if not can_transition(self.stage, stage):
            raise OrchestrationError(
                f"Task {self.task_id} cannot move from {self.stage.value} to {stage.value}"
            )
        self.stage = stage
        self._publish(pr_number=pr_number, sha=sha)

    def _publish(self, pr_number: Optional[int] = None, sha: Optional[str] = None):
        publish_task_update(TaskUpdate(
            run_id=self.run_id,
            task_id=self.task_id,
            stage=self.stage,
            repo=self.repo,
            pr_number=pr_number,
            sha=sha,
        ))


# =============================================================================
# TASK STATE
# =============================================================================

class TaskState(TypedDict, total=False):
    """
    State for one task's pass through the state machine.

    Inputs are set on entry; every node adds its outputs.
    """
    # Inputs
    objective: str
    repo: str
    task: Task
    execution: ExecutionOptions
    gate: PolicyGate
    progress: TaskProgress

    # Outputs
    patch: Patch
    verdict: Verdict
    policy: PolicyDecision
    pr: Dict[str, Any]
    merge: MergeResult
    result: TaskResult


def route_after_pipeline(state: TaskState) -> str:
    return "policy" if state["verdict"].passed else END


def route_after_policy(state: TaskState) -> str:
    return "execute" if state["policy"].allow_merge else END


def _capabilities_from_settings(settings: Settings) -> Capabilities:
    mode = settings.agents.capabilities
    llm = get_llm(settings.agents.llm_model) if mode == "llm" else None
    return build_capabilities(mode, llm)


# =============================================================================
# RUN COORDINATOR
# =============================================================================

class RunCoordinator:
    """
    Owns the pipeline, the policy gate and the execution adapter for runs.

    Usage:
        coordinator = RunCoordinator.from_settings(settings)
        result = coordinator.run("add health endpoint", constraints={}, execution=ExecutionOptions())
    """

    def __init__(
        self,
        pipeline: AgentPipeline,
        executor: ExecutionAdapter,
        policy_gate: Optional[PolicyGate] = None,
        max_parallel: int = 1,
    ):
        self.pipeline = pipeline
        self.executor = executor
        self.policy_gate = policy_gate or PolicyGate()
        self.max_parallel = max(1, max_parallel)
        self._task_machine = self._build_task_machine().compile()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        capabilities: Optional[Capabilities] = None,
        executor: Optional[ExecutionAdapter] = None,
    ) -> "RunCoordinator":
        return cls(
            pipeline=AgentPipeline(capabilities or _capabilities_from_settings(settings)),
            executor=executor or ExecutionAdapter.from_settings(settings),
            policy_gate=PolicyGate(PolicyConfig.from_settings(settings.policy)),
            max_parallel=settings.execution.max_parallel,
        )

    # =========================================================================
    # TASK STATE MACHINE
    # =========================================================================

    def _build_task_machine(self) -> StateGraph:
        graph = StateGraph(TaskState)

        graph.add_node("pipeline", self._pipeline_node)
        graph.add_node("policy", self._policy_node)
        graph.add_node("execute", self._execute_node)
        graph.add_node("merge", self._merge_node)

        graph.add_conditional_edges("pipeline", route_after_pipeline, {"policy": "policy", END: END})
        graph.add_conditional_edges("policy", route_after_policy, {"execute": "execute", END: END})
        graph.add_edge("execute", "merge")
        graph.add_edge("merge", END)

        graph.set_entry_point("pipeline")
        return graph

    def _pipeline_node(self, state: TaskState) -> Dict[str, Any]:
        task = state["task"]
        patch, verdict = self.pipeline.run_pipeline(state["objective"], task)

        if not verdict.passed:
            state["progress"].advance(TaskStage.FAILED_VERIFICATION)
            return {
                "patch": patch,
                "verdict": verdict,
                "result": BlockedResult(task_id=task.id, verdict=verdict),
            }

        state["progress"].advance(TaskStage.VERIFIED)
        return {"patch": patch, "verdict": verdict}

    def _policy_node(self, state: TaskState) -> Dict[str, Any]:
        task, verdict, execution = state["task"], state["verdict"], state["execution"]
        policy = state["gate"].evaluate(
            task,
            verdict,
            CIStatus(conclusion=execution.ci_conclusion),
            DiffSummary.from_patch(state["patch"]),
            execution.budget(),
        )

        if not policy.allow_merge:
            state["progress"].advance(TaskStage.BLOCKED_BY_POLICY)
            return {
                "policy": policy,
                "result": PolicyBlockedResult(task_id=task.id, verdict=verdict, policy=policy),
            }

        state["progress"].advance(TaskStage.APPROVED)
        return {"policy": policy}

    def _execute_node(self, state: TaskState) -> Dict[str, Any]:
        pr = self.executor.apply_patch(state["repo"], state["task"], state["patch"], state["verdict"])
        state["progress"].advance(
            TaskStage.PR_OPENED, pr_number=pr["number"], sha=(pr.get("head") or {}).get("sha")
        )
        return {"pr": pr}

    def _merge_node(self, state: TaskState) -> Dict[str, Any]:
        task, pr, execution = state["task"], state["pr"], state["execution"]

        if execution.auto_merge:
            merge = self.executor.merge_if_green(state["repo"], pr["number"])
        else:
            merge = MergeResult(merged=False, reason="auto_merge disabled")

        state["progress"].advance(
            TaskStage.MERGED if merge.merged else TaskStage.MERGE_SKIPPED,
            pr_number=pr["number"],
            sha=merge.sha,
        )
        return {
            "merge": merge,
            "result": PullRequestResult(
                task_id=task.id,
                branch=state["patch"].branch,
                pr_number=pr["number"],
                pr_url=pr.get("html_url"),
                sha=(pr.get("head") or {}).get("sha"),
                verifier=state["verdict"].status,
                policy=state["policy"],
                merge=merge,
            ),
        }

    def process_task(
        self,
        run_id: str,
        repo: str,
        objective: str,
        task: Task,
        execution: ExecutionOptions,
        gate: PolicyGate,
    ) -> TaskResult:
        """Run one task to a terminal state. Exceptions abort the run."""
        final = self._task_machine.invoke({
            "objective": objective,
            "repo": repo,
            "task": task,
            "execution": execution,
            "gate": gate,
            "progress": TaskProgress(run_id, repo, task.id),
        })
        return final["result"]

    # =========================================================================
    # RUNS
    # =========================================================================

    def run(
        self,
        objective: str,
        constraints: Optional[Dict[str, Any]] = None,
        execution: Optional[ExecutionOptions] = None,
        run_id: Optional[str] = None,
    ) -> RunResult:
        """
        Execute a full multi-agent run.

        Raises:
            CycleError / DuplicateTaskError: Planner output cannot be scheduled
            GitHubAPIError: Any host call failed
            PipelineError, CapabilityError, LLMError: A capability failed
        """
        run_id = run_id or generate_id()
        constraints = constraints or {}
        execution = execution or ExecutionOptions()
        publish_run_event(EventType.RUN_STARTED, run_id, objective=objective)

        try:
            plan, planned = self.pipeline.plan(objective, constraints)

            graph = TaskGraph.from_tasks(planned)
            for task_id, dep_id in graph.missing_dependencies():
                logger.warning(f"Task {task_id} depends on unknown task {dep_id}; ignoring")
            ordered = graph.schedule()

            repo = slugify_repo_name(objective)
            self.executor.ensure_repository(repo, objective)
            # The CI workflow provides the `build` check that protection requires
            self.executor.bootstrap_repository(repo, objective, ordered, execution.enable_pages)
            self.executor.protect_main_branch(repo)

            gate = self.policy_gate.for_run(constraints)
            if self.max_parallel > 1:
                by_id = self._run_waves(run_id, repo, objective, graph.waves(), execution, gate)
                results = [by_id[task.id] for task in ordered]
            else:
                results = [
                    self.process_task(run_id, repo, objective, task, execution, gate)
                    for task in ordered
                ]

            if execution.enable_pages:
                self.executor.enable_pages(repo)
        except Exception as e:
            publish_run_event(EventType.RUN_FAILED, run_id, error=str(e))
            raise

        opened = sum(1 for result in results if isinstance(result, PullRequestResult))
        logger.info(f"Run {run_id} finished: {len(results)} task(s), {opened} PR(s) in {repo}")
        publish_run_event(EventType.RUN_COMPLETED, run_id, repo=repo, tasks=len(results))

        return RunResult(
            run_id=run_id,
            repo=repo,
            live_url=self.executor.live_url(repo),
            tasks=results,
            plan=plan,
        )

    def _run_waves(
        self,
        run_id: str,
        repo: str,
        objective: str,
        waves: List[List[Task]],
        execution: ExecutionOptions,
        gate: PolicyGate,
    ) -> Dict[str, TaskResult]:
        results: Dict[str, TaskResult] = {}
        with ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix="foreman-task") as pool:
            for depth, wave in enumerate(waves):
                logger.debug(f"Run {run_id}: wave {depth} with {len(wave)} task(s)")
                futures = {
                    task.id: pool.submit(self.process_task, run_id, repo, objective, task, execution, gate)
                    for task in wave
                }
                # The whole wave settles before the next one starts
                for task_id, future in futures.items():
                    results[task_id] = future.result()
        return results

    # =========================================================================
    # DIRECT PULL REQUESTS
    # =========================================================================

    def generate_repo_with_prs(
        self,
        objective: str,
        tasks: List[Task],
        execution: Optional[ExecutionOptions] = None,
    ) -> GenerateResult:
        """
        Open one PR per supplied task without planning or policy.

        Tasks lacking an id or description are skipped. Merge failures are
        reported per task instead of aborting the run.
        """
        execution = execution or ExecutionOptions(enable_pages=True)
        tasks = [task for task in tasks if task.id and task.description]
        repo = slugify_repo_name(objective)
        base = self.executor.default_branch

        self.executor.ensure_repository(repo, objective)
        self.executor.bootstrap_repository(repo, objective, tasks, execution.enable_pages)
        self.executor.protect_main_branch(repo)

        prs: List[DirectPRResult] = []
        for task in tasks:
            branch = task_to_branch(task.id)
            self.executor.ensure_branch_from(repo, base, branch)
            self.executor.upsert_file(
                repo, branch, scaffold.task_doc_path(task),
                scaffold.render_task_doc(objective, task), f"Add {task.id} task doc",
            )
            self.executor.append_readme_link(repo, branch, scaffold.readme_link(task))

            pr = self.executor.open_pull_request(
                repo,
                branch,
                base,
                f"{task.id}: {task.description}"[:250],
                f"Automated PR for task **{task.id}**.\n\n- Branch: `{branch}`\n- Objective: {objective}\n",
            )

            entry = DirectPRResult(task_id=task.id, branch=branch, pr_number=pr["number"])
            if execution.auto_merge:
                try:
                    merge = self.executor.merge_if_green(repo, pr["number"])
                    entry.merged = merge.merged
                    entry.reason = merge.reason
                except GitHubAPIError as e:
                    logger.warning(f"Merge of PR #{pr['number']} in {repo} failed: {e}")
                    entry.merge_error = str(e)
            prs.append(entry)

        if execution.enable_pages:
            self.executor.enable_pages(repo)

        return GenerateResult(repo=repo, live_url=self.executor.live_url(repo), prs=prs)
