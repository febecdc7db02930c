"""
FOREMAN SCHEMAS - The Grammar of the System

If ontology.py is the Dictionary (defining the words we can use),
schemas.py is the Grammar (defining how we structure records).

This module defines the data structures that flow through one run:
- Task: A unit of planned work and its dependency edges
- Patch / Commit / FileChange: The concrete changes proposed for a task
- Verdict: The verification capability's judgment on a patch
- PolicyDecision: The policy gate's allow/deny decision
- TaskResult: Tagged union of per-task outcomes (blocked, blocked_by_policy, pr_opened)
- Live events: ci_update / pr_update / task_update / snapshot payloads

Design Principles:
1. STRICT TYPING: msgspec.Struct, converted from request JSON with msgspec.convert
2. KW_ONLY: Enforce keyword arguments to prevent positional mix-ups
3. TAGGED UNIONS: TaskResult and live events carry their discriminator on the wire
4. RUN-SCOPED: Nothing here is persisted beyond the response that carries it
"""
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import msgspec

from core.ontology import LiveEventType, RiskLevel, TaskOutcome, TaskStage, VerdictStatus


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

DEFAULT_REPO_NAME = "foreman-project"


def now_utc() -> str:
    """Fast UTC timestamp as ISO8601 string."""
    return datetime.now(timezone.utc).isoformat()


def generate_id() -> str:
    """Generate a new UUID hex string for run IDs."""
    return uuid.uuid4().hex


def slugify_repo_name(text: Optional[str]) -> str:
    """
    Derive a repository name from an objective.

    Lowercases, turns whitespace into dashes, drops anything outside
    [a-z0-9-], collapses dash runs and trims to 50 characters.
    """
    slug = str(text or DEFAULT_REPO_NAME).lower()
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    slug = re.sub(r"-+", "-", slug)
    slug = slug.strip("-")[:50]
    return slug or DEFAULT_REPO_NAME


def task_to_branch(task_id: Optional[str]) -> str:
    """Map a task id onto a `feature/` branch name."""
    clean = str(task_id or "task").lower()
    clean = re.sub(r"[^a-z0-9_-]", "-", clean)
    clean = re.sub(r"-+", "-", clean)[:40]
    return f"feature/{clean}"


# =============================================================================
# TASKS
# =============================================================================

class Task(msgspec.Struct, kw_only=True, frozen=True):
    """A planned unit of work. Identity is `id`, unique within a run."""
    id: str
    description: str
    dependencies: List[str] = msgspec.field(default_factory=list)


# =============================================================================
# PATCHES
# =============================================================================

class FileChange(msgspec.Struct, kw_only=True):
    """Full content for one file path."""
    path: str
    content: str


class Commit(msgspec.Struct, kw_only=True):
    """An ordered group of file edits sharing a commit message."""
    message: str
    files: List[FileChange] = msgspec.field(default_factory=list)


class PullRequestSpec(msgspec.Struct, kw_only=True):
    """Title and body for the task's pull request."""
    title: str
    body: str = ""


class Patch(msgspec.Struct, kw_only=True):
    """
    The concrete changes proposed for one task.

    `readme_append` is a line appended to the branch's live README.md at
    push time, so sibling tasks never replace each other's README content.
    """
    branch: str = ""
    commits: List[Commit] = msgspec.field(default_factory=list)
    pr: PullRequestSpec
    readme_append: Optional[str] = None

    def touched_paths(self) -> List[str]:
        """Distinct file paths across all commits, in first-seen order, then README.md if appended to."""
        seen: Dict[str, None] = {}
        for commit in self.commits:
            for change in commit.files:
                seen.setdefault(change.path, None)
        if self.readme_append:
            seen.setdefault("README.md", None)
        return list(seen)


class Verdict(msgspec.Struct, kw_only=True):
    """Verification result for a patch, with optional generated test artifacts."""
    status: VerdictStatus
    test_files: List[FileChange] = msgspec.field(default_factory=list)
    notes: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.status == VerdictStatus.PASS


# =============================================================================
# POLICY INPUTS / OUTPUTS
# =============================================================================

class Budget(msgspec.Struct, kw_only=True, frozen=True):
    """Caller-supplied consumption counters. Read-only to the core."""
    tokens_used: int = 0
    api_calls: int = 0


class DiffSummary(msgspec.Struct, kw_only=True, frozen=True):
    """Footprint of a patch: the distinct paths it touches."""
    files: List[str] = msgspec.field(default_factory=list)

    @classmethod
    def from_patch(cls, patch: Patch) -> "DiffSummary":
        return cls(files=patch.touched_paths())


class CIStatus(msgspec.Struct, kw_only=True, frozen=True):
    """CI conclusion as supplied by the caller."""
    conclusion: str = "success"


class PolicyDecision(msgspec.Struct, kw_only=True):
    """Allow/deny merge decision. Derived, never persisted."""
    allow_merge: bool
    risk_level: RiskLevel
    reasons: List[str] = msgspec.field(default_factory=list)
    budget: Budget = msgspec.field(default_factory=Budget)


# =============================================================================
# EXECUTION OPTIONS / RESULTS
# =============================================================================

class ExecutionOptions(msgspec.Struct, kw_only=True):
    """The `execution` object of a run request."""
    auto_merge: bool = False
    enable_pages: bool = False
    ci_conclusion: str = "success"
    tokens_used: int = 0
    api_calls: int = 0

    def budget(self) -> Budget:
        return Budget(tokens_used=self.tokens_used, api_calls=self.api_calls)


class MergeResult(msgspec.Struct, kw_only=True, omit_defaults=True):
    """Outcome of the merge step for an opened PR."""
    merged: bool
    reason: Optional[str] = None
    sha: Optional[str] = None


class BlockedResult(msgspec.Struct, kw_only=True, tag_field="status", tag=TaskOutcome.BLOCKED.value):
    """The verifier failed the patch; nothing was pushed."""
    task_id: str
    verdict: Verdict


class PolicyBlockedResult(
    msgspec.Struct, kw_only=True, tag_field="status", tag=TaskOutcome.BLOCKED_BY_POLICY.value
):
    """The policy gate denied the merge; nothing was pushed."""
    task_id: str
    verdict: Verdict
    policy: PolicyDecision


class PullRequestResult(msgspec.Struct, kw_only=True, tag_field="status", tag=TaskOutcome.PR_OPENED.value):
    """Branch pushed and PR opened (or reused); merge may be pending or skipped."""
    task_id: str
    branch: str
    pr_number: int
    pr_url: Optional[str] = None
    sha: Optional[str] = None
    verifier: VerdictStatus
    policy: PolicyDecision
    merge: MergeResult


TaskResult = Union[BlockedResult, PolicyBlockedResult, PullRequestResult]


class RunResult(msgspec.Struct, kw_only=True):
    """Aggregate response of a multi-agent run."""
    status: str = "ok"
    run_id: str
    repo: str
    live_url: str
    tasks: List[TaskResult] = msgspec.field(default_factory=list)
    plan: Dict[str, Any] = msgspec.field(default_factory=dict)


class DirectPRResult(msgspec.Struct, kw_only=True, omit_defaults=True):
    """Per-task entry of the direct (plan-less) PR endpoint."""
    task_id: str
    branch: str
    pr_number: int
    merged: bool = False
    reason: Optional[str] = None
    merge_error: Optional[str] = None


class GenerateResult(msgspec.Struct, kw_only=True):
    """Aggregate response of the direct PR endpoint."""
    status: str = "success"
    repo: str
    live_url: str
    prs: List[DirectPRResult] = msgspec.field(default_factory=list)


# =============================================================================
# LIVE EVENTS
# =============================================================================

class CIUpdate(msgspec.Struct, kw_only=True, tag_field="type", tag=LiveEventType.CI_UPDATE.value):
    """A check-run changed state."""
    repo: Optional[str] = None
    sha: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None


class PRUpdate(msgspec.Struct, kw_only=True, tag_field="type", tag=LiveEventType.PR_UPDATE.value):
    """A pull request changed state."""
    repo: Optional[str] = None
    pr_number: Optional[int] = None
    sha: Optional[str] = None
    state: Optional[str] = None
    merged: bool = False


class TaskUpdate(msgspec.Struct, kw_only=True, tag_field="type", tag=LiveEventType.TASK_UPDATE.value):
    """A task advanced to a new stage inside a run."""
    run_id: str
    task_id: str
    stage: TaskStage
    repo: Optional[str] = None
    pr_number: Optional[int] = None
    sha: Optional[str] = None
    timestamp: str = msgspec.field(default_factory=now_utc)


class Snapshot(msgspec.Struct, kw_only=True, tag_field="type", tag=LiveEventType.SNAPSHOT.value):
    """Latest known task and PR state, sent to a newly connected observer."""
    tasks: List[TaskUpdate] = msgspec.field(default_factory=list)
    prs: List[PRUpdate] = msgspec.field(default_factory=list)


LiveEvent = Union[CIUpdate, PRUpdate, TaskUpdate, Snapshot]


# =============================================================================
# SERIALIZATION HELPERS
# =============================================================================

_encoder = msgspec.json.Encoder()


def encode_json(obj: Any) -> bytes:
    """Encode any schema object (or builtin) to JSON bytes."""
    return _encoder.encode(obj)


def to_builtins(obj: Any) -> Any:
    """Convert schema objects to plain dicts/lists for assertions and logging."""
    return msgspec.to_builtins(obj)
