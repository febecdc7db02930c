"""
FOREMAN ONTOLOGY - The Dictionary of the System

If schemas.py is the Grammar (how we structure records),
ontology.py is the Dictionary (the words we can use).

This module defines:
- Enums: The vocabulary (VerdictStatus, RiskLevel, TaskOutcome, TaskStage, LiveEventType)
- STAGE_TRANSITIONS: The per-task state machine driven by the run coordinator

Key Principle: a task moves forward only. Once it reaches a terminal stage
it is never re-entered within the same run; re-running the whole objective
is the only way to retry.
"""
from typing import Dict, FrozenSet, Literal
from enum import Enum


# =============================================================================
# ENUMS (The Vocabulary)
# =============================================================================

class VerdictStatus(str, Enum):
    """Judgment returned by the verification capability."""
    PASS = "pass"
    FAIL = "fail"


class RiskLevel(str, Enum):
    """Risk attached to a policy decision."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskOutcome(str, Enum):
    """Terminal outcome reported for a task in the run response."""
    BLOCKED = "blocked"                      # Verifier failed
    BLOCKED_BY_POLICY = "blocked_by_policy"  # Policy gate denied the merge
    PR_OPENED = "pr_opened"                  # PR created or reused


class TaskStage(str, Enum):
    """
    Lifecycle stages of a task inside one run.

    planned -> verified | failed_verification
    verified -> approved | blocked_by_policy
    approved -> pr_opened
    pr_opened -> merged | merge_skipped
    """
    PLANNED = "planned"
    VERIFIED = "verified"
    FAILED_VERIFICATION = "failed_verification"
    APPROVED = "approved"
    BLOCKED_BY_POLICY = "blocked_by_policy"
    PR_OPENED = "pr_opened"
    MERGED = "merged"
    MERGE_SKIPPED = "merge_skipped"


class LiveEventType(str, Enum):
    """Event types pushed to live observers."""
    CI_UPDATE = "ci_update"
    PR_UPDATE = "pr_update"
    TASK_UPDATE = "task_update"
    SNAPSHOT = "snapshot"


# =============================================================================
# Type Aliases
# =============================================================================

MergeMethod = Literal["merge", "squash", "rebase"]
CapabilityMode = Literal["template", "llm"]


# =============================================================================
# STAGE TRANSITIONS (The per-task state machine)
# =============================================================================

STAGE_TRANSITIONS: Dict[TaskStage, FrozenSet[TaskStage]] = {
    TaskStage.PLANNED: frozenset({TaskStage.VERIFIED, TaskStage.FAILED_VERIFICATION}),
    TaskStage.VERIFIED: frozenset({TaskStage.APPROVED, TaskStage.BLOCKED_BY_POLICY}),
    TaskStage.APPROVED: frozenset({TaskStage.PR_OPENED}),
    TaskStage.PR_OPENED: frozenset({TaskStage.MERGED, TaskStage.MERGE_SKIPPED}),
    TaskStage.FAILED_VERIFICATION: frozenset(),
    TaskStage.BLOCKED_BY_POLICY: frozenset(),
    TaskStage.MERGED: frozenset(),
    TaskStage.MERGE_SKIPPED: frozenset(),
}

TERMINAL_STAGES: FrozenSet[TaskStage] = frozenset(
    stage for stage, targets in STAGE_TRANSITIONS.items() if not targets
)


def can_transition(current: TaskStage, target: TaskStage) -> bool:
    """Check whether a task may move from `current` to `target`."""
    return target in STAGE_TRANSITIONS.get(current, frozenset())


def is_terminal(stage: TaskStage) -> bool:
    """A terminal stage has no outgoing transitions."""
    return stage in TERMINAL_STAGES
