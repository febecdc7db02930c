"""
FOREMAN INTELLIGENCE - Agent Output Schemas

Defines the msgspec Structs that LLM-backed capabilities must produce.
These are the "contracts" between the model and the pipeline.

Design:
- Each capability has a dedicated output schema
- The JSON Schema of each Struct is injected into the system prompt
- Verdict status is a plain string here; the pipeline coerces anything
  other than pass/fail to fail
"""
import msgspec
from typing import List, Optional

from core.schemas import Commit, FileChange, PullRequestSpec


# =============================================================================
# PLANNER
# =============================================================================

class PlannedTask(msgspec.Struct, kw_only=True, frozen=True):
    """One unit of work proposed by the planner."""
    id: str
    description: str
    dependencies: List[str] = []


class PlanOutput(msgspec.Struct, kw_only=True):
    """
    Output from the planner.

    Task ids must be unique; dependencies reference ids of other tasks
    in the same plan.
    """
    tasks: List[PlannedTask]
    rationale: str = ""


# =============================================================================
# CODER
# =============================================================================

class PatchOutput(msgspec.Struct, kw_only=True):
    """Output from the coder: full file contents grouped into commits."""
    branch: str = ""
    commits: List[Commit]
    pr: PullRequestSpec
    readme_append: Optional[str] = None


# =============================================================================
# VERIFIER
# =============================================================================

class VerdictOutput(msgspec.Struct, kw_only=True):
    """Output from the verifier."""
    status: str  # "pass" or "fail"
    notes: str = ""
    test_files: List[FileChange] = []
