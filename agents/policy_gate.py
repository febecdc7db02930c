"""
Policy Gate - Decides whether a verified patch may be merged.

Principle: the gate is a PURE function. Same inputs, same decision; no I/O.

Rules, evaluated in order (the first failing rule ends evaluation):
1. Verifier status is `pass`                      (hard)
2. CI conclusion equals `success`                 (hard)
3. Touched files <= max_files_changed             (soft)
4. tokens_used < max_tokens, api_calls < max_api_calls   (soft)

Risk level:
- Any hard-rule failure -> high
- Otherwise count the soft signals (files, tokens, api_calls) sitting at or
  above near_ceiling_ratio of their ceiling: 0 -> low, 1 -> medium, 2+ -> high
"""
import msgspec
import logging
from typing import Any, Dict, List, Optional

from core.ontology import RiskLevel
from core.schemas import Budget, CIStatus, DiffSummary, PolicyDecision, Task, Verdict
from infrastructure.config import PolicySettings

logger = logging.getLogger(__name__)

CI_SUCCESS = "success"


# =============================================================================
# POLICY CONFIG
# =============================================================================

class PolicyConfig(msgspec.Struct, kw_only=True, frozen=True):
    """Ceilings for the soft rules."""
    max_files_changed: int = 20
    max_tokens: int = 120000
    max_api_calls: int = 80
    near_ceiling_ratio: float = 0.8

    @classmethod
    def from_settings(cls, settings: PolicySettings) -> "PolicyConfig":
        return cls(
            max_files_changed=settings.max_files_changed,
            max_tokens=settings.max_tokens,
            max_api_calls=settings.max_api_calls,
            near_ceiling_ratio=settings.near_ceiling_ratio,
        )

    def narrowed(self, constraints: Optional[Dict[str, Any]]) -> "PolicyConfig":
        """
        Apply per-run limits from request constraints.

        Reads constraints.budget.max_tokens, constraints.budget.max_api_calls
        and constraints.max_files_changed. A run can only tighten a ceiling,
        never raise it; non-positive or non-numeric values are ignored.
        """
        constraints = constraints or {}
        budget = constraints.get("budget") or {}
        if not isinstance(budget, dict):
            budget = {}

        return msgspec.structs.replace(
            self,
            max_files_changed=_tighter(self.max_files_changed, constraints.get("max_files_changed")),
            max_tokens=_tighter(self.max_tokens, budget.get("max_tokens")),
            max_api_calls=_tighter(self.max_api_calls, budget.get("max_api_calls")),
        )


def _tighter(current: int, requested: Any) -> int:
    if isinstance(requested, bool) or not isinstance(requested, (int, float)):
        return current
    if requested <= 0:
        return current
    return min(current, int(requested))


# =============================================================================
# EVALUATION
# =============================================================================

def _near(value: float, ceiling: float, ratio: float) -> bool:
    return value >= ratio * ceiling


def evaluate(
    task: Task,
    verifier: Verdict,
    ci: CIStatus,
    diff_summary: DiffSummary,
    budget: Budget,
    config: PolicyConfig,
) -> PolicyDecision:
    """
    Decide whether `task`'s patch may be merged.

    `task` identifies the decision; it does not influence it.
    """
    reasons: List[str] = []
    hard_failure = False
    files_changed = len(diff_summary.files)

    if not verifier.passed:
        hard_failure = True
        reasons.append(f"Verifier status is {verifier.status.value}, expected pass")
    elif ci.conclusion != CI_SUCCESS:
        hard_failure = True
        reasons.append(f"CI conclusion is {ci.conclusion}, expected {CI_SUCCESS}")
    elif files_changed > config.max_files_changed:
        reasons.append(
            f"Diff touches {files_changed} files, above the limit of {config.max_files_changed}"
        )
    else:
        if budget.tokens_used >= config.max_tokens:
            reasons.append(
                f"Token budget exhausted: {budget.tokens_used} used of {config.max_tokens}"
            )
        if budget.api_calls >= config.max_api_calls:
            reasons.append(
                f"API call budget exhausted: {budget.api_calls} used of {config.max_api_calls}"
            )

    if hard_failure:
        risk = RiskLevel.HIGH
    else:
        ratio = config.near_ceiling_ratio
        signals = sum((
            _near(files_changed, config.max_files_changed, ratio),
            _near(budget.tokens_used, config.max_tokens, ratio),
            _near(budget.api_calls, config.max_api_calls, ratio),
        ))
        if signals == 0:
            risk = RiskLevel.LOW
        elif signals == 1:
            risk = RiskLevel.MEDIUM
        else:
            risk = RiskLevel.HIGH

    return PolicyDecision(
        allow_merge=not reasons,
        risk_level=risk,
        reasons=reasons,
        budget=budget,
    )


class PolicyGate:
    """
    Holds a PolicyConfig and evaluates tasks against it.

    Usage:
        gate = PolicyGate(PolicyConfig.from_settings(settings.policy))
        run_gate = gate.for_run(constraints)
        decision = run_gate.evaluate(task, verdict, CIStatus(), DiffSummary.from_patch(patch), budget)
    """

    def __init__(self, config: Optional[PolicyConfig] = None):
        self.config = config or PolicyConfig()

    def for_run(self, constraints: Optional[Dict[str, Any]]) -> "PolicyGate":
        return PolicyGate(self.config.narrowed(constraints))

    def evaluate(
        self,
        task: Task,
        verifier: Verdict,
        ci: CIStatus,
        diff_summary: DiffSummary,
        budget: Budget,
    ) -> PolicyDecision:
        decision = evaluate(task, verifier, ci, diff_summary, budget, self.config)
        if not decision.allow_merge:
            logger.info(
                f"Policy denied {task.id} (risk={decision.risk_level.value}): "
                f"{'; '.join(decision.reasons)}"
            )
        return decision
