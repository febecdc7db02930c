# Agents layer - capabilities, pipeline, policy gate and run coordination

from agents.capabilities import Capabilities, CapabilityError, build_capabilities
from agents.pipeline import AgentPipeline, PatchValidationError, PlanValidationError
from agents.policy_gate import PolicyConfig, PolicyGate, evaluate
from agents.orchestrator import RunCoordinator

__all__ = [
    # Capabilities
    "Capabilities",
    "CapabilityError",
    "build_capabilities",
    # Pipeline
    "AgentPipeline",
    "PatchValidationError",
    "PlanValidationError",
    # Policy
    "PolicyConfig",
    "PolicyGate",
    "evaluate",
    # Coordination
    "RunCoordinator",
]
