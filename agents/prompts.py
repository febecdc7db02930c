"""
FOREMAN INTELLIGENCE - Prompt Builders

Turns run inputs into prompts for the LLM-backed capabilities.

Design:
- System prompts live in config/agents.yaml, one entry per role
- User prompts are built from the objective, the task and the patch
- The output JSON Schema is appended by StructuredLLM, not here
"""
import json
import yaml
from pathlib import Path
from typing import Any, Dict, Optional

from core.schemas import Patch, Task, to_builtins


# =============================================================================
# CONFIG LOADER
# =============================================================================

_agent_config: Optional[Dict[str, Any]] = None


def get_agent_config() -> Dict[str, Any]:
    """Load agent configuration from agents.yaml."""
    global _agent_config
    if _agent_config is None:
        config_path = Path(__file__).parent.parent / "config" / "agents.yaml"
        with open(config_path, "r") as f:
            _agent_config = yaml.safe_load(f)
    return _agent_config


def get_agent_system_prompt(agent_role: str) -> str:
    """Get the system prompt for a specific agent role."""
    config = get_agent_config()
    agent_key = agent_role.lower()
    if agent_key not in config:
        raise ValueError(f"Unknown agent role: {agent_role}")
    return config[agent_key].get("system_prompt", "")


# =============================================================================
# USER PROMPTS
# =============================================================================

def build_planner_prompt(objective: str, constraints: Dict[str, Any]) -> str:
    constraints_text = json.dumps(constraints or {}, indent=2, sort_keys=True)
    return f"""# OBJECTIVE
{objective}

# CONSTRAINTS
{constraints_text}

Produce the task plan."""


def build_coder_prompt(objective: str, task: Task) -> str:
    deps = ", ".join(task.dependencies) if task.dependencies else "none"
    return f"""# OBJECTIVE
{objective}

# TASK
id: {task.id}
description: {task.description}
depends on: {deps}

Produce the patch for this task."""


def build_verifier_prompt(task: Task, patch: Patch) -> str:
    sections = []
    for commit in patch.commits:
        for change in commit.files:
            sections.append(f"## {change.path}\n```\n{change.content}\n```")
    files_text = "\n\n".join(sections) if sections else "(no files)"
    pr_text = json.dumps(to_builtins(patch.pr), indent=2)
    return f"""# TASK
id: {task.id}
description: {task.description}

# PULL REQUEST
{pr_text}

# FILES
{files_text}

Judge whether this patch implements the task."""
