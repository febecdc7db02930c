"""
FOREMAN CORE - Central exports for core functionality.

This module provides access to:
- The task graph scheduler (TaskGraph, schedule)
- LLM interfaces (StructuredLLM)
"""

# Scheduling
from core.task_graph import (
    TaskGraph,
    GraphError,
    CycleError,
    DuplicateTaskError,
    TaskNotFoundError,
    schedule,
)

# LLM and Intelligence
from core.llm import (
    StructuredLLM,
    LLMError,
    ValidationError,
    RateLimitError,
    get_llm,
    set_llm,
    reset_llm,
)

__all__ = [
    # Scheduling
    "TaskGraph",
    "GraphError",
    "CycleError",
    "DuplicateTaskError",
    "TaskNotFoundError",
    "schedule",
    # LLM
    "StructuredLLM",
    "LLMError",
    "ValidationError",
    "RateLimitError",
    "get_llm",
    "set_llm",
    "reset_llm",
]
