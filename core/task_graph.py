"""
FOREMAN TASK GRAPH - The Scheduler

In-memory dependency graph of planned tasks, backed by rustworkx.

Capabilities:
- Deterministic topological ordering (Kahn's algorithm, FIFO by planner emission order)
- Cycle detection naming every task that could not be ordered
- Execution waves (topological layers) for bounded parallel execution
- Missing-dependency tolerance: dependency ids outside the graph are ignored

Edges point from a dependency to its dependent (dep -> task), so a task's
in-degree is the number of in-graph dependencies it waits on.

Usage:
    graph = TaskGraph.from_tasks(plan_tasks)
    ordered = graph.schedule()       # [Task, ...] or raises CycleError
    waves = graph.waves()            # [[Task, ...], [Task, ...], ...]

    # Or the one-shot form
    ordered = schedule(plan_tasks)
"""
import logging
from collections import deque
from typing import Dict, Iterable, List, Tuple

import rustworkx as rx

from core.schemas import Task

logger = logging.getLogger(__name__)


# =============================================================================
# CUSTOM EXCEPTIONS
# =============================================================================

class GraphError(Exception):
    """Base exception for task graph operations."""
    pass


class TaskNotFoundError(GraphError):
    """Raised when a task id is not in the graph."""
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class DuplicateTaskError(GraphError):
    """Raised when two planned tasks share an id."""
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Duplicate task id in plan: {task_id}")


class CycleError(GraphError):
    """Raised when the dependency relation is cyclic. Carries the unresolved ids."""
    def __init__(self, task_ids: List[str]):
        self.task_ids = list(task_ids)
        super().__init__(
            "Task graph has a dependency cycle among: " + ", ".join(self.task_ids)
        )


# =============================================================================
# TASK GRAPH
# =============================================================================

class TaskGraph:
    """
    Dependency graph for one run.

    All public methods accept/return task ids and Task records; the
    translation to rustworkx integer indices is handled internally.
    Node indices are assigned in insertion order, which is the planner's
    emission order and the tie-breaker for scheduling.

    Thread Safety:
        NOT thread-safe. Build once, then read from a single thread.
    """

    def __init__(self):
        self._graph: rx.PyDiGraph = rx.PyDiGraph(multigraph=False)
        self._node_map: Dict[str, int] = {}     # task id -> rustworkx index
        self._order: Dict[str, int] = {}        # task id -> emission position
        self._dependents: Dict[str, List[str]] = {}  # dep id -> dependents, emission order
        self._missing: List[Tuple[str, str]] = []    # (task id, missing dep id)

    @classmethod
    def from_tasks(cls, tasks: Iterable[Task]) -> "TaskGraph":
        """Build a graph from planner output. Edges are wired after all tasks exist."""
        graph = cls()
        task_list = list(tasks)
        for task in task_list:
            graph.add_task(task)
        for task in task_list:
            graph._link_dependencies(task)
        return graph

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def task_count(self) -> int:
        return self._graph.num_nodes()

    @property
    def edge_count(self) -> int:
        return self._graph.num_edges()

    @property
    def is_empty(self) -> bool:
        return self.task_count == 0

    # =========================================================================
    # TASK OPERATIONS
    # =========================================================================

    def add_task(self, task: Task) -> int:
        """
        Add a task node (without wiring its dependencies).

        Raises:
            DuplicateTaskError: If a task with this id already exists
        """
        if task.id in self._node_map:
            raise DuplicateTaskError(task.id)

        idx = self._graph.add_node(task)
        self._node_map[task.id] = idx
        self._order[task.id] = len(self._order)
        self._dependents[task.id] = []
        return idx

    def _link_dependencies(self, task: Task) -> None:
        target = self._node_map[task.id]
        for dep_id in task.dependencies:
            if dep_id not in self._node_map:
                self._missing.append((task.id, dep_id))
                continue
            source = self._node_map[dep_id]
            if self._graph.has_edge(source, target):
                continue
            self._graph.add_edge(source, target, None)
            self._dependents[dep_id].append(task.id)

    def has_task(self, task_id: str) -> bool:
        return task_id in self._node_map

    def get_task(self, task_id: str) -> Task:
        if task_id not in self._node_map:
            raise TaskNotFoundError(task_id)
        return self._graph[self._node_map[task_id]]

    def get_tasks(self) -> List[Task]:
        """All tasks in emission order."""
        return sorted(
            (self._graph[idx] for idx in self._graph.node_indices()),
            key=lambda task: self._order[task.id],
        )

    def dependents_of(self, task_id: str) -> List[str]:
        """Immediate dependents of a task, in emission order."""
        if task_id not in self._dependents:
            raise TaskNotFoundError(task_id)
        return list(self._dependents[task_id])

    def missing_dependencies(self) -> List[Tuple[str, str]]:
        """(task id, dependency id) pairs whose dependency is not in the graph."""
        return list(self._missing)

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    def schedule(self) -> List[Task]:
        """
        Return tasks in topological order using Kahn's algorithm.

        Zero in-degree tasks are dequeued first-in first-out, seeded in
        emission order, so identical planner output always yields the same
        order.

        Raises:
            CycleError: If some tasks can never reach zero in-degree
        """
        if self.is_empty:
            return []

        in_degree = {
            task_id: self._graph.in_degree(idx) for task_id, idx in self._node_map.items()
        }
        queue = deque(
            task_id
            for task_id in sorted(self._order, key=self._order.__getitem__)
            if in_degree[task_id] == 0
        )

        ordered: List[Task] = []
        while queue:
            task_id = queue.popleft()
            ordered.append(self.get_task(task_id))
            for dependent in self._dependents[task_id]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(ordered) < self.task_count:
            emitted = {task.id for task in ordered}
            unresolved = [
                task_id
                for task_id in sorted(self._order, key=self._order.__getitem__)
                if task_id not in emitted
            ]
            raise CycleError(unresolved)

        return ordered

    def waves(self) -> List[List[Task]]:
        """
        Compute execution waves (layers) using the Rust-native algorithm.

        Every task in wave N has all of its in-graph dependencies in waves
        before N, so a wave may execute in parallel once the previous wave
        is finished. Tasks inside a wave keep emission order.

        Raises:
            CycleError: If the graph contains cycles
        """
        if self.is_empty:
            return []

        # Validates acyclicity and names the offending tasks
        self.schedule()

        roots = [
            idx for idx in self._graph.node_indices()
            if self._graph.in_degree(idx) == 0
        ]
        layers = rx.layers(self._graph, roots)
        return [
            sorted(layer, key=lambda task: self._order[task.id])
            for layer in layers
        ]

    def has_cycle(self) -> bool:
        """Check if the dependency relation contains any cycle."""
        return not rx.is_directed_acyclic_graph(self._graph)


def schedule(tasks: Iterable[Task]) -> List[Task]:
    """
    Topologically order planner output.

    Dependency ids that reference no task in the list are ignored (logged
    at WARNING), not treated as errors.

    Raises:
        CycleError: If the dependency relation is cyclic
        DuplicateTaskError: If two tasks share an id
    """
    graph = TaskGraph.from_tasks(tasks)
    for task_id, dep_id in graph.missing_dependencies():
        logger.warning(f"Task {task_id} depends on unknown task {dep_id}; ignoring")
    return graph.schedule()
