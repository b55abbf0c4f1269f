"""Static dependency graph over loaded task definitions.

Built once per load by the task definition store. Provides:
- Dangling reference detection
- Cycle detection with the full cycle path (DFS)
- Topological execution waves (Kahn's algorithm)
- Upstream / downstream traversal
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)


class DependencyGraph:
    """Directed graph of task_id -> the task_ids it depends on.

    The graph is immutable in practice: the loader builds it, validates it,
    and hands it to a TaskSet. Edges to ids that were never added are kept
    so that missing_dependencies() can report them.
    """

    def __init__(self) -> None:
        # Forward edges: task_id → set of task_ids it depends ON
        self._dependencies: Dict[str, Set[str]] = {}
        # Reverse edges: task_id → set of task_ids that depend on IT
        self._dependents: Dict[str, Set[str]] = {}
        # Insertion order for deterministic waves and cycle reports
        self._insertion_order: List[str] = []

    # ── Graph mutation ───────────────────────────────────────────────

    def add_task(self, task_id: str, dependencies: Optional[Iterable[str]] = None) -> None:
        """Add a node and its outgoing edges.

        Raises:
            ValueError: if *task_id* is already in the graph.
        """
        if task_id in self._dependencies:
            raise ValueError(f"Task {task_id!r} already exists in the graph")

        deps = list(dict.fromkeys(dependencies or []))
        self._dependencies[task_id] = set(deps)
        self._dependents.setdefault(task_id, set())
        self._insertion_order.append(task_id)
        for dep in deps:
            self._dependents.setdefault(dep, set()).add(task_id)

    # ── Validation ───────────────────────────────────────────────────

    def missing_dependencies(self) -> Dict[str, Set[str]]:
        """Map each task to the dependency ids that are not in the graph."""
        missing: Dict[str, Set[str]] = {}
        for tid in self._insertion_order:
            unknown = {d for d in self._dependencies[tid] if d not in self._dependencies}
            if unknown:
                missing[tid] = unknown
        return missing

    def find_cycle(self) -> Optional[List[str]]:
        """Return one cycle as a closed path (``[a, b, a]``), or ``None``."""
        white, grey, black = 0, 1, 2
        colour: Dict[str, int] = {tid: white for tid in self._insertion_order}

        for root in self._insertion_order:
            if colour[root] != white:
                continue
            # Iterative DFS: (node, sorted deps still to visit)
            path: List[str] = [root]
            stack: List[List[str]] = [self._known_deps(root)]
            colour[root] = grey
            while stack:
                pending = stack[-1]
                if not pending:
                    colour[path.pop()] = black
                    stack.pop()
                    continue
                nxt = pending.pop(0)
                if colour[nxt] == grey:
                    start = path.index(nxt)
                    return path[start:] + [nxt]
                if colour[nxt] == white:
                    colour[nxt] = grey
                    path.append(nxt)
                    stack.append(self._known_deps(nxt))
        return None

    # ── Queries ──────────────────────────────────────────────────────

    def execution_waves(self) -> List[List[str]]:
        """Kahn's algorithm producing execution waves.

        Each wave contains tasks whose dependencies are fully satisfied by
        prior waves. Within a wave, tasks keep their load order.
        """
        order = {tid: i for i, tid in enumerate(self._insertion_order)}
        in_degree = {tid: len(self._known_deps(tid)) for tid in self._insertion_order}

        current_wave = [tid for tid in self._insertion_order if in_degree[tid] == 0]
        waves: List[List[str]] = []

        while current_wave:
            current_wave.sort(key=order.__getitem__)
            waves.append(current_wave)

            next_wave: List[str] = []
            for tid in current_wave:
                for dependent in self._dependents.get(tid, set()):
                    if dependent not in in_degree:
                        continue
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        next_wave.append(dependent)
            current_wave = next_wave

        return waves

    def get_dependencies(self, task_id: str) -> Set[str]:
        return set(self._dependencies.get(task_id, set()))

    def get_dependents(self, task_id: str) -> Set[str]:
        return set(self._dependents.get(task_id, set()))

    def get_upstream(self, task_id: str) -> Set[str]:
        """BFS to find all transitive dependencies of *task_id*."""
        return self._walk(task_id, self._dependencies)

    def get_downstream(self, task_id: str) -> Set[str]:
        """BFS to find all transitive dependents of *task_id*."""
        return self._walk(task_id, self._dependents)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._dependencies

    def __len__(self) -> int:
        return len(self._insertion_order)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dependencies": {k: sorted(self._dependencies[k]) for k in self._insertion_order},
            "waves": self.execution_waves(),
        }

    # ── Internal helpers ─────────────────────────────────────────────

    def _known_deps(self, task_id: str) -> List[str]:
        return sorted(d for d in self._dependencies.get(task_id, set()) if d in self._dependencies)

    @staticmethod
    def _walk(task_id: str, edges: Dict[str, Set[str]]) -> Set[str]:
        result: Set[str] = set()
        queue: deque[str] = deque(edges.get(task_id, set()))
        while queue:
            nid = queue.popleft()
            if nid in result:
                continue
            result.add(nid)
            queue.extend(edges.get(nid, set()))
        return result
