"""
Precedence Graph

Directed "overrides" relation between rules. An edge ``from -> to`` means the
specific rule ``from`` overrides the general rule ``to`` (lex specialis).

The edge set is kept acyclic: every insertion first checks whether ``to``
already reaches ``from`` and rejects the edge with ``CycleDetectedError``.
Reachability queries are a breadth-first search bounded by ``max_depth``; the
insertion check is not bounded.
"""

import logging
import threading
from collections import deque
from typing import Iterable, Optional

from ..core.error_handling import RegulatoryTruthError
from ..schema import PrecedenceEdge

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 50


class CycleDetectedError(RegulatoryTruthError):
    """Adding an override edge would create a cycle."""

    def __init__(self, from_rule_id: str, to_rule_id: str, path: list[str]):
        self.from_rule_id = from_rule_id
        self.to_rule_id = to_rule_id
        self.path = path
        cycle = " -> ".join(path + [to_rule_id]) if path else f"{from_rule_id} -> {to_rule_id}"
        super().__init__(
            f"Override {from_rule_id} -> {to_rule_id} would create a cycle: {cycle}"
        )


class PrecedenceGraph:
    """Adjacency-list graph of override edges."""

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH):
        self.max_depth = max_depth
        self._adjacency: dict[str, list[str]] = {}
        self._edges: dict[tuple[str, str], PrecedenceEdge] = {}
        self._lock = threading.RLock()

    @classmethod
    def from_edges(
        cls,
        edges: Iterable[PrecedenceEdge],
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> "PrecedenceGraph":
        """Rebuild a graph from persisted edges, re-checking acyclicity."""
        graph = cls(max_depth=max_depth)
        for edge in edges:
            graph._insert(edge)
        return graph

    def add_override(self, from_rule_id: str, to_rule_id: str, note: str = "") -> PrecedenceEdge:
        """
        Record that ``from_rule_id`` overrides ``to_rule_id``.

        Returns:
            The stored edge (the existing one when the edge is a duplicate)

        Raises:
            CycleDetectedError: ``to_rule_id`` already reaches ``from_rule_id``
        """
        return self._insert(
            PrecedenceEdge(from_rule_id=from_rule_id, to_rule_id=to_rule_id, note=note)
        )

    def _insert(self, edge: PrecedenceEdge) -> PrecedenceEdge:
        with self._lock:
            existing = self._edges.get((edge.from_rule_id, edge.to_rule_id))
            if existing is not None:
                return existing

            # Uncapped: the visited set bounds the search and a depth cut-off
            # would let a back edge through on long chains.
            path = self._search(edge.to_rule_id, edge.from_rule_id, max_depth=None)
            if path is not None:
                logger.warning(
                    f"Rejected override {edge.from_rule_id} -> {edge.to_rule_id}: "
                    f"cycle via {' -> '.join(path)}"
                )
                raise CycleDetectedError(edge.from_rule_id, edge.to_rule_id, path)

            self._adjacency.setdefault(edge.from_rule_id, []).append(edge.to_rule_id)
            self._edges[(edge.from_rule_id, edge.to_rule_id)] = edge
            logger.debug(f"Added override {edge.from_rule_id} -> {edge.to_rule_id}")
            return edge

    def does_override(self, a: str, b: str) -> bool:
        """True when ``a`` reaches ``b`` via zero or more edges."""
        return self.find_path(a, b) is not None

    def find_path(self, start: str, target: str) -> Optional[list[str]]:
        """
        Shortest override path from ``start`` to ``target``.

        Returns:
            Node list including both endpoints, ``[start]`` when they are equal,
            or None when ``target`` is unreachable within ``max_depth`` edges
        """
        return self._search(start, target, self.max_depth)

    def _search(self, start: str, target: str, max_depth: Optional[int]) -> Optional[list[str]]:
        if start == target:
            return [start]

        with self._lock:
            parents: dict[str, Optional[str]] = {start: None}
            frontier = deque([(start, 0)])

            while frontier:
                current, depth = frontier.popleft()
                if max_depth is not None and depth >= max_depth:
                    continue

                for neighbor in self._adjacency.get(current, []):
                    if neighbor in parents:
                        continue
                    parents[neighbor] = current
                    if neighbor == target:
                        return self._unwind(parents, target)
                    frontier.append((neighbor, depth + 1))

        return None

    @staticmethod
    def _unwind(parents: dict[str, Optional[str]], node: str) -> list[str]:
        path = [node]
        while parents[node] is not None:
            node = parents[node]
            path.append(node)
        path.reverse()
        return path

    def find_overriding_rules(self, rule_id: str) -> set[str]:
        """All rules with a directed path to ``rule_id``."""
        with self._lock:
            reverse: dict[str, list[str]] = {}
            for source, targets in self._adjacency.items():
                for target in targets:
                    reverse.setdefault(target, []).append(source)

            found: set[str] = set()
            frontier = deque([(rule_id, 0)])
            while frontier:
                current, depth = frontier.popleft()
                if depth >= self.max_depth:
                    continue
                for parent in reverse.get(current, []):
                    if parent in found or parent == rule_id:
                        continue
                    found.add(parent)
                    frontier.append((parent, depth + 1))

        return found

    def edges(self) -> list[PrecedenceEdge]:
        with self._lock:
            return list(self._edges.values())

    def validate_acyclic(self) -> bool:
        """Full-graph check (Kahn's algorithm), independent of the depth cap."""
        with self._lock:
            in_degree: dict[str, int] = {}
            for source, targets in self._adjacency.items():
                in_degree.setdefault(source, 0)
                for target in targets:
                    in_degree[target] = in_degree.get(target, 0) + 1

            ready = deque(node for node, degree in in_degree.items() if degree == 0)
            seen = 0
            while ready:
                node = ready.popleft()
                seen += 1
                for target in self._adjacency.get(node, []):
                    in_degree[target] -= 1
                    if in_degree[target] == 0:
                        ready.append(target)

            return seen == len(in_degree)

    def __len__(self) -> int:
        with self._lock:
            return len(self._edges)

    def __contains__(self, edge: tuple[str, str]) -> bool:
        with self._lock:
            return edge in self._edges
