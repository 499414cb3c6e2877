"""Deterministic stage dependency graph.

Stages keep their declaration order: every traversal that has a free choice
(topological order, ready sets) breaks ties by the position of the stage in the
pipeline definition, so two runs of the same pipeline dispatch identically.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence, Set
from heapq import heapify, heappop, heappush

from pipewright.domain.models import Stage
from pipewright.errors import ConfigurationError, CycleError


class StageGraph:
    """Directed acyclic graph of stages, edges pointing from dependency to dependent."""

    __slots__ = ("_stages", "_index", "_children", "_parents", "_order")

    def __init__(self, stages: Iterable[Stage]) -> None:
        self._stages: dict[str, Stage] = {}
        self._index: dict[str, int] = {}
        for stage in stages:
            if stage.name in self._stages:
                raise ConfigurationError(f"duplicate stage name {stage.name!r}")
            self._index[stage.name] = len(self._stages)
            self._stages[stage.name] = stage

        self._children: dict[str, set[str]] = {name: set() for name in self._stages}
        self._parents: dict[str, set[str]] = {name: set() for name in self._stages}
        for stage in self._stages.values():
            for dependency in stage.depends_on:
                if dependency not in self._stages:
                    raise ConfigurationError(
                        f"stage {stage.name!r} depends on unknown stage {dependency!r}"
                    )
                self._children[dependency].add(stage.name)
                self._parents[stage.name].add(dependency)

        self._order = self._topological_sort()

    @property
    def names(self) -> tuple[str, ...]:
        """Stage names in declaration order."""
        return tuple(self._stages)

    @property
    def stages(self) -> tuple[Stage, ...]:
        return tuple(self._stages.values())

    @property
    def order(self) -> tuple[str, ...]:
        """Topological order, ties broken by declaration order."""
        return self._order

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __len__(self) -> int:
        return len(self._stages)

    def stage(self, name: str) -> Stage:
        self._assert_known(name)
        return self._stages[name]

    def ready(self, terminal: Set[str], pending: Set[str] | None = None) -> tuple[str, ...]:
        """Stages whose dependencies are all terminal.

        Only stages in ``pending`` are candidates; when omitted, every stage not in
        ``terminal`` is. Result is in declaration order.
        """
        done = set(terminal)
        candidates = set(pending) if pending is not None else set(self._stages) - done
        return tuple(
            name
            for name in self._stages
            if name in candidates and name not in done and self._parents[name] <= done
        )

    def dependencies(self, name: str, *, transitive: bool = False) -> tuple[str, ...]:
        self._assert_known(name)
        if transitive:
            return self._closure(name, self._parents)
        return self._sorted(self._parents[name])

    def dependents(self, name: str, *, transitive: bool = False) -> tuple[str, ...]:
        self._assert_known(name)
        if transitive:
            return self._closure(name, self._children)
        return self._sorted(self._children[name])

    def downstream_of(self, names: Iterable[str]) -> tuple[str, ...]:
        """Union of transitive dependents of ``names``, excluding ``names`` themselves."""
        roots = set(names)
        found: set[str] = set()
        for name in roots:
            found.update(self.dependents(name, transitive=True))
        return self._sorted(found - roots)

    def serialize(self) -> dict[str, object]:
        return {
            "stages": [self._stages[name].to_dict() for name in self._stages],
            "order": list(self._order),
        }

    def _topological_sort(self) -> tuple[str, ...]:
        indegree = {name: len(parents) for name, parents in self._parents.items()}
        ready = [(self._index[name], name) for name, degree in indegree.items() if degree == 0]
        heapify(ready)

        order: list[str] = []
        while ready:
            _, name = heappop(ready)
            order.append(name)
            for child in self._children[name]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heappush(ready, (self._index[child], child))

        if len(order) != len(self._stages):
            raise CycleError(self._detect_cycles())
        return tuple(order)

    def _detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """Closed cycle paths, each rotated to start at its earliest-declared stage."""
        state: dict[str, int] = {}
        stack: list[str] = []
        position: dict[str, int] = {}
        cycles: dict[tuple[str, ...], None] = {}

        for start in self._stages:
            if state.get(start, 0) != 0:
                continue
            state[start] = 1
            position[start] = 0
            stack.append(start)
            frames: list[tuple[str, Iterator[str]]] = [(start, iter(self._sorted(self._children[start])))]

            while frames:
                node, children = frames[-1]
                child = next(children, None)
                if child is None:
                    frames.pop()
                    state[node] = 2
                    stack.pop()
                    del position[node]
                    continue
                child_state = state.get(child, 0)
                if child_state == 0:
                    state[child] = 1
                    position[child] = len(stack)
                    stack.append(child)
                    frames.append((child, iter(self._sorted(self._children[child]))))
                elif child_state == 1:
                    cycles[self._canonical_cycle(stack[position[child] :])] = None

        return tuple(cycles)

    def _canonical_cycle(self, core: Sequence[str]) -> tuple[str, ...]:
        pivot = min(range(len(core)), key=lambda offset: self._index[core[offset]])
        rotated = tuple(core[pivot:]) + tuple(core[:pivot])
        return rotated + (rotated[0],)

    def _closure(self, name: str, adjacency: dict[str, set[str]]) -> tuple[str, ...]:
        visited: set[str] = set()
        pending = list(adjacency[name])
        while pending:
            node = pending.pop()
            if node in visited:
                continue
            visited.add(node)
            pending.extend(adjacency[node] - visited)
        return self._sorted(visited)

    def _sorted(self, names: Iterable[str]) -> tuple[str, ...]:
        return tuple(sorted(names, key=self._index.__getitem__))

    def _assert_known(self, name: str) -> None:
        if name not in self._stages:
            raise KeyError(f"unknown stage: {name}")


__all__ = ["StageGraph"]
