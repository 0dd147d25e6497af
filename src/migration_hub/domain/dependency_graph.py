"""
Dependency graph builder.

Builds the execution plan from declared depends-on edges: a list of levels,
each a set of entities whose dependencies all live in earlier levels.
Leveling is Kahn's algorithm driven through ``graphlib.TopologicalSorter``;
every ``get_ready()`` batch is one level. Configuration errors are raised
before any store is touched.
"""

from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from typing import Dict, Iterable, List, Optional, Sequence, Set

from migration_hub.domain.errors import (
    ConfigurationError,
    DependencyCycleError,
    UnknownEntityError,
)
from migration_hub.domain.models import EntityDefinition
from migration_hub.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExecutionPlan:
    """Read-only plan computed once per run."""

    levels: List[List[str]]
    edges: Dict[str, Set[str]] = field(default_factory=dict)

    @property
    def order(self) -> List[str]:
        return [name for level in self.levels for name in level]

    def dependents_of(self, name: str) -> Set[str]:
        """All entities that transitively depend on ``name``."""
        result: Set[str] = set()
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for candidate, deps in self.edges.items():
                if current in deps and candidate not in result:
                    result.add(candidate)
                    frontier.append(candidate)
        return result


def build_execution_plan(
    definitions: Sequence[EntityDefinition],
    selected: Optional[Iterable[str]] = None,
) -> ExecutionPlan:
    """
    Compute dependency levels for the given entity definitions.

    Args:
        definitions: Every known entity definition
        selected: Optional subset to run; edges to entities outside the subset
            are treated as satisfied by earlier runs

    Returns:
        ExecutionPlan with deterministic, name-sorted levels

    Raises:
        UnknownEntityError: A depends_on or a selected name is not defined
        DependencyCycleError: The graph has a cycle (offending entities named)
    """
    by_name = {d.name: d for d in definitions}
    if len(by_name) != len(definitions):
        names = [d.name for d in definitions]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate entity names: {duplicates}")

    for definition in definitions:
        missing = [dep for dep in definition.depends_on if dep not in by_name]
        if missing:
            raise UnknownEntityError(definition.name, missing, by_name.keys())

    if selected is None:
        chosen = set(by_name)
    else:
        chosen = set(selected)
        unknown = sorted(chosen - set(by_name))
        if unknown:
            raise UnknownEntityError("<selection>", unknown, by_name.keys())

    graph: Dict[str, Set[str]] = {
        name: {dep for dep in by_name[name].depends_on if dep in chosen}
        for name in sorted(chosen)
    }

    sorter: TopologicalSorter = TopologicalSorter(graph)
    try:
        sorter.prepare()
    except CycleError as e:
        cycle = list(e.args[1]) if len(e.args) > 1 else sorted(graph)
        logger.error("dependency_graph.cycle_detected", cycle=cycle)
        raise DependencyCycleError(cycle) from e

    levels: List[List[str]] = []
    while sorter.is_active():
        ready = sorted(sorter.get_ready())
        levels.append(ready)
        sorter.done(*ready)

    logger.info(
        "dependency_graph.plan_built",
        level_count=len(levels),
        entity_count=len(graph),
        levels=levels,
    )
    return ExecutionPlan(levels=levels, edges=graph)
