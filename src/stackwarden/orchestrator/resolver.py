"""Stack graph resolver: deployment and teardown order."""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Union

from stackwarden.orchestrator.dependency_graph import DependencyGraph
from stackwarden.state.models import Stack, StackStatus
from stackwarden.utils.errors import DependencyError, ErrorContext
from stackwarden.utils.logging import get_logger

logger = get_logger(__name__)

KnownStacks = Union[Dict[str, Stack], Iterable[Stack]]


@dataclass
class Resolution:
    """Ordered stacks for one request, dependencies first."""
    order: List[Stack]
    warnings: List[str] = field(default_factory=list)

    @property
    def names(self) -> List[str]:
        return [stack.name for stack in self.order]


def _index(known: KnownStacks) -> Dict[str, Stack]:
    if isinstance(known, dict):
        return dict(known)
    return {stack.name: stack for stack in known}


def build_graph(stacks: Dict[str, Stack]) -> DependencyGraph:
    return DependencyGraph.from_mapping({name: s.dependencies for name, s in stacks.items()})


def resolve_order(
    requested: Union[str, Stack],
    known: KnownStacks,
    require_deployed: bool = True
) -> Resolution:
    """Compute the order in which ``requested`` and its dependencies apply.

    Args:
        requested: Stack (or stack name) the caller wants to act on
        known: Every stack the caller knows about
        require_deployed: Fail unless every dependency is deployed. With
            False only existence and acyclicity are checked, for callers
            that deploy the whole chain in order.

    Returns:
        Resolution whose order ends with ``requested``

    Raises:
        DependencyError: Naming the first missing or unhealthy prerequisite
        CyclicDependencyError: Naming the cycle
    """
    stacks = _index(known)
    if isinstance(requested, Stack):
        stacks.setdefault(requested.name, requested)
        name = requested.name
    else:
        name = requested
        if name not in stacks:
            raise DependencyError(f"Stack '{name}' is not declared", dependency=name)

    graph = build_graph(stacks)
    closure = graph.get_all_dependencies(name) | {name}
    ordered = graph.topological_sort(closure)

    warnings = []
    for dep in ordered:
        if dep == name:
            continue
        status = stacks[dep].status
        if status == StackStatus.DEPLOYED_WITH_DRIFT:
            warnings.append(f"Dependency '{dep}' of '{name}' is deployed with drift")
        elif require_deployed and not status.is_deployed:
            raise DependencyError(
                f"Dependency '{dep}' of '{name}' is not deployed (status {status.value})",
                dependency=dep,
                context=ErrorContext(stack=name, operation='resolve-order'),
                suggestions=[f"Deploy '{dep}' first, or pass --with-dependencies"]
            )

    logger.debug(f"Resolved order for {name}: {' -> '.join(ordered)}")
    return Resolution(order=[stacks[n] for n in ordered], warnings=warnings)


def teardown_order(names: Iterable[str], known: KnownStacks) -> List[List[Stack]]:
    """Group the stacks to destroy into waves, dependents first.

    The requested set is expanded with every stack that still exists at the
    provider and transitively depends on it, so none is left pointing at a
    deleted one.

    Raises:
        DependencyError: If a requested stack is not declared
        CyclicDependencyError: If the affected stacks contain a cycle
    """
    stacks = _index(known)
    graph = build_graph(stacks)

    selected = set()
    for name in names:
        if name not in stacks:
            raise DependencyError(f"Stack '{name}' is not declared", dependency=name)
        selected.add(name)
        for dependent in graph.get_all_dependents(name):
            if stacks[dependent].exists_at_provider:
                selected.add(dependent)

    waves = graph.get_destruction_waves(selected)
    return [[stacks[n] for n in wave] for wave in waves]
