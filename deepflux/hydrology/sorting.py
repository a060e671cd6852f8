"""Dependency resolution over variable names.

Producers are ordered before consumers with ``graphlib.TopologicalSorter``; ties
between items with no mutual dependency keep their declaration order.
"""

import heapq
import logging
from graphlib import CycleError, TopologicalSorter
from typing import Callable, Dict, Iterable, List, Sequence, Set, Tuple, TypeVar

from ..errors import DefinitionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _producer_map(items: Sequence[T], outputs_of: Callable[[T], Iterable[str]]) -> Dict[str, int]:
    producers: Dict[str, int] = {}
    for idx, item in enumerate(items):
        for name in outputs_of(item):
            if name in producers:
                raise DefinitionError(
                    f"Variable '{name}' is produced by more than one item "
                    f"(positions {producers[name]} and {idx})"
                )
            producers[name] = idx
    return producers


def dependency_graph(
    items: Sequence[T],
    inputs_of: Callable[[T], Iterable[str]],
    outputs_of: Callable[[T], Iterable[str]],
) -> Dict[int, Set[int]]:
    """Map each item index to the indices of the items producing its inputs."""
    producers = _producer_map(items, outputs_of)
    graph: Dict[int, Set[int]] = {}
    for idx, item in enumerate(items):
        graph[idx] = {producers[n] for n in inputs_of(item) if n in producers and producers[n] != idx}
    return graph


def stable_order(graph: Dict[int, Set[int]]) -> List[int]:
    """Topological order of integer nodes, smallest ready index first."""
    sorter = TopologicalSorter(graph)
    try:
        sorter.prepare()
    except CycleError as e:
        cycle = " -> ".join(str(n) for n in e.args[1])
        raise DefinitionError(f"Circular dependency detected: {cycle}") from e

    order: List[int] = []
    ready = list(sorter.get_ready())
    heapq.heapify(ready)
    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        sorter.done(node)
        for nxt in sorter.get_ready():
            heapq.heappush(ready, nxt)
    return order


def topological_sort(
    items: Sequence[T],
    inputs_of: Callable[[T], Iterable[str]],
    outputs_of: Callable[[T], Iterable[str]],
    label: Callable[[T], str] = str,
) -> List[T]:
    """Order ``items`` so that every producer precedes its consumers.

    Raises
    ------
    DefinitionError
        If two items produce the same name or the dependencies are cyclic.
    """
    items = list(items)
    graph = dependency_graph(items, inputs_of, outputs_of)
    try:
        order = stable_order(graph)
    except DefinitionError as e:
        names = ", ".join(label(item) for item in items)
        raise DefinitionError(f"{e} (among: {names})") from e.__cause__
    logger.debug("Resolved order: %s", [label(items[i]) for i in order])
    return [items[i] for i in order]


def sort_fluxes(fluxes: Sequence) -> List:
    """Order fluxes so that every flux follows the fluxes producing its inputs."""
    return topological_sort(
        fluxes,
        inputs_of=lambda f: f.input_names,
        outputs_of=lambda f: f.output_names,
        label=lambda f: f.name,
    )


def sort_components(components: Sequence) -> List:
    """Order components by the variables (outputs and states) they exchange."""
    return topological_sort(
        components,
        inputs_of=lambda c: c.input_names,
        outputs_of=lambda c: [*c.state_names, *c.output_names],
        label=lambda c: c.name,
    )


def node_generations(edges: Iterable[Tuple[int, int]], num_nodes: int) -> List[List[int]]:
    """Group the nodes of a directed graph into topological generations.

    Nodes in one generation have no edge between them; every edge points from an
    earlier generation to a later one.
    """
    graph: Dict[int, Set[int]] = {n: set() for n in range(num_nodes)}
    for src, dst in edges:
        graph[dst].add(src)
    sorter = TopologicalSorter(graph)
    try:
        sorter.prepare()
    except CycleError as e:
        raise DefinitionError(
            f"The routing graph contains a cycle through nodes {list(e.args[1])}"
        ) from e

    generations = []
    while sorter.is_active():
        ready = sorted(sorter.get_ready())
        generations.append(ready)
        sorter.done(*ready)
    return generations
