from __future__ import annotations

import heapq
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

from .errors import ConfigurationError, CycleDetected, UnknownComponent, UnknownDependency
from .models import ComponentDescriptor


ALL_COMPONENTS = "all"


@dataclass
class ExecutionGraph:
  order_index: Dict[str, int]
  dependents: Dict[str, Set[str]]
  indegree: Dict[str, int]

  def initial_ready(self) -> List[str]:
    return sorted(
      [name for name, value in self.indegree.items() if value == 0],
      key=lambda candidate: self.order_index[candidate],
    )


class StackRegistry:
  """Component descriptors of one profile, in declaration order."""

  def __init__(
    self,
    descriptors: Iterable[ComponentDescriptor],
    *,
    name_prefix: str,
    profile: Optional[str] = None,
  ) -> None:
    self._descriptors: Dict[str, ComponentDescriptor] = {}
    for descriptor in descriptors:
      if descriptor.name in self._descriptors:
        raise ConfigurationError(f"Duplicate component name '{descriptor.name}'.", component=descriptor.name)
      self._descriptors[descriptor.name] = descriptor
    self.name_prefix = name_prefix
    self.profile = profile or name_prefix

  def __contains__(self, name: object) -> bool:
    return name in self._descriptors

  def __len__(self) -> int:
    return len(self._descriptors)

  def __getitem__(self, name: str) -> ComponentDescriptor:
    try:
      return self._descriptors[name]
    except KeyError:
      raise UnknownComponent([name]) from None

  @property
  def names(self) -> List[str]:
    return list(self._descriptors)

  @property
  def descriptors(self) -> List[ComponentDescriptor]:
    return list(self._descriptors.values())

  def stack_name(self, component: str, environment: str) -> str:
    return f"{self.name_prefix}-{component}-{environment}"

  def validate(self) -> None:
    for descriptor in self._descriptors.values():
      for dependency in descriptor.depends_on:
        if dependency not in self._descriptors:
          raise UnknownDependency(descriptor.name, dependency)
    self._check_cycles()

  def _check_cycles(self) -> None:
    visited: Set[str] = set()
    path: List[str] = []
    on_path: Set[str] = set()

    def visit(name: str) -> None:
      if name in visited:
        return
      if name in on_path:
        start = path.index(name)
        raise CycleDetected(path[start:] + [name])
      on_path.add(name)
      path.append(name)
      for dependency in self._descriptors[name].depends_on:
        visit(dependency)
      path.pop()
      on_path.remove(name)
      visited.add(name)

    for name in self._descriptors:
      visit(name)

  def upstream_closure(self, name: str) -> Set[str]:
    closure: Set[str] = set()
    pending = list(self[name].depends_on)
    while pending:
      current = pending.pop()
      if current in closure:
        continue
      closure.add(current)
      pending.extend(self[current].depends_on)
    return closure

  def dependents_of(self, name: str) -> Set[str]:
    return {
      descriptor.name
      for descriptor in self._descriptors.values()
      if name in descriptor.depends_on
    }

  def downstream_closure(self, name: str) -> Set[str]:
    closure: Set[str] = set()
    pending = list(self.dependents_of(name))
    while pending:
      current = pending.pop()
      if current in closure:
        continue
      closure.add(current)
      pending.extend(self.dependents_of(current))
    return closure

  def selection(
    self,
    requested: Optional[Iterable[str]] = None,
    include_dependencies: bool = False,
    include_dependents: bool = False,
  ) -> Set[str]:
    if requested is None:
      return set(self._descriptors)
    names = set(requested)
    if not names or ALL_COMPONENTS in names:
      return set(self._descriptors)
    unknown = names - set(self._descriptors)
    if unknown:
      raise UnknownComponent(sorted(unknown))
    for name in list(names):
      if include_dependencies:
        names |= self.upstream_closure(name)
      if include_dependents:
        names |= self.downstream_closure(name)
    return names

  def build_execution_graph(self, selected: Set[str]) -> ExecutionGraph:
    order_index = {name: idx for idx, name in enumerate(self._descriptors) if name in selected}
    dependents: Dict[str, Set[str]] = defaultdict(set)
    indegree: Dict[str, int] = {}

    for name in order_index:
      dependency_names = {
        dependency
        for dependency in self._descriptors[name].depends_on
        if dependency in order_index
      }
      indegree[name] = len(dependency_names)
      for dependency in dependency_names:
        dependents[dependency].add(name)
      dependents.setdefault(name, set())

    return ExecutionGraph(
      order_index=order_index,
      dependents={name: set(children) for name, children in dependents.items()},
      indegree=indegree,
    )

  def resolve_order(
    self,
    requested: Optional[Iterable[str]] = None,
    include_dependencies: bool = False,
    include_dependents: bool = False,
  ) -> List[ComponentDescriptor]:
    """Return descriptors in deployment order (dependencies first).

    Only edges between selected components constrain the order; among
    components that are free to go next, declaration order wins.
    """
    self.validate()
    selected = self.selection(requested, include_dependencies, include_dependents)
    graph = self.build_execution_graph(selected)

    ready = [(graph.order_index[name], name) for name in graph.initial_ready()]
    heapq.heapify(ready)
    order: List[ComponentDescriptor] = []
    while ready:
      _, name = heapq.heappop(ready)
      order.append(self._descriptors[name])
      for child in graph.dependents.get(name, set()):
        graph.indegree[child] -= 1
        if graph.indegree[child] == 0:
          heapq.heappush(ready, (graph.order_index[child], child))

    if len(order) != len(selected):
      # validate() has already rejected cycles over the full graph.
      blocked = sorted(selected - {descriptor.name for descriptor in order})
      raise CycleDetected(blocked)
    return order

  def resolve_teardown_order(
    self,
    requested: Optional[Iterable[str]] = None,
    include_dependents: bool = False,
  ) -> List[ComponentDescriptor]:
    return list(reversed(self.resolve_order(requested, include_dependents=include_dependents)))
