"""Reverse-order deletion with pre-delete cleanup and a residue scan."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

from .config import Settings
from .console import Console
from .errors import OrchestratorError, ProviderError
from .hooks import CleanupContext, CleanupHook, HookRegistry
from .models import ComponentDescriptor, StackStatus
from .orchestrator import Clock, wait_for_terminal
from .provider import StackDescription, StackProvider
from .registry import StackRegistry
from .resolver import OutputResolver, expand_placeholders


logger = logging.getLogger(__name__)


class TeardownOutcome(str, Enum):
  DELETED = "deleted"
  ABSENT = "absent"
  FAILED = "failed"
  BLOCKED = "blocked"


@dataclass
class ComponentTeardown:
  component: str
  stack_name: str
  outcome: TeardownOutcome
  messages: List[str] = field(default_factory=list)


@dataclass
class TeardownResult:
  environment: str
  components: List[ComponentTeardown] = field(default_factory=list)
  residue: List[str] = field(default_factory=list)

  @property
  def failures(self) -> List[ComponentTeardown]:
    return [
      entry
      for entry in self.components
      if entry.outcome in (TeardownOutcome.FAILED, TeardownOutcome.BLOCKED)
    ]

  @property
  def order(self) -> List[str]:
    return [entry.component for entry in self.components]

  @property
  def exit_code(self) -> int:
    if self.failures:
      removed = [
        entry
        for entry in self.components
        if entry.outcome in (TeardownOutcome.DELETED, TeardownOutcome.ABSENT)
      ]
      return 1 if removed else 2
    return 1 if self.residue else 0


class TeardownOrchestrator:
  def __init__(
    self,
    registry: StackRegistry,
    provider: StackProvider,
    settings: Settings,
    *,
    hooks: Optional[HookRegistry] = None,
    console: Optional[Console] = None,
    clock: Optional[Clock] = None,
    resolver: Optional[OutputResolver] = None,
  ) -> None:
    self.registry = registry
    self.provider = provider
    self.settings = settings
    self.hooks = hooks or HookRegistry.default()
    self.console = console or Console()
    self.clock = clock or Clock()
    self.resolver = resolver or OutputResolver(
      provider,
      registry,
      variables={"region": settings.region or ""},
    )

  @property
  def environment(self) -> str:
    return self.settings.environment

  def plan(self, requested: Optional[List[str]] = None) -> List[ComponentDescriptor]:
    ordered = self.registry.resolve_teardown_order(
      requested, include_dependents=self.settings.include_dependencies
    )
    for descriptor in ordered:
      self._build_hooks(descriptor)
    return ordered

  def _build_hooks(self, descriptor: ComponentDescriptor) -> List[CleanupHook]:
    return [self.hooks.build(spec, descriptor.name) for spec in descriptor.cleanup]

  def teardown(
    self,
    requested: Optional[List[str]] = None,
    *,
    empty_stateful: bool = True,
    verify: bool = True,
  ) -> TeardownResult:
    ordered = self.plan(requested)
    self.console.print_dependency_summary(self.registry, ordered, self.environment, title="Teardown order")

    result = TeardownResult(environment=self.environment)
    blocked_by: Dict[str, str] = {}
    for descriptor in ordered:
      stack_name = self.registry.stack_name(descriptor.name, self.environment)
      blocker = blocked_by.get(descriptor.name)
      if blocker is not None:
        message = f"skipped: dependent component '{blocker}' could not be deleted"
        self.console.error(f"{descriptor.name} ({stack_name}): {message}")
        result.components.append(
          ComponentTeardown(descriptor.name, stack_name, TeardownOutcome.BLOCKED, [message])
        )
        continue

      entry = self.teardown_component(descriptor, empty_stateful=empty_stateful)
      result.components.append(entry)
      if entry.outcome is TeardownOutcome.FAILED:
        for upstream in self.registry.upstream_closure(descriptor.name):
          blocked_by.setdefault(upstream, descriptor.name)

    if verify:
      result.residue = self.verify_residue(ordered)
      for warning in result.residue:
        self.console.warning(warning)

    if result.failures:
      names = ", ".join(entry.component for entry in result.failures)
      self.console.error(f"Teardown completed with failures in: {names}")
    else:
      self.console.success(f"Teardown of {len(result.components)} component(s) in '{self.environment}' finished.")
    return result

  def teardown_component(self, descriptor: ComponentDescriptor, *, empty_stateful: bool = True) -> ComponentTeardown:
    stack_name = self.registry.stack_name(descriptor.name, self.environment)
    entry = ComponentTeardown(descriptor.name, stack_name, TeardownOutcome.DELETED)
    timeout = self.settings.timeout_seconds(descriptor.timeout_minutes)

    try:
      current = self.provider.describe_stack(stack_name)
      if current.status is StackStatus.ABSENT:
        entry.outcome = TeardownOutcome.ABSENT
        entry.messages.append("stack does not exist")
        self.console.info(f"{descriptor.name}: stack '{stack_name}' does not exist; nothing to delete.")
        return entry

      if current.status.is_in_progress:
        self.console.info(f"Stack '{stack_name}' is {current.raw_status or current.status.value}; waiting for it to settle...")
        current = self._wait(descriptor.name, stack_name, timeout, raise_on_failure=False)
        if current.status is StackStatus.ABSENT:
          entry.messages.append("stack was already being deleted")
          return entry

      if empty_stateful and descriptor.cleanup:
        self._run_cleanup(descriptor, stack_name, current, entry)

      self.console.info(f"Deleting stack '{stack_name}' for component '{descriptor.name}'...")
      self.provider.delete_stack(stack_name)
      self._wait(descriptor.name, stack_name, timeout)
      self.resolver.invalidate(stack_name)
      self.console.success(f"  {descriptor.name}: deleted")
    except OrchestratorError as exc:
      exc.locate(descriptor.name, stack_name)
      entry.outcome = TeardownOutcome.FAILED
      entry.messages.append(str(exc))
      self.console.error(f"Failed to delete component '{descriptor.name}' ({stack_name}): {exc}")
    return entry

  def _run_cleanup(
    self,
    descriptor: ComponentDescriptor,
    stack_name: str,
    current: StackDescription,
    entry: ComponentTeardown,
  ) -> None:
    context = CleanupContext(
      component=descriptor.name,
      stack_name=stack_name,
      environment=self.environment,
      provider=self.provider,
      outputs=dict(current.raw_outputs or current.outputs),
      parameters=self.resolver.static_parameters(descriptor, self.environment),
      variables=self.resolver.variables(self.environment),
    )
    for spec, hook in zip(descriptor.cleanup, self._build_hooks(descriptor)):
      try:
        message = hook(context)
      except OrchestratorError:
        raise
      except Exception as exc:  # pylint: disable=broad-except
        raise ProviderError(
          f"Cleanup hook '{spec.kind}' failed: {type(exc).__name__}: {exc}",
          component=descriptor.name,
          stack_name=stack_name,
        ) from exc
      entry.messages.append(message)
      self.console.info(f"  {descriptor.name}: {message}")

  def verify_residue(self, ordered: List[ComponentDescriptor]) -> List[str]:
    """List resources still matching each component's naming patterns.

    Findings and scan errors are returned as warnings; nothing is raised.
    """
    warnings: List[str] = []
    variables = self.resolver.variables(self.environment)
    for descriptor in ordered:
      stack_name = self.registry.stack_name(descriptor.name, self.environment)
      patterns = [stack_name, f"{stack_name}-*"]
      patterns.extend(expand_placeholders(pattern, variables) for pattern in descriptor.residue_patterns)

      seen: Set[str] = set()
      for pattern in patterns:
        try:
          found = self.provider.list_resources(pattern)
        except Exception as exc:  # pylint: disable=broad-except
          warnings.append(f"{descriptor.name}: residue scan for '{pattern}' failed: {exc}")
          continue
        for resource in found:
          if resource in seen:
            continue
          seen.add(resource)
          warnings.append(f"{descriptor.name}: '{resource}' still present (matches '{pattern}')")
    return warnings

  def _wait(self, component: str, stack_name: str, timeout: float, raise_on_failure: bool = True) -> StackDescription:
    return wait_for_terminal(
      self.provider,
      component,
      stack_name,
      timeout=timeout,
      poll_interval=self.settings.poll_interval,
      clock=self.clock,
      raise_on_failure=raise_on_failure,
      on_status=lambda description: self.console.info(
        f"  {stack_name}: {description.raw_status or description.status.value}"
      ),
    )
