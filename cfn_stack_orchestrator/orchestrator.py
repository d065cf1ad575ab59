"""Sequential, fail-fast deployment of the components of one profile."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .config import Settings
from .console import Console
from .errors import (
  ConfigurationError,
  DeploymentTimeout,
  OrchestratorError,
  StackOperationFailed,
  UnrecoverableState,
)
from .manifest import is_remote_template
from .models import ComponentDescriptor, StackInstance, StackStatus
from .provider import StackDescription, StackProvider
from .registry import StackRegistry
from .resolver import OutputResolver


logger = logging.getLogger(__name__)

MANAGED_BY_TAG = "cfn-stack-orchestrator"


@dataclass
class Clock:
  sleep: Callable[[float], None] = time.sleep
  monotonic: Callable[[], float] = time.monotonic


class Operation(str, Enum):
  CREATE = "create"
  UPDATE = "update"
  NOOP = "noop"
  PLANNED = "planned"


@dataclass
class ComponentDeployment:
  component: str
  stack_name: str
  operation: Operation
  instance: StackInstance
  parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DeployResult:
  environment: str
  deployments: List[ComponentDeployment] = field(default_factory=list)

  @property
  def instances(self) -> List[StackInstance]:
    return [deployment.instance for deployment in self.deployments]

  def outputs(self, component: str) -> Dict[str, str]:
    for deployment in self.deployments:
      if deployment.component == component:
        return dict(deployment.instance.outputs)
    raise KeyError(component)


def wait_for_terminal(
  provider: StackProvider,
  component: str,
  stack_name: str,
  *,
  timeout: float,
  poll_interval: float,
  clock: Optional[Clock] = None,
  raise_on_failure: bool = True,
  on_status: Optional[Callable[[StackDescription], None]] = None,
) -> StackDescription:
  """Poll ``describe_stack`` until the stack reaches a terminal status."""
  clock = clock or Clock()
  deadline = clock.monotonic() + timeout
  last_raw: Optional[str] = None
  while True:
    description = provider.describe_stack(stack_name)
    if on_status is not None and description.raw_status != last_raw:
      on_status(description)
    last_raw = description.raw_status

    if description.status.is_terminal:
      if raise_on_failure and description.status.is_failed:
        raise StackOperationFailed(
          component,
          stack_name,
          description.raw_status or description.status.value,
          description.status_reason,
        )
      return description

    if clock.monotonic() >= deadline:
      raise DeploymentTimeout(component, stack_name, timeout, description.raw_status or description.status.value)
    logger.debug("%s is %s; sleeping %.1fs", stack_name, description.status.value, poll_interval)
    clock.sleep(poll_interval)


def stack_tags(
  registry: StackRegistry,
  descriptor: ComponentDescriptor,
  environment: str,
  project: Optional[str] = None,
) -> Dict[str, str]:
  tags = {
    "Project": project or registry.profile,
    "Environment": environment,
    "Component": descriptor.name,
    "ManagedBy": MANAGED_BY_TAG,
  }
  tags.update(descriptor.tags)
  return tags


class StackOrchestrator:
  def __init__(
    self,
    registry: StackRegistry,
    provider: StackProvider,
    settings: Settings,
    *,
    console: Optional[Console] = None,
    clock: Optional[Clock] = None,
    resolver: Optional[OutputResolver] = None,
    project_tag: Optional[str] = None,
  ) -> None:
    self.registry = registry
    self.provider = provider
    self.settings = settings
    self.console = console or Console()
    self.clock = clock or Clock()
    self.resolver = resolver or OutputResolver(
      provider,
      registry,
      variables={"region": settings.region or ""},
    )
    self.project_tag = project_tag

  @property
  def environment(self) -> str:
    return self.settings.environment

  def plan(
    self,
    requested: Optional[List[str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
  ) -> List[ComponentDescriptor]:
    """Pre-flight: order and configuration checks, with no provider calls."""
    ordered = self.registry.resolve_order(requested, self.settings.include_dependencies)
    for descriptor in ordered:
      self.resolver.check_static(descriptor, self.environment, overrides)
      if not is_remote_template(descriptor.template) and not Path(descriptor.template).is_file():
        raise ConfigurationError(
          f"Template '{descriptor.template}' does not exist",
          component=descriptor.name,
          stack_name=self.registry.stack_name(descriptor.name, self.environment),
        )
    return ordered

  def deploy(
    self,
    requested: Optional[List[str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
  ) -> DeployResult:
    ordered = self.plan(requested, overrides)
    self.console.print_dependency_summary(self.registry, ordered, self.environment, title="Deployment order")

    result = DeployResult(environment=self.environment)
    for descriptor in ordered:
      # Any error propagates: later components may need this one's outputs.
      result.deployments.append(self.deploy_component(descriptor, overrides))

    if not self.settings.dry_run:
      self.console.success(f"All {len(result.deployments)} component(s) deployed to '{self.environment}'.")
    return result

  def deploy_component(
    self,
    descriptor: ComponentDescriptor,
    overrides: Optional[Mapping[str, Any]] = None,
  ) -> ComponentDeployment:
    stack_name = self.registry.stack_name(descriptor.name, self.environment)
    try:
      return self._deploy_component(descriptor, stack_name, overrides)
    except OrchestratorError as exc:
      exc.locate(descriptor.name, stack_name)
      raise

  def _deploy_component(
    self,
    descriptor: ComponentDescriptor,
    stack_name: str,
    overrides: Optional[Mapping[str, Any]],
  ) -> ComponentDeployment:
    if self.settings.dry_run:
      parameters = self.resolver.resolve_parameters(
        descriptor, self.environment, overrides, allow_unresolved=True
      )
      self.console.info(f"[dry-run] {descriptor.name} -> {stack_name}")
      for key, value in parameters.items():
        self.console.info(f"  {key} = {value}")
      return ComponentDeployment(
        component=descriptor.name,
        stack_name=stack_name,
        operation=Operation.PLANNED,
        instance=StackInstance(component=descriptor.name, stack_name=stack_name),
        parameters=parameters,
      )

    parameters = self.resolver.resolve_parameters(descriptor, self.environment, overrides)
    timeout = self.settings.timeout_seconds(descriptor.timeout_minutes)

    current = self.provider.describe_stack(stack_name)
    if current.status.is_in_progress:
      # A previous run was interrupted; never issue a second operation on top of it.
      self.console.info(f"Stack '{stack_name}' is {current.raw_status or current.status.value}; waiting for it to settle...")
      current = self._wait(descriptor.name, stack_name, timeout, raise_on_failure=False)

    if current.status.is_failed:
      raise UnrecoverableState(
        descriptor.name,
        stack_name,
        current.raw_status or current.status.value,
        current.status_reason,
      )

    operation = Operation.CREATE if current.status is StackStatus.ABSENT else Operation.UPDATE
    payload = self.provider.package_template(descriptor.template)
    verb = "Creating" if operation is Operation.CREATE else "Updating"
    self.console.info(f"{verb} stack '{stack_name}' for component '{descriptor.name}'...")

    operation_id = self.provider.create_or_update_stack(
      stack_name,
      payload,
      parameters,
      descriptor.capabilities_named_iam,
      stack_tags(self.registry, descriptor, self.environment, self.project_tag),
    )

    if operation_id is None and current.status is StackStatus.COMPLETE:
      operation = Operation.NOOP
      final = current
      self.console.info(f"  No changes to apply for '{stack_name}'.")
    else:
      logger.debug("Operation %s issued for %s", operation_id, stack_name)
      final = self._wait(descriptor.name, stack_name, timeout)
      if final.status is not StackStatus.COMPLETE:
        # A stack that rolled back and vanished mid-operation ends ABSENT, not FAILED.
        raise StackOperationFailed(
          descriptor.name,
          stack_name,
          final.raw_status or final.status.value,
          final.status_reason,
        )

    instance = StackInstance(
      component=descriptor.name,
      stack_name=stack_name,
      status=final.status,
      outputs=dict(final.outputs),
      status_reason=final.status_reason,
      raw_status=final.raw_status,
    )
    self.resolver.remember(stack_name, instance.outputs)
    self.console.success(f"  {descriptor.name}: {final.raw_status or final.status.value}")
    return ComponentDeployment(
      component=descriptor.name,
      stack_name=stack_name,
      operation=operation,
      instance=instance,
      parameters=parameters,
    )

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
