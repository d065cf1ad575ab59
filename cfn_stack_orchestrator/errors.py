"""Exception hierarchy shared by the orchestrators."""
from __future__ import annotations

from typing import List, Optional


class OrchestratorError(Exception):
  """Base error; carries the component and stack it concerns when known."""

  def __init__(
    self,
    message: str,
    *,
    component: Optional[str] = None,
    stack_name: Optional[str] = None,
  ) -> None:
    super().__init__(message)
    self.message = message
    self.component = component
    self.stack_name = stack_name

  def locate(self, component: Optional[str], stack_name: Optional[str]) -> "OrchestratorError":
    """Fill in the component and stack when the raiser did not know them."""
    self.component = self.component or component
    self.stack_name = self.stack_name or stack_name
    return self

  def __str__(self) -> str:
    location = []
    if self.component:
      location.append(f"component '{self.component}'")
    if self.stack_name:
      location.append(f"stack '{self.stack_name}'")
    if location:
      return f"{self.message} [{', '.join(location)}]"
    return self.message


class ConfigurationError(OrchestratorError, ValueError):
  pass


class ProfileError(ConfigurationError):
  pass


class CycleDetected(ConfigurationError):
  def __init__(self, cycle: List[str]) -> None:
    self.cycle = list(cycle)
    super().__init__(
      f"Cyclic dependency detected: {' -> '.join(self.cycle)}",
      component=self.cycle[0] if self.cycle else None,
    )


class UnknownDependency(ConfigurationError):
  def __init__(self, component: str, dependency: str) -> None:
    self.dependency = dependency
    super().__init__(
      f"Component '{component}' references unknown component '{dependency}'",
      component=component,
    )


class UnknownComponent(ConfigurationError):
  def __init__(self, names: List[str]) -> None:
    self.names = sorted(names)
    super().__init__(f"Requested components are not in the registry: {', '.join(self.names)}")


class MissingParameter(ConfigurationError):
  def __init__(self, component: str, parameter: str, stack_name: Optional[str] = None) -> None:
    self.parameter = parameter
    super().__init__(
      f"Required parameter '{parameter}' has no value",
      component=component,
      stack_name=stack_name,
    )


class StackNotFound(OrchestratorError):
  def __init__(self, stack_name: str, component: Optional[str] = None) -> None:
    super().__init__("Stack does not exist", component=component, stack_name=stack_name)


class StackNotReady(OrchestratorError):
  def __init__(self, stack_name: str, status: str, component: Optional[str] = None) -> None:
    self.status = status
    super().__init__(
      f"Stack is not complete (status: {status})",
      component=component,
      stack_name=stack_name,
    )


class MissingOutput(OrchestratorError):
  def __init__(
    self,
    component: str,
    parameter: str,
    upstream: str,
    output_key: str,
    stack_name: Optional[str] = None,
  ) -> None:
    self.parameter = parameter
    self.upstream = upstream
    self.output_key = output_key
    super().__init__(
      f"Output '{output_key}' of upstream component '{upstream}' is missing; "
      f"cannot bind parameter '{parameter}'",
      component=component,
      stack_name=stack_name,
    )


class ProviderError(OrchestratorError):
  pass


class StackOperationFailed(OrchestratorError):
  def __init__(self, component: str, stack_name: str, status: str, reason: Optional[str]) -> None:
    self.status = status
    self.reason = reason
    detail = f": {reason}" if reason else ""
    super().__init__(
      f"Stack operation ended in {status}{detail}",
      component=component,
      stack_name=stack_name,
    )


class UnrecoverableState(OrchestratorError):
  def __init__(self, component: str, stack_name: str, status: str, reason: Optional[str]) -> None:
    self.status = status
    self.reason = reason
    detail = f" ({reason})" if reason else ""
    super().__init__(
      f"Stack is in {status}{detail}; delete or repair it before deploying again",
      component=component,
      stack_name=stack_name,
    )


class DeploymentTimeout(OrchestratorError):
  def __init__(self, component: str, stack_name: str, timeout_seconds: float, status: str) -> None:
    self.timeout_seconds = timeout_seconds
    self.status = status
    super().__init__(
      f"Timed out after {int(timeout_seconds)}s waiting for a terminal status (last: {status})",
      component=component,
      stack_name=stack_name,
    )
