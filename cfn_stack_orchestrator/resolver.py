from __future__ import annotations

import logging
import re
from typing import Any, Dict, Mapping, Optional

from .errors import MissingOutput, MissingParameter, StackNotFound, StackNotReady
from .models import ComponentDescriptor, StackStatus
from .provider import StackProvider
from .registry import StackRegistry


logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def expand_placeholders(value: Any, variables: Mapping[str, str]) -> Any:
  """Replace ``{name}`` tokens in strings with known variables.

  Unknown tokens are left untouched so literal braces survive.

  >>> expand_placeholders("{name_prefix}-bucket-{environment}", {"name_prefix": "poc2", "environment": "dev"})
  'poc2-bucket-dev'
  """
  if isinstance(value, str):
    return _PLACEHOLDER.sub(lambda match: str(variables.get(match.group(1), match.group(0))), value)
  if isinstance(value, list):
    return [expand_placeholders(item, variables) for item in value]
  return value


def _is_unset(value: Any) -> bool:
  return value is None or (isinstance(value, str) and value == "")


class OutputResolver:
  def __init__(
    self,
    provider: StackProvider,
    registry: StackRegistry,
    variables: Optional[Mapping[str, str]] = None,
  ) -> None:
    self._provider = provider
    self._registry = registry
    self._variables = dict(variables or {})
    self._cache: Dict[str, Dict[str, str]] = {}

  def variables(self, environment: str) -> Dict[str, str]:
    merged = {
      "environment": environment,
      "name_prefix": self._registry.name_prefix,
      "profile": self._registry.profile,
    }
    merged.update(self._variables)
    return merged

  def get_outputs(self, stack_name: str, component: Optional[str] = None) -> Dict[str, str]:
    cached = self._cache.get(stack_name)
    if cached is not None:
      return dict(cached)

    description = self._provider.describe_stack(stack_name)
    if description.status is StackStatus.ABSENT:
      raise StackNotFound(stack_name, component=component)
    if description.status is not StackStatus.COMPLETE:
      raise StackNotReady(stack_name, description.status.value, component=component)

    self._cache[stack_name] = dict(description.outputs)
    return dict(description.outputs)

  def remember(self, stack_name: str, outputs: Mapping[str, str]) -> None:
    self._cache[stack_name] = dict(outputs)

  def invalidate(self, stack_name: str) -> None:
    self._cache.pop(stack_name, None)

  def static_parameters(
    self,
    component: ComponentDescriptor,
    environment: str,
    overrides: Optional[Mapping[str, Any]] = None,
  ) -> Dict[str, Any]:
    variables = self.variables(environment)
    values = {
      name: expand_placeholders(value, variables)
      for name, value in component.parameters.items()
    }
    declared = set(component.declared_parameters)
    for name, value in (overrides or {}).items():
      if name in declared:
        values[name] = value
    return values

  def check_static(
    self,
    component: ComponentDescriptor,
    environment: str,
    overrides: Optional[Mapping[str, Any]] = None,
  ) -> None:
    """Fail before any provider call when a required, unbound parameter is unset."""
    values = self.static_parameters(component, environment, overrides)
    for name in component.required_parameters:
      if name in component.output_bindings:
        continue
      if _is_unset(values.get(name)):
        raise MissingParameter(
          component.name,
          name,
          stack_name=self._registry.stack_name(component.name, environment),
        )

  def resolve_parameters(
    self,
    component: ComponentDescriptor,
    environment: str,
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    allow_unresolved: bool = False,
  ) -> Dict[str, Any]:
    stack_name = self._registry.stack_name(component.name, environment)
    values = self.static_parameters(component, environment, overrides)

    for parameter, binding in component.output_bindings.items():
      upstream_stack = self._registry.stack_name(binding.component, environment)
      try:
        outputs = self.get_outputs(upstream_stack, component=binding.component)
      except (StackNotFound, StackNotReady):
        if allow_unresolved:
          values[parameter] = f"<{binding}>"
          continue
        raise
      if binding.output_key not in outputs:
        raise MissingOutput(
          component.name,
          parameter,
          binding.component,
          binding.output_key,
          stack_name=stack_name,
        )
      values[parameter] = outputs[binding.output_key]
      logger.debug("Bound %s.%s from %s", component.name, parameter, binding)

    for name in component.required_parameters:
      if _is_unset(values.get(name)):
        raise MissingParameter(component.name, name, stack_name=stack_name)
    return values
