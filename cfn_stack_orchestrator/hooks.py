"""Pre-delete cleanup hooks.

Some resources refuse deletion while they still hold data. Components list
the hooks that clear them under ``cleanup`` in the profile; each entry's
``kind`` selects a factory registered here.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from .errors import ConfigurationError
from .models import CleanupSpec
from .provider import StackProvider
from .resolver import expand_placeholders


logger = logging.getLogger(__name__)


@dataclass
class CleanupContext:
  component: str
  stack_name: str
  environment: str
  provider: StackProvider
  outputs: Dict[str, str] = field(default_factory=dict)
  parameters: Dict[str, Any] = field(default_factory=dict)
  variables: Dict[str, str] = field(default_factory=dict)


CleanupHook = Callable[[CleanupContext], str]
HookFactory = Callable[[Dict[str, Any]], CleanupHook]


def empty_bucket_hook(options: Dict[str, Any]) -> CleanupHook:
  output_key = options.get("output")
  parameter = options.get("parameter")
  literal = options.get("bucket")
  if not (output_key or parameter or literal):
    raise ConfigurationError("empty-bucket cleanup needs one of 'output', 'parameter' or 'bucket'.")

  def run(context: CleanupContext) -> str:
    bucket = None
    if output_key:
      bucket = context.outputs.get(output_key)
    if not bucket and parameter:
      bucket = context.parameters.get(parameter)
    if not bucket and literal:
      bucket = expand_placeholders(literal, context.variables)
    if not bucket:
      return "no bucket name available; nothing emptied"
    removed = context.provider.object_store().empty_bucket(str(bucket))
    logger.debug("Emptied %s for %s (%d entries)", bucket, context.stack_name, removed)
    return f"emptied bucket '{bucket}' ({removed} object version(s) removed)"

  return run


class HookRegistry:
  def __init__(self) -> None:
    self._factories: Dict[str, HookFactory] = {}

  @classmethod
  def default(cls) -> "HookRegistry":
    registry = cls()
    registry.register("empty-bucket", empty_bucket_hook)
    return registry

  def register(self, kind: str, factory: HookFactory) -> None:
    self._factories[kind] = factory

  def kinds(self) -> List[str]:
    return sorted(self._factories)

  def build(self, spec: CleanupSpec, component: str) -> CleanupHook:
    factory = self._factories.get(spec.kind)
    if factory is None:
      raise ConfigurationError(
        f"Unknown cleanup hook kind '{spec.kind}' (known: {', '.join(self.kinds()) or 'none'})",
        component=component,
      )
    try:
      return factory(dict(spec.options))
    except ConfigurationError as exc:
      raise ConfigurationError(exc.message, component=component) from exc
