"""Check kinds that profiles can declare under ``checks``.

Every entry needs ``name`` and ``kind``. Strings may reference deployed
outputs as ``{component.OutputKey}`` and run variables as ``{environment}``.
Two optional keys turn a check into a skip: ``requires: destructive`` and
``when: {component: c, parameter: P, equals: value}``.
"""
from __future__ import annotations

import re
import uuid
from typing import Any, Callable, Dict, List, Optional

import httpx

from .errors import ConfigurationError
from .models import StackStatus, VerificationResult
from .registry import ALL_COMPONENTS
from .resolver import expand_placeholders
from .verification import NamedCheck, VerificationContext


_OUTPUT_REFERENCE = re.compile(r"\{([\w-]+)\.(\w+)\}")

CheckBuilder = Callable[[Dict[str, Any], VerificationContext], List[NamedCheck]]


def render(value: Any, context: VerificationContext) -> Any:
  if isinstance(value, str):
    rendered = _OUTPUT_REFERENCE.sub(lambda match: context.output(match.group(1), match.group(2)), value)
    return expand_placeholders(rendered, context.variables)
  if isinstance(value, dict):
    return {key: render(item, context) for key, item in value.items()}
  if isinstance(value, list):
    return [render(item, context) for item in value]
  return value


def _skip_reason(spec: Dict[str, Any]) -> Optional[Callable[[VerificationContext], Optional[str]]]:
  requires = spec.get("requires")
  when = spec.get("when")
  if not requires and not when:
    return None

  def reason(context: VerificationContext) -> Optional[str]:
    if requires == "destructive" and not context.destructive:
      return "requires destructive testing opt-in (--destructive-tests)"
    if isinstance(when, dict):
      component = when.get("component")
      parameter = when.get("parameter")
      expected = str(when.get("equals", "true")).lower()
      if component:
        actual = context.parameters.get(component, {}).get(parameter)
      else:
        actual = next(
          (values[parameter] for values in context.parameters.values() if parameter in values),
          None,
        )
      if str(actual).lower() != expected:
        label = f"{component}.{parameter}" if component else parameter
        return f"{label} is '{actual}'; check applies when it is '{expected}'"
    return None

  return reason


def _require(spec: Dict[str, Any], *keys: str) -> None:
  missing = [key for key in keys if not spec.get(key)]
  if missing:
    raise ConfigurationError(f"Check '{spec.get('name')}' ({spec.get('kind')}) is missing: {', '.join(missing)}")


def _components(spec: Dict[str, Any], context: VerificationContext) -> List[str]:
  requested = spec.get("components")
  if not requested and spec.get("component"):
    requested = [spec["component"]]
  if not requested or ALL_COMPONENTS in requested:
    return context.registry.names
  unknown = [name for name in requested if name not in context.registry]
  if unknown:
    raise ConfigurationError(f"Check '{spec.get('name')}' references unknown components: {', '.join(unknown)}")
  return list(requested)


def build_stack_status(spec: Dict[str, Any], context: VerificationContext) -> List[NamedCheck]:
  checks: List[NamedCheck] = []
  for component in _components(spec, context):
    stack_name = context.registry.stack_name(component, context.environment)

    def run(ctx: VerificationContext, stack_name: str = stack_name) -> VerificationResult:
      description = ctx.provider.describe_stack(stack_name)
      label = description.raw_status or description.status.value
      if description.status is StackStatus.COMPLETE:
        return VerificationResult.success("", f"{stack_name} is {label}")
      return VerificationResult.failure("", f"{stack_name} is {label}", detail=description.status_reason)

    checks.append(NamedCheck(f"{spec['name']}: {component}", run, _skip_reason(spec), _delay(spec)))
  return checks


def build_output_present(spec: Dict[str, Any], context: VerificationContext) -> List[NamedCheck]:
  _require(spec, "component", "output")
  pattern = re.compile(spec["pattern"]) if spec.get("pattern") else None

  def run(ctx: VerificationContext) -> VerificationResult:
    value = ctx.output(spec["component"], spec["output"])
    if not value:
      return VerificationResult.failure("", f"{spec['component']}.{spec['output']} is empty")
    if pattern is not None and not pattern.search(value):
      return VerificationResult.failure("", f"{spec['component']}.{spec['output']} does not match {pattern.pattern}", detail=value)
    return VerificationResult.success("", f"{spec['component']}.{spec['output']} = {value}")

  return [NamedCheck(spec["name"], run, _skip_reason(spec), _delay(spec))]


def build_http(spec: Dict[str, Any], context: VerificationContext) -> List[NamedCheck]:
  _require(spec, "url")
  method = str(spec.get("method", "GET")).upper()
  expected = spec.get("expectStatus", [200])
  if isinstance(expected, int):
    expected = [expected]
  timeout = float(spec.get("timeout", 10.0))

  def run(ctx: VerificationContext) -> VerificationResult:
    url = render(spec["url"], ctx)
    with httpx.Client(timeout=timeout) as client:
      response = client.request(
        method,
        url,
        json=render(spec.get("json"), ctx) if spec.get("json") is not None else None,
        headers=render(spec.get("headers", {}), ctx),
      )
    body = response.text[:200]
    if response.status_code not in expected:
      return VerificationResult.failure("", f"{method} {url} returned {response.status_code}", detail=body)
    if spec.get("expectBody") and render(spec["expectBody"], ctx) not in response.text:
      return VerificationResult.failure("", f"{method} {url} body lacks expected text", detail=body)
    return VerificationResult.success("", f"{method} {url} returned {response.status_code}")

  return [NamedCheck(spec["name"], run, _skip_reason(spec), _delay(spec))]


def build_resource_exists(spec: Dict[str, Any], context: VerificationContext) -> List[NamedCheck]:
  _require(spec, "pattern")

  def run(ctx: VerificationContext) -> VerificationResult:
    pattern = render(spec["pattern"], ctx)
    found = ctx.provider.list_resources(pattern)
    if not found:
      return VerificationResult.failure("", f"no resource matches '{pattern}'")
    return VerificationResult.success("", f"{len(found)} resource(s) match '{pattern}'", detail=", ".join(found))

  return [NamedCheck(spec["name"], run, _skip_reason(spec), _delay(spec))]


def build_bucket_roundtrip(spec: Dict[str, Any], context: VerificationContext) -> List[NamedCheck]:
  if not spec.get("bucket"):
    _require(spec, "component", "output")
  prefix = str(spec.get("prefix", "verification")).strip("/")
  propagation_delay = float(spec.get("propagationDelay", 2.0))

  def run(ctx: VerificationContext) -> VerificationResult:
    bucket = render(spec["bucket"], ctx) if spec.get("bucket") else ctx.output(spec["component"], spec["output"])
    store = ctx.provider.object_store()
    key = f"{prefix}/roundtrip-{uuid.uuid4().hex}.txt"
    store.put_object(bucket, key, b"cfn-stack-orchestrator verification object\n")
    try:
      # Freshly written objects are not always listable straight away.
      ctx.sleep(propagation_delay)
      if key not in store.list_keys(bucket, prefix=key):
        return VerificationResult.failure("", f"test object s3://{bucket}/{key} was written but is not listed")
    finally:
      store.delete_object(bucket, key)
    return VerificationResult.success("", f"wrote, listed and deleted s3://{bucket}/{key}")

  return [NamedCheck(spec["name"], run, _skip_reason(spec), _delay(spec))]


def _delay(spec: Dict[str, Any]) -> float:
  return float(spec.get("delayAfter", 0.0))


CHECK_BUILDERS: Dict[str, CheckBuilder] = {
  "stack-status": build_stack_status,
  "output-present": build_output_present,
  "http": build_http,
  "resource-exists": build_resource_exists,
  "bucket-roundtrip": build_bucket_roundtrip,
}


def build_checks(specs: List[Dict[str, Any]], context: VerificationContext) -> List[NamedCheck]:
  checks: List[NamedCheck] = []
  for spec in specs:
    if not spec.get("name"):
      raise ConfigurationError("Every check needs a 'name'.")
    builder = CHECK_BUILDERS.get(spec.get("kind", ""))
    if builder is None:
      raise ConfigurationError(
        f"Check '{spec['name']}' has unknown kind '{spec.get('kind')}' "
        f"(known: {', '.join(sorted(CHECK_BUILDERS))})"
      )
    checks.extend(builder(spec, context))
  return checks
