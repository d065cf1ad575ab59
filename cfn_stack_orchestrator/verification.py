"""Post-deployment health checks.

Checks run one after another against the deployed stacks. Each outcome is
folded into a ``TestReport`` that the caller owns; a check that raises or
exceeds its time budget is recorded as failed instead of propagating.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence, Union

from .models import StackStatus, TestReport, VerificationResult
from .provider import StackProvider
from .registry import StackRegistry
from .resolver import OutputResolver


logger = logging.getLogger(__name__)


@dataclass
class VerificationContext:
  environment: str
  registry: StackRegistry
  provider: StackProvider
  outputs: Dict[str, Dict[str, str]] = field(default_factory=dict)
  parameters: Dict[str, Dict[str, Any]] = field(default_factory=dict)
  variables: Dict[str, str] = field(default_factory=dict)
  destructive: bool = False
  sleep: Callable[[float], None] = time.sleep

  def output(self, component: str, key: str) -> str:
    outputs = self.outputs.get(component)
    if outputs is None:
      raise KeyError(f"component '{component}' has no deployed outputs")
    if key not in outputs:
      raise KeyError(f"component '{component}' does not expose output '{key}'")
    return outputs[key]

  @classmethod
  def collect(
    cls,
    registry: StackRegistry,
    provider: StackProvider,
    resolver: OutputResolver,
    environment: str,
    *,
    destructive: bool = False,
  ) -> "VerificationContext":
    """Read back outputs of every COMPLETE stack of the profile."""
    outputs: Dict[str, Dict[str, str]] = {}
    parameters: Dict[str, Dict[str, Any]] = {}
    for descriptor in registry.descriptors:
      stack_name = registry.stack_name(descriptor.name, environment)
      description = provider.describe_stack(stack_name)
      if description.status is StackStatus.COMPLETE:
        outputs[descriptor.name] = dict(description.outputs)
      parameters[descriptor.name] = resolver.static_parameters(descriptor, environment)
    return cls(
      environment=environment,
      registry=registry,
      provider=provider,
      outputs=outputs,
      parameters=parameters,
      variables=resolver.variables(environment),
      destructive=destructive,
    )


CheckReturn = Union[VerificationResult, bool, None]


@dataclass
class NamedCheck:
  name: str
  run: Callable[[VerificationContext], CheckReturn]
  skip_reason: Optional[Callable[[VerificationContext], Optional[str]]] = None
  delay_after: float = 0.0


class VerificationRunner:
  def __init__(
    self,
    timeout_per_check: float = 60.0,
    sleep: Callable[[float], None] = time.sleep,
  ) -> None:
    self.timeout_per_check = timeout_per_check
    self._sleep = sleep

  def run_checks(
    self,
    checks: Sequence[NamedCheck],
    context: VerificationContext,
    report: Optional[TestReport] = None,
  ) -> TestReport:
    if report is None:
      report = TestReport()
    for index, check in enumerate(checks):
      report.record(self.run_check(check, context))
      if check.delay_after > 0 and index < len(checks) - 1:
        self._sleep(check.delay_after)
    return report.finish()

  def run_check(self, check: NamedCheck, context: VerificationContext) -> VerificationResult:
    started = time.perf_counter()
    result = self._evaluate(check, context)
    result.duration_ms = (time.perf_counter() - started) * 1000
    logger.debug("Check %s: %s %s", check.name, result.outcome.value, result.message)
    return result

  def _evaluate(self, check: NamedCheck, context: VerificationContext) -> VerificationResult:
    if check.skip_reason is not None:
      try:
        reason = check.skip_reason(context)
      except Exception as exc:  # pylint: disable=broad-except
        return VerificationResult.failure(check.name, f"precondition raised {type(exc).__name__}: {exc}")
      if reason:
        return VerificationResult.skip(check.name, reason)

    # A daemon worker lets the runner, and the process, stop waiting on a hung check.
    state: Dict[str, Any] = {}

    def work() -> None:
      try:
        state["outcome"] = check.run(context)
      except Exception as exc:  # pylint: disable=broad-except
        state["error"] = exc

    worker = threading.Thread(target=work, name=f"check: {check.name}", daemon=True)
    worker.start()
    worker.join(self.timeout_per_check)
    if worker.is_alive():
      return VerificationResult.failure(check.name, f"timed out after {self.timeout_per_check:g}s")
    if "error" in state:
      exc = state["error"]
      return VerificationResult.failure(check.name, f"{type(exc).__name__}: {exc}")
    return self._coerce(check.name, state.get("outcome"))

  @staticmethod
  def _coerce(name: str, outcome: CheckReturn) -> VerificationResult:
    if isinstance(outcome, VerificationResult):
      if not outcome.name:
        outcome.name = name
      return outcome
    if outcome is False:
      return VerificationResult.failure(name, "check reported failure")
    return VerificationResult.success(name)

