from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


DEGRADED_SUCCESS_RATE = 80.0


@dataclass(frozen=True)
class OutputBinding:
  component: str
  output_key: str

  @classmethod
  def parse(cls, value: str) -> "OutputBinding":
    if not isinstance(value, str) or "." not in value:
      raise ValueError(f"Output binding '{value}' must be written as 'component.OutputKey'.")
    component, output_key = value.split(".", 1)
    if not component or not output_key:
      raise ValueError(f"Output binding '{value}' must be written as 'component.OutputKey'.")
    return cls(component=component, output_key=output_key)

  def __str__(self) -> str:
    return f"{self.component}.{self.output_key}"


@dataclass
class CleanupSpec:
  kind: str
  options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ComponentDescriptor:
  name: str
  template: str
  parameters: Dict[str, Any] = field(default_factory=dict)
  required_parameters: List[str] = field(default_factory=list)
  depends_on: List[str] = field(default_factory=list)
  output_bindings: Dict[str, OutputBinding] = field(default_factory=dict)
  cleanup: List[CleanupSpec] = field(default_factory=list)
  residue_patterns: List[str] = field(default_factory=list)
  timeout_minutes: Optional[float] = None
  capabilities_named_iam: bool = True
  tags: Dict[str, str] = field(default_factory=dict)
  description: Optional[str] = None

  def __post_init__(self) -> None:
    # Every binding is also an ordering edge.
    ordered: List[str] = []
    for name in list(self.depends_on) + [binding.component for binding in self.output_bindings.values()]:
      if name not in ordered:
        ordered.append(name)
    self.depends_on = ordered

  @property
  def declared_parameters(self) -> List[str]:
    names: List[str] = []
    for name in list(self.required_parameters) + list(self.parameters) + list(self.output_bindings):
      if name not in names:
        names.append(name)
    return names


class StackStatus(str, Enum):
  ABSENT = "Absent"
  CREATING = "Creating"
  UPDATE_IN_PROGRESS = "UpdateInProgress"
  COMPLETE = "Complete"
  FAILED = "Failed"
  DELETING = "Deleting"
  DELETE_FAILED = "DeleteFailed"

  @property
  def is_terminal(self) -> bool:
    return self in _TERMINAL_STATUSES

  @property
  def is_in_progress(self) -> bool:
    return not self.is_terminal

  @property
  def is_failed(self) -> bool:
    return self in (StackStatus.FAILED, StackStatus.DELETE_FAILED)


_TERMINAL_STATUSES = frozenset({
  StackStatus.ABSENT,
  StackStatus.COMPLETE,
  StackStatus.FAILED,
  StackStatus.DELETE_FAILED,
})


@dataclass
class StackInstance:
  component: str
  stack_name: str
  status: StackStatus = StackStatus.ABSENT
  outputs: Dict[str, str] = field(default_factory=dict)
  status_reason: Optional[str] = None
  raw_status: Optional[str] = None


class CheckOutcome(str, Enum):
  PASSED = "passed"
  FAILED = "failed"
  SKIPPED = "skipped"


@dataclass
class VerificationResult:
  name: str
  outcome: CheckOutcome
  message: str = ""
  detail: Optional[str] = None
  duration_ms: float = 0.0

  @property
  def passed(self) -> bool:
    return self.outcome is CheckOutcome.PASSED

  @classmethod
  def success(cls, name: str, message: str = "", detail: Optional[str] = None) -> "VerificationResult":
    return cls(name=name, outcome=CheckOutcome.PASSED, message=message, detail=detail)

  @classmethod
  def failure(cls, name: str, message: str, detail: Optional[str] = None) -> "VerificationResult":
    return cls(name=name, outcome=CheckOutcome.FAILED, message=message, detail=detail)

  @classmethod
  def skip(cls, name: str, reason: str) -> "VerificationResult":
    return cls(name=name, outcome=CheckOutcome.SKIPPED, message=reason)


def _utcnow() -> datetime:
  return datetime.now(timezone.utc)


@dataclass
class TestReport:
  """Accumulates verification outcomes for one run.

  The success rate keeps skipped checks in the denominator, so a skipped
  check lowers the rate without counting as a failure.
  """

  __test__ = False

  results: List[VerificationResult] = field(default_factory=list)
  warnings: List[str] = field(default_factory=list)
  started_at: datetime = field(default_factory=_utcnow)
  finished_at: Optional[datetime] = None

  def record(self, result: VerificationResult) -> VerificationResult:
    self.results.append(result)
    return result

  def finish(self) -> "TestReport":
    self.finished_at = _utcnow()
    return self

  @property
  def total(self) -> int:
    return len(self.results)

  @property
  def passed(self) -> int:
    return sum(1 for result in self.results if result.outcome is CheckOutcome.PASSED)

  @property
  def failed(self) -> int:
    return sum(1 for result in self.results if result.outcome is CheckOutcome.FAILED)

  @property
  def skipped(self) -> int:
    return sum(1 for result in self.results if result.outcome is CheckOutcome.SKIPPED)

  @property
  def failures(self) -> List[str]:
    return [
      f"{result.name}: {result.message}"
      for result in self.results
      if result.outcome is CheckOutcome.FAILED
    ]

  @property
  def success_rate(self) -> float:
    if self.total == 0:
      return 100.0
    return (self.passed / self.total) * 100

  @property
  def exit_code(self) -> int:
    if self.failed == 0:
      return 0
    if self.success_rate >= DEGRADED_SUCCESS_RATE:
      return 1
    return 2

  def to_dict(self) -> Dict[str, Any]:
    return {
      "total": self.total,
      "passed": self.passed,
      "failed": self.failed,
      "skipped": self.skipped,
      "successRate": round(self.success_rate, 2),
      "exitCode": self.exit_code,
      "startedAt": self.started_at.isoformat(),
      "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
      "failures": self.failures,
      "warnings": list(self.warnings),
      "results": [
        {
          "name": result.name,
          "outcome": result.outcome.value,
          "message": result.message,
          "detail": result.detail,
          "durationMs": round(result.duration_ms, 1),
        }
        for result in self.results
      ],
    }
