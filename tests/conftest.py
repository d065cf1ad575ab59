"""Shared fixtures: an in-memory provider, a manual clock and a quiet console."""
from __future__ import annotations

import fnmatch
import io
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

import pytest

from cfn_stack_orchestrator.config import Settings
from cfn_stack_orchestrator.console import Console
from cfn_stack_orchestrator.models import ComponentDescriptor, OutputBinding, StackStatus
from cfn_stack_orchestrator.orchestrator import Clock
from cfn_stack_orchestrator.provider import (
  ObjectStore,
  StackDescription,
  StackProvider,
  TemplatePayload,
  map_stack_status,
)
from cfn_stack_orchestrator.registry import StackRegistry


TEMPLATE_HOST = "https://templates.example.com"


def describe(name: str, raw_status: Optional[str], outputs: Optional[Dict[str, str]] = None,
             reason: Optional[str] = None) -> StackDescription:
  if raw_status is None or raw_status == "DELETE_COMPLETE":
    return StackDescription.absent(name)
  status = map_stack_status(raw_status)
  return StackDescription(
    stack_name=name,
    status=status,
    raw_status=raw_status,
    outputs=dict(outputs or {}) if status is StackStatus.COMPLETE else {},
    status_reason=reason,
    raw_outputs=dict(outputs or {}),
  )


class FakeObjectStore(ObjectStore):
  def __init__(self) -> None:
    self.buckets: Dict[str, Dict[str, bytes]] = {}
    self.emptied: List[str] = []

  def bucket_exists(self, bucket: str) -> bool:
    return bucket in self.buckets

  def put_object(self, bucket: str, key: str, body: bytes) -> None:
    self.buckets.setdefault(bucket, {})[key] = body

  def list_keys(self, bucket: str, prefix: str = "") -> List[str]:
    return sorted(key for key in self.buckets.get(bucket, {}) if key.startswith(prefix))

  def delete_object(self, bucket: str, key: str) -> None:
    self.buckets.get(bucket, {}).pop(key, None)

  def empty_bucket(self, bucket: str) -> int:
    self.emptied.append(bucket)
    objects = self.buckets.get(bucket)
    if objects is None:
      return 0
    removed = len(objects)
    objects.clear()
    return removed


class FakeProvider(StackProvider):
  """Scriptable in-memory stand-in for CloudFormation.

  ``describe_stack`` first drains any scripted descriptions queued for the
  stack, then keeps returning the last one. Mutating calls queue the status
  sequence a real service would report and are recorded in ``calls``.
  """

  def __init__(self) -> None:
    self.current: Dict[str, StackDescription] = {}
    self.queued: Dict[str, Deque[StackDescription]] = {}
    self.calls: List[Tuple[str, str]] = []
    self.requests: Dict[str, Dict[str, Any]] = {}
    self.outputs: Dict[str, Dict[str, str]] = {}
    self.create_failures: Dict[str, str] = {}
    self.create_outcomes: Dict[str, List[Tuple[Optional[str], Optional[Dict[str, str]], Optional[str]]]] = {}
    self.delete_failures: Dict[str, str] = {}
    self.resources: List[str] = []
    self.list_error: Optional[Exception] = None
    self.store = FakeObjectStore()

  # scripting helpers

  def set_stack(self, name: str, raw_status: Optional[str], outputs: Optional[Dict[str, str]] = None,
                reason: Optional[str] = None) -> None:
    self.current[name] = describe(name, raw_status, outputs, reason)
    if outputs is not None:
      self.outputs[name] = dict(outputs)

  def script(self, name: str, *steps: Tuple[Optional[str], Optional[Dict[str, str]], Optional[str]]) -> None:
    queue = self.queued.setdefault(name, deque())
    for raw_status, outputs, reason in steps:
      queue.append(describe(name, raw_status, outputs, reason))

  def mutating_calls(self) -> List[Tuple[str, str]]:
    return [call for call in self.calls if call[0] in {"create", "update", "delete"}]

  # StackProvider

  def object_store(self) -> ObjectStore:
    return self.store

  def package_template(self, reference: str) -> TemplatePayload:
    return TemplatePayload(url=reference)

  def describe_stack(self, name: str) -> StackDescription:
    self.calls.append(("describe", name))
    queue = self.queued.get(name)
    if queue:
      self.current[name] = queue.popleft()
    return self.current.get(name) or StackDescription.absent(name)

  def create_or_update_stack(self, name: str, template: TemplatePayload, parameters: Dict[str, str],
                             allow_named_iam: bool, tags: Optional[Dict[str, str]] = None) -> Optional[str]:
    existing = self.current.get(name)
    outputs = self.outputs.get(name, {})
    if existing is None or existing.raw_status is None:
      self.calls.append(("create", name))
      self.requests[name] = {"template": template, "parameters": dict(parameters), "tags": dict(tags or {}),
                             "allow_named_iam": allow_named_iam}
      if name in self.create_outcomes:
        self.script(name, *self.create_outcomes[name])
      elif name in self.create_failures:
        self.script(name, ("CREATE_IN_PROGRESS", None, None), ("ROLLBACK_COMPLETE", None, self.create_failures[name]))
      else:
        self.script(name, ("CREATE_IN_PROGRESS", None, None), ("CREATE_COMPLETE", outputs, None))
      return f"arn:aws:cloudformation:stack/{name}/create"

    previous = self.requests.get(name, {}).get("parameters")
    if previous == dict(parameters):
      self.calls.append(("noop", name))
      return None
    self.calls.append(("update", name))
    self.requests[name] = {"template": template, "parameters": dict(parameters), "tags": dict(tags or {}),
                           "allow_named_iam": allow_named_iam}
    self.script(name, ("UPDATE_IN_PROGRESS", None, None), ("UPDATE_COMPLETE", outputs, None))
    return f"arn:aws:cloudformation:stack/{name}/update"

  def delete_stack(self, name: str) -> Optional[str]:
    self.calls.append(("delete", name))
    if name in self.delete_failures:
      self.script(name, ("DELETE_IN_PROGRESS", None, None), ("DELETE_FAILED", None, self.delete_failures[name]))
    else:
      self.script(name, ("DELETE_IN_PROGRESS", None, None), (None, None, None))
    return name

  def list_resources(self, pattern: str) -> List[str]:
    self.calls.append(("list", pattern))
    if self.list_error is not None:
      raise self.list_error
    return [resource for resource in self.resources if fnmatch.fnmatchcase(resource, pattern)]


class ManualClock(Clock):
  def __init__(self) -> None:
    self.now = 0.0
    self.sleeps: List[float] = []
    super().__init__(sleep=self._sleep, monotonic=self._monotonic)

  def _sleep(self, seconds: float) -> None:
    self.sleeps.append(seconds)
    self.now += seconds

  def _monotonic(self) -> float:
    return self.now


def component(name: str, depends_on: Optional[List[str]] = None, bindings: Optional[Dict[str, str]] = None,
              **kwargs: Any) -> ComponentDescriptor:
  return ComponentDescriptor(
    name=name,
    template=f"{TEMPLATE_HOST}/{name}.yaml",
    depends_on=list(depends_on or []),
    output_bindings={key: OutputBinding.parse(value) for key, value in (bindings or {}).items()},
    **kwargs,
  )


@pytest.fixture
def provider() -> FakeProvider:
  return FakeProvider()


@pytest.fixture
def clock() -> ManualClock:
  return ManualClock()


@pytest.fixture
def settings() -> Settings:
  return Settings(environment="dev", poll_interval=5.0, timeout_minutes=1.0)


@pytest.fixture
def console() -> Console:
  return Console("never", out=io.StringIO(), err=io.StringIO())


@pytest.fixture
def make_component():
  return component


@pytest.fixture
def iam_s3_lambda() -> StackRegistry:
  """Three components where lambda reads outputs of both iam and s3."""
  return StackRegistry(
    [
      component("iam"),
      component("s3", bindings={"FirehoseRoleArn": "iam.FirehoseRoleARN"}),
      component(
        "lambda",
        bindings={"LambdaRoleArn": "iam.LambdaRoleARN", "DataBucketName": "s3.DataBucketName"},
        required_parameters=["LambdaRoleArn"],
      ),
    ],
    name_prefix="poc2",
  )
