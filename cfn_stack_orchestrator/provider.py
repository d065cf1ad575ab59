"""Interface to the service that owns the real stack state."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .errors import ConfigurationError, ProviderError
from .manifest import is_remote_template
from .models import StackStatus


RAW_STATUS_MAP: Dict[str, StackStatus] = {
  "CREATE_IN_PROGRESS": StackStatus.CREATING,
  "REVIEW_IN_PROGRESS": StackStatus.CREATING,
  "ROLLBACK_IN_PROGRESS": StackStatus.CREATING,
  "CREATE_COMPLETE": StackStatus.COMPLETE,
  "UPDATE_COMPLETE": StackStatus.COMPLETE,
  "IMPORT_COMPLETE": StackStatus.COMPLETE,
  "UPDATE_IN_PROGRESS": StackStatus.UPDATE_IN_PROGRESS,
  "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS": StackStatus.UPDATE_IN_PROGRESS,
  "UPDATE_ROLLBACK_IN_PROGRESS": StackStatus.UPDATE_IN_PROGRESS,
  "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS": StackStatus.UPDATE_IN_PROGRESS,
  "IMPORT_IN_PROGRESS": StackStatus.UPDATE_IN_PROGRESS,
  "IMPORT_ROLLBACK_IN_PROGRESS": StackStatus.UPDATE_IN_PROGRESS,
  "CREATE_FAILED": StackStatus.FAILED,
  "ROLLBACK_COMPLETE": StackStatus.FAILED,
  "ROLLBACK_FAILED": StackStatus.FAILED,
  "UPDATE_FAILED": StackStatus.FAILED,
  "UPDATE_ROLLBACK_FAILED": StackStatus.FAILED,
  "UPDATE_ROLLBACK_COMPLETE": StackStatus.FAILED,
  "IMPORT_ROLLBACK_COMPLETE": StackStatus.FAILED,
  "IMPORT_ROLLBACK_FAILED": StackStatus.FAILED,
  "DELETE_IN_PROGRESS": StackStatus.DELETING,
  "DELETE_FAILED": StackStatus.DELETE_FAILED,
  "DELETE_COMPLETE": StackStatus.ABSENT,
}


def map_stack_status(raw_status: str) -> StackStatus:
  try:
    return RAW_STATUS_MAP[raw_status]
  except KeyError:
    raise ProviderError(f"Unrecognised stack status '{raw_status}'") from None


@dataclass
class TemplatePayload:
  body: Optional[str] = None
  url: Optional[str] = None


@dataclass
class StackDescription:
  stack_name: str
  status: StackStatus
  raw_status: Optional[str] = None
  outputs: Dict[str, str] = field(default_factory=dict)
  status_reason: Optional[str] = None
  # Outputs as reported, kept even when the stack is not COMPLETE.
  raw_outputs: Dict[str, str] = field(default_factory=dict)

  @classmethod
  def absent(cls, stack_name: str) -> "StackDescription":
    return cls(stack_name=stack_name, status=StackStatus.ABSENT)


class ObjectStore(ABC):
  """Object storage operations needed by cleanup hooks and checks."""

  @abstractmethod
  def bucket_exists(self, bucket: str) -> bool:
    ...

  @abstractmethod
  def put_object(self, bucket: str, key: str, body: bytes) -> None:
    ...

  @abstractmethod
  def list_keys(self, bucket: str, prefix: str = "") -> List[str]:
    ...

  @abstractmethod
  def delete_object(self, bucket: str, key: str) -> None:
    ...

  @abstractmethod
  def empty_bucket(self, bucket: str) -> int:
    """Abort pending multipart uploads and delete every object version.

    Returns the number of deleted entries; a missing bucket yields 0.
    """


class StackProvider(ABC):
  def object_store(self) -> ObjectStore:
    raise ProviderError(f"{type(self).__name__} does not provide object storage")

  def package_template(self, reference: str) -> TemplatePayload:
    if is_remote_template(reference):
      return TemplatePayload(url=reference)
    path = Path(reference)
    if not path.is_file():
      raise ConfigurationError(f"Template '{reference}' does not exist")
    return TemplatePayload(body=path.read_text(encoding="utf-8"))

  @abstractmethod
  def create_or_update_stack(
    self,
    name: str,
    template: TemplatePayload,
    parameters: Dict[str, str],
    allow_named_iam: bool,
    tags: Optional[Dict[str, str]] = None,
  ) -> Optional[str]:
    """Create the stack, or update it when it exists.

    Returns the operation id, or ``None`` when an update had nothing to change.
    """

  @abstractmethod
  def describe_stack(self, name: str) -> StackDescription:
    """Return the current state; a missing stack is reported as ABSENT."""

  @abstractmethod
  def delete_stack(self, name: str) -> Optional[str]:
    ...

  @abstractmethod
  def list_resources(self, pattern: str) -> List[str]:
    """Return identifiers of live resources whose names match the glob ``pattern``."""
