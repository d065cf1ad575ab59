"""CloudFormation-backed provider built on boto3."""
from __future__ import annotations

import fnmatch
import hashlib
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ConfigurationError, ProviderError
from .manifest import is_remote_template
from .models import StackStatus
from .provider import (
  ObjectStore,
  StackDescription,
  StackProvider,
  TemplatePayload,
  map_stack_status,
)


logger = logging.getLogger(__name__)

TEMPLATE_BODY_LIMIT = 51200
DELETE_BATCH_SIZE = 1000
NO_UPDATES_MESSAGE = "No updates are to be performed"
LIVE_STACK_STATUSES = [
  "CREATE_IN_PROGRESS",
  "CREATE_FAILED",
  "CREATE_COMPLETE",
  "ROLLBACK_IN_PROGRESS",
  "ROLLBACK_FAILED",
  "ROLLBACK_COMPLETE",
  "DELETE_IN_PROGRESS",
  "DELETE_FAILED",
  "UPDATE_IN_PROGRESS",
  "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS",
  "UPDATE_COMPLETE",
  "UPDATE_FAILED",
  "UPDATE_ROLLBACK_IN_PROGRESS",
  "UPDATE_ROLLBACK_FAILED",
  "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS",
  "UPDATE_ROLLBACK_COMPLETE",
  "REVIEW_IN_PROGRESS",
  "IMPORT_IN_PROGRESS",
  "IMPORT_COMPLETE",
  "IMPORT_ROLLBACK_IN_PROGRESS",
  "IMPORT_ROLLBACK_FAILED",
  "IMPORT_ROLLBACK_COMPLETE",
]


def _error_code(exc: ClientError) -> str:
  return str(exc.response.get("Error", {}).get("Code", ""))


def _is_missing_stack(exc: ClientError) -> bool:
  return _error_code(exc) == "ValidationError" and "does not exist" in str(exc)


def format_parameter_value(value: Any) -> str:
  if isinstance(value, bool):
    return "true" if value else "false"
  if isinstance(value, (list, tuple)):
    return ",".join(format_parameter_value(item) for item in value)
  if value is None:
    return ""
  return str(value)


def s3_https_url(reference: str, region: Optional[str] = None) -> str:
  if not reference.startswith("s3://"):
    return reference
  bucket, _, key = reference[len("s3://"):].partition("/")
  if region and region != "us-east-1":
    return f"https://{bucket}.s3.{region}.amazonaws.com/{key}"
  return f"https://{bucket}.s3.amazonaws.com/{key}"


class S3ObjectStore(ObjectStore):
  def __init__(self, client: Any) -> None:
    self._s3 = client

  def bucket_exists(self, bucket: str) -> bool:
    try:
      self._s3.head_bucket(Bucket=bucket)
    except ClientError as exc:
      if _error_code(exc) in {"404", "NoSuchBucket", "NotFound"}:
        return False
      raise ProviderError(f"Unable to inspect bucket '{bucket}': {exc}") from exc
    except BotoCoreError as exc:
      raise ProviderError(f"Unable to inspect bucket '{bucket}': {exc}") from exc
    return True

  def put_object(self, bucket: str, key: str, body: bytes) -> None:
    try:
      self._s3.put_object(Bucket=bucket, Key=key, Body=body)
    except (ClientError, BotoCoreError) as exc:
      raise ProviderError(f"Unable to write s3://{bucket}/{key}: {exc}") from exc

  def list_keys(self, bucket: str, prefix: str = "") -> List[str]:
    keys: List[str] = []
    try:
      paginator = self._s3.get_paginator("list_objects_v2")
      for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
        keys.extend(item["Key"] for item in page.get("Contents", []) or [])
    except (ClientError, BotoCoreError) as exc:
      raise ProviderError(f"Unable to list s3://{bucket}/{prefix}: {exc}") from exc
    return keys

  def delete_object(self, bucket: str, key: str) -> None:
    try:
      self._s3.delete_object(Bucket=bucket, Key=key)
    except (ClientError, BotoCoreError) as exc:
      raise ProviderError(f"Unable to delete s3://{bucket}/{key}: {exc}") from exc

  def empty_bucket(self, bucket: str) -> int:
    if not self.bucket_exists(bucket):
      logger.debug("Bucket %s does not exist; nothing to empty", bucket)
      return 0

    try:
      uploads = self._s3.get_paginator("list_multipart_uploads")
      for page in uploads.paginate(Bucket=bucket):
        for upload in page.get("Uploads", []) or []:
          logger.debug("Aborting multipart upload %s on %s", upload["UploadId"], upload["Key"])
          self._s3.abort_multipart_upload(Bucket=bucket, Key=upload["Key"], UploadId=upload["UploadId"])

      deleted = 0
      versions = self._s3.get_paginator("list_object_versions")
      for page in versions.paginate(Bucket=bucket):
        entries = [
          {"Key": item["Key"], "VersionId": item["VersionId"]}
          for item in (page.get("Versions", []) or []) + (page.get("DeleteMarkers", []) or [])
        ]
        deleted += self._delete_batches(bucket, entries)
      return deleted
    except (ClientError, BotoCoreError) as exc:
      raise ProviderError(f"Unable to empty bucket '{bucket}': {exc}") from exc

  def _delete_batches(self, bucket: str, entries: List[Dict[str, str]]) -> int:
    deleted = 0
    for start in range(0, len(entries), DELETE_BATCH_SIZE):
      batch = entries[start:start + DELETE_BATCH_SIZE]
      response = self._s3.delete_objects(Bucket=bucket, Delete={"Objects": batch, "Quiet": True})
      errors = response.get("Errors", []) or []
      if errors:
        first = errors[0]
        raise ProviderError(
          f"Unable to delete {len(errors)} object(s) from '{bucket}', "
          f"first: {first.get('Key')}: {first.get('Message')}"
        )
      deleted += len(batch)
    return deleted


class CloudFormationProvider(StackProvider):
  def __init__(
    self,
    *,
    region: Optional[str] = None,
    profile: Optional[str] = None,
    artifact_bucket: Optional[str] = None,
    session: Optional[Any] = None,
  ) -> None:
    if session is None:
      session = boto3.Session(profile_name=profile, region_name=region)
    self._session = session
    self._region = region or getattr(session, "region_name", None)
    self._artifact_bucket = artifact_bucket
    self._clients: Dict[str, Any] = {}

  def _client(self, service: str) -> Any:
    client = self._clients.get(service)
    if client is None:
      client = self._session.client(service, region_name=self._region)
      self._clients[service] = client
    return client

  def object_store(self) -> ObjectStore:
    return S3ObjectStore(self._client("s3"))

  def package_template(self, reference: str) -> TemplatePayload:
    if is_remote_template(reference):
      return TemplatePayload(url=s3_https_url(reference, self._region))

    path = Path(reference)
    if not path.is_file():
      raise ConfigurationError(f"Template '{reference}' does not exist")
    body = path.read_bytes()
    if len(body) <= TEMPLATE_BODY_LIMIT:
      return TemplatePayload(body=body.decode("utf-8"))

    if not self._artifact_bucket:
      raise ConfigurationError(
        f"Template '{reference}' is {len(body)} bytes, above the {TEMPLATE_BODY_LIMIT} byte inline limit; "
        "supply an artifact bucket to upload it."
      )
    digest = hashlib.sha256(body).hexdigest()[:12]
    key = f"templates/{digest}-{path.name}"
    logger.debug("Uploading %s to s3://%s/%s", path, self._artifact_bucket, key)
    self.object_store().put_object(self._artifact_bucket, key, body)
    return TemplatePayload(url=s3_https_url(f"s3://{self._artifact_bucket}/{key}", self._region))

  def describe_stack(self, name: str) -> StackDescription:
    try:
      response = self._client("cloudformation").describe_stacks(StackName=name)
    except ClientError as exc:
      if _is_missing_stack(exc):
        return StackDescription.absent(name)
      raise ProviderError(f"describe_stacks failed: {exc}", stack_name=name) from exc
    except BotoCoreError as exc:
      raise ProviderError(f"describe_stacks failed: {exc}", stack_name=name) from exc

    stacks = response.get("Stacks") or []
    if not stacks:
      return StackDescription.absent(name)
    stack = stacks[0]
    raw_status = stack["StackStatus"]
    status = map_stack_status(raw_status)
    outputs = {
      output["OutputKey"]: output.get("OutputValue", "")
      for output in stack.get("Outputs", []) or []
    }
    reason = stack.get("StackStatusReason")
    if status.is_failed:
      reason = self._failure_reason(name) or reason
    logger.debug("Stack %s is %s (%s)", name, raw_status, status.value)
    return StackDescription(
      stack_name=name,
      status=status,
      raw_status=raw_status,
      outputs=outputs if status is StackStatus.COMPLETE else {},
      status_reason=reason,
      raw_outputs=outputs,
    )

  def _failure_reason(self, name: str) -> Optional[str]:
    try:
      response = self._client("cloudformation").describe_stack_events(StackName=name)
    except (ClientError, BotoCoreError) as exc:
      logger.debug("Unable to read events for %s: %s", name, exc)
      return None
    reasons: List[str] = []
    # Events arrive newest first; the oldest failure is usually the root cause.
    for event in reversed(response.get("StackEvents", []) or []):
      status = event.get("ResourceStatus", "")
      reason = event.get("ResourceStatusReason")
      if status.endswith("_FAILED") and reason and event.get("LogicalResourceId") != name:
        reasons.append(f"{event.get('LogicalResourceId')}: {reason}")
    return "; ".join(reasons) if reasons else None

  def create_or_update_stack(
    self,
    name: str,
    template: TemplatePayload,
    parameters: Dict[str, str],
    allow_named_iam: bool,
    tags: Optional[Dict[str, str]] = None,
  ) -> Optional[str]:
    request: Dict[str, Any] = {
      "StackName": name,
      "Parameters": [
        {"ParameterKey": key, "ParameterValue": format_parameter_value(value)}
        for key, value in parameters.items()
      ],
    }
    if template.url:
      request["TemplateURL"] = template.url
    else:
      request["TemplateBody"] = template.body
    if allow_named_iam:
      request["Capabilities"] = ["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"]
    if tags:
      request["Tags"] = [{"Key": key, "Value": value} for key, value in tags.items()]

    existing = self.describe_stack(name)
    client = self._client("cloudformation")
    try:
      if existing.status is StackStatus.ABSENT:
        logger.debug("Creating stack %s", name)
        response = client.create_stack(**request)
      else:
        logger.debug("Updating stack %s", name)
        response = client.update_stack(**request)
    except ClientError as exc:
      if NO_UPDATES_MESSAGE in str(exc):
        logger.debug("Stack %s has no changes to apply", name)
        return None
      raise ProviderError(f"Stack request rejected: {exc}", stack_name=name) from exc
    except BotoCoreError as exc:
      raise ProviderError(f"Stack request failed: {exc}", stack_name=name) from exc
    return response.get("StackId")

  def delete_stack(self, name: str) -> Optional[str]:
    try:
      self._client("cloudformation").delete_stack(StackName=name)
    except (ClientError, BotoCoreError) as exc:
      raise ProviderError(f"delete_stack failed: {exc}", stack_name=name) from exc
    return name

  def list_resources(self, pattern: str) -> List[str]:
    found: List[str] = []
    try:
      found.extend(f"cloudformation:stack/{name}" for name in self._match(self._stack_names(), pattern))
      found.extend(f"s3:bucket/{name}" for name in self._match(self._bucket_names(), pattern))
      found.extend(f"lambda:function/{name}" for name in self._match(self._function_names(), pattern))
      found.extend(f"iam:role/{name}" for name in self._match(self._role_names(), pattern))
    except (ClientError, BotoCoreError) as exc:
      raise ProviderError(f"Unable to list resources matching '{pattern}': {exc}") from exc
    return found

  @staticmethod
  def _match(names: Iterable[str], pattern: str) -> List[str]:
    return sorted(name for name in names if fnmatch.fnmatchcase(name, pattern))

  def _stack_names(self) -> List[str]:
    paginator = self._client("cloudformation").get_paginator("list_stacks")
    names: List[str] = []
    for page in paginator.paginate(StackStatusFilter=LIVE_STACK_STATUSES):
      names.extend(summary["StackName"] for summary in page.get("StackSummaries", []) or [])
    return names

  def _bucket_names(self) -> List[str]:
    response = self._client("s3").list_buckets()
    return [bucket["Name"] for bucket in response.get("Buckets", []) or []]

  def _function_names(self) -> List[str]:
    paginator = self._client("lambda").get_paginator("list_functions")
    names: List[str] = []
    for page in paginator.paginate():
      names.extend(function["FunctionName"] for function in page.get("Functions", []) or [])
    return names

  def _role_names(self) -> List[str]:
    paginator = self._client("iam").get_paginator("list_roles")
    names: List[str] = []
    for page in paginator.paginate():
      names.extend(role["RoleName"] for role in page.get("Roles", []) or [])
    return names
