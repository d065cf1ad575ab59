"""Run settings assembled from CLI flags and ``CFN_STACKS_*`` environment variables."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigurationError


ENVIRONMENTS = ("dev", "test", "prod")
DEFAULT_POLL_INTERVAL = 10.0
DEFAULT_TIMEOUT_MINUTES = 30.0
DEFAULT_CHECK_TIMEOUT = 60.0


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
  raw = env.get(key)
  if raw is None or raw == "":
    return default
  try:
    return float(raw)
  except ValueError:
    raise ConfigurationError(f"Environment variable {key} must be a number, got '{raw}'.") from None


def _env_optional(env: Mapping[str, str], *keys: str) -> Optional[str]:
  for key in keys:
    value = env.get(key)
    if value:
      return value
  return None


@dataclass
class Settings:
  environment: str = "dev"
  poll_interval: float = DEFAULT_POLL_INTERVAL
  timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES
  check_timeout: float = DEFAULT_CHECK_TIMEOUT
  region: Optional[str] = None
  aws_profile: Optional[str] = None
  artifact_bucket: Optional[str] = None
  name_prefix: Optional[str] = None
  dependency_mode: str = "skip"
  dry_run: bool = False

  @classmethod
  def from_environment(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
    if env is None:
      env = os.environ
    dependency_mode = (env.get("CFN_STACKS_DEPENDENCIES") or "skip").lower()
    if dependency_mode not in {"include", "skip"}:
      dependency_mode = "skip"
    return cls(
      poll_interval=_env_float(env, "CFN_STACKS_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
      timeout_minutes=_env_float(env, "CFN_STACKS_TIMEOUT_MINUTES", DEFAULT_TIMEOUT_MINUTES),
      check_timeout=_env_float(env, "CFN_STACKS_CHECK_TIMEOUT", DEFAULT_CHECK_TIMEOUT),
      region=_env_optional(env, "AWS_REGION", "AWS_DEFAULT_REGION"),
      aws_profile=_env_optional(env, "AWS_PROFILE"),
      artifact_bucket=_env_optional(env, "CFN_STACKS_ARTIFACT_BUCKET"),
      name_prefix=_env_optional(env, "CFN_STACKS_NAME_PREFIX"),
      dependency_mode=dependency_mode,
    )

  @property
  def include_dependencies(self) -> bool:
    return self.dependency_mode == "include"

  def timeout_seconds(self, component_minutes: Optional[float] = None) -> float:
    return float(component_minutes if component_minutes is not None else self.timeout_minutes) * 60

  def validate(self) -> None:
    if self.environment not in ENVIRONMENTS:
      raise ConfigurationError(
        f"Environment must be one of {', '.join(ENVIRONMENTS)}, got '{self.environment}'."
      )
    if self.poll_interval <= 0:
      raise ConfigurationError(f"Poll interval must be positive, got {self.poll_interval}.")
    if self.timeout_minutes <= 0:
      raise ConfigurationError(f"Timeout must be positive, got {self.timeout_minutes} minutes.")
    if self.check_timeout <= 0:
      raise ConfigurationError(f"Check timeout must be positive, got {self.check_timeout}s.")
    if self.dependency_mode not in {"include", "skip"}:
      raise ConfigurationError(f"Dependency mode must be 'include' or 'skip', got '{self.dependency_mode}'.")
