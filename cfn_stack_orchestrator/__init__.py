"""Deploy, verify and tear down groups of CloudFormation stacks described by YAML profiles."""
from __future__ import annotations

__version__ = "0.3.0"

from .errors import (  # noqa: E402
  ConfigurationError,
  CycleDetected,
  DeploymentTimeout,
  MissingOutput,
  MissingParameter,
  OrchestratorError,
  ProviderError,
  StackNotFound,
  StackNotReady,
  StackOperationFailed,
  UnknownComponent,
  UnknownDependency,
  UnrecoverableState,
)
from .models import (  # noqa: E402
  ComponentDescriptor,
  OutputBinding,
  StackInstance,
  StackStatus,
  TestReport,
  VerificationResult,
)
from .registry import StackRegistry  # noqa: E402

__all__ = [
  "__version__",
  "ComponentDescriptor",
  "ConfigurationError",
  "CycleDetected",
  "DeploymentTimeout",
  "MissingOutput",
  "MissingParameter",
  "OrchestratorError",
  "OutputBinding",
  "ProviderError",
  "StackInstance",
  "StackNotFound",
  "StackNotReady",
  "StackOperationFailed",
  "StackRegistry",
  "StackStatus",
  "TestReport",
  "UnknownComponent",
  "UnknownDependency",
  "UnrecoverableState",
  "VerificationResult",
]
