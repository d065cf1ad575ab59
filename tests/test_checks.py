"""Tests for checks.py module."""
import json

import httpx
import pytest

from cfn_stack_orchestrator import checks
from cfn_stack_orchestrator.errors import ConfigurationError
from cfn_stack_orchestrator.models import CheckOutcome
from cfn_stack_orchestrator.registry import StackRegistry
from cfn_stack_orchestrator.verification import VerificationContext, VerificationRunner

from conftest import component


@pytest.fixture
def registry():
  return StackRegistry([component("iam"), component("s3"), component("api-gateway")], name_prefix="poc2")


@pytest.fixture
def context(registry, provider):
  return VerificationContext(
    environment="dev",
    registry=registry,
    provider=provider,
    outputs={
      "s3": {"DataBucketName": "poc2-data-dev"},
      "api-gateway": {"APIEndpoint": "https://abc.execute-api.us-east-1.amazonaws.com/dev"},
    },
    parameters={"s3": {"EnableCrossRegionReplication": "false"}},
    variables={"environment": "dev", "name_prefix": "poc2"},
    sleep=lambda seconds: None,
  )


@pytest.fixture
def mock_http(monkeypatch):
  """Route httpx.Client traffic in the checks module to a handler."""
  requests = []
  responses = {"status": 200, "body": {"ok": True}}
  real_client = httpx.Client

  def handler(request):
    requests.append(request)
    return httpx.Response(responses["status"], json=responses["body"])

  def client_factory(**kwargs):
    return real_client(transport=httpx.MockTransport(handler), **kwargs)

  monkeypatch.setattr(checks.httpx, "Client", client_factory)
  return requests, responses


def _run(specs, context):
  return VerificationRunner().run_checks(checks.build_checks(specs, context), context)


class TestRender:
  """Output references and placeholders in check strings."""

  def test_output_reference(self, context):
    """Test {component.Key} reads a deployed output."""
    assert checks.render("{api-gateway.APIEndpoint}/orders", context) == (
      "https://abc.execute-api.us-east-1.amazonaws.com/dev/orders"
    )

  def test_nested_values(self, context):
    """Test mappings and lists are rendered recursively."""
    rendered = checks.render({"bucket": "{s3.DataBucketName}", "tags": ["{environment}"]}, context)
    assert rendered == {"bucket": "poc2-data-dev", "tags": ["dev"]}


class TestBuildChecks:
  """Profile check specs."""

  def test_unknown_kind(self, context):
    """Test an unknown kind is a configuration error."""
    with pytest.raises(ConfigurationError):
      checks.build_checks([{"name": "odd", "kind": "ping"}], context)

  def test_missing_name(self, context):
    """Test checks must be named."""
    with pytest.raises(ConfigurationError):
      checks.build_checks([{"kind": "http", "url": "https://example.com"}], context)

  def test_missing_required_key(self, context):
    """Test builders validate their keys up front."""
    with pytest.raises(ConfigurationError):
      checks.build_checks([{"name": "endpoint", "kind": "output-present", "component": "api-gateway"}], context)


class TestStackStatusCheck:
  """stack-status kind."""

  def test_one_check_per_component(self, context, provider):
    """Test each component gets a named result."""
    provider.set_stack("poc2-iam-dev", "CREATE_COMPLETE")
    provider.set_stack("poc2-s3-dev", "UPDATE_ROLLBACK_COMPLETE", reason="bucket policy invalid")
    report = _run([{"name": "stacks", "kind": "stack-status", "components": ["iam", "s3", "api-gateway"]}], context)
    assert [result.name for result in report.results] == ["stacks: iam", "stacks: s3", "stacks: api-gateway"]
    assert [result.outcome for result in report.results] == [
      CheckOutcome.PASSED, CheckOutcome.FAILED, CheckOutcome.FAILED,
    ]
    assert report.results[1].detail == "bucket policy invalid"


class TestOutputPresentCheck:
  """output-present kind."""

  def test_pattern(self, context):
    """Test the value is matched against the optional pattern."""
    specs = [
      {"name": "https", "kind": "output-present", "component": "api-gateway", "output": "APIEndpoint",
       "pattern": "^https://"},
      {"name": "s3 url", "kind": "output-present", "component": "api-gateway", "output": "APIEndpoint",
       "pattern": "^s3://"},
      {"name": "missing", "kind": "output-present", "component": "s3", "output": "ReplicaBucketName"},
    ]
    report = _run(specs, context)
    assert [result.outcome for result in report.results] == [
      CheckOutcome.PASSED, CheckOutcome.FAILED, CheckOutcome.FAILED,
    ]
    assert "does not expose output 'ReplicaBucketName'" in report.results[2].message


class TestHttpCheck:
  """http kind via httpx."""

  def test_post_with_rendered_body(self, context, mock_http):
    """Test the request is built from outputs and the status accepted."""
    requests, _ = mock_http
    spec = {
      "name": "submit order",
      "kind": "http",
      "method": "post",
      "url": "{api-gateway.APIEndpoint}/orders",
      "json": {"bucket": "{s3.DataBucketName}"},
      "expectStatus": [200, 202],
      "expectBody": "ok",
    }
    report = _run([spec], context)
    assert report.results[0].outcome is CheckOutcome.PASSED
    assert requests[0].method == "POST"
    assert str(requests[0].url) == "https://abc.execute-api.us-east-1.amazonaws.com/dev/orders"
    assert json.loads(requests[0].content) == {"bucket": "poc2-data-dev"}

  def test_unexpected_status(self, context, mock_http):
    """Test a status outside the accepted list fails."""
    _, responses = mock_http
    responses["status"] = 502
    report = _run([{"name": "health", "kind": "http", "url": "{api-gateway.APIEndpoint}/health"}], context)
    assert report.results[0].outcome is CheckOutcome.FAILED
    assert "returned 502" in report.results[0].message


class TestResourceExistsCheck:
  """resource-exists kind."""

  def test_pattern_rendering(self, context, provider):
    """Test the pattern expands variables before listing."""
    provider.resources = ["poc2-data-dev"]
    report = _run([{"name": "bucket", "kind": "resource-exists", "pattern": "{name_prefix}-data-{environment}"}],
                  context)
    assert report.results[0].outcome is CheckOutcome.PASSED
    assert ("list", "poc2-data-dev") in provider.calls


class TestBucketRoundtripCheck:
  """bucket-roundtrip kind and skip preconditions."""

  def test_skipped_without_destructive_opt_in(self, context, provider):
    """Test destructive checks are skipped by default."""
    spec = {"name": "roundtrip", "kind": "bucket-roundtrip", "component": "s3", "output": "DataBucketName",
            "requires": "destructive"}
    report = _run([spec], context)
    assert report.results[0].outcome is CheckOutcome.SKIPPED
    assert provider.store.buckets == {}

  def test_roundtrip(self, context, provider):
    """Test the test object is written, listed and deleted."""
    context.destructive = True
    spec = {"name": "roundtrip", "kind": "bucket-roundtrip", "component": "s3", "output": "DataBucketName",
            "requires": "destructive"}
    report = _run([spec], context)
    assert report.results[0].outcome is CheckOutcome.PASSED
    assert provider.store.list_keys("poc2-data-dev") == []

  def test_when_precondition(self, context):
    """Test a check bound to a parameter value is skipped otherwise."""
    spec = {"name": "replica", "kind": "output-present", "component": "s3", "output": "ReplicaBucketName",
            "when": {"parameter": "EnableCrossRegionReplication", "equals": "true"}}
    report = _run([spec], context)
    assert report.results[0].outcome is CheckOutcome.SKIPPED
    assert "EnableCrossRegionReplication is 'false'" in report.results[0].message
