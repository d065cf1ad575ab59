"""Tests for registry.py module."""
import pytest

from cfn_stack_orchestrator.errors import ConfigurationError, CycleDetected, UnknownComponent, UnknownDependency
from cfn_stack_orchestrator.orchestrator import StackOrchestrator
from cfn_stack_orchestrator.registry import StackRegistry

from conftest import component


def _names(descriptors):
  return [descriptor.name for descriptor in descriptors]


class TestResolveOrder:
  """Deployment order over depends_on and binding edges."""

  def test_bindings_order_upstream_first(self, iam_s3_lambda):
    """Test lambda comes after both stacks whose outputs it reads."""
    assert _names(iam_s3_lambda.resolve_order()) == ["iam", "s3", "lambda"]

  def test_every_dependency_precedes_its_dependent(self):
    """Test order property on a wider graph."""
    registry = StackRegistry(
      [
        component("api", depends_on=["fn", "queue"]),
        component("fn", depends_on=["role", "table"]),
        component("queue"),
        component("table"),
        component("role"),
      ],
      name_prefix="poc1",
    )
    ordered = _names(registry.resolve_order())
    position = {name: index for index, name in enumerate(ordered)}
    for descriptor in registry.descriptors:
      for dependency in descriptor.depends_on:
        assert position[dependency] < position[descriptor.name]

  def test_ties_follow_declaration_order(self):
    """Test independent components keep the order they were declared in."""
    registry = StackRegistry(
      [component("sns"), component("sqs"), component("dynamodb"), component("iam")],
      name_prefix="poc1",
    )
    assert _names(registry.resolve_order()) == ["sns", "sqs", "dynamodb", "iam"]
    assert _names(registry.resolve_order()) == _names(registry.resolve_order())

  def test_all_keyword_selects_everything(self, iam_s3_lambda):
    """Test 'all' behaves like no selection."""
    assert _names(iam_s3_lambda.resolve_order(["all"])) == ["iam", "s3", "lambda"]

  def test_subset_skips_unselected_dependencies(self, iam_s3_lambda):
    """Test only the requested component is returned by default."""
    assert _names(iam_s3_lambda.resolve_order(["lambda"])) == ["lambda"]

  def test_subset_with_dependencies(self, iam_s3_lambda):
    """Test include_dependencies pulls in the upstream closure."""
    assert _names(iam_s3_lambda.resolve_order(["lambda"], include_dependencies=True)) == ["iam", "s3", "lambda"]

  def test_unknown_requested_component(self, iam_s3_lambda):
    """Test requesting a name outside the registry fails."""
    with pytest.raises(UnknownComponent) as excinfo:
      iam_s3_lambda.resolve_order(["lambda", "kinesis"])
    assert excinfo.value.names == ["kinesis"]


class TestValidation:
  """Registry validation before any provider call."""

  def test_cycle_detected_names_path(self):
    """Test a two-node cycle is reported with its path."""
    registry = StackRegistry(
      [component("a", depends_on=["b"]), component("b", depends_on=["a"])],
      name_prefix="x",
    )
    with pytest.raises(CycleDetected) as excinfo:
      registry.resolve_order()
    assert excinfo.value.cycle[0] == excinfo.value.cycle[-1]
    assert set(excinfo.value.cycle) == {"a", "b"}

  def test_cycle_blocks_all_provider_calls(self, provider, settings, console, clock):
    """Test a cyclic registry never reaches the provider."""
    registry = StackRegistry(
      [component("a", bindings={"P": "b.Out"}), component("b", depends_on=["a"])],
      name_prefix="x",
    )
    orchestrator = StackOrchestrator(registry, provider, settings, console=console, clock=clock)
    with pytest.raises(CycleDetected):
      orchestrator.deploy()
    assert provider.calls == []

  def test_unknown_dependency(self):
    """Test a binding to an undeclared component is rejected."""
    registry = StackRegistry([component("lambda", bindings={"RoleArn": "iam.RoleArn"})], name_prefix="x")
    with pytest.raises(UnknownDependency) as excinfo:
      registry.validate()
    assert excinfo.value.dependency == "iam"
    assert excinfo.value.component == "lambda"

  def test_duplicate_names_rejected(self):
    """Test two descriptors cannot share a name."""
    with pytest.raises(ConfigurationError) as excinfo:
      StackRegistry([component("s3"), component("s3")], name_prefix="x")
    assert excinfo.value.component == "s3"


class TestRegistryQueries:
  """Naming and graph helpers."""

  def test_stack_name_is_deterministic(self, iam_s3_lambda):
    """Test stack names combine prefix, component and environment."""
    assert iam_s3_lambda.stack_name("s3", "prod") == "poc2-s3-prod"

  def test_binding_adds_implicit_dependency(self, iam_s3_lambda):
    """Test output bindings appear in depends_on exactly once."""
    assert iam_s3_lambda["lambda"].depends_on == ["iam", "s3"]
    descriptor = component("fn", depends_on=["iam"], bindings={"RoleArn": "iam.RoleArn"})
    assert descriptor.depends_on == ["iam"]

  def test_closures(self, iam_s3_lambda):
    """Test upstream and downstream closures."""
    assert iam_s3_lambda.upstream_closure("lambda") == {"iam", "s3"}
    assert iam_s3_lambda.dependents_of("iam") == {"s3", "lambda"}
    assert iam_s3_lambda.downstream_closure("s3") == {"lambda"}

  def test_getitem_unknown(self, iam_s3_lambda):
    """Test lookup of a missing component raises UnknownComponent."""
    with pytest.raises(UnknownComponent):
      iam_s3_lambda["athena"]

  def test_teardown_order_is_reverse(self, iam_s3_lambda):
    """Test teardown order mirrors deployment order."""
    deploy = _names(iam_s3_lambda.resolve_order())
    assert _names(iam_s3_lambda.resolve_teardown_order()) == list(reversed(deploy))
