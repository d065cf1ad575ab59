"""Tests for cli.py module."""
import io
import json

import pytest

from cfn_stack_orchestrator.cli import _parse_parameters, build_settings, main, parse_arguments
from cfn_stack_orchestrator.console import Console
from cfn_stack_orchestrator.errors import ConfigurationError

from conftest import TEMPLATE_HOST


PROFILE = f"""
profile:
  name: poc-2-data-analytics
  namePrefix: poc2
components:
  - name: iam
    template: {TEMPLATE_HOST}/iam.yaml
  - name: s3
    template: {TEMPLATE_HOST}/s3.yaml
    parameters:
      Environment: "{{environment}}"
    requiredParameters: [Environment]
    outputBindings:
      FirehoseRoleArn: iam.FirehoseRoleARN
  - name: sns
    template: {TEMPLATE_HOST}/sns.yaml
    requiredParameters: [EmailAddress]
checks:
  - name: stacks
    kind: stack-status
"""


@pytest.fixture
def profile_path(tmp_path):
  path = tmp_path / "poc-2.yaml"
  path.write_text(PROFILE, encoding="utf-8")
  return path


@pytest.fixture
def quiet_console():
  return Console("never", out=io.StringIO(), err=io.StringIO())


@pytest.fixture
def fast_env(monkeypatch):
  monkeypatch.setenv("CFN_STACKS_POLL_INTERVAL", "0.001")
  monkeypatch.delenv("CFN_STACKS_DEPENDENCIES", raising=False)
  monkeypatch.delenv("CFN_STACKS_NAME_PREFIX", raising=False)


def _run(argv, provider, console, confirm=None):
  return main(argv, provider_factory=lambda settings: provider, confirm=confirm, console=console)


class TestDeployCommand:
  """deploy subcommand."""

  def test_deploy_and_verify(self, profile_path, provider, quiet_console, fast_env):
    """Test a clean deploy with checks exits 0."""
    provider.outputs["poc2-iam-dev"] = {"FirehoseRoleARN": "arn:role"}
    code = _run(
      ["deploy", "--profile", str(profile_path), "-p", "EmailAddress=ops@example.com"],
      provider, quiet_console,
    )
    assert code == 0
    assert [call for call in provider.mutating_calls()] == [
      ("create", "poc2-iam-dev"),
      ("create", "poc2-s3-dev"),
      ("create", "poc2-sns-dev"),
    ]
    assert provider.requests["poc2-s3-dev"]["parameters"] == {"Environment": "dev", "FirehoseRoleArn": "arn:role"}
    assert "Success rate: 100.0%" in quiet_console._out.getvalue()

  def test_missing_parameter_exits_two(self, profile_path, provider, quiet_console, fast_env):
    """Test configuration errors stop before any provider call."""
    code = _run(["deploy", "--profile", str(profile_path), "--run-tests", "false"], provider, quiet_console)
    assert code == 2
    assert provider.calls == []
    assert "EmailAddress" in quiet_console._err.getvalue()

  def test_component_subset(self, profile_path, provider, quiet_console, fast_env):
    """Test --component limits the run to the named components."""
    code = _run(
      ["deploy", "--profile", str(profile_path), "-c", "sns", "-p", "EmailAddress=a@b.c", "--run-tests=false"],
      provider, quiet_console,
    )
    assert code == 0
    assert provider.mutating_calls() == [("create", "poc2-sns-dev")]

  def test_stack_failure_exits_two(self, profile_path, provider, quiet_console, fast_env):
    """Test a failed stack operation is reported with its reason."""
    provider.create_failures["poc2-iam-dev"] = "Role poc2-firehose already exists"
    code = _run(
      ["deploy", "--profile", str(profile_path), "-p", "EmailAddress=a@b.c"],
      provider, quiet_console,
    )
    assert code == 2
    assert "Role poc2-firehose already exists" in quiet_console._err.getvalue()

  def test_dry_run(self, profile_path, provider, quiet_console, fast_env):
    """Test --dry-run never mutates."""
    code = _run(
      ["deploy", "--profile", str(profile_path), "-p", "EmailAddress=a@b.c", "--dry-run"],
      provider, quiet_console,
    )
    assert code == 0
    assert provider.mutating_calls() == []


class TestVerifyCommand:
  """verify subcommand."""

  def test_degraded_run_exits_one(self, tmp_path, provider, quiet_console, fast_env):
    """Test four of five passing checks is degraded, not failed."""
    components = "\n".join(
      f"  - name: c{index}\n    template: {TEMPLATE_HOST}/c{index}.yaml" for index in range(5)
    )
    path = tmp_path / "five.yaml"
    path.write_text(
      f"profile:\n  name: five\ncomponents:\n{components}\nchecks:\n  - name: stacks\n    kind: stack-status\n",
      encoding="utf-8",
    )
    for index in range(4):
      provider.set_stack(f"five-c{index}-dev", "CREATE_COMPLETE")

    report_path = tmp_path / "report.json"
    code = _run(["verify", "--profile", str(path), "--report-json", str(report_path)], provider, quiet_console)

    assert code == 1
    report = json.loads(report_path.read_text(encoding="utf-8"))
    assert report["successRate"] == 80.0
    assert report["failures"] == ["stacks: c4: five-c4-dev is Absent"]


class TestTeardownCommand:
  """teardown subcommand."""

  def test_declined_confirmation(self, profile_path, provider, quiet_console, fast_env):
    """Test nothing is deleted when the operator declines."""
    provider.set_stack("poc2-iam-dev", "CREATE_COMPLETE")
    prompts = []

    def decline(prompt):
      prompts.append(prompt)
      return False

    code = _run(["teardown", "--profile", str(profile_path)], provider, quiet_console, confirm=decline)
    assert code == 0
    assert "poc2-iam-dev" in prompts[0]
    assert provider.mutating_calls() == []

  def test_force(self, profile_path, provider, quiet_console, fast_env):
    """Test --force skips the prompt and deletes in reverse order."""
    for name in ("iam", "s3", "sns"):
      provider.set_stack(f"poc2-{name}-dev", "CREATE_COMPLETE")

    def unexpected(prompt):
      raise AssertionError("prompted despite --force")

    code = _run(["teardown", "--profile", str(profile_path), "--force"], provider, quiet_console, confirm=unexpected)
    assert code == 0
    assert provider.mutating_calls() == [
      ("delete", "poc2-sns-dev"),
      ("delete", "poc2-s3-dev"),
      ("delete", "poc2-iam-dev"),
    ]


class TestPlanCommand:
  """plan subcommand."""

  def test_plan_prints_order(self, profile_path, provider, quiet_console, fast_env):
    """Test plan shows order and bindings without touching stacks."""
    code = _run(["plan", "--profile", str(profile_path), "-p", "EmailAddress=a@b.c"], provider, quiet_console)
    output = quiet_console._out.getvalue()
    assert code == 0
    assert provider.calls == []
    assert "1. iam (poc2-iam-dev)" in output
    assert "FirehoseRoleArn <- iam.FirehoseRoleARN" in output


class TestMain:
  """Exit codes and argument handling."""

  def test_unexpected_error_exits_three(self, profile_path, quiet_console, fast_env):
    """Test an unexpected exception maps to exit 3."""
    def broken(settings):
      raise RuntimeError("credentials exploded")

    code = main(["verify", "--profile", str(profile_path)], provider_factory=broken, console=quiet_console)
    assert code == 3
    assert "credentials exploded" in quiet_console._err.getvalue()

  def test_missing_profile(self, provider, quiet_console, fast_env, monkeypatch):
    """Test running without a profile is a configuration error."""
    monkeypatch.delenv("CFN_STACKS_PROFILE", raising=False)
    assert _run(["verify"], provider, quiet_console) == 2

  def test_parse_parameters(self):
    """Test KEY=VALUE pairs keep '=' inside values."""
    assert _parse_parameters(["A=1", "B=x=y"]) == {"A": "1", "B": "x=y"}
    with pytest.raises(ConfigurationError):
      _parse_parameters(["novalue"])

  def test_flags_override_environment(self, monkeypatch):
    """Test CLI flags win over CFN_STACKS_* variables."""
    monkeypatch.setenv("CFN_STACKS_TIMEOUT_MINUTES", "45")
    monkeypatch.setenv("CFN_STACKS_POLL_INTERVAL", "20")
    args = parse_arguments(["deploy", "--profile", "p", "-e", "prod", "--poll-interval", "3", "--include-dependencies"])
    settings = build_settings(args)
    assert settings.environment == "prod"
    assert settings.poll_interval == 3
    assert settings.timeout_minutes == 45
    assert settings.include_dependencies is True
