"""Command-line entry point: deploy, verify, tear down or plan a profile."""
from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from . import __version__
from .aws import CloudFormationProvider
from .checks import build_checks
from .config import ENVIRONMENTS, Settings
from .console import ColorMode, Console
from .errors import ConfigurationError, OrchestratorError
from .manifest import PACKAGED_PROFILE_ROOT, Profile, ProfileRepository
from .models import TestReport
from .orchestrator import StackOrchestrator
from .provider import StackProvider
from .registry import ALL_COMPONENTS, StackRegistry
from .resolver import OutputResolver
from .teardown import TeardownOrchestrator
from .verification import VerificationContext, VerificationRunner


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 2
EXIT_UNEXPECTED = 3

ProviderFactory = Callable[[Settings], StackProvider]
Confirm = Callable[[str], bool]


def _parse_bool(value: str) -> bool:
  lowered = value.strip().lower()
  if lowered in {"true", "yes", "1", "on"}:
    return True
  if lowered in {"false", "no", "0", "off"}:
    return False
  raise argparse.ArgumentTypeError(f"expected true or false, got '{value}'")


def _parse_parameters(pairs: Optional[List[str]]) -> Dict[str, str]:
  overrides: Dict[str, str] = {}
  for pair in pairs or []:
    if "=" not in pair:
      raise ConfigurationError(f"Parameter override '{pair}' must be written as KEY=VALUE.")
    key, value = pair.split("=", 1)
    if not key:
      raise ConfigurationError(f"Parameter override '{pair}' has an empty key.")
    overrides[key] = value
  return overrides


def _default_provider(settings: Settings) -> StackProvider:
  return CloudFormationProvider(
    region=settings.region,
    profile=settings.aws_profile,
    artifact_bucket=settings.artifact_bucket,
  )


def _confirm(prompt: str) -> bool:
  try:
    answer = input(prompt)
  except EOFError:
    return False
  return answer.strip().lower() in {"y", "yes"}


def configure_logging(verbose: bool) -> None:
  logging.basicConfig(
    level=logging.DEBUG if verbose else logging.WARNING,
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
  )
  for noisy in ("botocore", "boto3", "urllib3", "httpx", "httpcore"):
    logging.getLogger(noisy).setLevel(logging.WARNING)


def build_settings(args: argparse.Namespace, env: Optional[Dict[str, str]] = None) -> Settings:
  settings = Settings.from_environment(env)
  settings.environment = args.environment
  for attribute in ("poll_interval", "timeout_minutes", "check_timeout", "region",
                    "aws_profile", "artifact_bucket", "name_prefix"):
    value = getattr(args, attribute, None)
    if value is not None:
      setattr(settings, attribute, value)
  if getattr(args, "include_dependencies", False):
    settings.dependency_mode = "include"
  settings.dry_run = bool(getattr(args, "dry_run", False))
  settings.validate()
  return settings


def load_profile(args: argparse.Namespace, settings: Settings) -> Tuple[Profile, StackRegistry]:
  if not args.profile:
    raise ConfigurationError("No profile selected; pass --profile or set CFN_STACKS_PROFILE.")
  repository = ProfileRepository(Path(args.profiles_dir), environment=settings.environment)
  template_root = Path(args.template_root).resolve() if args.template_root else None
  profile = repository.load(args.profile, template_root=template_root)
  registry = StackRegistry(
    profile.components,
    name_prefix=settings.name_prefix or profile.name_prefix,
    profile=profile.name,
  )
  return profile, registry


def run_verification(
  profile: Profile,
  registry: StackRegistry,
  provider: StackProvider,
  settings: Settings,
  console: Console,
  *,
  destructive: bool,
  report_path: Optional[str] = None,
) -> TestReport:
  resolver = OutputResolver(provider, registry, variables={"region": settings.region or ""})
  context = VerificationContext.collect(
    registry, provider, resolver, settings.environment, destructive=destructive
  )
  checks = build_checks(profile.checks, context)
  console.heading(f"Running {len(checks)} verification check(s) against '{settings.environment}'...")
  runner = VerificationRunner(timeout_per_check=settings.check_timeout)
  report = runner.run_checks(checks, context)
  console.print_report(report)
  if report_path:
    Path(report_path).write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
    console.info(f"Report written to {report_path}")
  return report


def handle_plan(args: argparse.Namespace, console: Console, provider_factory: ProviderFactory,
                confirm: Confirm) -> int:
  settings = build_settings(args)
  profile, registry = load_profile(args, settings)
  overrides = _parse_parameters(args.parameter)
  orchestrator = StackOrchestrator(registry, provider_factory(settings), settings, console=console)
  resolver = orchestrator.resolver
  ordered = orchestrator.plan(args.component, overrides)
  console.print_dependency_summary(registry, ordered, settings.environment, title=f"Plan for profile '{profile.name}'")
  for descriptor in ordered:
    console.heading(f"{descriptor.name}:")
    console.info(f"  template: {descriptor.template}")
    for key, value in resolver.static_parameters(descriptor, settings.environment, overrides).items():
      console.info(f"  {key} = {value}")
    for key, binding in descriptor.output_bindings.items():
      console.info(f"  {key} <- {binding}")
  return EXIT_OK


def handle_deploy(args: argparse.Namespace, console: Console, provider_factory: ProviderFactory,
                  confirm: Confirm) -> int:
  settings = build_settings(args)
  profile, registry = load_profile(args, settings)
  overrides = _parse_parameters(args.parameter)
  provider = provider_factory(settings)

  orchestrator = StackOrchestrator(
    registry, provider, settings, console=console, project_tag=profile.project_tag
  )
  orchestrator.deploy(args.component, overrides)

  if settings.dry_run or not args.run_tests:
    return EXIT_OK
  if not profile.checks:
    console.info("Profile declares no verification checks.")
    return EXIT_OK
  report = run_verification(
    profile, registry, provider, settings, console,
    destructive=args.destructive_tests, report_path=args.report_json,
  )
  return report.exit_code


def handle_verify(args: argparse.Namespace, console: Console, provider_factory: ProviderFactory,
                  confirm: Confirm) -> int:
  settings = build_settings(args)
  profile, registry = load_profile(args, settings)
  provider = provider_factory(settings)
  report = run_verification(
    profile, registry, provider, settings, console,
    destructive=args.destructive_tests, report_path=args.report_json,
  )
  return report.exit_code


def handle_teardown(args: argparse.Namespace, console: Console, provider_factory: ProviderFactory,
                    confirm: Confirm) -> int:
  settings = build_settings(args)
  _, registry = load_profile(args, settings)
  provider = provider_factory(settings)
  orchestrator = TeardownOrchestrator(registry, provider, settings, console=console)

  ordered = orchestrator.plan(args.component)
  if settings.dry_run:
    console.print_dependency_summary(registry, ordered, settings.environment, title="Teardown order (dry-run)")
    return EXIT_OK

  if not args.force:
    stack_names = ", ".join(registry.stack_name(descriptor.name, settings.environment) for descriptor in ordered)
    if not confirm(f"Delete {len(ordered)} stack(s) in '{settings.environment}': {stack_names}? [y/N] "):
      console.info("Teardown cancelled.")
      return EXIT_OK

  result = orchestrator.teardown(
    args.component,
    empty_stateful=args.empty_stateful_resources,
    verify=args.verify,
  )
  return result.exit_code


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
  parser.add_argument(
    "--profile",
    default=os.environ.get("CFN_STACKS_PROFILE"),
    help="Profile name (shipped profiles) or path to a profile YAML file.",
  )
  parser.add_argument(
    "--profiles-dir",
    default=str(PACKAGED_PROFILE_ROOT),
    help="Directory searched for named profiles and environments/<env>/ overlays.",
  )
  parser.add_argument(
    "--template-root",
    help="Directory that relative template paths resolve against (default: the profile's directory).",
  )
  parser.add_argument(
    "--environment",
    "-e",
    choices=ENVIRONMENTS,
    default="dev",
    help="Target environment (default: dev).",
  )
  parser.add_argument("--region", help="AWS region (default: AWS_REGION / AWS_DEFAULT_REGION).")
  parser.add_argument("--aws-profile", help="AWS credentials profile (default: AWS_PROFILE).")
  parser.add_argument("--name-prefix", help="Override the profile's stack name prefix.")
  parser.add_argument(
    "--poll-interval",
    type=float,
    help="Seconds between stack status polls (default: 10).",
  )
  parser.add_argument(
    "--timeout-minutes",
    type=float,
    help="Per-stack timeout when the component does not set one (default: 30).",
  )
  parser.add_argument(
    "--color",
    choices=[mode.value for mode in ColorMode],
    default=ColorMode.AUTO.value,
    help="Color output mode: auto (default), always, or never.",
  )
  parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")


def _add_component_argument(parser: argparse.ArgumentParser) -> None:
  parser.add_argument(
    "--component",
    "-c",
    nargs="+",
    default=[ALL_COMPONENTS],
    help="Components to act on (default: all).",
  )


def _add_verification_arguments(parser: argparse.ArgumentParser) -> None:
  parser.add_argument(
    "--destructive-tests",
    action="store_true",
    help="Allow checks that write and delete test data.",
  )
  parser.add_argument("--check-timeout", type=float, help="Seconds allowed per verification check (default: 60).")
  parser.add_argument("--report-json", help="Write the verification report to this JSON file.")


def build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(
    prog="cfn-stacks",
    description="Deploy, verify and tear down CloudFormation stack profiles.",
  )
  parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
  subparsers = parser.add_subparsers(dest="command", required=True)

  deploy = subparsers.add_parser("deploy", help="Create or update stacks in dependency order.")
  _add_common_arguments(deploy)
  _add_component_argument(deploy)
  _add_verification_arguments(deploy)
  deploy.add_argument(
    "--run-tests",
    type=_parse_bool,
    nargs="?",
    const=True,
    default=True,
    help="Run the profile's verification checks after deploying (default: true).",
  )
  deploy.add_argument(
    "--parameter",
    "-p",
    action="append",
    metavar="KEY=VALUE",
    help="Static parameter value for components that declare KEY (repeatable).",
  )
  deploy.add_argument(
    "--include-dependencies",
    action="store_true",
    help="Also deploy upstream components of the selected ones (default comes from CFN_STACKS_DEPENDENCIES).",
  )
  deploy.add_argument("--artifact-bucket", help="Bucket for templates above the inline size limit.")
  deploy.add_argument("--dry-run", action="store_true", help="Resolve and print without calling the provider mutators.")
  deploy.set_defaults(handler=handle_deploy)

  teardown = subparsers.add_parser("teardown", help="Delete stacks in reverse dependency order.")
  _add_common_arguments(teardown)
  _add_component_argument(teardown)
  teardown.add_argument(
    "--force",
    type=_parse_bool,
    nargs="?",
    const=True,
    default=False,
    help="Skip the confirmation prompt (default: false).",
  )
  teardown.add_argument(
    "--empty-stateful-resources",
    type=_parse_bool,
    nargs="?",
    const=True,
    default=True,
    help="Run pre-delete cleanup hooks such as emptying buckets (default: true).",
  )
  teardown.add_argument(
    "--verify",
    type=_parse_bool,
    nargs="?",
    const=True,
    default=True,
    help="Scan for leftover resources after deletion (default: true).",
  )
  teardown.add_argument(
    "--include-dependencies",
    action="store_true",
    help="Also tear down components that depend on the selected ones.",
  )
  teardown.add_argument("--dry-run", action="store_true", help="Print the teardown order only.")
  teardown.set_defaults(handler=handle_teardown)

  verify = subparsers.add_parser("verify", help="Run verification checks against deployed stacks.")
  _add_common_arguments(verify)
  _add_verification_arguments(verify)
  verify.set_defaults(handler=handle_verify)

  plan = subparsers.add_parser("plan", help="Show order and static parameters without calling AWS.")
  _add_common_arguments(plan)
  _add_component_argument(plan)
  plan.add_argument("--parameter", "-p", action="append", metavar="KEY=VALUE")
  plan.add_argument("--include-dependencies", action="store_true")
  plan.set_defaults(handler=handle_plan)

  return parser


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
  return build_parser().parse_args(argv)


def main(
  argv: Optional[List[str]] = None,
  *,
  provider_factory: Optional[ProviderFactory] = None,
  confirm: Optional[Confirm] = None,
  console: Optional[Console] = None,
) -> int:
  args = parse_arguments(argv)
  configure_logging(args.verbose)
  console = console or Console(args.color)
  handler: Callable[..., int] = args.handler
  try:
    return handler(args, console, provider_factory or _default_provider, confirm or _confirm)
  except OrchestratorError as exc:
    console.error(f"Error: {exc}")
    return EXIT_FAILED
  except KeyboardInterrupt:
    console.error("Interrupted. Stacks may still be changing on the provider side; re-run to resume polling.")
    return EXIT_UNEXPECTED
  except Exception as exc:  # pylint: disable=broad-except
    logger.debug("Unhandled error", exc_info=True)
    console.error(f"Unhandled error: {exc}")
    return EXIT_UNEXPECTED

