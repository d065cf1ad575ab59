from __future__ import annotations

import os
import sys
from enum import Enum
from typing import Dict, List, Optional, TextIO

from .models import CheckOutcome, ComponentDescriptor, TestReport
from .registry import StackRegistry


PALETTE_KEYS = ("heading", "root", "dependent", "arrow", "ok", "warn", "fail", "reset")


class ColorMode(str, Enum):
  AUTO = "auto"
  ALWAYS = "always"
  NEVER = "never"


def _supports_color_output(stream: TextIO) -> bool:
  isatty = getattr(stream, "isatty", None)
  return bool(isatty and isatty()) and os.environ.get("NO_COLOR") is None


def build_console_palette(requested_mode: str, stream: Optional[TextIO] = None) -> Dict[str, str]:
  try:
    mode = ColorMode(requested_mode or ColorMode.AUTO.value)
  except ValueError:
    mode = ColorMode.AUTO

  use_color = mode is ColorMode.ALWAYS or (
    mode is ColorMode.AUTO and _supports_color_output(stream or sys.stdout)
  )
  palette = {key: "" for key in PALETTE_KEYS}
  if use_color:
    palette.update({
      "heading": "\033[1m",
      "root": "\033[32m",
      "dependent": "\033[36m",
      "arrow": "\033[90m",
      "ok": "\033[32m",
      "warn": "\033[33m",
      "fail": "\033[31m",
      "reset": "\033[0m",
    })
  return palette


class Console:
  def __init__(
    self,
    color: str = ColorMode.AUTO.value,
    out: Optional[TextIO] = None,
    err: Optional[TextIO] = None,
  ) -> None:
    self._out = out or sys.stdout
    self._err = err or sys.stderr
    self.palette = build_console_palette(color, self._out)

  def _paint(self, key: str, text: str) -> str:
    return f"{self.palette.get(key, '')}{text}{self.palette.get('reset', '')}"

  def heading(self, text: str) -> None:
    print(self._paint("heading", text), file=self._out)

  def info(self, text: str = "") -> None:
    print(text, file=self._out)

  def success(self, text: str) -> None:
    print(self._paint("ok", text), file=self._out)

  def warning(self, text: str) -> None:
    print(self._paint("warn", f"WARNING: {text}"), file=self._err)

  def error(self, text: str) -> None:
    print(self._paint("fail", text), file=self._err)

  def print_dependency_summary(
    self,
    registry: StackRegistry,
    ordered: List[ComponentDescriptor],
    environment: str,
    title: str = "Execution order",
  ) -> None:
    if not ordered:
      self.info("No components selected.")
      return

    execution_index = {descriptor.name: idx for idx, descriptor in enumerate(ordered)}
    reset = self.palette.get("reset", "")

    self.heading("Dependency map (selected scope):")
    roots: List[str] = []
    dependents: List[ComponentDescriptor] = []
    for descriptor in ordered:
      if descriptor.depends_on:
        dependents.append(descriptor)
      else:
        roots.append(descriptor.name)

    self.heading("  Root components:")
    if roots:
      for name in roots:
        self.info(f"    - {self.palette.get('root', '')}{name}{reset}")
    else:
      self.info("    (none)")

    self.heading("  Dependent components:")
    if dependents:
      for descriptor in dependents:
        self.info(f"    {self.palette.get('dependent', '')}{descriptor.name}{reset}")
        for dependency in descriptor.depends_on:
          suffix = "" if dependency in execution_index else f" {self.palette.get('arrow', '')}(existing){reset}"
          self.info(
            f"      {self.palette.get('arrow', '')}-> {reset}{self.palette.get('root', '')}{dependency}{reset}{suffix}"
          )
    else:
      self.info("    (none)")
    self.info()

    self.heading(f"{title}:")
    for position, descriptor in enumerate(ordered, 1):
      stack_name = registry.stack_name(descriptor.name, environment)
      self.info(f"  {position}. {self.palette.get('dependent', '')}{descriptor.name}{reset} ({stack_name})")
    self.info()

  def print_report(self, report: TestReport, title: str = "Verification summary") -> None:
    markers = {
      CheckOutcome.PASSED: self._paint("ok", "PASS"),
      CheckOutcome.FAILED: self._paint("fail", "FAIL"),
      CheckOutcome.SKIPPED: self._paint("warn", "SKIP"),
    }
    self.heading(f"{title}:")
    for result in report.results:
      line = f"  [{markers[result.outcome]}] {result.name}"
      if result.message:
        line += f": {result.message}"
      self.info(line)
      if result.detail and result.outcome is CheckOutcome.FAILED:
        self.info(f"         {result.detail}")
    for warning in report.warnings:
      self.warning(warning)
    self.info()
    self.info(f"  Total: {report.total}  Passed: {report.passed}  Failed: {report.failed}  Skipped: {report.skipped}")
    self.info(f"  Success rate: {report.success_rate:.1f}%")
    if report.finished_at is not None:
      elapsed = (report.finished_at - report.started_at).total_seconds()
      self.info(f"  Duration: {elapsed:.1f}s")
