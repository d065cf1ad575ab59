"""Profile loading.

A profile is a YAML document describing the components of one architecture,
their templates, static parameters, output bindings, cleanup hooks and
verification checks. Profiles may ``extends`` other profile files; mappings
are merged recursively and lists of named mappings are merged by ``name``.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import yaml

from .errors import ProfileError
from .models import CleanupSpec, ComponentDescriptor, OutputBinding


PACKAGED_PROFILE_ROOT = Path(__file__).resolve().parent / "profiles"
URL_PREFIXES = ("https://", "http://", "s3://")


def _sequence_key(item: Any) -> Optional[str]:
  if not isinstance(item, dict):
    return None
  name = item.get("name")
  if isinstance(name, str) and name:
    return name
  return None


def _merge_sequences(base: List[Any], override: List[Any]) -> List[Any]:
  if not base:
    return copy.deepcopy(override)
  if not override:
    return copy.deepcopy(base)

  if all(isinstance(item, dict) for item in base + override):
    keys: List[str] = []
    base_map: Dict[str, Any] = {}
    for item in base:
      key = _sequence_key(item)
      if key is None or key in base_map:
        # Unnamed or repeated entries: the overlay list wins as a whole.
        return copy.deepcopy(override)
      keys.append(key)
      base_map[key] = copy.deepcopy(item)

    append_order: List[str] = []
    for item in override:
      key = _sequence_key(item)
      if key is None:
        return copy.deepcopy(override)
      if key in base_map:
        base_map[key] = deep_merge(base_map[key], item)
      else:
        base_map[key] = copy.deepcopy(item)
        append_order.append(key)

    return [base_map[key] for key in keys + append_order]

  return copy.deepcopy(override)


def deep_merge(base: Any, override: Any) -> Any:
  if isinstance(base, dict) and isinstance(override, dict):
    result = copy.deepcopy(base)
    for key, value in override.items():
      if key in result:
        result[key] = deep_merge(result[key], value)
      else:
        result[key] = copy.deepcopy(value)
    return result
  if isinstance(base, list) and isinstance(override, list):
    return _merge_sequences(base, override)
  return copy.deepcopy(override)


def is_remote_template(reference: str) -> bool:
  return reference.startswith(URL_PREFIXES)


@dataclass
class Profile:
  name: str
  name_prefix: str
  source: Path
  components: List[ComponentDescriptor]
  checks: List[Dict[str, Any]] = field(default_factory=list)
  description: Optional[str] = None
  project_tag: Optional[str] = None


class ProfileRepository:
  def __init__(self, root: Path = PACKAGED_PROFILE_ROOT, environment: Optional[str] = None) -> None:
    self._root = root
    self._environment = environment

  def names(self) -> List[str]:
    if not self._root.is_dir():
      return []
    return sorted(path.stem for path in self._root.glob("*.yaml") if path.is_file())

  def locate(self, name_or_path: str) -> Path:
    candidate = Path(name_or_path).expanduser()
    if candidate.is_file():
      return candidate.resolve()

    if self._environment:
      overlay = self._root / "environments" / self._environment / f"{name_or_path}.yaml"
      if overlay.is_file():
        return overlay.resolve()

    base = self._root / f"{name_or_path}.yaml"
    if base.is_file():
      return base.resolve()

    available = ", ".join(self.names()) or "(none)"
    raise ProfileError(f"Profile '{name_or_path}' was not found. Available profiles: {available}")

  def load(self, name_or_path: str, template_root: Optional[Path] = None) -> Profile:
    path = self.locate(name_or_path)
    data = self._load_profile_data(path, template_root)
    return self._parse_profile(path, data)

  def _parse_profile(self, path: Path, data: Dict[str, Any]) -> Profile:
    profile_section = data.get("profile")
    if not isinstance(profile_section, dict):
      raise ProfileError(f"Profile {path} must contain a 'profile' mapping.")

    name = profile_section.get("name") or path.stem
    name_prefix = profile_section.get("namePrefix") or name
    if not isinstance(name_prefix, str):
      raise ProfileError(f"Profile {path}: profile.namePrefix must be a string.")

    rows = data.get("components")
    if not isinstance(rows, list) or not rows:
      raise ProfileError(f"Profile {path} must declare a non-empty 'components' list.")

    components: List[ComponentDescriptor] = []
    seen: Set[str] = set()
    for row in rows:
      component = self._parse_component(row, path)
      if component.name in seen:
        raise ProfileError(f"Profile {path}: duplicate component name '{component.name}'.")
      seen.add(component.name)
      components.append(component)

    checks = data.get("checks", []) or []
    if not isinstance(checks, list) or any(not isinstance(item, dict) for item in checks):
      raise ProfileError(f"Profile {path}: 'checks' must be a list of mappings when specified.")

    return Profile(
      name=str(name),
      name_prefix=name_prefix,
      source=path,
      components=components,
      checks=checks,
      description=profile_section.get("description"),
      project_tag=profile_section.get("project"),
    )

  def _parse_component(self, row: Any, path: Path) -> ComponentDescriptor:
    if not isinstance(row, dict):
      raise ProfileError(f"Profile {path}: component entries must be mappings.")

    name = row.get("name")
    if not name or not isinstance(name, str):
      raise ProfileError(f"Profile {path}: component.name is required.")

    template = row.get("template")
    if not template or not isinstance(template, str):
      raise ProfileError(f"Profile {path}: component '{name}' requires a 'template'.")

    parameters = row.get("parameters", {}) or {}
    if not isinstance(parameters, dict):
      raise ProfileError(f"Profile {path}: component '{name}' parameters must be a mapping.")

    required = row.get("requiredParameters", []) or []
    if not isinstance(required, list) or any(not isinstance(item, str) for item in required):
      raise ProfileError(f"Profile {path}: component '{name}' requiredParameters must be a list of strings.")

    depends_on = row.get("dependsOn", []) or []
    if isinstance(depends_on, str):
      depends_on = [depends_on]
    if not isinstance(depends_on, list) or any(not isinstance(item, str) for item in depends_on):
      raise ProfileError(f"Profile {path}: component '{name}' dependsOn must be a list of names.")

    bindings_raw = row.get("outputBindings", {}) or {}
    if not isinstance(bindings_raw, dict):
      raise ProfileError(f"Profile {path}: component '{name}' outputBindings must be a mapping.")
    bindings: Dict[str, OutputBinding] = {}
    for parameter, reference in bindings_raw.items():
      try:
        bindings[parameter] = OutputBinding.parse(reference)
      except ValueError as exc:
        raise ProfileError(f"Profile {path}: component '{name}': {exc}") from exc

    cleanup_raw = row.get("cleanup", []) or []
    if not isinstance(cleanup_raw, list):
      raise ProfileError(f"Profile {path}: component '{name}' cleanup must be a list.")
    cleanup: List[CleanupSpec] = []
    for entry in cleanup_raw:
      if not isinstance(entry, dict) or not entry.get("kind"):
        raise ProfileError(f"Profile {path}: component '{name}' cleanup entries need a 'kind'.")
      options = {key: value for key, value in entry.items() if key != "kind"}
      cleanup.append(CleanupSpec(kind=entry["kind"], options=options))

    residue = row.get("residuePatterns", []) or []
    if not isinstance(residue, list) or any(not isinstance(item, str) for item in residue):
      raise ProfileError(f"Profile {path}: component '{name}' residuePatterns must be a list of strings.")

    timeout = row.get("timeoutMinutes")
    if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
      raise ProfileError(f"Profile {path}: component '{name}' timeoutMinutes must be a positive number.")

    tags = row.get("tags", {}) or {}
    if not isinstance(tags, dict):
      raise ProfileError(f"Profile {path}: component '{name}' tags must be a mapping.")

    return ComponentDescriptor(
      name=name,
      template=template,
      parameters=dict(parameters),
      required_parameters=list(required),
      depends_on=list(depends_on),
      output_bindings=bindings,
      cleanup=cleanup,
      residue_patterns=list(residue),
      timeout_minutes=timeout,
      capabilities_named_iam=bool(row.get("namedIam", True)),
      tags={str(key): str(value) for key, value in tags.items()},
      description=row.get("description"),
    )

  def _load_profile_data(
    self,
    path: Path,
    template_root: Optional[Path],
    seen: Optional[Set[Path]] = None,
  ) -> Dict[str, Any]:
    if seen is None:
      seen = set()

    resolved_path = path.resolve()
    if resolved_path in seen:
      raise ProfileError(f"Cyclic 'extends' reference detected at {path}.")
    seen.add(resolved_path)

    try:
      with path.open("r", encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
      raise ProfileError(f"Profile {path} is not valid YAML: {exc}") from exc

    if not isinstance(loaded, dict):
      raise ProfileError(f"Profile {path} must parse to a mapping.")

    extends_value = loaded.pop("extends", None)
    merged: Dict[str, Any] = {}

    if extends_value:
      if isinstance(extends_value, str):
        extends_list = [extends_value]
      elif isinstance(extends_value, list) and all(isinstance(item, str) for item in extends_value):
        extends_list = extends_value
      else:
        raise ProfileError(f"Profile {path}: 'extends' must be a string or list of strings when specified.")

      for entry in extends_list:
        base_path = (path.parent / entry).resolve()
        if not base_path.exists():
          raise ProfileError(f"Profile {path}: extended file '{entry}' was not found.")
        merged = deep_merge(merged, self._load_profile_data(base_path, template_root, seen))

    self._ensure_absolute_template_paths(loaded, template_root or path.parent)
    merged = deep_merge(merged, loaded)
    seen.remove(resolved_path)
    return merged

  def _ensure_absolute_template_paths(self, data: Dict[str, Any], base_dir: Path) -> None:
    components = data.get("components")
    if not isinstance(components, list):
      return
    for component in components:
      if not isinstance(component, dict):
        continue
      value = component.get("template")
      if not isinstance(value, str) or not value or is_remote_template(value):
        continue
      candidate = Path(value).expanduser()
      if not candidate.is_absolute():
        candidate = (base_dir / candidate).resolve()
      component["template"] = str(candidate)
