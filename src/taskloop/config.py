"""Configuration loading.

Builds the immutable OrchestratorConfig for one run from, in increasing
priority: built-in defaults, ``.taskloop/manifest.yaml``, ``TASKLOOP_*``
environment variables and CLI overrides. The result is loaded once and
passed to every component; nothing re-reads the environment mid-run.

Manifest example:

    agent:
      name: claude
      model: opus
      fallbacks:
        - agent: codex
          model: o4-mini
    quality:
      test_command: pytest -q
      lint_command: ruff check .
    timeouts:
      implement: 3600
    skip_phases:
      docs: true
    locks:
      stale_after_seconds: 1800
"""

import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import ValidationError

from .errors import ConfigError
from .models import PHASE_ORDER, OrchestratorConfig, default_phase_settings

ENV_PREFIX = "TASKLOOP_"

# Simple scalar environment overrides: variable -> (section, key, type)
ENV_OVERRIDES: dict[str, tuple[Optional[str], str, type]] = {
    "TASKLOOP_MAX_RETRIES": ("retry", "max_retries", int),
    "TASKLOOP_RETRY_DELAY": ("retry", "base_delay_seconds", float),
    "TASKLOOP_LOCK_TIMEOUT": ("locks", "stale_after_seconds", int),
    "TASKLOOP_HEARTBEAT": ("locks", "heartbeat_seconds", int),
    "TASKLOOP_NO_PROMPT": ("orphans", "auto_resume", bool),
    "TASKLOOP_PROMPT_TIMEOUT": ("orphans", "prompt_timeout_seconds", int),
    "TASKLOOP_CONFIDENCE_THRESHOLD": ("confidence", "threshold", int),
    "TASKLOOP_CB_THRESHOLD": ("circuit_breaker", "failure_threshold", int),
    "TASKLOOP_CB_ENABLED": ("circuit_breaker", "enabled", bool),
    "TASKLOOP_CB_NO_PROGRESS": ("circuit_breaker", "no_progress_threshold", int),
    "TASKLOOP_CB_OUTPUT_DECLINE": ("circuit_breaker", "output_decline_percent", int),
    "TASKLOOP_RATE_LIMIT": ("rate_limit", "calls_per_hour", int),
    "TASKLOOP_TEST_COMMAND": ("quality", "test_command", str),
    "TASKLOOP_LINT_COMMAND": ("quality", "lint_command", str),
    "TASKLOOP_BUILD_COMMAND": ("quality", "build_command", str),
    "TASKLOOP_COMMIT_TASKS": ("git", "commit_task_files", bool),
    "TASKLOOP_DRY_RUN": (None, "dry_run", bool),
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _coerce(value: str, kind: type, name: str) -> Any:
    if kind is bool:
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ConfigError(f"{name} must be a boolean, got {value!r}")
    try:
        return kind(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be {kind.__name__}, got {value!r}") from e


def deep_merge(base: dict, override: Mapping) -> dict:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_manifest(path: Path) -> dict:
    """Read manifest.yaml. A missing file is an empty manifest.

    Raises:
        ConfigError: If the file is not valid YAML or not a mapping
    """
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def _parse_fallback(entry: Any, primary_agent: str) -> dict:
    if isinstance(entry, str):
        # "codex/o4-mini" or a bare model name for the primary agent
        agent, sep, model = entry.partition("/")
        return {"agent": agent, "model": model or None} if sep else {"agent": primary_agent, "model": entry}
    if isinstance(entry, Mapping):
        return {"agent": entry.get("agent", entry.get("name", primary_agent)), "model": entry.get("model")}
    raise ConfigError(f"Invalid fallback entry: {entry!r}")


def manifest_to_settings(manifest: Mapping) -> dict:
    """Translate manifest layout into OrchestratorConfig field names."""
    settings: dict[str, Any] = {}

    agent = manifest.get("agent") or {}
    if isinstance(agent, str):
        agent = {"name": agent}
    if agent:
        name = agent.get("name", "claude")
        settings["agent"] = {"agent": name, "model": agent.get("model")}
        if "fallbacks" in agent:
            settings["fallbacks"] = [_parse_fallback(f, name) for f in agent.get("fallbacks") or []]
        if "default_fallback" in agent:
            settings["use_default_fallback"] = bool(agent["default_fallback"])

    phases: dict[str, dict] = {}
    for name, value in (manifest.get("phases") or {}).items():
        if not isinstance(value, Mapping):
            raise ConfigError(f"phases.{name} must be a mapping")
        entry = dict(value)
        if "timeout" in entry:
            entry["timeout_seconds"] = entry.pop("timeout")
        phases[name] = entry
    for name, timeout in (manifest.get("timeouts") or {}).items():
        phases.setdefault(name, {})["timeout_seconds"] = timeout
    for name, skip in (manifest.get("skip_phases") or {}).items():
        phases.setdefault(name, {})["skip"] = bool(skip)
    if phases:
        settings["phases"] = phases

    for section in ("quality", "retry", "locks", "circuit_breaker", "confidence", "rate_limit", "orphans", "git"):
        if manifest.get(section):
            settings[section] = dict(manifest[section])

    checkpoint = manifest.get("checkpoint") or {}
    if "max_age_hours" in checkpoint:
        settings["checkpoint_max_age_hours"] = checkpoint["max_age_hours"]
    if "promote_unblocked" in manifest:
        settings["promote_unblocked"] = bool(manifest["promote_unblocked"])
    return settings


def env_to_settings(env: Mapping[str, str]) -> dict:
    """Collect TASKLOOP_* overrides from an environment mapping."""
    settings: dict[str, Any] = {}

    if env.get("TASKLOOP_AGENT") or env.get("TASKLOOP_MODEL"):
        settings["agent"] = {}
        if env.get("TASKLOOP_AGENT"):
            settings["agent"]["agent"] = env["TASKLOOP_AGENT"]
        if env.get("TASKLOOP_MODEL"):
            settings["agent"]["model"] = env["TASKLOOP_MODEL"]

    if env.get("TASKLOOP_NO_FALLBACK") and _coerce(env["TASKLOOP_NO_FALLBACK"], bool, "TASKLOOP_NO_FALLBACK"):
        settings["fallbacks"] = []
        settings["use_default_fallback"] = False

    for name, (section, key, kind) in ENV_OVERRIDES.items():
        if name not in env:
            continue
        value = _coerce(env[name], kind, name)
        if section is None:
            settings[key] = value
        else:
            settings.setdefault(section, {})[key] = value

    phases: dict[str, dict] = {}
    for phase in PHASE_ORDER:
        timeout = env.get(f"{ENV_PREFIX}TIMEOUT_{phase.name}")
        if timeout:
            phases.setdefault(phase.value, {})["timeout_seconds"] = _coerce(timeout, int, f"TIMEOUT_{phase.name}")
        skip = env.get(f"{ENV_PREFIX}SKIP_{phase.name}")
        if skip is not None:
            phases.setdefault(phase.value, {})["skip"] = _coerce(skip, bool, f"SKIP_{phase.name}")
    if phases:
        settings["phases"] = phases
    return settings


def build_config(*layers: Mapping) -> OrchestratorConfig:
    """Merge settings layers (lowest priority first) into a validated config.

    Raises:
        ConfigError: On unknown keys or invalid values
    """
    base_phases = {p.value: s.model_dump() for p, s in default_phase_settings().items()}
    merged: dict[str, Any] = {"phases": base_phases}
    for layer in layers:
        merged = deep_merge(merged, layer)

    unknown = set(merged["phases"]) - {p.value for p in PHASE_ORDER}
    if unknown:
        raise ConfigError(f"Unknown phase(s) in configuration: {', '.join(sorted(unknown))}")

    try:
        return OrchestratorConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration:\n{e}") from e


def load_config(
    manifest_path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping] = None,
) -> OrchestratorConfig:
    """Load the run configuration.

    Args:
        manifest_path: Path to manifest.yaml (optional)
        env: Environment mapping (defaults to os.environ)
        overrides: CLI-level settings, highest priority

    Returns:
        Frozen OrchestratorConfig
    """
    manifest = load_manifest(manifest_path) if manifest_path else {}
    return build_config(
        manifest_to_settings(manifest),
        env_to_settings(os.environ if env is None else env),
        overrides or {},
    )
