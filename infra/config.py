"""
Publication Approvals — Configuration Loader

Three-tier configuration loading:
  1. Base YAML file (config/approvals.yaml)
  2. Per-environment overlay file (config/{PA_ENV}.yaml merged over base)
  3. Environment variable overrides (PA_ prefixed)

The merged dict is turned into an ApprovalsConfig exactly once at
process startup and handed to every component. Nothing below reads
the environment after that point.

Usage:
    from infra.config import load_config, ApprovalsConfig

    cfg = ApprovalsConfig.from_dict(load_config("config/approvals.yaml"))

Environment variables:
    PA_ENV          — active profile (dev, staging, prod)
    PA_CONFIG_DIR   — directory for overlay files (default: config/)
    PA_*            — overrides; a double underscore separates sections
                      (PA_FEED__BATCH_SIZE=25 → feed.batch_size = 25)
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("publication_approvals.config")

ENV_PREFIX = "PA_"
_META_VARS = {"PA_ENV", "PA_CONFIG_DIR"}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any):
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


# ═══════════════════════════════════════════════════════════════════
# Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(base_path: str, env: str = "", config_dir: str = "") -> dict[str, Any]:
    """
    Load per-environment overlay file.
    Looks for {config_dir}/{env}.yaml next to the base file.
    Returns empty dict if not found.
    """
    env = env or os.environ.get("PA_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get(
        "PA_CONFIG_DIR", str(Path(base_path).resolve().parent)
    )
    for path in (Path(config_dir) / f"{env}.yaml", Path(config_dir) / f"{env}.yml"):
        if path.exists():
            with open(path) as f:
                overlay = yaml.safe_load(f) or {}
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """
    Load PA_ prefixed environment variables as config overrides.

      PA_SECTION__KEY=value → {"section": {"key": value}}
      PA_KEY=value          → {"key": value}

    Values are parsed as YAML scalars (numbers, booleans, lists).
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}

    for key, raw in environ.items():
        if not key.startswith(ENV_PREFIX) or key in _META_VARS:
            continue
        path = key[len(ENV_PREFIX):].lower().split("__")
        try:
            value = yaml.safe_load(raw)
        except yaml.YAMLError:
            value = raw
        _set_nested(overrides, path, value)

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


def load_config(
    base_path: str | Path = "config/approvals.yaml",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
    environ: dict[str, str] | None = None,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (PA_*)
      2. Per-environment overlay file
      3. Base config file
    """
    base_path = str(base_path)
    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        with open(base_path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides(environ)
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("PA_ENV", "default")
    config["_config_source"] = base_path
    return config


def get_config_value(path: str, config: dict[str, Any], default: Any = None) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("feed.batch_size", cfg, 10)
    """
    current: Any = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current


# ═══════════════════════════════════════════════════════════════════
# Typed Configuration
# ═══════════════════════════════════════════════════════════════════

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_DEFAULT_WORKFLOW = str(_PROJECT_ROOT / "approvals" / "workflows" / "publication_approval.yaml")


def _project_path(path: str) -> str:
    """Resolve a relative path against the project root."""
    if os.path.isabs(path):
        return path
    return str(_PROJECT_ROOT / path)


def _as_tuple(value: Any) -> tuple[str, ...]:
    """
    Normalise a list setting. A bare string (as a PA_ override yields
    for a single value) is split on commas.
    """
    if isinstance(value, str):
        return tuple(s.strip() for s in value.split(",") if s.strip())
    return tuple(str(v) for v in value or ())


@dataclass(frozen=True)
class ApprovalsConfig:
    """
    Process-wide settings, built once at startup.

    Defaults mirror config/approvals.yaml so tests can construct one
    without touching the filesystem.
    """
    db_path: str = "approvals.db"
    service_namespace: str = "publication.approvals"
    event_bus_name: str = "approvals-bus"

    # Change feed
    shard_count: int = 4
    feed_batch_size: int = 10
    max_in_flight: int = 5
    poll_interval_seconds: float = 1.0

    # Change Relay
    relay_allowed_states: tuple[str, ...] = ("DRAFT", "APPROVED")
    relay_publish_attempts: int = 3

    # Resumption Bridge
    bridge_max_redeliveries: int = 3

    # Workflow trigger delivery
    trigger_retry_attempts: int = 5
    trigger_max_event_age_seconds: float = 900.0
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0

    # Orchestrator
    workflow_definition: str = _DEFAULT_WORKFLOW
    suspension_timeout_seconds: float = 0.0  # 0 = wait indefinitely

    # Ambient
    log_level: str = "INFO"
    worker_mode: str = "inline"
    redis_url: str = "redis://localhost:6379"
    content_inspector_url: str = ""

    # Cross-service routing rules, as written under routing.rules
    routing_rules: tuple[dict[str, Any], ...] = ()

    extra: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_dict(cfg: dict[str, Any]) -> ApprovalsConfig:
        """Build from a merged config dict (see load_config)."""
        def get(path, default):
            return get_config_value(path, cfg, default)

        d = ApprovalsConfig()
        return ApprovalsConfig(
            db_path=str(get("store.db_path", d.db_path)),
            service_namespace=get("service.namespace", d.service_namespace),
            event_bus_name=get("service.event_bus", d.event_bus_name),
            shard_count=int(get("feed.shard_count", d.shard_count)),
            feed_batch_size=int(get("feed.batch_size", d.feed_batch_size)),
            max_in_flight=int(get("feed.max_in_flight", d.max_in_flight)),
            poll_interval_seconds=float(get("feed.poll_interval_seconds", d.poll_interval_seconds)),
            relay_allowed_states=_as_tuple(get("relay.allowed_states", d.relay_allowed_states)),
            relay_publish_attempts=int(get("relay.publish_attempts", d.relay_publish_attempts)),
            bridge_max_redeliveries=int(get("bridge.max_redeliveries", d.bridge_max_redeliveries)),
            trigger_retry_attempts=int(get("trigger.retry_attempts", d.trigger_retry_attempts)),
            trigger_max_event_age_seconds=float(
                get("trigger.max_event_age_seconds", d.trigger_max_event_age_seconds)
            ),
            backoff_base_seconds=float(get("trigger.backoff_base_seconds", d.backoff_base_seconds)),
            backoff_max_seconds=float(get("trigger.backoff_max_seconds", d.backoff_max_seconds)),
            workflow_definition=_project_path(str(get("workflow.definition", d.workflow_definition))),
            suspension_timeout_seconds=float(
                get("workflow.suspension_timeout_seconds", d.suspension_timeout_seconds)
            ),
            log_level=str(get("logging.level", d.log_level)),
            worker_mode=str(get("worker.mode", d.worker_mode)),
            redis_url=str(get("worker.redis_url", d.redis_url)),
            content_inspector_url=str(get("inspection.url", d.content_inspector_url)),
            routing_rules=tuple(dict(r) for r in get("routing.rules", None) or ()),
            extra={k: v for k, v in cfg.items() if k.startswith("_")},
        )
