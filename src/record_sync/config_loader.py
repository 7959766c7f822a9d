"""
Hierarchical configuration loader for record_sync.

Provides convention-based config file discovery, env var interpolation,
and a per-section merge with "project wins" semantics, plus
``load_settings()`` which resolves everything into a validated runtime
``Config``.

Usage:
    from record_sync.config_loader import load_settings

    unified, config = load_settings()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .config import Config, load_config
from .config_schema import UnifiedConfig, build_config

logger = logging.getLogger(__name__)

SECTIONS = ("remote", "sync", "logging")

# ---------------------------------------------------------------------------
# 1. Env var interpolation
# ---------------------------------------------------------------------------

# Matches ${VAR} and ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Replace ``${VAR}`` and ``${VAR:-default}`` patterns with env values.

    * ``${VAR}`` is replaced with the env value, or ``""`` when unset.
    * ``${VAR:-default}`` uses *default* when VAR is unset or empty.
    """

    def _replace(match: re.Match) -> str:
        env_val = os.environ.get(match.group(1))
        if env_val:
            return env_val
        return match.group(2) or ""

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _interpolate_recursive(obj: Any) -> Any:
    """Walk a nested dict/list and interpolate env vars in all strings."""
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _interpolate_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# 2. Convention-based file discovery
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Return existing config file paths in precedence order (highest first).

    Search order:
        1. ``RECORD_SYNC_CONFIG`` env var (explicit single path).
        2. ``.record_sync/config.yml`` in CWD (project-level)
        3. ``.record_sync/config.yaml`` in CWD (alternate extension)
        4. ``~/.config/record_sync/config.yml`` (XDG global)

    Only paths that exist on disk are returned.
    """
    candidates: list[Path] = []

    env_path = os.environ.get("RECORD_SYNC_CONFIG")
    if env_path:
        candidates.append(Path(env_path).expanduser().resolve())

    cwd = Path.cwd()
    candidates.append(cwd / ".record_sync" / "config.yml")
    candidates.append(cwd / ".record_sync" / "config.yaml")
    candidates.append(
        Path.home() / ".config" / "record_sync" / "config.yml"
    )

    return [p for p in candidates if p.exists()]


_STARTER_CONFIG = """\
# record-sync configuration
#
# Remote store connection settings can also be set via environment variables:
#   RECORD_SYNC_URL, RECORD_SYNC_USERNAME, RECORD_SYNC_PASSWORD,
#   RECORD_SYNC_ZONE, RECORD_SYNC_INSECURE
#
# remote:
#   url: https://records.example.com
#   username: admin
#   password: ${RECORD_SYNC_PASSWORD}
#   zone: default
#   insecure: false
#   timeout: 60
#
# sync:
#   conflict_policy: server-wins   # server-wins | client-wins | client-tells-which-wins
#   entity_types: [Note, Folder]
#   max_pull_pages: null
#   state_dir: .record_sync
#   profile: default
#
# logging:
#   level: INFO
#   file: null
#   format: text
"""


def ensure_config(target: Path | None = None) -> Path:
    """Ensure a config file exists, writing a commented starter file if not.

    Args:
        target: Explicit path to create. Defaults to
            ``CWD / .record_sync / config.yml``.

    Returns:
        Path to the config file (existing or newly created).
    """
    existing = discover_config_files()
    if existing:
        logger.debug("Config file already exists: %s", existing[0])
        return existing[0]

    config_path = target or Path.cwd() / ".record_sync" / "config.yml"
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", config_path)

    return config_path


# ---------------------------------------------------------------------------
# 3. Hierarchical merge
# ---------------------------------------------------------------------------


def _load_yaml(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as fh:
        return yaml.safe_load(fh)


def load_hierarchical_config() -> dict[str, Any]:
    """Load and merge all discovered config files.

    Merge strategy ("project wins"):
        Files are loaded from lowest precedence to highest.  Keys inside
        the known sections (``remote``, ``sync``, ``logging``) are merged
        one level deep, so a project file may override a single key of a
        global section.  Any other top-level key is replaced wholesale.

    After merging, env var interpolation is applied to all string values.

    Returns an empty dict when no config files exist (zero-config).
    """
    paths = discover_config_files()

    if not paths:
        logger.debug("No config files found, using defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = _load_yaml(path)
        except yaml.YAMLError:
            logger.exception("Failed to parse config file %s", path)
            raise

        if data is None:
            continue
        if not isinstance(data, dict):
            logger.warning(
                "Config file %s has non-dict root (%s), skipping",
                path,
                type(data).__name__,
            )
            continue

        for key, value in data.items():
            if (
                key in SECTIONS
                and isinstance(value, dict)
                and isinstance(merged.get(key), dict)
            ):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value

    return _interpolate_recursive(merged)


# ---------------------------------------------------------------------------
# 4. Runtime settings
# ---------------------------------------------------------------------------


def load_settings(
    cli_overrides: dict | None = None,
) -> tuple[UnifiedConfig, Config]:
    """Resolve the full configuration for a sync run.

    Loads ``.env`` (without overriding already-set variables), merges the
    YAML config files, validates them, and resolves the runtime ``Config``
    with CLI > env > YAML > default precedence.

    Args:
        cli_overrides: Optional dict with keys ``url``, ``username``,
            ``password``, ``insecure``, ``debug``.

    Returns:
        ``(unified, config)``.

    Raises:
        ValueError: If required connection settings are missing or any
            value is invalid.
    """
    load_dotenv()
    unified = build_config(load_hierarchical_config())
    overrides = cli_overrides or {}

    fallbacks = {
        **unified.remote.model_dump(exclude_none=True),
        **unified.sync.model_dump(mode="json", exclude_none=True),
    }
    config = load_config(
        url=overrides.get("url"),
        username=overrides.get("username"),
        password=overrides.get("password"),
        insecure=bool(overrides.get("insecure", False)),
        debug=bool(overrides.get("debug", False)),
        yaml_fallbacks=fallbacks,
    )
    return unified, config
