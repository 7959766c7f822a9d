"""Unified configuration schema for record_sync.

Defines Pydantic models for the unified config structure with dedicated
sections for the remote store connection, sync options, and logging.
Includes an adapter function producing the runtime ``Config`` dataclass.

Usage:
    from record_sync.config_schema import build_config, to_legacy_config

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = to_legacy_config(unified, cli_overrides={"url": "https://..."})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, field_validator

from .sync.models import ConflictPolicy

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class RemoteConfig(BaseModel):
    """Remote record store connection settings.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    url: str | None = Field(default=None, description="Remote store URL")
    username: str | None = Field(
        default=None, description="Remote store username"
    )
    password: str | None = Field(
        default=None, description="Remote store password"
    )
    zone: str = Field(default="default", description="Record zone name")
    insecure: bool = Field(
        default=False,
        description="Disable SSL verification (development only)",
    )
    debug: bool = Field(default=False, description="Enable debug mode")
    timeout: float = Field(
        default=60.0,
        gt=0,
        le=600,
        description="Read timeout in seconds for remote requests",
    )

    model_config = {"frozen": True}


class SyncSettings(BaseModel):
    """Sync engine options.

    Attributes:
        conflict_policy: How push conflicts are resolved.
        entity_types: Entity types mirrored in the local store.
        max_pull_pages: Upper bound on change pages per pull.
        state_dir: Directory holding the cursor state file.
        profile: Name of the cursor state profile.
    """

    conflict_policy: ConflictPolicy = Field(
        default=ConflictPolicy.SERVER_WINS,
        description="Conflict policy for version mismatches on push",
    )
    entity_types: list[str] = Field(
        default_factory=list,
        description="Entity types mirrored in the local store",
    )
    max_pull_pages: int | None = Field(
        default=None,
        ge=1,
        description="Maximum change pages fetched per pull",
    )
    state_dir: str = Field(
        default=".record_sync",
        description="Directory for the cursor state file",
    )
    profile: str = Field(
        default="default", description="Cursor state profile name"
    )

    model_config = {"frozen": True}

    @field_validator("conflict_policy")
    @classmethod
    def _warn_keep_both(cls, value: ConflictPolicy) -> ConflictPolicy:
        if value == ConflictPolicy.KEEP_BOTH:
            logger.warning(
                "conflict_policy 'keep-both' is not supported; the sync "
                "engine will refuse to start with it"
            )
        return value

    @field_validator("entity_types")
    @classmethod
    def _unique_entity_types(cls, value: list[str]) -> list[str]:
        if len(set(value)) != len(value):
            raise ValueError("entity_types must not contain duplicates")
        return value


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: ``text`` or ``json``.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: str = Field(default="text", description="text or json")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Aggregates all config sections. Every section has sensible defaults,
    so ``UnifiedConfig()`` (zero-config) is always valid.
    """

    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get their defaults.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


# ---------------------------------------------------------------------------
# Adapter: UnifiedConfig -> Config dataclass
# ---------------------------------------------------------------------------


def to_legacy_config(
    unified: UnifiedConfig,
    cli_overrides: dict | None = None,
) -> Config:
    """Convert a ``UnifiedConfig`` into the runtime ``Config`` dataclass,
    applying CLI overrides on top.

    The precedence applied here is:
        CLI override > unified config value > None

    CLI overrides dict keys: url, username, password, insecure, debug.

    Args:
        unified: The unified config produced by ``build_config()``.
        cli_overrides: Optional dict of CLI argument values.

    Returns:
        ``Config`` dataclass instance (not validated; call
        ``validate_config()`` separately if needed).
    """
    # Import here to avoid circular imports
    from .config import Config

    overrides = cli_overrides or {}
    remote = unified.remote
    sync = unified.sync

    return Config(
        remote_url=overrides.get("url") or remote.url or "",
        username=overrides.get("username") or remote.username or "",
        password=overrides.get("password") or remote.password or "",
        zone=remote.zone,
        insecure=overrides.get("insecure", False) or remote.insecure,
        debug=overrides.get("debug", False) or remote.debug,
        conflict_policy=sync.conflict_policy.value,
        entity_types=list(sync.entity_types),
        max_pull_pages=sync.max_pull_pages,
        state_dir=sync.state_dir,
        profile=sync.profile,
        timeout=remote.timeout,
    )
