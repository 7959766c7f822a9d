"""Runtime configuration for the record sync client.

Reads remote store connection settings and sync options from CLI args,
environment variables, .env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    RECORD_SYNC_URL: Remote record store URL (required)
    RECORD_SYNC_USERNAME: Remote store username (required)
    RECORD_SYNC_PASSWORD: Remote store password (required)
    RECORD_SYNC_ZONE: Record zone name (optional, default: default)
    RECORD_SYNC_INSECURE: Skip SSL verification (optional, default: false)
    RECORD_SYNC_CONFLICT_POLICY: Conflict policy (optional, default: server-wins)
    RECORD_SYNC_MAX_PULL_PAGES: Max change pages per pull (optional, default: unbounded)
    RECORD_SYNC_STATE_DIR: Directory for the cursor state file (optional, default: .record_sync)
    RECORD_SYNC_PROFILE: Cursor state profile name (optional, default: default)
"""

import logging
import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

from .sync.models import ConflictPolicy

logger = logging.getLogger(__name__)


@dataclass
class Config:
    remote_url: str
    username: str
    password: str
    zone: str = "default"
    insecure: bool = False
    debug: bool = False
    conflict_policy: str = ConflictPolicy.SERVER_WINS.value
    entity_types: list[str] = field(default_factory=list)
    max_pull_pages: int | None = None
    state_dir: str = ".record_sync"
    profile: str = "default"
    timeout: float = 60.0


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If URL format is invalid, credentials are empty, or
            the conflict policy is unknown.
    """
    # Normalize URL: strip whitespace
    config.remote_url = config.remote_url.strip()

    if not config.remote_url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid remote URL '{config.remote_url}': must start with http:// or https://"
        )

    parsed = urlparse(config.remote_url)
    if not parsed.hostname:
        raise ValueError(
            f"Invalid remote URL '{config.remote_url}': URL must include a hostname"
        )

    config.remote_url = config.remote_url.removesuffix("/")

    if not config.username.strip():
        raise ValueError(
            "Username cannot be empty. Set RECORD_SYNC_USERNAME environment variable."
        )

    if not config.password.strip():
        raise ValueError(
            "Password cannot be empty. Set RECORD_SYNC_PASSWORD environment variable."
        )

    valid_policies = sorted(p.value for p in ConflictPolicy)
    if config.conflict_policy not in valid_policies:
        raise ValueError(
            f"Invalid conflict policy '{config.conflict_policy}': must be one of {valid_policies}"
        )

    if config.max_pull_pages is not None and config.max_pull_pages < 1:
        raise ValueError(
            f"Invalid max_pull_pages {config.max_pull_pages}: must be at least 1"
        )

    if config.insecure:
        logger.warning(
            "WARNING: SSL verification disabled (insecure=True). Use only for development."
        )


def load_config(
    url: str | None = None,
    username: str | None = None,
    password: str | None = None,
    insecure: bool = False,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        url: Override remote URL.
        username: Override username.
        password: Override password.
        insecure: Skip SSL verification (CLI flag).
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Flat dict of values from the YAML config file
            (``remote`` and ``sync`` sections merged).

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If required config (URL, username, password) is missing
            after checking all sources, or a value is invalid.
    """
    fb = yaml_fallbacks or {}

    # --- String fields: CLI > env > YAML > error ---

    remote_url = url or os.getenv("RECORD_SYNC_URL") or fb.get("url")
    if not remote_url:
        raise ValueError(
            "Remote URL not found. Set RECORD_SYNC_URL environment variable, "
            "pass --url CLI argument, or add 'url' to config.yml."
        )

    final_username = (
        username or os.getenv("RECORD_SYNC_USERNAME") or fb.get("username")
    )
    if not final_username:
        raise ValueError(
            "Username not found. Set RECORD_SYNC_USERNAME environment variable, "
            "pass --username CLI argument, or add 'username' to config.yml."
        )

    final_password = (
        password or os.getenv("RECORD_SYNC_PASSWORD") or fb.get("password")
    )
    if not final_password:
        raise ValueError(
            "Password not found. Set RECORD_SYNC_PASSWORD environment variable, "
            "pass --password CLI argument, or add 'password' to config.yml."
        )

    zone = os.getenv("RECORD_SYNC_ZONE") or fb.get("zone") or "default"
    policy = (
        os.getenv("RECORD_SYNC_CONFLICT_POLICY")
        or fb.get("conflict_policy")
        or ConflictPolicy.SERVER_WINS.value
    )
    state_dir = (
        os.getenv("RECORD_SYNC_STATE_DIR")
        or fb.get("state_dir")
        or ".record_sync"
    )
    profile = (
        os.getenv("RECORD_SYNC_PROFILE") or fb.get("profile") or "default"
    )

    # --- Boolean fields: CLI > env > YAML > default ---

    def get_bool_env(key: str) -> bool | None:
        """Return True/False from env var, or None if unset."""
        val = os.getenv(key)
        if val is None:
            return None
        return val.lower() in ("true", "1", "yes", "on")

    if insecure:
        final_insecure = True
    else:
        env_insecure = get_bool_env("RECORD_SYNC_INSECURE")
        if env_insecure is not None:
            final_insecure = env_insecure
        else:
            final_insecure = bool(fb.get("insecure", False))

    if debug:
        final_debug = True
    else:
        env_debug = get_bool_env("RECORD_SYNC_DEBUG")
        if env_debug is not None:
            final_debug = env_debug
        else:
            final_debug = bool(fb.get("debug", False))

    # --- Numeric fields: env > YAML > default ---

    max_pages_raw = os.getenv("RECORD_SYNC_MAX_PULL_PAGES")
    if max_pages_raw is not None:
        try:
            final_max_pages: int | None = int(max_pages_raw)
        except ValueError:
            raise ValueError(
                f"Invalid RECORD_SYNC_MAX_PULL_PAGES '{max_pages_raw}': must be a positive number"
            ) from None
    elif fb.get("max_pull_pages") is not None:
        final_max_pages = int(fb["max_pull_pages"])
    else:
        final_max_pages = None

    config = Config(
        remote_url=remote_url,
        username=final_username.strip(),
        password=final_password.strip(),
        zone=zone.strip(),
        insecure=final_insecure,
        debug=final_debug,
        conflict_policy=policy.strip(),
        entity_types=list(fb.get("entity_types") or []),
        max_pull_pages=final_max_pages,
        state_dir=state_dir,
        profile=profile.strip(),
        timeout=float(fb.get("timeout", 60.0)),
    )

    validate_config(config)

    return config
