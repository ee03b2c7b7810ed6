"""Configuration utilities for egress capability probing runs.

This module reads environment variables (optionally from an `.env` file) and
produces the configuration objects consumed across the project.

See `.env.example` for supported keys: `LOG_DIR`, `LOG_LEVEL`, `APP_NAME`,
`CACHE_DATABASE_URL` (or `CACHE_DB_HOST`/`CACHE_DB_USER`/...), `CACHE_MAX_AGE`, the `FLEET_*`
keys describing the fleet control API and the `PROBE_*` probing knobs.

Usage example:

    from egress_probe.config import load_config, load_probe_settings

    config = load_config()
    settings = load_probe_settings()
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, MutableMapping, Optional, Tuple
from urllib.parse import quote_plus

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_ENV_FILE = REPO_ROOT / ".env"

DEFAULT_TARGETS: Tuple[str, ...] = ("gpt", "gemini")
RETRY_BACKOFFS = ("fixed", "linear")
FLEET_PROTOCOLS = ("http", "https")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _load_env_file(path: Path) -> Dict[str, str]:
    """Parse a dotenv-style file into a dictionary."""
    if not path.exists():
        return {}

    data: Dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        data[key.strip()] = value.strip().strip("\"'")
    return data


def _merge_envs(dotenv_values: Mapping[str, str], env: MutableMapping[str, str]) -> Dict[str, str]:
    """Merge dotenv values with the current environment, preferring os.environ."""
    merged = dict(dotenv_values)
    merged.update(env)  # os.environ wins
    return merged


def load_environment(env_file: Optional[Path] = None) -> Dict[str, str]:
    """Return the dotenv file merged with ``os.environ``."""
    target_file = env_file or DEFAULT_ENV_FILE
    return _merge_envs(_load_env_file(target_file), os.environ)


def _build_cache_database_url(values: Mapping[str, str]) -> Optional[str]:
    """Construct a PostgreSQL DSN from discrete CACHE_DB_* keys."""
    host = values.get("CACHE_DB_HOST")
    user = values.get("CACHE_DB_USER")
    password = values.get("CACHE_DB_PASSWORD")
    database = values.get("CACHE_DB_NAME")
    port = values.get("CACHE_DB_PORT") or "5432"

    if not all([host, user, password, database]):
        return None

    return (
        f"postgresql://{quote_plus(user)}:{quote_plus(password)}"
        f"@{host.strip()}:{port}/{database.strip()}"
    )


def _parse_bool(raw: Optional[str], default: bool, key: str) -> bool:
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{key} must be a boolean flag, got {raw!r}")


def _parse_number(raw: Optional[str], default, key: str, cast=float):
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{key} must be numeric, got {raw!r}") from exc


def _parse_list(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _parse_tags(raw: Optional[str]) -> Dict[str, str]:
    """Parse ``name=tag`` pairs, e.g. ``gpt=[GPT],gemini=[GM]``."""
    tags: Dict[str, str] = {}
    for item in _parse_list(raw):
        if "=" not in item:
            raise ValueError(f"PROBE_TAGS entries must look like name=tag, got {item!r}")
        name, tag = item.split("=", 1)
        if name.strip() and tag.strip():
            tags[name.strip()] = tag.strip()
    return tags


@dataclass(frozen=True)
class AppConfig:
    """Application-level configuration values."""

    log_directory: Path
    log_level: str
    app_name: str = "egress-probe"
    cache_database_url: Optional[str] = None
    cache_max_age_seconds: Optional[float] = None


@dataclass(frozen=True)
class FleetSettings:
    """Where the fleet control API lives and how long endpoints are leased."""

    host: str = "127.0.0.1"
    port: int = 9876
    protocol: str = "http"
    authorization: str = ""
    start_delay_seconds: float = 3.0
    per_node_allowance_seconds: float = 10.0
    start_timeout_seconds: float = 3.0
    stop_timeout_seconds: float = 2.0

    @property
    def api_base(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"

    def endpoint_url(self, port: int) -> str:
        """Proxy URL for a leased per-node port."""
        return f"http://{self.host}:{port}"


@dataclass(frozen=True)
class ProbeSettings:
    """Run-wide probing knobs. Validate once with ``validate`` before use."""

    fleet: FleetSettings = field(default_factory=FleetSettings)
    request_timeout_seconds: float = 5.0
    retries: int = 1
    retry_delay_seconds: float = 1.0
    retry_backoff: str = "fixed"
    concurrency: int = 10
    max_redirects: int = 5
    cache_enabled: bool = False
    trust_cached_failures: bool = True
    targets: Tuple[str, ...] = DEFAULT_TARGETS
    tag_overrides: Mapping[str, str] = field(default_factory=dict)
    api_key: Optional[str] = None
    targets_file: Optional[Path] = None

    def validate(self) -> "ProbeSettings":
        """Raise ``ValueError`` for inconsistent values; return self for chaining."""
        if self.request_timeout_seconds <= 0:
            raise ValueError("request timeout must be positive")
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        if self.retry_delay_seconds < 0:
            raise ValueError("retry delay must be >= 0")
        if self.retry_backoff not in RETRY_BACKOFFS:
            raise ValueError(f"retry backoff must be one of {RETRY_BACKOFFS}")
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.max_redirects < 0:
            raise ValueError("max redirects must be >= 0")
        if not self.targets:
            raise ValueError("at least one probe target must be selected")
        fleet = self.fleet
        if fleet.protocol not in FLEET_PROTOCOLS:
            raise ValueError(f"fleet protocol must be one of {FLEET_PROTOCOLS}")
        if not 0 < fleet.port < 65536:
            raise ValueError("fleet port must be within 1..65535")
        if fleet.start_delay_seconds < 0 or fleet.per_node_allowance_seconds <= 0:
            raise ValueError("fleet start delay must be >= 0 and node allowance > 0")
        return self


def load_config(env_file: Optional[Path] = None) -> AppConfig:
    """Load application configuration using environment defaults."""
    merged = load_environment(env_file)

    log_directory = Path(merged.get("LOG_DIR", REPO_ROOT / "logs"))
    if not log_directory.is_absolute():
        log_directory = REPO_ROOT / log_directory

    log_level = merged.get("LOG_LEVEL", "INFO").upper()

    cache_max_age = _parse_number(merged.get("CACHE_MAX_AGE"), None, "CACHE_MAX_AGE")
    if cache_max_age is not None and cache_max_age <= 0:
        raise ValueError("CACHE_MAX_AGE must be positive when set")

    return AppConfig(
        log_directory=log_directory,
        log_level=log_level,
        app_name=merged.get("APP_NAME", "egress-probe"),
        cache_database_url=merged.get("CACHE_DATABASE_URL") or _build_cache_database_url(merged),
        cache_max_age_seconds=cache_max_age,
    )


def load_probe_settings(env_file: Optional[Path] = None) -> ProbeSettings:
    """Build validated ``ProbeSettings`` from the environment."""
    merged = load_environment(env_file)
    defaults = ProbeSettings()
    fleet_defaults = defaults.fleet

    fleet = FleetSettings(
        host=merged.get("FLEET_HOST", fleet_defaults.host),
        port=_parse_number(merged.get("FLEET_PORT"), fleet_defaults.port, "FLEET_PORT", int),
        protocol=merged.get("FLEET_PROTOCOL", fleet_defaults.protocol).lower(),
        authorization=merged.get("FLEET_AUTHORIZATION", fleet_defaults.authorization),
        start_delay_seconds=_parse_number(
            merged.get("FLEET_START_DELAY"), fleet_defaults.start_delay_seconds, "FLEET_START_DELAY"
        ),
        per_node_allowance_seconds=_parse_number(
            merged.get("FLEET_NODE_ALLOWANCE"),
            fleet_defaults.per_node_allowance_seconds,
            "FLEET_NODE_ALLOWANCE",
        ),
    )

    targets_file: Optional[Path] = None
    if merged.get("PROBE_TARGETS_FILE"):
        targets_file = Path(merged["PROBE_TARGETS_FILE"])
        if not targets_file.is_absolute():
            targets_file = REPO_ROOT / targets_file

    settings = ProbeSettings(
        fleet=fleet,
        request_timeout_seconds=_parse_number(
            merged.get("PROBE_TIMEOUT"), defaults.request_timeout_seconds, "PROBE_TIMEOUT"
        ),
        retries=_parse_number(merged.get("PROBE_RETRIES"), defaults.retries, "PROBE_RETRIES", int),
        retry_delay_seconds=_parse_number(
            merged.get("PROBE_RETRY_DELAY"), defaults.retry_delay_seconds, "PROBE_RETRY_DELAY"
        ),
        retry_backoff=merged.get("PROBE_RETRY_BACKOFF", defaults.retry_backoff).lower(),
        concurrency=_parse_number(
            merged.get("PROBE_CONCURRENCY"), defaults.concurrency, "PROBE_CONCURRENCY", int
        ),
        max_redirects=_parse_number(
            merged.get("PROBE_MAX_REDIRECTS"), defaults.max_redirects, "PROBE_MAX_REDIRECTS", int
        ),
        cache_enabled=_parse_bool(merged.get("PROBE_CACHE"), defaults.cache_enabled, "PROBE_CACHE"),
        trust_cached_failures=_parse_bool(
            merged.get("PROBE_TRUST_FAILED_CACHE"),
            defaults.trust_cached_failures,
            "PROBE_TRUST_FAILED_CACHE",
        ),
        targets=_parse_list(merged.get("PROBE_TARGETS")) or defaults.targets,
        tag_overrides=_parse_tags(merged.get("PROBE_TAGS")),
        api_key=merged.get("PROBE_API_KEY") or None,
        targets_file=targets_file,
    )
    return settings.validate()


__all__ = [
    "AppConfig",
    "FleetSettings",
    "ProbeSettings",
    "load_config",
    "load_environment",
    "load_probe_settings",
    "REPO_ROOT",
]
