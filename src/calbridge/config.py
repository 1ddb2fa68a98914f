"""Service configuration loading and validation.

Configuration comes from an optional ``calbridge.toml`` file plus environment
variables.  Environment variables always win over the file so deployments can
inject secrets without touching it.

Example ``calbridge.toml``::

    [oauth]
    client_id = "${GOOGLE_OAUTH_CLIENT_ID}"
    client_secret = "${GOOGLE_OAUTH_CLIENT_SECRET}"
    redirect_uri = "https://cal.example.com/api/oauth/callback"

    [signing]
    secret = "${CALBRIDGE_SIGNING_SECRET}"

    [lifecycle]
    skew_buffer_seconds = 300

    [handshake]
    session_ttl_minutes = 30

    [logging]
    level = "INFO"
    format = "json"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from calbridge.db import db_params_from_env

# Matches ${VAR_NAME} references (letters, digits and underscores).
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEFAULT_CONFIG_FILENAME = "calbridge.toml"
ENV_CONFIG_PATH = "CALBRIDGE_CONFIG"

DEFAULT_SCOPES: tuple[str, ...] = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
)
_DEFAULT_REDIRECT_URI = "http://localhost:3000/api/oauth/callback"
_DEFAULT_PUBLIC_BASE_URL = "http://localhost:3000"


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class OAuthConfig:
    """OAuth client settings from the [oauth] section."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = _DEFAULT_REDIRECT_URI
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    timeout_s: float = 15.0

    def __repr__(self) -> str:
        return (
            f"OAuthConfig(client_id={self.client_id!r}, client_secret=<REDACTED>, "
            f"redirect_uri={self.redirect_uri!r})"
        )


@dataclass
class SigningConfig:
    """HMAC secret and lifetimes for self-issued tokens and state blobs."""

    secret: str = ""
    access_token_ttl_s: int = 7 * 24 * 3600

    def __repr__(self) -> str:
        return f"SigningConfig(secret=<REDACTED>, access_token_ttl_s={self.access_token_ttl_s})"


@dataclass
class LifecycleConfig:
    """Credential refresh policy from the [lifecycle] section."""

    skew_buffer_seconds: int = 300
    refresh_timeout_s: float = 15.0
    transient_retries: int = 1
    retry_backoff_seconds: float = 0.5


@dataclass
class HandshakeConfig:
    """Pending-authorization lifetimes from the [handshake] section."""

    session_ttl_minutes: int = 30
    sweep_interval_s: float = 300.0


@dataclass
class AvailabilityConfig:
    """Defaults for availability queries from the [availability] section."""

    granularity_minutes: int = 15
    default_duration_minutes: int = 60
    default_start: str = "09:00"
    default_end: str = "17:00"
    default_timezone: str = "UTC"


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    file: Path | None = None


@dataclass
class DatabaseConfig:
    """PostgreSQL connection parameters."""

    name: str = "calbridge"
    host: str = "localhost"
    port: int = 5432
    user: str = "calbridge"
    password: str = "calbridge"
    ssl: str | None = None

    def __repr__(self) -> str:
        return (
            f"DatabaseConfig(name={self.name!r}, host={self.host!r}, port={self.port!r}, "
            f"user={self.user!r}, password=<REDACTED>)"
        )


@dataclass
class AppConfig:
    """Fully parsed service configuration."""

    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    signing: SigningConfig = field(default_factory=SigningConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    handshake: HandshakeConfig = field(default_factory=HandshakeConfig)
    availability: AvailabilityConfig = field(default_factory=AvailabilityConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    public_base_url: str = _DEFAULT_PUBLIC_BASE_URL


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _positive_int(section: dict[str, Any], key: str, default: int, *, where: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{where}.{key} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{where}.{key} must be positive, got {value}")
    return value


def _parse_oauth(section: dict[str, Any]) -> OAuthConfig:
    scopes_raw = section.get("scopes", list(DEFAULT_SCOPES))
    if isinstance(scopes_raw, str):
        scopes_raw = scopes_raw.split()
    if not isinstance(scopes_raw, list) or not all(isinstance(s, str) for s in scopes_raw):
        raise ConfigError("oauth.scopes must be a list of strings")
    return OAuthConfig(
        client_id=os.environ.get(
            "GOOGLE_OAUTH_CLIENT_ID", str(section.get("client_id", ""))
        ).strip(),
        client_secret=os.environ.get(
            "GOOGLE_OAUTH_CLIENT_SECRET", str(section.get("client_secret", ""))
        ).strip(),
        redirect_uri=os.environ.get(
            "GOOGLE_OAUTH_REDIRECT_URI", str(section.get("redirect_uri", _DEFAULT_REDIRECT_URI))
        ).strip(),
        scopes=tuple(s.strip() for s in scopes_raw if s.strip()),
        timeout_s=float(section.get("timeout_s", 15.0)),
    )


def _parse_database(section: dict[str, Any]) -> DatabaseConfig:
    params = db_params_from_env()
    return DatabaseConfig(
        name=str(params.get("database") or section.get("name", "calbridge")),
        host=str(params["host"]),
        port=int(params["port"]),  # type: ignore[arg-type]
        user=str(params["user"]),
        password=str(params["password"]),
        ssl=params["ssl"] if isinstance(params["ssl"], str) else None,
    )


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate the service configuration.

    Parameters
    ----------
    path:
        Explicit path to a TOML file.  When ``None``, ``$CALBRIDGE_CONFIG`` is
        consulted, then ``./calbridge.toml``.  A missing default file is not an
        error: every setting also has an environment variable or a default.

    Raises
    ------
    ConfigError
        If the file is unreadable, contains invalid TOML, references unset
        environment variables, or required settings are missing.
    """
    explicit = path is not None or ENV_CONFIG_PATH in os.environ
    toml_path = Path(path or os.environ.get(ENV_CONFIG_PATH, DEFAULT_CONFIG_FILENAME))

    data: dict[str, Any] = {}
    if toml_path.exists():
        try:
            data = tomllib.loads(toml_path.read_bytes().decode())
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc
        data = resolve_env_vars(data)
    elif explicit:
        raise ConfigError(f"Config file not found: {toml_path}")

    oauth = _parse_oauth(_section(data, "oauth"))

    signing_section = _section(data, "signing")
    signing = SigningConfig(
        secret=os.environ.get("CALBRIDGE_SIGNING_SECRET", str(signing_section.get("secret", ""))),
        access_token_ttl_s=_positive_int(
            signing_section, "access_token_ttl_s", 7 * 24 * 3600, where="signing"
        ),
    )

    lifecycle_section = _section(data, "lifecycle")
    retries = int(lifecycle_section.get("transient_retries", 1))
    if retries < 0:
        raise ConfigError("lifecycle.transient_retries must be >= 0")
    lifecycle = LifecycleConfig(
        skew_buffer_seconds=_positive_int(
            lifecycle_section, "skew_buffer_seconds", 300, where="lifecycle"
        ),
        refresh_timeout_s=float(lifecycle_section.get("refresh_timeout_s", 15.0)),
        transient_retries=retries,
        retry_backoff_seconds=float(lifecycle_section.get("retry_backoff_seconds", 0.5)),
    )

    handshake_section = _section(data, "handshake")
    handshake = HandshakeConfig(
        session_ttl_minutes=_positive_int(
            handshake_section, "session_ttl_minutes", 30, where="handshake"
        ),
        sweep_interval_s=float(handshake_section.get("sweep_interval_s", 300.0)),
    )

    availability_section = _section(data, "availability")
    availability = AvailabilityConfig(
        granularity_minutes=_positive_int(
            availability_section, "granularity_minutes", 15, where="availability"
        ),
        default_duration_minutes=_positive_int(
            availability_section, "default_duration_minutes", 60, where="availability"
        ),
        default_start=str(availability_section.get("default_start", "09:00")),
        default_end=str(availability_section.get("default_end", "17:00")),
        default_timezone=str(availability_section.get("default_timezone", "UTC")),
    )

    logging_section = _section(data, "logging")
    log_level = os.environ.get(
        "CALBRIDGE_LOG_LEVEL", str(logging_section.get("level", "INFO"))
    ).upper()
    log_format = os.environ.get(
        "CALBRIDGE_LOG_FORMAT", str(logging_section.get("format", "text"))
    ).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"logging.format must be 'text' or 'json', got {log_format!r}")
    log_file = os.environ.get("CALBRIDGE_LOG_FILE", logging_section.get("file"))

    public_base_url = os.environ.get(
        "CALBRIDGE_PUBLIC_BASE_URL", str(data.get("public_base_url", _DEFAULT_PUBLIC_BASE_URL))
    ).rstrip("/")

    return AppConfig(
        oauth=oauth,
        signing=signing,
        lifecycle=lifecycle,
        handshake=handshake,
        availability=availability,
        logging=LoggingConfig(
            level=log_level, format=log_format, file=Path(log_file) if log_file else None
        ),
        database=_parse_database(_section(data, "database")),
        public_base_url=public_base_url,
    )


def validate_for_serving(config: AppConfig) -> None:
    """Fail fast when settings required to run the HTTP service are absent."""
    missing = [
        name
        for name, value in (
            ("oauth.client_id (GOOGLE_OAUTH_CLIENT_ID)", config.oauth.client_id),
            ("oauth.client_secret (GOOGLE_OAUTH_CLIENT_SECRET)", config.oauth.client_secret),
            ("signing.secret (CALBRIDGE_SIGNING_SECRET)", config.signing.secret),
        )
        if not value
    ]
    if missing:
        raise ConfigError(f"Missing required setting(s): {', '.join(missing)}")
    if len(config.signing.secret) < 32:
        raise ConfigError("signing.secret must be at least 32 characters long")
