"""Application configuration management.

Loads configuration from config.yaml files and environment variables.
Environment variables take precedence over config file settings.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from samlsp.core.saml.protocol import NAMEID_FORMAT_EMAIL

# Default config locations
DEFAULT_CONFIG_DIR = Path.home() / ".samlsp"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

# Environment variable prefix
ENV_PREFIX = "SAMLSP_"


class ConfigurationError(Exception):
    """Raised when the configuration is unusable. Fatal at startup."""


@dataclass
class SAMLSettings:
    """Service Provider and trusted IdP settings."""

    entity_id: str = ""
    acs_url: str = ""
    slo_url: str = ""
    idp_entity_id: str = ""
    idp_sso_url: str = ""
    idp_slo_url: str = ""
    idp_x509_cert: str | None = None
    name_id_format: str = NAMEID_FORMAT_EMAIL
    want_assertions_signed: bool = True
    # Accept signatures that cannot be checked because no IdP certificate is
    # configured. Off unless the deployment relies on transport security alone.
    allow_unverified_signatures: bool = False
    clock_skew_seconds: int = 0
    # Oldest Response accepted; plus twice the skew it must fit in the replay window
    response_max_age_seconds: int = 300
    session_ttl_minutes: int = 30
    replay_window_minutes: int = 5
    sweep_interval_seconds: int = 60

    REQUIRED_FIELDS = ("entity_id", "acs_url", "idp_entity_id", "idp_sso_url")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SAMLSettings:
        """Create SAMLSettings from a dictionary."""
        return cls(
            entity_id=data.get("entity_id", ""),
            acs_url=data.get("acs_url", ""),
            slo_url=data.get("slo_url", ""),
            idp_entity_id=data.get("idp_entity_id", ""),
            idp_sso_url=data.get("idp_sso_url", ""),
            idp_slo_url=data.get("idp_slo_url", ""),
            idp_x509_cert=data.get("idp_x509_cert") or None,
            name_id_format=data.get("name_id_format", NAMEID_FORMAT_EMAIL),
            want_assertions_signed=data.get("want_assertions_signed", True),
            allow_unverified_signatures=data.get("allow_unverified_signatures", False),
            clock_skew_seconds=data.get("clock_skew_seconds", 0),
            response_max_age_seconds=data.get("response_max_age_seconds", 300),
            session_ttl_minutes=data.get("session_ttl_minutes", 30),
            replay_window_minutes=data.get("replay_window_minutes", 5),
            sweep_interval_seconds=data.get("sweep_interval_seconds", 60),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_id": self.entity_id,
            "acs_url": self.acs_url,
            "slo_url": self.slo_url,
            "idp_entity_id": self.idp_entity_id,
            "idp_sso_url": self.idp_sso_url,
            "idp_slo_url": self.idp_slo_url,
            "idp_x509_cert": self.idp_x509_cert,
            "name_id_format": self.name_id_format,
            "want_assertions_signed": self.want_assertions_signed,
            "allow_unverified_signatures": self.allow_unverified_signatures,
            "clock_skew_seconds": self.clock_skew_seconds,
            "response_max_age_seconds": self.response_max_age_seconds,
            "session_ttl_minutes": self.session_ttl_minutes,
            "replay_window_minutes": self.replay_window_minutes,
            "sweep_interval_seconds": self.sweep_interval_seconds,
        }

    def validate(self) -> None:
        """Check that the settings are usable.

        Raises:
            ConfigurationError: Listing every missing or invalid setting.
        """
        problems = [f"{name} is required" for name in self.REQUIRED_FIELDS if not getattr(self, name)]

        if self.session_ttl_minutes <= 0:
            problems.append("session_ttl_minutes must be positive")
        if self.replay_window_minutes <= 0:
            problems.append("replay_window_minutes must be positive")
        if self.sweep_interval_seconds <= 0:
            problems.append("sweep_interval_seconds must be positive")
        if self.clock_skew_seconds < 0:
            problems.append("clock_skew_seconds must not be negative")
        if self.response_max_age_seconds <= 0:
            problems.append("response_max_age_seconds must be positive")
        elif (
            self.replay_window_minutes > 0
            and self.response_max_age_seconds + 2 * max(self.clock_skew_seconds, 0)
            > self.replay_window_minutes * 60
        ):
            problems.append(
                "response_max_age_seconds plus twice clock_skew_seconds must not exceed "
                "replay_window_minutes"
            )

        if problems:
            raise ConfigurationError("Invalid SAML configuration: " + "; ".join(problems))


@dataclass
class ServerSettings:
    """Server configuration settings."""

    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServerSettings:
        """Create ServerSettings from a dictionary."""
        return cls(
            host=data.get("host", "127.0.0.1"),
            port=data.get("port", 8080),
            debug=data.get("debug", False),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "host": self.host,
            "port": self.port,
            "debug": self.debug,
        }


@dataclass
class LoggingSettings:
    """Protocol logging settings."""

    level: str = "INFO"
    trace_enabled: bool = False
    log_file: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoggingSettings:
        """Create LoggingSettings from a dictionary."""
        return cls(
            level=data.get("level", "INFO"),
            trace_enabled=data.get("trace_enabled", False),
            log_file=data.get("log_file"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "level": self.level,
            "trace_enabled": self.trace_enabled,
            "log_file": self.log_file,
        }


@dataclass
class AppConfig:
    """Main application configuration."""

    saml: SAMLSettings = field(default_factory=SAMLSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    config_path: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], config_path: Path | None = None) -> AppConfig:
        """Create AppConfig from a dictionary."""
        return cls(
            saml=SAMLSettings.from_dict(data.get("saml") or {}),
            server=ServerSettings.from_dict(data.get("server") or {}),
            logging=LoggingSettings.from_dict(data.get("logging") or {}),
            config_path=config_path,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "saml": self.saml.to_dict(),
            "server": self.server.to_dict(),
            "logging": self.logging.to_dict(),
        }

    def save(self, path: Path | None = None) -> None:
        """Save configuration to a YAML file.

        Args:
            path: Path to save to. Uses config_path or default if not specified.
        """
        save_path = path or self.config_path or DEFAULT_CONFIG_FILE
        save_path.parent.mkdir(parents=True, exist_ok=True)

        with open(save_path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False)


def _get_env_bool(key: str, default: bool) -> bool:
    """Get a boolean from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _get_env_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


# Environment overrides for string SAML settings
_SAML_ENV_STRINGS = {
    "ENTITY_ID": "entity_id",
    "ACS_URL": "acs_url",
    "SLO_URL": "slo_url",
    "IDP_ENTITY_ID": "idp_entity_id",
    "IDP_SSO_URL": "idp_sso_url",
    "IDP_SLO_URL": "idp_slo_url",
    "IDP_X509_CERT": "idp_x509_cert",
    "NAME_ID_FORMAT": "name_id_format",
}

_SAML_ENV_INTS = {
    "CLOCK_SKEW_SECONDS": "clock_skew_seconds",
    "RESPONSE_MAX_AGE_SECONDS": "response_max_age_seconds",
    "SESSION_TTL_MINUTES": "session_ttl_minutes",
    "REPLAY_WINDOW_MINUTES": "replay_window_minutes",
    "SWEEP_INTERVAL_SECONDS": "sweep_interval_seconds",
}

_SAML_ENV_BOOLS = {
    "WANT_ASSERTIONS_SIGNED": "want_assertions_signed",
    "ALLOW_UNVERIFIED_SIGNATURES": "allow_unverified_signatures",
}


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load application configuration.

    Configuration is loaded in this order (later values override earlier):
    1. Default values
    2. config.yaml file (if exists)
    3. Environment variables

    Args:
        config_path: Path to config file. Uses default if not specified.

    Returns:
        AppConfig with merged settings.

    Raises:
        ConfigurationError: If the config file exists but cannot be parsed.
    """
    config = AppConfig()

    file_path = config_path or DEFAULT_CONFIG_FILE
    if file_path.exists():
        try:
            with open(file_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid config file {file_path}: {e}") from e
        config = AppConfig.from_dict(data, config_path=file_path)

    saml = config.saml
    for suffix, attr in _SAML_ENV_STRINGS.items():
        if os.environ.get(f"{ENV_PREFIX}{suffix}"):
            setattr(saml, attr, os.environ[f"{ENV_PREFIX}{suffix}"])
    for suffix, attr in _SAML_ENV_INTS.items():
        setattr(saml, attr, _get_env_int(f"{ENV_PREFIX}{suffix}", getattr(saml, attr)))
    for suffix, attr in _SAML_ENV_BOOLS.items():
        setattr(saml, attr, _get_env_bool(f"{ENV_PREFIX}{suffix}", getattr(saml, attr)))

    # IdP certificate may also be given as a file
    cert_file = os.environ.get(f"{ENV_PREFIX}IDP_X509_CERT_FILE")
    if cert_file:
        saml.idp_x509_cert = Path(cert_file).expanduser().read_text()

    # Server settings
    if os.environ.get(f"{ENV_PREFIX}HOST"):
        config.server.host = os.environ[f"{ENV_PREFIX}HOST"]
    config.server.port = _get_env_int(f"{ENV_PREFIX}PORT", config.server.port)
    config.server.debug = _get_env_bool(f"{ENV_PREFIX}DEBUG", config.server.debug)

    # Logging settings
    if os.environ.get(f"{ENV_PREFIX}LOG_LEVEL"):
        config.logging.level = os.environ[f"{ENV_PREFIX}LOG_LEVEL"]
    config.logging.trace_enabled = _get_env_bool(
        f"{ENV_PREFIX}LOG_TRACE", config.logging.trace_enabled
    )
    if os.environ.get(f"{ENV_PREFIX}LOG_FILE"):
        config.logging.log_file = os.environ[f"{ENV_PREFIX}LOG_FILE"]

    return config


def get_default_config_yaml() -> str:
    """Get the default config.yaml content as a string.

    Useful for generating example configuration files.
    """
    return """\
# samlsp Configuration File
# Environment variables override these settings (prefix: SAMLSP_)

saml:
  # This Service Provider's entity ID
  entity_id: "https://sp.example.com"

  # Assertion Consumer Service URL (where the IdP posts responses)
  acs_url: "https://sp.example.com/saml/acs"

  # This SP's Single Logout endpoint
  slo_url: "https://sp.example.com/saml/slo"

  # Trusted Identity Provider
  idp_entity_id: "https://idp.example.com"
  idp_sso_url: "https://idp.example.com/sso"
  idp_slo_url: "https://idp.example.com/slo"

  # IdP signing certificate (PEM, or bare base64 body from IdP metadata)
  # idp_x509_cert: |
  #   -----BEGIN CERTIFICATE-----
  #   ...
  #   -----END CERTIFICATE-----

  name_id_format: "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"

  # Reject assertions not covered by a verified signature, either their own
  # or the enclosing Response's
  want_assertions_signed: true

  # Accept signed messages without checking the signature when no IdP
  # certificate is configured (not recommended)
  allow_unverified_signatures: false

  clock_skew_seconds: 0

  # Oldest Response IssueInstant accepted. response_max_age_seconds plus twice
  # clock_skew_seconds must not exceed replay_window_minutes.
  response_max_age_seconds: 300
  session_ttl_minutes: 30
  replay_window_minutes: 5
  sweep_interval_seconds: 60

server:
  host: "127.0.0.1"
  port: 8080
  debug: false

logging:
  # ERROR, INFO, DEBUG or TRACE
  level: "INFO"

  # Log raw SAML messages at TRACE level (contains personal data)
  trace_enabled: false

  # log_file: ~/.samlsp/protocol.log
"""
