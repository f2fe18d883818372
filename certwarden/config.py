"""
Configuration utilities and settings management.

Handles environment variables, JSON configuration files with default-file
bootstrapping, and the explicit configuration threaded into the core.
"""

import json
import logging
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from models.config import LETSENCRYPT_STAGING_URL, AppConfig, DomainsConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".certwarden"


class ConfigError(Exception):
    """Configuration file missing, unreadable or invalid."""

    def __init__(self, message: str, path: Path | None = None, suggestion: str = None):
        self.message = message
        self.path = path
        self.suggestion = suggestion
        super().__init__(message)


class ConfigBootstrapped(ConfigError):
    """A default configuration file was written and must be edited first."""

    pass


class Settings(BaseSettings):
    """Process settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True)

    config_dir: Path = Field(default=DEFAULT_CONFIG_DIR, alias="CERTWARDEN_CONFIG_DIR")
    domains_file: Path | None = Field(
        default=None, alias="CERTWARDEN_DOMAINS_FILE", description="Defaults to <config_dir>/domains.json"
    )
    config_file: Path | None = Field(
        default=None, alias="CERTWARDEN_CONFIG_FILE", description="Defaults to <config_dir>/config.json"
    )

    # Renewal
    renewal_window_days: int = Field(
        default=60,
        alias="CERTWARDEN_RENEWAL_WINDOW_DAYS",
        description="Renew when this many days or fewer remain before expiry",
    )
    http_challenge_port: int = Field(
        default=5002, alias="CERTWARDEN_HTTP_CHALLENGE_PORT", description="Port the HTTP-01 responder binds"
    )

    # Scheduling
    check_interval_hours: float = Field(
        default=24, alias="CERTWARDEN_CHECK_INTERVAL_HOURS", description="Hours between periodic passes"
    )
    settle_delay_seconds: float = Field(
        default=0.1, alias="CERTWARDEN_SETTLE_DELAY_SECONDS", description="Debounce after a domains file change"
    )

    # Remote storage
    service_name: str = Field(
        default="certwarden", alias="CERTWARDEN_SERVICE_NAME", description="Key prefix inside the bucket"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def resolved_domains_file(self) -> Path:
        return self.domains_file or self.config_dir / "domains.json"

    @property
    def resolved_config_file(self) -> Path:
        return self.config_file or self.config_dir / "config.json"


class ReconcilerConfig(BaseModel):
    """Everything a reconciliation pass needs, passed explicitly to constructors."""

    contact_email: str
    ca_authority: str
    local_cert_dir: Path
    config_dir: Path
    renewal_window_days: int = 60
    http_challenge_port: int = 5002
    service_name: str = "certwarden"


@lru_cache
def get_settings() -> Settings:
    """Get the process settings instance."""
    return Settings()


def default_domains_config() -> DomainsConfig:
    return DomainsConfig(domains=[["example.com", "www.example.com"]])


def default_app_config() -> AppConfig:
    return AppConfig(email="admin@example.com", caAuthority=LETSENCRYPT_STAGING_URL)


def _bootstrap(path: Path, payload: dict) -> None:
    """Write a default configuration file."""
    logger.info(f"{path} does not exist. Creating...")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2))
    except OSError as e:
        raise ConfigError(f"Error creating default config file {path}: {e}", path=path)
    logger.info(f"Default config written to {path}")


def ensure_config_files(domains_file: Path, config_file: Path) -> None:
    """
    Create any missing configuration file with defaults.

    Raises:
        ConfigBootstrapped: if a file was created and must be edited first
    """
    created = []
    if not domains_file.exists():
        _bootstrap(domains_file, default_domains_config().model_dump())
        created.append(domains_file)
    if not config_file.exists():
        _bootstrap(config_file, default_app_config().model_dump(by_alias=True, exclude_none=True))
        created.append(config_file)

    if created:
        paths = ", ".join(str(path) for path in created)
        raise ConfigBootstrapped(
            f"Please edit {paths} and restart the application.",
            path=created[0],
            suggestion="Review the generated defaults before starting the daemon",
        )


def _read_json(path: Path) -> dict:
    try:
        return json.loads(path.read_text())
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}", path=path)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Error reading {path}: {e}", path=path, suggestion="Check the file is valid JSON")


def load_app_config(path: Path) -> AppConfig:
    """Load and validate the application config file."""
    try:
        return AppConfig.model_validate(_read_json(path))
    except ValidationError as e:
        raise ConfigError(f"Invalid application config {path}: {e}", path=path)


def load_domains_config(path: Path) -> DomainsConfig:
    """Load and validate the domains file."""
    try:
        return DomainsConfig.model_validate(_read_json(path))
    except ValidationError as e:
        raise ConfigError(f"Invalid domains config {path}: {e}", path=path)


def build_reconciler_config(settings: Settings, app_config: AppConfig) -> ReconcilerConfig:
    """Combine environment settings and the application file."""
    local_cert_dir = Path(app_config.local_cert_dir) if app_config.local_cert_dir else settings.config_dir / "certs"
    return ReconcilerConfig(
        contact_email=app_config.email,
        ca_authority=app_config.ca_authority,
        local_cert_dir=local_cert_dir.expanduser(),
        config_dir=settings.config_dir.expanduser(),
        renewal_window_days=settings.renewal_window_days,
        http_challenge_port=settings.http_challenge_port,
        service_name=settings.service_name,
    )


def ensure_directories(config: ReconcilerConfig) -> None:
    """Ensure the configuration and local certificate directories exist."""
    for dir_path in (config.config_dir, config.local_cert_dir):
        Path(dir_path).mkdir(parents=True, exist_ok=True)
