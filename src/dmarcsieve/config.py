"""Configuration loading and validation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class ImapConfig:
    host: str = ""
    port: int = 993
    user: str = ""
    password: str = ""
    mailbox: str = "INBOX"
    timeout_seconds: float = 60.0

    def is_complete(self) -> bool:
        return bool(self.host and self.user and self.password)


@dataclass
class StorageConfig:
    sqlite_path: str = "data/dmarc.db"


@dataclass
class AIConfig:
    provider: str = "anthropic"
    model: str = "claude-3-5-sonnet-20241022"
    anthropic_api_key: str = ""
    ollama_base_url: str = "http://localhost:11434"
    ollama_api_key: str = ""
    max_tokens: int = 4096
    temperature: float = 0.3
    request_delay_seconds: float = 1.0
    timeout_seconds: float = 120.0

    @property
    def model_spec(self) -> str:
        return f"{self.provider}:{self.model}"

    def to_provider_dict(self) -> dict:
        """Return a dict suitable for passing to get_provider()."""
        return {
            "anthropic_api_key": self.anthropic_api_key,
            "ollama_base_url": self.ollama_base_url,
            "ollama_api_key": self.ollama_api_key,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "timeout": self.timeout_seconds,
        }


@dataclass
class PostalConfig:
    api_key: str = ""
    base_url: str = ""
    from_email: str = ""
    to_email: str = ""
    timeout_seconds: float = 30.0

    def missing_fields(self) -> list[str]:
        return [
            name for name in ("api_key", "base_url", "from_email", "to_email")
            if not getattr(self, name)
        ]


@dataclass
class SchedulerConfig:
    interval_minutes: int = 10
    run_on_start: bool = True
    # 0 disables the overdue check
    run_timeout_seconds: int = 0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


@dataclass
class Config:
    imap: ImapConfig = field(default_factory=ImapConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    postal: PostalConfig = field(default_factory=PostalConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _dict_to_config(data: dict) -> Config:
    """Convert a raw dict to a Config dataclass, handling nested structures."""
    from dacite import Config as DaciteConfig, from_dict

    return from_dict(data_class=Config, data=data, config=DaciteConfig(cast=[int, float]))


def _find_config_file() -> Path | None:
    """Search for config file in standard locations."""
    # 1. Environment variable
    env_path = os.environ.get("DMARCSIEVE_CONFIG")
    if env_path:
        p = Path(env_path)
        if p.exists():
            return p

    # 2. Current directory
    local = Path("config.yaml")
    if local.exists():
        return local

    # 3. XDG config dir
    xdg = Path.home() / ".config" / "dmarcsieve" / "config.yaml"
    if xdg.exists():
        return xdg

    return None


def _load_dotenv() -> None:
    """Load .env file from current directory if it exists."""
    env_path = Path(".env")
    if not env_path.exists():
        return
    for line in env_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        # Don't overwrite already-set env vars
        if key not in os.environ:
            os.environ[key] = value


# env var -> (section, attribute, type)
_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "IMAP_HOST": ("imap", "host", str),
    "IMAP_PORT": ("imap", "port", int),
    "IMAP_USER": ("imap", "user", str),
    "IMAP_PASSWORD": ("imap", "password", str),
    "DATABASE_PATH": ("storage", "sqlite_path", str),
    "AI_PROVIDER": ("ai", "provider", str),
    "AI_MODEL": ("ai", "model", str),
    "ANTHROPIC_API_KEY": ("ai", "anthropic_api_key", str),
    "OLLAMA_HOST": ("ai", "ollama_base_url", str),
    "OLLAMA_API_KEY": ("ai", "ollama_api_key", str),
    "POSTAL_API_KEY": ("postal", "api_key", str),
    "POSTAL_BASE_URL": ("postal", "base_url", str),
    "NOTIFICATION_FROM_EMAIL": ("postal", "from_email", str),
    "NOTIFICATION_TO_EMAIL": ("postal", "to_email", str),
    "SCHEDULE_INTERVAL_MINUTES": ("scheduler", "interval_minutes", int),
    "LOG_LEVEL": ("logging", "level", str),
}


def _apply_env_overrides(config: Config) -> Config:
    """Override config values from environment variables.

    Every key in _ENV_OVERRIDES maps onto one config attribute. Empty values
    are ignored so a blank line in .env does not wipe a YAML setting.
    """
    for env_key, (section, attr, cast) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_key)
        if not raw:
            continue
        try:
            value = cast(raw)
        except ValueError as e:
            raise ValueError(f"Invalid value for {env_key}: {raw!r}") from e
        setattr(getattr(config, section), attr, value)
    return config


def load_config(path: str | Path | None = None) -> Config:
    """Load configuration from YAML file, merging with defaults.

    Also loads .env file and applies environment variable overrides.
    """
    _load_dotenv()

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        config_path = _find_config_file()

    if config_path is None:
        config = Config()
    else:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        config = _dict_to_config(raw)

    return _apply_env_overrides(config)
