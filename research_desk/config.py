"""Application settings loaded from YAML and environment variables."""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, field_validator

from research_desk.errors import ConfigurationError


BASE_DIR = Path(__file__).parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR / "config" / "settings.yaml"
DEFAULT_DATABASE_URL = f"sqlite+aiosqlite:///{BASE_DIR / 'data' / 'research_desk.db'}"

# Environment variable -> settings field
ENV_OVERRIDES = {
    "FMP_API_KEY": "fmp_api_key",
    "FINNHUB_API_KEY": "finnhub_api_key",
    "OPENAI_API_KEY": "openai_api_key",
    "OPENAI_MODEL": "openai_model",
    "OPENAI_FALLBACK_MODEL": "openai_fallback_model",
    "DATABASE_URL": "database_url",
    "ARTIFACT_CAPACITY": "artifact_capacity",
    "ARTIFACT_RETENTION_DAYS": "artifact_retention_days",
    "RETRY_MAX_ATTEMPTS": "retry_max_attempts",
    "RETRY_BASE_DELAY": "retry_base_delay",
    "HTTP_TIMEOUT": "http_timeout",
}


class CacheTTLs(BaseModel):
    """Seconds a cached upstream response stays fresh, per data family."""

    profile: int = 24 * 60 * 60
    quote: int = 5 * 60
    financials: int = 24 * 60 * 60
    news: int = 30 * 60
    default: int = 15 * 60


class Settings(BaseModel):
    """
    Runtime configuration.

    Representation Invariants:
    - artifact_capacity >= 1
    - retry_max_attempts >= 1
    - retry_base_delay >= 0 and retry_max_delay >= retry_base_delay
    - core_keys is non-empty
    """

    fmp_api_key: Optional[str] = None
    fmp_base_url: str = "https://financialmodelingprep.com/api"
    finnhub_api_key: Optional[str] = None
    finnhub_base_url: str = "https://finnhub.io/api/v1"
    openai_api_key: Optional[str] = None
    openai_model: str = "o3-mini"
    openai_fallback_model: str = "gpt-4o"

    database_url: str = DEFAULT_DATABASE_URL

    http_timeout: float = 30.0
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    cache_enabled: bool = True
    cache_ttls: CacheTTLs = CacheTTLs()
    cache_max_entries: int = 1000

    artifact_capacity: int = 20
    artifact_retention_days: int = 30

    core_keys: List[str] = ["profile", "quote"]
    congressional_lookback_days: int = 3 * 365

    rate_limit_requests: int = 10
    rate_limit_window: int = 60

    @field_validator("artifact_capacity", "retry_max_attempts", "artifact_retention_days")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("retry_base_delay", "retry_max_delay", "http_timeout")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must be non-negative")
        return v

    @field_validator("core_keys")
    @classmethod
    def validate_core_keys(cls, v: List[str]) -> List[str]:
        keys = [k.strip() for k in v if k and k.strip()]
        if not keys:
            raise ValueError("core_keys cannot be empty")
        return keys

    def require(self, name: str) -> str:
        """
        Return a setting that must be present.

        Raises:
            ConfigurationError: If the setting is unset or blank
        """
        value = getattr(self, name, None)
        if not value:
            raise ConfigurationError(f"Missing required setting: {name}")
        return value


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid config format in {path}: expected a mapping")
    return data


def load_settings(config_path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> Settings:
    """
    Build Settings from an optional YAML file overlaid by environment variables.

    Preconditions:
    - config_path, if given explicitly, exists

    Postconditions:
    - Returns validated Settings
    - Environment variables win over YAML values

    Args:
        config_path: YAML file; defaults to $RESEARCH_DESK_CONFIG or config/settings.yaml
        environ: Environment mapping (defaults to os.environ)

    Raises:
        ConfigurationError: If an explicit config file is missing or invalid
    """
    env = os.environ if environ is None else environ
    values: Dict[str, Any] = {}

    explicit = config_path is not None or "RESEARCH_DESK_CONFIG" in env
    path = config_path or Path(env.get("RESEARCH_DESK_CONFIG", str(DEFAULT_CONFIG_PATH)))
    if path.exists():
        values.update(_read_yaml(path))
    elif explicit:
        raise ConfigurationError(f"Config file not found: {path}")

    for env_name, field_name in ENV_OVERRIDES.items():
        if env.get(env_name):
            values[field_name] = env[env_name]

    try:
        return Settings(**values)
    except ValueError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e
