"""
FOREMAN CONFIG - Settings Loading

Configuration is loaded once at startup from config/foreman.toml and then
overridden from the environment. The result is a tree of frozen msgspec
Structs handed to every component that needs it; nothing reads the TOML
file or os.environ after that.

Usage:
    from infrastructure.config import load_settings

    settings = load_settings()
    settings.require_github()          # raises ConfigurationError
    settings.policy.max_files_changed  # 20
"""
import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import msgspec

from core.ontology import CapabilityMode, MergeMethod

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "foreman.toml"


class ConfigurationError(Exception):
    """Raised when settings are missing or malformed. Fatal at startup."""
    pass


# =============================================================================
# SETTINGS STRUCTS
# =============================================================================

class GitHubSettings(msgspec.Struct, kw_only=True, frozen=True):
    token: str = ""
    owner: str = ""
    api_url: str = "https://api.github.com"
    api_version: str = "2022-11-28"
    user_agent: str = "foreman-orchestrator"
    default_branch: str = "main"
    required_checks: Tuple[str, ...] = ("build",)
    timeout: float = 30.0


class PolicySettings(msgspec.Struct, kw_only=True, frozen=True):
    max_files_changed: int = 20
    max_tokens: int = 120000
    max_api_calls: int = 80
    near_ceiling_ratio: float = 0.8


class ExecutionSettings(msgspec.Struct, kw_only=True, frozen=True):
    poll_attempts: int = 20
    poll_interval: float = 5.0
    poll_backoff: float = 1.0   # > 1 switches CI polling to exponential backoff
    merge_method: MergeMethod = "squash"
    max_parallel: int = 1
    max_direct_tasks: int = 25


class ServerSettings(msgspec.Struct, kw_only=True, frozen=True):
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"
    cors_origins: Tuple[str, ...] = ("*",)


class AgentSettings(msgspec.Struct, kw_only=True, frozen=True):
    capabilities: CapabilityMode = "template"
    llm_model: Optional[str] = None


class Settings(msgspec.Struct, kw_only=True, frozen=True):
    """Root of the settings tree, one attribute per TOML section."""
    github: GitHubSettings = msgspec.field(default_factory=GitHubSettings)
    policy: PolicySettings = msgspec.field(default_factory=PolicySettings)
    execution: ExecutionSettings = msgspec.field(default_factory=ExecutionSettings)
    server: ServerSettings = msgspec.field(default_factory=ServerSettings)
    agents: AgentSettings = msgspec.field(default_factory=AgentSettings)

    def require_github(self) -> None:
        """
        Fail fast when host credentials are absent.

        Raises:
            ConfigurationError: If GITHUB_TOKEN or GITHUB_OWNER is unset
        """
        missing = [
            name for name, value in (
                ("GITHUB_TOKEN", self.github.token),
                ("GITHUB_OWNER", self.github.owner),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Missing required setting(s): {', '.join(missing)}")


# =============================================================================
# LOADING
# =============================================================================

# env var -> (section, key)
ENV_OVERRIDES: Dict[str, Tuple[str, str]] = {
    "GITHUB_TOKEN": ("github", "token"),
    "GITHUB_OWNER": ("github", "owner"),
    "GITHUB_API_URL": ("github", "api_url"),
    "FOREMAN_MAX_FILES_CHANGED": ("policy", "max_files_changed"),
    "FOREMAN_MAX_TOKENS": ("policy", "max_tokens"),
    "FOREMAN_MAX_API_CALLS": ("policy", "max_api_calls"),
    "FOREMAN_POLL_INTERVAL": ("execution", "poll_interval"),
    "FOREMAN_POLL_ATTEMPTS": ("execution", "poll_attempts"),
    "FOREMAN_MAX_PARALLEL": ("execution", "max_parallel"),
    "FOREMAN_CAPABILITIES": ("agents", "capabilities"),
    "FOREMAN_LLM_MODEL": ("agents", "llm_model"),
    "FOREMAN_LOG_LEVEL": ("server", "log_level"),
}


def load_toml_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from foreman.toml.

    A missing file yields an empty dict (defaults apply); a malformed one
    is a ConfigurationError.
    """
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        logger.warning(f"Config file not found at {config_path}; using defaults")
        return {}
    try:
        with open(config_path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e


def apply_env_overrides(
    raw: Dict[str, Any],
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Return a copy of `raw` with environment values layered on top."""
    environ = os.environ if environ is None else environ
    merged = {section: dict(values) for section, values in raw.items()}
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            merged.setdefault(section, {})[key] = value
    return merged


def load_settings(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Load settings from TOML plus environment overrides.

    Environment values are strings; msgspec's lax conversion turns
    "20" into 20 and "2.5" into 2.5.

    Raises:
        ConfigurationError: If the merged values do not fit the Settings schema
    """
    raw = apply_env_overrides(load_toml_config(path), environ)
    try:
        return msgspec.convert(raw, Settings, strict=False)
    except msgspec.ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
