"""Configuration for desksync."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml


_DEFAULT_STORAGE_PATH = "~/.desksync/db/desksync.db"
_DEFAULT_CONFIG_PATH = "~/.desksync/config.yaml"

# Model prefix → env var name for API key
_MODEL_ENV_KEYS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "gpt": "OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "groq": "GROQ_API_KEY",
    "xai": "XAI_API_KEY",
    "grok": "XAI_API_KEY",
}


def config_path() -> Path:
    return Path(os.getenv("DESKSYNC_CONFIG", _DEFAULT_CONFIG_PATH)).expanduser()


@dataclass
class Config:
    # Storage
    storage_path: str = _DEFAULT_STORAGE_PATH
    storage_key: str = "ai-agent-sessions"
    storage_quota_bytes: int = 5 * 1024 * 1024
    max_sessions: int = 50
    full_event_sessions: int = 5  # sessions that keep full events when degraded
    save_debounce_ms: int = 100

    # Rate limiting
    default_retry_after: int = 65

    # Sandbox
    sandbox_create_attempts: int = 3
    stream_url_attempts: int = 5

    # LLM transport
    llm_model: str = "anthropic/claude-3-7-sonnet-20250219"
    llm_timeout: float = 60.0
    api_key: Optional[str] = None

    @classmethod
    def load(cls, path: Optional[str] = None) -> Config:
        """Load config from YAML file, falling back to defaults."""
        cfg_path = Path(path).expanduser() if path else config_path()

        data: dict = {}
        if cfg_path.exists():
            try:
                with open(cfg_path) as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError):
                data = {}

        cfg = cls()
        for f in fields(cls):
            if f.name in data and data[f.name] is not None:
                setattr(cfg, f.name, _coerce(getattr(cfg, f.name), data[f.name]))

        # Environment overrides
        if env_path := os.getenv("DESKSYNC_STORAGE_PATH"):
            cfg.storage_path = env_path
        if env_model := os.getenv("DESKSYNC_LLM_MODEL"):
            cfg.llm_model = env_model
        if env_key := os.getenv("DESKSYNC_API_KEY"):
            cfg.api_key = env_key

        return cfg

    @classmethod
    def set_config(cls, key: str, value: Any) -> None:
        """Persist a single key to the YAML config, keeping the others."""
        if key not in {f.name for f in fields(cls)}:
            raise KeyError(f"Unknown config key: {key}")

        cfg_path = config_path()
        data: dict = {}
        if cfg_path.exists():
            with open(cfg_path) as f:
                data = yaml.safe_load(f) or {}

        data[key] = value
        cfg_path.parent.mkdir(parents=True, exist_ok=True)
        with open(cfg_path, "w") as f:
            yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)

    @property
    def resolved_storage_path(self) -> Path:
        return Path(self.storage_path).expanduser()

    @property
    def save_debounce_seconds(self) -> float:
        return max(0, self.save_debounce_ms) / 1000.0

    def inject_api_key(self) -> None:
        """Inject api_key into the environment variable litellm expects."""
        if not self.api_key:
            return

        env_var = self._env_var_for_model()
        if env_var:
            os.environ.setdefault(env_var, self.api_key.strip())

    def _env_var_for_model(self) -> Optional[str]:
        """Determine the environment variable name for the current model."""
        model_lower = self.llm_model.lower()
        for keyword, env_var in _MODEL_ENV_KEYS.items():
            if keyword in model_lower:
                return env_var
        return None

    def check_api_key(self) -> Optional[str]:
        """Check if the required API key is available.

        Returns None if OK, or an error message string.
        """
        env_var = self._env_var_for_model()
        if not env_var:
            return f"Unknown provider for model '{self.llm_model}'"

        if self.api_key:
            return None

        if os.getenv(env_var):
            return None

        return f"Missing API key: set 'api_key' in config.yaml or export {env_var}"


def _coerce(default: Any, value: Any) -> Any:
    """Cast a YAML value to the type of the field default."""
    if isinstance(default, bool):
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, str):
        return str(value)
    return value
