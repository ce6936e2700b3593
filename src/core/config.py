"""Configuration loader for Conclave.

Loads config from a YAML cascade: config/default.yaml is always loaded,
then environment-specific overrides, then environment variables.
"""

from __future__ import annotations

import math
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field

from src.core.exceptions import ConfigError


# ---------------------------------------------------------------------------
# Config schema
# ---------------------------------------------------------------------------

class OrchestratorConfig(BaseModel):
    roster: list[str] = Field(
        default_factory=lambda: ["Alex", "Sam", "Morgan", "Jordan", "Pierre"]
    )
    max_cycle_turns: int = 30
    max_self_passes: int = 3
    base_turn_limit: int = 6
    consensus_threshold: Optional[int] = None
    reset_signals_after_override: bool = True
    stall_cycle_limit: int = 3
    error_loop_threshold: int = 3
    personas: dict[str, str] = Field(default_factory=dict)

    def resolved_threshold(self) -> int:
        """Agree-count needed for consensus (default: 80% of the roster, rounded up)."""
        if self.consensus_threshold is not None:
            return self.consensus_threshold
        return max(1, math.ceil(len(self.roster) * 0.8))


class CacheConfig(BaseModel):
    max_tokens: int = 50_000
    sensitive_quota: int = 5_000
    transient_ttl_seconds: float = 3_600
    decision_ttl_seconds: float = 86_400
    sensitive_ttl_seconds: float = 604_800


class RetryConfig(BaseModel):
    max_retries: int = 3
    initial_delay_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 10.0
    rate_limit_pause_seconds: float = 65.0
    timeout_seconds: Optional[float] = None
    max_rate_limit_pauses: Optional[int] = None


class CircuitBreakerConfig(BaseModel):
    max_failures: int = 5
    reset_timeout_seconds: float = 60.0


class PathsConfig(BaseModel):
    allowed_directories: list[str] = Field(
        default_factory=lambda: ["src", "tests", "docs", "notes", "data"]
    )
    sensitive_patterns: list[str] = Field(
        default_factory=lambda: [
            ".env",
            ".env.*",
            "node_modules",
            ".git",
            "package.json",
            "tsconfig.json",
            "pyproject.toml",
        ]
    )
    max_file_kb: int = 100
    max_operations: int = 5


class ContextConfig(BaseModel):
    state_dir: str = "data/state"
    context_file: str = "orchestrator-context.json"
    cache_file: str = "shared-cache.json"
    override_file: str = "override.yaml"
    cost_ledger_file: str = "cost-ledger.jsonl"
    events_file: str = "events.jsonl"
    max_history: int = 20
    max_key_decisions: int = 15
    max_code_changes: int = 10
    max_change_content_chars: int = 500

    def path_for(self, name: str) -> Path:
        return Path(self.state_dir) / name


class LLMConfig(BaseModel):
    provider: str = "openrouter"
    base_url: str = "https://openrouter.ai/api/v1"
    default_temperature: float = 0.3
    default_max_tokens: int = 4096
    timeout_seconds: int = 120
    cost_per_1k_input: float = 0.001
    cost_per_1k_output: float = 0.005


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class AppConfig(BaseModel):
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Model registry (models.yaml)
# ---------------------------------------------------------------------------

class ModelRegistry(BaseModel):
    """Maps actor names to OpenRouter model IDs."""
    actors: dict[str, str] = Field(default_factory=dict)
    default_model: Optional[str] = None

    def get_model(self, actor: str) -> str:
        if actor in self.actors:
            return self.actors[actor]
        if self.default_model:
            return self.default_model
        raise ConfigError(f"No model configured for actor '{actor}'. Update config/models.yaml.")


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def _default_config_dir() -> Path:
    return Path(__file__).parent.parent.parent / "config"


def load_config(
    config_dir: Optional[Path] = None,
    env: Optional[str] = None,
) -> AppConfig:
    """Load application config from YAML cascade.

    Order: default.yaml -> {env}.yaml -> env vars (CONCLAVE_STATE_DIR, etc.)
    """
    if config_dir is None:
        config_dir = _default_config_dir()

    # Base config
    merged = _load_yaml(config_dir / "default.yaml")

    # Environment overlay
    if env:
        overlay = _load_yaml(config_dir / f"{env}.yaml")
        merged = _deep_merge(merged, overlay)

    # Environment variable overrides
    state_dir = os.getenv("CONCLAVE_STATE_DIR")
    if state_dir:
        merged.setdefault("context", {})
        merged["context"]["state_dir"] = state_dir

    log_level = os.getenv("CONCLAVE_LOG_LEVEL")
    if log_level:
        merged.setdefault("logging", {})
        merged["logging"]["level"] = log_level

    roster = os.getenv("CONCLAVE_ROSTER")
    if roster:
        names = [name.strip() for name in roster.split(",") if name.strip()]
        merged.setdefault("orchestrator", {})
        merged["orchestrator"]["roster"] = names

    config = AppConfig(**merged)
    _check_roster(config.orchestrator.roster)
    return config


def _check_roster(roster: list[str]) -> None:
    if not roster:
        raise ConfigError("Roster must name at least one actor")
    if len(set(roster)) != len(roster):
        raise ConfigError(f"Roster contains duplicate actors: {roster}")
    if "orchestrator-complete" in roster:
        raise ConfigError("'orchestrator-complete' is reserved and cannot be a roster member")


def load_model_registry(config_dir: Optional[Path] = None) -> ModelRegistry:
    """Load the model registry from models.yaml."""
    if config_dir is None:
        config_dir = _default_config_dir()

    data = _load_yaml(config_dir / "models.yaml")
    return ModelRegistry(**data)


# ---------------------------------------------------------------------------
# Prompt loader
# ---------------------------------------------------------------------------

class PromptLoader:
    """Loads prompt templates from config/prompts/ directory.

    Falls back to hardcoded defaults if the file doesn't exist.
    """

    def __init__(self, prompts_dir: Optional[Path] = None):
        if prompts_dir is None:
            prompts_dir = _default_config_dir() / "prompts"
        self.prompts_dir = prompts_dir

    def load(self, name: str, default: str = "") -> str:
        """Load a prompt template by filename.

        Args:
            name: Filename within config/prompts/ (e.g. "actor_system.txt").
            default: Fallback text if file doesn't exist.

        Returns:
            Prompt text (stripped of leading/trailing whitespace).
        """
        path = self.prompts_dir / name
        if path.exists():
            return path.read_text().strip()
        return default
