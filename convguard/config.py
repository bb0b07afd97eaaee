"""
Configuration management for convguard.

Sections are plain dataclasses aggregated in GuardConfig. Values come from
defaults, an optional JSON file, then CONVGUARD_* environment variables
(a project-root .env file is loaded first when present).
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv

from .circuit_breaker import CircuitBreakerConfig

DEFAULT_CONFIG_PATH = Path.home() / ".convguard" / "config.json"

_project_root = Path(__file__).parent.parent
_env_file = _project_root / ".env"


@dataclass
class ValidationConfig:
    """Configuration for the integrity validator."""

    # User activity inside this window selects basic (non-raising) validation
    active_window_seconds: float = 300.0
    tool_id_policy: Literal["openai", "anthropic", "any"] = "openai"


@dataclass
class RetryConfig:
    """Configuration for remote calls and recovery backoff."""

    request_timeout: float = 30.0
    rate_limit_base_delay: float = 2.0
    rate_limit_max_delay: float = 60.0
    jitter_min: float = 0.1
    jitter_max: float = 0.3
    simple_backoff_max_delay: float = 30.0
    max_attempts: dict[str, int] = field(
        default_factory=lambda: {
            "rate_limit": 3,
            "conversation_structure": 2,
            "network_error": 5,
            "service_unavailable": 3,
            "unknown": 3,
        }
    )
    default_max_attempts: int = 2
    recovery_context_ttl_seconds: float = 3600.0
    max_tool_rounds: int = 5


@dataclass
class CheckpointConfig:
    """Configuration for checkpoint retention."""

    max_checkpoints: int = 10
    retention_days: int = 7
    list_limit: int = 10


@dataclass
class StoreConfig:
    """Configuration for the turn store."""

    backend: Literal["inmemory", "sqlite"] = "inmemory"
    path: str | None = None


@dataclass
class ModelConfig:
    """Configuration for the remote completion model."""

    model: str = "sonnet"
    max_tokens: int = 4096
    temperature: float = 0.0
    dependency_name: str = "anthropic"


@dataclass
class HealthConfig:
    """Configuration for conversation health sweeps."""

    alert_threshold: float = 95.0
    # Score penalty once last_stable_at is older than this
    stale_after_seconds: float = 3600.0
    # Sweeps revisit stable conversations not confirmed stable for this long
    attention_after_seconds: float = 21600.0
    auto_archive_broken: bool = True
    archive_below_score: int = 20


@dataclass
class GuardConfig:
    """Complete convguard configuration."""

    validation: ValidationConfig = field(default_factory=ValidationConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    checkpoints: CheckpointConfig = field(default_factory=CheckpointConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    models: ModelConfig = field(default_factory=ModelConfig)
    health: HealthConfig = field(default_factory=HealthConfig)

    @classmethod
    def load(cls, path: Path | None = None, use_env: bool = True) -> GuardConfig:
        """Load configuration from file, then apply environment overrides."""
        path = path or DEFAULT_CONFIG_PATH

        data: dict[str, Any] = {}
        if path.exists():
            with open(path) as f:
                data = json.load(f)

        retry_data = dict(data.get("retry", {}))
        if "max_attempts" in retry_data:
            retry_data["max_attempts"] = {
                **RetryConfig().max_attempts,
                **retry_data["max_attempts"],
            }

        config = cls(
            validation=ValidationConfig(**data.get("validation", {})),
            retry=RetryConfig(**retry_data),
            circuit_breaker=CircuitBreakerConfig(**data.get("circuit_breaker", {})),
            checkpoints=CheckpointConfig(**data.get("checkpoints", {})),
            store=StoreConfig(**data.get("store", {})),
            models=ModelConfig(**data.get("models", {})),
            health=HealthConfig(**data.get("health", {})),
        )

        if use_env:
            if _env_file.exists():
                load_dotenv(_env_file)
            config.apply_env(os.environ)

        return config

    def apply_env(self, environ: Any) -> None:
        """Apply CONVGUARD_* overrides from an environment mapping."""
        overrides: list[tuple[str, Any, str, type]] = [
            ("CONVGUARD_REQUEST_TIMEOUT", self.retry, "request_timeout", float),
            ("CONVGUARD_CIRCUIT_BREAKER_THRESHOLD", self.circuit_breaker, "failure_threshold", int),
            ("CONVGUARD_CIRCUIT_BREAKER_TIMEOUT", self.circuit_breaker, "recovery_timeout", float),
            ("CONVGUARD_ACTIVE_WINDOW_SECONDS", self.validation, "active_window_seconds", float),
            ("CONVGUARD_TOOL_ID_POLICY", self.validation, "tool_id_policy", str),
            ("CONVGUARD_CHECKPOINT_RETENTION_DAYS", self.checkpoints, "retention_days", int),
            ("CONVGUARD_MAX_CHECKPOINTS", self.checkpoints, "max_checkpoints", int),
            ("CONVGUARD_STORE_BACKEND", self.store, "backend", str),
            ("CONVGUARD_STORE_PATH", self.store, "path", str),
            ("CONVGUARD_MODEL", self.models, "model", str),
        ]
        for env_name, section, attr, cast in overrides:
            raw = environ.get(env_name)
            if raw is None or raw == "":
                continue
            try:
                setattr(section, attr, cast(raw))
            except ValueError as e:
                raise ValueError(f"Invalid value for {env_name}: {raw!r}") from e

    def max_attempts_for(self, category: str) -> int:
        """Attempt budget for an error category."""
        return self.retry.max_attempts.get(category, self.retry.default_max_attempts)

    def save(self, path: Path | None = None) -> None:
        """Save configuration to file."""
        path = path or DEFAULT_CONFIG_PATH
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            json.dump(
                {
                    "validation": asdict(self.validation),
                    "retry": asdict(self.retry),
                    "circuit_breaker": asdict(self.circuit_breaker),
                    "checkpoints": asdict(self.checkpoints),
                    "store": asdict(self.store),
                    "models": asdict(self.models),
                    "health": asdict(self.health),
                },
                f,
                indent=2,
            )


__all__ = [
    "CheckpointConfig",
    "DEFAULT_CONFIG_PATH",
    "GuardConfig",
    "HealthConfig",
    "ModelConfig",
    "RetryConfig",
    "StoreConfig",
    "ValidationConfig",
]
