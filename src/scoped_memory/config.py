"""Scoped memory configuration models."""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator, model_validator


def _check_fraction(value: float, name: str) -> float:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {value}")
    return value


class StorageConfig(BaseModel):
    """Backing store selection and paths."""

    backend: str = "sqlite"  # "sqlite" or "memory"
    data_dir: str = "./memory/scoped"

    @field_validator("backend")
    @classmethod
    def _validate_backend(cls, value: str) -> str:
        if value not in ("sqlite", "memory"):
            raise ValueError(f"backend must be 'sqlite' or 'memory', got {value!r}")
        return value

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        normalized = os.path.normpath(self.data_dir)
        parts = normalized.replace("\\", "/").split("/")
        if ".." in parts:
            raise ValueError(
                f"data_dir must not contain '..' components: {self.data_dir!r}"
            )
        self.data_dir = normalized
        return self


class EmbeddingConfig(BaseModel):
    """Embedding provider configuration."""

    provider: str = "local"  # "local" or "api"
    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimension: int = 384
    trust_remote_code: bool = False
    api_url: str = ""
    api_key: str = ""
    timeout_seconds: float = 10.0


class DecayConfig(BaseModel):
    """Half-lives used by the strength computation (days).

    ``None`` means the scope never decays.
    """

    session_half_life_days: float | None = None
    project_half_life_days: float = 7.0
    user_half_life_days: float = 30.0
    access_bonus: float = 0.15


class RetrievalConfig(BaseModel):
    """Hybrid retrieval configuration."""

    rrf_k: int = 60
    candidate_k: int = 20
    rrf_weight: float = 0.6
    importance_weight: float = 0.2
    strength_weight: float = 0.2
    dedup_similarity: float = 0.90
    dedup_strength_ratio: float = 2.0
    scope_timeout_seconds: float = 2.0
    default_profile: str = "default"
    scope_weight_profiles: dict[str, dict[str, float]] = Field(
        default_factory=lambda: {
            "default": {"session": 0.50, "project": 0.35, "user": 0.15},
            "balanced": {"session": 0.34, "project": 0.33, "user": 0.33},
            "long_term": {"session": 0.20, "project": 0.40, "user": 0.40},
        }
    )

    @model_validator(mode="after")
    def _validate_weights(self) -> "RetrievalConfig":
        for name in ("rrf_weight", "importance_weight", "strength_weight", "dedup_similarity"):
            _check_fraction(getattr(self, name), name)
        if self.default_profile not in self.scope_weight_profiles:
            raise ValueError(
                f"default_profile {self.default_profile!r} is not a known profile"
            )
        return self


class PromotionConfig(BaseModel):
    """Promotion eligibility and merge configuration."""

    merge_distance: float = 0.15
    neighbor_k: int = 3
    session_to_project_threshold: float = 0.6
    project_to_user_threshold: float = 0.7
    project_to_user_min_access: int = 3
    excluded_types: list[str] = Field(
        default_factory=lambda: ["scratchpad", "tool_outcome"]
    )
    confidence_boost: float = 0.05
    promotion_chain_warn_length: int = 50


class ConsolidationConfig(BaseModel):
    """Clustering and archival configuration."""

    enabled: bool = True
    cluster_similarity: float = 0.92
    min_cluster_size: int = 10
    window_days: float = 30.0
    max_candidates: int = 500
    project_archive_threshold: float = 0.05
    user_archive_threshold: float = 0.02
    project_min_dwell_days: float = 14.0
    user_min_dwell_days: float = 90.0
    archive_max_access: int = 2
    project_delete_after_days: float = 90.0


class DegradedModeConfig(BaseModel):
    """Local write queue and read cache used while the store is unreachable."""

    queue_max_size: int = 1000
    reconnect_interval_seconds: float = 30.0
    recall_cache_size: int = 128
    hot_path_timeout_seconds: float = 2.0


class SchedulerConfig(BaseModel):
    """Lifecycle scheduler configuration."""

    enabled: bool = True
    max_pending_events: int = 100
    consolidate_on_session_end: bool = False


class MemoryConfig(BaseModel):
    """Top-level scoped memory configuration."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    decay: DecayConfig = Field(default_factory=DecayConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    promotion: PromotionConfig = Field(default_factory=PromotionConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    degraded: DegradedModeConfig = Field(default_factory=DegradedModeConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> "MemoryConfig":
        """Load configuration from a YAML file.

        ``${VAR}`` references are replaced with environment variables
        before parsing. Unset variables are left as-is.

        Args:
            config_path: Path to the YAML file

        Returns:
            Validated MemoryConfig

        Raises:
            FileNotFoundError: If the file does not exist.
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        content = path.read_text(encoding="utf-8")
        pattern = re.compile(r"\$\{(\w+)\}")

        def replacer(match):
            env_var = match.group(1)
            return os.getenv(env_var, match.group(0))

        content = pattern.sub(replacer, content)

        try:
            data = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            logger.critical(f"Error parsing YAML file: {e}")
            raise

        # Allow the memory settings to live under a top-level "memory" key
        if "memory" in data and isinstance(data["memory"], dict):
            data = data["memory"]
        return cls.model_validate(data)
