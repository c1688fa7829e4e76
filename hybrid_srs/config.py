"""
Centralized Configuration for the Learning Engine

Configuration comes from defaults, an optional YAML or JSON file, a ``.env``
file and ``HYBRID_SRS_``-prefixed environment variables. Nested sections are
addressed with a double underscore, e.g. ``HYBRID_SRS_FEATURES__USE_GNN_LEARNING=true``.
"""

import os
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from hybrid_srs.common.logger import app_logger

logger = app_logger.getChild("config")

VECTOR_COLLECTIONS = ("vocabulary", "descriptions", "images")


class FeatureFlags(BaseModel):
    """Runtime switches for the optional subsystems"""
    use_vector_search: bool = True
    use_semantic_cache: bool = True
    use_gnn_learning: bool = False
    use_knowledge_graph: bool = True


class CacheConfig(BaseModel):
    """Embedding cache configuration"""
    ttl_seconds: int = Field(default=86400, ge=0)
    max_size: int = Field(default=10000, ge=1)


class EmbeddingConfig(BaseModel):
    """Embedding provider configuration"""
    provider: str = "hashing"
    model: str = "text-embedding-3-small"
    dimensions: int = Field(default=1536, ge=8)
    api_key: Optional[str] = None
    api_base: Optional[str] = None
    max_retries: int = Field(default=2, ge=0)
    retry_delay: float = Field(default=0.1, ge=0.0)
    max_text_length: int = Field(default=10000, ge=1)
    batch_size: int = Field(default=100, ge=1)

    @field_validator('provider')
    @classmethod
    def validate_provider(cls, v):
        valid = ['hashing', 'openai']
        if v.lower() not in valid:
            raise ValueError(f"Invalid embedding provider: {v}. Must be one of {valid}")
        return v.lower()


class SearchConfig(BaseModel):
    """Vector search configuration"""
    similarity_threshold: float = Field(default=0.7, ge=-1.0, le=1.0)
    default_limit: int = Field(default=20, ge=1)
    max_limit: int = Field(default=100, ge=1)
    collections: List[str] = Field(default_factory=lambda: list(VECTOR_COLLECTIONS))


class GraphConfig(BaseModel):
    """Confusion graph configuration"""
    min_history_edges: int = Field(default=3, ge=0)
    decay_half_life_days: Optional[float] = Field(default=None, gt=0)
    max_related: int = Field(default=10, ge=1)


class SM2Config(BaseModel):
    """Response-time thresholds used to grade a successful answer"""
    fast_threshold_ms: int = Field(default=5000, ge=0)
    slow_threshold_ms: int = Field(default=15000, ge=0)

    @model_validator(mode='after')
    def check_thresholds(self):
        if self.slow_threshold_ms < self.fast_threshold_ms:
            raise ValueError("slow_threshold_ms must be >= fast_threshold_ms")
        return self


class LearningConfig(BaseModel):
    """Prediction and scheduling tunables"""
    window_size: int = Field(default=20, ge=1)
    recency_decay: float = Field(default=0.7, gt=0.0, le=1.0)
    prior_success_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    min_interactions_for_confidence: int = Field(default=5, ge=1)
    full_confidence_interactions: int = Field(default=10, ge=1)
    confusion_penalty_per_weight: float = Field(default=0.05, ge=0.0)
    max_confusion_penalty: float = Field(default=0.3, ge=0.0, le=1.0)
    max_related_words: int = Field(default=5, ge=0)
    easy_rate_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    hard_rate_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    short_interval_days: int = Field(default=7, ge=0)
    long_interval_days: int = Field(default=21, ge=0)
    overdue_weight: float = Field(default=10.0, ge=0.0)
    min_interval_days: int = Field(default=1, ge=1)
    max_interval_days: int = Field(default=180, ge=1)
    training_interval_seconds: int = Field(default=3600, ge=1)
    max_concurrent_predictions: int = Field(default=8, ge=1)

    @model_validator(mode='after')
    def check_confidence_saturation(self):
        if self.full_confidence_interactions < self.min_interactions_for_confidence:
            raise ValueError(
                "full_confidence_interactions must be >= min_interactions_for_confidence"
            )
        return self


class BridgeConfig(BaseModel):
    """Hybrid schedule blending and availability tracking"""
    max_shift_days: float = Field(default=3.0, ge=0.0)
    min_confidence: float = Field(default=0.4, ge=0.0, le=1.0)
    max_ease_step: float = Field(default=0.15, ge=0.0)
    health_window: int = Field(default=5, ge=1)
    failure_threshold: int = Field(default=3, ge=1)
    recovery_seconds: float = Field(default=30.0, ge=0.0)
    max_commit_retries: int = Field(default=3, ge=1)


class TimeoutConfig(BaseModel):
    """Per-dependency time budgets in seconds"""
    embedding_seconds: float = Field(default=2.0, gt=0)
    graph_seconds: float = Field(default=0.5, gt=0)
    prediction_seconds: float = Field(default=0.5, gt=0)
    health_seconds: float = Field(default=1.0, gt=0)
    retries: int = Field(default=1, ge=0)
    retry_delay_seconds: float = Field(default=0.05, ge=0)


class DatabaseConfig(BaseModel):
    """Storage configuration"""
    backend: str = "memory"
    url: str = "sqlite+aiosqlite:///:memory:"
    echo: bool = False

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v):
        valid = ['memory', 'sql']
        if v.lower() not in valid:
            raise ValueError(f"Invalid storage backend: {v}. Must be one of {valid}")
        return v.lower()


class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = "INFO"
    use_json: bool = False
    file_path: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class APIConfig(BaseModel):
    """HTTP server configuration"""
    host: str = "0.0.0.0"
    port: int = 8000
    reload: bool = False
    allow_origins: List[str] = Field(default_factory=lambda: ["*"])


class AppConfig(BaseSettings):
    """Main application configuration"""
    model_config = SettingsConfigDict(
        env_prefix="HYBRID_SRS_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Hybrid SRS Engine"
    version: str = "0.1.0"
    environment: str = "development"
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    graph: GraphConfig = Field(default_factory=GraphConfig)
    sm2: SM2Config = Field(default_factory=SM2Config)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        valid_envs = ['development', 'testing', 'staging', 'production']
        if v.lower() not in valid_envs:
            raise ValueError(f"Invalid environment: {v}. Must be one of {valid_envs}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_testing(self) -> bool:
        return self.environment == "testing"


class ConfigLoader:
    """
    Configuration loader for the application.

    Values from a config file are passed to AppConfig as explicit arguments,
    so they take precedence over the environment and ``.env``; anything the
    file leaves out falls back to the environment, then to defaults.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Args:
            config_path: Path to a YAML or JSON config file; defaults to
                ``HYBRID_SRS_CONFIG_PATH``
        """
        self.config_path = config_path or os.environ.get("HYBRID_SRS_CONFIG_PATH")
        self._config: Optional[AppConfig] = None

    def load(self) -> AppConfig:
        if self._config is not None:
            return self._config

        file_config: Dict[str, Any] = {}
        if self.config_path:
            file_config = self._load_from_file(self.config_path)

        self._config = AppConfig(**file_config)
        return self._config

    def _load_from_file(self, path: str) -> Dict[str, Any]:
        """
        Load configuration from a file.

        A missing file is logged and ignored; a file that exists but cannot
        be parsed is an error.
        """
        path = Path(path)
        if not path.exists():
            logger.warning(f"Config file not found: {path}")
            return {}

        suffix = path.suffix.lower()
        with open(path, 'r', encoding='utf-8') as f:
            if suffix in ['.yaml', '.yml']:
                data = yaml.safe_load(f)
            elif suffix == '.json':
                data = json.load(f)
            else:
                logger.warning(f"Unsupported config file format: {path.suffix}")
                return {}

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping at the top level")
        return data


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """Load a fresh configuration from file, ``.env`` and environment."""
    return ConfigLoader(config_path).load()
