"""Configuration management for DevMind."""

import sys
from pathlib import Path
from typing import Optional, Dict, List

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator, model_validator


DEFAULT_ROOT_MARKERS = [
    ".git",
    "package.json",
    "pyproject.toml",
    "setup.py",
    "requirements.txt",
    "go.mod",
    "Cargo.toml",
    "pom.xml",
    "build.gradle",
    "composer.json",
    "Gemfile",
    "mix.exs",
    "pubspec.yaml",
    "Pipfile",
    "yarn.lock",
    "pnpm-lock.yaml",
    "poetry.lock",
]


class CaptureConfig(BaseModel):
    high_threshold: int = 80
    low_threshold: int = 40
    auto_confirm_floor: int = 60
    auto_confirm_types: List[str] = Field(default_factory=list)
    never_confirm_types: List[str] = Field(default_factory=list)
    confirmation_timeout_s: float = 30.0
    batch_mode: bool = False

    @field_validator('high_threshold', 'low_threshold', 'auto_confirm_floor')
    @classmethod
    def validate_threshold(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError("capture thresholds must be between 0 and 100")
        return v

    @field_validator('confirmation_timeout_s')
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("confirmation_timeout_s must be positive")
        return v

    @model_validator(mode='after')
    def validate_order(self) -> "CaptureConfig":
        if self.low_threshold > self.high_threshold:
            raise ValueError("low_threshold must not exceed high_threshold")
        return self


class SearchConfig(BaseModel):
    similarity_threshold: float = 0.5
    hybrid_weight: float = 0.7
    limit: int = 20
    result_cache_size: int = 100
    result_cache_ttl_s: float = 300.0
    embedding_cache_size: int = 1000
    embedding_cache_ttl_s: float = 3600.0
    approximate_threshold: int = 512
    approximate_samples: int = 256
    batch_workers: int = 5
    enhance_queries: bool = True

    @field_validator('similarity_threshold', 'hybrid_weight')
    @classmethod
    def validate_unit_interval(cls, v: float) -> float:
        if not 0 <= v <= 1:
            raise ValueError("value must be between 0 and 1")
        return v

    @field_validator('limit', 'result_cache_size', 'embedding_cache_size', 'batch_workers')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v


class EmbeddingConfig(BaseModel):
    model: str = "all-MiniLM-L6-v2"
    version: str = "v1.0"
    widths: Dict[str, int] = Field(default_factory=lambda: {"v1.0": 384})
    max_chars: int = 512

    @property
    def dim(self) -> int:
        return self.widths[self.version]

    @model_validator(mode='after')
    def validate_version(self) -> "EmbeddingConfig":
        if self.version not in self.widths:
            raise ValueError(f"embedding version {self.version} has no configured width")
        return self


class IdentityConfig(BaseModel):
    max_depth: int = 10
    markers: List[str] = Field(default_factory=lambda: list(DEFAULT_ROOT_MARKERS))
    case_insensitive: bool = sys.platform == "win32"


class QualityConfig(BaseModel):
    default_accuracy: float = 0.6


class LearningConfig(BaseModel):
    enabled: bool = True
    min_samples: int = 5
    step: int = 5
    min_threshold: int = 20
    max_threshold: int = 95


class CacheConfig(BaseModel):
    # Raise on capacity invariant violations instead of self-healing
    strict: bool = False


class Config(BaseModel):
    """Main configuration for the DevMind core."""

    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load configuration from YAML file, falling back to defaults."""
        if config_path is None:
            candidates = [
                Path("devmind.yaml"),
                Path.home() / ".config" / "devmind" / "config.yaml",
                Path("/etc/devmind/config.yaml"),
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                logger.debug("No config file found, using defaults")
                return cls()

        logger.info(f"Loading config from: {config_path}")
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def save(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False)
