"""
Configuration Loader for Pipeline Policy

Loads thresholds, per-stage timeouts, truncation limits, cache TTL and
concurrency limits from pipeline.yaml, validates them and exposes a typed
PipelineConfig. Invalid configuration is fatal at startup.
"""

import yaml
from pathlib import Path
from typing import Dict, List, Optional
import logging

from pydantic import BaseModel, Field, ValidationError, model_validator

from jobmail.core.errors import ConfigurationError
from .config_constants import (
    CONFIG_DIR,
    DEFAULT_CONFIG_FILE,
    LOCAL_CONFIG_FILE,
    AUTO_APPROVE_THRESHOLD,
    NEEDS_REVIEW_THRESHOLD,
    MIN_JOB_STORAGE_THRESHOLD,
    DIGEST_FILTER_THRESHOLD,
    RETENTION_DAYS_HIGH,
    RETENTION_DAYS_MEDIUM,
    RETENTION_DAYS_LOW,
    CLASSIFY_TIMEOUT_SECONDS,
    EXTRACT_TIMEOUT_SECONDS,
    MATCH_TIMEOUT_SECONDS,
    CLASSIFY_MAX_BODY_CHARS,
    EXTRACT_MAX_BODY_CHARS,
    CLASSIFY_MAX_TOKENS,
    EXTRACT_MAX_TOKENS,
    MATCH_MAX_TOKENS,
    CLASSIFY_CONTEXT_SIZE,
    EXTRACT_CONTEXT_SIZE,
    MATCH_CONTEXT_SIZE,
    MODEL_TEMPERATURE,
    CACHE_TTL_DAYS,
    MAX_CONCURRENT_MODEL_CALLS,
    GROUP_CONCURRENCY,
    PROGRESS_BATCH_SIZE,
    MIN_PART_LENGTH,
    TRUNCATION_MIN_BODY_CHARS,
    TITLE_SIMILARITY_THRESHOLD,
)

logger = logging.getLogger(__name__)

# Providers whose summary payloads are known to cut off decision emails
DEFAULT_TRUNCATING_SENDER_DOMAINS = [
    "linkedin.com",
    "indeed.com",
    "greenhouse.io",
    "lever.co",
    "myworkday.com",
    "myworkdayjobs.com",
    "smartrecruiters.com",
    "icims.com",
    "jobvite.com",
    "ashbyhq.com",
]

_THRESHOLD = {"type": "number", "minimum": 0.0, "maximum": 1.0}

_STAGE_SCHEMA = {
    "type": "object",
    "properties": {
        "timeout_seconds": {"type": "number", "exclusiveMinimum": 0},
        "max_body_chars": {"type": "integer", "minimum": 1},
        "max_tokens": {"type": "integer", "minimum": 1},
        "context_size": {"type": "integer", "minimum": 1},
    },
    "additionalProperties": False,
}

PIPELINE_CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "thresholds": {
            "type": "object",
            "properties": {
                "auto_approve": _THRESHOLD,
                "needs_review": _THRESHOLD,
                "min_storage": _THRESHOLD,
                "digest_filter": _THRESHOLD,
            },
            "additionalProperties": False,
        },
        "retention_days": {
            "type": "object",
            "properties": {
                "high": {"type": "integer", "minimum": 1},
                "medium": {"type": "integer", "minimum": 1},
                "low": {"type": "integer", "minimum": 1},
            },
            "additionalProperties": False,
        },
        "stages": {
            "type": "object",
            "properties": {
                "classify": _STAGE_SCHEMA,
                "extract": _STAGE_SCHEMA,
                "match": _STAGE_SCHEMA,
            },
            "additionalProperties": False,
        },
        "model": {
            "type": "object",
            "properties": {
                "temperature": {"type": "number", "minimum": 0.0, "maximum": 2.0},
            },
        },
        "cache": {
            "type": "object",
            "properties": {"ttl_days": {"type": "number", "exclusiveMinimum": 0}},
        },
        "concurrency": {
            "type": "object",
            "properties": {
                "max_concurrent_model_calls": {"type": "integer", "minimum": 1},
                "group_concurrency": {"type": "integer", "minimum": 1},
                "progress_batch_size": {"type": "integer", "minimum": 1},
            },
        },
        "extraction": {
            "type": "object",
            "properties": {
                "min_part_length": {"type": "integer", "minimum": 0},
                "truncation_min_body_chars": {"type": "integer", "minimum": 1},
                "truncating_sender_domains": {
                    "type": "array",
                    "items": {"type": "string"},
                },
            },
        },
        "matching": {
            "type": "object",
            "properties": {"title_similarity_threshold": _THRESHOLD},
        },
    },
    "additionalProperties": False,
}


class ThresholdConfig(BaseModel):
    """Probability thresholds for routing and storage decisions."""
    auto_approve: float = AUTO_APPROVE_THRESHOLD
    needs_review: float = NEEDS_REVIEW_THRESHOLD
    min_storage: float = MIN_JOB_STORAGE_THRESHOLD
    digest_filter: float = DIGEST_FILTER_THRESHOLD

    @model_validator(mode="after")
    def _check_order(self):
        if not (self.min_storage <= self.needs_review <= self.auto_approve):
            raise ValueError(
                "thresholds must satisfy min_storage <= needs_review <= auto_approve "
                f"(got {self.min_storage}, {self.needs_review}, {self.auto_approve})"
            )
        return self


class StageConfig(BaseModel):
    """Budget for one model-backed stage."""
    timeout_seconds: float
    max_body_chars: int = 0
    max_tokens: int
    context_size: int


class PipelineConfig(BaseModel):
    """Typed view of pipeline.yaml with defaults filled in."""
    thresholds: ThresholdConfig = Field(default_factory=ThresholdConfig)
    retention_days: Dict[str, int] = Field(default_factory=lambda: {
        "high": RETENTION_DAYS_HIGH,
        "medium": RETENTION_DAYS_MEDIUM,
        "low": RETENTION_DAYS_LOW,
    })
    classify: StageConfig = Field(default_factory=lambda: StageConfig(
        timeout_seconds=CLASSIFY_TIMEOUT_SECONDS,
        max_body_chars=CLASSIFY_MAX_BODY_CHARS,
        max_tokens=CLASSIFY_MAX_TOKENS,
        context_size=CLASSIFY_CONTEXT_SIZE,
    ))
    extract: StageConfig = Field(default_factory=lambda: StageConfig(
        timeout_seconds=EXTRACT_TIMEOUT_SECONDS,
        max_body_chars=EXTRACT_MAX_BODY_CHARS,
        max_tokens=EXTRACT_MAX_TOKENS,
        context_size=EXTRACT_CONTEXT_SIZE,
    ))
    match: StageConfig = Field(default_factory=lambda: StageConfig(
        timeout_seconds=MATCH_TIMEOUT_SECONDS,
        max_tokens=MATCH_MAX_TOKENS,
        context_size=MATCH_CONTEXT_SIZE,
    ))
    temperature: float = MODEL_TEMPERATURE
    cache_ttl_days: float = CACHE_TTL_DAYS
    max_concurrent_model_calls: int = MAX_CONCURRENT_MODEL_CALLS
    group_concurrency: int = GROUP_CONCURRENCY
    progress_batch_size: int = PROGRESS_BATCH_SIZE
    min_part_length: int = MIN_PART_LENGTH
    truncation_min_body_chars: int = TRUNCATION_MIN_BODY_CHARS
    truncating_sender_domains: List[str] = Field(
        default_factory=lambda: list(DEFAULT_TRUNCATING_SENDER_DOMAINS)
    )
    title_similarity_threshold: float = TITLE_SIMILARITY_THRESHOLD


class PipelineConfigLoader:
    """Loads and validates pipeline policy configuration."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to pipeline.yaml (optional)
        """
        self.config_path = self._resolve_path(config_path)
        self.raw = self._load_raw(self.config_path)

    def _resolve_path(self, config_path: Optional[str]) -> Optional[Path]:
        if config_path is not None:
            path = Path(config_path)
            if not path.exists():
                raise ConfigurationError(f"Pipeline config not found: {path}")
            return path

        local_path = CONFIG_DIR / LOCAL_CONFIG_FILE
        if local_path.exists():
            logger.info(f"Using local config override: {local_path}")
            return local_path

        default_path = CONFIG_DIR / DEFAULT_CONFIG_FILE
        if default_path.exists():
            return default_path

        logger.warning(f"Config file not found at {default_path}. Using built-in defaults")
        return None

    def _load_raw(self, path: Optional[Path]) -> dict:
        if path is None:
            return {}

        try:
            with open(path) as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Failed to parse YAML config at {path}: {e}")
            raise ConfigurationError(f"Invalid YAML in {path}: {e}")

        if not config:
            logger.warning(f"Config file {path} is empty, using defaults")
            return {}

        self._validate_config(config)
        logger.debug(f"Successfully loaded config from {path}")
        return config

    def _validate_config(self, config: dict):
        """Validate configuration schema."""
        from jsonschema import validate, ValidationError as SchemaError

        try:
            validate(instance=config, schema=PIPELINE_CONFIG_SCHEMA)
        except SchemaError as e:
            location = ' -> '.join(str(p) for p in e.path) if e.path else 'root'
            logger.error(f"Invalid pipeline config schema: {e.message}")
            raise ConfigurationError(
                f"Invalid pipeline.yaml schema: {e.message}\nPath: {location}"
            )

    def build(self) -> PipelineConfig:
        """Flatten the YAML sections into a PipelineConfig."""
        raw = self.raw
        values: dict = {}

        if "thresholds" in raw:
            values["thresholds"] = raw["thresholds"]
        if "retention_days" in raw:
            values["retention_days"] = {
                **PipelineConfig().retention_days,
                **raw["retention_days"],
            }

        defaults = PipelineConfig()
        for stage in ("classify", "extract", "match"):
            overrides = raw.get("stages", {}).get(stage)
            if overrides:
                values[stage] = {**getattr(defaults, stage).model_dump(), **overrides}

        values.update(_pick(raw.get("model", {}), {"temperature": "temperature"}))
        values.update(_pick(raw.get("cache", {}), {"ttl_days": "cache_ttl_days"}))
        values.update(_pick(raw.get("concurrency", {}), {
            "max_concurrent_model_calls": "max_concurrent_model_calls",
            "group_concurrency": "group_concurrency",
            "progress_batch_size": "progress_batch_size",
        }))
        values.update(_pick(raw.get("extraction", {}), {
            "min_part_length": "min_part_length",
            "truncation_min_body_chars": "truncation_min_body_chars",
            "truncating_sender_domains": "truncating_sender_domains",
        }))
        values.update(_pick(raw.get("matching", {}), {
            "title_similarity_threshold": "title_similarity_threshold",
        }))

        try:
            return PipelineConfig(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid pipeline configuration: {e}")


def _pick(section: dict, mapping: Dict[str, str]) -> dict:
    return {target: section[key] for key, target in mapping.items() if key in section}


def load_pipeline_config(
    config_path: Optional[str] = None,
    extra_truncating_domains: Optional[List[str]] = None,
) -> PipelineConfig:
    """
    Load the pipeline configuration.

    Args:
        config_path: Explicit YAML path; defaults to the packaged pipeline.yaml
        extra_truncating_domains: Additional truncating sender domains from settings

    Returns:
        Validated PipelineConfig

    Raises:
        ConfigurationError: If the file is missing, malformed or inconsistent
    """
    config = PipelineConfigLoader(config_path).build()
    if extra_truncating_domains:
        merged = list(dict.fromkeys(config.truncating_sender_domains + extra_truncating_domains))
        config = config.model_copy(update={"truncating_sender_domains": merged})
    logger.info(
        f"Pipeline config: auto_approve={config.thresholds.auto_approve}, "
        f"needs_review={config.thresholds.needs_review}, "
        f"min_storage={config.thresholds.min_storage}, "
        f"cache_ttl_days={config.cache_ttl_days}"
    )
    return config
