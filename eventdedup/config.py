"""Configuration loading and validation for the deduplication engine."""

import copy
import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path

import jsonschema
import yaml

from .logger import get_logger
from .models.results import ConflictRule, DataSource

logger = get_logger(__name__)

ENV_PREFIX = "DEDUP"
SCHEMA_PATH = Path(__file__).parent / "config.schema.json"

STRING_ALGORITHMS = ("levenshtein", "jaro_winkler", "cosine", "hybrid")
LOCATION_MODES = ("coordinates", "address", "hybrid")


class ConfigurationError(Exception):
    """Raised when configuration is invalid."""

    pass


def _coerce(raw: str, current, env_name: str):
    """Convert an environment string to the type of the value it replaces."""
    try:
        if isinstance(current, bool):
            return raw.lower() in ("true", "1", "yes")
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid value for {env_name}: {raw!r}") from e
    return raw


class _Section:
    """Mixin applying DEDUP_<SECTION>_<KEY> environment overrides."""

    SECTION = ""

    def __post_init__(self):
        """Apply environment variable overrides."""
        for f in fields(self):
            env_name = f"{ENV_PREFIX}_{self.SECTION.upper()}_{f.name.upper()}"
            raw = os.environ.get(env_name)
            if raw is None:
                continue
            value = _coerce(raw, getattr(self, f.name), env_name)
            logger.debug(f"Overriding {self.SECTION}.{f.name} from environment: {value}")
            setattr(self, f.name, value)


@dataclass
class Thresholds(_Section):
    """Per-dimension acceptance thresholds for duplicate detection."""

    SECTION = "thresholds"

    title: float = 0.85
    venue: float = 0.80
    location: float = 0.75
    date: float = 0.90
    semantic: float = 0.75
    overall: float = 0.80


@dataclass
class Weights(_Section):
    """Per-dimension weights of the overall similarity score."""

    SECTION = "weights"

    title: float = 0.35
    venue: float = 0.25
    location: float = 0.20
    date: float = 0.15
    semantic: float = 0.05


@dataclass
class Algorithms(_Section):
    """Matching algorithm selection."""

    SECTION = "algorithms"

    string_matching: str = "hybrid"
    semantic_matching: bool = True
    location_matching: str = "hybrid"
    fuzzy_date: bool = True


@dataclass
class Performance(_Section):
    """Batching, caching and concurrency limits."""

    SECTION = "performance"

    batch_size: int = 100
    max_candidates: int = 50
    enable_caching: bool = True
    parallel_processing: bool = True
    max_concurrency: int = 4
    cache_size: int = 10_000
    history_size: int = 100


@dataclass
class Quality(_Section):
    """Merge quality gates."""

    SECTION = "quality"

    minimum_quality_score: float = 0.7
    require_manual_review: bool = False
    auto_merge_threshold: float = 0.95


@dataclass
class DedupConfig:
    """Complete engine configuration."""

    thresholds: Thresholds = field(default_factory=Thresholds)
    weights: Weights = field(default_factory=Weights)
    algorithms: Algorithms = field(default_factory=Algorithms)
    performance: Performance = field(default_factory=Performance)
    quality: Quality = field(default_factory=Quality)
    sources: dict[str, DataSource] = field(default_factory=dict)
    rules: dict[str, ConflictRule] = field(default_factory=dict)
    logging: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Plain dictionary suitable for YAML/JSON export."""
        return {
            "thresholds": asdict(self.thresholds),
            "weights": asdict(self.weights),
            "algorithms": asdict(self.algorithms),
            "performance": asdict(self.performance),
            "quality": asdict(self.quality),
            "sources": {name: s.to_dict() for name, s in self.sources.items()},
            "rules": {name: r.to_dict() for name, r in self.rules.items()},
            "logging": dict(self.logging),
        }

    def weights_dict(self) -> dict[str, float]:
        return asdict(self.weights)

    def thresholds_dict(self) -> dict[str, float]:
        return asdict(self.thresholds)


def config_from_dict(raw: dict | None) -> DedupConfig:
    """
    Build a DedupConfig from a (possibly partial) dictionary.

    Missing sections and keys take their defaults.

    Raises:
        ConfigurationError: If the dictionary does not match the schema
    """
    raw = raw or {}
    validate_config(raw)

    try:
        return DedupConfig(
            thresholds=Thresholds(**raw.get("thresholds", {})),
            weights=Weights(**raw.get("weights", {})),
            algorithms=Algorithms(**raw.get("algorithms", {})),
            performance=Performance(**raw.get("performance", {})),
            quality=Quality(**raw.get("quality", {})),
            sources={
                name: DataSource.from_dict(name, data or {})
                for name, data in (raw.get("sources") or {}).items()
            },
            rules={
                name: ConflictRule.from_dict(name, data or {})
                for name, data in (raw.get("rules") or {}).items()
            },
            logging=dict(raw.get("logging") or {}),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def load_config(config_path: Path | None = None) -> DedupConfig:
    """
    Load and validate engine configuration from a YAML file.

    Args:
        config_path: Path to the YAML file, or None for defaults

    Returns:
        DedupConfig with defaults filled in and environment overrides applied

    Raises:
        ConfigurationError: If configuration is invalid
    """
    if config_path is None:
        return config_from_dict({})

    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    logger.info(f"Loading configuration from {config_path}")

    try:
        with open(config_path, encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config: {e}") from e

    if raw_config is None:
        logger.warning(f"Config file {config_path} is empty, using defaults")
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Config file must contain a mapping at the top level")

    return config_from_dict(raw_config)


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def merge_config(base: DedupConfig, partial: dict) -> DedupConfig:
    """
    Return a new config with a partial update merged over ``base``.

    Raises:
        ConfigurationError: If the merged result is invalid (unknown keys,
            out-of-range values)
    """
    if not isinstance(partial, dict):
        raise ConfigurationError("Configuration update must be a mapping")
    return config_from_dict(_deep_merge(base.to_dict(), partial))


def _load_schema() -> dict:
    try:
        with open(SCHEMA_PATH, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read config schema {SCHEMA_PATH}: {e}") from e


def validate_config(config: dict) -> None:
    """
    Validate a configuration dictionary against the bundled JSON Schema.

    Raises:
        ConfigurationError: If validation fails
    """
    schema = _load_schema()

    try:
        jsonschema.validate(instance=config, schema=schema)
    except jsonschema.ValidationError as e:
        path = " -> ".join(str(p) for p in e.absolute_path) if e.absolute_path else "root"
        raise ConfigurationError(f"Configuration validation failed at '{path}': {e.message}") from e

    logger.debug("Configuration validated against schema")
