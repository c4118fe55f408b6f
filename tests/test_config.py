"""Tests for configuration loading and validation."""

import tempfile
from pathlib import Path

import pytest
import yaml

from eventdedup.config import (
    Algorithms,
    ConfigurationError,
    DedupConfig,
    Performance,
    Thresholds,
    Weights,
    config_from_dict,
    load_config,
    merge_config,
    validate_config,
)
from eventdedup.models.results import ConflictStrategy


class TestSections:
    """Tests for configuration section dataclasses."""

    def test_threshold_defaults(self):
        thresholds = Thresholds()
        assert thresholds.title == 0.85
        assert thresholds.overall == 0.80

    def test_weight_defaults(self):
        weights = Weights()
        assert weights.title == 0.35
        assert weights.semantic == 0.05

    def test_engine_defaults(self):
        config = DedupConfig()
        assert config.algorithms.string_matching == "hybrid"
        assert config.performance.max_candidates == 50
        assert config.quality.auto_merge_threshold == 0.95
        assert config.sources == {}

    def test_env_override(self, monkeypatch):
        """Environment variables override section values."""
        monkeypatch.setenv("DEDUP_THRESHOLDS_OVERALL", "0.7")
        assert Thresholds().overall == 0.7

    def test_env_override_bool(self, monkeypatch):
        monkeypatch.setenv("DEDUP_ALGORITHMS_FUZZY_DATE", "false")
        assert Algorithms().fuzzy_date is False

    def test_env_override_int(self, monkeypatch):
        monkeypatch.setenv("DEDUP_PERFORMANCE_BATCH_SIZE", "25")
        assert Performance().batch_size == 25

    def test_env_override_invalid(self, monkeypatch):
        monkeypatch.setenv("DEDUP_PERFORMANCE_BATCH_SIZE", "many")
        with pytest.raises(ConfigurationError, match="DEDUP_PERFORMANCE_BATCH_SIZE"):
            Performance()

    def test_env_override_beats_file_value(self, monkeypatch):
        monkeypatch.setenv("DEDUP_THRESHOLDS_OVERALL", "0.7")
        config = config_from_dict({"thresholds": {"overall": 0.9}})
        assert config.thresholds.overall == 0.7

    def test_to_dict(self):
        data = DedupConfig().to_dict()
        assert set(data) == {
            "thresholds",
            "weights",
            "algorithms",
            "performance",
            "quality",
            "sources",
            "rules",
            "logging",
        }
        assert data["weights"]["venue"] == 0.25


class TestConfigFromDict:
    """Tests for config_from_dict and validate_config."""

    def test_partial_sections(self):
        config = config_from_dict({"weights": {"title": 0.5}})
        assert config.weights.title == 0.5
        assert config.weights.venue == 0.25

    def test_sources_and_rules(self):
        config = config_from_dict(
            {
                "sources": {"shotgun": {"reliability": 0.7, "last_updated": "2025-03-01"}},
                "rules": {"category": {"strategy": "latest_wins", "priority": 4}},
            }
        )
        assert config.sources["shotgun"].reliability == 0.7
        assert config.sources["shotgun"].last_updated.year == 2025
        assert config.rules["category"].strategy is ConflictStrategy.LATEST_WINS

    def test_unknown_key(self):
        with pytest.raises(ConfigurationError, match="thresholds"):
            config_from_dict({"thresholds": {"titel": 0.5}})

    def test_out_of_range_threshold(self):
        with pytest.raises(ConfigurationError, match="thresholds -> overall"):
            validate_config({"thresholds": {"overall": 1.2}})

    def test_unknown_algorithm(self):
        with pytest.raises(ConfigurationError, match="string_matching"):
            config_from_dict({"algorithms": {"string_matching": "soundex"}})

    def test_rule_requires_strategy(self):
        with pytest.raises(ConfigurationError):
            config_from_dict({"rules": {"title": {"priority": 3}}})


class TestMergeConfig:
    def test_merges_over_base(self):
        base = config_from_dict({"performance": {"batch_size": 10}})
        merged = merge_config(base, {"performance": {"max_candidates": 5}})
        assert merged.performance.batch_size == 10
        assert merged.performance.max_candidates == 5
        assert base.performance.max_candidates == 50

    def test_invalid_partial(self):
        with pytest.raises(ConfigurationError):
            merge_config(DedupConfig(), {"weights": {"title": -1}})

    def test_not_a_mapping(self):
        with pytest.raises(ConfigurationError, match="mapping"):
            merge_config(DedupConfig(), ["thresholds"])


class TestLoadConfig:
    """Tests for load_config."""

    @pytest.fixture
    def temp_config_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    def test_defaults_without_file(self):
        assert load_config(None).thresholds.overall == 0.80

    def test_load_valid_config(self, temp_config_dir):
        config_file = temp_config_dir / "config.yaml"
        with open(config_file, "w") as f:
            yaml.dump(
                {
                    "thresholds": {"overall": 0.75},
                    "quality": {"require_manual_review": True},
                    "logging": {"log_level": "DEBUG"},
                },
                f,
            )

        config = load_config(config_file)
        assert config.thresholds.overall == 0.75
        assert config.quality.require_manual_review is True
        assert config.logging == {"log_level": "DEBUG"}

    def test_file_not_found(self):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(Path("/nonexistent/config.yaml"))

    def test_empty_file_uses_defaults(self, temp_config_dir):
        config_file = temp_config_dir / "config.yaml"
        config_file.write_text("")
        assert load_config(config_file).weights.title == 0.35

    def test_invalid_yaml(self, temp_config_dir):
        config_file = temp_config_dir / "config.yaml"
        config_file.write_text("invalid: yaml: content: [")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(config_file)

    def test_top_level_must_be_mapping(self, temp_config_dir):
        config_file = temp_config_dir / "config.yaml"
        config_file.write_text("- thresholds\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_config(config_file)
