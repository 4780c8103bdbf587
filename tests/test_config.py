"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for ledger configs.
"""

import os
import shutil
import tempfile

import pytest
import yaml

from ai_credit_ledger.config.loader import (
    GenerationConfig,
    LedgerConfig,
    PlanConfig,
    QualityThresholds,
    default_config,
    load_config,
)
from ai_credit_ledger.core.retry import RetryPolicy


class TestDefaultConfig:
    """Test built-in configuration."""

    def test_default_plans(self):
        """Verify the built-in plan tiers."""
        config = default_config()

        freemium = config.get_plan("freemium")
        assert freemium.chunk_limit == 1000
        assert freemium.monthly_credits == 200
        assert freemium.monthly_word_cap == 1000
        assert freemium.max_prompt_words == 500
        assert freemium.max_output_words == 1000
        assert freemium.is_quota_limited
        assert not freemium.accumulate

        pro = config.get_plan("pro")
        assert pro.chunk_limit == 2000
        assert pro.monthly_credits == 2000
        assert not pro.is_quota_limited
        assert pro.accumulate
        assert pro.max_prompt_words == 5000
        assert pro.max_output_words is None

        assert config.get_plan("custom").monthly_credits == 3300

    def test_plan_lookup_is_case_insensitive(self):
        assert default_config().get_plan("PRO").name == "pro"

    def test_unknown_plan_uses_default(self):
        """Test plan lookup with defaults fallback."""
        assert default_config().get_plan("platinum").name == "freemium"
        assert default_config().get_plan(None).name == "freemium"

    def test_default_generation_settings(self):
        generation = default_config().generation
        assert generation.max_refinement_cycles == 2
        assert generation.similarity_threshold == 0.8
        assert generation.quality_estimate_factors["premium"] == 1.1


class TestConfigValidation:
    """Test dataclass-level validation."""

    def test_invalid_plan_values(self):
        with pytest.raises(ValueError, match="chunk_limit must be > 0"):
            PlanConfig(name="bad", chunk_limit=0, monthly_credits=10, accumulate=False)
        with pytest.raises(ValueError, match="monthly_word_cap must be > 0"):
            PlanConfig(name="bad", chunk_limit=10, monthly_credits=10, accumulate=False, monthly_word_cap=0)
        with pytest.raises(ValueError, match="max_output_words must be > 0"):
            PlanConfig(name="bad", chunk_limit=10, monthly_credits=10, accumulate=False, max_output_words=0)

    def test_threshold_ordering(self):
        with pytest.raises(ValueError, match="plagiarism thresholds"):
            QualityThresholds(plagiarism_medium=60, plagiarism_high=50)
        with pytest.raises(ValueError, match="ai thresholds"):
            QualityThresholds(ai_medium=90, ai_high=85)

    def test_generation_bounds(self):
        with pytest.raises(ValueError, match="similarity_threshold"):
            GenerationConfig(similarity_threshold=0)
        with pytest.raises(ValueError, match="context_sentences"):
            GenerationConfig(context_sentences=3)
        with pytest.raises(ValueError, match="quality_estimate_factors"):
            GenerationConfig(quality_estimate_factors={"standard": 0.9})

    def test_default_plan_must_exist(self):
        with pytest.raises(ValueError, match="default_plan"):
            LedgerConfig(default_plan="missing")

    def test_retry_bounds(self):
        with pytest.raises(ValueError, match="max_attempts"):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError, match="backoff_max"):
            RetryPolicy(backoff_base=1.0, backoff_max=0.5)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data: dict, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "plans": {
                "Starter": {
                    "chunk_limit": 500,
                    "monthly_credits": 100,
                    "accumulate": False,
                    "monthly_word_cap": 800,
                    "max_prompt_words": 200,
                    "max_output_words": 1500
                },
                "team": {
                    "chunk_limit": 3000,
                    "monthly_credits": 5000
                }
            },
            "default_plan": "starter",
            "credit_ratios": {"writing": 4},
            "generation": {"max_refinement_cycles": 1, "similarity_threshold": 0.9},
            "quality": {"ai_medium": 60, "ai_high": 80},
            "store": {"busy_timeout": 1, "max_attempts": 5, "backoff_base": 0.05}
        }

        config = load_config(self._write_config(config_data))

        assert set(config.plans) == {"starter", "team"}
        assert config.default_plan == "starter"
        starter = config.get_plan("starter")
        assert starter.chunk_limit == 500
        assert starter.monthly_word_cap == 800
        assert starter.max_prompt_words == 200
        assert starter.max_output_words == 1500
        team = config.get_plan("team")
        assert team.accumulate
        assert team.monthly_word_cap is None
        assert team.max_output_words is None

        assert config.credit_ratios.writing == 4
        assert config.credit_ratios.research == 5
        assert config.generation.max_refinement_cycles == 1
        assert config.generation.similarity_threshold == 0.9
        assert config.quality.ai_high == 80.0
        assert config.quality.plagiarism_high == 50
        assert config.store.busy_timeout == 1.0
        assert config.store.retry.max_attempts == 5
        assert config.store.retry.backoff_base == 0.05

    def test_partial_config_keeps_defaults(self):
        """Omitted sections take built-in defaults."""
        config = load_config(self._write_config({"quality": {"readability_grade": 10}}))

        assert config.quality.readability_grade == 10.0
        assert config.get_plan("pro").monthly_credits == 2000
        assert config.store.retry.max_attempts == 3

    def test_missing_file_raises_error(self):
        """Test that missing config file raises error."""
        with pytest.raises(FileNotFoundError, match="Ledger config file not found"):
            load_config("nonexistent.yaml")

    def test_empty_config_raises_error(self):
        """Test that empty config file raises error."""
        config_path = self._write_config({})

        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_config(config_path)

    def test_invalid_yaml_raises_error(self):
        """Test that invalid YAML raises error."""
        config_path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(config_path, 'w') as f:
            f.write("invalid: yaml: content: [")

        with pytest.raises(yaml.YAMLError):
            load_config(config_path)

    def test_unknown_top_level_keys_raise_error(self):
        """Test that unknown top-level keys raise error."""
        config_path = self._write_config({"budget": {"daily": 10}})

        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_config(config_path)

    def test_unknown_plan_keys_raise_error(self):
        config_data = {
            "plans": {
                "pro": {"chunk_limit": 2000, "monthly_credits": 2000, "rollover": True}
            },
            "default_plan": "pro"
        }

        with pytest.raises(ValueError, match="Unknown keys in plans.pro"):
            load_config(self._write_config(config_data))

    def test_missing_plan_field_raises_error(self):
        config_data = {"plans": {"pro": {"chunk_limit": 2000}}, "default_plan": "pro"}

        with pytest.raises(ValueError, match="Missing required 'monthly_credits' in plans.pro"):
            load_config(self._write_config(config_data))

    def test_non_integer_plan_limit_raises_error(self):
        config_data = {
            "plans": {"pro": {"chunk_limit": 2000, "monthly_credits": 2000, "max_prompt_words": "long"}},
            "default_plan": "pro"
        }

        with pytest.raises(ValueError, match="'max_prompt_words' in plans.pro must be an integer or null"):
            load_config(self._write_config(config_data))

    def test_non_integer_plan_field_raises_error(self):
        config_data = {
            "plans": {"pro": {"chunk_limit": "big", "monthly_credits": 2000}},
            "default_plan": "pro"
        }

        with pytest.raises(ValueError, match="'chunk_limit' in plans.pro must be an integer"):
            load_config(self._write_config(config_data))

    def test_default_plan_must_be_configured(self):
        config_data = {"plans": {"pro": {"chunk_limit": 2000, "monthly_credits": 2000}}}

        with pytest.raises(ValueError, match="default_plan 'freemium'"):
            load_config(self._write_config(config_data))

    def test_fractional_ratio_raises_error(self):
        with pytest.raises(ValueError, match="'writing' in credit_ratios must be an integer"):
            load_config(self._write_config({"credit_ratios": {"writing": 2.5}}))

    def test_non_numeric_threshold_raises_error(self):
        with pytest.raises(ValueError, match="'ai_high' in quality must be a number"):
            load_config(self._write_config({"quality": {"ai_high": "high"}}))

    def test_unknown_store_keys_raise_error(self):
        with pytest.raises(ValueError, match="Unknown keys in store"):
            load_config(self._write_config({"store": {"pool_size": 4}}))

    def test_invalid_threshold_order_in_file(self):
        with pytest.raises(ValueError, match="plagiarism thresholds"):
            load_config(self._write_config({"quality": {"plagiarism_medium": 70}}))
