"""
Unit tests for configuration loading.
"""

import pytest

from filter_dsl.config import AppConfig, load_config
from filter_dsl.models import ConfigError


@pytest.fixture
def config_file(tmp_path):
    """Create a YAML config file."""
    path = tmp_path / "filter_dsl.yaml"
    path.write_text(
        "rate_limit:\n"
        "  initial_retry_delay: 0.5\n"
        "  max_retry_delay: 10\n"
        "search:\n"
        "  default_timeframe: week\n"
        "  default_num_results: 200\n"
        "  index_pattern: detections-*\n"
        "opensearch:\n"
        "  host: search.internal\n"
        "  use_ssl: true\n"
    )
    return path


class TestLoadConfig:
    """Test cases for load_config."""

    def test_defaults(self):
        """Test built-in defaults without a file or environment."""
        config = load_config(env={})
        assert config.rate_limit.initial_retry_delay == 1.0
        assert config.rate_limit.max_retry_delay == 30.0
        assert config.rate_limit.retry_multiplier == 2.0
        assert config.search.default_timeframe == "today"
        assert config.search.default_num_results == 1000
        assert config.search.max_retries == 3
        assert config.opensearch.port == 9200

    def test_yaml_file(self, config_file):
        """Test values from the file override defaults section by section."""
        config = load_config(config_file, env={})
        assert config.rate_limit.initial_retry_delay == 0.5
        assert config.rate_limit.max_retry_delay == 10.0
        assert isinstance(config.rate_limit.max_retry_delay, float)
        assert config.rate_limit.retry_multiplier == 2.0
        assert config.search.default_timeframe == "week"
        assert config.search.default_num_results == 200
        assert config.search.index_pattern == "detections-*"
        assert config.opensearch.host == "search.internal"
        assert config.opensearch.use_ssl is True

    def test_environment_overrides_file(self, config_file):
        """Test environment variables take precedence over the file."""
        env = {
            "FILTER_DSL_SEARCH_DEFAULT_TIMEFRAME": "12h",
            "FILTER_DSL_RATE_LIMIT_RETRY_MULTIPLIER": "3",
            "FILTER_DSL_OPENSEARCH_PORT": "9201",
            "FILTER_DSL_OPENSEARCH_VERIFY_CERTS": "yes",
        }
        config = load_config(config_file, env=env)
        assert config.search.default_timeframe == "12h"
        assert config.rate_limit.retry_multiplier == 3.0
        assert config.opensearch.port == 9201
        assert config.opensearch.verify_certs is True

    def test_rate_limit_conversion(self):
        """Test settings convert to limiter config."""
        limiter_config = AppConfig().rate_limit.to_rate_limit_config()
        assert limiter_config.initial_delay == 1.0
        assert limiter_config.max_delay == 30.0

    def test_missing_file(self, tmp_path):
        """Test an unreadable file raises ConfigError."""
        with pytest.raises(ConfigError, match="failed to load config"):
            load_config(tmp_path / "absent.yaml", env={})

    def test_unknown_section(self, tmp_path):
        """Test unknown sections are rejected."""
        path = tmp_path / "bad.yaml"
        path.write_text("metrics:\n  enabled: true\n")
        with pytest.raises(ConfigError, match="unknown config section"):
            load_config(path, env={})

    def test_unknown_key(self, tmp_path):
        """Test unknown keys are rejected."""
        path = tmp_path / "bad.yaml"
        path.write_text("search:\n  page_size: 5\n")
        with pytest.raises(ConfigError, match="unknown setting search.page_size"):
            load_config(path, env={})

    def test_invalid_type(self):
        """Test values that cannot be converted are rejected."""
        with pytest.raises(ConfigError, match="invalid value"):
            load_config(env={"FILTER_DSL_SEARCH_MAX_RETRIES": "many"})

    def test_invalid_multiplier(self):
        """Test range validation of the backoff settings."""
        with pytest.raises(ConfigError, match="retry_multiplier"):
            load_config(env={"FILTER_DSL_RATE_LIMIT_RETRY_MULTIPLIER": "1.0"})

    def test_initial_delay_above_max(self):
        """Test the initial delay cannot exceed the maximum."""
        with pytest.raises(ConfigError):
            load_config(env={"FILTER_DSL_RATE_LIMIT_INITIAL_RETRY_DELAY": "60"})

    def test_invalid_default_timeframe(self):
        """Test the default timeframe is validated."""
        with pytest.raises(ConfigError, match="default_timeframe"):
            load_config(env={"FILTER_DSL_SEARCH_DEFAULT_TIMEFRAME": "soon"})

    def test_oversized_default_timeframe(self):
        """Test a default timeframe beyond the duration range is rejected."""
        with pytest.raises(ConfigError, match="timeframe too large"):
            load_config(env={"FILTER_DSL_SEARCH_DEFAULT_TIMEFRAME": "999999999999h"})

    def test_scroll_settings(self):
        """Test large result defaults and the scroll threshold."""
        config = load_config(env={
            "FILTER_DSL_SEARCH_LARGE_RESULT_LIMIT": "2000",
            "FILTER_DSL_SEARCH_SCROLL_TIMEOUT": "1m",
        })
        assert config.search.large_result_limit == 2000
        assert config.search.scroll_batch_size == 1000
        assert config.search.scroll_timeout == "1m"
        assert not config.search.should_use_scroll(2000)
        assert config.search.should_use_scroll(2001)

    @pytest.mark.parametrize("key, value", [
        ("LARGE_RESULT_LIMIT", "0"),
        ("SCROLL_BATCH_SIZE", "0"),
        ("SCROLL_TIMEOUT", ""),
    ])
    def test_invalid_scroll_settings(self, key, value):
        """Test scroll settings are range checked."""
        with pytest.raises(ConfigError):
            load_config(env={f"FILTER_DSL_SEARCH_{key}": value})

    def test_zero_retries(self):
        """Test at least one attempt is required."""
        with pytest.raises(ConfigError, match="max_retries"):
            load_config(env={"FILTER_DSL_SEARCH_MAX_RETRIES": "0"})

    def test_empty_file(self, tmp_path):
        """Test an empty file keeps every default."""
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path, env={}) == AppConfig()
