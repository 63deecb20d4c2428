"""
Tests for configuration models and loading.
"""

import pytest
from pydantic import ValidationError

from fetchcore.config import Config, PoolConfig, RetryPolicy, load_config
from fetchcore.config.config import find_config_file


@pytest.mark.unit
class TestDefaults:
    def test_retry_defaults(self):
        policy = RetryPolicy()
        assert policy.max_retries == 3
        assert policy.base_delay == 1.0
        assert policy.backoff_multiplier == 2.0
        assert policy.retryable_status_codes == {408, 429, 500, 502, 503, 504, 507, 508, 510, 511}
        assert "connection refused" in policy.retryable_error_markers

    def test_pool_defaults(self):
        pool = PoolConfig()
        assert pool.worker_count == 10
        assert pool.rate_limit_interval == 1.0
        assert pool.concurrent_processing_threshold == 10_000
        assert pool.multiplexing_enabled is True

    def test_config_sections(self):
        config = Config()
        assert config.transport.request_timeout == 30.0
        assert config.transport.concurrent_request_timeout == 45.0
        assert config.health.check_interval == 30.0
        assert config.health.queue_high_water_mark == 100


@pytest.mark.unit
class TestValidation:
    @pytest.mark.parametrize(
        "kwargs",
        [{"max_retries": -1}, {"base_delay": -0.5}, {"backoff_multiplier": 0}],
    )
    def test_bad_retry_policy_rejected(self, kwargs):
        with pytest.raises(ValidationError):
            RetryPolicy(**kwargs)

    def test_worker_count_must_be_positive(self):
        with pytest.raises(ValidationError):
            PoolConfig(worker_count=0)

    def test_policies_are_immutable(self):
        policy = RetryPolicy()
        with pytest.raises(ValidationError):
            policy.max_retries = 10


@pytest.mark.unit
class TestLoading:
    def test_from_yaml(self, tmp_path):
        path = tmp_path / "fetchcore.yaml"
        path.write_text("retry:\n  max_retries: 5\npool:\n  worker_count: 4\n  multiplexing_enabled: false\n")
        config = Config.from_yaml(path)
        assert config.retry.max_retries == 5
        assert config.pool.worker_count == 4
        assert config.pool.multiplexing_enabled is False

    def test_from_yaml_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert Config.from_yaml(path).pool.worker_count == 10

    def test_from_yaml_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config.from_yaml(tmp_path / "missing.yaml")

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("FETCHCORE_POOL__WORKER_COUNT", "7")
        monkeypatch.setenv("FETCHCORE_RETRY__MAX_RETRIES", "1")
        config = Config()
        assert config.pool.worker_count == 7
        assert config.retry.max_retries == 1

    def test_load_config_finds_file_in_working_directory(self, tmp_path, monkeypatch):
        (tmp_path / "fetchcore.yml").write_text("pool:\n  worker_count: 2\n")
        monkeypatch.chdir(tmp_path)
        assert find_config_file() == tmp_path / "fetchcore.yml"
        assert load_config().pool.worker_count == 2

    def test_load_config_falls_back_on_invalid_file(self, tmp_path, monkeypatch):
        (tmp_path / "fetchcore.yaml").write_text("pool:\n  worker_count: -3\n")
        monkeypatch.chdir(tmp_path)
        assert load_config().pool.worker_count == 10

    def test_load_config_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert find_config_file() is None
        assert load_config().retry.max_retries == 3
