"""Tests for loading the pipeline config from TOML and the environment."""

from pathlib import Path

import pytest

from bmgraph.config import DEFAULT_DATABASE_URL, PipelineConfig, load_pipeline_config


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run each test from an empty directory with no BMGRAPH_CONFIG."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("BMGRAPH_CONFIG", raising=False)
    return tmp_path


class TestDefaults:
    def test_defaults(self) -> None:
        config = load_pipeline_config({})
        assert config == PipelineConfig()
        assert config.queue_concurrency == 2
        assert config.retry_base_delay_seconds == 2.0
        assert config.retry_max_delay_seconds == 30.0
        assert config.retry_max_attempts == 3
        assert config.database_url == DEFAULT_DATABASE_URL

    def test_retry_policy(self) -> None:
        policy = PipelineConfig(queue_concurrency=4, retry_max_attempts=5).retry_policy()
        assert policy.max_concurrency == 4
        assert policy.max_attempts == 5
        assert policy.base_delay_seconds == 2.0
        assert policy.max_delay_seconds == 30.0

    def test_retry_policy_max_raised_to_base(self) -> None:
        policy = PipelineConfig(retry_base_delay_seconds=10, retry_max_delay_seconds=5).retry_policy()
        assert policy.max_delay_seconds == 10


class TestEnvironment:
    def test_overrides(self) -> None:
        config = load_pipeline_config(
            {
                "QUEUE_CONCURRENCY": "8",
                "RETRY_BASE_DELAY_SECONDS": "0.5",
                "LLM_MODEL": "qwen2.5:7b",
                "DATABASE_URL": "sqlite://",
            }
        )
        assert config.queue_concurrency == 8
        assert config.retry_base_delay_seconds == 0.5
        assert config.llm_model == "qwen2.5:7b"
        assert config.database_url == "sqlite://"

    @pytest.mark.parametrize("raw", ["abc", "0", "-3", ""])
    def test_invalid_values_fall_back(self, raw: str) -> None:
        config = load_pipeline_config({"QUEUE_CONCURRENCY": raw, "RETRY_MAX_DELAY_SECONDS": raw})
        assert config.queue_concurrency == 2
        assert config.retry_max_delay_seconds == 30.0

    def test_blank_string_keeps_default(self) -> None:
        assert load_pipeline_config({"OLLAMA_HOST": "   "}).ollama_host == "http://localhost:11434"


class TestTomlFile:
    def test_cwd_file(self, isolated_config: Path) -> None:
        (isolated_config / "bmgraph.toml").write_text('[pipeline]\nqueue_concurrency = 5\nllm_model = "mistral"\n')
        config = load_pipeline_config({})
        assert config.queue_concurrency == 5
        assert config.llm_model == "mistral"

    def test_env_path_and_env_override(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = tmp_path / "custom.toml"
        path.write_text("[pipeline]\nretry_max_attempts = 7\nqueue_concurrency = 3\nunknown_key = 1\n")
        monkeypatch.setenv("BMGRAPH_CONFIG", str(path))

        config = load_pipeline_config({"QUEUE_CONCURRENCY": "9"})

        assert config.retry_max_attempts == 7
        assert config.queue_concurrency == 9

    def test_invalid_toml_value_falls_back(self, isolated_config: Path) -> None:
        (isolated_config / "bmgraph.toml").write_text("[pipeline]\nretry_max_attempts = -1\n")
        assert load_pipeline_config({}).retry_max_attempts == 3

    def test_unreadable_file_ignored(self, isolated_config: Path) -> None:
        (isolated_config / "bmgraph.toml").write_text("[pipeline\nbroken")
        assert load_pipeline_config({}) == PipelineConfig()

    def test_missing_section(self, isolated_config: Path) -> None:
        (isolated_config / "bmgraph.toml").write_text("[other]\nqueue_concurrency = 5\n")
        assert load_pipeline_config({}).queue_concurrency == 2
