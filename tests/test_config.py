"""Tests for store configuration."""

import pytest

from capture.config import (
    CONFIG_FILENAME,
    HomeConfig,
    Policy,
    ProviderConfig,
    StoreConfig,
    Timeouts,
    detect_default_reasoning,
    get_default_store_path,
    load_config,
    load_or_create_config,
    save_config,
)


class TestConfigFile:
    def test_round_trip(self, tmp_path):
        config = StoreConfig(
            path=tmp_path,
            reasoning=ProviderConfig("anthropic", {"model": "claude-haiku-4-5"}),
            policy=Policy(reprocess_batch_size=5, timeouts=Timeouts(link=12.0)),
            home=HomeConfig(47.6, -122.3),
        )
        save_config(config)
        assert load_config(tmp_path) == config

    def test_unset_home_omitted(self, tmp_path):
        save_config(StoreConfig(path=tmp_path))
        assert "[home]" not in (tmp_path / CONFIG_FILENAME).read_text()
        assert not load_config(tmp_path).home.is_set

    def test_partial_policy_keeps_defaults(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text(
            '[policy]\nfailure_threshold = 4\n\n[policy.timeouts]\nweather = 2\n'
        )
        config = load_config(tmp_path)
        assert config.policy.failure_threshold == 4
        assert config.policy.timeouts.weather == 2.0
        assert config.policy.timeouts.link == Timeouts().link
        assert config.policy.reprocess_batch_size == 3
        assert config.reasoning.name == "truncate"
        assert config.links.name == "http"

    def test_newer_version_rejected(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[store]\nversion = 99\n")
        with pytest.raises(ValueError, match="newer than supported"):
            load_config(tmp_path)

    def test_missing_config(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path)

    def test_load_or_create(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.delenv("CAPTURE_OPENAI_API_KEY", raising=False)
        store = tmp_path / "store"
        created = load_or_create_config(store)
        assert (store / CONFIG_FILENAME).exists()
        assert created.reasoning.name == "truncate"
        assert load_or_create_config(store).created == created.created
        assert created.db_path == store / "capture.db"
        assert created.queue_path == store / "queue.db"


class TestDefaults:
    def test_detect_reasoning(self, monkeypatch):
        for key in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "CAPTURE_OPENAI_API_KEY"):
            monkeypatch.delenv(key, raising=False)
        assert detect_default_reasoning().name == "truncate"
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        assert detect_default_reasoning().name == "openai"
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        assert detect_default_reasoning().name == "anthropic"

    def test_store_path_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CAPTURE_STORE_PATH", str(tmp_path))
        assert get_default_store_path() == tmp_path
