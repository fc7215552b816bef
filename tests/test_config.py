"""Tests for configuration loading."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from marginalia.config import Config, HypothesisConfig, PollerConfig


def write_config(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data))
    return path


class TestDefaults:
    def test_defaults(self) -> None:
        config = Config()

        assert config.log_level == "INFO"
        assert config.log_json is True
        assert config.discord.ignore_bots is True
        assert config.hypothesis.api_url == "https://api.hypothes.is/api"
        assert config.hypothesis.link_url == "https://hypothes.is/a/"
        assert config.hypothesis.page_size == 200
        assert config.poller.interval_seconds == 60
        assert config.poller.max_ancestor_depth == 100

    def test_database_path(self, tmp_path: Path) -> None:
        config = Config(data_dir=tmp_path)
        assert config.database_path == tmp_path / "marginalia.db"

    def test_discord_token_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DISCORD_TOKEN", "secret")
        assert Config().discord_token == "secret"

    def test_discord_token_missing(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DISCORD_TOKEN", raising=False)
        assert Config().discord_token is None


class TestValidation:
    def test_log_level_normalized(self) -> None:
        assert Config(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self) -> None:
        with pytest.raises(ValidationError):
            Config(log_level="LOUD")

    @pytest.mark.parametrize("page_size", [0, 201])
    def test_page_size_bounds(self, page_size: int) -> None:
        with pytest.raises(ValidationError):
            HypothesisConfig(page_size=page_size)

    def test_api_url_trailing_slash(self) -> None:
        assert HypothesisConfig(api_url="https://h.test/api/").api_url == "https://h.test/api"

    def test_interval_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            PollerConfig(interval_seconds=0)


class TestLoad:
    def test_load_yaml(self, tmp_path: Path) -> None:
        path = write_config(
            tmp_path / "config.yaml",
            {
                "data_dir": str(tmp_path / "data"),
                "log_level": "WARNING",
                "hypothesis": {"page_size": 50},
                "poller": {"interval_seconds": 5},
            },
        )

        config = Config.load(path)

        assert config.data_dir == tmp_path / "data"
        assert config.log_level == "WARNING"
        assert config.hypothesis.page_size == 50
        assert config.poller.interval_seconds == 5

    def test_load_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert Config.load(path).log_level == "INFO"

    def test_load_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            Config.load(tmp_path / "nope.yaml")

    def test_env_overrides(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = write_config(tmp_path / "config.yaml", {"log_level": "INFO", "log_json": True})
        monkeypatch.setenv("MARGINALIA_DATA_DIR", str(tmp_path / "env"))
        monkeypatch.setenv("MARGINALIA_LOG_LEVEL", "error")
        monkeypatch.setenv("MARGINALIA_LOG_JSON", "false")

        config = Config.load(path)

        assert config.data_dir == tmp_path / "env"
        assert config.log_level == "ERROR"
        assert config.log_json is False

    def test_load_or_default_missing(self, tmp_path: Path) -> None:
        assert Config.load_or_default(tmp_path / "nope.yaml") == Config()

    def test_load_or_default_searches_cwd(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        write_config(tmp_path / "config.yaml", {"log_level": "DEBUG"})
        monkeypatch.chdir(tmp_path)

        assert Config.load_or_default().log_level == "DEBUG"
