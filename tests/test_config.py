"""Tests for sourcesweep.config (TOML loading, deep merge, settings, apply_config)."""
from __future__ import annotations

import argparse

import pytest
from pydantic import ValidationError as ModelValidationError

from sourcesweep.config import Settings, _deep_update, apply_config, load_config, load_settings


class TestDeepUpdate:
    def test_deep_update_flat(self):
        """Simple key override: source value replaces target value."""
        target = {"a": 1, "b": 2}
        _deep_update(target, {"b": 99})
        assert target == {"a": 1, "b": 99}

    def test_deep_update_nested(self):
        """Nested dicts should be merged recursively."""
        target = {"inventory": {"hostname": "old", "port": 8501}}
        _deep_update(target, {"inventory": {"hostname": "new"}})
        assert target["inventory"] == {"hostname": "new", "port": 8501}


class TestLoadConfig:
    @pytest.fixture(autouse=True)
    def _isolated(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr("pathlib.Path.home", lambda: tmp_path / "fakehome")

    def test_load_config_no_files(self):
        """When no config files exist, load_config should return an empty dict."""
        assert load_config() == {}

    def test_local_file_overrides_home(self, tmp_path):
        home = tmp_path / "fakehome"
        home.mkdir()
        (home / ".sourcesweep.toml").write_text(
            '[inventory]\nhostname = "home.example"\napi_key = "from-home"\n'
        )
        (tmp_path / "sourcesweep.toml").write_text('[inventory]\nhostname = "local.example"\n')
        config = load_config()
        assert config["inventory"] == {"hostname": "local.example", "api_key": "from-home"}

    def test_invalid_toml_ignored(self, tmp_path, capsys):
        (tmp_path / "sourcesweep.toml").write_text("[inventory\nhostname=")
        assert load_config() == {}
        assert "failed to load config" in capsys.readouterr().err

    def test_load_settings_defaults(self):
        settings = load_settings()
        assert settings.inventory.port == 8501
        assert settings.inventory.verify_tls is False
        assert settings.probe.ports == [443, 80, 22, 3389]
        assert settings.probe.max_concurrent == 50
        assert "Open Collector" in settings.analysis.excluded_log_sources
        assert settings.rollback.checksum_algorithm == "sha256"


class TestSettings:
    def test_redacted_masks_keys(self):
        settings = Settings.model_validate({
            "inventory": {"api_key": "token"},
            "web": {"api_key": "web-token"},
        })
        data = settings.redacted()
        assert data["inventory"]["api_key"] == "********"
        assert data["web"]["api_key"] == "********"
        assert settings.inventory.api_key == "token"

    def test_redacted_leaves_empty_keys(self):
        assert Settings().redacted()["web"]["api_key"] == ""

    def test_bad_types_rejected(self):
        with pytest.raises(ModelValidationError):
            Settings.model_validate({"probe": {"max_concurrent": "lots"}})


class TestApplyConfig:
    def test_apply_config_sets_defaults(self):
        """apply_config pushes [web] host/port into the parser and its subparsers."""
        parser = argparse.ArgumentParser()
        subparsers = parser.add_subparsers(dest="command")
        serve = subparsers.add_parser("serve")
        serve.add_argument("--host", default="127.0.0.1")
        serve.add_argument("--port", type=int, default=8080)

        apply_config(parser, {"web": {"host": "0.0.0.0", "port": 9000}})

        args = parser.parse_args(["serve"])
        assert args.host == "0.0.0.0"
        assert args.port == 9000

    def test_apply_config_without_web_section(self):
        parser = argparse.ArgumentParser()
        parser.add_argument("--port", type=int, default=8080)
        apply_config(parser, {"inventory": {"port": 1}})
        assert parser.parse_args([]).port == 8080
