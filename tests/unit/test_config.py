"""Tests for configuration management."""

import pytest
import yaml

from mansion.data.models import Size
from mansion.server.config import BrokerConfig, Config, ProvisioningConfig, ServerConfig


class TestConfig:
    def test_default_config(self):
        config = Config()
        assert config.server.host == "127.0.0.1"
        assert config.server.port == 8080
        assert config.provisioning.first_backoff == 2
        assert config.provisioning.max_backoff == 600
        assert config.templates == []

    def test_from_dict(self):
        data = {
            "broker": {
                "url": "https://broker.test/",
                "default_account": "main",
                "accounts": {"main": "secret"},
                "verify": False,
            },
            "provisioning": {
                "first_backoff": 5,
                "failure_cap": 3,
                "unknown_setting": True,
            },
            "server": {"host": "0.0.0.0", "port": 9000},
            "templates": [
                {"id": "lxc-fedora17", "mansion_type": "lxc", "default_size": "small"},
            ],
            "data_dir": "/tmp/mansion",
            "logging": {"level": "DEBUG"},
        }
        config = Config.from_dict(data)

        assert config.broker.url == "https://broker.test/"
        assert config.broker.verify is False
        assert config.token_for("main") == "secret"
        assert config.provisioning.first_backoff == 5
        assert config.provisioning.failure_cap == 3
        assert config.provisioning.max_backoff == 600
        assert config.server.port == 9000
        assert config.templates[0].default_size == Size.SMALL
        assert config.data_dir == "/tmp/mansion"
        assert config.log_level == "DEBUG"

    def test_from_yaml(self, tmp_path):
        yaml_content = """
broker:
  url: https://broker.test/
provisioning:
  idle_timeout: 30
templates:
  - id: osx
    mansion_type: osx
    name_match_required: true
server:
  port: 8888
"""
        config_file = tmp_path / "config.yaml"
        config_file.write_text(yaml_content)

        config = Config.from_yaml(config_file)

        assert config.provisioning.idle_timeout == 30
        assert config.templates[0].name_match_required is True
        assert config.server.port == 8888

    def test_from_yaml_missing_file(self, tmp_path):
        config = Config.from_yaml(tmp_path / "missing.yaml")
        assert config.server.port == 8080

    def test_load_from_env(self, tmp_path, monkeypatch):
        config_file = tmp_path / "env.yaml"
        config_file.write_text(yaml.safe_dump({"server": {"port": 7000}}))
        monkeypatch.setenv("MANSION_CONFIG", str(config_file))
        monkeypatch.chdir(tmp_path)

        assert Config.load().server.port == 7000

    def test_explicit_path_wins(self, tmp_path, monkeypatch):
        explicit = tmp_path / "explicit.yaml"
        explicit.write_text(yaml.safe_dump({"server": {"port": 7001}}))
        env = tmp_path / "env.yaml"
        env.write_text(yaml.safe_dump({"server": {"port": 7002}}))
        monkeypatch.setenv("MANSION_CONFIG", str(env))

        assert Config.load(str(explicit)).server.port == 7001

    def test_token_falls_back_to_default_account(self):
        config = Config(broker=BrokerConfig(default_account="main", accounts={"main": "t0"}))
        assert config.token_for("other") == "t0"
        assert config.token_for(None) == "t0"
        assert Config().token_for("other") is None

    def test_to_dict_round_trip(self):
        config = Config.from_dict({
            "templates": [{"id": "t", "mansion_type": "lxc"}],
            "server": {"port": 9100},
        })
        again = Config.from_dict(config.to_dict())

        assert again.server == config.server
        assert again.provisioning == config.provisioning
        assert again.templates == config.templates


class TestProvisioningConfig:
    def test_to_settings(self):
        settings = ProvisioningConfig(idle_timeout=12, connect_attempts=4).to_settings()
        assert settings.idle_timeout == 12
        assert settings.connect_attempts == 4
        assert settings.failure_cap == 8

    def test_server_defaults(self):
        assert ServerConfig().port == 8080
