"""
Tests for the settings layer: defaults, TOML config, environment overrides,
and the CLI resolution helpers built on top of it.
"""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest
from pydantic import ValidationError

from wocore.bitcoin import NetworkType
from wocore.cli_common import parse_server_address, resolve_backend_settings
from wocore.settings import (
    WatchOnlySettings,
    ensure_config_file,
    generate_config_template,
    get_config_path,
    get_settings,
    reset_settings,
)


class TestDefaults:
    def test_default_values(self):
        settings = WatchOnlySettings()
        assert settings.bitcoin.network == NetworkType.TESTNET
        assert settings.bitcoin.backend_type == "electrum"
        assert settings.wallet.gap_limit == 20
        assert settings.wallet.coin_selection == "largest_first"
        assert settings.wallet.require_checksum is True
        assert settings.wallet.store == "memory"
        assert settings.retry.attempts == 3

    def test_electrum_server_follows_network(self):
        settings = WatchOnlySettings(bitcoin={"network": "mainnet"})
        assert settings.get_electrum_server() == ("electrum.blockstream.info", 50002)

    def test_esplora_url_strips_trailing_slash(self):
        settings = WatchOnlySettings(bitcoin={"esplora_url": "https://example.org/api/"})
        assert settings.get_esplora_url() == "https://example.org/api"

    def test_invalid_gap_limit_rejected(self):
        with pytest.raises(ValidationError):
            WatchOnlySettings(wallet={"gap_limit": 0})

    def test_invalid_backend_rejected(self):
        with pytest.raises(ValidationError):
            WatchOnlySettings(bitcoin={"backend_type": "neutrino"})


class TestSources:
    def test_config_path_uses_data_dir(self, isolated_settings: Path):
        assert get_config_path() == isolated_settings / "config.toml"

    def test_config_file_env_wins(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        custom = tmp_path / "custom.toml"
        monkeypatch.setenv("WO_WALLET_CONFIG_FILE", str(custom))
        assert get_config_path() == custom

    def test_toml_values_are_loaded(self, isolated_settings: Path):
        (isolated_settings / "config.toml").write_text(
            '[bitcoin]\nbackend_type = "esplora"\n\n[wallet]\ngap_limit = 50\n'
        )
        settings = WatchOnlySettings()
        assert settings.bitcoin.backend_type == "esplora"
        assert settings.wallet.gap_limit == 50

    def test_env_overrides_toml(self, isolated_settings: Path, monkeypatch: pytest.MonkeyPatch):
        (isolated_settings / "config.toml").write_text("[wallet]\ngap_limit = 50\n")
        monkeypatch.setenv("WALLET__GAP_LIMIT", "75")
        assert WatchOnlySettings().wallet.gap_limit == 75

    def test_get_settings_is_cached(self):
        first = get_settings()
        assert get_settings() is first
        reset_settings()
        assert get_settings() is not first


class TestTemplate:
    def test_template_is_valid_toml_with_everything_commented(self):
        template = generate_config_template()
        assert tomllib.loads(template) == {
            "bitcoin": {},
            "wallet": {},
            "retry": {},
            "logging": {},
        }
        assert "# gap_limit = 20" in template

    def test_ensure_config_file_creates_once(self, isolated_settings: Path):
        path = ensure_config_file(isolated_settings)
        assert path.exists()
        path.write_text("# edited\n")
        ensure_config_file(isolated_settings)
        assert path.read_text() == "# edited\n"


class TestBackendResolution:
    def test_cli_overrides_settings(self, tmp_path: Path):
        settings = WatchOnlySettings()
        resolved = resolve_backend_settings(
            settings,
            network="regtest",
            backend_type="esplora",
            server="http://127.0.0.1:3002/",
            data_dir=tmp_path,
        )
        assert resolved.network == NetworkType.REGTEST
        assert resolved.backend_type == "esplora"
        assert resolved.esplora_url == "http://127.0.0.1:3002"
        assert resolved.data_dir == tmp_path

    def test_network_override_changes_default_endpoints(self):
        settings = WatchOnlySettings()
        resolved = resolve_backend_settings(settings, network="signet")
        assert (resolved.electrum_host, resolved.electrum_port) == ("mempool.space", 60602)

    def test_electrum_server_override(self):
        resolved = resolve_backend_settings(WatchOnlySettings(), server="ssl://node.local:50002")
        assert resolved.electrum_host == "node.local"
        assert resolved.electrum_port == 50002

    def test_rpc_password_is_unwrapped(self):
        settings = WatchOnlySettings(bitcoin={"rpc_password": "hunter2"})
        resolved = resolve_backend_settings(settings, backend_type="bitcoin_core")
        assert resolved.rpc_password == "hunter2"

    def test_invalid_network_raises(self):
        with pytest.raises(ValueError):
            resolve_backend_settings(WatchOnlySettings(), network="moonnet")


class TestParseServerAddress:
    def test_host_only(self):
        assert parse_server_address("example.org", 50002) == ("example.org", 50002)

    def test_scheme_and_port(self):
        assert parse_server_address("tcp://example.org:50001", 50002) == ("example.org", 50001)

    def test_bad_port(self):
        with pytest.raises(ValueError, match="Invalid port"):
            parse_server_address("example.org:abc", 50002)
