"""Tests for the configuration snapshot and settings loading."""

from __future__ import annotations

import json
import os
import tempfile

import pytest
from pydantic import ValidationError

from udsocks.config import (
    DEFAULT_RELAY_BUFFER_SIZE,
    ProxyConfig,
    ProxySettings,
    build_config,
    load_settings,
    load_settings_from_string,
)


class TestProxyConfig:
    def test_defaults(self):
        cfg = ProxyConfig(directory="/tmp/pub")
        assert cfg.own_uid == os.geteuid()
        assert cfg.allowed_uids is None
        assert cfg.effective_allowed_uids == frozenset({os.geteuid()})
        assert cfg.peer_check == "enforce"
        assert cfg.idle_timeout is None
        assert cfg.relay_buffer_size == DEFAULT_RELAY_BUFFER_SIZE

    def test_is_immutable(self):
        cfg = ProxyConfig(directory="/tmp/pub")
        with pytest.raises(ValidationError):
            cfg.directory = "/elsewhere"

    def test_allowed_uids_replace_own_uid(self):
        cfg = ProxyConfig(directory="/tmp/pub", allowed_uids=[1000, 1001])
        assert cfg.effective_allowed_uids == frozenset({1000, 1001})

    def test_rejects_empty_directory(self):
        with pytest.raises(ValidationError):
            ProxyConfig(directory="")

    def test_rejects_negative_uid(self):
        with pytest.raises(ValidationError):
            ProxyConfig(directory="/tmp/pub", allowed_uids=[-1])

    def test_rejects_unknown_peer_check_policy(self):
        with pytest.raises(ValidationError):
            ProxyConfig(directory="/tmp/pub", peer_check="sometimes")

    @pytest.mark.parametrize("field", ["handshake_timeout", "connect_timeout", "idle_timeout"])
    def test_rejects_non_positive_timeouts(self, field):
        with pytest.raises(ValidationError):
            ProxyConfig(directory="/tmp/pub", **{field: 0})

    def test_rejects_tiny_relay_buffer(self):
        with pytest.raises(ValidationError):
            ProxyConfig(directory="/tmp/pub", relay_buffer_size=16)


class TestBuildConfig:
    def test_overrides_win_over_settings(self):
        settings = ProxySettings(directory="/from/file", connect_timeout=3)
        cfg = build_config(settings, directory="/from/cli")
        assert cfg.directory == "/from/cli"
        assert cfg.connect_timeout == 3

    def test_none_overrides_are_ignored(self):
        settings = ProxySettings(directory="/from/file", allowed_uids=[42])
        cfg = build_config(settings, directory=None, allowed_uids=None)
        assert cfg.directory == "/from/file"
        assert cfg.effective_allowed_uids == frozenset({42})

    def test_without_settings(self):
        cfg = build_config(None, directory="/d", peer_check="disabled")
        assert cfg.peer_check == "disabled"

    def test_missing_directory_is_an_error(self):
        with pytest.raises(ValidationError):
            build_config(None)

    def test_listen_is_not_part_of_the_snapshot(self):
        settings = ProxySettings(directory="/d", listen=["/run/a.sock"])
        cfg = build_config(settings)
        assert not hasattr(cfg, "listen")


class TestLoadSettings:
    def setup_method(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.settings_path = os.path.join(self.tmp_dir, "settings.json")

    def teardown_method(self):
        import shutil

        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def test_returns_none_when_file_not_exists(self):
        assert load_settings("/nonexistent/path/settings.json") is None

    def test_returns_none_for_empty_file(self):
        with open(self.settings_path, "w") as f:
            f.write("")
        assert load_settings(self.settings_path) is None

    def test_returns_none_for_invalid_json(self):
        with open(self.settings_path, "w") as f:
            f.write("{ invalid json }")
        assert load_settings(self.settings_path) is None

    def test_camel_case_keys(self):
        with open(self.settings_path, "w") as f:
            json.dump(
                {
                    "directory": "/run/pub",
                    "listen": ["/run/udsocks.sock", "127.0.0.1:1080"],
                    "allowedUids": [1000],
                    "peerCheck": "disabled",
                    "idleTimeout": 900,
                },
                f,
            )
        result = load_settings(self.settings_path)
        assert result is not None
        assert result.directory == "/run/pub"
        assert result.listen == ["/run/udsocks.sock", "127.0.0.1:1080"]
        assert result.allowed_uids == [1000]
        assert result.peer_check == "disabled"
        assert result.idle_timeout == 900

    def test_partial_settings_get_defaults(self):
        result = load_settings_from_string(json.dumps({}))
        assert result is not None
        assert result.directory is None
        assert result.listen == []

    def test_rejects_empty_listen_entries(self):
        assert load_settings_from_string(json.dumps({"listen": [""]})) is None

    def test_rejects_invalid_timeout(self):
        assert load_settings_from_string(json.dumps({"connectTimeout": -1})) is None
