"""Tests for config loading and token lookup."""

from __future__ import annotations

import json

import pytest

from memorybook import config as config_module
from memorybook.config import (
    KEY_NAME,
    SERVICE_NAME,
    TOKEN_ENV_VAR,
    delete_access_token,
    get_access_token,
    load_sync_config,
    set_access_token,
)
from memorybook.models import SyncConfig


class FakeKeyring:
    def __init__(self) -> None:
        self.passwords: dict[tuple[str, str], str] = {}

    def get_password(self, service, key):
        return self.passwords.get((service, key))

    def set_password(self, service, key, value):
        self.passwords[(service, key)] = value

    def delete_password(self, service, key):
        del self.passwords[(service, key)]


@pytest.fixture
def fake_keyring(monkeypatch):
    fake = FakeKeyring()
    monkeypatch.setattr(config_module, "keyring", fake)
    monkeypatch.delenv(TOKEN_ENV_VAR, raising=False)
    return fake


class TestAccessToken:
    """Keyring first, then the environment."""

    def test_keyring_token(self, fake_keyring):
        set_access_token("from-keyring")
        assert fake_keyring.passwords == {(SERVICE_NAME, KEY_NAME): "from-keyring"}
        assert get_access_token() == "from-keyring"

    def test_env_fallback(self, fake_keyring, monkeypatch):
        monkeypatch.setenv(TOKEN_ENV_VAR, "from-env")
        assert get_access_token() == "from-env"

    def test_missing_token_explains_setup(self, fake_keyring):
        with pytest.raises(RuntimeError, match="config set-token"):
            get_access_token()

    def test_delete(self, fake_keyring):
        assert not delete_access_token()
        set_access_token("t")
        assert delete_access_token()
        assert fake_keyring.passwords == {}


class TestLoadSyncConfig:
    def test_missing_file_gives_defaults(self, tmp_path, fake_keyring):
        config = load_sync_config(tmp_path / "absent.json")
        assert config == SyncConfig()

    def test_file_values_override_defaults(self, tmp_path, fake_keyring):
        path = tmp_path / "memorybook.json"
        path.write_text(
            json.dumps(
                {
                    "remote_folder_id": "folder-x",
                    "sync_interval": 5,
                    "rate_limit_tier": "conservative",
                    "upload_oversized": True,
                    "unknown": 1,
                }
            )
        )
        config = load_sync_config(path)

        assert config.remote_folder_id == "folder-x"
        assert config.sync_interval == 5
        assert config.rate_limit_tier == "conservative"
        assert config.upload_oversized
        assert config.db_path == SyncConfig().db_path

    def test_token_never_read_from_file(self, tmp_path, fake_keyring):
        path = tmp_path / "memorybook.json"
        path.write_text(json.dumps({"access_token": "leaked"}))
        assert load_sync_config(path).access_token is None

        fake_keyring.set_password(SERVICE_NAME, KEY_NAME, "safe")
        assert load_sync_config(path).access_token == "safe"

    def test_non_object_rejected(self, tmp_path, fake_keyring):
        path = tmp_path / "memorybook.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError, match="expected a JSON object"):
            load_sync_config(path)

    def test_default_path(self, tmp_path, fake_keyring, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "memorybook.json").write_text(json.dumps({"db_path": "x.db"}))
        assert load_sync_config().db_path == "x.db"
