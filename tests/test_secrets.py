import json
import stat
import sys

import pytest

from dca_trader.secrets import OkxCredentials, load_credentials, save_config

ENV_VARS = ("OKX_API_KEY", "OKX_SECRET_KEY", "OKX_PASSPHRASE", "OKX_CONFIG_PATH")


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_load_credentials_from_env(clean_env):
    """Load credentials from environment variables."""
    clean_env.setenv("OKX_API_KEY", "test_key")
    clean_env.setenv("OKX_SECRET_KEY", "test_secret")
    clean_env.setenv("OKX_PASSPHRASE", "test_pass")

    creds = load_credentials(config_path="/nonexistent/path.json")
    assert creds == OkxCredentials("test_key", "test_secret", "test_pass")


def test_load_credentials_from_config_file(tmp_path, clean_env):
    """Load credentials from config file."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({
        "api_key": "file_key",
        "api_secret": "file_secret",
        "passphrase": "file_pass",
    }))

    creds = load_credentials(config_path=str(config_file))
    assert creds.api_key == "file_key"
    assert creds.api_secret == "file_secret"
    assert creds.passphrase == "file_pass"


def test_config_path_from_env(tmp_path, clean_env):
    config_file = tmp_path / "other.json"
    config_file.write_text(json.dumps({"api_key": "k", "api_secret": "s", "passphrase": "p"}))
    clean_env.setenv("OKX_CONFIG_PATH", str(config_file))

    assert load_credentials().api_key == "k"


def test_env_overrides_config_file(tmp_path, clean_env):
    """Environment variables take precedence over config file."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({
        "api_key": "file_key",
        "api_secret": "file_secret",
        "passphrase": "file_pass",
    }))

    clean_env.setenv("OKX_API_KEY", "env_key")

    creds = load_credentials(config_path=str(config_file))
    assert creds.api_key == "env_key"
    assert creds.api_secret == "file_secret"


def test_load_credentials_missing_raises(clean_env):
    """Raise ValueError if credentials are missing."""
    with pytest.raises(ValueError, match="Missing OKX credentials"):
        load_credentials(config_path="/nonexistent/path.json")


def test_incomplete_config_file_raises(tmp_path, clean_env):
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"api_key": "k", "api_secret": "s"}))

    with pytest.raises(ValueError, match="Missing OKX credentials"):
        load_credentials(config_path=str(config_file))


def test_malformed_config_file_raises(tmp_path, clean_env):
    config_file = tmp_path / "config.json"
    config_file.write_text("{not json")

    with pytest.raises(ValueError, match="Failed to load config"):
        load_credentials(config_path=str(config_file))


def test_save_and_load_config(tmp_path, clean_env):
    """Save config and load it back."""
    config_file = tmp_path / "nested" / "saved.json"

    save_config(
        config_path=str(config_file),
        api_key="saved_key",
        api_secret="saved_secret",
        passphrase="saved_pass",
    )

    assert config_file.exists()
    if sys.platform != "win32":
        assert stat.S_IMODE(config_file.stat().st_mode) == 0o600
    creds = load_credentials(config_path=str(config_file))
    assert creds == OkxCredentials("saved_key", "saved_secret", "saved_pass")
