"""Secrets management: load OKX API credentials from environment or config file.

Priority order:
1. Environment variables: OKX_API_KEY, OKX_SECRET_KEY, OKX_PASSPHRASE
2. Config file: ~/.okx_config.json or custom path via ENV OKX_CONFIG_PATH
"""
import json
import os
from pathlib import Path
from typing import Optional, NamedTuple


class OkxCredentials(NamedTuple):
    api_key: str
    api_secret: str
    passphrase: str


def load_credentials(
    config_path: Optional[str] = None,
) -> OkxCredentials:
    """Load OKX credentials from env or config file.

    Args:
        config_path: Optional override path to config file. If not provided,
                     checks OKX_CONFIG_PATH env var, then ~/.okx_config.json

    Returns:
        OkxCredentials with api_key, api_secret, passphrase

    Raises:
        ValueError: If credentials are not found or incomplete
    """
    api_key = os.getenv("OKX_API_KEY")
    api_secret = os.getenv("OKX_SECRET_KEY")
    passphrase = os.getenv("OKX_PASSPHRASE")

    if api_key and api_secret and passphrase:
        return OkxCredentials(api_key=api_key, api_secret=api_secret, passphrase=passphrase)

    if config_path is None:
        config_path = os.getenv("OKX_CONFIG_PATH")
    if config_path is None:
        config_path = str(Path.home() / ".okx_config.json")

    config_file = Path(config_path)
    if config_file.exists():
        try:
            with config_file.open("r") as f:
                cfg = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ValueError(f"Failed to load config from {config_path}: {e}")
        api_key = api_key or cfg.get("api_key")
        api_secret = api_secret or cfg.get("api_secret")
        passphrase = passphrase or cfg.get("passphrase")

    if not api_key or not api_secret or not passphrase:
        raise ValueError(
            "Missing OKX credentials. Provide via:\n"
            "  - Environment: OKX_API_KEY, OKX_SECRET_KEY, OKX_PASSPHRASE\n"
            f"  - Config file: {config_path}\n"
            "  - OKX_CONFIG_PATH env var to override config location"
        )

    return OkxCredentials(api_key=api_key, api_secret=api_secret, passphrase=passphrase)


def save_config(
    config_path: str,
    api_key: str,
    api_secret: str,
    passphrase: str,
) -> None:
    """Save credentials to a config file for later use.

    WARNING: Stores secrets in plaintext. The file is restricted to mode 600
    where the platform allows it.
    """
    config = {
        "api_key": api_key,
        "api_secret": api_secret,
        "passphrase": passphrase,
    }
    cfg_file = Path(config_path)
    cfg_file.parent.mkdir(parents=True, exist_ok=True)

    with cfg_file.open("w") as f:
        json.dump(config, f, indent=2)

    try:
        cfg_file.chmod(0o600)
    except OSError:
        pass  # Windows doesn't support chmod
