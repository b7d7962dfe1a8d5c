"""Configuration loading and Drive token lookup."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import keyring

from memorybook.models import SyncConfig

logger = logging.getLogger(__name__)

SERVICE_NAME = "memorybook-drive"
KEY_NAME = "access_token"
TOKEN_ENV_VAR = "MEMORYBOOK_DRIVE_TOKEN"
DEFAULT_CONFIG_PATH = Path("config/memorybook.json")


def get_access_token() -> str:
    """Get the Drive access token: system keyring first, then the env var.

    Returns:
        Bearer token string.

    Raises:
        RuntimeError: If no token is found anywhere, with setup instructions.
    """
    token = keyring.get_password(SERVICE_NAME, KEY_NAME)
    if token:
        return token

    token = os.environ.get(TOKEN_ENV_VAR)
    if token:
        return token

    raise RuntimeError(
        "Drive access token not found.\n"
        "Set it with: memorybook config set-token YOUR_TOKEN\n"
        f"Or: export {TOKEN_ENV_VAR}=your-token"
    )


def set_access_token(token: str) -> None:
    keyring.set_password(SERVICE_NAME, KEY_NAME, token)


def delete_access_token() -> bool:
    """Remove the stored token. Returns False when none was stored."""
    if keyring.get_password(SERVICE_NAME, KEY_NAME) is None:
        return False
    keyring.delete_password(SERVICE_NAME, KEY_NAME)
    return True


def load_sync_config(config_path: Path | None = None) -> SyncConfig:
    """Load session configuration from JSON, falling back to defaults.

    Reads ``config/memorybook.json`` when *config_path* is ``None``. A
    missing file yields the defaults; unknown keys are ignored. The access
    token is never read from the file, only from the keyring (service
    ``memorybook-drive``, key ``access_token``).

    Args:
        config_path: Optional explicit path to the JSON file.

    Returns:
        SyncConfig populated from the file plus the keyring token.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    data: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{config_path}: expected a JSON object, got {type(data).__name__}")

    field_names = {f.name for f in SyncConfig.__dataclass_fields__.values()} - {"access_token"}
    kwargs = {k: v for k, v in data.items() if k in field_names}
    ignored = sorted(set(data) - set(kwargs))
    if ignored:
        logger.debug("Ignoring unknown config keys in %s: %s", config_path, ", ".join(ignored))

    config = SyncConfig(**kwargs)
    if config.access_token is None:
        config.access_token = keyring.get_password(SERVICE_NAME, KEY_NAME)
    return config
