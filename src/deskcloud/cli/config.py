"""CLI config — reads/writes ~/.deskcloud/config.toml."""

from __future__ import annotations

import os
import stat
import tomllib

import tomli_w


CONFIG_DIR = os.path.expanduser("~/.deskcloud")
CONFIG_PATH = os.path.join(CONFIG_DIR, "config.toml")


def load_config() -> dict:
    """Load the CLI config file, returning {} if it doesn't exist."""
    if not os.path.exists(CONFIG_PATH):
        return {}
    with open(CONFIG_PATH, "rb") as f:
        return tomllib.load(f)


def save_config(data: dict) -> None:
    """Write the CLI config file with restricted permissions (0600)."""
    os.makedirs(CONFIG_DIR, exist_ok=True)
    with open(CONFIG_PATH, "wb") as f:
        tomli_w.dump(data, f)
    os.chmod(CONFIG_PATH, stat.S_IRUSR | stat.S_IWUSR)


def get_url() -> str:
    """Get the server URL; DESKCLOUD_URL wins over the saved config."""
    url = os.environ.get("DESKCLOUD_URL") or load_config().get("url", "")
    if not url:
        raise SystemExit("No server configured. Run: deskcloud login --url <URL>")
    return url.rstrip("/")
