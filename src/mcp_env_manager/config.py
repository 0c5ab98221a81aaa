import os
import sys
from pathlib import Path

STORAGE_DIR = Path(os.environ.get("MCP_ENV_STORAGE_DIR", Path.home() / ".mcp-env-manager"))
PACKAGES_DIR = STORAGE_DIR / "packages"

ENCRYPTION_KEY_ENV_VAR = "MCP_ENV_ENCRYPTION_KEY"
SERVICE_NAME = "mcp_env_manager"
KEYRING_KEY_NAME = "profiles-encryption-key"


def _app_data_dir() -> Path:
    return Path(os.environ.get("APPDATA", ""))


def claude_config_path() -> Path:
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "Claude" / "claude_desktop_config.json"
    if sys.platform == "win32":
        return _app_data_dir() / "Claude" / "claude_desktop_config.json"
    return Path.home() / ".config" / "Claude" / "claude_desktop_config.json"


def cursor_config_path() -> Path:
    if sys.platform == "darwin":
        return Path.home() / ".cursor" / "mcp_config.json"
    if sys.platform == "win32":
        return _app_data_dir() / "Cursor" / "mcp_config.json"
    return Path.home() / ".config" / "cursor" / "mcp_config.json"
