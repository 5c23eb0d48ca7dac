"""Client configuration management"""
import os
from pathlib import Path
from typing import Any, Optional

import toml  # type: ignore[import-untyped]

DEFAULT_BASE_URL = "https://api.rool.dev"
BASE_URL_ENV_VAR = "ROOL_BASE_URL"
ROOL_DIR = Path.home() / ".rool"


class RoolConfig:
    """Manage client configuration stored in ~/.rool/config.toml"""

    def __init__(self, config_dir: Optional[Path] = None, base_url: Optional[str] = None) -> None:
        self.config_dir = config_dir or ROOL_DIR
        self.config_file = self.config_dir / "config.toml"
        self._base_url_override = base_url

    def _load(self) -> dict[str, Any]:
        if not self.config_file.exists():
            return {}
        try:
            return toml.load(self.config_file)
        except (toml.TomlDecodeError, OSError):
            return {}

    def get_base_url(self) -> str:
        """Get the deployment base URL (explicit > env > config file > default)"""
        if self._base_url_override:
            return self._base_url_override.rstrip("/")

        env_url = os.environ.get(BASE_URL_ENV_VAR)
        if env_url:
            return env_url.rstrip("/")

        server_section = self._load().get("server")
        if isinstance(server_section, dict):
            base_url = server_section.get("base_url")
            if isinstance(base_url, str) and base_url:
                return base_url.rstrip("/")
        return DEFAULT_BASE_URL

    def set_base_url(self, url: str) -> None:
        """Persist the deployment base URL"""
        self.config_dir.mkdir(parents=True, exist_ok=True)

        config = self._load()
        server_section = config.get("server")
        if not isinstance(server_section, dict):
            server_section = {}
            config["server"] = server_section

        server_section["base_url"] = url.rstrip("/")

        with open(self.config_file, "w", encoding="utf-8") as f:
            toml.dump(config, f)

    @property
    def graphql_url(self) -> str:
        return f"{self.get_base_url()}/graphql"

    @property
    def auth_url(self) -> str:
        return f"{self.get_base_url()}/auth"

    @property
    def stream_url(self) -> str:
        """WebSocket endpoint for event streams (https -> wss)"""
        base = self.get_base_url()
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/events"
