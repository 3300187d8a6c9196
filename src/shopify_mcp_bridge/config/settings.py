"""Configuration model for the Shopify tool-server bridge."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from shopify_mcp_bridge.engine.errors import ProcessSpawnError

DEFAULT_DATA_DIR = Path.home() / ".shopify-mcp-bridge"


class ShopifyConfig(BaseModel):
    access_token: Optional[str] = Field(default=None)
    domain: Optional[str] = Field(default=None)

    def get_access_token(self) -> Optional[str]:
        return self.access_token or os.environ.get("SHOPIFY_ACCESS_TOKEN")

    def get_domain(self) -> Optional[str]:
        return self.domain or os.environ.get("MYSHOPIFY_DOMAIN")


class ServerConfig(BaseModel):
    command: str = "npx"
    args: list[str] = Field(default_factory=lambda: ["shopify-mcp"])
    env: dict[str, str] = Field(default_factory=dict)
    pass_credentials: bool = True  # append --accessToken/--domain to args


class ClientInfo(BaseModel):
    name: str = "shopify-mcp-bridge"
    version: str = "1.0.0"


class Settings(BaseModel):
    shopify: ShopifyConfig = Field(default_factory=ShopifyConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    client: ClientInfo = Field(default_factory=ClientInfo)
    protocol_version: str = "2024-11-05"
    request_timeout: float = 30.0
    shutdown_grace: float = 5.0
    prefetch_tools: bool = True
    data_dir: Path = DEFAULT_DATA_DIR

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Settings":
        config_path = path or DEFAULT_DATA_DIR / "config.yaml"
        if config_path.exists():
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
            return cls(**data)
        return cls()

    def save(self, path: Optional[Path] = None) -> Path:
        config_path = path or self.data_dir / "config.yaml"
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False)
        return config_path

    def build_command(self) -> tuple[str, list[str]]:
        """Executable and argv for the tool server subprocess."""
        args = list(self.server.args)
        if self.server.pass_credentials:
            token = self.shopify.get_access_token()
            domain = self.shopify.get_domain()
            if not token or not domain:
                raise ProcessSpawnError("Missing Shopify credentials")
            args += ["--accessToken", token, "--domain", domain]
        return self.server.command, args
