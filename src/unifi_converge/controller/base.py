"""Controller abstraction: live-state fetching and mutation contracts."""
from __future__ import annotations

import os
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from ..reconcile.entities import MANAGEMENT_MARKER_FIELD, MANAGEMENT_MARKER_VALUE

logger = logging.getLogger(__name__)


@dataclass
class ControllerConfig:
    """Connection settings for one UniFi controller."""
    host: str
    port: int = 443
    site: str = "default"
    username: str = "admin"
    password: Optional[str] = None
    password_env: str = "UNIFI_PASSWORD"
    verify_ssl: bool = True
    timeout: float = 30
    # UniFi OS consoles (UDM, UCG, Cloud Key Gen2+) proxy the Network app
    unifi_os: bool = True
    # Apply options
    concurrency: int = 4
    max_attempts: int = 3
    # Schema and secrets
    schema_dir: str = "schemas"
    schema_version: str = "latest"
    secrets_dir: Optional[str] = None

    def get_password(self) -> str:
        """Get password from config or environment variable."""
        if self.password:
            return self.password
        return os.environ.get(self.password_env, "")

    @property
    def base_url(self) -> str:
        if self.host.startswith(("http://", "https://")):
            return self.host.rstrip("/")
        suffix = "" if self.port == 443 else f":{self.port}"
        return f"https://{self.host}{suffix}"


@dataclass
class LiveEntity:
    """One live controller document, references already mapped to names."""
    name: str
    id: str
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def managed(self) -> bool:
        """Carries the management marker written at creation."""
        return self.fields.get(MANAGEMENT_MARKER_FIELD) == MANAGEMENT_MARKER_VALUE


class LiveStateFetcher(ABC):
    """Read side of a controller."""

    @abstractmethod
    async def list(self, collection: str) -> list[LiveEntity]:
        """List every entity of a collection."""
        pass

    def known_collections(self) -> list[str]:
        """Collections the fetcher can enumerate without being told."""
        return []


class LiveAPI(ABC):
    """Write side of a controller.

    Implementations raise RetryableAPIError for transient failures and
    TerminalAPIError when the controller rejects a request.
    """

    @abstractmethod
    async def create(self, collection: str, fields: dict[str, Any]) -> str:
        """Create an entity, returning its device id."""
        pass

    @abstractmethod
    async def update(self, collection: str, device_id: str, fields: dict[str, Any]) -> None:
        """Apply a partial document to an existing entity."""
        pass

    @abstractmethod
    async def delete(self, collection: str, device_id: str) -> None:
        """Delete an entity."""
        pass


class Controller(LiveStateFetcher, LiveAPI):
    """A controller session providing both contracts."""

    def __init__(self, config: Optional[ControllerConfig] = None):
        self.config = config
        self._connected = False

    @property
    def site(self) -> str:
        return self.config.site if self.config else "default"

    @property
    def host(self) -> str:
        return self.config.host if self.config else "memory"

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        """Establish a session with the controller."""
        self._connected = True
        return True

    async def disconnect(self) -> None:
        """Close the session."""
        self._connected = False

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()
        return False
