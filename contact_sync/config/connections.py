"""
Connection configuration for remote contact sources.

Connections are declared under the ``connections`` key of config.yaml:

    connections:
      home:
        url: https://dav.example.com/addressbooks/jane/contacts/
        username: jane
        password_env: HOME_DAV_PASSWORD
      linkedin-main:
        type: linkedin

Notes:
    - ``type`` defaults to ``carddav``
    - CardDAV connections need a ``url``; the password is read from the
      environment variable named by ``password_env`` when ``password``
      is not given
    - LinkedIn connections carry no credentials, their data arrives as
      scrape batches
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

from contact_sync.api.carddav import DEFAULT_TIMEOUT, CardDAVClient
from contact_sync.config.loader import ConfigError
from contact_sync.sync.contact import CARDDAV, LINKEDIN

logger = logging.getLogger(__name__)

VALID_CONNECTION_TYPES = {CARDDAV, LINKEDIN}


@dataclass
class ConnectionConfig:
    """
    One configured remote source.

    Attributes:
        id: Connection id used on the command line and in source kinds
        type: "carddav" or "linkedin"
        url: Address book collection URL (CardDAV only)
        username: Login name (CardDAV only)
        password: Password given inline
        password_env: Environment variable holding the password
    """

    id: str
    type: str = CARDDAV
    url: str | None = None
    username: str | None = None
    password: str | None = None
    password_env: str | None = None

    @property
    def is_carddav(self) -> bool:
        return self.type == CARDDAV

    def resolve_password(self) -> str | None:
        if self.password is not None:
            return self.password
        if self.password_env:
            value = os.environ.get(self.password_env)
            if value is None:
                logger.warning(
                    f"Connection {self.id}: environment variable "
                    f"{self.password_env} is not set"
                )
            return value
        return None

    def build_client(self, timeout: float = DEFAULT_TIMEOUT) -> CardDAVClient:
        """
        Create the CardDAV client for this connection.

        Raises:
            ConfigError: If this is not a CardDAV connection
        """
        if not self.is_carddav or not self.url:
            raise ConfigError(f"Connection {self.id} is not a CardDAV address book")
        return CardDAVClient(
            self.url,
            username=self.username,
            password=self.resolve_password(),
            timeout=timeout,
        )

    @classmethod
    def from_dict(
        cls, connection_id: str, data: dict[str, Any] | None
    ) -> ConnectionConfig:
        """
        Create a ConnectionConfig from its config.yaml entry.

        Raises:
            ConfigError: If the entry is invalid
        """
        if not isinstance(connection_id, str) or not connection_id.strip():
            raise ConfigError("Connection ids must be non-empty strings")
        if ":" in connection_id:
            raise ConfigError(f"Connection id {connection_id!r} must not contain ':'")
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError(
                f"Connection {connection_id} must be a dictionary, "
                f"got {type(data).__name__}"
            )

        for key in ("type", "url", "username", "password", "password_env"):
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                raise ConfigError(
                    f"Connection {connection_id}: {key} must be a string, "
                    f"got {type(value).__name__}"
                )

        connection_type = data.get("type", CARDDAV)
        if connection_type not in VALID_CONNECTION_TYPES:
            raise ConfigError(
                f"Connection {connection_id}: invalid type '{connection_type}'. "
                f"Must be one of: {', '.join(sorted(VALID_CONNECTION_TYPES))}"
            )
        if connection_type == CARDDAV and not data.get("url"):
            raise ConfigError(f"Connection {connection_id}: url is required")

        return cls(
            id=connection_id,
            type=connection_type,
            url=data.get("url"),
            username=data.get("username"),
            password=data.get("password"),
            password_env=data.get("password_env"),
        )

    def __repr__(self) -> str:
        # Never include the password
        return (
            f"ConnectionConfig(id={self.id!r}, type={self.type!r}, "
            f"url={self.url!r}, username={self.username!r})"
        )


def load_connections(config: dict[str, Any]) -> dict[str, ConnectionConfig]:
    """
    Build connection configs from a loaded configuration dictionary.

    Raises:
        ConfigError: If any connection entry is invalid
    """
    entries = config.get("connections") or {}
    if not isinstance(entries, dict):
        raise ConfigError(
            f"connections must be a dictionary, got {type(entries).__name__}"
        )
    return {
        str(connection_id): ConnectionConfig.from_dict(str(connection_id), data)
        for connection_id, data in entries.items()
    }
