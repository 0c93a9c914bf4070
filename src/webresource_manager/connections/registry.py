"""Registry of configured remote environments, persisted as JSON."""

from __future__ import annotations

import json
import logging
import uuid
from typing import TYPE_CHECKING

from webresource_manager.auth.models import ConnectionIdentity

if TYPE_CHECKING:
    from webresource_manager.auth.credential_cache import CredentialCache
    from webresource_manager.storage.secret_store import SecretStore

logger = logging.getLogger(__name__)

CONNECTIONS_KEY = "connections.json"

# Persisted JSON field names
FIELD_CONNECTION_ID = "connectionId"
FIELD_CONNECTION_NAME = "connectionName"
FIELD_CONNECTION_URL = "connectionURL"


class DuplicateConnectionError(Exception):
    """Raised when a connection display name is already registered."""


class ConnectionRegistry:
    """Adds, lists and removes ConnectionIdentity records.

    Display names are unique. Removing a connection also deletes its
    persisted credentials.
    """

    def __init__(self, store: SecretStore, credential_cache: CredentialCache) -> None:
        self._store = store
        self._credential_cache = credential_cache
        self._connections = self._load()

    def list_connections(self) -> list[ConnectionIdentity]:
        return list(self._connections)

    def get(self, connection_id: str) -> ConnectionIdentity | None:
        for connection in self._connections:
            if connection.id == connection_id:
                return connection
        return None

    def add(self, display_name: str, remote_base_url: str) -> ConnectionIdentity:
        """Register a new connection.

        Args:
            display_name: Unique label for the connection.
            remote_base_url: Environment URL; a trailing slash is removed.

        Returns:
            The new ConnectionIdentity with a freshly generated id.

        Raises:
            ValueError: If the name or URL is blank.
            DuplicateConnectionError: If the name is already taken.
        """
        name = display_name.strip()
        url = remote_base_url.strip().rstrip("/")
        if not name:
            raise ValueError("Connection name must not be empty")
        if not url:
            raise ValueError("Connection URL must not be empty")
        if any(c.display_name == name for c in self._connections):
            raise DuplicateConnectionError(f"A connection named '{name}' already exists")

        connection = ConnectionIdentity(id=uuid.uuid1().hex, display_name=name, remote_base_url=url)
        self._connections.append(connection)
        self._save()
        logger.info("[add] added connection; connection_id:%s;url:%s", connection.id, url)
        return connection

    def remove(self, connection_id: str) -> bool:
        """Remove a connection and its cached credentials.

        Returns:
            True if a connection was removed, False if the id was unknown.
        """
        remaining = [c for c in self._connections if c.id != connection_id]
        if len(remaining) == len(self._connections):
            return False
        self._connections = remaining
        self._save()
        self._credential_cache.delete(connection_id)
        logger.info("[remove] removed connection; connection_id:%s", connection_id)
        return True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _load(self) -> list[ConnectionIdentity]:
        data = self._store.get(CONNECTIONS_KEY)
        if data is None:
            return []
        return [
            ConnectionIdentity(
                id=raw[FIELD_CONNECTION_ID],
                display_name=raw[FIELD_CONNECTION_NAME],
                remote_base_url=raw[FIELD_CONNECTION_URL],
            )
            for raw in json.loads(data)
        ]

    def _save(self) -> None:
        payload = [
            {
                FIELD_CONNECTION_ID: c.id,
                FIELD_CONNECTION_NAME: c.display_name,
                FIELD_CONNECTION_URL: c.remote_base_url,
            }
            for c in self._connections
        ]
        self._store.set(CONNECTIONS_KEY, json.dumps(payload, indent=2).encode("utf-8"))
