"""Persistence of serialized MSAL token caches, one per connection."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from azure.core.exceptions import AzureError

if TYPE_CHECKING:
    from webresource_manager.storage.secret_store import SecretStore

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "token-cache/"


class CredentialCache:
    """Stores one opaque serialized token cache blob per connection id.

    The blob is whatever ``msal.SerializableTokenCache.serialize()`` produced;
    this class never inspects it.
    """

    def __init__(self, store: SecretStore, key_prefix: str = DEFAULT_KEY_PREFIX) -> None:
        self._store = store
        self._key_prefix = key_prefix

    def _key(self, connection_id: str) -> str:
        return f"{self._key_prefix}{connection_id}"

    def load(self, connection_id: str) -> str | None:
        """Return the persisted blob, or None if nothing was saved yet."""
        data = self._store.get(self._key(connection_id))
        if data is None:
            logger.info("[credential_cache.load] no cached credentials; connection_id:%s", connection_id)
            return None
        logger.info("[credential_cache.load] restored cached credentials; connection_id:%s", connection_id)
        return data.decode("utf-8")

    def save(self, connection_id: str, blob: str) -> bool:
        """Persist the blob, replacing any previous one.

        Returns:
            True on success, False if the store rejected the write.
        """
        try:
            self._store.set(self._key(connection_id), blob.encode("utf-8"))
        except (AzureError, OSError):
            logger.error(
                "[credential_cache.save] failed to persist credentials; connection_id:%s",
                connection_id,
                exc_info=True,
            )
            return False
        logger.debug("[credential_cache.save] persisted credentials; connection_id:%s", connection_id)
        return True

    def delete(self, connection_id: str) -> None:
        self._store.delete(self._key(connection_id))
        logger.info("[credential_cache.delete] removed cached credentials; connection_id:%s", connection_id)
