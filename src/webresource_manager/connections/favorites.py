"""Per-connection favorite solutions, persisted as a JSON map."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from webresource_manager.storage.secret_store import SecretStore

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "favorites/"


class FavoriteSolutions:
    """Marks solutions as favorites, one ``{solution_id: true}`` map per connection."""

    def __init__(self, store: SecretStore, key_prefix: str = DEFAULT_KEY_PREFIX) -> None:
        self._store = store
        self._key_prefix = key_prefix

    def _key(self, connection_id: str) -> str:
        return f"{self._key_prefix}{connection_id}"

    def load(self, connection_id: str) -> set[str]:
        """Return the favorite solution ids of a connection."""
        data = self._store.get(self._key(connection_id))
        if data is None:
            return set()
        return {solution_id for solution_id, flag in json.loads(data).items() if flag}

    def add(self, connection_id: str, solution_id: str) -> None:
        favorites = self.load(connection_id)
        favorites.add(solution_id)
        self._save(connection_id, favorites)
        logger.info("[favorites.add] added; connection_id:%s;solution_id:%s", connection_id, solution_id)

    def remove(self, connection_id: str, solution_id: str) -> None:
        favorites = self.load(connection_id)
        favorites.discard(solution_id)
        self._save(connection_id, favorites)
        logger.info("[favorites.remove] removed; connection_id:%s;solution_id:%s", connection_id, solution_id)

    def delete(self, connection_id: str) -> None:
        self._store.delete(self._key(connection_id))

    def _save(self, connection_id: str, favorites: set[str]) -> None:
        payload = {solution_id: True for solution_id in sorted(favorites)}
        self._store.set(self._key(connection_id), json.dumps(payload, indent=2).encode("utf-8"))
