"""Key-value stores for persisted state: Azure Blob Storage or a local directory."""

from __future__ import annotations

import contextlib
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient

if TYPE_CHECKING:
    from webresource_manager.config import AppConfig

logger = logging.getLogger(__name__)


class SecretStore(Protocol):
    """Opaque bytes keyed by a slash-delimited string."""

    def get(self, key: str) -> bytes | None: ...

    def set(self, key: str, value: bytes) -> None: ...

    def delete(self, key: str) -> None: ...


class BlobSecretStore:
    """SecretStore backed by a single Azure Blob Storage container.

    Each key is stored as one blob. Encryption at rest is provided by the
    storage account; this class only moves bytes.
    """

    def __init__(self, storage_connection_string: str, container: str) -> None:
        """Initialise the blob store.

        Args:
            storage_connection_string: Azure Storage connection string.
            container: Blob container name; created on first write.
        """
        self._blob_service = BlobServiceClient.from_connection_string(storage_connection_string)
        self._container = container

    def get(self, key: str) -> bytes | None:
        """Read a blob.

        Returns:
            The blob content, or None if the blob does not exist.
        """
        try:
            container_client = self._blob_service.get_container_client(self._container)
            blob_client = container_client.get_blob_client(key)
            return blob_client.download_blob().readall()  # type: ignore[no-any-return]
        except ResourceNotFoundError:
            logger.debug("[blob_store.get] key not found; key:%s", key)
            return None

    def set(self, key: str, value: bytes) -> None:
        """Write a blob, creating the container if needed. Last writer wins."""
        container_client = self._blob_service.get_container_client(self._container)
        with contextlib.suppress(ResourceExistsError):
            container_client.create_container()
            logger.info("[blob_store.set] created blob container; container:%s", self._container)

        blob_client = container_client.get_blob_client(key)
        blob_client.upload_blob(value, overwrite=True)
        logger.debug("[blob_store.set] stored; key:%s;bytes:%d", key, len(value))

    def delete(self, key: str) -> None:
        """Delete a blob. Deleting a missing key is not an error."""
        container_client = self._blob_service.get_container_client(self._container)
        try:
            container_client.get_blob_client(key).delete_blob()
            logger.debug("[blob_store.delete] deleted; key:%s", key)
        except ResourceNotFoundError:
            logger.debug("[blob_store.delete] key not found; key:%s", key)


class FileSecretStore:
    """SecretStore backed by files below a local directory.

    Key segments become sub-directories, so ``token-cache/abc`` is stored at
    ``<base_dir>/token-cache/abc``. Files are created with owner-only
    permissions.
    """

    def __init__(self, base_dir: str | Path) -> None:
        self._dir = Path(base_dir).expanduser()

    def _path(self, key: str) -> Path:
        parts = [p for p in key.split("/") if p]
        if not parts or any(p in (".", "..") for p in parts):
            raise ValueError(f"Invalid store key: {key!r}")
        return self._dir.joinpath(*parts)

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            logger.debug("[file_store.get] key not found; key:%s", key)
            return None

    def set(self, key: str, value: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as fh:
            fh.write(value)
        os.replace(tmp, path)
        logger.debug("[file_store.set] stored; key:%s;bytes:%d", key, len(value))

    def delete(self, key: str) -> None:
        with contextlib.suppress(FileNotFoundError):
            self._path(key).unlink()
            logger.debug("[file_store.delete] deleted; key:%s", key)


def secret_store_from_config(config: AppConfig) -> SecretStore:
    """Construct the SecretStore selected by application configuration.

    Args:
        config: Application configuration instance.

    Returns:
        A BlobSecretStore when a storage connection string is configured,
        otherwise a FileSecretStore rooted at ``config.state_dir``.
    """
    if config.storage_connection_string:
        return BlobSecretStore(
            storage_connection_string=config.storage_connection_string,
            container=config.state_container,
        )
    return FileSecretStore(config.state_dir)
