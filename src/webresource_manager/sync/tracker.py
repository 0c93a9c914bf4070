"""Tracks which local files mirror which remote resources, by content hash."""

from __future__ import annotations

import hashlib
import logging
import os

from webresource_manager.sync.filesystem import LocalFileSystem
from webresource_manager.sync.models import (
    PullAction,
    PullDecision,
    SyncConflictWarning,
    SyncRecord,
)

logger = logging.getLogger(__name__)


class NotLinkedError(Exception):
    """Raised when publishing a file that was never pulled from the server."""

    def __init__(self, local_path: str) -> None:
        super().__init__(
            f"'{os.path.basename(local_path)}' is not linked to a remote web resource. "
            "Open it from the web resource list first to establish the link."
        )
        self.local_path = local_path


def content_hash(content: bytes) -> str:
    """Compute the SHA-256 hex digest of file content.

    Args:
        content: Raw file content bytes.

    Returns:
        Lowercase hex string of the SHA-256 hash.
    """
    return hashlib.sha256(content).hexdigest()


class SyncStateTracker:
    """Per-connection map of local path to SyncRecord.

    Hash equality is the only notion of "in sync"; timestamps are never
    consulted. Records are connection-scoped and must be cleared with
    reset_all() whenever the active connection changes.
    """

    def __init__(self, fs: LocalFileSystem | None = None) -> None:
        self._fs = fs or LocalFileSystem()
        self._records: dict[str, SyncRecord] = {}

    @staticmethod
    def _key(local_path: str) -> str:
        return os.path.normpath(local_path)

    def get_record(self, local_path: str) -> SyncRecord | None:
        return self._records.get(self._key(local_path))

    def records(self) -> list[SyncRecord]:
        return list(self._records.values())

    def _local_hash(self, local_path: str) -> str | None:
        if not self._fs.exists(local_path):
            return None
        return content_hash(self._fs.read_file(local_path))

    def before_pull(
        self,
        local_path: str,
        remote_id: str,
        remote_content_hash: str,
        remote_modified_by: str | None,
        local_user_identity: str | None,
    ) -> PullDecision:
        """Decide whether overwriting the local file needs a warning first.

        A warning is due only when the remote copy was last changed by
        someone other than the local user and its content differs from
        the local file.

        Args:
            local_path: Destination of the pull.
            remote_id: Identifier of the remote resource being pulled.
            remote_content_hash: SHA-256 hex digest of the downloaded content.
            remote_modified_by: Who last modified the remote resource.
            local_user_identity: The signed-in user.

        Returns:
            The PullDecision; never blocks on anything but reading the local file.
        """
        local_hash = self._local_hash(local_path)
        if local_hash is None or local_hash == remote_content_hash:
            return PullDecision(PullAction.OVERWRITE)

        if remote_modified_by and remote_modified_by != local_user_identity:
            logger.warning(
                "[before_pull] possible concurrent edit; path:%s;remote_id:%s;modified_by:%s",
                local_path,
                remote_id,
                remote_modified_by,
            )
            return PullDecision(
                PullAction.WARN_THEN_OVERWRITE,
                SyncConflictWarning(local_path, remote_modified_by),
            )
        return PullDecision(PullAction.OVERWRITE)

    def after_pull(self, local_path: str, remote_id: str, published: bool = True) -> SyncRecord:
        """Record the freshly written file as the publish baseline.

        Args:
            local_path: File that was just written.
            remote_id: Identifier of the remote resource it came from.
            published: Whether the content is known to match the server,
                which holds for a plain pull.
        """
        key = self._key(local_path)
        record = SyncRecord(
            local_path=key,
            remote_id=remote_id,
            published=published,
            last_published_hash=content_hash(self._fs.read_file(local_path)),
        )
        self._records[key] = record
        logger.info("[after_pull] linked; path:%s;remote_id:%s", key, remote_id)
        return record

    def on_local_save(self, local_path: str) -> SyncRecord | None:
        """Re-evaluate ``published`` for a saved file; no-op for unlinked files."""
        record = self._records.get(self._key(local_path))
        if record is None:
            return None
        record.published = self._local_hash(local_path) == record.last_published_hash
        logger.debug("[on_local_save] path:%s;published:%s", record.local_path, record.published)
        return record

    def resolve_remote_id(self, local_path: str) -> str | None:
        record = self._records.get(self._key(local_path))
        return record.remote_id if record is not None else None

    def require_remote_id(self, local_path: str) -> str:
        """Like resolve_remote_id, but raises NotLinkedError for unlinked files."""
        remote_id = self.resolve_remote_id(local_path)
        if remote_id is None:
            raise NotLinkedError(local_path)
        return remote_id

    def after_publish(self, local_path: str, remote_id: str, published_content_hash: str) -> SyncRecord:
        key = self._key(local_path)
        record = self._records.get(key)
        if record is None:
            record = SyncRecord(local_path=key, remote_id=remote_id)
            self._records[key] = record
        record.remote_id = remote_id
        record.published = True
        record.last_published_hash = published_content_hash
        logger.info("[after_publish] published; path:%s;remote_id:%s", key, remote_id)
        return record

    def reset_all(self) -> None:
        count = len(self._records)
        self._records.clear()
        logger.info("[reset_all] cleared sync records; count:%d", count)
