"""Data models for local/remote synchronisation state."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class PullAction(enum.Enum):
    OVERWRITE = "overwrite"
    WARN_THEN_OVERWRITE = "warn_then_overwrite"


class SyncConflictWarning(UserWarning):
    """Another user changed the remote resource and the local copy differs.

    Informational only: the pull still proceeds once acknowledged.
    """

    def __init__(self, local_path: str, remote_modified_by: str | None) -> None:
        super().__init__(
            f"'{local_path}' differs from the server copy last modified by "
            f"{remote_modified_by or 'another user'}; local changes will be overwritten"
        )
        self.local_path = local_path
        self.remote_modified_by = remote_modified_by


@dataclass
class SyncRecord:
    """Link between one local file and the remote resource it was pulled from.

    Attributes:
        local_path: Normalised local file path (the record key).
        remote_id: Identifier of the remote resource.
        published: True while the local content hash equals ``last_published_hash``.
        last_published_hash: SHA-256 hex digest of the content last pulled or published.
    """

    local_path: str
    remote_id: str
    published: bool = True
    last_published_hash: str | None = None


@dataclass(frozen=True)
class PullDecision:
    """What to do before overwriting a local file with remote content."""

    action: PullAction
    warning: SyncConflictWarning | None = None

    @property
    def reason(self) -> str | None:
        return str(self.warning) if self.warning is not None else None
