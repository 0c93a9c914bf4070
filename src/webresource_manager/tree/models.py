"""Data models for the hierarchical web resource tree."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

PATH_SEPARATOR = "/"


@dataclass(frozen=True)
class RemoteResourceDescriptor:
    """One record from a remote listing.

    Attributes:
        remote_id: Identifier of the record on the server.
        namespaced_name: Slash-delimited logical name (e.g. "new_/scripts/form.js").
    """

    remote_id: str
    namespaced_name: str


@dataclass
class FileNode:
    """A leaf of the tree, backed by exactly one remote record."""

    remote_id: str
    namespaced_name: str
    display_name: str

    @property
    def is_folder(self) -> bool:
        return False


@dataclass
class FolderNode:
    """A folder derived from the name prefixes of its descendants.

    Attributes:
        display_name: Last path segment of the folder.
        path: Full slash-joined path from the root; empty for the root itself.
        children: Folders first, then files, each group ordered
            case-insensitively by display name once the tree is built.
    """

    display_name: str
    path: str = ""
    children: list[ResourceNode] = field(default_factory=list)

    @property
    def is_folder(self) -> bool:
        return True

    def files(self) -> list[FileNode]:
        """All file leaves below this folder, depth first in display order."""
        result: list[FileNode] = []
        for child in self.children:
            if isinstance(child, FolderNode):
                result.extend(child.files())
            else:
                result.append(child)
        return result


ResourceNode = Union[FileNode, FolderNode]
