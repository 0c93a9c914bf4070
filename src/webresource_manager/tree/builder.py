"""Builds a sorted folder/file tree from a flat list of namespaced resource names."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from webresource_manager.tree.models import (
    PATH_SEPARATOR,
    FileNode,
    FolderNode,
    RemoteResourceDescriptor,
    ResourceNode,
)

logger = logging.getLogger(__name__)

ROOT_DISPLAY_NAME = "root"


class MalformedResourceNameError(ValueError):
    """Raised for a namespaced name that is empty or contains an empty segment."""

    def __init__(self, namespaced_name: str, remote_id: str = "") -> None:
        super().__init__(f"Malformed resource name {namespaced_name!r} (remote id {remote_id or 'unknown'})")
        self.namespaced_name = namespaced_name
        self.remote_id = remote_id


def split_name(namespaced_name: str, remote_id: str = "") -> list[str]:
    """Split a namespaced name into its path segments.

    Raises:
        MalformedResourceNameError: If the name is empty or has an empty segment
            (leading, trailing or doubled separator).
    """
    segments = namespaced_name.split(PATH_SEPARATOR)
    if not namespaced_name or any(segment == "" for segment in segments):
        raise MalformedResourceNameError(namespaced_name, remote_id)
    return segments


def build_tree(
    descriptors: Iterable[RemoteResourceDescriptor],
    errors: list[MalformedResourceNameError] | None = None,
) -> FolderNode:
    """Convert a flat listing into a tree under a synthetic root folder.

    Every well-formed descriptor yields exactly one FileNode, duplicates
    included. Malformed names are logged and skipped; when ``errors`` is
    given they are also appended to it so the caller can report them.

    Args:
        descriptors: Flat remote listing.
        errors: Optional collector for skipped entries.

    Returns:
        The synthetic root folder. Its children are the top-level nodes.
    """
    root = FolderNode(display_name=ROOT_DISPLAY_NAME)
    for descriptor in descriptors:
        try:
            segments = split_name(descriptor.namespaced_name, descriptor.remote_id)
        except MalformedResourceNameError as exc:
            logger.warning(
                "[build_tree] skipping malformed resource name; remote_id:%s;name:%r",
                descriptor.remote_id,
                descriptor.namespaced_name,
            )
            if errors is not None:
                errors.append(exc)
            continue
        _place(root, descriptor, segments)

    _sort_recursive(root)
    return root


def _place(root: FolderNode, descriptor: RemoteResourceDescriptor, segments: list[str]) -> None:
    current = root
    for depth, folder_name in enumerate(segments[:-1]):
        current = _find_or_create_folder(
            current, folder_name, PATH_SEPARATOR.join(segments[: depth + 1])
        )
    current.children.append(
        FileNode(
            remote_id=descriptor.remote_id,
            namespaced_name=descriptor.namespaced_name,
            display_name=segments[-1],
        )
    )


def _find_or_create_folder(parent: FolderNode, display_name: str, path: str) -> FolderNode:
    for child in parent.children:
        if isinstance(child, FolderNode) and child.display_name == display_name:
            return child
    folder = FolderNode(display_name=display_name, path=path)
    parent.children.append(folder)
    return folder


def _sort_key(node: ResourceNode) -> tuple[int, str, str, str]:
    # Case-insensitive name first; exact name and remote id break ties.
    remote_id = node.remote_id if isinstance(node, FileNode) else ""
    return (0 if isinstance(node, FolderNode) else 1, node.display_name.lower(), node.display_name, remote_id)


def _sort_recursive(folder: FolderNode) -> None:
    folder.children.sort(key=_sort_key)
    for child in folder.children:
        if isinstance(child, FolderNode):
            _sort_recursive(child)
