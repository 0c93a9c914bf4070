"""Local file system access used by the sync tracker and the workspace."""

from pathlib import Path


class LocalFileSystem:
    """Reads and writes files on the local disk.

    Errors are the standard ``FileNotFoundError`` / ``PermissionError``.
    """

    def read_file(self, path: str) -> bytes:
        return Path(path).read_bytes()

    def write_file(self, path: str, content: bytes) -> None:
        Path(path).write_bytes(content)

    def mkdir_recursive(self, path: str) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)

    def exists(self, path: str) -> bool:
        return Path(path).is_file()
