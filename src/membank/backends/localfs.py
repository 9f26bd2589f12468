"""Local disk filesystem backend for the memory bank."""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

TEMP_SUFFIX = ".tmp"


class LocalFileSystem:
    """FileSystem implementation on the local disk.

    Writes go to a temp file in the target directory and are moved into place
    with ``os.replace``, so readers see either the old or the new file.
    """

    def file_exists(self, path: str) -> bool:
        return Path(path).is_file()

    def read_file(self, path: str) -> str:
        return Path(path).read_text(encoding="utf-8")

    def write_file(self, path: str, content: str) -> None:
        target = Path(path)
        fd, tmp_name = tempfile.mkstemp(
            dir=target.parent, prefix=f".{target.name}.", suffix=TEMP_SUFFIX
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def create_directory(self, path: str) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)

    def list_files(self, path: str) -> list[str]:
        """All regular files below ``path``, recursively; empty if it is missing."""
        root = Path(path)
        if not root.is_dir():
            return []
        return sorted(str(p) for p in root.rglob("*") if p.is_file())

    def list_directories(self, path: str) -> list[str]:
        """Immediate subdirectory names of ``path``; empty if it is missing."""
        root = Path(path)
        if not root.is_dir():
            return []
        return sorted(p.name for p in root.iterdir() if p.is_dir())

    def delete_file(self, path: str) -> bool:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            return False
        return True

    def last_modified(self, path: str) -> datetime:
        return datetime.fromtimestamp(Path(path).stat().st_mtime, tz=timezone.utc)
