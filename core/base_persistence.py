"""Base JSON file store with atomic writes and error recovery."""

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Optional

from core.logging_utils import get_logger

logger = get_logger(__name__)


class JsonFileStore:
    """
    One JSON document on disk with:
    - Atomic writes (write to temp, then rename)
    - Automatic backup before write
    - Corruption recovery from backup
    - Proper error logging (no silent failures)
    """

    def __init__(self, path: Path, backup: bool = True):
        self.path = Path(path)
        self.backup_file = self.path.with_suffix(self.path.suffix + ".bak") if backup else None

    def _ensure_dir(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _create_backup(self) -> None:
        """Create backup of current file before writing."""
        if self.backup_file is None or not self.path.exists():
            return
        try:
            shutil.copy2(self.path, self.backup_file)
        except OSError as e:
            logger.warning("[PERSIST] Failed to back up %s: %s", self.path.name, e)

    def write(self, data: Any) -> bool:
        """
        Write data atomically: write to temp file, then rename.
        Returns True on success, False on failure.
        """
        self._ensure_dir()
        self._create_backup()

        # Temp file in the same directory so os.replace stays on one filesystem
        temp_fd = None
        temp_path = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.path.parent,
                prefix=f".{self.path.stem}_",
                suffix=".tmp",
            )
            with os.fdopen(temp_fd, "w") as f:
                temp_fd = None  # fdopen takes ownership
                json.dump(data, f, indent=2)

            os.replace(temp_path, self.path)
            temp_path = None
            return True

        except (OSError, TypeError, ValueError) as e:
            logger.error("[PERSIST] Atomic write of %s failed: %s", self.path.name, e)
            return False

        finally:
            if temp_fd is not None:
                try:
                    os.close(temp_fd)
                except OSError:
                    pass
            if temp_path is not None:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass

    def _read_file(self, path: Path) -> Optional[Any]:
        with open(path, "r") as f:
            content = f.read().strip()
        if not content:
            logger.warning("[PERSIST] %s is empty", path.name)
            return None
        return json.loads(content)

    def read(self) -> Optional[Any]:
        """
        Read the document with fallback to backup on corruption.
        Returns None when neither main nor backup is readable.
        """
        if self.path.exists():
            try:
                data = self._read_file(self.path)
                if data is not None:
                    return data
            except json.JSONDecodeError as e:
                logger.warning("[PERSIST] %s corrupted: %s", self.path.name, e)
            except OSError as e:
                logger.warning("[PERSIST] Failed to read %s: %s", self.path.name, e)

        if self.backup_file is not None and self.backup_file.exists():
            logger.info("[PERSIST] Attempting recovery of %s from backup", self.path.name)
            try:
                data = self._read_file(self.backup_file)
                if data is not None:
                    self.write(data)
                    return data
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("[PERSIST] Backup recovery of %s failed: %s", self.path.name, e)

        return None

    def delete(self) -> None:
        """Remove the document (absence is meaningful for position state)."""
        for path in (self.path, self.backup_file):
            if path is not None and path.exists():
                try:
                    path.unlink()
                except OSError as e:
                    logger.error("[PERSIST] Failed to delete %s: %s", path.name, e)

    def exists(self) -> bool:
        return self.path.exists()
