# src/table_importer/state.py

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

if sys.platform != "win32":
    import fcntl

    def _lock(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_EX)

    def _unlock(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_UN)
else:
    import msvcrt

    def _lock(fd: int) -> None:
        msvcrt.locking(fd, msvcrt.LK_LOCK, 1)

    def _unlock(fd: int) -> None:
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)


class CheckpointStore:
    """
    Small persisted key/value store for the run guard, the offset cursor
    and the historical-import snapshot.

    Every read goes to disk; nothing is cached between calls, since two
    ticks never share process memory.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.backup_path = self.path.with_name(f"{self.path.stem}.backup{self.path.suffix}")
        self.lock_path = self.path.with_name(f"{self.path.stem}.lock")

    def get(self, key: str, default: Any = None) -> Any:
        return self.load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with _FileLock(self.lock_path):
            state = self.load()
            state[key] = value
            self._write(state)

    def update(self, key: str, fn: Callable[[Any], Any]) -> Any:
        """
        Replace the value under ``key`` with ``fn(current)`` while holding the lock,
        so no other writer can slip in between the read and the write.

        Returns the value stored afterwards. Nothing is written if ``fn`` returns
        the current value unchanged.
        """
        with _FileLock(self.lock_path):
            state = self.load()
            current = state.get(key)
            new = fn(current)
            if new != current:
                state[key] = new
                self._write(state)
            return new

    def delete(self, key: str) -> bool:
        with _FileLock(self.lock_path):
            state = self.load()
            if key not in state:
                return False
            del state[key]
            self._write(state)
            return True

    def load(self) -> Dict[str, Any]:
        """
        Loads the whole state mapping.
        Returns an empty dict if the file doesn't exist or both it and its backup are corrupted.
        """
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    state = json.load(f)
                    logger.debug(f"Loaded state from {self.path}")
                    return state
            except json.JSONDecodeError as e:
                logger.warning(f"State file corrupted: {e}. Attempting to load backup...")
                recovered = self._load_backup()
                if recovered is not None:
                    return recovered
        return {}

    def _load_backup(self) -> Optional[Dict[str, Any]]:
        if not self.backup_path.exists():
            return None
        try:
            with open(self.backup_path, 'r') as f:
                state = json.load(f)
            logger.info(f"Loaded state from backup: {self.backup_path}")
            return state
        except json.JSONDecodeError:
            logger.error("Backup file also corrupted. Starting with empty state.")
            return None

    def _write(self, state: Dict[str, Any]) -> None:
        """Atomically replaces the state file, keeping the previous version as backup."""
        temp_file = self.path.with_suffix('.tmp')
        self.path.parent.mkdir(parents=True, exist_ok=True)

        try:
            if self.path.exists():
                try:
                    self.path.replace(self.backup_path)
                except OSError as e:
                    logger.warning(f"Failed to create backup: {e}")

            with open(temp_file, 'w') as f:
                json.dump(state, f, indent=4, default=str)
                f.flush()
                os.fsync(f.fileno())

            temp_file.replace(self.path)
            logger.debug(f"State saved atomically to {self.path}")
        except Exception as e:
            logger.error(f"Failed to save state: {e}")
            if temp_file.exists():
                temp_file.unlink()
            raise


class _FileLock:
    """Exclusive lock on a sidecar file, held for one read-modify-write of the store."""

    def __init__(self, lock_file: Path):
        self.lock_file = lock_file
        self._handle = None

    def __enter__(self):
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        self._handle = open(self.lock_file, 'a')
        try:
            _lock(self._handle.fileno())
        except OSError as e:
            logger.warning(f"Could not lock {self.lock_file}, writing without lock: {e}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            _unlock(self._handle.fileno())
        except OSError as e:
            logger.debug(f"Unlocking {self.lock_file} failed: {e}")
        finally:
            self._handle.close()
            self._handle = None
