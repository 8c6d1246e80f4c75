"""Key-value partition storage backing the cache and equity series.

Keys are slash separated (``historical/<account_id>``); every key maps to its
own physical partition so a damaged or oversized partition never affects the
others.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional

import portalocker

from tradetracker.exceptions import StorageError

logger = logging.getLogger(__name__)

_LOCK_TIMEOUT_SECONDS = 10.0
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def _sanitize_segment(segment: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", segment.strip())
    if cleaned in ("", ".", ".."):
        raise ValueError(f"invalid storage key segment {segment!r}")
    return cleaned


class PartitionStorage:
    """Abstract byte-level partition storage."""

    def get_partition(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def set_partition(self, key: str, data: bytes) -> None:
        raise NotImplementedError

    def delete_partition(self, key: str) -> None:
        raise NotImplementedError

    def list_partitions(self, prefix: str = "") -> List[str]:
        raise NotImplementedError


class MemoryPartitionStorage(PartitionStorage):
    """Process-local storage, mostly useful for tests and dry runs."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}

    def get_partition(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    def set_partition(self, key: str, data: bytes) -> None:
        self._data[key] = bytes(data)

    def delete_partition(self, key: str) -> None:
        self._data.pop(key, None)

    def list_partitions(self, prefix: str = "") -> List[str]:
        return sorted(key for key in self._data if key.startswith(prefix))


class FilePartitionStorage(PartitionStorage):
    """One JSON file per partition under ``root``.

    Writers are serialised with a portalocker lock file next to the target and
    files are replaced atomically, so readers see either the old or the new
    content and never a torn write.
    """

    def __init__(self, root: Path, *, lock_timeout: float = _LOCK_TIMEOUT_SECONDS) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.lock_timeout = float(lock_timeout)

    def path_for(self, key: str) -> Path:
        segments = [_sanitize_segment(seg) for seg in key.split("/") if seg]
        if not segments:
            raise ValueError(f"invalid storage key {key!r}")
        return self.root.joinpath(*segments[:-1], f"{segments[-1]}.json")

    def get_partition(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"failed to read partition {key!r}: {exc}") from exc

    def set_partition(self, key: str, data: bytes) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with portalocker.Lock(str(path) + ".lock", timeout=self.lock_timeout):
                self._atomic_write_bytes(path, data)
        except portalocker.exceptions.LockException as exc:
            raise StorageError(f"partition {key!r} is locked by another writer") from exc
        logger.debug("FilePartitionStorage.set_partition: wrote %d bytes to %s", len(data), path)

    def delete_partition(self, key: str) -> None:
        path = self.path_for(key)
        lock_path = Path(str(path) + ".lock")
        try:
            with portalocker.Lock(str(lock_path), timeout=self.lock_timeout):
                try:
                    os.remove(path)
                except FileNotFoundError:
                    return
        except portalocker.exceptions.LockException as exc:
            raise StorageError(f"partition {key!r} is locked by another writer") from exc
        try:
            os.remove(lock_path)
        except FileNotFoundError:
            pass
        logger.info("FilePartitionStorage.delete_partition: removed %s", path)

    def list_partitions(self, prefix: str = "") -> List[str]:
        keys = []
        for path in self.root.rglob("*.json"):
            rel = path.relative_to(self.root).with_suffix("")
            key = "/".join(rel.parts)
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    @staticmethod
    def _atomic_write_bytes(path: Path, data: bytes) -> None:
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
