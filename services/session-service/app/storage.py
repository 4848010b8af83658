from __future__ import annotations

import os
import tempfile
import threading
from typing import Dict, List, Optional

import orjson


class StorageError(Exception):
    pass


class StorageUnavailable(StorageError):
    pass


class StorageQuotaExceeded(StorageError):
    pass


class KeyValueStore:
    """
    String key -> string value storage with localStorage semantics.

    Every call is a whole-value read or overwrite; nothing here offers
    read-modify-write atomicity.
    """

    def get_item(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set_item(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove_item(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError


class InMemoryKeyValueStore(KeyValueStore):
    """
    Simple store for dev/tests.
    Use JsonFileKeyValueStore when data must survive a restart.
    """
    def __init__(self, *, quota_bytes: Optional[int] = None, disabled: bool = False) -> None:
        self._data: Dict[str, str] = {}
        self.quota_bytes = quota_bytes
        self.disabled = disabled

    def _check(self) -> None:
        if self.disabled:
            raise StorageUnavailable("storage is disabled")

    def _size_with(self, key: str, value: str) -> int:
        total = len(key) + len(value)
        for k, v in self._data.items():
            if k != key:
                total += len(k) + len(v)
        return total

    def get_item(self, key: str) -> Optional[str]:
        self._check()
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._check()
        if self.quota_bytes is not None and self._size_with(key, value) > self.quota_bytes:
            raise StorageQuotaExceeded(f"quota of {self.quota_bytes} bytes exceeded writing {key!r}")
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._check()
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        self._check()
        return list(self._data.keys())


class JsonFileKeyValueStore(InMemoryKeyValueStore):
    """
    Durable store: the whole map lives in one JSON file, rewritten
    atomically (temp file + os.replace) after every mutation.

    Single process, dev only. Writes are synchronous and rewrite every
    device's keys, so reads that bump lastActivity cost a full file write.
    Unchanged values are not rewritten.
    """
    def __init__(self, path: str, *, quota_bytes: Optional[int] = None) -> None:
        super().__init__(quota_bytes=quota_bytes)
        self.path = path
        self._lock = threading.Lock()
        self._data = self._load()
        self.flushes = 0

    def _load(self) -> Dict[str, str]:
        try:
            with open(self.path, "rb") as f:
                raw = f.read()
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise StorageUnavailable(f"cannot read {self.path}: {e}") from e
        if not raw.strip():
            return {}
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise StorageUnavailable(f"corrupt storage file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageUnavailable(f"corrupt storage file {self.path}: not an object")
        return {str(k): str(v) for k, v in data.items()}

    def _flush(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".kv-", dir=directory)
            with os.fdopen(fd, "wb") as f:
                f.write(orjson.dumps(self._data))
            os.replace(tmp, self.path)
        except OSError as e:
            raise StorageUnavailable(f"cannot write {self.path}: {e}") from e
        self.flushes += 1

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            previous = self._data.get(key)
            if previous == value:
                return
            super().set_item(key, value)
            try:
                self._flush()
            except StorageError:
                if previous is None:
                    self._data.pop(key, None)
                else:
                    self._data[key] = previous
                raise

    def remove_item(self, key: str) -> None:
        with self._lock:
            if key not in self._data:
                return
            previous = self._data[key]
            super().remove_item(key)
            try:
                self._flush()
            except StorageError:
                self._data[key] = previous
                raise


def _entry_size(key: str, value: str) -> int:
    return len(key) + len(value)


class DeviceScopedStore(KeyValueStore):
    """
    One device's view of a shared backend, i.e. that browser's localStorage.

    `quota_bytes` limits this device only; other devices' keys never count
    against it.
    """
    def __init__(self, backend: KeyValueStore, device_id: str, *, quota_bytes: Optional[int] = None) -> None:
        if not device_id:
            raise ValueError("device_id is required")
        self.backend = backend
        self.device_id = device_id
        self.quota_bytes = quota_bytes
        self._prefix = f"device:{device_id}:"

    def usage_bytes(self, *, excluding: Optional[str] = None) -> int:
        total = 0
        for k in self.keys():
            if k == excluding:
                continue
            v = self.get_item(k)
            if v is not None:
                total += _entry_size(k, v)
        return total

    def get_item(self, key: str) -> Optional[str]:
        return self.backend.get_item(self._prefix + key)

    def set_item(self, key: str, value: str) -> None:
        if self.quota_bytes is not None:
            if self.usage_bytes(excluding=key) + _entry_size(key, value) > self.quota_bytes:
                raise StorageQuotaExceeded(
                    f"device quota of {self.quota_bytes} bytes exceeded writing {key!r}"
                )
        self.backend.set_item(self._prefix + key, value)

    def remove_item(self, key: str) -> None:
        self.backend.remove_item(self._prefix + key)

    def keys(self) -> List[str]:
        n = len(self._prefix)
        return [k[n:] for k in self.backend.keys() if k.startswith(self._prefix)]


def build_store(backend: str, *, path: str, quota_bytes: Optional[int] = None) -> KeyValueStore:
    """Shared backend. Per-device limits belong on DeviceScopedStore."""
    kind = (backend or "memory").lower()
    if kind == "file":
        return JsonFileKeyValueStore(path, quota_bytes=quota_bytes)
    if kind == "memory":
        return InMemoryKeyValueStore(quota_bytes=quota_bytes)
    raise ValueError(f"unknown store backend: {backend!r}")
