from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager, suppress
import hashlib
import json
import os
from pathlib import Path
import re
import tempfile
import threading
import time
from typing import Any, Protocol, TextIO, runtime_checkable

from loguru import logger

JSONType = Any
Clock = Callable[[], float]

__all__ = [
    "ExpiringCache",
    "FileExpiringCache",
    "InMemoryExpiringCache",
    "stable_key",
]


@runtime_checkable
class ExpiringCache(Protocol):
    """Key -> value store where every entry carries an expiry.

    Implementations may be process-local or shared; callers only rely on
    this interface.
    """

    def get(self, key: str) -> JSONType | None: ...

    def set(self, key: str, value: JSONType, ttl_seconds: float) -> None: ...

    def delete(self, key: str) -> bool: ...


class InMemoryExpiringCache:
    """Process-local expiring cache with an injectable clock."""

    def __init__(self, *, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, JSONType]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> JSONType | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: JSONType, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, value)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (exp, _) in self._entries.items() if now >= exp]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class FileExpiringCache:
    """
    Namespaced JSON file cache with expiry, atomic writes and deterministic paths.

    - Each key maps to a single JSON file holding the value and its expiry.
    - Writes are atomic via write-to-temp + os.replace().
    - Keys are validated to avoid path traversal or unsafe filenames.
    - Expiry uses wall-clock time so entries survive process restarts.
    """

    def __init__(
        self,
        base_dir: str = ".cache",
        *,
        namespace: str = "default",
        clock: Clock = time.time,
    ) -> None:
        self._validate_namespace(namespace)
        self.base_dir = Path(base_dir).expanduser().resolve()
        self._ns_dir = self.base_dir / namespace
        self._ns_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock

    # -------- Public API --------

    def get(self, key: str) -> JSONType | None:
        path = self._key_path(key)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as f:
                entry = json.load(f)
        except json.JSONDecodeError:
            logger.debug("FileExpiringCache JSON decode failed at {}", path)
            return None
        except OSError as exc:
            logger.debug("FileExpiringCache read failed at {}: {}", path, exc)
            return None

        if not isinstance(entry, dict) or "expires_at" not in entry:
            return None
        if self._clock() >= float(entry["expires_at"]):
            self.delete(key)
            return None
        return entry.get("value")

    def set(self, key: str, value: JSONType, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        entry = {"expires_at": self._clock() + ttl_seconds, "value": value}
        serialized = json.dumps(entry, ensure_ascii=True, sort_keys=True)
        with self._atomic_writer(key) as tmp_file:
            tmp_file.write(serialized)

    def delete(self, key: str) -> bool:
        path = self._key_path(key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.debug("FileExpiringCache delete failed at {}: {}", path, exc)
            return False

    def path_for(self, key: str) -> str:
        return str(self._key_path(key))

    # -------- Internal helpers --------

    def _key_path(self, key: str) -> Path:
        self._validate_key(key)
        return self._ns_dir / f"{self._sanitize_key(key)}.json"

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if not isinstance(namespace, str) or not namespace.strip():
            raise ValueError("namespace must be a non-empty string")
        if ".." in namespace or "/" in namespace or "\\" in namespace:
            raise ValueError("namespace contains forbidden path components")

    @staticmethod
    def _validate_key(key: str) -> None:
        if not isinstance(key, str) or not key.strip():
            raise ValueError("key must be a non-empty string")
        if ".." in key or os.sep in key or "/" in key or "\\" in key:
            raise ValueError("key contains forbidden path components")

    @staticmethod
    def _sanitize_key(key: str) -> str:
        key = re.sub(r"\s+", "_", key)
        return re.sub(r"[^A-Za-z0-9._-]+", "_", key)

    @contextmanager
    def _atomic_writer(self, key: str) -> Iterator[TextIO]:
        final_path = self._key_path(key)
        tmp_file = tempfile.NamedTemporaryFile(  # noqa: SIM115
            mode="w",
            encoding="utf-8",
            delete=False,
            dir=str(final_path.parent),
            prefix=".tmp",
        )
        try:
            try:
                yield tmp_file
            finally:
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
                tmp_file.close()
            os.replace(tmp_file.name, final_path)
        except Exception:
            with suppress(OSError):
                if os.path.exists(tmp_file.name):
                    os.unlink(tmp_file.name)
            raise


def stable_key(payload: Any) -> str:
    """
    Deterministic SHA256 hex digest over a canonical JSON serialization.
    """
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
