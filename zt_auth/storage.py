# zt_auth/storage.py
import json
import logging
import os
import threading
import weakref
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

# Linux file lock (works in Docker/Linux)
import fcntl

logger = logging.getLogger("zt_auth.storage")


class KeyedLocks:
    """
    One threading.Lock per key, created on demand.

    Used to serialize read-modify-write sequences that span more than a single
    store call (first-time secret setup per identity, per-wallet sessions).
    Entries are weak: a key's lock disappears once no caller holds it, so
    arbitrary keys (unknown identity tokens) do not accumulate.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def get(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock


# -----------------------------------------------------------------------------
# Key-value backends
# -----------------------------------------------------------------------------
class KeyValueStore(ABC):
    """
    Minimal persistence contract: values are JSON-compatible dicts.

    update(key, fn) is the only mutator. fn receives the current value (or
    None) and returns the new one; the whole call is atomic per key.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def update(self, key: str, fn: Callable[[Optional[Dict[str, Any]]], Dict[str, Any]]) -> Dict[str, Any]:
        pass


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._locks = KeyedLocks()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        v = self._data.get(key)
        return dict(v) if v is not None else None

    def update(self, key, fn):
        with self._locks.get(key):
            current = self._data.get(key)
            new = fn(dict(current) if current is not None else None)
            self._data[key] = dict(new)
            return dict(new)


class JsonFileKeyValueStore(KeyValueStore):
    """
    Single JSON document on disk.

    Writers hold an exclusive flock on a sidecar lock file (so several worker
    processes can share the file) and replace the document atomically via
    os.replace, so readers never see a torn write.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.lock_path = self.path.with_suffix(self.path.suffix + ".lock")
        self._thread_lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _read_unlocked(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        raw = self.path.read_text(encoding="utf-8")
        if not raw.strip():
            return {}
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"{self.path}: store root must be an object")
        return data

    def _write_unlocked(self, data: Dict[str, Dict[str, Any]]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, sort_keys=True, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._thread_lock, open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_SH)
            try:
                v = self._read_unlocked().get(key)
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)
        return dict(v) if v is not None else None

    def update(self, key, fn):
        with self._thread_lock, open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                data = self._read_unlocked()
                current = data.get(key)
                new = dict(fn(dict(current) if current is not None else None))
                data[key] = new
                self._write_unlocked(data)
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)
        return dict(new)


def build_kv_store(settings) -> KeyValueStore:
    if settings.STORE_BACKEND == "file":
        logger.info("using file store at %s", settings.STORE_PATH)
        return JsonFileKeyValueStore(settings.STORE_PATH)
    return MemoryKeyValueStore()


# -----------------------------------------------------------------------------
# Sessions (wallet-keyed trust timestamps)
# -----------------------------------------------------------------------------
@dataclass
class SessionRecord:
    wallet: str
    last_full_auth_at: int = 0
    last_wallet_auth_at: int = 0


class SessionStore:
    """
    wallet (lowercased) -> (last_full_auth_at, last_wallet_auth_at)

    Records are created lazily on first touch and never deleted; staleness is
    what revokes them. Timestamps only move forward.
    """

    PREFIX = "session:"

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    def get(self, wallet: str) -> Optional[SessionRecord]:
        w = wallet.lower()
        raw = self.kv.get(self.PREFIX + w)
        if raw is None:
            return None
        return SessionRecord(
            wallet=w,
            last_full_auth_at=int(raw.get("last_full_auth_at", 0)),
            last_wallet_auth_at=int(raw.get("last_wallet_auth_at", 0)),
        )

    def touch(self, wallet: str, now: int, *, full: bool, wallet_proof: bool) -> SessionRecord:
        w = wallet.lower()

        def _apply(current):
            rec = SessionRecord(wallet=w)
            if current:
                rec.last_full_auth_at = int(current.get("last_full_auth_at", 0))
                rec.last_wallet_auth_at = int(current.get("last_wallet_auth_at", 0))
            if full:
                rec.last_full_auth_at = max(rec.last_full_auth_at, now)
            if wallet_proof:
                rec.last_wallet_auth_at = max(rec.last_wallet_auth_at, now)
            return asdict(rec)

        raw = self.kv.update(self.PREFIX + w, _apply)
        return SessionRecord(**raw)
