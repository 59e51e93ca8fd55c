"""Concurrency-safe storage for the authorization broker.

This module introduces a *narrow* persistence interface (:class:`AuthStore`)
and two implementations:

* :class:`DiskAuthStore` – JSON files, suitable for a single host.
* :class:`MemoryAuthStore` – ``cachetools`` TLRU caches, suitable for tests and
  single-process deployments.

Design goals:

* **Atomicity** – writes use *temp-file + os.replace*.
* **Single use** – ``consume_txn`` retrieves and deletes in one step and
  ``swap_grant`` is a compare-and-swap, so neither a transaction nor a broker
  code / refresh token can be used twice.
* **No plaintext credentials** – grants only hold SHA-256 hashes of the
  broker-issued codes and tokens.
* **Filename safety** – externally supplied identifiers are validated before
  hitting the filesystem.

Expiry is enforced lazily by the broker when a record is read; the stores only
evict as a backstop (``cleanup_expired_txns`` on disk, TTL on the caches).

Environment variables
---------------------
MCP_AUTH_STORAGE_DIR
    Base directory for all persisted data.
    Defaults to ``~/.mcp-spec-auth/auth`` when unset.
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
from contextlib import contextmanager
from hashlib import sha256
from pathlib import Path
from typing import Iterator, Protocol, runtime_checkable

from cachetools import TLRUCache

from mcp_spec_auth.central_auth.clock import Clock, default_clock
from mcp_spec_auth.central_auth.models import AuthTxnRecord, BrokerGrant, ClientRecord

_LOG = logging.getLogger("mcp-spec-auth.central_auth.store")

# Records stay readable this long past their expiry so the broker can report
# "expired" rather than "not found"; eviction happens afterwards.
EVICTION_GRACE_SECONDS = 300

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,128}$")

# --------------------------------------------------------------------------- #
# helpers                                                                     #
# --------------------------------------------------------------------------- #


def hash_secret(value: str) -> str:
    """Return the hex SHA-256 digest under which a broker credential is stored."""
    return sha256(value.encode("utf-8")).hexdigest()


def is_safe_id(value: str) -> bool:
    return bool(value) and _SAFE_ID.match(value) is not None


def _atomic_write(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(data, fh, separators=(",", ":"), sort_keys=True)
    os.replace(tmp, path)  # atomic on POSIX


def _read_json(path: Path) -> dict | None:
    try:
        with path.open(encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return None


@contextmanager
def _file_lock(lock_path: Path, retries: int = 25, delay: float = 0.02) -> Iterator[None]:
    """Advisory file lock using ``os.O_EXCL`` temp-file creation."""
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    for attempt in range(retries + 1):
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_RDWR)
            os.close(fd)
            break  # acquired!
        except FileExistsError:
            if attempt == retries:
                raise TimeoutError(f"Could not acquire lock {lock_path}") from None
            time.sleep(delay)
    try:
        yield
    finally:
        lock_path.unlink(missing_ok=True)


# --------------------------------------------------------------------------- #
# public interface                                                            #
# --------------------------------------------------------------------------- #


@runtime_checkable
class AuthStore(Protocol):
    """Minimal persistence contract for the broker."""

    # ----- authorization transactions ------------------------------------- #
    def put_txn(self, record: AuthTxnRecord) -> None: ...
    def get_txn(self, auth_txn_id: str) -> AuthTxnRecord | None: ...
    def consume_txn(self, auth_txn_id: str) -> AuthTxnRecord | None: ...
    def transition_txn(
        self, auth_txn_id: str, expected_phase: str, record: AuthTxnRecord
    ) -> bool: ...

    # ----- broker grants --------------------------------------------------- #
    def save_grant(self, grant: BrokerGrant) -> None: ...
    def load_grant(self, grant_id: str) -> BrokerGrant | None: ...
    def swap_grant(self, expected: BrokerGrant, new: BrokerGrant | None) -> bool: ...
    def delete_grant(self, grant_id: str) -> bool: ...

    # ----- registered clients ---------------------------------------------- #
    def save_client(self, client: ClientRecord) -> None: ...
    def load_client(self, client_id: str) -> ClientRecord | None: ...

    # ----- maintenance ----------------------------------------------------- #
    def cleanup_expired_txns(self) -> int: ...


# --------------------------------------------------------------------------- #
# Disk implementation                                                         #
# --------------------------------------------------------------------------- #


class DiskAuthStore(AuthStore):
    """JSON-file implementation of :class:`AuthStore`."""

    def __init__(
        self,
        base_dir: str | os.PathLike | None = None,
        *,
        clock: Clock = default_clock,
    ) -> None:
        self.base_dir = Path(
            base_dir
            or os.getenv("MCP_AUTH_STORAGE_DIR")
            or Path.home() / ".mcp-spec-auth" / "auth"
        ).expanduser()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock

    # ---------------- auth transactions ---------------------------------- #
    def _txn_path(self, auth_txn_id: str) -> Path:
        return self.base_dir / "txns" / f"{auth_txn_id}.json"

    def _txn_lock(self, auth_txn_id: str) -> Path:
        return self._txn_path(auth_txn_id).with_suffix(".lock")

    def put_txn(self, record: AuthTxnRecord) -> None:
        if not is_safe_id(record.auth_txn_id):
            raise ValueError("unsafe auth_txn_id")
        _atomic_write(self._txn_path(record.auth_txn_id), record.to_dict())

    def get_txn(self, auth_txn_id: str) -> AuthTxnRecord | None:
        if not is_safe_id(auth_txn_id):
            return None
        data = _read_json(self._txn_path(auth_txn_id))
        return AuthTxnRecord.from_dict(data) if data else None

    def consume_txn(self, auth_txn_id: str) -> AuthTxnRecord | None:
        """Return and atomically delete the txn (single-use)."""
        if not is_safe_id(auth_txn_id):
            return None
        src = self._txn_path(auth_txn_id)
        claimed = src.with_suffix(".consumed")
        with _file_lock(self._txn_lock(auth_txn_id)):
            try:
                os.replace(src, claimed)  # fails if a concurrent consumer won
            except FileNotFoundError:
                return None
        data = _read_json(claimed)
        claimed.unlink(missing_ok=True)
        return AuthTxnRecord.from_dict(data) if data else None

    def transition_txn(
        self, auth_txn_id: str, expected_phase: str, record: AuthTxnRecord
    ) -> bool:
        if not is_safe_id(auth_txn_id) or record.auth_txn_id != auth_txn_id:
            return False
        with _file_lock(self._txn_lock(auth_txn_id)):
            current = self.get_txn(auth_txn_id)
            if current is None or current.phase != expected_phase:
                return False
            _atomic_write(self._txn_path(auth_txn_id), record.to_dict())
            return True

    # ---------------- grants ---------------------------------------------- #
    def _grant_path(self, grant_id: str) -> Path:
        return self.base_dir / "grants" / f"{grant_id}.json"

    def _grant_lock(self, grant_id: str) -> Path:
        return self._grant_path(grant_id).with_suffix(".lock")

    def save_grant(self, grant: BrokerGrant) -> None:
        if not is_safe_id(grant.grant_id):
            raise ValueError("unsafe grant_id")
        with _file_lock(self._grant_lock(grant.grant_id)):
            _atomic_write(self._grant_path(grant.grant_id), grant.to_dict())

    def load_grant(self, grant_id: str) -> BrokerGrant | None:
        if not is_safe_id(grant_id):
            return None
        data = _read_json(self._grant_path(grant_id))
        return BrokerGrant.from_dict(data) if data else None

    def swap_grant(self, expected: BrokerGrant, new: BrokerGrant | None) -> bool:
        """Replace *expected* with *new* (delete when ``None``) if unchanged."""
        grant_id = expected.grant_id
        if not is_safe_id(grant_id):
            return False
        path = self._grant_path(grant_id)
        with _file_lock(self._grant_lock(grant_id)):
            current = _read_json(path)
            if current is None or current != expected.to_dict():
                return False
            if new is None:
                path.unlink(missing_ok=True)
            else:
                _atomic_write(path, new.to_dict())
            return True

    def delete_grant(self, grant_id: str) -> bool:
        if not is_safe_id(grant_id):
            return False
        path = self._grant_path(grant_id)
        with _file_lock(self._grant_lock(grant_id)):
            existed = path.exists()
            path.unlink(missing_ok=True)
        return existed

    # ---------------- clients --------------------------------------------- #
    def _client_path(self, client_id: str) -> Path:
        return self.base_dir / "clients" / f"{client_id}.json"

    def save_client(self, client: ClientRecord) -> None:
        if not is_safe_id(client.client_id):
            raise ValueError("unsafe client_id")
        _atomic_write(self._client_path(client.client_id), client.to_dict())

    def load_client(self, client_id: str) -> ClientRecord | None:
        if not is_safe_id(client_id):
            return None
        data = _read_json(self._client_path(client_id))
        return ClientRecord.from_dict(data) if data else None

    # ---------------- maintenance ---------------------------------------- #
    def cleanup_expired_txns(self) -> int:
        txndir = self.base_dir / "txns"
        if not txndir.exists():
            return 0
        removed = 0
        cutoff = self._clock() - EVICTION_GRACE_SECONDS
        for p in txndir.glob("*.json"):
            data = _read_json(p)
            if data is None:
                continue
            expires_at = int(data.get("created_at", 0)) + int(data.get("ttl_seconds", 0))
            if expires_at <= cutoff:
                p.unlink(missing_ok=True)
                removed += 1
        if removed:
            _LOG.debug("Removed %d expired auth transactions", removed)
        return removed


# --------------------------------------------------------------------------- #
# In-memory implementation                                                    #
# --------------------------------------------------------------------------- #


def _txn_ttu(_key: str, record: AuthTxnRecord, _now: float) -> float:
    return record.expires_at + EVICTION_GRACE_SECONDS


def _grant_ttu(_key: str, grant: BrokerGrant, _now: float) -> float:
    horizon = max(grant.code_expires_at, grant.access_expires_at, grant.refresh_expires_at)
    return horizon + EVICTION_GRACE_SECONDS


class MemoryAuthStore(AuthStore):
    """Process-local implementation backed by ``cachetools.TLRUCache``.

    Each record is evicted by the cache shortly after its own expiry, which
    serves as the store-level TTL backstop.
    """

    def __init__(self, *, maxsize: int = 10_000, clock: Clock = default_clock) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._txns: TLRUCache[str, AuthTxnRecord] = TLRUCache(
            maxsize=maxsize, ttu=_txn_ttu, timer=clock
        )
        self._grants: TLRUCache[str, BrokerGrant] = TLRUCache(
            maxsize=maxsize, ttu=_grant_ttu, timer=clock
        )
        self._clients: dict[str, ClientRecord] = {}

    def put_txn(self, record: AuthTxnRecord) -> None:
        with self._lock:
            self._txns[record.auth_txn_id] = record

    def get_txn(self, auth_txn_id: str) -> AuthTxnRecord | None:
        with self._lock:
            return self._txns.get(auth_txn_id)

    def consume_txn(self, auth_txn_id: str) -> AuthTxnRecord | None:
        with self._lock:
            return self._txns.pop(auth_txn_id, None)

    def transition_txn(
        self, auth_txn_id: str, expected_phase: str, record: AuthTxnRecord
    ) -> bool:
        with self._lock:
            current = self._txns.get(auth_txn_id)
            if current is None or current.phase != expected_phase:
                return False
            self._txns[auth_txn_id] = record
            return True

    def save_grant(self, grant: BrokerGrant) -> None:
        with self._lock:
            self._grants[grant.grant_id] = grant

    def load_grant(self, grant_id: str) -> BrokerGrant | None:
        with self._lock:
            return self._grants.get(grant_id)

    def swap_grant(self, expected: BrokerGrant, new: BrokerGrant | None) -> bool:
        with self._lock:
            current = self._grants.get(expected.grant_id)
            if current is None or current != expected:
                return False
            if new is None:
                del self._grants[expected.grant_id]
            else:
                self._grants[expected.grant_id] = new
            return True

    def delete_grant(self, grant_id: str) -> bool:
        with self._lock:
            return self._grants.pop(grant_id, None) is not None

    def save_client(self, client: ClientRecord) -> None:
        with self._lock:
            self._clients[client.client_id] = client

    def load_client(self, client_id: str) -> ClientRecord | None:
        with self._lock:
            return self._clients.get(client_id)

    def cleanup_expired_txns(self) -> int:
        with self._lock:
            before = len(self._txns)
            self._txns.expire()
            return before - len(self._txns)


# --------------------------------------------------------------------------- #
# Convenience – default singleton                                            #
# --------------------------------------------------------------------------- #

_default_store: AuthStore | None = None


def default_store() -> AuthStore:
    """Return the process-wide store selected by ``MCP_AUTH_STORE``."""
    global _default_store  # noqa: PLW0603
    if _default_store is None:
        kind = os.getenv("MCP_AUTH_STORE", "disk").strip().lower()
        _default_store = MemoryAuthStore() if kind == "memory" else DiskAuthStore()
    return _default_store
