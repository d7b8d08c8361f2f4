from __future__ import annotations

import json
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from observability import log_event

STATUS_PREPARED = "prepared"
STATUS_SUBMITTED = "submitted"
STATUS_CONFIRMED = "confirmed"
STATUS_FAILED = "failed"

NONCE_UNASSIGNED = -1


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class JournalEntry:
    id: int
    idempotency_key: str
    profile_name: str
    chain_id: int
    command: str
    to_address: str
    from_address: str = ""
    value_wei: str = "0"
    data_hex: str = "0x"
    nonce: int = NONCE_UNASSIGNED
    gas_limit: str = ""
    max_fee_per_gas_wei: str = ""
    max_priority_fee_per_gas_wei: str = ""
    tx_hash: str = ""
    status: str = STATUS_PREPARED
    error_code: str = ""
    error_message: str = ""
    receipt_json: str = ""
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "JournalEntry":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in raw.items() if k in known})


@dataclass(frozen=True)
class PreparedParams:
    """Everything needed to rebuild a submission without re-deriving it."""

    idempotency_key: str
    profile_name: str
    chain_id: int
    command: str
    to_address: str
    from_address: str
    value_wei: str
    data_hex: str
    nonce: int
    gas_limit: str
    max_fee_per_gas_wei: str
    max_priority_fee_per_gas_wei: str


class JournalStore(ABC):
    """
    Durable transaction journal keyed by idempotency key.

    Rows move prepared -> submitted -> confirmed, or to failed from any
    non-terminal state. Confirmed rows are never modified again.
    """

    path: str

    @abstractmethod
    def upsert_prepared(self, params: PreparedParams) -> JournalEntry:
        raise NotImplementedError

    @abstractmethod
    def mark_submitted(
        self,
        idempotency_key: str,
        tx_hash: str,
        status: str = STATUS_SUBMITTED,
        error_code: str = "",
        error_message: str = "",
    ) -> JournalEntry:
        raise NotImplementedError

    @abstractmethod
    def mark_confirmed(self, idempotency_key: str, receipt_json: str) -> JournalEntry:
        raise NotImplementedError

    @abstractmethod
    def mark_failed(self, idempotency_key: str, error_code: str, error_message: str) -> Optional[JournalEntry]:
        """Returns None when no row exists yet for the key."""
        raise NotImplementedError

    @abstractmethod
    def get_by_idempotency_key(self, idempotency_key: str) -> Optional[JournalEntry]:
        raise NotImplementedError

    @abstractmethod
    def get_by_tx_hash(self, tx_hash: str) -> Optional[JournalEntry]:
        raise NotImplementedError

    @abstractmethod
    def list_recent(self, limit: int = 20) -> List[JournalEntry]:
        raise NotImplementedError

    def close(self) -> None:
        return None

    def __enter__(self) -> "JournalStore":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


_SCHEMA = """
CREATE TABLE IF NOT EXISTS tx_journal(
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    idempotency_key TEXT NOT NULL UNIQUE,
    profile_name TEXT NOT NULL,
    chain_id INTEGER NOT NULL,
    command TEXT NOT NULL,
    to_address TEXT NOT NULL,
    from_address TEXT NOT NULL DEFAULT '',
    value_wei TEXT NOT NULL DEFAULT '0',
    data_hex TEXT NOT NULL DEFAULT '0x',
    nonce INTEGER NOT NULL DEFAULT -1,
    gas_limit TEXT NOT NULL DEFAULT '',
    max_fee_per_gas_wei TEXT NOT NULL DEFAULT '',
    max_priority_fee_per_gas_wei TEXT NOT NULL DEFAULT '',
    tx_hash TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    error_code TEXT NOT NULL DEFAULT '',
    error_message TEXT NOT NULL DEFAULT '',
    receipt_json TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tx_journal_tx_hash ON tx_journal(tx_hash);
CREATE INDEX IF NOT EXISTS idx_tx_journal_status ON tx_journal(status);
"""


class SqliteJournalStore(JournalStore):
    """
    SQLite journal in WAL mode.

    Every write commits before returning, so a crash leaves the last committed
    row intact and later reads on any handle observe it.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()
        Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(path, check_same_thread=False)
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.executescript(_SCHEMA)
            conn.commit()
        except sqlite3.Error:
            conn.close()
            raise
        self._conn: Optional[sqlite3.Connection] = conn

    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("journal store is closed")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _write(self, sql: str, params: Dict[str, Any]) -> None:
        with self._lock:
            conn = self._db()
            conn.execute(sql, params)
            conn.commit()

    def _fetch_one(self, sql: str, params: tuple) -> Optional[JournalEntry]:
        with self._lock:
            row = self._db().execute(sql, params).fetchone()
        if row is None:
            return None
        return JournalEntry.from_dict(dict(row))

    def upsert_prepared(self, params: PreparedParams) -> JournalEntry:
        ts = _utc_now()
        values = asdict(params)
        values.update({"status": STATUS_PREPARED, "created_at": ts, "updated_at": ts})
        self._write(
            """
            INSERT INTO tx_journal(
                idempotency_key, profile_name, chain_id, command, to_address, from_address,
                value_wei, data_hex, nonce, gas_limit, max_fee_per_gas_wei,
                max_priority_fee_per_gas_wei, status, created_at, updated_at
            )
            VALUES(
                :idempotency_key, :profile_name, :chain_id, :command, :to_address, :from_address,
                :value_wei, :data_hex, :nonce, :gas_limit, :max_fee_per_gas_wei,
                :max_priority_fee_per_gas_wei, :status, :created_at, :updated_at
            )
            ON CONFLICT(idempotency_key) DO UPDATE SET
                profile_name = excluded.profile_name,
                chain_id = excluded.chain_id,
                command = excluded.command,
                to_address = excluded.to_address,
                from_address = excluded.from_address,
                value_wei = excluded.value_wei,
                data_hex = excluded.data_hex,
                nonce = excluded.nonce,
                gas_limit = excluded.gas_limit,
                max_fee_per_gas_wei = excluded.max_fee_per_gas_wei,
                max_priority_fee_per_gas_wei = excluded.max_priority_fee_per_gas_wei,
                status = excluded.status,
                tx_hash = '',
                error_code = '',
                error_message = '',
                receipt_json = '',
                updated_at = excluded.updated_at
            WHERE tx_journal.status != 'confirmed'
            """,
            values,
        )
        entry = self.get_by_idempotency_key(params.idempotency_key)
        if entry is None:
            raise sqlite3.DatabaseError("journal write failed")
        return entry

    def mark_submitted(
        self,
        idempotency_key: str,
        tx_hash: str,
        status: str = STATUS_SUBMITTED,
        error_code: str = "",
        error_message: str = "",
    ) -> JournalEntry:
        self._write(
            """
            UPDATE tx_journal
            SET tx_hash = :tx_hash, status = :status, error_code = :error_code,
                error_message = :error_message, updated_at = :updated_at
            WHERE idempotency_key = :idempotency_key AND status != 'confirmed'
            """,
            {
                "idempotency_key": idempotency_key,
                "tx_hash": tx_hash,
                "status": status,
                "error_code": error_code,
                "error_message": error_message,
                "updated_at": _utc_now(),
            },
        )
        entry = self.get_by_idempotency_key(idempotency_key)
        if entry is None:
            raise sqlite3.DatabaseError("journal update failed")
        return entry

    def mark_confirmed(self, idempotency_key: str, receipt_json: str) -> JournalEntry:
        self._write(
            """
            UPDATE tx_journal
            SET status = 'confirmed', receipt_json = :receipt_json, error_code = '',
                error_message = '', updated_at = :updated_at
            WHERE idempotency_key = :idempotency_key AND status != 'confirmed'
            """,
            {"idempotency_key": idempotency_key, "receipt_json": receipt_json, "updated_at": _utc_now()},
        )
        entry = self.get_by_idempotency_key(idempotency_key)
        if entry is None:
            raise sqlite3.DatabaseError("journal confirmation update failed")
        return entry

    def mark_failed(self, idempotency_key: str, error_code: str, error_message: str) -> Optional[JournalEntry]:
        self._write(
            """
            UPDATE tx_journal
            SET status = 'failed', error_code = :error_code, error_message = :error_message,
                updated_at = :updated_at
            WHERE idempotency_key = :idempotency_key AND status != 'confirmed'
            """,
            {
                "idempotency_key": idempotency_key,
                "error_code": error_code,
                "error_message": error_message,
                "updated_at": _utc_now(),
            },
        )
        return self.get_by_idempotency_key(idempotency_key)

    def get_by_idempotency_key(self, idempotency_key: str) -> Optional[JournalEntry]:
        return self._fetch_one("SELECT * FROM tx_journal WHERE idempotency_key = ? LIMIT 1", (idempotency_key,))

    def get_by_tx_hash(self, tx_hash: str) -> Optional[JournalEntry]:
        if not tx_hash:
            return None
        return self._fetch_one("SELECT * FROM tx_journal WHERE tx_hash = ? LIMIT 1", (tx_hash,))

    def list_recent(self, limit: int = 20) -> List[JournalEntry]:
        with self._lock:
            rows = self._db().execute("SELECT * FROM tx_journal ORDER BY id DESC LIMIT ?", (int(limit),)).fetchall()
        return [JournalEntry.from_dict(dict(r)) for r in rows]


class FileJournalStore(JournalStore):
    """
    Flat JSON journal used when SQLite cannot be opened.

    Layout: {"next_id": int, "entries": [JournalEntry, ...]}. Each write replaces
    the file atomically via a temp file and os.replace.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._next_id = 1
        self._entries: List[JournalEntry] = []
        self._load()

    def _load(self) -> None:
        p = Path(self.path)
        if not p.exists():
            return
        try:
            raw = json.loads(p.read_text(encoding="utf-8"))
            self._next_id = int(raw.get("next_id", 1))
            self._entries = [JournalEntry.from_dict(e) for e in raw.get("entries", [])]
        except (ValueError, TypeError, AttributeError) as e:
            backup = f"{self.path}.corrupt"
            os.replace(self.path, backup)
            log_event(
                "journal_file_corrupt",
                data={"path": self.path, "backup": backup, "error": str(e)},
                level="warning",
            )
            self._next_id = 1
            self._entries = []

    def _save(self) -> None:
        payload = {"next_id": self._next_id, "entries": [e.to_dict() for e in self._entries]}
        Path(self.path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(json.dumps(payload, indent=2) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    def _find(self, idempotency_key: str) -> Optional[JournalEntry]:
        for e in self._entries:
            if e.idempotency_key == idempotency_key:
                return e
        return None

    def upsert_prepared(self, params: PreparedParams) -> JournalEntry:
        ts = _utc_now()
        with self._lock:
            existing = self._find(params.idempotency_key)
            if existing is not None and existing.status == STATUS_CONFIRMED:
                return replace(existing)
            fresh = JournalEntry(
                id=existing.id if existing else self._next_id,
                status=STATUS_PREPARED,
                created_at=existing.created_at if existing else ts,
                updated_at=ts,
                **asdict(params),
            )
            if existing is None:
                self._next_id += 1
                self._entries.append(fresh)
            else:
                self._entries[self._entries.index(existing)] = fresh
            self._save()
            return replace(fresh)

    def _update(self, idempotency_key: str, **changes: Any) -> Optional[JournalEntry]:
        with self._lock:
            existing = self._find(idempotency_key)
            if existing is None:
                return None
            if existing.status != STATUS_CONFIRMED:
                for k, v in changes.items():
                    setattr(existing, k, v)
                existing.updated_at = _utc_now()
                self._save()
            return replace(existing)

    def mark_submitted(
        self,
        idempotency_key: str,
        tx_hash: str,
        status: str = STATUS_SUBMITTED,
        error_code: str = "",
        error_message: str = "",
    ) -> JournalEntry:
        entry = self._update(
            idempotency_key, tx_hash=tx_hash, status=status, error_code=error_code, error_message=error_message
        )
        if entry is None:
            raise KeyError(f"journal update failed: no entry for {idempotency_key}")
        return entry

    def mark_confirmed(self, idempotency_key: str, receipt_json: str) -> JournalEntry:
        entry = self._update(
            idempotency_key, status=STATUS_CONFIRMED, receipt_json=receipt_json, error_code="", error_message=""
        )
        if entry is None:
            raise KeyError(f"journal confirmation update failed: no entry for {idempotency_key}")
        return entry

    def mark_failed(self, idempotency_key: str, error_code: str, error_message: str) -> Optional[JournalEntry]:
        return self._update(idempotency_key, status=STATUS_FAILED, error_code=error_code, error_message=error_message)

    def get_by_idempotency_key(self, idempotency_key: str) -> Optional[JournalEntry]:
        with self._lock:
            found = self._find(idempotency_key)
            return replace(found) if found else None

    def get_by_tx_hash(self, tx_hash: str) -> Optional[JournalEntry]:
        if not tx_hash:
            return None
        with self._lock:
            for e in self._entries:
                if e.tx_hash == tx_hash:
                    return replace(e)
        return None

    def list_recent(self, limit: int = 20) -> List[JournalEntry]:
        with self._lock:
            ordered = sorted(self._entries, key=lambda e: e.id, reverse=True)
            return [replace(e) for e in ordered[: max(0, int(limit))]]


def open_journal(path: str) -> JournalStore:
    """
    Open the SQLite journal at `path`, or the JSON journal at `<path>.json`
    when SQLite cannot be initialized there.
    """
    try:
        return SqliteJournalStore(path)
    except (sqlite3.Error, OSError) as e:
        fallback = f"{path}.json"
        log_event(
            "journal_fallback",
            data={"path": path, "fallback_path": fallback, "error": str(e)},
            level="warning",
        )
        return FileJournalStore(fallback)
