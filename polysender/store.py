"""Embedded key-value store with named tables, ordered byte keys and CBOR values."""

from __future__ import annotations

import dataclasses
import secrets
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, ClassVar, Iterator, TypeVar

import cbor2

_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_DECODE = {c: i for i, c in enumerate(_ALPHABET)}
_DECODE.update({c.lower(): i for c, i in list(_DECODE.items())})

T = TypeVar("T", bound="Saveable")


class NotFoundError(LookupError):
    """The requested record does not exist."""

    def __init__(self, message: str = "not found") -> None:
        super().__init__(message)


class KeyExistsError(LookupError):
    """A record with the same key already exists."""

    def __init__(self, message: str = "key already exists") -> None:
        super().__init__(message)


class Saveable:
    """A value that knows its table and key in the store.

    Subclasses set ``db_table`` and implement ``db_key``. Dataclasses are
    encoded as a map of their public fields; subclasses of built-in scalar
    and sequence types are encoded as the underlying value.
    """

    db_table: ClassVar[str] = ""

    def db_key(self) -> bytes:
        raise NotImplementedError(f"{type(self).__name__} does not define db_key")

    def to_cbor(self) -> Any:
        if dataclasses.is_dataclass(self):
            return {
                f.name: getattr(self, f.name)
                for f in dataclasses.fields(self)
                if not f.name.startswith("_")
            }
        for base in (str, bytes, int, float):
            if isinstance(self, base):
                return base(self)
        if isinstance(self, (list, tuple)):
            return list(self)
        raise TypeError(f"cannot encode {type(self).__name__}")

    @classmethod
    def from_cbor(cls: type[T], value: Any) -> T:
        if dataclasses.is_dataclass(cls):
            if not isinstance(value, dict):
                raise TypeError(f"cannot decode {type(value).__name__} as {cls.__name__}")
            names = {f.name for f in dataclasses.fields(cls) if f.init}
            return cls(**{k: v for k, v in value.items() if k in names})
        return cls(value)  # type: ignore[call-arg]


def new_id() -> bytes:
    """Create a 16-byte ULID from the current time and random bytes."""
    millis = int(time.time() * 1000) & ((1 << 48) - 1)
    return millis.to_bytes(6, "big") + secrets.token_bytes(10)


def id_to_string(key: bytes) -> str:
    """Encode a 16-byte ULID as its 26-character text form."""
    key = bytes(key)
    if len(key) != 16:
        raise ValueError(f"ULID must be 16 bytes, got {len(key)}")
    n = int.from_bytes(key, "big")
    return "".join(_ALPHABET[(n >> (5 * shift)) & 31] for shift in reversed(range(26)))


def parse_id(text: str) -> bytes:
    """Parse the 26-character text form of a ULID, strictly."""
    if len(text) != 26:
        raise ValueError("bad data size when unmarshaling")
    try:
        digits = [_DECODE[c] for c in text]
    except KeyError:
        raise ValueError("bad data characters when unmarshaling") from None
    if digits[0] > 7:
        raise ValueError("overflow when unmarshaling")
    n = 0
    for d in digits:
        n = (n << 5) | d
    return n.to_bytes(16, "big")


class Transaction:
    """A view or update of the store; obtained from Store.view or Store.update."""

    def __init__(self, conn: sqlite3.Connection, writable: bool) -> None:
        self._conn = conn
        self.writable = writable

    def _rows(self, sql: str, params: tuple) -> list[tuple[bytes, bytes]]:
        return [(bytes(k), bytes(v)) for k, v in self._conn.execute(sql, params).fetchall()]

    def _check_writable(self) -> None:
        if not self.writable:
            raise PermissionError("transaction is read-only")

    def get(self, table: str, key: bytes) -> Any:
        """Return the decoded value stored under key, or raise NotFoundError."""
        row = self._conn.execute(
            "SELECT value FROM records WHERE bucket = ? AND key = ?", (table, bytes(key))
        ).fetchone()
        if row is None:
            raise NotFoundError()
        return cbor2.loads(bytes(row[0]))

    def get_record(self, cls: type[T], key: bytes) -> T:
        """Return the record of type cls stored under key, or raise NotFoundError."""
        return cls.from_cbor(self.get(cls.db_table, key))

    def get_record_or_default(self, cls: type[T], key: bytes, default: Any) -> Any:
        """Return the record of type cls under key, or default when absent."""
        try:
            return self.get_record(cls, key)
        except NotFoundError:
            return default

    def for_each(self, cls: type[T]) -> Iterator[tuple[bytes, T]]:
        """Yield (key, record) pairs of a table in ascending key order."""
        for k, v in self._rows(
            "SELECT key, value FROM records WHERE bucket = ? ORDER BY key", (cls.db_table,)
        ):
            yield k, cls.from_cbor(cbor2.loads(v))

    def for_each_reverse(self, cls: type[T]) -> Iterator[tuple[bytes, T]]:
        """Yield (key, record) pairs of a table in descending key order."""
        for k, v in self._rows(
            "SELECT key, value FROM records WHERE bucket = ? ORDER BY key DESC", (cls.db_table,)
        ):
            yield k, cls.from_cbor(cbor2.loads(v))

    def for_each_prefix(self, cls: type[T], prefix: bytes) -> Iterator[tuple[bytes, T]]:
        """Yield (key, record) pairs whose key starts with prefix."""
        for k, value in self.for_each_start_prefix(cls.db_table, prefix, prefix):
            yield k, cls.from_cbor(value)

    def for_each_start_prefix(
        self, table: str, start: bytes, prefix: bytes
    ) -> Iterator[tuple[bytes, Any]]:
        """Yield (key, value) pairs from start onwards while keys share prefix."""
        prefix = bytes(prefix)
        for k, v in self._rows(
            "SELECT key, value FROM records WHERE bucket = ? AND key >= ? ORDER BY key",
            (table, bytes(start)),
        ):
            if not k.startswith(prefix):
                break
            yield k, cbor2.loads(v)

    def put(self, table: str, key: bytes, value: Any) -> None:
        """Store value under key, replacing any existing value."""
        self._check_writable()
        key = bytes(key)
        if not key:
            raise ValueError("key required")
        self._conn.execute(
            "INSERT OR REPLACE INTO records (bucket, key, value) VALUES (?, ?, ?)",
            (table, key, cbor2.dumps(value)),
        )

    def upsert(self, item: Saveable) -> None:
        """Store item under its own table and key, replacing any existing one."""
        self.put(item.db_table, item.db_key(), item.to_cbor())

    def insert(self, item: Saveable) -> None:
        """Store item, raising KeyExistsError when its key is already used."""
        self._check_writable()
        row = self._conn.execute(
            "SELECT 1 FROM records WHERE bucket = ? AND key = ?",
            (item.db_table, bytes(item.db_key())),
        ).fetchone()
        if row is not None:
            raise KeyExistsError()
        self.upsert(item)

    def delete(self, table: str, key: bytes) -> None:
        """Remove the value under key; absent keys are ignored."""
        self._check_writable()
        self._conn.execute(
            "DELETE FROM records WHERE bucket = ? AND key = ?", (table, bytes(key))
        )

    def delete_prefix(self, table: str, prefix: bytes) -> None:
        """Remove every value whose key starts with prefix."""
        self._check_writable()
        prefix = bytes(prefix)
        self._conn.execute(
            "DELETE FROM records WHERE bucket = ? AND substr(key, 1, ?) = ?",
            (table, len(prefix), prefix),
        )


class Store:
    """A store file holding tables of CBOR-encoded values."""

    def __init__(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(path), timeout=1.0, isolation_level=None, check_same_thread=False
        )
        self._lock = threading.Lock()
        self._conn.execute(
            "CREATE TABLE IF NOT EXISTS records ("
            "bucket TEXT NOT NULL, key BLOB NOT NULL, value BLOB NOT NULL, "
            "PRIMARY KEY (bucket, key)) WITHOUT ROWID"
        )

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> Store:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @contextmanager
    def view(self) -> Iterator[Transaction]:
        """Open a read-only transaction."""
        with self._lock:
            self._conn.execute("BEGIN")
            try:
                yield Transaction(self._conn, writable=False)
            finally:
                self._conn.execute("ROLLBACK")

    @contextmanager
    def update(self) -> Iterator[Transaction]:
        """Open a read-write transaction, committed unless an exception escapes."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield Transaction(self._conn, writable=True)
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")