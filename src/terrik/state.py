"""State store — persisted record of provisioned resources."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import StateCorruptionError

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class Status(StrEnum):
    CREATED = "created"
    DESTROYED = "destroyed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StateEntry(BaseModel):
    """Last-applied record of a single managed resource."""

    model_config = ConfigDict(frozen=True)

    address: str
    type: str
    name: str
    status: Status
    provider_id: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    computed: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    index: int = 0
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def exists(self) -> bool:
        """True if the provider holds a live object for this entry."""
        return self.status is not Status.DESTROYED and self.provider_id is not None

    @property
    def tainted(self) -> bool:
        """A live object whose last action did not complete cleanly."""
        return self.exists and self.status is not Status.CREATED

    def values(self) -> dict[str, Any]:
        """Configured and computed attributes, with ``id`` set to the provider id."""
        merged = {**self.attributes, **self.computed}
        if self.provider_id is not None:
            merged["id"] = self.provider_id
        return merged


class StoredOutput(BaseModel):
    """An output value recorded after apply."""

    value: Any = None
    sensitive: bool = False


class StateDocument(BaseModel):
    """On-disk layout of the state file."""

    version: int = STATE_VERSION
    serial: int = 0
    resources: dict[str, StateEntry] = Field(default_factory=dict)
    outputs: dict[str, StoredOutput] = Field(default_factory=dict)


class StateStore:
    """Lock-guarded store with an explicit open/close lifecycle.

    Writes are per-resource upserts serialized by a lock scoped to the
    resource address; every write is flushed to disk atomically. A store
    without a path keeps state in memory only.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._entries: dict[str, StateEntry] = {}
        self._serial = 0
        self._outputs: dict[str, StoredOutput] = {}
        self._open = False
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._flush_lock = threading.Lock()

    # -- Lifecycle --

    def open(self) -> StateStore:
        """Load persisted state; raises StateCorruptionError if it is unreadable."""
        if self.path is not None and self.path.exists():
            doc = _read(self.path)
            self._entries = dict(doc.resources)
            self._outputs = dict(doc.outputs)
            self._serial = doc.serial
            logger.debug("Loaded %d state entr(ies) from %s", len(self._entries), self.path)
        self._open = True
        return self

    def close(self) -> None:
        # every write is already flushed; closing never touches the file
        self._open = False

    def __enter__(self) -> StateStore:
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def serial(self) -> int:
        return self._serial

    # -- Reads --

    def snapshot(self) -> dict[str, StateEntry]:
        """A point-in-time copy of all entries, safe to read without locks."""
        with self._flush_lock:
            return dict(self._entries)

    def get(self, address: str) -> StateEntry | None:
        with self._flush_lock:
            return self._entries.get(address)

    def __contains__(self, address: object) -> bool:
        return address in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        return len(self._entries)

    # -- Writes --

    def _lock_for(self, address: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(address, threading.Lock())

    def _require_open(self) -> None:
        if not self._open:
            raise RuntimeError("State store is not open")

    def upsert(self, entry: StateEntry) -> None:
        """Insert or replace an entry and flush."""
        self._require_open()
        with self._lock_for(entry.address):
            with self._flush_lock:
                self._entries[entry.address] = entry
                self._write()
        logger.debug("State: %s -> %s", entry.address, entry.status.value)

    def mark(self, address: str, status: Status, **defaults: Any) -> StateEntry:
        """Set the status of an entry, keeping its recorded attributes.

        If no entry exists yet, one is created from ``defaults``.
        """
        self._require_open()
        with self._lock_for(address):
            with self._flush_lock:
                current = self._entries.get(address)
                now = datetime.now(UTC)
                if current is None:
                    entry = StateEntry(address=address, status=status, updated_at=now, **defaults)
                else:
                    entry = current.model_copy(update={"status": status, "updated_at": now})
                self._entries[address] = entry
                self._write()
        logger.debug("State: %s marked %s", address, status.value)
        return entry

    def outputs(self) -> dict[str, StoredOutput]:
        with self._flush_lock:
            return dict(self._outputs)

    def record_outputs(self, outputs: dict[str, StoredOutput]) -> None:
        """Replace the recorded output values and flush."""
        self._require_open()
        with self._flush_lock:
            self._outputs = dict(outputs)
            self._write()

    def remove(self, address: str) -> None:
        """Drop an entry and flush; a missing entry is left alone."""
        self._require_open()
        with self._lock_for(address):
            with self._flush_lock:
                if self._entries.pop(address, None) is None:
                    return
                self._write()
        logger.debug("State: %s removed", address)

    def _write(self) -> None:
        # caller holds _flush_lock
        self._serial += 1
        if self.path is None:
            return
        doc = StateDocument(serial=self._serial, resources=self._entries, outputs=self._outputs)
        _write_atomic(self.path, doc.model_dump_json(indent=2))

    def __repr__(self) -> str:
        return f"StateStore(path={self.path}, entries={len(self._entries)}, serial={self._serial})"


def _read(path: Path) -> StateDocument:
    try:
        doc = StateDocument.model_validate_json(path.read_bytes())
    except (OSError, ValidationError) as exc:
        raise StateCorruptionError(f"Cannot read state file '{path}': {exc}") from exc

    if doc.version != STATE_VERSION:
        raise StateCorruptionError(f"Unsupported state version {doc.version} in '{path}'")
    for address, entry in doc.resources.items():
        if entry.address != address:
            raise StateCorruptionError(
                f"State entry '{address}' records mismatched address '{entry.address}'"
            )
    return doc


def _write_atomic(path: Path, text: str) -> None:
    """Write to a temp file in the same directory, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
