"""
Object store with per-object locking.

Operations that touch the same objects are serialized by locking every input
object id in sorted order before reading. Mutations are made on private copies
(``StagedWrites``) and become visible only through ``commit``, which bumps the
versions of all written objects to one Lamport timestamp. A failed operation
simply drops its staged copies.

INVARIANTS:
- No reader ever observes a partially applied transaction.
- Object versions only increase.
- A created object id is never reused.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sealkit.whitelist.hardening import AtomicCounter, InvariantViolation
from sealkit.whitelist.objects import ObjectRecord, Owner, OwnerKind


@dataclass
class StagedWrites:
    """Copies of objects mutated or created by one in-flight transaction."""
    mutated: Dict[str, ObjectRecord] = field(default_factory=dict)
    created: Dict[str, ObjectRecord] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.mutated and not self.created


@dataclass
class _LockEntry:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0


class ObjectStore:
    """Thread-safe keyed store of ledger objects."""

    def __init__(self):
        self._objects: Dict[str, ObjectRecord] = {}
        self._object_locks: Dict[str, _LockEntry] = {}
        self._lock = threading.RLock()
        self._lamport = AtomicCounter(0)

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    def _lock_for(self, object_id: str) -> threading.RLock:
        with self._lock:
            entry = self._object_locks.get(object_id)
            if entry is None:
                entry = _LockEntry()
                self._object_locks[object_id] = entry
            entry.users += 1
            return entry.lock

    def _unref(self, object_id: str) -> None:
        with self._lock:
            entry = self._object_locks[object_id]
            entry.users -= 1
            if entry.users == 0:
                del self._object_locks[object_id]

    def lock_count(self) -> int:
        """Number of per-object locks currently held or awaited."""
        with self._lock:
            return len(self._object_locks)

    @contextmanager
    def locked(self, object_ids: Iterable[str]) -> Iterator[None]:
        """Hold the locks of all given objects, acquired in sorted order.

        A lock entry lives only while some caller holds or waits for it.
        """
        ids = sorted(set(object_ids))
        locks = [self._lock_for(oid) for oid in ids]
        acquired: List[threading.RLock] = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for oid in ids:
                self._unref(oid)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, object_id: str) -> Optional[ObjectRecord]:
        """Return a private copy of the stored object, or None."""
        with self._lock:
            record = self._objects.get(object_id)
            return record.copy() if record else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)

    def ids(self) -> List[str]:
        with self._lock:
            return sorted(self._objects)

    def owned_by(self, address: str) -> List[ObjectRecord]:
        with self._lock:
            return [r.copy() for r in self._objects.values() if r.owner.is_owned_by(address)]

    @property
    def lamport_version(self) -> int:
        return self._lamport.get()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def next_version(self, input_versions: Iterable[int] = ()) -> int:
        """Allocate a Lamport version greater than every input version."""
        floor = max(list(input_versions) or [0])
        with self._lock:
            current = self._lamport.get()
            nxt = max(current, floor) + 1
            self._lamport.reset(nxt)
            return nxt

    def commit(self, staged: StagedWrites, digest: str) -> int:
        """Atomically publish staged writes. Returns the new Lamport version."""
        with self._lock:
            for object_id in staged.created:
                if object_id in self._objects:
                    raise InvariantViolation(f"object id reused: {object_id}")
            for object_id, record in staged.mutated.items():
                current = self._objects.get(object_id)
                if current is None:
                    raise InvariantViolation(f"mutated object vanished: {object_id}")
                if current.version != record.version:
                    raise InvariantViolation(
                        f"stale write to {object_id}: stored v{current.version}, staged v{record.version}"
                    )

            version = self.next_version(r.version for r in staged.mutated.values())
            for record in list(staged.mutated.values()) + list(staged.created.values()):
                record.version = version
                record.previous_transaction = digest
                if record.owner.kind == OwnerKind.SHARED and record.owner.initial_shared_version == 0:
                    record.owner = Owner.shared(version)
                self._objects[record.object_id] = record.copy()
            return version

    def insert_genesis(self, record: ObjectRecord) -> ObjectRecord:
        """Insert an object outside of any transaction (faucet / genesis)."""
        staged = StagedWrites(created={record.object_id: record})
        self.commit(staged, digest="genesis")
        return record

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def to_list(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._objects[oid].to_dict() for oid in sorted(self._objects)]

    def load_records(self, records: Iterable[ObjectRecord], lamport_version: int) -> None:
        with self._lock:
            self._objects = {r.object_id: r for r in records}
            self._lamport.reset(lamport_version)
