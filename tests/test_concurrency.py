"""
Concurrency tests for the ledger node.

Operations on one whitelist are serialized by per-object locks; readers never
observe a half-applied transaction.

Run with: pytest tests/test_concurrency.py -v
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from sealkit.whitelist.client import WhitelistClient, WhitelistTransactionError
from sealkit.whitelist.errors import WhitelistErrorCode
from sealkit.whitelist.hardening import AtomicCounter
from sealkit.whitelist.keys import Ed25519Keypair


def _account(i: int) -> str:
    return "0x" + f"{i + 1:064x}"


class TestConcurrentMembership:
    """Parallel adds against one whitelist."""

    def test_capacity_never_exceeded(self, node, owner):
        client = WhitelistClient(node)
        created = client.create_whitelist(owner, "vault", 5)
        added = AtomicCounter(0)
        full = AtomicCounter(0)

        def add(i):
            try:
                client.add(owner, created.whitelist_id, created.owner_cap_id, _account(i))
                added.increment()
            except WhitelistTransactionError as e:
                assert e.code == WhitelistErrorCode.EExceededCapacity
                full.increment()

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(add, range(20)))

        wl = node.get_object(created.whitelist_id).contents
        assert added.get() == 5
        assert full.get() == 15
        assert len(wl.addresses) == 5
        assert node.store.lock_count() == 0

    def test_same_account_added_once(self, node, owner):
        client = WhitelistClient(node)
        created = client.create_whitelist(owner, "vault", 10)
        account = _account(0)
        outcomes = []
        lock = threading.Lock()

        def add(_):
            try:
                client.add(owner, created.whitelist_id, created.owner_cap_id, account)
                result = "ok"
            except WhitelistTransactionError as e:
                result = e.code
            with lock:
                outcomes.append(result)

        with ThreadPoolExecutor(max_workers=6) as pool:
            list(pool.map(add, range(6)))

        assert outcomes.count("ok") == 1
        assert outcomes.count(WhitelistErrorCode.EDuplicate) == 5

    def test_disjoint_whitelists_progress_independently(self, node):
        client = WhitelistClient(node)
        owners = [Ed25519Keypair.generate() for _ in range(4)]
        lists = [client.create_whitelist(o, f"vault-{i}", 3) for i, o in enumerate(owners)]

        def fill(i):
            for j in range(3):
                client.add(owners[i], lists[i].whitelist_id, lists[i].owner_cap_id, _account(j))

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(fill, range(4)))

        for created in lists:
            assert len(node.get_object(created.whitelist_id).contents.addresses) == 3

    def test_versions_strictly_increase(self, node, owner):
        client = WhitelistClient(node)
        created = client.create_whitelist(owner, "vault", 50)
        versions = []
        lock = threading.Lock()

        def add(i):
            res = client.add(owner, created.whitelist_id, created.owner_cap_id, _account(i))
            with lock:
                versions.append(res.object_changes[0].version)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(add, range(20)))

        assert len(set(versions)) == 20

    @pytest.mark.slow
    def test_readers_see_consistent_snapshots(self, node, owner):
        client = WhitelistClient(node)
        created = client.create_whitelist(owner, "vault", 200)
        stop = threading.Event()
        violations = []

        def read():
            while not stop.is_set():
                record = node.get_object(created.whitelist_id)
                if len(record.contents.addresses) > record.contents.capacity:
                    violations.append(record.version)

        readers = [threading.Thread(target=read) for _ in range(3)]
        for t in readers:
            t.start()
        try:
            with ThreadPoolExecutor(max_workers=8) as pool:
                list(pool.map(
                    lambda i: client.add(owner, created.whitelist_id, created.owner_cap_id, _account(i)),
                    range(200),
                ))
        finally:
            stop.set()
            for t in readers:
                t.join()

        assert violations == []
        assert len(node.get_object(created.whitelist_id).contents.addresses) == 200


class TestObjectLocks:
    """Per-object lock entries exist only while in use."""

    def test_entries_released_after_use(self, node):
        store = node.store
        with store.locked(["0x2", "0x1"]):
            assert store.lock_count() == 2
            with store.locked(["0x1"]):
                assert store.lock_count() == 2
            assert store.lock_count() == 2
        assert store.lock_count() == 0

    def test_contended_entry_released(self, node):
        store = node.store
        entered = threading.Event()
        release = threading.Event()

        def hold():
            with store.locked(["0x1"]):
                entered.set()
                release.wait(5)

        holder = threading.Thread(target=hold)
        holder.start()
        assert entered.wait(5)

        with ThreadPoolExecutor(max_workers=1) as pool:
            def wait_then_exit():
                with store.locked(["0x1"]):
                    return store.lock_count()
            future = pool.submit(wait_then_exit)
            release.set()
            assert future.result(timeout=5) == 1
        holder.join(5)
        assert store.lock_count() == 0
