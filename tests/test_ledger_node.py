"""
Ledger node execution tests.

Covers dry runs vs. execution, linking and argument checks, ownership, gas,
replay protection, signature checks, persistence and the audit chain.

Run with: pytest tests/test_ledger_node.py -v
"""

import json

import pytest

from sealkit.whitelist.client import WhitelistClient, WhitelistTransactionError
from sealkit.whitelist.hardening import SecurityViolation, ValidationErrors
from sealkit.whitelist.node import (
    COMPUTATION_COST_PER_CALL,
    STORAGE_COST_PER_OBJECT,
    LedgerNode,
    ReplayAttempt,
)
from sealkit.whitelist.objects import OwnerKind, Whitelist
from sealkit.whitelist.observability import AuditEventType
from sealkit.whitelist.schema import SchemaValidationError
from sealkit.whitelist.transactions import Transaction

from conftest import PACKAGE_ID, USDC_COIN, WAL_COIN


MEMBER = "0x" + "33" * 32
OTHER = "0x" + "44" * 32


def _target(function: str, package: str = PACKAGE_ID, module: str = "whitelist") -> str:
    return f"{package}::{module}::{function}"


def _signed(tx: Transaction, signer, gas_budget: int = 10_000_000):
    tx.set_sender(signer.to_address())
    tx.set_gas_budget(gas_budget)
    tx_bytes = tx.build()
    return tx_bytes, signer.sign_transaction(tx_bytes)


def _add_tx(wl_id: str, cap_id: str, account: str) -> Transaction:
    tx = Transaction()
    tx.move_call(_target("add"), [tx.object(wl_id), tx.object(cap_id), tx.pure.address(account)])
    return tx


def _whitelist(node: LedgerNode, wl_id: str) -> Whitelist:
    return node.get_object(wl_id).contents


@pytest.fixture
def client(node):
    return WhitelistClient(node)


@pytest.fixture
def created(client, owner):
    return client.create_whitelist(owner, "vault-1", 2)


# =============================================================================
# EXECUTION
# =============================================================================

class TestExecution:
    """Tests for successful execution and reported effects."""

    def test_create_reports_object_changes(self, node, owner):
        tx = Transaction()
        tx.move_call(_target("create_whitelist"),
                     [tx.pure.string("vault-1"), tx.pure.string(""), tx.pure.u64(3)])
        tx_bytes, sig = _signed(tx, owner)

        res = node.execute(tx_bytes, sig)

        assert res.succeeded
        assert res.committed
        assert res.abort_code is None
        types = sorted(c.object_type.rsplit("::", 1)[1] for c in res.object_changes)
        assert types == ["Cap", "Whitelist"]
        for change in res.object_changes:
            assert change.type == "created"
            assert change.sender == owner.to_address()
            record = node.get_object(change.object_id)
            assert record.version == change.version
            assert record.previous_transaction == res.digest
            if change.object_type.endswith("::Whitelist"):
                assert change.owner.kind == OwnerKind.SHARED
                assert change.owner.initial_shared_version == change.version
            else:
                assert change.owner.address == owner.to_address()

    def test_response_dict_shape(self, node, owner):
        tx = Transaction()
        tx.move_call(_target("create_whitelist"),
                     [tx.pure.string("vault-1"), tx.pure.string(""), tx.pure.u64(3)])
        res = node.execute(*_signed(tx, owner))

        d = res.to_dict()
        assert d["effects"]["status"] == {"status": "success"}
        assert d["confirmedLocalExecution"] is True
        assert len(d["effects"]["created"]) == 2
        change = d["objectChanges"][0]
        assert set(change) == {"type", "sender", "owner", "objectType", "objectId", "version"}
        assert isinstance(change["version"], str)

    def test_show_object_changes_off(self, node, owner):
        tx = Transaction()
        tx.move_call(_target("create_whitelist"),
                     [tx.pure.string("vault-1"), tx.pure.string(""), tx.pure.u64(3)])
        res = node.execute(*_signed(tx, owner), show_object_changes=False)
        assert "objectChanges" not in res.to_dict()

    def test_add_mutates_whitelist(self, node, owner, created):
        before = node.get_object(created.whitelist_id).version
        res = node.execute(*_signed(_add_tx(created.whitelist_id, created.owner_cap_id, MEMBER), owner))

        assert res.succeeded
        assert [c.type for c in res.object_changes] == ["mutated"]
        after = node.get_object(created.whitelist_id)
        assert after.version > before
        assert after.contents.contains(MEMBER)

    def test_gas_accounting(self, node, owner, created):
        res = node.execute(*_signed(_add_tx(created.whitelist_id, created.owner_cap_id, MEMBER), owner))
        assert res.gas_used.computation_cost == COMPUTATION_COST_PER_CALL
        assert res.gas_used.storage_cost == STORAGE_COST_PER_OBJECT
        assert res.gas_used.total == COMPUTATION_COST_PER_CALL + STORAGE_COST_PER_OBJECT

    def test_approval_query_changes_nothing(self, node, owner, client, created):
        client.add(owner, created.whitelist_id, created.owner_cap_id, owner.to_address())
        version = node.get_object(created.whitelist_id).version

        res = client.seal_approve_whitelist(owner, created.whitelist_id)

        assert res.succeeded
        assert res.object_changes == []
        assert node.get_object(created.whitelist_id).version == version

    def test_multiple_commands_commit_together(self, node, owner, created):
        tx = Transaction()
        wl, cap = tx.object(created.whitelist_id), tx.object(created.owner_cap_id)
        tx.move_call(_target("add"), [wl, cap, tx.pure.address(MEMBER)])
        tx.move_call(_target("add"), [wl, cap, tx.pure.address(OTHER)])

        res = node.execute(*_signed(tx, owner))

        assert res.succeeded
        assert _whitelist(node, created.whitelist_id).addresses == {MEMBER, OTHER}

    def test_failing_later_command_rolls_back_earlier_ones(self, node, owner, created):
        tx = Transaction()
        wl, cap = tx.object(created.whitelist_id), tx.object(created.owner_cap_id)
        tx.move_call(_target("add"), [wl, cap, tx.pure.address(MEMBER)])
        tx.move_call(_target("add"), [wl, cap, tx.pure.address(MEMBER)])

        res = node.execute(*_signed(tx, owner))

        assert not res.succeeded
        assert res.abort_code == 4
        assert "in command 1" in res.error
        assert _whitelist(node, created.whitelist_id).addresses == set()


# =============================================================================
# DRY RUN
# =============================================================================

class TestDryRun:
    """Dry runs report effects but never commit."""

    def test_dry_run_does_not_commit(self, node, owner, created):
        tx_bytes, _ = _signed(_add_tx(created.whitelist_id, created.owner_cap_id, MEMBER), owner)
        objects, version = len(node.store), node.store.lamport_version

        res = node.dry_run(tx_bytes)

        assert res.succeeded
        assert not res.committed
        assert len(node.store) == objects
        assert node.store.lamport_version == version
        assert not _whitelist(node, created.whitelist_id).contains(MEMBER)
        assert not node.is_executed(res.digest)

    def test_dry_run_reports_prospective_version(self, node, owner, created):
        tx_bytes, sig = _signed(_add_tx(created.whitelist_id, created.owner_cap_id, MEMBER), owner)
        dry = node.dry_run(tx_bytes)
        real = node.execute(tx_bytes, sig)
        assert dry.object_changes[0].version == real.object_changes[0].version
        assert dry.digest == real.digest

    def test_dry_run_reports_abort(self, node, owner, client, created):
        client.add(owner, created.whitelist_id, created.owner_cap_id, MEMBER)
        tx_bytes, _ = _signed(_add_tx(created.whitelist_id, created.owner_cap_id, MEMBER), owner)

        res = node.dry_run(tx_bytes)

        assert res.status == "failure"
        assert res.abort_code == 4
        assert res.execution_error_source.endswith("::whitelist::add with sub status 4")
        assert "sub status 4" in res.error


# =============================================================================
# FAILURES
# =============================================================================

class TestAbortsCommitNothing:
    """Aborted executions leave state untouched."""

    def test_aborted_add(self, node, owner, client, created):
        client.add(owner, created.whitelist_id, created.owner_cap_id, MEMBER)
        client.add(owner, created.whitelist_id, created.owner_cap_id, OTHER)
        before = node.get_object(created.whitelist_id)

        res = node.execute(*_signed(_add_tx(created.whitelist_id, created.owner_cap_id, "0x99"), owner))

        assert res.abort_code == 5
        assert not res.committed
        after = node.get_object(created.whitelist_id)
        assert after.version == before.version
        assert after.contents.addresses == before.contents.addresses

    def test_failed_execution_is_audited(self, node, owner, client, created):
        client.add(owner, created.whitelist_id, created.owner_cap_id, MEMBER)
        node.execute(*_signed(_add_tx(created.whitelist_id, created.owner_cap_id, MEMBER), owner))

        aborted = node.audit.get_events(event_type=AuditEventType.TX_ABORTED)
        assert len(aborted) == 1
        assert aborted[0].details == {"abortCode": 4}


class TestNonAbortFailures:
    """Linking, argument and ownership failures never carry an abort code."""

    def _run(self, node, tx, signer, gas_budget=10_000_000):
        tx_bytes, sig = _signed(tx, signer, gas_budget)
        res = node.execute(tx_bytes, sig)
        assert res.status == "failure"
        assert res.abort_code is None
        assert res.execution_error_source is None
        assert "sub status" not in res.error
        return res

    def test_owned_object_of_other_account(self, node, owner, user, created):
        res = self._run(node, _add_tx(created.whitelist_id, created.owner_cap_id, MEMBER), user)
        assert res.error.startswith("InvalidObjectOwner")

    def test_missing_object(self, node, owner, created):
        res = self._run(node, _add_tx(created.whitelist_id, "0x" + "ee" * 32, MEMBER), owner)
        assert res.error.startswith("ObjectNotFound")

    def test_object_of_wrong_type(self, node, owner, created):
        res = self._run(node, _add_tx(created.owner_cap_id, created.owner_cap_id, MEMBER), owner)
        assert res.error.startswith("TypeMismatch in command 0")

    def test_same_name_in_other_module(self, node, owner, created):
        foreign = node.mint_object(f"{PACKAGE_ID}::other::Whitelist", owner.to_address(), {})
        res = self._run(node, _add_tx(foreign.object_id, created.owner_cap_id, MEMBER), owner)
        assert res.error.startswith("TypeMismatch in command 0")

    def test_pure_argument_of_wrong_type(self, node, owner, created):
        tx = Transaction()
        tx.move_call(_target("add"), [
            tx.object(created.whitelist_id), tx.object(created.owner_cap_id), tx.pure.string(MEMBER),
        ])
        res = self._run(node, tx, owner)
        assert res.error.startswith("TypeMismatch")

    def test_unknown_function(self, node, owner, created):
        tx = Transaction()
        tx.move_call(_target("destroy"), [tx.object(created.whitelist_id)])
        assert self._run(node, tx, owner).error.startswith("FunctionNotFound")

    def test_unknown_module(self, node, owner, created):
        tx = Transaction()
        tx.move_call(_target("add", module="allowlist"), [tx.object(created.whitelist_id)])
        assert self._run(node, tx, owner).error.startswith("ModuleNotFound")

    def test_unpublished_package(self, node, owner, created):
        tx = Transaction()
        tx.move_call(_target("add", package="0xbeef"), [tx.object(created.whitelist_id)])
        assert self._run(node, tx, owner).error.startswith("PackageNotFound")

    def test_arity_mismatch(self, node, owner, created):
        tx = Transaction()
        tx.move_call(_target("add"), [tx.object(created.whitelist_id), tx.object(created.owner_cap_id)])
        assert self._run(node, tx, owner).error.startswith("ArityMismatch")

    def test_missing_type_argument(self, node, owner):
        tx = Transaction()
        tx.move_call(_target("create_whitelist_entry"), [tx.pure.string("v"), tx.pure.u64(1)])
        assert self._run(node, tx, owner).error.startswith("TypeArityMismatch")

    def test_zero_capacity(self, node, owner):
        tx = Transaction()
        tx.move_call(_target("create_whitelist"), [tx.pure.string("v"), tx.pure.string(""), tx.pure.u64(0)])
        res = self._run(node, tx, owner)
        assert res.error.startswith("InvalidArgument")
        assert "capacity" in res.error

    def test_malformed_gating_type(self, node, owner):
        tx = Transaction()
        tx.move_call(_target("create_whitelist"),
                     [tx.pure.string("v"), tx.pure.string("not a type"), tx.pure.u64(1)])
        assert self._run(node, tx, owner).error.startswith("InvalidArgument")

    def test_token_of_wrong_type(self, node, owner, user, client):
        gated = client.create_whitelist(owner, "v", 1, WAL_COIN)
        token = node.mint_object(USDC_COIN, user.to_address(), {"balance": 5})
        tx = Transaction()
        tx.move_call(
            _target("seal_approve"),
            [tx.pure.vector("u8", gated.tga_id), tx.object(gated.tga_id), tx.object(token.object_id)],
            [WAL_COIN],
        )
        assert self._run(node, tx, user).error.startswith("TypeMismatch")

    def test_insufficient_gas_for_computation(self, node, owner, created):
        res = self._run(node, _add_tx(created.whitelist_id, created.owner_cap_id, MEMBER), owner,
                        gas_budget=COMPUTATION_COST_PER_CALL - 1)
        assert res.error.startswith("InsufficientGas")

    def test_insufficient_gas_for_storage(self, node, owner, created):
        res = self._run(node, _add_tx(created.whitelist_id, created.owner_cap_id, MEMBER), owner,
                        gas_budget=COMPUTATION_COST_PER_CALL + 1)
        assert res.error.startswith("InsufficientGas")
        assert not _whitelist(node, created.whitelist_id).contains(MEMBER)

    def test_client_surfaces_raw_failure(self, client, user, created):
        with pytest.raises(WhitelistTransactionError) as exc:
            client.add(user, created.whitelist_id, created.owner_cap_id, MEMBER)
        assert exc.value.code is None
        assert exc.value.message.startswith("Smart contract error: InvalidObjectOwner")


# =============================================================================
# SECURITY
# =============================================================================

class TestSignaturesAndReplay:
    """Signature and replay checks on execute."""

    def test_replay_rejected(self, node, owner, created):
        tx_bytes, sig = _signed(_add_tx(created.whitelist_id, created.owner_cap_id, MEMBER), owner)
        assert node.execute(tx_bytes, sig).succeeded

        with pytest.raises(ReplayAttempt):
            node.execute(tx_bytes, sig)
        assert len(node.audit.get_events(event_type=AuditEventType.REPLAY_ATTEMPT)) == 1

    def test_failed_digest_cannot_be_replayed(self, node, owner, user, created):
        tx_bytes, sig = _signed(_add_tx(created.whitelist_id, created.owner_cap_id, MEMBER), user)
        assert not node.execute(tx_bytes, sig).succeeded
        with pytest.raises(ReplayAttempt):
            node.execute(tx_bytes, sig)

    def test_replay_is_a_security_violation(self):
        assert issubclass(ReplayAttempt, SecurityViolation)

    def test_signature_from_other_key(self, node, owner, user, created):
        tx_bytes, _ = _signed(_add_tx(created.whitelist_id, created.owner_cap_id, MEMBER), owner)
        with pytest.raises(SecurityViolation):
            node.execute(tx_bytes, user.sign_transaction(tx_bytes))
        assert not _whitelist(node, created.whitelist_id).contains(MEMBER)
        assert node.audit.get_events(event_type=AuditEventType.SIGNATURE_INVALID)

    def test_garbage_signature(self, node, owner, created):
        tx_bytes, _ = _signed(_add_tx(created.whitelist_id, created.owner_cap_id, MEMBER), owner)
        with pytest.raises(SecurityViolation):
            node.execute(tx_bytes, "AAAA")

    def test_rejected_signature_does_not_burn_digest(self, node, owner, user, created):
        tx_bytes, sig = _signed(_add_tx(created.whitelist_id, created.owner_cap_id, MEMBER), owner)
        with pytest.raises(SecurityViolation):
            node.execute(tx_bytes, user.sign_transaction(tx_bytes))
        assert node.execute(tx_bytes, sig).succeeded


# =============================================================================
# GENESIS AND QUERIES
# =============================================================================

class TestMintAndQueries:

    def test_mint_object(self, node, user):
        record = node.mint_object(WAL_COIN, user.to_address(), {"balance": 100})
        assert record.owner.is_owned_by(user.to_address())
        assert record.contents.fields == {"balance": 100}
        assert record.version >= 1
        assert [r.object_id for r in node.owned_objects(user.to_address())] == [record.object_id]

    def test_minted_ids_are_unique(self, node, user):
        a = node.mint_object(WAL_COIN, user.to_address())
        b = node.mint_object(WAL_COIN, user.to_address())
        assert a.object_id != b.object_id

    def test_mint_with_explicit_id(self, node, user):
        record = node.mint_object(WAL_COIN, user.to_address(), object_id="0x77")
        assert record.object_id == "0x" + "0" * 62 + "77"

    def test_mint_rejects_bad_owner(self, node):
        with pytest.raises(ValidationErrors):
            node.mint_object(WAL_COIN, "nobody")

    def test_get_object_returns_copy(self, node, created):
        record = node.get_object(created.whitelist_id)
        record.contents.insert(MEMBER)
        assert not _whitelist(node, created.whitelist_id).contains(MEMBER)

    def test_get_missing_object(self, node):
        assert node.get_object("0x1234") is None

    def test_invalid_package_id(self):
        with pytest.raises(ValidationErrors):
            LedgerNode("package")


# =============================================================================
# PERSISTENCE
# =============================================================================

class TestPersistence:
    """Snapshots survive a save / load round trip."""

    def test_save_and_load(self, tmp_path, node, owner, client, created):
        tx_bytes, sig = _signed(_add_tx(created.whitelist_id, created.owner_cap_id, MEMBER), owner)
        node.execute(tx_bytes, sig)
        path = tmp_path / "ledger.json"

        digest = node.save(path)

        assert len(digest) == 64
        loaded = LedgerNode.load(path)
        assert loaded.package_id == node.package_id
        assert loaded.store.lamport_version == node.store.lamport_version
        assert loaded.store.ids() == node.store.ids()
        assert _whitelist(loaded, created.whitelist_id).addresses == {MEMBER}
        with pytest.raises(ReplayAttempt):
            loaded.execute(tx_bytes, sig)

    def test_loaded_ledger_keeps_working(self, tmp_path, node, owner, created):
        node.save(tmp_path / "ledger.json")
        loaded = LedgerNode.load(tmp_path / "ledger.json")

        WhitelistClient(loaded).add(owner, created.whitelist_id, created.owner_cap_id, MEMBER)

        assert _whitelist(loaded, created.whitelist_id).contains(MEMBER)
        assert loaded.get_object(created.whitelist_id).version > node.get_object(created.whitelist_id).version

    def test_snapshot_keeps_asset_fields(self, node, user):
        record = node.mint_object(WAL_COIN, user.to_address(), {"balance": 7})
        loaded = LedgerNode.from_snapshot(node.snapshot())
        assert loaded.get_object(record.object_id).contents.fields == {"balance": 7}

    def test_invalid_snapshot_rejected(self, tmp_path, node):
        snapshot = node.snapshot()
        snapshot["format"] = "something-else"
        with pytest.raises(SchemaValidationError):
            LedgerNode.from_snapshot(snapshot)

    def test_malformed_executed_digest_rejected(self, node, owner, created):
        snapshot = node.snapshot()
        assert snapshot["executedDigests"]
        snapshot["executedDigests"].append("0OIl")
        with pytest.raises(SchemaValidationError, match="executedDigests"):
            LedgerNode.from_snapshot(snapshot)

    def test_short_executed_digest_rejected(self, node):
        snapshot = node.snapshot()
        snapshot["executedDigests"] = ["2g"]
        with pytest.raises(SchemaValidationError, match="32-byte"):
            LedgerNode.from_snapshot(snapshot)

    def test_snapshot_file_is_canonical(self, tmp_path, node, created):
        path = tmp_path / "ledger.json"
        node.save(path)
        text = path.read_text(encoding="utf-8")
        assert text.endswith("\n")
        assert json.loads(text)["format"] == "sealkit.whitelist.ledger/1"


# =============================================================================
# AUDIT CHAIN
# =============================================================================

class TestAuditChain:

    def test_chain_verifies(self, node, owner, client, created):
        client.add(owner, created.whitelist_id, created.owner_cap_id, MEMBER)
        valid, index = node.audit.verify_chain()
        assert valid and index is None
        assert len(node.audit) == 2

    def test_tampering_detected(self, node, owner, client, created):
        client.add(owner, created.whitelist_id, created.owner_cap_id, MEMBER)
        events = node.audit.get_events()
        events[0].outcome = "failure"
        assert node.audit.verify_chain() == (False, 0)

    def test_events_filtered_by_actor(self, node, owner, user, client, created):
        node.mint_object(WAL_COIN, user.to_address())
        assert all(e.actor == user.to_address() for e in node.audit.get_events(actor=user.to_address()))
        assert len(node.audit.get_events(actor=owner.to_address())) == 1

    def test_export(self, node, created):
        exported = node.audit.export()
        assert exported[0]["event_type"] == "tx_executed"
        assert exported[0]["previous_event_digest"] is None


# =============================================================================
# PACKAGE EXPORTS
# =============================================================================

class TestPackageExports:

    def test_lazy_exports_resolve(self):
        import sealkit.whitelist as pkg

        assert pkg.LedgerNode is LedgerNode
        assert pkg.Transaction is Transaction
        assert pkg.WhitelistClient is WhitelistClient
        assert pkg.WhitelistErrorCode.EDuplicate == 4
        for name in pkg.__all__:
            assert getattr(pkg, name) is not None

    def test_unknown_attribute(self):
        import sealkit.whitelist as pkg

        with pytest.raises(AttributeError):
            pkg.NoSuchThing
