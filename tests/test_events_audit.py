"""
Tests for the event channel and the Merkle audit trail.
"""
import hashlib
import json

import pytest
from hypothesis import given, settings as hyp_settings
from hypothesis import strategies as st

from chain_client import LocalLedgerAdapter, ScriptedOutcome
from mesh import (
    AuditTrail,
    EventChannel,
    EventType,
    compute_merkle_proof,
    compute_merkle_root,
    verify_merkle_proof,
)
from mesh.audit import EMPTY_ROOT


class TestEventChannel:
    def test_publish_keeps_bounded_history(self):
        channel = EventChannel(history_size=3)
        for i in range(5):
            channel.publish(EventType.AGENT_REGISTERED, {"i": i})
        assert [e.payload["i"] for e in channel.recent()] == [2, 3, 4]
        assert [e.sequence for e in channel.recent(2)] == [4, 5]

    def test_recent_filters_by_type(self):
        channel = EventChannel()
        channel.publish(EventType.AGENT_REGISTERED, {})
        channel.publish(EventType.PATHWAY_ESTABLISHED, {})
        assert [e.type for e in channel.recent(event_type="pathway.established")] == [EventType.PATHWAY_ESTABLISHED]

    @pytest.mark.asyncio
    async def test_full_subscriber_never_blocks_publisher(self):
        channel = EventChannel(queue_size=1)
        slow = channel.subscribe()
        for i in range(3):
            channel.publish(EventType.PATHWAY_USAGE_RECORDED, {"i": i})

        assert slow.dropped == 2
        assert (await slow.get()).payload == {"i": 0}
        assert len(channel.recent()) == 3

    @pytest.mark.asyncio
    async def test_subscription_type_filter_and_iteration(self):
        channel = EventChannel()
        sub = channel.subscribe(types={EventType.PATHWAY_TOKENIZED})
        channel.publish(EventType.AGENT_REGISTERED, {"id": "x"})
        channel.publish(EventType.PATHWAY_TOKENIZED, {"id": "p1"})
        channel.publish(EventType.PATHWAY_TOKENIZED, {"id": "p2"})
        sub.close()
        channel.publish(EventType.PATHWAY_TOKENIZED, {"id": "p3"})

        assert [e.payload["id"] async for e in sub] == ["p1", "p2"]


def _hashes(n: int) -> list[str]:
    return [hashlib.sha256(f"entry-{i}".encode()).hexdigest() for i in range(n)]


class TestMerkle:
    def test_edge_roots(self):
        assert compute_merkle_root([]) == EMPTY_ROOT
        single = _hashes(1)
        assert compute_merkle_root(single) == single[0]

    def test_two_leaves(self):
        left, right = _hashes(2)
        expected = hashlib.sha256(bytes.fromhex(left) + bytes.fromhex(right)).hexdigest()
        assert compute_merkle_root([left, right]) == expected

    def test_tampered_entry_fails(self):
        hashes = _hashes(5)
        root = compute_merkle_root(hashes)
        proof = compute_merkle_proof(hashes, 2)
        assert verify_merkle_proof(hashes[2], proof, root)
        assert not verify_merkle_proof(hashes[3], proof, root)

    def test_out_of_range_index(self):
        assert compute_merkle_proof(_hashes(3), 3) == []


@given(n=st.integers(min_value=1, max_value=33), data=st.data())
@hyp_settings(max_examples=60, deadline=None)
def test_every_leaf_has_a_valid_proof(n, data):
    """
    Property: Merkle proofs verify

    For any batch size and any entry in it, the proof computed for that entry
    verifies against the batch root.
    """
    hashes = _hashes(n)
    index = data.draw(st.integers(min_value=0, max_value=n - 1))
    root = compute_merkle_root(hashes)
    assert verify_merkle_proof(hashes[index], compute_merkle_proof(hashes, index), root)


class TestAuditTrail:
    @pytest.mark.asyncio
    async def test_batches_are_anchored(self, tmp_path):
        ledger = LocalLedgerAdapter("solana")
        channel = EventChannel()
        trail = AuditTrail(anchor=ledger, batch_size=3, storage_path=tmp_path)

        sub = channel.subscribe()
        for i in range(4):
            channel.publish(EventType.PATHWAY_USAGE_RECORDED, {"pathway_id": f"p{i}"})
        sub.close()
        await trail.run(sub)

        assert len(trail.flushed_batches) == 1
        batch = trail.flushed_batches[0]
        assert batch["on_chain"]
        assert ledger.anchored_roots == [batch["merkle_root"]]
        assert len(trail.pending_entries) == 1

        saved = json.loads((tmp_path / "batch_000000.json").read_text())
        assert saved["merkle_root"] == batch["merkle_root"]

        entry_hash = batch["entries"][1]["entry_hash"]
        proof = trail.get_proof_for_entry(entry_hash)
        assert proof["on_chain"]
        assert verify_merkle_proof(entry_hash, proof["proof"], proof["merkle_root"])

        pending_hash = trail.pending_entries[0].entry_hash
        assert trail.get_proof_for_entry(pending_hash)["batch"] == "pending"
        assert trail.get_proof_for_entry("00" * 32) is None

    @pytest.mark.asyncio
    async def test_partial_batch_needs_force(self):
        trail = AuditTrail(batch_size=10)
        channel = EventChannel()
        trail.record(channel.publish(EventType.AGENT_REGISTERED, {"agent_id": "a"}))

        assert await trail.flush() is None
        batch = await trail.flush(force=True)
        assert batch["entries_count"] == 1
        assert not batch["on_chain"]
        assert await trail.flush(force=True) is None

    @pytest.mark.asyncio
    async def test_failed_anchor_kept_and_retried(self):
        ledger = LocalLedgerAdapter("ethereum")
        ledger.script(ScriptedOutcome.FAILED)
        trail = AuditTrail(anchor=ledger, batch_size=1, confirm_deadline=1.0)
        channel = EventChannel()

        trail.record(channel.publish(EventType.PATHWAY_TOKENIZED, {"pathway_id": "p"}))
        batch = await trail.flush()
        assert not batch["on_chain"]
        assert "failed" in batch["store_error"]

        assert await trail.retry_failed_batches() == 1
        assert batch["on_chain"]
        assert "store_error" not in batch
        assert trail.get_stats()["batches_on_chain"] == 1

    @pytest.mark.asyncio
    async def test_offline_anchor(self):
        ledger = LocalLedgerAdapter("ethereum")
        ledger.online = False
        trail = AuditTrail(anchor=ledger, batch_size=1)
        trail.record(EventChannel().publish(EventType.AGENT_MIRRORED, {}))
        batch = await trail.flush()
        assert "offline" in batch["store_error"]

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            AuditTrail(batch_size=0)
