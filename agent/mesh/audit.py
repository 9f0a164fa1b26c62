"""
Audit Trail - Merkle batches of mesh events

Every mesh event becomes a hashed audit entry. Entries are batched; each
batch is reduced to a Merkle root that can be anchored on-chain with a
single transaction while the full entries stay off-chain, verifiable via
Merkle proofs.
"""
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from chain_client.base import ChainAdapter, TxData, TxKind

from .errors import ChainUnavailableError
from .events import MeshEvent, Subscription

logger = logging.getLogger(__name__)

EMPTY_ROOT = "0" * 64


@dataclass
class AuditEntry:
    """One mesh event, hashed"""
    event_type: str
    sequence: int
    timestamp: float
    payload: dict
    entry_hash: str = field(default="")

    def __post_init__(self):
        if not self.entry_hash:
            self.entry_hash = self._compute_hash()

    def _compute_hash(self) -> str:
        data = {
            "event_type": self.event_type,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }
        return hashlib.sha256(json.dumps(data, sort_keys=True, default=str).encode()).hexdigest()

    @classmethod
    def from_event(cls, event: MeshEvent) -> "AuditEntry":
        return cls(
            event_type=event.type.value,
            sequence=event.sequence,
            timestamp=event.timestamp,
            payload=event.payload,
        )

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "payload": self.payload,
            "entry_hash": self.entry_hash,
        }


def _next_level(level: list[bytes]) -> list[bytes]:
    # odd levels pair the last node with itself
    return [
        hashlib.sha256(level[i] + (level[i + 1] if i + 1 < len(level) else level[i])).digest()
        for i in range(0, len(level), 2)
    ]


def compute_merkle_root(hashes: list[str]) -> str:
    if not hashes:
        return EMPTY_ROOT
    level = [bytes.fromhex(h) for h in hashes]
    while len(level) > 1:
        level = _next_level(level)
    return level[0].hex()


def compute_merkle_proof(hashes: list[str], index: int) -> list[dict]:
    """Sibling path for hashes[index] as [{position: left|right, hash}]"""
    if not 0 <= index < len(hashes):
        return []
    proof = []
    level = [bytes.fromhex(h) for h in hashes]
    while len(level) > 1:
        if index % 2 == 0:
            sibling = level[index + 1] if index + 1 < len(level) else level[index]
            proof.append({"position": "right", "hash": sibling.hex()})
        else:
            proof.append({"position": "left", "hash": level[index - 1].hex()})
        level = _next_level(level)
        index //= 2
    return proof


def verify_merkle_proof(entry_hash: str, proof: list[dict], root: str) -> bool:
    current = bytes.fromhex(entry_hash)
    for step in proof:
        sibling = bytes.fromhex(step["hash"])
        if step["position"] == "left":
            current = hashlib.sha256(sibling + current).digest()
        else:
            current = hashlib.sha256(current + sibling).digest()
    return current.hex() == root


class AuditTrail:
    """
    Batches mesh events and anchors each batch's Merkle root.

    Usage:
        trail = AuditTrail(anchor=adapter, batch_size=10)
        asyncio.create_task(trail.run(events.subscribe()))
        ...
        await trail.flush(force=True)
    """

    def __init__(
        self,
        anchor: Optional[ChainAdapter] = None,
        batch_size: int = 10,
        storage_path: Optional[Path] = None,
        confirm_deadline: Optional[float] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.anchor = anchor
        self.batch_size = batch_size
        self.storage_path = storage_path
        self.confirm_deadline = confirm_deadline

        self.pending_entries: list[AuditEntry] = []
        self.flushed_batches: list[dict] = []
        self.total_entries_logged = 0

        if self.storage_path:
            self.storage_path.mkdir(parents=True, exist_ok=True)

    def record(self, event: MeshEvent) -> AuditEntry:
        entry = AuditEntry.from_event(event)
        self.pending_entries.append(entry)
        self.total_entries_logged += 1
        logger.debug(
            f"Audit logged: {entry.event_type} | hash={entry.entry_hash[:16]}... | "
            f"pending={len(self.pending_entries)}/{self.batch_size}"
        )
        return entry

    def should_flush(self) -> bool:
        return len(self.pending_entries) >= self.batch_size

    async def run(self, subscription: Subscription) -> None:
        """Observer task: record events and flush full batches."""
        async for event in subscription:
            self.record(event)
            if self.should_flush():
                await self.flush()

    async def flush(self, force: bool = False) -> Optional[dict]:
        """Close the current batch; anchors its root when an adapter is set."""
        if not self.pending_entries:
            return None
        if not force and not self.should_flush():
            return None

        entries, self.pending_entries = self.pending_entries, []
        hashes = [e.entry_hash for e in entries]
        batch = {
            "batch_index": len(self.flushed_batches),
            "merkle_root": compute_merkle_root(hashes),
            "entries_count": len(entries),
            "timestamp": int(time.time()),
            "entries": [e.to_dict() for e in entries],
            "tx_signature": None,
            "on_chain": False,
        }
        self.flushed_batches.append(batch)
        logger.info(f"Flushing audit batch {batch['batch_index']}: {len(entries)} entries | root={batch['merkle_root'][:16]}...")

        if self.anchor is not None:
            await self._anchor(batch)
        self._save_batch(batch)
        return batch

    async def _anchor(self, batch: dict) -> bool:
        tx = TxData(
            kind=TxKind.ANCHOR_AUDIT,
            payload={"merkle_root": batch["merkle_root"], "entries_count": batch["entries_count"]},
        )
        try:
            handle = await self.anchor.submit(tx)
            confirmation = await self.anchor.confirm(handle, self.confirm_deadline)
        except ChainUnavailableError as e:
            batch["store_error"] = e.message[:500]
            logger.error(f"Audit root {batch['merkle_root'][:16]}... not anchored: {e.message}")
            return False

        if not confirmation.succeeded:
            batch["store_error"] = f"{confirmation.outcome.value}: {confirmation.error}"[:500]
            logger.warning(f"Audit root {batch['merkle_root'][:16]}... not anchored: {batch['store_error']}")
            return False

        batch["tx_signature"] = handle.tx_hash
        batch["on_chain"] = True
        batch.pop("store_error", None)
        logger.info(f"Audit root anchored on {self.anchor.chain}: tx={handle.tx_hash}")
        return True

    async def retry_failed_batches(self, limit: int = 10) -> int:
        """Re-anchor the most recent batches whose anchoring failed."""
        if self.anchor is None:
            return 0
        failed = [b for b in self.flushed_batches if not b["on_chain"]][-limit:]
        retried = 0
        for batch in failed:
            if await self._anchor(batch):
                self._save_batch(batch)
                retried += 1
        if failed:
            logger.info(f"Audit retry: {retried}/{len(failed)} batches anchored")
        return retried

    def _save_batch(self, batch: dict) -> None:
        if not self.storage_path:
            return
        filepath = self.storage_path / f"batch_{batch['batch_index']:06d}.json"
        with open(filepath, "w") as f:
            json.dump(batch, f, indent=2, default=str)
        logger.debug(f"Batch saved to {filepath}")

    def get_proof_for_entry(self, entry_hash: str) -> Optional[dict]:
        """Merkle proof for an entry, pending or flushed."""
        hashes = [e.entry_hash for e in self.pending_entries]
        if entry_hash in hashes:
            return {
                "batch": "pending",
                "merkle_root": compute_merkle_root(hashes),
                "proof": compute_merkle_proof(hashes, hashes.index(entry_hash)),
                "on_chain": False,
            }
        for batch in self.flushed_batches:
            batch_hashes = [e["entry_hash"] for e in batch["entries"]]
            if entry_hash in batch_hashes:
                return {
                    "batch_index": batch["batch_index"],
                    "merkle_root": batch["merkle_root"],
                    "proof": compute_merkle_proof(batch_hashes, batch_hashes.index(entry_hash)),
                    "tx_signature": batch["tx_signature"],
                    "on_chain": batch["on_chain"],
                }
        return None

    def get_stats(self) -> dict:
        return {
            "total_entries_logged": self.total_entries_logged,
            "total_batches_stored": len(self.flushed_batches),
            "batches_on_chain": sum(1 for b in self.flushed_batches if b["on_chain"]),
            "pending_entries": len(self.pending_entries),
            "batch_size": self.batch_size,
            "anchor_chain": self.anchor.chain if self.anchor else None,
        }
