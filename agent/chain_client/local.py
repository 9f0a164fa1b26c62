"""
In-process ledger implementing the chain adapter interface.

Used for local development and tests. Outcomes of future submissions can be
scripted to exercise failure paths:

- SUCCESS: confirms after `confirm_after_polls` polls
- FAILED:  the transaction reverts
- PENDING: stays pending until release() is called
- STALL:   lands in the registry immediately but never reports confirmation
"""
import asyncio
import hashlib
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from mesh.errors import ChainUnavailableError

from .base import (
    ChainAdapter,
    Confirmation,
    ConfirmationOutcome,
    PendingHandle,
    TxData,
    TxKind,
    decode_strength,
    encode_strength,
)

logger = logging.getLogger(__name__)


class ScriptedOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"
    STALL = "stall"


@dataclass
class _LedgerTx:
    tx: TxData
    outcome: ScriptedOutcome
    polls: int = 0
    applied: bool = False
    released: bool = False
    receipt: Optional[dict] = None
    error: Optional[str] = None


class LocalLedgerAdapter(ChainAdapter):
    def __init__(
        self,
        chain: str,
        confirm_after_polls: int = 1,
        submit_delay: float = 0.0,
        poll_interval: float = 0.01,
        max_poll_interval: float = 0.05,
        default_deadline: float = 5.0,
    ):
        super().__init__(chain, poll_interval, max_poll_interval, default_deadline)
        self.confirm_after_polls = confirm_after_polls
        self.submit_delay = submit_delay
        self.online = True

        self._txs: dict[str, _LedgerTx] = {}
        self._script: deque = deque()
        self._tokens: dict[tuple[str, str], str] = {}
        self._strengths: dict[str, int] = {}
        self._next_token = 1
        self._nonce = 0

        self.mint_count = 0
        self.submissions: list[TxData] = []
        self.anchored_roots: list[str] = []

    # -- scripting helpers -------------------------------------------------

    def script(self, *outcomes: ScriptedOutcome) -> None:
        """Queue outcomes for the next submissions (default SUCCESS)."""
        self._script.extend(ScriptedOutcome(o) for o in outcomes)

    def release(self, tx_hash: str) -> None:
        """Let a PENDING transaction confirm on its next poll."""
        self._txs[tx_hash].released = True

    def seed_token(self, source_agent_id: str, target_agent_id: str, strength: float = 1.0) -> str:
        """Register a token as if minted by another process."""
        return self._mint(source_agent_id, target_agent_id, strength)

    # -- ChainAdapter ------------------------------------------------------

    def _check_online(self) -> None:
        if not self.online:
            raise ChainUnavailableError(self.chain, "local ledger offline")

    async def connect(self) -> None:
        self._check_online()
        self.connected = True
        self.network_id = f"{self.chain}-local"
        logger.info(f"Connected to local {self.chain} ledger")

    async def submit(self, tx: TxData) -> PendingHandle:
        await self.ensure_connected()
        self._check_online()
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        self._nonce += 1
        tx_hash = hashlib.sha256(f"{self.chain}:{self._nonce}:{tx.kind.value}".encode()).hexdigest()
        outcome = self._script.popleft() if self._script else ScriptedOutcome.SUCCESS
        entry = _LedgerTx(tx=tx, outcome=outcome)
        self._txs[tx_hash] = entry
        self.submissions.append(tx)
        if outcome == ScriptedOutcome.STALL:
            self._apply(entry)
        logger.debug(f"[{self.chain}] Submitted {tx.kind.value}: {tx_hash[:16]}... ({outcome.value})")
        return PendingHandle(chain=self.chain, tx_hash=tx_hash, kind=tx.kind)

    async def _poll(self, handle: PendingHandle) -> Optional[Confirmation]:
        self._check_online()
        entry = self._txs.get(handle.tx_hash)
        if entry is None:
            return Confirmation(ConfirmationOutcome.FAILED, handle, error="unknown transaction")
        entry.polls += 1

        if entry.outcome == ScriptedOutcome.STALL:
            return None
        if entry.outcome == ScriptedOutcome.PENDING and not entry.released:
            return None
        if entry.polls < self.confirm_after_polls:
            return None
        if entry.outcome == ScriptedOutcome.FAILED:
            return Confirmation(ConfirmationOutcome.FAILED, handle, error="execution reverted")

        if not entry.applied:
            self._apply(entry)
        if entry.error:
            return Confirmation(ConfirmationOutcome.FAILED, handle, error=entry.error)
        return Confirmation(ConfirmationOutcome.SUCCESS, handle, receipt=entry.receipt)

    def _apply(self, entry: _LedgerTx) -> None:
        entry.applied = True
        tx = entry.tx
        if tx.kind == TxKind.MINT_PATHWAY:
            pair = (tx.source_agent_id, tx.target_agent_id)
            if pair in self._tokens:
                entry.error = "PathwayAlreadyExists"
                return
            token_id = self._mint(tx.source_agent_id, tx.target_agent_id, tx.strength or 0.0)
            entry.receipt = {"token_id": token_id, "block_number": self._nonce}
        elif tx.kind == TxKind.UPDATE_STRENGTH:
            if tx.token_id not in self._strengths:
                entry.error = "InvalidToken"
                return
            self._strengths[tx.token_id] = encode_strength(tx.strength or 0.0)
            entry.receipt = {"token_id": tx.token_id, "block_number": self._nonce}
        elif tx.kind == TxKind.ANCHOR_AUDIT:
            root = tx.payload.get("merkle_root", "")
            self.anchored_roots.append(root)
            entry.receipt = {"merkle_root": root, "block_number": self._nonce}

    def _mint(self, source_agent_id: str, target_agent_id: str, strength: float) -> str:
        token_id = str(self._next_token)
        self._next_token += 1
        self._tokens[(source_agent_id, target_agent_id)] = token_id
        self._strengths[token_id] = encode_strength(strength)
        self.mint_count += 1
        return token_id

    async def query_existence(self, source_agent_id: str, target_agent_id: str) -> Optional[str]:
        await self.ensure_connected()
        self._check_online()
        return self._tokens.get((source_agent_id, target_agent_id))

    async def read_strength(self, token_id: str) -> Optional[float]:
        await self.ensure_connected()
        self._check_online()
        value = self._strengths.get(token_id)
        return decode_strength(value) if value is not None else None
