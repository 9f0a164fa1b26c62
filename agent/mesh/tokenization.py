"""
Tokenization Bridge - binds pathways to Neural Pathway Tokens (NPTs)

Per-pathway state machine:

    untokenized -> minting -> tokenized
                           -> mint_failed -> minting (fresh attempt)

The untokenized/mint_failed -> minting claim happens under a per-pathway
lock held across the on-chain existence check, so concurrent requests mint
at most once. Confirmation runs in a background task shielded from the
caller: a caller may stop waiting, but the transaction cannot be recalled,
and a late confirmation is applied only if it belongs to the current
attempt and the pathway is still minting.

On-chain strength is a mirror of the graph. Sync failures are recorded on
the token record and never roll back the in-memory strength.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from chain_client.base import ChainAdapter, Confirmation, TxData, TxKind

from .errors import (
    AlreadyTokenizedError,
    ChainTimeoutError,
    ChainUnavailableError,
    FeatureDisabledError,
    UnsupportedChainError,
)
from .events import EventChannel, EventType
from .graph import PathwayGraph
from .models import Pathway, TokenHandle
from .settings import MeshSettings

logger = logging.getLogger(__name__)


class TokenState(str, Enum):
    UNTOKENIZED = "untokenized"
    MINTING = "minting"
    TOKENIZED = "tokenized"
    MINT_FAILED = "mint_failed"


@dataclass
class TokenRecord:
    """Token lifecycle of one pathway"""
    pathway_id: str
    state: TokenState = TokenState.UNTOKENIZED
    chain: Optional[str] = None
    attempt: int = 0
    token_id: Optional[str] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    adopted: bool = False
    synced_strength: Optional[float] = None
    sync_error: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "pathway_id": self.pathway_id,
            "state": self.state.value,
            "chain": self.chain,
            "attempt": self.attempt,
            "token_id": self.token_id,
            "tx_hash": self.tx_hash,
            "error": self.error,
            "adopted": self.adopted,
            "synced_strength": self.synced_strength,
            "sync_error": self.sync_error,
            "updated_at": self.updated_at,
        }


class TokenizationBridge:
    def __init__(
        self,
        graph: PathwayGraph,
        adapters: dict[str, ChainAdapter],
        events: Optional[EventChannel] = None,
        settings: Optional[MeshSettings] = None,
        metadata_base_url: str = "https://api.aethermind.io/metadata/pathway",
    ):
        self.graph = graph
        self.adapters = adapters
        self.events = events or EventChannel()
        self.settings = settings or graph.settings
        self.metadata_base_url = metadata_base_url.rstrip("/")

        self._records: dict[str, TokenRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: set[asyncio.Task] = set()
        self._sync_inflight: set[str] = set()
        self._sync_dirty: set[str] = set()

    @property
    def is_enabled(self) -> bool:
        return self.settings.npt_minting_enabled

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def record(self, pathway_id: str) -> TokenRecord:
        pathway = self.graph.get_pathway(pathway_id)
        record = self._records.get(pathway_id)
        if record is None:
            record = TokenRecord(pathway_id=pathway_id)
            if pathway.token is not None:
                record.state = TokenState.TOKENIZED
                record.chain = pathway.token.chain
                record.token_id = pathway.token.token_id
                record.tx_hash = pathway.token.tx_hash
            self._records[pathway_id] = record
        return record

    def status(self, pathway_id: str) -> TokenState:
        return self.record(pathway_id).state

    def records(self, state: Optional[TokenState] = None) -> list[TokenRecord]:
        records = list(self._records.values())
        if state is not None:
            records = [r for r in records if r.state == TokenState(state)]
        return sorted(records, key=lambda r: r.pathway_id)

    def _lock(self, pathway_id: str) -> asyncio.Lock:
        lock = self._locks.get(pathway_id)
        if lock is None:
            lock = self._locks[pathway_id] = asyncio.Lock()
        return lock

    def _adapter_for(self, pathway: Pathway, chain: Optional[str] = None) -> ChainAdapter:
        chain = chain or self.graph.get_agent(pathway.source_agent_id).chain
        adapter = self.adapters.get(chain)
        if adapter is None:
            raise UnsupportedChainError(chain)
        return adapter

    def token_uri(self, pathway: Pathway) -> str:
        return f"{self.metadata_base_url}/{pathway.id}"

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    async def generate_token(
        self,
        pathway_id: str,
        owner: Optional[str] = None,
        chain: Optional[str] = None,
        deadline: Optional[float] = None,
        wait: Optional[float] = None,
    ) -> TokenRecord:
        """
        Mint the pathway's token, at most once.

        Raises AlreadyTokenizedError while a mint is in flight or after it
        succeeded. Chain failures are reported through the returned record
        (state mint_failed), not raised.

        `deadline` bounds the confirmation itself; `wait` only bounds how long
        the caller waits for it. When `wait` runs out first, ChainTimeoutError
        is raised while the mint keeps going and settles the record later.
        """
        if not self.is_enabled:
            raise FeatureDisabledError("NPT minting")

        pathway = self.graph.get_pathway(pathway_id)
        adapter = self._adapter_for(pathway, chain)
        record = self.record(pathway_id)

        async with self._lock(pathway_id):
            if record.state in (TokenState.MINTING, TokenState.TOKENIZED) or pathway.token is not None:
                state = TokenState.TOKENIZED if pathway.token is not None else record.state
                raise AlreadyTokenizedError(pathway_id, state.value)

            try:
                existing = await adapter.query_existence(pathway.source_agent_id, pathway.target_agent_id)
            except ChainUnavailableError as e:
                logger.error(f"Existence check failed for {pathway_id} on {adapter.chain}: {e.message}")
                self._mark_failed(record, e.message)
                return record

            if existing:
                logger.warning(f"Token already exists on {adapter.chain} for {pathway_id}: {existing}")
                self._mark_tokenized(record, adapter.chain, existing, tx_hash=None, adopted=True)
                return record

            record.state = TokenState.MINTING
            record.attempt += 1
            record.chain = adapter.chain
            record.error = None
            record.tx_hash = None
            record.updated_at = time.time()
            attempt = record.attempt

        logger.info(f"Minting NPT on {adapter.chain} for pathway {pathway_id} (attempt {attempt})")
        task = self._track(self._mint(record, attempt, pathway, adapter, owner, deadline))
        if wait is None:
            await asyncio.shield(task)
            return record
        try:
            await asyncio.wait_for(asyncio.shield(task), wait)
        except asyncio.TimeoutError:
            logger.warning(f"Caller stopped waiting for {pathway_id} after {wait:.1f}s, mint continues")
            raise ChainTimeoutError(adapter.chain, record.tx_hash or "pending", wait) from None
        return record

    async def _mint(
        self,
        record: TokenRecord,
        attempt: int,
        pathway: Pathway,
        adapter: ChainAdapter,
        owner: Optional[str],
        deadline: Optional[float],
    ) -> None:
        tx = TxData(
            kind=TxKind.MINT_PATHWAY,
            source_agent_id=pathway.source_agent_id,
            target_agent_id=pathway.target_agent_id,
            owner=owner,
            strength=pathway.strength,
            uri=self.token_uri(pathway),
        )
        try:
            handle = await adapter.submit(tx)
            record.tx_hash = handle.tx_hash
            confirmation = await adapter.confirm(
                handle, self.settings.confirm_deadline_seconds if deadline is None else deadline
            )
            if confirmation.succeeded and confirmation.token_id is None:
                token_id = await adapter.query_existence(pathway.source_agent_id, pathway.target_agent_id)
                if token_id:
                    confirmation.receipt = {**(confirmation.receipt or {}), "token_id": token_id}
            self._apply_confirmation(record, attempt, confirmation)
        except ChainUnavailableError as e:
            logger.error(f"Mint for {pathway.id} failed: {e.message}")
            self._finish_failed(record, attempt, e.message)
        except asyncio.CancelledError:
            self._finish_failed(record, attempt, "mint task cancelled")
            raise
        except Exception as e:
            logger.exception(f"Unexpected error minting {pathway.id}")
            self._finish_failed(record, attempt, f"{type(e).__name__}: {e}")

    def _apply_confirmation(self, record: TokenRecord, attempt: int, confirmation: Confirmation) -> None:
        if not self._is_current(record, attempt):
            return
        if confirmation.succeeded and confirmation.token_id:
            self._mark_tokenized(record, confirmation.handle.chain, confirmation.token_id, confirmation.handle.tx_hash)
        else:
            reason = confirmation.error or confirmation.outcome.value
            self._mark_failed(record, f"{confirmation.outcome.value}: {reason}")

    def _finish_failed(self, record: TokenRecord, attempt: int, error: str) -> None:
        if self._is_current(record, attempt):
            self._mark_failed(record, error)

    def _is_current(self, record: TokenRecord, attempt: int) -> bool:
        if record.attempt != attempt or record.state != TokenState.MINTING:
            logger.info(
                f"Ignoring stale mint result for {record.pathway_id} "
                f"(attempt {attempt}, current {record.attempt}, state {record.state.value})"
            )
            return False
        return True

    def _mark_tokenized(
        self,
        record: TokenRecord,
        chain: str,
        token_id: str,
        tx_hash: Optional[str],
        adopted: bool = False,
    ) -> None:
        self.graph.set_token(record.pathway_id, TokenHandle(chain=chain, token_id=token_id, tx_hash=tx_hash))
        record.state = TokenState.TOKENIZED
        record.chain = chain
        record.token_id = token_id
        record.tx_hash = tx_hash
        record.error = None
        record.adopted = adopted
        record.updated_at = time.time()
        self.events.publish(EventType.PATHWAY_TOKENIZED, {
            "pathway_id": record.pathway_id,
            "chain": chain,
            "token_id": token_id,
            "tx_hash": tx_hash,
            "adopted": adopted,
        })

    def _mark_failed(self, record: TokenRecord, error: str) -> None:
        record.state = TokenState.MINT_FAILED
        record.error = error[:500]
        record.updated_at = time.time()
        self.events.publish(EventType.PATHWAY_MINT_FAILED, {
            "pathway_id": record.pathway_id,
            "chain": record.chain,
            "attempt": record.attempt,
            "error": record.error,
        })

    async def reconcile(self, pathway_id: str) -> TokenRecord:
        """
        Re-check the chain for a pathway whose mint failed or timed out.

        A transaction that timed out may still have landed; if the registry
        now holds a token for the pathway it is adopted without minting.
        """
        pathway = self.graph.get_pathway(pathway_id)
        record = self.record(pathway_id)
        async with self._lock(pathway_id):
            if record.state != TokenState.MINT_FAILED:
                return record
            adapter = self._adapter_for(pathway, record.chain)
            try:
                existing = await adapter.query_existence(pathway.source_agent_id, pathway.target_agent_id)
            except ChainUnavailableError as e:
                record.error = e.message
                return record
            if existing:
                self._mark_tokenized(record, adapter.chain, existing, record.tx_hash, adopted=True)
        return record

    # ------------------------------------------------------------------
    # Strength sync
    # ------------------------------------------------------------------

    def queue_strength_sync(self, pathway_id: str) -> Optional[asyncio.Task]:
        """Best-effort push of the current strength to the pathway's token."""
        pathway = self.graph.get_pathway(pathway_id)
        if pathway.token is None:
            return None
        if pathway_id in self._sync_inflight:
            self._sync_dirty.add(pathway_id)
            return None
        self._sync_inflight.add(pathway_id)
        return self._track(self._sync(pathway))

    async def _sync(self, pathway: Pathway) -> None:
        record = self.record(pathway.id)
        adapter = self.adapters.get(pathway.token.chain)
        try:
            while True:
                strength = pathway.strength
                try:
                    if adapter is None:
                        raise UnsupportedChainError(pathway.token.chain)
                    handle = await adapter.submit(TxData(
                        kind=TxKind.UPDATE_STRENGTH,
                        token_id=pathway.token.token_id,
                        strength=strength,
                    ))
                    confirmation = await adapter.confirm(handle, self.settings.confirm_deadline_seconds)
                    if confirmation.succeeded:
                        record.synced_strength = strength
                        record.sync_error = None
                        self.events.publish(EventType.PATHWAY_STRENGTH_SYNCED, {
                            "pathway_id": pathway.id,
                            "token_id": pathway.token.token_id,
                            "strength": strength,
                        })
                    else:
                        record.sync_error = confirmation.error or confirmation.outcome.value
                except (ChainUnavailableError, UnsupportedChainError) as e:
                    record.sync_error = e.message
                if record.sync_error:
                    logger.warning(f"Strength sync for {pathway.id} failed: {record.sync_error}")
                if pathway.id in self._sync_dirty:
                    self._sync_dirty.discard(pathway.id)
                    continue
                break
        finally:
            self._sync_inflight.discard(pathway.id)

    # ------------------------------------------------------------------
    # Reads / lifecycle
    # ------------------------------------------------------------------

    async def token_details(self, pathway_id: str) -> dict:
        """Local token record plus the strength currently stored on-chain."""
        record = self.record(pathway_id)
        details = record.to_dict()
        details["onchain_strength"] = None
        if record.state == TokenState.TOKENIZED and record.chain in self.adapters:
            try:
                details["onchain_strength"] = await self.adapters[record.chain].read_strength(record.token_id)
            except ChainUnavailableError as e:
                details["onchain_error"] = e.message
        return details

    async def drain(self) -> None:
        """Wait for every in-flight mint and sync task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
