"""Uniform interface over blockchain backends"""
import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from mesh.errors import ChainUnavailableError

logger = logging.getLogger(__name__)

# On-chain strength is an integer in [0, STRENGTH_SCALE]
STRENGTH_SCALE = 1000


def encode_strength(strength: float) -> int:
    return max(0, min(STRENGTH_SCALE, math.floor(strength * STRENGTH_SCALE)))


def decode_strength(value: int) -> float:
    return value / STRENGTH_SCALE


class TxKind(str, Enum):
    MINT_PATHWAY = "mint_pathway"
    UPDATE_STRENGTH = "update_strength"
    ANCHOR_AUDIT = "anchor_audit"


@dataclass
class TxData:
    """A chain-neutral transaction request"""
    kind: TxKind
    source_agent_id: Optional[str] = None
    target_agent_id: Optional[str] = None
    owner: Optional[str] = None
    strength: Optional[float] = None
    token_id: Optional[str] = None
    uri: Optional[str] = None
    payload: dict = field(default_factory=dict)


@dataclass
class PendingHandle:
    """Returned by submit() before the network has settled the transaction"""
    chain: str
    tx_hash: str
    kind: TxKind
    submitted_at: float = field(default_factory=time.time)


class ConfirmationOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass
class Confirmation:
    outcome: ConfirmationOutcome
    handle: PendingHandle
    receipt: Optional[dict] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == ConfirmationOutcome.SUCCESS

    @property
    def token_id(self) -> Optional[str]:
        if self.receipt:
            return self.receipt.get("token_id")
        return None


class ChainAdapter(ABC):
    """
    Base class for chain backends.

    submit() returns as soon as the transaction is accepted. confirm() polls
    with exponential backoff until the transaction succeeds, fails, or the
    deadline passes. Nothing here resubmits a transaction: that decision
    belongs to the caller, which must re-check the registry first.
    """

    def __init__(
        self,
        chain: str,
        poll_interval: float = 1.0,
        max_poll_interval: float = 8.0,
        default_deadline: float = 120.0,
    ):
        self.chain = chain
        self.poll_interval = poll_interval
        self.max_poll_interval = max_poll_interval
        self.default_deadline = default_deadline
        self.connected = False
        self.network_id: Optional[str] = None

    @abstractmethod
    async def connect(self) -> None:
        """Open the network connection and resolve the network ID."""

    async def disconnect(self) -> None:
        self.connected = False

    async def is_connected(self) -> bool:
        return self.connected

    async def get_network_id(self) -> Optional[str]:
        return self.network_id

    async def ensure_connected(self) -> None:
        if not self.connected:
            await self.connect()

    @abstractmethod
    async def submit(self, tx: TxData) -> PendingHandle:
        """Send a transaction; raises ChainUnavailableError if the network is unreachable."""

    @abstractmethod
    async def _poll(self, handle: PendingHandle) -> Optional[Confirmation]:
        """One status check. None while the transaction is still pending."""

    @abstractmethod
    async def query_existence(self, source_agent_id: str, target_agent_id: str) -> Optional[str]:
        """Token ID registered on-chain for the pathway, or None."""

    @abstractmethod
    async def read_strength(self, token_id: str) -> Optional[float]:
        """Strength stored on-chain for a token, or None if the token is unknown."""

    async def confirm(self, handle: PendingHandle, deadline: Optional[float] = None) -> Confirmation:
        """Wait for a terminal outcome; deadline is in seconds from now."""
        timeout = self.default_deadline if deadline is None else deadline
        loop = asyncio.get_running_loop()
        expires = loop.time() + timeout
        delay = self.poll_interval

        while True:
            try:
                result = await self._poll(handle)
            except ChainUnavailableError as e:
                logger.warning(f"[{self.chain}] Poll failed for {handle.tx_hash[:16]}...: {e.message}")
                result = None
            if result is not None:
                logger.info(f"[{self.chain}] {handle.kind.value} {handle.tx_hash[:16]}... -> {result.outcome.value}")
                return result

            remaining = expires - loop.time()
            if remaining <= 0:
                logger.warning(f"[{self.chain}] Confirmation timeout after {timeout:.1f}s: {handle.tx_hash}")
                return Confirmation(
                    outcome=ConfirmationOutcome.TIMEOUT,
                    handle=handle,
                    error=f"not confirmed within {timeout:.1f}s",
                )
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, self.max_poll_interval)

    async def status(self) -> dict:
        """Connection summary for status endpoints."""
        try:
            await self.ensure_connected()
            return {
                "connected": await self.is_connected(),
                "network_id": await self.get_network_id(),
                "status": "online",
            }
        except ChainUnavailableError as e:
            return {"connected": False, "error": e.message, "status": "offline"}
