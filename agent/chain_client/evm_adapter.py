"""EVM adapter (Ethereum, BNB Chain) for the Neural Pathway Token contract over JSON-RPC"""
import itertools
import logging
from typing import Any, Optional

import httpx
from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

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

MINT_PATHWAY = "mintPathway(address,string,string,uint256,string)"
UPDATE_STRENGTH = "updatePathwayStrength(uint256,uint256)"
ANCHOR_AUDIT_ROOT = "anchorAuditRoot(bytes32,uint256)"
PATHWAY_EXISTS = "pathwayExists(string,string)"
PATHWAY_DETAILS = "getPathwayDetails(uint256)"

# PathwayTokenMinted(uint256 indexed tokenId, address indexed owner, string sourceAgentId, string targetAgentId)
PATHWAY_MINTED_TOPIC = "0x" + keccak(text="PathwayTokenMinted(uint256,address,string,string)").hex()


def encode_call(signature: str, types: list[str], values: list[Any]) -> str:
    """ABI-encode a contract call as 0x-prefixed calldata."""
    data = function_signature_to_4byte_selector(signature) + encode(types, values)
    return "0x" + data.hex()


def _strip_0x(value: str) -> str:
    return value[2:] if value.startswith("0x") else value


class EvmAdapter(ChainAdapter):
    """
    Talks to an EVM node with plain JSON-RPC.

    Transactions go through eth_sendTransaction, so the sender account must be
    managed by the node (dev node, Clef, or a signing proxy).
    """

    def __init__(
        self,
        chain: str,
        rpc_url: str,
        contract_address: str,
        sender_address: str,
        http_client: Optional[httpx.AsyncClient] = None,
        gas_limit: int = 500_000,
        request_timeout: float = 15.0,
        **kwargs,
    ):
        super().__init__(chain, **kwargs)
        if not rpc_url:
            raise ValueError(f"{chain} RPC URL not configured")
        self.rpc_url = rpc_url
        self.contract_address = to_checksum_address(contract_address)
        self.sender_address = to_checksum_address(sender_address)
        self.gas_limit = gas_limit
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=request_timeout)
        self._ids = itertools.count(1)

    async def _rpc(self, method: str, params: list) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self.http.post(self.rpc_url, json=body)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ChainUnavailableError(self.chain, f"{method} failed: {e}") from e
        if data.get("error"):
            message = data["error"].get("message", "unknown error")
            raise ChainUnavailableError(self.chain, f"{method} rejected: {message}")
        return data.get("result")

    async def connect(self) -> None:
        chain_id = await self._rpc("eth_chainId", [])
        self.network_id = str(int(chain_id, 16))
        self.connected = True
        logger.info(f"Connected to {self.chain} network with chain ID: {self.network_id}")

    async def disconnect(self) -> None:
        if self._owns_client:
            await self.http.aclose()
        self.connected = False

    def _calldata(self, tx: TxData) -> str:
        if tx.kind == TxKind.MINT_PATHWAY:
            owner = to_checksum_address(tx.owner) if tx.owner else self.sender_address
            return encode_call(
                MINT_PATHWAY,
                ["address", "string", "string", "uint256", "string"],
                [owner, tx.source_agent_id, tx.target_agent_id, encode_strength(tx.strength or 0.0), tx.uri or ""],
            )
        if tx.kind == TxKind.UPDATE_STRENGTH:
            return encode_call(
                UPDATE_STRENGTH,
                ["uint256", "uint256"],
                [int(tx.token_id), encode_strength(tx.strength or 0.0)],
            )
        if tx.kind == TxKind.ANCHOR_AUDIT:
            return encode_call(
                ANCHOR_AUDIT_ROOT,
                ["bytes32", "uint256"],
                [bytes.fromhex(tx.payload["merkle_root"]), tx.payload.get("entries_count", 0)],
            )
        raise ValueError(f"Unsupported transaction kind: {tx.kind}")

    async def submit(self, tx: TxData) -> PendingHandle:
        await self.ensure_connected()
        data = self._calldata(tx)
        tx_hash = await self._rpc("eth_sendTransaction", [{
            "from": self.sender_address,
            "to": self.contract_address,
            "data": data,
            "gas": hex(self.gas_limit),
        }])
        logger.info(f"{self.chain} {tx.kind.value} transaction sent: {tx_hash}")
        return PendingHandle(chain=self.chain, tx_hash=tx_hash, kind=tx.kind)

    async def _poll(self, handle: PendingHandle) -> Optional[Confirmation]:
        receipt = await self._rpc("eth_getTransactionReceipt", [handle.tx_hash])
        if receipt is None:
            return None

        summary = {
            "block_number": int(receipt["blockNumber"], 16) if receipt.get("blockNumber") else None,
            "gas_used": int(receipt["gasUsed"], 16) if receipt.get("gasUsed") else None,
        }
        if receipt.get("status") != "0x1":
            return Confirmation(ConfirmationOutcome.FAILED, handle, receipt=summary, error="execution reverted")

        for log in receipt.get("logs", []):
            topics = log.get("topics", [])
            if topics and topics[0].lower() == PATHWAY_MINTED_TOPIC and len(topics) > 1:
                summary["token_id"] = str(int(topics[1], 16))
                break
        return Confirmation(ConfirmationOutcome.SUCCESS, handle, receipt=summary)

    async def _call(self, data: str) -> bytes:
        result = await self._rpc("eth_call", [{"to": self.contract_address, "data": data}, "latest"])
        return bytes.fromhex(_strip_0x(result or "0x"))

    async def query_existence(self, source_agent_id: str, target_agent_id: str) -> Optional[str]:
        await self.ensure_connected()
        raw = await self._call(encode_call(PATHWAY_EXISTS, ["string", "string"], [source_agent_id, target_agent_id]))
        if not raw:
            return None
        (token_id,) = decode(["uint256"], raw)
        return str(token_id) if token_id > 0 else None

    async def read_strength(self, token_id: str) -> Optional[float]:
        await self.ensure_connected()
        try:
            raw = await self._call(encode_call(PATHWAY_DETAILS, ["uint256"], [int(token_id)]))
        except ChainUnavailableError as e:
            logger.debug(f"Pathway token {token_id} not readable: {e.message}")
            return None
        if not raw:
            return None
        _, _, strength = decode(["string", "string", "uint256"], raw)
        return decode_strength(strength)
