"""Solana adapter for the Neural Pathway registry program"""
import hashlib
import json
import logging
from pathlib import Path
from typing import Optional

from anchorpy import Context, Idl, Program, Provider, Wallet
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYS_PROGRAM_ID
from solders.transaction_status import TransactionConfirmationStatus

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

_SETTLED = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)


class SolanaAdapter(ChainAdapter):
    """
    Mints and updates pathway tokens through the registry program.

    A pathway token is the PDA derived from ["pathway", sha256(source), sha256(target)];
    its address doubles as the token ID.
    """

    def __init__(
        self,
        rpc_url: str,
        program_id: str,
        idl_path: Path,
        wallet_path: Optional[Path] = None,
        keypair: Optional[Keypair] = None,
        **kwargs,
    ):
        super().__init__("solana", **kwargs)
        self.rpc_url = rpc_url
        self.program_id = Pubkey.from_string(program_id)

        with open(idl_path) as f:
            idl_data = json.load(f)
        self.idl = Idl.from_json(json.dumps(idl_data))

        if keypair:
            self.keypair = keypair
        elif wallet_path:
            with open(wallet_path) as f:
                secret_key = json.load(f)
            self.keypair = Keypair.from_bytes(bytes(secret_key))
        else:
            raise ValueError("Either wallet_path or keypair must be provided")

        self.client: Optional[AsyncClient] = None
        self.program: Optional[Program] = None
        # tx signature -> pathway PDA, so confirmation can report the token ID
        self._pending_tokens: dict[str, str] = {}

    async def connect(self) -> None:
        self.client = AsyncClient(self.rpc_url)
        try:
            if not await self.client.is_connected():
                raise ChainUnavailableError(self.chain, f"RPC node unreachable: {self.rpc_url}")
            genesis = await self.client.get_genesis_hash()
        except ChainUnavailableError:
            raise
        except Exception as e:
            raise ChainUnavailableError(self.chain, str(e)) from e
        self.network_id = str(genesis.value)
        self.program = Program(self.idl, self.program_id, Provider(self.client, Wallet(self.keypair)))
        self.connected = True
        logger.info(f"Connected to {self.rpc_url} (genesis {self.network_id[:12]}...)")

    async def disconnect(self) -> None:
        if self.client:
            await self.client.close()
            logger.info("Disconnected from Solana")
        self.connected = False

    @staticmethod
    def _agent_seed(agent_id: str) -> bytes:
        # PDA seeds are capped at 32 bytes; agent IDs are not
        return hashlib.sha256(agent_id.encode("utf-8")).digest()

    def _get_registry_pda(self) -> tuple[Pubkey, int]:
        return Pubkey.find_program_address([b"registry"], self.program_id)

    def _get_pathway_pda(self, source_agent_id: str, target_agent_id: str) -> tuple[Pubkey, int]:
        return Pubkey.find_program_address(
            [b"pathway", self._agent_seed(source_agent_id), self._agent_seed(target_agent_id)],
            self.program_id,
        )

    def _get_audit_root_pda(self, merkle_root: bytes) -> tuple[Pubkey, int]:
        return Pubkey.find_program_address([b"audit_root", merkle_root], self.program_id)

    def _ctx(self, accounts: dict) -> Context:
        return Context(
            accounts=accounts,
            signers=[self.keypair],
            options=TxOpts(skip_confirmation=True, preflight_commitment=Confirmed),
        )

    async def submit(self, tx: TxData) -> PendingHandle:
        await self.ensure_connected()
        registry_pda, _ = self._get_registry_pda()
        token_pda: Optional[Pubkey] = None

        try:
            if tx.kind == TxKind.MINT_PATHWAY:
                token_pda, _ = self._get_pathway_pda(tx.source_agent_id, tx.target_agent_id)
                owner = Pubkey.from_string(tx.owner) if tx.owner else self.keypair.pubkey()
                signature = await self.program.rpc["mint_pathway"](
                    tx.source_agent_id,
                    tx.target_agent_id,
                    encode_strength(tx.strength or 0.0),
                    tx.uri or "",
                    ctx=self._ctx({
                        "payer": self.keypair.pubkey(),
                        "owner": owner,
                        "registry": registry_pda,
                        "pathway": token_pda,
                        "system_program": SYS_PROGRAM_ID,
                    }),
                )
            elif tx.kind == TxKind.UPDATE_STRENGTH:
                token_pda = Pubkey.from_string(tx.token_id)
                signature = await self.program.rpc["update_pathway_strength"](
                    encode_strength(tx.strength or 0.0),
                    ctx=self._ctx({
                        "authority": self.keypair.pubkey(),
                        "registry": registry_pda,
                        "pathway": token_pda,
                    }),
                )
            elif tx.kind == TxKind.ANCHOR_AUDIT:
                root_bytes = bytes.fromhex(tx.payload["merkle_root"])
                root_pda, _ = self._get_audit_root_pda(root_bytes)
                signature = await self.program.rpc["anchor_audit_root"](
                    list(root_bytes),
                    tx.payload.get("entries_count", 0),
                    ctx=self._ctx({
                        "authority": self.keypair.pubkey(),
                        "audit_root": root_pda,
                        "system_program": SYS_PROGRAM_ID,
                    }),
                )
            else:
                raise ValueError(f"Unsupported transaction kind: {tx.kind}")
        except ValueError:
            raise
        except Exception as e:
            logger.error(f"Solana {tx.kind.value} submission failed: {e}")
            raise ChainUnavailableError(self.chain, str(e)) from e

        tx_hash = str(signature)
        if token_pda is not None:
            self._pending_tokens[tx_hash] = str(token_pda)
        logger.info(f"Solana {tx.kind.value} sent: {tx_hash}")
        return PendingHandle(chain=self.chain, tx_hash=tx_hash, kind=tx.kind)

    async def _poll(self, handle: PendingHandle) -> Optional[Confirmation]:
        try:
            resp = await self.client.get_signature_statuses([Signature.from_string(handle.tx_hash)])
        except Exception as e:
            raise ChainUnavailableError(self.chain, str(e)) from e

        status = resp.value[0]
        if status is None:
            return None
        if status.err is not None:
            self._pending_tokens.pop(handle.tx_hash, None)
            return Confirmation(ConfirmationOutcome.FAILED, handle, error=str(status.err))
        if status.confirmation_status not in _SETTLED:
            return None

        receipt = {"slot": status.slot}
        token_id = self._pending_tokens.pop(handle.tx_hash, None)
        if token_id:
            receipt["token_id"] = token_id
        return Confirmation(ConfirmationOutcome.SUCCESS, handle, receipt=receipt)

    async def query_existence(self, source_agent_id: str, target_agent_id: str) -> Optional[str]:
        await self.ensure_connected()
        pathway_pda, _ = self._get_pathway_pda(source_agent_id, target_agent_id)
        try:
            resp = await self.client.get_account_info(pathway_pda)
        except Exception as e:
            raise ChainUnavailableError(self.chain, str(e)) from e
        return str(pathway_pda) if resp.value is not None else None

    async def read_strength(self, token_id: str) -> Optional[float]:
        await self.ensure_connected()
        try:
            token = await self.program.account["PathwayToken"].fetch(Pubkey.from_string(token_id))
        except Exception as e:
            logger.debug(f"Pathway token {token_id} not found: {e}")
            return None
        return decode_strength(token.strength)
