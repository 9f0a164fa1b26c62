"""Chain adapters for the cognitive mesh"""
from mesh.errors import UnsupportedChainError
from mesh.models import SUPPORTED_CHAINS

from .base import (
    ChainAdapter,
    Confirmation,
    ConfirmationOutcome,
    PendingHandle,
    TxData,
    TxKind,
    encode_strength,
    decode_strength,
)
from .evm_adapter import EvmAdapter
from .local import LocalLedgerAdapter, ScriptedOutcome
from .solana_adapter import SolanaAdapter


def get_chain_adapter(chain: str, backend: str = "local", **options) -> ChainAdapter:
    """
    Build the adapter for a chain.

    backend="local" returns an in-process ledger; any other backend talks to
    the real network with the given options.
    """
    chain = chain.lower()
    if chain not in SUPPORTED_CHAINS:
        raise UnsupportedChainError(chain)
    if backend == "local":
        return LocalLedgerAdapter(chain, **options)
    if chain == "solana":
        return SolanaAdapter(**options)
    return EvmAdapter(chain, **options)


__all__ = [
    "ChainAdapter",
    "Confirmation",
    "ConfirmationOutcome",
    "PendingHandle",
    "TxData",
    "TxKind",
    "encode_strength",
    "decode_strength",
    "EvmAdapter",
    "LocalLedgerAdapter",
    "ScriptedOutcome",
    "SolanaAdapter",
    "get_chain_adapter",
]
