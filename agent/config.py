"""Configuration for the AETHERMIND mesh node"""
import os
from pathlib import Path
from dotenv import load_dotenv

from mesh.settings import MeshSettings

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


# Chain backends: "local" runs every chain against the in-process ledger
CHAIN_BACKEND = os.getenv("CHAIN_BACKEND", "local")

# Solana configuration
SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.devnet.solana.com")
PROGRAM_ID = os.getenv("PROGRAM_ID", "")
WALLET_PATH = os.getenv(
    "WALLET_PATH",
    str(Path.home() / ".config" / "solana" / "id.json")
)

# IDL path - the pathway registry program, legacy format for anchorpy
_idl_env = os.getenv("IDL_PATH", "")
if _idl_env:
    IDL_PATH = Path(_idl_env)
else:
    IDL_PATH = Path(__file__).parent / "idl" / "neural_pathway_legacy.json"

# EVM configuration (Ethereum, BNB Chain)
ETHEREUM_RPC_URL = os.getenv("ETHEREUM_RPC_URL", "")
BNB_CHAIN_RPC_URL = os.getenv("BNB_CHAIN_RPC_URL", "")
# Sender must be unlocked on the node (eth_sendTransaction)
EVM_SENDER_ADDRESS = os.getenv("EVM_SENDER_ADDRESS", "")
NPT_CONTRACT_ETH = os.getenv("NPT_CONTRACT_ETH", "")
NPT_CONTRACT_BNB = os.getenv("NPT_CONTRACT_BNB", "")
NPT_METADATA_BASE_URL = os.getenv(
    "NPT_METADATA_BASE_URL", "https://api.aethermind.io/metadata/pathway"
)

CHAIN_RPC_URLS = {
    "ethereum": ETHEREUM_RPC_URL,
    "bnb": BNB_CHAIN_RPC_URL,
    "solana": SOLANA_RPC_URL,
}
NPT_CONTRACTS = {
    "ethereum": NPT_CONTRACT_ETH,
    "bnb": NPT_CONTRACT_BNB,
}

# Feature switches
ENABLE_NPT_MINTING = _flag("ENABLE_NPT_MINTING", "true")
ENABLE_CROSS_CHAIN_BRIDGE = _flag("ENABLE_CROSS_CHAIN_BRIDGE", "true")

# Audit trail: Merkle batches of mesh events
AUDIT_BATCH_SIZE = int(os.getenv("AUDIT_BATCH_SIZE", "10"))
AUDIT_ANCHOR_CHAIN = os.getenv("AUDIT_ANCHOR_CHAIN", "")  # empty = keep roots local

# State snapshot (survives restarts)
STATE_DIR = Path(os.getenv("STATE_DIR", "mesh_state"))

# API server configuration
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

MESH_SETTINGS = MeshSettings(
    success_delta=float(os.getenv("PATHWAY_SUCCESS_DELTA", "0.05")),
    failure_delta=float(os.getenv("PATHWAY_FAILURE_DELTA", "0.1")),
    trust_success_delta=float(os.getenv("TRUST_SUCCESS_DELTA", "0.01")),
    trust_failure_delta=float(os.getenv("TRUST_FAILURE_DELTA", "0.03")),
    trust_half_life_seconds=float(os.getenv("TRUST_HALF_LIFE_SECONDS", str(7 * 24 * 3600))),
    trust_decay_interval_seconds=float(os.getenv("TRUST_DECAY_INTERVAL_SECONDS", "3600")),
    confirm_deadline_seconds=float(os.getenv("CONFIRM_DEADLINE_SECONDS", "120")),
    confirm_poll_interval=float(os.getenv("CONFIRM_POLL_INTERVAL", "1.0")),
    npt_minting_enabled=ENABLE_NPT_MINTING,
    cross_chain_bridge_enabled=ENABLE_CROSS_CHAIN_BRIDGE,
)
