"""AETHERMIND cognitive mesh: agents, pathways, trust and pathway tokens"""
from .errors import (
    AgentInactiveError,
    AlreadyTokenizedError,
    ChainTimeoutError,
    ChainUnavailableError,
    ConflictError,
    DuplicateIDError,
    DuplicatePathwayError,
    FeatureDisabledError,
    InvalidRangeError,
    MeshError,
    NotFoundError,
    SelfLoopError,
    UnknownAgentError,
    UnknownPathwayError,
    UnsupportedChainError,
    ValidationError,
)
from .models import (
    SUPPORTED_CHAINS,
    Agent,
    AgentStatus,
    Connection,
    Outcome,
    Pathway,
    PathwayStatus,
    TokenHandle,
)
from .settings import MeshSettings
from .events import EventChannel, EventType, MeshEvent, Subscription, log_events
from .graph import PathwayGraph
from .trust import TrustEngine
from .identity import ChainLinkRegistry
from .tokenization import TokenizationBridge, TokenRecord, TokenState
from .coordinator import MeshCoordinator
from .audit import (
    AuditEntry,
    AuditTrail,
    compute_merkle_proof,
    compute_merkle_root,
    verify_merkle_proof,
)

__all__ = [
    "AgentInactiveError",
    "AlreadyTokenizedError",
    "ChainTimeoutError",
    "ChainUnavailableError",
    "ConflictError",
    "DuplicateIDError",
    "DuplicatePathwayError",
    "FeatureDisabledError",
    "InvalidRangeError",
    "MeshError",
    "NotFoundError",
    "SelfLoopError",
    "UnknownAgentError",
    "UnknownPathwayError",
    "UnsupportedChainError",
    "ValidationError",
    "SUPPORTED_CHAINS",
    "Agent",
    "AgentStatus",
    "Connection",
    "Outcome",
    "Pathway",
    "PathwayStatus",
    "TokenHandle",
    "MeshSettings",
    "EventChannel",
    "EventType",
    "MeshEvent",
    "Subscription",
    "log_events",
    "PathwayGraph",
    "TrustEngine",
    "ChainLinkRegistry",
    "TokenizationBridge",
    "TokenRecord",
    "TokenState",
    "MeshCoordinator",
    "AuditEntry",
    "AuditTrail",
    "compute_merkle_proof",
    "compute_merkle_root",
    "verify_merkle_proof",
]
