"""Mesh exception classes."""
from typing import Optional


class MeshError(Exception):
    """Base exception for all mesh errors."""

    def __init__(self, code: str, message: str, details: Optional[dict] = None) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code}] {message}")

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(MeshError):
    """Raised when an agent or pathway reference does not resolve."""

    def __init__(self, resource: str, resource_id: str, message: Optional[str] = None) -> None:
        super().__init__(
            "NOT_FOUND",
            message or f"{resource} '{resource_id}' not found",
            {"resource": resource, "id": resource_id},
        )


class UnknownAgentError(NotFoundError):
    def __init__(self, agent_id: str) -> None:
        super().__init__("Agent", agent_id)


class UnknownPathwayError(NotFoundError):
    def __init__(self, pathway_id: str) -> None:
        super().__init__("Pathway", pathway_id)


class ConflictError(MeshError):
    """Raised on duplicates, double mints, self-loops and other state conflicts."""

    def __init__(self, message: str, details: Optional[dict] = None) -> None:
        super().__init__("CONFLICT", message, details)


class DuplicateIDError(ConflictError):
    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent with ID {agent_id} already exists", {"id": agent_id})


class DuplicatePathwayError(ConflictError):
    def __init__(self, source_id: str, target_id: str) -> None:
        super().__init__(
            f"Pathway already exists between agents {source_id} and {target_id}",
            {"source_agent_id": source_id, "target_agent_id": target_id},
        )


class SelfLoopError(ConflictError):
    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent {agent_id} cannot connect to itself", {"id": agent_id})


class AgentInactiveError(ConflictError):
    def __init__(self, agent_id: str, status: str) -> None:
        super().__init__(
            f"Agent {agent_id} is {status}, pathways require active agents",
            {"id": agent_id, "status": status},
        )


class AlreadyTokenizedError(ConflictError):
    def __init__(self, pathway_id: str, state: str) -> None:
        super().__init__(
            f"Pathway {pathway_id} is already {state}",
            {"pathway_id": pathway_id, "state": state},
        )


class InvalidRangeError(MeshError):
    """Raised when a strength or trust value is malformed or out of bounds."""

    def __init__(self, field_name: str, value) -> None:
        super().__init__(
            "INVALID_RANGE",
            f"{field_name} must be a number in [0, 1], got {value!r}",
            {"field": field_name, "value": repr(value)},
        )


class ValidationError(MeshError):
    """Raised when a registration request misses required fields."""

    def __init__(self, message: str, details: Optional[dict] = None) -> None:
        super().__init__("VALIDATION_ERROR", message, details)


class UnsupportedChainError(ValidationError):
    def __init__(self, chain: str) -> None:
        super().__init__(f"Unsupported blockchain: {chain}", {"chain": chain})


class FeatureDisabledError(MeshError):
    """Raised when a feature switch (minting, cross-chain bridge) is off."""

    def __init__(self, feature: str) -> None:
        super().__init__("FEATURE_DISABLED", f"{feature} is currently disabled", {"feature": feature})


class ChainUnavailableError(MeshError):
    """Raised when an adapter cannot reach its network."""

    def __init__(self, chain: str, message: str) -> None:
        super().__init__("CHAIN_UNAVAILABLE", f"{chain}: {message}", {"chain": chain})


class ChainTimeoutError(MeshError):
    """Raised when a confirmation deadline passes without a terminal outcome."""

    def __init__(self, chain: str, tx_hash: str, deadline: float) -> None:
        super().__init__(
            "CHAIN_TIMEOUT",
            f"{chain}: transaction {tx_hash} not confirmed within {deadline:.1f}s",
            {"chain": chain, "tx_hash": tx_hash},
        )
