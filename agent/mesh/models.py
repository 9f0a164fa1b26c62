"""Agent, pathway and token records for the cognitive mesh"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .errors import InvalidRangeError

SUPPORTED_CHAINS = ("ethereum", "bnb", "solana")


class AgentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    LEARNING = "learning"


class PathwayStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class Outcome(str, Enum):
    """Result of a single use of a pathway"""
    SUCCESS = "success"
    FAILURE = "failure"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))


def require_unit_number(field_name: str, value) -> float:
    """Reject non-numeric input; out-of-range numbers are left to the caller."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidRangeError(field_name, value)
    if math.isnan(value):
        raise InvalidRangeError(field_name, value)
    return float(value)


@dataclass
class Agent:
    """A registered agent with capabilities and a trust score"""
    id: str
    name: str
    chain: str
    capabilities: set[str] = field(default_factory=set)
    trust_score: float = 0.5
    status: AgentStatus = AgentStatus.ACTIVE
    description: str = ""
    owner: Optional[str] = None
    source_chain: Optional[str] = None
    source_agent_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_mirror(self) -> bool:
        return self.source_agent_id is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "chain": self.chain,
            "capabilities": sorted(self.capabilities),
            "trust_score": self.trust_score,
            "status": self.status.value,
            "description": self.description,
            "owner": self.owner,
            "source_chain": self.source_chain,
            "source_agent_id": self.source_agent_id,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Agent":
        return cls(
            id=data["id"],
            name=data["name"],
            chain=data["chain"],
            capabilities=set(data.get("capabilities", [])),
            trust_score=data.get("trust_score", 0.5),
            status=AgentStatus(data.get("status", "active")),
            description=data.get("description", ""),
            owner=data.get("owner"),
            source_chain=data.get("source_chain"),
            source_agent_id=data.get("source_agent_id"),
            metadata=dict(data.get("metadata") or {}),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else utcnow(),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else utcnow(),
        )


@dataclass(frozen=True)
class TokenHandle:
    """On-chain token bound to a pathway"""
    chain: str
    token_id: str
    tx_hash: Optional[str] = None

    def to_dict(self) -> dict:
        return {"chain": self.chain, "token_id": self.token_id, "tx_hash": self.tx_hash}


@dataclass
class Pathway:
    """A weighted connection between two agents.

    A bidirectional pathway is stored once; the graph indexes it under both
    ordered pairs.
    """
    id: str
    source_agent_id: str
    target_agent_id: str
    strength: float = 1.0
    bidirectional: bool = False
    usage_count: int = 0
    last_used: Optional[datetime] = None
    token: Optional[TokenHandle] = None
    status: PathwayStatus = PathwayStatus.ACTIVE
    metadata: dict = field(default_factory=dict)
    established_at: datetime = field(default_factory=utcnow)

    @property
    def pair(self) -> tuple[str, str]:
        return (self.source_agent_id, self.target_agent_id)

    @property
    def cross_chain(self) -> bool:
        return self.metadata.get("type") == "cross-chain"

    def other_end(self, agent_id: str) -> str:
        if agent_id == self.source_agent_id:
            return self.target_agent_id
        return self.source_agent_id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_agent_id": self.source_agent_id,
            "target_agent_id": self.target_agent_id,
            "strength": self.strength,
            "bidirectional": self.bidirectional,
            "usage_count": self.usage_count,
            "last_used": self.last_used.isoformat() if self.last_used else None,
            "token": self.token.to_dict() if self.token else None,
            "status": self.status.value,
            "metadata": self.metadata,
            "established_at": self.established_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Pathway":
        token = data.get("token")
        return cls(
            id=data["id"],
            source_agent_id=data["source_agent_id"],
            target_agent_id=data["target_agent_id"],
            strength=clamp_unit(data.get("strength", 1.0)),
            bidirectional=data.get("bidirectional", False),
            usage_count=data.get("usage_count", 0),
            last_used=datetime.fromisoformat(data["last_used"]) if data.get("last_used") else None,
            token=TokenHandle(**token) if token else None,
            status=PathwayStatus(data.get("status", "active")),
            metadata=dict(data.get("metadata") or {}),
            established_at=(
                datetime.fromisoformat(data["established_at"]) if data.get("established_at") else utcnow()
            ),
        )


@dataclass
class Connection:
    """One agent reached by a connection traversal"""
    agent: Agent
    pathway: Pathway
    depth: int
