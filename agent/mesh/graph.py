"""
Pathway Graph - authoritative store of agents and pathways

Pathways live in a single arena keyed by a synthetic pathway ID. Two index
maps point into that arena:

- forward: (source, target) -> pathway ID
- reverse: (target, source) -> pathway ID, only for bidirectional pathways

Mutating a bidirectional pathway through either direction therefore touches
one record. Every mutation checks all of its preconditions before changing
anything, so a rejected call leaves the graph untouched.
"""
from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from typing import Callable, Iterable, Iterator, Optional

from .errors import (
    ConflictError,
    DuplicateIDError,
    DuplicatePathwayError,
    InvalidRangeError,
    UnknownAgentError,
    UnknownPathwayError,
)
from .models import (
    Agent,
    AgentStatus,
    Connection,
    Outcome,
    Pathway,
    PathwayStatus,
    TokenHandle,
    clamp_unit,
    require_unit_number,
    utcnow,
)
from .settings import MeshSettings

logger = logging.getLogger(__name__)


def _new_pathway_id() -> str:
    return f"pathway-{uuid.uuid4().hex[:12]}"


class PathwayGraph:
    """
    In-memory graph of agents and pathways.

    Structural changes (adding agents and pathways, index maintenance) take a
    graph-wide lock. Usage recording and strength updates take a lock per
    pathway so unrelated pathways never wait on each other.
    """

    def __init__(
        self,
        settings: Optional[MeshSettings] = None,
        clock: Callable = utcnow,
        id_factory: Callable[[], str] = _new_pathway_id,
    ):
        self.settings = settings or MeshSettings()
        self._clock = clock
        self._id_factory = id_factory

        self._agents: dict[str, Agent] = {}
        self._pathways: dict[str, Pathway] = {}
        self._forward: dict[tuple[str, str], str] = {}
        self._reverse: dict[tuple[str, str], str] = {}
        # agent ID -> IDs of every pathway touching it, either direction
        self._incident: dict[str, set[str]] = {}

        self._lock = threading.RLock()
        self._pathway_locks: dict[str, threading.Lock] = {}

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    def add_agent(self, agent: Agent) -> Agent:
        with self._lock:
            if agent.id in self._agents:
                raise DuplicateIDError(agent.id)
            if agent.source_agent_id is not None and agent.source_agent_id not in self._agents:
                raise UnknownAgentError(agent.source_agent_id)
            agent.trust_score = clamp_unit(require_unit_number("trust_score", agent.trust_score))
            self._agents[agent.id] = agent
            self._incident.setdefault(agent.id, set())
        logger.debug(f"Agent added: {agent.id} ({agent.chain})")
        return agent

    def get_agent(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise UnknownAgentError(agent_id)
        return agent

    def has_agent(self, agent_id: str) -> bool:
        return agent_id in self._agents

    @property
    def agent_count(self) -> int:
        return len(self._agents)

    def agents(self) -> list[Agent]:
        with self._lock:
            return list(self._agents.values())

    def query_agents(
        self,
        capabilities: Optional[Iterable[str]] = None,
        min_trust_score: Optional[float] = None,
        chain: Optional[str] = None,
        status: Optional[AgentStatus] = None,
        owner: Optional[str] = None,
    ) -> list[Agent]:
        """Filtered scan; an agent must hold every requested capability."""
        wanted = set(capabilities or ())
        results = []
        for agent in self.agents():
            if wanted and not wanted.issubset(agent.capabilities):
                continue
            if min_trust_score is not None and agent.trust_score < min_trust_score:
                continue
            if chain and agent.chain != chain:
                continue
            if status is not None and agent.status != status:
                continue
            if owner and agent.owner != owner:
                continue
            results.append(agent)
        return sorted(results, key=lambda a: a.id)

    def set_agent_status(self, agent_id: str, status: AgentStatus) -> Agent:
        with self._lock:
            agent = self.get_agent(agent_id)
            agent.status = AgentStatus(status)
            agent.updated_at = self._clock()
        return agent

    def add_capability(self, agent_id: str, capability: str) -> Agent:
        with self._lock:
            agent = self.get_agent(agent_id)
            if capability not in agent.capabilities:
                agent.capabilities.add(capability)
                agent.updated_at = self._clock()
        return agent

    def remove_capability(self, agent_id: str, capability: str) -> Agent:
        with self._lock:
            agent = self.get_agent(agent_id)
            if capability in agent.capabilities:
                agent.capabilities.discard(capability)
                agent.updated_at = self._clock()
        return agent

    def update_agent(
        self,
        agent_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        capabilities: Optional[Iterable[str]] = None,
        owner: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Agent:
        """Replace descriptive fields; chain, trust and lineage stay fixed."""
        with self._lock:
            agent = self.get_agent(agent_id)
            if name is not None:
                agent.name = name
            if description is not None:
                agent.description = description
            if capabilities is not None:
                agent.capabilities = set(capabilities)
            if owner is not None:
                agent.owner = owner
            if metadata is not None:
                agent.metadata = dict(metadata)
            agent.updated_at = self._clock()
        return agent

    def set_trust_score(self, agent_id: str, score: float, touch: bool = True) -> Agent:
        """Store a trust score computed by the trust engine."""
        value = require_unit_number("trust_score", score)
        with self._lock:
            agent = self.get_agent(agent_id)
            agent.trust_score = clamp_unit(value)
            if touch:
                agent.updated_at = self._clock()
        return agent

    def remove_agent(self, agent_id: str) -> None:
        """Hard removal, refused while any pathway or mirror references the agent."""
        with self._lock:
            self.get_agent(agent_id)
            if self._incident.get(agent_id):
                raise ConflictError(
                    f"Agent {agent_id} is referenced by {len(self._incident[agent_id])} pathway(s)",
                    {"id": agent_id},
                )
            mirrors = [a.id for a in self._agents.values() if a.source_agent_id == agent_id]
            if mirrors:
                raise ConflictError(
                    f"Agent {agent_id} has cross-chain mirrors: {', '.join(sorted(mirrors))}",
                    {"id": agent_id, "mirrors": sorted(mirrors)},
                )
            del self._agents[agent_id]
            self._incident.pop(agent_id, None)
        logger.info(f"Agent removed: {agent_id}")

    # ------------------------------------------------------------------
    # Pathways
    # ------------------------------------------------------------------

    def resolve(self, source_id: str, target_id: str) -> Optional[str]:
        """Pathway ID for an ordered pair, following reverse entries."""
        pair = (source_id, target_id)
        return self._forward.get(pair) or self._reverse.get(pair)

    def add_pathway(
        self,
        source_id: str,
        target_id: str,
        strength: float = 1.0,
        bidirectional: bool = False,
        metadata: Optional[dict] = None,
        pathway_id: Optional[str] = None,
    ) -> Pathway:
        value = clamp_unit(require_unit_number("strength", strength))
        with self._lock:
            for agent_id in (source_id, target_id):
                if agent_id not in self._agents:
                    raise UnknownAgentError(agent_id)
            if self.resolve(source_id, target_id):
                raise DuplicatePathwayError(source_id, target_id)
            if bidirectional and self.resolve(target_id, source_id):
                raise DuplicatePathwayError(target_id, source_id)

            pathway = Pathway(
                id=pathway_id or self._id_factory(),
                source_agent_id=source_id,
                target_agent_id=target_id,
                strength=value,
                bidirectional=bool(bidirectional),
                metadata=dict(metadata or {}),
                established_at=self._clock(),
            )
            if pathway.id in self._pathways:
                raise ConflictError(f"Pathway ID {pathway.id} already in use", {"id": pathway.id})
            self._index(pathway)

        logger.info(
            f"Pathway {pathway.id}: {source_id} {'<->' if bidirectional else '->'} {target_id} "
            f"(strength={value:.2f})"
        )
        return pathway

    def _index(self, pathway: Pathway) -> None:
        self._pathways[pathway.id] = pathway
        self._pathway_locks[pathway.id] = threading.Lock()
        self._forward[pathway.pair] = pathway.id
        if pathway.bidirectional:
            self._reverse[(pathway.target_agent_id, pathway.source_agent_id)] = pathway.id
        self._incident.setdefault(pathway.source_agent_id, set()).add(pathway.id)
        self._incident.setdefault(pathway.target_agent_id, set()).add(pathway.id)

    def get_pathway(self, pathway_id: str) -> Pathway:
        pathway = self._pathways.get(pathway_id)
        if pathway is None:
            raise UnknownPathwayError(pathway_id)
        return pathway

    def find_pathway(self, source_id: str, target_id: str) -> Optional[Pathway]:
        pathway_id = self.resolve(source_id, target_id)
        return self._pathways.get(pathway_id) if pathway_id else None

    def pathways_of(self, agent_id: str) -> list[Pathway]:
        """Every pathway touching the agent, in either direction."""
        with self._lock:
            self.get_agent(agent_id)
            ids = sorted(self._incident.get(agent_id, ()))
            return [self._pathways[pid] for pid in ids]

    def query_pathways(
        self,
        source_agent_id: Optional[str] = None,
        target_agent_id: Optional[str] = None,
        min_strength: Optional[float] = None,
        bidirectional: Optional[bool] = None,
        status: Optional[PathwayStatus] = None,
        cross_chain: Optional[bool] = None,
    ) -> list[Pathway]:
        with self._lock:
            pathways = list(self._pathways.values())
        results = []
        for pathway in pathways:
            if source_agent_id and pathway.source_agent_id != source_agent_id:
                continue
            if target_agent_id and pathway.target_agent_id != target_agent_id:
                continue
            if min_strength is not None and pathway.strength < min_strength:
                continue
            if bidirectional is not None and pathway.bidirectional != bidirectional:
                continue
            if status is not None and pathway.status != status:
                continue
            if cross_chain is not None and pathway.cross_chain != cross_chain:
                continue
            results.append(pathway)
        return sorted(results, key=lambda p: p.id)

    @property
    def pathway_count(self) -> int:
        return len(self._pathways)

    def _outgoing(self, agent_id: str) -> list[Pathway]:
        """Pathways traversable away from agent_id, ordered by the agent they lead to."""
        with self._lock:
            candidates = [self._pathways[pid] for pid in self._incident.get(agent_id, ())]
        outgoing = [
            p for p in candidates
            if p.source_agent_id == agent_id or (p.bidirectional and p.target_agent_id == agent_id)
        ]
        return sorted(outgoing, key=lambda p: (p.other_end(agent_id), p.id))

    def find_connections(
        self,
        agent_id: str,
        max_depth: int = 1,
        min_strength: float = 0.0,
    ) -> Iterator[Connection]:
        """
        Lazily walk the agents reachable from agent_id, breadth-first.

        Each agent is yielded at most once, so cycles terminate. Pathways
        weaker than min_strength, and inactive pathways, are not followed.
        Neighbours are expanded in ascending agent-ID order.
        """
        self.get_agent(agent_id)
        if isinstance(max_depth, bool) or not isinstance(max_depth, int) or max_depth < 0:
            raise InvalidRangeError("max_depth", max_depth)
        threshold = require_unit_number("min_strength", min_strength)
        return self._walk(agent_id, max_depth, threshold)

    def _walk(self, start_id: str, max_depth: int, min_strength: float) -> Iterator[Connection]:
        visited = {start_id}
        frontier = deque([(start_id, 0)])
        while frontier:
            current_id, depth = frontier.popleft()
            if depth >= max_depth:
                continue
            for pathway in self._outgoing(current_id):
                if pathway.status != PathwayStatus.ACTIVE or pathway.strength < min_strength:
                    continue
                neighbour_id = pathway.other_end(current_id)
                if neighbour_id in visited:
                    continue
                visited.add(neighbour_id)
                agent = self._agents.get(neighbour_id)
                if agent is None:
                    continue
                yield Connection(agent=agent, pathway=pathway, depth=depth + 1)
                frontier.append((neighbour_id, depth + 1))

    def record_usage(self, pathway_id: str, outcome: Optional[Outcome] = None) -> Pathway:
        """
        Count one use of a pathway and adjust its strength.

        success -> min(1, strength + success_delta)
        failure -> max(0, strength - failure_delta)
        None    -> usage only
        """
        pathway = self.get_pathway(pathway_id)
        outcome = Outcome(outcome) if outcome is not None else None
        with self._pathway_locks[pathway_id]:
            pathway.usage_count += 1
            pathway.last_used = self._clock()
            if outcome == Outcome.SUCCESS:
                pathway.strength = min(1.0, pathway.strength + self.settings.success_delta)
            elif outcome == Outcome.FAILURE:
                pathway.strength = max(0.0, pathway.strength - self.settings.failure_delta)
        logger.debug(
            f"Usage recorded on {pathway_id}: outcome={outcome.value if outcome else 'none'} "
            f"count={pathway.usage_count} strength={pathway.strength:.3f}"
        )
        return pathway

    def update_strength(self, pathway_id: str, strength: float) -> Pathway:
        value = require_unit_number("strength", strength)
        pathway = self.get_pathway(pathway_id)
        with self._pathway_locks[pathway_id]:
            pathway.strength = clamp_unit(value)
        return pathway

    def set_pathway_status(self, pathway_id: str, status: PathwayStatus) -> Pathway:
        pathway = self.get_pathway(pathway_id)
        with self._pathway_locks[pathway_id]:
            pathway.status = PathwayStatus(status)
        return pathway

    def set_token(self, pathway_id: str, handle: TokenHandle) -> Pathway:
        """Bind an on-chain token. A pathway is tokenized at most once."""
        pathway = self.get_pathway(pathway_id)
        with self._pathway_locks[pathway_id]:
            if pathway.token is not None:
                raise ConflictError(
                    f"Pathway {pathway_id} already has a token ({pathway.token.token_id})",
                    {"pathway_id": pathway_id, "token_id": pathway.token.token_id},
                )
            pathway.token = handle
            pathway.metadata["token_type"] = "NPT-V1"
            pathway.metadata["token_generated_at"] = self._clock().isoformat()
        logger.info(f"Pathway {pathway_id} tokenized on {handle.chain}: {handle.token_id}")
        return pathway

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        """JSON-safe dump: agents keyed by ID, pathways keyed by ID."""
        with self._lock:
            return {
                "agents": {aid: a.to_dict() for aid, a in self._agents.items()},
                "pathways": {pid: p.to_dict() for pid, p in self._pathways.items()},
            }

    def restore(self, data: dict) -> None:
        """Load a snapshot into an empty graph, mirrors after their sources."""
        with self._lock:
            if self._agents or self._pathways:
                raise ConflictError("Cannot restore into a non-empty graph")
            agents = [Agent.from_dict(a) for a in data.get("agents", {}).values()]
            pending = sorted(agents, key=lambda a: a.source_agent_id is not None)
            while pending:
                progressed = [a for a in pending if a.source_agent_id is None or a.source_agent_id in self._agents]
                if not progressed:
                    raise UnknownAgentError(pending[0].source_agent_id)
                for agent in progressed:
                    self.add_agent(agent)
                pending = [a for a in pending if a.id not in self._agents]
            for raw in data.get("pathways", {}).values():
                pathway = Pathway.from_dict(raw)
                for agent_id in pathway.pair:
                    if agent_id not in self._agents:
                        raise UnknownAgentError(agent_id)
                if self.resolve(*pathway.pair):
                    raise DuplicatePathwayError(*pathway.pair)
                if pathway.bidirectional and self.resolve(pathway.target_agent_id, pathway.source_agent_id):
                    raise DuplicatePathwayError(pathway.target_agent_id, pathway.source_agent_id)
                self._index(pathway)
        logger.info(f"Graph restored: {self.agent_count} agents, {self.pathway_count} pathways")
