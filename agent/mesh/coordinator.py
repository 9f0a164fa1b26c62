"""
Mesh Coordinator - the single entry point that mutates mesh state

Wires the pathway graph, the trust engine, the chain link registry and the
tokenization bridge together. Callers (HTTP layer, scripts) never touch the
graph or the engine directly; every operation here validates its input,
delegates, and publishes an event without waiting for observers.
"""
import asyncio
import logging
import uuid
from collections.abc import Mapping
from typing import Callable, Iterable, Iterator, Optional

from .errors import (
    AgentInactiveError,
    ConflictError,
    FeatureDisabledError,
    InvalidRangeError,
    NotFoundError,
    SelfLoopError,
    UnsupportedChainError,
    ValidationError,
)
from .events import EventChannel, EventType
from .graph import PathwayGraph
from .identity import ChainLinkRegistry
from .models import (
    Agent,
    AgentStatus,
    Connection,
    Outcome,
    Pathway,
    PathwayStatus,
    require_unit_number,
)
from .settings import MeshSettings
from .tokenization import TokenizationBridge
from .trust import TrustEngine

logger = logging.getLogger(__name__)


def _new_agent_id() -> str:
    return f"agent-{uuid.uuid4().hex[:12]}"


class MeshCoordinator:
    def __init__(
        self,
        graph: PathwayGraph,
        trust: Optional[TrustEngine] = None,
        events: Optional[EventChannel] = None,
        bridge: Optional[TokenizationBridge] = None,
        settings: Optional[MeshSettings] = None,
        id_factory: Callable[[], str] = _new_agent_id,
    ):
        self.graph = graph
        self.settings = settings or graph.settings
        self.trust = trust or TrustEngine(graph, self.settings)
        self.events = events or EventChannel(self.settings.event_history_size, self.settings.subscriber_queue_size)
        self.bridge = bridge
        self.links = ChainLinkRegistry(graph)
        self._id_factory = id_factory
        self._usage_locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    def _validate_chain(self, chain) -> str:
        if not isinstance(chain, str) or not chain:
            raise ValidationError("Missing required field: chain", {"field": "chain"})
        chain = chain.lower()
        if chain not in self.settings.supported_chains:
            raise UnsupportedChainError(chain)
        return chain

    def register_agent(self, spec: Mapping) -> Agent:
        """
        Register a new agent.

        `spec` carries name and chain (required), plus optional capabilities,
        description, owner, metadata and trust_score. The ID is assigned here.
        """
        name = spec.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Missing required field: name", {"field": "name"})
        chain = self._validate_chain(spec.get("chain"))

        capabilities = spec.get("capabilities") or []
        if isinstance(capabilities, str) or not all(isinstance(c, str) for c in capabilities):
            raise ValidationError("capabilities must be a list of strings", {"field": "capabilities"})

        trust_score = spec.get("trust_score", self.settings.trust_neutral)
        value = require_unit_number("trust_score", trust_score)
        if not 0.0 <= value <= 1.0:
            raise InvalidRangeError("trust_score", trust_score)

        agent = Agent(
            id=self._id_factory(),
            name=name.strip(),
            chain=chain,
            capabilities=set(capabilities),
            trust_score=value,
            description=spec.get("description") or "",
            owner=spec.get("owner"),
            metadata=dict(spec.get("metadata") or {}),
        )
        self.graph.add_agent(agent)
        self.trust.track(agent.id)
        logger.info(f"Agent registered: {agent.id} ({agent.name}) on {agent.chain}")
        self.events.publish(EventType.AGENT_REGISTERED, {
            "agent_id": agent.id,
            "name": agent.name,
            "chain": agent.chain,
            "capabilities": sorted(agent.capabilities),
        })
        return agent

    def get_agent(self, agent_id: str) -> Agent:
        """The agent with idle trust decay applied up to now."""
        self.trust.decay(agent_id)
        return self.graph.get_agent(agent_id)

    def query_agents(
        self,
        capabilities: Optional[Iterable[str]] = None,
        min_trust_score: Optional[float] = None,
        chain: Optional[str] = None,
        status: Optional[AgentStatus] = None,
        owner: Optional[str] = None,
    ) -> list[Agent]:
        # min_trust_score must compare against decayed scores
        self.trust.decay_all()
        return self.graph.query_agents(capabilities, min_trust_score, chain, status, owner)

    async def run_trust_decay(self, interval: Optional[float] = None) -> None:
        """Background task: decay every idle agent's trust on a fixed interval."""
        interval = interval or self.settings.trust_decay_interval_seconds
        while True:
            await asyncio.sleep(interval)
            scores = self.trust.decay_all()
            logger.info(f"Periodic trust decay applied to {len(scores)} agents")

    def update_agent(self, agent_id: str, changes: Mapping) -> Agent:
        """
        Update an agent's descriptive fields (name, description, capabilities,
        owner, metadata). Chain and trust have their own operations.
        """
        allowed = {"name", "description", "capabilities", "owner", "metadata"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(
                f"Fields cannot be updated: {', '.join(sorted(unknown))}",
                {"fields": sorted(unknown)},
            )
        name = changes.get("name")
        if name is not None and (not isinstance(name, str) or not name.strip()):
            raise ValidationError("name must be a non-empty string", {"field": "name"})
        capabilities = changes.get("capabilities")
        if capabilities is not None and (
            isinstance(capabilities, str) or not all(isinstance(c, str) for c in capabilities)
        ):
            raise ValidationError("capabilities must be a list of strings", {"field": "capabilities"})
        metadata = changes.get("metadata")
        if metadata is not None and not isinstance(metadata, Mapping):
            raise ValidationError("metadata must be an object", {"field": "metadata"})

        agent = self.graph.update_agent(
            agent_id,
            name=name.strip() if name else None,
            description=changes.get("description"),
            capabilities=capabilities,
            owner=changes.get("owner"),
            metadata=metadata,
        )
        logger.info(f"Agent updated: {agent_id} ({', '.join(sorted(changes)) or 'no fields'})")
        self.events.publish(EventType.AGENT_UPDATED, {"agent_id": agent_id, "fields": sorted(changes)})
        return agent

    def remove_agent(self, agent_id: str) -> None:
        """Hard removal; refused while pathways or mirrors still reference the agent."""
        agent = self.graph.get_agent(agent_id)
        self.graph.remove_agent(agent_id)
        self.trust.forget(agent_id)
        self.links.unlink(agent)
        self.events.publish(EventType.AGENT_REMOVED, {"agent_id": agent_id, "chain": agent.chain})

    def update_agent_status(self, agent_id: str, status) -> Agent:
        try:
            status = AgentStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid agent status: {status}", {"field": "status"}) from None
        agent = self.graph.set_agent_status(agent_id, status)
        logger.info(f"Agent {agent_id} status -> {status.value}")
        return agent

    def add_capability(self, agent_id: str, capability: str) -> Agent:
        if not isinstance(capability, str) or not capability:
            raise ValidationError("capability must be a non-empty string", {"field": "capability"})
        return self.graph.add_capability(agent_id, capability)

    def remove_capability(self, agent_id: str, capability: str) -> Agent:
        return self.graph.remove_capability(agent_id, capability)

    def override_trust(self, agent_id: str, score) -> Agent:
        self.trust.override(agent_id, score)
        return self.graph.get_agent(agent_id)

    def find_connections(self, agent_id: str, max_depth: int = 1, min_strength: float = 0.0) -> Iterator[Connection]:
        return self.graph.find_connections(agent_id, max_depth, min_strength)

    # ------------------------------------------------------------------
    # Pathways
    # ------------------------------------------------------------------

    def _require_active(self, agent: Agent) -> None:
        if agent.status != AgentStatus.ACTIVE:
            raise AgentInactiveError(agent.id, agent.status.value)

    def establish_pathway(
        self,
        source_id: str,
        target_id: str,
        strength: float = 1.0,
        bidirectional: bool = False,
        metadata: Optional[dict] = None,
    ) -> Pathway:
        """Create a pathway between two active agents. No chain I/O happens here."""
        source = self.graph.get_agent(source_id)
        target = self.graph.get_agent(target_id)
        if source_id == target_id:
            raise SelfLoopError(source_id)
        self._require_active(source)
        self._require_active(target)

        metadata = dict(metadata or {})
        if source.chain != target.chain:
            metadata.update({
                "type": "cross-chain",
                "source_chain": source.chain,
                "target_chain": target.chain,
            })

        pathway = self.graph.add_pathway(source_id, target_id, strength, bidirectional, metadata)
        self.events.publish(EventType.PATHWAY_ESTABLISHED, {
            "pathway_id": pathway.id,
            "source_agent_id": source_id,
            "target_agent_id": target_id,
            "strength": pathway.strength,
            "bidirectional": pathway.bidirectional,
            "cross_chain": pathway.cross_chain,
        })
        return pathway

    def get_pathway(self, pathway_id: str) -> Pathway:
        return self.graph.get_pathway(pathway_id)

    def find_pathway(self, source_id: str, target_id: str) -> Optional[Pathway]:
        return self.graph.find_pathway(source_id, target_id)

    def query_pathways(self, **filters) -> list[Pathway]:
        return self.graph.query_pathways(**filters)

    def deactivate_pathway(self, pathway_id: str) -> Pathway:
        pathway = self.graph.set_pathway_status(pathway_id, PathwayStatus.INACTIVE)
        logger.info(f"Pathway {pathway_id} deactivated")
        return pathway

    async def record_usage(self, pathway_id: str, outcome=None) -> Pathway:
        """
        Count a use of the pathway, move its strength and both endpoints' trust.

        Tokenized pathways get a best-effort on-chain strength sync; its
        outcome never affects the returned pathway.
        """
        if outcome is not None:
            try:
                outcome = Outcome(outcome)
            except ValueError:
                raise ValidationError(f"Invalid outcome: {outcome}", {"field": "outcome"}) from None
        pathway = self.graph.get_pathway(pathway_id)

        lock = self._usage_locks.get(pathway_id)
        if lock is None:
            lock = self._usage_locks[pathway_id] = asyncio.Lock()
        async with lock:
            self.graph.record_usage(pathway_id, outcome)
            if outcome is not None:
                for agent_id in pathway.pair:
                    self.trust.on_pathway_outcome(agent_id, outcome)
            strength = pathway.strength
            usage_count = pathway.usage_count

        self.events.publish(EventType.PATHWAY_USAGE_RECORDED, {
            "pathway_id": pathway_id,
            "outcome": outcome.value if outcome else None,
            "strength": strength,
            "usage_count": usage_count,
        })
        if pathway.token is not None and self.bridge is not None:
            self.bridge.queue_strength_sync(pathway_id)
        return pathway

    async def update_strength(self, pathway_id: str, strength) -> Pathway:
        """Set a pathway's strength directly (clamped to [0, 1])."""
        pathway = self.graph.get_pathway(pathway_id)
        lock = self._usage_locks.get(pathway_id)
        if lock is None:
            lock = self._usage_locks[pathway_id] = asyncio.Lock()
        async with lock:
            previous = pathway.strength
            self.graph.update_strength(pathway_id, strength)
            value = pathway.strength

        logger.info(f"Pathway {pathway_id} strength set: {previous:.3f} -> {value:.3f}")
        self.events.publish(EventType.PATHWAY_STRENGTH_UPDATED, {
            "pathway_id": pathway_id,
            "previous": previous,
            "strength": value,
        })
        if pathway.token is not None and self.bridge is not None:
            self.bridge.queue_strength_sync(pathway_id)
        return pathway

    def pathway_for_token(self, token_id: str, chain: Optional[str] = None) -> Pathway:
        """The pathway bound to an on-chain token; token IDs are unique per chain only."""
        matches = [
            p for p in self.graph.query_pathways()
            if p.token is not None and p.token.token_id == token_id and (chain is None or p.token.chain == chain)
        ]
        if not matches:
            raise NotFoundError("Token", token_id)
        if len(matches) > 1:
            raise ValidationError(
                f"Token {token_id} exists on several chains, specify one",
                {"token_id": token_id, "chains": sorted(p.token.chain for p in matches)},
            )
        return matches[0]

    # ------------------------------------------------------------------
    # Cross-chain
    # ------------------------------------------------------------------

    def _require_bridge_enabled(self) -> None:
        if not self.settings.cross_chain_bridge_enabled:
            raise FeatureDisabledError("Cross-chain bridge")

    def bridge_agents(
        self,
        source_id: str,
        target_id: str,
        strength: float = 1.0,
        bidirectional: bool = True,
        metadata: Optional[dict] = None,
    ) -> Pathway:
        """Connect two agents that live on different chains."""
        self._require_bridge_enabled()
        source = self.graph.get_agent(source_id)
        target = self.graph.get_agent(target_id)
        if source.chain == target.chain:
            raise ValidationError(
                f"Agents must be on different chains (both on {source.chain})",
                {"source_chain": source.chain, "target_chain": target.chain},
            )
        return self.establish_pathway(source_id, target_id, strength, bidirectional, metadata)

    def deploy_to_chain(self, agent_id: str, target_chain: str) -> tuple[Agent, Pathway]:
        """
        Mirror an agent's identity onto another chain.

        Deploying a mirror deploys its canonical agent: every mirror points at
        the canonical agent, which has at most one mirror per chain and none on
        its own home chain. The mirror keeps the canonical agent's name,
        capabilities and trust score and is joined to it by a bidirectional
        cross-chain pathway at full strength.
        """
        self._require_bridge_enabled()
        self.graph.get_agent(agent_id)
        target_chain = self._validate_chain(target_chain)
        canonical_id = self.links.canonical_of(agent_id)
        canonical = self.graph.get_agent(canonical_id)
        if canonical.chain == target_chain:
            raise ConflictError(
                f"Agent {canonical_id} already lives on {target_chain}",
                {"id": canonical_id, "chain": target_chain},
            )
        existing = self.links.mirror_on(canonical_id, target_chain)
        if existing:
            raise ConflictError(
                f"Agent {canonical_id} is already deployed to {target_chain} as {existing}",
                {"id": canonical_id, "chain": target_chain, "mirror_id": existing},
            )
        self._require_active(canonical)

        mirror = Agent(
            id=self._id_factory(),
            name=canonical.name,
            chain=target_chain,
            capabilities=set(canonical.capabilities),
            trust_score=canonical.trust_score,
            description=canonical.description,
            owner=canonical.owner,
            source_chain=canonical.chain,
            source_agent_id=canonical_id,
            metadata=dict(canonical.metadata),
        )
        self.graph.add_agent(mirror)
        self.trust.track(mirror.id)
        self.links.link(canonical_id, mirror.id)
        pathway = self.establish_pathway(canonical_id, mirror.id, strength=1.0, bidirectional=True)

        logger.info(f"Agent {canonical_id} deployed to {target_chain} as {mirror.id} (requested via {agent_id})")
        self.events.publish(EventType.AGENT_MIRRORED, {
            "agent_id": mirror.id,
            "source_agent_id": canonical_id,
            "source_chain": canonical.chain,
            "chain": target_chain,
            "pathway_id": pathway.id,
        })
        return mirror, pathway

    def resolve_identity(self, agent_id: str, chain: str) -> Agent:
        return self.links.resolve(agent_id, self._validate_chain(chain))

    def reconcile_identities(self) -> list[dict]:
        return self.links.reconcile()

    async def chain_status(self) -> dict:
        """Per-chain connection summary plus agent counts."""
        status = {}
        for chain in self.settings.supported_chains:
            entry = {"agents": len(self.graph.query_agents(chain=chain))}
            adapter = self.bridge.adapters.get(chain) if self.bridge else None
            if adapter is None:
                entry.update({"connected": False, "status": "not_configured"})
            else:
                entry.update(await adapter.status())
            status[chain] = entry
        return status

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        data = self.graph.snapshot()
        data["trust_activity"] = {
            aid: self.trust.last_activity(aid)
            for aid in data["agents"]
            if self.trust.last_activity(aid) is not None
        }
        return data

    def restore(self, data: dict) -> None:
        self.graph.restore(data)
        activity = data.get("trust_activity", {})
        for agent in self.graph.agents():
            self.trust.track(agent.id, activity.get(agent.id))
        self.links.rebuild()
