"""
Cross-chain identity links.

An agent deployed to another chain is represented by a mirror agent whose
source_agent_id points back at the canonical one. The registry keeps
canonical -> {chain: mirror ID} so either identity resolves to the agent
that lives on a given chain.
"""
import logging
import threading
from typing import Optional

from .errors import ConflictError, NotFoundError
from .graph import PathwayGraph
from .models import Agent

logger = logging.getLogger(__name__)


class ChainLinkRegistry:
    def __init__(self, graph: PathwayGraph):
        self.graph = graph
        self._links: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()

    def canonical_of(self, agent_id: str) -> str:
        agent = self.graph.get_agent(agent_id)
        return agent.source_agent_id or agent.id

    def link(self, canonical_id: str, mirror_id: str) -> None:
        mirror = self.graph.get_agent(mirror_id)
        self.graph.get_agent(canonical_id)
        with self._lock:
            chains = self._links.setdefault(canonical_id, {})
            existing = chains.get(mirror.chain)
            if existing and existing != mirror_id:
                raise ConflictError(
                    f"Agent {canonical_id} is already mirrored on {mirror.chain} as {existing}",
                    {"id": canonical_id, "chain": mirror.chain, "mirror_id": existing},
                )
            chains[mirror.chain] = mirror_id
        logger.info(f"Chain link: {canonical_id} -> {mirror_id} ({mirror.chain})")

    def unlink(self, mirror: Agent) -> None:
        if mirror.source_agent_id is None:
            return
        with self._lock:
            chains = self._links.get(mirror.source_agent_id, {})
            if chains.get(mirror.chain) == mirror.id:
                del chains[mirror.chain]
                if not chains:
                    del self._links[mirror.source_agent_id]
        logger.info(f"Chain link removed: {mirror.source_agent_id} -/-> {mirror.id} ({mirror.chain})")

    def mirror_on(self, canonical_id: str, chain: str) -> Optional[str]:
        return self._links.get(canonical_id, {}).get(chain)

    def mirrors_of(self, agent_id: str) -> dict[str, str]:
        """chain -> mirror ID for the canonical identity behind agent_id"""
        return dict(self._links.get(self.canonical_of(agent_id), {}))

    def resolve(self, agent_id: str, chain: str) -> Agent:
        """The agent representing agent_id's identity on `chain`."""
        agent = self.graph.get_agent(agent_id)
        if agent.chain == chain:
            return agent
        canonical = self.graph.get_agent(self.canonical_of(agent_id))
        if canonical.chain == chain:
            return canonical
        mirror_id = self.mirror_on(canonical.id, chain)
        if mirror_id is None:
            raise NotFoundError(
                "Agent", agent_id, f"Agent {agent_id} has no identity on {chain}"
            )
        return self.graph.get_agent(mirror_id)

    def rebuild(self) -> int:
        """Re-derive links from mirror agents, e.g. after a snapshot restore."""
        with self._lock:
            self._links.clear()
            for agent in self.graph.agents():
                if agent.source_agent_id:
                    self._links.setdefault(agent.source_agent_id, {})[agent.chain] = agent.id
            count = sum(len(chains) for chains in self._links.values())
        logger.info(f"Chain links rebuilt: {count}")
        return count

    def reconcile(self) -> list[dict]:
        """Links whose mirror is missing or no longer points at its canonical agent."""
        with self._lock:
            links = [(c, chain, m) for c, chains in self._links.items() for chain, m in chains.items()]
        dangling = []
        for canonical_id, chain, mirror_id in sorted(links):
            reason = None
            if not self.graph.has_agent(canonical_id):
                reason = "canonical agent missing"
            elif not self.graph.has_agent(mirror_id):
                reason = "mirror agent missing"
            else:
                mirror = self.graph.get_agent(mirror_id)
                if mirror.source_agent_id != canonical_id:
                    reason = "mirror points at a different source"
                elif mirror.chain != chain:
                    reason = f"mirror lives on {mirror.chain}"
            if reason:
                dangling.append({
                    "canonical_id": canonical_id,
                    "chain": chain,
                    "mirror_id": mirror_id,
                    "reason": reason,
                })
        if dangling:
            logger.warning(f"{len(dangling)} dangling chain link(s)")
        return dangling

    def to_dict(self) -> dict:
        with self._lock:
            return {c: dict(chains) for c, chains in self._links.items()}
