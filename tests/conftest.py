"""Shared fixtures: a small mesh wired to in-process ledgers."""
import pytest

from chain_client import LocalLedgerAdapter
from mesh import (
    Agent,
    EventChannel,
    MeshCoordinator,
    MeshSettings,
    PathwayGraph,
    TokenizationBridge,
    TrustEngine,
)

CHAINS = ("ethereum", "bnb", "solana")


class FakeClock:
    """Manually advanced time.time() replacement."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_agent(agent_id: str, chain: str = "ethereum", **kwargs) -> Agent:
    return Agent(id=agent_id, name=agent_id.upper(), chain=chain, **kwargs)


@pytest.fixture
def settings() -> MeshSettings:
    return MeshSettings(confirm_deadline_seconds=2.0, confirm_poll_interval=0.01, confirm_max_poll_interval=0.05)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def graph(settings) -> PathwayGraph:
    return PathwayGraph(settings)


@pytest.fixture
def trust(graph, settings, clock) -> TrustEngine:
    return TrustEngine(graph, settings, clock=clock)


@pytest.fixture
def events(settings) -> EventChannel:
    return EventChannel(settings.event_history_size, settings.subscriber_queue_size)


@pytest.fixture
def adapters() -> dict[str, LocalLedgerAdapter]:
    return {chain: LocalLedgerAdapter(chain) for chain in CHAINS}


@pytest.fixture
def bridge(graph, adapters, events, settings) -> TokenizationBridge:
    return TokenizationBridge(graph, adapters, events, settings, "https://meta.test/pathway")


@pytest.fixture
def coordinator(graph, trust, events, bridge, settings) -> MeshCoordinator:
    return MeshCoordinator(graph, trust, events, bridge, settings)


@pytest.fixture
def scenario(coordinator):
    """A(ethereum), B(ethereum), C(solana) with A->B 0.9 and A->C 0.7."""
    a = coordinator.register_agent({"name": "A", "chain": "ethereum", "capabilities": ["routing"]})
    b = coordinator.register_agent({"name": "B", "chain": "ethereum", "capabilities": ["pricing"]})
    c = coordinator.register_agent({"name": "C", "chain": "solana", "capabilities": ["settlement"]})
    ab = coordinator.establish_pathway(a.id, b.id, strength=0.9)
    ac = coordinator.establish_pathway(a.id, c.id, strength=0.7)
    return {"a": a, "b": b, "c": c, "ab": ab, "ac": ac}
