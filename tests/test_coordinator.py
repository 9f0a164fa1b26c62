"""
Tests for the mesh coordinator: registration, pathways, usage and cross-chain mirrors.
"""
import asyncio
import dataclasses

import pytest

from mesh import (
    AgentInactiveError,
    AgentStatus,
    ConflictError,
    DuplicatePathwayError,
    EventType,
    FeatureDisabledError,
    InvalidRangeError,
    MeshCoordinator,
    NotFoundError,
    Outcome,
    PathwayGraph,
    SelfLoopError,
    UnknownAgentError,
    UnsupportedChainError,
    ValidationError,
)


class TestRegistration:
    def test_register_assigns_id_and_publishes(self, coordinator, events):
        agent = coordinator.register_agent({"name": "Atlas", "chain": "Ethereum", "capabilities": ["routing"]})

        assert agent.id.startswith("agent-")
        assert agent.chain == "ethereum"
        assert agent.trust_score == 0.5
        assert coordinator.get_agent(agent.id) is agent

        last = events.recent(1)[0]
        assert last.type == EventType.AGENT_REGISTERED
        assert last.payload["agent_id"] == agent.id

    @pytest.mark.parametrize("spec", [{"chain": "ethereum"}, {"name": "  ", "chain": "ethereum"}, {"name": "X"}])
    def test_missing_required_fields(self, coordinator, spec):
        with pytest.raises(ValidationError):
            coordinator.register_agent(spec)
        assert coordinator.graph.agent_count == 0

    def test_unsupported_chain(self, coordinator):
        with pytest.raises(UnsupportedChainError):
            coordinator.register_agent({"name": "X", "chain": "dogechain"})

    def test_capabilities_must_be_strings(self, coordinator):
        with pytest.raises(ValidationError):
            coordinator.register_agent({"name": "X", "chain": "bnb", "capabilities": "routing"})

    def test_initial_trust_out_of_range(self, coordinator):
        with pytest.raises(InvalidRangeError):
            coordinator.register_agent({"name": "X", "chain": "bnb", "trust_score": 2})

    def test_query_agents(self, coordinator, scenario):
        assert {a.name for a in coordinator.query_agents(chain="ethereum")} == {"A", "B"}
        assert [a.name for a in coordinator.query_agents(capabilities=["settlement"])] == ["C"]
        assert coordinator.query_agents(capabilities=["routing", "pricing"]) == []

    def test_status_and_capabilities(self, coordinator, scenario):
        a = scenario["a"]
        coordinator.add_capability(a.id, "auditing")
        coordinator.remove_capability(a.id, "routing")
        assert a.capabilities == {"auditing"}

        coordinator.update_agent_status(a.id, "learning")
        assert a.status == AgentStatus.LEARNING
        with pytest.raises(ValidationError):
            coordinator.update_agent_status(a.id, "asleep")


class TestPathways:
    def test_scenario(self, coordinator, scenario):
        a, b, c = scenario["a"], scenario["b"], scenario["c"]

        strong = list(coordinator.find_connections(a.id, 1, 0.8))
        assert [conn.agent.id for conn in strong] == [b.id]

        assert scenario["ac"].cross_chain
        assert scenario["ac"].metadata == {"type": "cross-chain", "source_chain": "ethereum", "target_chain": "solana"}
        assert not scenario["ab"].cross_chain

    @pytest.mark.asyncio
    async def test_three_failures(self, coordinator, scenario):
        ac = scenario["ac"]
        for _ in range(3):
            await coordinator.record_usage(ac.id, Outcome.FAILURE)
        assert ac.strength == pytest.approx(0.4)
        assert ac.usage_count == 3

    @pytest.mark.asyncio
    async def test_usage_adjusts_both_endpoints_trust(self, coordinator, scenario):
        a, b = scenario["a"], scenario["b"]
        await coordinator.record_usage(scenario["ab"].id, "success")
        assert a.trust_score == pytest.approx(0.51)
        assert b.trust_score == pytest.approx(0.51)
        assert scenario["c"].trust_score == 0.5

        event = coordinator.events.recent(1)[0]
        assert event.type == EventType.PATHWAY_USAGE_RECORDED
        assert event.payload["outcome"] == "success"

    @pytest.mark.asyncio
    async def test_usage_without_outcome_leaves_trust(self, coordinator, scenario):
        await coordinator.record_usage(scenario["ab"].id)
        assert scenario["a"].trust_score == 0.5
        assert scenario["ab"].usage_count == 1

    @pytest.mark.asyncio
    async def test_invalid_outcome(self, coordinator, scenario):
        with pytest.raises(ValidationError):
            await coordinator.record_usage(scenario["ab"].id, "meh")
        assert scenario["ab"].usage_count == 0

    def test_self_loop(self, coordinator, scenario):
        with pytest.raises(SelfLoopError):
            coordinator.establish_pathway(scenario["a"].id, scenario["a"].id)

    def test_unknown_endpoint(self, coordinator, scenario):
        with pytest.raises(UnknownAgentError):
            coordinator.establish_pathway(scenario["a"].id, "agent-missing")

    def test_inactive_endpoint(self, coordinator, scenario):
        coordinator.update_agent_status(scenario["b"].id, AgentStatus.INACTIVE)
        with pytest.raises(AgentInactiveError):
            coordinator.establish_pathway(scenario["c"].id, scenario["b"].id)
        with pytest.raises(ConflictError):
            coordinator.establish_pathway(scenario["b"].id, scenario["c"].id)

    def test_duplicate_pathway(self, coordinator, scenario):
        with pytest.raises(DuplicatePathwayError):
            coordinator.establish_pathway(scenario["a"].id, scenario["b"].id, strength=0.1)

    def test_deactivated_pathway_hidden_from_traversal(self, coordinator, scenario):
        coordinator.deactivate_pathway(scenario["ab"].id)
        ids = [conn.agent.id for conn in coordinator.find_connections(scenario["a"].id)]
        assert ids == [scenario["c"].id]

    def test_strength_out_of_range_is_clamped(self, coordinator, scenario):
        pathway = coordinator.establish_pathway(scenario["b"].id, scenario["c"].id, strength=3)
        assert pathway.strength == 1.0

    def test_strength_must_be_numeric(self, coordinator, scenario):
        with pytest.raises(InvalidRangeError):
            coordinator.establish_pathway(scenario["b"].id, scenario["c"].id, strength="strong")


class TestCrossChain:
    def test_bridge_requires_different_chains(self, coordinator, scenario):
        with pytest.raises(ValidationError):
            coordinator.bridge_agents(scenario["a"].id, scenario["b"].id)

        pathway = coordinator.bridge_agents(scenario["b"].id, scenario["c"].id, strength=0.6)
        assert pathway.bidirectional
        assert pathway.cross_chain
        assert coordinator.find_pathway(scenario["c"].id, scenario["b"].id) is pathway

    def test_deploy_creates_linked_mirror(self, coordinator, scenario, events):
        a = scenario["a"]
        mirror, pathway = coordinator.deploy_to_chain(a.id, "bnb")

        assert mirror.chain == "bnb"
        assert mirror.source_agent_id == a.id
        assert mirror.source_chain == "ethereum"
        assert mirror.capabilities == a.capabilities
        assert pathway.bidirectional and pathway.strength == 1.0 and pathway.cross_chain

        assert coordinator.resolve_identity(a.id, "bnb") is mirror
        assert coordinator.resolve_identity(mirror.id, "ethereum") is a
        assert coordinator.links.mirrors_of(mirror.id) == {"bnb": mirror.id}
        assert any(e.type == EventType.AGENT_MIRRORED for e in events.recent())

    def test_deploy_refuses_duplicates(self, coordinator, scenario):
        a = scenario["a"]
        mirror, _ = coordinator.deploy_to_chain(a.id, "bnb")
        with pytest.raises(ConflictError):
            coordinator.deploy_to_chain(a.id, "bnb")
        with pytest.raises(ConflictError):
            coordinator.deploy_to_chain(mirror.id, "bnb")
        with pytest.raises(ConflictError):
            coordinator.deploy_to_chain(a.id, "ethereum")

    def test_deploy_from_mirror_links_to_canonical(self, coordinator, scenario):
        a = scenario["a"]
        first, _ = coordinator.deploy_to_chain(a.id, "solana")
        second, pathway = coordinator.deploy_to_chain(first.id, "bnb")

        assert second.source_agent_id == a.id
        assert second.source_chain == "ethereum"
        assert pathway.pair == (a.id, second.id)
        assert coordinator.links.to_dict() == {a.id: {"solana": first.id, "bnb": second.id}}
        assert coordinator.resolve_identity(first.id, "bnb") is second
        assert coordinator.reconcile_identities() == []

        with pytest.raises(ConflictError):
            coordinator.deploy_to_chain(a.id, "bnb")

    def test_mirror_cannot_deploy_to_canonical_home_chain(self, coordinator, scenario):
        a = scenario["a"]
        mirror, _ = coordinator.deploy_to_chain(a.id, "solana")
        with pytest.raises(ConflictError):
            coordinator.deploy_to_chain(mirror.id, "ethereum")
        assert coordinator.links.mirrors_of(a.id) == {"solana": mirror.id}

    def test_resolve_identity_without_mirror(self, coordinator, scenario):
        with pytest.raises(NotFoundError):
            coordinator.resolve_identity(scenario["a"].id, "solana")

    def test_bridge_disabled(self, graph, trust, events, bridge, settings, scenario):
        disabled = MeshCoordinator(
            graph, trust, events, bridge, dataclasses.replace(settings, cross_chain_bridge_enabled=False)
        )
        with pytest.raises(FeatureDisabledError):
            disabled.deploy_to_chain(scenario["a"].id, "bnb")
        with pytest.raises(FeatureDisabledError):
            disabled.bridge_agents(scenario["b"].id, scenario["c"].id)

    def test_reconcile_reports_dangling_links(self, coordinator, scenario):
        mirror, pathway = coordinator.deploy_to_chain(scenario["a"].id, "bnb")
        assert coordinator.reconcile_identities() == []

        mirror.source_agent_id = scenario["b"].id
        dangling = coordinator.reconcile_identities()
        assert dangling == [{
            "canonical_id": scenario["a"].id,
            "chain": "bnb",
            "mirror_id": mirror.id,
            "reason": "mirror points at a different source",
        }]

    @pytest.mark.asyncio
    async def test_chain_status(self, coordinator, scenario, adapters):
        adapters["bnb"].online = False
        status = await coordinator.chain_status()
        assert status["ethereum"] == {"agents": 2, "connected": True, "network_id": "ethereum-local", "status": "online"}
        assert status["solana"]["agents"] == 1
        assert status["bnb"]["status"] == "offline"


def test_restore_rebuilds_links_and_trust_clock(coordinator, scenario, trust):
    mirror, _ = coordinator.deploy_to_chain(scenario["a"].id, "solana")
    data = coordinator.snapshot()

    restored = MeshCoordinator(PathwayGraph(coordinator.settings))
    restored.restore(data)

    assert restored.resolve_identity(scenario["a"].id, "solana").id == mirror.id
    assert restored.trust.last_activity(scenario["a"].id) == trust.last_activity(scenario["a"].id)
    assert restored.graph.find_pathway(mirror.id, scenario["a"].id) is not None


class TestTrustDecay:
    def test_idle_agent_reads_decayed(self, coordinator, clock, settings):
        agent = coordinator.register_agent({"name": "Idle", "chain": "ethereum", "trust_score": 0.95})
        clock.advance(20 * settings.trust_half_life_seconds)

        assert coordinator.get_agent(agent.id).trust_score == pytest.approx(0.5, abs=0.01)

    def test_decay_on_read_composes(self, coordinator, clock, settings):
        agent = coordinator.register_agent({"name": "Idle", "chain": "ethereum", "trust_score": 0.9})
        clock.advance(settings.trust_half_life_seconds / 2)
        coordinator.get_agent(agent.id)
        clock.advance(settings.trust_half_life_seconds / 2)

        assert coordinator.get_agent(agent.id).trust_score == pytest.approx(0.7)

    def test_min_trust_filter_sees_decayed_scores(self, coordinator, clock, settings):
        coordinator.register_agent({"name": "Once trusted", "chain": "bnb", "trust_score": 0.9})
        assert len(coordinator.query_agents(min_trust_score=0.8)) == 1

        clock.advance(settings.trust_half_life_seconds)
        assert coordinator.query_agents(min_trust_score=0.8) == []

    @pytest.mark.asyncio
    async def test_periodic_decay_task(self, coordinator, graph, clock, settings):
        agent = coordinator.register_agent({"name": "Idle", "chain": "solana", "trust_score": 0.1})
        clock.advance(settings.trust_half_life_seconds)

        task = asyncio.create_task(coordinator.run_trust_decay(interval=0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert graph.get_agent(agent.id).trust_score == pytest.approx(0.3)


class TestAgentMaintenance:
    def test_update_agent_fields(self, coordinator, scenario, events):
        a = scenario["a"]
        updated = coordinator.update_agent(a.id, {"name": " Atlas ", "capabilities": ["routing", "auditing"]})

        assert updated is a
        assert a.name == "Atlas"
        assert a.capabilities == {"routing", "auditing"}
        assert a.chain == "ethereum"
        assert events.recent(1)[0].payload == {"agent_id": a.id, "fields": ["capabilities", "name"]}

    @pytest.mark.parametrize(
        "changes",
        [{"chain": "bnb"}, {"trust_score": 0.9}, {"name": ""}, {"capabilities": "routing"}, {"metadata": [1]}],
    )
    def test_update_agent_rejects(self, coordinator, scenario, changes):
        with pytest.raises(ValidationError):
            coordinator.update_agent(scenario["a"].id, changes)

    def test_remove_agent_refused_while_connected(self, coordinator, scenario):
        with pytest.raises(ConflictError):
            coordinator.remove_agent(scenario["b"].id)

    def test_remove_unconnected_agent(self, coordinator, scenario, events):
        loner = coordinator.register_agent({"name": "Loner", "chain": "bnb"})
        coordinator.remove_agent(loner.id)

        with pytest.raises(UnknownAgentError):
            coordinator.get_agent(loner.id)
        assert coordinator.trust.last_activity(loner.id) is None
        assert events.recent(1)[0].type == EventType.AGENT_REMOVED

    def test_remove_unknown_agent(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.remove_agent("agent-missing")


class TestStrengthUpdates:
    @pytest.mark.asyncio
    async def test_set_strength_is_clamped_and_published(self, coordinator, scenario, events):
        ab = scenario["ab"]
        await coordinator.update_strength(ab.id, 1.7)

        assert ab.strength == 1.0
        event = events.recent(1)[0]
        assert event.type == EventType.PATHWAY_STRENGTH_UPDATED
        assert event.payload == {"pathway_id": ab.id, "previous": 0.9, "strength": 1.0}

    @pytest.mark.asyncio
    async def test_set_strength_rejects_non_numbers(self, coordinator, scenario):
        with pytest.raises(InvalidRangeError):
            await coordinator.update_strength(scenario["ab"].id, "strong")
        assert scenario["ab"].strength == 0.9

    @pytest.mark.asyncio
    async def test_set_strength_syncs_token(self, coordinator, bridge, scenario, adapters):
        ab = scenario["ab"]
        record = await bridge.generate_token(ab.id)

        await coordinator.update_strength(ab.id, 0.25)
        await bridge.drain()

        assert await adapters["ethereum"].read_strength(record.token_id) == pytest.approx(0.25)
        assert coordinator.pathway_for_token(record.token_id) is ab

    @pytest.mark.asyncio
    async def test_pathway_for_token_needs_chain_when_ambiguous(self, coordinator, bridge, scenario):
        c = scenario["c"]
        d = coordinator.register_agent({"name": "D", "chain": "solana"})
        cd = coordinator.establish_pathway(c.id, d.id, strength=0.5)
        await bridge.generate_token(scenario["ab"].id)
        await bridge.generate_token(cd.id)

        with pytest.raises(ValidationError):
            coordinator.pathway_for_token("1")
        assert coordinator.pathway_for_token("1", "solana") is cd
        with pytest.raises(NotFoundError):
            coordinator.pathway_for_token("99")
