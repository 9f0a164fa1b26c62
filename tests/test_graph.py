"""
Tests for the pathway graph: pair indexing, traversal and strength bounds.
"""
import threading
from collections.abc import Iterator

import pytest
from hypothesis import given, settings as hyp_settings
from hypothesis import strategies as st

from conftest import make_agent
from mesh import (
    ConflictError,
    DuplicateIDError,
    DuplicatePathwayError,
    InvalidRangeError,
    MeshSettings,
    Outcome,
    PathwayGraph,
    PathwayStatus,
    TokenHandle,
    UnknownAgentError,
    UnknownPathwayError,
)


def _graph_with(*agent_ids, settings=None) -> PathwayGraph:
    graph = PathwayGraph(settings or MeshSettings())
    for agent_id in agent_ids:
        graph.add_agent(make_agent(agent_id))
    return graph


class TestPairIndex:
    def test_bidirectional_pathway_is_one_object(self):
        graph = _graph_with("a", "b")
        pathway = graph.add_pathway("a", "b", strength=0.6, bidirectional=True)

        assert graph.find_pathway("a", "b") is pathway
        assert graph.find_pathway("b", "a") is pathway
        assert graph.pathway_count == 1

        graph.record_usage(pathway.id, Outcome.SUCCESS)
        assert graph.find_pathway("b", "a").strength == pytest.approx(0.65)

    def test_unidirectional_pathway_has_no_reverse(self):
        graph = _graph_with("a", "b")
        graph.add_pathway("a", "b")
        assert graph.find_pathway("b", "a") is None
        # the reverse pair is free for its own pathway
        graph.add_pathway("b", "a")
        assert graph.pathway_count == 2

    def test_duplicate_forward_pair_rejected(self):
        graph = _graph_with("a", "b")
        graph.add_pathway("a", "b")
        with pytest.raises(DuplicatePathwayError):
            graph.add_pathway("a", "b", strength=0.2)

    def test_reverse_of_bidirectional_rejected(self):
        graph = _graph_with("a", "b")
        graph.add_pathway("a", "b", bidirectional=True)
        with pytest.raises(DuplicatePathwayError):
            graph.add_pathway("b", "a")

    def test_bidirectional_over_existing_reverse_rejected(self):
        graph = _graph_with("a", "b")
        graph.add_pathway("b", "a")
        with pytest.raises(DuplicatePathwayError):
            graph.add_pathway("a", "b", bidirectional=True)
        assert graph.pathway_count == 1

    def test_unknown_endpoint_leaves_graph_untouched(self):
        graph = _graph_with("a")
        with pytest.raises(UnknownAgentError):
            graph.add_pathway("a", "ghost")
        assert graph.pathway_count == 0
        assert graph.pathways_of("a") == []

    def test_duplicate_agent_rejected(self):
        graph = _graph_with("a")
        with pytest.raises(DuplicateIDError):
            graph.add_agent(make_agent("a"))

    def test_mirror_requires_existing_source(self):
        graph = _graph_with("a")
        with pytest.raises(UnknownAgentError):
            graph.add_agent(make_agent("m", chain="bnb", source_chain="ethereum", source_agent_id="ghost"))

    def test_remove_agent_refused_while_referenced(self):
        graph = _graph_with("a", "b", "c")
        graph.add_pathway("a", "b")
        with pytest.raises(ConflictError):
            graph.remove_agent("a")
        graph.remove_agent("c")
        assert not graph.has_agent("c")

    def test_query_pathways_filters(self):
        graph = _graph_with("a", "b", "c")
        graph.add_pathway("a", "b", strength=0.9, bidirectional=True)
        graph.add_pathway("a", "c", strength=0.3, metadata={"type": "cross-chain"})

        assert [p.target_agent_id for p in graph.query_pathways(min_strength=0.5)] == ["b"]
        assert [p.target_agent_id for p in graph.query_pathways(cross_chain=True)] == ["c"]
        assert [p.target_agent_id for p in graph.query_pathways(bidirectional=True)] == ["b"]
        assert len(graph.query_pathways(source_agent_id="a")) == 2


class TestFindConnections:
    def test_returns_lazy_iterator(self):
        graph = _graph_with("a", "b")
        graph.add_pathway("a", "b")
        assert isinstance(graph.find_connections("a"), Iterator)

    def test_cycle_terminates_and_visits_each_agent_once(self):
        graph = _graph_with("a", "b", "c")
        graph.add_pathway("a", "b")
        graph.add_pathway("b", "c")
        graph.add_pathway("c", "a")

        found = list(graph.find_connections("a", max_depth=10))
        assert [(c.agent.id, c.depth) for c in found] == [("b", 1), ("c", 2)]

    def test_bidirectional_cycle_terminates(self):
        graph = _graph_with("a", "b", "c")
        graph.add_pathway("a", "b", bidirectional=True)
        graph.add_pathway("b", "c", bidirectional=True)
        graph.add_pathway("c", "a", bidirectional=True)

        ids = [c.agent.id for c in graph.find_connections("a", max_depth=5)]
        assert sorted(ids) == ["b", "c"]

    def test_neighbours_expanded_in_ascending_id_order(self):
        graph = _graph_with("hub", "zeta", "alpha", "mu")
        for target in ("zeta", "alpha", "mu"):
            graph.add_pathway("hub", target)
        assert [c.agent.id for c in graph.find_connections("hub")] == ["alpha", "mu", "zeta"]

    def test_min_strength_filters_pathways(self):
        graph = _graph_with("a", "b", "c", "d")
        graph.add_pathway("a", "b", strength=0.9)
        graph.add_pathway("a", "c", strength=0.7)
        graph.add_pathway("b", "d", strength=0.95)

        assert [c.agent.id for c in graph.find_connections("a", 1, 0.8)] == ["b"]
        assert [c.agent.id for c in graph.find_connections("a", 2, 0.8)] == ["b", "d"]

    def test_depth_bound(self):
        graph = _graph_with("a", "b", "c")
        graph.add_pathway("a", "b")
        graph.add_pathway("b", "c")
        assert [c.agent.id for c in graph.find_connections("a", max_depth=1)] == ["b"]
        assert list(graph.find_connections("a", max_depth=0)) == []

    def test_inactive_pathways_not_followed(self):
        graph = _graph_with("a", "b")
        pathway = graph.add_pathway("a", "b")
        graph.set_pathway_status(pathway.id, PathwayStatus.INACTIVE)
        assert list(graph.find_connections("a")) == []

    def test_reverse_direction_only_for_bidirectional(self):
        graph = _graph_with("a", "b", "c")
        graph.add_pathway("a", "b")
        graph.add_pathway("c", "b", bidirectional=True)
        assert [c.agent.id for c in graph.find_connections("b")] == ["c"]

    def test_unknown_start_agent(self):
        graph = _graph_with("a")
        with pytest.raises(UnknownAgentError):
            graph.find_connections("ghost")

    @pytest.mark.parametrize("depth", [-1, 1.5, True, "2"])
    def test_invalid_depth(self, depth):
        graph = _graph_with("a")
        with pytest.raises(InvalidRangeError):
            graph.find_connections("a", max_depth=depth)


class TestUsageAndStrength:
    def test_success_and_failure_deltas(self):
        graph = _graph_with("a", "b")
        pathway = graph.add_pathway("a", "b", strength=0.7)

        graph.record_usage(pathway.id, Outcome.FAILURE)
        assert pathway.strength == pytest.approx(0.6)
        graph.record_usage(pathway.id, Outcome.SUCCESS)
        assert pathway.strength == pytest.approx(0.65)
        assert pathway.usage_count == 2
        assert pathway.last_used is not None

    def test_usage_without_outcome_only_counts(self):
        graph = _graph_with("a", "b")
        pathway = graph.add_pathway("a", "b", strength=0.7)
        graph.record_usage(pathway.id)
        assert pathway.usage_count == 1
        assert pathway.strength == 0.7

    def test_strength_saturates(self):
        graph = _graph_with("a", "b")
        pathway = graph.add_pathway("a", "b", strength=0.98)
        graph.record_usage(pathway.id, Outcome.SUCCESS)
        assert pathway.strength == 1.0

        low = graph.add_pathway("b", "a", strength=0.05)
        graph.record_usage(low.id, Outcome.FAILURE)
        assert low.strength == 0.0

    def test_update_strength_clamps(self):
        graph = _graph_with("a", "b")
        pathway = graph.add_pathway("a", "b")
        assert graph.update_strength(pathway.id, 7).strength == 1.0
        assert graph.update_strength(pathway.id, -2).strength == 0.0

    @pytest.mark.parametrize("value", ["0.5", None, float("nan"), True])
    def test_update_strength_rejects_non_numbers(self, value):
        graph = _graph_with("a", "b")
        pathway = graph.add_pathway("a", "b", strength=0.4)
        with pytest.raises(InvalidRangeError):
            graph.update_strength(pathway.id, value)
        assert pathway.strength == 0.4

    def test_unknown_pathway(self):
        graph = _graph_with("a")
        with pytest.raises(UnknownPathwayError):
            graph.record_usage("pathway-missing", Outcome.SUCCESS)

    def test_concurrent_usage_is_linearized(self):
        graph = _graph_with("a", "b")
        pathway = graph.add_pathway("a", "b", strength=0.5)

        def worker():
            for _ in range(50):
                graph.record_usage(pathway.id, Outcome.SUCCESS)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert pathway.usage_count == 400
        assert pathway.strength == 1.0

    def test_token_set_once(self):
        graph = _graph_with("a", "b")
        pathway = graph.add_pathway("a", "b")
        graph.set_token(pathway.id, TokenHandle("ethereum", "1", "0xabc"))
        assert pathway.metadata["token_type"] == "NPT-V1"
        with pytest.raises(ConflictError):
            graph.set_token(pathway.id, TokenHandle("ethereum", "2"))
        assert pathway.token.token_id == "1"


@given(
    initial=st.floats(min_value=0.0, max_value=1.0),
    outcomes=st.lists(st.sampled_from([Outcome.SUCCESS, Outcome.FAILURE, None]), max_size=60),
)
@hyp_settings(max_examples=200, deadline=None)
def test_strength_stays_in_unit_interval(initial, outcomes):
    """
    Property: pathway strength stays in [0, 1]

    For any starting strength and any sequence of usage outcomes, the
    strength after every step is within [0, 1].
    """
    graph = _graph_with("a", "b")
    pathway = graph.add_pathway("a", "b", strength=initial)
    for outcome in outcomes:
        graph.record_usage(pathway.id, outcome)
        assert 0.0 <= pathway.strength <= 1.0
    assert pathway.usage_count == len(outcomes)


@given(initial=st.floats(min_value=0.0, max_value=1.0), n=st.integers(min_value=0, max_value=40))
@hyp_settings(max_examples=200, deadline=None)
def test_success_growth_is_bounded(initial, n):
    """
    Property: N successes never raise strength above min(1, s0 + N * 0.05)
    """
    graph = _graph_with("a", "b")
    pathway = graph.add_pathway("a", "b", strength=initial)
    for _ in range(n):
        graph.record_usage(pathway.id, Outcome.SUCCESS)
    assert pathway.strength <= min(1.0, initial + n * 0.05) + 1e-9


def test_snapshot_restore_rebuilds_indexes():
    graph = _graph_with("a", "b", "c")
    graph.add_agent(make_agent("m", chain="bnb", source_chain="ethereum", source_agent_id="a"))
    bidi = graph.add_pathway("a", "b", strength=0.8, bidirectional=True)
    graph.add_pathway("c", "a")
    graph.record_usage(bidi.id, Outcome.FAILURE)

    restored = PathwayGraph()
    restored.restore(graph.snapshot())

    assert restored.find_pathway("b", "a") is restored.find_pathway("a", "b")
    assert restored.find_pathway("b", "a").strength == pytest.approx(0.7)
    assert restored.find_pathway("a", "c") is None
    assert restored.get_agent("m").source_agent_id == "a"
    with pytest.raises(ConflictError):
        restored.restore(graph.snapshot())


def test_restore_rejects_bidirectional_over_existing_pair():
    one_way = _graph_with("a", "b")
    one_way.add_pathway("a", "b", pathway_id="p-one")
    both_ways = _graph_with("a", "b")
    both_ways.add_pathway("b", "a", bidirectional=True, pathway_id="p-two")

    data = one_way.snapshot()
    data["pathways"].update(both_ways.snapshot()["pathways"])
    assert list(data["pathways"]) == ["p-one", "p-two"]

    with pytest.raises(DuplicatePathwayError):
        PathwayGraph().restore(data)


def test_update_agent_keeps_chain_and_trust():
    graph = _graph_with("a")
    agent = graph.update_agent("a", name="Renamed", capabilities=["x"], metadata={"tier": 1})
    assert (agent.name, agent.capabilities, agent.metadata) == ("Renamed", {"x"}, {"tier": 1})
    assert agent.chain == "ethereum"
    assert agent.trust_score == 0.5
    with pytest.raises(UnknownAgentError):
        graph.update_agent("zz", name="Nobody")
