"""
Unit tests for the trust graph
"""

import math

import pytest

from trustnet.errors import (
    ConnectionNotFoundError,
    SourceNotFoundError,
    StorageError,
    UnknownEndpointError,
    WeightOutOfRangeError,
)
from trustnet.graph import TrustGraph, coerce_weight
from trustnet.models import SourceNode, TrustEdge
from trustnet.storage import InMemorySourceStore


def build(graph, weights, edges=()):
    for node_id, weight in weights.items():
        graph.add_node(node_id, {"name": node_id, "weight": weight})
    for source_id, target_id, weight in edges:
        graph.add_edge(source_id, target_id, weight)
    return graph


def test_add_node_is_idempotent(graph):
    graph.add_node(1, {"name": "A", "weight": 0.7})
    graph.add_node(1, {"name": "other", "weight": 0.1})

    assert graph.has_node(1)
    assert graph.node_count == 1
    assert graph.get_node(1)["name"] == "A"


@pytest.mark.parametrize("weight", [0.0, 0.37, 1.0])
def test_edge_is_reachable_with_its_weight(graph, weight):
    build(graph, {"a": 0.5, "b": 0.5}, [("a", "b", weight)])

    result = graph.bfs("a", 1)

    assert "b" in result.connections
    assert result.connections["b"].trust == pytest.approx(weight)
    assert result.connections["b"].depth == 1


def test_add_edge_rejects_unknown_endpoint(graph):
    build(graph, {"a": 0.5})
    with pytest.raises(UnknownEndpointError, match="unknown endpoint"):
        graph.add_edge("a", "missing", 0.5)
    with pytest.raises(UnknownEndpointError):
        graph.add_edge("missing", "a", 0.5)
    assert graph.edge_count == 0


@pytest.mark.parametrize("weight", [-0.01, 1.01, math.nan, "0.5", None])
def test_add_edge_rejects_weight_out_of_range(graph, weight):
    build(graph, {"a": 0.5, "b": 0.5})
    with pytest.raises(WeightOutOfRangeError, match="weight out of range"):
        graph.add_edge("a", "b", weight)
    assert graph.neighbors("a") == {}


def test_add_edge_leaves_nodes_untouched(graph):
    build(graph, {"a": 0.5, "b": 0.5}, [("a", "b", 0.4)])
    assert graph.has_node("a") and graph.has_node("b")
    assert graph.node_count == 2


def test_overwriting_edge_does_not_double_count(graph):
    build(graph, {"a": 0.5, "b": 0.5}, [("a", "b", 0.4)])
    graph.add_edge("a", "b", 0.9)
    graph.add_edge("a", "b", 0.8)

    assert graph.edge_count == 1
    assert graph.neighbors("a") == {"b": 0.8}


def test_remove_edge_only_decrements_when_present(graph):
    build(graph, {"a": 0.5, "b": 0.5}, [("a", "b", 0.4)])

    assert graph.remove_edge("a", "b") is True
    assert graph.remove_edge("a", "b") is False
    assert graph.remove_edge("unknown", "b") is False
    assert graph.edge_count == 0


def test_bfs_multiplies_trust_and_respects_max_depth(graph):
    build(
        graph,
        {"a": 0.5, "b": 0.5, "c": 0.5, "d": 0.5},
        [("a", "b", 0.5), ("b", "c", 0.5), ("c", "d", 0.5)],
    )

    result = graph.bfs("a", 2)

    assert [record.id for record in result.paths] == ["a", "b", "c"]
    assert result.connections["c"].trust == pytest.approx(0.25)
    assert result.paths[2].path == ["a", "b", "c"]
    assert result.max_depth == 2
    assert result.total_connections == 3
    assert "d" not in result.connections


def test_bfs_never_revisits_nodes_on_cycles(graph):
    build(
        graph,
        {"a": 0.5, "b": 0.5, "c": 0.5},
        [("a", "b", 0.9), ("b", "a", 0.9), ("b", "c", 0.9), ("c", "a", 0.9)],
    )

    result = graph.bfs("a", 10)
    ids = [record.id for record in result.paths]

    assert sorted(ids) == ["a", "b", "c"]
    assert len(ids) == len(set(ids))
    assert all(record.depth <= 10 for record in result.paths)


def test_bfs_first_visit_wins_over_stronger_path(graph):
    build(
        graph,
        {"a": 0.5, "b": 0.5, "c": 0.5},
        [("a", "b", 0.1), ("a", "c", 0.9), ("c", "b", 1.0)],
    )

    result = graph.bfs("a", 3)

    assert result.connections["b"].depth == 1
    assert result.connections["b"].trust == pytest.approx(0.1)


def test_bfs_zero_depth_returns_only_start(graph):
    build(graph, {"a": 0.5, "b": 0.5}, [("a", "b", 0.9)])

    result = graph.bfs("a", 0)

    assert list(result.connections) == ["a"]
    assert result.connections["a"].trust == 1.0
    assert result.max_depth == 0


def test_bfs_unknown_start_raises(graph):
    with pytest.raises(SourceNotFoundError, match="source not found"):
        graph.bfs("ghost", 2)


def test_trust_score_without_neighbors_is_own_weight(graph):
    build(graph, {"a": 0.8, "b": None, "c": "not-a-number"})

    assert graph.calculate_trust_score("a") == pytest.approx(0.8)
    assert graph.calculate_trust_score("b") == 0.5
    assert graph.calculate_trust_score("c") == 0.5


def test_trust_score_is_depth_weighted_mean(graph):
    build(graph, {"a": 0.8, "b": 0.3}, [("a", "b", 0.5)])

    # a: trust 1.0 at depth 0 (factor 1), b: trust 0.5 at depth 1 (factor 0.5), own weight 0.8 (factor 1)
    expected = (1.0 + 0.5 * 0.5 + 0.8) / (1 + 0.5 + 1)
    assert graph.calculate_trust_score("a", 3) == pytest.approx(expected)


def test_trust_score_never_raises(graph):
    build(graph, {"a": "garbage", "b": 0.5}, [("a", "b", 0.5)])
    graph.get_node("b")["weight"] = object()

    assert graph.calculate_trust_score("ghost") == 0.5
    score = graph.calculate_trust_score("a")
    assert 0.0 <= score <= 1.0


@pytest.mark.parametrize(
    "value, expected",
    [(0.3, 0.3), ("0.7", 0.7), (None, 0.5), ("abc", 0.5), (math.nan, 0.5), (math.inf, 0.5), (True, 0.5)],
)
def test_coerce_weight(value, expected):
    assert coerce_weight(value) == pytest.approx(expected)


def test_stats_on_empty_and_populated_graph(graph):
    empty = graph.get_stats()
    assert empty["node_count"] == 0
    assert empty["max_connections"] == 0
    assert empty["average_connections"] == 0.0

    build(graph, {"a": 0.5, "b": 0.5, "c": 0.5}, [("a", "b", 0.4), ("a", "c", 0.4), ("b", "c", 0.4)])
    stats = graph.get_stats()
    assert stats["node_count"] == 3
    assert stats["edge_count"] == 3
    assert stats["average_connections"] == pytest.approx(1.0)
    assert stats["max_connections"] == 2
    assert stats["nodes"] == ["a", "b", "c"]


def test_to_json_coerces_malformed_weights(graph):
    build(graph, {"a": "oops", "b": 0.9}, [("a", "b", 0.4)])
    graph._index.adjacency["a"]["b"] = "corrupt"

    exported = graph.to_json()

    weights = {node["id"]: node["weight"] for node in exported["nodes"]}
    assert weights == {"a": 0.5, "b": 0.9}
    assert exported["edges"] == [{"source": "a", "target": "b", "weight": 0.5}]
    assert exported["stats"]["edge_count"] == 1


def test_replace_edges_swaps_whole_edge_set(graph):
    build(graph, {1: 0.5, 2: 0.5, 3: 0.5}, [(1, 2, 0.4), (2, 3, 0.4)])
    graph.replace_edges([TrustEdge(source_id=3, target_id=1, weight=0.6)])

    assert graph.edge_count == 1
    assert graph.neighbors(1) == {}
    assert graph.neighbors(3) == {1: 0.6}
    assert graph.node_count == 3


def test_top_sources_ranks_by_weight_then_incoming(graph):
    build(graph, {"a": 0.9, "b": 0.9, "c": 0.2}, [("c", "b", 0.8), ("a", "b", 0.6), ("b", "a", 0.1)])

    ranking = graph.top_sources(2)

    assert [item["id"] for item in ranking] == ["b", "a"]
    assert ranking[0]["connection_count"] == 2
    assert ranking[0]["avg_connection_weight"] == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_initialize_loads_nodes_and_edges(store, graph, seed):
    a = await seed("A", site="a.com", weight=0.9)
    b = await seed("B", site="b.com", weight=0.4)
    await store.insert_edge(a, b, 0.7)

    await graph.initialize()

    assert graph.node_count == 2
    assert graph.edge_count == 1
    assert graph.get_node(a)["site"] == "a.com"
    assert graph.bfs(a, 1).connections[b].trust == pytest.approx(0.7)


class FlakyStore(InMemorySourceStore):
    def __init__(self):
        super().__init__()
        self.fail_loads = False
        self.fail_updates = False

    async def load_all_edges(self):
        if self.fail_loads:
            raise StorageError("database offline")
        return await super().load_all_edges()

    async def update_edge_weight(self, source_id, target_id, weight):
        if self.fail_updates:
            raise StorageError("write rejected")
        return await super().update_edge_weight(source_id, target_id, weight)


@pytest.mark.asyncio
async def test_failed_reload_keeps_previous_index():
    store = FlakyStore()
    graph = TrustGraph(store)
    a = await store.upsert_node(SourceNode(name="A", site="a.com"))
    b = await store.upsert_node(SourceNode(name="B", site="b.com"))
    await store.insert_edge(a, b, 0.5)
    await graph.initialize()

    await store.upsert_node(SourceNode(name="C", site="c.com"))
    store.fail_loads = True
    with pytest.raises(StorageError):
        await graph.initialize()

    assert graph.node_count == 2
    assert graph.neighbors(a) == {b: 0.5}


@pytest.mark.asyncio
async def test_update_connection_weight_writes_storage_then_memory():
    store = FlakyStore()
    graph = TrustGraph(store)
    a = await store.upsert_node(SourceNode(name="A", site="a.com"))
    b = await store.upsert_node(SourceNode(name="B", site="b.com"))
    await store.insert_edge(a, b, 0.5)
    await graph.initialize()

    await graph.update_connection_weight(a, b, 0.8)
    assert graph.neighbors(a) == {b: 0.8}
    assert (await store.load_all_edges())[0].weight == 0.8

    store.fail_updates = True
    with pytest.raises(StorageError):
        await graph.update_connection_weight(a, b, 0.1)
    assert graph.neighbors(a) == {b: 0.8}


@pytest.mark.asyncio
async def test_update_connection_weight_requires_stored_edge(store, graph, seed):
    a = await seed("A", site="a.com")
    b = await seed("B", site="b.com")
    await graph.initialize()

    with pytest.raises(ConnectionNotFoundError, match="connection not found"):
        await graph.update_connection_weight(a, b, 0.8)

    assert graph.neighbors(a) == {}
    assert graph.edge_count == 0
    assert await store.load_all_edges() == []


@pytest.mark.asyncio
async def test_update_connection_weight_rejects_out_of_range(graph):
    with pytest.raises(WeightOutOfRangeError):
        await graph.update_connection_weight(1, 2, 1.5)


@pytest.mark.asyncio
async def test_add_source_and_connection_persist(store, graph):
    first = await graph.add_source(SourceNode(name="Reuters", site="reuters.com", weight=0.9))
    second = await graph.add_source(SourceNode(name="G1", site="globo.com", weight=0.8))

    edge = await graph.add_connection(first.id, second.id, 0.6)

    assert edge.weight == 0.6
    assert graph.neighbors(first.id) == {second.id: 0.6}
    assert [(e.source_id, e.target_id) for e in await store.load_all_edges()] == [(first.id, second.id)]

    with pytest.raises(UnknownEndpointError):
        await graph.add_connection(first.id, 999, 0.5)

    assert await graph.remove_connection(first.id, second.id) is True
    assert graph.edge_count == 0
    assert await store.load_all_edges() == []
