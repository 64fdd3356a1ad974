"""
Weighted directed trust graph over information sources.

Nodes are sources (id -> attribute dict), edges are directed trust relations
with a weight in [0, 1]. The node table, adjacency table and counters live in
one ``_GraphIndex`` that is replaced wholesale on reload, so readers always
see either the previous or the next complete index.

Trust propagates multiplicatively along BFS paths: the start node has trust
1.0 and every hop multiplies by the traversed edge weight. Each node is
visited once (first dequeue wins), so the reported trust for a node comes
from its earliest-enqueued path, not necessarily the strongest one.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable

from .errors import (
    ConnectionNotFoundError,
    SourceNotFoundError,
    StorageError,
    UnknownEndpointError,
    WeightOutOfRangeError,
)
from .models import DEFAULT_WEIGHT, SourceNode, TrustEdge, clamp, coerce_weight, stored_weight
from .storage import SourceStore

logger = logging.getLogger(__name__)


def _validate_weight(weight: Any) -> float:
    if isinstance(weight, bool) or not isinstance(weight, (int, float)):
        raise WeightOutOfRangeError(weight)
    if math.isnan(weight) or weight < 0 or weight > 1:
        raise WeightOutOfRangeError(weight)
    return float(weight)


@dataclass
class _GraphIndex:
    nodes: dict[Any, dict[str, Any]] = field(default_factory=dict)
    adjacency: dict[Any, dict[Any, float]] = field(default_factory=dict)
    node_count: int = 0
    edge_count: int = 0

    def add_node(self, node_id: Any, attrs: dict[str, Any]) -> bool:
        if node_id in self.nodes:
            return False
        self.nodes[node_id] = attrs
        self.adjacency[node_id] = {}
        self.node_count += 1
        return True

    def add_edge(self, source_id: Any, target_id: Any, weight: Any) -> None:
        if source_id not in self.nodes or target_id not in self.nodes:
            raise UnknownEndpointError(source_id, target_id)
        value = _validate_weight(weight)
        neighbors = self.adjacency[source_id]
        if target_id not in neighbors:
            self.edge_count += 1
        neighbors[target_id] = value


@dataclass
class VisitRecord:
    id: Any
    depth: int
    path: list[Any]
    trust: float
    node: dict[str, Any] | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "depth": self.depth,
            "path": list(self.path),
            "trust": self.trust,
            "node": self.node,
        }


@dataclass
class ReachableNode:
    node: dict[str, Any] | None
    trust: float
    depth: int

    def as_dict(self) -> dict[str, Any]:
        return {"node": self.node, "trust": self.trust, "depth": self.depth}


@dataclass
class BfsResult:
    paths: list[VisitRecord]
    connections: dict[Any, ReachableNode]
    total_connections: int
    max_depth: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "paths": [record.as_dict() for record in self.paths],
            "connections": [reachable.as_dict() for reachable in self.connections.values()],
            "total_connections": self.total_connections,
            "max_depth": self.max_depth,
        }


class TrustGraph:
    """In-memory trust graph backed by a ``SourceStore``."""

    def __init__(self, store: SourceStore) -> None:
        self._store = store
        self._index = _GraphIndex()
        self._write_lock = asyncio.Lock()

    # -- loading ---------------------------------------------------------

    async def initialize(self) -> None:
        """Rebuild the whole index from storage and publish it once complete.

        Storage errors propagate; the previously published index stays in
        place when anything goes wrong.
        """
        async with self._write_lock:
            nodes = await self._store.load_all_nodes()
            edges = await self._store.load_all_edges()
            index = _GraphIndex()
            for node in nodes:
                index.add_node(node.id, node.as_attrs())
            for edge in edges:
                index.add_edge(edge.source_id, edge.target_id, stored_weight(edge.weight))
            self._index = index
        logger.info(f"Graph initialized with {index.node_count} nodes and {index.edge_count} edges")

    # -- nodes -----------------------------------------------------------

    def add_node(self, node_id: Any, attrs: dict[str, Any]) -> None:
        self._index.add_node(node_id, dict(attrs))

    def has_node(self, node_id: Any) -> bool:
        return node_id in self._index.nodes

    def get_node(self, node_id: Any) -> dict[str, Any] | None:
        return self._index.nodes.get(node_id)

    def set_node_attrs(self, node_id: Any, **attrs: Any) -> None:
        node = self._index.nodes.get(node_id)
        if node is None:
            raise SourceNotFoundError(node_id)
        node.update(attrs)

    def neighbors(self, node_id: Any) -> dict[Any, float]:
        return dict(self._index.adjacency.get(node_id, {}))

    @property
    def node_count(self) -> int:
        return self._index.node_count

    @property
    def edge_count(self) -> int:
        return self._index.edge_count

    # -- edges -----------------------------------------------------------

    def add_edge(self, source_id: Any, target_id: Any, weight: float) -> None:
        self._index.add_edge(source_id, target_id, weight)

    def remove_edge(self, source_id: Any, target_id: Any) -> bool:
        neighbors = self._index.adjacency.get(source_id)
        if neighbors is None or target_id not in neighbors:
            return False
        del neighbors[target_id]
        self._index.edge_count -= 1
        return True

    def replace_edges(self, edges: Iterable[TrustEdge]) -> None:
        """Swap in a new edge set for the current nodes."""
        current = self._index
        index = _GraphIndex()
        for node_id, attrs in current.nodes.items():
            index.add_node(node_id, attrs)
        for edge in edges:
            index.add_edge(edge.source_id, edge.target_id, edge.weight)
        self._index = index

    # -- traversal -------------------------------------------------------

    def bfs(self, start_id: Any, max_depth: int = 3) -> BfsResult:
        index = self._index
        if start_id not in index.nodes:
            raise SourceNotFoundError(start_id)

        visited: set[Any] = set()
        queue: deque[tuple[Any, int, list[Any], float]] = deque([(start_id, 0, [start_id], 1.0)])
        paths: list[VisitRecord] = []
        connections: dict[Any, ReachableNode] = {}

        while queue:
            node_id, depth, path, trust = queue.popleft()
            if node_id in visited or depth > max_depth:
                continue
            visited.add(node_id)

            node = index.nodes.get(node_id)
            paths.append(VisitRecord(id=node_id, depth=depth, path=list(path), trust=trust, node=node))
            connections[node_id] = ReachableNode(node=node, trust=trust, depth=depth)

            if depth < max_depth:
                for neighbor_id, weight in index.adjacency.get(node_id, {}).items():
                    if neighbor_id not in visited:
                        queue.append((neighbor_id, depth + 1, [*path, neighbor_id], trust * weight))

        return BfsResult(
            paths=paths,
            connections=connections,
            total_connections=len(connections),
            max_depth=max((record.depth for record in paths), default=0),
        )

    def calculate_trust_score(self, source_id: Any, max_depth: int = 3) -> float:
        """Depth-weighted mean of propagated trust, blended with the source's own weight.

        Every reachable node (the source itself included, at depth 0) counts
        with weight ``1 / (depth + 1)``; the source's stored weight counts with
        weight 1. Falls back to the stored weight when nothing else is
        reachable and to 0.5 on any failure.
        """
        try:
            result = self.bfs(source_id, max_depth)
            node = self._index.nodes.get(source_id) or {}
            own_weight = coerce_weight(node.get("weight"))

            if result.total_connections <= 1:
                return clamp(own_weight)

            total_weight = 0.0
            weighted_sum = 0.0
            for reachable in result.connections.values():
                factor = 1 / (reachable.depth + 1)
                total_weight += factor
                weighted_sum += coerce_weight(reachable.trust) * factor

            total_weight += 1
            weighted_sum += own_weight

            score = coerce_weight(weighted_sum / total_weight) if total_weight > 0 else DEFAULT_WEIGHT
            final = clamp(score)
            logger.debug(f"Trust score for source {source_id}: {final:.4f}")
            return final
        except Exception as exc:
            logger.error(f"Failed to compute trust score for source {source_id}: {exc}")
            return DEFAULT_WEIGHT

    # -- persisted mutations ---------------------------------------------

    async def update_connection_weight(self, source_id: Any, target_id: Any, new_weight: float) -> None:
        value = _validate_weight(new_weight)
        async with self._write_lock:
            updated = await self._store.update_edge_weight(source_id, target_id, value)
            if not updated:
                logger.warning(f"Connection {source_id} -> {target_id} not found in storage")
                raise ConnectionNotFoundError(source_id, target_id)
            if self.has_node(source_id) and self.has_node(target_id):
                self._index.add_edge(source_id, target_id, value)
        logger.info(f"Connection {source_id} -> {target_id} weight updated to {value}")

    async def add_source(self, node: SourceNode) -> SourceNode:
        async with self._write_lock:
            source_id = await self._store.upsert_node(node)
            stored = await self._store.get_node(source_id)
            if stored is None:
                raise StorageError(f"source {source_id} vanished after upsert")
            if self.has_node(source_id):
                self.set_node_attrs(source_id, **stored.as_attrs())
            else:
                self.add_node(source_id, stored.as_attrs())
        logger.info(f'Source "{stored.name}" stored with id {source_id}')
        return stored

    async def add_connection(self, source_id: Any, target_id: Any, weight: float) -> TrustEdge:
        if not self.has_node(source_id) or not self.has_node(target_id):
            raise UnknownEndpointError(source_id, target_id)
        value = _validate_weight(weight)
        async with self._write_lock:
            await self._store.insert_edge(source_id, target_id, value)
            self.add_edge(source_id, target_id, value)
        logger.info(f"Connection {source_id} -> {target_id} added with weight {value}")
        return TrustEdge(source_id=source_id, target_id=target_id, weight=value)

    async def remove_connection(self, source_id: Any, target_id: Any) -> bool:
        async with self._write_lock:
            removed = await self._store.delete_edge(source_id, target_id)
            self.remove_edge(source_id, target_id)
        return removed

    # -- reporting -------------------------------------------------------

    def top_sources(self, limit: int = 10) -> list[dict[str, Any]]:
        index = self._index
        incoming: dict[Any, list[float]] = {node_id: [] for node_id in index.nodes}
        for neighbors in index.adjacency.values():
            for target_id, weight in neighbors.items():
                if target_id in incoming:
                    incoming[target_id].append(coerce_weight(weight))

        ranking = []
        for node_id, attrs in index.nodes.items():
            weights = incoming[node_id]
            own = coerce_weight(attrs.get("weight"))
            ranking.append(
                {
                    "id": node_id,
                    "name": attrs.get("name"),
                    "site": attrs.get("site"),
                    "weight": own,
                    "connection_count": len(weights),
                    "avg_connection_weight": sum(weights) / len(weights) if weights else 0.0,
                }
            )
        ranking.sort(key=lambda item: (item["weight"], item["avg_connection_weight"]), reverse=True)
        return ranking[:limit]

    def get_stats(self) -> dict[str, Any]:
        index = self._index
        return {
            "node_count": index.node_count,
            "edge_count": index.edge_count,
            "average_connections": index.edge_count / index.node_count if index.node_count else 0.0,
            "max_connections": max((len(adj) for adj in index.adjacency.values()), default=0),
            "nodes": list(index.nodes.keys()),
        }

    def to_json(self) -> dict[str, Any]:
        index = self._index
        nodes = []
        for node_id, attrs in index.nodes.items():
            attrs = attrs if isinstance(attrs, dict) else {}
            nodes.append(
                {
                    "id": node_id,
                    "name": attrs.get("name"),
                    "site": attrs.get("site"),
                    "category": attrs.get("category"),
                    "weight": coerce_weight(attrs.get("weight")),
                }
            )

        edges = []
        for source_id, neighbors in index.adjacency.items():
            for target_id, weight in neighbors.items():
                edges.append(
                    {"source": source_id, "target": target_id, "weight": coerce_weight(weight)}
                )

        logger.debug(f"Exporting graph: {len(nodes)} nodes, {len(edges)} edges")
        return {"nodes": nodes, "edges": edges, "stats": self.get_stats()}
