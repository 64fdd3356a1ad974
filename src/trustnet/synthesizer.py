"""
Connection synthesis: regenerate every trust edge from source similarity.

Only sources with at least one analyzed content item take part. Each pair gets
a composite similarity built from credibility, content volume and category;
pairs above the threshold become an edge in both directions. The previous
edge set is discarded on every successful run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import combinations

from .config import Settings, get_settings
from .graph import TrustGraph, coerce_weight
from .models import SourceNode, TrustEdge
from .storage import SourceStore

logger = logging.getLogger(__name__)

GENERIC_CATEGORIES = frozenset({"", "general", "unknown"})


@dataclass
class SimilarityWeights:
    credibility: float = 0.4
    volume: float = 0.3
    category: float = 0.3

    @classmethod
    def from_settings(cls, settings: Settings) -> "SimilarityWeights":
        return cls(
            credibility=settings.credibility_weight,
            volume=settings.volume_weight,
            category=settings.category_weight,
        )


@dataclass
class EligibleSource:
    node: SourceNode
    item_count: int


@dataclass
class SynthesisReport:
    eligible: int
    created: int = 0
    edges: list[TrustEdge] = field(default_factory=list)


class ConnectionSynthesizer:
    def __init__(self, store: SourceStore, graph: TrustGraph, settings: Settings | None = None) -> None:
        self._store = store
        self._graph = graph
        self._settings = settings or get_settings()
        self.weights = SimilarityWeights.from_settings(self._settings)
        self.threshold = self._settings.synthesis_threshold
        self.is_updating = False

    async def update_connections(self) -> SynthesisReport | None:
        """Rebuild all edges. Returns ``None`` when another run is already active."""
        if self.is_updating:
            logger.info("Connection update already in progress, skipping")
            return None

        self.is_updating = True
        try:
            eligible = await self._eligible_sources()
            if len(eligible) < 2:
                logger.warning(f"Only {len(eligible)} source(s) with analyzed content; connections left as they are")
                return SynthesisReport(eligible=len(eligible))

            edges = self.build_edges(eligible)
            await self._store.replace_all_edges(edges)

            for source in eligible:
                self._graph.add_node(source.node.id, source.node.as_attrs())
            self._graph.replace_edges(edges)

            logger.info(f"{len(edges)} connections synthesized from {len(eligible)} sources")
            return SynthesisReport(eligible=len(eligible), created=len(edges), edges=edges)
        finally:
            self.is_updating = False

    async def _eligible_sources(self) -> list[EligibleSource]:
        eligible = []
        for node in await self._store.load_all_nodes():
            count = await self._store.count_items_for_node(node.id)
            if count > 0:
                eligible.append(EligibleSource(node=node, item_count=count))
        eligible.sort(key=lambda source: source.item_count, reverse=True)
        return eligible

    def build_edges(self, sources: list[EligibleSource]) -> list[TrustEdge]:
        edges: list[TrustEdge] = []
        for first, second in combinations(sources, 2):
            weight = self.connection_weight(first, second)
            if weight > self.threshold:
                rounded = round(min(1.0, weight), 2)
                edges.append(TrustEdge(source_id=first.node.id, target_id=second.node.id, weight=rounded))
                edges.append(TrustEdge(source_id=second.node.id, target_id=first.node.id, weight=rounded))
        return edges

    def connection_weight(self, first: EligibleSource, second: EligibleSource) -> float:
        credibility = 1 - abs(coerce_weight(first.node.weight) - coerce_weight(second.node.weight))
        volume = min(first.item_count, second.item_count) / max(first.item_count, second.item_count)
        category = self.category_similarity(first.node, second.node)
        return (
            credibility * self.weights.credibility
            + volume * self.weights.volume
            + category * self.weights.category
        )

    def category_similarity(self, first: SourceNode, second: SourceNode) -> float:
        if self.infer_category(first) == self.infer_category(second):
            return self._settings.category_match_score
        return self._settings.category_mismatch_score

    def infer_category(self, node: SourceNode) -> str:
        name = node.name or ""
        for category, keywords in self._settings.category_keywords.items():
            if any(keyword in name for keyword in keywords):
                return category
        tag = (node.category or "").strip().lower()
        return tag if tag not in GENERIC_CATEGORIES else "general"
