"""
Resolve analyzed content to a source node, score it, and apply feedback.

Resolution order for a content item:

1. short-lived domain cache (link only)
2. external reputation lookup; a hit is upserted into storage and the graph
3. substring search of stored sites for the link's domain
4. whole-word match of known sites and names inside the text
5. unresolved

Failures of the reputation collaborator or storage while resolving are logged
and fall through to the next step. Feedback writes are never swallowed.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Sequence

from .cache import DomainCache
from .config import Settings, get_settings
from .domains import extract_domain
from .errors import ContentNotFoundError, ReputationError, StorageError, TrustNetError
from .graph import TrustGraph
from .models import (
    AnalysisResult,
    ContentPayload,
    ContentRecord,
    ContentReport,
    ExternalSource,
    FeedbackOutcome,
    FeedbackRecord,
    GraphSummary,
    Resolution,
    SourceNode,
    clamp,
    coerce_weight,
)
from .reputation import NullReputation, ReputationLookup
from .storage import SourceStore

logger = logging.getLogger(__name__)

POLARITIES = ("trustworthy", "false")
MIN_NAME_MATCH_LENGTH = 3


def _summarize(result) -> GraphSummary:
    data = result.as_dict()
    return GraphSummary(
        total_connections=data["total_connections"],
        max_depth=data["max_depth"],
        connections=data["connections"],
        paths=data["paths"],
    )


class CredibilityResolver:
    def __init__(
        self,
        store: SourceStore,
        graph: TrustGraph,
        *,
        reputation: ReputationLookup | None = None,
        cache: DomainCache | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._graph = graph
        self._reputation = reputation or NullReputation()
        self._cache = cache or DomainCache(redis_url="")
        self._settings = settings or get_settings()

    @property
    def cache(self) -> DomainCache:
        return self._cache

    # -- resolution ------------------------------------------------------

    async def resolve(self, payload: ContentPayload) -> Resolution:
        diagnostics: dict[str, Any] = {"errors": []}
        source = await self.find_source(payload.link, payload.text or "", diagnostics)
        if source is None:
            diagnostics["step"] = "unresolved"
            return Resolution(
                source=None,
                confidence=self._settings.unknown_source_confidence,
                diagnostics=diagnostics,
            )
        return Resolution(source=source, confidence=self.confidence_for(source), diagnostics=diagnostics)

    def confidence_for(self, source: SourceNode) -> float:
        if source.reputation_score is not None:
            score = coerce_weight(source.reputation_score, default=self._settings.neutral_confidence * 100)
            return clamp(score / 100)
        return self._settings.neutral_confidence

    async def find_source(
        self,
        url: str | None,
        text: str = "",
        diagnostics: dict[str, Any] | None = None,
    ) -> SourceNode | None:
        diagnostics = diagnostics if diagnostics is not None else {"errors": []}
        domain = extract_domain(url) if url else None
        diagnostics["domain"] = domain

        if domain:
            cached = await self._cache.get(domain)
            if cached:
                diagnostics["step"] = "cache"
                return SourceNode.model_validate(cached)

        if url or text:
            external = await self._lookup_external(url, text, diagnostics)
            if external is not None:
                diagnostics["step"] = "reputation"
                return external

        if domain:
            try:
                matches = await self._store.find_nodes_by_site(domain)
            except StorageError as exc:
                logger.error(f"Site lookup failed for {domain}: {exc}")
                diagnostics["errors"].append(f"site lookup: {exc}")
                matches = []
            if matches:
                source = matches[0]
                await self._cache.set(domain, source.model_dump(mode="json"))
                diagnostics["step"] = "site"
                return source

        if text:
            source = await self._match_text(text, diagnostics)
            if source is not None:
                diagnostics["step"] = "text"
                return source

        return None

    async def _lookup_external(
        self,
        url: str | None,
        text: str,
        diagnostics: dict[str, Any],
    ) -> SourceNode | None:
        for candidate in (url, text):
            if not candidate:
                continue
            try:
                external = await self._reputation.resolve_source(candidate)
            except ReputationError as exc:
                logger.error(f"Reputation lookup failed: {exc}")
                diagnostics["errors"].append(f"reputation: {exc}")
                continue
            if external is None:
                continue
            try:
                return await self._register_external(external)
            except StorageError as exc:
                logger.error(f"Could not store source {external.site_id}: {exc}")
                diagnostics["errors"].append(f"register: {exc}")
                return None
        return None

    async def _register_external(self, external: ExternalSource) -> SourceNode:
        node = SourceNode(
            name=external.display_name,
            site=external.site_id,
            weight=clamp(external.weight / 100),
            category=external.category,
            description=external.description,
            reputation_score=external.weight,
        )
        stored = await self._graph.add_source(node)
        logger.info(f'Source "{stored.name}" resolved externally (id {stored.id})')
        return stored

    async def _match_text(self, text: str, diagnostics: dict[str, Any]) -> SourceNode | None:
        try:
            nodes = await self._store.load_all_nodes()
        except StorageError as exc:
            logger.error(f"Text match lookup failed: {exc}")
            diagnostics["errors"].append(f"text match: {exc}")
            return None

        for node in nodes:
            site = (node.site or "").lower()
            if site and re.search(rf"\b{re.escape(site)}\b", text, re.I):
                return node
            name = (node.name or "").lower()
            if len(name) >= MIN_NAME_MATCH_LENGTH and re.search(rf"\b{re.escape(name)}\b", text, re.I):
                return node
        return None

    # -- analysis --------------------------------------------------------

    async def analyze(self, payload: ContentPayload) -> AnalysisResult:
        resolution = await self.resolve(payload)
        source = resolution.source

        graph = GraphSummary()
        if source is not None and source.id is not None and self._graph.has_node(source.id):
            graph = _summarize(self._graph.bfs(source.id, 2))

        content = None
        if source is not None and source.id is not None:
            content = await self._store.insert_content(
                ContentRecord(
                    text=payload.text,
                    link=payload.link,
                    source_id=source.id,
                    confidence=resolution.confidence,
                )
            )

        logger.info(
            f"Content analyzed: source={source.name if source else None} "
            f"confidence={resolution.confidence:.2f} step={resolution.diagnostics.get('step')}"
        )
        return AnalysisResult(
            content=content,
            source=source,
            confidence=resolution.confidence,
            graph=graph,
            diagnostics=resolution.diagnostics,
        )

    async def analyze_batch(self, payloads: Sequence[ContentPayload]) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for payload in payloads:
            try:
                result = await self.analyze(payload)
                results.append({"success": True, "result": result})
            except TrustNetError as exc:
                logger.error(f"Batch item failed: {exc}")
                results.append({"success": False, "payload": payload, "error": str(exc)})
        return results

    # -- feedback --------------------------------------------------------

    async def process_feedback(self, content_id: int, polarity: str, comment: str = "") -> FeedbackOutcome:
        if polarity not in POLARITIES:
            raise ValueError(f"polarity must be one of {POLARITIES}, got {polarity!r}")

        content = await self._store.get_content(content_id)
        if content is None:
            raise ContentNotFoundError(content_id)
        source = await self._store.get_node(content.source_id)
        if source is None:
            raise ContentNotFoundError(content_id)

        await self._store.insert_feedback(
            FeedbackRecord(content_id=content_id, polarity=polarity, comment=comment or "")
        )

        source_delta = self._settings.feedback_source_delta
        edge_delta = self._settings.feedback_edge_delta
        adjustment = source_delta if polarity == "trustworthy" else -source_delta
        new_weight = round(clamp(coerce_weight(source.weight) + adjustment), 6)

        await self._store.update_node_weight(source.id, new_weight)
        if self._graph.has_node(source.id):
            self._graph.set_node_attrs(source.id, weight=new_weight)

        edges_adjusted = 0
        for target_id, current in self._graph.neighbors(source.id).items():
            step = edge_delta if polarity == "trustworthy" else -edge_delta
            new_edge_weight = round(clamp(coerce_weight(current) + step), 6)
            await self._graph.update_connection_weight(source.id, target_id, new_edge_weight)
            edges_adjusted += 1

        logger.info(
            f"Feedback processed: {polarity} for content {content_id}, "
            f"source {source.id} weight -> {new_weight}, {edges_adjusted} connection(s) adjusted"
        )
        return FeedbackOutcome(
            content_id=content_id,
            source_id=source.id,
            polarity=polarity,
            new_source_weight=new_weight,
            adjustment_applied=adjustment,
            edges_adjusted=edges_adjusted,
        )

    # -- reporting -------------------------------------------------------

    async def generate_report(self, content_id: int) -> ContentReport:
        content = await self._store.get_content(content_id)
        if content is None:
            raise ContentNotFoundError(content_id)
        source = await self._store.get_node(content.source_id)
        feedback = await self._store.list_feedback(content_id)
        stats = await self._store.content_stats_for_node(content.source_id)

        graph = GraphSummary()
        if self._graph.has_node(content.source_id):
            graph = _summarize(self._graph.bfs(content.source_id, self._settings.default_bfs_depth))

        return ContentReport(content=content, source=source, feedback=feedback, source_stats=stats, graph=graph)

    async def clear_cache(self) -> None:
        await self._cache.clear()
        logger.info("Domain cache cleared")

    def get_stats(self) -> dict[str, Any]:
        return {"cache_size": self._cache.size(), "graph_stats": self._graph.get_stats()}
