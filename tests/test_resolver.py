"""
Source resolution, analysis and feedback tests
"""

import pytest

from trustnet.cache import DomainCache
from trustnet.errors import ContentNotFoundError, ReputationError, StorageError
from trustnet.models import ContentPayload, ExternalSource, SourceNode
from trustnet.resolver import CredibilityResolver, extract_domain
from trustnet.storage import InMemorySourceStore
from trustnet.graph import TrustGraph


class StubReputation:
    """Answers from a fixed table; raises for domains listed in ``failing``."""

    def __init__(self, known=None, failing=()):
        self.known = known or {}
        self.failing = set(failing)
        self.calls = []

    async def resolve_source(self, url_or_text):
        self.calls.append(url_or_text)
        for key, source in self.known.items():
            if key in url_or_text:
                return source
        for key in self.failing:
            if key in url_or_text:
                raise ReputationError(f"provider down for {key}")
        return None


@pytest.fixture
def reputation():
    return StubReputation()


@pytest.fixture
def resolver(store, graph, reputation, settings):
    return CredibilityResolver(
        store,
        graph,
        reputation=reputation,
        cache=DomainCache(redis_url="", ttl=300),
        settings=settings,
    )


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://www.Example.com/path?q=1", "example.com"),
        ("https://sub.news.example.com/a", "news.example.com"),
        ("http://portal.pucrs.br/noticias", "pucrs.br"),
        ("https://www.bbc.co.uk/news", "bbc.co.uk"),
        ("reuters.com/world", "reuters.com"),
        ("http://192.168.0.1:8080/x", "192.168.0.1"),
        ("", None),
        (None, None),
    ],
)
def test_extract_domain(url, expected):
    assert extract_domain(url) == expected


def test_content_payload_carries_only_text_and_link():
    assert set(ContentPayload.model_fields) == {"text", "link"}
    with pytest.raises(ValueError, match="Either text or link is required"):
        ContentPayload(text="  ")


@pytest.mark.asyncio
async def test_link_resolves_by_site_then_from_cache(graph, resolver, seed):
    source_id = await seed("Example News", site="news.example.com", weight=0.7)
    await graph.initialize()

    first = await resolver.resolve(ContentPayload(link="https://sub.news.example.com/story"))
    second = await resolver.resolve(ContentPayload(link="https://sub.news.example.com/other"))

    assert first.source.id == source_id
    assert first.diagnostics["step"] == "site"
    assert first.diagnostics["domain"] == "news.example.com"
    assert first.confidence == 0.5
    assert second.source.id == source_id
    assert second.diagnostics["step"] == "cache"


@pytest.mark.asyncio
async def test_reputation_hit_is_registered(store, graph, resolver, reputation):
    reputation.known["reuters.com"] = ExternalSource(
        display_name="Reuters", site_id="reuters.com", weight=90, category="reliable"
    )

    resolution = await resolver.resolve(ContentPayload(link="https://www.reuters.com/world/x"))

    assert resolution.diagnostics["step"] == "reputation"
    assert resolution.confidence == pytest.approx(0.9)
    source = resolution.source
    assert source.id is not None
    assert source.weight == pytest.approx(0.9)
    assert graph.has_node(source.id)
    assert [node.site for node in await store.load_all_nodes()] == ["reuters.com"]


@pytest.mark.asyncio
async def test_reputation_failure_falls_through(graph, resolver, reputation, seed):
    reputation.failing.add("example.com")
    source_id = await seed("Example", site="example.com")

    resolution = await resolver.resolve(ContentPayload(link="https://example.com/a"))

    assert resolution.source.id == source_id
    assert resolution.diagnostics["step"] == "site"
    assert any("provider down" in error for error in resolution.diagnostics["errors"])


@pytest.mark.asyncio
async def test_text_mentions_known_source(resolver, seed):
    source_id = await seed("Reuters", site="reuters.com", reputation_score=85)

    resolution = await resolver.resolve(ContentPayload(text="According to Reuters, rates will rise."))

    assert resolution.source.id == source_id
    assert resolution.diagnostics["step"] == "text"
    assert resolution.confidence == pytest.approx(0.85)


@pytest.mark.asyncio
async def test_text_match_requires_whole_words_and_long_names(resolver, seed):
    await seed("G1")
    await seed("Estado", site="estadao.com.br")

    assert (await resolver.resolve(ContentPayload(text="G1 reported it"))).source is None
    assert (await resolver.resolve(ContentPayload(text="Estadonews said"))).source is None
    found = await resolver.resolve(ContentPayload(text="see estadao.com.br for details"))
    assert found.source.name == "Estado"


@pytest.mark.asyncio
async def test_unresolved_content_gets_low_confidence(resolver):
    resolution = await resolver.resolve(ContentPayload(text="an anonymous rumor"))

    assert resolution.source is None
    assert resolution.resolved is False
    assert resolution.confidence == pytest.approx(0.3)
    assert resolution.diagnostics["step"] == "unresolved"


@pytest.mark.asyncio
async def test_analyze_stores_content_and_graph_context(store, graph, resolver, seed):
    a = await seed("Alpha", site="alpha.com", weight=0.8)
    b = await seed("Beta", site="beta.com", weight=0.6)
    await graph.initialize()
    await graph.add_connection(a, b, 0.5)

    result = await resolver.analyze(ContentPayload(text="Markets", link="https://alpha.com/markets"))

    assert result.content.id is not None
    assert result.content.source_id == a
    assert result.graph.total_connections == 2
    assert result.graph.max_depth == 1
    assert await store.count_items_for_node(a) == 1

    unresolved = await resolver.analyze(ContentPayload(text="nobody knows"))
    assert unresolved.content is None
    assert unresolved.graph.total_connections == 0


class FailingContentStore(InMemorySourceStore):
    async def insert_content(self, record):
        raise StorageError("contents table locked")


@pytest.mark.asyncio
async def test_analyze_batch_reports_each_item(settings):
    store = FailingContentStore()
    graph = TrustGraph(store)
    resolver = CredibilityResolver(store, graph, cache=DomainCache(redis_url=""), settings=settings)
    await store.upsert_node(SourceNode(name="Alpha", site="alpha.com"))

    results = await resolver.analyze_batch(
        [ContentPayload(text="rumor"), ContentPayload(link="https://alpha.com/x")]
    )

    assert results[0]["success"] is True
    assert results[0]["result"].content is None
    assert results[1]["success"] is False
    assert "contents table locked" in results[1]["error"]


@pytest.mark.asyncio
async def test_positive_feedback_raises_source_and_edges(store, graph, resolver, seed):
    a = await seed("Alpha", site="alpha.com", weight=0.5, items=1)
    b = await seed("Beta", site="beta.com", weight=0.5)
    c = await seed("Gamma", site="gamma.com", weight=0.5)
    await graph.initialize()
    await graph.add_connection(a, b, 0.4)
    await graph.add_connection(a, c, 0.98)

    outcome = await resolver.process_feedback(1, "trustworthy", "checked it")

    assert outcome.source_id == a
    assert outcome.new_source_weight == pytest.approx(0.6)
    assert outcome.adjustment_applied == pytest.approx(0.1)
    assert outcome.edges_adjusted == 2
    assert (await store.get_node(a)).weight == pytest.approx(0.6)
    assert graph.get_node(a)["weight"] == pytest.approx(0.6)
    assert graph.neighbors(a) == {b: pytest.approx(0.45), c: pytest.approx(1.0)}
    assert [item.comment for item in await store.list_feedback(1)] == ["checked it"]


@pytest.mark.asyncio
async def test_negative_feedback_clamps_at_zero(store, graph, resolver, seed):
    a = await seed("Alpha", site="alpha.com", weight=0.05, items=1)
    b = await seed("Beta", site="beta.com")
    await graph.initialize()
    await graph.add_connection(a, b, 0.02)

    outcome = await resolver.process_feedback(1, "false")

    assert outcome.new_source_weight == 0.0
    assert outcome.adjustment_applied == pytest.approx(-0.1)
    assert graph.neighbors(a) == {b: 0.0}


@pytest.mark.asyncio
async def test_feedback_saturates_at_one(resolver, graph, seed):
    await seed("Alpha", site="alpha.com", weight=0.95, items=1)
    await graph.initialize()

    outcome = await resolver.process_feedback(1, "trustworthy")

    assert outcome.new_source_weight == 1.0
    assert outcome.edges_adjusted == 0


@pytest.mark.asyncio
async def test_feedback_rejects_bad_input(resolver, seed):
    await seed("Alpha", site="alpha.com", items=1)

    with pytest.raises(ValueError):
        await resolver.process_feedback(1, "maybe")
    with pytest.raises(ContentNotFoundError, match="content not found"):
        await resolver.process_feedback(99, "false")


@pytest.mark.asyncio
async def test_generate_report(store, graph, resolver, seed):
    a = await seed("Alpha", site="alpha.com", weight=0.9, items=2)
    await graph.initialize()
    await resolver.process_feedback(2, "false", "misleading")

    report = await resolver.generate_report(2)

    assert report.content.id == 2
    assert report.source.id == a
    assert report.source.weight == pytest.approx(0.8)
    assert [item.polarity for item in report.feedback] == ["false"]
    assert report.source_stats.total_items == 2
    assert report.graph.total_connections == 1

    with pytest.raises(ContentNotFoundError):
        await resolver.generate_report(404)


@pytest.mark.asyncio
async def test_clear_cache_and_stats(graph, resolver, seed):
    await seed("Example", site="example.com")
    await graph.initialize()
    await resolver.resolve(ContentPayload(link="https://example.com"))

    assert resolver.get_stats()["cache_size"] == 1
    await resolver.clear_cache()
    stats = resolver.get_stats()
    assert stats["cache_size"] == 0
    assert stats["graph_stats"]["node_count"] == 1
