import sys
from pathlib import Path

import pytest


# Ensure project src is on path for imports in tests
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for p in (ROOT, SRC):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

from trustnet.config import Settings  # noqa: E402
from trustnet.graph import TrustGraph  # noqa: E402
from trustnet.models import ContentRecord, SourceNode  # noqa: E402
from trustnet.storage import InMemorySourceStore  # noqa: E402


@pytest.fixture
def settings():
    return Settings(
        redis_url=None,
        newsdata_api_key=None,
        openpagerank_api_key=None,
        recompute_interval_seconds=3600,
    )


@pytest.fixture
def store():
    return InMemorySourceStore()


@pytest.fixture
def graph(store):
    return TrustGraph(store)


@pytest.fixture
def seed(store):
    """Store a source plus ``items`` analyzed content records; returns its id."""

    async def _seed(name, *, site=None, weight=0.5, category="general", items=0, reputation_score=None):
        source_id = await store.upsert_node(
            SourceNode(name=name, site=site, weight=weight, category=category, reputation_score=reputation_score)
        )
        for n in range(items):
            await store.insert_content(
                ContentRecord(text=f"{name} item {n}", source_id=source_id, confidence=weight)
            )
        return source_id

    return _seed
