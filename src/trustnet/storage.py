"""
Durable storage for sources, trust edges, analyzed content and feedback.

The core only talks to storage through ``SourceStore``. Two implementations:

- ``InMemorySourceStore``: process-local, used by tests and local runs.
- ``SqlSourceStore``: SQLAlchemy async ORM (sqlite+aiosqlite by default,
  any async driver URL in production).

Every backend failure is raised as ``StorageError``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Protocol

from pydantic import ValidationError
from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    case,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .errors import StorageError
from .models import (
    ContentRecord,
    ContentStats,
    FeedbackRecord,
    SourceNode,
    TrustEdge,
    stored_score,
    stored_weight,
)

logger = logging.getLogger(__name__)

CREDIBILITY_BUCKETS: tuple[tuple[str, float], ...] = (
    ("high", 0.8),
    ("medium", 0.6),
    ("low", 0.4),
    ("very_low", 0.0),
)

TRUSTED_CONFIDENCE_ABOVE = 0.7
LOW_CONFIDENCE_BELOW = 0.4


def credibility_bucket(confidence: float) -> str:
    for name, floor in CREDIBILITY_BUCKETS:
        if confidence >= floor:
            return name
    return CREDIBILITY_BUCKETS[-1][0]


def _bucket_counts(confidences: Iterable[float]) -> dict[str, int]:
    distribution = {name: 0 for name, _ in CREDIBILITY_BUCKETS}
    for value in confidences:
        distribution[credibility_bucket(stored_weight(value))] += 1
    return distribution


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SourceStore(Protocol):
    async def load_all_nodes(self) -> list[SourceNode]: ...

    async def load_all_edges(self) -> list[TrustEdge]: ...

    async def get_node(self, source_id: int) -> SourceNode | None: ...

    async def find_nodes_by_site(self, fragment: str) -> list[SourceNode]: ...

    async def upsert_node(self, node: SourceNode) -> int: ...

    async def update_node_weight(self, source_id: int, weight: float) -> None: ...

    async def insert_edge(self, source_id: int, target_id: int, weight: float) -> None: ...

    async def update_edge_weight(self, source_id: int, target_id: int, weight: float) -> bool: ...

    async def delete_edge(self, source_id: int, target_id: int) -> bool: ...

    async def delete_all_edges(self) -> int: ...

    async def replace_all_edges(self, edges: Iterable[TrustEdge]) -> int: ...

    async def count_items_for_node(self, source_id: int) -> int: ...

    async def insert_content(self, record: ContentRecord) -> ContentRecord: ...

    async def get_content(self, content_id: int) -> ContentRecord | None: ...

    async def insert_feedback(self, record: FeedbackRecord) -> FeedbackRecord: ...

    async def list_feedback(self, content_id: int) -> list[FeedbackRecord]: ...

    async def content_stats_for_node(self, source_id: int) -> ContentStats: ...

    async def system_counts(self) -> dict[str, int]: ...

    async def credibility_distribution(self) -> dict[str, int]: ...


class InMemorySourceStore:
    """Dictionary-backed store. Returned models are copies."""

    def __init__(self) -> None:
        self._nodes: dict[int, SourceNode] = {}
        self._edges: dict[tuple[int, int], float] = {}
        self._contents: dict[int, ContentRecord] = {}
        self._feedback: dict[int, FeedbackRecord] = {}
        self._next_node_id = 1
        self._next_content_id = 1
        self._next_feedback_id = 1

    async def load_all_nodes(self) -> list[SourceNode]:
        return [node.model_copy() for _, node in sorted(self._nodes.items())]

    async def load_all_edges(self) -> list[TrustEdge]:
        return [
            TrustEdge(source_id=source_id, target_id=target_id, weight=weight)
            for (source_id, target_id), weight in self._edges.items()
        ]

    async def get_node(self, source_id: int) -> SourceNode | None:
        node = self._nodes.get(source_id)
        return node.model_copy() if node else None

    async def find_nodes_by_site(self, fragment: str) -> list[SourceNode]:
        needle = fragment.lower()
        return [
            node.model_copy()
            for _, node in sorted(self._nodes.items())
            if node.site and needle in node.site.lower()
        ]

    async def upsert_node(self, node: SourceNode) -> int:
        existing = self._match_existing(node)
        now = _utcnow()
        if existing is not None:
            self._nodes[existing.id] = existing.model_copy(
                update={
                    "name": node.name,
                    "weight": node.weight,
                    "category": node.category,
                    "description": node.description,
                    "reputation_score": node.reputation_score,
                    "updated_at": now,
                }
            )
            return existing.id
        source_id = self._next_node_id
        self._next_node_id += 1
        self._nodes[source_id] = node.model_copy(
            update={"id": source_id, "created_at": now, "updated_at": now}
        )
        return source_id

    def _match_existing(self, node: SourceNode) -> SourceNode | None:
        for candidate in self._nodes.values():
            if node.site and candidate.site == node.site:
                return candidate
            if not node.site and candidate.name == node.name:
                return candidate
        return None

    async def update_node_weight(self, source_id: int, weight: float) -> None:
        node = self._nodes.get(source_id)
        if node is None:
            raise StorageError(f"no source with id {source_id}")
        self._nodes[source_id] = node.model_copy(update={"weight": weight, "updated_at": _utcnow()})

    async def insert_edge(self, source_id: int, target_id: int, weight: float) -> None:
        if source_id not in self._nodes or target_id not in self._nodes:
            raise StorageError(f"edge {source_id} -> {target_id} references a missing source")
        if (source_id, target_id) in self._edges:
            raise StorageError(f"edge {source_id} -> {target_id} already exists")
        self._edges[(source_id, target_id)] = weight

    async def update_edge_weight(self, source_id: int, target_id: int, weight: float) -> bool:
        if (source_id, target_id) not in self._edges:
            return False
        self._edges[(source_id, target_id)] = weight
        return True

    async def delete_edge(self, source_id: int, target_id: int) -> bool:
        return self._edges.pop((source_id, target_id), None) is not None

    async def delete_all_edges(self) -> int:
        removed = len(self._edges)
        self._edges.clear()
        return removed

    async def replace_all_edges(self, edges: Iterable[TrustEdge]) -> int:
        replacement: dict[tuple[int, int], float] = {}
        for edge in edges:
            key = (edge.source_id, edge.target_id)
            if edge.source_id not in self._nodes or edge.target_id not in self._nodes:
                raise StorageError(f"edge {edge.source_id} -> {edge.target_id} references a missing source")
            if key in replacement:
                raise StorageError(f"edge {edge.source_id} -> {edge.target_id} already exists")
            replacement[key] = edge.weight
        self._edges = replacement
        return len(replacement)

    async def count_items_for_node(self, source_id: int) -> int:
        return sum(1 for record in self._contents.values() if record.source_id == source_id)

    async def insert_content(self, record: ContentRecord) -> ContentRecord:
        if record.source_id not in self._nodes:
            raise StorageError(f"no source with id {record.source_id}")
        now = _utcnow()
        stored = record.model_copy(
            update={"id": self._next_content_id, "created_at": now, "updated_at": now}
        )
        self._contents[stored.id] = stored
        self._next_content_id += 1
        return stored.model_copy()

    async def get_content(self, content_id: int) -> ContentRecord | None:
        record = self._contents.get(content_id)
        return record.model_copy() if record else None

    async def insert_feedback(self, record: FeedbackRecord) -> FeedbackRecord:
        if record.content_id not in self._contents:
            raise StorageError(f"no content with id {record.content_id}")
        stored = record.model_copy(update={"id": self._next_feedback_id, "created_at": _utcnow()})
        self._feedback[stored.id] = stored
        self._next_feedback_id += 1
        return stored.model_copy()

    async def list_feedback(self, content_id: int) -> list[FeedbackRecord]:
        items = [item for item in self._feedback.values() if item.content_id == content_id]
        return [item.model_copy() for item in sorted(items, key=lambda item: item.id, reverse=True)]

    async def content_stats_for_node(self, source_id: int) -> ContentStats:
        confidences = [
            record.confidence for record in self._contents.values() if record.source_id == source_id
        ]
        if not confidences:
            return ContentStats()
        return ContentStats(
            total_items=len(confidences),
            mean_confidence=sum(confidences) / len(confidences),
            trusted_items=sum(1 for value in confidences if value > TRUSTED_CONFIDENCE_ABOVE),
            low_confidence_items=sum(1 for value in confidences if value < LOW_CONFIDENCE_BELOW),
        )

    async def system_counts(self) -> dict[str, int]:
        return {
            "contents": len(self._contents),
            "sources": len(self._nodes),
            "connections": len(self._edges),
        }

    async def credibility_distribution(self) -> dict[str, int]:
        return _bucket_counts(record.confidence for record in self._contents.values())


class Base(DeclarativeBase):
    """Base class for the trustnet tables."""


class SourceRow(Base):
    __tablename__ = "sources"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    site: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    weight: Mapped[float] = mapped_column(Float, default=0.5)
    category: Mapped[str] = mapped_column(String(64), default="general")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reputation_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ConnectionRow(Base):
    __tablename__ = "connections"
    __table_args__ = (UniqueConstraint("source_id", "target_id", name="uq_connection_pair"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    source_id: Mapped[int] = mapped_column(ForeignKey("sources.id", ondelete="CASCADE"), index=True)
    target_id: Mapped[int] = mapped_column(ForeignKey("sources.id", ondelete="CASCADE"), index=True)
    weight: Mapped[float] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ContentRow(Base):
    __tablename__ = "contents"

    id: Mapped[int] = mapped_column(primary_key=True)
    text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_id: Mapped[int] = mapped_column(ForeignKey("sources.id", ondelete="CASCADE"), index=True)
    confidence: Mapped[float] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class FeedbackRow(Base):
    __tablename__ = "feedback"

    id: Mapped[int] = mapped_column(primary_key=True)
    content_id: Mapped[int] = mapped_column(ForeignKey("contents.id", ondelete="CASCADE"), index=True)
    polarity: Mapped[str] = mapped_column(String(16))
    comment: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


def _node_from_row(row: SourceRow) -> SourceNode:
    return SourceNode(
        id=row.id,
        name=row.name or "",
        site=row.site,
        weight=stored_weight(row.weight),
        category=row.category or "general",
        description=row.description,
        reputation_score=stored_score(row.reputation_score),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _edge_from_row(row: ConnectionRow) -> TrustEdge:
    return TrustEdge(source_id=row.source_id, target_id=row.target_id, weight=stored_weight(row.weight))


def _content_from_row(row: ContentRow) -> ContentRecord:
    return ContentRecord(
        id=row.id,
        text=row.text,
        link=row.link,
        source_id=row.source_id,
        confidence=stored_weight(row.confidence),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _feedback_from_row(row: FeedbackRow) -> FeedbackRecord:
    return FeedbackRecord.model_validate(row, from_attributes=True)


class SqlSourceStore:
    """SQLAlchemy-backed store; one short session per call."""

    def __init__(self, database_url: str, *, echo: bool = False) -> None:
        self._engine = create_async_engine(database_url, echo=echo)
        self._sessionmaker = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)

    async def create_all(self) -> None:
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            raise StorageError(f"schema creation failed: {exc}") from exc

    async def close(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error("Storage operation failed: %s", exc)
                raise StorageError(str(exc)) from exc
            except ValidationError as exc:
                await session.rollback()
                logger.error("Stored row failed validation: %s", exc)
                raise StorageError(f"malformed stored row: {exc}") from exc

    async def load_all_nodes(self) -> list[SourceNode]:
        async with self._session() as session:
            rows = (await session.scalars(select(SourceRow).order_by(SourceRow.id))).all()
            return [_node_from_row(row) for row in rows]

    async def load_all_edges(self) -> list[TrustEdge]:
        async with self._session() as session:
            rows = (await session.scalars(select(ConnectionRow).order_by(ConnectionRow.id))).all()
            return [_edge_from_row(row) for row in rows]

    async def get_node(self, source_id: int) -> SourceNode | None:
        async with self._session() as session:
            row = await session.get(SourceRow, source_id)
            return _node_from_row(row) if row else None

    async def find_nodes_by_site(self, fragment: str) -> list[SourceNode]:
        pattern = f"%{fragment.lower()}%"
        async with self._session() as session:
            stmt = select(SourceRow).where(func.lower(SourceRow.site).like(pattern)).order_by(SourceRow.id)
            rows = (await session.scalars(stmt)).all()
            return [_node_from_row(row) for row in rows]

    async def upsert_node(self, node: SourceNode) -> int:
        async with self._session() as session:
            if node.site:
                stmt = select(SourceRow).where(SourceRow.site == node.site)
            else:
                stmt = select(SourceRow).where(SourceRow.name == node.name)
            row = (await session.scalars(stmt.limit(1))).first()
            now = _utcnow()
            if row is None:
                row = SourceRow(
                    name=node.name,
                    site=node.site,
                    weight=node.weight,
                    category=node.category,
                    description=node.description,
                    reputation_score=node.reputation_score,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
            else:
                row.name = node.name
                row.weight = node.weight
                row.category = node.category
                row.description = node.description
                row.reputation_score = node.reputation_score
                row.updated_at = now
            await session.flush()
            return row.id

    async def update_node_weight(self, source_id: int, weight: float) -> None:
        async with self._session() as session:
            result = await session.execute(
                update(SourceRow)
                .where(SourceRow.id == source_id)
                .values(weight=weight, updated_at=_utcnow())
            )
            if result.rowcount == 0:
                raise StorageError(f"no source with id {source_id}")

    async def insert_edge(self, source_id: int, target_id: int, weight: float) -> None:
        async with self._session() as session:
            now = _utcnow()
            session.add(
                ConnectionRow(
                    source_id=source_id,
                    target_id=target_id,
                    weight=weight,
                    created_at=now,
                    updated_at=now,
                )
            )

    async def update_edge_weight(self, source_id: int, target_id: int, weight: float) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(ConnectionRow)
                .where(ConnectionRow.source_id == source_id, ConnectionRow.target_id == target_id)
                .values(weight=weight, updated_at=_utcnow())
            )
            return result.rowcount > 0

    async def delete_edge(self, source_id: int, target_id: int) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(ConnectionRow).where(
                    ConnectionRow.source_id == source_id, ConnectionRow.target_id == target_id
                )
            )
            return result.rowcount > 0

    async def delete_all_edges(self) -> int:
        async with self._session() as session:
            result = await session.execute(delete(ConnectionRow))
            return result.rowcount

    async def replace_all_edges(self, edges: Iterable[TrustEdge]) -> int:
        """Swap the whole edge set in one transaction; the old set survives any failure."""
        async with self._session() as session:
            await session.execute(delete(ConnectionRow))
            now = _utcnow()
            rows = [
                ConnectionRow(
                    source_id=edge.source_id,
                    target_id=edge.target_id,
                    weight=edge.weight,
                    created_at=now,
                    updated_at=now,
                )
                for edge in edges
            ]
            session.add_all(rows)
            await session.flush()
            return len(rows)

    async def count_items_for_node(self, source_id: int) -> int:
        async with self._session() as session:
            stmt = select(func.count(ContentRow.id)).where(ContentRow.source_id == source_id)
            return (await session.execute(stmt)).scalar_one()

    async def insert_content(self, record: ContentRecord) -> ContentRecord:
        async with self._session() as session:
            now = _utcnow()
            row = ContentRow(
                text=record.text,
                link=record.link,
                source_id=record.source_id,
                confidence=record.confidence,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            await session.flush()
            return _content_from_row(row)

    async def get_content(self, content_id: int) -> ContentRecord | None:
        async with self._session() as session:
            row = await session.get(ContentRow, content_id)
            return _content_from_row(row) if row else None

    async def insert_feedback(self, record: FeedbackRecord) -> FeedbackRecord:
        async with self._session() as session:
            row = FeedbackRow(
                content_id=record.content_id,
                polarity=record.polarity,
                comment=record.comment,
                created_at=_utcnow(),
            )
            session.add(row)
            await session.flush()
            return _feedback_from_row(row)

    async def list_feedback(self, content_id: int) -> list[FeedbackRecord]:
        async with self._session() as session:
            stmt = (
                select(FeedbackRow)
                .where(FeedbackRow.content_id == content_id)
                .order_by(FeedbackRow.id.desc())
            )
            rows = (await session.scalars(stmt)).all()
            return [_feedback_from_row(row) for row in rows]

    async def content_stats_for_node(self, source_id: int) -> ContentStats:
        async with self._session() as session:
            stmt = select(
                func.count(ContentRow.id),
                func.avg(ContentRow.confidence),
                func.sum(case((ContentRow.confidence > TRUSTED_CONFIDENCE_ABOVE, 1), else_=0)),
                func.sum(case((ContentRow.confidence < LOW_CONFIDENCE_BELOW, 1), else_=0)),
            ).where(ContentRow.source_id == source_id)
            total, mean, trusted, low = (await session.execute(stmt)).one()
            return ContentStats(
                total_items=total or 0,
                mean_confidence=float(mean) if mean is not None else None,
                trusted_items=trusted or 0,
                low_confidence_items=low or 0,
            )

    async def system_counts(self) -> dict[str, int]:
        async with self._session() as session:
            contents = (await session.execute(select(func.count(ContentRow.id)))).scalar_one()
            sources = (await session.execute(select(func.count(SourceRow.id)))).scalar_one()
            connections = (await session.execute(select(func.count(ConnectionRow.id)))).scalar_one()
            return {"contents": contents, "sources": sources, "connections": connections}

    async def credibility_distribution(self) -> dict[str, int]:
        async with self._session() as session:
            confidences = (await session.scalars(select(ContentRow.confidence))).all()
            return _bucket_counts(confidences)
