"""
Single-flight recomputation of connections, graph index and system metrics.

One background task waits on a one-slot signal queue, using the recompute
interval as its timeout: a timeout runs the periodic pass, a signal runs a
triggered pass. Triggers never wait. While a pass is running, triggers are
dropped rather than queued.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .config import Settings, get_settings
from .graph import TrustGraph
from .models import AnalysisResult, ContentPayload, SourceNode
from .resolver import CredibilityResolver
from .storage import SourceStore
from .synthesizer import ConnectionSynthesizer

logger = logging.getLogger(__name__)


@dataclass
class PassReport:
    reason: str
    started_at: datetime
    finished_at: datetime | None = None
    duration: float = 0.0
    connections_created: int | None = None
    metrics: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.finished_at is not None and self.error is None


class RecomputeOrchestrator:
    def __init__(
        self,
        store: SourceStore,
        graph: TrustGraph,
        synthesizer: ConnectionSynthesizer,
        resolver: CredibilityResolver,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._graph = graph
        self._synthesizer = synthesizer
        self._resolver = resolver
        self._settings = settings or get_settings()
        self.interval = self._settings.recompute_interval_seconds
        self.is_updating = False
        self.passes_completed = 0
        self.last_report: PassReport | None = None
        self._signal: asyncio.Queue[str] | None = None
        self._task: asyncio.Task | None = None

    # -- lifecycle -------------------------------------------------------

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        logger.info(f"Starting recompute loop (every {self.interval:g}s)")
        self._signal = asyncio.Queue(maxsize=1)
        self._task = asyncio.create_task(self._run_loop(), name="trustnet-recompute")
        self.trigger("startup")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Recompute loop stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_loop(self) -> None:
        assert self._signal is not None
        while True:
            try:
                reason = await asyncio.wait_for(self._signal.get(), timeout=self.interval)
            except asyncio.TimeoutError:
                reason = "periodic"
            await self.run_pass(reason)

    # -- triggering ------------------------------------------------------

    def trigger(self, reason: str = "manual") -> bool:
        """Ask the loop for a pass without waiting. Returns False when dropped."""
        if self.is_updating:
            logger.info(f"Recompute already in progress, ignoring trigger ({reason})")
            return False
        if self._signal is None:
            logger.warning(f"Recompute loop not started, ignoring trigger ({reason})")
            return False
        try:
            self._signal.put_nowait(reason)
        except asyncio.QueueFull:
            logger.info(f"Recompute already pending, ignoring trigger ({reason})")
            return False
        return True

    async def force_update(self) -> PassReport | None:
        logger.info("Forcing immediate recompute")
        return await self.run_pass("forced")

    async def run_pass(self, reason: str = "manual") -> PassReport | None:
        """Run one full pass; returns ``None`` when another pass is in flight."""
        if self.is_updating:
            logger.info(f"Recompute already in progress, skipping ({reason})")
            return None

        self.is_updating = True
        report = PassReport(reason=reason, started_at=datetime.now(timezone.utc))
        started = time.monotonic()
        try:
            logger.info(f"Running recompute pass ({reason})")
            synthesis = await self._synthesizer.update_connections()
            report.connections_created = synthesis.created if synthesis else None
            await self._graph.initialize()
            report.metrics = await self.update_system_metrics()
            purged = self._resolver.cache.purge_expired()
            if purged:
                logger.info(f"Purged {purged} expired domain cache entries")
            report.finished_at = datetime.now(timezone.utc)
            self.passes_completed += 1
            logger.info("Recompute pass completed")
        except Exception as exc:
            report.error = str(exc)
            logger.error(f"Recompute pass failed: {exc}", exc_info=True)
        finally:
            report.duration = time.monotonic() - started
            self.last_report = report
            self.is_updating = False
        return report

    async def update_system_metrics(self) -> dict[str, Any]:
        counts = await self._store.system_counts()
        distribution = await self._store.credibility_distribution()
        metrics = {
            "total_contents": counts.get("contents", 0),
            "total_sources": counts.get("sources", 0),
            "total_connections": counts.get("connections", 0),
            "credibility_distribution": distribution,
            "graph": self._graph.get_stats(),
        }
        logger.info(
            "System metrics: %s contents, %s sources, %s connections, distribution=%s",
            metrics["total_contents"],
            metrics["total_sources"],
            metrics["total_connections"],
            distribution,
        )
        return metrics

    # -- ingestion -------------------------------------------------------

    async def analyze_and_update(self, payload: ContentPayload) -> AnalysisResult:
        result = await self._resolver.analyze(payload)
        if result.content is not None:
            logger.info(
                f"New content {result.content.id} from source {result.content.source_id} "
                f"(confidence {result.content.confidence:.2f})"
            )
            self.trigger("new-content")
        return result

    async def add_source_and_update(self, node: SourceNode) -> SourceNode:
        stored = await self._graph.add_source(node)
        logger.info(f'New source "{stored.name}" ({stored.site}) weight {stored.weight}')
        self.trigger("new-source")
        return stored

    def status(self) -> dict[str, Any]:
        last = self.last_report
        return {
            "is_running": self.is_running,
            "is_updating": self.is_updating,
            "interval_seconds": self.interval,
            "passes_completed": self.passes_completed,
            "last_pass": {
                "reason": last.reason,
                "started_at": last.started_at.isoformat(),
                "duration": round(last.duration, 3),
                "succeeded": last.succeeded,
                "error": last.error,
            }
            if last
            else None,
        }
