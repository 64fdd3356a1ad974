from __future__ import annotations

import logging
import re
from typing import Protocol

import httpx

from .cache import DomainCache
from .config import Settings, get_settings
from .domains import extract_domain
from .errors import ReputationError
from .models import ExternalSource

logger = logging.getLogger(__name__)

_DOMAIN_PATTERN = re.compile(r"^(?:https?://)?(?:[a-z0-9-]+\.)+[a-z]{2,}(?:[/:?#].*)?$", re.I)


class ReputationLookup(Protocol):
    async def resolve_source(self, url_or_text: str) -> ExternalSource | None: ...


class NullReputation:
    """Lookup that never knows anything; used when no provider is configured."""

    async def resolve_source(self, url_or_text: str) -> ExternalSource | None:
        return None


def category_for_score(score: float) -> str:
    if score >= 80:
        return "reliable"
    if score >= 60:
        return "moderate"
    return "suspicious"


class ReputationClient:
    """Domain reputation from NewsData and OpenPageRank, on a 0-100 scale."""

    def __init__(
        self,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        settings: Settings | None = None,
        cache: DomainCache | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._timeout = timeout if timeout is not None else self._settings.reputation_timeout
        self._transport = transport
        self._cache = cache or DomainCache(
            redis_url="", ttl=self._settings.reputation_cache_ttl, prefix="trustnet:reputation:"
        )

    @property
    def enabled(self) -> bool:
        return bool(self._settings.newsdata_api_key or self._settings.openpagerank_api_key)

    async def resolve_source(self, url_or_text: str) -> ExternalSource | None:
        domain = self._normalize_domain(url_or_text)
        if domain is None or not self.enabled:
            return None
        cached = await self._cache.get(domain)
        if cached is not None:
            found = cached.get("source")
            return ExternalSource.model_validate(found) if found else None
        source = await self._fetch_with_sources(domain)
        if source is None:
            await self._cache.set(domain, {"source": None}, ttl=self._settings.reputation_miss_ttl)
        else:
            await self._cache.set(domain, {"source": source.model_dump(mode="json")})
        return source

    async def _fetch_with_sources(self, domain: str) -> ExternalSource | None:
        errors: list[str] = []
        for query in (self._query_newsdata_api, self._query_openpagerank):
            try:
                source = await query(domain)
            except (httpx.HTTPError, ValueError) as exc:
                errors.append(f"{query.__name__}: {exc}")
                continue
            if source:
                return source
        if errors:
            raise ReputationError(f"reputation lookup failed for {domain}: {'; '.join(errors)}")
        return None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _query_newsdata_api(self, domain: str) -> ExternalSource | None:
        api_key = self._settings.newsdata_api_key
        if not api_key:
            return None
        endpoint = "https://newsdata.io/api/1/source"
        params = {"apikey": api_key, "domain": domain}
        async with self._client() as client:
            response = await client.get(endpoint, params=params)
            response.raise_for_status()
            payload = response.json()
        if not isinstance(payload, dict):
            return None
        sources = payload.get("results", [])
        if not sources:
            return None
        best = sources[0]
        score = max(0.0, min(1.0, float(best.get("reliability", 0.5)))) * 100
        return ExternalSource(
            display_name=best.get("name") or domain,
            site_id=domain,
            weight=score,
            category=category_for_score(score),
            description=f"Trust score {score:.0f}/100 (newsdata)",
        )

    async def _query_openpagerank(self, domain: str) -> ExternalSource | None:
        api_key = self._settings.openpagerank_api_key
        if not api_key:
            return None
        endpoint = "https://openpagerank.com/api/v1.0/getPageRank"
        params = {"domains[0]": domain}
        headers = {"API-OPR": api_key}
        async with self._client() as client:
            response = await client.get(endpoint, params=params, headers=headers)
            response.raise_for_status()
            payload = response.json()
        if not isinstance(payload, dict):
            return None
        results = payload.get("response")
        if not isinstance(results, list) or not results:
            return None
        entry = results[0]
        # page_rank_decimal is reported on a 0-10 scale
        score = max(0.0, min(10.0, float(entry.get("page_rank_decimal", 4.0)))) * 10
        return ExternalSource(
            display_name=domain,
            site_id=domain,
            weight=score,
            category=category_for_score(score),
            description=f"Trust score {score:.0f}/100 (openpagerank)",
        )

    @staticmethod
    def _normalize_domain(source: str) -> str | None:
        candidate = (source or "").strip().split("\n")[0].strip()
        if not candidate or not _DOMAIN_PATTERN.match(candidate):
            return None
        return extract_domain(candidate)
