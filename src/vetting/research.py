"""Citation search across allow-listed safety, regulatory and literature sources.

Uses Google Custom Search scoped with ``site:`` queries. Only called when the
safety-score lookup has no usable score, so every request here spends quota.
"""

import asyncio
import logging
import time
from typing import List, Optional

import httpx

from src import metrics
from src.config import settings
from src.vetting.http_client import POLICIES, FetchError, SitePolicy, fetch_with_policy
from src.vetting.types import ResearchResult, ewg_search_url

logger = logging.getLogger(__name__)

# (source, query template) in search order
SOURCE_QUERIES = (
    ("ewg", "site:ewg.org/skindeep {name}"),
    ("fda", "site:fda.gov {name} cosmetic ingredient safety"),
    ("pubmed", "site:pubmed.ncbi.nlm.nih.gov {name} safety cosmetic"),
    ("healthline", "site:healthline.com {name} skincare cosmetic ingredient"),
)

# Source priority for a single citation link
CITATION_PRIORITY = ("ewg", "fda", "pubmed")

QUOTA_MARKERS = ("quota", "rate limit", "ratelimit")


def calculate_relevance(text: str, ingredient_name: str) -> float:
    """
    Score how well ``text`` matches the ingredient name.

    Full-name match scores 0.9; otherwise the share of significant words
    (longer than 3 chars) found, scaled to at most 0.8.
    """
    lower_text = text.lower()
    lower_name = ingredient_name.lower().strip()
    if not lower_name:
        return 0.0

    if lower_name in lower_text:
        return 0.9

    words = lower_name.split()
    matched = sum(1 for word in words if len(word) > 3 and word in lower_text)
    return min(0.8, (matched / len(words)) * 0.8)


def _is_ewg_citation(result: ResearchResult) -> bool:
    return "ewg.org/skindeep" in result.url


def best_citation(ingredient_name: str, results: List[ResearchResult]) -> str:
    """Pick one citation URL by source priority, falling back to an EWG search link."""
    for source in CITATION_PRIORITY:
        for result in results:
            if result.source != source or not result.url:
                continue
            if source == "ewg" and not _is_ewg_citation(result):
                continue
            return result.url
    return ewg_search_url(ingredient_name)


class ResearchService:
    """
    Searches allow-listed sources for supporting citations.

    Quota (429) and server errors trip a consecutive-error circuit breaker
    held on this instance. Once open, searches are skipped without any
    network I/O until a successful response resets it.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        cx_id: Optional[str] = None,
        max_consecutive_errors: Optional[int] = None,
        min_request_interval: Optional[float] = None,
        policy: Optional[SitePolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = settings.google_api_key if api_key is None else api_key
        self.cx_id = settings.google_cx_id if cx_id is None else cx_id
        self.max_consecutive_errors = (
            max_consecutive_errors
            if max_consecutive_errors is not None
            else settings.research_max_consecutive_errors
        )
        self.min_request_interval = (
            min_request_interval
            if min_request_interval is not None
            else settings.research_min_request_interval_seconds
        )
        self.policy = policy or POLICIES["google_search"]
        self.consecutive_errors = 0
        self._last_request_time = 0.0
        self._http_client = client

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.cx_id)

    @property
    def breaker_open(self) -> bool:
        return self.consecutive_errors >= self.max_consecutive_errors

    def reset(self) -> None:
        """Close the circuit breaker."""
        self.consecutive_errors = 0
        metrics.research_breaker_consecutive_errors.set(0)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=settings.research_request_timeout_seconds,
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def search(self, ingredient_name: str) -> List[ResearchResult]:
        """
        Search every allow-listed source for ``ingredient_name``.

        Returns:
            Results sorted by relevance (highest first); empty when search is
            not configured or the breaker is open.
        """
        results: List[ResearchResult] = []
        if not self.configured:
            return results

        for source, template in SOURCE_QUERIES:
            if self.breaker_open:
                logger.debug("Skipping research search due to consecutive API errors")
                break
            try:
                result = await self._query(
                    source, template.format(name=ingredient_name), ingredient_name
                )
            except FetchError as e:
                self._handle_error(e, source, ingredient_name)
                continue
            if result:
                results.append(result)

        return sorted(results, key=lambda r: r.relevance, reverse=True)

    async def find_best_citation(self, ingredient_name: str) -> str:
        """
        Find a single citation URL: EWG Skin Deep, then FDA, then PubMed,
        then a generic EWG search link.
        """
        if not self.configured:
            return ewg_search_url(ingredient_name)

        queries = dict(SOURCE_QUERIES)
        for source in CITATION_PRIORITY:
            if self.breaker_open:
                break
            try:
                result = await self._query(
                    source, queries[source].format(name=ingredient_name), ingredient_name
                )
            except FetchError as e:
                self._handle_error(e, source, ingredient_name)
                continue
            if result and (source != "ewg" or _is_ewg_citation(result)):
                return result.url

        return ewg_search_url(ingredient_name)

    async def _query(
        self, source: str, query: str, ingredient_name: str
    ) -> Optional[ResearchResult]:
        """Run one search query and return its first item."""
        await self._rate_limit()
        client = await self._get_client()
        params = {"key": self.api_key, "cx": self.cx_id, "q": query, "num": 1}

        resp = await fetch_with_policy(
            client, settings.google_search_url, self.policy, params=params
        )
        self._record_success()

        try:
            data = resp.json()
        except ValueError:
            logger.debug(f"Non-JSON search response for {source} ({ingredient_name})")
            return None

        items = data.get("items") if isinstance(data, dict) else None
        if not isinstance(items, list) or not items:
            return None

        item = items[0]
        if not isinstance(item, dict):
            logger.debug(f"Malformed search item for {source} ({ingredient_name})")
            return None
        title = item.get("title") or ""
        snippet = item.get("snippet") or ""
        return ResearchResult(
            source=source,
            url=item.get("link") or "",
            title=title,
            snippet=snippet,
            relevance=calculate_relevance(f"{title} {snippet}", ingredient_name),
        )

    async def _rate_limit(self) -> None:
        """Keep a minimum interval between search requests."""
        elapsed = time.monotonic() - self._last_request_time
        if elapsed < self.min_request_interval:
            await asyncio.sleep(self.min_request_interval - elapsed)
        self._last_request_time = time.monotonic()

    def _record_success(self) -> None:
        metrics.external_calls_total.labels("research", "success").inc()
        if self.consecutive_errors:
            logger.info("Google Search API recovered, research search re-enabled")
        self.reset()

    def _handle_error(self, error: FetchError, source: str, ingredient_name: str) -> None:
        """Update the breaker; quota and server errors count, other 4xx are ignored."""
        status = error.status_code
        detail = (error.detail or str(error)).lower()
        is_quota = status == 429 or any(marker in detail for marker in QUOTA_MARKERS)
        is_server = status is None or status >= 500

        if is_quota:
            self.consecutive_errors += 1
            metrics.external_calls_total.labels("research", "quota").inc()
            if self.consecutive_errors == 1:
                logger.warning(
                    "Google Search API quota/rate limit hit. Research search temporarily disabled."
                )
        elif is_server:
            if self.consecutive_errors == 0:
                logger.warning(
                    f"Google Search API error ({status or type(error).__name__}). "
                    "Research search may be unavailable."
                )
            self.consecutive_errors += 1
            metrics.external_calls_total.labels("research", "server_error").inc()
        else:
            metrics.external_calls_total.labels("research", "client_error").inc()
            logger.debug(f"Search for {source} ({ingredient_name}) rejected: {status}")

        metrics.research_breaker_consecutive_errors.set(self.consecutive_errors)
