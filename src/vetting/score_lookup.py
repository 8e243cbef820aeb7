"""EWG Skin Deep safety-score lookup.

Fetches an ingredient's hazard score (1-10) from the EWG Skin Deep database.
Scores map to status tiers: 1-4 safe, 5-7 caution, 8-10 banned.

The markup extraction below is best-effort scraping of third-party HTML and
will drift with the site; everything else in the pipeline depends only on
``SafetyScoreLookup.lookup`` and ``ScoreLookupResult``.
"""

import difflib
import logging
import re
from typing import List, Optional, Tuple
from urllib.parse import quote, urljoin

import httpx
from selectolax.parser import HTMLParser, Node

from src import metrics
from src.config import settings
from src.vetting.http_client import POLICIES, FetchError, SitePolicy, fetch_with_policy
from src.vetting.types import ScoreLookupResult, slugify

logger = logging.getLogger(__name__)

SCORE_PATTERNS = (
    re.compile(r"hazard[\s-]*score[:\s]*(\d+)", re.IGNORECASE),
    re.compile(r"score[:\s]*(\d+)", re.IGNORECASE),
    re.compile(r"rating[:\s]*(\d+)", re.IGNORECASE),
)
SCORE_IMAGE_PATTERN = re.compile(r"score[-_](\d{1,2})\b", re.IGNORECASE)
DATA_AVAILABILITY_PATTERN = re.compile(
    r"data[\s-]*availability[:\s]*([A-Za-z][A-Za-z ]{0,20})", re.IGNORECASE
)
INGREDIENT_LINK_SELECTOR = 'a[href*="/skindeep/ingredients/"]'
MAX_CONCERNS = 10
MAX_SUGGESTIONS = 5
SUGGESTION_CUTOFF = 0.6


def _valid_score(value: Optional[int]) -> Optional[int]:
    if value is not None and 1 <= value <= 10:
        return value
    return None


def _extract_score(text: str) -> Optional[int]:
    """First in-range score across all patterns; out-of-range numbers are skipped."""
    for pattern in SCORE_PATTERNS:
        for match in pattern.finditer(text):
            score = _valid_score(int(match.group(1)))
            if score is not None:
                return score
    return None


def _image_score(tree: HTMLParser) -> Optional[int]:
    """EWG renders the score as an image whose file name carries the number."""
    for img in tree.css("img"):
        src = img.attributes.get("src") or ""
        match = SCORE_IMAGE_PATTERN.search(src)
        if match:
            return _valid_score(int(match.group(1)))
    return None


def _text_lines(node) -> List[str]:
    raw = node.text(separator="\n") if node is not None else ""
    return [" ".join(line.split()) for line in raw.splitlines() if line.strip()]


def parse_ingredient_page(html: str, name: str, url: str) -> ScoreLookupResult:
    """Extract score, data availability and concerns from an ingredient page."""
    tree = HTMLParser(html)
    lines = _text_lines(tree.body if tree.body is not None else tree.root)
    text = " ".join(lines)

    score = _image_score(tree)
    if score is None:
        score = _extract_score(text)

    availability = None
    for line in lines:
        match = DATA_AVAILABILITY_PATTERN.search(line)
        if match:
            availability = match.group(1).strip()
            break

    concerns: List[str] = []
    for line in lines:
        if "concern" in line.lower() and len(line) <= 120 and line not in concerns:
            concerns.append(line)
        if len(concerns) >= MAX_CONCERNS:
            break

    return ScoreLookupResult(
        name=name,
        score=score,
        data_availability=availability,
        url=url,
        concerns=concerns,
        found=score is not None,
    )


def _result_container_text(link: Node, depth: int = 3) -> str:
    node = link
    for _ in range(depth):
        if node.parent is None:
            break
        node = node.parent
    return " ".join(node.text(separator=" ").split())


def parse_search_results(
    html: str, name: str, base_url: str
) -> Tuple[ScoreLookupResult, List[str]]:
    """
    Parse a search results page.

    Returns:
        The lookup result for the first ingredient hit, plus the names of all
        linked ingredients (used for misspelling suggestions).
    """
    tree = HTMLParser(html)
    links = tree.css(INGREDIENT_LINK_SELECTOR)

    candidates: List[str] = []
    for link in links:
        label = " ".join(link.text().split())
        if label and label not in candidates:
            candidates.append(label)

    if not links:
        return ScoreLookupResult.not_found(name), candidates

    first = links[0]
    href = first.attributes.get("href") or ""
    url = href if href.startswith("http") else urljoin(base_url, href)
    score = _extract_score(_result_container_text(first))

    result = ScoreLookupResult(
        name=name,
        score=score,
        data_availability=None,
        url=url,
        found=score is not None,
    )
    return result, candidates


def suggest_similar(name: str, candidates: List[str]) -> List[str]:
    """Candidate names close to ``name``; the exact name itself is not a suggestion."""
    target = name.strip().lower()
    by_lower = {}
    for candidate in candidates:
        lowered = candidate.lower()
        if lowered != target:
            by_lower.setdefault(lowered, candidate)
    matches = difflib.get_close_matches(
        target, list(by_lower), n=MAX_SUGGESTIONS, cutoff=SUGGESTION_CUTOFF
    )
    return [by_lower[m] for m in matches]


class SafetyScoreLookup:
    """
    Looks up an ingredient's EWG hazard score.

    Never raises: network and parsing failures degrade to ``found=False``.
    """

    def __init__(
        self,
        enabled: Optional[bool] = None,
        base_url: Optional[str] = None,
        policy: Optional[SitePolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.enabled = settings.ewg_lookup_enabled if enabled is None else enabled
        self.base_url = (base_url or settings.ewg_base_url).rstrip("/")
        self.policy = policy or POLICIES["ewg"]
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=settings.ewg_request_timeout_seconds,
                follow_redirects=True,
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def lookup(self, name: str) -> ScoreLookupResult:
        """
        Look up ``name``: direct ingredient page, then site search, then
        similar-name suggestions.
        """
        if not self.enabled:
            return ScoreLookupResult.not_found(name)

        try:
            direct = await self._fetch_direct(name)
            if direct is not None and direct.usable:
                metrics.external_calls_total.labels("score_lookup", "direct_hit").inc()
                return direct

            searched, candidates = await self._search(name)
            if searched.usable:
                metrics.external_calls_total.labels("score_lookup", "search_hit").inc()
                return searched

            metrics.external_calls_total.labels("score_lookup", "not_found").inc()
            return ScoreLookupResult.not_found(
                name, suggested_matches=suggest_similar(name, candidates)
            )
        except Exception as e:
            metrics.external_calls_total.labels("score_lookup", "error").inc()
            logger.error(f"Error looking up EWG score for {name}: {e}")
            return ScoreLookupResult.not_found(name)

    async def _fetch_direct(self, name: str) -> Optional[ScoreLookupResult]:
        """Fetch the deterministic ingredient page; None when there is no page."""
        slug = slugify(name)
        if not slug:
            return None

        url = f"{self.base_url}/ingredients/{slug}/"
        client = await self._get_client()
        try:
            resp = await fetch_with_policy(client, url, self.policy)
        except FetchError as e:
            logger.debug(f"EWG direct page unavailable for {name}: {e}")
            return None

        return parse_ingredient_page(resp.text, name, url)

    async def _search(self, name: str) -> Tuple[ScoreLookupResult, List[str]]:
        search_url = f"{self.base_url}/search/?query={quote(name, safe='')}"
        client = await self._get_client()
        try:
            resp = await fetch_with_policy(client, search_url, self.policy)
        except FetchError as e:
            logger.debug(f"EWG search failed for {name}: {e}")
            return ScoreLookupResult.not_found(name), []

        result, candidates = parse_search_results(resp.text, name, self.base_url)
        if not result.usable:
            result = ScoreLookupResult.not_found(name)
        return result, candidates
