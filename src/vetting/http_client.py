"""HTTP client policies and status-aware error handling for external vetting sources."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

# Retryable exceptions (transport errors)
RETRYABLE_EXC = (
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    httpx.PoolTimeout,
)


@dataclass(frozen=True)
class SitePolicy:
    """Per-site HTTP request policy configuration."""

    name: str
    max_attempts: int = 2
    timeout: httpx.Timeout = None  # Will be set to default if None
    browser_headers: bool = True
    treat_404_as_permanent: bool = True

    def __post_init__(self):
        """Set default timeout if not provided."""
        if self.timeout is None:
            object.__setattr__(
                self,
                'timeout',
                httpx.Timeout(connect=10.0, read=20.0, write=10.0, pool=10.0)
            )


class FetchError(RuntimeError):
    """Base class for fetch failures; carries the HTTP status when there was one."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class BlockedError(FetchError):
    """Raised when access is refused (401/403)."""


class PermanentURLError(FetchError):
    """Raised when the URL does not exist (404)."""


class ClientRequestError(FetchError):
    """Raised for other 4xx responses; never retried."""


class TransientFetchError(FetchError):
    """Raised when fetch fails after retries (5xx, timeouts, etc.)."""


class RateLimitedError(FetchError):
    """Raised when rate limited (429)."""

    def __init__(self, retry_after: Optional[int] = None, detail: str = ""):
        super().__init__("Rate limited", status_code=429, detail=detail)
        self.retry_after = retry_after


def default_headers() -> dict[str, str]:
    """Get default browser-like headers."""
    return {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Accept": "text/html, application/xhtml+xml, application/xml; q=0.9, */*; q=0.8",
        "Accept-Language": "en-US, en; q=0.9",
    }


def _error_detail(resp: httpx.Response) -> str:
    """Best-effort error message from a JSON or text error body."""
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:500]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return resp.text[:500]


def _retry_after_seconds(resp: httpx.Response) -> Optional[int]:
    retry_after = resp.headers.get("Retry-After")
    if not retry_after:
        return None
    try:
        return int(retry_after)
    except (ValueError, TypeError):
        return None


async def fetch_with_policy(
    client: httpx.AsyncClient,
    url: str,
    policy: SitePolicy,
    headers: Optional[dict[str, str]] = None,
    params: Optional[dict[str, Any]] = None,
) -> httpx.Response:
    """
    Fetch URL with per-site policy and status-aware error handling.

    5xx responses and transport errors are retried with exponential backoff
    up to ``policy.max_attempts``. Rate limiting is raised immediately so the
    caller decides whether to back off or trip a breaker.

    Args:
        client: httpx AsyncClient instance
        url: URL to fetch
        policy: SitePolicy configuration
        headers: Optional additional headers (merged with defaults)
        params: Optional query parameters

    Returns:
        httpx.Response on success

    Raises:
        BlockedError: If access is refused (401/403)
        PermanentURLError: If URL is permanently invalid (404)
        ClientRequestError: For any other 4xx
        RateLimitedError: If rate limited (429)
        TransientFetchError: If fetch fails after retries
    """
    hdrs = default_headers() if policy.browser_headers else {}
    if headers:
        hdrs.update(headers)

    last_exc: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            resp = await client.get(
                url,
                params=params,
                headers=hdrs,
                timeout=policy.timeout,
                follow_redirects=True,
            )
        except RETRYABLE_EXC as e:
            last_exc = e
            if attempt < policy.max_attempts:
                sleep_s = (2 ** attempt) + random.random()
                logger.warning(
                    f"{policy.name}: Transport error ({type(e).__name__}), "
                    f"retrying in {sleep_s:.1f}s (attempt {attempt}/{policy.max_attempts})"
                )
                await asyncio.sleep(sleep_s)
                continue
            raise TransientFetchError(
                f"{policy.name}: transport error after {policy.max_attempts} attempts: {url}"
            ) from e
        except httpx.HTTPError as e:
            # Read/write failures, proxy and protocol errors: not retried, still transient
            raise TransientFetchError(
                f"{policy.name}: {type(e).__name__} for {url}"
            ) from e

        sc = resp.status_code

        if 200 <= sc < 300:
            return resp

        if sc == 429:
            raise RateLimitedError(
                retry_after=_retry_after_seconds(resp), detail=_error_detail(resp)
            )

        if sc == 404 and policy.treat_404_as_permanent:
            raise PermanentURLError(f"{policy.name}: 404 for {url}", status_code=sc)

        if sc in (401, 403):
            raise BlockedError(
                f"{policy.name}: {sc} for {url}", status_code=sc, detail=_error_detail(resp)
            )

        if 400 <= sc < 500:
            raise ClientRequestError(
                f"{policy.name}: {sc} for {url}", status_code=sc, detail=_error_detail(resp)
            )

        # 5xx and anything unexpected: transient
        last_exc = TransientFetchError(
            f"{policy.name}: status {sc} for {url}", status_code=sc, detail=_error_detail(resp)
        )
        if attempt < policy.max_attempts:
            sleep_s = (2 ** attempt) + random.random()
            logger.warning(
                f"{policy.name}: Server error {sc}, retrying in {sleep_s:.1f}s "
                f"(attempt {attempt}/{policy.max_attempts})"
            )
            await asyncio.sleep(sleep_s)
            continue
        raise last_exc

    raise TransientFetchError(
        f"{policy.name}: failed after {policy.max_attempts} attempts: {url}"
    ) from last_exc


# Per-site policy definitions
POLICIES: dict[str, SitePolicy] = {
    "ewg": SitePolicy(
        name="ewg",
        # A miss degrades to "not found"; only the classifier retries
        max_attempts=1,
        timeout=httpx.Timeout(connect=10.0, read=15.0, write=10.0, pool=10.0),
    ),
    # Search API quota is precious; never retry inside the client
    "google_search": SitePolicy(
        name="google_search",
        max_attempts=1,
        browser_headers=False,
        treat_404_as_permanent=False,
        timeout=httpx.Timeout(connect=5.0, read=10.0, write=5.0, pool=5.0),
    ),
}
