"""
Web search providers.

Brave is queried directly over HTTP; Tavily goes through its async SDK.
Both return at most ``max_results`` links and treat "no results" as an
empty list, not an error.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlparse

import httpx
from tavily.errors import TimeoutError as TavilyTimeoutError

from ..common.config import WebSearchConfig
from ..common.errors import ConfigurationError, RetrievalError, Stage, UpstreamMalformed, UpstreamTimeout
from ..common.retry import request_with_retry, retry_async

logger = logging.getLogger("enspira.retriever.web_search")

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"

# Brave freshness codes; Tavily takes the long form
FRESHNESS_CODES = {
    "day": "pd", "pd": "pd",
    "week": "pw", "pw": "pw",
    "month": "pm", "pm": "pm",
    "year": "py", "py": "py",
}
_TAVILY_RANGES = {"pd": "day", "pw": "week", "pm": "month", "py": "year"}


def normalize_freshness(value: Optional[str], default: str = "py") -> str:
    """Map a free-form freshness hint onto pd/pw/pm/py."""
    if not value:
        return default
    return FRESHNESS_CODES.get(value.strip().lower(), default)


@dataclass
class ResultLink:
    url: str
    title: str = ""
    source: str = ""


def _host(url: str) -> str:
    return urlparse(url).netloc


class BraveSearchProvider:
    """Brave Web Search API"""

    name = "brave"

    def __init__(
        self,
        api_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        retry_attempts: int = 3,
        backoff_seconds: float = 0.5,
    ):
        self._api_key = api_key
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._timeout = timeout
        self._retry_attempts = retry_attempts
        self._backoff_seconds = backoff_seconds

    async def search(self, query: str, freshness: str, max_results: int = 3) -> List[ResultLink]:
        if not self._api_key:
            raise ConfigurationError("Brave API key is not configured", stage=Stage.WEB_SEARCH)

        try:
            response = await request_with_retry(
                self._http,
                "GET",
                BRAVE_SEARCH_URL,
                headers={
                    "X-Subscription-Token": self._api_key,
                    "Accept": "application/json",
                },
                params={"q": query, "result_filter": "web", "freshness": freshness},
                timeout=self._timeout,
                attempts=self._retry_attempts,
                backoff_seconds=self._backoff_seconds,
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"Brave search timed out for '{query}'", stage=Stage.WEB_SEARCH) from e
        except httpx.HTTPError as e:
            raise RetrievalError(f"Brave search failed: {e}", stage=Stage.WEB_SEARCH) from e

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamMalformed("Brave returned non-JSON body", stage=Stage.WEB_SEARCH) from e

        results = ((data or {}).get("web") or {}).get("results") or []
        if not results:
            logger.info("No web results from Brave for '%s' (freshness %s)", query, freshness)
            return []

        links = []
        for item in results[:max_results]:
            url = item.get("url")
            if not url:
                continue
            source = (item.get("profile") or {}).get("name") or (item.get("meta_url") or {}).get("hostname") or _host(url)
            links.append(ResultLink(url=url, title=item.get("title", ""), source=source))
        return links


class TavilySearchProvider:
    """Tavily search through the async SDK"""

    name = "tavily"

    def __init__(
        self,
        api_key: str,
        client=None,
        retry_attempts: int = 3,
        backoff_seconds: float = 0.5,
    ):
        self._api_key = api_key
        self._client = client
        self._retry_attempts = retry_attempts
        self._backoff_seconds = backoff_seconds

    def _ensure_client(self):
        if self._client is None:
            if not self._api_key:
                raise ConfigurationError("Tavily API key is not configured", stage=Stage.WEB_SEARCH)
            from tavily import AsyncTavilyClient

            self._client = AsyncTavilyClient(api_key=self._api_key)
        return self._client

    async def search(self, query: str, freshness: str, max_results: int = 3) -> List[ResultLink]:
        client = self._ensure_client()

        async def _search():
            return await client.search(
                query=query,
                search_depth="basic",
                max_results=max_results,
                time_range=_TAVILY_RANGES.get(freshness, "year"),
                include_answer=False,
            )

        try:
            response = await retry_async(
                _search,
                attempts=self._retry_attempts,
                backoff_seconds=self._backoff_seconds,
                label="tavily search",
            )
        except (httpx.TimeoutException, asyncio.TimeoutError, TavilyTimeoutError) as e:
            raise UpstreamTimeout(f"Tavily search timed out for '{query}'", stage=Stage.WEB_SEARCH) from e
        except Exception as e:
            raise RetrievalError(f"Tavily search failed: {e}", stage=Stage.WEB_SEARCH) from e

        return [
            ResultLink(url=r["url"], title=r.get("title", ""), source=_host(r["url"]))
            for r in (response or {}).get("results", [])[:max_results]
            if r.get("url")
        ]


def build_search_provider(config: WebSearchConfig, http_client: Optional[httpx.AsyncClient] = None):
    provider = (config.provider or "brave").lower()
    if provider == "tavily":
        return TavilySearchProvider(api_key=config.tavily_api_key)
    if provider == "brave":
        return BraveSearchProvider(
            api_key=config.brave_api_key,
            http_client=http_client,
            timeout=config.request_timeout,
        )
    raise ConfigurationError(f"Unsupported web search provider: {provider}", stage=Stage.WEB_SEARCH)
