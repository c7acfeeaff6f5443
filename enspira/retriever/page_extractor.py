"""
Page extraction for web augmentation.

Pages are fetched concurrently, each under its own timeout. A page that
fails to fetch or parse contributes nothing; the batch still succeeds with
whatever the other pages produced.
"""

import asyncio
import logging
import random
import re
from dataclasses import dataclass, field
from typing import List, Optional

import httpx
import trafilatura
from bs4 import BeautifulSoup

from .web_search import ResultLink

logger = logging.getLogger("enspira.retriever.page_extractor")

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
]

NON_CONTENT_TAGS = ["script", "style", "noscript", "iframe", "svg", "form", "nav", "footer", "header", "aside"]

_MAIN_CLASS = re.compile(r"(content|article|post|entry)", re.I)
_MAIN_ID = re.compile(r"(content|article|main)", re.I)


@dataclass
class ExtractionResult:
    text: str = ""
    pages: int = 0
    failed_urls: List[str] = field(default_factory=list)


def format_segment(url: str, text: str) -> str:
    return f"- From the web page {url}:\n{text}\n"


def normalize_whitespace(text: str) -> str:
    text = text.replace("\r", "\n")
    text = re.sub(r"[\t\x0b\x0c ]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def strip_non_content(html: str) -> BeautifulSoup:
    soup = BeautifulSoup(html, "html.parser")
    for element in soup(NON_CONTENT_TAGS):
        element.decompose()
    return soup


def extract_main_text(html: str) -> str:
    """Readable main text of an HTML page, or "" when nothing usable."""
    soup = strip_non_content(html)
    extracted = trafilatura.extract(
        str(soup),
        include_comments=False,
        include_tables=False,
        include_images=False,
        include_links=False,
        output_format="txt",
    )
    if extracted and extracted.strip():
        return normalize_whitespace(extracted)

    # Fall back to the most likely content container
    main_content = (
        soup.find("article")
        or soup.find("main")
        or soup.find(class_=_MAIN_CLASS)
        or soup.find(id=_MAIN_ID)
        or soup.find("body")
    )
    if main_content is None:
        return ""
    return normalize_whitespace(main_content.get_text(separator="\n", strip=True))


class PageExtractor:
    """Fetch pages and reduce them to attributed plain text."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        fetch_timeout: float = 10.0,
        extraction_service_url: str = "",
        max_page_chars: int = 12000,
    ):
        self._http = http_client or httpx.AsyncClient(follow_redirects=True)
        self._fetch_timeout = fetch_timeout
        self._service_url = extraction_service_url
        self._max_page_chars = max_page_chars

    async def extract(self, links: List[ResultLink]) -> ExtractionResult:
        """Fetch every link concurrently and concatenate attributed segments."""
        if not links:
            return ExtractionResult()

        # One identity per batch
        user_agent = random.choice(USER_AGENTS)
        texts = await asyncio.gather(*(self._extract_one(link.url, user_agent) for link in links))

        result = ExtractionResult()
        segments = []
        for link, text in zip(links, texts):
            if text:
                segments.append(format_segment(link.url, text))
                result.pages += 1
            else:
                result.failed_urls.append(link.url)
        result.text = "".join(segments)
        return result

    async def _extract_one(self, url: str, user_agent: str) -> str:
        try:
            text = await asyncio.wait_for(self._fetch_text(url, user_agent), timeout=self._fetch_timeout)
        except asyncio.TimeoutError:
            logger.info("Timed out pulling %s", url)
            return ""
        except httpx.HTTPStatusError as e:
            logger.info("HTTP error %s for %s", e.response.status_code, url)
            return ""
        except Exception as e:
            logger.info("Could not pull %s: %s", url, e)
            return ""

        if not text:
            logger.info("Could not parse content from %s", url)
            return ""
        logger.debug("Pulled %d chars from %s", len(text), url)
        return text[: self._max_page_chars]

    async def _fetch_text(self, url: str, user_agent: str) -> str:
        headers = {"User-Agent": user_agent, "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8"}
        if self._service_url:
            response = await self._http.get(self._service_url, params={"url": url}, headers=headers)
            response.raise_for_status()
            return normalize_whitespace(str(response.json().get("textContent") or ""))

        response = await self._http.get(url, headers=headers, follow_redirects=True)
        response.raise_for_status()
        # Parsing runs in a worker thread
        return await asyncio.to_thread(extract_main_text, response.text)
