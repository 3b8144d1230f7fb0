"""
Website liveness and name plausibility check.

A live site whose host mentions the company name raises the website score;
an unreachable one lowers it. Nothing is ever removed from the result.
"""

import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import httpx

from core.config import settings

logger = logging.getLogger(__name__)

# Generic words that say nothing about which company a host belongs to
_STOPWORDS = {
    "the", "and", "inc", "llc", "ltd", "corp", "company", "group", "sas", "sa",
    "srl", "cia", "los", "las", "del", "de", "la", "el", "y",
}

UNREACHABLE_PENALTY = 0.8


@dataclass
class UrlCheck:
    url: str
    accessible: bool
    status_code: Optional[int] = None
    final_url: Optional[str] = None
    has_ssl: bool = False
    name_match: bool = False
    error: Optional[str] = None

    @property
    def confidence(self) -> float:
        """How much the check itself vouches for the URL."""
        if not self.accessible:
            return 0.0
        return 1.0 if self.name_match else 0.7


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).lower()


def name_matches_host(name: str, url: str) -> bool:
    """True when a significant word of ``name`` appears in the URL host."""
    if not name or not url:
        return False
    if "://" not in url:
        url = f"https://{url}"
    host = _fold(urlparse(url).hostname or "")
    host = re.sub(r"[^a-z0-9]", "", host)
    if not host:
        return False

    tokens = [t for t in re.split(r"[^a-z0-9]+", _fold(name)) if len(t) >= 3 and t not in _STOPWORDS]
    if not tokens:
        return False
    return any(token in host for token in tokens) or "".join(tokens) in host


def adjust_website_score(score: float, check: UrlCheck) -> float:
    if check.accessible:
        return min((score + check.confidence) / 2 * 1.1, 1.0)
    return score * UNREACHABLE_PENALTY


class UrlVerifier:
    """HEAD the URL over HTTPS, falling back to plain HTTP."""

    def __init__(self, timeout: Optional[float] = None, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout if timeout is not None else settings.URL_VERIFY_TIMEOUT_SECONDS
        self._client = client

    async def _head(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        return await client.head(url, follow_redirects=True, timeout=self.timeout)

    async def verify(self, url: str, company_name: str) -> UrlCheck:
        normalized = url.strip()
        if not normalized.startswith(("http://", "https://")):
            normalized = f"https://{normalized}"

        check = UrlCheck(url=normalized, accessible=False, has_ssl=normalized.startswith("https://"))
        candidates = [normalized]
        if normalized.startswith("https://"):
            candidates.append("http://" + normalized[len("https://"):])

        if self._client is not None:
            await self._try(self._client, candidates, check)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                await self._try(client, candidates, check)

        check.name_match = name_matches_host(company_name, check.final_url or check.url)
        logger.debug(
            f"URL check {check.url}: accessible={check.accessible}, "
            f"status={check.status_code}, name_match={check.name_match}"
        )
        return check

    async def _try(self, client: httpx.AsyncClient, candidates, check: UrlCheck) -> None:
        for candidate in candidates:
            try:
                response = await self._head(client, candidate)
            except httpx.HTTPError as e:
                check.error = f"{type(e).__name__}: {str(e)}"
                continue

            check.url = candidate
            check.status_code = response.status_code
            # Some servers refuse HEAD but are otherwise up
            check.accessible = response.status_code < 400 or response.status_code == 405
            final_url = str(response.url)
            if final_url != candidate:
                check.final_url = final_url
            check.has_ssl = (check.final_url or candidate).startswith("https://")
            check.error = None
            return

        if len(candidates) > 1:
            check.error = "URL not accessible via HTTPS or HTTP"
