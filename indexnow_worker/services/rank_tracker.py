"""Search-engine rank checks through the Firecrawl search API."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx

from indexnow_worker.errors import ExternalServiceError, ExternalTimeoutError

logger = logging.getLogger(__name__)

SEARCH_RESULT_LIMIT = 100


@dataclass
class RankResult:
    """Outcome of one rank check; ``position`` is None when not in the top 100."""
    keyword: str
    device: str
    country: str
    position: Optional[int] = None
    url: Optional[str] = None
    title: Optional[str] = None
    search_results: list[dict[str, Any]] = field(default_factory=list)

    @property
    def found_in_top_100(self) -> bool:
        return self.position is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "keyword": self.keyword,
            "device": self.device,
            "country": self.country,
            "position": self.position,
            "url": self.url,
            "title": self.title,
            "search_results": self.search_results,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RankResult":
        return cls(**{k: data.get(k) for k in ("keyword", "device", "country", "position", "url", "title")},
                   search_results=data.get("search_results") or [])


def strip_url_parameters(url: Optional[str]) -> Optional[str]:
    """Drop query string and fragment from a result URL."""
    if not url:
        return url
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def find_domain_position(results: list[dict[str, Any]], domain: str) -> tuple[Optional[int], Optional[dict]]:
    """1-based position of the first result whose URL contains ``domain``."""
    needle = domain.lower()
    for index, result in enumerate(results):
        if needle and needle in (result.get("url") or "").lower():
            return index + 1, result
    return None, None


class RankTracker:
    """Client for the Firecrawl ``/v1/search`` endpoint."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.firecrawl.dev",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))

    async def aclose(self) -> None:
        await self._client.aclose()

    async def check_rank(self, keyword: str, domain: str, country: str = "us", device: str = "desktop") -> RankResult:
        """
        Look up ``domain`` in the top 100 results for ``keyword``.

        Raises:
            ExternalServiceError: no API key, HTTP error or unreadable response
            ExternalTimeoutError: the request timed out
        """
        if not self.api_key:
            raise ExternalServiceError("No Firecrawl API key configured")

        logger.info(f"Checking rank for '{keyword}' ({domain}, {country}, {device})")
        try:
            response = await self._client.post(
                f"{self.base_url}/v1/search",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "query": keyword,
                    "search_options": {
                        "limit": SEARCH_RESULT_LIMIT,
                        "location": country.lower(),
                        "device": device,
                    },
                },
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise ExternalTimeoutError(f"Firecrawl search timed out for '{keyword}'") from e
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                f"Firecrawl API error: HTTP {e.response.status_code}",
                details={"status_code": e.response.status_code},
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ExternalServiceError(f"Firecrawl request failed: {e}") from e

        results = data.get("data") or []
        position, match = find_domain_position(results, domain)
        result = RankResult(
            keyword=keyword,
            device=device,
            country=country,
            position=position,
            url=strip_url_parameters(match.get("url")) if match else None,
            title=match.get("title") if match else None,
            search_results=[
                {"position": i + 1, "url": r.get("url"), "title": r.get("title")}
                for i, r in enumerate(results[:10])
            ],
        )
        logger.info(
            f"Rank check for '{keyword}': "
            + (f"position {position}" if position else "not in top 100")
        )
        return result
