"""Keyword intelligence enrichment from the SeRanking keyword data API.

Keywords without a keyword-bank reference are looked up once per
(keyword, country); bank rows younger than 30 days are reused instead of
calling the API again.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from indexnow_worker.db.repositories import KeywordBankRepository
from indexnow_worker.errors import ExternalServiceError, ExternalTimeoutError
from indexnow_worker.lib.timeouts import run_with_timeout

logger = logging.getLogger(__name__)

CACHE_MAX_AGE = timedelta(days=30)
EXPORT_COLUMNS = "keyword,volume,cpc,competition,difficulty,history_trend,intents"


class SeRankingClient:
    """Client for ``POST /v1/keywords/export``."""

    def __init__(
        self,
        base_url: str = "https://api.seranking.com",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_keyword_data(self, keywords: list[str], country_code: str, api_key: str) -> list[dict[str, Any]]:
        """
        Fetch search volume, CPC, difficulty and trend data.

        Args:
            keywords: Up to 100 keywords
            country_code: Lower-case ISO2 code of the search database
            api_key: SeRanking API token

        Raises:
            ExternalServiceError / ExternalTimeoutError
        """
        if not keywords or len(keywords) > 100:
            raise ValueError("Between 1 and 100 keywords are allowed per request")

        form = {"keywords[]": [k.strip() for k in keywords], "cols": EXPORT_COLUMNS}
        try:
            response = await self._client.post(
                f"{self.base_url}/v1/keywords/export",
                params={"source": country_code},
                data=form,
                headers={"Authorization": f"Token {api_key}"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise ExternalTimeoutError("SeRanking keyword export timed out") from e
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                f"SeRanking API error: HTTP {e.response.status_code}",
                details={"status_code": e.response.status_code},
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ExternalServiceError(f"SeRanking request failed: {e}") from e

        return data if isinstance(data, list) else data.get("data", [])


def _bank_row(keyword: str, country_id: str, item: Optional[dict[str, Any]], now: datetime) -> dict[str, Any]:
    item = item or {}
    intents = item.get("intents") or []
    return {
        "keyword": keyword.lower(),
        "country_id": country_id,
        "language_code": "en",
        "is_data_found": bool(item.get("is_data_found", bool(item))),
        "volume": item.get("volume"),
        "cpc": item.get("cpc"),
        "competition": item.get("competition"),
        "difficulty": item.get("difficulty"),
        "history_trend": item.get("history_trend"),
        "keyword_intent": intents[0] if intents else item.get("keyword_intent"),
        "data_updated_at": now.isoformat(),
    }


class KeywordEnricher:
    """Attach keyword-bank intelligence to tracked keywords."""

    def __init__(
        self,
        repository: KeywordBankRepository,
        client: SeRankingClient,
        batch_size: int = 50,
        timeout_seconds: float = 60.0,
    ):
        self.repository = repository
        self.client = client
        self.batch_size = batch_size
        self.timeout_seconds = timeout_seconds

    async def process_enrichment_job(self) -> dict[str, Any]:
        """
        Enrich up to ``batch_size`` keywords.

        Per-keyword failures are logged and counted; they do not stop the pass.
        """
        api_key = await self.repository.get_api_key()
        if not api_key:
            logger.warning("Keyword enrichment skipped: no active SeRanking integration")
            return {"processed": 0, "successful": 0, "failed": 0, "total": 0, "skipped": "no_api_key"}

        keywords = await self.repository.find_unenriched(self.batch_size)
        successful = 0
        failed = 0
        for keyword in keywords:
            try:
                if await self.enrich_keyword(keyword, api_key):
                    successful += 1
                else:
                    failed += 1
            except Exception as e:
                failed += 1
                logger.error(f"Keyword enrichment failed for {keyword.get('id')}: {e}")

        logger.info(f"Keyword enrichment processed {len(keywords)} keyword(s), {successful} enriched")
        return {"processed": len(keywords), "successful": successful, "failed": failed, "total": len(keywords)}

    async def enrich_keyword(self, keyword: dict[str, Any], api_key: str) -> bool:
        """Returns False when the keyword cannot be enriched (unknown country)."""
        country = await self.repository.get_country(keyword["country_id"]) if keyword.get("country_id") else None
        if not country:
            logger.error(f"No country {keyword.get('country_id')} for keyword {keyword['id']}")
            return False

        now = datetime.now(timezone.utc)
        bank = await self.repository.get_cached(keyword["keyword"], country["id"], now - CACHE_MAX_AGE)
        if bank is None:
            items = await run_with_timeout(
                self.client.fetch_keyword_data([keyword["keyword"]], country["iso2_code"].lower(), api_key),
                self.timeout_seconds,
                "seranking.keywords_export",
            )
            match = next(
                (i for i in items if (i.get("keyword") or "").lower() == keyword["keyword"].lower()),
                items[0] if items else None,
            )
            bank = await self.repository.upsert_bank_entry(_bank_row(keyword["keyword"], country["id"], match, now))

        await self.repository.link_keyword(keyword["id"], bank)
        return True
