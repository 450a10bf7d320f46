"""Fetcher for AWIN promotions and per-advertiser programme details."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from ..config import AwinConfig, DEFAULT_USER_AGENT
from ..http_client import JsonApiClient, TransientUpstreamError
from ..rate_limit import RateLimiter

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ProgrammeInfo:
    advertiser_id: str | None
    name: str | None
    logo_url: str | None = None
    display_url: str | None = None
    click_through_url: str | None = None
    primary_region: str | None = None
    primary_sector: str | None = None
    strap_line: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ProgrammeInfo":
        region = payload.get("primaryRegion") or {}
        advertiser_id = payload.get("id")
        return cls(
            advertiser_id=str(advertiser_id) if advertiser_id is not None else None,
            name=payload.get("name") or None,
            logo_url=payload.get("logoUrl") or None,
            display_url=payload.get("displayUrl") or None,
            click_through_url=payload.get("clickThroughUrl") or None,
            primary_region=region.get("name") if isinstance(region, Mapping) else None,
            primary_sector=payload.get("primarySector") or None,
            strap_line=payload.get("strapLine") or None,
        )


class AwinFetcher:
    """Read-only client for the AWIN publisher API."""

    def __init__(
        self,
        config: AwinConfig,
        *,
        rate_limiter: RateLimiter | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        api: JsonApiClient | None = None,
    ) -> None:
        self._config = config
        self._rate_limiter = rate_limiter or RateLimiter(config.rate_limit)
        self._api = api or JsonApiClient(
            config.base_url,
            config.api_token,
            user_agent=user_agent,
            timeout=timeout,
            transport=transport,
        )

    def _promotion_query(self, page: int) -> dict[str, Any]:
        return {
            "filters": {
                "exclusiveOnly": False,
                "membership": "joined",
                "regionCodes": list(self._config.region_codes),
                "status": "active",
                "type": "all",
                "updatedSince": "2000-01-01",
            },
            "pagination": {"page": page, "pageSize": self._config.page_size},
        }

    def fetch(self) -> list[dict[str, Any]]:
        return self.fetch_promotions()

    def fetch_promotions(self) -> list[dict[str, Any]]:
        if not self._config.is_configured():
            LOGGER.warning("AWIN token or publisher id not configured; skipping network B")
            return []

        path = f"publisher/{self._config.publisher_id}/promotions/"
        promotions: list[dict[str, Any]] = []
        for page in range(1, self._config.max_pages + 1):
            try:
                payload = self._api.post_json(path, self._promotion_query(page))
            except TransientUpstreamError as exc:
                LOGGER.warning("AWIN promotions page %d failed: %s", page, exc)
                break

            data = payload.get("data") if isinstance(payload, dict) else None
            if not isinstance(data, list):
                LOGGER.warning("AWIN promotions page %d has no 'data' array", page)
                break

            promotions.extend(entry for entry in data if isinstance(entry, dict))
            if len(data) < self._config.page_size:
                break

        LOGGER.info("Fetched %d AWIN promotions", len(promotions))
        return promotions

    def fetch_programme_details(self, advertiser_id: str) -> ProgrammeInfo | None:
        if not self._config.is_configured():
            return None

        waited = self._rate_limiter.acquire()
        if waited:
            LOGGER.debug("Waited %.2fs for AWIN programme details slot", waited)

        path = f"publishers/{self._config.publisher_id}/programmedetails"
        try:
            payload = self._api.get_json(path, params={"advertiserId": advertiser_id})
        except TransientUpstreamError as exc:
            LOGGER.warning("AWIN programme details for advertiser %s failed: %s", advertiser_id, exc)
            return None

        info = payload.get("programmeInfo") if isinstance(payload, dict) else None
        if not isinstance(info, dict):
            LOGGER.warning("AWIN programme details for advertiser %s missing programmeInfo", advertiser_id)
            return None
        return ProgrammeInfo.from_payload(info)

    def test_connection(self) -> bool:
        if not self._config.is_configured():
            return False
        path = f"publisher/{self._config.publisher_id}/promotions/"
        query = self._promotion_query(1)
        query["pagination"]["pageSize"] = 1
        try:
            payload = self._api.post_json(path, query)
        except TransientUpstreamError as exc:
            LOGGER.warning("AWIN connection test failed: %s", exc)
            return False
        return isinstance(payload, dict) and "data" in payload

    def close(self) -> None:
        self._api.close()


__all__ = ["AwinFetcher", "ProgrammeInfo"]
