"""Work item variants and the normalizer that produces them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence, Union

from .text import clean_text

LOGGER = logging.getLogger(__name__)


class Network(str, Enum):
    ADDREVENUE = "addrevenue"
    AWIN = "awin"


class OfferType(str, Enum):
    CODE = "Code"
    SALE = "Sale"


@dataclass(frozen=True, slots=True)
class CampaignOffer:
    """Network A campaign, optionally joined to its advertiser record."""

    campaign: Mapping[str, Any]
    advertiser: Mapping[str, Any] | None = None

    @property
    def network(self) -> Network:
        return Network.ADDREVENUE

    @property
    def external_id(self) -> str:
        return clean_text(self.campaign.get("id"))

    @property
    def advertiser_name(self) -> str:
        return clean_text(self.campaign.get("advertiserName"))

    @property
    def advertiser_id(self) -> str | None:
        if self.advertiser and self.advertiser.get("id") is not None:
            return str(self.advertiser["id"])
        return None


@dataclass(frozen=True, slots=True)
class PromotionOffer:
    """Network B promotion."""

    promotion: Mapping[str, Any]

    @property
    def network(self) -> Network:
        return Network.AWIN

    @property
    def external_id(self) -> str:
        return clean_text(self.promotion.get("promotionId"))

    @property
    def advertiser_name(self) -> str:
        advertiser = self.promotion.get("advertiser") or {}
        return clean_text(advertiser.get("name"))

    @property
    def advertiser_id(self) -> str | None:
        advertiser = self.promotion.get("advertiser") or {}
        value = advertiser.get("id")
        return str(value) if value is not None else None


WorkItem = Union[CampaignOffer, PromotionOffer]


@dataclass(slots=True)
class OfferFields:
    external_id: str
    network: Network
    description: str
    code: str
    tracking_url: str
    valid_until: str
    terms: str
    offer_type: OfferType


def extract_offer_fields(item: WorkItem) -> OfferFields | None:
    """Return the offer fields of a work item, or None when id or description is missing."""

    if isinstance(item, CampaignOffer):
        record = item.campaign
        code = clean_text(record.get("discountCode"))
        fields = OfferFields(
            external_id=item.external_id,
            network=item.network,
            description=clean_text(record.get("description")),
            code=code,
            tracking_url=str(record.get("trackingLink") or "").strip(),
            valid_until=clean_text(record.get("validTo")),
            terms=str(record.get("terms") or "").strip(),
            offer_type=OfferType.CODE if code else OfferType.SALE,
        )
    elif isinstance(item, PromotionOffer):
        record = item.promotion
        voucher = record.get("voucher") or {}
        code = clean_text(voucher.get("code"))
        is_voucher = record.get("type") == "voucher" and bool(code)
        fields = OfferFields(
            external_id=item.external_id,
            network=item.network,
            description=clean_text(record.get("description")),
            code=code,
            tracking_url=str(record.get("urlTracking") or "").strip(),
            valid_until=clean_text(record.get("endDate")),
            terms=str(record.get("terms") or "").strip(),
            offer_type=OfferType.CODE if is_voucher else OfferType.SALE,
        )
    else:
        raise TypeError(f"Unsupported work item {type(item).__name__}")

    if not fields.external_id or not fields.description:
        return None
    return fields


def _market_display_name(record: Mapping[str, Any], market: str) -> str | None:
    markets = record.get("markets")
    if not isinstance(markets, Mapping):
        return None
    entry = markets.get(market)
    if not isinstance(entry, Mapping):
        return None
    name = clean_text(entry.get("displayName"))
    return name or None


def _has_market(record: Mapping[str, Any], market: str) -> bool:
    markets = record.get("markets")
    return isinstance(markets, Mapping) and market in markets


def _promotion_in_market(promotion: Mapping[str, Any], market: str) -> bool:
    regions = promotion.get("regions")
    if not isinstance(regions, Mapping):
        return True
    if regions.get("all"):
        return True
    for region in regions.get("list") or []:
        if isinstance(region, Mapping) and str(region.get("code", "")).upper() == market:
            return True
    return False


def normalize_items(
    advertisers: Iterable[Mapping[str, Any]],
    campaigns: Iterable[Mapping[str, Any]],
    promotions: Iterable[Mapping[str, Any]],
    *,
    market: str = "SE",
) -> list[WorkItem]:
    """Flatten both networks into work items, network A first, discovery order kept."""

    by_display_name: dict[str, Mapping[str, Any]] = {}
    for advertiser in advertisers:
        name = _market_display_name(advertiser, market)
        if name and name not in by_display_name:
            by_display_name[name] = advertiser

    items: list[WorkItem] = []
    skipped = 0
    for campaign in campaigns:
        if not _has_market(campaign, market):
            skipped += 1
            continue
        advertiser_name = clean_text(campaign.get("advertiserName"))
        if not advertiser_name:
            skipped += 1
            continue
        items.append(CampaignOffer(campaign=campaign, advertiser=by_display_name.get(advertiser_name)))

    for promotion in promotions:
        if not _promotion_in_market(promotion, market):
            skipped += 1
            continue
        items.append(PromotionOffer(promotion=promotion))

    LOGGER.info("Normalized %d work items (%d filtered out for market %s)", len(items), skipped, market)
    return items


def item_to_payload(item: WorkItem) -> dict[str, Any]:
    if isinstance(item, CampaignOffer):
        return {
            "kind": "campaign",
            "campaign": dict(item.campaign),
            "advertiser": dict(item.advertiser) if item.advertiser is not None else None,
        }
    if isinstance(item, PromotionOffer):
        return {"kind": "promotion", "promotion": dict(item.promotion)}
    raise TypeError(f"Unsupported work item {type(item).__name__}")


def item_from_payload(payload: Mapping[str, Any]) -> WorkItem:
    kind = payload.get("kind")
    if kind == "campaign":
        return CampaignOffer(campaign=payload["campaign"], advertiser=payload.get("advertiser"))
    if kind == "promotion":
        return PromotionOffer(promotion=payload["promotion"])
    raise ValueError(f"Unknown work item kind {kind!r}")


def items_to_payload(items: Sequence[WorkItem]) -> list[dict[str, Any]]:
    """Serialize work items for durable storage."""

    return [item_to_payload(item) for item in items]


def items_from_payload(payloads: Sequence[Mapping[str, Any]]) -> list[WorkItem]:
    """Reconstruct work items from stored payloads, order preserved."""

    return [item_from_payload(payload) for payload in payloads]


__all__ = [
    "CampaignOffer",
    "Network",
    "OfferFields",
    "OfferType",
    "PromotionOffer",
    "WorkItem",
    "extract_offer_fields",
    "item_from_payload",
    "item_to_payload",
    "items_from_payload",
    "items_to_payload",
    "normalize_items",
]
