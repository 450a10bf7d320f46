"""Brand resolution (exact, then fuzzy) and brand content updates."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping

from .content_store import BrandRecord, ContentStore
from .enrichment import ContentEnricher, GenerationKind, PENDING
from .formatting import append_hashtags, has_hashtags
from .items import CampaignOffer, Network, PromotionOffer, WorkItem
from .notifications import SyncNotifier
from .shortener import YourlsShortener
from .sources.awin import ProgrammeInfo
from .text import clean_text, normalize_key, similarity_percent, slugify

LOGGER = logging.getLogger(__name__)

REGION_CODES = ("EU", "UK", "US", "CA", "AU", "NZ", "SE", "NO", "DK", "FI")

_REGION_SUFFIX_RE = re.compile(r"\s+(?:" + "|".join(REGION_CODES) + r")\s*$", re.IGNORECASE)


def clean_brand_name(raw_name: str) -> str:
    """Drop trailing region codes such as ``Acme SE`` or ``Acme UK`` and trim."""

    name = clean_text(raw_name)
    previous = None
    while previous != name:
        previous = name
        name = _REGION_SUFFIX_RE.sub("", name).strip()
    return name


def brand_slug(name: str) -> str:
    return slugify(f"{name}-discountcodes")


@dataclass(slots=True)
class BrandHandle:
    id: str
    name: str
    slug: str
    created: bool = False
    match: str = "exact"


class BrandResolver:
    """Find the brand for an advertiser name, creating it when nothing is close enough."""

    def __init__(
        self,
        store: ContentStore,
        notifier: SyncNotifier | None = None,
        *,
        similarity_threshold: float = 80.0,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._threshold = similarity_threshold

    def resolve(self, raw_name: str, network: Network | None = None) -> BrandHandle:
        name = clean_brand_name(raw_name)
        if not name:
            raise ValueError(f"Brand name {raw_name!r} is empty after cleaning")

        existing = self._store.find_brand(name)
        if existing is not None:
            return self._handle(existing, network, match="exact")

        fuzzy = self._fuzzy_match(name)
        if fuzzy is not None:
            return self._handle(fuzzy, network, match="fuzzy")

        created = self._store.create_brand(name, brand_slug(name))
        if network is not None:
            self._store.add_brand_source(created.id, network)
        LOGGER.info("Created brand %s (%s)", created.name, created.slug)
        if self._notifier is not None:
            self._notifier.brand_created(name=created.name, brand_id=created.id)
        return BrandHandle(id=created.id, name=created.name, slug=created.slug, created=True, match="created")

    def _fuzzy_match(self, name: str) -> BrandRecord | None:
        candidate = normalize_key(name)
        if not candidate:
            return None

        best: BrandRecord | None = None
        best_score = 0.0
        for brand in self._store.list_brands():
            existing = normalize_key(brand.name)
            if existing == candidate:
                LOGGER.info("Brand %r matched %r after normalisation", name, brand.name)
                return brand
            score = similarity_percent(candidate, existing)
            if score > best_score:
                best, best_score = brand, score

        if best is not None and best_score > self._threshold:
            LOGGER.info("Fuzzy brand match %r -> %r (%.1f%%)", name, best.name, best_score)
            return best
        return None

    def _handle(self, brand: BrandRecord, network: Network | None, *, match: str) -> BrandHandle:
        if network is not None and network.value not in brand.source_tags:
            self._store.add_brand_source(brand.id, network)
        return BrandHandle(id=brand.id, name=brand.name, slug=brand.slug, match=match)


@dataclass(slots=True)
class BrandProfile:
    """Brand attributes taken from whichever network supplied the work item."""

    name: str
    popular: bool | None = None
    logo_url: str | None = None
    site_url: str | None = None
    tracking_url: str | None = None
    sector: str | None = None
    tagline: str | None = None
    awin_id: str | None = None
    primary_region: str | None = None


def _market_entry(advertiser: Mapping[str, Any], market: str) -> Mapping[str, Any]:
    markets = advertiser.get("markets")
    if isinstance(markets, Mapping) and isinstance(markets.get(market), Mapping):
        return markets[market]
    return {}


def brand_profile_for(
    item: WorkItem,
    programme: ProgrammeInfo | None = None,
    *,
    market: str = "SE",
) -> BrandProfile:
    if isinstance(item, CampaignOffer):
        advertiser = item.advertiser or {}
        market_entry = _market_entry(advertiser, market)
        relation = advertiser.get("relation") or {}
        popular = None
        if "featured" in advertiser:
            popular = advertiser.get("featured") is True
        return BrandProfile(
            name=clean_text(market_entry.get("displayName")) or item.advertiser_name,
            popular=popular,
            logo_url=advertiser.get("logoImageFilename") or None,
            site_url=market_entry.get("url") or None,
            tracking_url=relation.get("trackingLink") or None,
        )
    if isinstance(item, PromotionOffer):
        if programme is None:
            return BrandProfile(name=item.advertiser_name, awin_id=item.advertiser_id)
        return BrandProfile(
            name=programme.name or item.advertiser_name,
            logo_url=programme.logo_url,
            site_url=programme.display_url,
            tracking_url=programme.click_through_url,
            sector=programme.primary_sector,
            tagline=programme.strap_line,
            awin_id=programme.advertiser_id or item.advertiser_id,
            primary_region=programme.primary_region,
        )
    raise TypeError(f"Unsupported work item {type(item).__name__}")


class BrandUpdater:
    """Fill missing brand fields from upstream data and generated content."""

    def __init__(
        self,
        store: ContentStore,
        enricher: ContentEnricher,
        shortener: YourlsShortener | None = None,
    ) -> None:
        self._store = store
        self._enricher = enricher
        self._shortener = shortener

    def update(self, brand: BrandRecord, profile: BrandProfile) -> list[str]:
        """Apply the profile to ``brand`` and return the names of the fields written."""

        updated: list[str] = []

        def write(field: str, value: str | None) -> None:
            self._store.update_brand_field(brand.id, field, value)
            updated.append(field)

        if profile.popular is not None:
            flag = "1" if profile.popular else "0"
            if brand.field_value("popular") != flag:
                write("popular", flag)

        if profile.logo_url and not brand.field_value("featured_image"):
            write("featured_image", profile.logo_url)

        if profile.site_url and not brand.field_value("site_link"):
            write("site_link", profile.site_url)

        if profile.tracking_url and not brand.field_value("affiliate_link"):
            link = None
            if self._shortener is not None:
                link = self._shortener.create_short_url(profile.tracking_url, brand.name)
            write("affiliate_link", link or profile.tracking_url)

        description = brand.field_value("description") or ""
        if not description.strip():
            generated = self._enricher.generate(
                GenerationKind.BRAND_DESCRIPTION,
                {
                    "brand_name": brand.name,
                    "sector": profile.sector or "",
                    "tagline": profile.tagline or "",
                },
            )
            if generated is not PENDING:
                write("description", generated)
        elif not has_hashtags(description):
            write("description", append_hashtags(description, brand.name))

        if not brand.field_value("why_we_love"):
            generated = self._enricher.generate(GenerationKind.WHY_WE_LOVE, {"brand_name": brand.name})
            if generated is not PENDING:
                write("why_we_love", generated)

        if profile.awin_id and brand.field_value("awin_id") != profile.awin_id:
            write("awin_id", profile.awin_id)
        if profile.primary_region and not brand.field_value("primary_region"):
            write("primary_region", profile.primary_region)
        if profile.sector and not brand.field_value("primary_sector"):
            write("primary_sector", profile.sector)

        if updated:
            LOGGER.info("Updated brand %s fields: %s", brand.name, ", ".join(updated))
        return updated


__all__ = [
    "BrandHandle",
    "BrandProfile",
    "BrandResolver",
    "BrandUpdater",
    "REGION_CODES",
    "brand_profile_for",
    "brand_slug",
    "clean_brand_name",
]
