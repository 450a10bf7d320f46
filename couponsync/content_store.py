"""Content store collaborator: brands, brand fields and offers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, Protocol
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import Brand, BrandField, Offer, generate_uuid7

from .items import Network, OfferType

LOGGER = logging.getLogger(__name__)

COUPON_CATEGORIES_FIELD = "coupon_categories"


def split_categories(value: str | None) -> list[str]:
    """Brand category fields hold a comma separated list of category names."""

    if not value:
        return []
    categories: list[str] = []
    for part in value.split(","):
        name = part.strip()
        if name and name not in categories:
            categories.append(name)
    return categories


class ContentStoreError(RuntimeError):
    """Raised when the content store cannot be read or written."""


class PersistenceConflict(RuntimeError):
    """Raised when an offer with the same external id already exists."""


@dataclass(slots=True)
class BrandRecord:
    id: str
    name: str
    slug: str
    description: str | None = None
    source_tags: set[str] = field(default_factory=set)
    fields: dict[str, str | None] = field(default_factory=dict)

    def field_value(self, name: str) -> str | None:
        if name == "description":
            return self.description
        return self.fields.get(name)


@dataclass(slots=True)
class NewOffer:
    external_id: str
    network: Network
    title: str
    slug: str
    advertiser_name: str
    description: str
    code: str
    tracking_url: str
    valid_until: Optional[date]
    terms_html: str
    offer_type: OfferType


class ContentStore(Protocol):
    def find_brand(self, name: str) -> BrandRecord | None: ...

    def get_brand(self, brand_id: str) -> BrandRecord | None: ...

    def list_brands(self) -> list[BrandRecord]: ...

    def create_brand(self, name: str, slug: str) -> BrandRecord: ...

    def update_brand_field(self, brand_id: str, field: str, value: str | None) -> None: ...

    def add_brand_source(self, brand_id: str, network: Network) -> None: ...

    def find_offer_by_external_id(self, external_id: str) -> str | None: ...

    def create_offer(self, offer: NewOffer) -> str: ...

    def attach_taxonomy(self, offer_id: str, brand_id: str) -> None: ...

    def purge_expired_offers(self, today: date) -> int: ...


class SqlContentStore:
    """SQLAlchemy implementation of the content store."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    def _run(self, operation):
        try:
            with self._session_factory() as session:
                result = operation(session)
                session.commit()
                return result
        except (PersistenceConflict, ContentStoreError):
            raise
        except SQLAlchemyError as exc:
            raise ContentStoreError(str(exc)) from exc

    @staticmethod
    def _to_record(brand: Brand) -> BrandRecord:
        return BrandRecord(
            id=str(brand.id),
            name=brand.name,
            slug=brand.slug,
            description=brand.description,
            source_tags=set(brand.source_tags or []),
            fields={entry.field: entry.value for entry in brand.fields},
        )

    def find_brand(self, name: str) -> BrandRecord | None:
        cleaned = name.strip().lower()
        if not cleaned:
            return None

        def operation(session: Session) -> BrandRecord | None:
            brand = (
                session.query(Brand)
                .filter(func.lower(Brand.name) == cleaned)
                .order_by(Brand.created_at)
                .first()
            )
            return self._to_record(brand) if brand is not None else None

        return self._run(operation)

    def get_brand(self, brand_id: str) -> BrandRecord | None:
        def operation(session: Session) -> BrandRecord | None:
            brand = session.get(Brand, UUID(brand_id))
            return self._to_record(brand) if brand is not None else None

        return self._run(operation)

    def list_brands(self) -> list[BrandRecord]:
        return self._run(
            lambda session: [self._to_record(brand) for brand in session.query(Brand).order_by(Brand.name)]
        )

    def create_brand(self, name: str, slug: str) -> BrandRecord:
        def operation(session: Session) -> BrandRecord:
            unique_slug = self._unique_slug(session, slug)
            brand = Brand(id=generate_uuid7(), name=name, slug=unique_slug, source_tags=[])
            session.add(brand)
            session.flush()
            return self._to_record(brand)

        return self._run(operation)

    @staticmethod
    def _unique_slug(session: Session, slug: str) -> str:
        candidate = slug or "brand"
        suffix = 2
        while session.query(Brand.id).filter(Brand.slug == candidate).first() is not None:
            candidate = f"{slug}-{suffix}"
            suffix += 1
        return candidate

    def update_brand_field(self, brand_id: str, field: str, value: str | None) -> None:
        def operation(session: Session) -> None:
            brand = session.get(Brand, UUID(brand_id))
            if brand is None:
                raise ContentStoreError(f"Brand {brand_id} not found")
            if field == "description":
                brand.description = value
                return
            entry = (
                session.query(BrandField)
                .filter(BrandField.brand_id == brand.id, BrandField.field == field)
                .one_or_none()
            )
            if entry is None:
                session.add(BrandField(brand_id=brand.id, field=field, value=value))
            else:
                entry.value = value

        self._run(operation)

    def add_brand_source(self, brand_id: str, network: Network) -> None:
        def operation(session: Session) -> None:
            brand = session.get(Brand, UUID(brand_id))
            if brand is None:
                raise ContentStoreError(f"Brand {brand_id} not found")
            tags = list(brand.source_tags or [])
            if network.value not in tags:
                brand.source_tags = tags + [network.value]

        self._run(operation)

    def find_offer_by_external_id(self, external_id: str) -> str | None:
        def operation(session: Session) -> str | None:
            offer_id = session.query(Offer.id).filter(Offer.external_id == external_id).scalar()
            return str(offer_id) if offer_id is not None else None

        return self._run(operation)

    def create_offer(self, offer: NewOffer) -> str:
        def operation(session: Session) -> str:
            record = Offer(
                id=generate_uuid7(),
                external_id=offer.external_id,
                network=offer.network.value,
                title=offer.title,
                slug=offer.slug,
                advertiser_name=offer.advertiser_name,
                description=offer.description,
                code=offer.code or None,
                tracking_url=offer.tracking_url or None,
                valid_until=offer.valid_until,
                terms_html=offer.terms_html,
                offer_type=offer.offer_type.value,
            )
            session.add(record)
            try:
                session.flush()
            except IntegrityError as exc:
                session.rollback()
                raise PersistenceConflict(f"Offer {offer.external_id} already exists") from exc
            return str(record.id)

        return self._run(operation)

    def attach_taxonomy(self, offer_id: str, brand_id: str) -> None:
        def operation(session: Session) -> None:
            offer = session.get(Offer, UUID(offer_id))
            if offer is None:
                raise ContentStoreError(f"Offer {offer_id} not found")
            offer.brand_id = UUID(brand_id)
            categories = (
                session.query(BrandField.value)
                .filter(BrandField.brand_id == offer.brand_id, BrandField.field == COUPON_CATEGORIES_FIELD)
                .scalar()
            )
            offer.categories = split_categories(categories)
            if offer.categories:
                LOGGER.debug("Offer %s inherits categories %s", offer.external_id, offer.categories)

        self._run(operation)

    def purge_expired_offers(self, today: date) -> int:
        def operation(session: Session) -> int:
            return (
                session.query(Offer)
                .filter(
                    Offer.status == "published",
                    Offer.valid_until.isnot(None),
                    Offer.valid_until < today,
                )
                .update({Offer.status: "expired"}, synchronize_session=False)
            )

        purged = self._run(operation)
        if purged:
            LOGGER.info("Marked %d expired offers", purged)
        return purged

    def count_offers(self) -> int:
        return self._run(lambda session: session.query(func.count(Offer.id)).scalar() or 0)


__all__ = [
    "BrandRecord",
    "COUPON_CATEGORIES_FIELD",
    "ContentStore",
    "ContentStoreError",
    "NewOffer",
    "PersistenceConflict",
    "SqlContentStore",
    "split_categories",
]
