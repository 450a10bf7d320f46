from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base
from sqlalchemy.sql import func
import uuid_utils
import uuid


def generate_uuid7():
    """Generate UUIDv7 and convert to standard Python UUID"""
    uuid7_obj = uuid_utils.uuid7()
    return uuid.UUID(str(uuid7_obj))


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests and local runs)
JSONType = JSON().with_variant(JSONB(), "postgresql")

Base = declarative_base()


class Brand(Base):
    __tablename__ = 'brands'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    name = Column(String(300), nullable=False, index=True)
    slug = Column(String(300), unique=True, nullable=False)
    description = Column(Text)
    source_tags = Column(JSONType, nullable=False, default=list)
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    fields = relationship(
        "BrandField",
        back_populates="brand",
        cascade="all, delete-orphan",
        order_by="BrandField.field",
    )
    offers = relationship("Offer", back_populates="brand")

    def __repr__(self):
        return f"<Brand(id={self.id}, name='{self.name}', slug='{self.slug}')>"


class BrandField(Base):
    __tablename__ = 'brand_fields'

    id = Column(Integer, primary_key=True, autoincrement=True)
    brand_id = Column(Uuid(as_uuid=True), ForeignKey('brands.id', ondelete='CASCADE'), nullable=False)
    field = Column(String(100), nullable=False)
    value = Column(Text)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    brand = relationship("Brand", back_populates="fields")

    __table_args__ = (
        UniqueConstraint('brand_id', 'field', name='uq_brand_fields_brand_field'),
    )

    def __repr__(self):
        return f"<BrandField(brand_id={self.brand_id}, field='{self.field}')>"


class Offer(Base):
    __tablename__ = 'offers'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    external_id = Column(String(200), unique=True, nullable=False)
    network = Column(String(50), nullable=False, index=True)
    title = Column(String(500), nullable=False)
    slug = Column(String(600), nullable=False, index=True)
    advertiser_name = Column(String(300), nullable=False, index=True)
    description = Column(Text)
    code = Column(String(200))
    tracking_url = Column(String(2000))
    valid_until = Column(Date, index=True)
    terms_html = Column(Text)
    offer_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default='published', index=True)
    categories = Column(JSONType, nullable=False, default=list)
    brand_id = Column(Uuid(as_uuid=True), ForeignKey('brands.id', ondelete='SET NULL'), index=True)
    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    brand = relationship("Brand", back_populates="offers")

    def __repr__(self):
        return f"<Offer(id={self.id}, external_id='{self.external_id}', title='{self.title[:30]}...')>"


class SyncStateRecord(Base):
    __tablename__ = 'sync_state'

    key = Column(String(50), primary_key=True)
    run_id = Column(String(64), nullable=False)
    items = Column(JSONType, nullable=False)
    cursor = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime, nullable=False)
    for_date = Column(Date, nullable=False)
    manual = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class ProcessingLock(Base):
    __tablename__ = 'processing_locks'

    name = Column(String(50), primary_key=True)
    owner = Column(String(64), nullable=False)
    acquired_at = Column(DateTime, nullable=False)


class RetryEntry(Base):
    __tablename__ = 'retry_schedule'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    kind = Column(String(50), nullable=False)
    input_key = Column(String(64), nullable=False)
    payload = Column(JSONType, nullable=False)
    not_before = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_retry_schedule_not_before', 'not_before'),
        UniqueConstraint('kind', 'input_key', name='uq_retry_schedule_kind_key'),
    )


class RecoveredText(Base):
    __tablename__ = 'recovered_texts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(50), nullable=False)
    input_key = Column(String(64), nullable=False)
    text = Column(Text, nullable=False)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('kind', 'input_key', name='uq_recovered_texts_kind_key'),
        Index('ix_recovered_texts_created_at', 'created_at'),
    )


class SyncOption(Base):
    __tablename__ = 'sync_options'

    key = Column(String(100), primary_key=True)
    value = Column(JSONType)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)
