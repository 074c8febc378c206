# backend/identity_sync/models.py
"""
SQLAlchemy ORM models for the identity sync pipeline.

Tables:
1. tenant_accounts   - one row per CID, status + channel settings
2. tenant_watermarks - per-CID delta-sync cursor for pixel ingestion
3. identity_records  - one row per (CID, visitor hash), enrichment + channel cursors
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Integer, Text, DateTime, JSON, Index, UniqueConstraint, CheckConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator

from identity_sync.database import Base


# JSONB on Postgres, plain JSON elsewhere (sqlite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    Values are converted to UTC on the way in; naive values coming back
    (sqlite drops tzinfo) are tagged as UTC on the way out.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ============================================================================
# TENANT MODELS
# ============================================================================

class TenantAccount(Base):
    """Business tenant (CID) and its channel settings."""
    __tablename__ = "tenant_accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, unique=True, index=True)
    account_name = Column(String(255))
    account_level = Column(String(50))  # identity_resolution, intent_flow_accelerator, handwritten_connect
    status = Column(String(20), nullable=False, default="active")
    settings = Column(JSONType, default=dict)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'inactive', 'suspended')", name="chk_tenant_account_status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def __repr__(self):
        return f"<TenantAccount(tenant_id='{self.tenant_id}', status='{self.status}')>"


class TenantWatermark(Base):
    """Delta-sync cursor for pixel ingestion. last_synced_at only moves forward."""
    __tablename__ = "tenant_watermarks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, unique=True, index=True)
    last_synced_at = Column(UTCDateTime)
    synced_count = Column(Integer, nullable=False, default=0)     # cumulative records synced
    last_batch_count = Column(Integer, nullable=False, default=0)  # records in the last run
    sync_runs = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow)

    def __repr__(self):
        return f"<TenantWatermark(tenant_id='{self.tenant_id}', last_synced_at={self.last_synced_at})>"


# ============================================================================
# IDENTITY RECORD
# ============================================================================

class IdentityRecord(Base):
    """
    Canonical identity record for one visitor hash within one tenant.

    Enrichment results are stored as flattened top-level columns; the raw
    provider object is kept in enrichment_data for audit only.
    """
    __tablename__ = "identity_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    visitor_hash = Column(String(32), nullable=False)
    source = Column(String(50), default="pixel_endpoint")

    # Capture metadata
    url = Column(Text)
    last_page_viewed = Column(Text)
    session_id = Column(String(255))
    var1 = Column(String(255))
    var2 = Column(String(255))
    event_ts = Column(UTCDateTime)
    captured_at = Column(UTCDateTime, default=utcnow)

    # Enrichment lifecycle
    enrichment_status = Column(String(20), default="pending")
    enrichment_error = Column(String(500))
    retry_count = Column(Integer, default=0)
    enrichment_data = Column(JSONType)

    # Identity
    first_name = Column(String(255))
    last_name = Column(String(255))
    email = Column(String(255))
    best_email = Column(String(255))
    best_email_quality = Column(Integer)
    gender = Column(String(20))
    birth_date = Column(String(20))
    age = Column(Integer)
    marital_status = Column(String(50))
    ips = Column(JSONType)

    # Postal address
    address = Column(String(255))
    city = Column(String(100))
    state = Column(String(50))
    zip = Column(String(20))

    # Household & real estate attributes (provider text, e.g. "$200K to $249K")
    household_income = Column(String(100))
    home_ownership = Column(String(100))
    length_of_residence = Column(String(50))
    household_persons = Column(Integer)
    household_children = Column(Integer)
    mortgage_loan_type = Column(String(100))
    mortgage_amount = Column(String(50))
    mortgage_age = Column(String(50))
    home_price = Column(String(50))
    home_value = Column(String(50))

    # Per-channel sync cursors
    email_synced_at = Column(UTCDateTime)
    note_synced_at = Column(UTCDateTime)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "visitor_hash", name="uq_identity_records_tenant_hash"),
        CheckConstraint(
            "enrichment_status IN ('pending', 'completed', 'failed')",
            name="chk_identity_records_enrichment_status"
        ),
        Index("idx_identity_records_tenant_updated", "tenant_id", "updated_at"),
    )

    def __repr__(self):
        return (
            f"<IdentityRecord(id={self.id}, tenant_id='{self.tenant_id}', "
            f"hash='{(self.visitor_hash or '')[:8]}...', status='{self.enrichment_status}')>"
        )


# Columns a caller may set through the store's update/upsert operations
CAPTURE_FIELDS = frozenset({
    "source", "url", "last_page_viewed", "session_id", "var1", "var2", "event_ts", "captured_at",
})
ENRICHMENT_FIELDS = frozenset({
    "enrichment_status", "enrichment_error", "retry_count", "enrichment_data",
    "first_name", "last_name", "email", "best_email", "best_email_quality",
    "gender", "birth_date", "age", "marital_status", "ips",
    "address", "city", "state", "zip",
    "household_income", "home_ownership", "length_of_residence",
    "household_persons", "household_children",
    "mortgage_loan_type", "mortgage_amount", "mortgage_age", "home_price", "home_value",
})
CHANNEL_SYNC_FIELDS = frozenset({"email_synced_at", "note_synced_at"})
