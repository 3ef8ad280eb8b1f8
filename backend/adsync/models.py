"""SQLAlchemy ORM models and enums.

This module defines the warehouse schema the sync engine writes into:
client accounts (tenant registry with encrypted credentials), the Meta
structural hierarchy (account → campaign → ad set → ad) keyed by the
upstream ids, and one daily fact row per (ad, date).
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import declarative_base, relationship


# Single Base used by the entire package
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every DateTime column here."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_values(obj):
    return [e.value for e in obj]


# Enums ---------------------------------------------------------

class SyncStatusEnum(str, enum.Enum):
    pending = "pending"
    syncing = "syncing"
    success = "success"
    failed = "failed"


class CampaignObjectiveEnum(str, enum.Enum):
    outcome_awareness = "OUTCOME_AWARENESS"
    outcome_traffic = "OUTCOME_TRAFFIC"
    outcome_engagement = "OUTCOME_ENGAGEMENT"
    outcome_leads = "OUTCOME_LEADS"
    outcome_app_promotion = "OUTCOME_APP_PROMOTION"
    outcome_sales = "OUTCOME_SALES"


class EntityStatusEnum(str, enum.Enum):
    """Delivery status shared by campaigns and ad sets."""
    active = "ACTIVE"
    paused = "PAUSED"
    deleted = "DELETED"
    archived = "ARCHIVED"


class AdStatusEnum(str, enum.Enum):
    active = "ACTIVE"
    paused = "PAUSED"
    deleted = "DELETED"
    archived = "ARCHIVED"
    pending_review = "PENDING_REVIEW"
    disapproved = "DISAPPROVED"
    preapproved = "PREAPPROVED"
    pending_billing_info = "PENDING_BILLING_INFO"
    campaign_paused = "CAMPAIGN_PAUSED"
    adset_paused = "ADSET_PAUSED"
    in_process = "IN_PROCESS"
    with_issues = "WITH_ISSUES"


# Tenant registry -------------------------------------------------

class ClientAccount(Base):
    """One advertiser tenant and its Meta credentials.

    Credentials are stored encrypted (see adsync/security.py). Rows are
    soft-deactivated via `is_active`, never hard-deleted while fact rows
    reference the account.
    """
    __tablename__ = "client_accounts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_name = Column(String, nullable=False)
    # Upstream ad account id without the "act_" prefix
    meta_account_id = Column(String, nullable=False, unique=True, index=True)

    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    timezone = Column(String, nullable=False, default="America/New_York")
    currency = Column(String(3), nullable=False, default="USD")
    is_active = Column(Boolean, nullable=False, default=True)
    is_system_user = Column(Boolean, nullable=False, default=False)

    business_name = Column(String, nullable=True)
    business_id = Column(String, nullable=True)
    contact_email = Column(String, nullable=True)
    contact_name = Column(String, nullable=True)

    # Sync lifecycle, mutated only through AccountRegistry.update_sync_status
    sync_status = Column(
        Enum(SyncStatusEnum, values_callable=_enum_values, name="sync_status"),
        nullable=False,
        default=SyncStatusEnum.pending,
    )
    sync_error = Column(Text, nullable=True)
    sync_started_at = Column(DateTime, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<ClientAccount {self.meta_account_id} ({self.client_name}) {self.sync_status}>"


# Structural hierarchy ----------------------------------------------

class Account(Base):
    """Meta ad account as reported by the upstream API."""
    __tablename__ = "accounts"

    id = Column(String, primary_key=True)  # numeric id, no "act_" prefix
    name = Column(String, nullable=False)
    currency = Column(String(3), nullable=True)
    timezone = Column(String, nullable=True)
    business_id = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    campaigns = relationship("Campaign", back_populates="account")


class Campaign(Base):
    __tablename__ = "campaigns"

    id = Column(String, primary_key=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    objective = Column(
        Enum(CampaignObjectiveEnum, values_callable=_enum_values, name="campaign_objective"),
        nullable=False,
    )
    status = Column(
        Enum(EntityStatusEnum, values_callable=_enum_values, name="entity_status"),
        nullable=False,
    )
    # Budgets in major currency units (upstream reports minor units)
    daily_budget = Column(Numeric(18, 2), nullable=True)
    lifetime_budget = Column(Numeric(18, 2), nullable=True)
    start_time = Column(DateTime, nullable=True)
    stop_time = Column(DateTime, nullable=True)
    created_time = Column(DateTime, nullable=True)
    updated_time = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=False, default=utcnow)

    account = relationship("Account", back_populates="campaigns")
    ad_sets = relationship("AdSet", back_populates="campaign")


class AdSet(Base):
    __tablename__ = "ad_sets"

    id = Column(String, primary_key=True)
    campaign_id = Column(String, ForeignKey("campaigns.id"), nullable=False, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    status = Column(
        Enum(EntityStatusEnum, values_callable=_enum_values, name="entity_status"),
        nullable=False,
    )
    daily_budget = Column(Numeric(18, 2), nullable=True)
    lifetime_budget = Column(Numeric(18, 2), nullable=True)
    bid_amount = Column(Numeric(18, 2), nullable=True)
    optimization_goal = Column(String, nullable=True)
    billing_event = Column(String, nullable=True)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    created_time = Column(DateTime, nullable=True)
    updated_time = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=False, default=utcnow)

    campaign = relationship("Campaign", back_populates="ad_sets")
    ads = relationship("Ad", back_populates="ad_set")


class Ad(Base):
    __tablename__ = "ads"

    id = Column(String, primary_key=True)
    ad_set_id = Column(String, ForeignKey("ad_sets.id"), nullable=False, index=True)
    campaign_id = Column(String, ForeignKey("campaigns.id"), nullable=False, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    status = Column(
        Enum(AdStatusEnum, values_callable=_enum_values, name="ad_status"),
        nullable=False,
    )
    creative_id = Column(String, nullable=True)
    created_time = Column(DateTime, nullable=True)
    updated_time = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=False, default=utcnow)

    ad_set = relationship("AdSet", back_populates="ads")


# Facts ---------------------------------------------------------------

class DailyAdInsight(Base):
    """One normalized performance row per (ad, calendar day).

    Derived metrics are computed once at write time by
    adsync/services/insight_transformer.py and stored alongside the counters.
    """
    __tablename__ = "daily_ad_insights"
    __table_args__ = (
        UniqueConstraint("ad_id", "date_start", name="uq_daily_ad_insights_ad_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    date_start = Column(Date, nullable=False, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    campaign_id = Column(String, ForeignKey("campaigns.id"), nullable=False, index=True)
    ad_set_id = Column(String, ForeignKey("ad_sets.id"), nullable=False)
    ad_id = Column(String, ForeignKey("ads.id"), nullable=False)

    # Raw counters
    impressions = Column(Integer, nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    link_clicks = Column(Integer, nullable=False, default=0)
    reach = Column(Integer, nullable=False, default=0)
    frequency = Column(Float, nullable=False, default=0)
    spend = Column(Numeric(18, 4), nullable=False, default=0)

    # Conversions split by type, with attributed values
    purchases = Column(Float, nullable=False, default=0)
    purchase_values = Column(Numeric(18, 4), nullable=False, default=0)
    leads = Column(Float, nullable=False, default=0)
    lead_values = Column(Numeric(18, 4), nullable=False, default=0)
    registrations = Column(Float, nullable=False, default=0)
    registration_values = Column(Numeric(18, 4), nullable=False, default=0)
    add_to_carts = Column(Float, nullable=False, default=0)

    # Derived metrics
    ctr = Column(Float, nullable=False, default=0)
    cpc = Column(Float, nullable=False, default=0)
    cpm = Column(Float, nullable=False, default=0)
    purchase_cpa = Column(Float, nullable=False, default=0)
    purchase_roas = Column(Float, nullable=False, default=0)

    # Legacy combined fields, derived from the per-type split
    conversions = Column(Float, nullable=False, default=0)
    conversion_values = Column(Numeric(18, 4), nullable=False, default=0)
    cost_per_conversion = Column(Float, nullable=False, default=0)
    roas = Column(Float, nullable=False, default=0)

    # Video engagement
    video_views = Column(Integer, nullable=False, default=0)
    video_15s_views = Column(Integer, nullable=False, default=0)
    video_thruplays = Column(Integer, nullable=False, default=0)
    video_p25_watched = Column(Integer, nullable=False, default=0)
    video_p50_watched = Column(Integer, nullable=False, default=0)
    video_p75_watched = Column(Integer, nullable=False, default=0)
    video_p95_watched = Column(Integer, nullable=False, default=0)
    video_p100_watched = Column(Integer, nullable=False, default=0)
    video_avg_watch_time = Column(Float, nullable=False, default=0)
    thumbstop_rate = Column(Float, nullable=False, default=0)
    hold_rate = Column(Float, nullable=False, default=0)
    completion_rate = Column(Float, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
