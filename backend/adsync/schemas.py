"""Pydantic schemas for registry payloads, fact rows and sync summaries."""

from datetime import date, datetime
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from .models import SyncStatusEnum


def normalize_meta_account_id(value: str) -> str:
    """Strip whitespace and the "act_" prefix Meta uses on ad account ids."""
    value = (value or "").strip()
    if value.startswith("act_"):
        value = value[len("act_"):]
    return value


# Account registry ----------------------------------------------------

class ClientAccountCreate(BaseModel):
    """Payload for registering an advertiser tenant.

    Timezone/currency default to DEFAULT_TIMEZONE/DEFAULT_CURRENCY when omitted.
    """

    client_name: str = Field(min_length=1, description="Display name of the advertiser")
    meta_account_id: str = Field(description="Meta ad account id, with or without act_ prefix")
    access_token: SecretStr = Field(description="Long-lived Meta access token (stored encrypted)")
    refresh_token: Optional[SecretStr] = Field(None, description="Optional refresh credential")
    token_expires_at: Optional[datetime] = None
    timezone: Optional[str] = Field(None, description="IANA timezone of the ad account")
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    is_active: bool = True
    is_system_user: bool = False
    business_name: Optional[str] = None
    business_id: Optional[str] = None
    contact_email: Optional[str] = None
    contact_name: Optional[str] = None

    @field_validator("meta_account_id")
    @classmethod
    def _normalize_account_id(cls, value: str) -> str:
        normalized = normalize_meta_account_id(value)
        if not normalized:
            raise ValueError("meta_account_id must not be empty")
        return normalized

    model_config = {
        "json_schema_extra": {
            "example": {
                "client_name": "Acme Outdoor",
                "meta_account_id": "act_1234567890",
                "access_token": "EAAB...",
                "timezone": "America/New_York",
                "currency": "USD",
            }
        }
    }


class ClientAccountUpdate(BaseModel):
    """Partial update. Sync lifecycle fields are deliberately absent: they
    change only through AccountRegistry.update_sync_status."""

    client_name: Optional[str] = Field(None, min_length=1)
    access_token: Optional[SecretStr] = None
    refresh_token: Optional[SecretStr] = None
    token_expires_at: Optional[datetime] = None
    timezone: Optional[str] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    is_active: Optional[bool] = None
    is_system_user: Optional[bool] = None
    business_name: Optional[str] = None
    business_id: Optional[str] = None
    contact_email: Optional[str] = None
    contact_name: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class AccountSummary(BaseModel):
    """Registry row without credentials, as returned by list_active."""

    id: UUID
    client_name: str
    meta_account_id: str
    timezone: str
    currency: str
    is_active: bool
    sync_status: SyncStatusEnum
    sync_error: Optional[str] = None
    last_sync_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ClientAccountOut(AccountSummary):
    """Full registry record with decrypted credentials.

    Tokens are SecretStr so the record can be logged or repr'd without
    leaking them; call `.get_secret_value()` only when building a client.
    """

    access_token: SecretStr
    refresh_token: Optional[SecretStr] = None
    token_expires_at: Optional[datetime] = None
    is_system_user: bool = False
    business_name: Optional[str] = None
    business_id: Optional[str] = None
    contact_email: Optional[str] = None
    contact_name: Optional[str] = None
    sync_started_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Facts ----------------------------------------------------------------

class DailyFactRow(BaseModel):
    """One transformed (ad, day) row, column-for-column with DailyAdInsight."""

    # Identifying keys stay optional here; filter_valid_insights drops incomplete rows.
    date_start: Optional[date] = None
    account_id: Optional[str] = None
    campaign_id: Optional[str] = None
    ad_set_id: Optional[str] = None
    ad_id: Optional[str] = None

    impressions: int = 0
    clicks: int = 0
    link_clicks: int = 0
    reach: int = 0
    frequency: float = 0.0
    spend: float = 0.0

    purchases: float = 0.0
    purchase_values: float = 0.0
    leads: float = 0.0
    lead_values: float = 0.0
    registrations: float = 0.0
    registration_values: float = 0.0
    add_to_carts: float = 0.0

    ctr: float = 0.0
    cpc: float = 0.0
    cpm: float = 0.0
    purchase_cpa: float = 0.0
    purchase_roas: float = 0.0

    conversions: float = 0.0
    conversion_values: float = 0.0
    cost_per_conversion: float = 0.0
    roas: float = 0.0

    video_views: int = 0
    video_15s_views: int = 0
    video_thruplays: int = 0
    video_p25_watched: int = 0
    video_p50_watched: int = 0
    video_p75_watched: int = 0
    video_p95_watched: int = 0
    video_p100_watched: int = 0
    video_avg_watch_time: float = 0.0
    thumbstop_rate: float = 0.0
    hold_rate: float = 0.0
    completion_rate: float = 0.0


# Sync summaries -------------------------------------------------------

class AccountSyncStats(BaseModel):
    """Outcome of one account run (one account, one date window)."""

    account_id: str = Field(description="Registry id of the client account")
    meta_account_id: Optional[str] = None
    account_name: Optional[str] = None
    date_start: str
    date_end: str

    campaigns_processed: int = 0
    ad_sets_processed: int = 0
    ads_processed: int = 0
    insights_processed: int = 0
    insights_skipped: int = 0
    unrecognized_action_types: Dict[str, int] = Field(default_factory=dict)

    errors: List[str] = Field(default_factory=list)
    success: bool = False
    # True when the run never started because another run held the account
    skipped: bool = False

    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0


class BatchSyncStats(BaseModel):
    """Reduced summary across every active account in one batch."""

    date_start: str
    date_end: str
    total_accounts: int = 0
    accounts_succeeded: int = 0
    accounts_failed: int = 0
    accounts_skipped: int = 0

    total_campaigns: int = 0
    total_ad_sets: int = 0
    total_ads: int = 0
    total_insights: int = 0

    account_stats: List[AccountSyncStats] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.total_accounts > 0 and self.accounts_failed == 0
