"""Meta sync orchestrator.

WHAT:
    Drives one account through the sync pipeline and fans the tenant fleet out
    over a bounded worker pool:

        1. account info  → upsert Account          (fatal on failure)
        2. campaigns     → upsert Campaign rows     (listing failure recorded, run continues)
        3. ad sets       → per campaign, fan-out    (per-campaign failure recorded)
        4. ads           → per ad set, fan-out      (per-ad-set failure recorded)
        5. insights      → transform → filter → upsert DailyAdInsight (fatal on failure)

    Status lifecycle per account (see AccountRegistry): → syncing before any
    upstream call, then exactly one terminal transition (success | failed) on
    every exit path, including timeouts and unexpected exceptions.

WHY:
    - Stages are strictly ordered so parents are committed before children
      (foreign-key discipline); each stage commits on its own so a fatal
      insights failure keeps the structural rows already written.
    - Fan-out inside stages 3-4 only parallelizes upstream reads; all
      database writes stay on the account's own thread and session.
    - Accounts are independent: one account's failure is recorded in the batch
      summary and never stops the rest.

REFERENCES:
    - adsync/services/meta_ads_client.py (upstream reads)
    - adsync/services/insight_transformer.py (stage 5 transform)
    - adsync/services/warehouse.py (upserts)
    - adsync/services/account_registry.py (status transitions)
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Type, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from adsync.config import get_settings
from adsync.models import (
    AdStatusEnum,
    CampaignObjectiveEnum,
    EntityStatusEnum,
    SyncStatusEnum,
    utcnow,
)
from adsync.schemas import (
    AccountSummary,
    AccountSyncStats,
    BatchSyncStats,
    ClientAccountOut,
    normalize_meta_account_id,
)
from adsync.security import DecryptionError
from adsync.services.account_registry import (
    AccountNotFoundError,
    AccountRegistry,
    AccountRegistryError,
    SyncInProgressError,
)
from adsync.services.insight_transformer import (
    filter_valid_insights,
    transform_insights_with_report,
)
from adsync.services.meta_ads_client import MetaAdsClient, MetaAdsClientError
from adsync.services.warehouse import (
    existing_ad_ids,
    upsert_account,
    upsert_ad_sets,
    upsert_ads,
    upsert_campaigns,
    upsert_daily_insights,
)
from adsync.telemetry import capture_exception
from adsync.utils.date_range import DateRangeResolver

logger = logging.getLogger(__name__)


class SyncTimeoutError(Exception):
    """Raised when an account run exceeds its run-level timeout."""
    pass


class FatalStageError(Exception):
    """A prerequisite stage failed; the account run ends as `failed`."""

    def __init__(self, stage: str, message: str):
        super().__init__(message)
        self.stage = stage


# =============================================================================
# ENUM MAPPING (upstream vocabulary → warehouse enums)
# =============================================================================

@dataclass(frozen=True)
class Recognized:
    """Upstream value that maps onto a warehouse enum member."""
    value: Enum


@dataclass(frozen=True)
class Unrecognized:
    """Upstream value outside the warehouse vocabulary; `value` is the fallback."""
    raw: Optional[str]
    value: Enum


MappedEnum = Union[Recognized, Unrecognized]

# Pre-ODAX objectives still returned for old campaigns
LEGACY_OBJECTIVES = {
    "BRAND_AWARENESS": CampaignObjectiveEnum.outcome_awareness,
    "REACH": CampaignObjectiveEnum.outcome_awareness,
    "LINK_CLICKS": CampaignObjectiveEnum.outcome_traffic,
    "POST_ENGAGEMENT": CampaignObjectiveEnum.outcome_engagement,
    "PAGE_LIKES": CampaignObjectiveEnum.outcome_engagement,
    "VIDEO_VIEWS": CampaignObjectiveEnum.outcome_engagement,
    "MESSAGES": CampaignObjectiveEnum.outcome_engagement,
    "EVENT_RESPONSES": CampaignObjectiveEnum.outcome_engagement,
    "LEAD_GENERATION": CampaignObjectiveEnum.outcome_leads,
    "APP_INSTALLS": CampaignObjectiveEnum.outcome_app_promotion,
    "CONVERSIONS": CampaignObjectiveEnum.outcome_sales,
    "PRODUCT_CATALOG_SALES": CampaignObjectiveEnum.outcome_sales,
}


def _map_enum(
    raw: Any,
    enum_cls: Type[Enum],
    fallback: Enum,
    aliases: Optional[Mapping[str, Enum]] = None,
) -> MappedEnum:
    text = str(raw).strip().upper() if raw is not None else ""
    try:
        return Recognized(enum_cls(text))
    except ValueError:
        pass
    if aliases and text in aliases:
        return Recognized(aliases[text])
    return Unrecognized(raw=raw, value=fallback)


def map_campaign_status(raw: Any) -> MappedEnum:
    return _map_enum(raw, EntityStatusEnum, EntityStatusEnum.paused)


def map_ad_status(raw: Any) -> MappedEnum:
    return _map_enum(raw, AdStatusEnum, AdStatusEnum.paused)


def map_objective(raw: Any) -> MappedEnum:
    return _map_enum(raw, CampaignObjectiveEnum, CampaignObjectiveEnum.outcome_traffic, LEGACY_OBJECTIVES)


def _resolve(mapped: MappedEnum, kind: str, entity_id: str) -> Enum:
    if isinstance(mapped, Unrecognized):
        logger.warning(
            "[META_SYNC] Unknown %s %r on %s, using %s",
            kind, mapped.raw, entity_id, mapped.value.value,
        )
    return mapped.value


# =============================================================================
# ROW BUILDERS (raw upstream dict → warehouse row dict)
# =============================================================================

def _minor_to_major(value: Any) -> Optional[float]:
    """Meta reports budgets and bids in minor currency units (cents)."""
    if value in (None, ""):
        return None
    try:
        return float(value) / 100
    except (TypeError, ValueError):
        return None


def _parse_meta_timestamp(value: Any) -> Optional[datetime]:
    """Parse Meta's ISO-8601 timestamps (e.g. 2025-01-01T10:00:00+0000) into naive UTC."""
    if not value or not isinstance(value, str):
        return None
    parsed = None
    for parser in (
        lambda v: datetime.strptime(v, "%Y-%m-%dT%H:%M:%S%z"),
        datetime.fromisoformat,
    ):
        try:
            parsed = parser(value)
            break
        except ValueError:
            continue
    if parsed is None:
        logger.debug("[META_SYNC] Unparseable timestamp %r", value)
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _account_row(info: Mapping[str, Any], account: ClientAccountOut) -> Dict[str, Any]:
    return {
        "id": normalize_meta_account_id(str(info.get("id") or account.meta_account_id)),
        "name": info.get("name") or account.client_name,
        "currency": info.get("currency") or account.currency,
        "timezone": info.get("timezone_name") or account.timezone,
        "business_id": info.get("business_id") or account.business_id,
    }


def _campaign_row(raw: Mapping[str, Any], account_id: str) -> Optional[Dict[str, Any]]:
    campaign_id = raw.get("id")
    if not campaign_id:
        logger.warning("[META_SYNC] Skipping campaign without id: %s", raw.get("name"))
        return None
    return {
        "id": str(campaign_id),
        "account_id": account_id,
        "name": raw.get("name") or str(campaign_id),
        "objective": _resolve(map_objective(raw.get("objective")), "objective", f"campaign {campaign_id}"),
        "status": _resolve(map_campaign_status(raw.get("status")), "status", f"campaign {campaign_id}"),
        "daily_budget": _minor_to_major(raw.get("daily_budget")),
        "lifetime_budget": _minor_to_major(raw.get("lifetime_budget")),
        "start_time": _parse_meta_timestamp(raw.get("start_time")),
        "stop_time": _parse_meta_timestamp(raw.get("stop_time")),
        "created_time": _parse_meta_timestamp(raw.get("created_time")),
        "updated_time": _parse_meta_timestamp(raw.get("updated_time")),
    }


def _ad_set_row(raw: Mapping[str, Any], campaign_id: str, account_id: str) -> Optional[Dict[str, Any]]:
    ad_set_id = raw.get("id")
    if not ad_set_id:
        logger.warning("[META_SYNC] Skipping ad set without id in campaign %s", campaign_id)
        return None
    return {
        "id": str(ad_set_id),
        "campaign_id": campaign_id,
        "account_id": account_id,
        "name": raw.get("name") or str(ad_set_id),
        "status": _resolve(map_campaign_status(raw.get("status")), "status", f"ad set {ad_set_id}"),
        "daily_budget": _minor_to_major(raw.get("daily_budget")),
        "lifetime_budget": _minor_to_major(raw.get("lifetime_budget")),
        "bid_amount": _minor_to_major(raw.get("bid_amount")),
        "optimization_goal": raw.get("optimization_goal"),
        "billing_event": raw.get("billing_event"),
        "start_time": _parse_meta_timestamp(raw.get("start_time")),
        "end_time": _parse_meta_timestamp(raw.get("end_time")),
        "created_time": _parse_meta_timestamp(raw.get("created_time")),
        "updated_time": _parse_meta_timestamp(raw.get("updated_time")),
    }


def _ad_row(raw: Mapping[str, Any], ad_set_id: str, campaign_id: str, account_id: str) -> Optional[Dict[str, Any]]:
    ad_id = raw.get("id")
    if not ad_id:
        logger.warning("[META_SYNC] Skipping ad without id in ad set %s", ad_set_id)
        return None
    creative = raw.get("creative")
    creative_id = creative.get("id") if isinstance(creative, Mapping) else creative
    return {
        "id": str(ad_id),
        "ad_set_id": ad_set_id,
        "campaign_id": campaign_id,
        "account_id": account_id,
        "name": raw.get("name") or str(ad_id),
        "status": _resolve(map_ad_status(raw.get("status")), "status", f"ad {ad_id}"),
        "creative_id": str(creative_id) if creative_id else None,
        "created_time": _parse_meta_timestamp(raw.get("created_time")),
        "updated_time": _parse_meta_timestamp(raw.get("updated_time")),
    }


# =============================================================================
# RUN CONTROL (deadline, per-account lock, fan-out)
# =============================================================================

class _Deadline:
    """Cooperative run-level timeout, checked between and inside stages."""

    def __init__(self, timeout_seconds: Optional[float]):
        self.timeout_seconds = timeout_seconds
        self._expires_at = None if timeout_seconds is None else time.monotonic() + timeout_seconds

    def check(self, stage: str) -> None:
        if self._expires_at is not None and time.monotonic() >= self._expires_at:
            raise SyncTimeoutError(
                f"Sync timed out after {self.timeout_seconds:g}s during {stage}"
            )

    def check_wait(self, seconds: float, reason: str) -> None:
        """Refuse a client-side sleep that would end past the deadline."""
        if self._expires_at is not None and time.monotonic() + seconds >= self._expires_at:
            raise SyncTimeoutError(
                f"Sync timed out after {self.timeout_seconds:g}s: "
                f"{reason} wait of {seconds:.1f}s would pass the deadline"
            )


class _AccountRunLocks:
    """In-process single-run mutex per account id.

    The registry's compare-and-set guards across processes; this guards
    threads of one process before they ever reach the database.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def acquire(self, key: str) -> bool:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        return lock.acquire(blocking=False)

    def release(self, key: str) -> None:
        with self._guard:
            lock = self._locks.get(key)
        if lock is not None and lock.locked():
            lock.release()


_run_locks = _AccountRunLocks()


def _fan_out(
    fetch: Callable[[str], List[Dict[str, Any]]],
    keys: Sequence[str],
    max_workers: int,
    deadline: _Deadline,
    stage: str,
) -> List[Tuple[str, Optional[List[Dict[str, Any]]], Optional[Exception]]]:
    """Fetch children for every parent key on a bounded pool.

    Results come back in `keys` order. A failing key yields its exception
    instead of a result; a timeout aborts the whole fan-out.
    """
    def task(key: str) -> List[Dict[str, Any]]:
        deadline.check(stage)
        return fetch(key)

    results: List[Tuple[str, Optional[List[Dict[str, Any]]], Optional[Exception]]] = []
    if not keys:
        return results

    if max_workers <= 1:
        for key in keys:
            try:
                results.append((key, task(key), None))
            except SyncTimeoutError:
                raise
            except Exception as exc:
                results.append((key, None, exc))
        return results

    executor = ThreadPoolExecutor(max_workers=min(max_workers, len(keys)))
    timed_out = False
    try:
        futures = [executor.submit(task, key) for key in keys]
        for key, future in zip(keys, futures):
            try:
                results.append((key, future.result(), None))
            except SyncTimeoutError:
                timed_out = True
                raise
            except Exception as exc:
                results.append((key, None, exc))
    finally:
        # After a timeout, queued fetches never start and in-flight ones are not awaited
        executor.shutdown(wait=not timed_out, cancel_futures=True)
    return results


def _write(db: Session, stage: str, writer: Callable[..., int], rows: Any) -> int:
    """Run one stage's upsert and commit it; a database failure is fatal."""
    try:
        written = writer(db, rows)
        db.commit()
        return written
    except SQLAlchemyError as exc:
        db.rollback()
        raise FatalStageError(stage, f"Warehouse write failed during {stage}: {exc}") from exc


# =============================================================================
# PIPELINE
# =============================================================================

def _build_client(
    registry: AccountRegistry,
    account: AccountSummary,
    deadline: _Deadline,
) -> Tuple[ClientAccountOut, Any]:
    """Decrypt credentials and build the upstream client (inside the syncing window).

    The client checks the run deadline before every sleep, so throttling or
    retry backoff cannot hold an account in `syncing` past its timeout.
    """
    try:
        full = registry.get_by_id(account.id)
    except DecryptionError as exc:
        raise FatalStageError("credentials", f"Stored credentials cannot be decrypted: {exc}") from exc
    if full is None:
        raise FatalStageError("credentials", f"Client account {account.id} no longer exists")

    if full.token_expires_at is not None and full.token_expires_at < utcnow():
        logger.warning(
            "[META_SYNC] Access token for %s expired at %s, attempting sync anyway",
            full.meta_account_id, full.token_expires_at,
        )

    try:
        client = MetaAdsClient(
            access_token=full.access_token.get_secret_value(),
            account_id=full.meta_account_id,
            before_wait=deadline.check_wait,
        )
    except MetaAdsClientError as exc:
        raise FatalStageError("credentials", f"Cannot build Meta client: {exc}") from exc
    return full, client


def _run_pipeline(
    db: Session,
    registry: AccountRegistry,
    account: AccountSummary,
    stats: AccountSyncStats,
    deadline: _Deadline,
    fanout_workers: int,
) -> None:
    deadline.check("credentials")
    full, client = _build_client(registry, account, deadline)
    label = full.meta_account_id

    # 1. Account info (prerequisite)
    deadline.check("account info")
    try:
        info = client.get_account_info()
    except MetaAdsClientError as exc:
        raise FatalStageError("account info", f"Failed to fetch account info: {exc}") from exc
    account_row = _account_row(info, full)
    warehouse_account_id = account_row["id"]
    _write(db, "account info", upsert_account, account_row)
    logger.info("[META_SYNC] [%s] Account upserted: %s", label, account_row["name"])

    # 2. Campaigns
    deadline.check("campaigns")
    try:
        raw_campaigns = client.get_campaigns()
    except MetaAdsClientError as exc:
        message = f"Failed to fetch campaigns: {exc}"
        logger.warning("[META_SYNC] [%s] %s", label, message)
        stats.errors.append(message)
        raw_campaigns = []
    campaign_rows = [row for row in (_campaign_row(c, warehouse_account_id) for c in raw_campaigns) if row]
    stats.campaigns_processed = _write(db, "campaigns", upsert_campaigns, campaign_rows)
    logger.info("[META_SYNC] [%s] Campaigns upserted: %d", label, stats.campaigns_processed)

    # 3. Ad sets, per campaign
    ad_set_rows: List[Dict[str, Any]] = []
    for campaign_id, raw_ad_sets, error in _fan_out(
        client.get_adsets, [row["id"] for row in campaign_rows], fanout_workers, deadline, "ad sets"
    ):
        if error is not None:
            message = f"Failed to fetch ad sets for campaign {campaign_id}: {error}"
            logger.warning("[META_SYNC] [%s] %s", label, message)
            stats.errors.append(message)
            continue
        ad_set_rows.extend(
            row for row in (_ad_set_row(a, campaign_id, warehouse_account_id) for a in raw_ad_sets) if row
        )
    stats.ad_sets_processed = _write(db, "ad sets", upsert_ad_sets, ad_set_rows)
    logger.info("[META_SYNC] [%s] Ad sets upserted: %d", label, stats.ad_sets_processed)

    # 4. Ads, per ad set
    campaign_of_ad_set = {row["id"]: row["campaign_id"] for row in ad_set_rows}
    ad_rows: List[Dict[str, Any]] = []
    for ad_set_id, raw_ads, error in _fan_out(
        client.get_ads, list(campaign_of_ad_set), fanout_workers, deadline, "ads"
    ):
        if error is not None:
            message = f"Failed to fetch ads for ad set {ad_set_id}: {error}"
            logger.warning("[META_SYNC] [%s] %s", label, message)
            stats.errors.append(message)
            continue
        ad_rows.extend(
            row for row in (
                _ad_row(a, ad_set_id, campaign_of_ad_set[ad_set_id], warehouse_account_id) for a in raw_ads
            ) if row
        )
    stats.ads_processed = _write(db, "ads", upsert_ads, ad_rows)
    logger.info("[META_SYNC] [%s] Ads upserted: %d", label, stats.ads_processed)

    # 5. Insights (prerequisite for a useful run)
    deadline.check("insights")
    try:
        raw_insights = client.get_all_insights(
            stats.date_start,
            stats.date_end,
            level="ad",
            on_page=lambda page, total: deadline.check("insights"),
        )
    except MetaAdsClientError as exc:
        raise FatalStageError("insights", f"Failed to fetch insights: {exc}") from exc

    rows, unrecognized = transform_insights_with_report(raw_insights)
    stats.unrecognized_action_types = unrecognized
    if unrecognized:
        logger.info(
            "[META_SYNC] [%s] Unrecognized action types seen: %s",
            label, dict(sorted(unrecognized.items())),
        )

    valid_rows = filter_valid_insights(rows)
    known_ads = existing_ad_ids(db, warehouse_account_id)
    writable = [row for row in valid_rows if row.ad_id in known_ads]
    orphaned = len(valid_rows) - len(writable)
    if orphaned:
        logger.warning(
            "[META_SYNC] [%s] Dropped %d insight rows for ads not in the warehouse", label, orphaned
        )

    stats.insights_processed = _write(db, "insights", upsert_daily_insights, writable)
    stats.insights_skipped = len(rows) - len(writable)
    logger.info(
        "[META_SYNC] [%s] Insights upserted: %d (skipped %d)",
        label, stats.insights_processed, stats.insights_skipped,
    )


def _finish(stats: AccountSyncStats) -> AccountSyncStats:
    stats.finished_at = utcnow()
    stats.duration_seconds = round((stats.finished_at - stats.started_at).total_seconds(), 3)
    return stats


def _record_terminal_status(db: Session, registry: AccountRegistry, stats: AccountSyncStats) -> None:
    """Exactly one terminal transition for a run that reached `syncing`."""
    if stats.success:
        status, error = SyncStatusEnum.success, None
    else:
        status = SyncStatusEnum.failed
        error = "; ".join(stats.errors) or "Sync interrupted before completion"

    try:
        # Drop whatever a failed stage left half-written; earlier stages are committed.
        db.rollback()
        registry.update_sync_status(stats.account_id, status, error)
    except Exception as exc:
        logger.exception(
            "[META_SYNC] Could not record %s status for account %s", status.value, stats.account_id
        )
        capture_exception(exc, extra={
            "operation": "record_terminal_status",
            "account_id": stats.account_id,
            "status": status.value,
        })
        stats.errors.append(f"Failed to record sync status: {exc}")


def process_account(
    db: Session,
    account: AccountSummary,
    date_start: str,
    date_end: str,
    *,
    timeout_seconds: Optional[float] = None,
    fanout_workers: Optional[int] = None,
) -> AccountSyncStats:
    """Sync one account for one date window.

    Returns stats in every case; never raises for an account-level failure.
    A run that cannot start because the account is already syncing comes
    back with `skipped=True` and leaves the other run's status untouched.
    """
    settings = get_settings()
    if timeout_seconds is None:
        timeout_seconds = settings.SYNC_ACCOUNT_TIMEOUT_SECONDS
    if fanout_workers is None:
        fanout_workers = settings.SYNC_FANOUT_WORKERS

    stats = AccountSyncStats(
        account_id=str(account.id),
        meta_account_id=account.meta_account_id,
        account_name=account.client_name,
        date_start=date_start,
        date_end=date_end,
        started_at=utcnow(),
    )
    registry = AccountRegistry(db)
    lock_key = str(account.id)

    if not _run_locks.acquire(lock_key):
        message = f"Sync already in progress for account {account.meta_account_id}"
        logger.warning("[META_SYNC] %s, skipping", message)
        stats.skipped = True
        stats.errors.append(message)
        return _finish(stats)

    try:
        try:
            registry.update_sync_status(account.id, SyncStatusEnum.syncing)
        except SyncInProgressError as exc:
            logger.warning("[META_SYNC] %s, skipping", exc)
            stats.skipped = True
            stats.errors.append(str(exc))
            return _finish(stats)
        except AccountRegistryError as exc:
            logger.error("[META_SYNC] Cannot start sync for %s: %s", account.meta_account_id, exc)
            stats.errors.append(str(exc))
            return _finish(stats)

        logger.info(
            "[META_SYNC] Starting sync for %s (%s): %s to %s",
            account.client_name, account.meta_account_id, date_start, date_end,
        )
        deadline = _Deadline(timeout_seconds)
        try:
            _run_pipeline(db, registry, account, stats, deadline, fanout_workers)
            stats.success = True
        except SyncTimeoutError as exc:
            logger.error("[META_SYNC] [%s] %s", account.meta_account_id, exc)
            stats.errors.append(str(exc))
            capture_exception(exc, extra={
                "operation": "process_account",
                "account_id": str(account.id),
                "meta_account_id": account.meta_account_id,
                "stage": "timeout",
            })
        except FatalStageError as exc:
            logger.error("[META_SYNC] [%s] Fatal error in %s: %s", account.meta_account_id, exc.stage, exc)
            stats.errors.append(str(exc))
            capture_exception(exc.__cause__ or exc, extra={
                "operation": "process_account",
                "account_id": str(account.id),
                "meta_account_id": account.meta_account_id,
                "stage": exc.stage,
            })
        except Exception as exc:
            logger.exception("[META_SYNC] [%s] Unexpected sync failure", account.meta_account_id)
            stats.errors.append(f"Unexpected error: {exc}")
            capture_exception(exc, extra={
                "operation": "process_account",
                "account_id": str(account.id),
                "meta_account_id": account.meta_account_id,
            })
        finally:
            _record_terminal_status(db, registry, stats)
    finally:
        _run_locks.release(lock_key)

    _finish(stats)
    logger.info(
        "[META_SYNC] Finished %s: success=%s campaigns=%d ad_sets=%d ads=%d insights=%d errors=%d (%.1fs)",
        account.meta_account_id, stats.success, stats.campaigns_processed, stats.ad_sets_processed,
        stats.ads_processed, stats.insights_processed, len(stats.errors), stats.duration_seconds,
    )
    return stats


# =============================================================================
# INVOCATION SURFACE
# =============================================================================

def run_full_sync(
    db: Session,
    account_id: Union[str, Any],
    date_start: str,
    date_end: str,
    *,
    timeout_seconds: Optional[float] = None,
) -> AccountSyncStats:
    """Sync a single registered account.

    Raises:
        DateRangeError: Invalid or oversized window (rejected before any work)
        AccountNotFoundError: Unknown account id
    """
    DateRangeResolver().from_fields(date_start, date_end)

    summary = AccountRegistry(db).get_summary(account_id)
    if summary is None:
        raise AccountNotFoundError(f"Client account {account_id} not found")
    return process_account(db, summary, date_start, date_end, timeout_seconds=timeout_seconds)


def _failed_stats(account: AccountSummary, date_start: str, date_end: str, error: str) -> AccountSyncStats:
    stats = AccountSyncStats(
        account_id=str(account.id),
        meta_account_id=account.meta_account_id,
        account_name=account.client_name,
        date_start=date_start,
        date_end=date_end,
        started_at=utcnow(),
        errors=[error],
    )
    return _finish(stats)


def _reduce(batch: BatchSyncStats, stats: AccountSyncStats) -> None:
    batch.account_stats.append(stats)
    batch.total_campaigns += stats.campaigns_processed
    batch.total_ad_sets += stats.ad_sets_processed
    batch.total_ads += stats.ads_processed
    batch.total_insights += stats.insights_processed

    if stats.skipped:
        batch.accounts_skipped += 1
    elif stats.success:
        batch.accounts_succeeded += 1
    else:
        batch.accounts_failed += 1

    name = stats.account_name or stats.account_id
    batch.errors.extend(f"{name} ({stats.meta_account_id}): {error}" for error in stats.errors)


def run_sync_for_all_accounts(
    date_start: str,
    date_end: str,
    *,
    session_factory: Optional[Callable[[], Session]] = None,
    max_workers: Optional[int] = None,
    timeout_seconds: Optional[float] = None,
) -> BatchSyncStats:
    """Sync every active account and return the reduced batch summary.

    WHAT:
        Each account runs on its own worker with its own session; results are
        delivered per account and reduced into the summary at the end.

    Raises:
        DateRangeError: Invalid window (before any account is touched)
        Exception: Only when the registry itself cannot be read
    """
    DateRangeResolver().from_fields(date_start, date_end)

    if session_factory is None:
        from adsync.database import SessionLocal
        session_factory = SessionLocal
    settings = get_settings()
    workers = max_workers or settings.SYNC_MAX_ACCOUNT_WORKERS

    batch = BatchSyncStats(date_start=date_start, date_end=date_end, started_at=utcnow())

    db = session_factory()
    try:
        accounts = AccountRegistry(db).list_active()
    finally:
        db.close()

    if not accounts:
        logger.warning("[META_SYNC] No active client accounts found")
        batch.errors.append("No active client accounts found")
    else:
        batch.total_accounts = len(accounts)
        logger.info(
            "[META_SYNC] Batch sync of %d accounts (%s to %s, %d workers)",
            len(accounts), date_start, date_end, workers,
        )

    def sync_single_account(account: AccountSummary) -> AccountSyncStats:
        """Sync one account with its own session."""
        local_db = session_factory()
        try:
            return process_account(local_db, account, date_start, date_end, timeout_seconds=timeout_seconds)
        except Exception as exc:
            logger.exception("[META_SYNC] Account worker crashed for %s", account.meta_account_id)
            capture_exception(exc, extra={
                "operation": "sync_single_account",
                "account_id": str(account.id),
                "meta_account_id": account.meta_account_id,
            })
            return _failed_stats(account, date_start, date_end, f"Unexpected error: {exc}")
        finally:
            local_db.close()

    results: Dict[int, AccountSyncStats] = {}
    if workers <= 1 or len(accounts) <= 1:
        for index, account in enumerate(accounts):
            results[index] = sync_single_account(account)
    else:
        with ThreadPoolExecutor(max_workers=min(workers, len(accounts))) as executor:
            futures = {
                executor.submit(sync_single_account, account): index
                for index, account in enumerate(accounts)
            }
            for future in as_completed(futures):
                index = futures[future]
                try:
                    results[index] = future.result()
                except Exception as exc:
                    results[index] = _failed_stats(accounts[index], date_start, date_end, str(exc))

    for index in sorted(results):
        _reduce(batch, results[index])

    batch.finished_at = utcnow()
    batch.duration_seconds = round((batch.finished_at - batch.started_at).total_seconds(), 3)
    logger.info(
        "[META_SYNC] Batch complete: %d accounts, %d succeeded, %d failed, %d skipped, %d insights",
        batch.total_accounts, batch.accounts_succeeded, batch.accounts_failed,
        batch.accounts_skipped, batch.total_insights,
    )
    return batch


def run_daily_sync_for_all_accounts(timezone_name: Optional[str] = None, **kwargs: Any) -> BatchSyncStats:
    """Scheduled entry: sync yesterday (in DEFAULT_TIMEZONE unless given) for every account."""
    resolver = DateRangeResolver(timezone_name or get_settings().DEFAULT_TIMEZONE)
    window = resolver.resolve("yesterday")
    return run_sync_for_all_accounts(window.start_date, window.end_date, **kwargs)
