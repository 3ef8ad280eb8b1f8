"""Integration tests for the Meta sync orchestrator.

WHAT:
    Runs process_account / run_full_sync / run_sync_for_all_accounts against
    an in-memory warehouse with fake Meta clients injected in place of
    MetaAdsClient.

WHY:
    The orchestrator's guarantees (partial failures recorded, fatal stages
    keep earlier commits, exactly one terminal status, tenant isolation)
    only show up end to end.

REFERENCES:
    - adsync/services/meta_sync_service.py (module under test)
    - adsync/tests/conftest.py (database and account fixtures)
"""

import threading
import time
from collections import deque
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from adsync.models import (
    Account,
    Ad,
    AdSet,
    AdStatusEnum,
    Campaign,
    CampaignObjectiveEnum,
    ClientAccount,
    DailyAdInsight,
    EntityStatusEnum,
    SyncStatusEnum,
)
from adsync.schemas import AccountSummary, ClientAccountCreate
from adsync.security import CredentialVault
from adsync.services import meta_ads_client, meta_sync_service
from adsync.services.account_registry import AccountNotFoundError, AccountRegistry
from adsync.services.meta_ads_client import MetaAdsClientError, MetaAdsPermissionError
from adsync.services.meta_sync_service import (
    Recognized,
    Unrecognized,
    map_ad_status,
    map_campaign_status,
    map_objective,
    process_account,
    run_daily_sync_for_all_accounts,
    run_full_sync,
    run_sync_for_all_accounts,
)
from adsync.utils.date_range import DateRangeError


# ============================================================================
# Fakes
# ============================================================================

class FakeMetaClient:
    """Three campaigns, one ad set each, one ad each, one insight row per ad."""

    def __init__(self, account_id, campaigns=3, failures=None, extra_insights=None, ads_delay=0.0):
        self.account_id = account_id
        self.failures = failures or {}
        self.extra_insights = extra_insights or []
        self.ads_delay = ads_delay
        self.calls = []
        self.campaigns = [
            {
                "id": f"{account_id}-c{i}",
                "name": f"Campaign {i}",
                "status": "ACTIVE",
                "objective": "OUTCOME_SALES",
                "daily_budget": "5000",
                "start_time": "2025-01-01T10:00:00+0000",
            }
            for i in range(1, campaigns + 1)
        ]

    def _maybe_fail(self, key):
        self.calls.append(key)
        error = self.failures.get(key)
        if error is not None:
            raise error

    def get_account_info(self):
        self._maybe_fail("account_info")
        return {
            "id": f"act_{self.account_id}",
            "name": f"Meta account {self.account_id}",
            "currency": "USD",
            "timezone_name": "America/New_York",
        }

    def get_campaigns(self):
        self._maybe_fail("campaigns")
        return list(self.campaigns)

    def get_adsets(self, campaign_id):
        self._maybe_fail(("adsets", campaign_id))
        suffix = campaign_id.rsplit("-", 1)[1]
        return [{"id": f"{self.account_id}-as{suffix[1:]}", "name": "Ad set", "status": "ACTIVE",
                 "daily_budget": "2500", "optimization_goal": "OFFSITE_CONVERSIONS"}]

    def get_ads(self, adset_id):
        self._maybe_fail(("ads", adset_id))
        if self.ads_delay:
            time.sleep(self.ads_delay)
        suffix = adset_id.rsplit("-", 1)[1]
        return [{"id": f"{self.account_id}-ad{suffix[2:]}", "name": "Ad", "status": "ACTIVE",
                 "creative": {"id": f"cr-{suffix}"}}]

    def get_all_insights(self, date_start, date_end, level="ad", on_page=None):
        self._maybe_fail("insights")
        rows = []
        for campaign in self.campaigns:
            n = campaign["id"].rsplit("-c", 1)[1]
            rows.append({
                "date_start": "2025-01-14",
                "date_stop": "2025-01-14",
                "account_id": self.account_id,
                "campaign_id": campaign["id"],
                "adset_id": f"{self.account_id}-as{n}",
                "ad_id": f"{self.account_id}-ad{n}",
                "impressions": "1000",
                "clicks": "20",
                "spend": "50.00",
                "actions": [{"action_type": "purchase", "value": "2"}],
                "action_values": [{"action_type": "purchase", "value": "120.00"}],
            })
        rows.extend(self.extra_insights)
        if on_page is not None:
            on_page(1, len(rows))
        return rows


class BlockingMetaClient(FakeMetaClient):
    """Holds its run inside the campaign listing until released."""

    def __init__(self, account_id, **kwargs):
        super().__init__(account_id, **kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def get_campaigns(self):
        self.entered.set()
        self.release.wait(5)
        return super().get_campaigns()


class ClientFactory:
    """Stands in for the MetaAdsClient class; records every construction."""

    def __init__(self):
        self.clients = {}
        self.built = []

    def __call__(self, access_token, account_id, **kwargs):
        self.built.append((access_token, account_id))
        return self.clients[account_id]


@pytest.fixture
def clients(monkeypatch):
    factory = ClientFactory()
    monkeypatch.setattr(meta_sync_service, "MetaAdsClient", factory)
    return factory


def _summary(account):
    return AccountSummary.model_validate(account.model_dump())


def _status(db_session, account_id):
    db_session.expire_all()
    return db_session.get(ClientAccount, account_id)


def _count(db, model):
    return db.execute(select(func.count()).select_from(model)).scalar_one()


# ============================================================================
# Enum mapping
# ============================================================================

class TestEnumMapping:

    def test_known_values_recognized(self):
        assert map_campaign_status("ACTIVE") == Recognized(EntityStatusEnum.active)
        assert map_ad_status("with_issues") == Recognized(AdStatusEnum.with_issues)
        assert map_objective("OUTCOME_LEADS") == Recognized(CampaignObjectiveEnum.outcome_leads)

    def test_legacy_objectives_map_to_outcomes(self):
        assert map_objective("CONVERSIONS") == Recognized(CampaignObjectiveEnum.outcome_sales)
        assert map_objective("LINK_CLICKS") == Recognized(CampaignObjectiveEnum.outcome_traffic)

    def test_unknown_values_fall_back_and_keep_raw(self):
        mapped = map_campaign_status("SOMETHING_NEW")
        assert isinstance(mapped, Unrecognized)
        assert mapped.raw == "SOMETHING_NEW"
        assert mapped.value == EntityStatusEnum.paused

        mapped = map_objective(None)
        assert isinstance(mapped, Unrecognized)
        assert mapped.value == CampaignObjectiveEnum.outcome_traffic


# ============================================================================
# process_account
# ============================================================================

class TestProcessAccount:

    def test_full_run_writes_hierarchy_and_insights(self, db_session, make_account, clients):
        account = make_account()
        clients.clients["100001"] = FakeMetaClient("100001")

        stats = process_account(db_session, _summary(account), "2025-01-14", "2025-01-14")

        assert stats.success is True
        assert stats.errors == []
        assert (stats.campaigns_processed, stats.ad_sets_processed, stats.ads_processed) == (3, 3, 3)
        assert stats.insights_processed == 3
        assert stats.insights_skipped == 0

        row = _status(db_session, account.id)
        assert row.sync_status == SyncStatusEnum.success
        assert row.last_sync_at is not None
        assert row.sync_error is None

        assert db_session.get(Account, "100001").name == "Meta account 100001"
        campaign = db_session.get(Campaign, "100001-c1")
        assert float(campaign.daily_budget) == pytest.approx(50.0)
        assert campaign.objective == CampaignObjectiveEnum.outcome_sales
        assert db_session.get(Ad, "100001-ad1").creative_id == "cr-as1"

        insight = db_session.execute(
            select(DailyAdInsight).where(DailyAdInsight.ad_id == "100001-ad1")
        ).scalar_one()
        assert insight.ctr == pytest.approx(2.0)
        assert insight.cpc == pytest.approx(2.5)
        assert insight.purchase_roas == pytest.approx(2.4)

    def test_decrypted_token_is_passed_to_client(self, db_session, make_account, clients):
        account = make_account(access_token="EAAB-account-token")
        clients.clients["100001"] = FakeMetaClient("100001")

        process_account(db_session, _summary(account), "2025-01-14", "2025-01-14")

        assert clients.built == [("EAAB-account-token", "100001")]

    def test_rerun_is_idempotent(self, db_session, make_account, clients):
        account = make_account()
        clients.clients["100001"] = FakeMetaClient("100001")

        first = process_account(db_session, _summary(account), "2025-01-14", "2025-01-14")
        second = process_account(db_session, _summary(account), "2025-01-14", "2025-01-14")

        assert first.success and second.success
        assert _count(db_session, Campaign) == 3
        assert _count(db_session, AdSet) == 3
        assert _count(db_session, Ad) == 3
        assert _count(db_session, DailyAdInsight) == 3

    def test_zero_campaigns_still_succeeds(self, db_session, make_account, clients):
        account = make_account()
        client = FakeMetaClient("100001", campaigns=0)
        clients.clients["100001"] = client

        stats = process_account(db_session, _summary(account), "2025-01-14", "2025-01-14")

        assert stats.success is True
        assert stats.campaigns_processed == 0
        assert stats.insights_processed == 0
        assert "insights" in client.calls
        assert _status(db_session, account.id).sync_status == SyncStatusEnum.success

    def test_one_failing_campaign_records_one_error(self, db_session, make_account, clients):
        account = make_account()
        clients.clients["100001"] = FakeMetaClient(
            "100001", failures={("adsets", "100001-c2"): MetaAdsPermissionError("Permission denied")}
        )

        stats = process_account(db_session, _summary(account), "2025-01-14", "2025-01-14")

        assert stats.success is True
        assert len(stats.errors) == 1
        assert "100001-c2" in stats.errors[0]
        assert stats.ad_sets_processed == 2
        assert stats.ads_processed == 2
        # Insight row of the ad that never got synced is skipped, not written
        assert stats.insights_processed == 2
        assert stats.insights_skipped == 1
        assert _status(db_session, account.id).sync_status == SyncStatusEnum.success

    def test_campaign_listing_failure_is_recorded(self, db_session, make_account, clients):
        account = make_account()
        clients.clients["100001"] = FakeMetaClient(
            "100001", failures={"campaigns": MetaAdsClientError("HTTP 500")}
        )

        stats = process_account(db_session, _summary(account), "2025-01-14", "2025-01-14")

        assert stats.success is True
        assert stats.errors == ["Failed to fetch campaigns: HTTP 500"]
        assert stats.campaigns_processed == 0

    def test_account_info_failure_is_fatal(self, db_session, make_account, clients):
        account = make_account()
        client = FakeMetaClient("100001", failures={"account_info": MetaAdsClientError("Token expired")})
        clients.clients["100001"] = client

        stats = process_account(db_session, _summary(account), "2025-01-14", "2025-01-14")

        assert stats.success is False
        assert client.calls == ["account_info"]
        row = _status(db_session, account.id)
        assert row.sync_status == SyncStatusEnum.failed
        assert "Failed to fetch account info" in row.sync_error
        assert _count(db_session, Campaign) == 0

    def test_insights_failure_keeps_structural_rows(self, db_session, make_account, clients):
        account = make_account()
        clients.clients["100001"] = FakeMetaClient(
            "100001", failures={"insights": MetaAdsClientError("Rate limit exceeded")}
        )

        stats = process_account(db_session, _summary(account), "2025-01-14", "2025-01-14")

        assert stats.success is False
        assert _count(db_session, Campaign) == 3
        assert _count(db_session, AdSet) == 3
        assert _count(db_session, Ad) == 3
        assert _count(db_session, DailyAdInsight) == 0
        row = _status(db_session, account.id)
        assert row.sync_status == SyncStatusEnum.failed
        assert "Failed to fetch insights: Rate limit exceeded" in row.sync_error
        assert row.last_sync_at is None

    def test_unexpected_exception_still_ends_failed(self, db_session, make_account, clients):
        account = make_account()
        clients.clients["100001"] = FakeMetaClient("100001", failures={"campaigns": RuntimeError("kaboom")})

        stats = process_account(db_session, _summary(account), "2025-01-14", "2025-01-14")

        assert stats.success is False
        row = _status(db_session, account.id)
        assert row.sync_status == SyncStatusEnum.failed
        assert "Unexpected error: kaboom" in row.sync_error

    def test_undecryptable_credentials_fail_the_run(self, db_session, make_account, clients):
        account = make_account()
        row = _status(db_session, account.id)
        row.access_token_encrypted = "bm90LWEtcmVhbC10b2tlbi1hdC1hbGwtYXQtYWxsLg=="
        db_session.commit()

        stats = process_account(db_session, _summary(account), "2025-01-14", "2025-01-14")

        assert stats.success is False
        assert clients.built == []
        row = _status(db_session, account.id)
        assert row.sync_status == SyncStatusEnum.failed
        assert "cannot be decrypted" in row.sync_error

    def test_second_run_rejected_while_syncing(self, db_session, registry, make_account, clients):
        account = make_account()
        clients.clients["100001"] = FakeMetaClient("100001")
        registry.update_sync_status(account.id, SyncStatusEnum.syncing)

        stats = process_account(db_session, _summary(account), "2025-01-14", "2025-01-14")

        assert stats.skipped is True
        assert stats.success is False
        assert clients.built == []
        assert _status(db_session, account.id).sync_status == SyncStatusEnum.syncing

    def test_stale_sync_is_taken_over(self, db_session, registry, make_account, clients):
        account = make_account()
        clients.clients["100001"] = FakeMetaClient("100001")
        registry.update_sync_status(account.id, SyncStatusEnum.syncing)
        row = _status(db_session, account.id)
        row.sync_started_at = row.sync_started_at.replace(year=row.sync_started_at.year - 1)
        db_session.commit()

        stats = process_account(db_session, _summary(account), "2025-01-14", "2025-01-14")

        assert stats.success is True
        assert _status(db_session, account.id).sync_status == SyncStatusEnum.success

    def test_timeout_before_start_marks_failed(self, db_session, make_account, clients):
        account = make_account()
        clients.clients["100001"] = FakeMetaClient("100001")

        stats = process_account(
            db_session, _summary(account), "2025-01-14", "2025-01-14", timeout_seconds=0
        )

        assert stats.success is False
        assert clients.built == []
        row = _status(db_session, account.id)
        assert row.sync_status == SyncStatusEnum.failed
        assert "timed out" in row.sync_error

    def test_timeout_mid_run_keeps_committed_stages(self, db_session, make_account, clients):
        account = make_account()
        client = FakeMetaClient("100001", campaigns=1, ads_delay=0.3)
        clients.clients["100001"] = client

        stats = process_account(
            db_session, _summary(account), "2025-01-14", "2025-01-14", timeout_seconds=0.2
        )

        assert stats.success is False
        assert "insights" not in client.calls
        assert _count(db_session, Campaign) == 1
        row = _status(db_session, account.id)
        assert row.sync_status == SyncStatusEnum.failed
        assert "timed out" in row.sync_error

    def test_unrecognized_actions_and_orphans_reported(self, db_session, make_account, clients):
        account = make_account()
        orphan = {
            "date_start": "2025-01-14",
            "account_id": "100001",
            "campaign_id": "100001-c1",
            "adset_id": "100001-as1",
            "ad_id": "999-ad-of-someone-else",
            "impressions": "10",
            "actions": [{"action_type": "page_engagement", "value": "3"}],
        }
        incomplete = {"date_start": "2025-01-14", "impressions": "5"}
        clients.clients["100001"] = FakeMetaClient("100001", extra_insights=[orphan, incomplete])

        stats = process_account(db_session, _summary(account), "2025-01-14", "2025-01-14")

        assert stats.success is True
        assert stats.insights_processed == 3
        assert stats.insights_skipped == 2
        assert stats.unrecognized_action_types == {"page_engagement": 1}


# ============================================================================
# Concurrency and deadlines
# ============================================================================

class TestConcurrentRuns:

    def test_parallel_fan_out_records_partial_failure(self, db_session, make_account, clients):
        account = make_account()
        clients.clients["100001"] = FakeMetaClient(
            "100001", failures={("adsets", "100001-c2"): MetaAdsPermissionError("denied")}
        )

        stats = process_account(
            db_session, _summary(account), "2025-01-14", "2025-01-14", fanout_workers=4
        )

        assert stats.success is True
        assert stats.errors == ["Failed to fetch ad sets for campaign 100001-c2: denied"]
        assert stats.ad_sets_processed == 2
        assert stats.ads_processed == 2
        assert stats.insights_processed == 2
        assert _status(db_session, account.id).sync_status == SyncStatusEnum.success

    def test_timeout_inside_parallel_fan_out(self, db_session, make_account, clients):
        account = make_account()
        client = FakeMetaClient("100001", campaigns=6, ads_delay=1.0)
        clients.clients["100001"] = client

        stats = process_account(
            db_session, _summary(account), "2025-01-14", "2025-01-14",
            timeout_seconds=0.5, fanout_workers=2,
        )

        ads_fetched = [call for call in client.calls if isinstance(call, tuple) and call[0] == "ads"]
        assert stats.success is False
        assert len(ads_fetched) <= 2
        assert stats.ads_processed == 0
        assert "insights" not in client.calls
        assert _count(db_session, AdSet) == 6
        row = _status(db_session, account.id)
        assert row.sync_status == SyncStatusEnum.failed
        assert "timed out" in row.sync_error

    def test_same_account_runs_once_per_process(self, file_session_factory, clients):
        db = file_session_factory()
        try:
            account = AccountRegistry(db).create(ClientAccountCreate(
                client_name="Concurrent", meta_account_id="act_300001", access_token="EAAB-concurrent",
            ))
        finally:
            db.close()
        client = BlockingMetaClient("300001")
        clients.clients["300001"] = client
        summary = _summary(account)
        results = []

        def run():
            session = file_session_factory()
            try:
                results.append(process_account(session, summary, "2025-01-14", "2025-01-14"))
            finally:
                session.close()

        first = threading.Thread(target=run)
        first.start()
        assert client.entered.wait(5)

        run()
        client.release.set()
        first.join(10)

        assert len(results) == 2
        assert sorted(stats.skipped for stats in results) == [False, True]
        skipped = next(stats for stats in results if stats.skipped)
        finished = next(stats for stats in results if not stats.skipped)
        assert "already in progress" in skipped.errors[0]
        assert finished.success is True
        assert len(clients.built) == 1

        db = file_session_factory()
        try:
            assert db.get(ClientAccount, account.id).sync_status == SyncStatusEnum.success
        finally:
            db.close()

    def test_throttled_client_cannot_outlive_the_timeout(self, db_session, make_account, monkeypatch):
        account = make_account(access_token="EAAB-throttled")
        key = CredentialVault.hash("EAAB-throttled")[:16]
        budget = meta_ads_client.get_settings().META_CALLS_PER_HOUR
        monkeypatch.setitem(meta_ads_client._rate_limit_call_times, key, deque([time.time()] * budget))

        with patch("adsync.services.meta_ads_client.FacebookAdsApi"), \
                patch("adsync.services.meta_ads_client.sleep") as mock_sleep:
            started = time.monotonic()
            stats = process_account(
                db_session, _summary(account), "2025-01-14", "2025-01-14", timeout_seconds=1800
            )

        assert time.monotonic() - started < 30
        mock_sleep.assert_not_called()
        assert stats.success is False
        row = _status(db_session, account.id)
        assert row.sync_status == SyncStatusEnum.failed
        assert "timed out" in row.sync_error
        assert "rate limit" in row.sync_error


# ============================================================================
# run_full_sync
# ============================================================================

class TestRunFullSync:

    def test_syncs_single_account(self, db_session, make_account, clients):
        account = make_account()
        clients.clients["100001"] = FakeMetaClient("100001")

        stats = run_full_sync(db_session, str(account.id), "2025-01-14", "2025-01-14")

        assert stats.success is True
        assert stats.meta_account_id == "100001"

    def test_invalid_range_rejected_before_any_work(self, db_session, make_account, clients):
        account = make_account()

        with pytest.raises(DateRangeError):
            run_full_sync(db_session, account.id, "2025-01-31", "2025-01-01")
        with pytest.raises(DateRangeError):
            run_full_sync(db_session, account.id, "2024-01-01", "2025-12-31")

        assert clients.built == []
        assert _status(db_session, account.id).sync_status == SyncStatusEnum.pending

    def test_unknown_account(self, db_session, clients):
        with pytest.raises(AccountNotFoundError):
            run_full_sync(db_session, "00000000-0000-0000-0000-000000000000", "2025-01-14", "2025-01-14")


# ============================================================================
# run_sync_for_all_accounts
# ============================================================================

class TestBatchSync:

    def test_no_active_accounts(self, session_factory, clients):
        batch = run_sync_for_all_accounts("2025-01-14", "2025-01-14", session_factory=session_factory)

        assert batch.total_accounts == 0
        assert batch.success is False
        assert batch.errors == ["No active client accounts found"]

    def test_failing_account_does_not_stop_others(self, session_factory, db_session, make_account, clients):
        first = make_account()
        second = make_account()
        clients.clients["100001"] = FakeMetaClient(
            "100001", failures={"insights": MetaAdsClientError("Rate limit exceeded")}
        )
        clients.clients["100002"] = FakeMetaClient("100002")

        batch = run_sync_for_all_accounts(
            "2025-01-14", "2025-01-14", session_factory=session_factory, max_workers=1
        )

        assert batch.total_accounts == 2
        assert batch.accounts_succeeded == 1
        assert batch.accounts_failed == 1
        assert batch.success is False
        assert batch.total_insights == 3
        assert [s.meta_account_id for s in batch.account_stats] == ["100001", "100002"]
        assert any("100001" in error and "Rate limit exceeded" in error for error in batch.errors)

        assert _status(db_session, first.id).sync_status == SyncStatusEnum.failed
        assert _status(db_session, second.id).sync_status == SyncStatusEnum.success

    def test_tenants_stay_isolated(self, session_factory, db_session, make_account, clients):
        make_account(access_token="EAAB-token-one")
        make_account(access_token="EAAB-token-two")
        foreign_row = {
            "date_start": "2025-01-14",
            "account_id": "100001",
            "campaign_id": "100002-c1",
            "adset_id": "100002-as1",
            "ad_id": "100002-ad1",
            "impressions": "999",
        }
        clients.clients["100001"] = FakeMetaClient("100001", extra_insights=[foreign_row])
        clients.clients["100002"] = FakeMetaClient("100002")

        batch = run_sync_for_all_accounts(
            "2025-01-14", "2025-01-14", session_factory=session_factory, max_workers=1
        )

        assert batch.accounts_succeeded == 2
        assert sorted(clients.built) == [("EAAB-token-one", "100001"), ("EAAB-token-two", "100002")]
        first, second = batch.account_stats
        assert first.insights_skipped == 1
        db_session.expire_all()
        owner_of = dict(db_session.execute(select(DailyAdInsight.ad_id, DailyAdInsight.account_id)).all())
        assert owner_of["100002-ad1"] == "100002"
        assert all(ad_id.split("-")[0] == account_id for ad_id, account_id in owner_of.items())

    def test_inactive_accounts_are_not_synced(self, session_factory, registry, make_account, clients):
        make_account()
        inactive = make_account()
        registry.deactivate(inactive.id)
        clients.clients["100001"] = FakeMetaClient("100001")

        batch = run_sync_for_all_accounts("2025-01-14", "2025-01-14", session_factory=session_factory)

        assert batch.total_accounts == 1
        assert clients.built == [("EAAB-test-token-1", "100001")]

    def test_parallel_workers(self, file_session_factory, clients):
        db = file_session_factory()
        registry = AccountRegistry(db)
        for n in range(1, 4):
            registry.create(ClientAccountCreate(
                client_name=f"Parallel {n}",
                meta_account_id=f"act_20000{n}",
                access_token=f"EAAB-parallel-{n}",
            ))
            clients.clients[f"20000{n}"] = FakeMetaClient(f"20000{n}")
        db.close()

        batch = run_sync_for_all_accounts(
            "2025-01-14", "2025-01-14", session_factory=file_session_factory, max_workers=3
        )

        assert batch.accounts_succeeded == 3
        assert batch.total_insights == 9
        assert [s.account_name for s in batch.account_stats] == ["Parallel 1", "Parallel 2", "Parallel 3"]

        db = file_session_factory()
        try:
            statuses = {row.sync_status for row in db.execute(select(ClientAccount)).scalars()}
        finally:
            db.close()
        assert statuses == {SyncStatusEnum.success}

    def test_invalid_range_rejected(self, session_factory, make_account, clients):
        make_account()

        with pytest.raises(DateRangeError):
            run_sync_for_all_accounts("2025-13-01", "2025-01-14", session_factory=session_factory)

        assert clients.built == []

    def test_daily_sync_uses_yesterday(self, session_factory, make_account, clients):
        make_account()
        clients.clients["100001"] = FakeMetaClient("100001")

        batch = run_daily_sync_for_all_accounts("UTC", session_factory=session_factory)

        assert batch.date_start == batch.date_end
        assert batch.accounts_succeeded == 1
