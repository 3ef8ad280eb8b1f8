"""Meta Ads API Client Service.

WHAT:
    Wrapper for Facebook Business SDK providing rate-limited, paginated access
    to the Meta Marketing API for ONE ad account and ONE credential.

WHY:
    - Credential isolation: each client owns its own FacebookAdsApi/session
      instead of the SDK's process-global default, so account workers running
      in parallel never borrow each other's token.
    - Rate limiting per credential (200 calls/hour by default); one token's
      budget never pools with another's.
    - Pagination handled here; callers always get complete lists.
    - Transient failures (throttling, 5xx, transport) retried with backoff;
      everything else translated into MetaAdsClientError subclasses.

WHERE USED:
    - adsync/services/meta_sync_service.py (sync pipeline stages 1-5)

RATE LIMITS:
    - META_CALLS_PER_HOUR calls per hour per credential (sliding window)
    - INSIGHTS_PAGE_DELAY_SECONDS pause between insight pages

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api
    - https://developers.facebook.com/docs/graph-api/overview/rate-limiting
"""

import logging
import threading
from collections import deque
from functools import wraps
from time import time, sleep
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

import requests
from facebook_business.api import FacebookAdsApi
from facebook_business.session import FacebookSession
from facebook_business.adobjects.adaccount import AdAccount
from facebook_business.adobjects.campaign import Campaign
from facebook_business.adobjects.adset import AdSet
from facebook_business.adobjects.ad import Ad
from facebook_business.exceptions import FacebookRequestError

from adsync.config import get_settings
from adsync.schemas import normalize_meta_account_id
from adsync.security import CredentialVault

logger = logging.getLogger(__name__)

# Sliding-window call history keyed by credential fingerprint
_rate_limit_call_times: Dict[str, Deque[float]] = {}
_rate_limit_lock = threading.Lock()

AUTH_ERROR_CODES = {190, 102}
PERMISSION_ERROR_CODES = {10, 200, 294}
RATE_LIMIT_ERROR_CODES = {4, 17, 32, 613, 80000, 80003, 80004, 80014}
TRANSIENT_ERROR_CODES = {1, 2}
TRANSIENT_HTTP_STATUSES = {429, 500, 502, 503, 504}

ACCOUNT_FIELDS = [
    AdAccount.Field.id,
    AdAccount.Field.name,
    AdAccount.Field.currency,
    AdAccount.Field.timezone_name,
    AdAccount.Field.business,
]

CAMPAIGN_FIELDS = [
    Campaign.Field.id,
    Campaign.Field.name,
    Campaign.Field.status,
    Campaign.Field.objective,
    Campaign.Field.daily_budget,
    Campaign.Field.lifetime_budget,
    Campaign.Field.start_time,
    Campaign.Field.stop_time,
    Campaign.Field.created_time,
    Campaign.Field.updated_time,
]

ADSET_FIELDS = [
    AdSet.Field.id,
    AdSet.Field.name,
    AdSet.Field.status,
    AdSet.Field.campaign_id,
    AdSet.Field.daily_budget,
    AdSet.Field.lifetime_budget,
    AdSet.Field.bid_amount,
    AdSet.Field.optimization_goal,
    AdSet.Field.billing_event,
    AdSet.Field.start_time,
    AdSet.Field.end_time,
    AdSet.Field.created_time,
    AdSet.Field.updated_time,
]

AD_FIELDS = [
    Ad.Field.id,
    Ad.Field.name,
    Ad.Field.status,
    Ad.Field.adset_id,
    Ad.Field.campaign_id,
    Ad.Field.creative,
    Ad.Field.created_time,
    Ad.Field.updated_time,
]

INSIGHT_FIELDS = [
    "date_start",
    "date_stop",
    "account_id",
    "campaign_id",
    "adset_id",
    "ad_id",
    "impressions",
    "clicks",
    "inline_link_clicks",
    "reach",
    "frequency",
    "spend",
    "actions",
    "action_values",
    "video_thruplay_watched_actions",
    "video_p25_watched_actions",
    "video_p50_watched_actions",
    "video_p75_watched_actions",
    "video_p95_watched_actions",
    "video_p100_watched_actions",
    "video_avg_time_watched_actions",
]

ATTRIBUTION_WINDOWS = ["7d_click", "1d_view"]
LISTING_PAGE_SIZE = 100
VALID_INSIGHT_LEVELS = ("account", "campaign", "adset", "ad")


WaitHook = Callable[[float, str], None]


def _acquire_rate_limit_slot(key: str, calls_per_hour: int, before_wait: Optional[WaitHook] = None) -> None:
    """Block until `key` has budget left in the trailing hour, then record a call.

    The lock is never held while sleeping so other credentials keep flowing.
    `before_wait(seconds, "rate limit")` runs before each sleep and may raise
    to abort instead of waiting.
    """
    while True:
        with _rate_limit_lock:
            call_times = _rate_limit_call_times.setdefault(key, deque())
            now = time()
            while call_times and call_times[0] <= now - 3600:
                call_times.popleft()

            if len(call_times) < calls_per_hour:
                call_times.append(now)
                return

            sleep_time = 3600 - (now - call_times[0]) + 1

        logger.warning(
            f"[META_CLIENT] Rate limit reached ({calls_per_hour} calls/hour). "
            f"Sleeping for {sleep_time:.1f}s"
        )
        if before_wait is not None:
            before_wait(sleep_time, "rate limit")
        sleep(sleep_time)


def rate_limit(calls_per_hour: Optional[int] = None):
    """Decorator to enforce rate limiting using a sliding window.

    WHAT:
        Bound methods are budgeted per `self.rate_limit_key` (the credential
        fingerprint) and `self.calls_per_hour`; plain functions share one
        budget per function.

    WHY:
        Meta throttles per token. Exceeding the budget causes error code 17/613
        responses and, repeated, temporary blocks.

    Args:
        calls_per_hour: Fixed budget; defaults to the instance's `calls_per_hour`.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            owner = args[0] if args else None
            key = getattr(owner, "rate_limit_key", None) or f"{func.__module__}.{func.__qualname__}"
            limit = calls_per_hour or getattr(owner, "calls_per_hour", None) or get_settings().META_CALLS_PER_HOUR
            _acquire_rate_limit_slot(key, limit, getattr(owner, "before_wait", None))
            return func(*args, **kwargs)
        return wrapper
    return decorator


class MetaAdsClientError(Exception):
    """Base exception for Meta Ads Client errors."""

    def __init__(self, message: str, *, http_status: Optional[int] = None, error_code: Optional[int] = None):
        super().__init__(message)
        self.http_status = http_status
        self.error_code = error_code


class MetaAdsAuthenticationError(MetaAdsClientError):
    """Raised when authentication fails (401 / OAuth code 190)."""
    pass


class MetaAdsPermissionError(MetaAdsClientError):
    """Raised when permissions are insufficient (403 / code 10, 200)."""
    pass


class MetaAdsValidationError(MetaAdsClientError):
    """Raised when request is malformed (400 / code 100)."""
    pass


class MetaAdsRateLimitError(MetaAdsClientError):
    """Raised when Meta keeps throttling after all retries (429 / code 4, 17, 613)."""
    pass


class MetaAdsTransportError(MetaAdsClientError):
    """Raised when Meta is unreachable (connection reset, timeout)."""
    pass


def _export(obj: Any) -> Dict[str, Any]:
    """Plain dict for an SDK object (nested objects included) or a mapping."""
    if hasattr(obj, "export_all_data"):
        return obj.export_all_data()
    return dict(obj)


def _has_next_page(cursor: Any) -> bool:
    # Cursor exposes no public "has next" accessor; load_next_page checks this flag too.
    return not getattr(cursor, "_finished_iteration", False)


class MetaAdsClient:
    """Client for one Meta ad account.

    WHAT:
        Fetches account info, campaigns, ad sets, ads and ad-level daily
        insights. Every list method returns ALL records (pagination drained).

    Usage:
        ```python
        client = MetaAdsClient(access_token=token, account_id="act_123456789")
        info = client.get_account_info()
        campaigns = client.get_campaigns()
        insights = client.get_all_insights("2025-01-01", "2025-01-07", level="ad")
        ```
    """

    def __init__(
        self,
        access_token: str,
        account_id: str,
        *,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        page_size: Optional[int] = None,
        page_delay: Optional[float] = None,
        calls_per_hour: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_backoff: Optional[Sequence[float]] = None,
        before_wait: Optional[WaitHook] = None,
    ):
        """Initialize a client bound to one credential and one ad account.

        Args:
            access_token: Decrypted Meta access token (system user or OAuth)
            account_id: Ad account id, with or without the "act_" prefix
            app_id / app_secret: Optional app credentials (enables appsecret_proof)
            before_wait: Called with (seconds, reason) before every client-side
                sleep (rate limit, retry backoff, page delay); may raise to
                abort. The exception propagates to the caller unchanged.
            Remaining keyword arguments override the META_* / INSIGHTS_* settings.
        """
        if not access_token:
            raise MetaAdsAuthenticationError("Cannot build a Meta client without an access token.")

        settings = get_settings()
        self.account_id = normalize_meta_account_id(account_id)
        self.graph_account_id = f"act_{self.account_id}"
        self.rate_limit_key = CredentialVault.hash(access_token)[:16]
        self.calls_per_hour = calls_per_hour or settings.META_CALLS_PER_HOUR
        self.page_size = min(page_size or settings.INSIGHTS_PAGE_SIZE, 1000)
        self.page_delay = settings.INSIGHTS_PAGE_DELAY_SECONDS if page_delay is None else page_delay
        self.max_retries = settings.META_MAX_RETRIES if max_retries is None else max_retries
        self.retry_backoff = list(settings.META_RETRY_BACKOFF_SECONDS if retry_backoff is None else retry_backoff) or [0]
        self.before_wait = before_wait

        session = FacebookSession(
            app_id=app_id or settings.META_APP_ID,
            app_secret=app_secret or settings.META_APP_SECRET,
            access_token=access_token,
            timeout=timeout or settings.META_REQUEST_TIMEOUT_SECONDS,
        )
        self._api = FacebookAdsApi(session, api_version=api_version or settings.META_API_VERSION)

        logger.info(f"[META_CLIENT] Initialized for account {self.graph_account_id}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @rate_limit()
    def get_account_info(self) -> Dict[str, Any]:
        """Fetch id, name, currency and timezone of the ad account.

        Raises:
            MetaAdsClientError (or subclass): Any failure. The orchestrator
                treats this as fatal for the account run.
        """
        logger.info(f"[META_CLIENT] Fetching account info: {self.graph_account_id}")
        account = self._call_with_retry(
            lambda: AdAccount(self.graph_account_id, api=self._api).api_get(fields=ACCOUNT_FIELDS),
            "fetching account info",
        )
        info = _export(account)
        business = info.get("business")
        if isinstance(business, dict):
            info["business_id"] = business.get("id")
        return info

    @rate_limit()
    def get_campaigns(self) -> List[Dict[str, Any]]:
        """Fetch all campaigns of the ad account."""
        logger.info(f"[META_CLIENT] Fetching campaigns for account: {self.graph_account_id}")
        cursor = self._call_with_retry(
            lambda: AdAccount(self.graph_account_id, api=self._api).get_campaigns(
                fields=CAMPAIGN_FIELDS, params={"limit": LISTING_PAGE_SIZE}
            ),
            f"fetching campaigns for {self.graph_account_id}",
        )
        campaigns = self._drain(cursor, f"fetching campaigns for {self.graph_account_id}")
        logger.info(f"[META_CLIENT] Fetched {len(campaigns)} campaigns")
        return campaigns

    @rate_limit()
    def get_adsets(self, campaign_id: str) -> List[Dict[str, Any]]:
        """Fetch all ad sets of one campaign."""
        logger.debug(f"[META_CLIENT] Fetching adsets for campaign: {campaign_id}")
        cursor = self._call_with_retry(
            lambda: Campaign(campaign_id, api=self._api).get_ad_sets(
                fields=ADSET_FIELDS, params={"limit": LISTING_PAGE_SIZE}
            ),
            f"fetching adsets for campaign {campaign_id}",
        )
        return self._drain(cursor, f"fetching adsets for campaign {campaign_id}")

    @rate_limit()
    def get_ads(self, adset_id: str) -> List[Dict[str, Any]]:
        """Fetch all ads of one ad set."""
        logger.debug(f"[META_CLIENT] Fetching ads for adset: {adset_id}")
        cursor = self._call_with_retry(
            lambda: AdSet(adset_id, api=self._api).get_ads(
                fields=AD_FIELDS, params={"limit": LISTING_PAGE_SIZE}
            ),
            f"fetching ads for adset {adset_id}",
        )
        return self._drain(cursor, f"fetching ads for adset {adset_id}")

    @rate_limit()
    def get_all_insights(
        self,
        date_start: str,
        date_end: str,
        level: str = "ad",
        on_page: Optional[Callable[[int, int], None]] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch daily insights for the whole window, following every page.

        WHAT:
            One row per (entity at `level`, day). Pages are INSIGHTS_PAGE_SIZE
            rows; the client sleeps INSIGHTS_PAGE_DELAY_SECONDS and takes a
            rate-limit slot before each further page.

        Args:
            date_start / date_end: Inclusive YYYY-MM-DD bounds
            level: account | campaign | adset | ad
            on_page: Called with (page_number, rows_so_far) after each page;
                may raise to abort (the orchestrator uses it for deadlines).

        Raises:
            MetaAdsValidationError: Unknown level or rejected date range
            MetaAdsClientError (or subclass): Any other failure
        """
        if level not in VALID_INSIGHT_LEVELS:
            raise MetaAdsValidationError(f"Invalid insights level '{level}'")

        params = {
            "level": level,
            "time_range": {"since": date_start, "until": date_end},
            "time_increment": 1,
            "limit": self.page_size,
            "use_unified_attribution_setting": True,
            "action_attribution_windows": ATTRIBUTION_WINDOWS,
        }
        context = f"fetching {level} insights for {self.graph_account_id} ({date_start} to {date_end})"

        logger.info(f"[META_CLIENT] {context[0].upper()}{context[1:]}")
        cursor = self._call_with_retry(
            lambda: AdAccount(self.graph_account_id, api=self._api).get_insights(
                fields=INSIGHT_FIELDS, params=params
            ),
            context,
        )
        insights = self._drain(cursor, context, page_delay=self.page_delay, on_page=on_page)
        logger.info(f"[META_CLIENT] Fetched {len(insights)} insight rows")
        return insights

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _drain(
        self,
        cursor: Any,
        context: str,
        page_delay: float = 0.0,
        on_page: Optional[Callable[[int, int], None]] = None,
    ) -> List[Dict[str, Any]]:
        """Collect every page of an SDK cursor; each further page is rate limited."""
        rows: List[Dict[str, Any]] = []
        page = 1
        while True:
            rows.extend(_export(cursor[i]) for i in range(len(cursor)))
            if on_page is not None:
                on_page(page, len(rows))

            if not _has_next_page(cursor):
                break
            self._wait(page_delay, "page delay")
            _acquire_rate_limit_slot(self.rate_limit_key, self.calls_per_hour, self.before_wait)
            if not self._call_with_retry(cursor.load_next_page, f"{context} (page {page + 1})"):
                break
            page += 1

        if page > 1:
            logger.debug(f"[META_CLIENT] {page} pages while {context}")
        return rows

    def _call_with_retry(self, fn: Callable[[], Any], context: str) -> Any:
        """Run an idempotent read, retrying transient failures with backoff."""
        attempt = 0
        while True:
            try:
                return fn()
            except FacebookRequestError as error:
                if attempt < self.max_retries and self._is_transient(error):
                    self._backoff(attempt, context, f"HTTP {error.http_status()}, code {error.api_error_code()}")
                    attempt += 1
                    continue
                self._handle_api_error(error, context)
            except requests.RequestException as error:
                if attempt < self.max_retries:
                    self._backoff(attempt, context, type(error).__name__)
                    attempt += 1
                    continue
                logger.error(f"[META_CLIENT] Transport error while {context}: {error}")
                raise MetaAdsTransportError(f"Meta API unreachable while {context}: {error}") from error

    def _backoff(self, attempt: int, context: str, reason: str) -> None:
        wait = self.retry_backoff[min(attempt, len(self.retry_backoff) - 1)]
        logger.warning(
            f"[META_CLIENT] Transient error while {context} ({reason}); "
            f"retry {attempt + 1}/{self.max_retries} in {wait}s"
        )
        self._wait(wait, "retry backoff")

    def _wait(self, seconds: float, reason: str) -> None:
        if not seconds:
            return
        if self.before_wait is not None:
            self.before_wait(seconds, reason)
        sleep(seconds)

    @staticmethod
    def _is_transient(error: FacebookRequestError) -> bool:
        return bool(
            error.http_status() in TRANSIENT_HTTP_STATUSES
            or error.api_error_code() in RATE_LIMIT_ERROR_CODES
            or error.api_error_code() in TRANSIENT_ERROR_CODES
            or error.api_transient_error()
        )

    def _handle_api_error(self, error: FacebookRequestError, context: str) -> None:
        """Translate FacebookRequestError into a specific exception type.

        Raises:
            MetaAdsAuthenticationError: 401 / code 190
            MetaAdsPermissionError: 403 / code 10, 200
            MetaAdsRateLimitError: 429 / throttling codes
            MetaAdsValidationError: 400 / code 100
            MetaAdsClientError: Anything else (5xx after retries, unknown)
        """
        error_code = error.api_error_code()
        error_message = error.api_error_message()
        http_status = error.http_status()

        logger.error(
            f"[META_CLIENT] API error while {context}: "
            f"HTTP {http_status}, Code {error_code}, Message: {error_message}"
        )

        kwargs = {"http_status": http_status, "error_code": error_code}
        if http_status == 401 or error_code in AUTH_ERROR_CODES:
            raise MetaAdsAuthenticationError(
                f"Authentication failed while {context}. Token may be expired or invalid.", **kwargs
            ) from error
        if http_status == 429 or error_code in RATE_LIMIT_ERROR_CODES:
            raise MetaAdsRateLimitError(
                f"Rate limit exceeded while {context}: {error_message}", **kwargs
            ) from error
        if http_status == 403 or error_code in PERMISSION_ERROR_CODES:
            raise MetaAdsPermissionError(
                f"Permission denied while {context}. Check token permissions.", **kwargs
            ) from error
        if http_status == 400 or error_code == 100:
            raise MetaAdsValidationError(
                f"Invalid request while {context}: {error_message}", **kwargs
            ) from error
        raise MetaAdsClientError(
            f"API error while {context}: HTTP {http_status}, {error_message}", **kwargs
        ) from error
