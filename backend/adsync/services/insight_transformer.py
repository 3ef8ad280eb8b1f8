"""Meta insights → daily fact rows.

WHAT:
    Pure functions converting raw ad-level insight records (string-encoded
    counters plus heterogeneous `actions` / `action_values` arrays) into flat
    DailyFactRow objects with derived metrics, and a filter that drops rows
    which cannot be written without a null key.

WHY:
    The warehouse stores derived metrics computed once at write time, so the
    read side never divides. Keeping this free of I/O makes it deterministic:
    the same raw batch always yields identical rows.

ACTION MAPPING:
    Each conversion bucket owns a closed, ordered tuple of action-type tags.
    Meta reports the same conversion under several aliases (e.g. `purchase`,
    `omni_purchase`, `offsite_conversion.fb_pixel_purchase`), so the first tag
    present wins and aliases are never summed. Tags outside every bucket are
    counted as unrecognized and reported, never added to a bucket.

REFERENCES:
    - adsync/models.py:DailyAdInsight (target table)
    - adsync/services/meta_sync_service.py (stage 5 caller)
"""

import enum
import logging
import math
from collections import Counter
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from adsync.schemas import DailyFactRow

logger = logging.getLogger(__name__)


class ActionBucket(str, enum.Enum):
    purchase = "purchase"
    lead = "lead"
    registration = "registration"
    add_to_cart = "add_to_cart"
    link_click = "link_click"
    video_view = "video_view"


# Precedence order: first tag present in a record wins for its bucket.
ACTION_TAGS: Dict[ActionBucket, Tuple[str, ...]] = {
    ActionBucket.purchase: (
        "purchase",
        "omni_purchase",
        "offsite_conversion.fb_pixel_purchase",
        "onsite_web_purchase",
    ),
    ActionBucket.lead: (
        "lead",
        "onsite_conversion.lead_grouped",
        "offsite_conversion.fb_pixel_lead",
    ),
    ActionBucket.registration: (
        "complete_registration",
        "omni_complete_registration",
        "offsite_conversion.fb_pixel_complete_registration",
    ),
    ActionBucket.add_to_cart: (
        "add_to_cart",
        "omni_add_to_cart",
        "offsite_conversion.fb_pixel_add_to_cart",
    ),
    ActionBucket.link_click: ("link_click",),
    ActionBucket.video_view: ("video_view",),
}

TAG_TO_BUCKET: Dict[str, ActionBucket] = {
    tag: bucket for bucket, tags in ACTION_TAGS.items() for tag in tags
}

REQUIRED_KEYS = ("date_start", "account_id", "campaign_id", "ad_set_id", "ad_id")

NON_NEGATIVE_FIELDS = (
    "impressions",
    "clicks",
    "link_clicks",
    "reach",
    "frequency",
    "spend",
    "purchases",
    "purchase_values",
    "leads",
    "lead_values",
    "registrations",
    "registration_values",
    "add_to_carts",
)


def _to_float(value: Any) -> float:
    """Coerce a Meta numeric (usually a string) to float; junk and non-finite become 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _to_int(value: Any) -> int:
    return int(_to_float(value))


def _safe_div(numerator: float, denominator: float, scale: float = 1.0) -> float:
    """Division guarded to 0 for a zero denominator or a non-finite result."""
    if not denominator:
        return 0.0
    result = numerator / denominator * scale
    return round(result, 6) if math.isfinite(result) else 0.0


def _sum_action_list(entries: Any) -> float:
    """Sum the `value`s of a Meta action list such as `video_p25_watched_actions`."""
    if not entries:
        return 0.0
    if not isinstance(entries, list):
        return _to_float(entries)
    return sum(_to_float(entry.get("value")) for entry in entries if isinstance(entry, Mapping))


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        return None


def _clean_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _bucket_actions(entries: Any, unrecognized: Counter) -> Dict[ActionBucket, float]:
    """Map an actions/action_values array onto buckets using tag precedence."""
    seen: Dict[str, float] = {}
    for entry in entries or []:
        if not isinstance(entry, Mapping):
            continue
        tag = entry.get("action_type")
        if not tag:
            continue
        if tag not in TAG_TO_BUCKET:
            unrecognized[tag] += 1
            continue
        seen[tag] = _to_float(entry.get("value"))

    buckets: Dict[ActionBucket, float] = {}
    for bucket, tags in ACTION_TAGS.items():
        for tag in tags:
            if tag in seen:
                buckets[bucket] = seen[tag]
                break
    return buckets


def _transform_one(raw: Mapping[str, Any], unrecognized: Counter) -> DailyFactRow:
    impressions = _to_int(raw.get("impressions"))
    clicks = _to_int(raw.get("clicks"))
    spend = _to_float(raw.get("spend"))

    counts = _bucket_actions(raw.get("actions"), unrecognized)
    # Values share tags with counts; unknown value tags were already counted above.
    values = _bucket_actions(raw.get("action_values"), Counter())

    purchases = counts.get(ActionBucket.purchase, 0.0)
    leads = counts.get(ActionBucket.lead, 0.0)
    registrations = counts.get(ActionBucket.registration, 0.0)
    purchase_values = values.get(ActionBucket.purchase, 0.0)
    lead_values = values.get(ActionBucket.lead, 0.0)
    registration_values = values.get(ActionBucket.registration, 0.0)

    # Legacy combined fields are derived from the per-type split, never read upstream.
    conversions = purchases + leads + registrations
    conversion_values = purchase_values + lead_values + registration_values

    video_views = int(counts.get(ActionBucket.video_view, 0.0))
    video_thruplays = int(_sum_action_list(raw.get("video_thruplay_watched_actions")))
    video_15s_views = int(_sum_action_list(raw.get("video_15_sec_watched_actions"))) or video_thruplays
    video_p100 = int(_sum_action_list(raw.get("video_p100_watched_actions")))

    return DailyFactRow(
        date_start=_parse_date(raw.get("date_start")),
        account_id=_clean_id(raw.get("account_id")),
        campaign_id=_clean_id(raw.get("campaign_id")),
        ad_set_id=_clean_id(raw.get("adset_id") or raw.get("ad_set_id")),
        ad_id=_clean_id(raw.get("ad_id")),
        impressions=impressions,
        clicks=clicks,
        link_clicks=int(counts.get(ActionBucket.link_click, 0.0)) or _to_int(raw.get("inline_link_clicks")),
        reach=_to_int(raw.get("reach")),
        frequency=_to_float(raw.get("frequency")),
        spend=spend,
        purchases=purchases,
        purchase_values=purchase_values,
        leads=leads,
        lead_values=lead_values,
        registrations=registrations,
        registration_values=registration_values,
        add_to_carts=counts.get(ActionBucket.add_to_cart, 0.0),
        ctr=_safe_div(clicks, impressions, 100),
        cpc=_safe_div(spend, clicks),
        cpm=_safe_div(spend, impressions, 1000),
        purchase_cpa=_safe_div(spend, purchases),
        purchase_roas=_safe_div(purchase_values, spend),
        conversions=conversions,
        conversion_values=conversion_values,
        cost_per_conversion=_safe_div(spend, conversions),
        roas=_safe_div(conversion_values, spend),
        video_views=video_views,
        video_15s_views=video_15s_views,
        video_thruplays=video_thruplays,
        video_p25_watched=int(_sum_action_list(raw.get("video_p25_watched_actions"))),
        video_p50_watched=int(_sum_action_list(raw.get("video_p50_watched_actions"))),
        video_p75_watched=int(_sum_action_list(raw.get("video_p75_watched_actions"))),
        video_p95_watched=int(_sum_action_list(raw.get("video_p95_watched_actions"))),
        video_p100_watched=video_p100,
        video_avg_watch_time=_sum_action_list(raw.get("video_avg_time_watched_actions")),
        thumbstop_rate=_safe_div(video_views, impressions, 100),
        hold_rate=_safe_div(video_15s_views, impressions, 100),
        completion_rate=_safe_div(video_p100, impressions, 100),
    )


def transform_insights_with_report(
    raw_insights: Iterable[Mapping[str, Any]],
) -> Tuple[List[DailyFactRow], Dict[str, int]]:
    """Transform a raw batch and also return unrecognized action-type counts."""
    unrecognized: Counter = Counter()
    rows = [_transform_one(raw, unrecognized) for raw in raw_insights]

    if unrecognized:
        logger.debug(
            "[TRANSFORM] %d unrecognized action types ignored: %s",
            len(unrecognized),
            dict(unrecognized.most_common(10)),
        )
    return rows, dict(unrecognized)


def transform_insights(raw_insights: Iterable[Mapping[str, Any]]) -> List[DailyFactRow]:
    """Transform raw Meta insight records into daily fact rows.

    Missing or unparseable numbers become 0; derived metrics with a zero
    denominator are 0. Rows are returned in input order.
    """
    rows, _ = transform_insights_with_report(raw_insights)
    return rows


def _rejection_reason(row: DailyFactRow) -> Optional[str]:
    for key in REQUIRED_KEYS:
        if not getattr(row, key):
            return f"missing {key}"
    for field in NON_NEGATIVE_FIELDS:
        if getattr(row, field) < 0:
            return f"negative {field}"
    return None


def filter_valid_insights(rows: Iterable[DailyFactRow]) -> List[DailyFactRow]:
    """Drop rows that would write a null key or a negative counter."""
    valid: List[DailyFactRow] = []
    rejected: Counter = Counter()
    for row in rows:
        reason = _rejection_reason(row)
        if reason is None:
            valid.append(row)
        else:
            rejected[reason] += 1

    if rejected:
        logger.warning(
            "[TRANSFORM] Dropped %d invalid insight rows: %s",
            sum(rejected.values()),
            dict(rejected),
        )
    return valid
