"""Revenue analytics over payment intents."""
from datetime import datetime, timedelta
from typing import Dict, List, Optional

PERIOD_WINDOWS = {
    "daily": timedelta(days=7),
    "weekly": timedelta(weeks=12),
    # Twelve 30-day months, kept for parity with existing reports.
    "monthly": timedelta(days=12 * 30),
}

STATUS_KEYS = (
    ("pending", "pendingPayments", "pendingAmount"),
    ("paid", "completedPayments", "completedAmount"),
    ("failed", "failedPayments", "failedAmount"),
    ("refunded", "refundedPayments", "refundedAmount"),
)


def normalize_period(value: Optional[str]) -> str:
    candidate = str(value or "").strip().lower()
    return candidate if candidate in PERIOD_WINDOWS else "monthly"


def bucket_label(created_at: datetime, period: str) -> str:
    if period == "daily":
        return created_at.strftime("%Y-%m-%d")
    if period == "weekly":
        iso_year, iso_week, _ = created_at.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    return created_at.strftime("%Y-%m")


def total_revenue(collection) -> float:
    result = list(
        collection.aggregate(
            [
                {"$match": {"status": "paid"}},
                {"$group": {"_id": None, "total": {"$sum": "$total_amount"}}},
            ]
        )
    )
    if not result:
        return 0
    return round(result[0].get("total") or 0, 2)


def status_breakdown(collection) -> Dict[str, float]:
    grouped = {
        document["_id"]: document
        for document in collection.aggregate(
            [
                {
                    "$group": {
                        "_id": "$status",
                        "count": {"$sum": 1},
                        "amount": {"$sum": "$total_amount"},
                    }
                }
            ]
        )
    }

    breakdown: Dict[str, float] = {}
    for status, count_key, amount_key in STATUS_KEYS:
        entry = grouped.get(status) or {}
        breakdown[count_key] = int(entry.get("count") or 0)
        breakdown[amount_key] = round(entry.get("amount") or 0, 2)
    return breakdown


def revenue_trend(collection, period: str, now: datetime) -> List[Dict[str, object]]:
    """Group paid revenue by calendar day in the store, then fold days into period labels."""
    window_start = now - PERIOD_WINDOWS[period]
    daily_totals = collection.aggregate(
        [
            {"$match": {"status": "paid", "created_at": {"$gte": window_start}}},
            {
                "$group": {
                    "_id": {
                        "year": {"$year": "$created_at"},
                        "month": {"$month": "$created_at"},
                        "day": {"$dayOfMonth": "$created_at"},
                    },
                    "revenue": {"$sum": "$total_amount"},
                    "count": {"$sum": 1},
                }
            },
        ]
    )

    buckets: Dict[str, Dict[str, float]] = {}
    for document in daily_totals:
        day = document["_id"]
        label = bucket_label(datetime(day["year"], day["month"], day["day"]), period)
        bucket = buckets.setdefault(label, {"revenue": 0.0, "count": 0})
        bucket["revenue"] += float(document.get("revenue") or 0)
        bucket["count"] += int(document.get("count") or 0)

    return [
        {"period": label, "revenue": round(values["revenue"], 2), "count": values["count"]}
        for label, values in sorted(buckets.items())
    ]


def compute_payment_analytics(collection, period: Optional[str] = None, now: Optional[datetime] = None):
    """Summarize revenue, per-status totals and a bucketed revenue trend.

    ``period`` picks both the rolling window and the bucket size: the last
    7 days by day, the last 12 weeks by ISO week, or the last 360 days by
    calendar month (the default).
    """
    resolved_period = normalize_period(period)
    current_time = now or datetime.utcnow()

    analytics: Dict[str, object] = {"totalRevenue": total_revenue(collection)}
    analytics.update(status_breakdown(collection))
    analytics["period"] = resolved_period
    analytics["revenueTrend"] = revenue_trend(collection, resolved_period, current_time)
    return analytics
