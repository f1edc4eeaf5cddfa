"""Translate listing query parameters into MongoDB filter, sort and paging.

Product and payment listings share the same grammar: ``page``/``limit`` for
paging, ``sortBy``/``sortOrder`` for ordering, plus per-endpoint filters.
Malformed numbers and dates never fail a request, they simply drop the
corresponding directive.
"""
import math
import re
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Tuple

from bson import ObjectId

from errors import ValidationError

DEFAULT_PAGE = 1
PRODUCT_PAGE_SIZE = 20
PAYMENT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")

PRODUCT_SORT_FIELDS = {
    "createdAt": "created_at",
    "created_at": "created_at",
    "updatedAt": "updated_at",
    "name": "name",
    "price": "price",
    "stock": "stock",
    "category": "category",
}

PAYMENT_SORT_FIELDS = {
    "createdAt": "created_at",
    "created_at": "created_at",
    "updatedAt": "updated_at",
    "totalAmount": "total_amount",
    "status": "status",
    "intentId": "intent_id",
}

DATE_ONLY = re.compile(r"\d{4}-\d{2}-\d{2}")
OBJECT_ID_PREFIX = re.compile(r"[0-9a-f]{1,24}")


def _parse_int(value) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_page(value) -> int:
    page = _parse_int(value)
    if page is None or page < 1:
        return DEFAULT_PAGE
    return page


def parse_limit(value, default: int) -> int:
    limit = _parse_int(value)
    if limit is None or limit < 1:
        return default
    return min(limit, MAX_PAGE_SIZE)


def parse_float(value) -> Optional[float]:
    if value is None:
        return None
    candidate = str(value).strip()
    if not candidate:
        return None
    try:
        numeric = float(candidate)
    except ValueError:
        return None
    if not math.isfinite(numeric):
        return None
    return numeric


def parse_iso_date(value: Optional[str], *, end_of_day: bool = False):
    if not value:
        return None
    candidate = str(value).strip()
    if not candidate:
        return None
    normalized = candidate.replace("Z", "+00:00")
    date_only = bool(DATE_ONLY.fullmatch(candidate))
    if date_only:
        normalized = f"{candidate}T00:00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        # Stored timestamps are naive UTC.
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    if end_of_day and date_only:
        return parsed + timedelta(hours=23, minutes=59, seconds=59, milliseconds=999)
    return parsed


def contains_pattern(term: str):
    return re.compile(re.escape(term), re.IGNORECASE)


def build_product_filter(args: Mapping, category: Optional[str] = None) -> Dict:
    query: Dict[str, object] = {}

    category_term = (category if category is not None else args.get("category")) or ""
    category_term = str(category_term).strip()
    if category_term:
        query["category"] = contains_pattern(category_term)

    min_price = parse_float(args.get("minPrice"))
    max_price = parse_float(args.get("maxPrice"))
    if min_price is not None or max_price is not None:
        price_filter: Dict[str, float] = {}
        if min_price is not None:
            price_filter["$gte"] = min_price
        if max_price is not None:
            price_filter["$lte"] = max_price
        query["price"] = price_filter

    search_term = str(args.get("search") or args.get("q") or "").strip()
    if search_term:
        regex = contains_pattern(search_term)
        query["$or"] = [
            {"name": regex},
            {"description": regex},
            {"category": regex},
        ]

    return query


def resolve_payment_search(db, term: str) -> Dict:
    """Build the store-side clause matching a free-text payment search.

    The term is looked up in the customer name/email of the linked order
    and in the provider intent id. A hex term also matches orders whose id
    starts with it, expressed as an ``_id`` range so no orders are scanned.
    The clause is combined with the other filters before paging is applied.
    """
    regex = contains_pattern(term)
    customer_ids = [
        document["_id"]
        for document in db.users.find(
            {"$or": [{"name": regex}, {"email": regex}]}, {"_id": 1}
        )
    ]

    clauses: List[Dict] = [{"intent_id": regex}]
    if customer_ids:
        order_ids = [
            document["_id"]
            for document in db.orders.find({"customer": {"$in": customer_ids}}, {"_id": 1})
        ]
        if order_ids:
            clauses.append({"order": {"$in": order_ids}})

    order_prefix = term.strip().lower()
    if OBJECT_ID_PREFIX.fullmatch(order_prefix):
        clauses.append({
            "order": {
                "$gte": ObjectId(order_prefix.ljust(24, "0")),
                "$lte": ObjectId(order_prefix.ljust(24, "f")),
            }
        })
    return {"$or": clauses}


def build_payment_filter(args: Mapping, db) -> Dict:
    conditions: List[Dict] = []

    status = str(args.get("status") or "")
    if status and status != "all":
        if status not in PAYMENT_STATUSES:
            raise ValidationError("Invalid payment status filter.")
        conditions.append({"status": status})

    start_date = parse_iso_date(args.get("startDate"))
    end_date = parse_iso_date(args.get("endDate"), end_of_day=True)
    if start_date or end_date:
        created_filter: Dict[str, datetime] = {}
        if start_date:
            created_filter["$gte"] = start_date
        if end_date:
            created_filter["$lte"] = end_date
        conditions.append({"created_at": created_filter})

    search_term = str(args.get("search") or "").strip()
    if search_term:
        conditions.append(resolve_payment_search(db, search_term))

    if not conditions:
        return {}
    if len(conditions) == 1:
        return conditions[0]
    return {"$and": conditions}


def build_sort(args: Mapping, allowed_fields: Mapping[str, str]) -> Tuple[str, int]:
    requested = str(args.get("sortBy") or "").strip()
    field = allowed_fields.get(requested, "created_at")
    direction = -1 if str(args.get("sortOrder") or "desc").strip().lower() == "desc" else 1
    return field, direction


def build_pagination(page: int, limit: int, total: int) -> Dict[str, object]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "currentPage": page,
        "totalPages": total_pages,
        "totalCount": total,
        "limit": limit,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }


def paginate(collection, query: Dict, sort: Tuple[str, int], page: int, limit: int):
    """Run ``query`` and return the requested page plus its pagination block."""
    field, direction = sort
    skip = (page - 1) * limit
    cursor = (
        collection.find(query)
        .sort([(field, direction), ("_id", direction)])
        .skip(skip)
        .limit(limit)
    )
    documents = list(cursor)
    total = collection.count_documents(query)
    return documents, build_pagination(page, limit, total)
