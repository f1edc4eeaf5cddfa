import math
import re
from datetime import datetime

import mongomock
import pytest
from bson import ObjectId

from errors import ValidationError
from query_builder import (
    PAYMENT_SORT_FIELDS,
    PRODUCT_SORT_FIELDS,
    build_pagination,
    build_payment_filter,
    build_product_filter,
    build_sort,
    parse_float,
    parse_iso_date,
    parse_limit,
    parse_page,
)


@pytest.mark.parametrize(
    "page,limit,total",
    [(1, 10, 0), (1, 10, 10), (1, 10, 11), (2, 10, 11), (3, 7, 50), (8, 7, 50), (5, 20, 3)],
)
def test_pagination_fields(page, limit, total):
    pagination = build_pagination(page, limit, total)

    assert pagination["totalPages"] == math.ceil(total / limit)
    assert pagination["hasNext"] == (page < pagination["totalPages"])
    assert pagination["hasPrev"] == (page > 1)
    assert pagination["currentPage"] == page
    assert pagination["totalCount"] == total


def test_numeric_parameters_fall_back_to_defaults():
    assert parse_page(None) == 1
    assert parse_page("abc") == 1
    assert parse_page("0") == 1
    assert parse_page("-3") == 1
    assert parse_page("4") == 4
    assert parse_limit(None, 20) == 20
    assert parse_limit("ten", 10) == 10
    assert parse_limit("0", 10) == 10
    assert parse_limit("5", 10) == 5
    assert parse_limit("5000", 10) == 100
    assert parse_float("12.5") == 12.5
    assert parse_float("nope") is None
    assert parse_float("") is None
    assert parse_float("inf") is None


def test_end_date_is_normalized_to_end_of_day():
    assert parse_iso_date("2026-03-01") == datetime(2026, 3, 1)
    assert parse_iso_date("2026-03-01", end_of_day=True) == datetime(2026, 3, 1, 23, 59, 59, 999000)
    assert parse_iso_date("2026-03-01T10:00:00Z") == datetime(2026, 3, 1, 10, 0)
    assert parse_iso_date("2026-03-01T12:00:00+02:00") == datetime(2026, 3, 1, 10, 0)
    assert parse_iso_date("yesterday") is None
    assert parse_iso_date("") is None


def test_product_filter_only_bounds_supplied_prices():
    query = build_product_filter({"minPrice": "10"})
    assert query == {"price": {"$gte": 10.0}}

    query = build_product_filter({"maxPrice": "99.5", "minPrice": "bad"})
    assert query == {"price": {"$lte": 99.5}}


def test_product_filter_text_matching_is_case_insensitive_substring():
    query = build_product_filter({"category": "sho", "search": "run+"})

    assert query["category"].pattern == re.escape("sho")
    assert query["category"].flags & re.IGNORECASE
    fields = [next(iter(clause)) for clause in query["$or"]]
    assert fields == ["name", "description", "category"]
    assert query["$or"][0]["name"].search("Trail RUN+ shoe")


def test_product_filter_uses_explicit_category_over_arguments():
    query = build_product_filter({"category": "hats"}, category="shoes")
    assert query["category"].pattern == "shoes"


def test_sort_defaults_and_direction():
    assert build_sort({}, PRODUCT_SORT_FIELDS) == ("created_at", -1)
    assert build_sort({"sortBy": "price", "sortOrder": "asc"}, PRODUCT_SORT_FIELDS) == ("price", 1)
    assert build_sort({"sortBy": "price", "sortOrder": "whatever"}, PRODUCT_SORT_FIELDS) == ("price", 1)
    assert build_sort({"sortBy": "password"}, PRODUCT_SORT_FIELDS) == ("created_at", -1)
    assert build_sort({"sortBy": "totalAmount", "sortOrder": "desc"}, PAYMENT_SORT_FIELDS) == (
        "total_amount",
        -1,
    )


def test_payment_filter_status_and_dates():
    db = mongomock.MongoClient()["filters"]

    query = build_payment_filter(
        {"status": "paid", "startDate": "2026-01-01", "endDate": "2026-01-31"}, db
    )

    assert query == {
        "$and": [
            {"status": "paid"},
            {
                "created_at": {
                    "$gte": datetime(2026, 1, 1),
                    "$lte": datetime(2026, 1, 31, 23, 59, 59, 999000),
                }
            },
        ]
    }
    assert build_payment_filter({"status": "all"}, db) == {}


def test_payment_filter_rejects_unknown_status():
    db = mongomock.MongoClient()["filters"]
    with pytest.raises(ValidationError):
        build_payment_filter({"status": "shipped"}, db)


def test_payment_search_matches_customers_orders_and_intents():
    db = mongomock.MongoClient()["filters"]
    alice = db.users.insert_one({"name": "Alice Smith", "email": "alice@example.com"}).inserted_id
    bob = db.users.insert_one({"name": "Bob Jones", "email": "bob@example.com"}).inserted_id
    alice_order = db.orders.insert_one({"_id": ObjectId("65aa00000000000000000001"), "customer": alice}).inserted_id
    bob_order = db.orders.insert_one({"_id": ObjectId("65bb00000000000000000002"), "customer": bob}).inserted_id
    db.payment_intents.insert_many(
        [
            {"intent_id": "pi_1", "order": alice_order},
            {"intent_id": "pi_2", "order": bob_order},
            {"intent_id": "pi_special", "order": None},
        ]
    )

    def matching(term):
        query = build_payment_filter({"search": term}, db)
        return sorted(document["intent_id"] for document in db.payment_intents.find(query))

    assert matching("ALICE") == ["pi_1"]
    assert matching("bob@") == ["pi_2"]
    assert matching("special") == ["pi_special"]
    assert matching("65BB") == ["pi_2"]
    assert matching(str(bob_order)) == ["pi_2"]
    assert matching("65") == ["pi_1", "pi_2"]
    assert matching("00000002") == []
    assert matching("nobody") == []


def test_payment_search_by_order_id_does_not_list_orders():
    db = mongomock.MongoClient()["filters"]
    db.orders.insert_many([{"customer": None} for _ in range(50)])

    query = build_payment_filter({"search": "a"}, db)

    order_clauses = [clause["order"] for clause in query["$or"] if "order" in clause]
    assert order_clauses == [
        {
            "$gte": ObjectId("a00000000000000000000000"),
            "$lte": ObjectId("afffffffffffffffffffffff"),
        }
    ]


def test_payment_filter_status_is_case_sensitive():
    db = mongomock.MongoClient()["filters"]

    with pytest.raises(ValidationError):
        build_payment_filter({"status": "PAID"}, db)
