"""Payment intent administration."""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId

from errors import NotFoundError, ValidationError
from mailer import send_mail
from query_builder import PAYMENT_STATUSES

logger = logging.getLogger(__name__)

STATUS_EMAIL_SUBJECTS = {
    "pending": "Your payment is pending",
    "paid": "Payment received",
    "failed": "Your payment could not be completed",
    "refunded": "Your payment has been refunded",
}


def _isoformat(value) -> Optional[str]:
    return value.isoformat() + "Z" if isinstance(value, datetime) else None


def _safe_amount(value) -> float:
    try:
        return round(float(value), 2)
    except (TypeError, ValueError):
        return 0.0


def load_orders(db, payment_documents: Iterable[Dict]) -> Dict[ObjectId, Dict]:
    """Fetch the orders referenced by ``payment_documents`` with their customers."""
    order_ids = {
        document.get("order")
        for document in payment_documents
        if isinstance(document.get("order"), ObjectId)
    }
    if not order_ids:
        return {}

    orders = {document["_id"]: document for document in db.orders.find({"_id": {"$in": list(order_ids)}})}
    customer_ids = {
        order.get("customer") for order in orders.values() if isinstance(order.get("customer"), ObjectId)
    }
    customers = {}
    if customer_ids:
        customers = {
            document["_id"]: document
            for document in db.users.find(
                {"_id": {"$in": list(customer_ids)}}, {"name": 1, "email": 1, "phone": 1}
            )
        }
    for order in orders.values():
        order["customer_document"] = customers.get(order.get("customer"))
    return orders


def serialize_customer(customer_document) -> Optional[Dict[str, str]]:
    if not customer_document:
        return None
    return {
        "id": str(customer_document["_id"]),
        "name": customer_document.get("name", "") or "",
        "email": customer_document.get("email", "") or "",
        "phone": customer_document.get("phone", "") or "",
    }


def serialize_order(order_document) -> Optional[Dict[str, object]]:
    if not order_document:
        return None
    return {
        "id": str(order_document["_id"]),
        "status": str(order_document.get("status") or ""),
        "total": _safe_amount(order_document.get("total")),
        "currency": str(order_document.get("currency") or "USD").upper(),
        "createdAt": _isoformat(order_document.get("created_at")),
        "customer": serialize_customer(order_document.get("customer_document")),
    }


def serialize_payment(payment_document, orders: Optional[Dict[ObjectId, Dict]] = None):
    order_document = (orders or {}).get(payment_document.get("order"))
    return {
        "id": str(payment_document["_id"]),
        "intentId": payment_document.get("intent_id", "") or "",
        "totalAmount": _safe_amount(payment_document.get("total_amount")),
        "status": payment_document.get("status", "") or "",
        "order": serialize_order(order_document),
        "createdAt": _isoformat(payment_document.get("created_at")),
        "updatedAt": _isoformat(payment_document.get("updated_at")),
    }


def serialize_payments(db, payment_documents: List[Dict]) -> List[Dict]:
    orders = load_orders(db, payment_documents)
    return [serialize_payment(document, orders) for document in payment_documents]


def notify_customer(payment_document, order_document) -> bool:
    customer = (order_document or {}).get("customer_document") or {}
    recipient = customer.get("email")
    if not recipient:
        return False

    status = payment_document.get("status", "")
    amount = _safe_amount(payment_document.get("total_amount"))
    greeting = customer.get("name") or "there"
    body = (
        f"Hi {greeting},\n\n"
        f"The payment {payment_document.get('intent_id', '')} for {amount:.2f} "
        f"is now marked as {status}.\n\n"
        "Thank you for shopping with us."
    )
    return send_mail(recipient, STATUS_EMAIL_SUBJECTS.get(status, "Payment update"), body)


def update_payment_status(db, payment_id: str, status) -> Dict[str, object]:
    """Set any of the four statuses on a payment and return it joined for display.

    Transitions are not restricted: an admin may move a payment from any
    status to any other.
    """
    try:
        object_id = ObjectId(str(payment_id))
    except (InvalidId, TypeError):
        raise ValidationError("Invalid payment ID.")

    if not isinstance(status, str) or status not in PAYMENT_STATUSES:
        raise ValidationError("Invalid status.")

    payment_document = db.payment_intents.find_one({"_id": object_id})
    if not payment_document:
        raise NotFoundError("Payment not found.")

    previous_status = payment_document.get("status")
    db.payment_intents.update_one(
        {"_id": object_id},
        {"$set": {"status": status, "updated_at": datetime.utcnow()}},
    )
    payment_document = db.payment_intents.find_one({"_id": object_id})

    orders = load_orders(db, [payment_document])
    if previous_status != status:
        order_document = orders.get(payment_document.get("order"))
        if not notify_customer(payment_document, order_document):
            logger.info("Status notification for payment %s was not delivered.", payment_id)

    return serialize_payment(payment_document, orders)
