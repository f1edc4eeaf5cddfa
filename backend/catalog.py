"""Product catalog: validation, lifecycle operations and serialization."""
import json
import math
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional

from bson import ObjectId
from bson.errors import InvalidId

from errors import ForbiddenError, NotFoundError, ValidationError

PRODUCT_IMAGE_FOLDER = "products"
FLASH_SALE_DURATION = timedelta(days=7)
TOP_CATEGORY_LIMIT = 10

TRUE_VALUES = {"true", "1", "yes", "on"}
FALSE_VALUES = {"false", "0", "no", "off", ""}

FLASH_SALE_FIELDS = ("flash_sale_price", "flash_sale_start", "flash_sale_end")


def parse_bool(value, field_label: str) -> bool:
    if isinstance(value, bool):
        return value
    candidate = str(value if value is not None else "").strip().lower()
    if candidate in TRUE_VALUES:
        return True
    if candidate in FALSE_VALUES:
        return False
    raise ValidationError(f"{field_label} must be true or false.")


def parse_price(value, field_label: str) -> float:
    try:
        price_value = round(float(value), 2)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_label} must be a valid number.")
    if not math.isfinite(price_value) or price_value <= 0:
        raise ValidationError(f"{field_label} must be greater than zero.")
    return price_value


def parse_stock(value) -> int:
    try:
        stock_value = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError("Stock must be a whole number.")
    if stock_value < 0:
        raise ValidationError("Stock cannot be negative.")
    return stock_value


def has_value(value) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def ensure_flash_sale_price(flash_price: float, price: float) -> None:
    if flash_price >= price:
        raise ValidationError("Flash sale price must be less than regular price.")


def to_object_id(value: str, label: str = "product") -> ObjectId:
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label} ID.")


def fetch_product(db, product_id: str):
    product_document = db.products.find_one({"_id": to_object_id(product_id)})
    if not product_document:
        raise NotFoundError("Product not found.")
    return product_document


def ensure_owner(product_document, user_document, action: str) -> None:
    owner_id = product_document.get("owner")
    if not user_document or owner_id is None or owner_id != user_document.get("_id"):
        raise ForbiddenError(f"Forbidden: you do not own this product and cannot {action} it.")


def _isoformat(value) -> Optional[str]:
    return value.isoformat() + "Z" if isinstance(value, datetime) else None


def load_owner_map(db, product_documents) -> Dict[ObjectId, Dict]:
    owner_ids = {
        document.get("owner")
        for document in product_documents
        if isinstance(document.get("owner"), ObjectId)
    }
    if not owner_ids:
        return {}
    cursor = db.users.find({"_id": {"$in": list(owner_ids)}}, {"name": 1, "email": 1})
    return {document["_id"]: document for document in cursor}


def serialize_product(product_document, owners: Optional[Dict[ObjectId, Dict]] = None):
    owner_id = product_document.get("owner")
    owner_document = (owners or {}).get(owner_id)
    owner = None
    if owner_document:
        owner = {
            "id": str(owner_document["_id"]),
            "name": owner_document.get("name", "") or "",
            "email": owner_document.get("email", "") or "",
        }
    elif owner_id is not None:
        owner = {"id": str(owner_id), "name": "", "email": ""}

    images = [
        {"public_id": image.get("public_id", ""), "url": image.get("url", "")}
        for image in product_document.get("images") or []
        if isinstance(image, dict)
    ]

    flash_sale_price = product_document.get("flash_sale_price")
    return {
        "id": str(product_document.get("_id")),
        "name": product_document.get("name", ""),
        "description": product_document.get("description", ""),
        "price": round(float(product_document.get("price", 0) or 0), 2),
        "category": product_document.get("category", ""),
        "stock": int(product_document.get("stock", 0) or 0),
        "images": images,
        "owner": owner,
        "is_featured": bool(product_document.get("is_featured")),
        "is_flash_sale": bool(product_document.get("is_flash_sale")),
        "flash_sale_price": round(float(flash_sale_price), 2)
        if flash_sale_price is not None
        else None,
        "flash_sale_start": _isoformat(product_document.get("flash_sale_start")),
        "flash_sale_end": _isoformat(product_document.get("flash_sale_end")),
        "created_at": _isoformat(product_document.get("created_at")),
        "updated_at": _isoformat(product_document.get("updated_at")),
    }


def serialize_products(db, product_documents) -> List[Dict]:
    owners = load_owner_map(db, product_documents)
    return [serialize_product(document, owners) for document in product_documents]


def serialize_with_owner(db, product_document):
    return serialize_product(product_document, load_owner_map(db, [product_document]))


def validate_new_product(payload: Mapping) -> Dict[str, object]:
    required = ("name", "description", "price", "category", "stock")
    if any(not has_value(payload.get(field)) for field in required):
        raise ValidationError("Please provide all required fields.")

    price_value = parse_price(payload.get("price"), "Price")
    product_fields: Dict[str, object] = {
        "name": str(payload.get("name")).strip(),
        "description": str(payload.get("description")).strip(),
        "price": price_value,
        "category": str(payload.get("category")).strip(),
        "stock": parse_stock(payload.get("stock")),
        "is_featured": parse_bool(payload.get("is_featured", False), "is_featured"),
        "is_flash_sale": False,
    }

    if parse_bool(payload.get("is_flash_sale", False), "is_flash_sale"):
        if not has_value(payload.get("flash_sale_price")):
            raise ValidationError("Flash sale price must be less than regular price.")
        flash_price = parse_price(payload.get("flash_sale_price"), "Flash sale price")
        ensure_flash_sale_price(flash_price, price_value)
        started_at = datetime.utcnow()
        product_fields.update(
            {
                "is_flash_sale": True,
                "flash_sale_price": flash_price,
                "flash_sale_start": started_at,
                "flash_sale_end": started_at + FLASH_SALE_DURATION,
            }
        )

    return product_fields


def create_product(db, storage, owner, payload: Mapping, image_files, host_url=None):
    """Validate, upload the images, then persist a new product for ``owner``."""
    product_fields = validate_new_product(payload)

    if not [image for image in image_files or [] if getattr(image, "filename", "")]:
        raise ValidationError("Please provide at least one product image.")

    images = storage.upload_many(image_files, PRODUCT_IMAGE_FOLDER, host_url)
    if not images:
        raise ValidationError("Please provide at least one product image.")

    timestamp = datetime.utcnow()
    product_document = {
        **product_fields,
        "images": images,
        "owner": owner["_id"],
        "created_at": timestamp,
        "updated_at": timestamp,
    }
    result = db.products.insert_one(product_document)
    return db.products.find_one({"_id": result.inserted_id})


def parse_retained_images(raw_value) -> List[str]:
    """Read the client's list of images to keep, returning their public ids."""
    if isinstance(raw_value, (list, tuple)):
        parsed = list(raw_value)
    else:
        try:
            parsed = json.loads(raw_value) if has_value(raw_value) else []
        except (json.JSONDecodeError, TypeError):
            raise ValidationError("We could not understand the existing image list.")
    if not isinstance(parsed, list):
        raise ValidationError("We could not understand the existing image list.")

    public_ids: List[str] = []
    for entry in parsed:
        if isinstance(entry, dict):
            candidate = str(entry.get("public_id") or "").strip()
        else:
            candidate = str(entry or "").strip()
        if candidate and candidate not in public_ids:
            public_ids.append(candidate)
    return public_ids


def flash_sale_is_active(product_document, now: Optional[datetime] = None) -> bool:
    """A flagged sale without an end date is treated as running."""
    if not product_document.get("is_flash_sale"):
        return False
    ends_at = product_document.get("flash_sale_end")
    if not isinstance(ends_at, datetime):
        return True
    return ends_at > (now or datetime.utcnow())


def build_product_updates(product_document, payload: Mapping):
    """Work out the ``$set``/``$unset`` documents for an update payload.

    Raises ``ValidationError`` before anything is written when the merged
    product would break the flash-sale price ordering.
    """
    updates: Dict[str, object] = {}
    unset: Dict[str, str] = {}

    if "name" in payload:
        name_value = str(payload.get("name") or "").strip()
        if not name_value:
            raise ValidationError("A product name is required.")
        updates["name"] = name_value

    if "description" in payload:
        updates["description"] = str(payload.get("description") or "").strip()

    if "price" in payload:
        updates["price"] = parse_price(payload.get("price"), "Price")

    if "category" in payload:
        category_value = str(payload.get("category") or "").strip()
        if not category_value:
            raise ValidationError("A category is required.")
        updates["category"] = category_value

    if "stock" in payload:
        updates["stock"] = parse_stock(payload.get("stock"))

    if "is_featured" in payload:
        updates["is_featured"] = parse_bool(payload.get("is_featured"), "is_featured")

    effective_price = updates.get("price", float(product_document.get("price", 0) or 0))
    currently_on_sale = flash_sale_is_active(product_document)

    flash_flag = None
    if "is_flash_sale" in payload:
        flash_flag = parse_bool(payload.get("is_flash_sale"), "is_flash_sale")

    if flash_flag is False:
        updates["is_flash_sale"] = False
        for field in FLASH_SALE_FIELDS:
            if field in product_document:
                unset[field] = ""
    elif flash_flag or currently_on_sale:
        if has_value(payload.get("flash_sale_price")):
            flash_price = parse_price(payload.get("flash_sale_price"), "Flash sale price")
            ensure_flash_sale_price(flash_price, effective_price)
            started_at = datetime.utcnow()
            updates.update(
                {
                    "is_flash_sale": True,
                    "flash_sale_price": flash_price,
                    "flash_sale_start": started_at,
                    "flash_sale_end": started_at + FLASH_SALE_DURATION,
                }
            )
        else:
            existing_flash_price = product_document.get("flash_sale_price")
            if existing_flash_price is None:
                raise ValidationError("Flash sale price must be less than regular price.")
            ensure_flash_sale_price(float(existing_flash_price), effective_price)
            if flash_flag and not currently_on_sale:
                started_at = datetime.utcnow()
                updates.update(
                    {
                        "is_flash_sale": True,
                        "flash_sale_start": started_at,
                        "flash_sale_end": started_at + FLASH_SALE_DURATION,
                    }
                )

    return updates, unset


def update_product(db, storage, user, product_id: str, payload: Mapping, image_files, host_url=None):
    product_document = fetch_product(db, product_id)
    ensure_owner(product_document, user, "modify")

    updates, unset = build_product_updates(product_document, payload)

    existing_images = [
        image for image in product_document.get("images") or [] if isinstance(image, dict)
    ]
    if "existingImages" in payload:
        retained_ids = parse_retained_images(payload.get("existingImages"))
        existing_by_id = {image.get("public_id"): image for image in existing_images}
        kept_images = [
            existing_by_id[public_id] for public_id in retained_ids if public_id in existing_by_id
        ]
    else:
        kept_images = list(existing_images)

    new_images = storage.upload_many(image_files, PRODUCT_IMAGE_FOLDER, host_url)
    final_images = kept_images + new_images

    removed_ids: List[str] = []
    if final_images and final_images != existing_images:
        final_ids = {image.get("public_id") for image in final_images}
        removed_ids = [
            image.get("public_id")
            for image in existing_images
            if image.get("public_id") not in final_ids
        ]
        updates["images"] = final_images

    if not updates and not unset:
        raise ValidationError("No product changes detected.")

    updates["updated_at"] = datetime.utcnow()
    modifications: Dict[str, Dict] = {"$set": updates}
    if unset:
        modifications["$unset"] = unset
    db.products.update_one({"_id": product_document["_id"]}, modifications)

    if removed_ids:
        storage.discard(removed_ids)

    return db.products.find_one({"_id": product_document["_id"]})


def delete_product(db, storage, user, product_id: str):
    product_document = fetch_product(db, product_id)
    ensure_owner(product_document, user, "delete")

    public_ids = [
        image.get("public_id")
        for image in product_document.get("images") or []
        if isinstance(image, dict) and image.get("public_id")
    ]
    # Storage first: the record must outlive any image that could not be removed.
    storage.delete_many(public_ids)
    db.products.delete_one({"_id": product_document["_id"]})
    return product_document


def active_flash_sale_query(now: Optional[datetime] = None) -> Dict[str, object]:
    current_time = now or datetime.utcnow()
    return {"is_flash_sale": True, "flash_sale_end": {"$gt": current_time}}


def top_categories(db, limit: int = TOP_CATEGORY_LIMIT) -> List[Dict[str, object]]:
    cursor = db.products.aggregate(
        [
            {"$match": {"category": {"$nin": [None, ""]}}},
            {"$group": {"_id": "$category", "count": {"$sum": 1}}},
            {"$sort": {"count": -1, "_id": 1}},
            {"$limit": limit},
        ]
    )
    return [{"category": document["_id"], "count": document["count"]} for document in cursor]
