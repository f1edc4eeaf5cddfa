"""The single site-settings record."""
import re
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Dict, Mapping, Optional

from pymongo import ReturnDocument

from errors import ValidationError

SETTINGS_ID = "site_settings"
ALLOWED_CURRENCIES = ("USD", "EUR", "GBP", "JPY", "PKR")

DEFAULT_SETTINGS = {
    "site_name": "E-commerce Store",
    "site_description": "Welcome to our online store",
    "contact_email": "admin@example.com",
    "contact_phone": "+1234567890",
    "currency": "USD",
    "timezone": "UTC",
    "maintenance_mode": False,
}

# Public JSON key -> stored field.
FIELD_NAMES = {
    "siteName": "site_name",
    "siteDescription": "site_description",
    "contactEmail": "contact_email",
    "contactPhone": "contact_phone",
    "currency": "currency",
    "timezone": "timezone",
    "maintenanceMode": "maintenance_mode",
}

PUBLIC_FIELDS = (
    "siteName",
    "siteDescription",
    "currency",
    "maintenanceMode",
    "contactEmail",
    "contactPhone",
)

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def ensure_settings(collection):
    """Load the settings record, creating it with defaults if it is missing.

    Creation is a single upsert on a fixed ``_id`` so that concurrent first
    calls converge on the same document.
    """
    timestamp = datetime.utcnow()
    return collection.find_one_and_update(
        {"_id": SETTINGS_ID},
        {"$setOnInsert": {**DEFAULT_SETTINGS, "created_at": timestamp, "updated_at": timestamp}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def get_settings(collection):
    document = collection.find_one({"_id": SETTINGS_ID})
    if document:
        return document
    return ensure_settings(collection)


@dataclass
class SettingsPatch:
    site_name: Optional[str] = None
    site_description: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    currency: Optional[str] = None
    timezone: Optional[str] = None
    maintenance_mode: Optional[bool] = None

    @classmethod
    def from_payload(cls, payload: Mapping) -> "SettingsPatch":
        if not isinstance(payload, Mapping):
            raise ValidationError("Settings payload must be a JSON object.")

        values: Dict[str, object] = {}
        for public_key, field_name in FIELD_NAMES.items():
            raw = payload.get(public_key)
            if raw is None:
                continue
            if field_name == "maintenance_mode":
                if not isinstance(raw, bool):
                    raise ValidationError("maintenanceMode must be true or false.")
                values[field_name] = raw
                continue
            if not isinstance(raw, str):
                raise ValidationError(f"{public_key} must be a string.")
            values[field_name] = raw.strip()

        if "site_name" in values and not values["site_name"]:
            raise ValidationError("Site name cannot be empty.")

        if "contact_email" in values:
            email = values["contact_email"].lower()
            if email and not email_regex.match(email):
                raise ValidationError("Please provide a valid contact email.")
            values["contact_email"] = email

        if "currency" in values:
            currency = values["currency"].upper()
            if currency not in ALLOWED_CURRENCIES:
                raise ValidationError(
                    f"Currency must be one of {', '.join(ALLOWED_CURRENCIES)}."
                )
            values["currency"] = currency

        if "timezone" in values and not values["timezone"]:
            raise ValidationError("Timezone cannot be empty.")

        return cls(**values)

    def changes(self) -> Dict[str, object]:
        return {
            field.name: getattr(self, field.name)
            for field in fields(self)
            if getattr(self, field.name) is not None
        }


def update_settings(collection, patch: SettingsPatch):
    get_settings(collection)
    updates = patch.changes()
    updates["updated_at"] = datetime.utcnow()
    return collection.find_one_and_update(
        {"_id": SETTINGS_ID},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )


def _isoformat(value) -> Optional[str]:
    return value.isoformat() + "Z" if isinstance(value, datetime) else None


def serialize_settings(document) -> Dict[str, object]:
    if not document:
        return {}
    serialized = {
        public_key: document.get(field_name, DEFAULT_SETTINGS[field_name])
        for public_key, field_name in FIELD_NAMES.items()
    }
    serialized["maintenanceMode"] = bool(serialized["maintenanceMode"])
    serialized["createdAt"] = _isoformat(document.get("created_at"))
    serialized["updatedAt"] = _isoformat(document.get("updated_at"))
    return serialized


def serialize_public_config(document) -> Dict[str, object]:
    serialized = serialize_settings(document)
    return {key: serialized.get(key) for key in PUBLIC_FIELDS}
