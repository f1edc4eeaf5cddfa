import mongomock
import pytest

from errors import ValidationError
from site_settings import (
    DEFAULT_SETTINGS,
    SETTINGS_ID,
    SettingsPatch,
    ensure_settings,
    get_settings,
    serialize_public_config,
    serialize_settings,
    update_settings,
)


@pytest.fixture
def collection():
    return mongomock.MongoClient()["settings"].settings


def test_ensure_settings_creates_a_single_record(collection):
    first = ensure_settings(collection)
    second = ensure_settings(collection)

    assert collection.count_documents({}) == 1
    assert first["_id"] == second["_id"] == SETTINGS_ID
    for field, value in DEFAULT_SETTINGS.items():
        assert first[field] == value


def test_get_settings_returns_the_same_record(collection):
    first = get_settings(collection)
    second = get_settings(collection)

    assert first["_id"] == second["_id"]
    assert collection.count_documents({}) == 1


def test_update_changes_only_supplied_fields(collection):
    ensure_settings(collection)

    updated = update_settings(collection, SettingsPatch.from_payload({"siteName": "X"}))

    assert updated["site_name"] == "X"
    for field, value in DEFAULT_SETTINGS.items():
        if field != "site_name":
            assert updated[field] == value


def test_maintenance_mode_false_is_applied(collection):
    update_settings(collection, SettingsPatch.from_payload({"maintenanceMode": True}))
    updated = update_settings(collection, SettingsPatch.from_payload({"maintenanceMode": False}))

    assert updated["maintenance_mode"] is False


def test_empty_optional_text_is_applied(collection):
    updated = update_settings(collection, SettingsPatch.from_payload({"contactPhone": ""}))
    assert updated["contact_phone"] == ""


def test_null_values_are_ignored():
    patch = SettingsPatch.from_payload({"siteName": None, "currency": "eur"})
    assert patch.changes() == {"currency": "EUR"}


@pytest.mark.parametrize(
    "payload",
    [
        {"siteName": ""},
        {"currency": "BTC"},
        {"contactEmail": "not-an-email"},
        {"maintenanceMode": "yes"},
        {"timezone": 5},
    ],
)
def test_invalid_patches_are_rejected(payload):
    with pytest.raises(ValidationError):
        SettingsPatch.from_payload(payload)


def test_public_config_exposes_safe_subset(collection):
    document = ensure_settings(collection)

    public = serialize_public_config(document)

    assert set(public) == {
        "siteName",
        "siteDescription",
        "currency",
        "maintenanceMode",
        "contactEmail",
        "contactPhone",
    }
    assert "timezone" in serialize_settings(document)
