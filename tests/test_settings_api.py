def test_settings_record_exists_after_startup(app, db):
    assert db.settings.count_documents({}) == 1


def test_public_config_needs_no_session(client):
    response = client.get("/api/settings/config")

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["siteName"] == "E-commerce Store"
    assert data["currency"] == "USD"
    assert "timezone" not in data


def test_admin_settings_require_admin(client, auth_headers):
    assert client.get("/api/settings/admin").status_code == 401
    assert client.get("/api/settings/admin", headers=auth_headers("seller")).status_code == 403
    assert client.put("/api/settings/admin", json={"siteName": "X"}, headers=auth_headers("customer")).status_code == 403


def test_admin_update_only_touches_supplied_fields(client, auth_headers, db):
    headers = auth_headers("admin")
    before = client.get("/api/settings/admin", headers=headers).get_json()["data"]

    response = client.put("/api/settings/admin", json={"siteName": "X"}, headers=headers)

    assert response.status_code == 200
    after = response.get_json()["data"]
    assert after["siteName"] == "X"
    for key in ("siteDescription", "contactEmail", "contactPhone", "currency", "timezone", "maintenanceMode"):
        assert after[key] == before[key]
    assert db.settings.count_documents({}) == 1
    assert db.audit_logs.count_documents({"action": "Updated settings"}) == 1


def test_admin_can_switch_maintenance_off(client, auth_headers):
    headers = auth_headers("admin")
    client.put("/api/settings/admin", json={"maintenanceMode": True}, headers=headers)

    response = client.put("/api/settings/admin", json={"maintenanceMode": False}, headers=headers)

    assert response.get_json()["data"]["maintenanceMode"] is False
    assert client.get("/api/settings/config").get_json()["data"]["maintenanceMode"] is False


def test_admin_update_rejects_invalid_currency(client, auth_headers):
    response = client.put("/api/settings/admin", json={"currency": "DOGE"}, headers=auth_headers("admin"))

    assert response.status_code == 400
    assert response.get_json()["success"] is False


def test_unknown_route_uses_envelope(client):
    response = client.get("/api/nothing-here")

    assert response.status_code == 404
    assert response.get_json()["success"] is False


def test_login_issues_token(client, users):
    response = client.post("/api/auth/login", json={"email": "ADMIN@example.com", "password": "secret-pass"})

    assert response.status_code == 200
    token = response.get_json()["data"]["access_token"]
    settings = client.get("/api/settings/admin", headers={"Authorization": f"Bearer {token}"})
    assert settings.status_code == 200

    bad = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "wrong"})
    assert bad.status_code == 401
