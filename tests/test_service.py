def test_root_and_health(client):
    assert client.get("/").json()["status"] == "Running"

    resp = client.get("/api/health")
    body = resp.json()
    assert resp.status_code == 200
    assert body["database"] == "connected"
    assert body["mpesa"]["configured"] is True
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_database_unavailable(client, app):
    app.state.db = None
    resp = client.get("/api/products")
    assert resp.status_code == 503
    assert resp.json() == {"success": False, "message": "Database not available"}
    assert client.get("/api/health").json()["database"] == "disconnected"


def test_config_status_hides_secrets(client, settings):
    resp = client.get("/api/config/status")
    assert resp.json()["mpesa"]["has_passkey"] is True
    assert settings.jwt_secret not in resp.text


def test_seed_endpoint(client, db):
    resp = client.post("/api/seed/products")
    assert resp.status_code == 200
    assert resp.json()["count"] == db["products"].count_documents({})


def test_seed_endpoint_disabled_in_production(client, app, settings):
    app.state.settings = settings.model_copy(update={"environment": "production"})
    assert client.post("/api/seed/products").status_code == 403


def test_callback_with_invalid_json_is_acknowledged(client):
    resp = client.post(
        "/api/mpesa/callback", content=b"not json", headers={"Content-Type": "application/json"}
    )
    assert resp.status_code == 200
    assert resp.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}


def test_unmatched_callback_is_acknowledged(client):
    from tests.conftest import callback_payload

    resp = client.post("/api/wallet/mpesa/callback", json=callback_payload("ws_CO_nobody"))
    assert resp.json()["ResultCode"] == 0


def test_timeout_is_acknowledged(client):
    resp = client.post("/api/mpesa/timeout", json={"anything": True})
    assert resp.status_code == 200
    assert resp.json() == {"ResultCode": 0, "ResultDesc": "Timeout acknowledged"}
