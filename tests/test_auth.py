from tests.conftest import register


def test_login_unknown_email(client):
    resp = client.post("/api/auth/login", json={"email": "fake@example.com", "password": "wrongpass"})
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "message": "Invalid credentials"}


def test_register_then_login(client, db):
    _, user = register(client, email="Jane@Example.com")
    assert user["email"] == "jane@example.com"
    assert user["wallet"] == {"balance": 0}

    stored = db["users"].find_one({"email": "jane@example.com"})
    assert stored["password_hash"] != "Secret123"

    resp = client.post("/api/auth/login", json={"email": "jane@example.com", "password": "Secret123"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["token"]
    assert body["user"]["phone"] == "254712345678"


def test_login_wrong_password(client):
    register(client)
    resp = client.post("/api/auth/login", json={"email": "jane@example.com", "password": "Nope1234"})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid credentials"


def test_inactive_user_cannot_login(client, db):
    register(client)
    db["users"].update_one({"email": "jane@example.com"}, {"$set": {"is_active": False}})
    resp = client.post("/api/auth/login", json={"email": "jane@example.com", "password": "Secret123"})
    assert resp.status_code == 400


def test_duplicate_email_and_phone(client):
    register(client)
    resp = client.post(
        "/api/auth/register",
        json={"name": "Jane", "email": "jane@example.com", "phone": "254700000001", "password": "Secret123"},
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "User already exists with this email"

    resp = client.post(
        "/api/auth/register",
        json={"name": "Joe", "email": "joe@example.com", "phone": "254712345678", "password": "Secret123"},
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "User already exists with this phone number"


def test_register_validation(client):
    resp = client.post(
        "/api/auth/register",
        json={"name": "J", "email": "not-an-email", "phone": "0712345678", "password": "weak"},
    )
    assert resp.status_code == 400
    body = resp.json()
    assert body["message"] == "Validation errors"
    fields = {e["field"] for e in body["errors"]}
    assert {"name", "email", "phone", "password"} <= fields


def test_password_needs_uppercase_or_digit(client):
    resp = client.post(
        "/api/auth/register",
        json={"name": "Jane", "email": "jane@example.com", "phone": "254712345678", "password": "alllowercase"},
    )
    assert resp.status_code == 400


def test_me(client, headers):
    resp = client.get("/api/auth/me", headers=headers)
    assert resp.status_code == 200
    user = resp.json()["user"]
    assert user["email"] == "jane@example.com"
    assert "password_hash" not in user


def test_me_requires_token(client):
    assert client.get("/api/auth/me").status_code == 401
    resp = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 401
