from ptar.config import settings

from conftest import login


def test_login_rejects_bad_password(client):
    r = client.post("/api/auth/login", json={"email": settings.admin_default_email, "password": "nope"})
    assert r.status_code == 401
    assert r.json()["detail"] == "Credenciales inválidas"


def test_login_requires_fields(client):
    r = client.post("/api/auth/login", json={"email": ""})
    assert r.status_code == 400


def test_me_with_bearer_token(client, admin):
    r = client.get("/api/auth/me", headers=admin)
    assert r.status_code == 200
    assert r.json()["user"]["role"] == "admin"


def test_session_cookie_authenticates(client):
    r = client.post(
        "/api/auth/login",
        json={"email": settings.admin_default_email, "password": settings.admin_default_password},
    )
    assert settings.cookie_name in r.cookies
    assert client.get("/api/auth/me").status_code == 200


def test_missing_and_malformed_tokens(client):
    assert client.get("/api/plants").status_code == 401
    r = client.get("/api/plants", headers={"Authorization": "Token abc"})
    assert r.status_code == 401
    assert r.json()["detail"] == "Formato de token inválido"
    r = client.get("/api/plants", headers={"Authorization": "Bearer garbage"})
    assert r.status_code == 401


def test_standard_user_cannot_manage_users(client, operator):
    r = client.get("/api/users", headers=operator)
    assert r.status_code == 403


def test_duplicate_user_email_conflicts(client, admin):
    body = {"email": "dup@ptar.local", "name": "Dup", "password": "secreto1"}
    assert client.post("/api/users", json=body, headers=admin).status_code == 201
    assert client.post("/api/users", json=body, headers=admin).status_code == 409


def test_short_password_rejected(client, admin):
    r = client.post("/api/users", json={"email": "x@ptar.local", "name": "X", "password": "123"}, headers=admin)
    assert r.status_code == 400


def test_change_password(client, admin):
    r = client.post(
        "/api/auth/change-password",
        json={"current_password": settings.admin_default_password, "new_password": "nueva123"},
        headers=admin,
    )
    assert r.status_code == 200
    login(client, settings.admin_default_email, "nueva123")


def test_cannot_delete_self(client, admin):
    me = client.get("/api/auth/me", headers=admin).json()["user"]
    r = client.delete(f"/api/users/{me['id']}", headers=admin)
    assert r.status_code == 400


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.headers["X-Content-Type-Options"] == "nosniff"


def test_default_rate_limit_covers_every_route(client, admin, monkeypatch):
    from slowapi import Limiter
    from slowapi.util import get_remote_address

    from ptar.main import app

    monkeypatch.setattr(app.state, "limiter", Limiter(key_func=get_remote_address, default_limits=["2/minute"]))
    codes = [client.get("/api/plants", headers=admin).status_code for _ in range(3)]
    assert codes == [200, 200, 429]
