import pytest
from fastapi.testclient import TestClient

from ptar import email_service
from ptar.config import settings
from ptar.limiter import limiter


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "db_dir", str(tmp_path / "data"))
    monkeypatch.setattr(settings, "upload_dir", str(tmp_path / "uploads"))
    monkeypatch.setattr(settings, "scheduler_enabled", False)
    monkeypatch.setattr(settings, "seed_demo_data", False)
    monkeypatch.setattr(settings, "smtp_host", None)
    monkeypatch.setattr(limiter, "enabled", False)


@pytest.fixture
def sent_mail(monkeypatch):
    """Captures outgoing email instead of talking to SMTP."""
    outbox = []

    def fake_send(recipients, template, data):
        outbox.append({"to": list(recipients), "template": template, "data": data})
        return True

    monkeypatch.setattr(email_service, "send_email", fake_send)
    return outbox


@pytest.fixture
def client():
    from ptar.main import app

    with TestClient(app) as c:
        yield c


def login(client, email, password):
    r = client.post("/api/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    # header auth only, the session cookie would mask 401 checks
    client.cookies.clear()
    return {"Authorization": f"Bearer {r.json()['token']}"}


@pytest.fixture
def admin(client):
    return login(client, settings.admin_default_email, settings.admin_default_password)


@pytest.fixture
def plant(client, admin):
    r = client.post("/api/plants", json={"name": "LA LUZ", "location": "Guayaquil", "latitude": -2.1, "longitude": -79.9}, headers=admin)
    assert r.status_code == 201, r.text
    return r.json()


@pytest.fixture
def operator(client, admin, plant):
    r = client.post(
        "/api/users",
        json={"email": "operador@ptar.local", "name": "Operador", "password": "secreto1", "role": "standard", "plant_id": plant["id"]},
        headers=admin,
    )
    assert r.status_code == 201, r.text
    return login(client, "operador@ptar.local", "secreto1")


@pytest.fixture
def saas_client():
    from ptar.saas.main import app

    with TestClient(app) as c:
        yield c


def register(client, organization, email, plan="starter"):
    r = client.post(
        "/api/auth/register",
        json={"organization_name": organization, "name": "Dueño", "email": email, "password": "secreto123", "plan": plan},
    )
    assert r.status_code == 201, r.text
    body = r.json()
    return {"Authorization": f"Bearer {body['token']}"}, body


@pytest.fixture
def owner(saas_client):
    headers, _ = register(saas_client, "Aguas del Sur", "dueno@sur.ec")
    return headers


def join(client, owner, email, role):
    """Invites `email` with `role` and returns the headers of the accepted account."""
    inv = client.post("/api/users/invite", json={"email": email, "role": role}, headers=owner)
    assert inv.status_code == 201, inv.text
    r = client.post("/api/auth/accept-invitation", json={"token": inv.json()["token"], "name": role.title(), "password": "secreto123"})
    assert r.status_code == 201, r.text
    return {"Authorization": f"Bearer {r.json()['token']}"}
