from datetime import date

from conftest import join, register


def _bearer(body):
    return {"Authorization": f"Bearer {body['token']}"}


def _api_key(client, owner, scopes=None):
    body = {"name": "Integración"}
    if scopes:
        body["scopes"] = scopes
    r = client.post("/api/api-keys", json=body, headers=owner)
    assert r.status_code == 201, r.text
    return r.json()


def test_register_creates_owner_and_slug(saas_client):
    _, first = register(saas_client, "Aguas del Sur", "a@sur.ec")
    _, second = register(saas_client, "Aguas del Sur", "b@sur.ec")
    assert first["user"]["role"] == "owner"
    assert first["organization"]["slug"] == "aguas-del-sur"
    assert second["organization"]["slug"] == "aguas-del-sur-1"
    assert first["organization"]["plan"] == "starter"


def test_register_rejects_duplicate_email_and_short_password(saas_client):
    register(saas_client, "Aguas del Sur", "a@sur.ec")
    r = saas_client.post(
        "/api/auth/register",
        json={"organization_name": "Otra", "name": "Otro", "email": "A@sur.ec", "password": "secreto123"},
    )
    assert r.status_code == 409
    r = saas_client.post(
        "/api/auth/register",
        json={"organization_name": "Otra", "name": "Otro", "email": "c@sur.ec", "password": "corta"},
    )
    assert r.status_code == 400
    r = saas_client.post(
        "/api/auth/register",
        json={"organization_name": "Otra", "name": "Otro", "email": "d@sur.ec", "password": "secreto123", "plan": "gold"},
    )
    assert r.status_code == 400


def test_login_and_me(saas_client, owner):
    r = saas_client.post("/api/auth/login", json={"email": "dueno@sur.ec", "password": "mala-clave"})
    assert r.status_code == 401
    assert r.json()["detail"] == "Credenciales inválidas"

    r = saas_client.post("/api/auth/login", json={"email": "dueno@sur.ec", "password": "secreto123"})
    assert r.status_code == 200
    me = saas_client.get("/api/auth/me", headers=_bearer(r.json())).json()
    assert me["user"]["email"] == "dueno@sur.ec"
    assert me["api_key"] is None
    assert me["organization"]["slug"] == "aguas-del-sur"


def test_requests_without_credentials_are_rejected(saas_client):
    assert saas_client.get("/api/plants").status_code == 401
    assert saas_client.get("/api/plants", headers={"Authorization": "Token abc"}).status_code == 401
    assert saas_client.get("/api/plants", headers={"X-API-Key": "ptar_inventada"}).status_code == 401


def test_tenants_do_not_see_each_other(saas_client, owner):
    other, _ = register(saas_client, "Hidro Norte", "jefe@norte.ec")
    plant = saas_client.post("/api/plants", json={"name": "LA LUZ"}, headers=owner).json()

    assert saas_client.get(f"/api/plants/{plant['id']}", headers=other).status_code == 404
    assert saas_client.patch(f"/api/plants/{plant['id']}", json={"location": "x"}, headers=other).status_code == 404
    assert saas_client.delete(f"/api/plants/{plant['id']}", headers=other).status_code == 404
    assert saas_client.get("/api/plants", headers=other).json() == []

    # same name is fine in another organization
    assert saas_client.post("/api/plants", json={"name": "LA LUZ"}, headers=other).status_code == 201
    assert saas_client.post("/api/plants", json={"name": "LA LUZ"}, headers=owner).status_code == 409

    r = saas_client.post(
        "/api/analytics/environmental",
        json={"plant_id": plant["id"], "parameter_type": "pH", "value": 7, "measurement_date": "2026-01-10"},
        headers=other,
    )
    assert r.status_code == 404


def test_starter_plan_plant_limit(saas_client, owner):
    for name in ("A", "B", "C"):
        assert saas_client.post("/api/plants", json={"name": f"PTAR {name}"}, headers=owner).status_code == 201
    r = saas_client.post("/api/plants", json={"name": "PTAR D"}, headers=owner)
    assert r.status_code == 403
    assert r.json()["detail"] == "Límite del plan starter alcanzado: máximo 3 plants"

    usage = saas_client.get("/api/organization/usage", headers=owner).json()
    assert usage["usage"] == {"plants": 3, "users": 1}
    assert usage["remaining"] == {"plants": 0, "users": 4}


def test_organization_settings_merge(saas_client, owner):
    r = saas_client.patch("/api/organization", json={"settings": {"language": "en"}}, headers=owner)
    assert r.status_code == 200
    assert r.json()["settings"]["language"] == "en"
    assert r.json()["settings"]["timezone"] == "America/Guayaquil"
    assert saas_client.patch("/api/organization", json={}, headers=owner).status_code == 400


def test_api_key_scopes(saas_client, owner):
    key = _api_key(saas_client, owner)
    assert key["key"].startswith("ptar_")
    assert key["key_prefix"] == key["key"][:12]
    assert key["scopes"] == ["plants:read", "data:read"]
    headers = {"X-API-Key": key["key"]}

    assert saas_client.get("/api/plants", headers=headers).status_code == 200
    r = saas_client.post("/api/plants", json={"name": "LA LUZ"}, headers=headers)
    assert r.status_code == 403
    assert r.json()["detail"] == "La API key no tiene el permiso plants:write"

    r = saas_client.get("/api/organization", headers=headers)
    assert r.status_code == 403
    assert r.json()["detail"] == "Operación no disponible con API key"

    me = saas_client.get("/api/auth/me", headers=headers).json()
    assert me["user"] is None
    assert me["api_key"]["prefix"] == key["key_prefix"]

    listed = saas_client.get("/api/api-keys", headers=owner).json()
    assert "key" not in listed[0]
    assert "key_hash" not in listed[0]
    assert saas_client.get(f"/api/api-keys/{key['id']}", headers=owner).json()["last_used_at"]


def test_write_scope_key_bypasses_roles(saas_client, owner):
    key = _api_key(saas_client, owner, ["plants:read", "plants:write"])
    r = saas_client.post("/api/plants", json={"name": "LA LUZ"}, headers={"X-API-Key": key["key"]})
    assert r.status_code == 201

    logs = saas_client.get("/api/audit/logs", params={"action": "plant.created"}, headers=owner).json()
    assert logs["data"][0]["user_id"] is None
    assert logs["data"][0]["user_agent"] == f"api_key:{key['key_prefix']}"


def test_api_key_validation_and_revoke(saas_client, owner):
    r = saas_client.post("/api/api-keys", json={"name": "x", "scopes": ["root"]}, headers=owner)
    assert r.status_code == 400
    r = saas_client.post("/api/api-keys", json={"name": "x", "expires_in_days": 400}, headers=owner)
    assert r.status_code == 400

    key = _api_key(saas_client, owner)
    r = saas_client.patch(f"/api/api-keys/{key['id']}", json={"scopes": ["tickets:read"]}, headers=owner)
    assert r.json()["scopes"] == ["tickets:read"]

    assert saas_client.post(f"/api/api-keys/{key['id']}/revoke", headers=owner).json() == {"id": key["id"], "status": "revoked"}
    r = saas_client.get("/api/tickets", headers={"X-API-Key": key["key"]})
    assert r.status_code == 401
    assert r.json()["detail"] == "API key inválida o expirada"
    assert saas_client.post(f"/api/api-keys/{key['id']}/revoke", headers=owner).status_code == 400
    assert saas_client.patch(f"/api/api-keys/{key['id']}", json={"name": "y"}, headers=owner).status_code == 400


def test_api_keys_are_managed_by_managers_only(saas_client, owner):
    operator = join(saas_client, owner, "op@sur.ec", "operator")
    assert saas_client.get("/api/api-keys", headers=operator).status_code == 403
    key = _api_key(saas_client, owner, ["users:read"])
    assert saas_client.get("/api/api-keys", headers={"X-API-Key": key["key"]}).status_code == 403


def test_invitation_flow(saas_client, owner):
    inv = saas_client.post("/api/users/invite", json={"email": "Op@Sur.ec"}, headers=owner)
    assert inv.status_code == 201
    body = inv.json()
    assert body["email"] == "op@sur.ec"
    assert body["role"] == "operator"

    again = saas_client.post("/api/users/invite", json={"email": "op@sur.ec"}, headers=owner)
    assert again.status_code == 409
    pending = saas_client.get("/api/users/invitations/pending", headers=owner).json()
    assert [p["email"] for p in pending] == ["op@sur.ec"]

    r = saas_client.post("/api/auth/accept-invitation", json={"token": body["token"], "name": "Operador", "password": "secreto123"})
    assert r.status_code == 201
    session = r.json()
    assert session["user"]["role"] == "operator"
    assert session["organization"]["slug"] == "aguas-del-sur"

    r = saas_client.post("/api/auth/accept-invitation", json={"token": body["token"], "name": "Operador", "password": "secreto123"})
    assert r.status_code == 400
    assert saas_client.post("/api/users/invite", json={"email": "op@sur.ec"}, headers=owner).status_code == 409
    assert saas_client.get("/api/users/invitations/pending", headers=owner).json() == []

    r = saas_client.post("/api/auth/accept-invitation", json={"token": "nope", "name": "X", "password": "secreto123"})
    assert r.status_code == 404


def test_invite_rejects_owner_role(saas_client, owner):
    r = saas_client.post("/api/users/invite", json={"email": "x@sur.ec", "role": "owner"}, headers=owner)
    assert r.status_code == 400


def test_role_rules(saas_client, owner):
    admin = join(saas_client, owner, "admin@sur.ec", "admin")
    operator = join(saas_client, owner, "op@sur.ec", "operator")
    users = {u["email"]: u for u in saas_client.get("/api/users", headers=owner).json()}
    owner_id = users["dueno@sur.ec"]["id"]
    admin_id = users["admin@sur.ec"]["id"]
    operator_id = users["op@sur.ec"]["id"]

    assert saas_client.get("/api/users", headers=operator).status_code == 403
    assert saas_client.post("/api/plants", json={"name": "X"}, headers=operator).status_code == 403

    assert saas_client.patch(f"/api/users/{owner_id}", json={"role": "viewer"}, headers=admin).status_code == 400
    assert saas_client.patch(f"/api/users/{owner_id}", json={"status": "suspended"}, headers=admin).status_code == 400
    assert saas_client.patch(f"/api/users/{admin_id}", json={"role": "viewer"}, headers=admin).status_code == 400
    r = saas_client.patch(f"/api/users/{operator_id}", json={"role": "viewer"}, headers=admin)
    assert r.status_code == 200
    assert r.json()["role"] == "viewer"

    assert saas_client.delete(f"/api/users/{operator_id}", headers=admin).status_code == 403
    assert saas_client.delete(f"/api/users/{owner_id}", headers=owner).status_code == 400
    assert saas_client.delete(f"/api/users/{operator_id}", headers=owner).json() == {"id": operator_id, "deleted": True}


def test_suspended_user_cannot_log_in(saas_client, owner):
    join(saas_client, owner, "op@sur.ec", "operator")
    users = {u["email"]: u for u in saas_client.get("/api/users", headers=owner).json()}
    saas_client.patch(f"/api/users/{users['op@sur.ec']['id']}", json={"status": "suspended"}, headers=owner)
    r = saas_client.post("/api/auth/login", json={"email": "op@sur.ec", "password": "secreto123"})
    assert r.status_code == 403


def test_viewer_reads_but_does_not_write(saas_client, owner):
    viewer = join(saas_client, owner, "ver@sur.ec", "viewer")
    plant = saas_client.post("/api/plants", json={"name": "LA LUZ"}, headers=owner).json()
    assert saas_client.get("/api/analytics/environmental", headers=viewer).status_code == 200
    r = saas_client.post(
        "/api/analytics/environmental",
        json={"plant_id": plant["id"], "parameter_type": "pH", "value": 7, "measurement_date": "2026-01-10"},
        headers=viewer,
    )
    assert r.status_code == 403


def test_environmental_alerts(saas_client, owner):
    plant = saas_client.post("/api/plants", json={"name": "LA LUZ"}, headers=owner).json()
    r = saas_client.post(
        "/api/analytics/environmental",
        json={"plant_id": plant["id"], "parameter_type": "dqo", "value": 230, "measurement_date": "2026-01-10"},
        headers=owner,
    )
    assert r.status_code == 201
    body = r.json()
    assert body["parameter_type"] == "DQO"
    assert body["unit"] == "mg/L"
    assert body["alert"]["alert_type"] == "critical"

    r = saas_client.post(
        "/api/analytics/environmental",
        json={"plant_id": plant["id"], "parameter_type": "DQO", "value": 900, "measurement_date": "2026-01-10", "stream": "influent"},
        headers=owner,
    )
    assert r.json()["alert"] is None

    rows = saas_client.get("/api/analytics/environmental", params={"stream": "effluent"}, headers=owner).json()
    assert [row["value"] for row in rows] == [230]


def test_duplicate_reading_conflicts(saas_client, owner):
    plant = saas_client.post("/api/plants", json={"name": "LA LUZ"}, headers=owner).json()
    body = {"plant_id": plant["id"], "parameter_type": "SS", "value": 40, "measurement_date": "2026-01-10"}
    assert saas_client.post("/api/analytics/environmental", json=body, headers=owner).status_code == 201
    r = saas_client.post("/api/analytics/environmental", json={**body, "value": 41, "measurement_date": "10/01/2026"}, headers=owner)
    assert r.status_code == 409
    assert saas_client.post("/api/analytics/environmental", json={**body, "stream": "influent"}, headers=owner).status_code == 201
    rows = saas_client.get("/api/analytics/environmental", headers=owner).json()
    assert sorted(row["value"] for row in rows) == [40, 40]


def test_tickets_numbered_per_organization(saas_client, owner):
    other, _ = register(saas_client, "Hidro Norte", "jefe@norte.ec")
    year = date.today().year
    body = {"subject": "Falta cloro", "description": "Pedido urgente", "category": "insumos"}
    first = saas_client.post("/api/tickets", json=body, headers=owner).json()
    second = saas_client.post("/api/tickets", json=body, headers=owner).json()
    foreign = saas_client.post("/api/tickets", json=body, headers=other).json()
    assert first["ticket_number"] == f"TKT-{year}-00001"
    assert second["ticket_number"] == f"TKT-{year}-00002"
    assert foreign["ticket_number"] == f"TKT-{year}-00001"
    assert first["requester_email"] == "dueno@sur.ec"

    assert saas_client.post("/api/tickets", json={"subject": "x"}, headers=owner).status_code == 400
    assert saas_client.get(f"/api/tickets/{first['id']}", headers=other).status_code == 404

    r = saas_client.patch(f"/api/tickets/{first['id']}", json={"status": "resolved"}, headers=owner)
    assert r.json()["resolved_at"]


def test_audit_log_pagination_and_export(saas_client, owner):
    for name in ("A", "B", "C"):
        saas_client.post("/api/plants", json={"name": f"PTAR {name}"}, headers=owner)

    page = saas_client.get("/api/audit/logs", params={"page": 1, "limit": 2}, headers=owner).json()
    assert page["pagination"] == {"page": 1, "limit": 2, "total": 4, "pages": 2}
    assert page["data"][0]["action"] == "plant.created"
    assert page["data"][0]["new_value"]["name"] == "PTAR C"
    assert page["data"][0]["user_email"] == "dueno@sur.ec"

    actions = saas_client.get("/api/audit/actions", headers=owner).json()
    assert actions == [{"action": "organization.created", "count": 1}, {"action": "plant.created", "count": 3}]

    security = saas_client.get("/api/audit/security", headers=owner).json()
    assert [e["action"] for e in security] == ["organization.created"]

    r = saas_client.get("/api/audit/export", headers=owner)
    assert r.status_code == 200
    assert "audit-logs-" in r.headers["content-disposition"]
    lines = r.text.splitlines()
    assert lines[0] == "created_at,user_name,user_email,action,entity_type,entity_id,ip_address"
    assert len(lines) == 5


def test_audit_is_per_organization(saas_client, owner):
    other, _ = register(saas_client, "Hidro Norte", "jefe@norte.ec")
    saas_client.post("/api/plants", json={"name": "LA LUZ"}, headers=owner)
    logs = saas_client.get("/api/audit/logs", headers=other).json()
    assert [e["action"] for e in logs["data"]] == ["organization.created"]


def test_maintenance_and_emergency_lifecycle(saas_client, owner):
    plant = saas_client.post("/api/plants", json={"name": "LA LUZ"}, headers=owner).json()
    task = saas_client.post(
        "/api/maintenance/tasks",
        json={"plant_id": plant["id"], "description": "Cambio de aceite", "scheduled_date": "2030-03-01"},
        headers=owner,
    ).json()
    done = saas_client.post(f"/api/maintenance/tasks/{task['id']}/complete", json={"notes": "ok"}, headers=owner).json()
    assert done["status"] == "completed"
    assert done["notes"] == "ok"

    e = saas_client.post(
        "/api/maintenance/emergencies", json={"plant_id": plant["id"], "reason": "Fuga", "severity": "high"}, headers=owner
    ).json()
    r = saas_client.patch(f"/api/maintenance/emergencies/{e['id']}", json={"solved": True}, headers=owner)
    assert r.json()["resolved_at"]
