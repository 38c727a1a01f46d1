from datetime import date

from conftest import join, register


def _plant(client, headers, name="LA LUZ"):
    r = client.post("/api/plants", json={"name": name}, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()


def test_opex_entries_and_summary(saas_client, owner):
    plant = _plant(saas_client, owner)
    body = {"plant_id": plant["id"], "year": 2026, "month": 1, "category": "electricity", "amount": 500, "volume_m3": 1000}
    r = saas_client.post("/api/opex", json=body, headers=owner)
    assert r.status_code == 201, r.text
    entry = r.json()
    assert entry["cost_per_m3"] == 0.5
    assert entry["currency"] == "USD"
    saas_client.post("/api/opex", json={**body, "month": 2, "category": "chemicals", "amount": 300, "volume_m3": 500}, headers=owner)

    summary = saas_client.get("/api/opex/summary", params={"year": 2026}, headers=owner).json()
    assert summary["total_spent"] == 800
    assert summary["total_volume"] == 1500
    assert summary["avg_cost_per_m3"] == round(800 / 1500, 4)
    assert summary["plants_count"] == 1
    by_id = {c["id"]: c for c in summary["categories"]}
    assert by_id["electricity"]["amount"] == 500
    assert by_id["sludge"]["entries"] == 0
    assert [m["month"] for m in summary["monthly_trend"]] == [1, 2]

    r = saas_client.patch(f"/api/opex/{entry['id']}", json={"amount": 250}, headers=owner)
    assert r.json()["cost_per_m3"] == 0.25

    assert saas_client.post("/api/opex", json={**body, "month": 13}, headers=owner).status_code == 400
    assert saas_client.post("/api/opex", json={**body, "category": "fiestas"}, headers=owner).status_code == 400
    assert saas_client.post("/api/opex", json={**body, "amount": -1}, headers=owner).status_code == 400


def test_opex_import_rejects_the_whole_batch(saas_client, owner):
    plant = _plant(saas_client, owner)
    good = {"plant_id": plant["id"], "year": 2026, "month": 3, "category": "labor", "amount": 1200}
    r = saas_client.post("/api/opex/import", json={"records": [good, {**good, "month": 0}]}, headers=owner)
    assert r.status_code == 400
    assert r.json()["detail"].startswith("Registro 2:")
    assert saas_client.get("/api/opex", headers=owner).json() == []

    r = saas_client.post("/api/opex/import", json={"records": [good, {**good, "category": "supplies"}]}, headers=owner)
    assert r.status_code == 201
    assert r.json() == {"imported": 2}
    assert len(saas_client.get("/api/opex", params={"month": 3}, headers=owner).json()) == 2


def test_tenant_records_are_isolated(saas_client, owner):
    other, _ = register(saas_client, "Hidro Norte", "jefe@norte.ec")
    plant = _plant(saas_client, owner)
    opex = saas_client.post(
        "/api/opex",
        json={"plant_id": plant["id"], "year": 2026, "month": 1, "category": "other", "amount": 10},
        headers=owner,
    ).json()
    equipment = saas_client.post(
        "/api/equipment", json={"plant_id": plant["id"], "item_code": "B-01", "description": "Bomba"}, headers=owner
    ).json()

    assert saas_client.get(f"/api/opex/{opex['id']}", headers=other).status_code == 404
    assert saas_client.get(f"/api/equipment/{equipment['id']}", headers=other).status_code == 404
    assert saas_client.get(f"/api/checklist/today/{plant['id']}", headers=other).status_code == 404
    r = saas_client.post(
        "/api/opex",
        json={"plant_id": plant["id"], "year": 2026, "month": 1, "category": "other", "amount": 10},
        headers=other,
    )
    assert r.status_code == 404
    assert saas_client.get("/api/opex", headers=other).json() == []
    assert saas_client.get("/api/equipment", headers=other).json() == []


def test_document_upload_hides_storage_path(saas_client, owner, tmp_path):
    other, _ = register(saas_client, "Hidro Norte", "jefe@norte.ec")
    plant = _plant(saas_client, owner)
    r = saas_client.post(
        "/api/documents",
        data={"plant_id": str(plant["id"]), "category": "manuales", "description": "Manual de la soplante"},
        files={"file": ("manual.pdf", b"%PDF-1.4 demo", "application/pdf")},
        headers=owner,
    )
    assert r.status_code == 201, r.text
    doc = r.json()
    assert "file_path" not in doc
    assert doc["category"] == "manuales"
    assert doc["file_size"] == len(b"%PDF-1.4 demo")
    stored = list((tmp_path / "uploads" / "saas-documents").rglob("*manual.pdf"))
    assert [p.read_bytes() for p in stored] == [b"%PDF-1.4 demo"]

    listed = saas_client.get("/api/documents", headers=owner).json()
    assert [d["id"] for d in listed] == [doc["id"]]
    assert "file_path" not in listed[0]
    assert saas_client.get(f"/api/documents/{doc['id']}/download", headers=owner).content == b"%PDF-1.4 demo"
    assert saas_client.get(f"/api/documents/{doc['id']}", headers=other).status_code == 404

    r = saas_client.post("/api/documents", files={"file": ("virus.exe", b"MZ", "application/octet-stream")}, headers=owner)
    assert r.status_code == 400
    r = saas_client.post("/api/documents", files={"file": ("vacio.txt", b"", "text/plain")}, headers=owner)
    assert r.status_code == 400

    assert saas_client.delete(f"/api/documents/{doc['id']}", headers=owner).json() == {"id": doc["id"], "deleted": True}
    assert not stored[0].exists()


def test_equipment_and_maintenance_log(saas_client, owner):
    operator = join(saas_client, owner, "op@sur.ec", "operator")
    plant = _plant(saas_client, owner)
    body = {"plant_id": plant["id"], "item_code": "B-01", "description": "Bomba sumergible", "category": "motores"}
    r = saas_client.post("/api/equipment", json=body, headers=owner)
    assert r.status_code == 201, r.text
    equipment = r.json()
    assert equipment["quantity"] == 1
    assert saas_client.post("/api/equipment", json=body, headers=owner).status_code == 409
    assert saas_client.post("/api/equipment", json={**body, "item_code": "B-02"}, headers=operator).status_code == 403
    assert saas_client.patch(f"/api/equipment/{equipment['id']}", json={"category": "cohetes"}, headers=owner).status_code == 400

    r = saas_client.post(
        f"/api/equipment/{equipment['id']}/logs",
        json={"maintenance_type": "correctivo", "maintenance_date": "2026-01-05", "description_averia": "Sello roto"},
        headers=operator,
    )
    assert r.status_code == 201, r.text
    assert r.json()["operator_name"] == "Operator"
    r = saas_client.post(
        f"/api/equipment/{equipment['id']}/logs", json={"maintenance_type": "rutina", "maintenance_date": "2026-01-06"}, headers=owner
    )
    assert r.status_code == 400

    logs = saas_client.get(f"/api/equipment/{equipment['id']}/logs", headers=owner).json()
    assert [l["description_averia"] for l in logs] == ["Sello roto"]
    assert [e["item_code"] for e in saas_client.get(f"/api/equipment/plant/{plant['id']}", headers=owner).json()] == ["B-01"]

    saas_client.delete(f"/api/equipment/{equipment['id']}", headers=owner)
    assert saas_client.get(f"/api/equipment/{equipment['id']}", headers=owner).status_code == 404


def test_daily_checklist_flow(saas_client, owner):
    plant = _plant(saas_client, owner)
    today = saas_client.get(f"/api/checklist/today/{plant['id']}", headers=owner).json()
    checklist = today["checklist"]
    assert checklist["operator_name"] == "Dueño"
    assert today["total"] == 5
    assert today["progress"] == 0
    again = saas_client.get(f"/api/checklist/today/{plant['id']}", headers=owner).json()
    assert again["checklist"]["id"] == checklist["id"]

    first = today["items"][0]
    r = saas_client.patch(f"/api/checklist/item/{first['id']}", json={"is_checked": True}, headers=owner)
    assert r.json()["is_checked"] == 1
    assert r.json()["checked_at"]
    assert saas_client.get(f"/api/checklist/{checklist['id']}", headers=owner).json()["progress"] == 20

    summary = saas_client.get("/api/checklist/summary", headers=owner).json()
    assert summary[0]["checklist_id"] == checklist["id"]
    assert summary[0]["checked_items"] == 1

    done = saas_client.post(f"/api/checklist/{checklist['id']}/complete", json={"notes": "Sin novedad"}, headers=owner).json()
    assert (done["total"], done["checked"], done["red_flags"]) == (5, 1, 0)
    assert saas_client.post(f"/api/checklist/{checklist['id']}/complete", headers=owner).status_code == 400

    history = saas_client.get(f"/api/checklist/history/{plant['id']}", headers=owner).json()
    assert history[0]["completed_at"]
    assert history[0]["total_items"] == 5


def test_alerts_reach_managers_as_notifications(saas_client, owner):
    operator = join(saas_client, owner, "op@sur.ec", "operator")
    plant = _plant(saas_client, owner)
    saas_client.post(
        "/api/analytics/environmental",
        json={"plant_id": plant["id"], "parameter_type": "DQO", "value": 260, "measurement_date": "2026-01-10"},
        headers=owner,
    )
    today = saas_client.get(f"/api/checklist/today/{plant['id']}", headers=operator).json()
    saas_client.patch(
        f"/api/checklist/item/{today['items'][0]['id']}",
        json={"is_red_flag": True, "red_flag_comment": "Espuma en el reactor"},
        headers=operator,
    )

    listed = saas_client.get("/api/notifications", headers=owner).json()
    assert listed["unread_count"] == 2
    assert [n["type"] for n in listed["data"]] == ["warning", "critical"]
    assert listed["data"][0]["message"] == "Espuma en el reactor"
    assert saas_client.get("/api/notifications/unread-count", headers=operator).json() == {"count": 0}

    first = listed["data"][0]["id"]
    assert saas_client.put(f"/api/notifications/{first}/read", headers=operator).status_code == 404
    assert saas_client.put(f"/api/notifications/{first}/read", headers=owner).json()["read_at"]
    assert saas_client.get("/api/notifications/unread-count", headers=owner).json() == {"count": 1}
    assert saas_client.put("/api/notifications/read-all", headers=owner).json()["updated"] == 1
    assert saas_client.get("/api/notifications", params={"unread": True}, headers=owner).json()["data"] == []


def test_dashboard_is_scoped_to_the_organization(saas_client, owner):
    other, _ = register(saas_client, "Hidro Norte", "jefe@norte.ec")
    _plant(saas_client, other, "AJENA")
    plant = _plant(saas_client, owner)
    today = date.today()
    saas_client.post(
        "/api/opex",
        json={"plant_id": plant["id"], "year": today.year, "month": today.month, "category": "electricity", "amount": 400, "volume_m3": 800},
        headers=owner,
    )
    saas_client.post("/api/maintenance/emergencies", json={"plant_id": plant["id"], "reason": "Fuga", "severity": "high"}, headers=owner)
    saas_client.post(
        "/api/analytics/environmental",
        json={"plant_id": plant["id"], "parameter_type": "pH", "value": 8.4, "measurement_date": "2026-01-10"},
        headers=owner,
    )

    summary = saas_client.get("/api/dashboard/summary", headers=owner).json()
    assert summary["plants"]["total"] == 1
    assert summary["emergencies"]["high"] == 1
    assert summary["checklists"]["pending"] == 1

    cost = saas_client.get("/api/dashboard/cost-per-m3", headers=owner).json()
    assert cost["overall"]["avg_cost_per_m3"] == 0.5
    assert [p["plant_name"] for p in cost["by_plant"]] == ["LA LUZ"]

    alerts = saas_client.get("/api/dashboard/environmental-alerts", headers=owner).json()
    assert alerts["warning"] == 1
    assert alerts["alerts"][0]["threshold"] == 8.0

    foreign = saas_client.get("/api/dashboard/summary", headers=other).json()
    assert foreign["emergencies"]["total"] == 0
    assert saas_client.get("/api/dashboard/environmental-alerts", headers=other).json()["total"] == 0


def test_viewer_and_api_key_limits(saas_client, owner):
    viewer = join(saas_client, owner, "ver@sur.ec", "viewer")
    plant = _plant(saas_client, owner)
    assert saas_client.get("/api/opex", headers=viewer).status_code == 200
    r = saas_client.post(
        "/api/opex", json={"plant_id": plant["id"], "year": 2026, "month": 1, "category": "other", "amount": 1}, headers=viewer
    )
    assert r.status_code == 403
    assert saas_client.get(f"/api/checklist/today/{plant['id']}", headers=viewer).status_code == 403
    assert saas_client.post("/api/documents", files={"file": ("a.pdf", b"x", "application/pdf")}, headers=viewer).status_code == 403

    key = saas_client.post("/api/api-keys", json={"name": "Lector", "scopes": ["opex:read"]}, headers=owner).json()
    headers = {"X-API-Key": key["key"]}
    assert saas_client.get("/api/opex", headers=headers).status_code == 200
    r = saas_client.get("/api/equipment", headers=headers)
    assert r.status_code == 403
    assert r.json()["detail"] == "La API key no tiene el permiso equipment:read"
    assert saas_client.get("/api/notifications", headers=headers).status_code == 403
