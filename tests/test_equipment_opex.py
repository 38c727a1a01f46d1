def _equipment(client, admin, plant, **extra):
    body = {
        "plant_id": plant["id"],
        "item_code": "SOP-01",
        "description": "Soplante principal",
        "category": "motores",
        "monthly_check": "Revisar correas",
        "annual_check": "Cambio de aceite",
        **extra,
    }
    r = client.post("/api/equipment", json=body, headers=admin)
    assert r.status_code == 201, r.text
    return r.json()


def test_equipment_category_validated(client, admin, plant):
    r = client.post(
        "/api/equipment",
        json={"plant_id": plant["id"], "item_code": "X", "description": "X", "category": "bombas"},
        headers=admin,
    )
    assert r.status_code == 400


def test_generate_plan_is_idempotent(client, admin, plant):
    _equipment(client, admin, plant)
    r = client.post(f"/api/equipment/scheduled/generate/{plant['id']}/2030", headers=admin)
    assert r.json()["created"] == 13
    again = client.post(f"/api/equipment/scheduled/generate/{plant['id']}/2030", headers=admin)
    assert again.json()["created"] == 0

    plan = client.get(f"/api/equipment/scheduled/plant/{plant['id']}/2030", headers=admin).json()
    assert plan["summary"]["total"] == 13
    assert plan["summary"]["pending"] == 13
    assert all(i["scheduled_date"].endswith("-15") for i in plan["items"])
    assert {i["frequency"] for i in plan["items"]} == {"mensual", "anual"}


def test_generate_plan_rejects_bad_year(client, admin, plant):
    assert client.post(f"/api/equipment/scheduled/generate/{plant['id']}/1990", headers=admin).status_code == 400


def test_complete_and_move_scheduled(client, admin, plant):
    eq = _equipment(client, admin, plant, monthly_check=None)
    client.post(f"/api/equipment/scheduled/generate/{plant['id']}/2030", headers=admin)
    item = client.get(f"/api/equipment/scheduled/{eq['id']}/2030", headers=admin).json()[0]
    assert item["scheduled_date"] == "2030-12-15"

    moved = client.put(f"/api/equipment/scheduled/{item['id']}/date", json={"scheduled_date": "2031-01-10"}, headers=admin).json()
    assert moved["scheduled_date"] == "2031-01-10"
    assert moved["year"] == 2031

    done = client.put(f"/api/equipment/scheduled/{item['id']}/complete", json={"notes": "listo"}, headers=admin).json()
    assert done["status"] == "completed"
    assert done["notes"] == "listo"

    back = client.put(f"/api/equipment/scheduled/{item['id']}/pending", headers=admin).json()
    assert back["status"] == "pending"
    assert back["completed_date"] is None


def test_maintenance_log(client, admin, plant, operator):
    eq = _equipment(client, admin, plant)
    r = client.post(
        f"/api/equipment/{eq['id']}/logs",
        json={"maintenance_type": "correctivo", "maintenance_date": "2026-02-01", "description_averia": "Ruido"},
        headers=operator,
    )
    assert r.status_code == 201
    log = r.json()
    assert log["operator_name"] == "Operador"

    bad = client.post(f"/api/equipment/{eq['id']}/logs", json={"maintenance_type": "otro", "maintenance_date": "2026-02-01"}, headers=operator)
    assert bad.status_code == 400

    assert len(client.get(f"/api/equipment/{eq['id']}/logs", headers=admin).json()) == 1
    assert client.delete(f"/api/equipment/logs/{log['id']}", headers=operator).status_code == 403


def test_opex_upsert_overwrites_period(client, admin, plant):
    body = {"plant_id": plant["id"], "period_date": "2026-01", "volume_m3": 1000, "cost_energia": 300, "cost_personal": 200}
    r = client.post("/api/opex", json=body, headers=admin)
    assert r.status_code == 201
    first = r.json()
    assert first["period_date"] == "2026-01-01"
    assert first["total_cost"] == 500
    assert first["cost_per_m3"] == 0.5

    r = client.post("/api/opex", json={**body, "cost_energia": 100}, headers=admin)
    assert r.status_code == 200
    second = r.json()
    assert second["id"] == first["id"]
    assert second["total_cost"] == 300

    assert len(client.get("/api/opex", params={"plant_id": plant["id"]}, headers=admin).json()) == 1


def test_opex_rejects_negative_cost(client, admin, plant):
    r = client.post("/api/opex", json={"plant_id": plant["id"], "period_date": "2026-01", "cost_agua": -5}, headers=admin)
    assert r.status_code == 400


def test_opex_summary_and_csv(client, admin, plant):
    csv = (
        "planta,periodo,volumen_m3,energia,personal\n"
        "LA LUZ,2026-01,1000,100,50\n"
        "LA LUZ,2026-02,500,100,50\n"
        "OTRA,2026-02,1,1,1\n"
        "LA LUZ,2026-03,1,-4,1\n"
    )
    r = client.post("/api/opex/upload-csv", files={"file": ("opex.csv", csv.encode(), "text/csv")}, headers=admin)
    result = r.json()
    assert result["inserted"] == 2
    assert result["errors"][0].startswith("Fila 4")
    assert "energia" in result["errors"][1]

    s = client.get(f"/api/opex/summary/{plant['id']}", params={"year": 2026}, headers=admin).json()
    assert s["periods"] == 2
    assert s["volume_m3"] == 1500
    assert s["total_cost"] == 300
    assert s["cost_per_m3"] == 0.2


def test_opex_rejects_impossible_periods(client, admin, plant):
    csv = "planta,periodo,volumen_m3,energia\nLA LUZ,2025-13,10,1\nLA LUZ,2025-02-31,10,1\nLA LUZ,2025-02,10,1\n"
    result = client.post("/api/opex/upload-csv", files={"file": ("opex.csv", csv.encode(), "text/csv")}, headers=admin).json()
    assert result["inserted"] == 1
    assert [e.split(":")[0] for e in result["errors"]] == ["Fila 2", "Fila 3"]
    assert "no válido" in result["errors"][0]

    r = client.post("/api/opex", json={"plant_id": plant["id"], "period_date": "2025-13"}, headers=admin)
    assert r.status_code == 400
