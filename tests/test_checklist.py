from ptar.config import settings

WORKBOOK = (
    "PTAR LA LUZ,,\n"
    "Registro diario de operación,,\n"
    "PRETRATAMIENTO,,\n"
    "Rejillas,SI,NO\n"
    ",Limpiar rejilla gruesa,Retirar sólidos\n"
    "BOMBEO,,\n"
    "Bomba 1,SI,NO\n"
    ",Presión de descarga (bar),pH de salida\n"
)


def _all_items(today):
    return [i for items in today["items"].values() for i in items]


def test_today_without_template_uses_general_checks(client, plant, operator):
    r = client.get(f"/api/checklist/today/{plant['id']}", headers=operator)
    assert r.status_code == 200
    today = r.json()
    assert today["total"] == 5
    assert list(today["items"]) == ["general"]
    assert today["checklist"]["operator_name"] == "Operador"

    again = client.get(f"/api/checklist/today/{plant['id']}", headers=operator).json()
    assert again["checklist"]["id"] == today["checklist"]["id"]


def test_operator_bound_to_other_plant(client, admin, operator):
    other = client.post("/api/plants", json={"name": "OTRA"}, headers=admin).json()
    assert client.get(f"/api/checklist/today/{other['id']}", headers=operator).status_code == 403


def test_check_flag_complete_and_report(client, admin, plant, operator):
    today = client.get(f"/api/checklist/today/{plant['id']}", headers=operator).json()
    first, second = _all_items(today)[:2]

    r = client.patch(f"/api/checklist/item/{first['id']}", json={"is_checked": True, "numeric_value": 4.5}, headers=operator)
    assert r.status_code == 200
    assert r.json()["checked_at"]

    r = client.patch(
        f"/api/checklist/item/{second['id']}",
        json={"is_red_flag": True, "red_flag_comment": "Olor fuerte"},
        headers=operator,
    )
    assert r.json()["is_red_flag"] == 1

    assert client.patch(f"/api/checklist/item/{first['id']}", json={}, headers=operator).status_code == 400

    done = client.post(
        f"/api/checklist/{today['checklist']['id']}/complete", json={"notes": "Sin novedades"}, headers=operator
    ).json()
    assert done == {"message": "Checklist completado", "total": 5, "checked": 1, "red_flags": 1, "report_sent": True}

    reports = client.get("/api/checklist/supervisor/reports", headers=admin).json()
    assert len(reports) == 1
    assert reports[0]["red_flag_count"] == 1
    report = client.get(f"/api/checklist/supervisor/report/{reports[0]['id']}", headers=admin).json()
    assert len(report["all_items"]) == 5
    client.patch(f"/api/checklist/supervisor/report/{reports[0]['id']}/read", headers=admin)
    assert client.get("/api/checklist/supervisor/reports", headers=admin).json()[0]["read_at"]

    flags = client.get("/api/checklist/red-flags", headers=admin).json()
    assert flags["stats"] == {"total": 1, "pending": 1, "resolved": 0}
    flag = flags["red_flags"][0]
    assert flag["comment"] == "Olor fuerte"
    assert flag["plant_name"] == "LA LUZ"

    client.patch(f"/api/checklist/red-flag/{flag['id']}/resolve", json={"resolution_notes": "Limpieza"}, headers=admin)
    flags = client.get("/api/checklist/red-flags", params={"resolved": True}, headers=admin).json()
    assert flags["stats"]["resolved"] == 1
    assert flags["red_flags"][0]["resolution_notes"] == "Limpieza"

    summary = client.get("/api/checklist/summary", headers=admin).json()
    assert summary[0]["checked_items"] == 1
    assert summary[0]["completed_at"]


def test_complete_without_supervisor_report(client, plant, operator, admin):
    today = client.get(f"/api/checklist/today/{plant['id']}", headers=operator).json()
    done = client.post(
        f"/api/checklist/{today['checklist']['id']}/complete", json={"notify_supervisor": False}, headers=operator
    ).json()
    assert done["report_sent"] is False
    assert client.get("/api/checklist/supervisor/reports", headers=admin).json() == []


def test_sync_upload_builds_template_and_today(client, admin, plant):
    r = client.post(
        "/api/checklist/sync/upload",
        data={"plant_id": str(plant["id"]), "template_name": "Diario", "template_code": "DIARIO"},
        files={"file": ("diario.csv", WORKBOOK.encode("utf-8"), "text/csv")},
        headers=admin,
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["item_count"] == 4
    assert body["sections"] == ["PRETRATAMIENTO", "BOMBEO"]
    assert body["elements"] == ["Rejillas", "Bomba 1"]

    templates = client.get(f"/api/checklist/templates/{plant['id']}", headers=admin).json()
    assert templates[0]["item_count"] == 4

    today = client.get(f"/api/checklist/today/{plant['id']}", headers=admin).json()
    assert today["total"] == 4
    assert set(today["items"]) == {"PRETRATAMIENTO", "BOMBEO"}
    pressure = next(i for i in _all_items(today) if "Presión" in i["item_description"])
    assert pressure["item_description"] == "Bomba 1: Presión de descarga"
    assert pressure["unit"] == "bar"
    assert pressure["requires_value"] == 1

    r = client.delete(f"/api/checklist/sync/template/{body['template_id']}", headers=admin)
    assert r.status_code == 400
    r = client.delete(f"/api/checklist/sync/template/{body['template_id']}", params={"force": True}, headers=admin)
    assert r.status_code == 200


def test_sync_duplicate_code_conflicts(client, admin, plant):
    files = {"file": ("diario.csv", WORKBOOK.encode("utf-8"), "text/csv")}
    data = {"plant_id": str(plant["id"]), "template_code": "DIARIO"}
    assert client.post("/api/checklist/sync/upload", data=data, files=files, headers=admin).status_code == 200
    files = {"file": ("diario.csv", WORKBOOK.encode("utf-8"), "text/csv")}
    assert client.post("/api/checklist/sync/upload", data=data, files=files, headers=admin).status_code == 409


def test_sync_rejects_unknown_format_and_failed_conversion(client, admin, plant, monkeypatch):
    r = client.post("/api/checklist/sync/preview", files={"file": ("x.pdf", b"x", "application/pdf")}, headers=admin)
    assert r.status_code == 400

    monkeypatch.setattr(settings, "libreoffice_bin", "/nonexistent/soffice")
    r = client.post(
        "/api/checklist/sync/preview",
        files={"file": ("x.xlsx", b"PK\x03\x04", "application/octet-stream")},
        headers=admin,
    )
    assert r.status_code == 500
    assert "LibreOffice" in r.json()["detail"]


def test_sync_preview_groups_items(client, admin):
    r = client.post(
        "/api/checklist/sync/preview",
        files={"file": ("diario.csv", WORKBOOK.encode("utf-8"), "text/csv")},
        headers=admin,
    )
    body = r.json()
    assert body["preview"]["BOMBEO"]["Bomba 1"] == ["Presión de descarga", "pH de salida"]


def test_numeric_values_feed_measurements(client, admin, plant):
    client.post(
        "/api/checklist/sync/upload",
        data={"plant_id": str(plant["id"]), "template_code": "DIARIO"},
        files={"file": ("diario.csv", WORKBOOK.encode("utf-8"), "text/csv")},
        headers=admin,
    )
    today = client.get(f"/api/checklist/today/{plant['id']}", headers=admin).json()
    ph = next(i for i in _all_items(today) if "pH" in i["item_description"])
    client.patch(f"/api/checklist/item/{ph['id']}", json={"numeric_value": 7.4}, headers=admin)

    latest = client.get("/api/checklist/measurements/latest", headers=admin).json()
    assert latest["latest"][0]["parameter_type"] == "pH"
    assert latest["latest"][0]["stream"] == "effluent"

    synced = client.get("/api/checklist/measurements/sync-to-analytics", headers=admin).json()
    assert synced["count"] == 1
    assert synced["measurements"][0]["value"] == 7.4
    assert synced["measurements"][0]["source"] == "checklist_mobile"


def test_progress_rounds_halves_up(client, admin, plant):
    rows = ["PTAR LA LUZ,,", "Registro diario,,", "PRETRATAMIENTO,,"]
    for n in range(1, 5):
        rows += [f"Equipo {n},SI,NO", ",Inspeccionar,Engrasar"]
    client.post(
        "/api/checklist/sync/upload",
        data={"plant_id": str(plant["id"]), "template_code": "OCHO"},
        files={"file": ("ocho.csv", "\n".join(rows).encode("utf-8"), "text/csv")},
        headers=admin,
    )
    today = client.get(f"/api/checklist/today/{plant['id']}", headers=admin).json()
    assert today["total"] == 8
    first = _all_items(today)[0]
    client.patch(f"/api/checklist/item/{first['id']}", json={"is_checked": True}, headers=admin)

    assert client.get(f"/api/checklist/today/{plant['id']}", headers=admin).json()["progress"] == 13
    assert client.get(f"/api/checklist/{today['checklist']['id']}", headers=admin).json()["progress"] == 13


def test_progress_percent():
    from ptar.routers.checklist import progress_percent

    assert progress_percent(1, 8) == 13
    assert progress_percent(1, 40) == 3
    assert progress_percent(0, 0) == 0
    assert progress_percent(5, 5) == 100
