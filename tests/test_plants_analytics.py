def test_create_returns_row(client, plant):
    assert plant["id"] > 0
    assert plant["name"] == "LA LUZ"
    assert plant["status"] == "active"


def test_duplicate_plant_name_conflicts(client, admin, plant):
    r = client.post("/api/plants", json={"name": "LA LUZ"}, headers=admin)
    assert r.status_code == 409


def test_plant_validation(client, admin):
    assert client.post("/api/plants", json={"location": "x"}, headers=admin).status_code == 400
    assert client.post("/api/plants", json={"name": "A", "status": "zzz"}, headers=admin).status_code == 400
    assert client.post("/api/plants", json={"name": "B", "latitude": 120}, headers=admin).status_code == 400


def test_update_changes_only_given_fields(client, admin, plant):
    r = client.patch(f"/api/plants/{plant['id']}", json={"status": "maintenance"}, headers=admin)
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "maintenance"
    assert body["location"] == "Guayaquil"


def test_standard_user_cannot_create_plants(client, operator):
    assert client.post("/api/plants", json={"name": "OTRA"}, headers=operator).status_code == 403


def test_delete_cascades_readings(client, admin, plant):
    r = client.post(
        "/api/analytics/environmental",
        json={"plant_id": plant["id"], "parameter_type": "DQO", "value": 120, "measurement_date": "2026-01-10"},
        headers=admin,
    )
    assert r.status_code == 201
    assert client.delete(f"/api/plants/{plant['id']}", headers=admin).status_code == 200
    assert client.get("/api/analytics/environmental", headers=admin).json() == []
    assert client.get(f"/api/plants/{plant['id']}", headers=admin).status_code == 404


def test_reading_defaults_and_duplicates(client, admin, plant):
    body = {"plant_id": plant["id"], "parameter_type": "ph", "value": 7.2, "measurement_date": "15/01/2026"}
    r = client.post("/api/analytics/environmental", json=body, headers=admin)
    assert r.status_code == 201
    row = r.json()
    assert row["parameter_type"] == "pH"
    assert row["stream"] == "effluent"
    assert row["unit"] == ""
    assert row["measurement_date"].startswith("2026-01-15")
    assert client.post("/api/analytics/environmental", json=body, headers=admin).status_code == 409


def test_reading_rejects_negative_and_unknown_parameter(client, admin, plant):
    base = {"plant_id": plant["id"], "measurement_date": "2026-01-10"}
    r = client.post("/api/analytics/environmental", json={**base, "parameter_type": "DQO", "value": -1}, headers=admin)
    assert r.status_code == 400
    r = client.post("/api/analytics/environmental", json={**base, "parameter_type": "DBO", "value": 1}, headers=admin)
    assert r.status_code == 400


CSV = (
    "planta,fecha,parametro,valor,tipo\n"
    "LA LUZ,15/01/2026,DQO,850,entrada\n"
    "LA LUZ,15/01/2026,DQO,95,salida\n"
    "LA LUZ,2026-01-15,pH,7.1,effluent\n"
    "NO EXISTE,15/01/2026,DQO,10,salida\n"
    "LA LUZ,15/01/2026,DBO,10,salida\n"
    "LA LUZ,15/01/2026,SS,abc,salida\n"
)


def test_csv_import_reports_per_line_errors(client, admin, plant):
    files = {"file": ("datos.csv", CSV.encode("utf-8"), "text/csv")}
    r = client.post("/api/analytics/upload-csv", files=files, headers=admin)
    assert r.status_code == 200, r.text
    result = r.json()
    assert result["inserted"] == 3
    assert result["updated"] == 0
    assert len(result["errors"]) == 3
    assert result["errors"][0].startswith("Línea 5")

    again = client.post("/api/analytics/upload-csv", files=files, headers=admin).json()
    assert again["inserted"] == 0
    assert again["updated"] == 3

    rows = client.get("/api/analytics/environmental", params={"plant_id": plant["id"], "stream": "influent"}, headers=admin).json()
    assert [r["value"] for r in rows] == [850]


def test_csv_import_with_bom_and_missing_columns(client, admin, plant):
    content = "\ufeffplanta,fecha,parametro,valor,tipo\nLA LUZ,01/02/2026,SS,40,salida\n".encode("utf-8")
    r = client.post("/api/analytics/upload-csv", files={"file": ("d.csv", content, "text/csv")}, headers=admin)
    assert r.json()["inserted"] == 1

    bad = "planta,fecha\nLA LUZ,01/02/2026\n".encode("utf-8")
    r = client.post("/api/analytics/upload-csv", files={"file": ("d.csv", bad, "text/csv")}, headers=admin)
    assert r.status_code == 400
    assert "Faltan columnas" in r.json()["detail"]


def test_csv_upload_requires_csv_extension(client, admin):
    r = client.post("/api/analytics/upload-csv", files={"file": ("d.txt", b"x", "text/plain")}, headers=admin)
    assert r.status_code == 400


def test_summary_groups_by_parameter_and_stream(client, admin, plant):
    for day, value in (("2026-01-01", 100), ("2026-01-02", 200)):
        client.post(
            "/api/analytics/environmental",
            json={"plant_id": plant["id"], "parameter_type": "DQO", "value": value, "measurement_date": day},
            headers=admin,
        )
    rows = client.get("/api/analytics/summary", params={"plant_id": plant["id"]}, headers=admin).json()
    assert rows == [{"parameter_type": "DQO", "stream": "effluent", "count": 2, "avg": 150.0, "min": 100.0, "max": 200.0}]


def test_csv_template_download(client, admin):
    r = client.get("/api/analytics/csv-template", headers=admin)
    assert r.status_code == 200
    assert "plantilla_analiticas.csv" in r.headers["content-disposition"]
    assert r.text.lstrip("\ufeff").startswith("planta,")


def test_reading_update_onto_existing_key_conflicts(client, admin, plant):
    ids = []
    for day, value in (("2026-01-01", 100), ("2026-01-02", 200)):
        r = client.post(
            "/api/analytics/environmental",
            json={"plant_id": plant["id"], "parameter_type": "DQO", "value": value, "measurement_date": day},
            headers=admin,
        )
        ids.append(r.json()["id"])
    r = client.put(f"/api/analytics/environmental/{ids[1]}", json={"measurement_date": "01/01/2026"}, headers=admin)
    assert r.status_code == 409
    r = client.put(f"/api/analytics/environmental/{ids[1]}", json={"plant_id": 9999}, headers=admin)
    assert r.status_code == 400
    rows = client.get("/api/analytics/environmental", params={"plant_id": plant["id"]}, headers=admin).json()
    assert sorted(row["value"] for row in rows) == [100, 200]
    assert client.put(f"/api/analytics/environmental/{ids[1]}", json={"value": 210}, headers=admin).status_code == 200


def test_startup_drops_duplicate_readings_before_indexing(client, admin, plant):
    from ptar.db import connect
    from ptar.main import init_db

    with connect() as con:
        con.execute("DROP INDEX ux_env_reading")
        for value in (80, 90):
            con.execute(
                "INSERT INTO environmental_data (plant_id, parameter_type, value, measurement_date) VALUES (?, 'SS', ?, ?)",
                (plant["id"], value, "2026-03-01T12:00:00.000Z"),
            )
        con.commit()
    init_db()
    rows = client.get("/api/analytics/environmental", params={"plant_id": plant["id"]}, headers=admin).json()
    assert [row["value"] for row in rows] == [90]


def test_csv_import_rejects_impossible_dates(client, admin, plant):
    content = (
        "planta,fecha,parametro,valor,tipo\n"
        "LA LUZ,2025-02-31,DQO,80,salida\n"
        "LA LUZ,31/04/2025,SS,30,salida\n"
        "LA LUZ,30/04/2025,SS,30,salida\n"
    ).encode("utf-8")
    result = client.post("/api/analytics/upload-csv", files={"file": ("d.csv", content, "text/csv")}, headers=admin).json()
    assert result["inserted"] == 1
    assert [e.split(":")[0] for e in result["errors"]] == ["Línea 2", "Línea 3"]
    assert "Fecha" in result["errors"][0]

    body = {"plant_id": plant["id"], "parameter_type": "pH", "value": 7, "measurement_date": "2025-02-31"}
    assert client.post("/api/analytics/environmental", json=body, headers=admin).status_code == 400
