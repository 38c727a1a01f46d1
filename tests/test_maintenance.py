from datetime import date, timedelta

from ptar.config import settings


def _task(client, admin, plant, **extra):
    body = {"plant_id": plant["id"], "description": "Cambio de rodamientos", "scheduled_date": "2030-03-15", **extra}
    r = client.post("/api/maintenance/tasks", json=body, headers=admin)
    assert r.status_code == 201, r.text
    return r.json()


def test_create_task_sets_reminder_date(client, admin, plant):
    task = _task(client, admin, plant)
    assert task["status"] == "pending"
    assert task["periodicity"] == "annual"
    assert task["reminder_date"] == "2030-02-13"
    assert task["plant_name"] == "LA LUZ"


def test_create_task_requires_fields(client, admin, plant):
    r = client.post("/api/maintenance/tasks", json={"plant_id": plant["id"]}, headers=admin)
    assert r.status_code == 400


def test_past_pending_tasks_become_overdue(client, admin, plant):
    past = (date.today() - timedelta(days=3)).isoformat()
    task = _task(client, admin, plant, scheduled_date=past)
    rows = client.get("/api/maintenance/tasks", headers=admin).json()
    assert [r["status"] for r in rows if r["id"] == task["id"]] == ["overdue"]


def test_operator_may_complete_but_not_reschedule(client, admin, plant, operator):
    task = _task(client, admin, plant)
    r = client.patch(f"/api/maintenance/tasks/{task['id']}", json={"scheduled_date": "2031-01-01"}, headers=operator)
    assert r.status_code == 403

    r = client.post(f"/api/maintenance/tasks/{task['id']}/complete", json={"notes": "ok"}, headers=operator)
    assert r.status_code == 200
    done = r.json()["task"]
    assert done["status"] == "completed"
    assert done["completed_by"] == "Operador"
    assert done["notes"] == "ok"

    history = client.get("/api/maintenance/tasks/history", headers=admin).json()
    assert [t["id"] for t in history] == [task["id"]]

    r = client.post(f"/api/maintenance/tasks/{task['id']}/uncomplete", headers=admin)
    assert r.json()["task"]["completed_date"] is None


def test_generate_yearly_skips_plants_with_tasks(client, admin, plant):
    client.post("/api/plants", json={"name": "EL ROSARIO"}, headers=admin)
    _task(client, admin, plant, scheduled_date="2030-05-01")
    r = client.post("/api/maintenance/tasks/generate-monthly", json={"year": 2030}, headers=admin)
    body = r.json()
    assert body["created"] == 1
    assert body["tasks"][0]["plant_name"] == "EL ROSARIO"


def test_send_reminders(client, admin, plant, sent_mail, monkeypatch):
    monkeypatch.setattr(settings, "maintenance_reminder_emails", "jefe@ptar.local")
    soon = (date.today() + timedelta(days=10)).isoformat()
    _task(client, admin, plant, scheduled_date=soon)
    _task(client, admin, plant, scheduled_date="2040-01-01")

    r = client.post("/api/maintenance/tasks/send-reminders", headers=admin)
    assert r.json()["sent"] == 1
    assert sent_mail[0]["to"] == ["jefe@ptar.local"]
    assert sent_mail[0]["template"] == "maintenance_reminder"
    assert sent_mail[0]["data"]["days_remaining"] == 10

    again = client.post("/api/maintenance/tasks/send-reminders", headers=admin).json()
    assert again["total"] == 0


def test_send_reminders_without_recipients(client, admin, monkeypatch):
    monkeypatch.setattr(settings, "maintenance_reminder_emails", "")
    monkeypatch.setattr(settings, "admin_email", None)
    assert client.post("/api/maintenance/tasks/send-reminders", headers=admin).status_code == 400


def test_report_emergency_notifies(client, plant, operator, sent_mail, monkeypatch):
    monkeypatch.setattr(settings, "emergency_email_recipients", "guardia@ptar.local")
    r = client.post(
        "/api/maintenance/emergencies/report",
        json={"plant_id": plant["id"], "reason": "Falla de bomba", "severity": "high"},
        headers=operator,
    )
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["email_sent"] is True
    assert body["emergency"]["operator_name"] == "Operador"
    assert body["emergency"]["source"] == "mobile"
    assert sent_mail[0]["template"] == "emergency_alert"


def test_operator_cannot_report_for_other_plant(client, admin, operator):
    other = client.post("/api/plants", json={"name": "OTRA"}, headers=admin).json()
    r = client.post("/api/maintenance/emergencies/report", json={"plant_id": other["id"], "reason": "x"}, headers=operator)
    assert r.status_code == 403


def test_resolve_and_acknowledge_emergency(client, admin, plant):
    e = client.post(
        "/api/maintenance/emergencies",
        json={"plant_id": plant["id"], "reason": "Rebose", "severity": "low"},
        headers=admin,
    ).json()
    assert e["solved"] == 0
    assert [x["id"] for x in client.get("/api/maintenance/emergencies/unacknowledged", headers=admin).json()] == [e["id"]]

    r = client.patch(f"/api/maintenance/emergencies/{e['id']}", json={"solved": True, "resolve_time_hours": 2.5}, headers=admin)
    resolved = r.json()
    assert resolved["solved"] == 1
    assert resolved["resolved_at"]

    ack = client.post(f"/api/maintenance/emergencies/{e['id']}/acknowledge", headers=admin).json()
    assert ack["acknowledged_by"]

    open_rows = client.get("/api/maintenance/emergencies", params={"solved": False}, headers=admin).json()
    assert open_rows == []


def test_emergency_severity_validated(client, admin, plant):
    r = client.post("/api/maintenance/emergencies", json={"plant_id": plant["id"], "reason": "x", "severity": "extreme"}, headers=admin)
    assert r.status_code == 400


def test_emergency_constraint_violations_are_client_errors(client, admin, plant):
    e = client.post("/api/maintenance/emergencies", json={"plant_id": plant["id"], "reason": "Fuga"}, headers=admin).json()
    url = f"/api/maintenance/emergencies/{e['id']}"
    r = client.post("/api/maintenance/emergencies", json={"plant_id": plant["id"], "reason": "x", "resolve_time_hours": -1}, headers=admin)
    assert r.status_code == 400
    assert client.patch(url, json={"resolve_time_hours": -3}, headers=admin).status_code == 400
    r = client.patch(url, json={"plant_id": 9999}, headers=admin)
    assert r.status_code == 400
    assert r.json()["detail"] == "Referencia inválida"

    # the database is still writable afterwards
    r = client.patch(url, json={"reason": "ok"}, headers=admin)
    assert r.status_code == 200
    assert r.json()["reason"] == "ok"


def test_emergency_tasks_and_comments(client, admin, plant, sent_mail):
    e = client.post("/api/maintenance/emergencies", json={"plant_id": plant["id"], "reason": "Fuga"}, headers=admin).json()
    r = client.post(
        f"/api/maintenance/emergencies/{e['id']}/tasks",
        json={"title": "Cambiar válvula", "assigned_to_email": "tecnico@ptar.local", "priority": "urgent"},
        headers=admin,
    )
    assert r.status_code == 201
    task = r.json()
    assert task["email_sent_at"]
    assert sent_mail[0]["template"] == "task_assignment"

    r = client.patch(f"/api/maintenance/emergency-tasks/{task['id']}", json={"status": "in_progress"}, headers=admin)
    assert r.json()["started_at"]

    r = client.post(f"/api/maintenance/emergency-tasks/{task['id']}/comments", json={"comment": "En camino"}, headers=admin)
    assert r.status_code == 201
    listed = client.get(f"/api/maintenance/emergencies/{e['id']}/tasks", headers=admin).json()
    assert listed[0]["comment_count"] == 1

    pending = client.get("/api/maintenance/emergency-tasks/pending", headers=admin).json()
    assert [t["id"] for t in pending] == [task["id"]]


def test_stats(client, admin, plant):
    _task(client, admin, plant)
    client.post("/api/maintenance/emergencies", json={"plant_id": plant["id"], "reason": "Olor"}, headers=admin)
    stats = client.get("/api/maintenance/stats", headers=admin).json()
    assert stats["pending_tasks"] == 1
    assert stats["unresolved_emergencies"] == 1
    assert stats["by_plant"][0]["plant_name"] == "LA LUZ"
