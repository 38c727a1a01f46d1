from datetime import date
from urllib.parse import unquote

from ptar.config import settings


def _ticket(client, headers, plant, **extra):
    body = {
        "plant_id": plant["id"],
        "subject": "Falta floculante",
        "description": "Quedan dos sacos",
        "category": "insumos",
        "requester_name": "Operador",
        "requester_phone": "+593 99 123 4567",
        **extra,
    }
    r = client.post("/api/tickets", json=body, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()


def test_ticket_numbers_are_sequential(client, admin, plant):
    year = date.today().year
    first = _ticket(client, admin, plant)
    second = _ticket(client, admin, plant, status="closed")
    assert first["ticket_number"] == f"TKT-{year}-00001"
    assert second["ticket_number"] == f"TKT-{year}-00002"
    assert second["status"] == "open"
    assert second["priority"] == "medium"


def test_deleted_ticket_number_not_reused(client, admin, plant):
    year = date.today().year
    first = _ticket(client, admin, plant)
    _ticket(client, admin, plant)
    _ticket(client, admin, plant)
    assert client.delete(f"/api/tickets/{first['id']}", headers=admin).status_code == 200
    # two left, 00003 still taken
    assert _ticket(client, admin, plant)["ticket_number"] == f"TKT-{year}-00004"


def test_ticket_validation(client, admin, plant):
    r = client.post("/api/tickets", json={"plant_id": plant["id"], "subject": "x"}, headers=admin)
    assert r.status_code == 400
    r = client.post(
        "/api/tickets",
        json={"plant_id": plant["id"], "subject": "x", "description": "y", "category": "compras", "requester_name": "z"},
        headers=admin,
    )
    assert r.status_code == 400


def test_create_with_email_and_whatsapp_flags(client, operator, plant, sent_mail, monkeypatch):
    monkeypatch.setattr(settings, "ticket_notification_emails", "soporte@ptar.local")
    t = _ticket(client, operator, plant, send_email=True, send_whatsapp=True)
    assert t["sent_via_email"] == 1
    assert t["sent_via_whatsapp"] == 1
    assert sent_mail[0]["template"] == "ticket_new"
    assert sent_mail[0]["to"] == ["soporte@ptar.local"]


def test_resolve_sets_timestamp(client, admin, plant):
    t = _ticket(client, admin, plant)
    r = client.patch(f"/api/tickets/{t['id']}", json={"status": "resolved", "resolution_notes": "Entregado"}, headers=admin)
    assert r.status_code == 200
    assert r.json()["resolved_at"]
    stats = client.get("/api/tickets/stats", headers=admin).json()
    assert stats["total"] == 1
    assert stats["resolved"] == 1
    assert stats["open"] == 0


def test_comments_and_detail(client, admin, plant, operator):
    t = _ticket(client, admin, plant)
    r = client.post(f"/api/tickets/{t['id']}/comments", json={"comment": "Pedido realizado"}, headers=operator)
    assert r.status_code == 201
    assert r.json()["author_name"] == "Operador"
    assert client.post(f"/api/tickets/{t['id']}/comments", json={"comment": " "}, headers=operator).status_code == 400
    detail = client.get(f"/api/tickets/{t['id']}", headers=admin).json()
    assert [c["comment"] for c in detail["comments"]] == ["Pedido realizado"]


def test_send_email_endpoint(client, admin, plant, sent_mail):
    t = _ticket(client, admin, plant)
    r = client.post(f"/api/tickets/{t['id']}/send-email", json={"recipients": ["a@ptar.local"]}, headers=admin)
    assert r.status_code == 200
    assert sent_mail[0]["to"] == ["a@ptar.local"]


def test_send_email_without_recipients(client, admin, plant, monkeypatch):
    monkeypatch.setattr(settings, "ticket_notification_emails", "")
    monkeypatch.setattr(settings, "admin_email", None)
    t = _ticket(client, admin, plant)
    assert client.post(f"/api/tickets/{t['id']}/send-email", headers=admin).status_code == 400


def test_ticket_mail_falls_back_to_admin_email(client, operator, plant, sent_mail, monkeypatch):
    monkeypatch.setattr(settings, "ticket_notification_emails", "")
    monkeypatch.setattr(settings, "admin_email", "jefe@ptar.local")
    t = _ticket(client, operator, plant, send_email=True)
    assert t["sent_via_email"] == 1
    assert sent_mail[0]["to"] == ["jefe@ptar.local"]

    r = client.post(f"/api/tickets/{t['id']}/send-email", headers=operator)
    assert r.json()["recipients"] == ["jefe@ptar.local"]


def test_whatsapp_link(client, admin, plant):
    t = _ticket(client, admin, plant)
    r = client.get(f"/api/tickets/{t['id']}/whatsapp-link", params={"phone": "+593 99 000 1111"}, headers=admin)
    body = r.json()
    assert body["phone"] == "593990001111"
    assert body["link"].startswith("https://wa.me/593990001111?text=")
    text = unquote(body["link"].split("?text=", 1)[1])
    assert t["ticket_number"] in text
    assert "*Categoría:* Insumos" in text
    assert client.get(f"/api/tickets/{t['id']}", headers=admin).json()["sent_via_whatsapp"] == 1


def test_only_admin_deletes_tickets(client, operator, plant):
    t = _ticket(client, operator, plant)
    assert client.delete(f"/api/tickets/{t['id']}", headers=operator).status_code == 403


def test_document_upload_download_delete(client, admin, plant, tmp_path):
    r = client.post(
        "/api/documents",
        data={"plant_id": str(plant["id"]), "category": "manuales", "description": "Manual soplante"},
        files={"file": ("manual.pdf", b"%PDF-1.4 demo", "application/pdf")},
        headers=admin,
    )
    assert r.status_code == 201, r.text
    doc = r.json()
    assert doc["file_size"] == len(b"%PDF-1.4 demo")
    assert "file_path" not in doc
    assert [p.read_bytes() for p in (tmp_path / "uploads" / "documents").iterdir()] == [b"%PDF-1.4 demo"]
    assert "file_path" not in client.get(f"/api/documents/{doc['id']}", headers=admin).json()

    listed = client.get("/api/documents", params={"search": "soplante"}, headers=admin).json()
    assert [d["id"] for d in listed] == [doc["id"]]
    assert "file_path" not in listed[0]

    r = client.get(f"/api/documents/{doc['id']}/download", headers=admin)
    assert r.status_code == 200
    assert r.content == b"%PDF-1.4 demo"

    assert client.delete(f"/api/documents/{doc['id']}", headers=admin).status_code == 200
    assert client.get(f"/api/documents/{doc['id']}", headers=admin).status_code == 404


def test_empty_document_rejected(client, admin, plant):
    r = client.post(
        "/api/documents",
        data={"plant_id": str(plant["id"])},
        files={"file": ("vacio.txt", b"", "text/plain")},
        headers=admin,
    )
    assert r.status_code == 400


def test_failed_document_insert_removes_upload(client, admin, plant, tmp_path, monkeypatch):
    import sqlite3

    from ptar.routers import documents

    def broken_ledger(*args, **kwargs):
        raise sqlite3.IntegrityError("UNIQUE constraint failed: documents.file_name")

    monkeypatch.setattr(documents, "log_ledger", broken_ledger)
    r = client.post(
        "/api/documents",
        data={"plant_id": str(plant["id"])},
        files={"file": ("manual.pdf", b"%PDF-1.4 demo", "application/pdf")},
        headers=admin,
    )
    assert r.status_code == 409
    assert list((tmp_path / "uploads" / "documents").iterdir()) == []
    assert client.get("/api/documents", headers=admin).json() == []
