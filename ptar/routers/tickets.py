import logging
from datetime import date
from typing import Any, Dict, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Request

from .. import email_service
from ..auth import require_role, require_user
from ..config import settings
from ..db import connect, rows_to_dicts
from ..email_service import PRIORITY_LABELS
from ..limiter import limiter
from ..utils import (
    check_choice,
    diff_rows,
    fetch_or_404,
    insert_row,
    log_ledger,
    normalize_payload,
    now_iso,
    to_flag,
    update_row,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tickets", tags=["tickets"])

CATEGORY_LABELS = {
    "mantenimiento": "Mantenimiento",
    "repuestos": "Repuestos",
    "insumos": "Insumos",
    "consulta": "Consulta",
    "emergencia": "Emergencia",
    "otro": "Otro",
}
PRIORITIES = ("low", "medium", "high", "urgent")
STATUSES = ("open", "in_progress", "waiting", "resolved", "closed")
TICKET_FIELDS = {
    "plant_id": "int",
    "subject": "text",
    "description": "text",
    "category": "text",
    "priority": "text",
    "status": "text",
    "requester_name": "text",
    "requester_email": "text",
    "requester_phone": "text",
    "assigned_to": "text",
    "resolution_notes": "text",
}

TICKET_SELECT = """
    SELECT t.*, p.name AS plant_name
    FROM tickets t LEFT JOIN plants p ON p.id = t.plant_id
"""


def _validate(data: Dict[str, Any]) -> None:
    check_choice(data.get("category"), CATEGORY_LABELS, "category")
    check_choice(data.get("priority"), PRIORITIES, "priority")
    check_choice(data.get("status"), STATUSES, "status")


def next_ticket_number(cur, year: Optional[int] = None) -> str:
    """TKT-{year}-{n:05d}, n counting the tickets created this year."""
    year = year or date.today().year
    count = cur.execute(
        "SELECT COUNT(*) AS n FROM tickets WHERE substr(created_at,1,4) = ?", (str(year),)
    ).fetchone()["n"]
    n = count + 1
    # a deleted ticket frees a count but not its number
    while cur.execute("SELECT 1 FROM tickets WHERE ticket_number=?", (f"TKT-{year}-{n:05d}",)).fetchone():
        n += 1
    return f"TKT-{year}-{n:05d}"


def _get_ticket(cur, ticket_id: int) -> Dict[str, Any]:
    row = cur.execute(TICKET_SELECT + " WHERE t.id=?", (ticket_id,)).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Ticket no encontrado")
    return dict(row)


def _mail_ticket(cur, ticket: Dict[str, Any], recipients) -> bool:
    sent = email_service.send_email(recipients, "ticket_new", ticket)
    if sent:
        cur.execute(
            "UPDATE tickets SET sent_via_email=1, email_sent_at=? WHERE id=?",
            (now_iso(), ticket["id"]),
        )
    return sent


@router.get("")
def list_tickets(
    plant_id: Optional[int] = None,
    status: Optional[str] = None,
    category: Optional[str] = None,
    priority: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    search: Optional[str] = None,
    current_user: Dict[str, Any] = Depends(require_user),
):
    q = TICKET_SELECT + " WHERE 1=1"
    params: Dict[str, Any] = {}
    if plant_id:
        q += " AND t.plant_id = :pid"
        params["pid"] = plant_id
    if status:
        q += " AND t.status = :status"
        params["status"] = status
    if category:
        q += " AND t.category = :cat"
        params["cat"] = category
    if priority:
        q += " AND t.priority = :prio"
        params["prio"] = priority
    if date_from:
        q += " AND substr(t.created_at,1,10) >= :dfrom"
        params["dfrom"] = date_from[:10]
    if date_to:
        q += " AND substr(t.created_at,1,10) <= :dto"
        params["dto"] = date_to[:10]
    if search:
        q += " AND (t.subject LIKE :kw OR t.description LIKE :kw OR t.ticket_number LIKE :kw)"
        params["kw"] = f"%{search}%"
    q += " ORDER BY t.created_at DESC, t.id DESC"
    with connect() as con:
        return rows_to_dicts(con.execute(q, params).fetchall())


@router.get("/stats")
def ticket_stats(plant_id: Optional[int] = None, current_user: Dict[str, Any] = Depends(require_user)):
    where = " WHERE plant_id = ?" if plant_id else ""
    params = (plant_id,) if plant_id else ()
    with connect() as con:
        row = con.execute(
            f"""
            SELECT COUNT(*) AS total,
                SUM(CASE WHEN status='open' THEN 1 ELSE 0 END) AS open,
                SUM(CASE WHEN status='in_progress' THEN 1 ELSE 0 END) AS in_progress,
                SUM(CASE WHEN status='waiting' THEN 1 ELSE 0 END) AS waiting,
                SUM(CASE WHEN status='resolved' THEN 1 ELSE 0 END) AS resolved,
                SUM(CASE WHEN status='closed' THEN 1 ELSE 0 END) AS closed,
                SUM(CASE WHEN priority='urgent' THEN 1 ELSE 0 END) AS urgent,
                SUM(CASE WHEN priority='high' THEN 1 ELSE 0 END) AS high,
                SUM(sent_via_email) AS sent_email,
                SUM(sent_via_whatsapp) AS sent_whatsapp
            FROM tickets{where}
            """,
            params,
        ).fetchone()
    return {k: (row[k] or 0) for k in row.keys()}


@router.get("/{ticket_id}")
def get_ticket(ticket_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        cur = con.cursor()
        ticket = _get_ticket(cur, ticket_id)
        ticket["comments"] = rows_to_dicts(
            cur.execute("SELECT * FROM ticket_comments WHERE ticket_id=? ORDER BY created_at, id", (ticket_id,)).fetchall()
        )
        return ticket


@router.post("", status_code=201)
@limiter.limit(settings.write_rate_limit)
def create_ticket(request: Request, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_user)):
    data = normalize_payload(payload, TICKET_FIELDS)
    for field in ("plant_id", "subject", "description", "category", "requester_name"):
        if not data.get(field):
            raise HTTPException(status_code=400, detail=f"{field} es requerido")
    data.setdefault("priority", "medium")
    data.pop("status", None)
    data.pop("resolution_notes", None)
    _validate(data)
    send_mail = to_flag(payload.get("send_email")) == 1
    send_whatsapp = to_flag(payload.get("send_whatsapp")) == 1

    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "plants", data["plant_id"], "Planta no encontrada")
        data["ticket_number"] = next_ticket_number(cur)
        data["created_by"] = current_user["id"]
        ticket_id = insert_row(cur, "tickets", data)
        log_ledger(cur, "tickets", "CREATE", ticket_id, {"ticket_number": data["ticket_number"]}, current_user)
        if send_whatsapp:
            cur.execute(
                "UPDATE tickets SET sent_via_whatsapp=1, whatsapp_sent_at=? WHERE id=?", (now_iso(), ticket_id)
            )
        con.commit()
        ticket = _get_ticket(cur, ticket_id)
        recipients = settings.split_emails(settings.ticket_notification_emails)
        if send_mail and recipients and _mail_ticket(cur, ticket, recipients):
            con.commit()
            ticket = _get_ticket(cur, ticket_id)
        return ticket


@router.patch("/{ticket_id}")
@limiter.limit(settings.write_rate_limit)
def update_ticket(request: Request, ticket_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_user)):
    update = normalize_payload(payload, TICKET_FIELDS)
    update.pop("plant_id", None)
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    _validate(update)
    with connect() as con:
        cur = con.cursor()
        before = fetch_or_404(cur, "tickets", ticket_id, "Ticket no encontrado")
        if update.get("status") == "resolved" and before["status"] != "resolved":
            update["resolved_at"] = now_iso()
        update_row(cur, "tickets", ticket_id, update)
        after = fetch_or_404(cur, "tickets", ticket_id, "Ticket no encontrado")
        log_ledger(cur, "tickets", "UPDATE", ticket_id, {"diff": diff_rows(before, after)}, current_user)
        con.commit()
        return _get_ticket(cur, ticket_id)


@router.get("/{ticket_id}/comments")
def list_comments(ticket_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "tickets", ticket_id, "Ticket no encontrado")
        rows = cur.execute(
            "SELECT * FROM ticket_comments WHERE ticket_id=? ORDER BY created_at, id", (ticket_id,)
        ).fetchall()
        return rows_to_dicts(rows)


@router.post("/{ticket_id}/comments", status_code=201)
def add_comment(ticket_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_user)):
    comment = (payload.get("comment") or "").strip()
    if not comment:
        raise HTTPException(status_code=400, detail="El comentario es requerido")
    values = {
        "ticket_id": ticket_id,
        "author_name": current_user.get("name") or "Usuario",
        "author_email": current_user.get("email"),
        "comment": comment,
        "is_internal": to_flag(payload.get("is_internal", False)) or 0,
    }
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "tickets", ticket_id, "Ticket no encontrado")
        comment_id = insert_row(cur, "ticket_comments", values)
        cur.execute("UPDATE tickets SET updated_at=datetime('now') WHERE id=?", (ticket_id,))
        con.commit()
        return fetch_or_404(cur, "ticket_comments", comment_id, "Comentario no encontrado")


@router.post("/{ticket_id}/send-email")
def send_ticket_email(ticket_id: int, payload: Optional[Dict[str, Any]] = None, current_user: Dict[str, Any] = Depends(require_user)):
    raw = (payload or {}).get("recipients") or settings.ticket_notification_emails
    recipients = raw if isinstance(raw, list) else settings.split_emails(raw)
    if not recipients:
        raise HTTPException(status_code=400, detail="No hay destinatarios configurados")
    with connect() as con:
        cur = con.cursor()
        ticket = _get_ticket(cur, ticket_id)
        if not _mail_ticket(cur, ticket, recipients):
            raise HTTPException(status_code=502, detail="No se pudo enviar el email")
        con.commit()
    return {"message": "Email enviado", "recipients": recipients}


def whatsapp_message(ticket: Dict[str, Any]) -> str:
    lines = [
        "*TICKET DE SOPORTE*",
        f"*Número:* {ticket['ticket_number']}",
        f"*Planta:* {ticket.get('plant_name') or 'N/A'}",
        f"*Categoría:* {CATEGORY_LABELS.get(ticket['category'], ticket['category'])}",
        f"*Prioridad:* {PRIORITY_LABELS.get(ticket['priority'], ticket['priority'])}",
        "",
        "*Asunto:*",
        ticket["subject"],
        "",
        "*Descripción:*",
        ticket["description"],
        "",
        f"*Solicitante:* {ticket['requester_name']}",
    ]
    if ticket.get("requester_email"):
        lines.append(ticket["requester_email"])
    if ticket.get("requester_phone"):
        lines.append(ticket["requester_phone"])
    lines += ["", f"*Fecha:* {ticket['created_at'][:10]}", "Sistema PTAR Santa Priscila"]
    return "\n".join(lines)


@router.get("/{ticket_id}/whatsapp-link")
def whatsapp_link(ticket_id: int, phone: Optional[str] = None, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        cur = con.cursor()
        ticket = _get_ticket(cur, ticket_id)
        message = whatsapp_message(ticket)
        digits = "".join(ch for ch in (phone or settings.whatsapp_support_number or "") if ch.isdigit())
        cur.execute(
            "UPDATE tickets SET sent_via_whatsapp=1, whatsapp_sent_at=? WHERE id=?", (now_iso(), ticket_id)
        )
        con.commit()
    return {
        "link": f"https://wa.me/{digits}?text={quote(message, safe='')}",
        "message": message,
        "phone": digits,
    }


@router.delete("/{ticket_id}")
def delete_ticket(ticket_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        ticket = fetch_or_404(cur, "tickets", ticket_id, "Ticket no encontrado")
        cur.execute("DELETE FROM tickets WHERE id=?", (ticket_id,))
        log_ledger(cur, "tickets", "DELETE", ticket_id, {"ticket_number": ticket["ticket_number"]}, current_user)
        con.commit()
    return {"id": ticket_id, "deleted": True}
