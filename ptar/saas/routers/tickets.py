from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from ...db import rows_to_dicts
from ...routers.tickets import CATEGORY_LABELS, PRIORITIES, STATUSES
from ...utils import check_choice, diff_rows, insert_row, normalize_payload, now_iso, to_flag, update_row
from .. import webhooks
from ..security import MANAGER_ROLES, WRITE_ROLES, fetch_owned, record_audit, require_access, saas_connect

router = APIRouter(prefix="/tickets", tags=["tickets"])

TICKET_FIELDS = {
    "plant_id": "int",
    "subject": "text",
    "description": "text",
    "category": "text",
    "priority": "text",
    "status": "text",
    "requester_name": "text",
    "requester_email": "text",
    "assigned_to": "text",
    "resolution_notes": "text",
}

read = require_access("tickets:read")
write = require_access("tickets:write", *WRITE_ROLES)


def next_ticket_number(cur, org_id: int, year: Optional[int] = None) -> str:
    """TKT-{year}-{n:05d} numbered per organization."""
    year = year or date.today().year
    n = cur.execute(
        "SELECT COUNT(*) AS n FROM tickets WHERE organization_id=? AND substr(created_at,1,4)=?",
        (org_id, str(year)),
    ).fetchone()["n"] + 1
    while cur.execute(
        "SELECT 1 FROM tickets WHERE organization_id=? AND ticket_number=?", (org_id, f"TKT-{year}-{n:05d}")
    ).fetchone():
        n += 1
    return f"TKT-{year}-{n:05d}"


def _validate(data: Dict[str, Any]) -> None:
    check_choice(data.get("category"), CATEGORY_LABELS, "category")
    check_choice(data.get("priority"), PRIORITIES, "priority")
    check_choice(data.get("status"), STATUSES, "status")


@router.get("")
def list_tickets(
    plant_id: Optional[int] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    search: Optional[str] = None,
    ctx: Dict[str, Any] = Depends(read),
):
    q = """
        SELECT t.*, p.name AS plant_name
        FROM tickets t LEFT JOIN plants p ON p.id = t.plant_id
        WHERE t.organization_id = :org
    """
    params: Dict[str, Any] = {"org": ctx["org"]["id"]}
    if plant_id is not None:
        q += " AND t.plant_id = :pid"
        params["pid"] = plant_id
    if status:
        q += " AND t.status = :status"
        params["status"] = status
    if priority:
        q += " AND t.priority = :prio"
        params["prio"] = priority
    if search:
        q += " AND (t.subject LIKE :kw OR t.description LIKE :kw OR t.ticket_number LIKE :kw)"
        params["kw"] = f"%{search}%"
    q += " ORDER BY t.created_at DESC, t.id DESC"
    with saas_connect() as con:
        return rows_to_dicts(con.execute(q, params).fetchall())


@router.get("/stats")
def ticket_stats(ctx: Dict[str, Any] = Depends(read)):
    with saas_connect() as con:
        row = con.execute(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN status='open' THEN 1 ELSE 0 END), 0) AS open,
                   COALESCE(SUM(CASE WHEN status='in_progress' THEN 1 ELSE 0 END), 0) AS in_progress,
                   COALESCE(SUM(CASE WHEN status='resolved' THEN 1 ELSE 0 END), 0) AS resolved,
                   COALESCE(SUM(CASE WHEN priority='urgent' AND status NOT IN ('resolved','closed') THEN 1 ELSE 0 END), 0) AS urgent
            FROM tickets WHERE organization_id=?
            """,
            (ctx["org"]["id"],),
        ).fetchone()
    return dict(row)


@router.get("/{ticket_id}")
def get_ticket(ticket_id: int, ctx: Dict[str, Any] = Depends(read)):
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        ticket = fetch_owned(cur, "tickets", org_id, ticket_id, "Ticket no encontrado")
        ticket["comments"] = rows_to_dicts(cur.execute(
            "SELECT * FROM ticket_comments WHERE ticket_id=? AND organization_id=? ORDER BY created_at, id",
            (ticket_id, org_id),
        ).fetchall())
    return ticket


@router.post("", status_code=201)
def create_ticket(
    request: Request,
    payload: Dict[str, Any],
    background_tasks: BackgroundTasks,
    ctx: Dict[str, Any] = Depends(write),
):
    data = normalize_payload(payload, TICKET_FIELDS)
    if not data.get("subject") or not data.get("description"):
        raise HTTPException(status_code=400, detail="subject y description son requeridos")
    data.pop("status", None)
    _validate(data)
    org_id = ctx["org"]["id"]
    user = ctx["user"] or {}
    data.setdefault("requester_name", user.get("name") or (ctx["api_key"] or {}).get("name"))
    data.setdefault("requester_email", user.get("email"))
    with saas_connect() as con:
        cur = con.cursor()
        if data.get("plant_id"):
            fetch_owned(cur, "plants", org_id, data["plant_id"], "Planta no encontrada")
        data["ticket_number"] = next_ticket_number(cur, org_id)
        ticket_id = insert_row(cur, "tickets", {**data, "organization_id": org_id, "created_by": user.get("id")})
        record_audit(cur, ctx, "ticket.created", "ticket", ticket_id,
                     new_value={"ticket_number": data["ticket_number"], "subject": data["subject"]}, request=request)
        con.commit()
        ticket = fetch_owned(cur, "tickets", org_id, ticket_id, "Ticket no encontrado")
    webhooks.dispatch(background_tasks, org_id, "ticket.created", ticket)
    return ticket


@router.patch("/{ticket_id}")
def update_ticket(
    request: Request,
    ticket_id: int,
    payload: Dict[str, Any],
    background_tasks: BackgroundTasks,
    ctx: Dict[str, Any] = Depends(write),
):
    update = normalize_payload(payload, TICKET_FIELDS)
    update.pop("plant_id", None)
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    _validate(update)
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        before = fetch_owned(cur, "tickets", org_id, ticket_id, "Ticket no encontrado")
        if update.get("status") == "resolved" and before["status"] != "resolved":
            update["resolved_at"] = now_iso()
        update_row(cur, "tickets", ticket_id, update)
        after = fetch_owned(cur, "tickets", org_id, ticket_id, "Ticket no encontrado")
        diff = diff_rows(before, after)
        diff.pop("updated_at", None)
        record_audit(cur, ctx, "ticket.updated", "ticket", ticket_id,
                     {k: v["from"] for k, v in diff.items()}, {k: v["to"] for k, v in diff.items()}, request)
        con.commit()
    webhooks.dispatch(background_tasks, org_id, "ticket.updated", after)
    if after["status"] == "resolved" and before["status"] != "resolved":
        webhooks.dispatch(background_tasks, org_id, "ticket.resolved", after)
    return after


@router.post("/{ticket_id}/comments", status_code=201)
def add_comment(ticket_id: int, payload: Dict[str, Any], ctx: Dict[str, Any] = Depends(write)):
    comment = (payload.get("comment") or "").strip()
    if not comment:
        raise HTTPException(status_code=400, detail="El comentario es requerido")
    org_id = ctx["org"]["id"]
    user = ctx["user"] or {}
    values = {
        "organization_id": org_id,
        "ticket_id": ticket_id,
        "author_name": user.get("name") or (ctx["api_key"] or {}).get("name") or "API",
        "author_email": user.get("email"),
        "comment": comment,
        "is_internal": to_flag(payload.get("is_internal", False)) or 0,
    }
    with saas_connect() as con:
        cur = con.cursor()
        fetch_owned(cur, "tickets", org_id, ticket_id, "Ticket no encontrado")
        comment_id = insert_row(cur, "ticket_comments", values)
        cur.execute("UPDATE tickets SET updated_at=datetime('now') WHERE id=?", (ticket_id,))
        con.commit()
        return fetch_owned(cur, "ticket_comments", org_id, comment_id, "Comentario no encontrado")


@router.delete("/{ticket_id}")
def delete_ticket(
    request: Request,
    ticket_id: int,
    ctx: Dict[str, Any] = Depends(require_access("tickets:write", *MANAGER_ROLES)),
):
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        ticket = fetch_owned(cur, "tickets", org_id, ticket_id, "Ticket no encontrado")
        cur.execute("DELETE FROM tickets WHERE id=? AND organization_id=?", (ticket_id, org_id))
        record_audit(cur, ctx, "ticket.deleted", "ticket", ticket_id,
                     old_value={"ticket_number": ticket["ticket_number"]}, request=request)
        con.commit()
    return {"id": ticket_id, "deleted": True}
