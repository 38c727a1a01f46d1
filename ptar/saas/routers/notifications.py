from typing import Any, Dict, Optional, Sequence

from fastapi import APIRouter, Depends, HTTPException, Request

from ...db import rows_to_dicts
from ...utils import check_choice, insert_row, normalize_payload, now_iso
from ..security import MANAGER_ROLES, fetch_owned, record_audit, require_member, saas_connect

router = APIRouter(prefix="/notifications", tags=["notifications"])

TYPES = ("info", "success", "warning", "critical")
NOTIFICATION_FIELDS = {"user_id": "int", "title": "text", "message": "text", "type": "text", "link": "text"}
ALERT_ROLES = ("owner", "admin", "supervisor")

member = require_member()


def notify_roles(
    cur,
    org_id: int,
    title: str,
    message: str,
    kind: str = "info",
    link: Optional[str] = None,
    roles: Sequence[str] = ALERT_ROLES,
) -> int:
    """In-app notice for every active member of the organization holding one of `roles`."""
    marks = ",".join("?" for _ in roles)
    users = cur.execute(
        f"SELECT id FROM users WHERE organization_id=? AND status='active' AND role IN ({marks})",
        (org_id, *roles),
    ).fetchall()
    for u in users:
        insert_row(cur, "notifications", {
            "organization_id": org_id,
            "user_id": u["id"],
            "title": title,
            "message": message,
            "type": kind,
            "link": link,
        })
    return len(users)


def _own(cur, ctx: Dict[str, Any], notification_id: int) -> Dict[str, Any]:
    row = fetch_owned(cur, "notifications", ctx["org"]["id"], notification_id, "Notificación no encontrada")
    if row["user_id"] != ctx["user"]["id"]:
        raise HTTPException(status_code=404, detail="Notificación no encontrada")
    return row


def _unread(cur, ctx: Dict[str, Any]) -> int:
    return cur.execute(
        "SELECT COUNT(*) AS n FROM notifications WHERE user_id=? AND organization_id=? AND read_at IS NULL",
        (ctx["user"]["id"], ctx["org"]["id"]),
    ).fetchone()["n"]


@router.get("")
def list_notifications(unread: bool = False, limit: int = 50, ctx: Dict[str, Any] = Depends(member)):
    q = "SELECT * FROM notifications WHERE user_id=? AND organization_id=?"
    if unread:
        q += " AND read_at IS NULL"
    q += " ORDER BY created_at DESC, id DESC LIMIT ?"
    with saas_connect() as con:
        cur = con.cursor()
        rows = rows_to_dicts(cur.execute(q, (ctx["user"]["id"], ctx["org"]["id"], max(1, min(limit, 200)))).fetchall())
        return {"data": rows, "unread_count": _unread(cur, ctx)}


@router.get("/unread-count")
def unread_count(ctx: Dict[str, Any] = Depends(member)):
    with saas_connect() as con:
        return {"count": _unread(con.cursor(), ctx)}


@router.put("/read-all")
def mark_all_read(ctx: Dict[str, Any] = Depends(member)):
    with saas_connect() as con:
        cur = con.cursor()
        cur.execute(
            "UPDATE notifications SET read_at=? WHERE user_id=? AND organization_id=? AND read_at IS NULL",
            (now_iso(), ctx["user"]["id"], ctx["org"]["id"]),
        )
        con.commit()
        return {"message": "Todas las notificaciones marcadas como leídas", "updated": cur.rowcount}


@router.put("/{notification_id}/read")
def mark_read(notification_id: int, ctx: Dict[str, Any] = Depends(member)):
    with saas_connect() as con:
        cur = con.cursor()
        row = _own(cur, ctx, notification_id)
        if not row["read_at"]:
            cur.execute("UPDATE notifications SET read_at=? WHERE id=?", (now_iso(), notification_id))
            con.commit()
        return _own(cur, ctx, notification_id)


@router.delete("/{notification_id}")
def delete_notification(notification_id: int, ctx: Dict[str, Any] = Depends(member)):
    with saas_connect() as con:
        cur = con.cursor()
        _own(cur, ctx, notification_id)
        cur.execute("DELETE FROM notifications WHERE id=?", (notification_id,))
        con.commit()
    return {"id": notification_id, "deleted": True}


@router.post("", status_code=201)
def create_notification(
    request: Request,
    payload: Dict[str, Any],
    ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES)),
):
    data = normalize_payload(payload, NOTIFICATION_FIELDS)
    if not data.get("user_id") or not data.get("title") or not data.get("message"):
        raise HTTPException(status_code=400, detail="user_id, title y message son requeridos")
    data.setdefault("type", "info")
    check_choice(data["type"], TYPES, "type")
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        fetch_owned(cur, "users", org_id, data["user_id"], "Usuario no encontrado")
        notification_id = insert_row(cur, "notifications", {**data, "organization_id": org_id})
        record_audit(cur, ctx, "notification.created", "notification", notification_id,
                     new_value={"user_id": data["user_id"], "title": data["title"]}, request=request)
        con.commit()
        return fetch_owned(cur, "notifications", org_id, notification_id, "Notificación no encontrada")
