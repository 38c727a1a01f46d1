import logging
import sqlite3
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from .. import email_service
from ..auth import ensure_plant_access, is_admin, require_role, require_user
from ..config import settings
from ..db import connect, rows_to_dicts
from ..limiter import limiter
from ..utils import (
    check_choice,
    diff_rows,
    fetch_or_404,
    insert_row,
    integrity_error,
    log_ledger,
    normalize_payload,
    now_iso,
    update_row,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/maintenance", tags=["emergencies"])

SEVERITIES = ("low", "medium", "high")
EMERGENCY_FIELDS = {
    "plant_id": "int",
    "reason": "text",
    "solved": "flag",
    "resolve_time_hours": "float",
    "reported_at": "text",
    "severity": "text",
    "observations": "text",
    "operator_name": "text",
    "location_description": "text",
}
SORTABLE = {"reported_at", "severity", "plant_id", "solved"}

TASK_PRIORITIES = ("low", "medium", "high", "urgent")
TASK_STATUSES = ("pending", "in_progress", "completed", "cancelled")
EMERGENCY_TASK_FIELDS = {
    "title": "text",
    "description": "text",
    "assigned_to_email": "text",
    "assigned_to_name": "text",
    "priority": "text",
    "status": "text",
    "due_date": "date",
    "reminder_date": "date",
    "notes": "text",
}

EMERGENCY_SELECT = """
    SELECT me.*, p.name AS plant_name
    FROM maintenance_emergencies me JOIN plants p ON p.id = me.plant_id
"""

PRIORITY_ORDER = "CASE et.priority WHEN 'urgent' THEN 0 WHEN 'high' THEN 1 WHEN 'medium' THEN 2 ELSE 3 END"


def validate_emergency(data: Dict[str, Any]) -> None:
    check_choice(data.get("severity"), SEVERITIES, "severity")
    hours = data.get("resolve_time_hours")
    if hours is not None and hours < 0:
        raise HTTPException(status_code=400, detail="resolve_time_hours no puede ser negativo")


def _get_emergency(cur, emergency_id: int) -> Dict[str, Any]:
    row = cur.execute(EMERGENCY_SELECT + " WHERE me.id=?", (emergency_id,)).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Emergencia no encontrada")
    return dict(row)


def _notify_emergency(cur, emergency: Dict[str, Any]) -> bool:
    recipients = settings.split_emails(settings.emergency_email_recipients)
    if not recipients:
        logger.warning("Emergency %s reported but no recipients configured", emergency["id"])
        return False
    ok = email_service.send_email(recipients, "emergency_alert", emergency)
    if ok:
        cur.execute("UPDATE maintenance_emergencies SET email_sent=1 WHERE id=?", (emergency["id"],))
    return ok


@router.get("/emergencies")
def list_emergencies(
    response: Response,
    plant_id: Optional[int] = None,
    solved: Optional[bool] = None,
    severity: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    sort_by: str = "reported_at",
    order: str = "desc",
    current_user: Dict[str, Any] = Depends(require_user),
):
    response.headers["Cache-Control"] = "no-store"
    q = EMERGENCY_SELECT + " WHERE 1=1"
    params: Dict[str, Any] = {}
    if not is_admin(current_user) and current_user.get("plant_id"):
        plant_id = current_user["plant_id"]
    if plant_id:
        q += " AND me.plant_id = :pid"
        params["pid"] = plant_id
    if solved is not None:
        q += " AND me.solved = :solved"
        params["solved"] = int(solved)
    if severity:
        q += " AND me.severity = :sev"
        params["sev"] = severity
    if date_from:
        q += " AND date(me.reported_at) >= date(:dfrom)"
        params["dfrom"] = date_from
    if date_to:
        q += " AND date(me.reported_at) <= date(:dto)"
        params["dto"] = date_to
    column = sort_by if sort_by in SORTABLE else "reported_at"
    direction = "ASC" if order.lower() == "asc" else "DESC"
    q += f" ORDER BY me.{column} {direction}, me.id {direction}"
    with connect() as con:
        return rows_to_dicts(con.execute(q, params).fetchall())


@router.get("/emergencies/unacknowledged")
def unacknowledged(current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        rows = con.execute(
            EMERGENCY_SELECT + " WHERE me.solved = 0 AND me.acknowledged_at IS NULL ORDER BY me.reported_at DESC"
        ).fetchall()
        return rows_to_dicts(rows)


@router.post("/emergencies/report", status_code=201)
@limiter.limit(settings.write_rate_limit)
def report_emergency(request: Request, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_user)):
    """Field report from an operator; notifies the emergency recipients by email."""
    data = normalize_payload(payload, EMERGENCY_FIELDS)
    if not data.get("plant_id") or not data.get("reason"):
        raise HTTPException(status_code=400, detail="plant_id y reason son requeridos")
    data.setdefault("severity", "medium")
    check_choice(data["severity"], SEVERITIES, "severity")
    ensure_plant_access(current_user, data["plant_id"])
    values = {
        "plant_id": data["plant_id"],
        "reason": data["reason"],
        "severity": data["severity"],
        "observations": data.get("observations"),
        "location_description": data.get("location_description"),
        "operator_id": current_user["id"],
        "operator_name": data.get("operator_name") or current_user["name"],
        "reported_at": now_iso(),
        "source": "mobile",
    }
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "plants", data["plant_id"], "Planta no encontrada")
        emergency_id = insert_row(cur, "maintenance_emergencies", values)
        log_ledger(cur, "maintenance_emergencies", "REPORT", emergency_id, {"values": values}, current_user)
        con.commit()
        emergency = _get_emergency(cur, emergency_id)
        emailed = _notify_emergency(cur, emergency)
        con.commit()
        emergency["email_sent"] = int(emailed)
    return {"message": "Emergencia reportada exitosamente", "emergency": emergency, "email_sent": emailed}


@router.post("/emergencies", status_code=201)
def create_emergency(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    data = normalize_payload(payload, EMERGENCY_FIELDS)
    if not data.get("plant_id") or not data.get("reason"):
        raise HTTPException(status_code=400, detail="plant_id y reason son requeridos")
    data.setdefault("severity", "medium")
    validate_emergency(data)
    data.setdefault("reported_at", now_iso())
    if data.get("solved"):
        data["resolved_at"] = now_iso()
        data["resolved_by"] = current_user["name"]
    data["source"] = "admin"
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "plants", data["plant_id"], "Planta no encontrada")
        try:
            emergency_id = insert_row(cur, "maintenance_emergencies", data)
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, "Emergencia duplicada")
        log_ledger(cur, "maintenance_emergencies", "CREATE", emergency_id, {"values": data}, current_user)
        con.commit()
        return _get_emergency(cur, emergency_id)


@router.get("/emergencies/{emergency_id}")
def get_emergency(emergency_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        emergency = _get_emergency(con.cursor(), emergency_id)
    ensure_plant_access(current_user, emergency["plant_id"])
    return emergency


@router.patch("/emergencies/{emergency_id}")
def update_emergency(emergency_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    update = normalize_payload(payload, EMERGENCY_FIELDS)
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    validate_emergency(update)
    with connect() as con:
        cur = con.cursor()
        before = fetch_or_404(cur, "maintenance_emergencies", emergency_id, "Emergencia no encontrada")
        if update.get("solved") == 1 and not before["resolved_at"]:
            update["resolved_at"] = now_iso()
            update["resolved_by"] = current_user["name"]
        elif update.get("solved") == 0:
            update["resolved_at"] = None
            update["resolved_by"] = None
        try:
            update_row(cur, "maintenance_emergencies", emergency_id, update)
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, "Emergencia duplicada")
        after = fetch_or_404(cur, "maintenance_emergencies", emergency_id, "Emergencia no encontrada")
        log_ledger(cur, "maintenance_emergencies", "UPDATE", emergency_id, {"diff": diff_rows(before, after)}, current_user)
        con.commit()
        return _get_emergency(cur, emergency_id)


@router.post("/emergencies/{emergency_id}/acknowledge")
def acknowledge_emergency(emergency_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "maintenance_emergencies", emergency_id, "Emergencia no encontrada")
        cur.execute(
            "UPDATE maintenance_emergencies SET acknowledged_at=?, acknowledged_by=?, updated_at=datetime('now') WHERE id=?",
            (now_iso(), current_user["name"], emergency_id),
        )
        log_ledger(cur, "maintenance_emergencies", "ACKNOWLEDGE", emergency_id, {}, current_user)
        con.commit()
        return _get_emergency(cur, emergency_id)


@router.delete("/emergencies/{emergency_id}")
def delete_emergency(emergency_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        e = fetch_or_404(cur, "maintenance_emergencies", emergency_id, "Emergencia no encontrada")
        cur.execute("DELETE FROM maintenance_emergencies WHERE id=?", (emergency_id,))
        log_ledger(cur, "maintenance_emergencies", "DELETE", emergency_id, {"reason": e["reason"]}, current_user)
        con.commit()
    return {"id": emergency_id, "deleted": True}


# ---------------------- Emergency tasks ----------------------


def _task_with_context(cur, task_id: int) -> Dict[str, Any]:
    row = cur.execute(
        """
        SELECT et.*, me.reason AS emergency_reason, me.plant_id, p.name AS plant_name
        FROM emergency_tasks et
        JOIN maintenance_emergencies me ON me.id = et.emergency_id
        JOIN plants p ON p.id = me.plant_id
        WHERE et.id=?
        """,
        (task_id,),
    ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Tarea no encontrada")
    return dict(row)


def _send_assignment(cur, task: Dict[str, Any]) -> bool:
    ok = email_service.send_email([task["assigned_to_email"]], "task_assignment", task)
    if ok:
        cur.execute("UPDATE emergency_tasks SET email_sent_at=datetime('now') WHERE id=?", (task["id"],))
    return ok


@router.get("/emergencies/{emergency_id}/tasks")
def list_emergency_tasks(emergency_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        cur = con.cursor()
        _get_emergency(cur, emergency_id)
        rows = cur.execute(
            f"""
            SELECT et.*,
                   (SELECT COUNT(*) FROM emergency_task_comments c WHERE c.task_id = et.id) AS comment_count
            FROM emergency_tasks et
            WHERE et.emergency_id = ?
            ORDER BY {PRIORITY_ORDER}, et.due_date IS NULL, et.due_date ASC, et.created_at DESC
            """,
            (emergency_id,),
        ).fetchall()
        return rows_to_dicts(rows)


@router.post("/emergencies/{emergency_id}/tasks", status_code=201)
def create_emergency_task(emergency_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    data = normalize_payload(payload, EMERGENCY_TASK_FIELDS)
    if not data.get("title"):
        raise HTTPException(status_code=400, detail="El título es requerido")
    data.setdefault("priority", "medium")
    data["status"] = "pending"
    check_choice(data["priority"], TASK_PRIORITIES, "priority")
    with connect() as con:
        cur = con.cursor()
        _get_emergency(cur, emergency_id)
        task_id = insert_row(cur, "emergency_tasks", {**data, "emergency_id": emergency_id, "created_by": current_user["name"]})
        log_ledger(cur, "emergency_tasks", "CREATE", task_id, {"values": data}, current_user)
        con.commit()
        task = _task_with_context(cur, task_id)
        if task.get("assigned_to_email"):
            _send_assignment(cur, task)
            con.commit()
        return _task_with_context(cur, task_id)


@router.get("/emergency-tasks/pending")
def pending_emergency_tasks(current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        rows = con.execute(
            f"""
            SELECT et.*, me.reason AS emergency_reason, p.name AS plant_name
            FROM emergency_tasks et
            JOIN maintenance_emergencies me ON me.id = et.emergency_id
            JOIN plants p ON p.id = me.plant_id
            WHERE et.status IN ('pending','in_progress')
            ORDER BY {PRIORITY_ORDER}, et.due_date IS NULL, et.due_date ASC
            """
        ).fetchall()
        return rows_to_dicts(rows)


@router.patch("/emergency-tasks/{task_id}")
def update_emergency_task(task_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    update = normalize_payload(payload, EMERGENCY_TASK_FIELDS)
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    check_choice(update.get("priority"), TASK_PRIORITIES, "priority")
    check_choice(update.get("status"), TASK_STATUSES, "status")
    with connect() as con:
        cur = con.cursor()
        before = fetch_or_404(cur, "emergency_tasks", task_id, "Tarea no encontrada")
        if update.get("status") == "in_progress" and not before["started_at"]:
            update["started_at"] = now_iso()
        if update.get("status") == "completed" and before["status"] != "completed":
            update["completed_at"] = now_iso()
            update["completed_by"] = current_user["name"]
        if "reminder_date" in update:
            update["reminder_sent"] = 0
        try:
            update_row(cur, "emergency_tasks", task_id, update)
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, "Tarea duplicada")
        after = fetch_or_404(cur, "emergency_tasks", task_id, "Tarea no encontrada")
        log_ledger(cur, "emergency_tasks", "UPDATE", task_id, {"diff": diff_rows(before, after)}, current_user)
        con.commit()
        task = _task_with_context(cur, task_id)
        if update.get("assigned_to_email") and update["assigned_to_email"] != before["assigned_to_email"]:
            _send_assignment(cur, task)
            con.commit()
        return _task_with_context(cur, task_id)


@router.delete("/emergency-tasks/{task_id}")
def delete_emergency_task(task_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "emergency_tasks", task_id, "Tarea no encontrada")
        cur.execute("DELETE FROM emergency_tasks WHERE id=?", (task_id,))
        log_ledger(cur, "emergency_tasks", "DELETE", task_id, {}, current_user)
        con.commit()
    return {"id": task_id, "deleted": True}


@router.get("/emergency-tasks/{task_id}/comments")
def list_task_comments(task_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "emergency_tasks", task_id, "Tarea no encontrada")
        rows = cur.execute(
            "SELECT * FROM emergency_task_comments WHERE task_id=? ORDER BY created_at DESC, id DESC",
            (task_id,),
        ).fetchall()
        return rows_to_dicts(rows)


@router.post("/emergency-tasks/{task_id}/comments", status_code=201)
def add_task_comment(task_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_user)):
    comment = (payload.get("comment") or "").strip()
    if not comment:
        raise HTTPException(status_code=400, detail="El comentario es requerido")
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "emergency_tasks", task_id, "Tarea no encontrada")
        comment_id = insert_row(cur, "emergency_task_comments", {
            "task_id": task_id,
            "author_name": current_user["name"],
            "author_email": current_user["email"],
            "comment": comment,
        })
        cur.execute("UPDATE emergency_tasks SET updated_at=datetime('now') WHERE id=?", (task_id,))
        con.commit()
        return fetch_or_404(cur, "emergency_task_comments", comment_id, "Comentario no encontrado")


@router.post("/emergency-tasks/{task_id}/send-reminder")
def send_task_reminder(task_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        task = _task_with_context(cur, task_id)
        if not task.get("assigned_to_email"):
            raise HTTPException(status_code=400, detail="La tarea no tiene asignado un email")
        is_overdue = bool(task["due_date"] and task["due_date"][:10] < now_iso()[:10])
        ok = email_service.send_email([task["assigned_to_email"]], "task_reminder", {**task, "is_overdue": is_overdue})
        if not ok:
            raise HTTPException(status_code=502, detail="No se pudo enviar el recordatorio")
        cur.execute("UPDATE emergency_tasks SET reminder_sent=1 WHERE id=?", (task_id,))
        con.commit()
    return {"message": "Recordatorio enviado"}
