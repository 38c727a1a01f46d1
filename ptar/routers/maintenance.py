import logging
import sqlite3
from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException

from .. import email_service
from ..auth import ensure_plant_access, is_admin, require_role, require_user
from ..config import settings
from ..db import connect, rows_to_dicts
from ..utils import (
    add_days,
    check_choice,
    diff_rows,
    fetch_or_404,
    insert_row,
    integrity_error,
    log_ledger,
    normalize_payload,
    now_iso,
    today_iso,
    update_row,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/maintenance", tags=["maintenance"])

TASK_FIELDS = {
    "plant_id": "int",
    "task_type": "text",
    "description": "text",
    "scheduled_date": "date",
    "status": "text",
    "periodicity": "text",
    "vendor_name": "text",
    "estimated_cost": "float",
    "notes": "text",
}
ADMIN_ONLY_FIELDS = {"plant_id", "task_type", "description", "scheduled_date", "periodicity", "vendor_name", "estimated_cost"}
TASK_TYPES = ("preventive", "corrective", "general")
TASK_STATUSES = ("pending", "completed", "overdue")
PERIODICITIES = ("daily", "monthly", "quarterly", "annual")
REMINDER_LEAD_DAYS = 30

TASK_SELECT = """
    SELECT mt.*, p.name AS plant_name
    FROM maintenance_tasks mt JOIN plants p ON p.id = mt.plant_id
"""


def update_overdue_status(cur, today: Optional[str] = None) -> int:
    cur.execute(
        """
        UPDATE maintenance_tasks SET status='overdue', updated_at=datetime('now')
        WHERE status='pending' AND date(scheduled_date) < date(?) AND periodicity != 'daily'
        """,
        (today or today_iso(),),
    )
    return cur.rowcount


def _validate(data: Dict[str, Any]) -> None:
    check_choice(data.get("task_type"), TASK_TYPES, "task_type")
    check_choice(data.get("status"), TASK_STATUSES, "status")
    check_choice(data.get("periodicity"), PERIODICITIES, "periodicity")
    if data.get("estimated_cost") is not None and data["estimated_cost"] < 0:
        raise HTTPException(status_code=400, detail="estimated_cost no puede ser negativo")


def _get_task(cur, task_id: int) -> Dict[str, Any]:
    row = cur.execute(TASK_SELECT + " WHERE mt.id=?", (task_id,)).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Tarea no encontrada")
    return dict(row)


@router.get("/tasks")
def list_tasks(
    plant_id: Optional[int] = None,
    status: Optional[str] = None,
    periodicity: Optional[str] = None,
    year: Optional[int] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    current_user: Dict[str, Any] = Depends(require_user),
):
    q = TASK_SELECT + " WHERE 1=1"
    params: Dict[str, Any] = {}
    if plant_id:
        q += " AND mt.plant_id = :pid"
        params["pid"] = plant_id
    if status:
        q += " AND mt.status = :status"
        params["status"] = status
    if periodicity:
        q += " AND mt.periodicity = :per"
        params["per"] = periodicity
    if year:
        q += " AND strftime('%Y', mt.scheduled_date) = :year"
        params["year"] = str(year)
    if date_from:
        q += " AND date(mt.scheduled_date) >= date(:dfrom)"
        params["dfrom"] = date_from
    if date_to:
        q += " AND date(mt.scheduled_date) <= date(:dto)"
        params["dto"] = date_to
    q += " ORDER BY mt.scheduled_date ASC"
    with connect() as con:
        cur = con.cursor()
        if update_overdue_status(cur):
            con.commit()
        return rows_to_dicts(cur.execute(q, params).fetchall())


@router.get("/tasks/history")
def task_history(plant_id: Optional[int] = None, limit: int = 100, current_user: Dict[str, Any] = Depends(require_user)):
    q = TASK_SELECT + " WHERE mt.status = 'completed'"
    params: Dict[str, Any] = {"limit": limit}
    if plant_id:
        q += " AND mt.plant_id = :pid"
        params["pid"] = plant_id
    q += " ORDER BY mt.completed_date DESC LIMIT :limit"
    with connect() as con:
        return rows_to_dicts(con.execute(q, params).fetchall())


@router.get("/tasks/daily")
def daily_tasks(plant_id: Optional[int] = None, current_user: Dict[str, Any] = Depends(require_user)):
    q = TASK_SELECT + " WHERE mt.periodicity = 'daily'"
    params: Dict[str, Any] = {}
    if plant_id:
        q += " AND mt.plant_id = :pid"
        params["pid"] = plant_id
    q += " ORDER BY p.name, mt.description"
    with connect() as con:
        return rows_to_dicts(con.execute(q, params).fetchall())


def _pending_reminders(cur):
    return cur.execute(
        TASK_SELECT
        + """
        WHERE mt.status IN ('pending','overdue') AND mt.reminder_sent = 0
          AND mt.reminder_date IS NOT NULL AND date(mt.reminder_date) <= date(?)
        ORDER BY mt.scheduled_date
        """,
        (today_iso(),),
    ).fetchall()


@router.get("/tasks/pending-reminders")
def pending_reminders(current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        return rows_to_dicts(_pending_reminders(con.cursor()))


@router.post("/tasks", status_code=201)
def create_task(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    data = normalize_payload(payload, TASK_FIELDS)
    if not data.get("plant_id") or not data.get("description") or not data.get("scheduled_date"):
        raise HTTPException(status_code=400, detail="plant_id, description y scheduled_date son requeridos")
    data.setdefault("task_type", "general")
    data.setdefault("periodicity", "annual")
    data["status"] = "pending"
    _validate(data)
    data["reminder_date"] = add_days(data["scheduled_date"], -REMINDER_LEAD_DAYS)
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "plants", data["plant_id"], "Planta no encontrada")
        task_id = insert_row(cur, "maintenance_tasks", data)
        log_ledger(cur, "maintenance_tasks", "CREATE", task_id, {"values": data}, current_user)
        con.commit()
        return _get_task(cur, task_id)


@router.post("/tasks/generate-monthly")
def generate_yearly_tasks(payload: Optional[Dict[str, Any]] = None, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    """One general maintenance on July 1st for each plant that has no task in the year."""
    year = int((payload or {}).get("year") or date.today().year)
    scheduled = f"{year}-07-01"
    created = []
    with connect() as con:
        cur = con.cursor()
        plants = cur.execute(
            """
            SELECT p.id, p.name FROM plants p
            WHERE NOT EXISTS (
                SELECT 1 FROM maintenance_tasks mt
                WHERE mt.plant_id = p.id AND strftime('%Y', mt.scheduled_date) = ?
            )
            ORDER BY p.name
            """,
            (str(year),),
        ).fetchall()
        for p in plants:
            task_id = insert_row(cur, "maintenance_tasks", {
                "plant_id": p["id"],
                "task_type": "general",
                "description": "Mantenimiento completo",
                "scheduled_date": scheduled,
                "periodicity": "annual",
                "status": "pending",
                "reminder_date": add_days(scheduled, -REMINDER_LEAD_DAYS),
            })
            created.append({"id": task_id, "plant_id": p["id"], "plant_name": p["name"]})
        log_ledger(cur, "maintenance_tasks", "GENERATE", None, {"year": year, "created": len(created)}, current_user)
        con.commit()
    return {"year": year, "created": len(created), "tasks": created}


@router.post("/tasks/send-reminders")
def send_reminders(current_user: Dict[str, Any] = Depends(require_role("admin"))):
    recipients = settings.split_emails(settings.maintenance_reminder_emails)
    if not recipients:
        raise HTTPException(status_code=400, detail="No hay destinatarios configurados para recordatorios")
    today = date.today()
    sent = 0
    with connect() as con:
        cur = con.cursor()
        tasks = rows_to_dicts(_pending_reminders(cur))
        for t in tasks:
            ok = email_service.send_email(recipients, "maintenance_reminder", {
                "plant_name": t["plant_name"],
                "task_description": t["description"],
                "scheduled_date": t["scheduled_date"][:10],
                "days_remaining": (date.fromisoformat(t["scheduled_date"][:10]) - today).days,
            })
            if ok:
                cur.execute("UPDATE maintenance_tasks SET reminder_sent=1 WHERE id=?", (t["id"],))
                sent += 1
        con.commit()
    return {
        "message": f"Se enviaron {sent} recordatorios de {len(tasks)} tareas pendientes",
        "sent": sent,
        "total": len(tasks),
    }


@router.get("/tasks/{task_id}")
def get_task(task_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        return _get_task(con.cursor(), task_id)


@router.patch("/tasks/{task_id}")
def update_task(task_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_user)):
    update = normalize_payload(payload, TASK_FIELDS)
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    if not is_admin(current_user) and ADMIN_ONLY_FIELDS & set(update):
        raise HTTPException(status_code=403, detail="Solo un administrador puede modificar la programación, proveedor o costo")
    _validate(update)
    with connect() as con:
        cur = con.cursor()
        before = fetch_or_404(cur, "maintenance_tasks", task_id, "Tarea no encontrada")
        ensure_plant_access(current_user, before["plant_id"])
        if update.get("scheduled_date") and update["scheduled_date"] != before["scheduled_date"]:
            update["reminder_date"] = add_days(update["scheduled_date"], -REMINDER_LEAD_DAYS)
            update["reminder_sent"] = 0
        if update.get("status") == "completed" and before["status"] != "completed":
            update["completed_date"] = now_iso()
            update["completed_by"] = current_user["name"]
        elif update.get("status") in ("pending", "overdue"):
            update["completed_date"] = None
            update["completed_by"] = None
        try:
            update_row(cur, "maintenance_tasks", task_id, update)
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, "Conflicto al actualizar la tarea")
        after = fetch_or_404(cur, "maintenance_tasks", task_id, "Tarea no encontrada")
        log_ledger(cur, "maintenance_tasks", "UPDATE", task_id, {"diff": diff_rows(before, after)}, current_user)
        con.commit()
        return _get_task(cur, task_id)


@router.post("/tasks/{task_id}/complete")
def complete_task(task_id: int, payload: Optional[Dict[str, Any]] = None, current_user: Dict[str, Any] = Depends(require_user)):
    notes = (payload or {}).get("notes")
    with connect() as con:
        cur = con.cursor()
        task = fetch_or_404(cur, "maintenance_tasks", task_id, "Tarea no encontrada")
        ensure_plant_access(current_user, task["plant_id"])
        cur.execute(
            """
            UPDATE maintenance_tasks
            SET status='completed', completed_date=?, completed_by=?, notes=COALESCE(?, notes), updated_at=datetime('now')
            WHERE id=?
            """,
            (now_iso(), current_user["name"], notes, task_id),
        )
        log_ledger(cur, "maintenance_tasks", "COMPLETE", task_id, {"notes": notes}, current_user)
        con.commit()
        return {"message": "Mantenimiento marcado como completado", "task": _get_task(cur, task_id)}


@router.post("/tasks/{task_id}/uncomplete")
def uncomplete_task(task_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "maintenance_tasks", task_id, "Tarea no encontrada")
        cur.execute(
            """
            UPDATE maintenance_tasks
            SET status='pending', completed_date=NULL, completed_by=NULL, updated_at=datetime('now')
            WHERE id=?
            """,
            (task_id,),
        )
        log_ledger(cur, "maintenance_tasks", "UNCOMPLETE", task_id, {}, current_user)
        con.commit()
        return {"message": "Mantenimiento revertido a pendiente", "task": _get_task(cur, task_id)}


@router.delete("/tasks/{task_id}")
def delete_task(task_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        task = fetch_or_404(cur, "maintenance_tasks", task_id, "Tarea no encontrada")
        cur.execute("DELETE FROM maintenance_tasks WHERE id=?", (task_id,))
        log_ledger(cur, "maintenance_tasks", "DELETE", task_id, {"description": task["description"]}, current_user)
        con.commit()
    return {"id": task_id, "deleted": True}


@router.get("/stats")
def maintenance_stats(current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        cur = con.cursor()
        update_overdue_status(cur)
        con.commit()
        pending = cur.execute(
            "SELECT COUNT(*) AS n FROM maintenance_tasks WHERE status IN ('pending','overdue')"
        ).fetchone()["n"]
        unresolved = cur.execute(
            "SELECT COUNT(*) AS n FROM maintenance_emergencies WHERE solved = 0"
        ).fetchone()["n"]
        by_plant = cur.execute(
            """
            SELECT p.id AS plant_id, p.name AS plant_name,
                   (SELECT COUNT(*) FROM maintenance_tasks mt
                    WHERE mt.plant_id = p.id AND mt.status IN ('pending','overdue')) AS pending_tasks,
                   (SELECT COUNT(*) FROM maintenance_tasks mt
                    WHERE mt.plant_id = p.id AND mt.status = 'overdue') AS overdue_tasks,
                   (SELECT COUNT(*) FROM maintenance_emergencies me
                    WHERE me.plant_id = p.id AND me.solved = 0) AS unresolved_emergencies
            FROM plants p ORDER BY p.name
            """
        ).fetchall()
    return {
        "pending_tasks": pending,
        "unresolved_emergencies": unresolved,
        "by_plant": rows_to_dicts(by_plant),
    }
