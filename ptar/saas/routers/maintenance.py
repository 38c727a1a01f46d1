import sqlite3
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from ...db import rows_to_dicts
from ...routers.emergencies import validate_emergency
from ...routers.maintenance import TASK_STATUSES, TASK_TYPES
from ...utils import (
    check_choice,
    insert_row,
    integrity_error,
    normalize_payload,
    now_iso,
    today_iso,
    update_row,
)
from .. import webhooks
from ..security import WRITE_ROLES, audit_changes, fetch_owned, record_audit, require_access, saas_connect
from .notifications import notify_roles

router = APIRouter(prefix="/maintenance", tags=["maintenance"])

TASK_FIELDS = {
    "plant_id": "int",
    "task_type": "text",
    "description": "text",
    "scheduled_date": "date",
    "status": "text",
    "notes": "text",
}
EMERGENCY_FIELDS = {
    "plant_id": "int",
    "reason": "text",
    "severity": "text",
    "solved": "flag",
    "resolve_time_hours": "float",
    "observations": "text",
}

read = require_access("maintenance:read")
write = require_access("maintenance:write", *WRITE_ROLES)


@router.get("/tasks")
def list_tasks(
    plant_id: Optional[int] = None,
    status: Optional[str] = None,
    ctx: Dict[str, Any] = Depends(read),
):
    org_id = ctx["org"]["id"]
    q = """
        SELECT mt.*, p.name AS plant_name
        FROM maintenance_tasks mt JOIN plants p ON p.id = mt.plant_id
        WHERE mt.organization_id = :org
    """
    params: Dict[str, Any] = {"org": org_id}
    if plant_id is not None:
        q += " AND mt.plant_id = :pid"
        params["pid"] = plant_id
    if status:
        q += " AND mt.status = :status"
        params["status"] = status
    q += " ORDER BY mt.scheduled_date"
    with saas_connect() as con:
        con.execute(
            """
            UPDATE maintenance_tasks SET status='overdue', updated_at=datetime('now')
            WHERE organization_id=? AND status='pending' AND date(scheduled_date) < date(?)
            """,
            (org_id, today_iso()),
        )
        con.commit()
        return rows_to_dicts(con.execute(q, params).fetchall())


@router.post("/tasks", status_code=201)
def create_task(
    request: Request,
    payload: Dict[str, Any],
    background_tasks: BackgroundTasks,
    ctx: Dict[str, Any] = Depends(write),
):
    data = normalize_payload(payload, TASK_FIELDS)
    if not data.get("plant_id") or not data.get("description") or not data.get("scheduled_date"):
        raise HTTPException(status_code=400, detail="plant_id, description y scheduled_date son requeridos")
    check_choice(data.get("task_type"), TASK_TYPES, "task_type")
    check_choice(data.get("status"), TASK_STATUSES, "status")
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        fetch_owned(cur, "plants", org_id, data["plant_id"], "Planta no encontrada")
        task_id = insert_row(cur, "maintenance_tasks", {**data, "organization_id": org_id})
        record_audit(cur, ctx, "maintenance.created", "maintenance_task", task_id, new_value=data, request=request)
        con.commit()
        task = fetch_owned(cur, "maintenance_tasks", org_id, task_id, "Tarea no encontrada")
    webhooks.dispatch(background_tasks, org_id, "maintenance.created", task)
    return task


@router.patch("/tasks/{task_id}")
def update_task(request: Request, task_id: int, payload: Dict[str, Any], ctx: Dict[str, Any] = Depends(write)):
    update = normalize_payload(payload, TASK_FIELDS)
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    check_choice(update.get("task_type"), TASK_TYPES, "task_type")
    check_choice(update.get("status"), TASK_STATUSES, "status")
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        before = fetch_owned(cur, "maintenance_tasks", org_id, task_id, "Tarea no encontrada")
        if update.get("plant_id"):
            fetch_owned(cur, "plants", org_id, update["plant_id"], "Planta no encontrada")
        update_row(cur, "maintenance_tasks", task_id, update)
        after = fetch_owned(cur, "maintenance_tasks", org_id, task_id, "Tarea no encontrada")
        record_audit(cur, ctx, "maintenance.updated", "maintenance_task", task_id, *audit_changes(before, after), request)
        con.commit()
    return after


@router.post("/tasks/{task_id}/complete")
def complete_task(
    request: Request,
    task_id: int,
    background_tasks: BackgroundTasks,
    payload: Optional[Dict[str, Any]] = None,
    ctx: Dict[str, Any] = Depends(write),
):
    notes = (payload or {}).get("notes")
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        before = fetch_owned(cur, "maintenance_tasks", org_id, task_id, "Tarea no encontrada")
        cur.execute(
            """
            UPDATE maintenance_tasks
            SET status='completed', completed_date=?, notes=COALESCE(?, notes), updated_at=datetime('now')
            WHERE id=?
            """,
            (now_iso(), notes, task_id),
        )
        after = fetch_owned(cur, "maintenance_tasks", org_id, task_id, "Tarea no encontrada")
        record_audit(cur, ctx, "maintenance.completed", "maintenance_task", task_id,
                     {"status": before["status"]}, {"status": "completed"}, request)
        con.commit()
    webhooks.dispatch(background_tasks, org_id, "maintenance.completed", after)
    return after


@router.delete("/tasks/{task_id}")
def delete_task(request: Request, task_id: int, ctx: Dict[str, Any] = Depends(write)):
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        task = fetch_owned(cur, "maintenance_tasks", org_id, task_id, "Tarea no encontrada")
        cur.execute("DELETE FROM maintenance_tasks WHERE id=? AND organization_id=?", (task_id, org_id))
        record_audit(cur, ctx, "maintenance.deleted", "maintenance_task", task_id,
                     old_value={"description": task["description"]}, request=request)
        con.commit()
    return {"id": task_id, "deleted": True}


@router.get("/emergencies")
def list_emergencies(
    plant_id: Optional[int] = None,
    solved: Optional[bool] = None,
    severity: Optional[str] = None,
    ctx: Dict[str, Any] = Depends(read),
):
    q = """
        SELECT me.*, p.name AS plant_name
        FROM maintenance_emergencies me JOIN plants p ON p.id = me.plant_id
        WHERE me.organization_id = :org
    """
    params: Dict[str, Any] = {"org": ctx["org"]["id"]}
    if plant_id is not None:
        q += " AND me.plant_id = :pid"
        params["pid"] = plant_id
    if solved is not None:
        q += " AND me.solved = :solved"
        params["solved"] = int(solved)
    if severity:
        q += " AND me.severity = :severity"
        params["severity"] = severity
    q += " ORDER BY me.reported_at DESC"
    with saas_connect() as con:
        return rows_to_dicts(con.execute(q, params).fetchall())


@router.post("/emergencies", status_code=201)
def create_emergency(
    request: Request,
    payload: Dict[str, Any],
    background_tasks: BackgroundTasks,
    ctx: Dict[str, Any] = Depends(write),
):
    data = normalize_payload(payload, EMERGENCY_FIELDS)
    if not data.get("plant_id") or not data.get("reason"):
        raise HTTPException(status_code=400, detail="plant_id y reason son requeridos")
    data.setdefault("severity", "medium")
    validate_emergency(data)
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        plant = fetch_owned(cur, "plants", org_id, data["plant_id"], "Planta no encontrada")
        if data.get("solved") == 1:
            data["resolved_at"] = now_iso()
        try:
            emergency_id = insert_row(cur, "maintenance_emergencies", {**data, "organization_id": org_id})
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, "Emergencia duplicada")
        record_audit(cur, ctx, "emergency.created", "emergency", emergency_id, new_value=data, request=request)
        notify_roles(
            cur, org_id, f"Emergencia en {plant['name']}", data["reason"],
            "critical" if data["severity"] == "high" else "warning",
        )
        con.commit()
        emergency = fetch_owned(cur, "maintenance_emergencies", org_id, emergency_id, "Emergencia no encontrada")
    webhooks.dispatch(background_tasks, org_id, "emergency.created", emergency)
    return emergency


@router.patch("/emergencies/{emergency_id}")
def update_emergency(
    request: Request,
    emergency_id: int,
    payload: Dict[str, Any],
    background_tasks: BackgroundTasks,
    ctx: Dict[str, Any] = Depends(write),
):
    update = normalize_payload(payload, EMERGENCY_FIELDS)
    update.pop("plant_id", None)
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    validate_emergency(update)
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        before = fetch_owned(cur, "maintenance_emergencies", org_id, emergency_id, "Emergencia no encontrada")
        if update.get("solved") == 1 and not before["resolved_at"]:
            update["resolved_at"] = now_iso()
        elif update.get("solved") == 0:
            update["resolved_at"] = None
        try:
            update_row(cur, "maintenance_emergencies", emergency_id, update)
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, "Emergencia duplicada")
        after = fetch_owned(cur, "maintenance_emergencies", org_id, emergency_id, "Emergencia no encontrada")
        record_audit(cur, ctx, "emergency.updated", "emergency", emergency_id, *audit_changes(before, after), request)
        con.commit()
    if after["solved"] and not before["solved"]:
        webhooks.dispatch(background_tasks, org_id, "emergency.resolved", after)
    return after


@router.delete("/emergencies/{emergency_id}")
def delete_emergency(request: Request, emergency_id: int, ctx: Dict[str, Any] = Depends(write)):
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        emergency = fetch_owned(cur, "maintenance_emergencies", org_id, emergency_id, "Emergencia no encontrada")
        cur.execute("DELETE FROM maintenance_emergencies WHERE id=? AND organization_id=?", (emergency_id, org_id))
        record_audit(cur, ctx, "emergency.deleted", "emergency", emergency_id,
                     old_value={"reason": emergency["reason"]}, request=request)
        con.commit()
    return {"id": emergency_id, "deleted": True}
