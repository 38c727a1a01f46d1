import sqlite3
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from ...db import rows_to_dicts
from ...routers.equipment import EQUIPMENT_FIELDS, LOG_FIELDS, LOG_TYPES, _validate
from ...utils import check_choice, insert_row, integrity_error, normalize_payload, update_row
from ..security import MANAGER_ROLES, WRITE_ROLES, audit_changes, fetch_owned, record_audit, require_access, saas_connect

router = APIRouter(prefix="/equipment", tags=["equipment"])

DUPLICATE_CODE = "Ya existe un equipo con ese código en la planta"

read = require_access("equipment:read")
write = require_access("equipment:write", *WRITE_ROLES)
manage = require_access("equipment:write", *MANAGER_ROLES)


@router.get("")
def list_equipment(
    plant_id: Optional[int] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    ctx: Dict[str, Any] = Depends(read),
):
    q = """
        SELECT e.*, p.name AS plant_name
        FROM equipment e JOIN plants p ON p.id = e.plant_id
        WHERE e.organization_id = :org
    """
    params: Dict[str, Any] = {"org": ctx["org"]["id"]}
    if plant_id is not None:
        q += " AND e.plant_id = :pid"
        params["pid"] = plant_id
    if category:
        q += " AND e.category = :cat"
        params["cat"] = category
    if search:
        q += " AND (e.item_code LIKE :kw OR e.description LIKE :kw)"
        params["kw"] = f"%{search}%"
    q += " ORDER BY p.name, e.category, e.item_code"
    with saas_connect() as con:
        return rows_to_dicts(con.execute(q, params).fetchall())


@router.get("/plant/{plant_id}")
def list_plant_equipment(plant_id: int, ctx: Dict[str, Any] = Depends(read)):
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        fetch_owned(cur, "plants", org_id, plant_id, "Planta no encontrada")
        rows = cur.execute(
            "SELECT * FROM equipment WHERE plant_id=? AND organization_id=? ORDER BY category, item_code",
            (plant_id, org_id),
        ).fetchall()
        return rows_to_dicts(rows)


@router.get("/{equipment_id}/logs")
def list_logs(equipment_id: int, ctx: Dict[str, Any] = Depends(read)):
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        fetch_owned(cur, "equipment", org_id, equipment_id, "Equipo no encontrado")
        rows = cur.execute(
            """
            SELECT * FROM equipment_maintenance_log
            WHERE equipment_id=? AND organization_id=?
            ORDER BY maintenance_date DESC, id DESC
            """,
            (equipment_id, org_id),
        ).fetchall()
        return rows_to_dicts(rows)


@router.post("/{equipment_id}/logs", status_code=201)
def create_log(request: Request, equipment_id: int, payload: Dict[str, Any], ctx: Dict[str, Any] = Depends(write)):
    data = normalize_payload(payload, LOG_FIELDS)
    if not data.get("maintenance_type") or not data.get("maintenance_date"):
        raise HTTPException(status_code=400, detail="maintenance_type y maintenance_date son requeridos")
    check_choice(data["maintenance_type"], LOG_TYPES, "maintenance_type")
    if ctx["user"]:
        data.setdefault("operator_name", ctx["user"]["name"])
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        fetch_owned(cur, "equipment", org_id, equipment_id, "Equipo no encontrado")
        log_id = insert_row(cur, "equipment_maintenance_log", {**data, "equipment_id": equipment_id, "organization_id": org_id})
        record_audit(cur, ctx, "equipment.log_created", "equipment", equipment_id,
                     new_value={"log_id": log_id, "maintenance_type": data["maintenance_type"]}, request=request)
        con.commit()
        return fetch_owned(cur, "equipment_maintenance_log", org_id, log_id, "Registro no encontrado")


@router.get("/{equipment_id}")
def get_equipment(equipment_id: int, ctx: Dict[str, Any] = Depends(read)):
    with saas_connect() as con:
        return fetch_owned(con.cursor(), "equipment", ctx["org"]["id"], equipment_id, "Equipo no encontrado")


@router.post("", status_code=201)
def create_equipment(request: Request, payload: Dict[str, Any], ctx: Dict[str, Any] = Depends(manage)):
    data = normalize_payload(payload, EQUIPMENT_FIELDS)
    if not data.get("plant_id") or not data.get("item_code") or not data.get("description"):
        raise HTTPException(status_code=400, detail="plant_id, item_code y description son requeridos")
    data.setdefault("category", "otros")
    _validate(data)
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        fetch_owned(cur, "plants", org_id, data["plant_id"], "Planta no encontrada")
        try:
            equipment_id = insert_row(cur, "equipment", {**data, "organization_id": org_id})
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, DUPLICATE_CODE)
        record_audit(cur, ctx, "equipment.created", "equipment", equipment_id,
                     new_value={"item_code": data["item_code"], "plant_id": data["plant_id"]}, request=request)
        con.commit()
        return fetch_owned(cur, "equipment", org_id, equipment_id, "Equipo no encontrado")


@router.patch("/{equipment_id}")
def update_equipment(request: Request, equipment_id: int, payload: Dict[str, Any], ctx: Dict[str, Any] = Depends(manage)):
    update = normalize_payload(payload, EQUIPMENT_FIELDS)
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    _validate(update)
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        before = fetch_owned(cur, "equipment", org_id, equipment_id, "Equipo no encontrado")
        if update.get("plant_id"):
            fetch_owned(cur, "plants", org_id, update["plant_id"], "Planta no encontrada")
        try:
            update_row(cur, "equipment", equipment_id, update)
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, DUPLICATE_CODE)
        after = fetch_owned(cur, "equipment", org_id, equipment_id, "Equipo no encontrado")
        record_audit(cur, ctx, "equipment.updated", "equipment", equipment_id, *audit_changes(before, after), request)
        con.commit()
    return after


@router.delete("/{equipment_id}")
def delete_equipment(request: Request, equipment_id: int, ctx: Dict[str, Any] = Depends(manage)):
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        e = fetch_owned(cur, "equipment", org_id, equipment_id, "Equipo no encontrado")
        cur.execute("DELETE FROM equipment WHERE id=? AND organization_id=?", (equipment_id, org_id))
        record_audit(cur, ctx, "equipment.deleted", "equipment", equipment_id,
                     old_value={"item_code": e["item_code"]}, request=request)
        con.commit()
    return {"id": equipment_id, "deleted": True}
