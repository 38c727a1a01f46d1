import sqlite3
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from ...db import rows_to_dicts
from ...routers.plants import PLANT_FIELDS, validate_plant
from ...utils import diff_rows, insert_row, integrity_error, normalize_payload, update_row
from .. import webhooks
from ..security import (
    MANAGER_ROLES,
    check_plan_limit,
    fetch_owned,
    record_audit,
    require_access,
    saas_connect,
)

router = APIRouter(prefix="/plants", tags=["plants"])

DUPLICATE = "Ya existe una planta con ese nombre"


@router.get("")
def list_plants(
    search: Optional[str] = None,
    status: Optional[str] = None,
    ctx: Dict[str, Any] = Depends(require_access("plants:read")),
):
    q = "SELECT * FROM plants WHERE organization_id = :org"
    params: Dict[str, Any] = {"org": ctx["org"]["id"]}
    if search:
        q += " AND (name LIKE :kw OR location LIKE :kw)"
        params["kw"] = f"%{search}%"
    if status:
        q += " AND status = :status"
        params["status"] = status
    q += " ORDER BY name"
    with saas_connect() as con:
        return rows_to_dicts(con.execute(q, params).fetchall())


@router.get("/{plant_id}")
def get_plant(plant_id: int, ctx: Dict[str, Any] = Depends(require_access("plants:read"))):
    with saas_connect() as con:
        return fetch_owned(con.cursor(), "plants", ctx["org"]["id"], plant_id, "Planta no encontrada")


@router.post("", status_code=201)
def create_plant(
    request: Request,
    payload: Dict[str, Any],
    background_tasks: BackgroundTasks,
    ctx: Dict[str, Any] = Depends(require_access("plants:write", *MANAGER_ROLES)),
):
    data = normalize_payload(payload, PLANT_FIELDS)
    if not data.get("name"):
        raise HTTPException(status_code=400, detail="Nombre requerido")
    data.setdefault("status", "active")
    validate_plant(data)
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        check_plan_limit(cur, ctx["org"], "plants")
        try:
            plant_id = insert_row(cur, "plants", {**data, "organization_id": org_id})
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, DUPLICATE)
        record_audit(cur, ctx, "plant.created", "plant", plant_id, new_value=data, request=request)
        con.commit()
        plant = fetch_owned(cur, "plants", org_id, plant_id, "Planta no encontrada")
    webhooks.dispatch(background_tasks, org_id, "plant.created", plant)
    return plant


@router.patch("/{plant_id}")
def update_plant(
    request: Request,
    plant_id: int,
    payload: Dict[str, Any],
    background_tasks: BackgroundTasks,
    ctx: Dict[str, Any] = Depends(require_access("plants:write", *MANAGER_ROLES)),
):
    update = normalize_payload(payload, PLANT_FIELDS)
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    if "name" in update and not update["name"]:
        raise HTTPException(status_code=400, detail="Nombre requerido")
    validate_plant(update)
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        before = fetch_owned(cur, "plants", org_id, plant_id, "Planta no encontrada")
        try:
            update_row(cur, "plants", plant_id, update)
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, DUPLICATE)
        after = fetch_owned(cur, "plants", org_id, plant_id, "Planta no encontrada")
        changes = diff_rows(before, after)
        record_audit(cur, ctx, "plant.updated", "plant", plant_id,
                     {k: v["from"] for k, v in changes.items()}, {k: v["to"] for k, v in changes.items()}, request)
        con.commit()
    webhooks.dispatch(background_tasks, org_id, "plant.updated", after)
    return after


@router.delete("/{plant_id}")
def delete_plant(
    request: Request,
    plant_id: int,
    background_tasks: BackgroundTasks,
    ctx: Dict[str, Any] = Depends(require_access("plants:write", *MANAGER_ROLES)),
):
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        plant = fetch_owned(cur, "plants", org_id, plant_id, "Planta no encontrada")
        cur.execute("DELETE FROM plants WHERE id=? AND organization_id=?", (plant_id, org_id))
        record_audit(cur, ctx, "plant.deleted", "plant", plant_id, old_value={"name": plant["name"]}, request=request)
        con.commit()
    webhooks.dispatch(background_tasks, org_id, "plant.deleted", {"id": plant_id, "name": plant["name"]})
    return {"id": plant_id, "deleted": True}
