import sqlite3
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from ...db import rows_to_dicts
from ...importer import find_environmental
from ...notifications import evaluate_reading
from ...routers.analytics import DUPLICATE_READING, reading_from_payload
from ...utils import insert_row, integrity_error
from .. import webhooks
from ..security import WRITE_ROLES, fetch_owned, record_audit, require_access, saas_connect
from .notifications import notify_roles

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/environmental")
def list_environmental(
    plant_id: Optional[int] = None,
    parameter: Optional[str] = None,
    stream: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    ctx: Dict[str, Any] = Depends(require_access("data:read")),
):
    q = """
        SELECT ed.*, p.name AS plant_name
        FROM environmental_data ed JOIN plants p ON p.id = ed.plant_id
        WHERE ed.organization_id = :org
    """
    params: Dict[str, Any] = {"org": ctx["org"]["id"]}
    if plant_id is not None:
        q += " AND ed.plant_id = :pid"
        params["pid"] = plant_id
    if parameter:
        q += " AND ed.parameter_type = :param"
        params["param"] = parameter
    if stream:
        q += " AND ed.stream = :stream"
        params["stream"] = stream
    if date_from:
        q += " AND ed.measurement_date >= :dfrom"
        params["dfrom"] = date_from
    if date_to:
        q += " AND substr(ed.measurement_date,1,10) <= :dto"
        params["dto"] = date_to[:10]
    q += " ORDER BY ed.measurement_date DESC, ed.id DESC"
    with saas_connect() as con:
        return rows_to_dicts(con.execute(q, params).fetchall())


@router.post("/environmental", status_code=201)
def create_reading(
    request: Request,
    payload: Dict[str, Any],
    background_tasks: BackgroundTasks,
    ctx: Dict[str, Any] = Depends(require_access("data:write", *WRITE_ROLES)),
):
    """Stores a reading; effluent values outside the discharge limits also fire `data.alert`."""
    data = reading_from_payload(payload)
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        plant = fetch_owned(cur, "plants", org_id, data["plant_id"], "Planta no encontrada")
        if find_environmental(cur, data["plant_id"], data["parameter_type"], data["measurement_date"], data["stream"]):
            raise HTTPException(status_code=409, detail=DUPLICATE_READING)
        try:
            reading_id = insert_row(cur, "environmental_data", {**data, "organization_id": org_id})
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, DUPLICATE_READING)
        record_audit(cur, ctx, "data.created", "environmental_data", reading_id, new_value=data, request=request)
        alert = evaluate_reading(data["parameter_type"], data["value"]) if data["stream"] == "effluent" else None
        if alert:
            notify_roles(
                cur, org_id,
                f"Alerta {data['parameter_type']} en {plant['name']}",
                f"{data['parameter_type']} = {data['value']} {alert['unit']} fuera del límite de descarga",
                "critical" if alert["alert_type"] == "critical" else "warning",
            )
        con.commit()
        reading = fetch_owned(cur, "environmental_data", org_id, reading_id, "Registro no encontrado")
    webhooks.dispatch(background_tasks, org_id, "data.created", reading)
    if alert:
        webhooks.dispatch(background_tasks, org_id, "data.alert", {**reading, **alert, "plant_name": plant["name"]})
    return {**reading, "alert": alert}


@router.delete("/environmental/{reading_id}")
def delete_reading(
    request: Request,
    reading_id: int,
    ctx: Dict[str, Any] = Depends(require_access("data:write", *WRITE_ROLES)),
):
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        reading = fetch_owned(cur, "environmental_data", org_id, reading_id, "Registro no encontrado")
        cur.execute("DELETE FROM environmental_data WHERE id=? AND organization_id=?", (reading_id, org_id))
        record_audit(cur, ctx, "data.deleted", "environmental_data", reading_id,
                     old_value={k: reading[k] for k in ("plant_id", "parameter_type", "value", "measurement_date")},
                     request=request)
        con.commit()
    return {"id": reading_id, "deleted": True}
