import sqlite3
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException

from ..auth import require_role, require_user
from ..db import connect, rows_to_dicts
from ..utils import (
    check_choice,
    diff_rows,
    fetch_or_404,
    insert_row,
    integrity_error,
    log_ledger,
    normalize_payload,
    update_row,
)

router = APIRouter(prefix="/plants", tags=["plants"])

PLANT_FIELDS = {
    "name": "text",
    "location": "text",
    "latitude": "float",
    "longitude": "float",
    "status": "text",
}
PLANT_STATUSES = ("active", "inactive", "maintenance")


def validate_plant(data: Dict[str, Any]) -> None:
    check_choice(data.get("status"), PLANT_STATUSES, "status")
    lat, lon = data.get("latitude"), data.get("longitude")
    if lat is not None and not -90 <= lat <= 90:
        raise HTTPException(status_code=400, detail="latitude fuera de rango")
    if lon is not None and not -180 <= lon <= 180:
        raise HTTPException(status_code=400, detail="longitude fuera de rango")


@router.get("")
def list_plants(
    search: Optional[str] = None,
    status: Optional[str] = None,
    current_user: Dict[str, Any] = Depends(require_user),
):
    q = "SELECT * FROM plants WHERE 1=1"
    params: Dict[str, Any] = {}
    if search:
        q += " AND (name LIKE :kw OR location LIKE :kw)"
        params["kw"] = f"%{search}%"
    if status:
        q += " AND status = :status"
        params["status"] = status
    q += " ORDER BY name"
    with connect() as con:
        return rows_to_dicts(con.execute(q, params).fetchall())


@router.get("/{plant_id}")
def get_plant(plant_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        return fetch_or_404(con.cursor(), "plants", plant_id, "Planta no encontrada")


@router.post("", status_code=201)
def create_plant(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    data = normalize_payload(payload, PLANT_FIELDS)
    if not data.get("name"):
        raise HTTPException(status_code=400, detail="Nombre requerido")
    data.setdefault("status", "active")
    validate_plant(data)
    with connect() as con:
        cur = con.cursor()
        try:
            plant_id = insert_row(cur, "plants", data)
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, "Ya existe una planta con ese nombre")
        log_ledger(cur, "plants", "CREATE", plant_id, {"values": data}, current_user)
        con.commit()
        return fetch_or_404(cur, "plants", plant_id, "Planta no encontrada")


@router.patch("/{plant_id}")
def update_plant(plant_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    update = normalize_payload(payload, PLANT_FIELDS)
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    if "name" in update and not update["name"]:
        raise HTTPException(status_code=400, detail="Nombre requerido")
    validate_plant(update)
    with connect() as con:
        cur = con.cursor()
        before = fetch_or_404(cur, "plants", plant_id, "Planta no encontrada")
        try:
            update_row(cur, "plants", plant_id, update)
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, "Ya existe una planta con ese nombre")
        after = fetch_or_404(cur, "plants", plant_id, "Planta no encontrada")
        log_ledger(cur, "plants", "UPDATE", plant_id, {"diff": diff_rows(before, after)}, current_user)
        con.commit()
        return after


@router.delete("/{plant_id}")
def delete_plant(plant_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        plant = fetch_or_404(cur, "plants", plant_id, "Planta no encontrada")
        cur.execute("DELETE FROM plants WHERE id=?", (plant_id,))
        log_ledger(cur, "plants", "DELETE", plant_id, {"name": plant["name"]}, current_user)
        con.commit()
    return {"id": plant_id, "deleted": True}
