import logging
import sqlite3
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import Response

from ..auth import require_role, require_user
from ..db import connect, rows_to_dicts
from ..importer import (
    ENV_TEMPLATE_CSV,
    find_environmental,
    import_environmental_csv,
    normalize_measurement_date,
    normalize_parameter,
)
from ..utils import fetch_or_404, insert_row, integrity_error, log_ledger, to_float_or_none

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["analytics"])

STREAMS = ("influent", "effluent")
DUPLICATE_READING = "Ya existe una medición para esa planta, parámetro, fecha y tipo"


def reading_from_payload(payload: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    if "plant_id" in payload or not partial:
        try:
            data["plant_id"] = int(payload.get("plant_id"))
        except (TypeError, ValueError):
            raise HTTPException(status_code=400, detail="plant_id es requerido")
    if "parameter_type" in payload or not partial:
        data["parameter_type"] = normalize_parameter(payload.get("parameter_type"))
        if data["parameter_type"] is None:
            raise HTTPException(status_code=400, detail="Parámetro no válido (usar DQO, pH o SS)")
    if "value" in payload or not partial:
        data["value"] = to_float_or_none(payload.get("value"))
        if data["value"] is None or data["value"] < 0:
            raise HTTPException(status_code=400, detail="El valor debe ser un número mayor o igual a 0")
    if "measurement_date" in payload or not partial:
        data["measurement_date"] = normalize_measurement_date(str(payload.get("measurement_date") or ""))
        if data["measurement_date"] is None:
            raise HTTPException(status_code=400, detail="measurement_date no es una fecha válida")
    if "stream" in payload or not partial:
        data["stream"] = payload.get("stream") or "effluent"
        if data["stream"] not in STREAMS:
            raise HTTPException(status_code=400, detail="stream inválido (influent o effluent)")
    if "unit" in payload:
        data["unit"] = payload.get("unit") or ""
    elif "parameter_type" in data:
        data["unit"] = "" if data["parameter_type"] == "pH" else "mg/L"
    return data


@router.get("/environmental")
def list_environmental(
    plant_id: Optional[int] = None,
    parameter: Optional[str] = None,
    stream: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    current_user: Dict[str, Any] = Depends(require_user),
):
    q = """
        SELECT ed.*, p.name AS plant_name
        FROM environmental_data ed JOIN plants p ON p.id = ed.plant_id
        WHERE 1=1
    """
    params: Dict[str, Any] = {}
    if plant_id:
        q += " AND ed.plant_id = :pid"
        params["pid"] = plant_id
    if parameter:
        q += " AND ed.parameter_type = :param"
        params["param"] = normalize_parameter(parameter) or parameter
    if stream:
        q += " AND ed.stream = :stream"
        params["stream"] = stream
    if date_from:
        q += " AND substr(ed.measurement_date,1,10) >= :dfrom"
        params["dfrom"] = date_from[:10]
    if date_to:
        q += " AND substr(ed.measurement_date,1,10) <= :dto"
        params["dto"] = date_to[:10]
    q += " ORDER BY ed.measurement_date ASC, ed.id ASC"
    with connect() as con:
        return rows_to_dicts(con.execute(q, params).fetchall())


@router.get("/summary")
def summary(
    plant_id: Optional[int] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    current_user: Dict[str, Any] = Depends(require_user),
):
    q = """
        SELECT parameter_type, stream, COUNT(*) AS count,
               AVG(value) AS avg, MIN(value) AS min, MAX(value) AS max
        FROM environmental_data WHERE 1=1
    """
    params: Dict[str, Any] = {}
    if plant_id:
        q += " AND plant_id = :pid"
        params["pid"] = plant_id
    if date_from:
        q += " AND substr(measurement_date,1,10) >= :dfrom"
        params["dfrom"] = date_from[:10]
    if date_to:
        q += " AND substr(measurement_date,1,10) <= :dto"
        params["dto"] = date_to[:10]
    q += " GROUP BY parameter_type, stream ORDER BY parameter_type, stream"
    with connect() as con:
        rows = rows_to_dicts(con.execute(q, params).fetchall())
    for r in rows:
        r["avg"] = round(r["avg"], 2) if r["avg"] is not None else None
    return rows


@router.post("/environmental", status_code=201)
def create_reading(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    data = reading_from_payload(payload)
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "plants", data["plant_id"], "Planta no encontrada")
        existing = find_environmental(cur, data["plant_id"], data["parameter_type"], data["measurement_date"], data["stream"])
        if existing:
            raise HTTPException(status_code=409, detail=DUPLICATE_READING)
        try:
            row_id = insert_row(cur, "environmental_data", data)
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, DUPLICATE_READING)
        log_ledger(cur, "environmental_data", "CREATE", row_id, {"values": data}, current_user)
        con.commit()
        return fetch_or_404(cur, "environmental_data", row_id, "Medición no encontrada")


@router.put("/environmental/{reading_id}")
def update_reading(reading_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    update = reading_from_payload(payload, partial=True)
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    with connect() as con:
        cur = con.cursor()
        before = fetch_or_404(cur, "environmental_data", reading_id, "Medición no encontrada")
        sets = ", ".join(f"{k}=:{k}" for k in update)
        try:
            cur.execute(f"UPDATE environmental_data SET {sets} WHERE id=:id", {**update, "id": reading_id})
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, DUPLICATE_READING)
        log_ledger(cur, "environmental_data", "UPDATE", reading_id, {"before": before, "values": update}, current_user)
        con.commit()
        return fetch_or_404(cur, "environmental_data", reading_id, "Medición no encontrada")


@router.delete("/environmental/{reading_id}")
def delete_reading(reading_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "environmental_data", reading_id, "Medición no encontrada")
        cur.execute("DELETE FROM environmental_data WHERE id=?", (reading_id,))
        log_ledger(cur, "environmental_data", "DELETE", reading_id, {}, current_user)
        con.commit()
    return {"id": reading_id, "deleted": True}


@router.delete("/environmental")
def delete_by_keys(
    plant_id: int,
    parameter: str,
    date: str,
    stream: str,
    current_user: Dict[str, Any] = Depends(require_role("admin")),
):
    param = normalize_parameter(parameter)
    day = normalize_measurement_date(date)
    if param is None or day is None or stream not in STREAMS:
        raise HTTPException(status_code=400, detail="Parámetros de búsqueda inválidos")
    with connect() as con:
        cur = con.cursor()
        row = find_environmental(cur, plant_id, param, day, stream)
        if not row:
            raise HTTPException(status_code=404, detail="Medición no encontrada")
        cur.execute("DELETE FROM environmental_data WHERE id=?", (row["id"],))
        log_ledger(cur, "environmental_data", "DELETE", row["id"], {"parameter": param, "date": day, "stream": stream}, current_user)
        con.commit()
    return {"id": row["id"], "deleted": True}


@router.get("/csv-template")
def csv_template(current_user: Dict[str, Any] = Depends(require_user)):
    return Response(
        content="\ufeff" + ENV_TEMPLATE_CSV,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="plantilla_analiticas.csv"'},
    )


@router.post("/upload-csv")
async def upload_csv(file: UploadFile = File(...), current_user: Dict[str, Any] = Depends(require_role("admin"))):
    if not (file.filename or "").lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="Solo se permiten archivos CSV")
    content = await file.read()
    with connect() as con:
        try:
            result = import_environmental_csv(con, content)
        except ValueError as e:
            con.rollback()
            raise HTTPException(status_code=400, detail=str(e))
        log_ledger(
            con.cursor(), "environmental_data", "IMPORT", None,
            {"file_name": file.filename, "inserted": result["inserted"], "updated": result["updated"], "errors": len(result["errors"])},
            current_user,
        )
        con.commit()
    return result
