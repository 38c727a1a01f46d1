import sqlite3
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import Response

from ..auth import require_role, require_user
from ..db import connect, rows_to_dicts
from ..importer import OPEX_COST_COLUMNS, calendar_date, import_opex_csv, opex_csv_template
from ..utils import diff_rows, fetch_or_404, insert_row, integrity_error, log_ledger, normalize_payload, update_row

router = APIRouter(prefix="/opex", tags=["opex"])

COST_FIELDS = [k for k in OPEX_COST_COLUMNS if k.startswith("cost_")]
OPEX_FIELDS = {"plant_id": "int", "period_date": "date", "notes": "text", **{k: "float" for k in OPEX_COST_COLUMNS}}


def _period(value: Optional[str]) -> Optional[str]:
    if value and len(value) == 7:
        return value + "-01"
    return value


def _with_period(payload: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(payload.get("period_date"), str):
        return payload
    period = _period(payload["period_date"].strip()[:10])
    if not calendar_date(period):
        raise HTTPException(status_code=400, detail=f"Periodo \"{payload['period_date']}\" no válido (usar AAAA-MM)")
    return {**payload, "period_date": period}


def _with_total(row: Dict[str, Any]) -> Dict[str, Any]:
    total = sum(row.get(k) or 0 for k in COST_FIELDS)
    row["total_cost"] = round(total, 2)
    vol = row.get("volume_m3") or 0
    row["cost_per_m3"] = round(total / vol, 4) if vol > 0 else None
    return row


def _validate(data: Dict[str, Any]) -> None:
    for k in OPEX_COST_COLUMNS:
        if data.get(k) is not None and data[k] < 0:
            raise HTTPException(status_code=400, detail=f"{k} no puede ser negativo")


@router.get("")
def list_opex(
    plant_id: Optional[int] = None,
    year: Optional[int] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    current_user: Dict[str, Any] = Depends(require_user),
):
    q = """
        SELECT o.*, p.name AS plant_name
        FROM opex_costs o JOIN plants p ON p.id = o.plant_id
        WHERE 1=1
    """
    params: Dict[str, Any] = {}
    if plant_id:
        q += " AND o.plant_id = :pid"
        params["pid"] = plant_id
    if year:
        q += " AND substr(o.period_date,1,4) = :year"
        params["year"] = str(year)
    if date_from:
        q += " AND o.period_date >= :dfrom"
        params["dfrom"] = _period(date_from[:10])
    if date_to:
        q += " AND o.period_date <= :dto"
        params["dto"] = _period(date_to[:10])
    q += " ORDER BY o.period_date DESC, p.name"
    with connect() as con:
        return [_with_total(r) for r in rows_to_dicts(con.execute(q, params).fetchall())]


@router.get("/csv-template")
def csv_template(current_user: Dict[str, Any] = Depends(require_user)):
    return Response(
        content=opex_csv_template(),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="plantilla_opex.csv"'},
    )


@router.get("/summary/{plant_id}")
def summary(plant_id: int, year: Optional[int] = None, current_user: Dict[str, Any] = Depends(require_user)):
    sums = ", ".join(f"COALESCE(SUM({k}),0) AS {k}" for k in OPEX_COST_COLUMNS)
    q = f"SELECT COUNT(*) AS periods, {sums} FROM opex_costs WHERE plant_id=:pid"
    params: Dict[str, Any] = {"pid": plant_id}
    if year:
        q += " AND substr(period_date,1,4) = :year"
        params["year"] = str(year)
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "plants", plant_id, "Planta no encontrada")
        row = dict(cur.execute(q, params).fetchone())
    row["plant_id"] = plant_id
    return _with_total(row)


@router.post("/upload-csv")
async def upload_csv(file: UploadFile = File(...), current_user: Dict[str, Any] = Depends(require_role("admin"))):
    if not (file.filename or "").lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="Solo se permiten archivos CSV")
    content = await file.read()
    with connect() as con:
        try:
            result = import_opex_csv(con, content)
        except ValueError as e:
            con.rollback()
            raise HTTPException(status_code=400, detail=str(e))
        log_ledger(
            con.cursor(), "opex_costs", "IMPORT", None,
            {"file_name": file.filename, "inserted": result["inserted"], "updated": result["updated"], "errors": len(result["errors"])},
            current_user,
        )
        con.commit()
    return result


@router.get("/{opex_id}")
def get_opex(opex_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        return _with_total(fetch_or_404(con.cursor(), "opex_costs", opex_id, "Registro OPEX no encontrado"))


@router.post("", status_code=201)
def upsert_opex(payload: Dict[str, Any], response: Response, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    """Create the period, or overwrite it when the plant already has one."""
    payload = _with_period(payload)
    data = normalize_payload(payload, OPEX_FIELDS)
    if not data.get("plant_id") or not data.get("period_date"):
        raise HTTPException(status_code=400, detail="plant_id y period_date son requeridos")
    _validate(data)
    values = {k: v for k, v in data.items() if k not in ("plant_id", "period_date")}
    for k in OPEX_COST_COLUMNS:
        if values.get(k) is None:
            values[k] = 0.0
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "plants", data["plant_id"], "Planta no encontrada")
        existing = cur.execute(
            "SELECT * FROM opex_costs WHERE plant_id=? AND period_date=?", (data["plant_id"], data["period_date"])
        ).fetchone()
        if existing:
            opex_id = existing["id"]
            update_row(cur, "opex_costs", opex_id, values)
            response.status_code = 200
            log_ledger(cur, "opex_costs", "UPDATE", opex_id, {"values": values}, current_user)
        else:
            opex_id = insert_row(cur, "opex_costs", {**data, **values})
            log_ledger(cur, "opex_costs", "CREATE", opex_id, {"values": data}, current_user)
        con.commit()
        return _with_total(fetch_or_404(cur, "opex_costs", opex_id, "Registro OPEX no encontrado"))


@router.put("/{opex_id}")
def update_opex(opex_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    payload = _with_period(payload)
    update = normalize_payload(payload, OPEX_FIELDS)
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    _validate(update)
    with connect() as con:
        cur = con.cursor()
        before = fetch_or_404(cur, "opex_costs", opex_id, "Registro OPEX no encontrado")
        try:
            update_row(cur, "opex_costs", opex_id, update)
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, "Ya existe un registro para esa planta y periodo")
        after = fetch_or_404(cur, "opex_costs", opex_id, "Registro OPEX no encontrado")
        log_ledger(cur, "opex_costs", "UPDATE", opex_id, {"diff": diff_rows(before, after)}, current_user)
        con.commit()
        return _with_total(after)


@router.delete("/{opex_id}")
def delete_opex(opex_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "opex_costs", opex_id, "Registro OPEX no encontrado")
        cur.execute("DELETE FROM opex_costs WHERE id=?", (opex_id,))
        log_ledger(cur, "opex_costs", "DELETE", opex_id, {}, current_user)
        con.commit()
    return {"id": opex_id, "deleted": True}
