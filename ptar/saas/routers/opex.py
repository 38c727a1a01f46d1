import sqlite3
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from ...db import rows_to_dicts
from ...utils import check_choice, insert_row, integrity_error, normalize_payload, update_row
from ..security import MANAGER_ROLES, WRITE_ROLES, audit_changes, fetch_owned, record_audit, require_access, saas_connect

router = APIRouter(prefix="/opex", tags=["opex"])

CATEGORIES = [
    ("chemicals", "Químicos"),
    ("electricity", "Electricidad"),
    ("maintenance", "Mantenimiento"),
    ("labor", "Mano de obra"),
    ("supplies", "Suministros"),
    ("sludge", "Disposición de lodos"),
    ("testing", "Análisis y pruebas"),
    ("other", "Otros"),
]
CATEGORY_IDS = [c[0] for c in CATEGORIES]
OPEX_FIELDS = {
    "plant_id": "int",
    "year": "int",
    "month": "int",
    "category": "text",
    "description": "text",
    "amount": "float",
    "currency": "text",
    "volume_m3": "float",
    "cost_per_m3": "float",
}
REQUIRED = ("plant_id", "year", "month", "category", "amount")

read = require_access("opex:read")
write = require_access("opex:write", *WRITE_ROLES)


def _validate(data: Dict[str, Any]) -> None:
    check_choice(data.get("category"), CATEGORY_IDS, "category")
    if data.get("year") is not None and not 2000 <= data["year"] <= 2100:
        raise HTTPException(status_code=400, detail="year debe estar entre 2000 y 2100")
    if data.get("month") is not None and not 1 <= data["month"] <= 12:
        raise HTTPException(status_code=400, detail="month debe estar entre 1 y 12")
    for k in ("amount", "volume_m3", "cost_per_m3"):
        if data.get(k) is not None and data[k] < 0:
            raise HTTPException(status_code=400, detail=f"{k} no puede ser negativo")
    if data.get("currency") is not None:
        if len(data["currency"]) != 3:
            raise HTTPException(status_code=400, detail="currency debe ser un código de 3 letras")
        data["currency"] = data["currency"].upper()


def _entry(payload: Dict[str, Any]) -> Dict[str, Any]:
    data = normalize_payload(payload, OPEX_FIELDS)
    missing = [k for k in REQUIRED if data.get(k) is None]
    if missing:
        raise HTTPException(status_code=400, detail=f"Campos requeridos: {', '.join(missing)}")
    _validate(data)
    if data.get("cost_per_m3") is None and data.get("volume_m3"):
        data["cost_per_m3"] = round(data["amount"] / data["volume_m3"], 4)
    return data


def _totals(cur, org_id: int, year: int, plant_id: Optional[int], group: str) -> List[Dict[str, Any]]:
    q = f"""
        SELECT {group}, COUNT(*) AS entries, SUM(amount) AS total_amount, SUM(volume_m3) AS total_volume
        FROM opex_costs WHERE organization_id=:org AND year=:year
    """
    params: Dict[str, Any] = {"org": org_id, "year": year}
    if plant_id is not None:
        q += " AND plant_id=:pid"
        params["pid"] = plant_id
    q += f" GROUP BY {group} ORDER BY {group}"
    return rows_to_dicts(cur.execute(q, params).fetchall())


@router.get("/categories")
def list_categories(ctx: Dict[str, Any] = Depends(read)):
    return [{"id": k, "name": name} for k, name in CATEGORIES]


@router.get("")
def list_opex(
    plant_id: Optional[int] = None,
    year: Optional[int] = None,
    month: Optional[int] = None,
    category: Optional[str] = None,
    ctx: Dict[str, Any] = Depends(read),
):
    q = """
        SELECT o.*, p.name AS plant_name
        FROM opex_costs o JOIN plants p ON p.id = o.plant_id
        WHERE o.organization_id = :org
    """
    params: Dict[str, Any] = {"org": ctx["org"]["id"]}
    for column, value in (("plant_id", plant_id), ("year", year), ("month", month), ("category", category)):
        if value is not None:
            q += f" AND o.{column} = :{column}"
            params[column] = value
    q += " ORDER BY o.year DESC, o.month DESC, p.name, o.category"
    with saas_connect() as con:
        return rows_to_dicts(con.execute(q, params).fetchall())


@router.get("/summary")
def opex_summary(year: Optional[int] = None, plant_id: Optional[int] = None, ctx: Dict[str, Any] = Depends(read)):
    """Spend per category and month for one year, with the overall cost per m³."""
    year = year or date.today().year
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        if plant_id is not None:
            fetch_owned(cur, "plants", org_id, plant_id, "Planta no encontrada")
        by_category = {r["category"]: r for r in _totals(cur, org_id, year, plant_id, "category")}
        monthly = _totals(cur, org_id, year, plant_id, "month")
        plants = cur.execute(
            "SELECT COUNT(DISTINCT plant_id) AS n FROM opex_costs WHERE organization_id=? AND year=?", (org_id, year)
        ).fetchone()["n"]
    total_spent = sum(r["total_amount"] or 0 for r in by_category.values())
    total_volume = sum(r["total_volume"] or 0 for r in by_category.values())
    return {
        "year": year,
        "total_spent": round(total_spent, 2),
        "total_volume": total_volume,
        "avg_cost_per_m3": round(total_spent / total_volume, 4) if total_volume > 0 else 0,
        "plants_count": plants,
        "categories": [
            {
                "id": k,
                "name": name,
                "amount": (by_category.get(k) or {}).get("total_amount") or 0,
                "volume": (by_category.get(k) or {}).get("total_volume") or 0,
                "entries": (by_category.get(k) or {}).get("entries") or 0,
            }
            for k, name in CATEGORIES
        ],
        "monthly_trend": [
            {"month": r["month"], "amount": r["total_amount"] or 0, "volume": r["total_volume"] or 0} for r in monthly
        ],
    }


@router.get("/{opex_id}")
def get_opex(opex_id: int, ctx: Dict[str, Any] = Depends(read)):
    with saas_connect() as con:
        return fetch_owned(con.cursor(), "opex_costs", ctx["org"]["id"], opex_id, "Registro OPEX no encontrado")


@router.post("", status_code=201)
def create_opex(request: Request, payload: Dict[str, Any], ctx: Dict[str, Any] = Depends(write)):
    data = _entry(payload)
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        fetch_owned(cur, "plants", org_id, data["plant_id"], "Planta no encontrada")
        try:
            opex_id = insert_row(cur, "opex_costs", {**data, "organization_id": org_id})
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, "Registro OPEX duplicado")
        record_audit(cur, ctx, "opex.created", "opex", opex_id,
                     new_value={k: data.get(k) for k in ("category", "amount", "year", "month")}, request=request)
        con.commit()
        return fetch_owned(cur, "opex_costs", org_id, opex_id, "Registro OPEX no encontrado")


@router.post("/import", status_code=201)
def import_opex(request: Request, payload: Dict[str, Any], ctx: Dict[str, Any] = Depends(require_access("opex:write", *MANAGER_ROLES))):
    """All records are validated before any is written; one bad record rejects the batch."""
    records = payload.get("records")
    if not isinstance(records, list) or not records:
        raise HTTPException(status_code=400, detail="records debe ser una lista no vacía")
    entries = []
    for n, record in enumerate(records, start=1):
        if not isinstance(record, dict):
            raise HTTPException(status_code=400, detail=f"Registro {n}: formato inválido")
        try:
            entries.append(_entry(record))
        except HTTPException as e:
            raise HTTPException(status_code=400, detail=f"Registro {n}: {e.detail}")
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        for plant_id in {e["plant_id"] for e in entries}:
            fetch_owned(cur, "plants", org_id, plant_id, f"Planta {plant_id} no encontrada")
        for e in entries:
            insert_row(cur, "opex_costs", {**e, "organization_id": org_id})
        record_audit(cur, ctx, "opex.bulk_import", "opex", new_value={"count": len(entries)}, request=request)
        con.commit()
    return {"imported": len(entries)}


@router.patch("/{opex_id}")
def update_opex(request: Request, opex_id: int, payload: Dict[str, Any], ctx: Dict[str, Any] = Depends(write)):
    update = normalize_payload(payload, OPEX_FIELDS)
    update.pop("plant_id", None)
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    _validate(update)
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        before = fetch_owned(cur, "opex_costs", org_id, opex_id, "Registro OPEX no encontrado")
        if "cost_per_m3" not in update and ("amount" in update or "volume_m3" in update):
            amount = update.get("amount", before["amount"])
            volume = update.get("volume_m3", before["volume_m3"])
            update["cost_per_m3"] = round(amount / volume, 4) if volume else None
        try:
            update_row(cur, "opex_costs", opex_id, update)
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, "Registro OPEX duplicado")
        after = fetch_owned(cur, "opex_costs", org_id, opex_id, "Registro OPEX no encontrado")
        record_audit(cur, ctx, "opex.updated", "opex", opex_id, *audit_changes(before, after), request)
        con.commit()
    return after


@router.delete("/{opex_id}")
def delete_opex(request: Request, opex_id: int, ctx: Dict[str, Any] = Depends(require_access("opex:write", *MANAGER_ROLES))):
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        row = fetch_owned(cur, "opex_costs", org_id, opex_id, "Registro OPEX no encontrado")
        cur.execute("DELETE FROM opex_costs WHERE id=? AND organization_id=?", (opex_id, org_id))
        record_audit(cur, ctx, "opex.deleted", "opex", opex_id,
                     old_value={k: row[k] for k in ("category", "amount", "year", "month")}, request=request)
        con.commit()
    return {"id": opex_id, "deleted": True}
