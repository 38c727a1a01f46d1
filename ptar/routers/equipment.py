import sqlite3
from datetime import date
from typing import Any, Dict, List, Optional

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
    now_iso,
    today_iso,
    update_row,
)

router = APIRouter(prefix="/equipment", tags=["equipment"])

CATEGORIES = ("difusores", "ductos", "cuadro_electrico", "lamelas", "motores", "sensores", "tanques", "valvulas", "otros")
EQUIPMENT_FIELDS = {
    "plant_id": "int",
    "item_code": "text",
    "description": "text",
    "reference": "text",
    "location": "text",
    "quantity": "int",
    "category": "text",
    "daily_check": "text",
    "monthly_check": "text",
    "quarterly_check": "text",
    "biannual_check": "text",
    "annual_check": "text",
    "time_based_reference": "text",
    "spare_parts": "text",
    "extras": "text",
}
LOG_FIELDS = {
    "maintenance_type": "text",
    "operation": "text",
    "maintenance_date": "date",
    "description_averia": "text",
    "description_realizado": "text",
    "next_maintenance_date": "date",
    "operator_name": "text",
    "responsible_name": "text",
}
LOG_TYPES = ("preventivo", "correctivo")

# frequency -> (check column, months of the year scheduled)
PLAN_FREQUENCIES = {
    "mensual": ("monthly_check", list(range(1, 13))),
    "trimestral": ("quarterly_check", [3, 6, 9, 12]),
    "semestral": ("biannual_check", [6, 12]),
    "anual": ("annual_check", [12]),
}
PLAN_DAY = 15

SCHEDULED_SELECT = """
    SELECT esm.*, e.item_code, e.description AS equipment_description, e.category, e.plant_id
    FROM equipment_scheduled_maintenance esm
    JOIN equipment e ON e.id = esm.equipment_id
"""


def _validate(data: Dict[str, Any]) -> None:
    check_choice(data.get("category"), CATEGORIES, "category")
    if data.get("quantity") is not None and data["quantity"] < 0:
        raise HTTPException(status_code=400, detail="quantity no puede ser negativo")


@router.get("")
def list_equipment(
    plant_id: Optional[int] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    current_user: Dict[str, Any] = Depends(require_user),
):
    q = "SELECT e.*, p.name AS plant_name FROM equipment e JOIN plants p ON p.id = e.plant_id WHERE 1=1"
    params: Dict[str, Any] = {}
    if plant_id:
        q += " AND e.plant_id = :pid"
        params["pid"] = plant_id
    if category:
        q += " AND e.category = :cat"
        params["cat"] = category
    if search:
        q += " AND (e.item_code LIKE :kw OR e.description LIKE :kw)"
        params["kw"] = f"%{search}%"
    q += " ORDER BY p.name, e.category, e.item_code"
    with connect() as con:
        return rows_to_dicts(con.execute(q, params).fetchall())


@router.get("/plant/{plant_id}")
def list_plant_equipment(plant_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        rows = con.execute(
            "SELECT * FROM equipment WHERE plant_id=? ORDER BY category, item_code", (plant_id,)
        ).fetchall()
        return rows_to_dicts(rows)


# ---------------------- Scheduled maintenance plan ----------------------


def generate_year_plan(cur, plant_id: int, year: int) -> int:
    """Schedule every periodic check of the plant's equipment on the 15th of its months.

    Only frequencies with a check text are planned; dates already planned are kept.
    """
    created = 0
    equipment = cur.execute("SELECT * FROM equipment WHERE plant_id=?", (plant_id,)).fetchall()
    for e in equipment:
        for frequency, (column, months) in PLAN_FREQUENCIES.items():
            check_text = e[column]
            if not check_text:
                continue
            for month in months:
                cur.execute(
                    """
                    INSERT OR IGNORE INTO equipment_scheduled_maintenance
                        (equipment_id, frequency, scheduled_date, description, year, status)
                    VALUES (?,?,?,?,?, 'pending')
                    """,
                    (e["id"], frequency, date(year, month, PLAN_DAY).isoformat(), check_text, year),
                )
                created += cur.rowcount
    return created


def update_scheduled_overdue(cur) -> None:
    cur.execute(
        """
        UPDATE equipment_scheduled_maintenance SET status='overdue'
        WHERE status='pending' AND scheduled_date < ?
        """,
        (today_iso(),),
    )


@router.get("/scheduled/plant/{plant_id}/{year}")
def scheduled_for_plant(plant_id: int, year: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        cur = con.cursor()
        update_scheduled_overdue(cur)
        con.commit()
        rows = cur.execute(
            SCHEDULED_SELECT + " WHERE e.plant_id=? AND esm.year=? ORDER BY esm.scheduled_date, e.item_code",
            (plant_id, year),
        ).fetchall()
    items = rows_to_dicts(rows)
    summary = {s: sum(1 for i in items if i["status"] == s) for s in ("pending", "completed", "overdue")}
    return {"plant_id": plant_id, "year": year, "items": items, "summary": {"total": len(items), **summary}}


@router.post("/scheduled/generate/{plant_id}/{year}")
def generate_plan(plant_id: int, year: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    if not 2000 <= year <= 2100:
        raise HTTPException(status_code=400, detail="Año inválido")
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "plants", plant_id, "Planta no encontrada")
        created = generate_year_plan(cur, plant_id, year)
        log_ledger(cur, "equipment_scheduled_maintenance", "GENERATE", None, {"plant_id": plant_id, "year": year, "created": created}, current_user)
        con.commit()
    return {"message": f"Plan {year} generado: {created} mantenimientos programados", "created": created}


@router.delete("/scheduled/plant/{plant_id}/{year}")
def delete_plan(plant_id: int, year: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        cur.execute(
            """
            DELETE FROM equipment_scheduled_maintenance
            WHERE year=? AND equipment_id IN (SELECT id FROM equipment WHERE plant_id=?)
            """,
            (year, plant_id),
        )
        deleted = cur.rowcount
        log_ledger(cur, "equipment_scheduled_maintenance", "DELETE_PLAN", None, {"plant_id": plant_id, "year": year, "deleted": deleted}, current_user)
        con.commit()
    return {"deleted": deleted}


@router.put("/scheduled/{scheduled_id}/complete")
def complete_scheduled(scheduled_id: int, payload: Optional[Dict[str, Any]] = None, current_user: Dict[str, Any] = Depends(require_user)):
    notes = (payload or {}).get("notes")
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "equipment_scheduled_maintenance", scheduled_id, "Mantenimiento programado no encontrado")
        cur.execute(
            """
            UPDATE equipment_scheduled_maintenance
            SET status='completed', completed_date=?, completed_by=?, notes=COALESCE(?, notes)
            WHERE id=?
            """,
            (now_iso(), current_user["name"], notes, scheduled_id),
        )
        log_ledger(cur, "equipment_scheduled_maintenance", "COMPLETE", scheduled_id, {"notes": notes}, current_user)
        con.commit()
        return fetch_or_404(cur, "equipment_scheduled_maintenance", scheduled_id, "Mantenimiento programado no encontrado")


@router.put("/scheduled/{scheduled_id}/pending")
def revert_scheduled(scheduled_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "equipment_scheduled_maintenance", scheduled_id, "Mantenimiento programado no encontrado")
        cur.execute(
            """
            UPDATE equipment_scheduled_maintenance
            SET status='pending', completed_date=NULL, completed_by=NULL
            WHERE id=?
            """,
            (scheduled_id,),
        )
        log_ledger(cur, "equipment_scheduled_maintenance", "PENDING", scheduled_id, {}, current_user)
        con.commit()
        return fetch_or_404(cur, "equipment_scheduled_maintenance", scheduled_id, "Mantenimiento programado no encontrado")


@router.put("/scheduled/{scheduled_id}/date")
def move_scheduled(scheduled_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    """Move a planned maintenance; a row already planned on the target date is replaced."""
    data = normalize_payload(payload, {"scheduled_date": "date"})
    new_date = data.get("scheduled_date")
    if not new_date:
        raise HTTPException(status_code=400, detail="scheduled_date es requerido")
    with connect() as con:
        cur = con.cursor()
        row = fetch_or_404(cur, "equipment_scheduled_maintenance", scheduled_id, "Mantenimiento programado no encontrado")
        cur.execute(
            """
            DELETE FROM equipment_scheduled_maintenance
            WHERE equipment_id=? AND frequency=? AND scheduled_date=? AND id<>?
            """,
            (row["equipment_id"], row["frequency"], new_date, scheduled_id),
        )
        status = "pending" if row["status"] == "overdue" and new_date >= today_iso() else row["status"]
        cur.execute(
            "UPDATE equipment_scheduled_maintenance SET scheduled_date=?, year=?, status=? WHERE id=?",
            (new_date, int(new_date[:4]), status, scheduled_id),
        )
        log_ledger(cur, "equipment_scheduled_maintenance", "RESCHEDULE", scheduled_id, {"from": row["scheduled_date"], "to": new_date}, current_user)
        con.commit()
        return fetch_or_404(cur, "equipment_scheduled_maintenance", scheduled_id, "Mantenimiento programado no encontrado")


@router.get("/scheduled/{equipment_id}/{year}")
def scheduled_for_equipment(equipment_id: int, year: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        rows = con.execute(
            SCHEDULED_SELECT + " WHERE esm.equipment_id=? AND esm.year=? ORDER BY esm.scheduled_date",
            (equipment_id, year),
        ).fetchall()
        return rows_to_dicts(rows)


@router.delete("/scheduled/{scheduled_id}")
def delete_scheduled(scheduled_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "equipment_scheduled_maintenance", scheduled_id, "Mantenimiento programado no encontrado")
        cur.execute("DELETE FROM equipment_scheduled_maintenance WHERE id=?", (scheduled_id,))
        con.commit()
    return {"id": scheduled_id, "deleted": True}


# ---------------------- Maintenance log ----------------------


@router.get("/logs/{log_id}")
def get_log(log_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        return fetch_or_404(con.cursor(), "equipment_maintenance_log", log_id, "Registro no encontrado")


@router.put("/logs/{log_id}")
def update_log(log_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_user)):
    update = normalize_payload(payload, LOG_FIELDS)
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    check_choice(update.get("maintenance_type"), LOG_TYPES, "maintenance_type")
    with connect() as con:
        cur = con.cursor()
        before = fetch_or_404(cur, "equipment_maintenance_log", log_id, "Registro no encontrado")
        update_row(cur, "equipment_maintenance_log", log_id, update, touch=False)
        after = fetch_or_404(cur, "equipment_maintenance_log", log_id, "Registro no encontrado")
        log_ledger(cur, "equipment_maintenance_log", "UPDATE", log_id, {"diff": diff_rows(before, after)}, current_user)
        con.commit()
        return after


@router.delete("/logs/{log_id}")
def delete_log(log_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "equipment_maintenance_log", log_id, "Registro no encontrado")
        cur.execute("DELETE FROM equipment_maintenance_log WHERE id=?", (log_id,))
        log_ledger(cur, "equipment_maintenance_log", "DELETE", log_id, {}, current_user)
        con.commit()
    return {"id": log_id, "deleted": True}


@router.get("/{equipment_id}/logs")
def list_logs(equipment_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "equipment", equipment_id, "Equipo no encontrado")
        rows = cur.execute(
            "SELECT * FROM equipment_maintenance_log WHERE equipment_id=? ORDER BY maintenance_date DESC, id DESC",
            (equipment_id,),
        ).fetchall()
        return rows_to_dicts(rows)


@router.post("/{equipment_id}/logs", status_code=201)
def create_log(equipment_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_user)):
    data = normalize_payload(payload, LOG_FIELDS)
    if not data.get("maintenance_type") or not data.get("maintenance_date"):
        raise HTTPException(status_code=400, detail="maintenance_type y maintenance_date son requeridos")
    check_choice(data["maintenance_type"], LOG_TYPES, "maintenance_type")
    data.setdefault("operator_name", current_user["name"])
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "equipment", equipment_id, "Equipo no encontrado")
        log_id = insert_row(cur, "equipment_maintenance_log", {**data, "equipment_id": equipment_id})
        log_ledger(cur, "equipment_maintenance_log", "CREATE", log_id, {"values": data}, current_user)
        con.commit()
        return fetch_or_404(cur, "equipment_maintenance_log", log_id, "Registro no encontrado")


# ---------------------- Equipment CRUD ----------------------


@router.get("/{equipment_id}")
def get_equipment(equipment_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        return fetch_or_404(con.cursor(), "equipment", equipment_id, "Equipo no encontrado")


@router.post("", status_code=201)
def create_equipment(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    data = normalize_payload(payload, EQUIPMENT_FIELDS)
    if not data.get("plant_id") or not data.get("item_code") or not data.get("description"):
        raise HTTPException(status_code=400, detail="plant_id, item_code y description son requeridos")
    data.setdefault("category", "otros")
    _validate(data)
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "plants", data["plant_id"], "Planta no encontrada")
        equipment_id = insert_row(cur, "equipment", data)
        log_ledger(cur, "equipment", "CREATE", equipment_id, {"values": data}, current_user)
        con.commit()
        return fetch_or_404(cur, "equipment", equipment_id, "Equipo no encontrado")


@router.put("/{equipment_id}")
def update_equipment(equipment_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    update = normalize_payload(payload, EQUIPMENT_FIELDS)
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    _validate(update)
    with connect() as con:
        cur = con.cursor()
        before = fetch_or_404(cur, "equipment", equipment_id, "Equipo no encontrado")
        try:
            update_row(cur, "equipment", equipment_id, update)
        except sqlite3.IntegrityError as e:
            raise integrity_error(e, "Conflicto al actualizar el equipo")
        after = fetch_or_404(cur, "equipment", equipment_id, "Equipo no encontrado")
        log_ledger(cur, "equipment", "UPDATE", equipment_id, {"diff": diff_rows(before, after)}, current_user)
        con.commit()
        return after


@router.delete("/{equipment_id}")
def delete_equipment(equipment_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        e = fetch_or_404(cur, "equipment", equipment_id, "Equipo no encontrado")
        cur.execute("DELETE FROM equipment WHERE id=?", (equipment_id,))
        log_ledger(cur, "equipment", "DELETE", equipment_id, {"item_code": e["item_code"]}, current_user)
        con.commit()
    return {"id": equipment_id, "deleted": True}
