import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from ...db import rows_to_dicts
from ...routers.checklist import GENERAL_CHECKS, ITEM_COUNTS, ITEM_FIELDS, progress_percent
from ...utils import add_days, insert_row, normalize_payload, now_iso, today_iso
from ..security import WRITE_ROLES, fetch_owned, record_audit, require_access, saas_connect
from .notifications import notify_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checklist", tags=["checklist"])

read = require_access("checklist:read")
write = require_access("checklist:write", *WRITE_ROLES)


def _operator(ctx: Dict[str, Any]) -> str:
    return (ctx["user"] or {}).get("name") or "API"


def _items(cur, checklist_id: int) -> List[Dict[str, Any]]:
    return rows_to_dicts(cur.execute(
        "SELECT * FROM daily_checklist_items WHERE checklist_id=? ORDER BY id", (checklist_id,)
    ).fetchall())


def _with_progress(checklist: Dict[str, Any], items: List[Dict[str, Any]]) -> Dict[str, Any]:
    total = len(items)
    checked = sum(1 for i in items if i["is_checked"])
    return {
        "checklist": checklist,
        "items": items,
        "total": total,
        "checked": checked,
        "red_flags": sum(1 for i in items if i["is_red_flag"]),
        "progress": progress_percent(checked, total),
    }


def today_for_plant(cur, org_id: int, plant_id: int, operator_name: str) -> Dict[str, Any]:
    """Today's checklist for the plant, seeded with the general checks on first access."""
    today = today_iso()
    row = cur.execute(
        "SELECT * FROM daily_checklists WHERE plant_id=? AND organization_id=? AND check_date=?",
        (plant_id, org_id, today),
    ).fetchone()
    if row:
        return dict(row)
    checklist_id = insert_row(cur, "daily_checklists", {
        "organization_id": org_id,
        "plant_id": plant_id,
        "check_date": today,
        "operator_name": operator_name,
    })
    for description, category in GENERAL_CHECKS:
        insert_row(cur, "daily_checklist_items", {
            "organization_id": org_id,
            "checklist_id": checklist_id,
            "item_description": description,
            "category": category,
        })
    logger.info("Checklist %s created for plant %s of organization %s", checklist_id, plant_id, org_id)
    return fetch_owned(cur, "daily_checklists", org_id, checklist_id, "Checklist no encontrado")


@router.get("/today/{plant_id}")
def today_checklist(plant_id: int, ctx: Dict[str, Any] = Depends(write)):
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        fetch_owned(cur, "plants", org_id, plant_id, "Planta no encontrada")
        checklist = today_for_plant(cur, org_id, plant_id, _operator(ctx))
        con.commit()
        return _with_progress(checklist, _items(cur, checklist["id"]))


@router.patch("/item/{item_id}")
def update_item(item_id: int, payload: Dict[str, Any], ctx: Dict[str, Any] = Depends(write)):
    update = normalize_payload(payload, ITEM_FIELDS)
    if not update:
        raise HTTPException(status_code=400, detail="No hay cambios")
    if "is_checked" in update:
        update["checked_at"] = now_iso() if update["is_checked"] else None
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        item = fetch_owned(cur, "daily_checklist_items", org_id, item_id, "Item no encontrado")
        checklist = fetch_owned(cur, "daily_checklists", org_id, item["checklist_id"], "Checklist no encontrado")
        sets = ", ".join(f"{k}=:{k}" for k in update)
        cur.execute(f"UPDATE daily_checklist_items SET {sets} WHERE id=:id", {**update, "id": item_id})
        if update.get("is_red_flag") == 1 and not item["is_red_flag"]:
            plant = fetch_owned(cur, "plants", org_id, checklist["plant_id"], "Planta no encontrada")
            notify_roles(
                cur, org_id,
                f"Bandera roja en {plant['name']}",
                update.get("red_flag_comment") or item["item_description"],
                "warning",
            )
            logger.warning("Red flag raised on plant %s: %s", checklist["plant_id"], item["item_description"])
        con.commit()
        return fetch_owned(cur, "daily_checklist_items", org_id, item_id, "Item no encontrado")


@router.post("/{checklist_id}/complete")
def complete_checklist(
    request: Request,
    checklist_id: int,
    payload: Optional[Dict[str, Any]] = None,
    ctx: Dict[str, Any] = Depends(write),
):
    notes = (payload or {}).get("notes")
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        checklist = fetch_owned(cur, "daily_checklists", org_id, checklist_id, "Checklist no encontrado")
        if checklist["completed_at"]:
            raise HTTPException(status_code=400, detail="El checklist ya fue completado")
        cur.execute(
            "UPDATE daily_checklists SET completed_at=?, notes=?, updated_at=datetime('now') WHERE id=?",
            (now_iso(), notes, checklist_id),
        )
        stats = dict(cur.execute(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(is_checked), 0) AS checked,
                   COALESCE(SUM(is_red_flag), 0) AS red_flags
            FROM daily_checklist_items WHERE checklist_id=?
            """,
            (checklist_id,),
        ).fetchone())
        record_audit(cur, ctx, "checklist.completed", "checklist", checklist_id, new_value=stats, request=request)
        con.commit()
    return {"message": "Checklist completado", **stats, "progress": progress_percent(stats["checked"], stats["total"])}


@router.get("/summary")
def today_summary(ctx: Dict[str, Any] = Depends(read)):
    """Today's status for each active plant of the organization; plants without a checklist have null ids."""
    with saas_connect() as con:
        rows = con.execute(
            f"""
            SELECT p.id AS plant_id, p.name AS plant_name, dc.id AS checklist_id,
                   dc.completed_at, dc.operator_name, {ITEM_COUNTS}
            FROM plants p
            LEFT JOIN daily_checklists dc ON dc.plant_id = p.id AND dc.check_date = ?
            WHERE p.organization_id = ? AND p.status = 'active'
            ORDER BY p.name
            """,
            (today_iso(), ctx["org"]["id"]),
        ).fetchall()
        return rows_to_dicts(rows)


@router.get("/history/{plant_id}")
def checklist_history(plant_id: int, days: int = 30, ctx: Dict[str, Any] = Depends(read)):
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        fetch_owned(cur, "plants", org_id, plant_id, "Planta no encontrada")
        rows = cur.execute(
            f"""
            SELECT dc.*, {ITEM_COUNTS}
            FROM daily_checklists dc
            WHERE dc.plant_id=? AND dc.organization_id=? AND dc.check_date >= ?
            ORDER BY dc.check_date DESC
            """,
            (plant_id, org_id, add_days(today_iso(), -days)),
        ).fetchall()
        return rows_to_dicts(rows)


@router.get("/{checklist_id}")
def get_checklist(checklist_id: int, ctx: Dict[str, Any] = Depends(read)):
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        checklist = fetch_owned(cur, "daily_checklists", org_id, checklist_id, "Checklist no encontrado")
        return _with_progress(checklist, _items(cur, checklist_id))
