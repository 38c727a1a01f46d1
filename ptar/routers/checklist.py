import logging
import sqlite3
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool

from ..auth import ensure_plant_access, require_role, require_user
from ..db import connect, rows_to_dicts
from ..measurements import (
    fetch_numeric_items,
    infer_parameter,
    infer_stream,
    operational_report,
    parameter_report,
    to_analytics,
)
from ..template_sync import (
    EXCEL_EXTENSIONS,
    convert_excel_to_csv,
    group_items,
    parse_csv_content,
    unique_in_order,
)
from ..utils import (
    add_days,
    fetch_or_404,
    insert_row,
    integrity_error,
    log_ledger,
    normalize_payload,
    now_iso,
    safe_filename,
    store_upload,
    to_flag,
    today_iso,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checklist", tags=["checklist"])

GENERAL_CHECKS = [
    ("Inspección visual del estado general de la planta", "general"),
    ("Verificar niveles de agua en todos los tanques", "tanques"),
    ("Revisar olores anormales o condiciones inusuales", "general"),
    ("Verificar funcionamiento de todos los equipos en operación", "motores"),
    ("Revisar indicadores y alarmas del cuadro eléctrico", "cuadro_electrico"),
]

ITEM_FIELDS = {
    "is_checked": "flag",
    "is_red_flag": "flag",
    "red_flag_comment": "text",
    "observation": "text",
    "numeric_value": "float",
}

ITEM_COUNTS = """
    (SELECT COUNT(*) FROM daily_checklist_items WHERE checklist_id = dc.id) AS total_items,
    (SELECT COUNT(*) FROM daily_checklist_items WHERE checklist_id = dc.id AND is_checked = 1) AS checked_items,
    (SELECT COUNT(*) FROM daily_checklist_items WHERE checklist_id = dc.id AND is_red_flag = 1) AS red_flag_count
"""


def _since(days: int) -> str:
    return add_days(today_iso(), -days)


def progress_percent(checked: int, total: int) -> int:
    """Percentage of checked items, halves rounded up."""
    return int(checked * 100 / total + 0.5) if total else 0


def _group_by_section(items: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for item in items:
        grouped.setdefault(item.get("section") or "general", []).append(item)
    return grouped


def _checklist_items(cur, checklist_id: int) -> List[Dict[str, Any]]:
    rows = cur.execute(
        """
        SELECT ci.*, ti.requires_value, ti.value_unit AS template_unit
        FROM daily_checklist_items ci
        LEFT JOIN checklist_template_items ti ON ci.template_item_id = ti.id
        WHERE ci.checklist_id = ?
        ORDER BY ci.section, ci.id
        """,
        (checklist_id,),
    ).fetchall()
    return rows_to_dicts(rows)


def _template_items(cur, plant_id: int, template_id: Optional[int]) -> List[sqlite3.Row]:
    items: List[sqlite3.Row] = []
    if template_id:
        items = cur.execute(
            "SELECT * FROM checklist_template_items WHERE template_id=? ORDER BY display_order", (template_id,)
        ).fetchall()
    if not items:
        template = cur.execute(
            "SELECT id FROM checklist_templates WHERE plant_id=? AND is_active=1 ORDER BY id LIMIT 1", (plant_id,)
        ).fetchone()
        if template:
            template_id = template["id"]
            items = cur.execute(
                "SELECT * FROM checklist_template_items WHERE template_id=? ORDER BY display_order", (template_id,)
            ).fetchall()
    return items


def get_or_create_today(cur, plant_id: int, operator_name: str, template_id: Optional[int] = None) -> Dict[str, Any]:
    """Today's checklist for the plant, created from its template on first access."""
    today = today_iso()
    row = cur.execute(
        "SELECT * FROM daily_checklists WHERE plant_id=? AND check_date=?", (plant_id, today)
    ).fetchone()
    if row:
        return dict(row)

    items = _template_items(cur, plant_id, template_id)
    used_template = items[0]["template_id"] if items else None
    checklist_id = insert_row(cur, "daily_checklists", {
        "plant_id": plant_id,
        "template_id": used_template,
        "check_date": today,
        "operator_name": operator_name,
    })
    for item in items:
        insert_row(cur, "daily_checklist_items", {
            "checklist_id": checklist_id,
            "template_item_id": item["id"],
            "item_description": f"{item['element']}: {item['activity']}",
            "category": item["element"],
            "section": item["section"],
            "unit": item["value_unit"],
        })
    if not items:
        for description, category in GENERAL_CHECKS:
            insert_row(cur, "daily_checklist_items", {
                "checklist_id": checklist_id,
                "item_description": description,
                "category": category,
                "section": "general",
            })
    logger.info("Checklist %s created for plant %s (%s items)", checklist_id, plant_id, len(items) or len(GENERAL_CHECKS))
    return dict(cur.execute("SELECT * FROM daily_checklists WHERE id=?", (checklist_id,)).fetchone())


# ---------------------- Templates ----------------------


@router.get("/templates/{plant_id}")
def plant_templates(plant_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        rows = con.execute(
            """
            SELECT ct.*, (SELECT COUNT(*) FROM checklist_template_items WHERE template_id = ct.id) AS item_count
            FROM checklist_templates ct
            WHERE ct.plant_id=? AND ct.is_active=1
            ORDER BY ct.template_name
            """,
            (plant_id,),
        ).fetchall()
        return rows_to_dicts(rows)


@router.get("/template/{template_id}/items")
def template_items(template_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        cur = con.cursor()
        template = fetch_or_404(cur, "checklist_templates", template_id, "Template no encontrado")
        items = rows_to_dicts(cur.execute(
            "SELECT * FROM checklist_template_items WHERE template_id=? ORDER BY display_order", (template_id,)
        ).fetchall())
    return {"template": template, "items": items, "sections": _group_by_section(items)}


# ---------------------- Daily checklist ----------------------


@router.get("/today/{plant_id}")
def today_checklist(plant_id: int, template_id: Optional[int] = None, current_user: Dict[str, Any] = Depends(require_user)):
    ensure_plant_access(current_user, plant_id)
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "plants", plant_id, "Planta no encontrada")
        checklist = get_or_create_today(cur, plant_id, current_user.get("name") or "Operador", template_id)
        con.commit()
        items = _checklist_items(cur, checklist["id"])
    total = len(items)
    checked = sum(1 for i in items if i["is_checked"])
    return {
        "checklist": checklist,
        "items": _group_by_section(items),
        "total": total,
        "checked": checked,
        "red_flags": sum(1 for i in items if i["is_red_flag"]),
        "progress": progress_percent(checked, total),
    }


@router.patch("/item/{item_id}")
def update_item(item_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_user)):
    update = normalize_payload(payload, ITEM_FIELDS)
    if not update:
        raise HTTPException(status_code=400, detail="No hay cambios")
    if "is_checked" in update:
        update["checked_at"] = now_iso() if update["is_checked"] else None
    with connect() as con:
        cur = con.cursor()
        item = cur.execute(
            """
            SELECT ci.*, dc.plant_id, dc.operator_name
            FROM daily_checklist_items ci JOIN daily_checklists dc ON dc.id = ci.checklist_id
            WHERE ci.id=?
            """,
            (item_id,),
        ).fetchone()
        if not item:
            raise HTTPException(status_code=404, detail="Item no encontrado")
        ensure_plant_access(current_user, item["plant_id"])
        sets = ", ".join(f"{k}=:{k}" for k in update)
        cur.execute(f"UPDATE daily_checklist_items SET {sets} WHERE id=:id", {**update, "id": item_id})
        if update.get("is_red_flag") == 1:
            insert_row(cur, "red_flag_history", {
                "checklist_item_id": item_id,
                "checklist_id": item["checklist_id"],
                "plant_id": item["plant_id"],
                "operator_name": item["operator_name"],
                "section": item["section"] or "general",
                "element": item["category"] or "general",
                "activity": item["item_description"],
                "comment": update.get("red_flag_comment"),
                "photo_path": item["photo_path"],
                "flagged_by": current_user.get("name"),
            })
            logger.warning("Red flag raised on plant %s: %s", item["plant_id"], item["item_description"])
        con.commit()
        return dict(cur.execute("SELECT * FROM daily_checklist_items WHERE id=?", (item_id,)).fetchone())


@router.post("/item/{item_id}/photo")
async def upload_item_photo(item_id: int, photo: UploadFile = File(...), current_user: Dict[str, Any] = Depends(require_user)):
    content = await photo.read()
    if not content:
        raise HTTPException(status_code=400, detail="No se proporcionó una foto")
    if photo.content_type and not photo.content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="Solo se permiten imágenes")
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "daily_checklist_items", item_id, "Item no encontrado")
        path = store_upload("checklist-photos", photo.filename, content)
        cur.execute("UPDATE daily_checklist_items SET photo_path=? WHERE id=?", (str(path), item_id))
        con.commit()
    return {"photo_path": str(path)}


@router.post("/{checklist_id}/complete")
def complete_checklist(checklist_id: int, payload: Optional[Dict[str, Any]] = None, current_user: Dict[str, Any] = Depends(require_user)):
    payload = payload or {}
    notes = payload.get("notes")
    notify = to_flag(payload.get("notify_supervisor", True)) != 0
    with connect() as con:
        cur = con.cursor()
        checklist = fetch_or_404(cur, "daily_checklists", checklist_id, "Checklist no encontrado")
        ensure_plant_access(current_user, checklist["plant_id"])
        cur.execute(
            "UPDATE daily_checklists SET completed_at=?, notes=?, updated_at=datetime('now') WHERE id=?",
            (now_iso(), notes, checklist_id),
        )
        stats = cur.execute(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(is_checked), 0) AS checked,
                   COALESCE(SUM(is_red_flag), 0) AS red_flags
            FROM daily_checklist_items WHERE checklist_id=?
            """,
            (checklist_id,),
        ).fetchone()
        if notify:
            cur.execute(
                """
                INSERT OR REPLACE INTO supervisor_reports
                    (checklist_id, plant_id, report_date, operator_name, total_items, checked_items, red_flag_count, notes)
                VALUES (?,?,?,?,?,?,?,?)
                """,
                (checklist_id, checklist["plant_id"], today_iso(), current_user.get("name") or "Operador",
                 stats["total"], stats["checked"], stats["red_flags"], notes),
            )
        log_ledger(cur, "daily_checklists", "COMPLETE", checklist_id, dict(stats), current_user)
        con.commit()
    return {
        "message": "Checklist completado",
        "total": stats["total"],
        "checked": stats["checked"],
        "red_flags": stats["red_flags"],
        "report_sent": notify,
    }


@router.get("/history/{plant_id}")
def checklist_history(plant_id: int, days: int = 30, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        rows = con.execute(
            f"""
            SELECT dc.*, {ITEM_COUNTS}
            FROM daily_checklists dc
            WHERE dc.plant_id=? AND dc.check_date >= ?
            ORDER BY dc.check_date DESC
            """,
            (plant_id, _since(days)),
        ).fetchall()
        return rows_to_dicts(rows)


@router.get("/summary")
def today_summary(current_user: Dict[str, Any] = Depends(require_user)):
    """Today's checklist status for every active plant; plants without one have null ids."""
    with connect() as con:
        rows = con.execute(
            f"""
            SELECT p.id AS plant_id, p.name AS plant_name, dc.id AS checklist_id,
                   dc.completed_at, dc.operator_name, {ITEM_COUNTS}
            FROM plants p
            LEFT JOIN daily_checklists dc ON dc.plant_id = p.id AND dc.check_date = ?
            WHERE p.status = 'active'
            ORDER BY p.name
            """,
            (today_iso(),),
        ).fetchall()
        return rows_to_dicts(rows)


# ---------------------- Supervisor ----------------------


@router.get("/supervisor/all")
def supervisor_dashboard(
    days: int = 30,
    plant_id: Optional[int] = None,
    day: Optional[str] = None,
    current_user: Dict[str, Any] = Depends(require_user),
):
    since = _since(days)
    q = f"""
        SELECT dc.id, dc.plant_id, p.name AS plant_name, dc.check_date AS date,
               dc.operator_name, dc.completed_at, dc.notes, {ITEM_COUNTS}
        FROM daily_checklists dc JOIN plants p ON p.id = dc.plant_id
        WHERE dc.check_date >= :since
    """
    params: Dict[str, Any] = {"since": since}
    if plant_id:
        q += " AND dc.plant_id = :pid"
        params["pid"] = plant_id
    if day:
        q += " AND dc.check_date = :day"
        params["day"] = day[:10]
    q += " ORDER BY dc.check_date DESC, p.name"

    with connect() as con:
        cur = con.cursor()
        checklists = rows_to_dicts(cur.execute(q, params).fetchall())
        for cl in checklists:
            cl["progress"] = round(cl["checked_items"] * 100.0 / cl["total_items"], 1) if cl["total_items"] else None
            cl["items"] = rows_to_dicts(cur.execute(
                "SELECT * FROM daily_checklist_items WHERE checklist_id=? ORDER BY section, id", (cl["id"],)
            ).fetchall())

        flag_q = """
            SELECT rfh.*, p.name AS plant_name, dc.check_date AS date,
                   CASE WHEN rfh.resolved_at IS NULL THEN 'pending' ELSE 'resolved' END AS status
            FROM red_flag_history rfh
            JOIN plants p ON p.id = rfh.plant_id
            LEFT JOIN daily_checklists dc ON dc.id = rfh.checklist_id
            WHERE rfh.flagged_at >= :since
        """
        if plant_id:
            flag_q += " AND rfh.plant_id = :pid"
        red_flags = rows_to_dicts(cur.execute(flag_q + " ORDER BY rfh.flagged_at DESC", params if plant_id else {"since": since}).fetchall())

    operators: Dict[str, Dict[str, Any]] = {}
    for cl in checklists:
        op = operators.setdefault(cl["operator_name"], {
            "name": cl["operator_name"], "total_checklists": 0, "completed_checklists": 0,
            "red_flags_reported": 0, "last_activity": cl["date"], "_progress": [],
        })
        op["total_checklists"] += 1
        op["completed_checklists"] += 1 if cl["completed_at"] else 0
        op["red_flags_reported"] += cl["red_flag_count"]
        op["last_activity"] = max(op["last_activity"], cl["date"])
        if cl["progress"] is not None:
            op["_progress"].append(cl["progress"])
    operator_stats = []
    for op in operators.values():
        progress = op.pop("_progress")
        op["completion_rate"] = round(op["completed_checklists"] * 100.0 / op["total_checklists"], 1)
        op["avg_checklist_completion"] = round(sum(progress) / len(progress), 1) if progress else None
        operator_stats.append(op)
    operator_stats.sort(key=lambda o: (-o["completion_rate"], -o["total_checklists"]))

    trend: Dict[str, Dict[str, Any]] = {}
    for cl in checklists:
        t = trend.setdefault(cl["date"], {"date": cl["date"], "total_checklists": 0, "completed": 0, "red_flags": 0})
        t["total_checklists"] += 1
        t["completed"] += 1 if cl["completed_at"] else 0
        t["red_flags"] += cl["red_flag_count"]

    with_progress = [c["progress"] or 0 for c in checklists]
    return {
        "checklists": checklists,
        "red_flags": red_flags,
        "operator_stats": operator_stats,
        "trend": [trend[k] for k in sorted(trend)],
        "summary": {
            "total_checklists": len(checklists),
            "completed_checklists": sum(1 for c in checklists if c["completed_at"]),
            "total_red_flags": len(red_flags),
            "pending_red_flags": sum(1 for f in red_flags if f["status"] == "pending"),
            "active_operators": len(operators),
            "avg_completion_rate": round(sum(with_progress) / len(with_progress)) if with_progress else 0,
        },
    }


@router.get("/supervisor/reports")
def supervisor_reports(days: int = 30, plant_id: Optional[int] = None, current_user: Dict[str, Any] = Depends(require_user)):
    q = """
        SELECT sr.*, p.name AS plant_name, p.location AS plant_location
        FROM supervisor_reports sr JOIN plants p ON p.id = sr.plant_id
        WHERE sr.report_date >= :since
    """
    params: Dict[str, Any] = {"since": _since(days)}
    if plant_id:
        q += " AND sr.plant_id = :pid"
        params["pid"] = plant_id
    q += " ORDER BY sr.sent_at DESC, sr.id DESC"
    with connect() as con:
        return rows_to_dicts(con.execute(q, params).fetchall())


@router.get("/supervisor/report/{report_id}")
def supervisor_report(report_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        cur = con.cursor()
        report = cur.execute(
            """
            SELECT sr.*, p.name AS plant_name, p.location AS plant_location
            FROM supervisor_reports sr JOIN plants p ON p.id = sr.plant_id
            WHERE sr.id=?
            """,
            (report_id,),
        ).fetchone()
        if not report:
            raise HTTPException(status_code=404, detail="Reporte no encontrado")
        items = rows_to_dicts(cur.execute(
            "SELECT * FROM daily_checklist_items WHERE checklist_id=? ORDER BY section, id", (report["checklist_id"],)
        ).fetchall())
    return {"report": dict(report), "items": _group_by_section(items), "all_items": items}


@router.patch("/supervisor/report/{report_id}/read")
def mark_report_read(report_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "supervisor_reports", report_id, "Reporte no encontrado")
        cur.execute(
            "UPDATE supervisor_reports SET read_at=?, read_by=? WHERE id=?",
            (now_iso(), current_user.get("name") or "Supervisor", report_id),
        )
        con.commit()
    return {"message": "Reporte marcado como leído"}


# ---------------------- Red flags ----------------------


@router.get("/red-flags")
def red_flags(
    days: int = 30,
    plant_id: Optional[int] = None,
    resolved: Optional[bool] = None,
    current_user: Dict[str, Any] = Depends(require_user),
):
    since = _since(days)
    q = """
        SELECT rfh.*, p.name AS plant_name
        FROM red_flag_history rfh JOIN plants p ON p.id = rfh.plant_id
        WHERE rfh.flagged_at >= :since
    """
    stats_q = """
        SELECT COUNT(*) AS total,
               COALESCE(SUM(CASE WHEN resolved_at IS NULL THEN 1 ELSE 0 END), 0) AS pending,
               COALESCE(SUM(CASE WHEN resolved_at IS NOT NULL THEN 1 ELSE 0 END), 0) AS resolved
        FROM red_flag_history WHERE flagged_at >= :since
    """
    params: Dict[str, Any] = {"since": since}
    if plant_id:
        q += " AND rfh.plant_id = :pid"
        stats_q += " AND plant_id = :pid"
        params["pid"] = plant_id
    stats_params = dict(params)
    if resolved is True:
        q += " AND rfh.resolved_at IS NOT NULL"
    elif resolved is False:
        q += " AND rfh.resolved_at IS NULL"
    q += " ORDER BY rfh.flagged_at DESC, rfh.id DESC"
    with connect() as con:
        flags = rows_to_dicts(con.execute(q, params).fetchall())
        stats = dict(con.execute(stats_q, stats_params).fetchone())
    return {"red_flags": flags, "stats": stats}


@router.patch("/red-flag/{flag_id}/resolve")
def resolve_red_flag(flag_id: int, payload: Optional[Dict[str, Any]] = None, current_user: Dict[str, Any] = Depends(require_user)):
    notes = (payload or {}).get("resolution_notes")
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "red_flag_history", flag_id, "Red flag no encontrado")
        cur.execute(
            "UPDATE red_flag_history SET resolved_at=?, resolved_by=?, resolution_notes=? WHERE id=?",
            (now_iso(), current_user.get("name") or "Supervisor", notes, flag_id),
        )
        log_ledger(cur, "red_flag_history", "RESOLVE", flag_id, {"resolution_notes": notes}, current_user)
        con.commit()
    return {"message": "Red flag marcado como resuelto"}


@router.get("/stats")
def checklist_stats(days: int = 30, plant_id: Optional[int] = None, current_user: Dict[str, Any] = Depends(require_user)):
    params: Dict[str, Any] = {"since": _since(days)}
    plant_filter = ""
    if plant_id:
        plant_filter = " AND plant_id = :pid"
        params["pid"] = plant_id
    with connect() as con:
        completion = dict(con.execute(
            f"""
            SELECT COUNT(*) AS total_checklists,
                   COALESCE(SUM(CASE WHEN completed_at IS NOT NULL THEN 1 ELSE 0 END), 0) AS completed,
                   ROUND(AVG(CASE WHEN completed_at IS NOT NULL THEN 1.0 ELSE 0 END) * 100, 1) AS completion_rate
            FROM daily_checklists WHERE check_date >= :since{plant_filter}
            """,
            params,
        ).fetchone())
        flags = dict(con.execute(
            f"""
            SELECT COUNT(*) AS total_red_flags,
                   COALESCE(SUM(CASE WHEN resolved_at IS NULL THEN 1 ELSE 0 END), 0) AS pending,
                   COALESCE(SUM(CASE WHEN resolved_at IS NOT NULL THEN 1 ELSE 0 END), 0) AS resolved
            FROM red_flag_history WHERE flagged_at >= :since{plant_filter}
            """,
            params,
        ).fetchone())
        trend = rows_to_dicts(con.execute(
            f"""
            SELECT dc.check_date, COUNT(DISTINCT dc.id) AS checklists,
                   COUNT(DISTINCT CASE WHEN dc.completed_at IS NOT NULL THEN dc.id END) AS completed,
                   COALESCE(SUM(dci.is_red_flag), 0) AS red_flags
            FROM daily_checklists dc
            LEFT JOIN daily_checklist_items dci ON dci.checklist_id = dc.id
            WHERE dc.check_date >= :since{plant_filter.replace('plant_id', 'dc.plant_id')}
            GROUP BY dc.check_date
            ORDER BY dc.check_date
            """,
            params,
        ).fetchall())
    return {"completion": completion, "red_flags": flags, "trend": trend}


# ---------------------- Excel template sync ----------------------


async def _uploaded_csv(file: UploadFile) -> str:
    ext = Path(file.filename or "").suffix.lower()
    if ext not in EXCEL_EXTENSIONS:
        raise HTTPException(status_code=400, detail="Formato no soportado. Use archivos Excel (.xlsx, .xls, .xlsb, .ods) o CSV")
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="No se proporcionó un archivo")
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / safe_filename(file.filename)
        path.write_bytes(content)
        try:
            return await run_in_threadpool(convert_excel_to_csv, path)
        except ValueError as e:
            raise HTTPException(status_code=500, detail=str(e))


@router.post("/sync/upload")
async def sync_upload(
    plant_id: int = Form(...),
    template_name: Optional[str] = Form(None),
    template_code: Optional[str] = Form(None),
    replace_existing: bool = Form(False),
    file: UploadFile = File(...),
    current_user: Dict[str, Any] = Depends(require_role("admin")),
):
    csv_content = await _uploaded_csv(file)
    items = parse_csv_content(csv_content)
    if not items:
        raise HTTPException(status_code=400, detail="No se encontraron items en el archivo. Verifique el formato.")

    stamp = str(int(time.time() * 1000))
    name = template_name or f"Checklist {today_iso()}"
    code = template_code or f"CK-{plant_id}-{stamp[-6:]}"

    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "plants", plant_id, "Planta no encontrada")
        try:
            if replace_existing:
                cur.execute("UPDATE checklist_templates SET is_active=0 WHERE plant_id=?", (plant_id,))
            template_id = insert_row(cur, "checklist_templates", {
                "plant_id": plant_id,
                "template_name": name,
                "template_code": code,
                "description": f"Importado desde {file.filename}",
                "is_active": 1,
            })
            cur.executemany(
                """
                INSERT INTO checklist_template_items
                    (template_id, section, element, activity, requires_value, value_unit, display_order)
                VALUES (?,?,?,?,?,?,?)
                """,
                [
                    (template_id, i["section"], i["element"], i["activity"], int(i["requires_value"]), i["value_unit"], order)
                    for order, i in enumerate(items)
                ],
            )
        except sqlite3.IntegrityError as e:
            con.rollback()
            raise integrity_error(e, "Ya existe un template con ese código para la planta")
        log_ledger(cur, "checklist_templates", "IMPORT", template_id, {"file_name": file.filename, "items": len(items)}, current_user)
        con.commit()

    logger.info("Checklist template %s imported from %s with %s items", code, file.filename, len(items))
    return {
        "message": f"Template creado con {len(items)} items",
        "template_id": template_id,
        "template_name": name,
        "template_code": code,
        "item_count": len(items),
        "sections": unique_in_order(i["section"] for i in items),
        "elements": unique_in_order(i["element"] for i in items),
    }


@router.post("/sync/preview")
async def sync_preview(file: UploadFile = File(...), current_user: Dict[str, Any] = Depends(require_user)):
    items = parse_csv_content(await _uploaded_csv(file))
    grouped = group_items(items)
    return {
        "item_count": len(items),
        "sections": list(grouped.keys()),
        "elements": unique_in_order(i["element"] for i in items),
        "preview": grouped,
        "items": items[:50],
    }


@router.get("/sync/templates")
def sync_templates(current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        rows = con.execute(
            """
            SELECT ct.*, p.name AS plant_name,
                (SELECT COUNT(*) FROM checklist_template_items WHERE template_id = ct.id) AS item_count,
                (SELECT COUNT(*) FROM daily_checklist_items dci
                 JOIN checklist_template_items cti ON cti.id = dci.template_item_id
                 WHERE cti.template_id = ct.id) AS usage_count
            FROM checklist_templates ct JOIN plants p ON p.id = ct.plant_id
            ORDER BY ct.created_at DESC, ct.id DESC
            """
        ).fetchall()
        return rows_to_dicts(rows)


@router.delete("/sync/template/{template_id}")
def delete_template(template_id: int, force: bool = False, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "checklist_templates", template_id, "Template no encontrado")
        usage = cur.execute(
            """
            SELECT COUNT(*) AS n FROM daily_checklist_items
            WHERE template_item_id IN (SELECT id FROM checklist_template_items WHERE template_id=?)
            """,
            (template_id,),
        ).fetchone()["n"]
        if usage and not force:
            raise HTTPException(
                status_code=400,
                detail=f"Este template está siendo usado en {usage} items. Use force=true para eliminar de todas formas.",
            )
        cur.execute("DELETE FROM checklist_templates WHERE id=?", (template_id,))
        log_ledger(cur, "checklist_templates", "DELETE", template_id, {"usage": usage, "force": force}, current_user)
        con.commit()
    return {"message": "Template eliminado"}


@router.patch("/sync/template/{template_id}/activate")
def activate_template(template_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    active = to_flag(payload.get("active", True))
    if active is None:
        raise HTTPException(status_code=400, detail="active debe ser verdadero o falso")
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "checklist_templates", template_id, "Template no encontrado")
        cur.execute(
            "UPDATE checklist_templates SET is_active=?, updated_at=datetime('now') WHERE id=?", (active, template_id)
        )
        log_ledger(cur, "checklist_templates", "ACTIVATE" if active else "DEACTIVATE", template_id, {}, current_user)
        con.commit()
    return {"message": "Template activado" if active else "Template desactivado"}


# ---------------------- Measurements ----------------------


@router.get("/operational-measurements")
def operational_measurements(
    days: int = 30,
    plant_id: Optional[int] = None,
    category: Optional[str] = None,
    current_user: Dict[str, Any] = Depends(require_user),
):
    with connect() as con:
        rows = fetch_numeric_items(con.cursor(), since=_since(days), plant_id=plant_id)
    return operational_report(rows, category)


@router.get("/measurements")
def measurements(
    days: int = 30,
    plant_id: Optional[int] = None,
    parameter: Optional[str] = None,
    current_user: Dict[str, Any] = Depends(require_user),
):
    with connect() as con:
        rows = fetch_numeric_items(con.cursor(), since=_since(days), plant_id=plant_id)
    return parameter_report(rows, parameter)


@router.get("/measurements/latest")
def latest_measurements(plant_id: Optional[int] = None, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        rows = fetch_numeric_items(con.cursor(), plant_id=plant_id, limit=100)
    by_plant: Dict[str, List[Dict[str, Any]]] = {}
    for r in rows:
        r["parameter_type"] = infer_parameter(r["item_description"], r.get("unit"))
        r["stream"] = infer_stream(r["item_description"])
        by_plant.setdefault(r["plant_name"], []).append(r)
    return {"latest": rows, "by_plant": by_plant}


@router.get("/measurements/sync-to-analytics")
def sync_to_analytics(days: int = 7, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        rows = fetch_numeric_items(con.cursor(), since=_since(days))
    out = to_analytics(rows)
    return {"count": len(out), "measurements": out}


@router.get("/{checklist_id}")
def get_checklist(checklist_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        cur = con.cursor()
        checklist = cur.execute(
            """
            SELECT dc.*, p.name AS plant_name, p.location AS plant_location
            FROM daily_checklists dc JOIN plants p ON p.id = dc.plant_id
            WHERE dc.id=?
            """,
            (checklist_id,),
        ).fetchone()
        if not checklist:
            raise HTTPException(status_code=404, detail="Checklist no encontrado")
        items = _checklist_items(cur, checklist_id)
    checked = sum(1 for i in items if i["is_checked"])
    return {
        "checklist": dict(checklist),
        "items": _group_by_section(items),
        "all_items": items,
        "total": len(items),
        "checked": checked,
        "red_flags": sum(1 for i in items if i["is_red_flag"]),
        "progress": progress_percent(checked, len(items)),
    }
