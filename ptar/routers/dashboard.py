import json
from datetime import date, timedelta
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException

from ..auth import require_user
from ..db import connect
from ..importer import OPEX_COST_COLUMNS
from ..notifications import evaluate_reading, pending_tasks_between
from ..utils import add_days, today_iso

router = APIRouter(prefix="/dashboard", tags=["dashboard"])

# (type, name, description, visible by default)
AVAILABLE_WIDGETS = [
    ("upcoming_maintenance", "Mantenimientos Próximos", "Tareas en los próximos 45 días", True),
    ("environmental_alerts", "Alertas Ambientales", "Parámetros fuera de rango", True),
    ("emergency_status", "Estado de Emergencias", "Emergencias activas", True),
    ("cost_per_m3", "Costo por m³", "KPI de costo de tratamiento", True),
    ("compliance_rate", "Cumplimiento Ambiental", "Porcentaje de plantas en cumplimiento", True),
    ("checklist_status", "Estado de Checklists", "Progreso de inspecciones diarias", True),
    ("plant_map", "Mapa de Plantas", "Ubicación geográfica", False),
    ("recent_documents", "Documentos Recientes", "Últimos documentos subidos", False),
]
WIDGET_META = {w[0]: {"name": w[1], "description": w[2]} for w in AVAILABLE_WIDGETS}

TOTAL_COST_SQL = " + ".join(f"o.{k}" for k in OPEX_COST_COLUMNS if k.startswith("cost_"))


def _available() -> List[Dict[str, Any]]:
    return [
        {"type": t, "name": n, "description": d, "default_visible": v}
        for t, n, d, v in AVAILABLE_WIDGETS
    ]


def _bucket(days_remaining: int) -> str:
    if days_remaining <= 7:
        return "urgent"
    if days_remaining <= 30:
        return "soon"
    return "planned"


@router.get("/widgets")
def get_widgets(current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        saved = con.execute(
            "SELECT * FROM user_dashboard_widgets WHERE user_id=? ORDER BY position", (current_user["id"],)
        ).fetchall()
    if not saved:
        widgets = [
            {"widget_type": t, "name": n, "description": d, "position": i, "is_visible": v, "config": None}
            for i, (t, n, d, v) in enumerate(AVAILABLE_WIDGETS)
        ]
    else:
        widgets = [
            {
                "widget_type": w["widget_type"],
                "name": WIDGET_META.get(w["widget_type"], {}).get("name", w["widget_type"]),
                "description": WIDGET_META.get(w["widget_type"], {}).get("description", ""),
                "position": w["position"],
                "is_visible": bool(w["is_visible"]),
                "config": json.loads(w["config"]) if w["config"] else None,
            }
            for w in saved
        ]
    return {"widgets": widgets, "available": _available()}


@router.put("/widgets")
def put_widgets(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_user)):
    widgets = payload.get("widgets")
    if not isinstance(widgets, list):
        raise HTTPException(status_code=400, detail="widgets debe ser una lista")
    rows = []
    for i, w in enumerate(widgets):
        if not isinstance(w, dict) or w.get("widget_type") not in WIDGET_META:
            raise HTTPException(status_code=400, detail=f"Widget inválido en la posición {i}")
        rows.append((
            current_user["id"],
            w["widget_type"],
            int(w.get("position", i)),
            1 if w.get("is_visible", True) else 0,
            json.dumps(w["config"], ensure_ascii=False) if w.get("config") is not None else None,
        ))
    with connect() as con:
        con.execute("DELETE FROM user_dashboard_widgets WHERE user_id=?", (current_user["id"],))
        con.executemany(
            "INSERT INTO user_dashboard_widgets(user_id, widget_type, position, is_visible, config) VALUES (?,?,?,?,?)",
            rows,
        )
        con.commit()
    return {"message": "Widgets actualizados"}


@router.get("/upcoming-maintenance")
def upcoming_maintenance(days: int = 45, current_user: Dict[str, Any] = Depends(require_user)):
    today = today_iso()
    with connect() as con:
        tasks = pending_tasks_between(con.cursor(), today, add_days(today, days))
    groups: Dict[str, List[Dict[str, Any]]] = {"urgent": [], "soon": [], "planned": []}
    for t in tasks:
        groups[_bucket(t["days_remaining"])].append(t)
    return {"all": tasks, **groups, "total": len(tasks)}


@router.get("/cost-per-m3")
def cost_per_m3(months: int = 6, current_user: Dict[str, Any] = Depends(require_user)):
    first = date.today().replace(day=1)
    for _ in range(months):
        first = (first - timedelta(days=1)).replace(day=1)
    with connect() as con:
        history = [dict(r) for r in con.execute(
            f"""
            SELECT p.id AS plant_id, p.name AS plant_name, o.period_date, o.volume_m3,
                   ({TOTAL_COST_SQL}) AS total_cost,
                   CASE WHEN o.volume_m3 > 0 THEN ROUND(({TOTAL_COST_SQL}) / o.volume_m3, 2) ELSE 0 END AS cost_per_m3
            FROM opex_costs o JOIN plants p ON p.id = o.plant_id
            WHERE o.period_date >= ?
            ORDER BY p.name, o.period_date
            """,
            (first.isoformat(),),
        ).fetchall()]

    by_plant: Dict[int, Dict[str, Any]] = {}
    for row in history:
        p = by_plant.setdefault(row["plant_id"], {
            "plant_id": row["plant_id"], "plant_name": row["plant_name"],
            "total_volume": 0.0, "total_cost": 0.0, "months": 0,
        })
        p["total_volume"] += row["volume_m3"]
        p["total_cost"] += row["total_cost"]
        p["months"] += 1
    for p in by_plant.values():
        p["avg_cost_per_m3"] = round(p["total_cost"] / p["total_volume"], 2) if p["total_volume"] > 0 else 0
        p["total_cost"] = round(p["total_cost"], 2)

    total_volume = sum(p["total_volume"] for p in by_plant.values())
    total_cost = sum(p["total_cost"] for p in by_plant.values())
    return {
        "by_plant": list(by_plant.values()),
        "overall": {
            "avg_cost_per_m3": round(total_cost / total_volume, 2) if total_volume > 0 else 0,
            "total_volume": total_volume,
            "total_cost": round(total_cost, 2),
        },
        "history": history,
    }


@router.get("/environmental-alerts")
def environmental_alerts(current_user: Dict[str, Any] = Depends(require_user)):
    """Latest effluent reading per plant and parameter checked against the discharge limits."""
    with connect() as con:
        readings = con.execute(
            """
            SELECT ed.id, ed.plant_id, p.name AS plant_name, ed.parameter_type, ed.value,
                   ed.unit, ed.measurement_date, ed.stream
            FROM environmental_data ed JOIN plants p ON p.id = ed.plant_id
            WHERE ed.stream = 'effluent'
              AND ed.measurement_date = (
                  SELECT MAX(ed2.measurement_date) FROM environmental_data ed2
                  WHERE ed2.plant_id = ed.plant_id AND ed2.parameter_type = ed.parameter_type
                    AND ed2.stream = 'effluent')
            ORDER BY ed.measurement_date DESC
            """
        ).fetchall()
    alerts = []
    for r in readings:
        result = evaluate_reading(r["parameter_type"], r["value"])
        if result:
            limit = result["threshold_max"] if result["threshold_max"] is not None and r["value"] > result["threshold_max"] else result["threshold_min"]
            alerts.append({**dict(r), "threshold": limit, "alert_type": result["alert_type"]})
    return {
        "alerts": alerts,
        "total": len(alerts),
        "critical": sum(1 for a in alerts if a["alert_type"] == "critical"),
        "warning": sum(1 for a in alerts if a["alert_type"] == "warning"),
    }


@router.get("/summary")
def summary(current_user: Dict[str, Any] = Depends(require_user)):
    today = today_iso()
    with connect() as con:
        cur = con.cursor()
        plants = dict(cur.execute(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN status='active' THEN 1 ELSE 0 END), 0) AS active,
                   COALESCE(SUM(CASE WHEN status='maintenance' THEN 1 ELSE 0 END), 0) AS in_maintenance
            FROM plants
            """
        ).fetchone())
        emergencies = dict(cur.execute(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN severity='high' THEN 1 ELSE 0 END), 0) AS high,
                   COALESCE(SUM(CASE WHEN severity='medium' THEN 1 ELSE 0 END), 0) AS medium,
                   COALESCE(SUM(CASE WHEN severity='low' THEN 1 ELSE 0 END), 0) AS low
            FROM maintenance_emergencies WHERE solved = 0
            """
        ).fetchone())
        tasks = pending_tasks_between(cur, today, add_days(today, 45))
        checklists = cur.execute(
            """
            SELECT (SELECT COUNT(*) FROM plants WHERE status='active') AS total_plants,
                   COUNT(CASE WHEN completed_at IS NOT NULL THEN 1 END) AS completed,
                   COUNT(*) AS started
            FROM daily_checklists WHERE check_date = ?
            """,
            (today,),
        ).fetchone()
    buckets = [_bucket(t["days_remaining"]) for t in tasks]
    return {
        "plants": plants,
        "emergencies": emergencies,
        "maintenance": {"total": len(tasks), "urgent": buckets.count("urgent"), "soon": buckets.count("soon")},
        "checklists": {
            "total_plants": checklists["total_plants"],
            "completed": checklists["completed"],
            "started": checklists["started"],
            "pending": max(checklists["total_plants"] - checklists["started"], 0),
        },
    }
