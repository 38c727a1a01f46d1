from datetime import date
from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from ...notifications import evaluate_reading
from ...routers.dashboard import _bucket
from ...utils import add_days, today_iso
from ..security import require_access, saas_connect

router = APIRouter(prefix="/dashboard", tags=["dashboard"])

read = require_access("plants:read")


def _pending_tasks(cur, org_id: int, start: str, end: str) -> List[Dict[str, Any]]:
    today = date.today()
    rows = cur.execute(
        """
        SELECT mt.*, p.name AS plant_name, p.location AS plant_location
        FROM maintenance_tasks mt JOIN plants p ON p.id = mt.plant_id
        WHERE mt.organization_id = ? AND mt.status = 'pending' AND date(mt.scheduled_date) BETWEEN ? AND ?
        ORDER BY mt.scheduled_date
        """,
        (org_id, start, end),
    ).fetchall()
    out = []
    for r in rows:
        d = dict(r)
        d["days_remaining"] = (date.fromisoformat(d["scheduled_date"][:10]) - today).days
        out.append(d)
    return out


@router.get("/upcoming-maintenance")
def upcoming_maintenance(days: int = 45, ctx: Dict[str, Any] = Depends(read)):
    today = today_iso()
    with saas_connect() as con:
        tasks = _pending_tasks(con.cursor(), ctx["org"]["id"], today, add_days(today, days))
    groups: Dict[str, List[Dict[str, Any]]] = {"urgent": [], "soon": [], "planned": []}
    for t in tasks:
        groups[_bucket(t["days_remaining"])].append(t)
    return {"all": tasks, **groups, "total": len(tasks)}


@router.get("/cost-per-m3")
def cost_per_m3(months: int = 6, ctx: Dict[str, Any] = Depends(read)):
    """Spend over treated volume per plant for the last `months` months, current month included."""
    first = date.today().replace(day=1)
    for _ in range(months):
        first = date(first.year - 1, 12, 1) if first.month == 1 else first.replace(month=first.month - 1)
    with saas_connect() as con:
        history = [dict(r) for r in con.execute(
            """
            SELECT p.id AS plant_id, p.name AS plant_name, o.year, o.month,
                   SUM(o.amount) AS total_cost, COALESCE(SUM(o.volume_m3), 0) AS volume_m3
            FROM opex_costs o JOIN plants p ON p.id = o.plant_id
            WHERE o.organization_id = ? AND (o.year * 100 + o.month) >= ?
            GROUP BY p.id, o.year, o.month
            ORDER BY p.name, o.year, o.month
            """,
            (ctx["org"]["id"], first.year * 100 + first.month),
        ).fetchall()]

    by_plant: Dict[int, Dict[str, Any]] = {}
    for row in history:
        row["cost_per_m3"] = round(row["total_cost"] / row["volume_m3"], 2) if row["volume_m3"] > 0 else 0
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
def environmental_alerts(ctx: Dict[str, Any] = Depends(read)):
    with saas_connect() as con:
        readings = con.execute(
            """
            SELECT ed.id, ed.plant_id, p.name AS plant_name, ed.parameter_type, ed.value,
                   ed.unit, ed.measurement_date, ed.stream
            FROM environmental_data ed JOIN plants p ON p.id = ed.plant_id
            WHERE ed.organization_id = ? AND ed.stream = 'effluent'
              AND ed.measurement_date = (
                  SELECT MAX(ed2.measurement_date) FROM environmental_data ed2
                  WHERE ed2.plant_id = ed.plant_id AND ed2.parameter_type = ed.parameter_type
                    AND ed2.stream = 'effluent')
            ORDER BY ed.measurement_date DESC
            """,
            (ctx["org"]["id"],),
        ).fetchall()
    alerts = []
    for r in readings:
        result = evaluate_reading(r["parameter_type"], r["value"])
        if result:
            above = result["threshold_max"] is not None and r["value"] > result["threshold_max"]
            alerts.append({
                **dict(r),
                "threshold": result["threshold_max"] if above else result["threshold_min"],
                "alert_type": result["alert_type"],
            })
    return {
        "alerts": alerts,
        "total": len(alerts),
        "critical": sum(1 for a in alerts if a["alert_type"] == "critical"),
        "warning": sum(1 for a in alerts if a["alert_type"] == "warning"),
    }


@router.get("/summary")
def summary(ctx: Dict[str, Any] = Depends(read)):
    org_id = ctx["org"]["id"]
    today = today_iso()
    with saas_connect() as con:
        cur = con.cursor()
        plants = dict(cur.execute(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN status='active' THEN 1 ELSE 0 END), 0) AS active,
                   COALESCE(SUM(CASE WHEN status='maintenance' THEN 1 ELSE 0 END), 0) AS in_maintenance
            FROM plants WHERE organization_id = ?
            """,
            (org_id,),
        ).fetchone())
        emergencies = dict(cur.execute(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN severity='high' THEN 1 ELSE 0 END), 0) AS high,
                   COALESCE(SUM(CASE WHEN severity='medium' THEN 1 ELSE 0 END), 0) AS medium,
                   COALESCE(SUM(CASE WHEN severity='low' THEN 1 ELSE 0 END), 0) AS low
            FROM maintenance_emergencies WHERE organization_id = ? AND solved = 0
            """,
            (org_id,),
        ).fetchone())
        tasks = _pending_tasks(cur, org_id, today, add_days(today, 45))
        checklists = cur.execute(
            """
            SELECT (SELECT COUNT(*) FROM plants WHERE organization_id = :org AND status='active') AS total_plants,
                   COUNT(CASE WHEN completed_at IS NOT NULL THEN 1 END) AS completed,
                   COUNT(*) AS started
            FROM daily_checklists WHERE organization_id = :org AND check_date = :today
            """,
            {"org": org_id, "today": today},
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
