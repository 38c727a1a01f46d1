"""Periodic notification checks.

Each check opens its own connection, sends what is due and returns a small
summary so the same functions serve the scheduler and the manual trigger
endpoint.
"""
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from . import email_service
from .config import settings
from .db import connect

logger = logging.getLogger(__name__)

REMINDER_DAYS = 45
REMINDER_WINDOW = 2

PARAMETER_THRESHOLDS = {
    "DQO": {"max": 200.0, "unit": "mg/L"},
    "pH": {"min": 6.0, "max": 8.0, "unit": ""},
    "SS": {"max": 100.0, "unit": "mg/L"},
}


def evaluate_reading(parameter: str, value: float) -> Optional[Dict[str, Any]]:
    """None when within limits; otherwise the alert level and the limits crossed."""
    limits = PARAMETER_THRESHOLDS.get(parameter)
    if not limits:
        return None
    lo, hi = limits.get("min"), limits.get("max")
    above = hi is not None and value > hi
    below = lo is not None and value < lo
    if not (above or below):
        return None
    critical = (above and value > hi * 1.1) or (below and value < lo * 0.9)
    return {
        "alert_type": "critical" if critical else "warning",
        "threshold_min": lo,
        "threshold_max": hi,
        "unit": limits["unit"],
    }


def _recipients(cur, flag_column: str) -> List[str]:
    emails = settings.split_emails(settings.notification_emails)
    rows = cur.execute(
        f"SELECT email FROM notification_settings WHERE {flag_column}=1 AND email IS NOT NULL AND email <> ''"
    ).fetchall()
    for r in rows:
        if r["email"] not in emails:
            emails.append(r["email"])
    return emails


def pending_tasks_between(cur, start: str, end: str) -> List[Dict[str, Any]]:
    """Pending maintenance tasks scheduled in [start, end], with days until each one."""
    today = date.today()
    rows = cur.execute(
        """
        SELECT mt.*, p.name AS plant_name, p.location AS plant_location
        FROM maintenance_tasks mt
        JOIN plants p ON p.id = mt.plant_id
        WHERE mt.status = 'pending' AND date(mt.scheduled_date) BETWEEN ? AND ?
        ORDER BY mt.scheduled_date
        """,
        (start, end),
    ).fetchall()
    out = []
    for r in rows:
        d = dict(r)
        d["days_remaining"] = (date.fromisoformat(d["scheduled_date"][:10]) - today).days
        out.append(d)
    return out


def upcoming_maintenance(cur, days: int = REMINDER_DAYS, window: int = REMINDER_WINDOW) -> List[Dict[str, Any]]:
    today = date.today()
    start = (today + timedelta(days=days - window)).isoformat()
    end = (today + timedelta(days=days + window)).isoformat()
    return pending_tasks_between(cur, start, end)


def check_upcoming_maintenance() -> Dict[str, Any]:
    with connect() as con:
        cur = con.cursor()
        recipients = _recipients(cur, "maintenance_reminders")
        if not recipients:
            logger.warning("Maintenance check skipped: no notification recipients configured")
            return {"checked": 0, "sent": 0}
        tasks = upcoming_maintenance(cur)
    sent = 0
    for t in tasks:
        ok = email_service.send_email(recipients, "maintenance_reminder", {
            "plant_name": t["plant_name"],
            "task_description": t["description"],
            "scheduled_date": t["scheduled_date"][:10],
            "days_remaining": t["days_remaining"],
        })
        sent += int(ok)
    logger.info("Maintenance check: %s tasks, %s emails sent", len(tasks), sent)
    return {"checked": len(tasks), "sent": sent}


def parameter_alerts(cur, hours: int = 24) -> List[Dict[str, Any]]:
    since = (datetime.now(timezone.utc) - timedelta(hours=hours)).strftime("%Y-%m-%dT%H:%M:%S")
    rows = cur.execute(
        """
        SELECT ed.*, p.name AS plant_name
        FROM environmental_data ed
        JOIN plants p ON p.id = ed.plant_id
        WHERE ed.stream = 'effluent' AND ed.measurement_date >= ?
        ORDER BY ed.measurement_date DESC
        """,
        (since,),
    ).fetchall()
    seen = set()
    alerts = []
    for r in rows:
        key = (r["plant_id"], r["parameter_type"])
        if key in seen:
            continue
        seen.add(key)
        result = evaluate_reading(r["parameter_type"], r["value"])
        if result:
            alerts.append({
                "plant_id": r["plant_id"],
                "plant_name": r["plant_name"],
                "parameter": r["parameter_type"],
                "value": r["value"],
                "measurement_date": r["measurement_date"],
                **result,
                "unit": r["unit"] or result["unit"],
            })
    return alerts


def check_parameter_alerts() -> Dict[str, Any]:
    with connect() as con:
        cur = con.cursor()
        recipients = _recipients(cur, "parameter_alerts")
        alerts = parameter_alerts(cur)
    if not recipients:
        logger.warning("Parameter check: %s alerts but no recipients configured", len(alerts))
        return {"alerts": len(alerts), "sent": 0}
    sent = sum(int(email_service.send_email(recipients, "parameter_alert", a)) for a in alerts)
    logger.info("Parameter check: %s alerts, %s emails sent", len(alerts), sent)
    return {"alerts": len(alerts), "sent": sent}


_TASK_SELECT = """
    SELECT et.*, me.reason AS emergency_reason, p.name AS plant_name
    FROM emergency_tasks et
    JOIN maintenance_emergencies me ON me.id = et.emergency_id
    JOIN plants p ON p.id = me.plant_id
    WHERE et.status IN ('pending','in_progress')
      AND et.assigned_to_email IS NOT NULL AND et.assigned_to_email <> ''
"""


def _task_mail(t: Dict[str, Any], overdue: bool) -> Dict[str, Any]:
    return {
        "title": t["title"],
        "plant_name": t["plant_name"],
        "emergency_reason": t["emergency_reason"],
        "status": t["status"],
        "due_date": t["due_date"],
        "is_overdue": overdue,
    }


def check_emergency_tasks() -> Dict[str, Any]:
    today = date.today().isoformat()
    reminders = overdue = 0
    with connect() as con:
        cur = con.cursor()
        due = cur.execute(
            _TASK_SELECT + " AND et.reminder_date IS NOT NULL AND date(et.reminder_date) <= ? AND et.reminder_sent = 0",
            (today,),
        ).fetchall()
        for t in due:
            t = dict(t)
            is_overdue = bool(t["due_date"] and t["due_date"][:10] < today)
            if email_service.send_email([t["assigned_to_email"]], "task_reminder", _task_mail(t, is_overdue)):
                cur.execute("UPDATE emergency_tasks SET reminder_sent=1 WHERE id=?", (t["id"],))
                reminders += 1

        late = cur.execute(
            _TASK_SELECT + " AND et.due_date IS NOT NULL AND date(et.due_date) < ? AND et.updated_at < datetime('now','-1 day')",
            (today,),
        ).fetchall()
        for t in late:
            t = dict(t)
            if email_service.send_email([t["assigned_to_email"]], "task_reminder", _task_mail(t, True)):
                cur.execute("UPDATE emergency_tasks SET updated_at=datetime('now') WHERE id=?", (t["id"],))
                overdue += 1
        con.commit()
    logger.info("Emergency task check: %s reminders, %s overdue notices", reminders, overdue)
    return {"reminders": reminders, "overdue": overdue}


CHECKS = {
    "maintenance": check_upcoming_maintenance,
    "parameters": check_parameter_alerts,
    "emergency-tasks": check_emergency_tasks,
}


def run_checks(kind: str = "all") -> Dict[str, Any]:
    if kind == "all":
        return {name: fn() for name, fn in CHECKS.items()}
    if kind not in CHECKS:
        raise ValueError(f"Tipo de verificación inválido: {kind}")
    return {kind: CHECKS[kind]()}
