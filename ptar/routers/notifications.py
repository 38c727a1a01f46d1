import logging
from datetime import date, timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool

from .. import email_service, notifications
from ..auth import require_role, require_user
from ..db import connect
from ..notifications import REMINDER_DAYS, pending_tasks_between
from ..utils import add_days, normalize_payload, today_iso

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])

SETTINGS_FIELDS = {
    "email": "text",
    "maintenance_reminders": "flag",
    "parameter_alerts": "flag",
    "emergency_alerts": "flag",
    "reminder_days": "int",
}


@router.get("/settings")
def get_settings(current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        row = con.execute("SELECT * FROM notification_settings WHERE user_id=?", (current_user["id"],)).fetchone()
    if row:
        return dict(row)
    return {
        "id": None,
        "user_id": current_user["id"],
        "email": current_user.get("email"),
        "maintenance_reminders": 1,
        "parameter_alerts": 1,
        "emergency_alerts": 1,
        "reminder_days": REMINDER_DAYS,
    }


@router.put("/settings")
def put_settings(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_user)):
    data = normalize_payload(payload, SETTINGS_FIELDS)
    days = data.get("reminder_days") or REMINDER_DAYS
    if not 1 <= days <= 365:
        raise HTTPException(status_code=400, detail="reminder_days debe estar entre 1 y 365")
    values = {
        "user_id": current_user["id"],
        "email": data.get("email") or current_user.get("email"),
        "maintenance_reminders": data.get("maintenance_reminders", 1),
        "parameter_alerts": data.get("parameter_alerts", 1),
        "emergency_alerts": data.get("emergency_alerts", 1),
        "reminder_days": days,
    }
    with connect() as con:
        con.execute(
            """
            INSERT INTO notification_settings
                (user_id, email, maintenance_reminders, parameter_alerts, emergency_alerts, reminder_days)
            VALUES (:user_id, :email, :maintenance_reminders, :parameter_alerts, :emergency_alerts, :reminder_days)
            ON CONFLICT(user_id) DO UPDATE SET
                email=excluded.email,
                maintenance_reminders=excluded.maintenance_reminders,
                parameter_alerts=excluded.parameter_alerts,
                emergency_alerts=excluded.emergency_alerts,
                reminder_days=excluded.reminder_days,
                updated_at=datetime('now')
            """,
            values,
        )
        con.commit()
    return {"message": "Configuración actualizada"}


@router.get("/upcoming-maintenance")
def upcoming_maintenance(days: int = 7, current_user: Dict[str, Any] = Depends(require_user)):
    today = today_iso()
    with connect() as con:
        return pending_tasks_between(con.cursor(), today, add_days(today, days))


@router.get("/maintenance-reminders")
def maintenance_reminders(days: int = REMINDER_DAYS, current_user: Dict[str, Any] = Depends(require_user)):
    """Tasks around `days` ahead (three days either side), when purchase orders must go out."""
    today = date.today()
    start = (today + timedelta(days=days - 3)).isoformat()
    end = (today + timedelta(days=days + 3)).isoformat()
    with connect() as con:
        return pending_tasks_between(con.cursor(), start, end)


@router.post("/test-email")
def test_email(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    email = (payload.get("email") or "").strip()
    if not email:
        raise HTTPException(status_code=400, detail="Email requerido")
    ok = email_service.send_email([email], "maintenance_reminder", {
        "plant_name": "Planta de Prueba",
        "task_description": "Mantenimiento preventivo de prueba",
        "scheduled_date": add_days(today_iso(), REMINDER_DAYS),
        "days_remaining": REMINDER_DAYS,
    })
    if not ok:
        raise HTTPException(status_code=500, detail="Error al enviar email")
    return {"message": "Email de prueba enviado"}


@router.post("/trigger-check")
async def trigger_check(payload: Optional[Dict[str, Any]] = None, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    kind = (payload or {}).get("type") or "all"
    try:
        result = await run_in_threadpool(notifications.run_checks, kind)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info("Manual notification check '%s' by %s", kind, current_user.get("email"))
    return {"message": "Verificación ejecutada", "results": result}
