import hashlib
import hmac
import json
import logging
import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from fastapi import BackgroundTasks

from .security import saas_connect

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS = {
    "plant.created": "Cuando se crea una nueva planta",
    "plant.updated": "Cuando se actualiza una planta",
    "plant.deleted": "Cuando se elimina una planta",
    "data.created": "Cuando se registran nuevos datos ambientales",
    "data.alert": "Cuando un parámetro excede el límite",
    "maintenance.created": "Cuando se crea una tarea de mantenimiento",
    "maintenance.completed": "Cuando se completa una tarea",
    "emergency.created": "Cuando se reporta una emergencia",
    "emergency.resolved": "Cuando se resuelve una emergencia",
    "ticket.created": "Cuando se crea un ticket",
    "ticket.updated": "Cuando se actualiza un ticket",
    "ticket.resolved": "Cuando se resuelve un ticket",
    "user.created": "Cuando se crea un nuevo usuario",
    "user.invited": "Cuando se invita a un usuario",
}
MAX_FAILURES = 5
DELIVERY_TIMEOUT = 30.0
TEST_TIMEOUT = 10.0
USER_AGENT = "PTAR-SaaS-Webhook/1.0"


def new_secret() -> str:
    return "whsec_" + secrets.token_hex(16)


def sign_payload(payload: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def listens_to(events: List[str], event: str) -> bool:
    return "*" in events or event in events


def build_payload(org_id: int, event: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "event": event,
        "data": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "organization_id": org_id,
    }


def post_payload(url: str, body: str, headers: Dict[str, str], timeout: float) -> httpx.Response:
    return httpx.post(url, content=body, headers=headers, timeout=timeout)


def _headers(secret: str, event: str, body: str, timestamp: str) -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        "X-Webhook-Signature": f"sha256={sign_payload(body, secret)}",
        "X-Webhook-Event": event,
        "X-Webhook-Timestamp": timestamp,
        "User-Agent": USER_AGENT,
    }


def deliver(webhook_id: int, payload: Dict[str, Any]) -> bool:
    """POST one event to a webhook, log the attempt and track consecutive failures."""
    with saas_connect() as con:
        hook = con.execute("SELECT * FROM webhooks WHERE id=?", (webhook_id,)).fetchone()
        if not hook:
            return False
        body = json.dumps(payload, ensure_ascii=False, default=str)
        headers = _headers(hook["secret"], payload["event"], body, payload["timestamp"])
        started = time.monotonic()
        status_code, response_body = 0, ""
        try:
            response = post_payload(hook["url"], body, headers, DELIVERY_TIMEOUT)
            status_code, response_body = response.status_code, response.text
        except httpx.HTTPError as e:
            response_body = str(e)
            logger.warning("Webhook %s delivery to %s failed: %s", webhook_id, hook["url"], e)
        duration_ms = int((time.monotonic() - started) * 1000)
        ok = 200 <= status_code < 300

        cur = con.cursor()
        cur.execute(
            """
            INSERT INTO webhook_logs(webhook_id, event, payload, response_status, response_body, duration_ms)
            VALUES (?,?,?,?,?,?)
            """,
            (webhook_id, payload["event"], body, status_code, response_body[:10000], duration_ms),
        )
        if ok:
            cur.execute(
                """
                UPDATE webhooks SET last_triggered_at=datetime('now'), failure_count=0, status='active'
                WHERE id=?
                """,
                (webhook_id,),
            )
        else:
            cur.execute(
                """
                UPDATE webhooks SET failure_count = failure_count + 1,
                    status = CASE WHEN failure_count + 1 >= :max THEN 'failed' ELSE status END
                WHERE id=:id
                """,
                {"id": webhook_id, "max": MAX_FAILURES},
            )
            if hook["failure_count"] + 1 >= MAX_FAILURES:
                logger.warning("Webhook %s disabled after %d consecutive failures", webhook_id, MAX_FAILURES)
        con.commit()
    return ok


def dispatch(background_tasks: Optional[BackgroundTasks], org_id: int, event: str, data: Dict[str, Any]) -> int:
    """Queue delivery of `event` to every active webhook of the organization subscribed to it."""
    with saas_connect() as con:
        hooks = con.execute(
            "SELECT id, events FROM webhooks WHERE organization_id=? AND status='active'", (org_id,)
        ).fetchall()
    targets = [h["id"] for h in hooks if listens_to(json.loads(h["events"] or "[]"), event)]
    for hook_id in targets:
        payload = build_payload(org_id, event, data)
        if background_tasks is not None:
            background_tasks.add_task(deliver, hook_id, payload)
        else:
            deliver(hook_id, payload)
    return len(targets)


def send_test(hook: Dict[str, Any]) -> Dict[str, Any]:
    payload = build_payload(hook["organization_id"], "test.ping", {
        "message": "Webhook de prueba",
        "webhook_id": hook["id"],
    })
    body = json.dumps(payload, ensure_ascii=False)
    try:
        response = post_payload(hook["url"], body, _headers(hook["secret"], "test.ping", body, payload["timestamp"]), TEST_TIMEOUT)
    except httpx.HTTPError as e:
        return {"success": False, "error": str(e)}
    return {"success": response.is_success, "status": response.status_code}
