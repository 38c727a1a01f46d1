import json
from typing import Any, Dict
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from ...db import rows_to_dicts
from ...utils import check_choice, json_dumps
from .. import webhooks
from ..security import MANAGER_ROLES, record_audit, require_access, saas_connect

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

manage = require_access("webhooks:manage", *MANAGER_ROLES)


def _out(row, with_secret: bool = False) -> Dict[str, Any]:
    d = dict(row)
    d["events"] = json.loads(d["events"] or "[]")
    if not with_secret:
        d["secret"] = d["secret"][:10] + "..."
    return d


def _get_hook(cur, org_id: int, webhook_id: int):
    row = cur.execute(
        "SELECT * FROM webhooks WHERE id=? AND organization_id=?", (webhook_id, org_id)
    ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Webhook no encontrado")
    return row


def _validate_url(url: Any) -> str:
    url = (url or "").strip() if isinstance(url, str) else ""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise HTTPException(status_code=400, detail="URL inválida")
    return url


def _validate_events(events: Any) -> None:
    if not isinstance(events, list) or not events:
        raise HTTPException(status_code=400, detail="events debe ser una lista no vacía")
    unknown = [e for e in events if e != "*" and e not in webhooks.WEBHOOK_EVENTS]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Eventos inválidos: {', '.join(map(str, unknown))}")


@router.get("")
def list_webhooks(ctx: Dict[str, Any] = Depends(manage)):
    with saas_connect() as con:
        rows = con.execute(
            "SELECT * FROM webhooks WHERE organization_id=? ORDER BY created_at DESC, id DESC", (ctx["org"]["id"],)
        ).fetchall()
    return [_out(r) for r in rows]


@router.get("/events")
def list_events(ctx: Dict[str, Any] = Depends(manage)):
    return [{"event": k, "description": v} for k, v in webhooks.WEBHOOK_EVENTS.items()]


@router.post("", status_code=201)
def create_webhook(request: Request, payload: Dict[str, Any], ctx: Dict[str, Any] = Depends(manage)):
    """The signing secret is returned in full only on creation."""
    url = _validate_url(payload.get("url"))
    events = payload.get("events") or ["*"]
    _validate_events(events)
    with saas_connect() as con:
        cur = con.cursor()
        cur.execute(
            "INSERT INTO webhooks(organization_id, url, events, secret) VALUES (?,?,?,?)",
            (ctx["org"]["id"], url, json_dumps(events), webhooks.new_secret()),
        )
        hook_id = cur.lastrowid
        record_audit(cur, ctx, "webhook.created", "webhook", hook_id,
                     new_value={"url": url, "events": events}, request=request)
        con.commit()
        return _out(_get_hook(cur, ctx["org"]["id"], hook_id), with_secret=True)


@router.get("/{webhook_id}")
def get_webhook(webhook_id: int, ctx: Dict[str, Any] = Depends(manage)):
    with saas_connect() as con:
        return _out(_get_hook(con.cursor(), ctx["org"]["id"], webhook_id))


@router.patch("/{webhook_id}")
def update_webhook(request: Request, webhook_id: int, payload: Dict[str, Any], ctx: Dict[str, Any] = Depends(manage)):
    update: Dict[str, Any] = {}
    if "url" in payload:
        update["url"] = _validate_url(payload["url"])
    if "events" in payload:
        _validate_events(payload["events"])
        update["events"] = json_dumps(payload["events"])
    if "status" in payload:
        check_choice(payload["status"], ("active", "paused"), "status")
        update["status"] = payload["status"]
        if payload["status"] == "active":
            update["failure_count"] = 0
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    with saas_connect() as con:
        cur = con.cursor()
        before = _out(_get_hook(cur, ctx["org"]["id"], webhook_id))
        sets = ", ".join(f"{k}=:{k}" for k in update)
        cur.execute(f"UPDATE webhooks SET {sets}, updated_at=datetime('now') WHERE id=:id", {**update, "id": webhook_id})
        after = _out(_get_hook(cur, ctx["org"]["id"], webhook_id))
        changed = [k for k in ("url", "events", "status") if k in update]
        record_audit(cur, ctx, "webhook.updated", "webhook", webhook_id,
                     {k: before[k] for k in changed}, {k: after[k] for k in changed}, request)
        con.commit()
    return after


@router.post("/{webhook_id}/rotate-secret")
def rotate_secret(request: Request, webhook_id: int, ctx: Dict[str, Any] = Depends(manage)):
    with saas_connect() as con:
        cur = con.cursor()
        _get_hook(cur, ctx["org"]["id"], webhook_id)
        secret = webhooks.new_secret()
        cur.execute("UPDATE webhooks SET secret=?, updated_at=datetime('now') WHERE id=?", (secret, webhook_id))
        record_audit(cur, ctx, "webhook.secret_rotated", "webhook", webhook_id, request=request)
        con.commit()
    return {"id": webhook_id, "secret": secret}


@router.post("/{webhook_id}/test")
async def test_webhook(webhook_id: int, ctx: Dict[str, Any] = Depends(manage)):
    with saas_connect() as con:
        hook = dict(_get_hook(con.cursor(), ctx["org"]["id"], webhook_id))
    return await run_in_threadpool(webhooks.send_test, hook)


@router.get("/{webhook_id}/logs")
def webhook_logs(webhook_id: int, limit: int = 50, ctx: Dict[str, Any] = Depends(manage)):
    with saas_connect() as con:
        cur = con.cursor()
        _get_hook(cur, ctx["org"]["id"], webhook_id)
        return rows_to_dicts(cur.execute(
            "SELECT * FROM webhook_logs WHERE webhook_id=? ORDER BY id DESC LIMIT ?",
            (webhook_id, max(1, min(limit, 500))),
        ).fetchall())


@router.post("/{webhook_id}/logs/{log_id}/retry")
async def retry_delivery(webhook_id: int, log_id: int, ctx: Dict[str, Any] = Depends(manage)):
    with saas_connect() as con:
        cur = con.cursor()
        _get_hook(cur, ctx["org"]["id"], webhook_id)
        log = cur.execute(
            "SELECT * FROM webhook_logs WHERE id=? AND webhook_id=?", (log_id, webhook_id)
        ).fetchone()
    if not log:
        raise HTTPException(status_code=404, detail="Registro no encontrado")
    previous = json.loads(log["payload"])
    payload = webhooks.build_payload(ctx["org"]["id"], log["event"], previous.get("data"))
    ok = await run_in_threadpool(webhooks.deliver, webhook_id, payload)
    return {"success": ok}


@router.delete("/{webhook_id}")
def delete_webhook(request: Request, webhook_id: int, ctx: Dict[str, Any] = Depends(manage)):
    with saas_connect() as con:
        cur = con.cursor()
        hook = _out(_get_hook(cur, ctx["org"]["id"], webhook_id))
        cur.execute("DELETE FROM webhooks WHERE id=?", (webhook_id,))
        record_audit(cur, ctx, "webhook.deleted", "webhook", webhook_id,
                     old_value={"url": hook["url"], "events": hook["events"]}, request=request)
        con.commit()
    return {"id": webhook_id, "deleted": True}
