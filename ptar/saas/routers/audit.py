import json
import math
from datetime import date
from typing import Any, Dict, Optional, Tuple

import pandas as pd
from fastapi import APIRouter, Depends, Response

from ..security import MANAGER_ROLES, require_member, saas_connect

router = APIRouter(prefix="/audit", tags=["audit"])

SECURITY_ACTIONS = (
    "user.login",
    "organization.created",
    "invitation.accepted",
    "user.updated",
    "user.deleted",
    "api_key.created",
    "api_key.revoked",
    "api_key.deleted",
    "webhook.secret_rotated",
)
EXPORT_COLUMNS = ["created_at", "user_name", "user_email", "action", "entity_type", "entity_id", "ip_address"]

LOG_SELECT = """
    SELECT a.*, u.name AS user_name, u.email AS user_email
    FROM audit_logs a LEFT JOIN users u ON u.id = a.user_id
    WHERE a.organization_id = :org
"""


def _filters(
    org_id: int,
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    user_id: Optional[int] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> Tuple[str, Dict[str, Any]]:
    where = ""
    params: Dict[str, Any] = {"org": org_id}
    if action:
        where += " AND a.action = :action"
        params["action"] = action
    if entity_type:
        where += " AND a.entity_type = :etype"
        params["etype"] = entity_type
    if user_id is not None:
        where += " AND a.user_id = :uid"
        params["uid"] = user_id
    if date_from:
        where += " AND a.created_at >= :dfrom"
        params["dfrom"] = date_from
    if date_to:
        where += " AND substr(a.created_at,1,10) <= :dto"
        params["dto"] = date_to[:10]
    return where, params


def _decode(row) -> Dict[str, Any]:
    d = dict(row)
    for k in ("old_value", "new_value"):
        d[k] = json.loads(d[k]) if d[k] else None
    return d


@router.get("/logs")
def list_logs(
    page: int = 1,
    limit: int = 50,
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    user_id: Optional[int] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES)),
):
    page = max(page, 1)
    limit = max(1, min(limit, 100))
    where, params = _filters(ctx["org"]["id"], action, entity_type, user_id, date_from, date_to)
    with saas_connect() as con:
        total = con.execute(
            "SELECT COUNT(*) AS n FROM audit_logs a WHERE a.organization_id = :org" + where, params
        ).fetchone()["n"]
        rows = con.execute(
            LOG_SELECT + where + " ORDER BY a.id DESC LIMIT :limit OFFSET :offset",
            {**params, "limit": limit, "offset": (page - 1) * limit},
        ).fetchall()
    return {
        "data": [_decode(r) for r in rows],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
    }


@router.get("/security")
def security_events(limit: int = 50, ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES))):
    marks = ",".join("?" for _ in SECURITY_ACTIONS)
    with saas_connect() as con:
        rows = con.execute(
            f"""
            SELECT a.*, u.name AS user_name, u.email AS user_email
            FROM audit_logs a LEFT JOIN users u ON u.id = a.user_id
            WHERE a.organization_id = ? AND a.action IN ({marks})
            ORDER BY a.id DESC LIMIT ?
            """,
            (ctx["org"]["id"], *SECURITY_ACTIONS, max(1, min(limit, 100))),
        ).fetchall()
    return [_decode(r) for r in rows]


@router.get("/users/{user_id}")
def user_activity(user_id: int, limit: int = 20, ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES))):
    where, params = _filters(ctx["org"]["id"], user_id=user_id)
    with saas_connect() as con:
        rows = con.execute(
            LOG_SELECT + where + " ORDER BY a.id DESC LIMIT :limit",
            {**params, "limit": max(1, min(limit, 100))},
        ).fetchall()
    return [_decode(r) for r in rows]


@router.get("/export")
def export_logs(
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES)),
):
    where, params = _filters(ctx["org"]["id"], date_from=date_from, date_to=date_to)
    with saas_connect() as con:
        rows = [dict(r) for r in con.execute(LOG_SELECT + where + " ORDER BY a.id DESC", params).fetchall()]
    df = pd.DataFrame(rows, columns=EXPORT_COLUMNS)
    filename = f"audit-logs-{date.today().isoformat()}.csv"
    return Response(
        content=df.to_csv(index=False),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/actions")
def list_actions(ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES))):
    with saas_connect() as con:
        rows = con.execute(
            "SELECT action, COUNT(*) AS n FROM audit_logs WHERE organization_id=? GROUP BY action ORDER BY action",
            (ctx["org"]["id"],),
        ).fetchall()
    return [{"action": r["action"], "count": r["n"]} for r in rows]
