import json
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request

from ...utils import json_dumps
from ..security import MANAGER_ROLES, PLAN_LIMITS, record_audit, require_member, saas_connect, usage

router = APIRouter(prefix="/organization", tags=["organization"])


@router.get("")
def get_organization(ctx: Dict[str, Any] = Depends(require_member())):
    return ctx["org"]


@router.patch("")
def update_organization(
    request: Request,
    payload: Dict[str, Any],
    ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES)),
):
    org = ctx["org"]
    update: Dict[str, Any] = {}
    if "name" in payload:
        name = (payload.get("name") or "").strip()
        if not 2 <= len(name) <= 100:
            raise HTTPException(status_code=400, detail="Nombre de organización inválido")
        update["name"] = name
    if "billing_email" in payload:
        update["billing_email"] = (payload.get("billing_email") or "").strip() or None
    if "settings" in payload:
        if not isinstance(payload["settings"], dict):
            raise HTTPException(status_code=400, detail="settings debe ser un objeto")
        update["settings"] = json_dumps({**org["settings"], **payload["settings"]})
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    with saas_connect() as con:
        cur = con.cursor()
        sets = ", ".join(f"{k}=:{k}" for k in update)
        cur.execute(
            f"UPDATE organizations SET {sets}, updated_at=datetime('now') WHERE id=:id",
            {**update, "id": org["id"]},
        )
        old = {k: org[k] for k in update}
        new = {k: json.loads(v) if k == "settings" else v for k, v in update.items()}
        record_audit(cur, ctx, "organization.updated", "organization", org["id"], old, new, request)
        con.commit()
        row = dict(cur.execute("SELECT * FROM organizations WHERE id=?", (org["id"],)).fetchone())
    row["settings"] = json.loads(row["settings"] or "{}")
    return row


@router.get("/usage")
def get_usage(ctx: Dict[str, Any] = Depends(require_member())):
    org = ctx["org"]
    limits = PLAN_LIMITS.get(org["plan"], PLAN_LIMITS["starter"])
    with saas_connect() as con:
        current = usage(con.cursor(), org["id"])
    return {
        "plan": org["plan"],
        "usage": current,
        "limits": limits,
        "remaining": {k: max(limits[k] - current[k], 0) for k in limits},
    }
