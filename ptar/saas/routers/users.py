import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from ...db import rows_to_dicts
from ...utils import check_choice
from .. import webhooks
from ..security import (
    MANAGER_ROLES,
    check_plan_limit,
    email_registered,
    record_audit,
    require_access,
    require_member,
    saas_connect,
)

router = APIRouter(prefix="/users", tags=["users"])

INVITABLE_ROLES = ("admin", "supervisor", "operator", "viewer")
USER_STATUSES = ("active", "suspended")
INVITATION_DAYS = 7
USER_COLUMNS = "id, email, name, role, status, plant_id, last_login_at, created_at"


def _get_user(cur, org_id: int, user_id: int) -> Dict[str, Any]:
    row = cur.execute(
        f"SELECT {USER_COLUMNS} FROM users WHERE id=? AND organization_id=?", (user_id, org_id)
    ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Usuario no encontrado")
    return dict(row)


def _check_plant(cur, org_id: int, plant_id: Any) -> None:
    if plant_id is None:
        return
    if not cur.execute("SELECT 1 FROM plants WHERE id=? AND organization_id=?", (plant_id, org_id)).fetchone():
        raise HTTPException(status_code=400, detail="Planta no encontrada")


@router.get("")
def list_users(ctx: Dict[str, Any] = Depends(require_access("users:read", *MANAGER_ROLES))):
    with saas_connect() as con:
        return rows_to_dicts(con.execute(
            f"SELECT {USER_COLUMNS} FROM users WHERE organization_id=? ORDER BY name", (ctx["org"]["id"],)
        ).fetchall())


@router.get("/invitations/pending")
def pending_invitations(ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES))):
    with saas_connect() as con:
        return rows_to_dicts(con.execute(
            """
            SELECT i.id, i.email, i.role, i.plant_id, i.expires_at, i.created_at, u.name AS invited_by_name
            FROM invitations i LEFT JOIN users u ON u.id = i.invited_by
            WHERE i.organization_id=? AND i.accepted_at IS NULL
            ORDER BY i.created_at DESC
            """,
            (ctx["org"]["id"],),
        ).fetchall())


@router.post("/invite", status_code=201)
def invite_user(
    request: Request,
    payload: Dict[str, Any],
    background_tasks: BackgroundTasks,
    ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES)),
):
    """Pending invitation; the returned token is what the invitee accepts with."""
    org_id = ctx["org"]["id"]
    email = (payload.get("email") or "").strip().lower()
    role = payload.get("role") or "operator"
    plant_id = payload.get("plant_id")
    if "@" not in email:
        raise HTTPException(status_code=400, detail="Email inválido")
    check_choice(role, INVITABLE_ROLES, "role")
    with saas_connect() as con:
        cur = con.cursor()
        check_plan_limit(cur, ctx["org"], "users")
        if email_registered(cur, email):
            raise HTTPException(status_code=409, detail="El usuario ya existe")
        pending = cur.execute(
            "SELECT 1 FROM invitations WHERE organization_id=? AND email=? AND accepted_at IS NULL",
            (org_id, email),
        ).fetchone()
        if pending:
            raise HTTPException(status_code=409, detail="Ya existe una invitación para este email")
        _check_plant(cur, org_id, plant_id)
        token = secrets.token_hex(32)
        expires_at = (datetime.now(timezone.utc) + timedelta(days=INVITATION_DAYS)).isoformat(timespec="seconds")
        cur.execute(
            """
            INSERT INTO invitations(organization_id, email, role, plant_id, token, invited_by, expires_at)
            VALUES (?,?,?,?,?,?,?)
            """,
            (org_id, email, role, plant_id, token, ctx["user"]["id"], expires_at),
        )
        inv_id = cur.lastrowid
        record_audit(cur, ctx, "invitation.created", "invitation", inv_id,
                     new_value={"email": email, "role": role}, request=request)
        con.commit()
    webhooks.dispatch(background_tasks, org_id, "user.invited", {"email": email, "role": role})
    return {"id": inv_id, "email": email, "role": role, "token": token, "expires_at": expires_at}


@router.delete("/invitations/{invitation_id}")
def cancel_invitation(
    request: Request,
    invitation_id: int,
    ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES)),
):
    with saas_connect() as con:
        cur = con.cursor()
        inv = cur.execute(
            "SELECT * FROM invitations WHERE id=? AND organization_id=?", (invitation_id, ctx["org"]["id"])
        ).fetchone()
        if not inv:
            raise HTTPException(status_code=404, detail="Invitación no encontrada")
        cur.execute("DELETE FROM invitations WHERE id=?", (invitation_id,))
        record_audit(cur, ctx, "invitation.cancelled", "invitation", invitation_id,
                     old_value={"email": inv["email"]}, request=request)
        con.commit()
    return {"id": invitation_id, "deleted": True}


@router.get("/{user_id}")
def get_user(user_id: int, ctx: Dict[str, Any] = Depends(require_access("users:read", *MANAGER_ROLES))):
    with saas_connect() as con:
        return _get_user(con.cursor(), ctx["org"]["id"], user_id)


@router.patch("/{user_id}")
def update_user(
    request: Request,
    user_id: int,
    payload: Dict[str, Any],
    ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES)),
):
    org_id = ctx["org"]["id"]
    update = {k: payload[k] for k in ("name", "role", "status", "plant_id") if k in payload}
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    check_choice(update.get("role"), INVITABLE_ROLES, "role")
    check_choice(update.get("status"), USER_STATUSES, "status")
    with saas_connect() as con:
        cur = con.cursor()
        before = _get_user(cur, org_id, user_id)
        if before["role"] == "owner" and ("role" in update or update.get("status") == "suspended"):
            raise HTTPException(status_code=400, detail="No se puede modificar el rol o estado del propietario")
        if user_id == ctx["user"]["id"] and "role" in update:
            raise HTTPException(status_code=400, detail="No puedes cambiar tu propio rol")
        _check_plant(cur, org_id, update.get("plant_id"))
        sets = ", ".join(f"{k}=:{k}" for k in update)
        cur.execute(
            f"UPDATE users SET {sets}, updated_at=datetime('now') WHERE id=:id AND organization_id=:org",
            {**update, "id": user_id, "org": org_id},
        )
        after = _get_user(cur, org_id, user_id)
        record_audit(cur, ctx, "user.updated", "user", user_id,
                     {k: before[k] for k in update}, update, request)
        con.commit()
    return after


@router.delete("/{user_id}")
def delete_user(request: Request, user_id: int, ctx: Dict[str, Any] = Depends(require_member("owner"))):
    org_id = ctx["org"]["id"]
    if user_id == ctx["user"]["id"]:
        raise HTTPException(status_code=400, detail="No puedes eliminar tu propia cuenta")
    with saas_connect() as con:
        cur = con.cursor()
        user = _get_user(cur, org_id, user_id)
        cur.execute("UPDATE invitations SET invited_by=? WHERE invited_by=?", (ctx["user"]["id"], user_id))
        cur.execute("DELETE FROM users WHERE id=? AND organization_id=?", (user_id, org_id))
        record_audit(cur, ctx, "user.deleted", "user", user_id,
                     old_value={"email": user["email"], "role": user["role"]}, request=request)
        con.commit()
    return {"id": user_id, "deleted": True}
