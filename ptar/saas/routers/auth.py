import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from ...auth import verify_password
from ...config import settings
from ...limiter import limiter
from ...utils import json_dumps
from .. import webhooks
from ..security import (
    create_member,
    create_tenant_token,
    email_registered,
    get_tenant,
    is_expired,
    record_audit,
    saas_connect,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

TRIAL_DAYS = 14
DEFAULT_ORG_SETTINGS = {
    "timezone": "America/Guayaquil",
    "language": "es",
    "notifications": {"email": True, "in_app": True},
}


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "org"


def unique_slug(cur, name: str) -> str:
    base = slugify(name)
    slug, n = base, 0
    while cur.execute("SELECT 1 FROM organizations WHERE slug=?", (slug,)).fetchone():
        n += 1
        slug = f"{base}-{n}"
    return slug


def _session(user: Dict[str, Any], org: Dict[str, Any]) -> Dict[str, Any]:
    session = create_tenant_token(user, org)
    return {
        "token": session["token"],
        "expires_at": session["expires_at"],
        "user": {k: user[k] for k in ("id", "email", "name", "role")},
        "organization": {k: org[k] for k in ("id", "name", "slug", "plan")},
    }


@router.post("/register", status_code=201)
@limiter.limit(settings.login_rate_limit)
def register(request: Request, payload: Dict[str, Any]):
    """New organization plus its owner account."""
    org_name = (payload.get("organization_name") or "").strip()
    name = (payload.get("name") or "").strip()
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    plan = payload.get("plan") or "starter"
    if not 2 <= len(org_name) <= 100:
        raise HTTPException(status_code=400, detail="Nombre de organización inválido")
    if not 2 <= len(name) <= 100:
        raise HTTPException(status_code=400, detail="Nombre inválido")
    if "@" not in email:
        raise HTTPException(status_code=400, detail="Email inválido")
    if plan not in ("starter", "pro"):
        raise HTTPException(status_code=400, detail=f"plan inválido: {plan}")

    trial_ends = (datetime.now(timezone.utc) + timedelta(days=TRIAL_DAYS)).isoformat(timespec="seconds")
    with saas_connect() as con:
        cur = con.cursor()
        if email_registered(cur, email):
            raise HTTPException(status_code=409, detail="El email ya está registrado")
        slug = unique_slug(cur, org_name)
        cur.execute(
            "INSERT INTO organizations(name, slug, plan, billing_email, trial_ends_at, settings) VALUES (?,?,?,?,?,?)",
            (org_name, slug, plan, email, trial_ends, json_dumps(DEFAULT_ORG_SETTINGS)),
        )
        org_id = cur.lastrowid
        try:
            user_id = create_member(cur, org_id, email, password, name, "owner")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        org = {"id": org_id, "name": org_name, "slug": slug, "plan": plan}
        user = {"id": user_id, "email": email, "name": name, "role": "owner"}
        ctx = {"org": org, "user": user, "api_key": None}
        record_audit(cur, ctx, "organization.created", "organization", org_id,
                     new_value={"name": org_name, "slug": slug}, request=request)
        con.commit()
    logger.info("Organization %s registered by %s", slug, email)
    return _session(user, org)


@router.post("/login")
@limiter.limit(settings.login_rate_limit)
def login(request: Request, payload: Dict[str, Any]):
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    if not email or not password:
        raise HTTPException(status_code=400, detail="Email y contraseña requeridos")
    with saas_connect() as con:
        cur = con.cursor()
        row = cur.execute("SELECT * FROM users WHERE email=?", (email,)).fetchone()
        if not row or not verify_password(password, row["password_salt"], row["password_hash"]):
            logger.warning("Failed SaaS login for %s", email)
            raise HTTPException(status_code=401, detail="Credenciales inválidas")
        if row["status"] != "active":
            raise HTTPException(status_code=403, detail="La cuenta está suspendida")
        org = cur.execute("SELECT * FROM organizations WHERE id=?", (row["organization_id"],)).fetchone()
        if not org or org["status"] != "active":
            raise HTTPException(status_code=403, detail="La organización no está activa")
        cur.execute("UPDATE users SET last_login_at=datetime('now') WHERE id=?", (row["id"],))
        user, org = dict(row), dict(org)
        record_audit(cur, {"org": org, "user": user}, "user.login", "user", user["id"], request=request)
        con.commit()
    return _session(user, org)


@router.post("/accept-invitation", status_code=201)
def accept_invitation(request: Request, payload: Dict[str, Any], background_tasks: BackgroundTasks):
    token = (payload.get("token") or "").strip()
    name = (payload.get("name") or "").strip()
    password = payload.get("password") or ""
    if not token:
        raise HTTPException(status_code=400, detail="Token requerido")
    if not 2 <= len(name) <= 100:
        raise HTTPException(status_code=400, detail="Nombre inválido")
    with saas_connect() as con:
        cur = con.cursor()
        inv = cur.execute("SELECT * FROM invitations WHERE token=?", (token,)).fetchone()
        if not inv:
            raise HTTPException(status_code=404, detail="Invitación no encontrada")
        if inv["accepted_at"]:
            raise HTTPException(status_code=400, detail="La invitación ya fue aceptada")
        if is_expired(inv["expires_at"]):
            raise HTTPException(status_code=400, detail="La invitación expiró")
        if email_registered(cur, inv["email"]):
            raise HTTPException(status_code=409, detail="El email ya está registrado")
        org = cur.execute("SELECT * FROM organizations WHERE id=?", (inv["organization_id"],)).fetchone()
        if not org or org["status"] != "active":
            raise HTTPException(status_code=403, detail="La organización no está activa")
        try:
            user_id = create_member(cur, org["id"], inv["email"], password, name, inv["role"], inv["plant_id"])
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        cur.execute("UPDATE invitations SET accepted_at=datetime('now') WHERE id=?", (inv["id"],))
        user = {"id": user_id, "email": inv["email"], "name": name, "role": inv["role"]}
        org = dict(org)
        record_audit(cur, {"org": org, "user": user}, "invitation.accepted", "invitation", inv["id"], request=request)
        con.commit()
    webhooks.dispatch(background_tasks, org["id"], "user.created", user)
    return _session(user, org)


@router.get("/me")
def me(ctx: Dict[str, Any] = Depends(get_tenant)):
    return {
        "user": ctx["user"],
        "api_key": ctx["api_key"],
        "organization": {k: ctx["org"][k] for k in ("id", "name", "slug", "plan", "status")},
    }
