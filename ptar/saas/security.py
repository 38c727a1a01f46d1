import hashlib
import json
import logging
import secrets
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt
from fastapi import Depends, Header, HTTPException, Request

from ..auth import decode_token, extract_token, hash_password
from ..config import settings
from ..db import connect
from ..utils import diff_rows, json_dumps

logger = logging.getLogger(__name__)

ROLES = ("owner", "admin", "supervisor", "operator", "viewer")
MANAGER_ROLES = ("owner", "admin")
WRITE_ROLES = ("owner", "admin", "supervisor", "operator")

PLAN_LIMITS = {
    "starter": {"plants": 3, "users": 5},
    "pro": {"plants": 10, "users": 25},
}

API_SCOPES = {
    "plants:read": "Ver plantas",
    "plants:write": "Modificar plantas",
    "data:read": "Ver datos ambientales",
    "data:write": "Escribir datos ambientales",
    "maintenance:read": "Ver mantenimientos",
    "maintenance:write": "Gestionar mantenimientos",
    "tickets:read": "Ver tickets",
    "tickets:write": "Gestionar tickets",
    "opex:read": "Ver costos operativos",
    "opex:write": "Registrar costos operativos",
    "documents:read": "Ver documentos",
    "documents:write": "Subir documentos",
    "equipment:read": "Ver equipos",
    "equipment:write": "Gestionar equipos",
    "checklist:read": "Ver checklists",
    "checklist:write": "Completar checklists",
    "users:read": "Ver usuarios",
    "webhooks:manage": "Gestionar webhooks",
}
DEFAULT_SCOPES = ["plants:read", "data:read"]
API_KEY_PREFIX = "ptar_"


@contextmanager
def saas_connect():
    with connect(settings.saas_db_path) as con:
        yield con


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def generate_api_key() -> Dict[str, str]:
    """Plain key (shown once), its sha256 hash and the 12 char display prefix."""
    key = API_KEY_PREFIX + secrets.token_urlsafe(32)
    return {"key": key, "hash": hash_api_key(key), "prefix": key[:12]}


def create_tenant_token(user: Dict[str, Any], org: Dict[str, Any]) -> Dict[str, str]:
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expire_minutes)
    payload = {
        "sub": str(user["id"]),
        "email": user["email"],
        "role": user["role"],
        "org": org["id"],
        "org_slug": org["slug"],
        "exp": expires_at,
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"token": token, "expires_at": expires_at.isoformat()}


def is_expired(expires_at: Optional[str]) -> bool:
    if not expires_at:
        return False
    when = datetime.fromisoformat(expires_at)
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when < datetime.now(timezone.utc)


def _load_org(cur, org_id: int) -> Dict[str, Any]:
    org = cur.execute("SELECT * FROM organizations WHERE id=?", (org_id,)).fetchone()
    if not org:
        raise HTTPException(status_code=404, detail="Organización no encontrada")
    if org["status"] != "active":
        raise HTTPException(status_code=403, detail="La organización no está activa")
    org = dict(org)
    org["settings"] = json.loads(org["settings"] or "{}")
    return org


def _from_api_key(cur, key: str) -> Dict[str, Any]:
    row = cur.execute(
        "SELECT * FROM api_keys WHERE key_hash=? AND status='active'", (hash_api_key(key),)
    ).fetchone()
    if not row or is_expired(row["expires_at"]):
        raise HTTPException(status_code=401, detail="API key inválida o expirada")
    cur.execute("UPDATE api_keys SET last_used_at=datetime('now') WHERE id=?", (row["id"],))
    return {
        "org": _load_org(cur, row["organization_id"]),
        "user": None,
        "api_key": {"id": row["id"], "name": row["name"], "prefix": row["key_prefix"]},
        "scopes": json.loads(row["scopes"] or "[]"),
    }


def _from_token(cur, token: str) -> Dict[str, Any]:
    claims = decode_token(token)
    if "org" not in claims:
        raise HTTPException(status_code=401, detail="Sesión no válida")
    org = _load_org(cur, int(claims["org"]))
    user = cur.execute(
        """
        SELECT id, organization_id, email, name, role, status, plant_id
        FROM users WHERE id=? AND organization_id=?
        """,
        (int(claims["sub"]), org["id"]),
    ).fetchone()
    if not user or user["status"] != "active":
        raise HTTPException(status_code=401, detail="Sesión no válida")
    return {"org": org, "user": dict(user), "api_key": None, "scopes": []}


def get_tenant(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None),
) -> Dict[str, Any]:
    """Tenant context: the organization plus the user or API key acting for it."""
    with saas_connect() as con:
        cur = con.cursor()
        if x_api_key:
            ctx = _from_api_key(cur, x_api_key.strip())
            con.commit()
            return ctx
        return _from_token(cur, extract_token(authorization))


def require_access(scope: str, *roles: str) -> Callable:
    """Users need one of `roles` (any role when empty); API keys need `scope`."""

    def dependency(ctx=Depends(get_tenant)) -> Dict[str, Any]:
        if ctx["api_key"] is not None:
            if scope not in ctx["scopes"]:
                raise HTTPException(status_code=403, detail=f"La API key no tiene el permiso {scope}")
        elif roles and ctx["user"]["role"] not in roles:
            raise HTTPException(status_code=403, detail="No tienes permisos para esta operación")
        return ctx

    return dependency


def require_member(*roles: str) -> Callable:
    """Session-only endpoints: API keys are rejected."""

    def dependency(ctx=Depends(get_tenant)) -> Dict[str, Any]:
        if ctx["user"] is None:
            raise HTTPException(status_code=403, detail="Operación no disponible con API key")
        if roles and ctx["user"]["role"] not in roles:
            raise HTTPException(status_code=403, detail="No tienes permisos para esta operación")
        return ctx

    return dependency


def usage(cur, org_id: int) -> Dict[str, int]:
    plants = cur.execute("SELECT COUNT(*) AS n FROM plants WHERE organization_id=?", (org_id,)).fetchone()["n"]
    users = cur.execute(
        "SELECT COUNT(*) AS n FROM users WHERE organization_id=? AND status <> 'suspended'", (org_id,)
    ).fetchone()["n"]
    return {"plants": plants, "users": users}


def check_plan_limit(cur, org: Dict[str, Any], resource: str) -> None:
    limit = PLAN_LIMITS.get(org["plan"], PLAN_LIMITS["starter"])[resource]
    if usage(cur, org["id"])[resource] >= limit:
        raise HTTPException(
            status_code=403,
            detail=f"Límite del plan {org['plan']} alcanzado: máximo {limit} {resource}",
        )


def record_audit(
    cur,
    ctx: Dict[str, Any],
    action: str,
    entity_type: str,
    entity_id: Any = None,
    old_value: Optional[Dict[str, Any]] = None,
    new_value: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> None:
    user_id = ctx["user"]["id"] if ctx.get("user") else None
    ip = request.client.host if request is not None and request.client else "system"
    agent = request.headers.get("user-agent") if request is not None else "system"
    if ctx.get("api_key"):
        agent = f"api_key:{ctx['api_key']['prefix']}"
    cur.execute(
        """
        INSERT INTO audit_logs(organization_id, user_id, action, entity_type, entity_id,
                               old_value, new_value, ip_address, user_agent)
        VALUES (?,?,?,?,?,?,?,?,?)
        """,
        (
            ctx["org"]["id"],
            user_id,
            action,
            entity_type,
            str(entity_id) if entity_id is not None else None,
            json_dumps(old_value) if old_value is not None else None,
            json_dumps(new_value) if new_value is not None else None,
            ip,
            agent,
        ),
    )


def audit_changes(before: Dict[str, Any], after: Dict[str, Any]):
    """(old, new) values of the columns that changed, for `record_audit`."""
    diff = diff_rows(before, after)
    diff.pop("updated_at", None)
    return {k: v["from"] for k, v in diff.items()}, {k: v["to"] for k, v in diff.items()}


def email_registered(cur, email: str) -> bool:
    return cur.execute("SELECT 1 FROM users WHERE email=?", (email,)).fetchone() is not None


def create_member(
    cur,
    org_id: int,
    email: str,
    password: str,
    name: str,
    role: str,
    plant_id: Optional[int] = None,
) -> int:
    if role not in ROLES:
        raise ValueError("Rol inválido")
    if len(password) < 8:
        raise ValueError("La contraseña debe tener al menos 8 caracteres")
    salt = secrets.token_hex(16)
    cur.execute(
        """
        INSERT INTO users(organization_id, email, name, password_hash, password_salt, role, plant_id)
        VALUES (?,?,?,?,?,?,?)
        """,
        (org_id, email.strip().lower(), name.strip(), hash_password(password, salt), salt, role, plant_id),
    )
    return cur.lastrowid


def fetch_owned(cur, table: str, org_id: int, row_id: int, detail: str) -> Dict[str, Any]:
    """Row of `table` belonging to the organization; other tenants' ids are 404."""
    row = cur.execute(
        f"SELECT * FROM {table} WHERE id=? AND organization_id=?", (row_id, org_id)
    ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail=detail)
    return dict(row)
