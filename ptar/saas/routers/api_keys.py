import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request

from ...utils import json_dumps
from ..security import (
    API_SCOPES,
    DEFAULT_SCOPES,
    MANAGER_ROLES,
    generate_api_key,
    record_audit,
    require_member,
    saas_connect,
)

router = APIRouter(prefix="/api-keys", tags=["api-keys"])

KEY_COLUMNS = "id, name, key_prefix, scopes, last_used_at, expires_at, status, created_by, created_at"


def _out(row) -> Dict[str, Any]:
    d = dict(row)
    d["scopes"] = json.loads(d["scopes"] or "[]")
    return d


def _validate_scopes(scopes: Any) -> None:
    if not isinstance(scopes, list) or not scopes:
        raise HTTPException(status_code=400, detail="scopes debe ser una lista no vacía")
    unknown = [s for s in scopes if s not in API_SCOPES]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Permisos inválidos: {', '.join(map(str, unknown))}")


def _get_key(cur, org_id: int, key_id: int) -> Dict[str, Any]:
    row = cur.execute(
        f"SELECT {KEY_COLUMNS} FROM api_keys WHERE id=? AND organization_id=?", (key_id, org_id)
    ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="API key no encontrada")
    return _out(row)


@router.get("")
def list_keys(ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES))):
    with saas_connect() as con:
        rows = con.execute(
            f"""
            SELECT {', '.join('k.' + c for c in KEY_COLUMNS.split(', '))}, u.name AS created_by_name
            FROM api_keys k LEFT JOIN users u ON u.id = k.created_by
            WHERE k.organization_id=? ORDER BY k.created_at DESC, k.id DESC
            """,
            (ctx["org"]["id"],),
        ).fetchall()
    return [_out(r) for r in rows]


@router.get("/scopes")
def list_scopes(ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES))):
    return [{"scope": k, "description": v} for k, v in API_SCOPES.items()]


@router.post("", status_code=201)
def create_key(request: Request, payload: Dict[str, Any], ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES))):
    """The plain key is only returned here; the database keeps its hash."""
    name = (payload.get("name") or "").strip()
    if not 1 <= len(name) <= 100:
        raise HTTPException(status_code=400, detail="Nombre requerido")
    scopes = payload.get("scopes") or list(DEFAULT_SCOPES)
    _validate_scopes(scopes)
    expires_at = None
    if payload.get("expires_in_days") is not None:
        days = payload["expires_in_days"]
        if not isinstance(days, int) or not 1 <= days <= 365:
            raise HTTPException(status_code=400, detail="expires_in_days debe estar entre 1 y 365")
        expires_at = (datetime.now(timezone.utc) + timedelta(days=days)).isoformat(timespec="seconds")

    generated = generate_api_key()
    with saas_connect() as con:
        cur = con.cursor()
        cur.execute(
            """
            INSERT INTO api_keys(organization_id, name, key_hash, key_prefix, scopes, expires_at, created_by)
            VALUES (?,?,?,?,?,?,?)
            """,
            (ctx["org"]["id"], name, generated["hash"], generated["prefix"], json_dumps(scopes), expires_at, ctx["user"]["id"]),
        )
        key_id = cur.lastrowid
        record_audit(cur, ctx, "api_key.created", "api_key", key_id,
                     new_value={"name": name, "scopes": scopes, "prefix": generated["prefix"]}, request=request)
        con.commit()
        out = _get_key(cur, ctx["org"]["id"], key_id)
    out["key"] = generated["key"]
    return out


@router.get("/{key_id}")
def get_key(key_id: int, ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES))):
    with saas_connect() as con:
        return _get_key(con.cursor(), ctx["org"]["id"], key_id)


@router.patch("/{key_id}")
def update_key(
    request: Request,
    key_id: int,
    payload: Dict[str, Any],
    ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES)),
):
    update: Dict[str, Any] = {}
    if "name" in payload:
        name = (payload.get("name") or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="Nombre requerido")
        update["name"] = name
    if "scopes" in payload:
        _validate_scopes(payload["scopes"])
        update["scopes"] = json_dumps(payload["scopes"])
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    with saas_connect() as con:
        cur = con.cursor()
        before = _get_key(cur, ctx["org"]["id"], key_id)
        if before["status"] == "revoked":
            raise HTTPException(status_code=400, detail="La API key está revocada")
        sets = ", ".join(f"{k}=:{k}" for k in update)
        cur.execute(f"UPDATE api_keys SET {sets} WHERE id=:id", {**update, "id": key_id})
        after = _get_key(cur, ctx["org"]["id"], key_id)
        record_audit(cur, ctx, "api_key.updated", "api_key", key_id,
                     {"name": before["name"], "scopes": before["scopes"]},
                     {"name": after["name"], "scopes": after["scopes"]}, request)
        con.commit()
    return after


@router.post("/{key_id}/revoke")
def revoke_key(request: Request, key_id: int, ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES))):
    with saas_connect() as con:
        cur = con.cursor()
        key = _get_key(cur, ctx["org"]["id"], key_id)
        if key["status"] == "revoked":
            raise HTTPException(status_code=400, detail="La API key ya está revocada")
        cur.execute("UPDATE api_keys SET status='revoked' WHERE id=?", (key_id,))
        record_audit(cur, ctx, "api_key.revoked", "api_key", key_id,
                     {"name": key["name"], "status": key["status"]}, {"status": "revoked"}, request)
        con.commit()
    return {"id": key_id, "status": "revoked"}


@router.delete("/{key_id}")
def delete_key(request: Request, key_id: int, ctx: Dict[str, Any] = Depends(require_member(*MANAGER_ROLES))):
    with saas_connect() as con:
        cur = con.cursor()
        key = _get_key(cur, ctx["org"]["id"], key_id)
        cur.execute("DELETE FROM api_keys WHERE id=?", (key_id,))
        record_audit(cur, ctx, "api_key.deleted", "api_key", key_id, old_value={"name": key["name"]}, request=request)
        con.commit()
    return {"id": key_id, "deleted": True}
