import logging
import sqlite3
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from ..auth import (
    ROLE_LABELS,
    create_access_token,
    create_user,
    hash_password,
    require_role,
    require_user,
    verify_password,
)
from ..config import settings
from ..db import connect, rows_to_dicts
from ..limiter import limiter
from ..utils import fetch_or_404, log_ledger, normalize_payload, update_row

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

USER_FIELDS = {"name": "text", "role": "text", "plant_id": "int"}


def _cookie_params() -> Dict[str, Any]:
    params: Dict[str, Any] = {"httponly": True, "samesite": "lax", "path": "/"}
    samesite = (settings.cookie_samesite or "").strip().lower()
    if samesite in ("lax", "strict", "none"):
        params["samesite"] = samesite
    if settings.cookie_domain:
        params["domain"] = settings.cookie_domain
    if params["samesite"] == "none" or settings.cookie_secure:
        params["secure"] = True
    params["max_age"] = settings.jwt_expire_minutes * 60
    return params


@router.post("/auth/login")
@limiter.limit(settings.login_rate_limit)
def login(request: Request, payload: Dict[str, str], response: Response):
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    if not email or not password:
        raise HTTPException(status_code=400, detail="Email y contraseña requeridos")
    with connect() as con:
        row = con.execute(
            "SELECT id, email, name, role, plant_id, password_hash, password_salt FROM users WHERE email=?",
            (email,),
        ).fetchone()
    if not row or not verify_password(password, row["password_salt"], row["password_hash"]):
        logger.warning("Failed login for %s", email)
        raise HTTPException(status_code=401, detail="Credenciales inválidas")
    user = {k: row[k] for k in ("id", "email", "name", "role", "plant_id")}
    session = create_access_token(user)
    response.set_cookie(key=settings.cookie_name, value=session["token"], **_cookie_params())
    return {"token": session["token"], "expires_at": session["expires_at"], "user": user}


@router.post("/auth/logout")
def logout(response: Response, current_user: Dict[str, Any] = Depends(require_user)):
    response.delete_cookie(settings.cookie_name, path="/")
    return {"ok": True}


@router.get("/auth/me")
def me(current_user: Dict[str, Any] = Depends(require_user)):
    return {"active": True, "user": current_user}


@router.post("/auth/change-password")
def change_password(payload: Dict[str, str], current_user: Dict[str, Any] = Depends(require_user)):
    current = payload.get("current_password") or ""
    new = payload.get("new_password") or ""
    if len(new) < 6:
        raise HTTPException(status_code=400, detail="La contraseña debe tener al menos 6 caracteres")
    with connect() as con:
        cur = con.cursor()
        row = cur.execute("SELECT password_hash, password_salt FROM users WHERE id=?", (current_user["id"],)).fetchone()
        if not verify_password(current, row["password_salt"], row["password_hash"]):
            raise HTTPException(status_code=400, detail="La contraseña actual es incorrecta")
        cur.execute(
            "UPDATE users SET password_hash=? WHERE id=?",
            (hash_password(new, row["password_salt"]), current_user["id"]),
        )
        log_ledger(cur, "users", "PASSWORD", current_user["id"], {"action": "PASSWORD"}, current_user)
        con.commit()
    return {"ok": True}


# ---------------------- Users (admin) ----------------------


@router.get("/users")
def list_users(current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        rows = con.execute(
            """
            SELECT u.id, u.email, u.name, u.role, u.plant_id, p.name AS plant_name, u.created_at
            FROM users u LEFT JOIN plants p ON p.id = u.plant_id
            ORDER BY u.name
            """
        ).fetchall()
        return rows_to_dicts(rows)


@router.post("/users", status_code=201)
def add_user(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    email = (payload.get("email") or "").strip()
    name = (payload.get("name") or "").strip()
    password = payload.get("password") or ""
    role = payload.get("role") or "standard"
    if not email or not name or not password:
        raise HTTPException(status_code=400, detail="email, name y password son requeridos")
    with connect() as con:
        cur = con.cursor()
        try:
            user_id = create_user(cur, email, password, name, role, payload.get("plant_id"))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail="Ya existe un usuario con ese email")
        log_ledger(cur, "users", "CREATE", user_id, {"email": email, "role": role}, current_user)
        con.commit()
        row = cur.execute("SELECT id, email, name, role, plant_id, created_at FROM users WHERE id=?", (user_id,)).fetchone()
        return dict(row)


@router.patch("/users/{user_id}")
def edit_user(user_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    update = normalize_payload(payload, USER_FIELDS)
    if "role" in update and update["role"] not in ROLE_LABELS:
        raise HTTPException(status_code=400, detail="Rol inválido")
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "users", user_id, "Usuario no encontrado")
        update_row(cur, "users", user_id, update, touch=False)
        log_ledger(cur, "users", "UPDATE", user_id, {"values": update}, current_user)
        con.commit()
        row = cur.execute("SELECT id, email, name, role, plant_id, created_at FROM users WHERE id=?", (user_id,)).fetchone()
        return dict(row)


@router.delete("/users/{user_id}")
def delete_user(user_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    if user_id == current_user["id"]:
        raise HTTPException(status_code=400, detail="No puedes eliminar tu propio usuario")
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "users", user_id, "Usuario no encontrado")
        cur.execute("DELETE FROM users WHERE id=?", (user_id,))
        log_ledger(cur, "users", "DELETE", user_id, {}, current_user)
        con.commit()
    return {"id": user_id, "deleted": True}
