import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt
from fastapi import Cookie, Depends, Header, HTTPException

from .config import settings
from .db import connect

logger = logging.getLogger(__name__)

ROLE_LABELS = {"admin", "standard"}


def hash_password(password: str, salt: str) -> str:
    return hashlib.sha256((salt + password).encode("utf-8")).hexdigest()


def verify_password(password: str, salt: str, password_hash: str) -> bool:
    return secrets.compare_digest(hash_password(password, salt), password_hash)


def create_user(cur, email: str, password: str, name: str, role: str = "standard", plant_id: Optional[int] = None) -> int:
    email = email.strip().lower()
    if role not in ROLE_LABELS:
        raise ValueError("Rol inválido")
    if len(password) < 6:
        raise ValueError("La contraseña debe tener al menos 6 caracteres")
    salt = secrets.token_hex(16)
    cur.execute(
        "INSERT INTO users(email, name, password_hash, password_salt, role, plant_id) VALUES (?,?,?,?,?,?)",
        (email, name.strip(), hash_password(password, salt), salt, role, plant_id),
    )
    return cur.lastrowid


def ensure_default_users(cur) -> None:
    count = cur.execute("SELECT COUNT(*) AS n FROM users").fetchone()["n"]
    if count:
        return
    create_user(cur, settings.admin_default_email, settings.admin_default_password, "Administrador", "admin")
    logger.info("Default admin created: %s", settings.admin_default_email)


def create_access_token(user: Dict[str, Any]) -> Dict[str, str]:
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expire_minutes)
    payload = {
        "sub": str(user["id"]),
        "email": user["email"],
        "role": user["role"],
        "exp": expires_at,
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"token": token, "expires_at": expires_at.isoformat()}


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Sesión expirada")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Sesión no válida")


def extract_token(authorization: Optional[str], cookie_token: Optional[str] = None) -> str:
    if not authorization:
        if cookie_token:
            return cookie_token
        raise HTTPException(status_code=401, detail="Token requerido")
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise HTTPException(status_code=401, detail="Formato de token inválido")
    token = authorization[len(prefix):].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Token requerido")
    return token


def get_current_user(
    authorization: Optional[str] = Header(None),
    session: Optional[str] = Cookie(default=None),
) -> Dict[str, Any]:
    token = extract_token(authorization, session)
    claims = decode_token(token)
    with connect() as con:
        row = con.execute(
            "SELECT id, email, name, role, plant_id FROM users WHERE id=?",
            (int(claims["sub"]),),
        ).fetchone()
    if not row:
        raise HTTPException(status_code=401, detail="Sesión no válida")
    return dict(row)


def require_user(user=Depends(get_current_user)) -> Dict[str, Any]:
    return user


def require_role(*roles: str) -> Callable:
    allowed = {r.lower() for r in roles if r}

    def dependency(user=Depends(get_current_user)) -> Dict[str, Any]:
        if allowed and user["role"].lower() not in allowed:
            raise HTTPException(status_code=403, detail="No tienes permisos para esta operación")
        return user

    return dependency


def is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") == "admin"


def ensure_plant_access(user: Dict[str, Any], plant_id: int) -> None:
    """Standard users bound to a plant may only touch that plant."""
    if is_admin(user) or not user.get("plant_id"):
        return
    if int(user["plant_id"]) != int(plant_id):
        raise HTTPException(status_code=403, detail="No tienes acceso a esta planta")
