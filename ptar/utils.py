import json
import re
import sqlite3
import uuid
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import pandas as pd
from fastapi import HTTPException

from .config import settings


def strip_or_none(x: Any) -> Optional[str]:
    if x is None:
        return None
    s = str(x).strip().replace("\t", "")
    return s if s else None


def to_int_or_none(x: Any) -> Optional[int]:
    if x is None or x == "":
        return None
    try:
        if isinstance(x, str):
            x = x.replace(",", "")
        return int(float(x))
    except (TypeError, ValueError):
        return None


def to_float_or_none(x: Any) -> Optional[float]:
    if x is None or x == "":
        return None
    try:
        if isinstance(x, str):
            x = x.replace(",", "")
        v = float(x)
    except (TypeError, ValueError):
        return None
    return None if pd.isna(v) else v


def to_flag(x: Any) -> Optional[int]:
    if isinstance(x, bool):
        return int(x)
    if x in (0, 1, "0", "1"):
        return int(x)
    if isinstance(x, str) and x.strip().lower() in ("true", "false"):
        return int(x.strip().lower() == "true")
    return None


def to_date_iso(x: Any) -> Optional[str]:
    if x is None or str(x).strip() == "":
        return None
    ts = pd.to_datetime(x, errors="coerce")
    if pd.isna(ts):
        return None
    return ts.date().isoformat()


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


def today_iso() -> str:
    return date.today().isoformat()


def add_days(day: str, days: int) -> str:
    return (date.fromisoformat(day[:10]) + timedelta(days=days)).isoformat()


def normalize_payload(payload: Dict[str, Any], fields: Dict[str, str]) -> Dict[str, Any]:
    """Keep only the known `fields` (name -> kind) and coerce their values.

    Kinds: text, int, float, flag, date, raw. Raises 400 on values that do not
    coerce so callers never write garbage.
    """
    out = {}
    for k, v in payload.items():
        kind = fields.get(k)
        if kind is None:
            continue
        if kind == "text":
            out[k] = strip_or_none(v)
        elif kind == "int":
            out[k] = to_int_or_none(v)
            if v not in (None, "") and out[k] is None:
                raise HTTPException(status_code=400, detail=f"{k} debe ser un número entero")
        elif kind == "float":
            out[k] = to_float_or_none(v)
            if v not in (None, "") and out[k] is None:
                raise HTTPException(status_code=400, detail=f"{k} debe ser numérico")
        elif kind == "flag":
            out[k] = to_flag(v)
            if out[k] is None:
                raise HTTPException(status_code=400, detail=f"{k} debe ser verdadero o falso")
        elif kind == "date":
            out[k] = to_date_iso(v)
            if v not in (None, "") and out[k] is None:
                raise HTTPException(status_code=400, detail=f"{k} no es una fecha válida")
        else:
            out[k] = v
    return out


def check_choice(value: Optional[str], allowed: Iterable[str], field: str) -> None:
    if value is not None and value not in allowed:
        raise HTTPException(status_code=400, detail=f"{field} inválido: {value}")


def diff_rows(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    changed = {}
    keys = set(before.keys()) | set(after.keys())
    for k in keys:
        if before.get(k) != after.get(k):
            changed[k] = {"from": before.get(k), "to": after.get(k)}
    return changed


def json_dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str)


def log_ledger(cur, table_name: str, action: str, row_id: Optional[int], details: Dict[str, Any], actor: Optional[Dict[str, Any]] = None) -> None:
    cur.execute(
        "INSERT INTO data_ledger(table_name, action, row_id, actor_user_id, actor_email, details) VALUES (?,?,?,?,?,?)",
        (
            table_name,
            action,
            row_id,
            actor.get("id") if actor else None,
            actor.get("email") if actor else None,
            json_dumps(details),
        ),
    )


def fetch_or_404(cur, table: str, row_id: int, detail: str) -> Dict[str, Any]:
    row = cur.execute(f"SELECT * FROM {table} WHERE id=?", (row_id,)).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail=detail)
    return dict(row)


def update_row(cur, table: str, row_id: int, update: Dict[str, Any], touch: bool = True) -> None:
    sets = [f"{k}=:{k}" for k in update.keys()]
    if touch:
        sets.append("updated_at=datetime('now')")
    sql = f"UPDATE {table} SET " + ", ".join(sets) + " WHERE id=:id"
    cur.execute(sql, {**update, "id": row_id})


def insert_row(cur, table: str, values: Dict[str, Any]) -> int:
    cols = ",".join(values.keys())
    vals = ":" + ",:".join(values.keys())
    cur.execute(f"INSERT INTO {table}({cols}) VALUES ({vals})", values)
    return cur.lastrowid


def integrity_error(e: sqlite3.IntegrityError, duplicate_detail: str) -> HTTPException:
    msg = str(e)
    if "UNIQUE" in msg:
        return HTTPException(status_code=409, detail=duplicate_detail)
    if "FOREIGN KEY" in msg:
        return HTTPException(status_code=400, detail="Referencia inválida")
    return HTTPException(status_code=400, detail="Valor fuera de rango")


def safe_filename(name: Optional[str]) -> str:
    base = Path(name or "archivo").name
    return re.sub(r"[^A-Za-z0-9._-]+", "_", base) or "archivo"


def store_upload(subdir: str, filename: Optional[str], content: bytes) -> Path:
    """Write an uploaded file under upload_dir/<subdir> with a unique name."""
    target_dir = Path(settings.upload_dir) / subdir
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / f"{uuid.uuid4().hex[:12]}_{safe_filename(filename)}"
    path.write_bytes(content)
    return path
