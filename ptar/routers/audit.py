import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from ..auth import require_role
from ..db import connect

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("")
def list_ledger(
    table_name: Optional[str] = None,
    row_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 200,
    offset: int = 0,
    current_user: Dict[str, Any] = Depends(require_role("admin")),
):
    q = "SELECT * FROM data_ledger WHERE 1=1"
    params: Dict[str, Any] = {}
    if table_name:
        q += " AND table_name = :t"
        params["t"] = table_name
    if row_id is not None:
        q += " AND row_id = :rid"
        params["rid"] = row_id
    if action:
        q += " AND action = :action"
        params["action"] = action.upper()
    q += " ORDER BY id DESC LIMIT :limit OFFSET :offset"
    params["limit"] = max(1, min(limit, 1000))
    params["offset"] = max(0, offset)
    with connect() as con:
        rows = con.execute(q, params).fetchall()
    out = []
    for r in rows:
        d = dict(r)
        d["details"] = json.loads(d["details"]) if d["details"] else None
        out.append(d)
    return out
