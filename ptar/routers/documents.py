import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse

from ..auth import require_role, require_user
from ..db import connect, rows_to_dicts
from ..utils import fetch_or_404, insert_row, integrity_error, log_ledger, store_upload, strip_or_none

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["documents"])

SORTABLE = {"uploaded_at", "file_name", "category", "plant_id"}


def _public(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc.pop("file_path", None)
    return doc


@router.get("")
def list_documents(
    plant_id: Optional[int] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: str = "uploaded_at",
    order: str = "desc",
    current_user: Dict[str, Any] = Depends(require_user),
):
    if sort_by not in SORTABLE:
        sort_by = "uploaded_at"
    direction = "ASC" if order.lower() == "asc" else "DESC"
    q = """
        SELECT d.id, d.plant_id, d.file_name, d.file_size, d.mime_type, d.category,
               d.description, d.uploaded_by, d.uploaded_at, p.name AS plant_name
        FROM documents d JOIN plants p ON p.id = d.plant_id
        WHERE 1=1
    """
    params: Dict[str, Any] = {}
    if plant_id:
        q += " AND d.plant_id = :pid"
        params["pid"] = plant_id
    if category:
        q += " AND d.category = :cat"
        params["cat"] = category
    if search:
        q += " AND (d.file_name LIKE :kw OR d.description LIKE :kw)"
        params["kw"] = f"%{search}%"
    q += f" ORDER BY d.{sort_by} {direction}, d.id DESC"
    with connect() as con:
        return rows_to_dicts(con.execute(q, params).fetchall())


@router.post("", status_code=201)
async def upload_document(
    plant_id: int = Form(...),
    category: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    file: UploadFile = File(...),
    current_user: Dict[str, Any] = Depends(require_role("admin")),
):
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="El archivo está vacío")
    with connect() as con:
        cur = con.cursor()
        fetch_or_404(cur, "plants", plant_id, "Planta no encontrada")
        path = store_upload("documents", file.filename, content)
        values = {
            "plant_id": plant_id,
            "file_name": file.filename or path.name,
            "file_path": str(path),
            "file_size": len(content),
            "mime_type": file.content_type,
            "category": strip_or_none(category),
            "description": strip_or_none(description),
            "uploaded_by": current_user["name"],
        }
        try:
            doc_id = insert_row(cur, "documents", values)
            log_ledger(cur, "documents", "CREATE", doc_id, {"file_name": values["file_name"], "plant_id": plant_id}, current_user)
            con.commit()
        except sqlite3.Error as e:
            path.unlink(missing_ok=True)
            logger.error("Document %s not stored, upload removed: %s", values["file_name"], e)
            if isinstance(e, sqlite3.IntegrityError):
                raise integrity_error(e, "Documento duplicado")
            raise
        return _public(fetch_or_404(cur, "documents", doc_id, "Documento no encontrado"))


@router.get("/{doc_id}/download")
def download_document(doc_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        doc = fetch_or_404(con.cursor(), "documents", doc_id, "Documento no encontrado")
    path = Path(doc["file_path"])
    if not path.exists():
        raise HTTPException(status_code=404, detail="Archivo no encontrado en el servidor")
    return FileResponse(path, filename=doc["file_name"], media_type=doc.get("mime_type") or "application/octet-stream")


@router.get("/{doc_id}")
def get_document(doc_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        return _public(fetch_or_404(con.cursor(), "documents", doc_id, "Documento no encontrado"))


@router.delete("/{doc_id}")
def delete_document(doc_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        doc = fetch_or_404(cur, "documents", doc_id, "Documento no encontrado")
        cur.execute("DELETE FROM documents WHERE id=?", (doc_id,))
        log_ledger(cur, "documents", "DELETE", doc_id, {"file_name": doc["file_name"]}, current_user)
        con.commit()
    try:
        Path(doc["file_path"]).unlink()
    except FileNotFoundError:
        logger.warning("Document file already missing: %s", doc["file_path"])
    return {"id": doc_id, "deleted": True}
