import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse

from ...config import settings
from ...db import rows_to_dicts
from ...utils import check_choice, insert_row, integrity_error, normalize_payload, store_upload, strip_or_none, update_row
from ..security import MANAGER_ROLES, WRITE_ROLES, audit_changes, fetch_owned, record_audit, require_access, saas_connect

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["documents"])

CATEGORIES = ("planos", "manuales", "reportes", "certificados", "permisos", "contratos", "facturas", "fotos", "otros")
ALLOWED_EXTENSIONS = {
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".txt", ".csv", ".json", ".xml",
    ".jpg", ".jpeg", ".png", ".gif", ".webp",
    ".dwg", ".dxf",
}
DOCUMENT_FIELDS = {"file_name": "text", "category": "text", "description": "text", "plant_id": "int"}
PUBLIC_COLUMNS = """
    d.id, d.organization_id, d.plant_id, d.file_name, d.file_size, d.mime_type, d.category,
    d.description, d.uploaded_by, d.uploaded_at, d.updated_at
"""

read = require_access("documents:read")
write = require_access("documents:write", *WRITE_ROLES)


def _public(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc.pop("file_path", None)
    return doc


@router.get("")
def list_documents(
    plant_id: Optional[int] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    ctx: Dict[str, Any] = Depends(read),
):
    q = f"""
        SELECT {PUBLIC_COLUMNS}, p.name AS plant_name
        FROM documents d LEFT JOIN plants p ON p.id = d.plant_id
        WHERE d.organization_id = :org
    """
    params: Dict[str, Any] = {"org": ctx["org"]["id"]}
    if plant_id is not None:
        q += " AND d.plant_id = :pid"
        params["pid"] = plant_id
    if category:
        q += " AND d.category = :cat"
        params["cat"] = category
    if search:
        q += " AND (d.file_name LIKE :kw OR d.description LIKE :kw)"
        params["kw"] = f"%{search}%"
    q += " ORDER BY d.uploaded_at DESC, d.id DESC"
    with saas_connect() as con:
        return rows_to_dicts(con.execute(q, params).fetchall())


@router.get("/categories")
def list_categories(ctx: Dict[str, Any] = Depends(read)):
    return list(CATEGORIES)


@router.post("", status_code=201)
async def upload_document(
    request: Request,
    plant_id: Optional[int] = Form(None),
    category: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    name: Optional[str] = Form(None),
    file: UploadFile = File(...),
    ctx: Dict[str, Any] = Depends(write),
):
    ext = Path(file.filename or "").suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise HTTPException(status_code=400, detail=f"Tipo de archivo {ext or 'sin extensión'} no permitido")
    category = strip_or_none(category) or "otros"
    check_choice(category, CATEGORIES, "category")
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="El archivo está vacío")
    if len(content) > settings.max_document_mb * 1024 * 1024:
        raise HTTPException(status_code=413, detail=f"El archivo supera {settings.max_document_mb} MB")
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        if plant_id:
            fetch_owned(cur, "plants", org_id, plant_id, "Planta no encontrada")
        path = store_upload(f"saas-documents/{org_id}", file.filename, content)
        values = {
            "organization_id": org_id,
            "plant_id": plant_id or None,
            "file_name": strip_or_none(name) or file.filename or path.name,
            "file_path": str(path),
            "file_size": len(content),
            "mime_type": file.content_type,
            "category": category,
            "description": strip_or_none(description),
            "uploaded_by": (ctx["user"] or {}).get("id"),
        }
        try:
            doc_id = insert_row(cur, "documents", values)
            record_audit(cur, ctx, "document.uploaded", "document", doc_id,
                         new_value={"file_name": values["file_name"], "category": category}, request=request)
            con.commit()
        except sqlite3.Error as e:
            path.unlink(missing_ok=True)
            logger.error("Document %s not stored, upload removed: %s", values["file_name"], e)
            if isinstance(e, sqlite3.IntegrityError):
                raise integrity_error(e, "Documento duplicado")
            raise
        return _public(fetch_owned(cur, "documents", org_id, doc_id, "Documento no encontrado"))


@router.get("/{doc_id}/download")
def download_document(doc_id: int, ctx: Dict[str, Any] = Depends(read)):
    with saas_connect() as con:
        doc = fetch_owned(con.cursor(), "documents", ctx["org"]["id"], doc_id, "Documento no encontrado")
    path = Path(doc["file_path"])
    if not path.exists():
        raise HTTPException(status_code=404, detail="Archivo no encontrado en el servidor")
    return FileResponse(path, filename=doc["file_name"], media_type=doc.get("mime_type") or "application/octet-stream")


@router.get("/{doc_id}")
def get_document(doc_id: int, ctx: Dict[str, Any] = Depends(read)):
    with saas_connect() as con:
        return _public(fetch_owned(con.cursor(), "documents", ctx["org"]["id"], doc_id, "Documento no encontrado"))


@router.patch("/{doc_id}")
def update_document(request: Request, doc_id: int, payload: Dict[str, Any], ctx: Dict[str, Any] = Depends(write)):
    update = normalize_payload(payload, DOCUMENT_FIELDS)
    if not update:
        raise HTTPException(status_code=400, detail="Sin cambios")
    if "file_name" in update and not update["file_name"]:
        raise HTTPException(status_code=400, detail="file_name no puede estar vacío")
    check_choice(update.get("category"), CATEGORIES, "category")
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        before = fetch_owned(cur, "documents", org_id, doc_id, "Documento no encontrado")
        if update.get("plant_id"):
            fetch_owned(cur, "plants", org_id, update["plant_id"], "Planta no encontrada")
        update_row(cur, "documents", doc_id, update)
        after = fetch_owned(cur, "documents", org_id, doc_id, "Documento no encontrado")
        record_audit(cur, ctx, "document.updated", "document", doc_id, *audit_changes(before, after), request)
        con.commit()
    return _public(after)


@router.delete("/{doc_id}")
def delete_document(request: Request, doc_id: int, ctx: Dict[str, Any] = Depends(require_access("documents:write", *MANAGER_ROLES))):
    org_id = ctx["org"]["id"]
    with saas_connect() as con:
        cur = con.cursor()
        doc = fetch_owned(cur, "documents", org_id, doc_id, "Documento no encontrado")
        cur.execute("DELETE FROM documents WHERE id=? AND organization_id=?", (doc_id, org_id))
        record_audit(cur, ctx, "document.deleted", "document", doc_id, old_value={"file_name": doc["file_name"]}, request=request)
        con.commit()
    try:
        Path(doc["file_path"]).unlink()
    except FileNotFoundError:
        logger.warning("Document file already missing: %s", doc["file_path"])
    return {"id": doc_id, "deleted": True}
