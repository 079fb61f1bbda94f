"""
File uploads: profile pictures, UPI QR codes and startup documents.

Files are written under settings.UPLOAD_DIR and served back from /uploads.
"""
import logging
import os
import uuid
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from auth import get_current_user, require_role
from config import settings
from database import create_document, get_db, now, oid, to_public
from schemas import Document

logger = logging.getLogger(__name__)

router = APIRouter()

ALLOWED_EXTENSIONS = {
    "profiles": {".jpg", ".jpeg", ".png", ".gif"},
    "upi": {".jpg", ".jpeg", ".png", ".gif", ".pdf"},
    "documents": {".pdf", ".doc", ".docx", ".jpg", ".jpeg", ".png"},
}


def save_upload(upload: UploadFile, kind: str) -> tuple:
    """Validate and store an upload, returning (public path, extension, size in bytes)."""
    ext = os.path.splitext(upload.filename or "")[1].lower()
    if ext not in ALLOWED_EXTENSIONS[kind]:
        raise HTTPException(status_code=400, detail=f"File type {ext or 'unknown'} is not allowed for {kind} uploads")

    content = upload.file.read()
    if not content:
        raise HTTPException(status_code=400, detail="No file provided")
    if len(content) > settings.MAX_UPLOAD_MB * 1024 * 1024:
        raise HTTPException(status_code=400, detail=f"File exceeds the {settings.MAX_UPLOAD_MB}MB limit")

    target_dir = Path(settings.UPLOAD_DIR) / kind
    target_dir.mkdir(parents=True, exist_ok=True)
    filename = f"{uuid.uuid4()}{ext}"
    (target_dir / filename).write_bytes(content)
    logger.info("Stored %s upload %s (%d bytes)", kind, filename, len(content))
    return f"/uploads/{kind}/{filename}", ext, len(content)


@router.post("/profile")
def upload_profile(profile: UploadFile = File(...), user=Depends(get_current_user), db=Depends(get_db)):
    file_path, _, _ = save_upload(profile, "profiles")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"profile_image": file_path, "updated_at": now()}})
    if user.get("role") == "startup":
        db["startup"].update_one({"owner_user_id": str(user["_id"])}, {"$set": {"image": file_path, "updated_at": now()}})
    updated = db["user"].find_one({"_id": user["_id"]})
    return {"message": "Profile picture uploaded successfully", "filePath": file_path, "user": to_public(updated)}


@router.post("/upi")
def upload_upi(
    upi: UploadFile = File(...),
    upi_id: Optional[str] = Form(None),
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    file_path, _, _ = save_upload(upi, "upi")
    update = {"upi_qr_code": file_path, "updated_at": now()}
    if upi_id:
        update["upi_id"] = upi_id
    db["user"].update_one({"_id": user["_id"]}, {"$set": update})
    updated = db["user"].find_one({"_id": user["_id"]})
    return {"message": "UPI QR code uploaded successfully", "filePath": file_path, "user": to_public(updated)}


@router.post("/document", status_code=201)
def upload_document(
    document: UploadFile = File(...),
    title: str = Form(...),
    user=Depends(require_role("startup")),
    db=Depends(get_db),
):
    startup = db["startup"].find_one({"owner_user_id": str(user["_id"])})
    if not startup:
        raise HTTPException(status_code=404, detail="Startup not found")
    if not title.strip():
        raise HTTPException(status_code=400, detail="Document title is required")

    file_path, ext, size = save_upload(document, "documents")
    row = Document(
        startup_id=str(startup["_id"]),
        name=title.strip(),
        type=ext.lstrip("."),
        path=file_path,
        size_in_mb=size / (1024 * 1024),
    ).model_dump()
    doc_id = create_document(db, "document", row)
    return {
        "message": "Document uploaded successfully",
        "document": to_public(db["document"].find_one({"_id": oid(doc_id)})),
    }
