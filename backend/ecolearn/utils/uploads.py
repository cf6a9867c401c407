"""Validation and storage of task/submission attachments.

Uploads are checked before any database work (name, extension, size,
and for images that Pillow can actually decode them) and only written
to `UPLOAD_DIR` once the calling workflow is ready to commit. If the
workflow then fails, `discard` removes the file again.
"""

from __future__ import annotations

import io
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from ..config import settings
from ..errors import ValidationFailed

ALLOWED_EXTENSIONS = {".pdf", ".doc", ".docx", ".jpg", ".jpeg", ".png"}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png"}

_LOGGER = logging.getLogger("ecolearn.uploads")


@dataclass
class StoredFile:
    filename: str
    original_name: str
    path: str
    mimetype: str


@dataclass
class PendingUpload:
    original_name: str
    mimetype: str
    payload: bytes

    def save(self, upload_dir: Optional[Path] = None) -> StoredFile:
        target_dir = Path(upload_dir or settings.UPLOAD_DIR)
        target_dir.mkdir(parents=True, exist_ok=True)
        stored_name = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}-{self.original_name}"
        target = target_dir / stored_name
        # "xb" never replaces another request's file
        with open(target, "xb") as fh:
            fh.write(self.payload)
        return StoredFile(
            filename=stored_name,
            original_name=self.original_name,
            path=f"uploads/{stored_name}",
            mimetype=self.mimetype,
        )


def validate_upload(filename: Optional[str], content_type: Optional[str], payload: bytes) -> PendingUpload:
    """Check an uploaded file and return it ready to be saved."""
    if not filename or len(filename) > 200:
        raise ValidationFailed("invalid filename")
    if "/" in filename or "\\" in filename or filename.startswith("."):
        raise ValidationFailed("invalid filename path")
    ext = Path(filename).suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise ValidationFailed("Files of type pdf, doc, docx, jpg, jpeg, png only!")
    if not payload:
        raise ValidationFailed("uploaded file is empty")
    if len(payload) > settings.MAX_UPLOAD_BYTES:
        raise ValidationFailed("file too large")
    if ext in IMAGE_EXTENSIONS:
        try:
            Image.open(io.BytesIO(payload)).verify()
        except (UnidentifiedImageError, OSError, SyntaxError):
            raise ValidationFailed("uploaded image could not be read")
    elif ext == ".pdf" and payload[:4] != b"%PDF":
        raise ValidationFailed("uploaded file is not a PDF")
    return PendingUpload(original_name=filename, mimetype=content_type or "application/octet-stream", payload=payload)


def read_upload(upload) -> Optional[PendingUpload]:
    """Read and validate a FastAPI `UploadFile`; None when nothing was sent."""
    if upload is None or not upload.filename:
        return None
    payload = upload.file.read(settings.MAX_UPLOAD_BYTES + 1)
    return validate_upload(upload.filename, upload.content_type, payload)


def discard(stored: Optional[StoredFile], upload_dir: Optional[Path] = None) -> None:
    if stored is None:
        return
    target = Path(upload_dir or settings.UPLOAD_DIR) / stored.filename
    try:
        target.unlink()
    except FileNotFoundError:
        pass
    except OSError:
        _LOGGER.exception("failed to remove upload %s", target)
