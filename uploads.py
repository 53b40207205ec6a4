"""Approval evidence uploads (screenshots) saved to local disk."""

from pathlib import Path
from typing import Optional
from uuid import uuid4

from fastapi import UploadFile

from errors import BadFile
from logger import get_logger

logger = get_logger(__name__)

ALLOWED_MIME_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
}


class EvidenceUploads:
    def __init__(self, upload_dir: str, max_bytes: int = 2 * 1024 * 1024):
        self.upload_dir = Path(upload_dir)
        self.max_bytes = max_bytes

    def save(self, upload: UploadFile) -> str:
        """Validate and store an uploaded image, returning its reference."""
        if upload is None or not upload.filename:
            raise BadFile("No file was uploaded")
        ext = ALLOWED_MIME_TYPES.get(upload.content_type or "")
        if ext is None:
            raise BadFile("Only JPEG, PNG and GIF images are accepted")

        data = upload.file.read(self.max_bytes + 1)
        if len(data) > self.max_bytes:
            raise BadFile(f"File exceeds the {self.max_bytes // (1024 * 1024)}MB limit")
        if not data:
            raise BadFile("Uploaded file is empty")

        self.upload_dir.mkdir(parents=True, exist_ok=True)
        path = self.upload_dir / f"{uuid4()}{ext}"
        path.write_bytes(data)
        return str(path)

    def discard(self, ref: Optional[str]) -> None:
        """Remove a stored file; refs outside the upload directory are ignored."""
        if not ref:
            return
        path = Path(ref).resolve()
        if path.parent != self.upload_dir.resolve():
            logger.warning("refusing to discard evidence outside the upload directory")
            return
        path.unlink(missing_ok=True)
