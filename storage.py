"""
Binary object storage for proof and quest images.

Uploads always finish before any document is touched; the caller stores the
returned public URL afterwards.
"""

from abc import ABC, abstractmethod
import logging
import os
import time
from typing import Optional

import firebase_admin
from fastapi import UploadFile
from firebase_admin import storage

from errors import ServiceError, ErrorKind, invalid

logger = logging.getLogger(__name__)

UPLOAD_FAILED = "Failed to upload file to Cloud Storage."


class BlobStore(ABC):
    """Stores a byte buffer at ``path`` and returns a public URL."""

    @abstractmethod
    def upload(self, data: bytes, path: str, content_type: str) -> str:
        ...


class FirebaseBlobStore(BlobStore):
    def __init__(self, app: firebase_admin.App):
        self._app = app
        self._bucket = None

    @property
    def bucket(self):
        # Resolved lazily so the API can start without a configured bucket.
        if self._bucket is None:
            self._bucket = storage.bucket(app=self._app)
        return self._bucket

    def upload(self, data: bytes, path: str, content_type: str) -> str:
        try:
            blob = self.bucket.blob(path)
            blob.upload_from_string(data, content_type=content_type)
            blob.make_public()
        except Exception as exc:
            logger.exception("Error uploading file to Firebase Storage")
            raise ServiceError(ErrorKind.INTERNAL, UPLOAD_FAILED) from exc
        return f"https://storage.googleapis.com/{self.bucket.name}/{path}"


def _clean_filename(filename: str) -> str:
    return os.path.basename(filename).replace(" ", "_") or "image"


def upload_image(blobs: BlobStore, upload: Optional[UploadFile], user_id: str, max_bytes: int) -> str:
    """Validate a multipart image and push it to the blob store."""
    if upload is None or not upload.filename:
        raise invalid("No image file uploaded.")

    content_type = upload.content_type or ""
    if not content_type.startswith("image/"):
        raise invalid("Only image files are allowed!")

    data = upload.file.read(max_bytes + 1)
    if not data:
        raise invalid("No image file uploaded.")
    if len(data) > max_bytes:
        raise invalid(f"Image exceeds the {max_bytes // (1024 * 1024)}MB upload limit")

    path = f"quests/{user_id}/{int(time.time() * 1000)}_{_clean_filename(upload.filename)}"
    url = blobs.upload(data, path, content_type)
    logger.info("Uploaded image for user %s to %s", user_id, path)
    return url
