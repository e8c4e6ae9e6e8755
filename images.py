"""
Local image references for cake photos.

An uploaded file is written under UPLOAD_DIR and the URL path it is served
from becomes the cake's imageUrl. Everything else treats that string as opaque.
"""

import logging
import os
import random
import time
from pathlib import Path
from typing import Optional

from fastapi import UploadFile

from errors import ValidationFailed

logger = logging.getLogger(__name__)

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
UPLOAD_URL = "/uploads"
MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", 5 * 1024 * 1024))
EXTENSIONS = {"image/jpeg": ".jpg", "image/png": ".png", "image/gif": ".gif", "image/webp": ".webp"}


class LocalImageStore:
    def __init__(self, root: str = UPLOAD_DIR, max_bytes: int = MAX_IMAGE_BYTES):
        self.root = Path(root)
        self.max_bytes = max_bytes

    async def save(self, upload: UploadFile) -> str:
        content_type = upload.content_type or ""
        if not content_type.startswith("image/"):
            raise ValidationFailed("Only image files are allowed!")
        content = await upload.read()
        if len(content) > self.max_bytes:
            raise ValidationFailed("File size too large. Maximum size is 5MB.")

        name = f"cake_{int(time.time() * 1000)}_{random.randint(0, 10**9)}{EXTENSIONS.get(content_type, '')}"
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / name).write_bytes(content)
        logger.info("Stored image %s (%d bytes)", name, len(content))
        return f"{UPLOAD_URL}/{name}"

    def discard(self, reference: Optional[str]) -> None:
        # references outside our upload folder are left alone
        if not reference or not reference.startswith(UPLOAD_URL + "/"):
            return
        path = self.root / Path(reference).name
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning("Image %s was already gone", reference)


def get_image_store() -> LocalImageStore:
    return LocalImageStore()
