import asyncio
import io
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from miragecodex.errors import StorageError
from miragecodex.settings.config import settings

logger = logging.getLogger(__name__)

PAGE_IMAGES_BUCKET = "page-images"
BOOK_COVERS_BUCKET = "book-covers"


@dataclass
class StoredObject:
    bucket: str
    path: str
    width: int
    height: int
    size_bytes: int


class ObjectStore:
    """
    Public object buckets on the local filesystem:
      <static_root>/uploads/<bucket>/<path>
    served under <url_prefix>/uploads/<bucket>/<path>. Writes overwrite.
    """
    def __init__(self, static_root: Path, url_prefix: str = "/static"):
        self.static_root = static_root
        self.upload_root = static_root / "uploads"
        self.upload_root.mkdir(parents=True, exist_ok=True)
        self.url_prefix = url_prefix.rstrip("/")

    def _target(self, bucket: str, path: str) -> Path:
        target = (self.upload_root / bucket / path).resolve()
        # Prevent directory escape: ensure under uploads root
        uploads_root = self.upload_root.resolve()
        if uploads_root not in target.parents:
            raise StorageError("Object path escapes the upload root")
        return target

    def put_image(self, bucket: str, path: str, data: bytes) -> StoredObject:
        """Validate ``data`` as an image, normalize to JPEG and write it."""
        target = self._target(bucket, path)
        try:
            with Image.open(io.BytesIO(data)) as img:
                img = img.convert("RGB")   # ensure JPEG-compatible
                width, height = img.size
                buf = io.BytesIO()
                img.save(buf, format="JPEG", quality=90)
        except (UnidentifiedImageError, OSError) as e:
            logger.error("Refusing to store %s/%s: not a readable image", bucket, path)
            raise StorageError("Generated image is not valid") from e

        payload = buf.getvalue()
        # one temp file per writer; concurrent writes of the same object both land
        tmp = target.with_name(f"{target.name}.{uuid.uuid4().hex}.part")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(payload)
            tmp.replace(target)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            logger.exception("Writing %s/%s failed", bucket, path)
            raise StorageError() from e

        logger.info("Stored %s/%s (%dx%d, %d bytes)", bucket, path, width, height, len(payload))
        return StoredObject(bucket=bucket, path=path, width=width, height=height, size_bytes=len(payload))

    async def upload_image(self, bucket: str, path: str, data: bytes) -> StoredObject:
        return await asyncio.to_thread(self.put_image, bucket, path, data)

    def exists(self, bucket: str, path: str) -> bool:
        return self._target(bucket, path).exists()

    def delete(self, bucket: str, path: Optional[str]) -> None:
        if not path:
            return
        target = self._target(bucket, path)
        try:
            if target.exists():
                target.unlink()
        except OSError:
            logger.warning("Could not delete %s/%s", bucket, path)

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.url_prefix}/uploads/{bucket}/{path.lstrip('/')}"


STORE: Optional[ObjectStore] = None


def get_object_store() -> ObjectStore:
    global STORE
    if STORE is None:
        STORE = ObjectStore(Path(settings.STATIC_ROOT), settings.STATIC_URL_PREFIX)
    return STORE
