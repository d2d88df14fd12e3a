import logging
import mimetypes
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from supabase import create_client, Client

from flipforge.services.exceptions import StoreError
from flipforge.settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredImage:
    storage_path: str
    public_url: str


def _extension(file_name: Optional[str], mime_type: Optional[str]) -> str:
    if file_name and "." in file_name:
        return file_name.rsplit(".", 1)[1].lower()
    if mime_type:
        guessed = mimetypes.guess_extension(mime_type)
        if guessed:
            return guessed.lstrip(".").replace("jpeg", "jpg")
    return "jpg"


def _object_path(product_id: uuid.UUID, file_name: Optional[str], mime_type: Optional[str]) -> str:
    """Path format: products/{product_id}/{uuid}.{ext}"""
    return f"products/{product_id}/{uuid.uuid4()}.{_extension(file_name, mime_type)}"


class SupabaseImageStorage:
    def __init__(self, url: str, key: str, bucket: str):
        self.url = url
        self.key = key
        self.bucket = bucket

        if not self.url or not self.key:
            logger.warning("Supabase credentials not set. Storage service disabled.")
            self.client: Optional[Client] = None
        else:
            self.client = create_client(self.url, self.key)

    def upload(self, product_id: uuid.UUID, content: bytes, file_name: Optional[str] = None, mime_type: Optional[str] = None) -> StoredImage:
        """
        Uploads bytes to Supabase Storage and returns the storage path + public URL.
        """
        if not self.client:
            raise StoreError("Supabase client is not initialized.", table_name=self.bucket, operation="upload")

        file_path = _object_path(product_id, file_name, mime_type)
        content_type = mime_type or "image/jpeg"

        try:
            self.client.storage.from_(self.bucket).upload(
                path=file_path,
                file=content,
                file_options={"content-type": content_type}
            )
            public_url = self.client.storage.from_(self.bucket).get_public_url(file_path)
        except Exception as e:
            logger.error(f"Failed to upload image to Supabase: {e}")
            raise StoreError(str(e), table_name=self.bucket, operation="upload", path=file_path) from e

        return StoredImage(storage_path=file_path, public_url=public_url)


class LocalImageStorage:
    """개발/테스트용 파일시스템 저장소."""

    def __init__(self, root_dir: str, base_url: str = "/uploads"):
        self.root = Path(root_dir)
        self.base_url = base_url.rstrip("/")

    def upload(self, product_id: uuid.UUID, content: bytes, file_name: Optional[str] = None, mime_type: Optional[str] = None) -> StoredImage:
        file_path = _object_path(product_id, file_name, mime_type)
        target = self.root / file_path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as e:
            logger.error(f"Failed to write image to {target}: {e}")
            raise StoreError(str(e), table_name="local_storage", operation="upload", path=str(target)) from e
        return StoredImage(storage_path=file_path, public_url=f"{self.base_url}/{file_path}")


def build_storage(config: Settings):
    if config.storage_backend == "supabase":
        return SupabaseImageStorage(config.supabase_url, config.supabase_service_role_key, config.supabase_bucket)
    return LocalImageStorage(config.local_storage_dir, config.local_storage_base_url)
