"""
Local filesystem storage provider for development.
Saves attachments under LOCAL_STORAGE_DIR instead of Azure Blob Storage.
"""
import uuid
from pathlib import Path
from urllib.parse import quote

from ..config import settings
from .provider import StorageProvider, IncomingFile, UploadResult, attachment_key, guess_mime_type


class LocalStorageProvider(StorageProvider):

    def __init__(self, base_dir: str | None = None):
        self.base_dir = Path(base_dir or settings.local_storage_dir)
        (self.base_dir / "uploads").mkdir(parents=True, exist_ok=True)

    def _get_path(self, key: str) -> Path:
        clean_key = key.lstrip("/").replace("..", "").replace("\\", "/")
        return self.base_dir / "uploads" / clean_key

    def upload(self, request_id: uuid.UUID, f: IncomingFile, uploader_id: uuid.UUID) -> UploadResult:
        key = attachment_key(request_id, f.file_name)
        path = self._get_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as out:
            out.write(f.content)
        url = f"{settings.public_base_url}/files/local/{quote(key)}"
        return UploadResult(url=url, file_name=f.file_name, file_size=f.size, mime_type=guess_mime_type(f))

    def exists(self, key: str) -> bool:
        return self._get_path(key).exists()

    def delete(self, key: str) -> None:
        path = self._get_path(key)
        if path.exists():
            path.unlink()
