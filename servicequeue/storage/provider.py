import mimetypes
import os
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from slugify import slugify


@dataclass
class IncomingFile:
    file_name: str
    content: bytes
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class UploadResult:
    url: str
    file_name: str
    file_size: int
    mime_type: str


def attachment_key(request_id: uuid.UUID, original_name: str) -> str:
    stem, ext = os.path.splitext(original_name)
    safe_name = slugify(stem, separator="_", lowercase=False) or "file"
    safe_ext = "".join(ch for ch in ext if ch.isalnum() or ch == ".")
    return f"{request_id}_{int(time.time() * 1000)}_{safe_name}{safe_ext}"


def guess_mime_type(f: IncomingFile) -> str:
    if f.content_type:
        return f.content_type
    return mimetypes.guess_type(f.file_name)[0] or "application/octet-stream"


class StorageProvider:
    def upload(self, request_id: uuid.UUID, f: IncomingFile, uploader_id: uuid.UUID) -> UploadResult:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError
