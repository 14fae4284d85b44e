import uuid

import structlog
from azure.storage.blob import BlobServiceClient, ContentSettings

from ..config import settings
from .provider import StorageProvider, IncomingFile, UploadResult, attachment_key, guess_mime_type


log = structlog.get_logger(__name__)


class BlobStorageProvider(StorageProvider):
    def __init__(self) -> None:
        if not settings.azure_blob_connection or not settings.azure_blob_container:
            raise RuntimeError("AZURE_BLOB_CONNECTION and AZURE_BLOB_CONTAINER must be set")
        self._service = BlobServiceClient.from_connection_string(settings.azure_blob_connection)
        self._container = settings.azure_blob_container

    def upload(self, request_id: uuid.UUID, f: IncomingFile, uploader_id: uuid.UUID) -> UploadResult:
        key = attachment_key(request_id, f.file_name)
        mime_type = guess_mime_type(f)
        client = self._service.get_blob_client(self._container, key)
        client.upload_blob(
            f.content,
            overwrite=True,
            content_settings=ContentSettings(content_type=mime_type),
            metadata={"request_id": str(request_id), "uploaded_by": str(uploader_id)},
        )
        log.info("blob_uploaded", key=key, size=f.size)
        return UploadResult(url=client.url, file_name=f.file_name, file_size=f.size, mime_type=mime_type)

    def exists(self, key: str) -> bool:
        client = self._service.get_blob_client(self._container, key.lstrip("/"))
        return client.exists()

    def delete(self, key: str) -> None:
        client = self._service.get_blob_client(self._container, key.lstrip("/"))
        client.delete_blob()
