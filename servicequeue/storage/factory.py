from ..config import settings
from .blob_provider import BlobStorageProvider
from .local_provider import LocalStorageProvider
from .provider import StorageProvider


def get_storage() -> StorageProvider:
    """
    Pick the storage provider from configuration.
    Azure Blob when STORAGE_PROVIDER=blob (or a connection is configured), local disk otherwise.
    """
    if settings.storage_provider == "blob" or (settings.azure_blob_connection and settings.azure_blob_container):
        return BlobStorageProvider()
    return LocalStorageProvider()
