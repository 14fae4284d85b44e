from mimetypes import guess_type

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse

from ..auth.security import ActorContext, get_current_actor
from ..storage.local_provider import LocalStorageProvider


router = APIRouter(prefix="/files", tags=["files"])


@router.get("/local/{file_path:path}")
def serve_local_file(file_path: str, actor: ActorContext = Depends(get_current_actor)):
    """Serve attachments saved by the local storage provider (development)."""
    local_storage = LocalStorageProvider()
    path = local_storage._get_path(file_path)

    # Stay inside the storage directory
    if not str(path.resolve()).startswith(str(local_storage.base_dir.resolve())):
        raise HTTPException(status_code=403, detail="Access denied")
    if not path.exists():
        raise HTTPException(status_code=404, detail="File not found")

    content_type = guess_type(str(path))[0] or "application/octet-stream"
    return FileResponse(path, media_type=content_type)
