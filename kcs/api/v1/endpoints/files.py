"""File serving endpoint for local storage mode."""

from pathlib import PurePosixPath

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from kcs.api.deps import get_storage
from kcs.services.storage import StorageService

router = APIRouter()

CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".json": "application/json",
}


@router.get("/{file_path:path}")
async def serve_file(file_path: str, storage: StorageService = Depends(get_storage)):
    """Serve a stored file.

    Only used when USE_LOCAL_STORAGE is on; in production files are served
    straight from S3.
    """
    if not storage.use_local:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Local file serving is disabled")
    path = PurePosixPath(file_path)
    if path.is_absolute() or ".." in path.parts:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")

    try:
        content = storage.get_file_content(file_path)
    except FileNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")

    suffix = path.suffix.lower()
    return Response(
        content=content,
        media_type=CONTENT_TYPES.get(suffix, "application/octet-stream"),
        headers={"Content-Disposition": f'inline; filename="{path.name}"'},
    )
