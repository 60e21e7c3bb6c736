# services/admin_api/app/routers/uploads.py
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
import logging

from core.auth import require_admin
from core.config import settings
from core.data_client import DataAccessClient
from core.errors import AdminError, ValidationFailed
from core.images import ImageUploader, UploadedFile
from core.models import ApiResponse
from core.resources import RESOURCES
from .resources import get_db

logger = logging.getLogger("PCMS_Core").getChild("AdminAPI").getChild("UploadRouter")

DEFAULT_FOLDER = "uploads"
# Storage keys may only start with a folder some admin page writes to
UPLOAD_FOLDERS = frozenset({DEFAULT_FOLDER} | {resource.folder for resource in RESOURCES.values()})

router = APIRouter(dependencies=[Depends(require_admin)])


def get_uploader(db: DataAccessClient = Depends(get_db)) -> ImageUploader:
    return ImageUploader(db)


@router.post("", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
async def upload_image(
    file: UploadFile = File(...),
    folder: str = Form(DEFAULT_FOLDER),
    uploader: ImageUploader = Depends(get_uploader),
):
    """Stores one image (HEIC/HEIF is converted to JPEG) and returns its public URL."""
    folder = folder or DEFAULT_FOLDER
    if folder not in UPLOAD_FOLDERS:
        await file.close()
        logger.warning(f"Upload rejected: unknown folder {folder!r}.")
        error = ValidationFailed(f"Unknown upload folder {folder!r}",
                                 field_errors={"folder": f"Must be one of: {', '.join(sorted(UPLOAD_FOLDERS))}."})
        raise HTTPException(status_code=error.status_code, detail=error.to_dict())

    # Read one byte past the limit so oversized files are rejected without buffering all of them
    content = await file.read(settings.MAX_UPLOAD_BYTES + 1)
    filename = file.filename or "upload"
    logger.info(f"Received upload '{filename}' ({len(content)} bytes) for folder '{folder}'.")
    try:
        result = await uploader.upload(
            UploadedFile(filename=filename, content=content, content_type=file.content_type),
            folder=folder,
        )
    except AdminError as e:
        logger.warning(f"Upload of '{filename}' rejected: {e}")
        raise HTTPException(status_code=e.status_code, detail=e.to_dict())
    finally:
        await file.close()
    return ApiResponse(status="success", data=result.model_dump(), message="Image uploaded.")
