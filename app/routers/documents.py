import io
import json
from functools import lru_cache
from typing import List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Form, HTTPException, UploadFile, File as FastAPIFile
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.errors import PayloadTooLarge
from app.models.database import get_db
from app.routers.auth import require_user_id
from app.schemas.documents import (
    DeletionOut,
    FileOut,
    FileUpdate,
    FolderCreate,
    FolderOut,
    FolderSummary,
    FolderUpdate,
    StorageOut,
)
from app.services.tree import DocumentTreeService, UploadItem
from app.storage.blob import BlobStore, S3BlobStore

router = APIRouter()


@lru_cache
def get_blob_store() -> BlobStore:
    return S3BlobStore.from_settings(get_settings())


def get_tree_service(
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_settings),
) -> DocumentTreeService:
    return DocumentTreeService(db, blob_store, settings)


def _ok(data=None, message: str | None = None, errors: list | None = None) -> dict:
    return {"success": True, "data": data, "message": message, "errors": errors}


def _parse_tags(raw: str | None) -> List[str]:
    # Accepts a JSON array or a comma separated list
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except ValueError:
        parsed = None
    if isinstance(parsed, list):
        return [str(tag) for tag in parsed]
    return [tag.strip() for tag in raw.split(",") if tag.strip()]


def _parse_folder_id(raw: str | None) -> Optional[int]:
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid folder id")


# --- the user's whole storage tree ---
@router.get("")
def get_storage(
    user_id: int = Depends(require_user_id),
    service: DocumentTreeService = Depends(get_tree_service),
):
    listings, root_files = service.list_storage(user_id)
    folders = [
        FolderSummary(
            **FolderOut.model_validate(item.folder).model_dump(),
            file_count=item.file_count,
            child_count=item.child_count,
        )
        for item in listings
    ]
    storage = StorageOut(
        folders=folders,
        root_files=[FileOut.model_validate(f) for f in root_files],
        user_id=user_id,
    )
    return _ok(storage.model_dump(mode="json"))


# --- folders ---
@router.post("/folders", status_code=201)
def create_folder(
    payload: FolderCreate,
    user_id: int = Depends(require_user_id),
    service: DocumentTreeService = Depends(get_tree_service),
):
    folder = service.create_folder(
        user_id, payload.name, parent_id=payload.parent_id, description=payload.description
    )
    return _ok(FolderOut.model_validate(folder).model_dump(mode="json"), "Folder created successfully")


@router.get("/folders/{folder_id}")
def get_folder(
    folder_id: int,
    user_id: int = Depends(require_user_id),
    service: DocumentTreeService = Depends(get_tree_service),
):
    folder = service.get_folder(user_id, folder_id)
    return _ok(FolderOut.model_validate(folder).model_dump(mode="json"))


@router.put("/folders/{folder_id}")
def update_folder(
    folder_id: int,
    payload: FolderUpdate,
    user_id: int = Depends(require_user_id),
    service: DocumentTreeService = Depends(get_tree_service),
):
    folder = service.update_folder(user_id, folder_id, payload.changes())
    return _ok(FolderOut.model_validate(folder).model_dump(mode="json"), "Folder updated successfully")


@router.delete("/folders/{folder_id}")
def delete_folder(
    folder_id: int,
    user_id: int = Depends(require_user_id),
    service: DocumentTreeService = Depends(get_tree_service),
):
    report = service.delete_folder(user_id, folder_id)
    data = DeletionOut(
        folders_removed=report.folders_removed,
        files_removed=report.files_removed,
        blob_failures=report.failed_keys,
    ).model_dump()
    return _ok(data, "Folder deleted successfully")


# --- files ---
@router.post("/files", status_code=201)
async def upload_files(
    files: List[UploadFile] = FastAPIFile(...),
    folder_id: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    user_id: int = Depends(require_user_id),
    service: DocumentTreeService = Depends(get_tree_service),
):
    if not files:
        raise HTTPException(status_code=400, detail="No files provided")

    # Reject on the declared sizes before anything is read into memory
    limit = service.settings.max_upload_size_bytes
    declared = sum(upload.size or 0 for upload in files)
    if declared > limit:
        raise PayloadTooLarge(
            f"Total upload size ({declared / (1024 * 1024):.2f}MB) exceeds "
            f"the {limit // (1024 * 1024)}MB limit"
        )

    uploads = []
    for upload in files:
        content = await upload.read()
        uploads.append(UploadItem(upload.filename or "", content, upload.content_type))

    # S3 puts and commits block; keep them off the event loop
    result = await run_in_threadpool(
        service.upload_files,
        user_id,
        uploads,
        folder_id=_parse_folder_id(folder_id),
        description=description,
        tags=_parse_tags(tags),
    )
    message = f"{len(result.files)} file(s) uploaded successfully"
    if result.errors:
        message += f" with {len(result.errors)} error(s)"
    return _ok(
        [FileOut.model_validate(f).model_dump(mode="json") for f in result.files],
        message,
        result.errors or None,
    )


@router.get("/files/{file_id}")
def get_file(
    file_id: int,
    user_id: int = Depends(require_user_id),
    service: DocumentTreeService = Depends(get_tree_service),
):
    file = service.get_file(user_id, file_id)
    return _ok(FileOut.model_validate(file).model_dump(mode="json"))


@router.put("/files/{file_id}")
def update_file(
    file_id: int,
    payload: FileUpdate,
    user_id: int = Depends(require_user_id),
    service: DocumentTreeService = Depends(get_tree_service),
):
    file = service.update_file(user_id, file_id, payload.changes())
    return _ok(FileOut.model_validate(file).model_dump(mode="json"), "File updated successfully")


@router.delete("/files/{file_id}")
def delete_file(
    file_id: int,
    user_id: int = Depends(require_user_id),
    service: DocumentTreeService = Depends(get_tree_service),
):
    report = service.delete_file(user_id, file_id)
    data = DeletionOut(
        folders_removed=report.folders_removed,
        files_removed=report.files_removed,
        blob_failures=report.failed_keys,
    ).model_dump()
    return _ok(data, "File deleted successfully")


# --- download a file ---
@router.get("/files/{file_id}/download")
def download_file(
    file_id: int,
    user_id: int = Depends(require_user_id),
    service: DocumentTreeService = Depends(get_tree_service),
):
    file, file_bytes = service.download_file(user_id, file_id)

    return StreamingResponse(
        io.BytesIO(file_bytes),
        media_type=file.file_type or "application/octet-stream",
        headers={
            "Content-Disposition": f'attachment; filename="{quote(file.file_name)}"',
            "Content-Length": str(len(file_bytes)),
            "Cache-Control": "no-cache",
        },
    )


# --- repair stored paths from parent pointers ---
@router.post("/reconcile")
def reconcile_paths(
    user_id: int = Depends(require_user_id),
    service: DocumentTreeService = Depends(get_tree_service),
):
    fixed = service.reconcile_paths(user_id)
    return _ok({"fixed": fixed}, f"{fixed} path(s) repaired")
