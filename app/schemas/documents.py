# app/schemas/documents.py
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def clean_name(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("Name is required")
    if "/" in value:
        raise ValueError("Name cannot contain '/'")
    if len(value) > 255:
        raise ValueError("Name is too long")
    return value


def clean_tags(tags) -> List[str]:
    """Tags form a set; store them sorted so equal sets compare equal."""
    return sorted({tag.strip() for tag in tags if tag and tag.strip()})


class FolderCreate(BaseModel):
    name: str
    parent_id: Optional[int] = None
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def check_name(cls, value):
        return clean_name(value)


class FolderUpdate(BaseModel):
    """Partial update. Omitted fields stay as they are; an explicit
    ``parent_id: null`` moves the folder to the root."""

    name: Optional[str] = None
    parent_id: Optional[int] = None
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def check_name(cls, value):
        return None if value is None else clean_name(value)

    def changes(self) -> dict:
        changes = self.model_dump(include=self.model_fields_set)
        if changes.get("name", "") is None:
            del changes["name"]
        return changes


class FileUpdate(BaseModel):
    file_name: Optional[str] = None
    folder_id: Optional[int] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None

    @field_validator("file_name")
    @classmethod
    def check_file_name(cls, value):
        return None if value is None else clean_name(value)

    @field_validator("tags")
    @classmethod
    def check_tags(cls, value):
        return None if value is None else clean_tags(value)

    def changes(self) -> dict:
        changes = self.model_dump(include=self.model_fields_set)
        for key in ("file_name", "tags"):
            if key in changes and changes[key] is None:
                del changes[key]
        return changes


class FileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    file_name: str
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    folder_id: Optional[int] = None
    path: str
    file_size: int
    file_type: Optional[str] = None
    download_count: int = 0
    last_accessed_at: Optional[datetime] = None
    uploaded_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FolderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    parent_id: Optional[int] = None
    path: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FolderSummary(FolderOut):
    file_count: int = 0
    child_count: int = 0


class DeletionOut(BaseModel):
    folders_removed: int
    files_removed: int
    blob_failures: List[str] = Field(default_factory=list)


class StorageOut(BaseModel):
    folders: List[FolderSummary]
    root_files: List[FileOut]
    user_id: int


class ApiResponse(BaseModel):
    success: bool = True
    data: Any = None
    message: Optional[str] = None
    errors: Optional[List[str]] = None
