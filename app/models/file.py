# app/models/file.py
from sqlalchemy import JSON, Column, Integer, String, ForeignKey, DateTime, Index, Text
from sqlalchemy.orm import relationship
from datetime import datetime

from app.models.database import Base


class FileMeta(Base):
    __tablename__ = "files"

    id = Column(Integer, primary_key=True, index=True)
    file_name = Column(String(255), nullable=False)   # Name the user sees
    description = Column(Text, nullable=True)
    tags = Column(JSON, nullable=False, default=list)  # sorted, no duplicates
    path = Column(String, nullable=False)            # e.g. "/Manuals/2024/spec.pdf"
    file_key = Column(String, nullable=False)        # S3 key, fixed at upload
    file_size = Column(Integer, nullable=False)      # Size in bytes
    file_type = Column(String(255), nullable=True)   # MIME type
    download_count = Column(Integer, nullable=False, default=0)
    last_accessed_at = Column(DateTime, nullable=True)
    uploaded_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    owner_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    folder_id = Column(
        Integer, ForeignKey("folders.id", ondelete="CASCADE"), nullable=True, index=True
    )

    # Many files → one owner (User), one folder (or the root)
    owner = relationship("User", back_populates="files")
    folder = relationship("Folder", back_populates="files")

    __table_args__ = (
        Index("ix_files_owner_folder_name", "owner_id", "folder_id", "file_name"),
    )
