# app/models/folder.py
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from app.models.database import Base


class Folder(Base):
    __tablename__ = "folders"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    path = Column(String, nullable=False)            # e.g. "/Manuals/2024"
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Bumped on every write; a stale writer gets StaleDataError
    version = Column(Integer, nullable=False)

    owner_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    parent_id = Column(
        Integer, ForeignKey("folders.id", ondelete="CASCADE"), nullable=True, index=True
    )

    owner = relationship("User", back_populates="folders")
    parent = relationship("Folder", remote_side=[id], back_populates="children")
    children = relationship("Folder", back_populates="parent", passive_deletes=True)
    files = relationship("FileMeta", back_populates="folder", passive_deletes=True)

    __table_args__ = (
        Index("ix_folders_owner_parent_name", "owner_id", "parent_id", "name"),
    )
    __mapper_args__ = {"version_id_col": version}
