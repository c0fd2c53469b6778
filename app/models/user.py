from sqlalchemy import Column, Integer, String
from sqlalchemy.orm import relationship

from app.models.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    password = Column(String(255), nullable=False)

    # One user → many folders and files
    folders = relationship("Folder", back_populates="owner", passive_deletes=True)
    files = relationship("FileMeta", back_populates="owner", passive_deletes=True)
