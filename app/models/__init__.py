from app.models.database import Base
from app.models.file import FileMeta
from app.models.folder import Folder
from app.models.user import User

__all__ = ["Base", "FileMeta", "Folder", "User"]
