from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from app.core.config import get_settings
from app.core.errors import DocumentStorageError
from app.core.logging import setup_logging
from app.models import Base
from app.models.database import engine
from app.routers import auth, documents

setup_logging()

Base.metadata.create_all(bind=engine)

settings = get_settings()

app = FastAPI(title="Document Storage")

# Signed cookie; a tampered or hand-written session is simply empty
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.session_secret_key,
    max_age=settings.session_max_age_seconds,
    same_site="lax",
)

# include our routers
app.include_router(auth.router, tags=["Authentication"])
app.include_router(documents.router, prefix="/document-storage", tags=["Document Storage"])


def _error(status_code: int, message: str, errors=None, headers=None) -> JSONResponse:
    content = {"success": False, "message": message}
    if errors:
        content["errors"] = errors
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@app.exception_handler(DocumentStorageError)
def document_storage_error_handler(request: Request, exc: DocumentStorageError):
    return _error(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        errors.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    return _error(422, "Invalid request", errors)


@app.get("/")
def read_root():
    return {"message": "Document storage API"}
