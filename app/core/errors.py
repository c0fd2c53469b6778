# app/core/errors.py


class DocumentStorageError(Exception):
    """Base class for errors the document tree reports to callers."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(DocumentStorageError):
    """Folder or file is missing or belongs to another owner."""

    status_code = 404


class Conflict(DocumentStorageError):
    """A sibling with the same name already exists at the target location."""

    status_code = 409


class InvalidMove(DocumentStorageError):
    """A folder cannot be moved into itself or one of its descendants."""

    status_code = 400


class PayloadTooLarge(DocumentStorageError):
    status_code = 413


class BlobCleanupFailure(DocumentStorageError):
    """A blob delete failed while its metadata was being removed.

    Only ever logged; never raised to a caller.
    """

    def __init__(self, key: str, cause: Exception):
        super().__init__(f"Failed to delete blob {key}: {cause}")
        self.key = key
        self.cause = cause


class BlobNotFound(Exception):
    """The blob store holds no object under the requested key."""

    def __init__(self, key: str):
        super().__init__(f"Blob not found: {key}")
        self.key = key
