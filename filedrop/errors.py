"""Error taxonomy shared by the intake, index, storage and query layers.

Each class carries the HTTP status the API maps it to. Client errors are
raised before any side effect; server errors keep their own type so the
logs can tell a failed blob write from an orphaned one.
"""


class FileDropError(Exception):
    status_code = 500
    public_detail = "Internal server error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.public_detail


class UnsupportedType(FileDropError):
    status_code = 400
    public_detail = "Unsupported file type"


class InvalidKey(FileDropError):
    status_code = 400
    public_detail = "Invalid file name"


class NotFound(FileDropError):
    status_code = 404
    public_detail = "File not found"


class Unauthorized(FileDropError):
    status_code = 401
    public_detail = "Could not validate credentials"


class StorageError(FileDropError):
    """The blob store rejected or failed the write; the index was not touched."""

    public_detail = "Upload failed"


class IndexWriteError(FileDropError):
    """The metadata index could not be persisted.

    When raised during intake the blob is already stored and becomes an
    orphan.
    """

    public_detail = "Upload failed"
