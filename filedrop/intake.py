import asyncio
import os
import random
import re
import time
from datetime import datetime, timezone
from typing import Iterable, Optional

from loguru import logger

from .errors import IndexWriteError, StorageError, UnsupportedType
from .index import MetadataIndex
from .notify import FILE_UPLOADED, Notifier
from .schemas import UploadRecord
from .storage import BlobStore

DEFAULT_ALLOWED_EXTENSIONS = (".pdf", ".doc", ".docx", ".xls", ".xlsx", ".csv")
MAX_NAME_BYTES = 200

# path separators, control characters and characters reserved on common filesystems
_UNSAFE_CHARS = re.compile(r'[/\\?<>:*|"\x00-\x1f\x7f-\x9f]')
_DOT_RUNS = re.compile(r"\.{2,}")


def sanitize_filename(name: str) -> str:
    """Reduce a client-supplied name to a single safe path component."""
    cleaned = _UNSAFE_CHARS.sub("", name)
    cleaned = _DOT_RUNS.sub(".", cleaned)
    cleaned = cleaned.strip(" .")
    if len(cleaned.encode("utf-8")) > MAX_NAME_BYTES:
        stem, ext = os.path.splitext(cleaned)
        budget = MAX_NAME_BYTES - len(ext.encode("utf-8"))
        stem = stem.encode("utf-8")[:budget].decode("utf-8", errors="ignore")
        cleaned = stem.rstrip(" .") + ext
    return cleaned


def generate_stored_key(sanitized_name: str) -> str:
    # timestamp + random component; a collision fails the upload, it never replaces a stored blob
    return f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}-{sanitized_name}"


class UploadIntake:
    def __init__(
        self,
        blob_store: BlobStore,
        index: MetadataIndex,
        notifier: Optional[Notifier] = None,
        allowed_extensions: Iterable[str] = DEFAULT_ALLOWED_EXTENSIONS,
        write_timeout: Optional[float] = 60.0,
    ):
        self.blob_store = blob_store
        self.index = index
        self.notifier = notifier
        self.allowed_extensions = frozenset(ext.lower() for ext in allowed_extensions)
        self.write_timeout = write_timeout

    def validate(self, declared_name: Optional[str]) -> str:
        """Check the extension allow-list and return the sanitized name."""
        if not declared_name:
            raise UnsupportedType("No file name given")
        ext = os.path.splitext(declared_name)[1].lower()
        if ext not in self.allowed_extensions:
            raise UnsupportedType(f"File type not allowed: {ext or '(none)'}")
        sanitized = sanitize_filename(declared_name)
        if os.path.splitext(sanitized)[1].lower() != ext or not os.path.splitext(sanitized)[0]:
            raise UnsupportedType(f"Invalid file name: {declared_name!r}")
        return sanitized

    async def intake(self, stream, declared_name: Optional[str], mime_hint: Optional[str] = None) -> UploadRecord:
        sanitized = self.validate(declared_name)
        stored_key = generate_stored_key(sanitized)
        logger.info(f"Receiving upload {declared_name!r} as {stored_key}")

        try:
            blob = await asyncio.wait_for(
                self.blob_store.write(stored_key, stream, mime_hint), self.write_timeout
            )
        except StorageError as e:
            logger.error(f"Storage error for {stored_key}: {e.message}")
            raise
        except asyncio.TimeoutError as e:
            logger.error(f"Storage write for {stored_key} timed out after {self.write_timeout}s")
            raise StorageError(f"Write of {stored_key} timed out") from e
        except Exception as e:
            logger.exception(f"Unexpected storage failure for {stored_key}")
            raise StorageError(f"Cannot store {stored_key}: {e}") from e

        record = UploadRecord(
            original_name=declared_name,
            stored_key=stored_key,
            location=blob.location,
            received_at=datetime.now(timezone.utc),
            content_type=mime_hint,
            size=blob.size,
        )
        try:
            record = await self.index.append(record)
        except IndexWriteError as e:
            logger.error(
                f"ORPHAN BLOB: {stored_key} stored at {blob.location} ({self.blob_store.name}) "
                f"but not indexed: {e.message}"
            )
            raise

        self._notify(record)
        logger.info(f"Accepted {stored_key} ({blob.size} bytes)")
        return record

    def _notify(self, record: UploadRecord) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.publish(FILE_UPLOADED, record.event_payload())
        except Exception:
            logger.exception(f"Could not publish upload event for {record.stored_key}")
