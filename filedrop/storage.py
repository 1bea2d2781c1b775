"""Blob stores: where the uploaded bytes live.

``write`` returns a ``StoredBlob`` once the bytes are committed and raises
``StorageError`` otherwise. ``response`` turns an indexed record back into
something the client can fetch: a streamed file for the local store, a
redirect for remote ones.
"""
import asyncio
import inspect
import io
import mimetypes
import os
import uuid
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os
import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError
from fastapi.responses import FileResponse, RedirectResponse
from loguru import logger

from .errors import NotFound, StorageError
from .schemas import StoredBlob, UploadRecord
from .settings import Settings

CHUNK_SIZE = 64 * 1024


async def read_chunk(stream, size: int = CHUNK_SIZE) -> bytes:
    # accepts UploadFile (async read) as well as plain file objects
    data = stream.read(size)
    if inspect.isawaitable(data):
        data = await data
    return data


async def read_all(stream, max_bytes: int) -> bytes:
    buf = io.BytesIO()
    while chunk := await read_chunk(stream):
        buf.write(chunk)
        if buf.tell() > max_bytes:
            raise StorageError(f"Upload exceeds {max_bytes} bytes")
    return buf.getvalue()


class BlobStore:
    name = "base"

    def initialize(self):
        pass

    async def write(self, key: str, stream, content_type: Optional[str] = None) -> StoredBlob:
        raise NotImplementedError

    async def response(self, record: UploadRecord):
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    name = "local"

    def __init__(self, root: Path, max_bytes: int):
        self.root = Path(root)
        self.staging_dir = self.root / ".staging"
        self.max_bytes = max_bytes

    def initialize(self):
        self.root.mkdir(parents=True, exist_ok=True)
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        # leftovers from an interrupted process
        removed = 0
        for leftover in self.staging_dir.glob("*"):
            if leftover.is_file():
                leftover.unlink()
                removed += 1
        if removed:
            logger.info(f"Cleaned staging directory, removed {removed} files")

    def _path_for(self, key: str) -> Path:
        root = self.root.resolve()
        path = (root / key).resolve()
        # ensure the file is inside the storage root to avoid path traversal
        if not path.is_relative_to(root) or path.parent != root:
            raise StorageError(f"Refusing to store outside {root}: {key}")
        return path

    async def write(self, key: str, stream, content_type: Optional[str] = None) -> StoredBlob:
        final_path = self._path_for(key)
        staged_path = self.staging_dir / f"{uuid.uuid4().hex}.part"
        size = 0
        try:
            async with aiofiles.open(staged_path, "wb") as out_file:
                while chunk := await read_chunk(stream):
                    size += len(chunk)
                    if size > self.max_bytes:
                        raise StorageError(f"Upload exceeds {self.max_bytes} bytes")
                    await out_file.write(chunk)
            # link fails if the key is taken, so an indexed blob is never replaced
            await asyncio.to_thread(os.link, staged_path, final_path)
        except FileExistsError as e:
            raise StorageError(f"Stored key already in use: {key}") from e
        except OSError as e:
            raise StorageError(f"Cannot write {key}: {e}") from e
        finally:
            if await aiofiles.os.path.exists(staged_path):
                await aiofiles.os.unlink(staged_path)
        logger.debug(f"Stored {key} on disk ({size} bytes)")
        return StoredBlob(location=key, size=size)

    async def response(self, record: UploadRecord):
        path = self._path_for(record.location)
        if not await aiofiles.os.path.exists(path):
            raise NotFound(f"Blob missing on disk for {record.stored_key}")
        media_type = record.content_type or mimetypes.guess_type(record.original_name)[0]
        return FileResponse(
            path=str(path),
            filename=record.original_name,
            media_type=media_type or "application/octet-stream",
        )


class S3BlobStore(BlobStore):
    name = "s3"

    def __init__(self, bucket: str, max_bytes: int, client=None, presign_seconds: int = 3600):
        self.bucket = bucket
        self.max_bytes = max_bytes
        self.client = client
        self.presign_seconds = presign_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3BlobStore":
        if not settings.S3_BUCKET:
            raise ValueError("S3_BUCKET is required for the s3 blob backend")
        client = boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            region_name=settings.S3_REGION,
            aws_access_key_id=settings.S3_ACCESS_KEY_ID,
            aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY,
        )
        return cls(settings.S3_BUCKET, settings.MAX_UPLOAD_BYTES, client, settings.S3_PRESIGN_SECONDS)

    async def write(self, key: str, stream, content_type: Optional[str] = None) -> StoredBlob:
        data = await read_all(stream, self.max_bytes)
        extra = {"ContentType": content_type} if content_type else {}
        try:
            logger.info(f"Uploading file to bucket {self.bucket}: {key}")
            await asyncio.to_thread(
                self.client.upload_fileobj, io.BytesIO(data), self.bucket, key, ExtraArgs=extra
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Cannot upload {key} to {self.bucket}: {e}") from e
        return StoredBlob(location=f"s3://{self.bucket}/{key}", size=len(data))

    async def response(self, record: UploadRecord):
        key = record.location.removeprefix(f"s3://{self.bucket}/")
        url = await asyncio.to_thread(
            self.client.generate_presigned_url,
            "get_object",
            Params={
                "Bucket": self.bucket,
                "Key": key,
                "ResponseContentDisposition": f'attachment; filename="{record.original_name}"',
            },
            ExpiresIn=self.presign_seconds,
        )
        return RedirectResponse(url)


class CdnBlobStore(BlobStore):
    """Posts the bytes to an HTTP upload endpoint and keeps the URL it returns."""

    name = "cdn"

    def __init__(self, upload_url: str, max_bytes: int, api_key: Optional[str] = None,
                 url_field: str = "url", client: Optional[httpx.AsyncClient] = None):
        self.upload_url = upload_url
        self.max_bytes = max_bytes
        self.api_key = api_key
        self.url_field = url_field
        self.client = client

    async def _post(self, client: httpx.AsyncClient, key: str, data: bytes, content_type: Optional[str]):
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        files = {"file": (key, data, content_type or "application/octet-stream")}
        response = await client.post(self.upload_url, files=files, headers=headers)
        response.raise_for_status()
        return response.json()

    async def write(self, key: str, stream, content_type: Optional[str] = None) -> StoredBlob:
        data = await read_all(stream, self.max_bytes)
        try:
            if self.client is not None:
                body = await self._post(self.client, key, data, content_type)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    body = await self._post(client, key, data, content_type)
            location = body[self.url_field]
        except httpx.HTTPError as e:
            raise StorageError(f"CDN upload failed for {key}: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"CDN response for {key} has no {self.url_field!r}: {e}") from e
        return StoredBlob(location=str(location), size=len(data))

    async def response(self, record: UploadRecord):
        return RedirectResponse(record.location)


def build_blob_store(settings: Settings) -> BlobStore:
    backend = settings.BLOB_BACKEND.lower()
    if backend == "local":
        return LocalBlobStore(settings.STORAGE_DIR, settings.MAX_UPLOAD_BYTES)
    if backend == "s3":
        return S3BlobStore.from_settings(settings)
    if backend == "cdn":
        if not settings.CDN_UPLOAD_URL:
            raise ValueError("CDN_UPLOAD_URL is required for the cdn blob backend")
        return CdnBlobStore(
            settings.CDN_UPLOAD_URL,
            settings.MAX_UPLOAD_BYTES,
            api_key=settings.CDN_API_KEY,
            url_field=settings.CDN_URL_FIELD,
        )
    raise ValueError(f"Unknown BLOB_BACKEND: {settings.BLOB_BACKEND}")
