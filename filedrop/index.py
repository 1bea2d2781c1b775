"""Metadata index: the ordered, append-only record of accepted uploads.

Two back ends share one contract. ``JsonFileIndex`` keeps an in-memory
mirror of a JSON sidecar file and flushes the whole list through a temp
file and a rename; ``SqlIndex`` stores rows in a SQLModel table. Both
serialize appends with an ``asyncio.Lock`` so concurrent uploads can never
lose each other's records, and both refuse to index a stored key twice.

Readers never take the lock. The JSON index swaps its snapshot tuple only
after a successful flush, so a reader sees either the old or the new list.
"""
import asyncio
import json
import os
from datetime import timezone
from pathlib import Path
from typing import Dict, List, Tuple

import aiofiles
import aiofiles.os
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from .errors import IndexWriteError, NotFound
from .models import UploadRow
from .schemas import UploadRecord
from .settings import Settings


def _newest_first(records) -> List[UploadRecord]:
    # reversed() puts later appends first; the sort is stable so ties keep that order
    return sorted(reversed(records), key=lambda r: r.received_at, reverse=True)


class MetadataIndex:
    async def load(self) -> None:
        raise NotImplementedError

    async def append(self, record: UploadRecord) -> UploadRecord:
        """Persist ``record`` and return it as stored.

        ``received_at`` is clamped to the last appended value so it never
        goes backwards in append order.
        """
        raise NotImplementedError

    async def list(self) -> List[UploadRecord]:
        raise NotImplementedError

    async def find_by_key(self, stored_key: str) -> UploadRecord:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class JsonFileIndex(MetadataIndex):
    def __init__(self, path: Path):
        self.path = Path(path)
        self._records: Tuple[UploadRecord, ...] = ()
        self._by_key: Dict[str, UploadRecord] = {}
        self._lock = asyncio.Lock()

    async def load(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not await aiofiles.os.path.exists(self.path):
            await self._flush(())
            logger.info(f"Created metadata index at {self.path}")
            return
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                raw = json.loads(await f.read() or "[]")
            records = tuple(UploadRecord.model_validate(item) for item in raw)
        except (OSError, ValueError) as e:
            raise IndexWriteError(f"Cannot read metadata index {self.path}: {e}") from e
        self._records = records
        self._by_key = {r.stored_key: r for r in records}
        logger.info(f"Loaded {len(records)} records from {self.path}")

    async def _flush(self, records) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        payload = json.dumps(
            [r.model_dump(mode="json", by_alias=True) for r in records],
            indent=2,
            ensure_ascii=False,
        )
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(payload)
                await f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())
            await aiofiles.os.rename(str(tmp_path), str(self.path))
        except OSError as e:
            raise IndexWriteError(f"Cannot write metadata index {self.path}: {e}") from e

    async def append(self, record: UploadRecord) -> UploadRecord:
        async with self._lock:
            if record.stored_key in self._by_key:
                raise IndexWriteError(f"Stored key already indexed: {record.stored_key}")
            if self._records and record.received_at < self._records[-1].received_at:
                record = record.model_copy(update={"received_at": self._records[-1].received_at})
            records = self._records + (record,)
            await self._flush(records)
            self._records = records
            self._by_key[record.stored_key] = record
        logger.debug(f"Indexed {record.stored_key} ({len(records)} records)")
        return record

    async def list(self) -> List[UploadRecord]:
        return _newest_first(self._records)

    async def find_by_key(self, stored_key: str) -> UploadRecord:
        record = self._by_key.get(stored_key)
        if record is None:
            raise NotFound(f"No file stored as {stored_key}")
        return record


def _to_record(row: UploadRow) -> UploadRecord:
    received_at = row.received_at
    # SQLite drops the offset; everything is written in UTC
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)
    return UploadRecord(
        original_name=row.original_name,
        stored_key=row.stored_key,
        location=row.location,
        received_at=received_at,
        content_type=row.content_type,
        size=row.size,
    )


class SqlIndex(MetadataIndex):
    def __init__(self, database_url: str):
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_engine(database_url, connect_args=connect_args)
        self._lock = asyncio.Lock()

    async def load(self) -> None:
        try:
            await asyncio.to_thread(SQLModel.metadata.create_all, self.engine)
        except SQLAlchemyError as e:
            raise IndexWriteError(f"Cannot initialize metadata table: {e}") from e

    def _insert(self, record: UploadRecord) -> UploadRecord:
        with Session(self.engine) as session:
            last = session.exec(select(UploadRow).order_by(UploadRow.id.desc()).limit(1)).first()
            if last is not None:
                last_at = _to_record(last).received_at
                if record.received_at < last_at:
                    record = record.model_copy(update={"received_at": last_at})
            row = UploadRow(
                stored_key=record.stored_key,
                original_name=record.original_name,
                location=record.location,
                content_type=record.content_type,
                size=record.size,
                received_at=record.received_at,
            )
            session.add(row)
            session.commit()
        return record

    async def append(self, record: UploadRecord) -> UploadRecord:
        async with self._lock:
            try:
                return await asyncio.to_thread(self._insert, record)
            except SQLAlchemyError as e:
                raise IndexWriteError(f"Cannot insert {record.stored_key}: {e}") from e

    def _select_all(self) -> List[UploadRecord]:
        with Session(self.engine) as session:
            statement = select(UploadRow).order_by(UploadRow.received_at.desc(), UploadRow.id.desc())
            return [_to_record(row) for row in session.exec(statement).all()]

    async def list(self) -> List[UploadRecord]:
        return await asyncio.to_thread(self._select_all)

    def _select_one(self, stored_key: str):
        with Session(self.engine) as session:
            row = session.exec(select(UploadRow).where(UploadRow.stored_key == stored_key)).first()
            return _to_record(row) if row is not None else None

    async def find_by_key(self, stored_key: str) -> UploadRecord:
        record = await asyncio.to_thread(self._select_one, stored_key)
        if record is None:
            raise NotFound(f"No file stored as {stored_key}")
        return record

    async def close(self) -> None:
        self.engine.dispose()


def build_index(settings: Settings) -> MetadataIndex:
    backend = settings.INDEX_BACKEND.lower()
    if backend == "json":
        return JsonFileIndex(settings.METADATA_FILE)
    if backend == "sql":
        return SqlIndex(settings.DATABASE_URL)
    raise ValueError(f"Unknown INDEX_BACKEND: {settings.INDEX_BACKEND}")
