from typing import List

from .errors import InvalidKey
from .index import MetadataIndex
from .schemas import UploadRecord


def check_key(stored_key: str) -> None:
    if not stored_key or ".." in stored_key or any(c in stored_key for c in "/\\\x00"):
        raise InvalidKey(f"Invalid file name: {stored_key!r}")


class FileQuery:
    """Read side of the index: listing and key resolution."""

    def __init__(self, index: MetadataIndex):
        self.index = index

    async def list_all(self) -> List[UploadRecord]:
        return await self.index.list()

    async def lookup(self, stored_key: str) -> UploadRecord:
        check_key(stored_key)
        return await self.index.find_by_key(stored_key)

    async def resolve(self, stored_key: str) -> str:
        record = await self.lookup(stored_key)
        return record.location
