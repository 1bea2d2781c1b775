from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional
from datetime import datetime


class UploadRecord(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        frozen=True,
    )

    original_name: str
    stored_key: str
    location: str
    received_at: datetime
    content_type: Optional[str] = None
    size: Optional[int] = None

    def event_payload(self) -> dict:
        return {
            "originalName": self.original_name,
            "storedKey": self.stored_key,
            "receivedAt": self.received_at.isoformat(),
        }


class UploadResponse(UploadRecord):
    message: str = "File uploaded successfully"


class StoredBlob(BaseModel):
    location: str
    size: int
