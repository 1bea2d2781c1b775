from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime
from sqlalchemy import Column, DateTime


class UploadRow(SQLModel, table=True):
    __tablename__ = "uploads"
    # autoincrement id doubles as the append sequence for tie-breaking
    id: Optional[int] = Field(default=None, primary_key=True)
    stored_key: str = Field(unique=True, index=True)
    original_name: str
    location: str
    content_type: Optional[str] = None
    size: Optional[int] = None
    received_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
