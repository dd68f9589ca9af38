from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

USAGE_SINGLETON_ID = "gemini_usage_singleton"


class RequestLogEntry(BaseModel):
    timestamp: int  # epoch milliseconds
    model: str


class UsageRecord(BaseModel):
    id: str = USAGE_SINGLETON_ID
    requests_today: int = 0
    last_reset_date: str  # ISO calendar date (UTC)
    request_log: List[RequestLogEntry] = Field(default_factory=list)
    updated_at: Optional[datetime] = None

    def to_document(self) -> dict:
        doc = self.model_dump(exclude={"id"})
        doc["_id"] = self.id
        return doc

    @classmethod
    def from_document(cls, doc: dict) -> "UsageRecord":
        data = dict(doc)
        data["id"] = data.pop("_id", USAGE_SINGLETON_ID)
        return cls.model_validate(data)
