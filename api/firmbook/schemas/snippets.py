from datetime import datetime

from pydantic import BaseModel, Field


class SnippetOut(BaseModel):
    key: str
    value: str = ""
    updated_at: datetime


class SnippetUpsertRequest(BaseModel):
    key: str = Field(min_length=1, max_length=200)
    value: str = ""
