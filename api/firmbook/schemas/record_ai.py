from typing import Any, Literal

from pydantic import BaseModel

from firmbook.schemas.records import RecordOut


class RecordStepResponse(BaseModel):
    record: RecordOut
    step: str
    outcome: Literal["succeeded", "skipped", "failed"]
    reason: str | None = None
    output: dict[str, Any] | None = None


class CategorizeResponse(BaseModel):
    category: str
    text: str
    cached: bool = False


class DeepNotesResponse(BaseModel):
    record: RecordOut
    research: str
    cached: bool = False


class ExecutivesResponse(BaseModel):
    executives: str
    cached: bool = False
