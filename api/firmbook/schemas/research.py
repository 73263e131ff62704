from pydantic import BaseModel, Field


class ResearchSuggestion(BaseModel):
    company_name: str = ""
    domain: str = ""
    notes: str = ""
    sources: list[str] = Field(default_factory=list)


class ResearchAddRequest(BaseModel):
    command: str = ""
    suggestions: list[ResearchSuggestion] = Field(default_factory=list)
    domains: list[str] = Field(default_factory=list)


class ResearchAddTelemetry(BaseModel):
    suggested: int
    filtered_existing: int
    added: int


class ResearchAddResponse(BaseModel):
    added_domains: list[str] = Field(default_factory=list)
    telemetry: ResearchAddTelemetry


class ResearchSuggestRequest(BaseModel):
    command: str = Field(min_length=1, max_length=2000)


class ResearchSuggestTelemetry(BaseModel):
    suggested: int
    filtered_existing: int


class ResearchSuggestResponse(BaseModel):
    suggestions: list[ResearchSuggestion] = Field(default_factory=list)
    cached: bool = False
    telemetry: ResearchSuggestTelemetry
