from typing import Any, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


def _valid_items(model: Type[BaseModel], value: Any) -> List[BaseModel]:
    """Validate list items one by one, dropping the ones that fail."""
    if not isinstance(value, list):
        return []
    kept = []
    for item in value:
        try:
            kept.append(model.model_validate(item))
        except ValidationError:
            continue
    return kept


def _text_items(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]


class IdentifiedGap(BaseModel):
    model_config = ConfigDict(extra="ignore")

    category: str = ""  # Technical Details, Legal Framework, Psychology, Historical Context, Prevention, Impact
    missing_info: str = ""
    why_important: str = ""


class ExpansionSearch(BaseModel):
    model_config = ConfigDict(extra="ignore")

    query: str = Field(min_length=1)
    target: str = ""
    expected_value: str = ""

    @field_validator("query")
    @classmethod
    def _strip_query(cls, value: str) -> str:
        cleaned = value.strip().strip('"').strip()
        if not cleaned:
            raise ValueError("query must not be blank")
        return cleaned


class ExpansionPlan(BaseModel):
    model_config = ConfigDict(extra="ignore")

    core_facts_covered: List[str] = Field(default_factory=list)
    identified_gaps: List[IdentifiedGap] = Field(default_factory=list)
    expansion_searches: List[ExpansionSearch] = Field(default_factory=list)
    priority_order: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    @field_validator("identified_gaps", mode="before")
    @classmethod
    def _keep_valid_gaps(cls, value: Any) -> List[BaseModel]:
        return _valid_items(IdentifiedGap, value)

    @field_validator("expansion_searches", mode="before")
    @classmethod
    def _keep_valid_searches(cls, value: Any) -> List[BaseModel]:
        return _valid_items(ExpansionSearch, value)

    @field_validator("core_facts_covered", "priority_order", mode="before")
    @classmethod
    def _keep_text(cls, value: Any) -> List[str]:
        return _text_items(value)


class ExtractedSource(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str
    title: str = ""
    content: str = ""

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        cleaned = value.strip().strip("<>\"'")
        if not (cleaned.startswith("http://") or cleaned.startswith("https://")):
            raise ValueError("url must be an absolute http(s) URL")
        return cleaned


class ExtractedSourceBatch(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sources: List[ExtractedSource] = Field(default_factory=list)

    @field_validator("sources", mode="before")
    @classmethod
    def _keep_valid_sources(cls, value: Any) -> List[BaseModel]:
        return _valid_items(ExtractedSource, value)


RECORD_SOURCES_TOOL = {
    "name": "record_sources",
    "description": (
        "Record the sources found with web_search. Call this exactly once, after searching, "
        "with the 2-3 most substantial sources."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "sources": {
                "type": "array",
                "maxItems": 3,
                "items": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string", "description": "Full http(s) URL of the page."},
                        "title": {"type": "string", "description": "Page title."},
                        "content": {
                            "type": "string",
                            "description": "Extract of the relevant content, 500-1000 words when available.",
                        },
                    },
                    "required": ["url", "title", "content"],
                },
            }
        },
        "required": ["sources"],
    },
}
