from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

Tone = Literal["positive", "neutral", "factual", "fun"]


class ChatMessage(BaseModel):
    """One entry of the conversation history."""
    role: Literal["user", "assistant", "system"]
    content: str


class SearchFieldConfig(BaseModel):
    """Configured search field as authored in the widget config."""
    type: Literal["string", "number", "boolean", "integer", "object", "array", "enum"]
    description: str
    required: bool = False
    format: Optional[str] = None
    example: Optional[Any] = None
    enum: Optional[List[str]] = None
    items: Optional[Dict[str, Any]] = None
    properties: Optional[Dict[str, Any]] = None


class SearchConfig(BaseModel):
    searchData: Dict[str, SearchFieldConfig]


class ChatRequest(BaseModel):
    """Request payload for the streamed chat reply."""
    messages: List[ChatMessage]
    searchConfig: Optional[SearchConfig] = None
    currentData: Dict[str, Any] = Field(default_factory=dict)


class SearchDataRequest(BaseModel):
    messages: List[ChatMessage]
    currentData: Dict[str, Any] = Field(default_factory=dict)
    searchConfig: Optional[SearchConfig] = None


class CustomerIntentionRequest(BaseModel):
    messages: List[ChatMessage]
    currentData: Dict[str, Any] = Field(default_factory=dict)


class CustomerProspectRequest(BaseModel):
    messages: List[ChatMessage]


class ModerationRequest(BaseModel):
    content: str

    @field_validator("content")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content is required")
        return value


class ModerationResult(BaseModel):
    """Moderation verdict; categories are only present when flagged."""
    flagged: bool
    categories: Optional[Dict[str, bool]] = None


class ContentRequest(BaseModel):
    """Request to generate personalized copy for one item."""
    itemInformation: Dict[str, Any]
    customerIntention: Dict[str, Any]
    name: str
    instructions: str
    minCharacters: int
    maxCharacters: int
    textExamples: List[str] = Field(default_factory=list)
    tone: Tone = "positive"
    strongMatchOnly: bool = False

    @field_validator("name", "instructions")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @model_validator(mode="after")
    def _check_bounds(self) -> "ContentRequest":
        if self.minCharacters <= 0 or self.maxCharacters <= 0:
            raise ValueError("minCharacters and maxCharacters must be positive")
        if self.minCharacters > self.maxCharacters:
            raise ValueError("minCharacters must not exceed maxCharacters")
        return self


class ContentMetadata(BaseModel):
    name: str
    customerIntentionUsed: List[str]
    characterCount: int


class GatedContentMetadata(ContentMetadata):
    matchScore: float
    matchScoreThreshold: float


class MatchMetadata(BaseModel):
    name: str
    matchScore: float
    matchScoreThreshold: float


class NoMatchRequired(BaseModel):
    scenario: Literal["noMatchRequired"] = "noMatchRequired"
    content: str
    explanation: str
    metadata: ContentMetadata


class StrongMatchSuccess(BaseModel):
    scenario: Literal["strongMatchSuccess"] = "strongMatchSuccess"
    content: str
    explanation: str
    metadata: GatedContentMetadata


class StrongMatchFailure(BaseModel):
    scenario: Literal["strongMatchFailure"] = "strongMatchFailure"
    metadata: MatchMetadata


GenerationResult = Annotated[
    Union[NoMatchRequired, StrongMatchSuccess, StrongMatchFailure],
    Field(discriminator="scenario"),
]


class ErrorResponse(BaseModel):
    error: str
