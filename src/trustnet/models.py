import math
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

Polarity = Literal["trustworthy", "false"]

DEFAULT_WEIGHT = 0.5


def coerce_weight(value: Any, default: float = DEFAULT_WEIGHT) -> float:
    """Best-effort float conversion for stored weights; anything unusable becomes ``default``."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def stored_weight(value: Any) -> float:
    """Weight read back from storage, coerced and forced into [0, 1]."""
    return clamp(coerce_weight(value))


def stored_score(value: Any) -> float | None:
    """Reputation score read back from storage; unusable values are dropped."""
    if value is None:
        return None
    number = coerce_weight(value, default=math.nan)
    return None if math.isnan(number) else clamp(number, 0.0, 100.0)


class SourceNode(BaseModel):
    id: int | None = None
    name: str
    site: str | None = None
    weight: float = Field(0.5, ge=0.0, le=1.0)
    category: str = "general"
    description: str | None = None
    reputation_score: float | None = Field(default=None, ge=0.0, le=100.0)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def as_attrs(self) -> dict[str, Any]:
        return self.model_dump()


class TrustEdge(BaseModel):
    source_id: int
    target_id: int
    weight: float = Field(..., ge=0.0, le=1.0)


class ContentPayload(BaseModel):
    text: str | None = None
    link: str | None = None

    @model_validator(mode="after")
    def _ensure_text_or_link(self) -> "ContentPayload":
        if not (self.text and self.text.strip()) and not (self.link and self.link.strip()):
            raise ValueError("Either text or link is required.")
        return self


class ContentRecord(BaseModel):
    id: int | None = None
    text: str | None = None
    link: str | None = None
    source_id: int
    confidence: float = Field(..., ge=0.0, le=1.0)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class FeedbackRecord(BaseModel):
    id: int | None = None
    content_id: int
    polarity: Polarity
    comment: str = ""
    created_at: datetime | None = None


class ExternalSource(BaseModel):
    """What the reputation collaborator knows about a site."""

    display_name: str
    site_id: str
    weight: float = Field(..., ge=0.0, le=100.0)
    category: str = "general"
    description: str | None = None


class Resolution(BaseModel):
    source: SourceNode | None = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    diagnostics: dict[str, Any] = Field(default_factory=dict)

    @property
    def resolved(self) -> bool:
        return self.source is not None


class GraphSummary(BaseModel):
    total_connections: int = 0
    max_depth: int = 0
    connections: list[dict[str, Any]] = Field(default_factory=list)
    paths: list[dict[str, Any]] = Field(default_factory=list)


class AnalysisResult(BaseModel):
    content: ContentRecord | None = None
    source: SourceNode | None = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    graph: GraphSummary = Field(default_factory=GraphSummary)
    diagnostics: dict[str, Any] = Field(default_factory=dict)


class FeedbackOutcome(BaseModel):
    content_id: int
    source_id: int
    polarity: Polarity
    new_source_weight: float
    adjustment_applied: float
    edges_adjusted: int = 0


class ContentStats(BaseModel):
    total_items: int = 0
    mean_confidence: float | None = None
    trusted_items: int = 0
    low_confidence_items: int = 0


class ContentReport(BaseModel):
    content: ContentRecord
    source: SourceNode | None = None
    feedback: list[FeedbackRecord] = Field(default_factory=list)
    source_stats: ContentStats = Field(default_factory=ContentStats)
    graph: GraphSummary = Field(default_factory=GraphSummary)
