"""
Data schemas for pattern classification

Value objects only. Patterns are produced by the aggregator and never mutated;
suggestions are advisory and carry no operation that applies them to
canonical element data.
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

DIMENSIONS = ("length", "width", "height", "diameter")

GroupingKey = Tuple[str, str, str, str, str]


class RawRecord(BaseModel):
    """
    Read-only snapshot of a BIM element, as served by the pattern view.

    This is NOT the canonical element - it's what the classifier gets to see.
    """
    model_config = ConfigDict(frozen=True)

    element_id: int
    external_id: Optional[str] = None
    project_id: Optional[str] = None
    category: str
    family: Optional[str] = None
    element_type: Optional[str] = None
    material: Optional[str] = None
    location_type: Optional[str] = None  # Indoor/Outdoor/Roof/etc.
    spec: Optional[str] = None
    length_mm: Optional[Decimal] = None
    width_mm: Optional[Decimal] = None
    height_mm: Optional[Decimal] = None
    diameter_mm: Optional[Decimal] = None
    meta_json: Optional[str] = None

    @property
    def grouping_key(self) -> GroupingKey:
        """(category, family, type, material, location type), nulls as empty strings"""
        return (
            self.category or "",
            self.family or "",
            self.element_type or "",
            self.material or "",
            self.location_type or "",
        )

    def dimension(self, name: str) -> Optional[Decimal]:
        """Dimension value in mm by name ('length', 'width', ...)"""
        return getattr(self, f"{name}_mm")


class DimensionRange(BaseModel):
    """min/max/avg of one dimension over the records that supply it"""
    model_config = ConfigDict(frozen=True)

    min: Decimal
    max: Decimal
    avg: Decimal


class DimensionStats(BaseModel):
    """Per-dimension ranges; a dimension is None when no record supplies it"""
    model_config = ConfigDict(frozen=True)

    length: Optional[DimensionRange] = None
    width: Optional[DimensionRange] = None
    height: Optional[DimensionRange] = None
    diameter: Optional[DimensionRange] = None

    def get(self, name: str) -> Optional[DimensionRange]:
        return getattr(self, name)


class Pattern(BaseModel):
    """
    Aggregated group of elements sharing category/family/type/material/location.

    Identity is the grouping key (plus dimension stats for hashing).
    element_ids lists every contributing element for result attribution;
    sample_elements is the bounded, id-ordered subset shown to the classifier.
    """
    model_config = ConfigDict(frozen=True)

    category: str
    family: str = ""
    element_type: str = ""
    material: str = ""
    location_type: str = ""
    element_count: int = Field(..., ge=1)
    dimension_stats: Optional[DimensionStats] = None
    sample_elements: Tuple[RawRecord, ...] = ()
    element_ids: Tuple[int, ...] = ()

    @property
    def grouping_key(self) -> GroupingKey:
        return (self.category, self.family, self.element_type, self.material, self.location_type)

    @property
    def pattern_key(self) -> str:
        """Human-readable key for logs and prompts"""
        return f"{self.category}_{self.family}_{self.element_type}"


class SuggestionStatus(str, Enum):
    """
    Status of an advisory suggestion produced by this core.

    Approved/Rejected are owned by the human review workflow, not by us.
    """
    PENDING = "pending"
    LOW_CONFIDENCE = "low_confidence"
    FAILED = "failed"


class DerivedItem(BaseModel):
    """Line item derived from a pattern (e.g. insulation for a duct run)"""
    model_config = ConfigDict(frozen=True)

    commodity_code: str
    pricing_code: Optional[str] = None
    quantity_formula: str
    quantity_unit: str


class Suggestion(BaseModel):
    """
    Advisory classification for one pattern.

    ADVISORY ONLY - never the canonical classification.
    """
    model_config = ConfigDict(frozen=True)

    pattern_hash: str
    pattern_key: str
    element_count: int = 0
    commodity_code: Optional[str] = None
    pricing_code: Optional[str] = None
    derived_items: Tuple[DerivedItem, ...] = ()
    reasoning_summary: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    status: SuggestionStatus = SuggestionStatus.PENDING
    error: Optional[str] = None
    ai_cost_usd: Optional[Decimal] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def with_confidence_floor(self, threshold: float) -> "Suggestion":
        """
        Return a copy with codes stripped when confidence is below threshold.

        Low confidence never guesses: both codes and any derived items are
        dropped and the status becomes LOW_CONFIDENCE.
        """
        if self.status == SuggestionStatus.FAILED or self.confidence >= threshold:
            return self
        return self.model_copy(update={
            "commodity_code": None,
            "pricing_code": None,
            "derived_items": (),
            "status": SuggestionStatus.LOW_CONFIDENCE,
        })

    @classmethod
    def failed(cls, pattern_hash: str, pattern_key: str, element_count: int, error: str) -> "Suggestion":
        """Failed entry for a pattern whose classifier call errored"""
        return cls(
            pattern_hash=pattern_hash,
            pattern_key=pattern_key,
            element_count=element_count,
            status=SuggestionStatus.FAILED,
            error=error,
        )


class ClassificationContext(BaseModel):
    """Per-batch context handed to the classifier"""
    model_config = ConfigDict(frozen=True)

    batch_id: str
    project_id: Optional[str] = None
    force_refresh: bool = False


class BatchResult(BaseModel):
    """Outcome of one classify_batch call"""
    model_config = ConfigDict(frozen=True)

    batch_id: str
    total_elements: int = 0
    total_patterns: int = 0
    cached_patterns: int = 0
    newly_classified: int = 0
    failed_patterns: int = 0
    cache_hit_rate: float = 0.0
    suggestions: List[Suggestion] = Field(default_factory=list)
    pattern_mapping: Dict[str, List[int]] = Field(default_factory=dict)
    total_ai_cost_usd: Decimal = Decimal("0")

    @staticmethod
    def hit_rate(cached_patterns: int, total_patterns: int) -> float:
        """cached / total, 0 when there are no patterns"""
        if total_patterns == 0:
            return 0.0
        return cached_patterns / total_patterns
