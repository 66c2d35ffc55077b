"""
Pattern Classifier - Adapter around the external (LLM) classifier

The orchestrator treats the classifier as slow, untrusted I/O:
- one call per pattern (never per element)
- any failure surfaces as ClassificationError and is isolated to that pattern
- output is advisory; codes are validated but never applied here

Prompt stays token-efficient: grouping fields, count, dimension ranges and the
first five sample elements (spec/metadata truncated to 80 chars).
"""
import json
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

import anthropic
import structlog
from pydantic import ValidationError

from packages.domain.classification.errors import ClassificationError
from packages.domain.classification.schemas import (
    DIMENSIONS,
    ClassificationContext,
    DerivedItem,
    Pattern,
    Suggestion,
    SuggestionStatus,
)

logger = structlog.get_logger()

PROMPT_SAMPLE_COUNT = 5
PROMPT_FIELD_MAX_CHARS = 80


class PatternClassifier(Protocol):
    """
    Classifier contract.

    Returned suggestions need not carry the pattern hash; the orchestrator
    stamps the canonical hash, key and element count on every result.
    """

    async def classify(self, pattern: Pattern, context: ClassificationContext) -> Suggestion:
        """
        Raises:
            ClassificationError: If no usable suggestion could be produced
        """
        ...


def _truncate(value: Optional[str]) -> Optional[str]:
    if value is None or len(value) <= PROMPT_FIELD_MAX_CHARS:
        return value
    return value[:PROMPT_FIELD_MAX_CHARS] + "..."


class ClaudePatternClassifier:
    """
    Pattern classifier backed by the Anthropic Messages API.

    Usage:
        classifier = ClaudePatternClassifier(api_key=settings.anthropic_api_key)
        suggestion = await classifier.classify(pattern, context)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "claude-sonnet-4-5",
        max_tokens: int = 1024,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        """
        Args:
            api_key: Anthropic API key
            model: Model name
            max_tokens: Response token cap
            client: Pre-built client (tests inject a mock here)
        """
        self.model = model
        self.max_tokens = max_tokens

        if client is not None:
            self.client = client
        elif api_key:
            self.client = anthropic.AsyncAnthropic(api_key=api_key)
        else:
            logger.warning("anthropic_api_key_missing",
                           message="ANTHROPIC_API_KEY not set, pattern classification will fail")
            self.client = None

        # Cost per token (Claude Sonnet 4.5 pricing)
        self.input_cost_per_1k = Decimal("0.003")   # $3 per 1M input tokens
        self.output_cost_per_1k = Decimal("0.015")  # $15 per 1M output tokens

    async def classify(self, pattern: Pattern, context: ClassificationContext) -> Suggestion:
        if self.client is None:
            raise ClassificationError("Anthropic client not initialized (missing API key)")

        prompt = self.build_prompt(pattern, context)

        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=0.0,  # Deterministic for consistency
                messages=[
                    {
                        "role": "user",
                        "content": prompt
                    }
                ]
            )
        except anthropic.APIError as e:
            logger.error("pattern_classification_api_failed",
                         pattern_key=pattern.pattern_key,
                         batch_id=context.batch_id,
                         error=str(e))
            raise ClassificationError(f"Classifier API call failed: {e}") from e

        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        cost = self._calculate_cost(input_tokens, output_tokens)

        logger.info("pattern_classification_complete",
                    pattern_key=pattern.pattern_key,
                    batch_id=context.batch_id,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    cost_usd=float(cost))

        text = response.content[0].text if response.content else ""
        return self.parse_response(text, pattern, cost)

    def build_prompt(self, pattern: Pattern, context: ClassificationContext) -> str:
        payload = self._pattern_payload(pattern)
        if context.project_id:
            payload["projectId"] = context.project_id

        return f"""You are a quantity surveying expert classifying building-model (BIM) elements.

You receive ONE pattern: a group of near-identical elements that share category,
family, type, material and location. Your suggestion applies to every element
in the pattern, so classify the pattern, not a single element.

IMPORTANT:
- Your output is a SUGGESTION ONLY - a human reviews it before anything is applied
- If the pattern is ambiguous, give your best guess and LOWER YOUR CONFIDENCE
- Below 0.70 confidence your codes will be discarded, so don't pad confidence

PATTERN:
{json.dumps(payload, default=str, indent=2)}

INSTRUCTIONS:
1. Pick the commodity code that best describes the pattern
2. Pick the pricing code used to price it, or null if none applies
3. List any derived line items the pattern implies (e.g. insulation for ductwork,
   hangers for pipework) with a quantity formula over the pattern's elements
4. Summarize your reasoning in one or two sentences
5. Set confidence between 0.0 and 1.0

RESPONSE FORMAT (return ONLY this JSON, no other text):
{{
  "commodity_code": "commodity code",
  "pricing_code": "pricing code or null",
  "derived_items": [
    {{"commodity_code": "code", "pricing_code": "code or null", "quantity_formula": "length_mm / 1000", "quantity_unit": "m"}}
  ],
  "reasoning_summary": "Short explanation",
  "confidence": 0.9
}}
"""

    @staticmethod
    def _pattern_payload(pattern: Pattern) -> Dict[str, Any]:
        dimensions = None
        if pattern.dimension_stats is not None:
            dimensions = {}
            for name in DIMENSIONS:
                dim_range = pattern.dimension_stats.get(name)
                if dim_range is not None:
                    dimensions[name] = {"min": dim_range.min, "max": dim_range.max, "avg": dim_range.avg}

        return {
            "patternKey": pattern.pattern_key,
            "category": pattern.category,
            "family": pattern.family,
            "type": pattern.element_type,
            "material": pattern.material,
            "locationType": pattern.location_type,
            "elementCount": pattern.element_count,
            "dimensions": dimensions,
            "samples": [
                {
                    "id": sample.element_id,
                    "spec": _truncate(sample.spec),
                    "meta": _truncate(sample.meta_json),
                }
                for sample in pattern.sample_elements[:PROMPT_SAMPLE_COUNT]
            ],
        }

    def parse_response(self, response_text: str, pattern: Pattern, cost: Optional[Decimal] = None) -> Suggestion:
        """
        Parse the JSON suggestion from the model output.

        Raises:
            ClassificationError: Output isn't the JSON shape we asked for
        """
        text = response_text.strip()
        # Claude should return clean JSON, but extract it if wrapped in markdown
        if "```json" in text:
            text = text.split("```json")[1].split("```")[0].strip()
        elif "```" in text:
            text = text.split("```")[1].split("```")[0].strip()

        try:
            data = json.loads(text)
            if not isinstance(data, dict):
                raise ValueError("Top-level JSON value is not an object")

            derived_items: List[DerivedItem] = [
                DerivedItem(**item) for item in (data.get("derived_items") or [])
            ]

            return Suggestion(
                pattern_hash="",
                pattern_key=pattern.pattern_key,
                element_count=pattern.element_count,
                commodity_code=data.get("commodity_code"),
                pricing_code=data.get("pricing_code"),
                derived_items=tuple(derived_items),
                reasoning_summary=data.get("reasoning_summary") or "",
                confidence=float(data.get("confidence", 0.0)),
                status=SuggestionStatus.PENDING,
                ai_cost_usd=cost,
            )
        except (ValueError, TypeError, ValidationError) as e:
            logger.error("pattern_classification_parse_failed",
                         pattern_key=pattern.pattern_key,
                         response=response_text[:500],
                         error=str(e))
            raise ClassificationError(f"Unparseable classifier output: {e}") from e

    def _calculate_cost(self, input_tokens: int, output_tokens: int) -> Decimal:
        input_cost = (Decimal(input_tokens) / 1000) * self.input_cost_per_1k
        output_cost = (Decimal(output_tokens) / 1000) * self.output_cost_per_1k
        return input_cost + output_cost
