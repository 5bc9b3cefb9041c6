"""Single-model plan analyzer: one model, one task, one typed result."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .base import BaseAnalysisAgent
from .prompts import TASK_TYPES, build_system_prompt, build_user_prompt
from ..models.items import (
    AnalysisIssue,
    BoundingBox,
    ExtractedItem,
    ITEM_CATEGORIES,
    ISSUE_SEVERITIES,
)
from ..models.results import ModelResult
from ..providers.base import ModelProvider, JSON_RESPONSE_FORMAT
from ..providers.images import ImageInput, load_images
from ..utils.coercion import normalize_confidence, pick, safe_float, safe_str
from ..utils.config import ModelProfile
from ..utils.errors import AnalysisError
from ..utils.response_formatter import ResponseFormatter

logger = logging.getLogger(__name__)

ACCURACY_TEMPERATURE_CAP = 0.1

UNIT_ALIASES = {
    "LINEAR FEET": "LF", "LINEAR FOOT": "LF", "LIN FT": "LF", "LNFT": "LF", "FT": "LF",
    "SQUARE FEET": "SF", "SQUARE FOOT": "SF", "SQ FT": "SF", "SQFT": "SF", "FT2": "SF",
    "CUBIC FEET": "CF", "CUBIC FOOT": "CF", "CU FT": "CF", "FT3": "CF",
    "CUBIC YARDS": "CY", "CUBIC YARD": "CY", "CU YD": "CY", "YD3": "CY",
    "EACH": "EA", "PCS": "EA", "PC": "EA", "UNITS": "EA",
    "SQUARES": "SQ", "SQUARE": "SQ", "ROOFING SQUARES": "SQ",
}

SEVERITY_ALIASES = {
    "high": "critical", "severe": "critical", "error": "critical", "blocker": "critical",
    "medium": "warning", "moderate": "warning", "major": "warning",
    "low": "info", "minor": "info", "note": "info", "informational": "info",
}

ITEM_KEYS = ("items", "line_items", "lineItems", "takeoff_items", "takeoffItems", "elements")
ISSUE_KEYS = ("issues", "quality_issues", "qualityIssues", "problems")


@dataclass
class AnalysisOptions:
    """
    Options for one analysis request.

    Attributes:
        task_type: "takeoff", "quality" or "bid_analysis"
        max_tokens: Maximum tokens the model may generate
        temperature: Sampling temperature
        prioritize_accuracy: Lower temperature and ask for verified items only
        include_consensus: Run the multi-model consensus round (single model when False)
        annotations: User annotations on the plans
    """
    task_type: str = "takeoff"
    max_tokens: int = 4000
    temperature: float = 0.2
    prioritize_accuracy: bool = False
    include_consensus: bool = True
    annotations: List[Any] = field(default_factory=list)

    def __post_init__(self):
        if self.task_type not in TASK_TYPES:
            raise ValueError(
                f"Unknown task type '{self.task_type}', expected one of {', '.join(TASK_TYPES)}"
            )

    @property
    def effective_temperature(self) -> float:
        if self.prioritize_accuracy:
            return min(self.temperature, ACCURACY_TEMPERATURE_CAP)
        return self.temperature

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]],
                  defaults: Optional["AnalysisOptions"] = None) -> "AnalysisOptions":
        """
        Build options from an API payload (camelCase or snake_case keys).

        Keys missing from the payload take their value from ``defaults``.
        """
        data = data or {}
        defaults = defaults or cls()
        max_tokens = safe_float(pick(data, ("maxTokens", "max_tokens")))
        temperature = safe_float(data.get("temperature"))
        return cls(
            task_type=pick(data, ("taskType", "task_type")) or defaults.task_type,
            max_tokens=int(max_tokens) if max_tokens else defaults.max_tokens,
            temperature=temperature if temperature is not None else defaults.temperature,
            prioritize_accuracy=bool(pick(data, ("prioritizeAccuracy", "prioritize_accuracy")) or False),
            include_consensus=bool(pick(data, ("includeConsensus", "include_consensus")) is not False),
            annotations=list(data.get("annotations") or []),
        )


class PlanAnalyzer(BaseAnalysisAgent):
    """
    Runs one model over a set of plan images and parses its JSON answer.

    The response goes through direct parse, then JSON repair; if both fail
    an AnalysisError carrying the raw text and both parser errors is raised.
    Items missing required fields are defaulted, never dropped.
    """

    def __init__(self, provider: ModelProvider, profile: ModelProfile):
        super().__init__(
            name=f"plan-analyzer:{profile.model_id}",
            instructions=build_system_prompt("takeoff"),
            provider=provider,
            model_id=profile.model_id,
        )
        self.profile = profile

    async def invoke(self, context: Dict[str, Any]) -> Dict[str, Any]:
        options = AnalysisOptions.from_dict(context.get("options"))
        result = await self.analyze(context.get("images", []), options)
        return result.to_dict()

    async def analyze(self, images: Sequence[Any], options: AnalysisOptions) -> ModelResult:
        """
        Analyze plan images with this analyzer's model.

        Args:
            images: Image references or ImageInput objects
            options: AnalysisOptions for the request

        Returns:
            ModelResult with typed items/issues and a confidence score

        Raises:
            ProviderError: If the model call fails after retries
            AnalysisError: If the response is empty or unparseable after repair
            ImageLoadError: If an image reference cannot be resolved
        """
        start_time = time.time()
        resolved: List[ImageInput] = await asyncio.to_thread(load_images, images)

        system_prompt = build_system_prompt(
            options.task_type,
            prioritize_accuracy=options.prioritize_accuracy,
            include_consensus=options.include_consensus,
        )
        user_prompt = build_user_prompt(options.task_type, len(resolved), options.annotations)
        logger.debug(
            f"{self.model_id}: {options.task_type} analysis of {len(resolved)} image(s), "
            f"prompt length {len(system_prompt) + len(user_prompt)} characters"
        )

        response = await self.get_response(
            user_message=user_prompt,
            images=resolved,
            system_prompt=system_prompt,
            temperature=options.effective_temperature,
            max_tokens=options.max_tokens,
            response_format=JSON_RESPONSE_FORMAT if self.profile.response_format_hint else None,
        )

        if not response.content or not response.content.strip():
            raise AnalysisError.empty_response(self.model_id, response.finish_reason)
        if response.truncated:
            logger.warning(f"{self.model_id} hit the token limit; output may be truncated")

        outcome = ResponseFormatter.parse_model_json(response.content)
        if not outcome.ok:
            logger.error(
                f"Unparseable response from {self.model_id}: "
                f"{ResponseFormatter.preview(response.content)}"
            )
            raise AnalysisError.unparseable(
                model_id=self.model_id,
                raw_text=response.content,
                repaired_text=outcome.repaired_text,
                direct_error=outcome.direct_error or "",
                repair_error=outcome.repair_error or "",
            )
        if outcome.was_repaired:
            logger.warning(f"Response from {self.model_id} needed JSON repair")

        result = self._structure_result(outcome.data, options.task_type)
        result.raw_text = response.content
        result.repaired = outcome.was_repaired
        result.finish_reason = response.finish_reason
        result.usage = dict(response.usage)
        result.latency = time.time() - start_time

        logger.info(
            f"{self.model_id} analysis complete: {len(result.items)} items, "
            f"{len(result.issues)} issues, confidence {result.confidence:.2f} "
            f"in {result.latency:.3f}s"
        )
        return result

    def _structure_result(self, payload: Dict[str, Any], task_type: str) -> ModelResult:
        raw_items = self._list_field(payload, ITEM_KEYS)
        raw_issues = self._list_field(payload, ISSUE_KEYS)
        summary = safe_str(payload.get("summary")) or ""

        confidence = self._model_confidence(payload, len(raw_items) + len(raw_issues), bool(summary))

        items = [self._structure_item(data, i, confidence) for i, data in enumerate(raw_items)]
        issues = [self._structure_issue(data, i, confidence) for i, data in enumerate(raw_issues)]

        return ModelResult(
            model_id=self.model_id,
            task_type=task_type,
            items=items,
            issues=issues,
            confidence=confidence,
            summary=summary,
            payload=payload,
        )

    @staticmethod
    def _list_field(payload: Dict[str, Any], keys: Sequence[str]) -> List[Any]:
        value = pick(payload, keys)
        if value is None:
            return []
        if isinstance(value, list):
            return value
        return [value]

    @staticmethod
    def _model_confidence(payload: Dict[str, Any], found: int, has_summary: bool) -> float:
        """
        Self-reported confidence, or one derived from the response shape.

        Derived: 0.5 base, +0.2 when anything was found, +0.1 above 10 and
        +0.1 above 20 entries, +0.1 with a summary.
        """
        reported = normalize_confidence(payload.get("confidence"), default=-1.0)
        if reported >= 0.0:
            return reported

        score = 0.5
        if found > 0:
            score += 0.2
        if found > 10:
            score += 0.1
        if found > 20:
            score += 0.1
        if has_summary:
            score += 0.1
        return round(min(score, 1.0), 4)

    def _structure_item(self, data: Any, index: int, default_confidence: float) -> ExtractedItem:
        if not isinstance(data, dict):
            data = {"name": safe_str(data)}

        raw_category = (safe_str(data.get("category")) or "other").lower()
        category = raw_category if raw_category in ITEM_CATEGORIES else "other"
        subcategory = safe_str(data.get("subcategory"))
        if category != raw_category and not subcategory:
            subcategory = raw_category

        quantity = self._non_negative(pick(data, ("quantity", "qty")))
        unit_cost = self._non_negative(pick(data, ("unit_cost", "unitCost", "unit_price", "unitPrice")))
        amount = self._non_negative(pick(data, ("amount", "total_cost", "totalCost", "cost")))
        if amount is None and quantity is not None and unit_cost is not None:
            amount = round(quantity * unit_cost, 2)

        description = safe_str(data.get("description")) or ""
        name = safe_str(pick(data, ("name", "item", "title"))) or description or f"Item {index + 1}"

        return ExtractedItem(
            name=name,
            description=description,
            category=category,
            subcategory=subcategory,
            quantity=quantity,
            unit=self._normalize_unit(data.get("unit")),
            unit_cost=unit_cost,
            amount=amount,
            location=safe_str(data.get("location")) or "",
            bounding_box=BoundingBox.from_dict(pick(data, ("bounding_box", "boundingBox", "bbox"))),
            confidence=normalize_confidence(data.get("confidence"), default_confidence),
            cost_code=safe_str(pick(data, ("cost_code", "costCode", "csi_code"))),
            notes=safe_str(data.get("notes")),
            dimensions=self._format_dimensions(data.get("dimensions")),
            source_models=[self.model_id],
        )

    def _structure_issue(self, data: Any, index: int, default_confidence: float) -> AnalysisIssue:
        if not isinstance(data, dict):
            data = {"description": safe_str(data)}

        severity = (safe_str(data.get("severity")) or "").lower()
        severity = SEVERITY_ALIASES.get(severity, severity)
        if severity not in ISSUE_SEVERITIES:
            severity = "warning"

        return AnalysisIssue(
            description=safe_str(pick(data, ("description", "issue", "title", "name"))) or f"Issue {index + 1}",
            severity=severity,
            category=(safe_str(data.get("category")) or "other").lower(),
            location=safe_str(data.get("location")) or "",
            impact=safe_str(data.get("impact")),
            recommendation=safe_str(data.get("recommendation")),
            bounding_box=BoundingBox.from_dict(pick(data, ("bounding_box", "boundingBox", "bbox"))),
            confidence=normalize_confidence(data.get("confidence"), default_confidence),
            source_models=[self.model_id],
        )

    @staticmethod
    def _non_negative(value: Any) -> Optional[float]:
        result = safe_float(value)
        if result is None or result < 0:
            return None
        return result

    @staticmethod
    def _normalize_unit(value: Any) -> Optional[str]:
        unit = safe_str(value)
        if not unit:
            return None
        key = unit.upper().replace(".", "").strip()
        return UNIT_ALIASES.get(key, key)

    @staticmethod
    def _format_dimensions(value: Any) -> Optional[str]:
        if isinstance(value, dict):
            parts = [f"{k}: {v}" for k, v in value.items() if v is not None]
            return ", ".join(parts) or None
        if isinstance(value, list):
            return " x ".join(str(v) for v in value) or None
        return safe_str(value)
