"""Per-model and consensus result models."""

from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

from .items import ExtractedItem, AnalysisIssue


@dataclass
class ModelResult:
    """
    Output of one model invocation, consumed by the consensus engine.

    Attributes:
        model_id: Model that produced the result
        task_type: "takeoff", "quality" or "bid_analysis"
        items: Extracted items
        issues: Plan-quality issues
        confidence: Self-reported or derived confidence (0.0 to 1.0)
        summary: Model's free-text summary
        raw_text: Response text exactly as returned
        payload: Parsed JSON payload
        repaired: Whether the JSON repair pass was needed
        finish_reason: Provider finish/stop reason
        latency: Seconds spent on the call
        usage: Token usage reported by the provider
    """
    model_id: str
    task_type: str
    items: List[ExtractedItem]
    issues: List[AnalysisIssue]
    confidence: float
    summary: str = ""
    raw_text: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)
    repaired: bool = False
    finish_reason: Optional[str] = None
    latency: float = 0.0
    usage: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "modelId": self.model_id,
            "taskType": self.task_type,
            "items": [item.to_dict() for item in self.items],
            "issues": [issue.to_dict() for issue in self.issues],
            "confidence": self.confidence,
            "summary": self.summary,
            "repaired": self.repaired,
            "finishReason": self.finish_reason,
            "latency": round(self.latency, 3),
            "usage": dict(self.usage),
        }


@dataclass
class ModelOutcome:
    """Tagged outcome of one model call in a consensus round: a result or an error."""
    model_id: str
    index: int
    result: Optional[ModelResult] = None
    error: Optional[BaseException] = None
    latency: float = 0.0

    @property
    def ok(self) -> bool:
        return self.result is not None and self.error is None


@dataclass
class Disagreement:
    """
    Conflicting values reported by different models for the same item.

    Attributes:
        type: Field kind in conflict ("quantity", "category", "severity", ...)
        item: Label of the merged item
        field: Name of the conflicting field
        description: Human-readable summary
        models: Models whose values conflict (at least two)
        values: Value reported by each model
        recommendation: Suggested follow-up for the reviewer
    """
    type: str
    item: str
    field: str
    description: str
    models: List[str]
    values: Dict[str, Any]
    recommendation: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "item": self.item,
            "field": self.field,
            "description": self.description,
            "models": list(self.models),
            "values": dict(self.values),
            "recommendation": self.recommendation,
        }


@dataclass
class ModelAgreement:
    """Participation summary for one model of the roster."""
    model: str
    specialization: str
    items_found: int
    confidence: float
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)
    participated: bool = True
    issues_found: int = 0
    agreement_rate: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "specialization": self.specialization,
            "itemsFound": self.items_found,
            "issuesFound": self.issues_found,
            "confidence": self.confidence,
            "agreementRate": self.agreement_rate,
            "strengths": list(self.strengths),
            "weaknesses": list(self.weaknesses),
            "participated": self.participated,
            "error": self.error,
        }


@dataclass
class SpecializedInsight:
    """Finding surfaced from the models' specializations."""
    type: str  # "code_compliance" | "cost_optimization" | "quality_improvement"
    title: str
    description: str
    models: List[str] = field(default_factory=list)
    items: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "models": list(self.models),
            "items": list(self.items),
        }


@dataclass
class ConsensusResult:
    """
    Merged output of a consensus round.

    Attributes:
        task_type: Task the round ran for
        items: Merged items that met the support threshold
        issues: Merged plan-quality issues that met the support threshold
        confidence: Overall confidence (0.0 to 1.0)
        disagreements: Conflicts surfaced for human review
        model_agreements: One entry per invoked model, in roster-rank order
        recommendations: Review guidance derived from the round
        specialized_insights: Findings grouped by model specialization
        low_support_items: Labels of clusters dropped for insufficient support
        models_invoked: Number of models invoked
        models_succeeded: Number of models whose results were merged
    """
    task_type: str
    items: List[ExtractedItem]
    issues: List[AnalysisIssue]
    confidence: float
    disagreements: List[Disagreement]
    model_agreements: List[ModelAgreement]
    recommendations: List[str]
    specialized_insights: List[SpecializedInsight] = field(default_factory=list)
    low_support_items: List[str] = field(default_factory=list)
    models_invoked: int = 0
    models_succeeded: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "taskType": self.task_type,
            "items": [item.to_dict() for item in self.items],
            "issues": [issue.to_dict() for issue in self.issues],
            "confidence": self.confidence,
            "disagreements": [d.to_dict() for d in self.disagreements],
            "modelAgreements": [m.to_dict() for m in self.model_agreements],
            "recommendations": list(self.recommendations),
            "specializedInsights": [s.to_dict() for s in self.specialized_insights],
            "lowSupportItems": list(self.low_support_items),
            "modelsInvoked": self.models_invoked,
            "modelsSucceeded": self.models_succeeded,
        }
