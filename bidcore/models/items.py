"""Plan analysis item models."""

from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

from ..utils.coercion import safe_float, safe_int, clamp

ITEM_UNITS = ("LF", "SF", "CF", "CY", "EA", "SQ")
ITEM_CATEGORIES = ("structural", "exterior", "interior", "mep", "finishes", "other")
ISSUE_SEVERITIES = ("critical", "warning", "info")


@dataclass
class BoundingBox:
    """
    Region of a plan page, in normalized coordinates.

    Attributes:
        page: Zero-based index of the image/page the region is on
        x: Left edge (0.0 to 1.0)
        y: Top edge (0.0 to 1.0)
        width: Width (0.0 to 1.0)
        height: Height (0.0 to 1.0)
        estimated: True when the model gave no usable box and the whole page is assumed
    """
    page: int = 0
    x: float = 0.0
    y: float = 0.0
    width: float = 1.0
    height: float = 1.0
    estimated: bool = False

    @classmethod
    def full_page(cls, page: int = 0) -> "BoundingBox":
        return cls(page=page, x=0.0, y=0.0, width=1.0, height=1.0, estimated=True)

    @classmethod
    def from_dict(cls, data: Any, default_page: int = 0) -> "BoundingBox":
        """
        Build a box from model output, clamping it into the unit square.

        Values that look like percentages (any coordinate above 1, none above
        100) are scaled down. Missing or degenerate boxes become an estimated
        full-page box.
        """
        if not isinstance(data, dict):
            return cls.full_page(default_page)

        page = max(0, safe_int(data.get("page"), default_page))
        coords = [safe_float(data.get(key)) for key in ("x", "y", "width", "height")]
        if any(value is None for value in coords):
            return cls.full_page(page)

        if any(value > 1.0 for value in coords) and all(value <= 100.0 for value in coords):
            coords = [value / 100.0 for value in coords]

        x, y = clamp(coords[0]), clamp(coords[1])
        width = clamp(coords[2], 0.0, 1.0 - x)
        height = clamp(coords[3], 0.0, 1.0 - y)
        if width <= 0.0 or height <= 0.0:
            return cls.full_page(page)

        return cls(page=page, x=round(x, 4), y=round(y, 4), width=round(width, 4), height=round(height, 4))

    @property
    def area(self) -> float:
        return self.width * self.height

    def iou(self, other: "BoundingBox") -> float:
        """Intersection over union; 0.0 for boxes on different pages."""
        if self.page != other.page:
            return 0.0
        left = max(self.x, other.x)
        top = max(self.y, other.y)
        right = min(self.x + self.width, other.x + other.width)
        bottom = min(self.y + self.height, other.y + other.height)
        if right <= left or bottom <= top:
            return 0.0
        intersection = (right - left) * (bottom - top)
        union = self.area + other.area - intersection
        return intersection / union if union > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "page": self.page,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "estimated": self.estimated,
        }


@dataclass
class ExtractedItem:
    """
    One construction element (takeoff) or cost line (bid analysis) found on a plan.

    Attributes:
        name: Short item name
        description: Longer description
        category: One of ITEM_CATEGORIES
        subcategory: Free-form refinement of the category
        quantity: Measured quantity, None when not determinable
        unit: Unit of measure (LF, SF, CF, CY, EA, SQ, or an invoice unit)
        unit_cost: Cost per unit
        amount: Extended cost, never negative
        location: Free-text location on the plans
        bounding_box: Region the item was read from
        confidence: Confidence score (0.0 to 1.0)
        cost_code: CSI or internal cost code
        notes: Additional notes
        dimensions: Dimension string as read from the drawing
        consensus_count: Number of models that reported this item
        source_models: Models that reported this item
    """
    name: str
    category: str
    bounding_box: BoundingBox
    confidence: float
    description: str = ""
    subcategory: Optional[str] = None
    quantity: Optional[float] = None
    unit: Optional[str] = None
    unit_cost: Optional[float] = None
    amount: Optional[float] = None
    location: str = ""
    cost_code: Optional[str] = None
    notes: Optional[str] = None
    dimensions: Optional[str] = None
    consensus_count: int = 1
    source_models: List[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        """Text used to match this item against other models' items."""
        return self.name or self.description

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "subcategory": self.subcategory,
            "quantity": self.quantity,
            "unit": self.unit,
            "unitCost": self.unit_cost,
            "amount": self.amount,
            "location": self.location,
            "boundingBox": self.bounding_box.to_dict(),
            "confidence": self.confidence,
            "costCode": self.cost_code,
            "notes": self.notes,
            "dimensions": self.dimensions,
            "consensusCount": self.consensus_count,
            "sourceModels": list(self.source_models),
        }


@dataclass
class AnalysisIssue:
    """
    A plan-quality problem (missing dimension, code conflict, ...).

    Attributes:
        description: What is wrong
        severity: One of ISSUE_SEVERITIES
        category: Issue category (e.g. "code_compliance", "dimensions")
        bounding_box: Region the issue was found in
        confidence: Confidence score (0.0 to 1.0)
        location: Free-text location on the plans
        impact: Consequence if not addressed
        recommendation: Suggested fix
        consensus_count: Number of models that reported this issue
        source_models: Models that reported this issue
    """
    description: str
    severity: str
    category: str
    bounding_box: BoundingBox
    confidence: float
    location: str = ""
    impact: Optional[str] = None
    recommendation: Optional[str] = None
    consensus_count: int = 1
    source_models: List[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        return self.description

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "severity": self.severity,
            "category": self.category,
            "location": self.location,
            "impact": self.impact,
            "recommendation": self.recommendation,
            "boundingBox": self.bounding_box.to_dict(),
            "confidence": self.confidence,
            "consensusCount": self.consensus_count,
            "sourceModels": list(self.source_models),
        }
