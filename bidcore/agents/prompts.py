"""Prompt construction for plan analysis tasks."""

from typing import Any, List, Optional, Sequence

TASK_TYPES = ("takeoff", "quality", "bid_analysis")

BASE_INSTRUCTIONS = (
    "You are an expert construction estimator and plan reviewer. You read "
    "architectural and engineering drawings and report what they contain as "
    "strict JSON. Never invent items that are not supported by the drawings. "
    "When a value cannot be determined, use null instead of guessing."
)

ITEM_SCHEMA = """{
  "items": [
    {
      "name": "Short item name",
      "description": "What the item is and how it was measured",
      "quantity": 120.5,
      "unit": "LF | SF | CF | CY | EA | SQ",
      "unit_cost": 12.5,
      "amount": 1506.25,
      "location": "Where on the plans (room, grid line, elevation)",
      "category": "structural | exterior | interior | mep | finishes | other",
      "subcategory": "e.g. framing, drywall, roofing",
      "cost_code": "CSI code if known, else null",
      "notes": "Assumptions or null",
      "dimensions": "Dimensions as written on the drawing, or null",
      "confidence": 0.85,
      "bounding_box": {"page": 0, "x": 0.10, "y": 0.20, "width": 0.30, "height": 0.15}
    }
  ],
  "summary": "One paragraph overview",
  "confidence": 0.8
}"""

ISSUE_SCHEMA = """{
  "issues": [
    {
      "severity": "critical | warning | info",
      "category": "code_compliance | dimensions | coordination | missing_information | other",
      "description": "What is wrong",
      "location": "Where on the plans",
      "impact": "Consequence if not addressed",
      "recommendation": "How to resolve it",
      "confidence": 0.8,
      "bounding_box": {"page": 0, "x": 0.10, "y": 0.20, "width": 0.30, "height": 0.15}
    }
  ],
  "items": [],
  "summary": "One paragraph overview",
  "confidence": 0.8
}"""

TASK_INSTRUCTIONS = {
    "takeoff": (
        "TASK: Quantity takeoff.\n"
        "- List every measurable construction element on the drawings.\n"
        "- Report quantities with units LF (linear feet), SF (square feet), "
        "CF (cubic feet), CY (cubic yards), EA (each) or SQ (roofing squares).\n"
        "- Derive quantities from dimensions and scale; state assumptions in notes.\n"
        "- Assign a category and, when you know it, a CSI cost code."
    ),
    "quality": (
        "TASK: Plan quality review.\n"
        "- Find missing or conflicting dimensions, coordination conflicts "
        "between disciplines and incomplete details.\n"
        "- Check building code compliance (egress, fire separation, accessibility, "
        "structural requirements) and cite the concern plainly.\n"
        "- Rate each issue critical, warning or info, and describe its impact "
        "and a recommendation."
    ),
    "bid_analysis": (
        "TASK: Bid analysis.\n"
        "- Break the work into cost items with quantity, unit, unit_cost and amount.\n"
        "- Separate labor, material and equipment cost where the drawings allow it "
        "and note expected crew effort and timeline in notes.\n"
        "- Flag scope that is likely to be excluded or priced inconsistently by bidders."
    ),
}

OUTPUT_RULES = (
    "OUTPUT RULES:\n"
    "- Respond with a single JSON object and nothing else: no markdown, no prose.\n"
    "- Every item and issue must include a category and a bounding_box.\n"
    "- bounding_box coordinates are fractions of the page (0.0 to 1.0); "
    "page is the zero-based index of the image the element appears on.\n"
    "- confidence values are between 0.0 and 1.0."
)

ACCURACY_INSTRUCTION = (
    "ACCURACY: Prioritize accuracy over coverage. Only report items you can "
    "verify on the drawings, double-check every quantity against the "
    "dimensions, and lower confidence wherever the drawing is ambiguous."
)

CONSENSUS_INSTRUCTION = (
    "Your answer is one of several independent analyses that will be "
    "cross-checked by a multi-model consensus system. Report what you see "
    "independently and calibrate confidence honestly."
)


def output_schema(task_type: str) -> str:
    return ISSUE_SCHEMA if task_type == "quality" else ITEM_SCHEMA


def build_system_prompt(
    task_type: str,
    prioritize_accuracy: bool = False,
    include_consensus: bool = True
) -> str:
    """
    Build the system prompt for a plan analysis task.

    Args:
        task_type: One of TASK_TYPES
        prioritize_accuracy: Add the accuracy-over-coverage instruction
        include_consensus: Tell the model its output is cross-checked

    Returns:
        System prompt text
    """
    if task_type not in TASK_TYPES:
        raise ValueError(f"Unknown task type: {task_type}")

    sections: List[str] = [BASE_INSTRUCTIONS, TASK_INSTRUCTIONS[task_type]]
    if prioritize_accuracy:
        sections.append(ACCURACY_INSTRUCTION)
    if include_consensus:
        sections.append(CONSENSUS_INSTRUCTION)
    sections.append(OUTPUT_RULES)
    sections.append("JSON SCHEMA:\n" + output_schema(task_type))
    return "\n\n".join(sections)


def _format_annotation(annotation: Any, index: int) -> Optional[str]:
    if isinstance(annotation, str):
        text = annotation.strip()
        return f"{index}. {text}" if text else None

    if not isinstance(annotation, dict):
        return None

    text = str(annotation.get("text") or annotation.get("note") or annotation.get("label") or "").strip()
    if not text:
        return None

    prefix = []
    if annotation.get("page") is not None:
        prefix.append(f"page {annotation['page']}")
    if annotation.get("type"):
        prefix.append(str(annotation["type"]))
    label = f" [{', '.join(prefix)}]" if prefix else ""
    return f"{index}.{label} {text}"


def build_user_prompt(
    task_type: str,
    image_count: int,
    annotations: Optional[Sequence[Any]] = None
) -> str:
    """
    Build the user prompt summarizing the attached images and annotations.

    Args:
        task_type: One of TASK_TYPES
        image_count: Number of plan images attached
        annotations: User annotations (strings or dicts with text/page/type)

    Returns:
        User prompt text
    """
    noun = "image" if image_count == 1 else "images"
    lines = [
        f"Analyze the {image_count} attached construction plan {noun} "
        f"for a {task_type.replace('_', ' ')} task."
    ]

    formatted = [
        line for line in (
            _format_annotation(a, i) for i, a in enumerate(annotations or [], start=1)
        ) if line
    ]
    if formatted:
        lines.append("")
        lines.append("The user marked up the plans with these annotations; take them into account:")
        lines.extend(formatted)

    lines.append("")
    lines.append("Return only the JSON object described in the schema.")
    return "\n".join(lines)
