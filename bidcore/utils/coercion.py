"""Helpers for coercing untrusted model output into typed values."""

import math
from typing import Any, Dict, Iterable, Optional


def safe_float(value: Any) -> Optional[float]:
    """
    Convert a value to float, accepting "$1,200.50"-style strings.

    Args:
        value: Value to convert

    Returns:
        Float value, or None if conversion fails or the value is not finite
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        value = value.strip().replace("$", "").replace(",", "")
        if not value:
            return None

    try:
        result = float(value)
    except (ValueError, TypeError):
        return None

    return result if math.isfinite(result) else None


def safe_int(value: Any, default: int = 0) -> int:
    result = safe_float(value)
    return int(result) if result is not None else default


def safe_str(value: Any) -> Optional[str]:
    """Stripped string, or None for missing/blank values."""
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def normalize_confidence(value: Any, default: float) -> float:
    """Confidence in [0, 1]; percentages (e.g. 85) are scaled down."""
    result = safe_float(value)
    if result is None:
        return default
    if 1.0 < result <= 100.0:
        result = result / 100.0
    return round(clamp(result), 4)


def pick(data: Dict[str, Any], keys: Iterable[str]) -> Any:
    """First non-None value among alternative key spellings."""
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None
