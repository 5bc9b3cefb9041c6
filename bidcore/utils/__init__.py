"""Utility modules for configuration, logging, errors and JSON handling."""

from .json_repair import repair_json
from .response_formatter import ResponseFormatter, ParseOutcome

__all__ = [
    'repair_json',
    'ResponseFormatter',
    'ParseOutcome',
]
