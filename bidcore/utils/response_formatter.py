"""Parse cascade for JSON returned by language models."""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .json_repair import repair_json, loads_repaired, WRAPPER_KEY

logger = logging.getLogger(__name__)


@dataclass
class ParseOutcome:
    """
    Result of running model output through the parse cascade.

    Attributes:
        data: Parsed JSON object, or None when every strategy failed
        strategy: "direct", "repaired" or "embedded"
        repaired_text: Text produced by the repair pass (if it ran)
        direct_error: Parser error on the raw text
        repair_error: Parser error on the repaired text
    """
    data: Optional[Dict[str, Any]]
    strategy: Optional[str] = None
    repaired_text: Optional[str] = None
    direct_error: Optional[str] = None
    repair_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.data is not None

    @property
    def was_repaired(self) -> bool:
        return self.strategy in ("repaired", "embedded")


class ResponseFormatter:
    """
    Turns raw model text into a JSON object.

    Order of attempts: direct parse, JSON repair, and (when enabled) a
    brace-matching scan for the first parseable embedded object.
    """

    @staticmethod
    def parse_model_json(text: str, allow_embedded: bool = False) -> ParseOutcome:
        """
        Parse model output into a dict.

        Args:
            text: Raw response text
            allow_embedded: Also try brace-matching extraction as a last resort

        Returns:
            ParseOutcome; ``data`` is None when all strategies failed
        """
        outcome = ParseOutcome(data=None)

        try:
            outcome.data = ResponseFormatter._as_object(json.loads(text))
            outcome.strategy = "direct"
            return outcome
        except (json.JSONDecodeError, ValueError, TypeError) as e:
            outcome.direct_error = str(e)

        outcome.repaired_text = repair_json(text or "")
        try:
            outcome.data = ResponseFormatter._as_object(loads_repaired(outcome.repaired_text))
            outcome.strategy = "repaired"
            logger.debug("Parsed model output after JSON repair")
            return outcome
        except (json.JSONDecodeError, ValueError, TypeError) as e:
            outcome.repair_error = str(e)

        if allow_embedded:
            embedded = ResponseFormatter._extract_embedded_json(text or "")
            if embedded is not None:
                outcome.data = embedded
                outcome.strategy = "embedded"
                logger.debug("Parsed model output via embedded brace matching")

        return outcome

    @staticmethod
    def _as_object(value: Any) -> Dict[str, Any]:
        """Normalize a parsed payload to a dict; bare arrays become {"items": [...]}."""
        if isinstance(value, dict):
            return value
        if isinstance(value, list):
            return {WRAPPER_KEY: value}
        raise TypeError(f"Expected a JSON object, got {type(value).__name__}")

    @staticmethod
    def _extract_embedded_json(text: str) -> Optional[Dict[str, Any]]:
        """
        Find and extract a JSON object embedded in text using brace counting.

        Args:
            text: Response text

        Returns:
            Parsed JSON dict or None
        """
        start_idx = text.find('{')
        while start_idx != -1:
            brace_count = 0
            in_string = False
            escape_next = False
            end_idx = -1

            for i, char in enumerate(text[start_idx:], start_idx):
                if escape_next:
                    escape_next = False
                    continue

                if char == '\\':
                    escape_next = True
                    continue

                if char == '"':
                    in_string = not in_string
                    continue

                if not in_string:
                    if char == '{':
                        brace_count += 1
                    elif char == '}':
                        brace_count -= 1
                        if brace_count == 0:
                            end_idx = i
                            break

            if end_idx == -1:
                return None

            candidate = text[start_idx:end_idx + 1]
            try:
                parsed = loads_repaired(candidate)
                if isinstance(parsed, dict):
                    return parsed
            except json.JSONDecodeError:
                pass

            # Try the next object after this one
            start_idx = text.find('{', start_idx + 1)

        return None

    @staticmethod
    def preview(text: Optional[str], limit: int = 200) -> str:
        """Shorten response text for log messages."""
        if not text:
            return ""
        text = text.replace("\n", " ")
        return text if len(text) <= limit else text[:limit] + "..."
