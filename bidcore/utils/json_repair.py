"""Best-effort repair of malformed JSON emitted by language models.

The repair is an ordered pipeline of pure text transforms. Each step assumes
the previous ones already ran, so the order of ``REPAIR_STEPS`` matters:

1. strip_code_fences
2. extract_json_body
3. insert_missing_commas
4. close_unterminated_string
5. remove_trailing_commas
6. balance_brackets
7. normalize_numbers
8. strip_control_characters

The result is lossy. Callers parse it and raise their own error, carrying
the original text, when it still does not parse.
"""

import json
import logging
import re
from typing import Callable, List, Tuple

logger = logging.getLogger(__name__)

WRAPPER_KEY = "items"

_FENCE_LINE = re.compile(r'^[ \t]*```[A-Za-z0-9_+-]*[ \t]*$', re.MULTILINE)
_LEADING_FENCE = re.compile(r'^```[A-Za-z0-9_+-]*\s*')
_TRAILING_FENCE = re.compile(r'\s*```\s*$')
_NUMBER = re.compile(r'-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?')
_LITERALS = ("true", "false", "null")
_TRAILING_COMMA = re.compile(r',(\s*[}\]])')
_CURRENCY_VALUE = re.compile(r"([:\[,]\s*)(-?)\$\s*(-?)(?=\d)")
_ARRAY_START = re.compile(r"\[\s*[{\[\"\d\]\-tfn]")
_THOUSANDS_VALUE = re.compile(r'(:\s*-?)(\d{1,3}(?:,\d{3})+(?:\.\d+)?)(?=\s*(?:[,}\]]|$))')
_NUMERIC_STRING = re.compile(r'^"\s*(-?)\$?\s*((?:0|[1-9]\d{0,2}(?:,\d{3})+|[1-9]\d*)(?:\.\d+)?)\s*"$')
_CONTROL_CHARS = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\x7f\ufeff\u200b\u200c\u200d\u2060]")


def split_strings(text: str) -> List[Tuple[bool, str]]:
    """
    Split text into alternating string-literal and structural segments.

    Args:
        text: JSON-like text

    Returns:
        List of (is_string, segment); string segments keep their quotes.
        An unterminated trailing string is returned as a string segment.
    """
    segments: List[Tuple[bool, str]] = []
    start = 0
    in_string = False
    escape = False

    for i, ch in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif ch == '\\':
                escape = True
            elif ch == '"':
                segments.append((True, text[start:i + 1]))
                start = i + 1
                in_string = False
        elif ch == '"':
            if i > start:
                segments.append((False, text[start:i]))
            start = i
            in_string = True

    if start < len(text):
        segments.append((in_string, text[start:]))
    return segments


def _outside_strings(text: str, transform: Callable[[str], str]) -> str:
    """Apply a transform to every structural (non-string) segment."""
    return "".join(
        segment if is_string else transform(segment)
        for is_string, segment in split_strings(text)
    )


def _matching_end(text: str, start: int) -> int:
    """Index of the bracket closing the one at ``start``, or -1."""
    opener = text[start]
    closer = '}' if opener == '{' else ']'
    depth = 0
    in_string = False
    escape = False

    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == '\\':
                escape = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return i
    return -1


def strip_code_fences(text: str) -> str:
    """Remove markdown code-fence markers, including doubled fences."""
    text = text.strip()
    previous = None
    while previous != text:
        previous = text
        text = _LEADING_FENCE.sub('', text)
        text = _TRAILING_FENCE.sub('', text).strip()
    return _FENCE_LINE.sub('', text).strip()


def extract_json_body(text: str) -> str:
    """
    Cut the JSON value out of surrounding prose.

    Takes the first ``{`` through its matching ``}`` (or to the end of the
    text when it never closes). An array is taken instead only when there is
    no object, or when the array encloses the first ``{``; bracketed prose
    such as "sheet [1] of 3" before the object is skipped. A taken array is
    wrapped as ``{"items": [...]}`` if prose was discarded around it.
    """
    obj_start = text.find('{')
    array_match = _ARRAY_START.search(text)
    arr_start = array_match.start() if array_match else -1
    if obj_start == -1 and arr_start == -1:
        return text

    end = _matching_end(text, arr_start) if arr_start != -1 else -1
    # An unclosed array runs to the end of the text, so it encloses everything after it
    encloses_object = arr_start != -1 and arr_start < obj_start and (end == -1 or end > obj_start)

    if arr_start != -1 and (obj_start == -1 or encloses_object):
        body = text[arr_start:end + 1] if end != -1 else text[arr_start:]
        if body.strip() == text.strip():
            return body.strip()
        return '{"%s": %s}' % (WRAPPER_KEY, body) if end != -1 else body

    end = _matching_end(text, obj_start)
    if end == -1:
        return text[obj_start:].rstrip()
    return text[obj_start:end + 1]


def insert_missing_commas(text: str) -> str:
    """
    Insert commas between adjacent values that lack a separator.

    Covers a closing quote, ``}``, ``]``, number or literal followed by the
    start of another value (``"``, ``{``, ``[``, a number or a literal).
    """
    out: List[str] = []
    in_string = False
    escape = False
    value_ended = False
    i = 0
    n = len(text)

    while i < n:
        ch = text[i]

        if in_string:
            out.append(ch)
            if escape:
                escape = False
            elif ch == '\\':
                escape = True
            elif ch == '"':
                in_string = False
                value_ended = True
            i += 1
            continue

        if ch in ' \t\r\n':
            out.append(ch)
            i += 1
            continue

        literal = next((lit for lit in _LITERALS if text.startswith(lit, i)), None)
        number = _NUMBER.match(text, i) if (ch == '-' or ch.isdigit()) else None
        starts_value = ch in '"{[' or literal is not None or number is not None

        if value_ended and starts_value:
            _append_comma(out)

        if ch == '"':
            in_string = True
            value_ended = False
            out.append(ch)
            i += 1
        elif number is not None:
            out.append(number.group(0))
            i = number.end()
            value_ended = True
        elif literal is not None:
            out.append(literal)
            i += len(literal)
            value_ended = True
        else:
            out.append(ch)
            value_ended = ch in '}]'
            i += 1

    return "".join(out)


def _append_comma(out: List[str]) -> None:
    """Place a comma right after the last non-whitespace chunk."""
    idx = len(out)
    while idx > 0 and out[idx - 1] in (' ', '\t', '\r', '\n'):
        idx -= 1
    out.insert(idx, ',')


def close_unterminated_string(text: str) -> str:
    """Append a closing quote when the text ends inside a string literal."""
    segments = split_strings(text)
    if not segments or not segments[-1][0]:
        return text
    last = segments[-1][1]
    if len(last) > 1 and last.endswith('"') and not _ends_escaped(last[:-1]):
        return text
    # drop a dangling escape so the appended quote is not swallowed
    if _ends_escaped(text):
        text = text[:-1]
    return text + '"'


def _ends_escaped(text: str) -> bool:
    count = len(text) - len(text.rstrip('\\'))
    return count % 2 == 1


def remove_trailing_commas(text: str) -> str:
    """Remove commas directly before a closing brace or bracket."""
    return _outside_strings(text, lambda seg: _TRAILING_COMMA.sub(r'\1', seg))


def balance_brackets(text: str) -> str:
    """
    Close unclosed braces/brackets and drop unmatched closers.

    A truncated value is completed before closing: a dangling comma is
    removed, a key without a value gets ``: null`` and a dangling ``:`` gets
    ``null``.
    """
    out: List[str] = []
    stack: List[str] = []
    # per open object: "key", "colon" or "value" describes what comes next
    states: List[str] = []
    in_string = False
    escape = False

    for ch in text:
        if in_string:
            out.append(ch)
            if escape:
                escape = False
            elif ch == '\\':
                escape = True
            elif ch == '"':
                in_string = False
                if stack and stack[-1] == '{' and states[-1] == "key":
                    states[-1] = "colon"
            continue

        if ch == '"':
            in_string = True
            out.append(ch)
        elif ch in '{[':
            stack.append(ch)
            states.append("key" if ch == '{' else "value")
            out.append(ch)
        elif ch in '}]':
            opener = '{' if ch == '}' else '['
            if opener not in stack:
                continue
            while stack[-1] != opener:
                out.append('}' if stack.pop() == '{' else ']')
                states.pop()
            stack.pop()
            states.pop()
            out.append(ch)
        elif ch == ':' and stack and stack[-1] == '{':
            states[-1] = "value"
            out.append(ch)
        elif ch == ',' and stack and stack[-1] == '{':
            states[-1] = "key"
            out.append(ch)
        else:
            out.append(ch)

    if not stack:
        return "".join(out)

    result = "".join(out).rstrip()
    if result.endswith(','):
        result = result[:-1].rstrip()
    if stack[-1] == '{':
        if result.endswith(':'):
            result += ' null'
        elif states[-1] == "colon":
            result += ': null'

    closers = ''.join('}' if opener == '{' else ']' for opener in reversed(stack))
    return result + closers


def _normalize_segment(segment: str) -> str:
    segment = _CURRENCY_VALUE.sub(
        lambda m: m.group(1) + ('-' if (m.group(2) or m.group(3)) else ''), segment
    )
    return _THOUSANDS_VALUE.sub(lambda m: m.group(1) + m.group(2).replace(',', ''), segment)


def normalize_numbers(text: str) -> str:
    """
    Strip currency symbols and thousands separators from bare numbers and
    unquote string values that are purely numeric.
    """
    segments = split_strings(text)
    result: List[str] = []

    for idx, (is_string, segment) in enumerate(segments):
        if not is_string:
            result.append(_normalize_segment(segment))
            continue

        before = segments[idx - 1][1].rstrip() if idx > 0 else ""
        after = segments[idx + 1][1].lstrip() if idx + 1 < len(segments) else ""
        is_value = before.endswith(':') and not after.startswith(':')
        match = _NUMERIC_STRING.match(segment) if is_value else None
        if match:
            result.append(match.group(1) + match.group(2).replace(',', ''))
        else:
            result.append(segment)

    return "".join(result)


def strip_control_characters(text: str) -> str:
    """Remove control characters except structural whitespace, plus BOM and zero-width marks."""
    return _CONTROL_CHARS.sub('', text)


REPAIR_STEPS: Tuple[Callable[[str], str], ...] = (
    strip_code_fences,
    extract_json_body,
    insert_missing_commas,
    close_unterminated_string,
    remove_trailing_commas,
    balance_brackets,
    normalize_numbers,
    strip_control_characters,
)


def repair_json(text: str) -> str:
    """
    Repair malformed JSON text.

    Valid JSON is returned unchanged (whitespace-stripped). Never raises: a
    step that fails is skipped and the best intermediate text is returned.

    Args:
        text: Raw model output

    Returns:
        Repaired text, which may still fail to parse
    """
    if not text:
        return ""

    stripped = text.strip()
    try:
        json.loads(stripped)
        return stripped
    except ValueError:
        pass

    current = text
    for step in REPAIR_STEPS:
        try:
            updated = step(current)
        except Exception as e:
            logger.warning(f"JSON repair step {step.__name__} failed: {str(e)}")
            continue
        if updated != current:
            logger.debug(f"JSON repair step {step.__name__} changed text ({len(current)} -> {len(updated)} chars)")
        current = updated

    return current


def loads_repaired(text: str):
    """Parse repaired text, tolerating raw control characters inside strings."""
    return json.loads(text, strict=False)
