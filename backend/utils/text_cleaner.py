"""
Text utilities for turning loose model output into structured payloads:
strict-JSON sanitising, lenient ``key=value`` argument parsing and
importance normalisation.
"""

import ast
import json
import re
from typing import Any, Dict, List, Optional, Tuple

# Noise tokens models emit between a comma/brace and the next quoted key,
# e.g. ``, e  "key"`` or ``{ note "key"``.
_INLINE_NOISE_AFTER_COMMA = re.compile(r',\s*[A-Za-z_]+\s*(")')
_INLINE_NOISE_AFTER_BRACE = re.compile(r'\{\s*[A-Za-z_]+\s*(")')
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_FENCE_TOKENS = ("```json", "```JSON", "```")

HIGH_IMPORTANCE_LABELS: set[str] = {"high", "critical", "urgent", "核心"}
MEDIUM_IMPORTANCE_LABELS: set[str] = {"medium", "mid", "中"}
LOW_IMPORTANCE_LABELS: set[str] = {"low", "minor", "次要"}

HIGH_IMPORTANCE: float = 0.85
MEDIUM_IMPORTANCE: float = 0.6
LOW_IMPORTANCE: float = 0.35


def sanitize_to_strict_json(raw: Optional[str]) -> Optional[str]:
    """
    Clean model text into something ``json.loads`` can accept.

    Strips code fences, keeps only the outermost ``{...}`` block, removes
    stray bare-word noise before quoted keys and drops trailing commas.

    Returns:
        The cleaned object text, or None when no balanced object remains.
    """
    if raw is None:
        return None
    text = raw.strip()
    for token in _FENCE_TOKENS:
        text = text.replace(token, "")
    text = text.strip()

    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        text = text[start : end + 1]

    # Valid JSON is returned untouched; the rewrites below can clip string values.
    try:
        json.loads(text)
        return text
    except ValueError:
        pass

    text = _INLINE_NOISE_AFTER_COMMA.sub(r", \1", text)
    text = _INLINE_NOISE_AFTER_BRACE.sub(r"{\1", text)
    text = _TRAILING_COMMA.sub(r"\1", text)

    if not text.startswith("{") or not text.endswith("}"):
        return None
    return text


def strip_json_fence(text: str) -> str:
    payload = (text or "").strip()
    payload = re.sub(r"^```(?:json|JSON)?", "", payload).strip()
    payload = re.sub(r"```$", "", payload).strip()
    return payload


def load_json_object_with_diag(text: str) -> Tuple[Optional[Dict[str, Any]], Dict[str, Any]]:
    """Parse the first dict-shaped candidate in ``text``, recording why others failed."""
    payload = strip_json_fence(text)
    diagnostics: Dict[str, Any] = {
        "raw_length": len(payload),
        "candidate_count": 0,
        "candidates": [],
        "parsed": False,
    }
    if not payload:
        return None, diagnostics

    candidates = [payload]
    start = payload.find("{")
    end = payload.rfind("}")
    if start >= 0 and end > start:
        candidates.append(payload[start : end + 1])
    sanitized = sanitize_to_strict_json(payload)
    if sanitized and sanitized not in candidates:
        candidates.append(sanitized)
    diagnostics["candidate_count"] = len(candidates)

    for index, candidate in enumerate(candidates):
        candidate_diag: Dict[str, Any] = {"index": index, "length": len(candidate)}
        try:
            parsed = json.loads(candidate)
            candidate_diag["parser"] = "json"
        except ValueError as exc:
            candidate_diag["json_error"] = str(exc)[:240]
            try:
                # Some models emit Python-style dicts or single quotes.
                parsed = ast.literal_eval(candidate)
                candidate_diag["parser"] = "ast"
            except (ValueError, SyntaxError, MemoryError, RecursionError) as ast_exc:
                candidate_diag["ast_error"] = str(ast_exc)[:240]
                diagnostics["candidates"].append(candidate_diag)
                continue
        if isinstance(parsed, dict):
            diagnostics["parsed"] = True
            diagnostics["candidates"].append(candidate_diag)
            return parsed, diagnostics
        candidate_diag["non_dict"] = True
        diagnostics["candidates"].append(candidate_diag)
    return None, diagnostics


def load_json_object(text: str) -> Optional[Dict[str, Any]]:
    payload, _ = load_json_object_with_diag(text)
    return payload


def resolve_importance(raw: Any, default: float) -> float:
    """
    Normalise an importance value onto [0, 1].

    Numbers above 1 are read as a ten-point scale; numbers at or below 1 are
    clamped. Known category labels map to fixed tiers. Anything else yields
    ``default``.
    """
    if isinstance(raw, bool):
        return default
    if isinstance(raw, (int, float)):
        value = float(raw)
        if value != value:
            return default
        if value > 1:
            return min(1.0, value / 10.0)
        return max(0.0, min(1.0, value))
    if isinstance(raw, str):
        label = raw.strip().lower()
        if label in HIGH_IMPORTANCE_LABELS:
            return HIGH_IMPORTANCE
        if label in MEDIUM_IMPORTANCE_LABELS:
            return MEDIUM_IMPORTANCE
        if label in LOW_IMPORTANCE_LABELS:
            return LOW_IMPORTANCE
    return default


def shorten(value: Optional[str], max_length: int) -> Optional[str]:
    if value is None:
        return None
    if len(value) <= max_length:
        return value
    return value[: max(0, max_length - 3)] + "..."


def _find_outside_brackets(text: str, target: str, start: int) -> int:
    depth = 0
    for index in range(start, len(text)):
        ch = text[index]
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth = max(0, depth - 1)
        if depth == 0 and ch == target:
            return index
    return -1


def _find_matching_bracket(text: str, start: int) -> int:
    depth = 0
    for index in range(start, len(text)):
        ch = text[index]
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return index
    return -1


def _strip_quotes(value: str) -> str:
    trimmed = value.strip()
    if len(trimmed) >= 2 and trimmed[0] == trimmed[-1] and trimmed[0] in ("'", '"'):
        return trimmed[1:-1]
    return trimmed


def _split_list_values(content: str) -> List[str]:
    values: List[str] = []
    current: List[str] = []
    depth = 0
    for ch in content:
        if ch == "," and depth == 0:
            value = _strip_quotes("".join(current))
            if value:
                values.append(value)
            current = []
            continue
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth = max(0, depth - 1)
        current.append(ch)
    tail = _strip_quotes("".join(current))
    if tail:
        values.append(tail)
    return values


def parse_lenient_args(raw: Optional[str]) -> Dict[str, Any]:
    """
    Parse ``key=value, key2=[a, b]`` style arguments.

    Values are returned as strings (quotes stripped) and bracketed values as
    string lists. Unparseable input yields an empty dict.
    """
    result: Dict[str, Any] = {}
    if raw is None or not raw.strip():
        return result
    text = raw.strip()
    if text.startswith("{") and text.endswith("}"):
        text = text[1:-1]

    index = 0
    while index < len(text):
        eq_index = _find_outside_brackets(text, "=", index)
        if eq_index == -1:
            break
        key = _strip_quotes(text[index:eq_index])
        index = eq_index + 1
        if index >= len(text):
            if key:
                result[key] = ""
            break

        while index < len(text) and text[index].isspace():
            index += 1
        if index < len(text) and text[index] == "[":
            end_bracket = _find_matching_bracket(text, index)
            if end_bracket == -1:
                end_bracket = len(text) - 1
            if key:
                result[key] = _split_list_values(text[index + 1 : end_bracket])
            index = end_bracket + 1
        else:
            comma_index = _find_outside_brackets(text, ",", index)
            if comma_index == -1:
                value = text[index:]
                index = len(text)
            else:
                value = text[index:comma_index]
                index = comma_index + 1
            if key:
                result[key] = _strip_quotes(value)

        while index < len(text) and (text[index].isspace() or text[index] == ","):
            index += 1
    return result
