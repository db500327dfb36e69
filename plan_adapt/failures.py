"""Tool-output classification and failure categorisation.

Tool results arrive loosely typed: JSON text, MCP content, dicts carrying an
``error`` key, or arrays of ``"Error executing tool ..."`` strings that the
transport reported as a success.  :func:`classify_tool_output` is the single
pass that turns a raw result into a closed ``ToolOutcome`` variant; nothing
downstream inspects raw shapes again.

:class:`FailureClassifier` then maps a failed outcome (or an unresolved
parameter) to a :class:`FailureCategory`.  Anything it does not recognise
is ``unknown``.
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any, Iterable

from .models import AmbiguousArray, FailureCategory, Success, ToolError, ToolOutcome

if TYPE_CHECKING:
    from .resolver import Unresolved

_log = logging.getLogger(__name__)

ERROR_MARKER = "error executing tool"

TRANSIENT_PATTERNS: tuple[str, ...] = (
    r"time[sd]?[\s_-]*out",
    r"temporar(?:y|ily)",
    r"connection\s+(?:reset|refused|aborted|closed|error|lost)",
    r"network",
    r"\b50[234]\b",
    r"\b429\b",
    r"rate[\s_-]*limit",
    r"too many requests",
    r"service unavailable",
    r"try again",
    r"econnreset|econnrefused|etimedout",
)

TOOL_NOT_APPLICABLE_PATTERNS: tuple[str, ...] = (
    r"unknown (?:tool|action)",
    r"tool\s+['\"]?[\w.-]+['\"]?\s+(?:was\s+|is\s+)?not found",
    r"no such tool",
    r"not (?:a|an) (?:registered|available) tool",
    r"method not found",
    r"-32601",
    r"not applicable",
    r"not supported",
    r"neither a tool nor a prompt",
)

INVALID_PARAMETER_PATTERNS: tuple[str, ...] = (
    r"invalid (?:argument|parameter|input|value|id|format)",
    r"missing (?:required )?(?:argument|parameter|field|property)",
    r"required (?:argument|parameter|field|property)",
    r"validation error",
    r"\b(?:400|422)\b",
    r"unprocessable",
    r"bad request",
    r"must be (?:a|an|one of)",
    r"expected (?:type|a |an )",
    r"is not (?:a )?valid",
    r"-32602",
)

TRANSIENT_EXCEPTIONS = frozenset({
    "TimeoutError",
    "ConnectionError",
    "ConnectionResetError",
    "ConnectionRefusedError",
    "ConnectionAbortedError",
    "BrokenPipeError",
    "ReadTimeout",
    "ConnectTimeout",
    "ClosedResourceError",
})

# Unresolved parameter signals that cannot become resolvable by retrying.
_EXTRACTION_KINDS = frozenset({
    "error-payload",
    "no-data",
    "missing-reference",
    "reference-failed",
    "low-confidence",
})


# ── tool output ───────────────────────────────────────────────────────────────


def is_error_entry(entry: Any) -> bool:
    """Return True if one array entry carries the tool error marker."""
    if isinstance(entry, str):
        return ERROR_MARKER in entry.lower()
    if isinstance(entry, dict):
        for key in ("text", "error", "message"):
            val = entry.get(key)
            if isinstance(val, str) and ERROR_MARKER in val.lower():
                return True
    return False


def is_error_array(value: Any) -> bool:
    """Return True for a non-empty array whose entries are all error-shaped."""
    return (
        isinstance(value, list)
        and len(value) > 0
        and all(is_error_entry(e) for e in value)
    )


def classify_tool_output(raw: Any) -> ToolOutcome:
    """Turn a raw tool result into Success, ToolError or AmbiguousArray."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")

    if isinstance(raw, str):
        text = raw.strip()
        if text[:1] in ("[", "{"):
            try:
                return classify_tool_output(json.loads(text))
            except json.JSONDecodeError:
                pass
        if ERROR_MARKER in text.lower():
            return ToolError(message=text)
        return Success(payload=raw)

    if isinstance(raw, list):
        if is_error_array(raw):
            return AmbiguousArray(entries=list(raw))
        return Success(payload=raw)

    if isinstance(raw, dict):
        if set(raw) == {"error"} or raw.get("isError") is True:
            return ToolError(message=str(raw.get("error") or raw))
        return Success(payload=raw)

    return Success(payload=raw)


# ── failure categories ────────────────────────────────────────────────────────


def _compile(patterns: Iterable[str]) -> list[re.Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


class FailureClassifier:
    """Pattern-based mapping from failures to recovery categories.

    Pattern sets are checked in the order transient, tool-not-applicable,
    invalid-parameter; the first match wins.
    """

    def __init__(
        self,
        transient: Iterable[str] = TRANSIENT_PATTERNS,
        tool_not_applicable: Iterable[str] = TOOL_NOT_APPLICABLE_PATTERNS,
        invalid_parameter: Iterable[str] = INVALID_PARAMETER_PATTERNS,
    ) -> None:
        self._rules = [
            (FailureCategory.TRANSIENT, _compile(transient)),
            (FailureCategory.TOOL_NOT_APPLICABLE, _compile(tool_not_applicable)),
            (FailureCategory.INVALID_PARAMETER, _compile(invalid_parameter)),
        ]

    def classify(self, outcome: ToolOutcome) -> FailureCategory:
        if isinstance(outcome, Success):
            raise ValueError("cannot classify a successful outcome")
        if isinstance(outcome, ToolError):
            if outcome.timed_out or outcome.exception_type in TRANSIENT_EXCEPTIONS:
                return FailureCategory.TRANSIENT
            return self.classify_message(outcome.message)
        return self.classify_message(" ".join(str(e) for e in outcome.entries))

    def classify_message(self, message: str) -> FailureCategory:
        for category, regexes in self._rules:
            if any(r.search(message or "") for r in regexes):
                return category
        _log.debug("Unrecognised failure message, classifying as unknown: %s", message)
        return FailureCategory.UNKNOWN

    def classify_unresolved(self, unresolved: "Unresolved") -> FailureCategory:
        if unresolved.kind in _EXTRACTION_KINDS:
            return FailureCategory.EXTRACTION_IMPOSSIBLE
        if unresolved.kind == "oracle-timeout":
            return FailureCategory.TRANSIENT
        return FailureCategory.UNKNOWN
