"""Placeholder detection for step parameters.

Planners write values they cannot know yet as placeholders such as
``EXTRACT_FROM_STEP_1``, ``from step 2``, ``step_4`` or ``{{step_3}}``.
Detection is a heuristic: a literal value that happens to look like a
placeholder is treated as one, and a novel phrasing is missed.  The grammar
is therefore a list of regular expressions that callers can replace through ``EngineConfig``.

A pattern may define a named group ``step`` holding the referenced step's
order number.  Patterns without it mark a value that needs extraction from
the step's most recent dependency.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

_SEP = r"[_\s-]*"

DEFAULT_PATTERNS: tuple[str, ...] = (
    r"\{\{\s*step" + _SEP + r"(?P<step>\d+)\s*\}\}",
    r"extract(?:ed)?" + _SEP + r"(?:from" + _SEP + r")?(?:the" + _SEP + r")?"
    r"(?:result" + _SEP + r"of" + _SEP + r")?step" + _SEP + r"(?P<step>\d+)",
    r"from" + _SEP + r"step" + _SEP + r"(?P<step>\d+)",
    r"(?:^|[^a-z0-9])step" + _SEP + r"(?P<step>\d+)(?:$|[^a-z0-9])",
    r"(?:^|[^a-z0-9])(?:extract(?:ed)?|placeholder)(?:$|[^a-z0-9])",
)


@dataclass(frozen=True)
class Placeholder:
    """A parameter whose value must be derived from an earlier step."""

    parameter: str
    raw: str
    step_order: Optional[int] = None


class PlaceholderGrammar:
    """Compiled, case-insensitive set of placeholder patterns."""

    def __init__(self, patterns: Iterable[str] = DEFAULT_PATTERNS) -> None:
        self.patterns = tuple(patterns)
        self._compiled = [re.compile(p, re.IGNORECASE) for p in self.patterns]

    def match(self, value: Any) -> Optional[Placeholder]:
        """Return a Placeholder (with an empty parameter name) or None."""
        if not isinstance(value, str) or not value.strip():
            return None
        for regex in self._compiled:
            m = regex.search(value)
            if m is None:
                continue
            step = m.groupdict().get("step")
            return Placeholder(
                parameter="",
                raw=value,
                step_order=int(step) if step is not None else None,
            )
        return None

    def is_placeholder(self, value: Any) -> bool:
        return self.match(value) is not None

    def find(self, parameters: dict[str, Any]) -> list[Placeholder]:
        """Return the placeholders among a step's parameters, in key order."""
        found = []
        for name, value in parameters.items():
            ph = self.match(value)
            if ph is not None:
                found.append(Placeholder(name, ph.raw, ph.step_order))
        return found
