"""Engine configuration.

Values default to the constants below and can be overridden through
environment variables (``PLAN_ADAPT_*``), which the CLI loads from ``.env``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from .placeholders import DEFAULT_PATTERNS

DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_BACKOFF = 1.0  # seconds, multiplied by the retry number
DEFAULT_TOOL_TIMEOUT = 60.0
DEFAULT_ORACLE_TIMEOUT = 120.0
DEFAULT_MIN_EXTRACTION_CONFIDENCE = 0.5


@dataclass(frozen=True)
class EngineConfig:
    """Bounds and toggles for one engine instance."""

    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff: float = DEFAULT_RETRY_BACKOFF
    tool_timeout: float = DEFAULT_TOOL_TIMEOUT
    oracle_timeout: float = DEFAULT_ORACLE_TIMEOUT
    min_extraction_confidence: float = DEFAULT_MIN_EXTRACTION_CONFIDENCE
    checkpoint_enabled: bool = True
    placeholder_patterns: tuple[str, ...] = field(default=DEFAULT_PATTERNS)

    @classmethod
    def from_env(cls, environ: dict | None = None) -> "EngineConfig":
        """Build a config from ``PLAN_ADAPT_*`` variables.

        Recognised variables:
            PLAN_ADAPT_MAX_RETRIES
            PLAN_ADAPT_RETRY_BACKOFF
            PLAN_ADAPT_TOOL_TIMEOUT
            PLAN_ADAPT_ORACLE_TIMEOUT
            PLAN_ADAPT_MIN_EXTRACTION_CONFIDENCE
            PLAN_ADAPT_CHECKPOINT      ("0"/"false"/"no" disables)
            PLAN_ADAPT_PLACEHOLDER_PATTERNS  (regexes separated by "||")
        """
        env = os.environ if environ is None else environ

        def _get(name: str, cast, default):
            raw = env.get(f"PLAN_ADAPT_{name}")
            if raw is None or raw == "":
                return default
            try:
                return cast(raw)
            except ValueError as exc:
                raise ValueError(f"invalid PLAN_ADAPT_{name}={raw!r}: {exc}") from exc

        patterns_raw = env.get("PLAN_ADAPT_PLACEHOLDER_PATTERNS")
        patterns = (
            tuple(p for p in patterns_raw.split("||") if p)
            if patterns_raw
            else DEFAULT_PATTERNS
        )
        checkpoint_raw = env.get("PLAN_ADAPT_CHECKPOINT", "1").strip().lower()
        return cls(
            max_retries=_get("MAX_RETRIES", int, DEFAULT_MAX_RETRIES),
            retry_backoff=_get("RETRY_BACKOFF", float, DEFAULT_RETRY_BACKOFF),
            tool_timeout=_get("TOOL_TIMEOUT", float, DEFAULT_TOOL_TIMEOUT),
            oracle_timeout=_get("ORACLE_TIMEOUT", float, DEFAULT_ORACLE_TIMEOUT),
            min_extraction_confidence=_get(
                "MIN_EXTRACTION_CONFIDENCE", float, DEFAULT_MIN_EXTRACTION_CONFIDENCE
            ),
            checkpoint_enabled=checkpoint_raw not in ("0", "false", "no", "off"),
            placeholder_patterns=patterns,
        )
