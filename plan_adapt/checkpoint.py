"""Meta-reasoning checkpoint run between steps."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .config import EngineConfig
from .errors import ORACLE_TIMEOUT
from .models import CheckpointVerdict, ExecutionResult, Plan
from .oracle import OracleFailure, ReasoningOracle

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckpointResult:
    verdict: CheckpointVerdict
    reasoning: str = ""
    warning: Optional[str] = None


class MetaReasoningCheckpoint:
    """Asks the oracle whether the rest of the plan is still viable.

    The checkpoint is advisory: when the oracle fails, execution continues
    and the failure is reported as a warning.
    """

    def __init__(self, oracle: ReasoningOracle, config: EngineConfig | None = None) -> None:
        self._oracle = oracle
        self._config = config or EngineConfig()

    @property
    def enabled(self) -> bool:
        return self._config.checkpoint_enabled

    async def review(
        self,
        plan: Plan,
        results: list[ExecutionResult],
        goal: str,
        remaining: int,
    ) -> Optional[CheckpointResult]:
        """Return a verdict, or None when the checkpoint does not run."""
        if not self.enabled or remaining <= 0:
            return None
        try:
            reply = await asyncio.wait_for(
                self._oracle.checkpoint(plan, results, goal),
                timeout=self._config.oracle_timeout,
            )
        except asyncio.TimeoutError:
            reply = OracleFailure(ORACLE_TIMEOUT, "checkpoint timed out")

        if isinstance(reply, OracleFailure):
            warning = f"Checkpoint unavailable ({reply.code}): {reply.message}; continuing"
            _log.warning("%s", warning)
            return CheckpointResult(CheckpointVerdict.CONTINUE, warning=warning)

        if reply.verdict is not CheckpointVerdict.CONTINUE:
            _log.warning("Checkpoint verdict %s: %s", reply.verdict.value, reply.reasoning)
        else:
            _log.debug("Checkpoint verdict continue: %s", reply.reasoning)
        return CheckpointResult(reply.verdict, reasoning=reply.reasoning)
