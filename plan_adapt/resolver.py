"""Parameter resolution for steps that reference earlier results.

A step parameter such as ``{"facility_id": "EXTRACT_FROM_STEP_1"}`` cannot be
sent to a tool literally.  The resolver finds the referenced step's result
and asks the reasoning oracle for the concrete value.

Resolution never guesses.  When a value cannot be produced the parameter is
reported as :class:`Unresolved` with a ``kind`` the failure classifier maps
to a category:

  error-payload      referenced result is an array of tool error entries
  no-data            referenced result is empty, or the oracle returned null
  missing-reference  no step matches the reference, or it has not run
  reference-failed   the referenced step did not succeed
  low-confidence     oracle confidence below the configured minimum
  oracle-timeout     oracle did not answer in time
  oracle-error       oracle failed or returned an unusable reply

The first four are decided locally, without an oracle call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .config import DEFAULT_MIN_EXTRACTION_CONFIDENCE, DEFAULT_ORACLE_TIMEOUT
from .errors import ORACLE_ERROR, ORACLE_TIMEOUT
from .failures import is_error_array
from .models import ExecutionResult, Plan, PlanUpdate, Step
from .oracle import OracleFailure, ParameterIntent, ReasoningOracle
from .placeholders import Placeholder, PlaceholderGrammar

_log = logging.getLogger(__name__)

OPERATOR_ANSWER = "operator answer"

_NULL_VALUES = ("", "null", "none")


@dataclass(frozen=True)
class Unresolved:
    parameter: str
    kind: str
    reason: str


@dataclass(frozen=True)
class Resolution:
    """Parameters after resolution, plus the audit record of what changed."""

    parameters: dict
    plan_update: Optional[PlanUpdate] = None
    unresolved: list[Unresolved] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return not self.unresolved

    @property
    def message(self) -> str:
        return "; ".join(f"{u.parameter}: {u.reason}" for u in self.unresolved)


class ParameterResolver:
    """Substitutes placeholder parameters with values extracted by the oracle.

    Args:
        oracle: Reasoning oracle used for semantic extraction.
        grammar: Placeholder patterns; defaults to the built-in grammar.
        min_confidence: Extractions below this confidence are rejected.
        oracle_timeout: Seconds allowed per extraction call.
    """

    def __init__(
        self,
        oracle: ReasoningOracle,
        grammar: PlaceholderGrammar | None = None,
        min_confidence: float = DEFAULT_MIN_EXTRACTION_CONFIDENCE,
        oracle_timeout: float | None = DEFAULT_ORACLE_TIMEOUT,
    ) -> None:
        self._oracle = oracle
        self.grammar = grammar or PlaceholderGrammar()
        self._min_confidence = min_confidence
        self._oracle_timeout = oracle_timeout

    async def resolve(
        self,
        step: Step,
        plan: Plan,
        completed: dict[str, ExecutionResult],
        goal: str = "",
        hint: str | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> Resolution:
        """Resolve the step's placeholders against completed step results.

        ``overrides`` maps parameter names to operator-supplied values; they
        replace the parameter before extraction.  Names the step does not
        declare are ignored.
        """
        original = dict(step.parameters)
        updated = dict(original)
        reasons: list[str] = []

        for name, value in (overrides or {}).items():
            if name in updated and updated[name] != value:
                updated[name] = value
                reasons.append(OPERATOR_ANSWER)

        unresolved: list[Unresolved] = []
        for ph in self.grammar.find(updated):
            value, failure, reasoning = await self._resolve_one(
                ph, step, plan, completed, goal, hint
            )
            if failure is not None:
                _log.info(
                    "Step %s: parameter %r unresolved (%s): %s",
                    step.id, ph.parameter, failure.kind, failure.reason,
                )
                unresolved.append(failure)
                continue
            updated[ph.parameter] = value
            if reasoning:
                reasons.append(reasoning)

        plan_update = None
        if updated != original:
            plan_update = PlanUpdate(
                step_id=step.id,
                step_order=step.order,
                original_parameters=original,
                updated_parameters=dict(updated),
                reason="; ".join(dict.fromkeys(reasons)) or "resolved placeholders",
            )
        return Resolution(parameters=updated, plan_update=plan_update, unresolved=unresolved)

    async def _resolve_one(
        self,
        ph: Placeholder,
        step: Step,
        plan: Plan,
        completed: dict[str, ExecutionResult],
        goal: str,
        hint: str | None,
    ) -> tuple[Any, Optional[Unresolved], str]:
        ref = self._referenced_step(ph, step, plan)
        if ref is None:
            return None, Unresolved(
                ph.parameter, "missing-reference",
                f"placeholder {ph.raw!r} does not reference a step of plan {plan.id}",
            ), ""

        prior = completed.get(ref.id)
        if prior is None:
            return None, Unresolved(
                ph.parameter, "missing-reference",
                f"step {ref.order} has no result yet",
            ), ""
        if not prior.success:
            return None, Unresolved(
                ph.parameter, "reference-failed",
                f"step {ref.order} did not succeed: {prior.error}",
            ), ""

        raw = prior.result
        if prior.ambiguous or is_error_array(raw):
            return None, Unresolved(
                ph.parameter, "error-payload",
                f"step {ref.order} returned only tool errors: {_first(raw)}",
            ), ""
        if raw is None or raw == [] or raw == {} or (isinstance(raw, str) and not raw.strip()):
            return None, Unresolved(
                ph.parameter, "no-data", f"step {ref.order} returned no data"
            ), ""

        intent = ParameterIntent(
            parameter=ph.parameter,
            placeholder=ph.raw,
            action=step.action,
            step_description=step.description,
            goal=goal or plan.goal,
            expected_outcome=step.expected_outcome,
            hint=hint,
        )
        try:
            reply = await asyncio.wait_for(
                self._oracle.extract_parameter(raw, intent),
                timeout=self._oracle_timeout,
            )
        except asyncio.TimeoutError:
            reply = OracleFailure(ORACLE_TIMEOUT, "extraction timed out")

        if isinstance(reply, OracleFailure):
            kind = ORACLE_TIMEOUT if reply.timed_out else ORACLE_ERROR
            return None, Unresolved(ph.parameter, kind, reply.message), ""
        if reply.value is None or (
            isinstance(reply.value, str) and reply.value.strip().lower() in _NULL_VALUES
        ):
            return None, Unresolved(
                ph.parameter, "no-data",
                f"no value for {ph.parameter!r} in step {ref.order} result"
                + (f" ({reply.reasoning})" if reply.reasoning else ""),
            ), ""
        if reply.confidence < self._min_confidence:
            return None, Unresolved(
                ph.parameter, "low-confidence",
                f"extraction confidence {reply.confidence:.2f} below "
                f"{self._min_confidence:.2f}",
            ), ""
        return reply.value, None, reply.reasoning

    @staticmethod
    def _referenced_step(ph: Placeholder, step: Step, plan: Plan) -> Optional[Step]:
        if ph.step_order is not None:
            ref = plan.step_at(ph.step_order)
            return ref if ref is not None and ref.id != step.id else None
        deps = [plan.get_step(d) for d in plan.all_dependencies(step)]
        deps = [d for d in deps if d is not None]
        return max(deps, key=lambda d: d.order) if deps else None


def _first(raw: Any) -> str:
    if isinstance(raw, list) and raw:
        return str(raw[0])
    return str(raw)
