"""Step executor: the per-step state machine.

    pending
      -> resolving-parameters
      -> invoking-tool                     (skipped when resolution fails)
      -> succeeded | classifying-failure
      -> recovering -> invoking-tool       (retry / adapt)
       | awaiting-question                 (operator input needed)
       | failed                            (abort)

Every transition is recorded on the returned :class:`StepOutcome`.  Tool
calls go through :func:`classify_tool_output` once, so the rest of the
machine only ever sees ``Success``, ``ToolError`` or ``AmbiguousArray``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .config import EngineConfig
from .errors import ORACLE_TIMEOUT
from .failures import FailureClassifier, classify_tool_output
from .models import (
    Adaptation,
    AmbiguousArray,
    ExecutionResult,
    FailureCategory,
    FollowUpQuestion,
    Plan,
    PlanUpdate,
    Step,
    StepState,
    StepStatus,
    Success,
    ToolError,
    ToolOutcome,
)
from .oracle import AdaptationProposal, FailureContext, OracleFailure, ReasoningOracle
from .recovery import FailureAttempt, RecoveryAction, RecoveryStrategist
from .resolver import ParameterResolver
from .tools import ToolService

_log = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    result: ExecutionResult
    state: StepState
    plan_update: Optional[PlanUpdate] = None
    adaptation: Optional[Adaptation] = None
    question: Optional[FollowUpQuestion] = None
    aborted: bool = False
    transitions: list[StepState] = field(default_factory=list)


class StepExecutor:
    """Runs one step through resolution, invocation and recovery.

    Args:
        tools: Service that performs the actual tool calls.
        resolver: Parameter resolver for placeholder values.
        oracle: Oracle asked for adaptation proposals.
        config: Retry, backoff and timeout bounds.
        classifier: Failure classifier; defaults to the built-in patterns.
        strategist: Recovery strategist; defaults to ``config.max_retries``.
    """

    def __init__(
        self,
        tools: ToolService,
        resolver: ParameterResolver,
        oracle: ReasoningOracle,
        config: EngineConfig | None = None,
        classifier: FailureClassifier | None = None,
        strategist: RecoveryStrategist | None = None,
    ) -> None:
        self._tools = tools
        self._resolver = resolver
        self._oracle = oracle
        self._config = config or EngineConfig()
        self._classifier = classifier or FailureClassifier()
        self._strategist = strategist or RecoveryStrategist(self._config.max_retries)

    async def execute(
        self,
        step: Step,
        plan: Plan,
        completed: dict[str, ExecutionResult],
        goal: str = "",
        answered: Iterable[FollowUpQuestion] = (),
        hint: str | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> StepOutcome:
        """Execute ``step`` of the working-copy ``plan``.

        ``completed`` holds results of earlier steps by step id.  ``answered``
        lists prior questions (with answers) for this request; ``hint`` and
        ``overrides`` carry operator answers for this step.
        """
        started = time.monotonic()
        answered = list(answered)
        transitions = [StepState.PENDING]

        def move(state: StepState) -> None:
            _log.debug("Step %s: %s -> %s", step.id, transitions[-1].value, state.value)
            transitions.append(state)

        step.status = StepStatus.IN_PROGRESS
        action = step.action
        parameters = dict(step.parameters)
        plan_update: Optional[PlanUpdate] = None
        adaptation: Optional[Adaptation] = None
        retries = 0
        adaptation_attempted = False
        needs_resolution = True
        unresolved_names: list[str] = []

        def attempt(category: FailureCategory) -> FailureAttempt:
            return FailureAttempt(
                retries=retries,
                adaptation_attempted=adaptation_attempted,
                answered=self._strategist.already_answered(answered, step.id, category),
            )

        def finish(
            state: StepState,
            success: bool,
            payload: Any = None,
            error: str | None = None,
            error_type: str | None = None,
            ambiguous: bool = False,
            question: FollowUpQuestion | None = None,
            aborted: bool = False,
        ) -> StepOutcome:
            move(state)
            step.status = StepStatus.COMPLETED if success else StepStatus.FAILED
            result = ExecutionResult(
                step_id=step.id,
                step_order=step.order,
                success=success,
                result=payload,
                error=error,
                error_type=error_type,
                tool_called=action,
                parameters_used=dict(parameters),
                retries=retries,
                duration=(time.monotonic() - started) * 1000,
                adaptation_attempted=adaptation_attempted,
                final_state=state,
                ambiguous=ambiguous,
            )
            return StepOutcome(
                result=result,
                state=state,
                plan_update=plan_update,
                adaptation=adaptation,
                question=question,
                aborted=aborted,
                transitions=transitions,
            )

        while True:
            failed_resolution = False
            if needs_resolution:
                move(StepState.RESOLVING_PARAMETERS)
                resolution = await self._resolver.resolve(
                    step, plan, completed, goal=goal, hint=hint, overrides=overrides
                )
                parameters = dict(resolution.parameters)
                if resolution.plan_update is not None:
                    plan_update = resolution.plan_update
                    step.parameters = dict(resolution.parameters)
                needs_resolution = False
                if not resolution.resolved:
                    failed_resolution = True
                    unresolved_names = [u.parameter for u in resolution.unresolved]
                    move(StepState.CLASSIFYING_FAILURE)
                    category = self._classifier.classify_unresolved(resolution.unresolved[0])
                    message = resolution.message

            if not failed_resolution:
                move(StepState.INVOKING_TOOL)
                outcome = await self._invoke(action, parameters)
                if isinstance(outcome, Success):
                    _log.info("Step %s OK (%s).", step.id, action)
                    return finish(StepState.SUCCEEDED, True, payload=outcome.payload)
                if isinstance(outcome, AmbiguousArray):
                    # Transport success; dependents see it as an error payload.
                    _log.warning(
                        "Step %s (%s) returned only tool errors: %s",
                        step.id, action, outcome.message,
                    )
                    return finish(
                        StepState.SUCCEEDED, True,
                        payload=outcome.entries,
                        error=outcome.message,
                        ambiguous=True,
                    )
                move(StepState.CLASSIFYING_FAILURE)
                category = self._classifier.classify(outcome)
                message = outcome.message

            decision = self._strategist.decide(category, attempt(category))
            _log.info(
                "Step %s failed (%s): %s -> %s", step.id, category.value, message, decision.value
            )

            if decision is RecoveryAction.RETRY:
                move(StepState.RECOVERING)
                retries += 1
                needs_resolution = failed_resolution
                if self._config.retry_backoff > 0:
                    await asyncio.sleep(self._config.retry_backoff * retries)
                continue

            if decision is RecoveryAction.ADAPT:
                move(StepState.RECOVERING)
                adaptation_attempted = True
                proposal = await self._propose(step, category, message, parameters, retries, completed, goal, hint)
                if proposal is not None:
                    adaptation = self._strategist.build_adaptation(
                        step,
                        adapted_action=proposal.action,
                        adapted_parameters=proposal.parameters or parameters,
                        reason=proposal.reason,
                        original_parameters=parameters,
                    )
                    action = proposal.action
                    parameters = dict(proposal.parameters or parameters)
                    continue
                decision = self._strategist.decide(category, attempt(category))

            if decision is RecoveryAction.ASK:
                question = self._strategist.build_question(
                    step, category, message, parameters, attempt(category),
                    action=action, unresolved=unresolved_names if failed_resolution else (),
                )
                _log.warning("Step %s awaiting answer to %s", step.id, question.id)
                return finish(
                    StepState.AWAITING_QUESTION, False,
                    error=message, error_type=category.value, question=question,
                )

            _log.warning("Step %s aborted after %s failure: %s", step.id, category.value, message)
            return finish(
                StepState.FAILED, False,
                error=message, error_type=category.value, aborted=True,
            )

    async def _invoke(self, action: str, parameters: dict) -> ToolOutcome:
        """Make exactly one bounded tool call and classify its output."""
        try:
            raw = await asyncio.wait_for(
                self._tools.invoke(action, parameters),
                timeout=self._config.tool_timeout,
            )
        except asyncio.TimeoutError:
            return ToolError(
                message=f"Tool '{action}' timed out after {self._config.tool_timeout}s",
                timed_out=True,
                exception_type="TimeoutError",
            )
        except Exception as exc:  # noqa: BLE001
            return ToolError(message=str(exc) or repr(exc), exception_type=type(exc).__name__)
        return classify_tool_output(raw)

    async def _propose(
        self,
        step: Step,
        category: FailureCategory,
        message: str,
        parameters: dict,
        retries: int,
        completed: dict[str, ExecutionResult],
        goal: str,
        hint: str | None,
    ) -> Optional[AdaptationProposal]:
        failure = FailureContext(
            category=category,
            message=message,
            parameters=dict(parameters),
            retries=retries,
            goal=goal,
            previous_results={
                sid: r.result for sid, r in completed.items() if r.success
            },
            hint=hint,
        )
        try:
            proposal = await asyncio.wait_for(
                self._oracle.propose_adaptation(step, failure),
                timeout=self._config.oracle_timeout,
            )
        except asyncio.TimeoutError:
            proposal = OracleFailure(ORACLE_TIMEOUT, "adaptation proposal timed out")
        if isinstance(proposal, OracleFailure):
            _log.warning("Step %s: no adaptation (%s: %s)", step.id, proposal.code, proposal.message)
            return None
        if proposal is None:
            _log.info("Step %s: oracle proposed no adaptation", step.id)
        return proposal
