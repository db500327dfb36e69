"""Plan Execution Engine.

Drives a plan's steps, in dependency order, through the step executor and
folds the outcomes into one :class:`PlanExecutionResult` per attempt.  Each
attempt is committed to the versioning ledger as a new execution version;
resuming with operator answers produces the next version and never calls a
tool again for a step that already succeeded.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Optional

from .checkpoint import MetaReasoningCheckpoint
from .config import EngineConfig
from .errors import DEPENDENCY_UNSATISFIED, NothingToResumeError, UnknownQuestionError
from .executor import StepExecutor
from .failures import FailureClassifier
from .ledger import EXECUTION, VersioningLedger
from .models import (
    Adaptation,
    CheckpointVerdict,
    Critique,
    ExecutionResult,
    ExecutionStatus,
    FollowUpQuestion,
    Plan,
    PlanExecutionResult,
    PlanUpdate,
    Recommendation,
    RequestContext,
    RequestStatus,
    Step,
    StepState,
)
from .oracle import ReasoningOracle
from .placeholders import PlaceholderGrammar
from .recovery import RecoveryStrategist
from .resolver import OPERATOR_ANSWER, ParameterResolver
from .tools import ToolService

_log = logging.getLogger(__name__)

AGENT_NAME = "executor-agent"
EXECUTION_STOPPED = "execution-stopped"

_CAUTION = (Recommendation.RETHINK, Recommendation.ESCALATE)


class PlanExecutionEngine:
    """Executes plans against a tool service with oracle-backed recovery.

    Args:
        tools: Tool Execution Service.
        oracle: Reasoning oracle for extraction, adaptation and checkpoints.
        ledger: Versioning ledger that receives every execution result.
        config: Engine bounds; defaults to :class:`EngineConfig`.
    """

    def __init__(
        self,
        tools: ToolService,
        oracle: ReasoningOracle,
        ledger: VersioningLedger | None = None,
        config: EngineConfig | None = None,
        classifier: FailureClassifier | None = None,
        strategist: RecoveryStrategist | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.ledger = ledger or VersioningLedger()
        resolver = ParameterResolver(
            oracle,
            PlaceholderGrammar(self.config.placeholder_patterns),
            min_confidence=self.config.min_extraction_confidence,
            oracle_timeout=self.config.oracle_timeout,
        )
        self._executor = StepExecutor(
            tools, resolver, oracle, self.config, classifier, strategist
        )
        self._checkpoint = MetaReasoningCheckpoint(oracle, self.config)

    async def execute(
        self,
        plan: Plan,
        request_context: RequestContext,
        prior_critique: Critique | None = None,
        user_feedback: dict[str, str] | None = None,
    ) -> PlanExecutionResult:
        """Run (or resume) one execution attempt of ``plan``.

        Args:
            plan: Plan to execute; never mutated.
            request_context: Current request record.
            prior_critique: Critique of this plan, recorded on the result.
            user_feedback: Question id -> answer.  When given, the latest
                           execution of this plan is resumed.

        Raises:
            MalformedPlanError: the plan fails validation.
            NothingToResumeError: feedback given but no prior execution.
            UnknownQuestionError: feedback names a question never asked.
        """
        plan.validate()
        started = time.monotonic()
        request_id = request_context.request_id
        context = request_context.with_agent(AGENT_NAME).with_status(RequestStatus.IN_PROGRESS)

        prior: Optional[PlanExecutionResult] = None
        carried: list[FollowUpQuestion] = []
        feedback: dict[str, str] = {}
        overrides: dict[str, dict] = {}
        hints: dict[str, str] = {}
        if user_feedback:
            prior = await self._prior_execution(request_id, plan)
            carried = _apply_answers(prior.questions_asked, user_feedback)
            feedback = {**prior.user_feedback, **user_feedback}
            overrides, hints = _operator_inputs(carried, user_feedback)
            _log.info(
                "Resuming plan %s (execution v%d) with %d answer(s)",
                plan.id, prior.execution_version, len(user_feedback),
            )

        work = plan.working_copy()
        ordered = work.resolved_order()
        total = len(ordered)

        completed: dict[str, ExecutionResult] = {}
        results: list[ExecutionResult] = []
        adaptations: list[Adaptation] = []
        plan_updates: list[PlanUpdate] = []
        new_questions: list[FollowUpQuestion] = []
        errors: list[str] = []
        warnings: list[str] = []
        verdict: Optional[CheckpointVerdict] = None
        stop_reason: Optional[str] = None
        aborted = replan = False

        if prior_critique is not None and prior_critique.recommendation in _CAUTION:
            msg = (
                f"Executing plan {plan.id} despite critique recommendation "
                f"'{prior_critique.recommendation.value}'"
            )
            _log.warning("%s", msg)
            warnings.append(msg)

        for index, step in enumerate(ordered):
            if stop_reason is not None:
                results.append(_not_executed(step, stop_reason, EXECUTION_STOPPED))
                continue

            reused = prior.result_for(step.id) if prior is not None else None
            if reused is not None and reused.success:
                _log.info("Step %d/%d [%s]: reusing prior result", step.order, total, step.action)
                result = replace(reused, reused=True)
                completed[step.id] = result
                results.append(result)
                continue

            unmet = [
                d for d in work.all_dependencies(step)
                if d not in completed or not completed[d].success
            ]
            if unmet:
                msg = f"Step {step.order} skipped: dependencies {unmet} not satisfied"
                _log.warning("%s", msg)
                errors.append(msg)
                result = _not_executed(step, msg, DEPENDENCY_UNSATISFIED)
                completed[step.id] = result
                results.append(result)
                continue

            _log.info("Step %d/%d [%s]: %s", step.order, total, step.action, step.description)
            outcome = await self._executor.execute(
                step,
                work,
                completed,
                goal=work.goal,
                answered=carried,
                hint=hints.get(step.id),
                overrides=overrides.get(step.id),
            )
            result = outcome.result
            completed[step.id] = result
            results.append(result)
            if outcome.plan_update is not None:
                plan_updates.append(outcome.plan_update)
            if outcome.adaptation is not None:
                adaptations.append(outcome.adaptation)
            if outcome.question is not None:
                new_questions.append(outcome.question)
            if result.ambiguous:
                warnings.append(
                    f"Step {step.order} ({result.tool_called}) returned only tool errors: {result.error}"
                )
            elif not result.success:
                errors.append(f"Step {step.order} ({result.tool_called}): {result.error}")

            if outcome.aborted:
                aborted = True
                stop_reason = f"not executed: plan aborted at step {step.order}"
                continue

            review = await self._checkpoint.review(work, results, work.goal, total - index - 1)
            if review is None:
                continue
            verdict = review.verdict
            if review.warning:
                warnings.append(review.warning)
            if verdict is CheckpointVerdict.ABORT_RECOMMENDED:
                aborted = True
                errors.append(f"Checkpoint recommended abort after step {step.order}: {review.reasoning}")
                stop_reason = f"not executed: checkpoint recommended abort after step {step.order}"
            elif verdict is CheckpointVerdict.REPLAN_RECOMMENDED:
                replan = True
                warnings.append(f"Checkpoint recommended replan after step {step.order}: {review.reasoning}")
                stop_reason = f"not executed: replan recommended after step {step.order}"

        results.sort(key=lambda r: r.step_order)
        pending = [q for q in new_questions if not q.answered]
        required_ok = all(
            r.success and (not r.ambiguous or _recovered_downstream(work, r.step_id, results))
            for r in results
            if work.get_step(r.step_id).required
        )
        overall_success = required_ok and not aborted and not replan and not pending

        if aborted:
            status = ExecutionStatus.FAILED
        elif pending:
            status = ExecutionStatus.AWAITING_FEEDBACK
        elif overall_success:
            status = ExecutionStatus.COMPLETED
        else:
            status = ExecutionStatus.FAILED

        if status is ExecutionStatus.AWAITING_FEEDBACK or (replan and not aborted):
            context = context.with_status(RequestStatus.IN_PROGRESS)
        elif overall_success:
            context = context.with_status(RequestStatus.COMPLETED)
        else:
            context = context.with_status(RequestStatus.FAILED)

        draft = PlanExecutionResult(
            request_id=request_id,
            plan_id=plan.id,
            plan_version=plan.plan_version,
            steps=results,
            overall_success=overall_success,
            requires_user_feedback=bool(pending),
            status=status,
            total_duration=(time.monotonic() - started) * 1000,
            errors=errors,
            warnings=warnings,
            adaptations=adaptations,
            plan_updates=plan_updates,
            questions_asked=carried + new_questions,
            checkpoint_verdict=verdict,
            replan_recommended=replan,
            aborted=aborted,
            critique_version=prior_critique.critique_version if prior_critique else None,
            critique_recommendation=(
                prior_critique.recommendation.value if prior_critique else None
            ),
            request_context=context,
            user_feedback=feedback,
        )
        committed = await self.ledger.commit(
            request_id, EXECUTION, lambda v: replace(draft, execution_version=v)
        )
        _log.info(
            "Plan %s execution v%d: %s (%d step(s), %d question(s))",
            plan.id, committed.execution_version, status.value, len(results), len(pending),
        )
        return committed

    async def _prior_execution(self, request_id: str, plan: Plan) -> PlanExecutionResult:
        history = await self.ledger.all_versions(request_id, EXECUTION)
        for candidate in reversed(history):
            if candidate.plan_id == plan.id:
                return candidate
        raise NothingToResumeError(
            f"No prior execution of plan {plan.id} for request {request_id}",
            request_id=request_id,
            plan_id=plan.id,
        )


def _not_executed(step: Step, reason: str, error_type: str) -> ExecutionResult:
    return ExecutionResult(
        step_id=step.id,
        step_order=step.order,
        success=False,
        error=reason,
        error_type=error_type,
        tool_called=step.action,
        parameters_used=dict(step.parameters),
        final_state=StepState.NOT_EXECUTED,
    )


def _apply_answers(
    questions: list[FollowUpQuestion], answers: dict[str, str]
) -> list[FollowUpQuestion]:
    known = {q.id for q in questions}
    unknown = [qid for qid in answers if qid not in known]
    if unknown:
        raise UnknownQuestionError(
            f"Unknown question id(s): {unknown}", question_ids=unknown
        )
    return [q.with_answer(answers[q.id]) if q.id in answers else q for q in questions]


def _operator_inputs(
    questions: list[FollowUpQuestion], answers: dict[str, str]
) -> tuple[dict[str, dict], dict[str, str]]:
    """Split fresh answers into parameter overrides and free-text hints.

    An answer to a question about exactly one parameter becomes that
    parameter's value; any other answer is handed to the oracle as a hint.
    """
    overrides: dict[str, dict] = {}
    hints: dict[str, str] = {}
    for q in questions:
        if q.id not in answers:
            continue
        step_id = q.context.step_id
        if len(q.context.parameters) == 1:
            overrides.setdefault(step_id, {})[q.context.parameters[0]] = answers[q.id]
            _log.info(
                "Step %s: %s for parameter %r", step_id, OPERATOR_ANSWER, q.context.parameters[0]
            )
        else:
            hints[step_id] = "; ".join(filter(None, [hints.get(step_id), answers[q.id]]))
    return overrides, hints


def _recovered_downstream(plan: Plan, step_id: str, results: list[ExecutionResult]) -> bool:
    """True when an ambiguous step's dependents all succeeded anyway.

    Dependents of an error-shaped result only succeed through an operator
    answer or an adaptation.  A step nothing depends on stays a failure.
    """
    by_id = {r.step_id: r for r in results}
    dependents = [s.id for s in plan.steps if step_id in plan.all_dependencies(s)]
    return bool(dependents) and all(
        d in by_id
        and by_id[d].success
        and (not by_id[d].ambiguous or _recovered_downstream(plan, d, results))
        for d in dependents
    )
