"""Recovery decisions for failed steps."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .config import DEFAULT_MAX_RETRIES
from .models import Adaptation, FailureCategory, FollowUpQuestion, QuestionContext, Step

_log = logging.getLogger(__name__)


class RecoveryAction(str, Enum):
    RETRY = "retry"
    ADAPT = "adapt"
    ASK = "ask"
    ABORT = "abort"


@dataclass(frozen=True)
class FailureAttempt:
    """Bounds consulted by :meth:`RecoveryStrategist.decide`."""

    retries: int = 0
    adaptation_attempted: bool = False
    # A question about the same step and category already has an answer.
    answered: bool = False


_ADAPTABLE = (FailureCategory.INVALID_PARAMETER, FailureCategory.TOOL_NOT_APPLICABLE)

_ASK = {
    FailureCategory.TRANSIENT: (
        "The tool kept failing with a temporary error after {retries} retries. "
        "Should I try again later, use a different source, or skip this step?"
    ),
    FailureCategory.INVALID_PARAMETER: (
        "The tool rejected the parameters {params}. "
        "Which values should be used instead?"
    ),
    FailureCategory.EXTRACTION_IMPOSSIBLE: (
        "I could not determine {params} from the earlier results. "
        "Can you provide the value?"
    ),
    FailureCategory.TOOL_NOT_APPLICABLE: (
        "The tool '{action}' does not apply here. "
        "Which tool or approach should be used instead?"
    ),
    FailureCategory.UNKNOWN: "How would you like me to proceed with this step?",
}

_SUGGESTION = {
    FailureCategory.TRANSIENT: "Retry once the service is available, or skip the step.",
    FailureCategory.INVALID_PARAMETER: "Provide corrected parameter values.",
    FailureCategory.EXTRACTION_IMPOSSIBLE: (
        "Provide the missing value directly, or check the earlier step's inputs."
    ),
    FailureCategory.TOOL_NOT_APPLICABLE: "Name a different tool or revise the plan.",
    FailureCategory.UNKNOWN: "Review the error and advise, or revise the plan.",
}


class RecoveryStrategist:
    """Chooses retry, adapt, ask or abort for a classified failure.

    :meth:`decide` is a pure function of the category and the attempt
    bounds.  Retries apply only to transient failures and adaptation is
    attempted at most once per step.  When neither applies, the operator is
    asked, unless a question about the same failure was already answered,
    in which case the plan aborts.
    """

    def __init__(self, max_retries: int = DEFAULT_MAX_RETRIES) -> None:
        self.max_retries = max_retries

    def decide(self, category: FailureCategory, attempt: FailureAttempt) -> RecoveryAction:
        if category is FailureCategory.TRANSIENT and attempt.retries < self.max_retries:
            return RecoveryAction.RETRY
        if category in _ADAPTABLE and not attempt.adaptation_attempted:
            return RecoveryAction.ADAPT
        return RecoveryAction.ABORT if attempt.answered else RecoveryAction.ASK

    @staticmethod
    def already_answered(
        questions: Iterable[FollowUpQuestion], step_id: str, category: FailureCategory
    ) -> bool:
        return any(
            q.answered and q.failure_signature == (step_id, category.value)
            for q in questions
        )

    def build_question(
        self,
        step: Step,
        category: FailureCategory,
        message: str,
        parameters: dict,
        attempt: FailureAttempt,
        action: str | None = None,
        unresolved: Iterable[str] = (),
    ) -> FollowUpQuestion:
        """Build a question a human can answer without further context."""
        action = action or step.action
        names = tuple(unresolved)
        if not names and category is FailureCategory.INVALID_PARAMETER:
            names = tuple(parameters)
        ask = _ASK[category].format(
            retries=attempt.retries,
            params=", ".join(repr(n) for n in names) or "the parameters",
            action=action,
        )
        tried = f"Called {action} with {json.dumps(parameters, default=str)}"
        if attempt.retries:
            tried += f"; retried {attempt.retries} time(s)"
        if attempt.adaptation_attempted:
            tried += "; an alternative action was attempted"
        if not (attempt.retries or attempt.adaptation_attempted) and unresolved:
            tried = f"Resolved parameters for {action} from earlier results"

        if category in (FailureCategory.EXTRACTION_IMPOSSIBLE, FailureCategory.INVALID_PARAMETER):
            q_category, priority = "missing-data", "high"
        else:
            q_category, priority = "error-recovery", "medium"

        return FollowUpQuestion(
            id=f"question-{uuid.uuid4().hex}",
            question=f"Step {step.order} ({step.description or action}) failed: {message}. {ask}",
            category=q_category,
            priority=priority,
            context=QuestionContext(
                step_id=step.id,
                step_order=step.order,
                what_failed=message,
                what_was_tried=tried,
                current_state=(
                    f"Step {step.order} is waiting for input; steps that depend "
                    "on it are on hold."
                ),
                suggestion=_SUGGESTION[category],
                failure_category=category.value,
                parameters=names,
            ),
        )

    @staticmethod
    def build_adaptation(
        step: Step,
        adapted_action: str,
        adapted_parameters: dict,
        reason: str,
        original_parameters: dict,
    ) -> Adaptation:
        _log.info(
            "Step %s adapted: %s -> %s (%s)", step.id, step.action, adapted_action, reason
        )
        return Adaptation(
            step_id=step.id,
            original_action=step.action,
            adapted_action=adapted_action,
            reason=reason,
            original_parameters=dict(original_parameters),
            adapted_parameters=dict(adapted_parameters),
        )
