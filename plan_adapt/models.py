"""Data models for the plan execution and adaptation engine."""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from .errors import MalformedPlanError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class StepState(str, Enum):
    """States of the per-step execution machine."""

    PENDING = "pending"
    RESOLVING_PARAMETERS = "resolving-parameters"
    INVOKING_TOOL = "invoking-tool"
    SUCCEEDED = "succeeded"
    CLASSIFYING_FAILURE = "classifying-failure"
    RECOVERING = "recovering"
    AWAITING_QUESTION = "awaiting-question"
    FAILED = "failed"
    # Recorded by the engine for steps that never entered the machine.
    NOT_EXECUTED = "not-executed"


class FailureCategory(str, Enum):
    TRANSIENT = "transient"
    INVALID_PARAMETER = "invalid-parameter"
    EXTRACTION_IMPOSSIBLE = "extraction-impossible"
    TOOL_NOT_APPLICABLE = "tool-not-applicable"
    UNKNOWN = "unknown"


class RequestStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    AWAITING_FEEDBACK = "awaiting-feedback"


class CheckpointVerdict(str, Enum):
    CONTINUE = "continue"
    REPLAN_RECOMMENDED = "replan-recommended"
    ABORT_RECOMMENDED = "abort-recommended"


class Recommendation(str, Enum):
    EXECUTE = "execute"
    REVIEW = "review"
    RETHINK = "rethink"
    ESCALATE = "escalate"
    APPROVE_WITH_DYNAMIC_FIX = "approve-with-dynamic-fix"


# ── plan ──────────────────────────────────────────────────────────────────────


@dataclass
class Step:
    """A single step in an execution plan."""

    id: str
    order: int
    description: str
    action: str
    parameters: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    expected_outcome: str = ""
    status: StepStatus = StepStatus.PENDING
    required: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "Step":
        return cls(
            id=str(data["id"]),
            order=int(data["order"]),
            description=data.get("description", ""),
            action=data.get("action", ""),
            parameters=dict(data.get("parameters") or {}),
            dependencies=[str(d) for d in data.get("dependencies") or []],
            expected_outcome=data.get("expected_outcome", ""),
            status=StepStatus(data.get("status", StepStatus.PENDING.value)),
            required=bool(data.get("required", True)),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order": self.order,
            "description": self.description,
            "action": self.action,
            "parameters": dict(self.parameters),
            "dependencies": list(self.dependencies),
            "expected_outcome": self.expected_outcome,
            "status": self.status.value,
            "required": self.required,
        }


@dataclass
class Plan:
    """An execution plan composed of ordered steps.

    Plans are never mutated after creation; the engine runs against
    :meth:`working_copy` and a replan produces a new Plan with a higher
    ``plan_version``.
    """

    id: str
    goal: str
    steps: list[Step]
    plan_version: int = 1
    confidence: float = 0.0
    estimated_complexity: float = 0.0
    # Extra edges beyond each step's own dependency list: step id -> step ids.
    dependencies: dict[str, list[str]] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def get_step(self, step_id: str) -> Optional[Step]:
        return next((s for s in self.steps if s.id == step_id), None)

    def step_at(self, order: int) -> Optional[Step]:
        return next((s for s in self.steps if s.order == order), None)

    def all_dependencies(self, step: Step) -> list[str]:
        """Return the step's own dependencies plus any plan-level edges."""
        deps = list(step.dependencies)
        for dep in self.dependencies.get(step.id, []):
            if dep not in deps:
                deps.append(dep)
        return deps

    def validate(self) -> None:
        """Raise MalformedPlanError if the plan cannot be executed."""
        if not self.id:
            raise MalformedPlanError("Plan has no id")
        ids = [s.id for s in self.steps]
        if len(set(ids)) != len(ids):
            raise MalformedPlanError(f"Plan {self.id} has duplicate step ids: {ids}")
        orders = [s.order for s in self.steps]
        if len(set(orders)) != len(orders):
            raise MalformedPlanError(
                f"Plan {self.id} has duplicate step orders: {orders}"
            )
        for step in self.steps:
            for dep in self.all_dependencies(step):
                if dep not in ids:
                    raise MalformedPlanError(
                        f"Step {step.id} depends on unknown step {dep!r}",
                        step_id=step.id,
                    )
                if dep == step.id:
                    raise MalformedPlanError(
                        f"Step {step.id} depends on itself", step_id=step.id
                    )
        self.resolved_order()

    def resolved_order(self) -> list[Step]:
        """Return steps in topological order (dependencies before dependents).

        Independent steps keep their ``order``.  Raises MalformedPlanError on a
        dependency cycle.
        """
        seen: set[str] = set()
        visiting: set[str] = set()
        ordered: list[Step] = []

        def visit(step_id: str) -> None:
            if step_id in seen:
                return
            step = self.get_step(step_id)
            if step is None:
                return
            if step_id in visiting:
                raise MalformedPlanError(
                    f"Dependency cycle through step {step_id}", step_id=step_id
                )
            visiting.add(step_id)
            deps = sorted(
                self.all_dependencies(step),
                key=lambda d: self.get_step(d).order if self.get_step(d) else 0,
            )
            for dep in deps:
                visit(dep)
            visiting.discard(step_id)
            seen.add(step_id)
            ordered.append(step)

        for step in sorted(self.steps, key=lambda s: s.order):
            visit(step.id)
        return ordered

    def working_copy(self) -> "Plan":
        """Return a deep copy whose steps may be mutated by one execution run."""
        return replace(self, steps=[copy.deepcopy(s) for s in self.steps])

    @classmethod
    def from_dict(cls, data: dict) -> "Plan":
        steps = [Step.from_dict(s) for s in data.get("steps", [])]
        return cls(
            id=str(data.get("id") or f"plan-{uuid.uuid4().hex[:12]}"),
            goal=data.get("goal", ""),
            steps=steps,
            plan_version=int(data.get("plan_version", 1)),
            confidence=float(data.get("confidence", 0.0)),
            estimated_complexity=float(data.get("estimated_complexity", 0.0)),
            dependencies={
                str(k): [str(d) for d in v]
                for k, v in (data.get("dependencies") or {}).items()
            },
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "goal": self.goal,
            "plan_version": self.plan_version,
            "confidence": self.confidence,
            "estimated_complexity": self.estimated_complexity,
            "dependencies": {k: list(v) for k, v in self.dependencies.items()},
            "steps": [s.to_dict() for s in self.steps],
        }


# ── tool outcomes ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Success:
    payload: Any


@dataclass(frozen=True)
class ToolError:
    message: str
    timed_out: bool = False
    exception_type: Optional[str] = None


@dataclass(frozen=True)
class AmbiguousArray:
    """A transport-level success whose payload is an array of error entries."""

    entries: list

    @property
    def message(self) -> str:
        return str(self.entries[0]) if self.entries else ""


ToolOutcome = Union[Success, ToolError, AmbiguousArray]


# ── execution records ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ExecutionResult:
    """Result of executing (or skipping) a single plan step."""

    step_id: str
    step_order: int
    success: bool
    result: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    tool_called: str = ""
    parameters_used: dict = field(default_factory=dict)
    retries: int = 0
    duration: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)
    adaptation_attempted: bool = False
    final_state: StepState = StepState.SUCCEEDED
    ambiguous: bool = False
    reused: bool = False

    @property
    def executed(self) -> bool:
        return self.final_state is not StepState.NOT_EXECUTED


@dataclass(frozen=True)
class Adaptation:
    step_id: str
    original_action: str
    adapted_action: str
    reason: str
    original_parameters: dict = field(default_factory=dict)
    adapted_parameters: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class PlanUpdate:
    step_id: str
    step_order: int
    original_parameters: dict
    updated_parameters: dict
    reason: str
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class QuestionContext:
    step_id: str
    step_order: int
    what_failed: str
    what_was_tried: str = ""
    current_state: str = ""
    suggestion: str = ""
    failure_category: Optional[str] = None
    parameters: tuple[str, ...] = ()


@dataclass(frozen=True)
class FollowUpQuestion:
    id: str
    question: str
    category: str
    priority: str
    context: QuestionContext
    user_answer: Optional[str] = None

    @property
    def answered(self) -> bool:
        return self.user_answer is not None

    def with_answer(self, answer: str) -> "FollowUpQuestion":
        return replace(self, user_answer=answer)

    @property
    def failure_signature(self) -> tuple[str, Optional[str]]:
        return (self.context.step_id, self.context.failure_category)


@dataclass(frozen=True)
class RequestContext:
    """Single-writer request record; updates return new copies."""

    request_id: str
    user_query: str = ""
    agent_chain: tuple[str, ...] = ()
    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def new(cls, user_query: str = "") -> "RequestContext":
        return cls(request_id=str(uuid.uuid4()), user_query=user_query)

    def with_agent(self, agent_name: str) -> "RequestContext":
        if agent_name in self.agent_chain:
            return self
        return replace(self, agent_chain=(*self.agent_chain, agent_name))

    def with_status(self, status: RequestStatus) -> "RequestContext":
        return replace(self, status=status)


@dataclass(frozen=True)
class PlanExecutionResult:
    """Outcome of one execution attempt of one plan version."""

    request_id: str
    plan_id: str
    plan_version: int
    steps: list[ExecutionResult]
    overall_success: bool
    requires_user_feedback: bool
    status: ExecutionStatus
    execution_version: int = 0
    total_duration: float = 0.0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    adaptations: list[Adaptation] = field(default_factory=list)
    plan_updates: list[PlanUpdate] = field(default_factory=list)
    questions_asked: list[FollowUpQuestion] = field(default_factory=list)
    checkpoint_verdict: Optional[CheckpointVerdict] = None
    replan_recommended: bool = False
    aborted: bool = False
    critique_version: Optional[int] = None
    critique_recommendation: Optional[str] = None
    request_context: Optional[RequestContext] = None
    user_feedback: dict[str, str] = field(default_factory=dict)

    @property
    def partial_results(self) -> dict[str, Any]:
        return {r.step_id: r.result for r in self.steps if r.success}

    def result_for(self, step_id: str) -> Optional[ExecutionResult]:
        return next((r for r in self.steps if r.step_id == step_id), None)

    @property
    def pending_questions(self) -> list[FollowUpQuestion]:
        return [q for q in self.questions_asked if not q.answered]


# ── critique & confidence ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class CritiqueIssue:
    severity: str
    category: str
    description: str
    suggestion: str = ""


@dataclass(frozen=True)
class Critique:
    plan_id: str
    overall_score: float
    feasibility_score: float
    correctness_score: float
    efficiency_score: float
    safety_score: float
    recommendation: Recommendation
    issues: list[CritiqueIssue] = field(default_factory=list)
    follow_up_questions: list[str] = field(default_factory=list)
    strengths: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    rationale: str = ""
    request_id: str = ""
    critique_version: int = 0

    @classmethod
    def from_dict(cls, data: dict, plan_id: str = "", request_id: str = "") -> "Critique":
        """Validate a critique payload (e.g. parsed LLM output).

        Raises:
            pydantic.ValidationError: scores outside [0, 1], unknown
                recommendation, or wrongly typed fields.
        """
        m = _CritiqueModel.model_validate(data)
        return cls(
            plan_id=m.plan_id or plan_id,
            overall_score=m.overall_score,
            feasibility_score=m.feasibility_score,
            correctness_score=m.correctness_score,
            efficiency_score=m.efficiency_score,
            safety_score=m.safety_score,
            recommendation=m.recommendation,
            issues=[
                CritiqueIssue(i.severity, i.category, i.description, i.suggestion)
                for i in m.issues
            ],
            follow_up_questions=list(m.follow_up_questions),
            strengths=list(m.strengths),
            suggestions=list(m.suggestions),
            rationale=m.rationale,
            request_id=m.request_id or request_id,
        )


class _IssueModel(BaseModel):
    severity: str = "medium"
    category: str = "general"
    description: str
    suggestion: str = ""


class _CritiqueModel(BaseModel):
    plan_id: str = ""
    request_id: str = ""
    overall_score: float = Field(ge=0.0, le=1.0)
    feasibility_score: float = Field(default=0.0, ge=0.0, le=1.0)
    correctness_score: float = Field(default=0.0, ge=0.0, le=1.0)
    efficiency_score: float = Field(default=0.0, ge=0.0, le=1.0)
    safety_score: float = Field(default=0.0, ge=0.0, le=1.0)
    recommendation: Recommendation
    issues: list[_IssueModel] = Field(default_factory=list)
    follow_up_questions: list[str] = Field(default_factory=list)
    strengths: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    rationale: str = ""


@dataclass(frozen=True)
class ConfidenceScore:
    agent_name: str
    score: float
    reasoning: str = ""
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ConfidenceDecision:
    overall_confidence: float
    simple_mean: float
    decision: str
    thresholds: dict[str, float]
    weights: dict[str, float]
    scores: list[ConfidenceScore]
    primary_driver: Optional[str] = None
    concerns: list[str] = field(default_factory=list)
    reasoning: str = ""


@dataclass
class RunOutcome:
    """Final result of a question run end to end."""

    question: str
    answer: str
    plan: Plan
    execution: PlanExecutionResult
    request_context: RequestContext
