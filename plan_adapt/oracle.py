"""Reasoning Oracle boundary and its LLM-backed implementation.

The engine asks the oracle three kinds of questions:

  - extract_parameter:  derive a placeholder's value from a prior step result
  - propose_adaptation: suggest another action/parameters for a failed step
  - checkpoint:         judge whether the remaining plan is still viable

Oracle-side problems (timeouts, transport errors, unparseable replies) are
returned as :class:`OracleFailure` values instead of being raised, so callers
can classify them like any other failure.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from .config import DEFAULT_ORACLE_TIMEOUT
from .errors import ORACLE_ERROR, ORACLE_TIMEOUT
from .llm import LLMBackend
from .models import CheckpointVerdict, ExecutionResult, FailureCategory, Plan, Step

_log = logging.getLogger(__name__)

_RESULT_PREVIEW = 3000


@dataclass(frozen=True)
class ParameterIntent:
    """What a placeholder parameter is supposed to mean."""

    parameter: str
    placeholder: str
    action: str
    step_description: str
    goal: str = ""
    expected_outcome: str = ""
    hint: Optional[str] = None


@dataclass(frozen=True)
class Extraction:
    value: Any
    confidence: float
    reasoning: str = ""


@dataclass(frozen=True)
class FailureContext:
    """Everything the oracle sees when asked to adapt a failed step."""

    category: FailureCategory
    message: str
    parameters: dict
    retries: int
    goal: str
    previous_results: dict[str, Any] = field(default_factory=dict)
    hint: Optional[str] = None


@dataclass(frozen=True)
class AdaptationProposal:
    action: str
    parameters: dict
    reason: str = ""


@dataclass(frozen=True)
class CheckpointDecision:
    verdict: CheckpointVerdict
    reasoning: str = ""


@dataclass(frozen=True)
class OracleFailure:
    code: str
    message: str

    @property
    def timed_out(self) -> bool:
        return self.code == ORACLE_TIMEOUT


ExtractionReply = Union[Extraction, OracleFailure]
AdaptationReply = Union[AdaptationProposal, OracleFailure, None]
CheckpointReply = Union[CheckpointDecision, OracleFailure]


class ReasoningOracle(ABC):
    """Abstract interface for the external reasoning capability."""

    @abstractmethod
    async def extract_parameter(
        self, raw_result: Any, intent: ParameterIntent
    ) -> ExtractionReply:
        """Produce a parameter value from a prior step's raw result."""
        ...

    @abstractmethod
    async def propose_adaptation(
        self, step: Step, failure: FailureContext
    ) -> AdaptationReply:
        """Propose a different action and/or parameters, or None."""
        ...

    @abstractmethod
    async def checkpoint(
        self, plan: Plan, results: list[ExecutionResult], goal: str
    ) -> CheckpointReply:
        """Judge whether execution should continue."""
        ...


# ── LLM-backed oracle ─────────────────────────────────────────────────────────

_EXTRACTION_PROMPT = """\
You are resolving one tool argument for a step in a multi-step plan.

Goal: {goal}
Step: {description}
Tool to call: {action}
Argument: {parameter} (placeholder: {placeholder})
Expected outcome of the step: {expected}
{hint}
Raw result of the referenced prior step:
{raw}

Pick the exact value for the argument from the result above.  If the result
does not contain it, return null with confidence 0.  Never invent values.

Respond with a JSON object only:
{{"value": <value or null>, "confidence": <0.0-1.0>, "reasoning": "<why>"}}

Response:"""

_ADAPTATION_PROMPT = """\
A step in a multi-step plan failed.  Propose a different tool and/or
arguments that achieve the same intent.

Goal: {goal}
Step: {description}
Tool called: {action}
Arguments used: {parameters}
Failure ({category}): {message}
Retries so far: {retries}
{hint}
Results of earlier steps:
{previous}

Available tools:
{tools}

Respond with a JSON object only.  Use {{"action": null}} when no alternative
exists:
{{"action": "<tool name>", "parameters": {{...}}, "reason": "<why>"}}

Response:"""

_CHECKPOINT_PROMPT = """\
You are checking the progress of a plan execution after a completed step.

Goal: {goal}
Plan steps:
{steps}

Results so far:
{results}

Decide whether the remaining steps are still viable.
  - "continue":            keep executing the remaining steps
  - "replan-recommended":  what was learned invalidates the remaining plan
  - "abort-recommended":   continuing cannot help and may cause harm

Respond with a JSON object only:
{{"verdict": "continue|replan-recommended|abort-recommended", "reasoning": "<why>"}}

Response:"""


class _ExtractionModel(BaseModel):
    value: Any = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = ""


class _AdaptationModel(BaseModel):
    action: Optional[str] = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    reason: str = ""


class _CheckpointModel(BaseModel):
    verdict: CheckpointVerdict = CheckpointVerdict.CONTINUE
    reasoning: str = ""


class LLMOracle(ReasoningOracle):
    """Reasoning oracle that prompts an :class:`LLMBackend` for JSON replies.

    Args:
        llm: Backend used for every oracle call.
        timeout: Seconds allowed per call; exceeding it yields an
                 ``oracle-timeout`` failure.
        tool_descriptions: Mapping of server name -> formatted tool list,
                           shown to the LLM when proposing adaptations.
    """

    def __init__(
        self,
        llm: LLMBackend,
        timeout: float = DEFAULT_ORACLE_TIMEOUT,
        tool_descriptions: dict[str, str] | None = None,
    ) -> None:
        self._llm = llm
        self._timeout = timeout
        self.tool_descriptions = dict(tool_descriptions or {})

    async def extract_parameter(
        self, raw_result: Any, intent: ParameterIntent
    ) -> ExtractionReply:
        prompt = _EXTRACTION_PROMPT.format(
            goal=intent.goal or "(not stated)",
            description=intent.step_description,
            action=intent.action,
            parameter=intent.parameter,
            placeholder=intent.placeholder,
            expected=intent.expected_outcome or "(not stated)",
            hint=f"Operator note: {intent.hint}\n" if intent.hint else "",
            raw=_preview(raw_result),
        )
        reply = await self._validated(prompt, _ExtractionModel)
        if isinstance(reply, OracleFailure):
            return reply
        return Extraction(
            value=reply.value, confidence=reply.confidence, reasoning=reply.reasoning
        )

    async def propose_adaptation(
        self, step: Step, failure: FailureContext
    ) -> AdaptationReply:
        previous = "\n".join(
            f"  {sid}: {_preview(payload, 300)}"
            for sid, payload in failure.previous_results.items()
        )
        tools = "\n\n".join(
            f"{name}:\n{desc}" for name, desc in self.tool_descriptions.items()
        )
        prompt = _ADAPTATION_PROMPT.format(
            goal=failure.goal or "(not stated)",
            description=step.description,
            action=step.action,
            parameters=json.dumps(failure.parameters, default=str),
            category=failure.category.value,
            message=failure.message,
            retries=failure.retries,
            hint=f"Operator note: {failure.hint}\n" if failure.hint else "",
            previous=previous or "  (none)",
            tools=tools or "(unknown)",
        )
        reply = await self._validated(prompt, _AdaptationModel)
        if isinstance(reply, OracleFailure):
            return reply
        if not reply.action or reply.action.lower() in ("none", "null"):
            return None
        return AdaptationProposal(
            action=reply.action, parameters=reply.parameters, reason=reply.reason
        )

    async def checkpoint(
        self, plan: Plan, results: list[ExecutionResult], goal: str
    ) -> CheckpointReply:
        steps = "\n".join(
            f"  {s.order}. [{s.action}] {s.description}" for s in plan.steps
        )
        lines = []
        for r in results:
            if r.success:
                lines.append(f"  Step {r.step_order}: OK {_preview(r.result, 200)}")
            else:
                lines.append(
                    f"  Step {r.step_order}: {r.final_state.value} "
                    f"({r.error_type}) {r.error}"
                )
        prompt = _CHECKPOINT_PROMPT.format(
            goal=goal or plan.goal,
            steps=steps,
            results="\n".join(lines) or "  (none)",
        )
        reply = await self._validated(prompt, _CheckpointModel)
        if isinstance(reply, OracleFailure):
            return reply
        return CheckpointDecision(verdict=reply.verdict, reasoning=reply.reasoning)

    async def _ask(self, prompt: str) -> Union[str, OracleFailure]:
        """Run the blocking backend in a thread with a bounded timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._llm.generate, prompt), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            _log.warning("Oracle call timed out after %.1fs", self._timeout)
            return OracleFailure(
                ORACLE_TIMEOUT, f"oracle call timed out after {self._timeout}s"
            )
        except Exception as exc:  # noqa: BLE001
            _log.warning("Oracle call failed: %s", exc)
            return OracleFailure(ORACLE_ERROR, str(exc))

    async def _validated(self, prompt: str, model: type[BaseModel]):
        raw = await self._ask(prompt)
        if isinstance(raw, OracleFailure):
            return raw
        data = parse_json_object(raw)
        if data is None:
            return OracleFailure(ORACLE_ERROR, f"no JSON object in reply: {raw[:200]!r}")
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            return OracleFailure(ORACLE_ERROR, f"invalid oracle reply: {exc}")


def parse_json_object(raw: str) -> Optional[dict]:
    """Extract a JSON object from an LLM response, with markdown fence handling."""
    text = raw.strip()
    if text.startswith("```"):
        lines = text.splitlines()
        inner = lines[1:-1] if lines[-1].strip() == "```" else lines[1:]
        text = "\n".join(inner).strip()
        if text.startswith("json"):
            text = text[4:].strip()
    try:
        result = json.loads(text)
        if isinstance(result, dict):
            return result
    except json.JSONDecodeError:
        pass
    start, end = text.find("{"), text.rfind("}") + 1
    if start != -1 and end > start:
        try:
            result = json.loads(text[start:end])
            if isinstance(result, dict):
                return result
        except json.JSONDecodeError:
            pass
    return None


def _preview(payload: Any, limit: int = _RESULT_PREVIEW) -> str:
    text = payload if isinstance(payload, str) else json.dumps(payload, default=str)
    return text if len(text) <= limit else text[:limit] + "... (truncated)"
