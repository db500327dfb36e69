"""Caller-facing entry point tying planning, execution and the ledger together.

  stage                      component
  ─────────────────────────  ─────────────────────────────────────────
  discover tools             ToolService.describe
  plan / replan              Planner.generate_plan / Planner.replan
  critique (external)        record_critique -> ledger
  execute / resume           PlanExecutionEngine.execute
  route on confidence        ConfidenceAggregator.aggregate
  summarise                  LLMBackend.generate
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterable, Optional

from .confidence import ConfidenceAggregator
from .config import EngineConfig
from .engine import PlanExecutionEngine
from .errors import NothingToResumeError
from .ledger import CRITIQUE, EXECUTION, PLAN, VersioningLedger
from .llm import LLMBackend
from .models import (
    ConfidenceDecision,
    ConfidenceScore,
    Critique,
    Plan,
    PlanExecutionResult,
    RequestContext,
    RunOutcome,
)
from .oracle import LLMOracle, ReasoningOracle
from .planner import Planner
from .tools import MCPToolService, ToolService

_log = logging.getLogger(__name__)

_SUMMARIZE_PROMPT = """\
You are summarizing the results of a multi-step task execution.

Original question: {question}

Step-by-step execution results:
{results}
{pending}
Provide a concise, direct answer to the original question based on the results
above. Do not repeat the individual steps; just give the final answer. If the
results are incomplete, say what is missing.
"""


class PlanExecuteRunner:
    """Plans, executes and resumes questions against MCP tool servers.

    Usage::

        from plan_adapt import PlanExecuteRunner
        from plan_adapt.llm import WatsonXLLM

        runner = PlanExecuteRunner(
            llm=WatsonXLLM(), server_paths={"IoT": Path("servers/iot.py")}
        )
        outcome = await runner.run("Which assets are at site MAIN?")
        if outcome.execution.requires_user_feedback:
            answers = {q.id: "..." for q in outcome.execution.pending_questions}
            result = await runner.resume_with_feedback(
                outcome.request_context.request_id, answers
            )

    Args:
        llm: Backend used for planning, the default oracle, and summaries.
        tools: Tool service; defaults to an MCPToolService over ``server_paths``.
        server_paths: MCP server scripts by name, used when ``tools`` is None.
        ledger: Versioning ledger; defaults to an in-memory one.
        config: Engine configuration; defaults to :class:`EngineConfig`.
        oracle: Reasoning oracle; defaults to an LLMOracle over ``llm``.
    """

    def __init__(
        self,
        llm: LLMBackend,
        tools: ToolService | None = None,
        server_paths: dict[str, Path] | None = None,
        ledger: VersioningLedger | None = None,
        config: EngineConfig | None = None,
        oracle: ReasoningOracle | None = None,
    ) -> None:
        self._llm = llm
        self.config = config or EngineConfig()
        self.tools = tools if tools is not None else MCPToolService(server_paths or {})
        self.oracle = oracle or LLMOracle(llm, timeout=self.config.oracle_timeout)
        self.ledger = ledger or VersioningLedger()
        self._planner = Planner(llm)
        self._engine = PlanExecutionEngine(self.tools, self.oracle, self.ledger, self.config)
        self._confidence = ConfidenceAggregator()
        self._contexts: dict[str, RequestContext] = {}
        self._descriptions: Optional[dict[str, str]] = None

    # ── request state ────────────────────────────────────────────────────────

    def context(self, request_id: str) -> Optional[RequestContext]:
        """Return the latest RequestContext seen for a request."""
        return self._contexts.get(request_id)

    def _remember(self, ctx: RequestContext) -> RequestContext:
        self._contexts[ctx.request_id] = ctx
        return ctx

    async def tool_descriptions(self) -> dict[str, str]:
        if self._descriptions is None:
            self._descriptions = await self.tools.describe()
            if isinstance(self.oracle, LLMOracle):
                self.oracle.tool_descriptions = dict(self._descriptions)
        return self._descriptions

    # ── plans & critiques ────────────────────────────────────────────────────

    async def _commit_plan(self, request_id: str, plan: Plan) -> Plan:
        """Store a plan under the next version unless this plan id is stored."""
        return await self.ledger.commit_if_absent(
            request_id,
            PLAN,
            lambda stored: stored.id == plan.id,
            lambda v: replace(plan, plan_version=v),
        )

    async def generate_plan(
        self, question: str, request_context: RequestContext | None = None
    ) -> Plan:
        """Generate a plan for ``question`` and record it as the next plan version."""
        ctx = request_context or RequestContext.new(question)
        descriptions = await self.tool_descriptions()
        plan = self._planner.generate_plan(question, descriptions)
        self._remember(ctx.with_agent("planner-agent"))
        return await self._commit_plan(ctx.request_id, plan)

    async def record_critique(self, request_id: str, critique: Critique) -> Critique:
        """Record a critique produced upstream as the next critique version."""
        committed = await self.ledger.commit(
            request_id,
            CRITIQUE,
            lambda v: replace(critique, critique_version=v, request_id=request_id),
        )
        ctx = self._contexts.get(request_id)
        if ctx is not None:
            self._remember(ctx.with_agent("critic-agent"))
        return committed

    async def replan(
        self,
        request_id: str,
        critique: Critique | None = None,
        feedback: str | None = None,
    ) -> Plan:
        """Revise the latest plan of a request using critique, results and feedback."""
        previous = await self.ledger.latest(request_id, PLAN)
        if previous is None:
            raise NothingToResumeError(
                f"No plan recorded for request {request_id}", request_id=request_id
            )
        critique = critique or await self.ledger.latest(request_id, CRITIQUE)
        execution = await self.ledger.latest(request_id, EXECUTION)
        ctx = self._contexts.get(request_id)
        plan = self._planner.replan(
            previous,
            await self.tool_descriptions(),
            critique=critique,
            execution=execution,
            feedback=feedback,
            question=ctx.user_query if ctx and ctx.user_query else None,
        )
        return await self._commit_plan(request_id, plan)

    # ── execution ────────────────────────────────────────────────────────────

    async def execute_plan(
        self,
        plan: Plan,
        request_context: RequestContext | None = None,
        critique: Critique | None = None,
        user_feedback: dict[str, str] | None = None,
        user_query: str | None = None,
    ) -> PlanExecutionResult:
        """Execute a plan; with ``user_feedback``, resume its latest execution."""
        ctx = request_context or RequestContext.new(user_query or plan.goal)
        await self.tool_descriptions()
        plan = await self._commit_plan(ctx.request_id, plan)
        result = await self._engine.execute(
            plan, ctx, prior_critique=critique, user_feedback=user_feedback
        )
        self._remember(result.request_context)
        return result

    async def resume_with_feedback(
        self, request_id: str, answers: dict[str, str]
    ) -> PlanExecutionResult:
        """Answer pending questions of the latest execution and resume it."""
        prior: Optional[PlanExecutionResult] = await self.ledger.latest(request_id, EXECUTION)
        if prior is None:
            raise NothingToResumeError(
                f"No execution recorded for request {request_id}", request_id=request_id
            )
        plan = next(
            (p for p in await self.ledger.all_versions(request_id, PLAN) if p.id == prior.plan_id),
            None,
        )
        if plan is None:
            raise NothingToResumeError(
                f"Plan {prior.plan_id} of request {request_id} is not recorded",
                request_id=request_id,
            )
        critique = None
        if prior.critique_version is not None:
            critiques = await self.ledger.all_versions(request_id, CRITIQUE)
            critique = next(
                (c for c in critiques if c.critique_version == prior.critique_version), None
            )
        ctx = self._contexts.get(request_id) or prior.request_context or RequestContext(request_id)
        return await self.execute_plan(plan, ctx, critique=critique, user_feedback=answers)

    # ── routing & history ────────────────────────────────────────────────────

    def score_confidence(self, scores: Iterable[ConfidenceScore]) -> ConfidenceDecision:
        return self._confidence.aggregate(scores)

    async def history(self, request_id: str, kind: str = EXECUTION) -> list[Any]:
        return await self.ledger.all_versions(request_id, kind)

    # ── end to end ───────────────────────────────────────────────────────────

    async def run(self, question: str) -> RunOutcome:
        """Run the full plan-execute loop for a question.

        Steps:
          1. Discover available tools from the registered servers.
          2. Use the LLM to decompose the question into a plan.
          3. Execute the plan through the engine.
          4. Summarise the step results into a final answer.

        When the execution ends awaiting feedback, the answer lists the open
        questions; call :meth:`resume_with_feedback` to continue.
        """
        ctx = self._remember(RequestContext.new(question))
        plan = await self.generate_plan(question, ctx)
        result = await self.execute_plan(plan, self._contexts[ctx.request_id])
        answer = self.summarise(question, result)
        return RunOutcome(
            question=question,
            answer=answer,
            plan=plan,
            execution=result,
            request_context=result.request_context,
        )

    def summarise(self, question: str, result: PlanExecutionResult) -> str:
        results_text = "\n\n".join(
            f"Step {r.step_order} ({r.tool_called}):\n" + _describe(r)
            for r in result.steps
        )
        pending = ""
        if result.pending_questions:
            pending = "\nOpen questions for the user:\n" + "\n".join(
                f"  - {q.question}" for q in result.pending_questions
            ) + "\n"
        return self._llm.generate(
            _SUMMARIZE_PROMPT.format(question=question, results=results_text, pending=pending)
        )


def _describe(r) -> str:
    if r.success and not r.ambiguous:
        payload = r.result if isinstance(r.result, str) else json.dumps(r.result, default=str)
        return payload
    return f"ERROR ({r.error_type}): {r.error}"
