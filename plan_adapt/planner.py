"""LLM-based plan generation and replanning.

Plans are requested in a tagged line format that survives small models
better than JSON::

    #Goal: <restated goal>
    #Task1: <description>
    #Action1: <tool name>
    #Args1: {"site_name": "MAIN"}
    #Dependency1: None
    #ExpectedOutput1: <what the step produces>

Argument values that depend on an earlier step are written as
``EXTRACT_FROM_STEP_N`` and resolved at execution time.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from typing import Optional

from .llm import LLMBackend
from .models import Critique, Plan, PlanExecutionResult, Step

_log = logging.getLogger(__name__)

_FORMAT = """\
Output format: one block per step, exactly:

#Goal: <one-sentence restatement of the question>
#Confidence: <0.0-1.0, how likely this plan answers the question>
#Complexity: <0.0-1.0>

#Task1: <task description>
#Action1: <exact tool name>
#Args1: <JSON object of tool arguments, e.g. {{"site_name": "MAIN"}}>
#Dependency1: None
#ExpectedOutput1: <what this step should produce>

#Task2: <task description>
#Action2: <exact tool name>
#Args2: {{"site_name": "MAIN", "asset_id": "EXTRACT_FROM_STEP_1"}}
#Dependency2: #S1
#ExpectedOutput2: <what this step should produce>

Rules:
- Tool names must exactly match those listed above.
- #Args must be a valid JSON object on a single line.
- When an argument can only be known from step N's result, use the value
  EXTRACT_FROM_STEP_N and list #SN as a dependency.
- Dependencies use #S<N> notation (e.g., #S1, #S2). Use "None" if none.
- Keep tasks specific and actionable.
"""

_PLAN_PROMPT = """\
You are a planning assistant. Decompose the question below into a sequence
of tool calls.

Available tools (grouped by server):
{tools}

""" + _FORMAT + """
Question: {question}

Plan:
"""

_REPLAN_PROMPT = """\
You are a planning assistant revising a plan that did not work out.

Question: {question}

Previous plan (version {version}):
{previous}

{critique}{execution}{feedback}
Available tools (grouped by server):
{tools}

Write a complete revised plan that addresses the problems above. Reuse steps
that worked.

""" + _FORMAT + """
Plan:
"""

_GOAL_RE = re.compile(r"#Goal:\s*(.+)")
_CONFIDENCE_RE = re.compile(r"#Confidence:\s*([0-9.]+)")
_COMPLEXITY_RE = re.compile(r"#Complexity:\s*([0-9.]+)")
_TASK_RE = re.compile(r"#Task(\d+):\s*(.+)")
_ACTION_RE = re.compile(r"#Action(\d+):\s*(.+)")
_ARGS_RE = re.compile(r"#Args(\d+):\s*(.+)")
_DEP_RE = re.compile(r"#Dependency(\d+):\s*(.+)")
_OUTPUT_RE = re.compile(r"#ExpectedOutput(\d+):\s*(.+)")
_DEP_NUM_RE = re.compile(r"#S(\d+)")


def step_id(n: int) -> str:
    return f"step-{n}"


def parse_plan(raw: str, goal: str = "", plan_id: Optional[str] = None) -> Plan:
    """Parse an LLM-generated plan string into a Plan.

    Dependencies on step numbers that do not exist are dropped.
    """
    tasks = {int(m.group(1)): m.group(2).strip() for m in _TASK_RE.finditer(raw)}
    actions = {int(m.group(1)): m.group(2).strip() for m in _ACTION_RE.finditer(raw)}
    deps_raw = {int(m.group(1)): m.group(2).strip() for m in _DEP_RE.finditer(raw)}
    outputs = {int(m.group(1)): m.group(2).strip() for m in _OUTPUT_RE.finditer(raw)}

    args: dict[int, dict] = {}
    for m in _ARGS_RE.finditer(raw):
        n = int(m.group(1))
        try:
            parsed = json.loads(m.group(2).strip())
        except json.JSONDecodeError:
            _log.warning("Step %d: unparseable #Args, using {}: %s", n, m.group(2))
            parsed = {}
        args[n] = parsed if isinstance(parsed, dict) else {}

    steps = []
    for n in sorted(tasks):
        dep_text = deps_raw.get(n, "None")
        deps = (
            []
            if dep_text.strip().lower() == "none"
            else [int(x) for x in _DEP_NUM_RE.findall(dep_text)]
        )
        steps.append(
            Step(
                id=step_id(n),
                order=n,
                description=tasks[n],
                action=actions.get(n, ""),
                parameters=args.get(n, {}),
                dependencies=[step_id(d) for d in deps if d in tasks and d != n],
                expected_outcome=outputs.get(n, ""),
            )
        )

    goal_match = _GOAL_RE.search(raw)
    return Plan(
        id=plan_id or f"plan-{uuid.uuid4().hex[:12]}",
        goal=goal_match.group(1).strip() if goal_match else goal,
        steps=steps,
        confidence=_unit(_CONFIDENCE_RE.search(raw)),
        estimated_complexity=_unit(_COMPLEXITY_RE.search(raw)),
    )


def _unit(match: Optional[re.Match]) -> float:
    if match is None:
        return 0.0
    try:
        return min(max(float(match.group(1)), 0.0), 1.0)
    except ValueError:
        return 0.0


class Planner:
    """Decomposes a question into a Plan, and revises plans on feedback."""

    def __init__(self, llm: LLMBackend) -> None:
        self._llm = llm

    def generate_plan(self, question: str, tool_descriptions: dict[str, str]) -> Plan:
        """Generate a plan for a question given the available tools.

        Args:
            question: The user question to answer.
            tool_descriptions: Mapping of server name -> formatted tool signatures.
        """
        prompt = _PLAN_PROMPT.format(tools=_format_tools(tool_descriptions), question=question)
        plan = parse_plan(self._llm.generate(prompt), goal=question)
        _log.info(
            "Generated plan %s with %d step(s) (model %s)",
            plan.id, len(plan.steps), self._llm.model_id or type(self._llm).__name__,
        )
        return plan

    def replan(
        self,
        previous: Plan,
        tool_descriptions: dict[str, str],
        critique: Critique | None = None,
        execution: PlanExecutionResult | None = None,
        feedback: str | None = None,
        question: str | None = None,
    ) -> Plan:
        """Produce a revised plan with a fresh id; the ledger assigns its version."""
        previous_text = "\n".join(
            f"  {s.order}. [{s.action}] {s.description} args={json.dumps(s.parameters)}"
            for s in previous.steps
        )
        critique_text = ""
        if critique is not None:
            issues = "\n".join(
                f"  - ({i.severity}) {i.description}"
                + (f" Suggestion: {i.suggestion}" if i.suggestion else "")
                for i in critique.issues
            )
            critique_text = (
                f"Critique (overall {critique.overall_score:.2f}, "
                f"recommendation {critique.recommendation.value}):\n"
                f"{issues or '  (no issues listed)'}\n{critique.rationale}\n\n"
            )
        execution_text = ""
        if execution is not None:
            lines = [
                f"  Step {r.step_order}: "
                + ("OK" if r.success and not r.ambiguous else f"{r.error_type}: {r.error}")
                for r in execution.steps
            ]
            execution_text = "Execution results:\n" + "\n".join(lines) + "\n\n"
        feedback_text = f"User feedback: {feedback}\n\n" if feedback else ""

        prompt = _REPLAN_PROMPT.format(
            question=question or previous.goal,
            version=previous.plan_version,
            previous=previous_text,
            critique=critique_text,
            execution=execution_text,
            feedback=feedback_text,
            tools=_format_tools(tool_descriptions),
        )
        plan = parse_plan(self._llm.generate(prompt), goal=previous.goal)
        _log.info("Replanned %s -> %s with %d step(s)", previous.id, plan.id, len(plan.steps))
        return plan


def _format_tools(tool_descriptions: dict[str, str]) -> str:
    return "\n\n".join(f"{name}:\n{desc}" for name, desc in tool_descriptions.items()) or "(none)"
