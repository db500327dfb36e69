"""CLI entry point for the plan execution and adaptation engine.

Usage:
    plan-adapt --server IoT=servers/iot.py "What assets are available at site MAIN?"
    plan-adapt --server IoT=servers/iot.py --plan-file plan.json "List sensors"
    plan-adapt --server IoT=servers/iot.py --interactive --show-history "Sensors of CH-1?"
    plan-adapt --server IoT=servers/iot.py --json "What is the current time?"
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path

_PLATFORMS = ["watsonx", "litellm"]

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"
_LOG_DATE_FORMAT = "%H:%M:%S"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="plan-adapt",
        description="Plan, execute and adapt a question against MCP tool servers.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
environment variables:
  WATSONX_APIKEY        IBM WatsonX API key (required for --platform watsonx)
  WATSONX_PROJECT_ID    IBM WatsonX project ID (required for --platform watsonx)
  WATSONX_URL           IBM WatsonX endpoint (optional, defaults to us-south)

  LITELLM_API_KEY       LiteLLM API key (required for --platform litellm)
  LITELLM_BASE_URL      LiteLLM base URL (required for --platform litellm)

  PLAN_ADAPT_MAX_RETRIES, PLAN_ADAPT_RETRY_BACKOFF, PLAN_ADAPT_TOOL_TIMEOUT,
  PLAN_ADAPT_ORACLE_TIMEOUT, PLAN_ADAPT_MIN_EXTRACTION_CONFIDENCE,
  PLAN_ADAPT_CHECKPOINT, PLAN_ADAPT_PLACEHOLDER_PATTERNS
                        Engine configuration (see plan_adapt.config)

examples:
  plan-adapt --server IoT=servers/iot.py "What assets are at site MAIN?"
  plan-adapt --platform litellm --model-id GCP/claude-4-sonnet --server IoT=servers/iot.py --show-plan "List sensors"
  plan-adapt --server IoT=servers/iot.py --plan-file plan.json --json "List sensors"
  plan-adapt --verbose --interactive --server IoT=servers/iot.py "Sensors of CH-1?"
""",
    )
    parser.add_argument("question", help="The question to answer.")
    parser.add_argument(
        "--platform",
        choices=_PLATFORMS,
        default="watsonx",
        help="LLM platform to use (default: watsonx).",
    )
    parser.add_argument(
        "--model-id",
        default=None,
        metavar="MODEL_ID",
        help="Model ID string for the selected platform (default: the backend's default).",
    )
    parser.add_argument(
        "--server",
        action="append",
        metavar="NAME=PATH",
        dest="servers",
        default=[],
        help="Register an MCP server as NAME=PATH. Repeatable; at least one is required.",
    )
    parser.add_argument(
        "--plan-file",
        type=Path,
        metavar="PATH",
        help="Execute the JSON plan in PATH instead of generating one.",
    )
    parser.add_argument(
        "--show-plan",
        action="store_true",
        help="Print the plan before the answer.",
    )
    parser.add_argument(
        "--show-history",
        action="store_true",
        help="Print each step result, plan update and adaptation.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        dest="output_json",
        help="Output the full result (answer, plan, execution) as JSON.",
    )
    parser.add_argument(
        "--interactive",
        action="store_true",
        help="Answer follow-up questions on stdin and resume execution.",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=None,
        metavar="N",
        help="Retries per step for transient failures (default: PLAN_ADAPT_MAX_RETRIES or 2).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Show INFO-level progress logs on stderr (default: WARNING+ only).",
    )
    return parser


def _setup_logging(verbose: bool) -> None:
    """Configure root logger to stderr; level depends on --verbose."""
    level = logging.INFO if verbose else logging.WARNING
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_LOG_DATE_FORMAT))
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(level)


def _fail(message: str) -> None:
    print(f"error: {message}", file=sys.stderr)
    sys.exit(1)


def _build_llm(platform: str, model_id: str | None):
    """Instantiate the LLM backend for the given platform."""
    from plan_adapt.llm import LiteLLMLLM, WatsonXLLM

    backends = {"watsonx": WatsonXLLM, "litellm": LiteLLMLLM}
    cls = backends.get(platform)
    if cls is None:
        _fail(f"unknown platform {platform!r}")
    try:
        return cls(model_id=model_id) if model_id else cls()
    except KeyError as exc:
        _fail(f"missing environment variable {exc}")


def _parse_servers(entries: list[str]) -> dict[str, Path]:
    """Parse NAME=PATH pairs into a server_paths dict."""
    result: dict[str, Path] = {}
    for entry in entries:
        if "=" not in entry:
            _fail(f"--server requires NAME=PATH format, got: {entry!r}")
        name, _, path = entry.partition("=")
        result[name.strip()] = Path(path.strip())
    return result


def _load_plan(path: Path):
    from plan_adapt.models import Plan

    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        _fail(f"cannot read plan file {path}: {exc}")
    try:
        return Plan.from_dict(data)
    except (KeyError, TypeError, ValueError) as exc:
        _fail(f"invalid plan file {path}: {exc}")


def _print_section(title: str) -> None:
    print(f"\n{'─' * 60}")
    print(f"  {title}")
    print(f"{'─' * 60}")


def _snippet(value, limit: int = 200) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text[:limit] + ("..." if len(text) > limit else "")


def _ask_user(questions) -> dict[str, str]:
    """Prompt for an answer to each pending question; blank answers are skipped."""
    answers: dict[str, str] = {}
    _print_section("Questions")
    for q in questions:
        print(f"  [{q.priority}] {q.question}")
        if q.context.suggestion:
            print(f"        suggestion: {q.context.suggestion}")
        try:
            answer = input("  > ").strip()
        except EOFError:
            break
        if answer:
            answers[q.id] = answer
    return answers


def _to_json(value):
    """JSON default hook for dataclasses, enums and datetimes."""
    from dataclasses import asdict, is_dataclass
    from datetime import datetime
    from enum import Enum

    if is_dataclass(value):
        return asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


async def _run(args: argparse.Namespace) -> None:
    from plan_adapt.config import EngineConfig
    from plan_adapt.errors import EngineFault
    from plan_adapt.models import RunOutcome
    from plan_adapt.runner import PlanExecuteRunner

    server_paths = _parse_servers(args.servers)
    if not server_paths:
        _fail("at least one --server NAME=PATH is required")
    try:
        config = EngineConfig.from_env()
    except ValueError as exc:
        _fail(str(exc))
    if args.max_retries is not None:
        config = replace(config, max_retries=args.max_retries)

    llm = _build_llm(args.platform, args.model_id)
    runner = PlanExecuteRunner(llm=llm, server_paths=server_paths, config=config)

    try:
        if args.plan_file:
            plan = _load_plan(args.plan_file)
            result = await runner.execute_plan(plan, user_query=args.question)
            outcome = RunOutcome(
                question=args.question,
                answer="",
                plan=plan,
                execution=result,
                request_context=result.request_context,
            )
        else:
            outcome = await runner.run(args.question)

        result = outcome.execution
        while args.interactive and result.pending_questions:
            answers = _ask_user(result.pending_questions)
            if not answers:
                break
            result = await runner.resume_with_feedback(result.request_id, answers)
        if result is not outcome.execution or not outcome.answer:
            outcome = replace(
                outcome,
                execution=result,
                answer=runner.summarise(args.question, result),
                request_context=result.request_context,
            )
        history = await runner.history(result.request_id)
    except EngineFault as exc:
        _fail(str(exc))

    if args.output_json:
        output = {
            "question": outcome.question,
            "answer": outcome.answer,
            "request_id": result.request_id,
            "plan": outcome.plan.to_dict(),
            "execution": result,
            "execution_versions": [r.execution_version for r in history],
        }
        print(json.dumps(output, indent=2, default=_to_json))
        return

    if args.show_plan:
        _print_section(f"Plan {outcome.plan.id} (v{outcome.plan.plan_version})")
        for step in outcome.plan.steps:
            deps = ", ".join(step.dependencies) or "none"
            print(f"  [{step.order}] {step.action}: {step.description}")
            print(f"       args={json.dumps(step.parameters)} | deps={deps}")

    if args.show_history:
        _print_section(f"Execution v{result.execution_version} ({result.status.value})")
        for r in result.steps:
            if r.success and not r.ambiguous:
                status = "OK "
            elif r.final_state.value == "not-executed":
                status = "---"
            else:
                status = "ERR"
            tag = " (reused)" if r.reused else ""
            print(f"  [{status}] Step {r.step_order} ({r.tool_called}){tag}")
            detail = r.result if r.success and not r.ambiguous else f"{r.error_type}: {r.error}"
            print(f"        {_snippet(detail)}")
        for u in result.plan_updates:
            print(f"  update {u.step_id}: {u.original_parameters} -> {u.updated_parameters}")
        for a in result.adaptations:
            print(f"  adapt  {a.step_id}: {a.original_action} -> {a.adapted_action} ({a.reason})")
        for w in result.warnings:
            print(f"  warning: {w}")

    if result.pending_questions:
        _print_section("Awaiting Feedback")
        for q in result.pending_questions:
            print(f"  {q.id}: {q.question}")

    _print_section("Answer")
    print(outcome.answer)
    print()


def main() -> None:
    from dotenv import load_dotenv
    load_dotenv()
    args = _build_parser().parse_args()
    _setup_logging(args.verbose)
    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
