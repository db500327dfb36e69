"""Tests for the StepExecutor state machine."""

import asyncio

import pytest

from plan_adapt.config import EngineConfig
from plan_adapt.executor import StepExecutor
from plan_adapt.models import ExecutionResult, FailureCategory, StepState, StepStatus
from plan_adapt.oracle import AdaptationProposal, OracleFailure
from plan_adapt.recovery import FailureAttempt, RecoveryStrategist
from plan_adapt.resolver import ParameterResolver

from conftest import FakeToolService, ScriptedOracle, make_plan, make_step


def _executor(tools, oracle, config):
    return StepExecutor(tools, ParameterResolver(oracle), oracle, config)


def _ok(n, payload):
    return ExecutionResult(step_id=f"step-{n}", step_order=n, success=True, result=payload)


@pytest.mark.anyio
async def test_success_transitions(config):
    tools = FakeToolService({"list_facilities": [{"id": "FAC-1"}]})
    plan = make_plan(make_step(1))
    out = await _executor(tools, ScriptedOracle(), config).execute(plan.steps[0], plan, {})

    assert out.state is StepState.SUCCEEDED
    assert out.result.success and out.result.result == [{"id": "FAC-1"}]
    assert out.transitions == [
        StepState.PENDING,
        StepState.RESOLVING_PARAMETERS,
        StepState.INVOKING_TOOL,
        StepState.SUCCEEDED,
    ]
    assert plan.steps[0].status is StepStatus.COMPLETED
    assert len(tools.calls) == 1


@pytest.mark.anyio
async def test_transient_failure_retries_then_succeeds(config):
    tools = FakeToolService().add(
        "list_facilities", ConnectionError("Connection refused"), [{"id": "FAC-1"}]
    )
    plan = make_plan(make_step(1))
    out = await _executor(tools, ScriptedOracle(), config).execute(plan.steps[0], plan, {})

    assert out.result.success
    assert out.result.retries == 1
    assert len(tools.calls) == 2
    assert StepState.RECOVERING in out.transitions
    assert out.transitions.count(StepState.INVOKING_TOOL) == 2


@pytest.mark.anyio
async def test_retries_are_bounded_then_asks(config):
    tools = FakeToolService().add("list_facilities", ConnectionError("Connection refused"))
    plan = make_plan(make_step(1))
    out = await _executor(tools, ScriptedOracle(), config).execute(plan.steps[0], plan, {})

    assert len(tools.calls) == config.max_retries + 1
    assert out.state is StepState.AWAITING_QUESTION
    assert out.result.error_type == "transient"
    assert out.result.retries == config.max_retries
    assert out.question.category == "error-recovery"
    assert not out.aborted


@pytest.mark.anyio
async def test_tool_timeout_is_transient():
    class SlowTools(FakeToolService):
        async def invoke(self, action, parameters):
            self.calls.append((action, parameters))
            await asyncio.sleep(1)

    tools = SlowTools()
    cfg = EngineConfig(retry_backoff=0.0, tool_timeout=0.01, max_retries=0)
    plan = make_plan(make_step(1))
    out = await _executor(tools, ScriptedOracle(), cfg).execute(plan.steps[0], plan, {})

    assert out.result.error_type == "transient"
    assert "timed out" in out.result.error
    assert len(tools.calls) == 1


@pytest.mark.anyio
async def test_unknown_tool_is_adapted(config):
    tools = FakeToolService({"asset_sensors": ["temp", "flow"]})
    oracle = ScriptedOracle(
        adaptation=AdaptationProposal("asset_sensors", {"asset_id": "CH-1"}, "tool was renamed")
    )
    plan = make_plan(make_step(1, action="sensors", parameters={"asset": "CH-1"}))
    out = await _executor(tools, oracle, config).execute(plan.steps[0], plan, {})

    assert out.result.success
    assert out.result.tool_called == "asset_sensors"
    assert out.result.parameters_used == {"asset_id": "CH-1"}
    assert out.result.adaptation_attempted
    assert out.adaptation.original_action == "sensors"
    assert out.adaptation.reason == "tool was renamed"
    assert tools.calls == [("sensors", {"asset": "CH-1"}), ("asset_sensors", {"asset_id": "CH-1"})]
    _, failure = oracle.adapt_calls[0]
    assert failure.category is FailureCategory.TOOL_NOT_APPLICABLE


@pytest.mark.anyio
async def test_adaptation_attempted_once(config):
    tools = FakeToolService({"asset_sensors": {"error": "invalid parameter asset_id"}})
    oracle = ScriptedOracle(
        adaptation=AdaptationProposal("asset_sensors", {"asset_id": "X"}, "guess")
    )
    plan = make_plan(make_step(1, action="sensors"))
    out = await _executor(tools, oracle, config).execute(plan.steps[0], plan, {})

    assert len(oracle.adapt_calls) == 1
    assert out.state is StepState.AWAITING_QUESTION
    assert out.result.error_type == "invalid-parameter"
    assert out.question.context.parameters == ("asset_id",)


@pytest.mark.anyio
@pytest.mark.parametrize("reply", [None, OracleFailure("oracle-error", "bad json")])
async def test_no_adaptation_asks(config, reply):
    tools = FakeToolService()
    oracle = ScriptedOracle(adaptation=reply)
    plan = make_plan(make_step(1, action="sensors"))
    out = await _executor(tools, oracle, config).execute(plan.steps[0], plan, {})

    assert out.state is StepState.AWAITING_QUESTION
    assert out.adaptation is None
    assert out.result.error_type == "tool-not-applicable"
    assert len(tools.calls) == 1


@pytest.mark.anyio
async def test_extraction_failure_asks_without_invoking(config):
    tools = FakeToolService({"get_facility": {"id": "FAC-7"}})
    oracle = ScriptedOracle()
    plan = make_plan(
        make_step(1),
        make_step(2, action="get_facility", parameters={"facility_id": "EXTRACT_FROM_STEP_1"}, deps=[1]),
    )
    completed = {"step-1": _ok(1, ["Error executing tool: facility not found"])}
    out = await _executor(tools, oracle, config).execute(plan.steps[1], plan, completed)

    assert tools.calls == []
    assert oracle.extract_calls == []
    assert out.state is StepState.AWAITING_QUESTION
    assert out.result.error_type == "extraction-impossible"
    assert out.result.retries == 0
    assert StepState.INVOKING_TOOL not in out.transitions
    assert out.question.context.parameters == ("facility_id",)


@pytest.mark.anyio
async def test_answered_question_turns_ask_into_abort(config):
    tools = FakeToolService({"get_facility": {"id": "FAC-7"}})
    plan = make_plan(
        make_step(1),
        make_step(2, action="get_facility", parameters={"facility_id": "EXTRACT_FROM_STEP_1"}, deps=[1]),
    )
    previous = RecoveryStrategist().build_question(
        plan.steps[1], FailureCategory.EXTRACTION_IMPOSSIBLE, "x", {}, FailureAttempt()
    ).with_answer("try harder")
    completed = {"step-1": _ok(1, ["Error executing tool: facility not found"])}
    out = await _executor(tools, ScriptedOracle(), config).execute(
        plan.steps[1], plan, completed, answered=[previous]
    )

    assert out.state is StepState.FAILED
    assert out.aborted
    assert out.question is None
    assert plan.steps[1].status is StepStatus.FAILED


@pytest.mark.anyio
async def test_oracle_timeout_during_resolution_is_retried(config):
    tools = FakeToolService({"get_facility": {"id": "FAC-7"}})
    oracle = ScriptedOracle(extractions={"facility_id": OracleFailure("oracle-timeout", "slow")})
    plan = make_plan(
        make_step(1),
        make_step(2, action="get_facility", parameters={"facility_id": "EXTRACT_FROM_STEP_1"}, deps=[1]),
    )
    completed = {"step-1": _ok(1, [{"id": "FAC-7"}])}
    out = await _executor(tools, oracle, config).execute(plan.steps[1], plan, completed)

    assert len(oracle.extract_calls) == config.max_retries + 1
    assert out.result.error_type == "transient"
    assert tools.calls == []


@pytest.mark.anyio
async def test_resolved_parameters_update_working_copy(config):
    tools = FakeToolService({"get_facility": {"id": "FAC-7", "name": "North"}})
    oracle = ScriptedOracle(extractions={"facility_id": "FAC-7"})
    plan = make_plan(
        make_step(1),
        make_step(2, action="get_facility", parameters={"facility_id": "EXTRACT_FROM_STEP_1"}, deps=[1]),
    )
    completed = {"step-1": _ok(1, [{"id": "FAC-7"}])}
    out = await _executor(tools, oracle, config).execute(plan.steps[1], plan, completed)

    assert tools.calls == [("get_facility", {"facility_id": "FAC-7"})]
    assert plan.steps[1].parameters == {"facility_id": "FAC-7"}
    assert out.plan_update.updated_parameters == {"facility_id": "FAC-7"}


@pytest.mark.anyio
async def test_error_array_is_ambiguous_success(config):
    tools = FakeToolService({"list_facilities": ["Error executing tool: facility not found"]})
    plan = make_plan(make_step(1))
    out = await _executor(tools, ScriptedOracle(), config).execute(plan.steps[0], plan, {})

    assert out.state is StepState.SUCCEEDED
    assert out.result.success and out.result.ambiguous
    assert out.result.error == "Error executing tool: facility not found"
    assert len(tools.calls) == 1
