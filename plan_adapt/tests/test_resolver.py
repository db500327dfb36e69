"""Tests for ParameterResolver."""

import asyncio

import pytest

from plan_adapt.models import ExecutionResult
from plan_adapt.oracle import Extraction, OracleFailure
from plan_adapt.resolver import ParameterResolver

from conftest import ScriptedOracle, make_plan, make_step

_FACILITIES = [{"id": "FAC-7", "name": "North plant"}]


def _ok(n: int, payload, ambiguous: bool = False) -> ExecutionResult:
    return ExecutionResult(step_id=f"step-{n}", step_order=n, success=True, result=payload, ambiguous=ambiguous)


def _failed(n: int) -> ExecutionResult:
    return ExecutionResult(step_id=f"step-{n}", step_order=n, success=False, error="boom")


def _two_steps(value="EXTRACT_FROM_STEP_1", extra: dict | None = None):
    return make_plan(
        make_step(1),
        make_step(2, action="get_facility", parameters={"facility_id": value, **(extra or {})}, deps=[1]),
    )


@pytest.mark.anyio
async def test_no_placeholders_no_update():
    oracle = ScriptedOracle()
    plan = make_plan(make_step(1, parameters={"site": "MAIN"}))
    res = await ParameterResolver(oracle).resolve(plan.steps[0], plan, {})
    assert res.resolved
    assert res.parameters == {"site": "MAIN"}
    assert res.plan_update is None
    assert oracle.extract_calls == []


@pytest.mark.anyio
async def test_extracts_value_and_emits_plan_update():
    oracle = ScriptedOracle(extractions={"facility_id": "FAC-7"})
    plan = _two_steps(extra={"site": "MAIN"})
    res = await ParameterResolver(oracle).resolve(plan.steps[1], plan, {"step-1": _ok(1, _FACILITIES)})

    assert res.resolved
    assert res.parameters == {"facility_id": "FAC-7", "site": "MAIN"}
    update = res.plan_update
    assert update.step_id == "step-2"
    assert update.original_parameters["facility_id"] == "EXTRACT_FROM_STEP_1"
    assert update.updated_parameters["facility_id"] == "FAC-7"
    assert set(update.updated_parameters) == set(update.original_parameters)
    assert update.reason == "found facility_id"

    raw, intent = oracle.extract_calls[0]
    assert raw == _FACILITIES
    assert intent.parameter == "facility_id"
    assert intent.action == "get_facility"


@pytest.mark.anyio
async def test_error_array_short_circuits_without_oracle():
    oracle = ScriptedOracle(extractions={"facility_id": "FAC-7"})
    plan = _two_steps()
    completed = {"step-1": _ok(1, ["Error executing tool: facility not found"])}

    for _ in range(3):
        res = await ParameterResolver(oracle).resolve(plan.steps[1], plan, completed)
        assert not res.resolved
        assert res.unresolved[0].kind == "error-payload"

    assert oracle.extract_calls == []


@pytest.mark.anyio
async def test_ambiguous_flag_short_circuits():
    oracle = ScriptedOracle(extractions={"facility_id": "FAC-7"})
    plan = _two_steps()
    completed = {"step-1": _ok(1, [{"text": "Error executing tool x"}], ambiguous=True)}
    res = await ParameterResolver(oracle).resolve(plan.steps[1], plan, completed)
    assert res.unresolved[0].kind == "error-payload"
    assert oracle.extract_calls == []


@pytest.mark.anyio
@pytest.mark.parametrize("payload", [[], {}, "", None])
async def test_empty_result_is_no_data(payload):
    oracle = ScriptedOracle(extractions={"facility_id": "FAC-7"})
    plan = _two_steps()
    res = await ParameterResolver(oracle).resolve(plan.steps[1], plan, {"step-1": _ok(1, payload)})
    assert res.unresolved[0].kind == "no-data"
    assert oracle.extract_calls == []


@pytest.mark.anyio
async def test_failed_reference():
    oracle = ScriptedOracle()
    plan = _two_steps()
    res = await ParameterResolver(oracle).resolve(plan.steps[1], plan, {"step-1": _failed(1)})
    assert res.unresolved[0].kind == "reference-failed"


@pytest.mark.anyio
async def test_missing_reference():
    oracle = ScriptedOracle()
    plan = _two_steps(value="EXTRACT_FROM_STEP_9")
    res = await ParameterResolver(oracle).resolve(plan.steps[1], plan, {"step-1": _ok(1, _FACILITIES)})
    assert res.unresolved[0].kind == "missing-reference"


@pytest.mark.anyio
async def test_unnumbered_placeholder_uses_latest_dependency():
    oracle = ScriptedOracle(extractions={"asset": "CH-1"})
    plan = make_plan(
        make_step(1),
        make_step(2),
        make_step(3, parameters={"asset": "EXTRACTED"}, deps=[1, 2]),
    )
    completed = {"step-1": _ok(1, ["a"]), "step-2": _ok(2, ["b"])}
    res = await ParameterResolver(oracle).resolve(plan.steps[2], plan, completed)
    assert res.parameters == {"asset": "CH-1"}
    assert oracle.extract_calls[0][0] == ["b"]


@pytest.mark.anyio
@pytest.mark.parametrize("value", [None, "", "null", "NULL"])
async def test_null_values_are_rejected(value):
    oracle = ScriptedOracle(extractions={"facility_id": Extraction(value, 0.9)})
    plan = _two_steps()
    res = await ParameterResolver(oracle).resolve(plan.steps[1], plan, {"step-1": _ok(1, _FACILITIES)})
    assert res.unresolved[0].kind == "no-data"
    assert res.parameters["facility_id"] == "EXTRACT_FROM_STEP_1"


@pytest.mark.anyio
async def test_low_confidence_is_rejected():
    oracle = ScriptedOracle(extractions={"facility_id": Extraction("FAC-7", 0.2)})
    plan = _two_steps()
    res = await ParameterResolver(oracle, min_confidence=0.5).resolve(
        plan.steps[1], plan, {"step-1": _ok(1, _FACILITIES)}
    )
    assert res.unresolved[0].kind == "low-confidence"
    assert res.plan_update is None


@pytest.mark.anyio
async def test_oracle_failure_kinds():
    plan = _two_steps()
    completed = {"step-1": _ok(1, _FACILITIES)}
    for failure, kind in [
        (OracleFailure("oracle-timeout", "slow"), "oracle-timeout"),
        (OracleFailure("oracle-error", "bad json"), "oracle-error"),
    ]:
        oracle = ScriptedOracle(extractions={"facility_id": failure})
        res = await ParameterResolver(oracle).resolve(plan.steps[1], plan, completed)
        assert res.unresolved[0].kind == kind


@pytest.mark.anyio
async def test_slow_oracle_times_out():
    class SlowOracle(ScriptedOracle):
        async def extract_parameter(self, raw_result, intent):
            await asyncio.sleep(1)

    plan = _two_steps()
    res = await ParameterResolver(SlowOracle(), oracle_timeout=0.01).resolve(
        plan.steps[1], plan, {"step-1": _ok(1, _FACILITIES)}
    )
    assert res.unresolved[0].kind == "oracle-timeout"


@pytest.mark.anyio
async def test_operator_override_skips_extraction():
    oracle = ScriptedOracle()
    plan = _two_steps()
    res = await ParameterResolver(oracle).resolve(
        plan.steps[1], plan, {"step-1": _ok(1, ["Error executing tool: x"])},
        overrides={"facility_id": "FAC-9", "not_a_param": "ignored"},
    )
    assert res.resolved
    assert res.parameters == {"facility_id": "FAC-9"}
    assert res.plan_update.reason == "operator answer"
    assert oracle.extract_calls == []


@pytest.mark.anyio
async def test_hint_is_passed_to_oracle():
    oracle = ScriptedOracle(extractions={"facility_id": "FAC-7"})
    plan = _two_steps()
    await ParameterResolver(oracle).resolve(
        plan.steps[1], plan, {"step-1": _ok(1, _FACILITIES)}, hint="use the north plant"
    )
    assert oracle.extract_calls[0][1].hint == "use the north plant"
