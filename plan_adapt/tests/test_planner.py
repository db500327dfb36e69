"""Tests for the Planner and parse_plan()."""

from plan_adapt.models import Critique, ExecutionResult, ExecutionStatus, PlanExecutionResult
from plan_adapt.planner import Planner, parse_plan

_TWO_STEP = """\
#Goal: Find the north facility
#Confidence: 0.85
#Complexity: 0.3

#Task1: List all facilities
#Action1: list_facilities
#Args1: {}
#Dependency1: None
#ExpectedOutput1: A list of facilities

#Task2: Get details of the north facility
#Action2: get_facility
#Args2: {"facility_id": "EXTRACT_FROM_STEP_1"}
#Dependency2: #S1
#ExpectedOutput2: Facility details"""

_MULTI_DEP = """\
#Task1: Get sites
#Action1: sites
#Args1: {}
#Dependency1: None
#ExpectedOutput1: Sites

#Task2: Get current time
#Action2: current_date_time
#Args2: {}
#Dependency2: None
#ExpectedOutput2: Current time

#Task3: Get work orders
#Action3: work_orders
#Args3: {"site_name": "EXTRACT_FROM_STEP_1"}
#Dependency3: #S1, #S2, #S3, #S9
#ExpectedOutput3: Work orders"""

_TOOLS = {"FMSR": "  - list_facilities(): List facilities\n  - get_facility(facility_id: string)"}


class TestParsePlan:
    def test_two_steps_parsed(self):
        plan = parse_plan(_TWO_STEP)
        assert [s.id for s in plan.steps] == ["step-1", "step-2"]
        assert [s.order for s in plan.steps] == [1, 2]

    def test_actions_and_args(self):
        plan = parse_plan(_TWO_STEP)
        assert plan.steps[0].action == "list_facilities"
        assert plan.steps[0].parameters == {}
        assert plan.steps[1].parameters == {"facility_id": "EXTRACT_FROM_STEP_1"}

    def test_dependencies(self):
        plan = parse_plan(_TWO_STEP)
        assert plan.steps[0].dependencies == []
        assert plan.steps[1].dependencies == ["step-1"]

    def test_unknown_and_self_dependencies_dropped(self):
        plan = parse_plan(_MULTI_DEP)
        assert plan.steps[2].dependencies == ["step-1", "step-2"]
        plan.validate()

    def test_header_fields(self):
        plan = parse_plan(_TWO_STEP, goal="fallback")
        assert plan.goal == "Find the north facility"
        assert plan.confidence == 0.85
        assert plan.estimated_complexity == 0.3
        assert plan.id.startswith("plan-")

    def test_missing_header_uses_defaults(self):
        plan = parse_plan(_MULTI_DEP, goal="What is open at MAIN?", plan_id="plan-x")
        assert plan.goal == "What is open at MAIN?"
        assert plan.confidence == 0.0
        assert plan.id == "plan-x"

    def test_confidence_is_clamped(self):
        assert parse_plan("#Confidence: 7\n").confidence == 1.0

    def test_expected_output_captured(self):
        plan = parse_plan(_TWO_STEP)
        assert plan.steps[1].expected_outcome == "Facility details"

    def test_empty_input_yields_empty_plan(self):
        assert parse_plan("").steps == []
        assert parse_plan("No tasks here.").steps == []

    def test_invalid_args_json_falls_back_to_empty(self):
        raw = (
            "#Task1: Do something\n"
            "#Action1: sites\n"
            "#Args1: not-valid-json\n"
            "#Dependency1: None\n"
        )
        assert parse_plan(raw).steps[0].parameters == {}


class TestPlanner:
    def test_generate_plan_uses_llm_output(self, mock_llm):
        plan = Planner(mock_llm(_TWO_STEP)).generate_plan("Which facility is north?", _TOOLS)
        assert len(plan.steps) == 2
        assert plan.steps[1].action == "get_facility"

    def test_generate_plan_prompt_contains_question_and_tools(self, mock_llm):
        llm = mock_llm(_TWO_STEP)
        Planner(llm).generate_plan("Which facility is north?", _TOOLS)
        prompt = llm.prompts[0]
        assert "Which facility is north?" in prompt
        assert "FMSR:" in prompt
        assert "EXTRACT_FROM_STEP_N" in prompt
        assert '{"site_name": "MAIN"}' in prompt

    def test_replan_includes_critique_execution_and_feedback(self, mock_llm):
        llm = mock_llm(_TWO_STEP)
        previous = parse_plan(_TWO_STEP, plan_id="plan-old")
        critique = Critique.from_dict(
            {
                "overall_score": 0.4,
                "recommendation": "rethink",
                "issues": [{"severity": "high", "description": "step 2 guesses"}],
            }
        )
        execution = PlanExecutionResult(
            request_id="req-1",
            plan_id="plan-old",
            plan_version=1,
            steps=[
                ExecutionResult(step_id="step-1", step_order=1, success=True, result=[]),
                ExecutionResult(
                    step_id="step-2", step_order=2, success=False,
                    error="no facility", error_type="extraction-impossible",
                ),
            ],
            overall_success=False,
            requires_user_feedback=True,
            status=ExecutionStatus.AWAITING_FEEDBACK,
        )
        plan = Planner(llm).replan(
            previous, _TOOLS, critique=critique, execution=execution, feedback="use site MAIN"
        )

        prompt = llm.prompts[0]
        assert "(high) step 2 guesses" in prompt
        assert "Step 2: extraction-impossible: no facility" in prompt
        assert "User feedback: use site MAIN" in prompt
        assert plan.id != "plan-old"
