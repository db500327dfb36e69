"""Shared fixtures for plan_adapt unit tests."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from plan_adapt.config import EngineConfig
from plan_adapt.ledger import InMemoryArtifactStore
from plan_adapt.llm import LLMBackend
from plan_adapt.models import CheckpointVerdict, Plan, Step
from plan_adapt.oracle import (
    AdaptationProposal,
    CheckpointDecision,
    Extraction,
    OracleFailure,
    ReasoningOracle,
)
from plan_adapt.tools import ToolNotFoundError, ToolService


class MockLLM(LLMBackend):
    """Deterministic LLM that returns a canned response, with no network calls."""

    def __init__(self, response: str = "") -> None:
        self._response = response
        self.prompts: list[str] = []

    def generate(self, prompt: str, temperature: float = 0.0) -> str:
        self.prompts.append(prompt)
        return self._response


class SequentialMockLLM(LLMBackend):
    """Returns responses in order across successive generate() calls."""

    def __init__(self, responses: list[str]) -> None:
        self._responses = iter(responses)
        self.prompts: list[str] = []

    def generate(self, prompt: str, temperature: float = 0.0) -> str:
        self.prompts.append(prompt)
        return next(self._responses, "")


class FakeToolService(ToolService):
    """Scripted tool service.

    ``script`` maps an action to its response; use :meth:`add` for a
    sequence of responses consumed one per call (the last one repeats).
    A response that is an exception instance is raised.  Unknown actions
    raise ToolNotFoundError.
    """

    def __init__(self, script: dict[str, Any] | None = None) -> None:
        self._script = dict(script or {})
        self.calls: list[tuple[str, dict]] = []

    def add(self, action: str, *responses: Any) -> "FakeToolService":
        self._script[action] = _Seq(responses)
        return self

    def calls_to(self, action: str) -> list[dict]:
        return [params for name, params in self.calls if name == action]

    async def invoke(self, action: str, parameters: dict) -> Any:
        self.calls.append((action, dict(parameters)))
        if action not in self._script:
            raise ToolNotFoundError(f"Unknown tool '{action}'")
        response = self._script[action]
        if isinstance(response, _Seq):
            response = response.next()
        if isinstance(response, BaseException):
            raise response
        return response

    async def describe(self) -> dict[str, str]:
        return {"Fake": "\n".join(f"  - {name}(): scripted" for name in self._script)}


class _Seq:
    def __init__(self, responses) -> None:
        self._responses = list(responses)

    def next(self) -> Any:
        if len(self._responses) > 1:
            return self._responses.pop(0)
        return self._responses[0]


class ScriptedOracle(ReasoningOracle):
    """Oracle with canned replies that records every call it receives."""

    def __init__(
        self,
        extractions: dict[str, Any] | None = None,
        adaptation: AdaptationProposal | OracleFailure | None = None,
        verdicts: list[CheckpointDecision | OracleFailure] | None = None,
    ) -> None:
        self.extractions = dict(extractions or {})
        self.adaptation = adaptation
        self.verdicts = list(verdicts or [])
        self.extract_calls: list[tuple[Any, Any]] = []
        self.adapt_calls: list[tuple[Step, Any]] = []
        self.checkpoint_calls: list[list] = []

    async def extract_parameter(self, raw_result, intent):
        self.extract_calls.append((raw_result, intent))
        reply = self.extractions.get(intent.parameter)
        if reply is None:
            return Extraction(value=None, confidence=0.0, reasoning="not found")
        if isinstance(reply, (Extraction, OracleFailure)):
            return reply
        return Extraction(value=reply, confidence=0.95, reasoning=f"found {intent.parameter}")

    async def propose_adaptation(self, step, failure):
        self.adapt_calls.append((step, failure))
        return self.adaptation

    async def checkpoint(self, plan, results, goal):
        self.checkpoint_calls.append(list(results))
        if self.verdicts:
            return self.verdicts.pop(0)
        return CheckpointDecision(CheckpointVerdict.CONTINUE, "on track")


class SuspendingStore(InMemoryArtifactStore):
    """In-memory store that yields to the event loop on every read."""

    async def get_all_versions(self, request_id, kind):
        await asyncio.sleep(0)
        return await super().get_all_versions(request_id, kind)

    async def versions(self, request_id, kind):
        await asyncio.sleep(0)
        return await super().versions(request_id, kind)


def make_step(
    n: int,
    action: str = "list_facilities",
    parameters: dict | None = None,
    deps: list[int] | None = None,
    required: bool = True,
) -> Step:
    return Step(
        id=f"step-{n}",
        order=n,
        description=f"Task {n}",
        action=action,
        parameters=dict(parameters or {}),
        dependencies=[f"step-{d}" for d in deps or []],
        expected_outcome=f"output {n}",
        required=required,
    )


def make_plan(*steps: Step, plan_id: str = "plan-1", goal: str = "Inspect facilities") -> Plan:
    return Plan(id=plan_id, goal=goal, steps=list(steps))


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def config():
    """Engine config without retry back-off so tests never sleep."""
    return EngineConfig(retry_backoff=0.0, tool_timeout=5.0, oracle_timeout=5.0)


@pytest.fixture
def mock_llm():
    """Factory fixture: MockLLM(response='')."""

    def _factory(response: str = "") -> MockLLM:
        return MockLLM(response)

    return _factory


@pytest.fixture
def sequential_llm():
    """Factory fixture: SequentialMockLLM(responses=[...])."""

    def _factory(responses: list[str]) -> SequentialMockLLM:
        return SequentialMockLLM(responses)

    return _factory
