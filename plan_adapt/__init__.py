"""Plan execution and adaptation engine over MCP tool servers."""

from .confidence import ConfidenceAggregator
from .config import EngineConfig
from .engine import PlanExecutionEngine
from .errors import (
    EngineFault,
    MalformedPlanError,
    NothingToResumeError,
    UnknownQuestionError,
    VersionConflictError,
)
from .ledger import InMemoryArtifactStore, VersioningLedger
from .models import (
    ConfidenceScore,
    Critique,
    ExecutionResult,
    FollowUpQuestion,
    Plan,
    PlanExecutionResult,
    RequestContext,
    Step,
)
from .oracle import LLMOracle, ReasoningOracle
from .runner import PlanExecuteRunner
from .tools import MCPToolService, ToolService

__all__ = [
    "ConfidenceAggregator",
    "ConfidenceScore",
    "Critique",
    "EngineConfig",
    "EngineFault",
    "ExecutionResult",
    "FollowUpQuestion",
    "InMemoryArtifactStore",
    "LLMOracle",
    "MCPToolService",
    "MalformedPlanError",
    "NothingToResumeError",
    "Plan",
    "PlanExecuteRunner",
    "PlanExecutionEngine",
    "PlanExecutionResult",
    "ReasoningOracle",
    "RequestContext",
    "Step",
    "ToolService",
    "UnknownQuestionError",
    "VersionConflictError",
    "VersioningLedger",
]
