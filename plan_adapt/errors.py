"""Engine-level faults.

Per-step failures are values (see ``failures.py``); the exceptions here are
raised to the caller because they point at a programming or data-integrity
problem rather than at a step that can be recovered.
"""

from __future__ import annotations

DEPENDENCY_UNSATISFIED = "dependency-unsatisfied"
VERSION_CONFLICT = "version-conflict"
ORACLE_TIMEOUT = "oracle-timeout"
ORACLE_ERROR = "oracle-error"
MALFORMED_PLAN = "malformed-plan"
NOTHING_TO_RESUME = "nothing-to-resume"
UNKNOWN_QUESTION = "unknown-question"


class EngineFault(Exception):
    """Base class for faults that abort an engine operation."""

    code = "engine-fault"

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class MalformedPlanError(EngineFault):
    code = MALFORMED_PLAN


class VersionConflictError(EngineFault):
    code = VERSION_CONFLICT


class NothingToResumeError(EngineFault):
    code = NOTHING_TO_RESUME


class UnknownQuestionError(EngineFault):
    code = UNKNOWN_QUESTION
