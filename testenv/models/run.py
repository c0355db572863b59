from enum import Enum
from typing import Dict, List, Optional, Set
from pydantic import BaseModel, Field, field_validator


class OrchestratorState(str, Enum):
    """Lifecycle states of a test environment run"""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    TORN_DOWN = "torn_down"
    LEFT_RUNNING = "left_running"


VALID_TRANSITIONS: Dict[OrchestratorState, Set[OrchestratorState]] = {
    OrchestratorState.NOT_STARTED: {OrchestratorState.STARTING},
    OrchestratorState.STARTING: {
        OrchestratorState.READY,
        OrchestratorState.FAILED,  # startup timeout or setup failure
    },
    OrchestratorState.READY: {OrchestratorState.RUNNING},
    OrchestratorState.RUNNING: {OrchestratorState.PASSED, OrchestratorState.FAILED},
    OrchestratorState.PASSED: {OrchestratorState.TORN_DOWN, OrchestratorState.LEFT_RUNNING},
    OrchestratorState.FAILED: {OrchestratorState.TORN_DOWN, OrchestratorState.LEFT_RUNNING},
    OrchestratorState.TORN_DOWN: set(),
    OrchestratorState.LEFT_RUNNING: set(),
}

TERMINAL_STATES = {OrchestratorState.TORN_DOWN, OrchestratorState.LEFT_RUNNING}


class RunResult(BaseModel):
    """Outcome of a test environment run"""
    exit_code: int = Field(..., description="Exit code propagated to the caller")
    duration_seconds: float = Field(..., description="Wall time of the whole run", ge=0)
    state: OrchestratorState = Field(..., description="Terminal orchestrator state")
    remaining: List[str] = Field(
        default_factory=list,
        description="Containers still present after the run"
    )
    connection_string: Optional[str] = Field(None, description="URI handed to the test command")
    error: Optional[str] = Field(None, description="Error message when the run did not pass")

    @field_validator("state")
    @classmethod
    def state_must_be_terminal(cls, v: OrchestratorState) -> OrchestratorState:
        if v not in TERMINAL_STATES:
            raise ValueError(f"Run result needs a terminal state, got {v.value}")
        return v

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0
