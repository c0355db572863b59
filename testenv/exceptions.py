"""Errors raised while bringing the test environment up or running tests."""


class TestEnvError(Exception):
    """Base class for all orchestration errors."""

    __test__ = False
    exit_code = 1


class StartupTimeout(TestEnvError):
    """A node never answered its readiness probe within the allotted time."""

    exit_code = 124

    def __init__(self, node_id: str, attempts: int, timeout_seconds: float):
        self.node_id = node_id
        self.attempts = attempts
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Node '{node_id}' not ready after {attempts} attempts ({timeout_seconds}s)"
        )


class TestCommandFailed(TestEnvError):
    """The test command exited with a non-zero status."""

    def __init__(self, exit_code: int):
        self.exit_code = exit_code
        super().__init__(f"Test command exited with code {exit_code}")


class SetupScriptFailed(TestEnvError):
    """The initialization script in the setup container exited non-zero."""

    def __init__(self, script: str, status_code: int, logs: str = ""):
        self.script = script
        self.status_code = status_code
        self.logs = logs
        super().__init__(f"Setup script '{script}' exited with code {status_code}")


class InvalidStateTransition(TestEnvError):
    """Raised when the orchestrator is driven out of lifecycle order."""

    def __init__(self, from_state, to_state):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition {from_state.value} -> {to_state.value}")
