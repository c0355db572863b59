"""
Lifecycle of a test environment run.

    NotStarted -> Starting -> Ready -> Running -> Passed -> TornDown
                                               -> Failed -> LeftRunning

Only the readiness probe retries; the test command runs exactly once.
"""
from typing import Dict, List, Literal, Optional, Tuple
import logging
import time

from testenv.config import Settings, settings as default_settings
from testenv.exceptions import (
    InvalidStateTransition,
    SetupScriptFailed,
    TestCommandFailed,
    TestEnvError
)
from testenv.models.cluster import ClusterNode, ReplicaSetConfig
from testenv.models.run import (
    OrchestratorState,
    RunResult,
    VALID_TRANSITIONS
)
from testenv.services.cluster_manager import ClusterManager
from testenv.services.command_runner import CommandRunner
from testenv.services.docker_manager import DockerManager

logger = logging.getLogger(__name__)

TeardownPolicy = Literal["on_success", "always", "never"]


class EnvironmentOrchestrator:
    """Brings the replica set up, runs the test command and tears down"""

    def __init__(
        self,
        docker_manager: DockerManager,
        cluster_manager: ClusterManager,
        command_runner: CommandRunner,
        settings: Optional[Settings] = None
    ):
        self.docker_manager = docker_manager
        self.cluster_manager = cluster_manager
        self.command_runner = command_runner
        self.settings = settings or default_settings
        self.state = OrchestratorState.NOT_STARTED
        self.history: List[Tuple[OrchestratorState, OrchestratorState]] = []
        self.nodes: List[ClusterNode] = []
        self.config: Optional[ReplicaSetConfig] = None

    def _transition(self, to_state: OrchestratorState):
        if to_state not in VALID_TRANSITIONS[self.state]:
            raise InvalidStateTransition(self.state, to_state)
        logger.debug(f"State {self.state.value} -> {to_state.value}")
        self.history.append((self.state, to_state))
        self.state = to_state

    async def start_cluster(self, nodes: List[ClusterNode]) -> List[ClusterNode]:
        """
        Launch every node and wait until each answers its readiness probe

        Raises:
            StartupTimeout: If any node never becomes reachable
        """
        logger.info(f"Starting {len(nodes)} node(s) for replica set '{self.settings.replica_set_name}'")
        for node in nodes:
            await self.docker_manager.create_replica_set_node(node, self.settings.replica_set_name)
        self.nodes = nodes

        for node in nodes:
            await self.wait_until_ready(node)
        return nodes

    async def wait_until_ready(self, node: ClusterNode, timeout_seconds: Optional[float] = None) -> ClusterNode:
        return await self.cluster_manager.wait_until_ready(node, timeout_seconds)

    async def apply_replica_set_config(self, config: ReplicaSetConfig) -> Dict:
        """Apply the topology, then run the initialization script if one is configured"""
        self.config = config
        applied = await self.cluster_manager.apply_replica_set_config(config, self.nodes)

        script = self.settings.init_script
        if script:
            primary = self.nodes[config.primary_candidate.member_id]
            status_code, logs = await self.docker_manager.run_setup_script(script, primary.node_id)
            if status_code != 0:
                raise SetupScriptFailed(script, status_code, logs)
        return applied

    async def bring_up(self, node_count: Optional[int] = None) -> str:
        """
        Start the cluster and initialize replication

        Returns:
            str: Connection string for the primary
        """
        self._transition(OrchestratorState.STARTING)
        try:
            nodes = self.cluster_manager.plan_nodes(node_count)
            await self.start_cluster(nodes)
            await self.apply_replica_set_config(self.cluster_manager.build_config(nodes))
        except Exception:
            self._transition(OrchestratorState.FAILED)
            raise
        self._transition(OrchestratorState.READY)

        connection_string = self.cluster_manager.get_connection_string(self.nodes)
        logger.info(f"Replica set ready at {connection_string}")
        return connection_string

    async def run_test_command(
        self,
        command: List[str],
        connection_string: str,
        extra_env: Optional[Dict[str, str]] = None
    ) -> int:
        self._transition(OrchestratorState.RUNNING)
        exit_code = await self.command_runner.run(command, connection_string, extra_env)
        self._transition(OrchestratorState.PASSED if exit_code == 0 else OrchestratorState.FAILED)
        return exit_code

    async def teardown(self, remove_cluster: Optional[bool] = None) -> List[str]:
        """
        Remove the setup container, and the cluster when the run passed

        Args:
            remove_cluster: Override for removing the node containers;
                defaults to True only when the run passed

        Returns:
            List[str]: Names of containers still present afterwards
        """
        if remove_cluster is None:
            remove_cluster = self.state == OrchestratorState.PASSED

        await self.docker_manager.remove_setup_container()

        if remove_cluster:
            for node in self.nodes:
                await self.docker_manager.remove_node(node.node_id)
            self._transition(OrchestratorState.TORN_DOWN)
        else:
            logger.info("Leaving cluster running for inspection")
            self._transition(OrchestratorState.LEFT_RUNNING)

        self.cluster_manager.close()
        return [info.name for info in self.docker_manager.list_containers()]

    async def run(
        self,
        command: List[str],
        node_count: Optional[int] = None,
        teardown_policy: TeardownPolicy = "on_success",
        extra_env: Optional[Dict[str, str]] = None
    ) -> RunResult:
        """Full lifecycle: bring up, run the command once, tear down per policy"""
        started = time.monotonic()
        connection_string = None
        error = None

        try:
            connection_string = await self.bring_up(node_count)
        except TestEnvError as e:
            logger.error(f"Startup failed, test command not run: {e}")
            exit_code = e.exit_code
            error = str(e)
        except Exception as e:
            logger.exception(f"Startup failed, test command not run: {e}")
            exit_code = 1
            error = f"{type(e).__name__}: {e}"
        else:
            exit_code = await self.run_test_command(command, connection_string, extra_env)
            if exit_code != 0:
                failure = TestCommandFailed(exit_code)
                logger.error(str(failure))
                error = str(failure)

        if teardown_policy == "always":
            remove_cluster = True
        elif teardown_policy == "never":
            remove_cluster = False
        else:
            remove_cluster = None
        remaining = await self.teardown(remove_cluster)

        return RunResult(
            exit_code=exit_code,
            duration_seconds=time.monotonic() - started,
            state=self.state,
            remaining=remaining,
            connection_string=connection_string,
            error=error
        )
