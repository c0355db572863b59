"""
Pytest configuration for integration tests
"""
import logging
import os

import docker
import pytest

from testenv.config import Settings
from testenv.services.cluster_manager import ClusterManager
from testenv.services.command_runner import CommandRunner
from testenv.services.docker_manager import DockerManager
from testenv.services.orchestrator import EnvironmentOrchestrator

logger = logging.getLogger(__name__)

TEST_PREFIX = "testenv-it"
TEST_REPLICA_SET = "it-rs"
TEST_PORT_START = 27110


@pytest.fixture(scope="session")
def integration_settings() -> Settings:
    return Settings(
        replica_set_name=TEST_REPLICA_SET,
        mongodb_start_port=TEST_PORT_START,
        docker_container_prefix=TEST_PREFIX,
        docker_network_prefix=TEST_PREFIX,
        readiness_timeout_seconds=60,
        readiness_poll_interval_seconds=1.0,
        init_script=None,
    )


@pytest.fixture(scope="session")
def docker_client():
    """Get Docker client."""
    client = docker.from_env()
    yield client
    client.close()


def cleanup_test_containers(docker_client: docker.DockerClient):
    """Remove all test containers and networks."""
    logger.info("Cleaning up test containers...")

    for container in docker_client.containers.list(all=True, filters={"name": TEST_PREFIX}):
        logger.info(f"Removing container: {container.name}")
        container.remove(force=True)

    for network in docker_client.networks.list(names=[f"{TEST_PREFIX}_default"]):
        logger.info(f"Removing network: {network.name}")
        network.remove()


@pytest.fixture(scope="session", autouse=True)
def setup_and_teardown(request):
    """Skip unless enabled; clean up before all tests and after all tests."""
    if os.environ.get("TESTENV_INTEGRATION") != "1":
        pytest.skip("set TESTENV_INTEGRATION=1 to run Docker integration tests")

    client = request.getfixturevalue("docker_client")
    cleanup_test_containers(client)

    yield

    logger.info("Test session complete. Cleaning up...")
    cleanup_test_containers(client)


@pytest.fixture
def orchestrator(integration_settings) -> EnvironmentOrchestrator:
    docker_manager = DockerManager(integration_settings)
    cluster_manager = ClusterManager(docker_manager, integration_settings)
    return EnvironmentOrchestrator(
        docker_manager,
        cluster_manager,
        CommandRunner(integration_settings),
        integration_settings
    )
