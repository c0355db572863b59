"""
Pytest configuration and fakes for the Docker and MongoDB boundaries
"""
import copy
from typing import Dict, List

import docker
import pytest
from pymongo.errors import OperationFailure, ServerSelectionTimeoutError

from testenv.config import Settings
from testenv.services.cluster_manager import ClusterManager
from testenv.services.command_runner import CommandRunner
from testenv.services.docker_manager import DockerManager
from testenv.services.orchestrator import EnvironmentOrchestrator


class FakeContainer:
    def __init__(self, client, name: str, labels: Dict[str, str], kwargs: Dict):
        self.client = client
        self.name = name
        self.labels = labels
        self.kwargs = kwargs
        self.status = "running"
        self.exit_status = 0
        self.wait_error = None
        self.output = b""

    def reload(self):
        if self.name not in self.client.containers.by_name:
            raise docker.errors.NotFound(f"No such container: {self.name}")

    def start(self):
        self.status = "running"

    def stop(self, timeout=10):
        self.status = "exited"

    def remove(self, force=False):
        self.client.containers.by_name.pop(self.name, None)

    def wait(self, timeout=None):
        if self.wait_error:
            raise self.wait_error
        self.status = "exited"
        return {"StatusCode": self.exit_status}

    def logs(self, tail=None):
        return self.output


class FakeContainers:
    def __init__(self, client):
        self.client = client
        self.by_name: Dict[str, FakeContainer] = {}
        self.run_calls: List[Dict] = []
        self.setup_exit_status = 0
        self.setup_wait_error = None
        self.run_error = None

    def get(self, name):
        if name not in self.by_name:
            raise docker.errors.NotFound(f"No such container: {name}")
        return self.by_name[name]

    def run(self, image, name, **kwargs):
        self.run_calls.append(dict(image=image, name=name, **kwargs))
        if self.run_error:
            raise self.run_error
        container = FakeContainer(self.client, name, kwargs.get("labels", {}), kwargs)
        if kwargs.get("labels", {}).get("testenv.role") == "setup":
            container.exit_status = self.setup_exit_status
            container.wait_error = self.setup_wait_error
        self.by_name[name] = container
        return container

    def list(self, all=False, filters=None):
        needle = (filters or {}).get("name", "")
        return [c for c in self.by_name.values() if needle in c.name and (all or c.status == "running")]


class FakeNetwork:
    def __init__(self, networks, name):
        self.networks = networks
        self.name = name

    def remove(self):
        self.networks.by_name.pop(self.name, None)


class FakeNetworks:
    def __init__(self):
        self.by_name: Dict[str, FakeNetwork] = {}

    def get(self, name):
        if name not in self.by_name:
            raise docker.errors.NotFound(f"network {name} not found")
        return self.by_name[name]

    def create(self, name, driver=None):
        self.by_name[name] = FakeNetwork(self, name)
        return self.by_name[name]


class FakeDockerClient:
    def __init__(self):
        self.containers = FakeContainers(self)
        self.networks = FakeNetworks()

    def ping(self):
        return True


class FakeReplicaSet:
    """Server-side state shared by every fake client"""

    def __init__(self, ping_failures: int = 0):
        self.ping_failures = ping_failures
        self.ping_attempts = 0
        self.config = None
        self.commands: List[str] = []
        self.clients: List["FakeMongoClient"] = []

    def command(self, name, value=None, **kwargs):
        self.commands.append(name)
        if name == "ping":
            self.ping_attempts += 1
            if self.ping_failures > 0:
                self.ping_failures -= 1
                raise ServerSelectionTimeoutError("connection refused")
            return {"ok": 1}
        if name == "replSetInitiate":
            if self.config is not None:
                raise OperationFailure("already initialized", code=23)
            self.config = dict(copy.deepcopy(value), version=1)
            return {"ok": 1}
        if name == "replSetGetConfig":
            if self.config is None:
                raise OperationFailure("no replset config has been received", code=94)
            return {"config": copy.deepcopy(self.config), "ok": 1}
        if name == "replSetReconfig":
            assert kwargs.get("force") is True
            self.config = copy.deepcopy(value)
            return {"ok": 1}
        if name == "hello":
            return {"isWritablePrimary": self.config is not None, "ok": 1}
        raise AssertionError(f"unexpected command {name}")


class FakeAdmin:
    def __init__(self, replica_set):
        self.replica_set = replica_set

    def command(self, name, value=None, **kwargs):
        return self.replica_set.command(name, value, **kwargs)


class FakeMongoClient:
    def __init__(self, replica_set, uri, **kwargs):
        self.uri = uri
        self.kwargs = kwargs
        self.admin = FakeAdmin(replica_set)
        self.closed = False
        replica_set.clients.append(self)

    def close(self):
        self.closed = True


class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class FakeCommandRunner(CommandRunner):
    def __init__(self, settings, exit_code=0):
        super().__init__(settings)
        self.exit_code = exit_code
        self.calls = []

    async def run(self, command, connection_string, extra_env=None, cwd=None):
        self.calls.append((command, connection_string, extra_env))
        return self.exit_code


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        replica_set_name="rs0",
        node_count=1,
        mongodb_start_port=27100,
        docker_container_prefix="testenv",
        docker_network_prefix="testenv",
        readiness_timeout_seconds=10,
        readiness_poll_interval_seconds=1.0,
        init_script=None,
        mongodb_database="",
    )


@pytest.fixture
def docker_client() -> FakeDockerClient:
    return FakeDockerClient()


@pytest.fixture
def replica_set() -> FakeReplicaSet:
    return FakeReplicaSet()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def docker_manager(test_settings, docker_client) -> DockerManager:
    return DockerManager(test_settings, client=docker_client)


@pytest.fixture
def cluster_manager(test_settings, docker_manager, replica_set, sleep) -> ClusterManager:
    return ClusterManager(
        docker_manager,
        test_settings,
        client_factory=lambda uri, **kwargs: FakeMongoClient(replica_set, uri, **kwargs),
        sleep=sleep
    )


@pytest.fixture
def command_runner(test_settings) -> FakeCommandRunner:
    return FakeCommandRunner(test_settings)


@pytest.fixture
def orchestrator(test_settings, docker_manager, cluster_manager, command_runner) -> EnvironmentOrchestrator:
    return EnvironmentOrchestrator(docker_manager, cluster_manager, command_runner, test_settings)
