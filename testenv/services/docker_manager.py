import docker
from docker.models.containers import Container
from docker.models.networks import Network
from typing import Dict, List, Optional, Tuple
import logging
from pathlib import Path

import requests

from testenv.config import Settings, settings as default_settings
from testenv.exceptions import SetupScriptFailed
from testenv.models.cluster import ClusterNode, ContainerInfo

logger = logging.getLogger(__name__)

MONGOD_PORT = 27017
SETUP_MOUNT = "/setup"


class DockerManager:
    """Manages Docker containers for the test replica set"""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[docker.DockerClient] = None):
        """Initialize Docker client"""
        self.settings = settings or default_settings
        try:
            self.client = client or docker.from_env()
            self.client.ping()
            logger.info("Docker client initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize Docker client: {e}")
            raise

        self.containers: Dict[str, Container] = {}
        self.network: Optional[Network] = None

    @property
    def network_name(self) -> str:
        return f"{self.settings.docker_network_prefix}_default"

    @property
    def setup_container_name(self) -> str:
        return f"{self.settings.docker_container_prefix}-setup"

    def _ensure_default_network(self) -> Network:
        """Ensure the default network exists"""
        if self.network is not None:
            return self.network
        try:
            self.network = self.client.networks.get(self.network_name)
            logger.info(f"Using existing network: {self.network_name}")
        except docker.errors.NotFound:
            self.network = self.client.networks.create(self.network_name, driver="bridge")
            logger.info(f"Created network: {self.network_name}")
        return self.network

    def get_container_name(self, node_id: str) -> str:
        """Generate container name from node ID"""
        return f"{self.settings.docker_container_prefix}-{node_id}"

    def get_node_hostname(self, node_id: str) -> str:
        """Hostname of a node; the container name, so other members resolve it on the network"""
        return self.get_container_name(node_id)

    def get_member_host(self, node_id: str) -> str:
        """host:port of a node as seen by the other members"""
        return f"{self.get_node_hostname(node_id)}:{MONGOD_PORT}"

    def _find_container(self, name: str) -> Optional[Container]:
        try:
            return self.client.containers.get(name)
        except docker.errors.NotFound:
            return None

    async def create_replica_set_node(self, node: ClusterNode, replica_set_name: str) -> Container:
        """
        Create and start a MongoDB container for a replica set node.

        A container left over from a previous run is reused, and started
        again if it was stopped.

        Args:
            node: Node to launch
            replica_set_name: Name of the replica set

        Returns:
            Container: The running Docker container
        """
        container_name = self.get_container_name(node.node_id)

        existing = self.containers.get(node.node_id) or self._find_container(container_name)
        if existing is not None:
            existing.reload()
            if existing.status != "running":
                existing.start()
                logger.info(f"Restarted existing container {container_name}")
            else:
                logger.info(f"Reusing running container {container_name}")
            self.containers[node.node_id] = existing
            return existing

        self._ensure_default_network()

        try:
            command = f"mongod --replSet {replica_set_name} --bind_ip_all --port {MONGOD_PORT}"

            container = self.client.containers.run(
                image=f"mongo:{self.settings.mongodb_version}",
                name=container_name,
                hostname=self.get_node_hostname(node.node_id),
                command=command,
                ports={f"{MONGOD_PORT}/tcp": node.port},
                network=self.network_name,
                labels={"testenv.role": "node", "testenv.replica_set": replica_set_name},
                mem_limit=self.settings.docker_memory_limit,
                detach=True,
                remove=False
            )

            self.containers[node.node_id] = container
            logger.info(f"Created container {container_name} on port {node.port}")

            return container

        except Exception as e:
            logger.error(f"Failed to create container {container_name}: {e}")
            raise

    async def run_setup_script(self, script_path: str, primary_node_id: str) -> Tuple[int, str]:
        """
        Run the initialization script in a transient setup container.

        `.js` scripts are executed with mongosh against the primary; anything
        else is run with sh and receives the primary as MONGODB_HOST.

        Args:
            script_path: Path of the caller-owned script on the host
            primary_node_id: Node the script should talk to

        Returns:
            Tuple[int, str]: Exit status of the script and the container logs
        """
        script = Path(script_path).resolve()
        if not script.is_file():
            raise FileNotFoundError(f"Initialization script not found: {script}")

        await self.remove_setup_container()

        primary_host = self.get_member_host(primary_node_id)
        mounted = f"{SETUP_MOUNT}/{script.name}"
        if script.suffix == ".js":
            command = ["mongosh", "--quiet", "--host", primary_host, mounted]
        else:
            command = ["sh", mounted]

        container = self.client.containers.run(
            image=f"mongo:{self.settings.mongodb_version}",
            name=self.setup_container_name,
            command=command,
            environment={"MONGODB_HOST": primary_host},
            volumes={str(script.parent): {"bind": SETUP_MOUNT, "mode": "ro"}},
            network=self._ensure_default_network().name,
            labels={"testenv.role": "setup"},
            detach=True,
            remove=False
        )
        logger.info(f"Started setup container running {script.name} against {primary_host}")

        try:
            result = container.wait(timeout=self.settings.setup_timeout_seconds)
        except requests.exceptions.RequestException as e:
            logger.error(f"Setup script did not finish within {self.settings.setup_timeout_seconds}s: {e}")
            raise SetupScriptFailed(str(script), -1, str(e)) from e
        status_code = result.get("StatusCode", -1)
        logs = container.logs().decode("utf-8", errors="replace")
        logger.info(f"Setup script finished with code {status_code}")
        logger.debug(f"Setup script output:\n{logs}")

        return status_code, logs

    async def remove_setup_container(self) -> bool:
        """Stop and remove the transient setup container if present"""
        container = self._find_container(self.setup_container_name)
        if container is None:
            return False
        return self._stop_and_remove(container)

    async def remove_node(self, node_id: str) -> bool:
        """
        Stop and remove a MongoDB node container

        Args:
            node_id: Node identifier

        Returns:
            bool: True if a container was removed
        """
        container = self.containers.pop(node_id, None) or self._find_container(
            self.get_container_name(node_id)
        )
        if container is None:
            logger.warning(f"Container {self.get_container_name(node_id)} not found")
            return False
        return self._stop_and_remove(container)

    def _stop_and_remove(self, container: Container) -> bool:
        try:
            container.reload()
            if container.status == "running":
                container.stop(timeout=self.settings.docker_stop_timeout)
                logger.info(f"Stopped container {container.name}")
            container.remove(force=True)
            logger.info(f"Removed container {container.name}")
            return True
        except docker.errors.NotFound:
            logger.debug(f"Container {container.name} already gone")
            return False

    def list_containers(self) -> List[ContainerInfo]:
        """List containers owned by the test environment"""
        prefix = f"{self.settings.docker_container_prefix}-"
        containers = self.client.containers.list(
            all=True,
            filters={"name": self.settings.docker_container_prefix}
        )
        infos = []
        for container in containers:
            if not container.name.startswith(prefix):
                continue
            role = container.labels.get("testenv.role", "other")
            infos.append(ContainerInfo(
                name=container.name,
                status=container.status,
                kind=role if role in ("node", "setup") else "other"
            ))
        return sorted(infos, key=lambda info: info.name)

    async def cleanup_all(self) -> List[str]:
        """Remove every container with the configured prefix and the network"""
        logger.info("Cleaning up all test environment resources")

        removed = []
        for info in self.list_containers():
            container = self._find_container(info.name)
            if container is not None and self._stop_and_remove(container):
                removed.append(info.name)

        try:
            network = self.client.networks.get(self.network_name)
            network.remove()
            logger.info(f"Removed network {self.network_name}")
        except docker.errors.NotFound:
            pass
        except docker.errors.APIError as e:
            logger.warning(f"Failed to remove network {self.network_name} (might be in use): {e}")

        self.containers.clear()
        self.network = None
        return removed
