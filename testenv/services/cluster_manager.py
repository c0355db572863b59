from pymongo import MongoClient
from pymongo.errors import OperationFailure, PyMongoError
from typing import Any, Callable, Dict, List, Optional
import asyncio
import inspect
import logging
import time

from testenv.config import Settings, settings as default_settings
from testenv.exceptions import StartupTimeout
from testenv.models.cluster import ClusterNode, ReplicaSetConfig
from testenv.services.docker_manager import DockerManager

logger = logging.getLogger(__name__)

# Server error code for replSetInitiate on an already initialized set
ALREADY_INITIALIZED = 23


class ClusterManager:
    """Probes MongoDB nodes and configures the replica set"""

    def __init__(
        self,
        docker_manager: DockerManager,
        settings: Optional[Settings] = None,
        client_factory: Callable[..., MongoClient] = MongoClient,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize cluster manager"""
        self.docker_manager = docker_manager
        self.settings = settings or default_settings
        self.client_factory = client_factory
        self.sleep = sleep
        self.clock = clock
        self.mongo_clients: Dict[str, MongoClient] = {}

    def plan_nodes(self, node_count: Optional[int] = None) -> List[ClusterNode]:
        return plan_nodes(self.settings, node_count)

    def build_config(self, nodes: List[ClusterNode]) -> ReplicaSetConfig:
        return ReplicaSetConfig.from_nodes(
            self.settings.replica_set_name,
            nodes,
            self.docker_manager.get_member_host
        )

    def _get_mongo_client(self, node: ClusterNode) -> MongoClient:
        """Get or create MongoDB client for a node"""
        connection_string = f"mongodb://{node.host}:{node.port}/?directConnection=true"

        if connection_string not in self.mongo_clients:
            timeout_ms = int(self.settings.readiness_poll_interval_seconds * 1000) or 1000
            self.mongo_clients[connection_string] = self.client_factory(
                connection_string,
                serverSelectionTimeoutMS=timeout_ms,
                connectTimeoutMS=timeout_ms
            )
            logger.debug(f"Created MongoDB client for {node.host}:{node.port}")

        return self.mongo_clients[connection_string]

    async def ping(self, node: ClusterNode) -> bool:
        """Readiness probe: True once the node answers a ping"""
        try:
            self._get_mongo_client(node).admin.command("ping")
            return True
        except PyMongoError as e:
            logger.debug(f"Ping to {node.node_id} failed: {e}")
            return False

    async def is_writable_primary(self, node: ClusterNode) -> bool:
        try:
            hello = self._get_mongo_client(node).admin.command("hello")
        except PyMongoError as e:
            logger.debug(f"hello on {node.node_id} failed: {e}")
            return False
        return bool(hello.get("isWritablePrimary"))

    def _attempt_budget(self, timeout_seconds: float) -> int:
        interval = self.settings.readiness_poll_interval_seconds
        if interval <= 0:
            return max(1, int(timeout_seconds))
        return max(1, int(timeout_seconds // interval))

    async def poll(
        self,
        node: ClusterNode,
        check: Callable[[ClusterNode], Any],
        timeout_seconds: Optional[float] = None,
        description: str = "ready"
    ) -> int:
        """
        Run a check at a fixed interval until it passes

        Bounded both by the attempt budget and by a wall-clock deadline, so
        checks that block (server selection against a closed port) do not
        stretch the wait past timeout_seconds.

        Args:
            node: Node under test
            check: Sync or async callable returning True on success
            timeout_seconds: Total budget, defaults to the readiness timeout
            description: What is being waited for, used in log messages

        Returns:
            int: The attempt number that succeeded

        Raises:
            StartupTimeout: If no attempt succeeded within the budget
        """
        if timeout_seconds is None:
            timeout_seconds = self.settings.readiness_timeout_seconds
        attempts = self._attempt_budget(timeout_seconds)
        interval = self.settings.readiness_poll_interval_seconds
        deadline = self.clock() + timeout_seconds
        made = 0

        for attempt in range(1, attempts + 1):
            if attempt > 1 and self.clock() >= deadline:
                break
            made = attempt
            try:
                result = check(node)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                logger.debug(f"Check for {node.node_id} raised on attempt {attempt}: {e}")
                result = False

            if result:
                logger.info(f"Node {node.node_id} {description} after {attempt} attempt(s)")
                return attempt

            remaining = deadline - self.clock()
            if attempt < attempts and remaining > 0:
                await self.sleep(min(interval, remaining))

        logger.error(f"Node {node.node_id} not {description} after {made} attempts")
        raise StartupTimeout(node.node_id, made, timeout_seconds)

    async def wait_until_ready(
        self,
        node: ClusterNode,
        timeout_seconds: Optional[float] = None,
        probe: Optional[Callable[[ClusterNode], Any]] = None
    ) -> ClusterNode:
        """Block until the node answers its readiness probe"""
        await self.poll(node, probe or self.ping, timeout_seconds, description="ready")
        node.ready = True
        return node

    async def apply_replica_set_config(
        self,
        config: ReplicaSetConfig,
        nodes: List[ClusterNode],
        timeout_seconds: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Initiate the replica set, reconfigure it to the desired membership,
        and wait until the primary candidate accepts writes

        Safe to call again with the same config: an already initialized set
        is tolerated and an unchanged membership is not reconfigured.

        Args:
            config: Desired topology
            nodes: Nodes of the set, in the order used to build config
            timeout_seconds: Budget for the primary election

        Returns:
            Dict: The replica set configuration document now in effect
        """
        candidate = config.primary_candidate
        primary_node = nodes[candidate.member_id]
        client = self._get_mongo_client(primary_node)

        try:
            result = client.admin.command("replSetInitiate", config.to_document())
            logger.info(f"Replica set '{config.set_id}' initiated: {result}")
        except OperationFailure as e:
            if e.code != ALREADY_INITIALIZED:
                logger.error(f"Failed to initiate replica set '{config.set_id}': {e}")
                raise
            logger.info(f"Replica set '{config.set_id}' already initialized")

        current = client.admin.command("replSetGetConfig")["config"]
        desired = config.to_document(version=current["version"] + 1)

        if _membership(current) != _membership(desired):
            logger.info(f"Reconfiguring replica set with config: {desired}")
            client.admin.command("replSetReconfig", desired, force=True)
        else:
            logger.info("Replica set membership already matches, skipping reconfig")

        await self.poll(
            primary_node,
            self.is_writable_primary,
            timeout_seconds,
            description="elected primary"
        )

        return client.admin.command("replSetGetConfig")["config"]

    def get_connection_string(self, nodes: List[ClusterNode], database: Optional[str] = None) -> str:
        """Connection string of the primary candidate, the highest priority node"""
        if not nodes:
            raise ValueError("No nodes provided")
        primary = max(nodes, key=lambda n: n.priority)
        if database is None:
            database = self.settings.mongodb_database
        return primary.connection_string(database)

    def close(self):
        for client in self.mongo_clients.values():
            client.close()
        self.mongo_clients.clear()


def plan_nodes(settings: Settings, node_count: Optional[int] = None) -> List[ClusterNode]:
    """
    Describe the nodes of the replica set

    Nodes are published on consecutive host ports. The first node is the
    primary candidate and gets the highest priority.
    """
    node_count = node_count or settings.node_count
    if not 1 <= node_count <= settings.mongodb_max_nodes:
        raise ValueError(
            f"Node count must be between 1 and {settings.mongodb_max_nodes}, got {node_count}"
        )

    return [
        ClusterNode(
            node_id=f"{settings.replica_set_name}-node{i+1}",
            host=settings.mongodb_host,
            port=settings.mongodb_start_port + i,
            role="primary_candidate" if i == 0 else "secondary",
            priority=settings.primary_priority if i == 0 else 1,
            votes=1
        )
        for i in range(node_count)
    ]


def _membership(config: Dict[str, Any]) -> List[tuple]:
    return sorted(
        (m["_id"], m["host"], m.get("priority", 1), m.get("votes", 1))
        for m in config.get("members", [])
    )
