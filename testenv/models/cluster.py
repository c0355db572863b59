from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field


class ClusterNode(BaseModel):
    """A single MongoDB node of the test replica set"""
    node_id: str = Field(..., description="Unique identifier for the node")
    host: str = Field(default="localhost", description="Host address reachable from the caller")
    port: int = Field(..., description="Published port number", ge=1024, le=65535)
    role: Literal["primary_candidate", "secondary"] = Field(
        default="secondary",
        description="Node role in replica set"
    )
    priority: int = Field(default=1, description="Election priority", ge=0, le=1000)
    votes: int = Field(default=1, description="Number of votes in elections", ge=0, le=1)
    ready: bool = Field(default=False, description="Node answered its readiness probe")

    def connection_string(self, database: str = "") -> str:
        """
        Connection string handed to the test command

        directConnection=true is required because the replica set members
        are configured with in-network hostnames that the host cannot resolve.
        """
        return (
            f"mongodb://{self.host}:{self.port}/{database}"
            f"?directConnection=true&readPreference=primary"
        )


class ReplicaSetMember(BaseModel):
    """One entry of the replica set members array"""
    member_id: int = Field(..., description="Member _id", ge=0)
    host: str = Field(..., description="Member host:port as seen by the other members")
    priority: int = Field(default=1, description="Election priority", ge=0, le=1000)
    votes: int = Field(default=1, description="Number of votes in elections", ge=0, le=1)

    def to_document(self) -> Dict[str, Any]:
        return {
            "_id": self.member_id,
            "host": self.host,
            "priority": self.priority,
            "votes": self.votes
        }


class ReplicaSetConfig(BaseModel):
    """Desired replication topology, applied once at init time"""
    set_id: str = Field(..., description="Name of the replica set")
    members: List[ReplicaSetMember] = Field(..., description="Ordered list of members", min_length=1)

    model_config = {"frozen": True}

    @classmethod
    def from_nodes(cls, set_id: str, nodes: List[ClusterNode], member_host) -> "ReplicaSetConfig":
        """
        Build the configuration for a list of nodes

        Args:
            set_id: Name of the replica set
            nodes: Nodes in start order, primary candidate first
            member_host: Callable mapping a node_id to its in-network host:port

        Returns:
            ReplicaSetConfig: Frozen configuration
        """
        members = [
            ReplicaSetMember(
                member_id=idx,
                host=member_host(node.node_id),
                priority=node.priority,
                votes=node.votes
            )
            for idx, node in enumerate(nodes)
        ]
        return cls(set_id=set_id, members=members)

    def to_document(self, version: Optional[int] = None) -> Dict[str, Any]:
        """Render the replSetInitiate / replSetReconfig document"""
        document: Dict[str, Any] = {
            "_id": self.set_id,
            "members": [member.to_document() for member in self.members]
        }
        if version is not None:
            document["version"] = version
        return document

    @property
    def primary_candidate(self) -> ReplicaSetMember:
        """Highest priority member, the first one on a tie"""
        return max(self.members, key=lambda m: m.priority)


class ContainerInfo(BaseModel):
    """A container owned by the test environment"""
    name: str = Field(..., description="Container name")
    status: str = Field(..., description="Docker container status")
    kind: Literal["node", "setup", "other"] = Field(default="other", description="What the container is for")
