from pydantic import Field
from pydantic_settings import BaseSettings
from typing import Optional

from testenv import __version__


class Settings(BaseSettings):
    """Application configuration"""

    # Application
    app_name: str = "mongo-testenv"
    app_version: str = __version__
    debug: bool = False

    # MongoDB
    mongodb_version: str = "7.0"
    mongodb_start_port: int = 27017
    mongodb_host: str = "localhost"
    mongodb_database: str = ""
    mongodb_max_nodes: int = 7

    # Docker
    docker_network_prefix: str = "testenv"
    docker_container_prefix: str = "testenv"
    docker_memory_limit: str = "512m"
    docker_stop_timeout: int = 10

    # Replica set
    replica_set_name: str = "rs0"
    node_count: int = 1
    primary_priority: int = Field(2, ge=1)

    # Readiness
    readiness_timeout_seconds: int = 30
    readiness_poll_interval_seconds: float = 1.0

    # Initialization script run in a transient setup container
    init_script: Optional[str] = None
    setup_timeout_seconds: int = 60

    # Test command
    uri_env_var: str = "MONGODB_URI"

    class Config:
        env_file = ".env"
        env_prefix = "TESTENV_"
        case_sensitive = False


# Global settings instance
settings = Settings()
