"""Command line entry point: `testenv run -- npm test`."""
from pathlib import Path
from typing import Dict, List, Optional
import asyncio
import logging

import docker
import requests
import typer
from pymongo.errors import PyMongoError

from testenv.config import Settings, settings
from testenv.exceptions import TestEnvError
from testenv.services.cluster_manager import ClusterManager, plan_nodes
from testenv.services.command_runner import CommandRunner
from testenv.services.docker_manager import DockerManager
from testenv.services.orchestrator import EnvironmentOrchestrator

logger = logging.getLogger(__name__)

# Failures of the environment itself rather than of the tests
ENVIRONMENT_ERRORS = (
    docker.errors.DockerException,
    PyMongoError,
    requests.exceptions.RequestException,
    OSError,
    ValueError,
)

app = typer.Typer(help="Bring up a local MongoDB replica set around a test run")


def _print_version(value: bool) -> None:
    if value:
        typer.echo(f"{settings.app_name} {settings.app_version}")
        raise typer.Exit()


@app.callback()
def main(
    debug: bool = typer.Option(settings.debug, "--debug", help="Verbose logging"),
    version: bool = typer.Option(
        False, "--version", callback=_print_version, is_eager=True, help="Show the version and exit"
    ),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def _build_settings(**overrides) -> Settings:
    """Current settings with CLI options that were actually given applied"""
    return settings.model_copy(update={k: v for k, v in overrides.items() if v is not None})


def _build_orchestrator(cfg: Settings) -> EnvironmentOrchestrator:
    docker_manager = DockerManager(cfg)
    cluster_manager = ClusterManager(docker_manager, cfg)
    return EnvironmentOrchestrator(docker_manager, cluster_manager, CommandRunner(cfg), cfg)


def _parse_env(pairs: List[str]) -> Dict[str, str]:
    env = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected KEY=VALUE, got '{pair}'", param_hint="--env")
        env[key] = value
    return env


def _fail(message: str, code: int) -> typer.Exit:
    typer.secho(message, fg=typer.colors.RED, err=True)
    return typer.Exit(code=code)


NodesOption = typer.Option(
    None, "--nodes", "-n", min=1, max=settings.mongodb_max_nodes, help="Number of replica set members"
)
ReplicaSetOption = typer.Option(None, "--replica-set", help="Replica set name")
PortOption = typer.Option(None, "--port", "-p", min=1024, max=65535, help="Host port of the first node")
TimeoutOption = typer.Option(None, "--timeout", min=1, help="Readiness timeout in seconds")
InitScriptOption = typer.Option(
    None, "--init-script", exists=True, dir_okay=False, help="Script run once in a setup container"
)


@app.command("run")
def run(
    command: List[str] = typer.Argument(..., help="Test command, after --"),
    nodes: Optional[int] = NodesOption,
    replica_set: Optional[str] = ReplicaSetOption,
    port: Optional[int] = PortOption,
    timeout: Optional[int] = TimeoutOption,
    init_script: Optional[Path] = InitScriptOption,
    env: List[str] = typer.Option([], "--env", "-e", help="Extra KEY=VALUE for the test command"),
    always_teardown: bool = typer.Option(False, "--always-teardown", help="Tear down even if tests fail"),
    no_teardown: bool = typer.Option(False, "--no-teardown", help="Leave the cluster running"),
) -> None:
    """Start the replica set, run COMMAND against it and tear down on success."""
    if always_teardown and no_teardown:
        raise typer.BadParameter("--always-teardown and --no-teardown are exclusive")
    extra_env = _parse_env(env)

    cfg = _build_settings(
        node_count=nodes,
        replica_set_name=replica_set,
        mongodb_start_port=port,
        readiness_timeout_seconds=timeout,
        init_script=str(init_script) if init_script else None,
    )
    policy = "always" if always_teardown else "never" if no_teardown else "on_success"

    try:
        orchestrator = _build_orchestrator(cfg)
        result = asyncio.run(orchestrator.run(command, teardown_policy=policy, extra_env=extra_env))
    except ENVIRONMENT_ERRORS as e:
        raise _fail(f"Environment error: {e}", 1)

    if result.error:
        typer.secho(result.error, fg=typer.colors.RED, err=True)
    if result.remaining:
        typer.echo(f"Left running: {', '.join(result.remaining)}", err=True)
    typer.echo(f"{result.state.value} in {result.duration_seconds:.1f}s (exit {result.exit_code})", err=True)
    raise typer.Exit(code=result.exit_code)


async def _bring_up(orchestrator: EnvironmentOrchestrator) -> str:
    """Bring up for `up`; on failure drop the setup container but keep the nodes"""
    try:
        return await orchestrator.bring_up()
    except Exception:
        await orchestrator.teardown(remove_cluster=False)
        raise


@app.command("up")
def up(
    nodes: Optional[int] = NodesOption,
    replica_set: Optional[str] = ReplicaSetOption,
    port: Optional[int] = PortOption,
    timeout: Optional[int] = TimeoutOption,
    init_script: Optional[Path] = InitScriptOption,
) -> None:
    """Start and initialize the replica set, then print its connection string."""
    cfg = _build_settings(
        node_count=nodes,
        replica_set_name=replica_set,
        mongodb_start_port=port,
        readiness_timeout_seconds=timeout,
        init_script=str(init_script) if init_script else None,
    )
    try:
        orchestrator = _build_orchestrator(cfg)
        connection_string = asyncio.run(_bring_up(orchestrator))
    except TestEnvError as e:
        raise _fail(str(e), e.exit_code)
    except ENVIRONMENT_ERRORS as e:
        raise _fail(f"Environment error: {e}", 1)
    typer.echo(connection_string)


@app.command("down")
def down() -> None:
    """Remove every container and the network created by this tool."""
    try:
        removed = asyncio.run(DockerManager(settings).cleanup_all())
    except docker.errors.DockerException as e:
        raise _fail(f"Environment error: {e}", 1)
    for name in removed:
        typer.echo(f"Removed {name}")


@app.command("status")
def status() -> None:
    """List containers created by this tool."""
    try:
        containers = DockerManager(settings).list_containers()
    except docker.errors.DockerException as e:
        raise _fail(f"Environment error: {e}", 1)
    if not containers:
        typer.echo("No test environment containers")
        return
    for info in containers:
        typer.echo(f"{info.name:<40} {info.kind:<6} {info.status}")


@app.command("uri")
def uri(
    replica_set: Optional[str] = ReplicaSetOption,
    port: Optional[int] = PortOption,
) -> None:
    """Print the connection string the test command would receive."""
    cfg = _build_settings(replica_set_name=replica_set, mongodb_start_port=port)
    primary = plan_nodes(cfg)[0]
    typer.echo(primary.connection_string(cfg.mongodb_database))


if __name__ == "__main__":
    app()
