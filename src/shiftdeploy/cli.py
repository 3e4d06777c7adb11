"""shiftdeploy CLI。"""

import asyncio
from pathlib import Path

import typer

from shiftdeploy.config import DeployerConfig
from shiftdeploy.logging import setup_logging
from shiftdeploy.models.errors import ShiftDeployError
from shiftdeploy.models.state import DeployRequest, ProgressEvent
from shiftdeploy.readers import GitRepoReader, ProjectReader
from shiftdeploy.services.orchestrator import Orchestrator

app = typer.Typer(
    name="shiftdeploy",
    help="Deploy .NET applications to OpenShift",
    no_args_is_help=True,
    add_completion=False,
)


def _print_progress(event: ProgressEvent) -> None:
    typer.echo(event.message)


def _print_log(source: str, line: str) -> None:
    typer.echo(f"[{source}] {line}")


def build_orchestrator(config: DeployerConfig) -> Orchestrator:
    """CLI用のOrchestratorを作成する。"""
    return Orchestrator(config, progress=_print_progress, log_sink=_print_log)


def _load_config() -> DeployerConfig:
    config = DeployerConfig()
    setup_logging(config.log_level, config.log_format)
    return config


def _fail(e: ShiftDeployError) -> typer.Exit:
    typer.echo(f"error: {e}", err=True)
    return typer.Exit(1)


@app.command()
def deploy(
    project: Path = typer.Argument(Path("."), help="Project file or directory"),
    name: str | None = typer.Option(None, "--name", help="Component name (defaults to the assembly name)"),
    part_of: str | None = typer.Option(None, "--part-of", help="Application group of the component"),
    expose: bool = typer.Option(False, "--expose", help="Expose the application with a route"),
    follow: bool = typer.Option(False, "--follow", help="Stream build and application logs"),
    build: bool = typer.Option(True, "--build/--no-build", help="Build the sources before deploying"),
) -> None:
    """
    Deploy a .NET project.

    Examples:
        shiftdeploy deploy
        shiftdeploy deploy src/Web/Web.csproj --expose
        shiftdeploy deploy --name web --no-build
    """
    config = _load_config()
    orchestrator = build_orchestrator(config)

    async def run() -> str | None:
        info, project_file = ProjectReader().read(project)
        request = DeployRequest(
            project=info,
            source_dir=project_file.parent,
            project_file=project_file,
            name=name,
            part_of=part_of,
            expose=expose,
            follow=follow,
            build=build,
            git=await GitRepoReader().read(project_file.parent),
        )
        result = await orchestrator.deploy(request)
        return result.url

    try:
        url = asyncio.run(run())
    except ShiftDeployError as e:
        raise _fail(e) from e
    except KeyboardInterrupt:
        typer.echo("Deployment cancelled.", err=True)
        raise typer.Exit(130)

    if url:
        typer.echo(f"The application is exposed at '{url}'.")


@app.command()
def delete(name: str = typer.Argument(..., help="Component name")) -> None:
    """Delete all resources of a component."""
    config = _load_config()
    orchestrator = build_orchestrator(config)
    try:
        result = asyncio.run(orchestrator.delete(name))
    except ShiftDeployError as e:
        raise _fail(e) from e

    typer.echo(f"Removed {result.removed} resources.")
    if not result.success:
        for kind, message in result.failures.items():
            typer.echo(f"error: failed to delete {kind} resources: {message}", err=True)
        raise typer.Exit(1)


@app.command("list")
def list_components() -> None:
    """List the components deployed in the namespace."""
    config = _load_config()
    orchestrator = build_orchestrator(config)
    try:
        components = asyncio.run(orchestrator.list_components())
    except ShiftDeployError as e:
        raise _fail(e) from e

    if not components:
        typer.echo("No components found.")
        return
    for component in components:
        details = [f"part of '{component.part_of}'"] if component.part_of else []
        if component.url:
            details.append(component.url)
        if "Deployment" not in component.kinds:
            details.append("not deployed")
        line = component.name
        if details:
            line += f" ({', '.join(details)})"
        typer.echo(line)


@app.command()
def serve() -> None:
    """Run the MCP server over streamable HTTP."""
    import uvicorn
    from starlette.middleware import Middleware

    from shiftdeploy.middleware import TokenAuthMiddleware
    from shiftdeploy.server import create_server

    config = _load_config()
    mcp = create_server(config, build_orchestrator(config))
    http_app = mcp.http_app(
        transport="streamable-http",
        middleware=[Middleware(TokenAuthMiddleware, url_token=config.url_token)],
    )
    uvicorn.run(http_app, host=config.host, port=config.port)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
