# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
import asyncio
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from deskpilot.config import get_profile, load_settings
from deskpilot.core.exceptions import DeskpilotError
from deskpilot.core.types import Profile, SandboxState, Settings
from deskpilot.input.injector import InputInjector
from deskpilot.logging import configure_logging
from deskpilot.sandbox.controller import SandboxController
from deskpilot.sandbox.diagnostics import DiagnosticsCollector
from deskpilot.sandbox.e2b import E2BDesktopProvider
from deskpilot.sandbox.prober import CapabilityProber
from deskpilot.sandbox.provider import DesktopProvider


T = TypeVar("T")

console = Console()

app = typer.Typer(help="Deskpilot: remote desktop sandbox control and text input.")

ProfileOption = Annotated[
    str | None,
    typer.Option("--profile", "-p", help="Profile to use from settings.deskpilot.yaml."),
]
ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to a settings file."),
]
SandboxArg = Annotated[str, typer.Argument(help="Sandbox identifier.")]


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """
    Deskpilot: drive an agent's remote virtual desktop.
    """
    configure_logging("DEBUG" if verbose else "INFO")


@dataclass
class Session:
    """Components wired over one provider for a single command."""

    profile: Profile
    controller: SandboxController
    prober: CapabilityProber
    injector: InputInjector

    def diagnostics(self) -> DiagnosticsCollector:
        return DiagnosticsCollector(self.controller, self.prober, self.profile, self.injector)


def _safe_load_settings(config_path: Path | None = None) -> Settings:
    """Load settings, exiting with a readable message on failure.

    Raises:
        typer.Exit: If the settings file is missing or invalid.
    """
    try:
        return load_settings(config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None
    except Exception as e:
        console.print(f"[red]Error loading settings: {e}[/red]")
        raise typer.Exit(code=1) from None


def _get_active_profile(settings: Settings, profile_name: str | None) -> Profile:
    try:
        return get_profile(settings, profile_name)
    except DeskpilotError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None


def create_provider(profile: Profile) -> DesktopProvider:
    """Build the remote desktop provider for a profile."""
    return E2BDesktopProvider(display=profile.display)


def build_session(profile: Profile, provider: DesktopProvider | None = None) -> Session:
    """Wire controller, prober and injector over one provider."""
    controller = SandboxController(provider or create_provider(profile), profile)
    prober = CapabilityProber(controller.provider, profile)
    prober.attach(controller)
    injector = InputInjector(controller, prober)
    return Session(profile=profile, controller=controller, prober=prober, injector=injector)


def _run(
    profile_name: str | None,
    config_path: Path | None,
    action: Callable[[Session], Awaitable[T]],
) -> T:
    """Run an async action against a fresh session, mapping domain errors to exit 1."""
    settings = _safe_load_settings(config_path)
    profile = _get_active_profile(settings, profile_name)

    async def _main() -> T:
        session = build_session(profile)
        try:
            return await action(session)
        finally:
            await session.controller.close()

    try:
        return asyncio.run(_main())
    except DeskpilotError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None


def _state_style(state: SandboxState) -> str:
    return {
        SandboxState.RUNNING: "green",
        SandboxState.PAUSED: "yellow",
        SandboxState.TERMINATED: "dim",
    }.get(state, "red")


@app.command()
def create(
    sandbox_id: Annotated[
        str | None,
        typer.Option("--attach", "-a", help="Reuse this sandbox if it is running or paused."),
    ] = None,
    template: Annotated[str | None, typer.Option("--template", "-t", help="Provider template.")] = None,
    profile_name: ProfileOption = None,
    config_path: ConfigOption = None,
) -> None:
    """Provision a desktop sandbox, or attach to an existing one."""

    async def _action(session: Session) -> None:
        handle = await session.controller.create_or_attach(sandbox_id, template=template)
        console.print(f"[green]Sandbox {handle.id} is running.[/green]")
        console.print(f"Stream: {handle.stream_endpoint}")

    _run(profile_name, config_path, _action)


@app.command()
def status(
    sandbox_id: SandboxArg,
    profile_name: ProfileOption = None,
    config_path: ConfigOption = None,
) -> None:
    """Show the provider's current state for a sandbox."""

    async def _action(session: Session) -> None:
        result = await session.controller.get_status(sandbox_id)
        style = _state_style(result.state)
        console.print(f"Sandbox {sandbox_id}: [{style}]{result.state}[/{style}]")
        if result.stream_endpoint:
            console.print(f"Stream: {result.stream_endpoint}")
        if result.error:
            console.print(f"[yellow]{result.error}[/yellow]")

    _run(profile_name, config_path, _action)


@app.command()
def pause(
    sandbox_id: SandboxArg,
    profile_name: ProfileOption = None,
    config_path: ConfigOption = None,
) -> None:
    """Pause a running sandbox. Prints the new identifier to use afterwards."""

    async def _action(session: Session) -> None:
        await session.controller.get_status(sandbox_id)
        result = await session.controller.pause(sandbox_id)
        console.print(f"[green]Sandbox paused.[/green] New id: {result.new_sandbox_id}")

    _run(profile_name, config_path, _action)


@app.command()
def resume(
    sandbox_id: SandboxArg,
    profile_name: ProfileOption = None,
    config_path: ConfigOption = None,
) -> None:
    """Resume a paused sandbox."""

    async def _action(session: Session) -> None:
        await session.controller.get_status(sandbox_id)
        handle = await session.controller.resume(sandbox_id)
        console.print(f"[green]Sandbox {handle.id} resumed.[/green]")
        console.print(f"Stream: {handle.stream_endpoint}")

    _run(profile_name, config_path, _action)


@app.command()
def kill(
    sandbox_id: SandboxArg,
    profile_name: ProfileOption = None,
    config_path: ConfigOption = None,
) -> None:
    """Terminate a sandbox."""

    async def _action(session: Session) -> None:
        await session.controller.kill(sandbox_id)
        console.print(f"[green]Sandbox {sandbox_id} terminated.[/green]")

    _run(profile_name, config_path, _action)


@app.command(name="type")
def type_text(
    sandbox_id: SandboxArg,
    text: Annotated[
        str | None,
        typer.Argument(help="Text to type. Read from stdin when omitted."),
    ] = None,
    profile_name: ProfileOption = None,
    config_path: ConfigOption = None,
) -> None:
    """Type text into the focused window of a running sandbox."""
    payload = text if text is not None else sys.stdin.read()

    async def _action(session: Session) -> None:
        result = await session.injector.inject(sandbox_id, payload)
        message = (
            f"Typed {result.delivered_chars} characters via {result.strategy_used} "
            f"({result.segments_sent} segments)"
        )
        if result.degraded:
            console.print(f"[yellow]{message}, degraded[/yellow]")
        else:
            console.print(f"[green]{message}[/green]")

    _run(profile_name, config_path, _action)


@app.command()
def diagnose(
    sandbox_id: SandboxArg,
    profile_name: ProfileOption = None,
    config_path: ConfigOption = None,
) -> None:
    """Run read-only health checks against a sandbox."""

    async def _action(session: Session) -> bool:
        report = await session.diagnostics().diagnose(sandbox_id)

        table = Table(title=f"Diagnostics: {sandbox_id}")
        table.add_column("Check", style="cyan")
        table.add_column("Result")
        table.add_column("Detail")
        for check in report.checks:
            result = "[green]ok[/green]" if check.ok else "[red]fail[/red]"
            table.add_row(check.name, result, check.detail or "-")
        console.print(table)
        return report.healthy

    if not _run(profile_name, config_path, _action):
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
