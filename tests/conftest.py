# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""Shared fixtures and fakes for all tests.

``FakeDesktopProvider`` is an in-memory remote desktop: it records every
call, understands the handful of shell commands deskpilot issues, and
reconstructs the text that would have appeared on screen.
"""
import asyncio
import shlex
from collections.abc import Callable
from typing import Any

import pytest

from deskpilot.core.exceptions import SandboxNotFoundError
from deskpilot.core.types import (
    CommandResult,
    Profile,
    ProviderStatus,
    ProvisionedSandbox,
)
from deskpilot.sandbox.controller import SandboxController
from deskpilot.sandbox.prober import CapabilityProber


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDesktopProvider:
    """In-memory DesktopProvider.

    Attributes:
        states: Provider-side state per sandbox id ("running", "paused", ...).
        calls: Every call as ``(operation, sandbox_id, *args)``.
        delays: Seconds to sleep before answering, per operation.
        clipboard_installed: Whether ``which xclip`` succeeds.
        fail_command: Predicate; matching commands exit with code 1.
        on_call: Hook invoked after each call is recorded.
    """

    def __init__(self) -> None:
        self.states: dict[str, str] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.delays: dict[str, float] = {}
        self.clipboard_installed = True
        self.fail_command: Callable[[str], bool] | None = None
        self.command_outputs: dict[str, CommandResult] = {}
        self.on_call: Callable[[str, tuple[Any, ...]], None] | None = None
        self.files: dict[tuple[str, str], bytes] = {}
        self.clipboards: dict[str, str] = {}
        self.screenshot_bytes = b"\x89PNG\r\n\x1a\n"
        self._typed: dict[str, list[str]] = {}
        self._errors: dict[str, tuple[BaseException, int | None]] = {}
        self._counter = 0
        self.closed = False

    def add_sandbox(self, sandbox_id: str, state: str = "running") -> str:
        self.states[sandbox_id] = state
        return sandbox_id

    def fail(self, operation: str, error: BaseException, times: int | None = None) -> None:
        """Make ``operation`` raise ``error``, ``times`` times or forever."""
        self._errors[operation] = (error, times)

    def typed_text(self, sandbox_id: str) -> str:
        return "".join(self._typed.get(sandbox_id, []))

    def count(self, operation: str, sandbox_id: str | None = None) -> int:
        return sum(
            1
            for call in self.calls
            if call[0] == operation and (sandbox_id is None or call[1] == sandbox_id)
        )

    def commands(self, sandbox_id: str | None = None) -> list[str]:
        return [
            call[2]
            for call in self.calls
            if call[0] == "run_command" and (sandbox_id is None or call[1] == sandbox_id)
        ]

    async def _enter(self, operation: str, sandbox_id: str | None, *args: Any) -> None:
        call = (operation, sandbox_id, *args)
        self.calls.append(call)
        if self.on_call is not None:
            self.on_call(operation, call)
        await asyncio.sleep(self.delays.get(operation, 0))
        entry = self._errors.get(operation)
        if entry is not None:
            error, remaining = entry
            if remaining is not None:
                if remaining <= 1:
                    del self._errors[operation]
                else:
                    self._errors[operation] = (error, remaining - 1)
            raise error
        if sandbox_id is not None and sandbox_id not in self.states:
            raise SandboxNotFoundError(sandbox_id)

    @staticmethod
    def stream_url(sandbox_id: str) -> str:
        return f"https://stream.test/{sandbox_id}"

    async def create(
        self,
        template: str | None = None,
        resolution: tuple[int, int] | None = None,
        timeout_s: int | None = None,
    ) -> ProvisionedSandbox:
        await self._enter("create", None, template)
        self._counter += 1
        sandbox_id = self.add_sandbox(f"sbx-{self._counter}")
        return ProvisionedSandbox(sandbox_id=sandbox_id, stream_url=self.stream_url(sandbox_id))

    async def get_status(self, sandbox_id: str) -> ProviderStatus:
        await self._enter("get_status", sandbox_id)
        state = self.states[sandbox_id]
        url = self.stream_url(sandbox_id) if state == "running" else None
        return ProviderStatus(state=state, stream_url=url)

    async def pause(self, sandbox_id: str) -> str:
        await self._enter("pause", sandbox_id)
        self._counter += 1
        new_id = f"{sandbox_id}-p{self._counter}"
        del self.states[sandbox_id]
        self.states[new_id] = "paused"
        return new_id

    async def resume(self, sandbox_id: str) -> ProvisionedSandbox:
        await self._enter("resume", sandbox_id)
        self.states[sandbox_id] = "running"
        return ProvisionedSandbox(sandbox_id=sandbox_id, stream_url=self.stream_url(sandbox_id))

    async def kill(self, sandbox_id: str) -> None:
        await self._enter("kill", sandbox_id)
        del self.states[sandbox_id]

    async def run_command(
        self,
        sandbox_id: str,
        command: str,
        env: dict[str, str] | None = None,
        timeout_s: float | None = None,
    ) -> CommandResult:
        await self._enter("run_command", sandbox_id, command)
        if self.fail_command is not None and self.fail_command(command):
            return CommandResult(exit_code=1, stderr="simulated failure")
        if command in self.command_outputs:
            return self.command_outputs[command]
        return self._execute(sandbox_id, command)

    def _execute(self, sandbox_id: str, command: str) -> CommandResult:
        if command == "which xclip":
            if self.clipboard_installed:
                return CommandResult(exit_code=0, stdout="/usr/bin/xclip\n")
            return CommandResult(exit_code=1)
        if command.startswith("xclip -selection clipboard -i "):
            path = shlex.split(command)[4]
            self.clipboards[sandbox_id] = self.files.pop((sandbox_id, path)).decode("utf-8")
            return CommandResult(exit_code=0)
        if command.startswith("xdotool key "):
            # xdotool key --delay <ms> U4E16 U754C ...
            keys = shlex.split(command)[4:]
            self._typed.setdefault(sandbox_id, []).extend(chr(int(key[1:], 16)) for key in keys)
            return CommandResult(exit_code=0)
        if command.startswith("echo "):
            value = ":0" if command == "echo $DISPLAY" else command[len("echo "):]
            return CommandResult(exit_code=0, stdout=f"{value}\n")
        if command.startswith("which "):
            paths = [f"/usr/bin/{tool}" for tool in command.split()[1:]]
            return CommandResult(exit_code=0, stdout="\n".join(paths) + "\n")
        if command.startswith("command -v fc-list"):
            return CommandResult(exit_code=0, stdout="42\n3\n")
        if command == "ps -eo comm":
            return CommandResult(exit_code=0, stdout="COMMAND\nXvfb\nxfce4-session\nfirefox\n")
        return CommandResult(exit_code=127, stderr=f"command not found: {command}")

    async def write_file(self, sandbox_id: str, path: str, data: str | bytes) -> None:
        await self._enter("write_file", sandbox_id, path)
        self.files[(sandbox_id, path)] = data.encode("utf-8") if isinstance(data, str) else data

    async def type_text(
        self,
        sandbox_id: str,
        text: str,
        chunk_size: int = 25,
        delay_ms: int = 12,
    ) -> None:
        await self._enter("type_text", sandbox_id, text)
        self._typed.setdefault(sandbox_id, []).append(text)

    async def press_key(self, sandbox_id: str, key: str) -> None:
        await self._enter("press_key", sandbox_id, key)
        if key == "ctrl+v":
            self._typed.setdefault(sandbox_id, []).append(self.clipboards.get(sandbox_id, ""))

    async def screenshot(self, sandbox_id: str) -> bytes:
        await self._enter("screenshot", sandbox_id)
        return self.screenshot_bytes

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_provider() -> FakeDesktopProvider:
    return FakeDesktopProvider()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_profile_factory() -> Callable[..., Profile]:
    """Factory fixture for creating test Profile instances with short timeouts."""
    def _create(**overrides: Any) -> Profile:
        defaults: dict[str, Any] = {
            "name": "test",
            "provider_timeout_s": 1.0,
            "probe_timeout_s": 0.5,
            "check_timeout_s": 0.5,
            "capability_ttl_s": 60.0,
            "keystroke_delay_ms": 0,
        }
        return Profile(**{**defaults, **overrides})
    return _create


@pytest.fixture
def profile(mock_profile_factory: Callable[..., Profile]) -> Profile:
    return mock_profile_factory()


@pytest.fixture
def controller(fake_provider: FakeDesktopProvider, profile: Profile) -> SandboxController:
    return SandboxController(fake_provider, profile)


@pytest.fixture
def prober(
    fake_provider: FakeDesktopProvider,
    profile: Profile,
    controller: SandboxController,
    fake_clock: FakeClock,
) -> CapabilityProber:
    prober = CapabilityProber(fake_provider, profile, clock=fake_clock)
    prober.attach(controller)
    return prober


@pytest.fixture
async def running_sandbox(controller: SandboxController) -> str:
    """Provision a sandbox through the controller and return its id."""
    handle = await controller.create_or_attach()
    return handle.id
