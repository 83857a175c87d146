# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""E2B desktop provider.

Wraps the synchronous ``e2b-desktop`` SDK. Every SDK call runs in a worker
thread via ``asyncio.to_thread`` and SDK exceptions are translated into the
deskpilot error taxonomy by ``e2b_exception_handler``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, ParamSpec, TypeVar

from e2b import CommandExitException
from e2b.exceptions import NotFoundException, SandboxException, TimeoutException
from e2b_desktop import Sandbox
from loguru import logger

from deskpilot.core.exceptions import (
    DeskpilotError,
    ProviderError,
    ProviderRejectedError,
    ProviderTimeoutError,
    SandboxNotFoundError,
)
from deskpilot.core.types import CommandResult, ProviderStatus, ProvisionedSandbox


P = ParamSpec("P")
R = TypeVar("R")


def e2b_exception_handler(
    func: Callable[P, Awaitable[R]],
) -> Callable[P, Awaitable[R]]:
    """Translate e2b SDK exceptions raised by a provider method."""

    @wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        sandbox_id = kwargs.get("sandbox_id", args[1] if len(args) > 1 else None)
        try:
            return await func(*args, **kwargs)
        except DeskpilotError:
            raise
        except NotFoundException:
            raise SandboxNotFoundError(str(sandbox_id)) from None
        except TimeoutException:
            raise ProviderTimeoutError(
                str(sandbox_id) if sandbox_id else None, func.__name__
            ) from None
        except SandboxException as e:
            raise ProviderRejectedError(
                f"Provider refused {func.__name__} for sandbox {sandbox_id}: {e}"
            ) from e
        except Exception as e:
            raise ProviderError(
                f"Failed to {func.__name__} for sandbox {sandbox_id}: {e}"
            ) from e

    return wrapper


def _state_name(state: Any) -> str:
    return str(getattr(state, "value", state)).lower()


class E2BDesktopProvider:
    """DesktopProvider backed by E2B desktop sandboxes.

    Connected SDK objects are cached per sandbox id so repeated input calls
    do not reconnect.

    Args:
        api_key: E2B API key. When omitted the SDK reads ``E2B_API_KEY``.
        display: X display input commands target.
    """

    def __init__(self, api_key: str | None = None, display: str = ":0") -> None:
        self.api_key = api_key
        self.display = display
        self._sandboxes: dict[str, Sandbox] = {}

    def _opts(self) -> dict[str, Any]:
        return {"api_key": self.api_key} if self.api_key else {}

    async def _connect(self, sandbox_id: str) -> Sandbox:
        sandbox = self._sandboxes.get(sandbox_id)
        if sandbox is None:
            sandbox = await asyncio.to_thread(Sandbox.connect, sandbox_id, **self._opts())
            self._sandboxes[sandbox_id] = sandbox
        return sandbox

    @e2b_exception_handler
    async def create(
        self,
        template: str | None = None,
        resolution: tuple[int, int] | None = None,
        timeout_s: int | None = None,
    ) -> ProvisionedSandbox:
        kwargs: dict[str, Any] = self._opts()
        if template:
            kwargs["template"] = template
        if resolution:
            kwargs["resolution"] = resolution
        if timeout_s:
            kwargs["timeout"] = timeout_s

        sandbox = await asyncio.to_thread(Sandbox.create, **kwargs)
        await asyncio.to_thread(sandbox.stream.start)
        self._sandboxes[sandbox.sandbox_id] = sandbox
        logger.info("Created E2B desktop", sandbox_id=sandbox.sandbox_id, template=template)
        return ProvisionedSandbox(
            sandbox_id=sandbox.sandbox_id,
            stream_url=sandbox.stream.get_url(),
        )

    @e2b_exception_handler
    async def get_status(self, sandbox_id: str) -> ProviderStatus:
        info = await asyncio.to_thread(Sandbox.get_info, sandbox_id, **self._opts())
        state = _state_name(info.state)
        if state != "running":
            self._sandboxes.pop(sandbox_id, None)
            return ProviderStatus(state=state)
        sandbox = await self._connect(sandbox_id)
        return ProviderStatus(state=state, stream_url=sandbox.stream.get_url())

    @e2b_exception_handler
    async def pause(self, sandbox_id: str) -> str:
        sandbox = await self._connect(sandbox_id)
        paused = await asyncio.to_thread(sandbox.beta_pause)
        new_id = paused if isinstance(paused, str) and paused else sandbox.sandbox_id
        self._sandboxes.pop(sandbox_id, None)
        return new_id

    @e2b_exception_handler
    async def resume(self, sandbox_id: str) -> ProvisionedSandbox:
        self._sandboxes.pop(sandbox_id, None)
        # Connecting to a paused E2B sandbox resumes it
        sandbox = await self._connect(sandbox_id)
        await asyncio.to_thread(sandbox.stream.start)
        return ProvisionedSandbox(
            sandbox_id=sandbox.sandbox_id,
            stream_url=sandbox.stream.get_url(),
        )

    @e2b_exception_handler
    async def kill(self, sandbox_id: str) -> None:
        self._sandboxes.pop(sandbox_id, None)
        # Killing by id does not wake a paused sandbox the way connect would
        killed = await asyncio.to_thread(Sandbox.kill, sandbox_id, **self._opts())
        if killed is False:
            raise SandboxNotFoundError(sandbox_id)

    @e2b_exception_handler
    async def run_command(
        self,
        sandbox_id: str,
        command: str,
        env: dict[str, str] | None = None,
        timeout_s: float | None = None,
    ) -> CommandResult:
        sandbox = await self._connect(sandbox_id)
        envs = {"DISPLAY": self.display, **(env or {})}
        try:
            result = await asyncio.to_thread(
                sandbox.commands.run, command, envs=envs, timeout=timeout_s
            )
        except CommandExitException as e:
            return CommandResult(exit_code=e.exit_code, stdout=e.stdout, stderr=e.stderr)
        return CommandResult(
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    @e2b_exception_handler
    async def write_file(self, sandbox_id: str, path: str, data: str | bytes) -> None:
        sandbox = await self._connect(sandbox_id)
        await asyncio.to_thread(sandbox.files.write, path, data)

    @e2b_exception_handler
    async def type_text(
        self,
        sandbox_id: str,
        text: str,
        chunk_size: int = 25,
        delay_ms: int = 12,
    ) -> None:
        sandbox = await self._connect(sandbox_id)
        await asyncio.to_thread(
            sandbox.write, text, chunk_size=chunk_size, delay_in_ms=delay_ms
        )

    @e2b_exception_handler
    async def press_key(self, sandbox_id: str, key: str) -> None:
        sandbox = await self._connect(sandbox_id)
        keys: str | list[str] = key.split("+") if "+" in key else key
        await asyncio.to_thread(sandbox.press, keys)

    @e2b_exception_handler
    async def screenshot(self, sandbox_id: str) -> bytes:
        sandbox = await self._connect(sandbox_id)
        return bytes(await asyncio.to_thread(sandbox.screenshot))

    async def close(self) -> None:
        self._sandboxes.clear()
