# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""DesktopProvider protocol: transport-agnostic remote desktop interface."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from deskpilot.core.types import CommandResult, ProviderStatus, ProvisionedSandbox


@runtime_checkable
class DesktopProvider(Protocol):
    """Provisions remote desktops and synthesizes input inside them.

    Implementations raise ``SandboxNotFoundError`` for unknown ids,
    ``ProviderTimeoutError`` when the remote side does not answer in time,
    and ``ProviderRejectedError`` when it refuses a request.
    """

    async def create(
        self,
        template: str | None = None,
        resolution: tuple[int, int] | None = None,
        timeout_s: int | None = None,
    ) -> ProvisionedSandbox:
        """Provision a new desktop and start its stream."""
        ...

    async def get_status(self, sandbox_id: str) -> ProviderStatus:
        """Return the provider's authoritative state for a sandbox.

        ``state`` is the provider's own vocabulary ("running", "paused", ...);
        ``stream_url`` is set when the desktop is running.
        """
        ...

    async def pause(self, sandbox_id: str) -> str:
        """Pause a running desktop.

        Returns:
            Identifier of the paused sandbox. It may differ from
            ``sandbox_id``; the old id must not be used afterwards.
        """
        ...

    async def resume(self, sandbox_id: str) -> ProvisionedSandbox:
        """Resume a paused desktop and restart its stream."""
        ...

    async def kill(self, sandbox_id: str) -> None:
        """Destroy a desktop."""
        ...

    async def run_command(
        self,
        sandbox_id: str,
        command: str,
        env: dict[str, str] | None = None,
        timeout_s: float | None = None,
    ) -> CommandResult:
        """Run a shell command inside the desktop.

        A non-zero exit status is returned in the result, not raised.
        """
        ...

    async def write_file(self, sandbox_id: str, path: str, data: str | bytes) -> None:
        """Write a file inside the desktop."""
        ...

    async def type_text(
        self,
        sandbox_id: str,
        text: str,
        chunk_size: int = 25,
        delay_ms: int = 12,
    ) -> None:
        """Type directly typeable text as a sequence of key presses."""
        ...

    async def press_key(self, sandbox_id: str, key: str) -> None:
        """Press a key or key combination (e.g., "enter", "ctrl+v")."""
        ...

    async def screenshot(self, sandbox_id: str) -> bytes:
        """Capture the desktop as PNG bytes."""
        ...

    async def close(self) -> None:
        """Release cached connections."""
        ...
