# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""Clipboard fast-path detection for remote desktops.

Absence of the fast path is a routing decision for the injector, not an
error, so ``CapabilityProber.probe`` never raises.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from loguru import logger

from deskpilot.core.types import CapabilitySnapshot, Profile, SandboxHandle, SandboxState
from deskpilot.sandbox.provider import DesktopProvider


if TYPE_CHECKING:
    from deskpilot.sandbox.controller import SandboxController


CLIPBOARD_PROBE_COMMAND = "which xclip"


class CapabilityCache:
    """Capability snapshots keyed by sandbox id with a fixed TTL.

    Args:
        ttl_s: Seconds a snapshot stays valid. Zero disables caching.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(self, ttl_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: dict[str, tuple[float, CapabilitySnapshot]] = {}

    def get(self, sandbox_id: str) -> CapabilitySnapshot | None:
        entry = self._entries.get(sandbox_id)
        if entry is None:
            return None
        stored_at, snapshot = entry
        if self._clock() - stored_at >= self.ttl_s:
            del self._entries[sandbox_id]
            return None
        return snapshot

    def put(self, snapshot: CapabilitySnapshot) -> None:
        if self.ttl_s > 0:
            self._entries[snapshot.sandbox_id] = (self._clock(), snapshot)

    def invalidate(self, sandbox_id: str) -> None:
        self._entries.pop(sandbox_id, None)

    def __contains__(self, sandbox_id: object) -> bool:
        return isinstance(sandbox_id, str) and self.get(sandbox_id) is not None


class CapabilityProber:
    """Checks whether a sandbox can take text through its clipboard.

    Args:
        provider: Remote desktop provider used to run the probe command.
        profile: Supplies the probe timeout and cache TTL.
        clock: Monotonic clock for the cache, injectable for tests.
    """

    def __init__(
        self,
        provider: DesktopProvider,
        profile: Profile,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.timeout_s = profile.probe_timeout_s
        self.cache = CapabilityCache(profile.capability_ttl_s, clock)

    def attach(self, controller: SandboxController) -> None:
        """Invalidate cached snapshots whenever the controller sees a transition."""
        controller.add_transition_listener(self._on_transition)

    def invalidate(self, sandbox_id: str) -> None:
        self.cache.invalidate(sandbox_id)

    async def probe(
        self,
        handle: SandboxHandle | str,
        use_cache: bool = True,
    ) -> CapabilitySnapshot:
        """Return the clipboard capability of a sandbox.

        Args:
            handle: Sandbox handle or id.
            use_cache: Serve a cached snapshot when one is still fresh.

        Returns:
            Snapshot with ``clipboard_available`` false on timeout or error.
        """
        sandbox_id = handle if isinstance(handle, str) else handle.id
        if use_cache:
            cached = self.cache.get(sandbox_id)
            if cached is not None:
                return cached

        snapshot = await self._run_probe(sandbox_id)
        self.cache.put(snapshot)
        return snapshot

    async def _run_probe(self, sandbox_id: str) -> CapabilitySnapshot:
        try:
            result = await asyncio.wait_for(
                self.provider.run_command(
                    sandbox_id, CLIPBOARD_PROBE_COMMAND, timeout_s=self.timeout_s
                ),
                timeout=self.timeout_s,
            )
        except TimeoutError:
            logger.debug("Clipboard probe timed out", sandbox_id=sandbox_id, timeout_s=self.timeout_s)
            return CapabilitySnapshot(
                sandbox_id=sandbox_id,
                clipboard_available=False,
                detail=f"Clipboard probe timed out after {self.timeout_s}s",
            )
        except Exception as e:
            logger.debug("Clipboard probe failed", sandbox_id=sandbox_id, error=str(e))
            return CapabilitySnapshot(
                sandbox_id=sandbox_id,
                clipboard_available=False,
                detail=f"Clipboard probe failed: {e}",
            )

        available = result.ok
        logger.debug("Clipboard probe finished", sandbox_id=sandbox_id, available=available)
        return CapabilitySnapshot(
            sandbox_id=sandbox_id,
            clipboard_available=available,
            detail=None if available else "xclip not found in sandbox",
        )

    def _on_transition(self, sandbox_id: str, old: SandboxState, new: SandboxState) -> None:
        self.cache.invalidate(sandbox_id)
