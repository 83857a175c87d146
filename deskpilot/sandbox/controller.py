# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""Sandbox lifecycle controller.

Owns the authoritative local view of every tracked sandbox and reconciles it
against the provider. Lifecycle operations are serialized per sandbox id; a
pause hands back a new identifier and the previous one is invalidated.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import Counter, OrderedDict
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TypeVar

from loguru import logger

from deskpilot.core.exceptions import (
    ConflictingOperationError,
    InvalidStateTransitionError,
    ProviderError,
    ProviderTimeoutError,
    SandboxNotFoundError,
)
from deskpilot.core.types import (
    PauseResult,
    Profile,
    SandboxHandle,
    SandboxState,
    SandboxStatus,
    utc_now,
)
from deskpilot.sandbox.provider import DesktopProvider


T = TypeVar("T")

TransitionListener = Callable[[str, SandboxState, SandboxState], None]

_PROVIDER_STATES: dict[str, SandboxState] = {
    "running": SandboxState.RUNNING,
    "paused": SandboxState.PAUSED,
    "killed": SandboxState.TERMINATED,
    "terminated": SandboxState.TERMINATED,
}


class SandboxController:
    """Tracks sandbox run state and applies pause/resume/kill.

    Args:
        provider: Remote desktop provider.
        profile: Limits and conflict policy for lifecycle operations.
        tombstone_limit: How many superseded and terminated ids are
            remembered. Older ones are forgotten and fall back to a provider
            status read.
    """

    def __init__(
        self,
        provider: DesktopProvider,
        profile: Profile,
        tombstone_limit: int = 1024,
    ) -> None:
        self.provider = provider
        self.profile = profile
        self.tombstone_limit = tombstone_limit
        self._handles: dict[str, SandboxHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()
        self._superseded: OrderedDict[str, str] = OrderedDict()
        self._terminated: OrderedDict[str, None] = OrderedDict()
        self._active_injections: Counter[str] = Counter()
        self._listeners: list[TransitionListener] = []

    def add_transition_listener(self, listener: TransitionListener) -> None:
        """Register a callback invoked as ``listener(sandbox_id, old, new)``."""
        self._listeners.append(listener)

    def get_handle(self, sandbox_id: str) -> SandboxHandle | None:
        return self._handles.get(sandbox_id)

    def handles(self) -> list[SandboxHandle]:
        return list(self._handles.values())

    def superseded_by(self, sandbox_id: str) -> str | None:
        return self._superseded.get(sandbox_id)

    async def create_or_attach(
        self,
        sandbox_id: str | None = None,
        template: str | None = None,
    ) -> SandboxHandle:
        """Return a running sandbox, reusing ``sandbox_id`` when possible.

        A running sandbox is returned as-is and a paused one is resumed. Any
        other outcome provisions a fresh sandbox.

        Raises:
            ProviderError: If provisioning fails.
        """
        if sandbox_id:
            status = await self.get_status(sandbox_id)
            if status.state == SandboxState.RUNNING:
                return self._handles[sandbox_id]
            if status.state == SandboxState.PAUSED:
                try:
                    return await self.resume(sandbox_id)
                except ProviderError as e:
                    logger.warning(
                        "Failed to resume sandbox, provisioning a new one",
                        sandbox_id=sandbox_id,
                        error=str(e),
                    )
            else:
                logger.info(
                    "Sandbox not reusable, provisioning a new one",
                    sandbox_id=sandbox_id,
                    state=status.state,
                )

        provisioned = await self._call(
            None,
            "create",
            self.provider.create(
                template=template or self.profile.template,
                resolution=self.profile.resolution,
                timeout_s=self.profile.sandbox_timeout_s,
            ),
        )
        self._terminated.pop(provisioned.sandbox_id, None)
        handle = self._store(
            SandboxHandle(
                id=provisioned.sandbox_id,
                state=SandboxState.RUNNING,
                stream_endpoint=provisioned.stream_url,
                last_observed_at=utc_now(),
            )
        )
        logger.info("Sandbox provisioned", sandbox_id=handle.id)
        return handle

    async def get_status(self, sandbox_id: str) -> SandboxStatus:
        """Read authoritative state from the provider and update the handle.

        Never raises: provider failures downgrade the state to unknown and are
        reported in ``SandboxStatus.error``. Callers should treat unknown as
        "cannot currently confirm liveness".
        """
        early = self._local_status(sandbox_id)
        if early is not None:
            return early

        async with self._exclusive(sandbox_id, "get_status", wait=True):
            # A pause or kill may have completed while we waited
            early = self._local_status(sandbox_id)
            if early is not None:
                return early
            return await self._refresh(sandbox_id)

    async def require_running(self, sandbox_id: str) -> SandboxHandle:
        """Confirm liveness with a fresh status read.

        Raises:
            InvalidStateTransitionError: If the sandbox is not running.
        """
        status = await self.get_status(sandbox_id)
        if status.state != SandboxState.RUNNING:
            detail = f" (superseded by {status.superseded_by})" if status.superseded_by else ""
            raise InvalidStateTransitionError(
                sandbox_id,
                status.state,
                "use",
                f"Sandbox {sandbox_id} is {status.state}, not running{detail}",
            )
        return self._handles[sandbox_id]

    async def pause(self, sandbox_id: str) -> PauseResult:
        """Pause a running sandbox.

        The provider assigns a new identifier; the previous one must not be
        used afterwards.

        Raises:
            InvalidStateTransitionError: If the local state is not running.
                No provider call is made in that case.
            ConflictingOperationError: If another lifecycle operation or an
                injection is in flight for the sandbox.
            ProviderTimeoutError: If the provider did not answer in time. The
                pause may or may not have applied.
            ProviderRejectedError: If the provider refused the pause.
        """
        self._require_state(sandbox_id, SandboxState.RUNNING, "pause")
        self._reject_during_injection(sandbox_id, "pause")

        async with self._exclusive(sandbox_id, "pause"):
            self._require_state(sandbox_id, SandboxState.RUNNING, "pause")
            self._reject_during_injection(sandbox_id, "pause")

            try:
                new_id = await self._call(sandbox_id, "pause", self.provider.pause(sandbox_id))
            except SandboxNotFoundError:
                self._mark_terminated(sandbox_id)
                raise

            self._rekey(sandbox_id, new_id, SandboxState.RUNNING, SandboxState.PAUSED)
            self._store(
                SandboxHandle(id=new_id, state=SandboxState.PAUSED, last_observed_at=utc_now())
            )

        logger.info("Sandbox paused", sandbox_id=sandbox_id, new_sandbox_id=new_id)
        return PauseResult(previous_sandbox_id=sandbox_id, new_sandbox_id=new_id)

    async def resume(self, sandbox_id: str) -> SandboxHandle:
        """Resume a paused sandbox and assign a fresh stream endpoint.

        Raises:
            InvalidStateTransitionError: If the local state is not paused.
            ConflictingOperationError: If another lifecycle operation is in flight.
            ProviderTimeoutError: If the provider did not answer in time.
        """
        self._require_state(sandbox_id, SandboxState.PAUSED, "resume")

        async with self._exclusive(sandbox_id, "resume"):
            self._require_state(sandbox_id, SandboxState.PAUSED, "resume")

            try:
                resumed = await self._call(sandbox_id, "resume", self.provider.resume(sandbox_id))
            except SandboxNotFoundError:
                self._mark_terminated(sandbox_id)
                raise

            if resumed.sandbox_id != sandbox_id:
                self._rekey(sandbox_id, resumed.sandbox_id, SandboxState.PAUSED, SandboxState.RUNNING)
            handle = self._store(
                SandboxHandle(
                    id=resumed.sandbox_id,
                    state=SandboxState.RUNNING,
                    stream_endpoint=resumed.stream_url,
                    last_observed_at=utc_now(),
                )
            )

        logger.info("Sandbox resumed", sandbox_id=handle.id)
        return handle

    async def kill(self, sandbox_id: str) -> None:
        """Terminate a sandbox and purge its local state.

        Succeeds without contacting the provider when the sandbox is already
        terminated. A provider "not found" reply also counts as success.

        Raises:
            InvalidStateTransitionError: If the id was invalidated by a pause.
            ConflictingOperationError: If another lifecycle operation is in flight.
            ProviderTimeoutError: If the provider did not answer in time.
            ProviderRejectedError: If the provider refused the kill.
        """
        self._reject_superseded(sandbox_id, "kill")
        if self._already_terminated(sandbox_id):
            self._purge(sandbox_id)
            logger.debug("Sandbox already terminated", sandbox_id=sandbox_id)
            return

        async with self._exclusive(sandbox_id, "kill"):
            self._reject_superseded(sandbox_id, "kill")
            if self._already_terminated(sandbox_id):
                self._purge(sandbox_id)
                return

            try:
                await self._call(sandbox_id, "kill", self.provider.kill(sandbox_id))
            except SandboxNotFoundError:
                logger.info("Sandbox already gone on provider", sandbox_id=sandbox_id)

            self._mark_terminated(sandbox_id)
            self._purge(sandbox_id)

        logger.info("Sandbox killed", sandbox_id=sandbox_id)

    @contextlib.asynccontextmanager
    async def injection_activity(self, sandbox_id: str) -> AsyncIterator[None]:
        """Mark an injection in flight; pause is refused until it exits."""
        self._active_injections[sandbox_id] += 1
        try:
            yield
        finally:
            self._active_injections[sandbox_id] -= 1
            if self._active_injections[sandbox_id] <= 0:
                del self._active_injections[sandbox_id]

    async def close(self) -> None:
        await self.provider.close()

    def _local_status(self, sandbox_id: str) -> SandboxStatus | None:
        """Answer without the provider for superseded and terminated ids."""
        new_id = self._superseded.get(sandbox_id)
        if new_id is not None:
            return SandboxStatus(
                sandbox_id=sandbox_id,
                state=SandboxState.UNKNOWN,
                superseded_by=new_id,
            )
        if self._already_terminated(sandbox_id):
            return SandboxStatus(sandbox_id=sandbox_id, state=SandboxState.TERMINATED)
        return None

    async def _refresh(self, sandbox_id: str) -> SandboxStatus:
        try:
            reply = await self._call(
                sandbox_id, "get_status", self.provider.get_status(sandbox_id)
            )
        except SandboxNotFoundError:
            handle = self._mark_terminated(sandbox_id)
            return SandboxStatus(sandbox_id=sandbox_id, state=handle.state)
        except Exception as e:
            self._mark_unknown(sandbox_id)
            logger.warning(
                "Status probe failed, state downgraded to unknown",
                sandbox_id=sandbox_id,
                error=str(e),
            )
            return SandboxStatus(sandbox_id=sandbox_id, state=SandboxState.UNKNOWN, error=str(e))

        state = _PROVIDER_STATES.get(reply.state.lower(), SandboxState.UNKNOWN)
        error: str | None = None
        if state == SandboxState.UNKNOWN:
            error = f"Unrecognized provider state: {reply.state}"
        elif state == SandboxState.RUNNING and not reply.stream_url:
            state = SandboxState.UNKNOWN
            error = "Provider reports running without a stream endpoint"

        endpoint = reply.stream_url if state == SandboxState.RUNNING else None
        handle = self._store(
            SandboxHandle(
                id=sandbox_id,
                state=state,
                stream_endpoint=endpoint,
                last_observed_at=utc_now(),
            )
        )
        if error:
            logger.warning("Provider status not usable", sandbox_id=sandbox_id, error=error)
        return SandboxStatus(
            sandbox_id=sandbox_id,
            state=handle.state,
            stream_endpoint=handle.stream_endpoint,
            error=error,
        )

    @contextlib.asynccontextmanager
    async def _exclusive(
        self,
        sandbox_id: str,
        operation: str,
        wait: bool | None = None,
    ) -> AsyncIterator[None]:
        lock = self._locks.setdefault(sandbox_id, asyncio.Lock())
        should_wait = self.profile.lifecycle_conflict == "wait" if wait is None else wait
        if lock.locked() and not should_wait:
            raise ConflictingOperationError(sandbox_id, operation)
        self._lock_users[sandbox_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[sandbox_id] -= 1
            if self._lock_users[sandbox_id] <= 0:
                del self._lock_users[sandbox_id]
                del self._locks[sandbox_id]

    async def _call(self, sandbox_id: str | None, operation: str, awaitable: Awaitable[T]) -> T:
        timeout = self.profile.provider_timeout_s
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Provider call timed out",
                sandbox_id=sandbox_id,
                operation=operation,
                timeout_s=timeout,
            )
            raise ProviderTimeoutError(sandbox_id, operation, timeout) from None

    def _require_state(self, sandbox_id: str, expected: SandboxState, operation: str) -> SandboxHandle:
        self._reject_superseded(sandbox_id, operation)
        handle = self._handles.get(sandbox_id)
        if handle is None or handle.state != expected:
            raise InvalidStateTransitionError(
                sandbox_id, handle.state if handle else None, operation
            )
        return handle

    def _reject_superseded(self, sandbox_id: str, operation: str) -> None:
        new_id = self._superseded.get(sandbox_id)
        if new_id is None:
            return
        current = self._handles.get(new_id)
        raise InvalidStateTransitionError(
            sandbox_id,
            current.state if current else None,
            operation,
            f"Sandbox id {sandbox_id} was invalidated by pause; use {new_id}",
        )

    def _reject_during_injection(self, sandbox_id: str, operation: str) -> None:
        if self._active_injections[sandbox_id] > 0:
            raise ConflictingOperationError(sandbox_id, operation)

    def _already_terminated(self, sandbox_id: str) -> bool:
        if sandbox_id in self._terminated:
            return True
        handle = self._handles.get(sandbox_id)
        return handle is not None and handle.state == SandboxState.TERMINATED

    def _store(self, handle: SandboxHandle) -> SandboxHandle:
        previous = self._handles.get(handle.id)
        self._handles[handle.id] = handle
        old_state = previous.state if previous else SandboxState.UNKNOWN
        if old_state != handle.state:
            self._notify(handle.id, old_state, handle.state)
        return handle

    def _rekey(self, old_id: str, new_id: str, old_state: SandboxState, new_state: SandboxState) -> None:
        self._handles.pop(old_id, None)
        if new_id != old_id:
            self._remember(self._superseded, old_id, new_id)
            self._notify(old_id, old_state, new_state)

    def _mark_unknown(self, sandbox_id: str) -> SandboxHandle:
        previous = self._handles.get(sandbox_id)
        return self._store(
            SandboxHandle(
                id=sandbox_id,
                state=SandboxState.UNKNOWN,
                last_observed_at=previous.last_observed_at if previous else None,
            )
        )

    def _mark_terminated(self, sandbox_id: str) -> SandboxHandle:
        self._remember(self._terminated, sandbox_id, None)
        return self._store(
            SandboxHandle(id=sandbox_id, state=SandboxState.TERMINATED, last_observed_at=utc_now())
        )

    def _purge(self, sandbox_id: str) -> None:
        self._handles.pop(sandbox_id, None)
        self._remember(self._terminated, sandbox_id, None)

    def _remember(self, tombstones: OrderedDict[str, T], sandbox_id: str, value: T) -> None:
        tombstones[sandbox_id] = value
        tombstones.move_to_end(sandbox_id)
        while len(tombstones) > self.tombstone_limit:
            tombstones.popitem(last=False)

    def _notify(self, sandbox_id: str, old: SandboxState, new: SandboxState) -> None:
        logger.debug("Sandbox state changed", sandbox_id=sandbox_id, old=old, new=new)
        for listener in self._listeners:
            try:
                listener(sandbox_id, old, new)
            except Exception:
                logger.exception("Transition listener failed", sandbox_id=sandbox_id)
