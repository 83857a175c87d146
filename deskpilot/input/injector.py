# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""Input injector: types arbitrary text into a live remote desktop."""

from __future__ import annotations

import asyncio
import contextlib
from collections import Counter
from collections.abc import AsyncIterator, Sequence

from loguru import logger

from deskpilot.core.exceptions import InjectionFailedError
from deskpilot.core.types import (
    InjectionFailureRecord,
    InjectionPlan,
    InjectionResult,
    StrategyName,
)
from deskpilot.input.segmenter import segment
from deskpilot.input.strategies import InjectionContext, InjectionStrategy, default_chain
from deskpilot.sandbox.controller import SandboxController
from deskpilot.sandbox.prober import CapabilityProber


class InputInjector:
    """Delivers text through an ordered chain of injection strategies.

    Injections into the same sandbox are serialized: remote keyboard focus is
    a single shared resource, so a second call waits for the first.

    Args:
        controller: Confirms liveness and blocks pause while injecting.
        prober: Reports whether the clipboard fast path is available.
        strategies: Fallback chain, tried in order. Defaults to clipboard
            paste followed by segmented injection with per-character retry.
    """

    def __init__(
        self,
        controller: SandboxController,
        prober: CapabilityProber,
        strategies: Sequence[InjectionStrategy] | None = None,
    ) -> None:
        self.controller = controller
        self.prober = prober
        self.strategies: list[InjectionStrategy] = list(strategies or default_chain())
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()
        self._failures: dict[str, InjectionFailureRecord] = {}

    def last_failure(self, sandbox_id: str) -> InjectionFailureRecord | None:
        """Most recent terminal injection failure for a sandbox, if any."""
        return self._failures.get(sandbox_id)

    async def inject(
        self,
        sandbox_id: str,
        text: str,
        cancel: asyncio.Event | None = None,
    ) -> InjectionResult:
        """Type ``text`` into the sandbox.

        Args:
            sandbox_id: Target sandbox; must be running.
            text: Text to deliver, any script.
            cancel: Set to stop at the next segment boundary.

        Returns:
            Segments sent, strategy used and whether the call degraded from
            the preferred strategy.

        Raises:
            InvalidStateTransitionError: If the sandbox is not running.
            InjectionFailedError: If per-character injection failed or a
                delivery call timed out; carries the number of characters
                confirmed delivered before the fault.
            InjectionCancelledError: If ``cancel`` was set mid-injection.
        """
        if not text:
            return InjectionResult(segments_sent=0, strategy_used=StrategyName.NONE)

        async with self._serialized(sandbox_id), self.controller.injection_activity(sandbox_id):
            await self.controller.require_running(sandbox_id)
            snapshot = await self.prober.probe(sandbox_id)
            plan = segment(text)
            context = InjectionContext(
                sandbox_id=sandbox_id,
                provider=self.controller.provider,
                profile=self.controller.profile,
                clipboard_available=snapshot.clipboard_available,
                cancel=cancel,
            )
            try:
                return await self._run_chain(context, plan)
            except InjectionFailedError as e:
                self._failures[sandbox_id] = InjectionFailureRecord(
                    sandbox_id=sandbox_id,
                    delivered_count=e.delivered_count,
                    error=str(e),
                )
                logger.error(
                    "Text injection failed",
                    sandbox_id=sandbox_id,
                    delivered=e.delivered_count,
                    total=len(text),
                )
                raise
            finally:
                # Keep the sandbox locked until timed-out calls stop typing
                await context.settle()

    @contextlib.asynccontextmanager
    async def _serialized(self, sandbox_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(sandbox_id, asyncio.Lock())
        self._lock_users[sandbox_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[sandbox_id] -= 1
            if self._lock_users[sandbox_id] <= 0:
                del self._lock_users[sandbox_id]
                del self._locks[sandbox_id]

    async def _run_chain(self, context: InjectionContext, plan: InjectionPlan) -> InjectionResult:
        errors: list[str] = []
        for index, strategy in enumerate(self.strategies):
            outcome = await strategy.attempt(context, plan)
            if outcome.success:
                degraded = index > 0
                if degraded:
                    logger.warning(
                        "Injection degraded",
                        sandbox_id=context.sandbox_id,
                        strategy=outcome.strategy,
                        skipped="; ".join(errors),
                    )
                else:
                    logger.debug(
                        "Injection finished",
                        sandbox_id=context.sandbox_id,
                        strategy=outcome.strategy,
                    )
                self._failures.pop(context.sandbox_id, None)
                return InjectionResult(
                    segments_sent=outcome.segments_sent,
                    strategy_used=outcome.strategy,
                    degraded=degraded,
                    delivered_chars=context.delivered_chars,
                    escalated_segments=context.escalated_segments,
                )
            errors.append(f"{outcome.strategy}: {outcome.error}")
            logger.debug(
                "Injection strategy unavailable",
                sandbox_id=context.sandbox_id,
                strategy=outcome.strategy,
                error=outcome.error,
            )

        raise InjectionFailedError(
            "No injection strategy succeeded: " + "; ".join(errors),
            delivered_count=context.delivered_chars,
            segments_completed=context.segments_completed,
        )
