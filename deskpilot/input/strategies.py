# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""Text injection strategies.

The injector walks an ordered list of strategies until one succeeds. A
strategy that cannot apply returns a failed ``StrategyOutcome``; only a
terminal fault raises ``InjectionFailedError``.

A provider call that times out while input events may already be landing is
terminal: its outcome is unknown, so falling through to another tier could
type the same text twice or interleave with the abandoned call.
"""

from __future__ import annotations

import asyncio
import shlex
from collections.abc import Awaitable, Iterator
from dataclasses import dataclass, field
from typing import Protocol, TypeVar, runtime_checkable
from uuid import uuid4

from loguru import logger

from deskpilot.core.exceptions import (
    InjectionCancelledError,
    InjectionError,
    InjectionFailedError,
    ProviderRejectedError,
    ProviderTimeoutError,
)
from deskpilot.core.types import InjectionPlan, Profile, Segment, SegmentKind, StrategyName
from deskpilot.sandbox.provider import DesktopProvider


T = TypeVar("T")

PASTE_KEY = "ctrl+v"


def keysym(char: str) -> str:
    """Return the X11 Unicode keysym for a character, e.g. ``U4E16``."""
    return f"U{ord(char):04X}"


def batches(text: str, size: int) -> Iterator[str]:
    """Split ``text`` into consecutive slices of at most ``size`` characters."""
    for start in range(0, len(text), size):
        yield text[start:start + size]


@dataclass
class InjectionContext:
    """Mutable progress of one injection call, shared across strategies."""

    sandbox_id: str
    provider: DesktopProvider
    profile: Profile
    clipboard_available: bool = False
    cancel: asyncio.Event | None = None
    delivered_chars: int = 0
    segments_completed: int = 0
    escalated_segments: int = 0
    abandoned: set[asyncio.Future[object]] = field(default_factory=set)

    def check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise InjectionCancelledError(self.segments_completed, self.delivered_chars)

    async def call(self, awaitable: Awaitable[T], operation: str, terminal: bool = True) -> T:
        """Await a provider call under ``provider_timeout_s``.

        A timed-out call keeps running in the background and is tracked in
        ``abandoned`` until ``settle`` collects it.

        Args:
            awaitable: Provider coroutine.
            operation: Name used in error messages.
            terminal: Convert a timeout into ``InjectionFailedError``. When
                false the timeout propagates for the strategy to handle.
        """
        timeout = self.profile.provider_timeout_s
        task = asyncio.ensure_future(awaitable)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except (TimeoutError, ProviderTimeoutError) as e:
            if not task.done():
                self.abandoned.add(task)
            if not terminal:
                raise
            raise InjectionFailedError(
                f"{operation} timed out after {timeout}s; delivery outcome unknown",
                delivered_count=self.delivered_chars,
                segments_completed=self.segments_completed,
            ) from e

    async def settle(self) -> None:
        """Wait for provider calls abandoned on timeout to finish."""
        if not self.abandoned:
            return
        logger.debug(
            "Waiting for abandoned provider calls",
            sandbox_id=self.sandbox_id,
            pending=len(self.abandoned),
        )
        await asyncio.gather(*self.abandoned, return_exceptions=True)
        self.abandoned.clear()

    async def send_keysyms(self, text: str) -> None:
        """Press one Unicode keysym per character with ``xdotool key``."""
        keys = " ".join(keysym(char) for char in text)
        command = f"xdotool key --delay {self.profile.keystroke_delay_ms} {keys}"
        result = await self.call(
            self.provider.run_command(
                self.sandbox_id,
                command,
                env={"DISPLAY": self.profile.display},
                timeout_s=self.profile.provider_timeout_s,
            ),
            "xdotool key",
        )
        if not result.ok:
            raise ProviderRejectedError(
                f"xdotool exited with code {result.exit_code}: {result.stderr.strip()}"
            )

    async def type_simple(self, text: str, chunk_size: int | None = None) -> None:
        await self.call(
            self.provider.type_text(
                self.sandbox_id,
                text,
                chunk_size=chunk_size or self.profile.keystroke_chunk_size,
                delay_ms=self.profile.keystroke_delay_ms,
            ),
            "type_text",
        )

    async def send(self, kind: SegmentKind, text: str, chunk_size: int | None = None) -> None:
        """Deliver same-class text with the primitive matching ``kind``."""
        if kind == SegmentKind.SIMPLE:
            await self.type_simple(text, chunk_size=chunk_size)
        else:
            await self.send_keysyms(text)


@dataclass(frozen=True)
class StrategyOutcome:
    """Result of one strategy attempt."""

    strategy: StrategyName
    success: bool
    segments_sent: int = 0
    error: str | None = None


@runtime_checkable
class InjectionStrategy(Protocol):
    """One tier of the injection fallback chain."""

    name: StrategyName

    async def attempt(self, context: InjectionContext, plan: InjectionPlan) -> StrategyOutcome:
        """Deliver the plan or report why not.

        Raises:
            InjectionFailedError: On an irrecoverable fault.
            InjectionCancelledError: When cancelled at a segment boundary.
        """
        ...


class ClipboardPasteStrategy:
    """Load the whole text into the sandbox clipboard and paste it once.

    Constant number of input events regardless of text length. Staging
    faults return a failed outcome so the chain moves on; a paste that
    times out is terminal, since it may still land.
    """

    name = StrategyName.CLIPBOARD

    def __init__(self, staging_dir: str = "/tmp") -> None:
        self.staging_dir = staging_dir

    async def attempt(self, context: InjectionContext, plan: InjectionPlan) -> StrategyOutcome:
        if not context.clipboard_available:
            return StrategyOutcome(self.name, success=False, error="clipboard unavailable")
        context.check_cancelled()

        text = plan.text
        path = f"{self.staging_dir}/deskpilot-paste-{uuid4().hex}.txt"
        quoted = shlex.quote(path)
        try:
            await context.call(
                context.provider.write_file(context.sandbox_id, path, text.encode("utf-8")),
                "write_file",
                terminal=False,
            )
            result = await context.call(
                context.provider.run_command(
                    context.sandbox_id,
                    f"xclip -selection clipboard -i {quoted} && rm -f {quoted}",
                    env={"DISPLAY": context.profile.display},
                    timeout_s=context.profile.provider_timeout_s,
                ),
                "xclip",
                terminal=False,
            )
            if not result.ok:
                return StrategyOutcome(
                    self.name,
                    success=False,
                    error=f"xclip exited with code {result.exit_code}: {result.stderr.strip()}",
                )
            await context.call(context.provider.press_key(context.sandbox_id, PASTE_KEY), "paste")
        except InjectionError:
            raise
        except Exception as e:
            return StrategyOutcome(self.name, success=False, error=str(e) or type(e).__name__)

        context.delivered_chars += len(text)
        context.segments_completed = len(plan.segments)
        return StrategyOutcome(self.name, success=True, segments_sent=1)


class CharacterStrategy:
    """Send one input event per character.

    Slowest and most reliable tier. A failure here is terminal and reports
    how many characters were delivered.
    """

    name = StrategyName.CHARACTER

    async def attempt(self, context: InjectionContext, plan: InjectionPlan) -> StrategyOutcome:
        for seg in plan.segments:
            context.check_cancelled()
            for char in seg.text:
                try:
                    await context.send(seg.kind, char, chunk_size=1)
                except InjectionError:
                    raise
                except Exception as e:
                    raise InjectionFailedError(
                        f"Character injection failed at {char!r}: {str(e) or type(e).__name__}",
                        delivered_count=context.delivered_chars,
                        segments_completed=context.segments_completed,
                    ) from e
                context.delivered_chars += 1
            context.segments_completed += 1
        return StrategyOutcome(self.name, success=True, segments_sent=len(plan.segments))


class SegmentedStrategy:
    """Send each segment with the primitive matching its kind.

    Simple segments are typed directly; complex segments are pressed as
    Unicode keysyms with ``xdotool key``. Each segment goes out in batches of
    ``profile.segment_batch_size`` characters. When a batch fails, only the
    undelivered rest of that segment is retried through ``escalation``, so
    nothing already sent is sent again.

    Args:
        escalation: Strategy used to retry the remainder of a failed segment.
    """

    name = StrategyName.SEGMENTED

    def __init__(self, escalation: InjectionStrategy | None = None) -> None:
        self.escalation = escalation if escalation is not None else CharacterStrategy()

    async def attempt(self, context: InjectionContext, plan: InjectionPlan) -> StrategyOutcome:
        batch_size = context.profile.segment_batch_size
        for seg in plan.segments:
            context.check_cancelled()
            sent = 0
            try:
                for batch in batches(seg.text, batch_size):
                    await context.send(seg.kind, batch)
                    sent += len(batch)
                    context.delivered_chars += len(batch)
            except InjectionError:
                raise
            except Exception as e:
                await self._escalate(context, Segment(text=seg.text[sent:], kind=seg.kind), e)
                continue
            context.segments_completed += 1
        return StrategyOutcome(self.name, success=True, segments_sent=len(plan.segments))

    async def _escalate(self, context: InjectionContext, rest: Segment, error: Exception) -> None:
        logger.warning(
            "Segment injection failed, retrying per character",
            sandbox_id=context.sandbox_id,
            kind=rest.kind,
            remaining=len(rest.text),
            error=str(error) or type(error).__name__,
        )
        context.escalated_segments += 1
        outcome = await self.escalation.attempt(context, InjectionPlan(segments=(rest,)))
        if not outcome.success:
            raise InjectionFailedError(
                f"Segment retry failed: {outcome.error}",
                delivered_count=context.delivered_chars,
                segments_completed=context.segments_completed,
            ) from error


def default_chain() -> list[InjectionStrategy]:
    """Clipboard paste first, then segment-by-segment with per-character retry."""
    return [ClipboardPasteStrategy(), SegmentedStrategy(escalation=CharacterStrategy())]
