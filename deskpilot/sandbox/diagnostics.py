# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""Read-only health checks for a remote desktop sandbox."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from functools import partial
from typing import TYPE_CHECKING

from loguru import logger

from deskpilot.core.types import (
    CheckResult,
    CommandResult,
    DiagnosticReport,
    Profile,
    SandboxState,
)
from deskpilot.sandbox.controller import SandboxController
from deskpilot.sandbox.prober import CapabilityProber
from deskpilot.sandbox.provider import DesktopProvider


if TYPE_CHECKING:
    from deskpilot.input.injector import InputInjector


X11_TOOLS = ("xdotool", "xwininfo", "xprop")
BROWSERS = ("firefox", "chromium-browser", "google-chrome", "chrome")
# Prints the total font count, then the count of fonts covering Chinese
FONT_COMMAND = "command -v fc-list >/dev/null && fc-list | wc -l && fc-list :lang=zh | wc -l"
ECHO_TOKEN = "deskpilot-diagnostic"

Check = Callable[[str], Awaitable[CheckResult]]


class DiagnosticsCollector:
    """Runs an ordered set of independent checks against one sandbox.

    Every check is bounded by ``profile.check_timeout_s`` and isolated: a
    failing or hanging check is recorded as ``ok=False`` and the remaining
    checks still run. ``diagnose`` never raises.

    Args:
        controller: Source of the authoritative run state.
        prober: Clipboard capability prober; bypasses its cache here.
        profile: Supplies the per-check timeout and target display.
        injector: When given, the latest injection failure is reported.
    """

    def __init__(
        self,
        controller: SandboxController,
        prober: CapabilityProber,
        profile: Profile,
        injector: InputInjector | None = None,
    ) -> None:
        self.controller = controller
        self.prober = prober
        self.profile = profile
        self.injector = injector

    @property
    def provider(self) -> DesktopProvider:
        return self.controller.provider

    def _checks(self) -> list[tuple[str, Check]]:
        checks: list[tuple[str, Check]] = [
            ("status", self._check_status),
            ("clipboard", self._check_clipboard),
            ("command_exec", self._check_command_exec),
            ("display", self._check_display),
            ("x11_tools", self._check_x11_tools),
            ("fonts", self._check_fonts),
            ("browsers", self._check_browsers),
            ("processes", self._check_processes),
            ("screenshot", self._check_screenshot),
        ]
        if self.injector is not None:
            checks.append(("last_injection", partial(self._check_last_injection, self.injector)))
        return checks

    async def diagnose(self, sandbox_id: str) -> DiagnosticReport:
        """Run every check in order and aggregate the results."""
        results: list[CheckResult] = []
        for name, check in self._checks():
            results.append(await self._run_check(sandbox_id, name, check))

        report = DiagnosticReport(sandbox_id=sandbox_id, checks=tuple(results))
        failed = [check.name for check in report.failed()]
        if failed:
            logger.warning("Diagnostics found problems", sandbox_id=sandbox_id, failed=failed)
        else:
            logger.info("Diagnostics passed", sandbox_id=sandbox_id)
        return report

    async def _run_check(self, sandbox_id: str, name: str, check: Check) -> CheckResult:
        timeout = self.profile.check_timeout_s
        try:
            return await asyncio.wait_for(check(sandbox_id), timeout=timeout)
        except TimeoutError:
            return CheckResult(name=name, ok=False, detail=f"Timed out after {timeout}s")
        except Exception as e:
            logger.debug("Diagnostic check raised", sandbox_id=sandbox_id, check=name, error=str(e))
            return CheckResult(name=name, ok=False, detail=str(e) or type(e).__name__)

    async def _run(self, sandbox_id: str, command: str) -> CommandResult:
        return await self.provider.run_command(
            sandbox_id,
            command,
            env={"DISPLAY": self.profile.display},
            timeout_s=self.profile.check_timeout_s,
        )

    async def _check_status(self, sandbox_id: str) -> CheckResult:
        status = await self.controller.get_status(sandbox_id)
        ok = status.state == SandboxState.RUNNING
        if ok:
            detail = status.stream_endpoint
        elif status.superseded_by:
            detail = f"{status.state} (superseded by {status.superseded_by})"
        elif status.error:
            detail = f"{status.state}: {status.error}"
        else:
            detail = str(status.state)
        return CheckResult(name="status", ok=ok, detail=detail)

    async def _check_clipboard(self, sandbox_id: str) -> CheckResult:
        snapshot = await self.prober.probe(sandbox_id, use_cache=False)
        return CheckResult(
            name="clipboard",
            ok=snapshot.clipboard_available,
            detail=snapshot.detail or "xclip available",
        )

    async def _check_command_exec(self, sandbox_id: str) -> CheckResult:
        result = await self._run(sandbox_id, f"echo {ECHO_TOKEN}")
        ok = result.ok and ECHO_TOKEN in result.stdout
        detail = None if ok else f"exit {result.exit_code}: {result.stderr.strip() or result.stdout.strip()}"
        return CheckResult(name="command_exec", ok=ok, detail=detail)

    async def _check_display(self, sandbox_id: str) -> CheckResult:
        result = await self._run(sandbox_id, "echo $DISPLAY")
        display = result.stdout.strip()
        if not result.ok or not display:
            return CheckResult(name="display", ok=False, detail="DISPLAY is not set")
        return CheckResult(name="display", ok=True, detail=display)

    async def _check_x11_tools(self, sandbox_id: str) -> CheckResult:
        # `which` exits non-zero when any tool is missing but still lists the rest
        result = await self._run(sandbox_id, "which " + " ".join(X11_TOOLS))
        found = {line.strip().rsplit("/", 1)[-1] for line in result.stdout.splitlines() if line.strip()}
        missing = [tool for tool in X11_TOOLS if tool not in found]
        if missing:
            return CheckResult(name="x11_tools", ok=False, detail=f"missing: {', '.join(missing)}")
        return CheckResult(name="x11_tools", ok=True, detail=", ".join(X11_TOOLS))

    async def _check_fonts(self, sandbox_id: str) -> CheckResult:
        result = await self._run(sandbox_id, FONT_COMMAND)
        if not result.ok:
            return CheckResult(name="fonts", ok=False, detail="fc-list not available")
        counts = [int(line) for line in result.stdout.split() if line.isdigit()]
        if len(counts) != 2:
            detail = f"unexpected fc-list output: {result.stdout.strip()!r}"
            return CheckResult(name="fonts", ok=False, detail=detail)
        total, cjk = counts
        if cjk == 0:
            return CheckResult(
                name="fonts",
                ok=False,
                detail=f"no CJK fonts among {total}; mixed-script text will render as boxes",
            )
        return CheckResult(name="fonts", ok=True, detail=f"{total} fonts, {cjk} CJK")

    async def _check_browsers(self, sandbox_id: str) -> CheckResult:
        result = await self._run(sandbox_id, "which " + " ".join(BROWSERS))
        found = [
            name for name in BROWSERS
            if any(line.strip().endswith("/" + name) for line in result.stdout.splitlines())
        ]
        if not found:
            return CheckResult(name="browsers", ok=False, detail="no browser found")
        return CheckResult(name="browsers", ok=True, detail=", ".join(found))

    async def _check_processes(self, sandbox_id: str) -> CheckResult:
        result = await self._run(sandbox_id, "ps -eo comm")
        if not result.ok:
            return CheckResult(name="processes", ok=False, detail=f"ps exited with code {result.exit_code}")
        # First line is the header
        count = max(len(result.stdout.strip().splitlines()) - 1, 0)
        return CheckResult(name="processes", ok=count > 0, detail=f"{count} processes")

    async def _check_screenshot(self, sandbox_id: str) -> CheckResult:
        image = await self.provider.screenshot(sandbox_id)
        if not image:
            return CheckResult(name="screenshot", ok=False, detail="empty image")
        return CheckResult(name="screenshot", ok=True, detail=f"{len(image)} bytes")

    async def _check_last_injection(self, injector: InputInjector, sandbox_id: str) -> CheckResult:
        failure = injector.last_failure(sandbox_id)
        if failure is None:
            return CheckResult(name="last_injection", ok=True)
        return CheckResult(
            name="last_injection",
            ok=False,
            detail=f"{failure.error} at {failure.occurred_at.isoformat()}",
        )
