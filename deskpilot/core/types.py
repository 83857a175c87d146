# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""Configuration and shared type definitions for deskpilot.

Contains the lifecycle enums and models (SandboxState, SandboxHandle,
SandboxStatus), the injection models (Segment, InjectionPlan,
InjectionResult), capability and diagnostics results, and the Profile and
Settings configuration models.
"""
from collections.abc import Sequence
from datetime import UTC, datetime
from enum import StrEnum
from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator


ConflictPolicy = Literal["reject", "wait"]


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


class SandboxState(StrEnum):
    """Run state of a remote desktop sandbox as observed by the controller."""

    RUNNING = "running"
    PAUSED = "paused"
    UNKNOWN = "unknown"
    TERMINATED = "terminated"


class SandboxHandle(BaseModel):
    """Local view of one remote desktop instance.

    Frozen; the controller stores a new handle on every
    transition.

    Attributes:
        id: Provider-assigned identifier.
        stream_endpoint: Desktop stream URL, present only while running.
        state: Last observed run state.
        last_observed_at: Time of the last successful status read.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    stream_endpoint: str | None = None
    state: SandboxState = SandboxState.UNKNOWN
    last_observed_at: datetime | None = None

    @model_validator(mode="after")
    def _endpoint_matches_state(self) -> Self:
        running = self.state == SandboxState.RUNNING
        if running != (self.stream_endpoint is not None):
            raise ValueError(
                "stream_endpoint must be set if and only if state is running "
                f"(state={self.state}, stream_endpoint={self.stream_endpoint!r})"
            )
        return self


class SandboxStatus(BaseModel):
    """Result of a status read.

    Attributes:
        sandbox_id: Sandbox the status refers to.
        state: Reconciled run state.
        stream_endpoint: Stream URL when running.
        superseded_by: New id when this id was invalidated by a pause.
        error: Provider failure text when the state was downgraded to unknown.
    """

    sandbox_id: str
    state: SandboxState
    stream_endpoint: str | None = None
    superseded_by: str | None = None
    error: str | None = None


class PauseResult(BaseModel):
    """Outcome of a successful pause. The previous id is invalid afterwards."""

    previous_sandbox_id: str
    new_sandbox_id: str


class ProviderStatus(BaseModel):
    """Raw status reply from a provider."""

    state: str
    stream_url: str | None = None


class ProvisionedSandbox(BaseModel):
    """Raw reply from a provider provisioning or resume call."""

    sandbox_id: str
    stream_url: str


class CommandResult(BaseModel):
    """Result of a command executed inside a sandbox."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SegmentKind(StrEnum):
    """Injection class of a run of characters."""

    SIMPLE = "simple"
    COMPLEX = "complex"


class Segment(BaseModel):
    """A maximal run of same-class characters."""

    model_config = ConfigDict(frozen=True)

    text: str
    kind: SegmentKind


class InjectionPlan(BaseModel):
    """Ordered segments whose concatenation reproduces the original input."""

    model_config = ConfigDict(frozen=True)

    segments: tuple[Segment, ...] = ()

    @property
    def text(self) -> str:
        return "".join(segment.text for segment in self.segments)


class CapabilitySnapshot(BaseModel):
    """Result of probing a sandbox for the clipboard fast path."""

    model_config = ConfigDict(frozen=True)

    sandbox_id: str
    clipboard_available: bool
    probed_at: datetime = Field(default_factory=utc_now)
    detail: str | None = None


class StrategyName(StrEnum):
    """Injection strategy identifiers, in fallback order."""

    CLIPBOARD = "clipboard"
    SEGMENTED = "segmented"
    CHARACTER = "character"
    NONE = "none"


class InjectionResult(BaseModel):
    """Outcome of a successful injection.

    Attributes:
        segments_sent: Segments delivered (1 for a bulk paste).
        strategy_used: Strategy that completed the injection.
        degraded: True when a preferred strategy was skipped after failing.
        delivered_chars: Characters delivered.
        escalated_segments: Segments retried one character at a time.
    """

    segments_sent: int
    strategy_used: StrategyName
    degraded: bool = False
    delivered_chars: int = 0
    escalated_segments: int = 0


class InjectionFailureRecord(BaseModel):
    """Most recent terminal injection failure for a sandbox."""

    sandbox_id: str
    delivered_count: int
    error: str
    occurred_at: datetime = Field(default_factory=utc_now)


class CheckResult(BaseModel):
    """One diagnostic check outcome."""

    model_config = ConfigDict(frozen=True)

    name: str
    ok: bool
    detail: str | None = None


class DiagnosticReport(BaseModel):
    """Aggregated diagnostic checks for a sandbox. Immutable once returned."""

    model_config = ConfigDict(frozen=True)

    sandbox_id: str
    checks: tuple[CheckResult, ...]
    generated_at: datetime = Field(default_factory=utc_now)

    @property
    def healthy(self) -> bool:
        return all(check.ok for check in self.checks)

    def failed(self) -> Sequence[CheckResult]:
        return [check for check in self.checks if not check.ok]


class Profile(BaseModel):
    """Named set of limits threaded into the controller, prober and injector.

    This model is frozen (immutable). Use model_copy(update={...}) to create
    modified copies.

    Attributes:
        name: Profile name (e.g., 'interactive', 'batch').
        template: Provider template used when provisioning.
        resolution: Desktop resolution as (width, height).
        sandbox_timeout_s: Lifetime requested for new sandboxes.
        provider_timeout_s: Deadline for each provider call.
        probe_timeout_s: Deadline for the clipboard capability probe.
        capability_ttl_s: How long a capability snapshot stays cached.
        check_timeout_s: Deadline for each diagnostic check.
        lifecycle_conflict: 'reject' raises on concurrent lifecycle operations,
            'wait' queues them.
        keystroke_chunk_size: Characters per typing call for simple text.
        keystroke_delay_ms: Delay between synthesized key events.
        segment_batch_size: Characters per provider call during segmented
            injection. Bounds the length of each generated command.
        display: X display the input commands target.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    template: str | None = None
    resolution: tuple[int, int] = (1024, 768)
    sandbox_timeout_s: int = Field(default=3600, ge=60, le=86400)
    provider_timeout_s: float = Field(default=30.0, gt=0, le=600)
    probe_timeout_s: float = Field(default=3.0, gt=0, le=60)
    capability_ttl_s: float = Field(default=600.0, ge=0)
    check_timeout_s: float = Field(default=10.0, gt=0, le=120)
    lifecycle_conflict: ConflictPolicy = "reject"
    keystroke_chunk_size: int = Field(default=25, ge=1, le=1000)
    keystroke_delay_ms: int = Field(default=12, ge=0, le=1000)
    segment_batch_size: int = Field(default=200, ge=1, le=4000)
    display: str = ":0"


class Settings(BaseModel):
    """Global settings for deskpilot.

    Attributes:
        active_profile: Name of the currently active profile.
        profiles: Dictionary mapping profile names to Profile objects.
    """

    active_profile: str
    profiles: dict[str, Profile]

    @model_validator(mode="after")
    def _active_profile_exists(self) -> Self:
        if self.active_profile not in self.profiles:
            raise ValueError(f"active_profile '{self.active_profile}' is not defined in profiles")
        return self
