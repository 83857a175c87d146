# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
# deskpilot/core/exceptions.py
"""Custom exceptions for deskpilot."""


class DeskpilotError(Exception):
    """Base exception for all deskpilot errors."""

    pass


class ConfigurationError(DeskpilotError):
    """Raised when required configuration is missing or invalid."""

    pass


class InvalidStateTransitionError(DeskpilotError):
    """Raised when a lifecycle operation is not valid from the observed state.

    Recoverable by re-checking status before retrying.

    Attributes:
        sandbox_id: Sandbox the operation targeted.
        current: Locally observed state (or ``None`` for an untracked id).
        operation: Name of the rejected operation.
    """

    def __init__(
        self,
        sandbox_id: str,
        current: str | None,
        operation: str,
        message: str | None = None,
    ) -> None:
        self.sandbox_id = sandbox_id
        self.current = current
        self.operation = operation
        super().__init__(
            message
            or f"Cannot {operation} sandbox {sandbox_id} from state {current or 'untracked'}"
        )


class ConflictingOperationError(DeskpilotError):
    """Raised when another operation is already in flight for the same sandbox."""

    def __init__(self, sandbox_id: str, operation: str) -> None:
        self.sandbox_id = sandbox_id
        self.operation = operation
        super().__init__(
            f"Cannot {operation} sandbox {sandbox_id}: another operation is in flight"
        )


class ProviderError(DeskpilotError):
    """Raised when the remote sandbox provider fails a request."""

    pass


class ProviderTimeoutError(ProviderError):
    """Raised when a provider call exceeds its deadline.

    The outcome is ambiguous: the operation may or may not have applied.
    Callers should re-query status before retrying.
    """

    def __init__(self, sandbox_id: str | None, operation: str, timeout_s: float | None = None) -> None:
        self.sandbox_id = sandbox_id
        self.operation = operation
        self.timeout_s = timeout_s
        suffix = f" after {timeout_s}s" if timeout_s is not None else ""
        super().__init__(f"Provider {operation} for sandbox {sandbox_id} timed out{suffix}")


class ProviderRejectedError(ProviderError):
    """Raised when the provider explicitly refuses a request. Not retried."""

    pass


class SandboxNotFoundError(ProviderError):
    """Raised when the provider has no sandbox with the given id."""

    def __init__(self, sandbox_id: str) -> None:
        self.sandbox_id = sandbox_id
        super().__init__(f"Sandbox {sandbox_id} not found")


class InjectionError(DeskpilotError):
    """Base exception for text injection errors."""

    pass


class InjectionFailedError(InjectionError):
    """Raised when character-level injection fails irrecoverably.

    Attributes:
        delivered_count: Characters delivered before the fault. The caller
            may resend ``text[delivered_count:]`` or the whole input.
        segments_completed: Segments fully delivered before the fault.
    """

    def __init__(self, message: str, delivered_count: int, segments_completed: int = 0) -> None:
        self.delivered_count = delivered_count
        self.segments_completed = segments_completed
        super().__init__(f"{message} (delivered {delivered_count} characters)")


class InjectionCancelledError(InjectionError):
    """Raised when an injection is cancelled at a segment boundary."""

    def __init__(self, segments_completed: int, delivered_count: int) -> None:
        self.segments_completed = segments_completed
        self.delivered_count = delivered_count
        super().__init__(
            f"Injection cancelled after {segments_completed} segments "
            f"({delivered_count} characters)"
        )
