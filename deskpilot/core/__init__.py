from deskpilot.core.exceptions import (
    ConfigurationError as ConfigurationError,
    DeskpilotError as DeskpilotError,
    InjectionFailedError as InjectionFailedError,
    InvalidStateTransitionError as InvalidStateTransitionError,
)
from deskpilot.core.types import (
    SandboxHandle as SandboxHandle,
    SandboxState as SandboxState,
)
