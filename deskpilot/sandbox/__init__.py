from deskpilot.sandbox.controller import SandboxController as SandboxController
from deskpilot.sandbox.diagnostics import DiagnosticsCollector as DiagnosticsCollector
from deskpilot.sandbox.prober import (
    CapabilityCache as CapabilityCache,
    CapabilityProber as CapabilityProber,
)
from deskpilot.sandbox.provider import DesktopProvider as DesktopProvider
