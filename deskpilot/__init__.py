"""Deskpilot: remote desktop sandbox control and text input for AI agents."""

from deskpilot.config import load_settings
from deskpilot.input.injector import InputInjector
from deskpilot.sandbox.controller import SandboxController
from deskpilot.sandbox.diagnostics import DiagnosticsCollector


__version__ = "0.1.0"

__all__ = [
    "DiagnosticsCollector",
    "InputInjector",
    "SandboxController",
    "load_settings",
    "__version__",
]
